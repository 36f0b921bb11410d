"""Live monitoring of a tracked journey.

``TrackingSession`` is the explicit tracking state (open journey, sequence counter); the
functions below return updated copies instead of mutating it. ``JourneyMonitor`` owns one
session and processes samples strictly in arrival order on a single worker task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace

from route_guard.alerts import AlertEscalator
from route_guard.config import EngineParams
from route_guard.deviation import check_for_deviation
from route_guard.geo import path_length
from route_guard.matcher import analyze_journey
from route_guard.models import (
    AnalysisResult,
    DeviationEvent,
    Journey,
    Severity,
    TracePoint,
    detect_transportation_mode,
)
from route_guard.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TrackingSession:
    """Tracking state of one subject."""

    journey_id: int | None = None
    is_tracking: bool = False
    point_sequence: int = 0


def begin_session(journey_id: int) -> TrackingSession:
    return TrackingSession(journey_id=journey_id, is_tracking=True, point_sequence=0)


def stamp_sample(session: TrackingSession, sample: TracePoint) -> tuple[TrackingSession, TracePoint]:
    """Assign the next sequence number to ``sample``."""

    point = replace(sample, sequence_number=session.point_sequence)
    return replace(session, point_sequence=session.point_sequence + 1), point


def end_session(session: TrackingSession) -> TrackingSession:
    return TrackingSession()


class JourneyMonitor:
    """Feeds location samples of one subject through live deviation checks."""

    def __init__(
        self,
        store: Store,
        escalator: AlertEscalator,
        params: EngineParams | None = None,
        severity: Severity = Severity.MEDIUM,
    ) -> None:
        self._store = store
        self._escalator = escalator
        self._params = params or EngineParams()
        self._severity = severity
        self.session = TrackingSession()
        self.deviations: list[DeviationEvent] = []
        self._queue: asyncio.Queue[TracePoint] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def journey_id(self) -> int | None:
        return self.session.journey_id

    async def start(self, first: TracePoint, route_id: int | None = None) -> Journey:
        """Open a journey at ``first`` and start processing samples.

        Args:
            first: First sample; also used to guess the transportation mode.
            route_id: Route the journey is expected to follow. Deviation checks only run
                once the journey has a route.
        """

        if self.session.is_tracking and self.session.journey_id is not None:
            journey = await self._store.get_journey(self.session.journey_id)
            if journey is not None:
                return journey

        journey = await self._store.create_journey(first.timestamp, detect_transportation_mode(first.speed))
        if route_id is not None:
            journey = await self._store.assign_route(journey.id, route_id)
        self.session = begin_session(journey.id)
        self.deviations = []
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name=f"journey-{journey.id}")
        logger.info("Journey %s started (mode=%s, route=%s)", journey.id, journey.transportation_mode.value, route_id)
        self.submit(first)
        return journey

    def submit(self, sample: TracePoint) -> None:
        """Queue a sample for the open journey (ignored when not tracking)."""

        if not self.session.is_tracking:
            logger.debug("Sample at %s ignored: not tracking", sample.timestamp)
            return
        self._queue.put_nowait(sample)

    async def drain(self) -> None:
        """Wait until every queued sample and the deviations it raised have been handled."""

        if self.session.is_tracking:
            await self._queue.join()
        await self._escalator.settle()

    async def stop(self, analyze: bool = True) -> AnalysisResult | None:
        """Stop tracking, close the journey and (optionally) analyse it.

        Samples still queued are dropped. Deviations already recorded are escalated on
        the escalator's own tasks, so stopping never cancels their handling or timers.
        """

        if not self.session.is_tracking or self.session.journey_id is None:
            return None

        journey_id = self.session.journey_id
        self.session = end_session(self.session)
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        dropped = self._queue.qsize()
        if dropped:
            logger.info("Journey %s stopped with %s unprocessed samples", journey_id, dropped)

        try:
            journey = await self._store.get_journey(journey_id)
            points = await self._store.get_journey_points(journey_id)
            end_time = points[-1].timestamp if points else (journey.start_time if journey else 0)
            await self._store.complete_journey(
                journey_id,
                end_time,
                path_length(points),
                journey.matched_route_id if journey else None,
            )
        except Exception:
            logger.exception("Closing journey %s failed", journey_id)

        if not analyze:
            return None
        try:
            result = await analyze_journey(self._store, journey_id, self._params)
        except Exception:
            logger.exception("Analysing journey %s failed", journey_id)
            return None
        logger.info("Journey %s analysed: %s", journey_id, result)
        return result

    async def _run(self) -> None:
        while True:
            sample = await self._queue.get()
            try:
                await self._process(sample)
            except Exception:
                # one bad sample must not end the session
                logger.exception("Processing sample at %s failed", sample.timestamp)
            finally:
                self._queue.task_done()

    async def _process(self, sample: TracePoint) -> DeviationEvent | None:
        journey_id = self.session.journey_id
        if journey_id is None:
            return None
        self.session, point = stamp_sample(self.session, sample)
        await self._store.add_journey_point(journey_id, point)

        deviation = await check_for_deviation(
            self._store, journey_id, point, self._params, timestamp=point.timestamp
        )
        if deviation is not None:
            self.deviations.append(deviation)
            self._escalator.submit(deviation, self._severity)
        return deviation
