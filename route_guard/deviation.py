"""Live deviation detection against the matched route."""

from __future__ import annotations

import logging

from route_guard.config import EngineParams
from route_guard.geo import HasLatLon, distance
from route_guard.models import DeviationEvent, GeoPoint
from route_guard.progress import expected_position
from route_guard.store import Store
from route_guard.timeutils import now_ms

logger = logging.getLogger(__name__)


async def check_for_deviation(
    store: Store,
    journey_id: int,
    current_position: HasLatLon,
    params: EngineParams | None = None,
    *,
    timestamp: int | None = None,
) -> DeviationEvent | None:
    """Compare the current position with where the matched route says it should be.

    Every call exceeding the threshold records a new DeviationEvent; there is no
    debouncing of consecutive samples.

    Args:
        store: Persistence store.
        journey_id: Journey in progress.
        current_position: Latest position of the subject.
        params: Engine parameters.
        timestamp: Event time in epoch ms (defaults to now).

    Returns:
        The recorded event, or None when within threshold or no route is matched yet.

    Raises:
        PersistenceError: If reading or writing the store fails.
    """

    params = params or EngineParams()
    journey = await store.get_journey(journey_id)
    if journey is None or journey.matched_route_id is None:
        return None

    trace = await store.get_journey_points(journey_id)
    if not trace:
        return None

    route = await store.get_route(journey.matched_route_id)
    if route is None or not route.points:
        return None

    expected = expected_position(trace, route.points)
    if expected is None:
        return None

    d = distance(current_position, expected)
    if d <= params.deviation_threshold_m:
        return None

    event = await store.record_deviation(
        journey_id,
        route.id,
        GeoPoint(current_position.latitude, current_position.longitude),
        expected,
        d,
        timestamp if timestamp is not None else now_ms(),
    )
    logger.warning(
        "Deviation %s on journey %s: %.1f m from route %s (expected %.6f,%.6f)",
        event.id,
        journey_id,
        d,
        route.id,
        expected.latitude,
        expected.longitude,
    )
    return event
