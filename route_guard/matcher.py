"""Journey analysis: match a finished journey to a learned route or learn a new one."""

from __future__ import annotations

import logging
from dataclasses import replace

from route_guard.config import EngineParams
from route_guard.geo import path_length
from route_guard.models import AnalysisResult, Route
from route_guard.similarity import similarity
from route_guard.simplify import simplify
from route_guard.store import Store
from route_guard.timeutils import route_name

logger = logging.getLogger(__name__)


def reinforce(route: Route, journey_duration_ms: float, params: EngineParams) -> Route:
    """Return ``route`` updated with one more matching journey."""

    confidence = min(route.confidence_score + params.confidence_increment, params.max_confidence)
    times = route.times_traveled
    avg = (route.avg_duration * times + journey_duration_ms) / (times + 1)
    return replace(
        route,
        confidence_score=max(route.confidence_score, confidence),
        avg_duration=avg,
        times_traveled=times + 1,
    )


async def analyze_journey(
    store: Store,
    journey_id: int,
    params: EngineParams | None = None,
) -> AnalysisResult | None:
    """Match a finished journey against known routes.

    Also closes the journey record (end time, distance, matched route).

    Args:
        store: Persistence store.
        journey_id: Journey to analyse.
        params: Engine parameters.

    Returns:
        The analysis result, or None when the journey is too short to analyse.

    Raises:
        PersistenceError: If reading or writing the store fails.
    """

    params = params or EngineParams()
    points = await store.get_journey_points(journey_id)
    if len(points) < params.min_points_for_route:
        logger.info("Journey %s too short for route analysis (%s points)", journey_id, len(points))
        return None

    journey_distance = path_length(points)
    if journey_distance < params.min_route_distance_m:
        logger.info("Journey %s distance too short for route analysis (%.1f m)", journey_id, journey_distance)
        return None

    best_route: Route | None = None
    best_score = 0.0
    for route in await store.list_routes():
        score = similarity(
            points,
            route.points,
            epsilon=params.simplify_epsilon_m,
            samples=params.resample_count,
        )
        if score > best_score:
            best_score = score
            best_route = route

    first, last = points[0], points[-1]
    duration_ms = last.timestamp - first.timestamp

    if best_route is not None and best_score >= params.similarity_threshold:
        updated = await store.update_route(best_route.id, lambda r: reinforce(r, duration_ms, params))
        await store.complete_journey(journey_id, last.timestamp, journey_distance, updated.id)
        logger.info(
            "Journey %s matched route %s (similarity=%.3f, confidence=%.2f, times=%s)",
            journey_id,
            updated.id,
            best_score,
            updated.confidence_score,
            updated.times_traveled,
        )
        return AnalysisResult(route_id=updated.id, is_new_route=False, similarity=best_score)

    simplified = simplify(points, params.simplify_epsilon_m)
    route = await store.create_route(
        name=route_name(first.timestamp, params.tz_name),
        confidence_score=params.initial_confidence,
        start_location=first.point,
        end_location=last.point,
        avg_duration=float(duration_ms),
        times_traveled=1,
        points=[p.point for p in simplified],
    )
    await store.complete_journey(journey_id, last.timestamp, journey_distance, route.id)
    logger.info(
        "Journey %s learned as new route %s (%s -> %s points, best similarity=%.3f)",
        journey_id,
        route.id,
        len(points),
        len(simplified),
        best_score,
    )
    return AnalysisResult(route_id=route.id, is_new_route=True, similarity=0.0)
