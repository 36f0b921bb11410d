"""Progress estimation along a matched route."""

from __future__ import annotations

import math
from typing import Sequence

from route_guard.geo import HasLatLon, distance
from route_guard.models import GeoPoint


def estimate_progress(trace: Sequence[HasLatLon], route_points: Sequence[HasLatLon]) -> float:
    """Estimate how far along the route the subject is, in [0, 1].

    Uses the route point nearest to the latest trace point. This is a nearest-vertex scan,
    not a projection onto the path, so on out-and-back routes the estimate can jump
    backward when the subject passes near an earlier route point.
    """

    if not trace or not route_points:
        return 0.0
    if len(route_points) == 1:
        return 0.0

    current = trace[-1]
    nearest_index = 0
    nearest_d = math.inf
    for i, rp in enumerate(route_points):
        d = distance(current, rp)
        if d < nearest_d:
            nearest_d = d
            nearest_index = i
    return nearest_index / (len(route_points) - 1)


def interpolate_position(route_points: Sequence[HasLatLon], progress: float) -> GeoPoint | None:
    """Position on the route at ``progress`` (clamped to [0, 1]); None for an empty route."""

    if not route_points:
        return None

    progress = min(1.0, max(0.0, progress))
    exact = progress * (len(route_points) - 1)
    lower = math.floor(exact)
    upper = math.ceil(exact)
    lo = route_points[lower]
    if lower == upper:
        return GeoPoint(lo.latitude, lo.longitude)

    hi = route_points[upper]
    w = exact - lower
    return GeoPoint(
        latitude=lo.latitude * (1.0 - w) + hi.latitude * w,
        longitude=lo.longitude * (1.0 - w) + hi.longitude * w,
    )


def expected_position(trace: Sequence[HasLatLon], route_points: Sequence[HasLatLon]) -> GeoPoint | None:
    """Where on the route the subject is expected to be right now."""

    return interpolate_position(route_points, estimate_progress(trace, route_points))
