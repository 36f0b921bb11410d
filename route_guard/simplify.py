"""Trace simplification (Ramer-Douglas-Peucker)."""

from __future__ import annotations

from typing import Sequence, TypeVar

from route_guard.geo import HasLatLon, distance, haversine_m

P = TypeVar("P", bound=HasLatLon)

DEFAULT_EPSILON_M = 20.0


def perpendicular_distance(point: HasLatLon, line_start: HasLatLon, line_end: HasLatLon) -> float:
    """Distance in meters from ``point`` to the segment ``line_start``-``line_end``.

    The projection parameter is computed in lat/lon space; when it falls outside [0, 1]
    the distance to the nearer endpoint is returned instead.
    """

    x, y = point.latitude, point.longitude
    x1, y1 = line_start.latitude, line_start.longitude
    x2, y2 = line_end.latitude, line_end.longitude

    if distance(line_start, line_end) == 0.0:
        return distance(point, line_start)

    dx = x2 - x1
    dy = y2 - y1
    t = ((x - x1) * dx + (y - y1) * dy) / (dx * dx + dy * dy)
    if t < 0.0:
        return distance(point, line_start)
    if t > 1.0:
        return distance(point, line_end)
    return haversine_m(x, y, x1 + t * dx, y1 + t * dy)


def simplify(points: Sequence[P], epsilon: float = DEFAULT_EPSILON_M) -> list[P]:
    """Reduce a polyline to the points needed to keep its shape within ``epsilon`` meters.

    Args:
        points: Ordered trace.
        epsilon: Tolerance in meters.

    Returns:
        A new list containing a subset of the input objects; first and last are always kept.
    """

    n = len(points)
    if n <= 2:
        return list(points)

    keep = [False] * n
    keep[0] = keep[-1] = True

    # explicit stack of (first, last) anchor index pairs
    stack = [(0, n - 1)]
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        max_d = 0.0
        max_i = first
        for i in range(first + 1, last):
            d = perpendicular_distance(points[i], points[first], points[last])
            if d > max_d:
                max_d = d
                max_i = i
        if max_d > epsilon:
            keep[max_i] = True
            stack.append((max_i, last))
            stack.append((first, max_i))

    return [p for p, k in zip(points, keep) if k]
