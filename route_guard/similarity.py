"""Route similarity scoring.

A score combines how close the two traces start and end with how close they stay along
the way. Both traces are simplified first so that point density does not matter, then
resampled to the same number of evenly spaced points before comparison.
"""

from __future__ import annotations

from itertools import pairwise
from typing import Sequence

from route_guard.geo import HasLatLon, distance
from route_guard.models import GeoPoint
from route_guard.simplify import DEFAULT_EPSILON_M, simplify

MIN_POINTS_FOR_SIMILARITY = 5
POINT_SIMILARITY_RANGE_M = 200.0
MIN_ENDPOINT_SIMILARITY = 0.7
DEFAULT_SAMPLES = 20

START_WEIGHT = 0.2
END_WEIGHT = 0.2
PATH_WEIGHT = 0.6


def point_similarity(p1: HasLatLon, p2: HasLatLon) -> float:
    """1.0 for identical points, falling linearly to 0.0 at 200 m apart."""

    return max(0.0, 1.0 - distance(p1, p2) / POINT_SIMILARITY_RANGE_M)


def _lerp(a: HasLatLon, b: HasLatLon, t: float) -> GeoPoint:
    return GeoPoint(
        latitude=a.latitude * (1.0 - t) + b.latitude * t,
        longitude=a.longitude * (1.0 - t) + b.longitude * t,
    )


def resample(path: Sequence[HasLatLon], count: int = DEFAULT_SAMPLES) -> list[GeoPoint]:
    """Resample a polyline to ``count`` points evenly spaced by arc length.

    The first and last points of ``path`` are emitted exactly. A path shorter than
    ``count`` vertices is interpolated up to ``count`` points.
    """

    if not path or count <= 0:
        return []
    first = GeoPoint(path[0].latitude, path[0].longitude)
    last = GeoPoint(path[-1].latitude, path[-1].longitude)
    if count == 1:
        return [first]

    segments = [distance(a, b) for a, b in pairwise(path)]
    total = sum(segments)
    if total == 0.0:
        return [first] * count

    step = total / (count - 1)
    out: list[GeoPoint] = [first]
    target = step
    walked = 0.0
    for i, seg in enumerate(segments):
        seg_end = walked + seg
        while len(out) < count - 1 and target <= seg_end:
            t = (target - walked) / seg if seg > 0.0 else 0.0
            out.append(_lerp(path[i], path[i + 1], t))
            target += step
        walked = seg_end

    # float accumulation may leave the walk a sample short of the end
    while len(out) < count - 1:
        out.append(last)
    out.append(last)
    return out


def path_similarity(
    path1: Sequence[HasLatLon],
    path2: Sequence[HasLatLon],
    samples: int = DEFAULT_SAMPLES,
) -> float:
    """Average point similarity over index-aligned resampled points."""

    s1 = resample(path1, samples)
    s2 = resample(path2, samples)
    if not s1 or not s2:
        return 0.0
    return sum(point_similarity(a, b) for a, b in zip(s1, s2)) / len(s1)


def similarity(
    trace_a: Sequence[HasLatLon],
    trace_b: Sequence[HasLatLon],
    *,
    epsilon: float = DEFAULT_EPSILON_M,
    samples: int = DEFAULT_SAMPLES,
) -> float:
    """Score how alike two traces are, in [0, 1].

    Returns 0.0 when either trace has fewer than 5 points, or when the start or end
    points are too far apart for the traces to be the same route.
    """

    if len(trace_a) < MIN_POINTS_FOR_SIMILARITY or len(trace_b) < MIN_POINTS_FOR_SIMILARITY:
        return 0.0

    simple_a = simplify(trace_a, epsilon)
    simple_b = simplify(trace_b, epsilon)

    start_sim = point_similarity(simple_a[0], simple_b[0])
    end_sim = point_similarity(simple_a[-1], simple_b[-1])
    if start_sim < MIN_ENDPOINT_SIMILARITY or end_sim < MIN_ENDPOINT_SIMILARITY:
        return 0.0

    path_sim = path_similarity(simple_a, simple_b, samples)
    score = START_WEIGHT * start_sim + END_WEIGHT * end_sim + PATH_WEIGHT * path_sim
    return min(1.0, max(0.0, score))
