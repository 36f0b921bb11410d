"""Geospatial utilities (no external dependencies)."""

from __future__ import annotations

import math
from itertools import pairwise
from typing import Iterable, Protocol

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius in meters


class HasLatLon(Protocol):
    """Anything carrying decimal-degree coordinates (GeoPoint, TracePoint, ...)."""

    @property
    def latitude(self) -> float: ...

    @property
    def longitude(self) -> float: ...


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    # rounding can push a a hair above 1.0 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def distance(p1: HasLatLon, p2: HasLatLon) -> float:
    """Great-circle distance in meters between two points."""

    return haversine_m(p1.latitude, p1.longitude, p2.latitude, p2.longitude)


def path_length(points: Iterable[HasLatLon]) -> float:
    """Sum of distances between consecutive points (0 for fewer than 2 points)."""

    return sum(distance(a, b) for a, b in pairwise(points))
