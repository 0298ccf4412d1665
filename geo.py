from typing import Tuple
from math import radians, sin, cos, sqrt, atan2

Point = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Point, b: Point) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return EARTH_RADIUS_KM * c


def detour_km(pickup: Point, drop: Point, via: Point) -> float:
    """Extra distance on the trip pickup -> drop when it stops at `via` first.

    Straight-line approximation; never negative beyond float noise since the
    haversine distance satisfies the triangle inequality.
    """
    return haversine_km(pickup, via) + haversine_km(via, drop) - haversine_km(pickup, drop)
