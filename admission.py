"""Admission rules shared by the matcher's scan and the lifecycle's re-check at join time."""

from typing import List, Optional

from config import MATCHING_RADIUS_KM
from db import PoolCandidate
from geo import detour_km, haversine_km
from models import Driver, RideRequest


def detour_for_existing(existing: RideRequest, candidate: RideRequest) -> float:
    """Extra distance `existing` rides when the pool also picks up `candidate`."""
    return detour_km(existing.pickup, existing.drop, candidate.pickup)


def detour_for_candidate(candidate: RideRequest, existing: RideRequest) -> float:
    """Extra distance `candidate` rides when the pool also stops at `existing`'s pickup."""
    return detour_km(candidate.pickup, candidate.drop, existing.pickup)


def rejection_reason(candidate: PoolCandidate, request: RideRequest,
                     radius_km: float = MATCHING_RADIUS_KM) -> Optional[str]:
    """Why `request` cannot join this pool, or None when it fits."""
    driver = candidate.driver
    if driver is None:
        return "no driver"
    if candidate.seats_used + request.seats > driver.total_seats:
        return "seats"
    if candidate.luggage_used + request.luggage > driver.luggage_capacity:
        return "luggage"
    if haversine_km(driver.position, request.pickup) > radius_km:
        return "radius"
    for existing in candidate.riders:
        if detour_for_existing(existing, request) > existing.detour_tolerance_km:
            return f"detour of request {existing.id}"
    # the new rider's own detour is judged against the first passenger only
    if candidate.riders and detour_for_candidate(request, candidate.riders[0]) > request.detour_tolerance_km:
        return "own detour"
    return None


def nearest_driver(drivers: List[Driver], request: RideRequest,
                   radius_km: float = MATCHING_RADIUS_KM) -> Optional[Driver]:
    best = None
    best_distance = None
    for d in drivers:
        dist = haversine_km(d.position, request.pickup)
        if dist > radius_km:
            continue
        # strict comparison keeps the first driver on ties
        if best is None or dist < best_distance:
            best = d
            best_distance = dist
    return best
