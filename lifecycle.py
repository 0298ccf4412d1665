"""
Pool lifecycle operations: join, create and cancel.

Every operation runs as one unit of work under the keyed locks of the pool,
driver and request it touches, and every status write is version-guarded, so
a join racing a cancel on the same pool cannot both commit.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

from admission import rejection_reason
from config import CANCEL_MAX_ATTEMPTS, MATCHING_RADIUS_KM
from db import PoolCandidate, Repository
from errors import ConcurrencyConflict, InvalidState, NotFound
from geo import haversine_km
from models import (
    Driver,
    DriverStatus,
    PassengerStatus,
    PoolPassenger,
    PoolStatus,
    RequestStatus,
    RidePool,
    RideRequest,
    utcnow,
)
from pricing import compute_fare

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    request_id: int
    pool_id: Optional[int] = None
    pool_completed: bool = False
    driver_freed: Optional[int] = None


def build_route(riders: List[RideRequest]) -> List[dict]:
    # pickups in join order, then drops in join order; not an optimized route
    stops = []
    for r in riders:
        stops.append({"request_id": r.id, "kind": "pickup", "lat": r.pickup_lat, "lng": r.pickup_lng})
    for r in riders:
        stops.append({"request_id": r.id, "kind": "drop", "lat": r.drop_lat, "lng": r.drop_lng})
    return stops


class PoolLifecycle:
    def __init__(self, repository: Repository, cancel_attempts: int = CANCEL_MAX_ATTEMPTS,
                 radius_km: float = MATCHING_RADIUS_KM):
        self.repository = repository
        self.cancel_attempts = max(1, cancel_attempts)
        self.radius_km = radius_km

    def quote(self, session, request: RideRequest) -> int:
        demand, supply = self.repository.market_snapshot(session)
        return compute_fare(haversine_km(request.pickup, request.drop), request.luggage, demand, supply)

    def _mark_matched(self, session, request: RideRequest):
        # request is the caller's snapshot; a cancel since then bumped its version
        ok = self.repository.guarded_update(
            session, RideRequest, request.id, request.version, status=RequestStatus.MATCHED
        )
        if not ok:
            raise ConcurrencyConflict(f"request {request.id} changed while matching")

    def join(self, pool_id: int, request: RideRequest) -> int:
        """Add `request` to a MATCHING pool and return the new passenger id."""
        repo = self.repository
        with repo.lock(f"pool:{pool_id}", f"request:{request.id}"), repo.unit_of_work() as session:
            pool = session.get(RidePool, pool_id)
            if pool is None:
                raise NotFound("pool", pool_id)
            if pool.status != PoolStatus.MATCHING:
                raise ConcurrencyConflict(f"pool {pool_id} completed before join")
            driver = session.get(Driver, pool.driver_id) if pool.driver_id is not None else None
            if driver is None:
                raise InvalidState(f"pool {pool_id} has no driver")

            passengers = repo.pool_passengers(session, pool_id)
            riders = repo.active_riders(session, pool_id)
            # passengers may have joined or left since the caller's snapshot
            reason = rejection_reason(PoolCandidate(pool=pool, driver=driver, riders=riders), request, self.radius_km)
            if reason is not None:
                raise ConcurrencyConflict(f"pool {pool_id} no longer fits request {request.id}: {reason}")

            # cancelled records keep their index so orders stay unique per pool
            order = len(passengers)
            passenger = PoolPassenger(
                pool_id=pool_id,
                request_id=request.id,
                fare=self.quote(session, request),
                pickup_order=order,
                drop_order=order,
            )
            session.add(passenger)
            session.flush()

            if not repo.guarded_update(session, RidePool, pool_id, pool.version, route=build_route(riders + [request])):
                raise ConcurrencyConflict(f"pool {pool_id} changed during join")
            self._mark_matched(session, request)
            logger.info("Request %s joined pool %s at order %s (fare %s)", request.id, pool_id, order, passenger.fare)
            return passenger.id

    def create(self, driver_id: int, request: RideRequest) -> Tuple[int, int]:
        """Open a pool for `driver_id` with `request` as its first passenger."""
        repo = self.repository
        with repo.lock(f"driver:{driver_id}", f"request:{request.id}"), repo.unit_of_work() as session:
            driver = session.get(Driver, driver_id)
            if driver is None:
                raise NotFound("driver", driver_id)
            if driver.status != DriverStatus.AVAILABLE:
                raise ConcurrencyConflict(f"driver {driver_id} is no longer available")
            if request.seats > driver.total_seats or request.luggage > driver.luggage_capacity:
                raise InvalidState(f"driver {driver_id} cannot carry request {request.id}")

            fare = self.quote(session, request)
            pool = RidePool(driver_id=driver_id, status=PoolStatus.MATCHING, route=build_route([request]))
            session.add(pool)
            session.flush()
            passenger = PoolPassenger(
                pool_id=pool.id,
                request_id=request.id,
                fare=fare,
                pickup_order=0,
                drop_order=0,
            )
            session.add(passenger)
            session.flush()

            self._mark_matched(session, request)
            if not repo.guarded_update(session, Driver, driver_id, driver.version, status=DriverStatus.BUSY):
                raise ConcurrencyConflict(f"driver {driver_id} changed during pool creation")
            logger.info("Created pool %s with driver %s for request %s (fare %s)", pool.id, driver_id, request.id, fare)
            return pool.id, passenger.id

    def cancel(self, request_id: int) -> CancelResult:
        """Cancel a request, completing its pool and freeing the driver when it was the last passenger.

        Idempotent. Conflicts with a concurrent join or create are retried here
        a bounded number of times before being raised.
        """
        for attempt in range(1, self.cancel_attempts + 1):
            try:
                return self._cancel_once(request_id)
            except ConcurrencyConflict as exc:
                if attempt == self.cancel_attempts:
                    raise
                logger.warning("Cancel of request %s conflicted (attempt %s): %s", request_id, attempt, exc)

    def _lock_names(self, request_id: int) -> List[str]:
        # the pool and driver must be known before taking their locks
        names = [f"request:{request_id}"]
        with self.repository.session() as session:
            passenger = self.repository.passenger_for_request(session, request_id)
            if passenger is not None:
                names.append(f"pool:{passenger.pool_id}")
                pool = session.get(RidePool, passenger.pool_id)
                if pool is not None and pool.driver_id is not None:
                    names.append(f"driver:{pool.driver_id}")
        return names

    def _cancel_once(self, request_id: int) -> CancelResult:
        repo = self.repository
        with repo.lock(*self._lock_names(request_id)), repo.unit_of_work() as session:
            request = session.get(RideRequest, request_id)
            if request is None:
                raise NotFound("request", request_id)
            if not repo.guarded_update(session, RideRequest, request_id, request.version, status=RequestStatus.CANCELLED):
                raise ConcurrencyConflict(f"request {request_id} changed during cancel")

            result = CancelResult(request_id=request_id)
            passenger = repo.passenger_for_request(session, request_id)
            if passenger is None:
                logger.info("Cancelled unmatched request %s", request_id)
                return result

            result.pool_id = passenger.pool_id
            if passenger.status != PassengerStatus.CANCELLED:
                passenger.status = PassengerStatus.CANCELLED
                session.add(passenger)
                session.flush()

            pool = session.get(RidePool, passenger.pool_id)
            if pool is None or pool.status == PoolStatus.COMPLETED:
                return result

            riders = repo.active_riders(session, pool.id)
            if riders:
                if not repo.guarded_update(session, RidePool, pool.id, pool.version, route=build_route(riders)):
                    raise ConcurrencyConflict(f"pool {pool.id} changed during cancel")
                logger.info("Request %s left pool %s (%s passengers remain)", request_id, pool.id, len(riders))
                return result

            if not repo.guarded_update(session, RidePool, pool.id, pool.version, status=PoolStatus.COMPLETED,
                                       route=[], completed_at=utcnow()):
                raise ConcurrencyConflict(f"pool {pool.id} changed during cancel")
            result.pool_completed = True
            if pool.driver_id is not None:
                result.driver_freed = self._free_driver(session, pool.driver_id)
            logger.info("Pool %s completed after request %s cancelled", pool.id, request_id)
            return result

    def _free_driver(self, session, driver_id: int) -> Optional[int]:
        driver = session.get(Driver, driver_id)
        if driver is None or driver.status != DriverStatus.BUSY:
            return None
        if not self.repository.guarded_update(session, Driver, driver_id, driver.version, status=DriverStatus.AVAILABLE):
            raise ConcurrencyConflict(f"driver {driver_id} changed during cancel")
        return driver_id
