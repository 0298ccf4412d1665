from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from admission import nearest_driver, rejection_reason
from config import MATCHING_RADIUS_KM
from db import Repository
from errors import NotFound
from lifecycle import PoolLifecycle
from models import RequestStatus, RideRequest

logger = logging.getLogger(__name__)


class MatchKind(str, Enum):
    JOINED = "JOINED"
    CREATED = "CREATED"


@dataclass
class MatchResult:
    kind: MatchKind
    request_id: int
    pool_id: int
    passenger_id: int
    driver_id: Optional[int] = None


class MatchingEngine:
    """Greedy first-fit matcher.

    Tries MATCHING pools in creation order, then the nearest AVAILABLE driver
    within the radius. Already formed pools are never re-optimized.
    """

    def __init__(self, repository: Repository, lifecycle: Optional[PoolLifecycle] = None,
                 radius_km: float = MATCHING_RADIUS_KM):
        self.repository = repository
        self.lifecycle = lifecycle or PoolLifecycle(repository, radius_km=radius_km)
        self.radius_km = radius_km

    def match(self, request_id: int) -> Optional[MatchResult]:
        with self.repository.session() as session:
            request = session.get(RideRequest, request_id)
            if request is None:
                raise NotFound("request", request_id)
            if request.status != RequestStatus.PENDING:
                logger.debug("Request %s is %s, nothing to match", request_id, request.status.value)
                return None
            pools = self.repository.matching_pools(session)
            drivers = self.repository.available_drivers(session, request.seats, request.luggage)

        for candidate in pools:
            reason = rejection_reason(candidate, request, self.radius_km)
            if reason is not None:
                logger.debug("Pool %s rejected for request %s: %s", candidate.pool.id, request_id, reason)
                continue
            passenger_id = self.lifecycle.join(candidate.pool.id, request)
            return MatchResult(
                kind=MatchKind.JOINED,
                request_id=request_id,
                pool_id=candidate.pool.id,
                passenger_id=passenger_id,
                driver_id=candidate.driver.id,
            )

        driver = nearest_driver(drivers, request, self.radius_km)
        if driver is not None:
            pool_id, passenger_id = self.lifecycle.create(driver.id, request)
            return MatchResult(
                kind=MatchKind.CREATED,
                request_id=request_id,
                pool_id=pool_id,
                passenger_id=passenger_id,
                driver_id=driver.id,
            )

        logger.info("No pool or driver for request %s yet", request_id)
        return None
