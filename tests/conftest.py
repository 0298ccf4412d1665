import os
import sys

import pytest

# ensure project root in sys.path so the flat modules import without installing
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from admission import detour_for_existing
from config import DispatchPolicy
from db import Repository
from lifecycle import PoolLifecycle
from matching import MatchingEngine
from models import (
    Driver,
    DriverStatus,
    PassengerStatus,
    PoolPassenger,
    PoolStatus,
    RideRequest,
    RidePool,
)

# terminal 1 area; drop ~9 km south
P1 = (40.72, -73.80)
DROP = (40.64, -73.78)
NEAR_P1 = (40.721, -73.801)


@pytest.fixture
def repo(tmp_path):
    """Each test runs against a fresh database file."""
    repository = Repository(f"sqlite:///{tmp_path}/test.db")
    repository.connect()
    yield repository
    repository.dispose()


@pytest.fixture
def lifecycle(repo):
    return PoolLifecycle(repo)


@pytest.fixture
def engine(repo, lifecycle):
    return MatchingEngine(repo, lifecycle)


@pytest.fixture
def policy():
    return DispatchPolicy(workers=3, max_attempts=5, backoff_seconds=0.0, poll_seconds=0.01)


@pytest.fixture
def user(repo):
    return repo.add_user("Alice", "+100000000")


@pytest.fixture
def make_request(repo, user):
    def _make(pickup=P1, drop=DROP, seats=1, luggage=0, detour=5.0):
        return repo.add_request(user.id, pickup, drop, seats=seats, luggage=luggage, detour_tolerance_km=detour)
    return _make


@pytest.fixture
def make_driver(repo):
    def _make(position=NEAR_P1, seats=4, luggage=2, name="Dana"):
        return repo.add_driver(name, position[0], position[1], total_seats=seats, luggage_capacity=luggage)
    return _make


def fetch(repo, model, ident):
    with repo.session() as session:
        return session.get(model, ident)


def passengers_of(repo, pool_id):
    with repo.session() as session:
        return repo.pool_passengers(session, pool_id)


def assert_invariants(repo):
    """Capacity, order uniqueness, completed pools and driver BUSY status all agree."""
    with repo.session() as session:
        pools = session.query(RidePool).all()
        drivers = session.query(Driver).all()
        for pool in pools:
            records = repo.pool_passengers(session, pool.id)
            orders = [p.pickup_order for p in records]
            assert len(orders) == len(set(orders))
            assert sorted(orders) == list(range(len(orders)))
            active = [p for p in records if p.status == PassengerStatus.ACTIVE]
            riders = [session.get(RideRequest, p.request_id) for p in active]
            driver = session.get(Driver, pool.driver_id)
            assert sum(r.seats for r in riders) <= driver.total_seats
            assert sum(r.luggage for r in riders) <= driver.luggage_capacity
            if not active:
                assert pool.status == PoolStatus.COMPLETED
            if pool.status == PoolStatus.COMPLETED:
                assert not active
            # every passenger tolerates the pickups of those who joined after it
            for i, existing in enumerate(riders):
                for later in riders[i + 1:]:
                    assert detour_for_existing(existing, later) <= existing.detour_tolerance_km
        for driver in drivers:
            open_pools = [p for p in pools if p.driver_id == driver.id and p.status != PoolStatus.COMPLETED]
            assert (driver.status == DriverStatus.BUSY) == bool(open_pools)
