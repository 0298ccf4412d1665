from contextlib import contextmanager, ExitStack
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging
import threading

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import SQLModel, Session, create_engine

from config import DATABASE_URL
from errors import ConcurrencyConflict, InvalidState, NotFound, RepositoryUnavailable
from models import (
    Driver,
    DriverStatus,
    PassengerStatus,
    PoolPassenger,
    PoolStatus,
    RequestStatus,
    RidePool,
    RideRequest,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 5


@dataclass
class PoolCandidate:
    """A MATCHING pool with its driver and the requests of its active passengers, in join order."""

    pool: RidePool
    driver: Optional[Driver]
    riders: List[RideRequest] = field(default_factory=list)

    @property
    def seats_used(self) -> int:
        return sum(r.seats for r in self.riders)

    @property
    def luggage_used(self) -> int:
        return sum(r.luggage for r in self.riders)


def _serialize_sqlite_writers(engine):
    # pysqlite defers BEGIN until the first write, so a transaction's reads can
    # be stale by the time it writes. Units of work take the write lock up
    # front; read-only sessions begin a deferred snapshot. WAL keeps those
    # snapshots from blocking writers.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get("begin_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


class Repository:
    """Transactional store for requests, pools, passengers and drivers.

    One instance is built by the process entry point and handed to the
    matching engine, lifecycle manager and dispatch queue.
    """

    def __init__(self, url: str = DATABASE_URL, echo: bool = False):
        # SQLite needs check_same_thread=False; Postgres does not
        connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
        self.url = url
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        if url.startswith("sqlite"):
            _serialize_sqlite_writers(self.engine)
        # same pool; only units of work begin with the write lock
        self._writer = self.engine.execution_options(begin_immediate=True)
        # application-level locks keyed by entity, e.g. "pool:3"
        self._locks = {}
        self._locks_lock = threading.Lock()

    def connect(self):
        SQLModel.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()

    # ───────────────────────── sessions and locking ─────────────────────────

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @contextmanager
    def unit_of_work(self):
        """Commit everything done in the block, or nothing.

        Storage errors are translated into the core's error taxonomy after
        the rollback.
        """
        session = Session(self._writer, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except (IntegrityError, StaleDataError) as exc:
            session.rollback()
            logger.debug("Unit of work rolled back on conflict: %s", exc)
            raise ConcurrencyConflict(str(exc)) from exc
        except OperationalError as exc:
            session.rollback()
            logger.warning("Unit of work rolled back, storage unavailable: %s", exc)
            raise RepositoryUnavailable(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_lock(self, name: str) -> threading.Lock:
        with self._locks_lock:
            if name not in self._locks:
                self._locks[name] = threading.Lock()
            return self._locks[name]

    @contextmanager
    def lock(self, *names: str):
        """Hold the named locks; always taken in sorted order."""
        with ExitStack() as stack:
            for name in sorted(set(names)):
                lock = self.get_lock(name)
                if not lock.acquire(timeout=LOCK_TIMEOUT_SECONDS):
                    raise ConcurrencyConflict(f"timed out waiting for {name}")
                stack.callback(lock.release)
            yield

    def guarded_update(self, session: Session, model, ident: int, version: int, **values) -> bool:
        """UPDATE ... WHERE id = ident AND version = version, bumping the version.

        Returns False when another writer changed the row first.
        """
        values["version"] = version + 1
        if hasattr(model, "updated_at"):
            values.setdefault("updated_at", utcnow())
        changed = (
            session.query(model)
            .filter(model.id == ident, model.version == version)
            .update(values, synchronize_session=False)
        )
        return changed == 1

    # ───────────────────────────── queries ──────────────────────────────────

    def active_riders(self, session: Session, pool_id: int) -> List[RideRequest]:
        rows = (
            session.query(PoolPassenger, RideRequest)
            .join(RideRequest, RideRequest.id == PoolPassenger.request_id)
            .filter(PoolPassenger.pool_id == pool_id, PoolPassenger.status == PassengerStatus.ACTIVE)
            .order_by(PoolPassenger.pickup_order)
            .all()
        )
        return [request for _, request in rows]

    def pool_passengers(self, session: Session, pool_id: int) -> List[PoolPassenger]:
        return (
            session.query(PoolPassenger)
            .filter(PoolPassenger.pool_id == pool_id)
            .order_by(PoolPassenger.pickup_order)
            .all()
        )

    def matching_pools(self, session: Session) -> List[PoolCandidate]:
        pools = (
            session.query(RidePool)
            .filter(RidePool.status == PoolStatus.MATCHING)
            .order_by(RidePool.id)
            .all()
        )
        out = []
        for pool in pools:
            driver = session.get(Driver, pool.driver_id) if pool.driver_id is not None else None
            out.append(PoolCandidate(pool=pool, driver=driver, riders=self.active_riders(session, pool.id)))
        return out

    def available_drivers(self, session: Session, seats: int, luggage: int) -> List[Driver]:
        return (
            session.query(Driver)
            .filter(
                Driver.status == DriverStatus.AVAILABLE,
                Driver.total_seats >= seats,
                Driver.luggage_capacity >= luggage,
            )
            .order_by(Driver.id)
            .all()
        )

    def market_snapshot(self, session: Session) -> Tuple[int, int]:
        """(pending demand, available supply) used for surge pricing."""
        demand = session.query(RideRequest).filter(RideRequest.status == RequestStatus.PENDING).count()
        supply = session.query(Driver).filter(Driver.status == DriverStatus.AVAILABLE).count()
        return demand, supply

    def passenger_for_request(self, session: Session, request_id: int) -> Optional[PoolPassenger]:
        return session.query(PoolPassenger).filter(PoolPassenger.request_id == request_id).first()

    # ─────────────────────── ingestion-side helpers ─────────────────────────

    def add_user(self, name: str, phone: Optional[str] = None) -> User:
        with self.unit_of_work() as session:
            user = User(name=name, phone=phone)
            session.add(user)
            session.flush()
            session.refresh(user)
            return user

    def add_driver(self, name: str, lat: float, lng: float, total_seats: int = 4,
                   luggage_capacity: int = 2, phone: Optional[str] = None,
                   status: DriverStatus = DriverStatus.AVAILABLE) -> Driver:
        with self.unit_of_work() as session:
            driver = Driver(
                name=name,
                phone=phone,
                lat=lat,
                lng=lng,
                total_seats=total_seats,
                luggage_capacity=luggage_capacity,
                status=status,
            )
            session.add(driver)
            session.flush()
            session.refresh(driver)
            return driver

    def add_request(self, user_id: int, pickup: Tuple[float, float], drop: Tuple[float, float],
                    seats: int = 1, luggage: int = 0, detour_tolerance_km: float = 5.0) -> RideRequest:
        with self.unit_of_work() as session:
            if session.get(User, user_id) is None:
                raise NotFound("user", user_id)
            request = RideRequest(
                user_id=user_id,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                drop_lat=drop[0],
                drop_lng=drop[1],
                seats=seats,
                luggage=luggage,
                detour_tolerance_km=detour_tolerance_km,
            )
            session.add(request)
            session.flush()
            session.refresh(request)
            return request

    def update_driver_location(self, driver_id: int, lat: float, lng: float) -> Driver:
        with self.lock(f"driver:{driver_id}"), self.unit_of_work() as session:
            driver = session.get(Driver, driver_id)
            if driver is None:
                raise NotFound("driver", driver_id)
            if not self.guarded_update(session, Driver, driver_id, driver.version, lat=lat, lng=lng):
                raise ConcurrencyConflict(f"driver {driver_id} changed concurrently")
            session.refresh(driver)
            return driver

    def set_driver_status(self, driver_id: int, status: DriverStatus) -> Driver:
        """External AVAILABLE/OFFLINE toggle. BUSY is owned by the pool lifecycle."""
        if status == DriverStatus.BUSY:
            raise InvalidState("drivers become BUSY only by being assigned a pool")
        with self.lock(f"driver:{driver_id}"), self.unit_of_work() as session:
            driver = session.get(Driver, driver_id)
            if driver is None:
                raise NotFound("driver", driver_id)
            if driver.status == DriverStatus.BUSY:
                raise InvalidState(f"driver {driver_id} is serving a pool")
            if not self.guarded_update(session, Driver, driver_id, driver.version, status=status):
                raise ConcurrencyConflict(f"driver {driver_id} changed concurrently")
            session.refresh(driver)
            return driver

    def request_view(self, request_id: int) -> dict:
        with self.session() as session:
            request = session.get(RideRequest, request_id)
            if request is None:
                raise NotFound("request", request_id)
            passenger = self.passenger_for_request(session, request_id)
            pool = session.get(RidePool, passenger.pool_id) if passenger else None
            driver = session.get(Driver, pool.driver_id) if pool and pool.driver_id else None
            return {
                "id": request.id,
                "status": request.status.value,
                "pool_id": pool.id if pool else None,
                "fare": passenger.fare if passenger else None,
                "driver": {"id": driver.id, "name": driver.name, "lat": driver.lat, "lng": driver.lng} if driver else None,
            }

    def pool_view(self, pool_id: int) -> dict:
        with self.session() as session:
            pool = session.get(RidePool, pool_id)
            if pool is None:
                raise NotFound("pool", pool_id)
            return {
                "id": pool.id,
                "driver_id": pool.driver_id,
                "status": pool.status.value,
                "route": pool.route,
                "passengers": [
                    {
                        "request_id": p.request_id,
                        "fare": p.fare,
                        "pickup_order": p.pickup_order,
                        "drop_order": p.drop_order,
                        "status": p.status.value,
                    }
                    for p in self.pool_passengers(session, pool_id)
                ],
            }
