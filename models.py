from typing import Optional, List
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DriverStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    CANCELLED = "CANCELLED"


class PoolStatus(str, Enum):
    MATCHING = "MATCHING"
    COMPLETED = "COMPLETED"


class PassengerStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    FAILED = "FAILED"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    phone: Optional[str] = None


class Driver(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    phone: Optional[str] = None
    lat: float = 0.0
    lng: float = 0.0
    total_seats: int = 4
    luggage_capacity: int = 2
    status: DriverStatus = Field(default=DriverStatus.AVAILABLE, index=True)
    version: int = 1
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def position(self):
        return (self.lat, self.lng)


class RideRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    pickup_lat: float
    pickup_lng: float
    drop_lat: float
    drop_lng: float
    seats: int = 1
    luggage: int = 0
    detour_tolerance_km: float = 5.0
    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def pickup(self):
        return (self.pickup_lat, self.pickup_lng)

    @property
    def drop(self):
        return (self.drop_lat, self.drop_lng)


class RidePool(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    driver_id: Optional[int] = Field(default=None, foreign_key="driver.id", index=True)
    status: PoolStatus = Field(default=PoolStatus.MATCHING, index=True)
    # approximated stop sequence, see build_route in lifecycle.py
    route: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class PoolPassenger(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("pool_id", "pickup_order", name="uq_poolpassenger_pickup_order"),
        UniqueConstraint("pool_id", "drop_order", name="uq_poolpassenger_drop_order"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    pool_id: int = Field(foreign_key="ridepool.id", index=True)
    request_id: int = Field(foreign_key="riderequest.id", unique=True)
    fare: int
    pickup_order: int
    drop_order: int
    status: PassengerStatus = Field(default=PassengerStatus.ACTIVE)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class MatchJob(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(index=True)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)
    attempts: int = 0
    next_run_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)
    last_error: Optional[str] = None
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
