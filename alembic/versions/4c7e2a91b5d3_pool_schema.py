"""pool_schema

Revision ID: 4c7e2a91b5d3
Revises: 
Create Date: 2026-10-19 10:12:03.518204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c7e2a91b5d3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

driver_status = sa.Enum("AVAILABLE", "BUSY", "OFFLINE", name="driverstatus")
request_status = sa.Enum("PENDING", "MATCHED", "CANCELLED", name="requeststatus")
pool_status = sa.Enum("MATCHING", "COMPLETED", name="poolstatus")
passenger_status = sa.Enum("ACTIVE", "CANCELLED", name="passengerstatus")
job_status = sa.Enum("QUEUED", "RUNNING", "FAILED", name="jobstatus")


def upgrade() -> None:
    """Create tables: user, driver, riderequest, ridepool, poolpassenger, matchjob."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "driver",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False, server_default="0"),
        sa.Column("lng", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_seats", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("luggage_capacity", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("status", driver_status, nullable=False, server_default="AVAILABLE"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_driver_status", "driver", ["status"])
    op.create_table(
        "riderequest",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("pickup_lat", sa.Float(), nullable=False),
        sa.Column("pickup_lng", sa.Float(), nullable=False),
        sa.Column("drop_lat", sa.Float(), nullable=False),
        sa.Column("drop_lng", sa.Float(), nullable=False),
        sa.Column("seats", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("luggage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("detour_tolerance_km", sa.Float(), nullable=False, server_default="5.0"),
        sa.Column("status", request_status, nullable=False, server_default="PENDING"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_riderequest_status", "riderequest", ["status"])
    op.create_index("ix_riderequest_user_id", "riderequest", ["user_id"])
    op.create_table(
        "ridepool",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=True),
        sa.Column("status", pool_status, nullable=False, server_default="MATCHING"),
        sa.Column("route", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["driver_id"], ["driver.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ridepool_status", "ridepool", ["status"])
    op.create_index("ix_ridepool_driver_id", "ridepool", ["driver_id"])
    op.create_table(
        "poolpassenger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pool_id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("fare", sa.Integer(), nullable=False),
        sa.Column("pickup_order", sa.Integer(), nullable=False),
        sa.Column("drop_order", sa.Integer(), nullable=False),
        sa.Column("status", passenger_status, nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pool_id"], ["ridepool.id"]),
        sa.ForeignKeyConstraint(["request_id"], ["riderequest.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
        sa.UniqueConstraint("pool_id", "pickup_order", name="uq_poolpassenger_pickup_order"),
        sa.UniqueConstraint("pool_id", "drop_order", name="uq_poolpassenger_drop_order"),
    )
    op.create_index("ix_poolpassenger_pool_id", "poolpassenger", ["pool_id"])
    op.create_table(
        "matchjob",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("status", job_status, nullable=False, server_default="QUEUED"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_matchjob_status", "matchjob", ["status"])
    op.create_index("ix_matchjob_request_id", "matchjob", ["request_id"])
    op.create_index("ix_matchjob_next_run_at", "matchjob", ["next_run_at"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_matchjob_next_run_at", table_name="matchjob")
    op.drop_index("ix_matchjob_request_id", table_name="matchjob")
    op.drop_index("ix_matchjob_status", table_name="matchjob")
    op.drop_table("matchjob")
    op.drop_index("ix_poolpassenger_pool_id", table_name="poolpassenger")
    op.drop_table("poolpassenger")
    op.drop_index("ix_ridepool_driver_id", table_name="ridepool")
    op.drop_index("ix_ridepool_status", table_name="ridepool")
    op.drop_table("ridepool")
    op.drop_index("ix_riderequest_user_id", table_name="riderequest")
    op.drop_index("ix_riderequest_status", table_name="riderequest")
    op.drop_table("riderequest")
    op.drop_index("ix_driver_status", table_name="driver")
    op.drop_table("driver")
    op.drop_table("user")
