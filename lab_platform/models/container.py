"""Container, Lifecycle and Snapshot Models"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Boolean, Date, JSON, Enum,
    TIMESTAMP, ForeignKey, Index
)
import enum

from lab_platform.models.base import Base, BaseModel, enum_values


class ContainerStatus(str, enum.Enum):
    """Container lifecycle status enumeration"""
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    DELETING = "deleting"


def _status_column_type() -> Enum:
    return Enum(
        ContainerStatus,
        name="container_status",
        values_callable=enum_values,
        native_enum=False,
        length=16
    )


class ContainerModel(BaseModel):
    """
    Containers table: one row per provisioned lab sandbox.

    Rows are never hard-deleted. Once teardown finishes `removed_at` is set,
    which takes the row out of the active set while keeping its history.
    """
    __tablename__ = "containers"

    name = Column(String(63), nullable=False, unique=True)
    user_id = Column(Integer, nullable=False)
    team_id = Column(Integer, nullable=True)
    image = Column(String(255), nullable=False)
    cpu = Column(Integer, nullable=False, default=1)
    memory_mb = Column(BigInteger, nullable=False, default=1024)
    disk_mb = Column(BigInteger, nullable=False, default=10240)
    status = Column(
        _status_column_type(),
        nullable=False,
        default=ContainerStatus.CREATING
    )
    ip_address = Column(String(45), nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    usage_period = Column(Date, nullable=True)
    usage_released = Column(Boolean, nullable=False, default=False)
    started_at = Column(TIMESTAMP, nullable=True)
    stopped_at = Column(TIMESTAMP, nullable=True)
    removed_at = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index("ix_containers_user_id", "user_id"),
        Index("ix_containers_status", "status"),
    )


class ContainerLifecycleModel(Base):
    """
    Container Lifecycle table: append-only audit of status transitions.

    old_status is NULL for the row written when the container is created.
    """
    __tablename__ = "container_lifecycle"

    id = Column(Integer, primary_key=True, autoincrement=True)
    container_id = Column(
        Integer,
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=False
    )
    old_status = Column(_status_column_type(), nullable=True)
    new_status = Column(_status_column_type(), nullable=False)
    changed_by = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    changed_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_container_lifecycle_container", "container_id", "changed_at"),
    )


class SnapshotModel(Base):
    """Snapshots table: metadata recorded after a runtime snapshot succeeds"""
    __tablename__ = "snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    container_id = Column(
        Integer,
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=False
    )
    snapshot_name = Column(String(255), nullable=False)
    created_by = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_snapshots_container_created", "container_id", "created_at"),
    )
