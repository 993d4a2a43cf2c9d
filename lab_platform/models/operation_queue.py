"""Operation Queue Models"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, JSON, Enum, TIMESTAMP, ForeignKey, Index
)
import enum

from lab_platform.models.base import Base, enum_values


class OperationType(str, enum.Enum):
    """Long-running container operations handled by the worker pool"""
    CREATE = "create"
    START = "start"
    STOP = "stop"
    SNAPSHOT = "snapshot"
    DELETE = "delete"


class OperationStatus(str, enum.Enum):
    """Operation queue entry status enumeration"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationQueueModel(Base):
    """
    Operation Queue table for asynchronous container actions.

    An entry is claimed by flipping pending -> in_progress with a conditional
    update, so a single worker owns it at a time.
    """
    __tablename__ = "operation_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    container_id = Column(
        Integer,
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=False
    )
    operation = Column(
        Enum(
            OperationType,
            name="operation_type",
            values_callable=enum_values,
            native_enum=False,
            length=16
        ),
        nullable=False
    )
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        Enum(
            OperationStatus,
            name="operation_status",
            values_callable=enum_values,
            native_enum=False,
            length=16
        ),
        nullable=False,
        default=OperationStatus.PENDING
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    scheduled_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index("ix_operation_queue_status_scheduled", "status", "scheduled_at"),
        Index("ix_operation_queue_container", "container_id"),
    )


class OperationAuditModel(Base):
    """Operation Audit table: append-only trail of queue entry progress"""
    __tablename__ = "operation_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_queue_id = Column(
        Integer,
        ForeignKey("operation_queue.id", ondelete="SET NULL"),
        nullable=True
    )
    container_id = Column(
        Integer,
        ForeignKey("containers.id", ondelete="SET NULL"),
        nullable=True
    )
    action = Column(String(32), nullable=False)  # start, complete, retry, fail
    details = Column(JSON, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_operation_audit_container", "container_id"),
    )
