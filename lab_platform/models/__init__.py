"""SQLAlchemy models for the Lab Platform"""

from lab_platform.models.base import Base
from lab_platform.models.quota import QuotaModel, UsageCounterModel
from lab_platform.models.container import (
    ContainerModel,
    ContainerStatus,
    ContainerLifecycleModel,
    SnapshotModel,
)
from lab_platform.models.operation_queue import (
    OperationQueueModel,
    OperationAuditModel,
    OperationType,
    OperationStatus,
)

__all__ = [
    "Base",
    "QuotaModel",
    "UsageCounterModel",
    "ContainerModel",
    "ContainerStatus",
    "ContainerLifecycleModel",
    "SnapshotModel",
    "OperationQueueModel",
    "OperationAuditModel",
    "OperationType",
    "OperationStatus",
]
