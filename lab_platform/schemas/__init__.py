"""Pydantic schemas for API request/response validation"""

from lab_platform.schemas.quota import (
    Requester,
    ResourceDemand,
    QuotaCheckResult,
    QuotaUsage
)
from lab_platform.schemas.container import (
    ProvisionRequest,
    ProvisioningResult,
    SSHConnection,
    ContainerResponse,
    LifecycleEventResponse,
    OperationRequest,
    OperationEntryResponse
)

__all__ = [
    "Requester",
    "ResourceDemand",
    "QuotaCheckResult",
    "QuotaUsage",
    "ProvisionRequest",
    "ProvisioningResult",
    "SSHConnection",
    "ContainerResponse",
    "LifecycleEventResponse",
    "OperationRequest",
    "OperationEntryResponse",
]
