"""Container provisioning schemas"""

import re
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator

from lab_platform.models.container import ContainerStatus
from lab_platform.models.operation_queue import OperationType, OperationStatus
from lab_platform.schemas.quota import Requester, ResourceDemand
from lab_platform.services.boot_config import DEPENDENCY_CATALOG


CONTAINER_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]{0,62}$")


class ProvisionRequest(BaseModel):
    """Schema for a container provisioning request"""
    name: Optional[str] = Field(
        None,
        description="Container name; generated as <prefix>-<hex> when omitted"
    )
    dependencies: List[str] = Field(
        default_factory=list,
        description="Dependency catalog keys to install at first boot"
    )
    cpu: int = Field(default=1, ge=1, le=64)
    memory_mb: int = Field(default=1024, ge=128, le=262144)
    disk_mb: int = Field(default=10240, ge=512, le=4194304)
    user_id: int = Field(..., ge=1)
    team_id: Optional[int] = Field(None, ge=1)
    ssh_public_key: Optional[str] = Field(
        None,
        description="OpenSSH public key; a keypair is generated when omitted"
    )

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not CONTAINER_NAME_PATTERN.match(v):
            raise ValueError(
                'name must start with a letter and contain only lowercase letters, digits and hyphens'
            )
        return v

    @field_validator('dependencies')
    @classmethod
    def validate_dependencies(cls, v: List[str]) -> List[str]:
        """Reject keys outside the dependency catalog"""
        invalid = [d for d in v if d not in DEPENDENCY_CATALOG]
        if invalid:
            raise ValueError(f"Invalid dependencies: {', '.join(invalid)}")
        return v

    @field_validator('ssh_public_key')
    @classmethod
    def validate_public_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v.startswith(("ssh-", "ecdsa-")) or "\n" in v:
            raise ValueError('ssh_public_key must be a single OpenSSH public key line')
        return v

    @property
    def requester(self) -> Requester:
        return Requester(user_id=self.user_id, team_id=self.team_id)

    @property
    def demand(self) -> ResourceDemand:
        return ResourceDemand(cpu=self.cpu, memory_mb=self.memory_mb, disk_mb=self.disk_mb)


class SSHConnection(BaseModel):
    """Connection tuple handed to the interactive shell relay"""
    host: str
    port: int
    user: str


class ProvisioningResult(BaseModel):
    """Returned to the caller once a container is reachable"""
    container_id: int
    name: str
    status: ContainerStatus
    ip_address: str
    ssh: SSHConnection
    private_key: Optional[str] = Field(
        None,
        description="Generated private key; only present when no public key was supplied"
    )
    generated_key: bool = False
    host_key: Optional[str] = Field(None, description="Host public key as reported by ssh-keyscan")
    installed: List[str] = Field(default_factory=list, description="Labels of the installed dependencies")


class ContainerResponse(BaseModel):
    """Schema for container details"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    user_id: int
    team_id: Optional[int] = None
    image: str
    cpu: int
    memory_mb: int
    disk_mb: int
    status: ContainerStatus
    ip_address: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None
    created_at: datetime


class LifecycleEventResponse(BaseModel):
    """Schema for one container status transition"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    container_id: int
    old_status: Optional[ContainerStatus] = None
    new_status: ContainerStatus
    changed_by: Optional[int] = None
    reason: Optional[str] = None
    changed_at: datetime


class OperationRequest(BaseModel):
    """Schema for requesting a long-running operation on an existing container"""
    operation: OperationType
    actor_id: int = Field(..., ge=1)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('operation')
    @classmethod
    def validate_operation(cls, v: OperationType) -> OperationType:
        if v == OperationType.CREATE:
            raise ValueError('create is issued by provisioning, not requested directly')
        return v


class OperationEntryResponse(BaseModel):
    """Schema for an operation queue entry"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    container_id: int
    operation: OperationType
    status: OperationStatus
    attempts: int
    last_error: Optional[str] = None
    scheduled_at: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
