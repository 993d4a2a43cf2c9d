"""Container provisioning and lifecycle API endpoints"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from lab_platform.api.dependencies import get_platform
from lab_platform.models.container import ContainerStatus
from lab_platform.schemas.container import (
    ProvisionRequest,
    ProvisioningResult,
    ContainerResponse,
    LifecycleEventResponse,
    OperationRequest,
    OperationEntryResponse,
    SSHConnection
)
from lab_platform.services.platform import LabPlatform
from lab_platform.core.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Containers"])


@router.post(
    "/containers",
    response_model=ProvisioningResult,
    status_code=status.HTTP_201_CREATED
)
async def provision_container(
    request: ProvisionRequest,
    actor_id: Optional[int] = Query(None, ge=1, description="Acting user; defaults to user_id"),
    platform: LabPlatform = Depends(get_platform)
) -> ProvisioningResult:
    """
    Admit and launch a lab container, returning once it is reachable.

    - 201: container running; `private_key` is present only when generated
    - 429: quota exceeded
    - 503: reservation lock busy, retry shortly
    - 502/504: launch or readiness failed; the container is marked failed
    """
    return await platform.provisioning.provision(request, actor_id=actor_id)


@router.get("/containers", response_model=List[ContainerResponse])
async def list_containers(
    user_id: Optional[int] = Query(None, ge=1),
    status_filter: Optional[ContainerStatus] = Query(None, alias="status"),
    include_removed: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    platform: LabPlatform = Depends(get_platform)
) -> List[ContainerResponse]:
    containers = await platform.lifecycle.list_containers(
        user_id=user_id,
        status=status_filter,
        include_removed=include_removed,
        limit=limit,
        offset=offset
    )
    return [ContainerResponse.model_validate(c) for c in containers]


@router.get("/containers/{container_id}", response_model=ContainerResponse)
async def get_container(
    container_id: int,
    platform: LabPlatform = Depends(get_platform)
) -> ContainerResponse:
    container = await platform.lifecycle.get_container(container_id)
    return ContainerResponse.model_validate(container)


@router.get(
    "/containers/{container_id}/history",
    response_model=List[LifecycleEventResponse]
)
async def get_container_history(
    container_id: int,
    platform: LabPlatform = Depends(get_platform)
) -> List[LifecycleEventResponse]:
    """Lifecycle audit rows, oldest first"""
    history = await platform.lifecycle.get_history(container_id)
    return [LifecycleEventResponse.model_validate(h) for h in history]


@router.get("/containers/{container_id}/ssh-target", response_model=SSHConnection)
async def get_ssh_target(
    container_id: int,
    platform: LabPlatform = Depends(get_platform)
) -> SSHConnection:
    """Connection tuple for the shell relay; 409 unless the container is running"""
    return await platform.provisioning.ssh_target(container_id)


@router.post(
    "/containers/{container_id}/operations",
    response_model=OperationEntryResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def request_operation(
    container_id: int,
    request: OperationRequest,
    platform: LabPlatform = Depends(get_platform)
) -> OperationEntryResponse:
    """Queue start, stop, snapshot or delete for a container"""
    entry_id = await platform.provisioning.request_operation(
        container_id,
        request.operation,
        actor_id=request.actor_id,
        payload=request.payload
    )
    entry = await platform.queue.get_entry(entry_id)
    return OperationEntryResponse.model_validate(entry)


@router.get(
    "/containers/{container_id}/operations",
    response_model=List[OperationEntryResponse]
)
async def list_container_operations(
    container_id: int,
    platform: LabPlatform = Depends(get_platform)
) -> List[OperationEntryResponse]:
    await platform.lifecycle.get_container(container_id)
    entries = await platform.queue.list_for_container(container_id)
    return [OperationEntryResponse.model_validate(e) for e in entries]


@router.get("/operations/{entry_id}", response_model=OperationEntryResponse)
async def get_operation(
    entry_id: int,
    platform: LabPlatform = Depends(get_platform)
) -> OperationEntryResponse:
    entry = await platform.queue.get_entry(entry_id)
    return OperationEntryResponse.model_validate(entry)


@router.get("/operations")
async def get_queue_stats(platform: LabPlatform = Depends(get_platform)) -> dict:
    """Operation queue counts by status"""
    stats = await platform.queue.get_stats()
    return stats.to_dict()
