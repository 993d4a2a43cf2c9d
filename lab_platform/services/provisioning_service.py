"""Provisioning Service - request-level entry point for lab containers"""

from typing import Any, Dict, Optional

from lab_platform.models.container import ContainerModel, ContainerStatus
from lab_platform.models.operation_queue import OperationStatus, OperationType
from lab_platform.schemas.container import ProvisionRequest, ProvisioningResult, SSHConnection
from lab_platform.services.admission import AdmissionService, generate_container_name
from lab_platform.services.boot_config import describe_dependencies
from lab_platform.services.container_lifecycle import ContainerLifecycleManager
from lab_platform.services.operation_queue import OperationQueueManager
from lab_platform.services.provisioning_driver import ProvisioningDriver
from lab_platform.core.config import settings
from lab_platform.core.exceptions import (
    ContainerNotFound,
    ContainerNotReady,
    InvalidTransition,
    OperationRetryExhausted,
    ProvisioningError
)
from lab_platform.core.logging_config import get_logger

logger = get_logger(__name__)


class ProvisioningService:
    """
    Ties admission, the operation queue and the driver together.

    provision() admits synchronously, then hands the slow launch to the worker
    pool through a `create` queue entry and waits for that entry. The
    generated private key, if any, never leaves this call except in the
    returned result.
    """

    def __init__(
        self,
        admission: AdmissionService,
        queue: OperationQueueManager,
        lifecycle: ContainerLifecycleManager,
        driver: ProvisioningDriver,
        wait_timeout: Optional[float] = None,
        wait_poll_interval: float = 0.5
    ):
        self.admission = admission
        self.queue = queue
        self.lifecycle = lifecycle
        self.driver = driver
        self.wait_timeout = settings.PROVISION_WAIT_TIMEOUT_SECONDS if wait_timeout is None else wait_timeout
        self.wait_poll_interval = wait_poll_interval

    def _result(
        self,
        container: ContainerModel,
        private_key: Optional[str],
        generated: bool
    ) -> ProvisioningResult:
        return ProvisioningResult(
            container_id=container.id,
            name=container.name,
            status=ContainerStatus(container.status),
            ip_address=container.ip_address,
            ssh=SSHConnection(
                host=container.ip_address,
                port=self.driver.ssh_port,
                user=self.driver.ssh_user
            ),
            private_key=private_key,
            generated_key=generated,
            host_key=(container.meta or {}).get("host_key"),
            installed=describe_dependencies((container.meta or {}).get("dependencies", []))
        )

    async def provision(
        self,
        request: ProvisionRequest,
        actor_id: Optional[int] = None,
        use_queue: bool = True
    ) -> ProvisioningResult:
        """
        Admit and launch a container.

        Args:
            request: What to provision and for whom
            actor_id: Who is asking (defaults to the requesting user)
            use_queue: False runs the driver in this task instead of the worker pool

        Raises:
            QuotaExceeded: Rejected at admission
            LockTimeout: Admission lock unavailable
            ProvisioningError: Launch or readiness failed; the container is failed
        """
        actor_id = actor_id or request.user_id
        name = request.name or generate_container_name()
        credentials = self.driver.prepare_credentials(request.ssh_public_key, comment=name)

        container = await self.admission.admit(
            request.requester,
            name,
            request.demand,
            request.dependencies,
            image=self.driver.image,
            actor_id=actor_id
        )

        if not use_queue:
            result = await self.driver.provision(
                container.id,
                container.name,
                request.demand,
                request.dependencies,
                credentials.public_key,
                actor_id=actor_id
            )
            return result.model_copy(update={
                "private_key": credentials.private_key,
                "generated_key": credentials.generated
            })

        entry_id = await self.queue.enqueue(
            container.id,
            OperationType.CREATE,
            payload={
                "dependencies": list(request.dependencies),
                "public_key": credentials.public_key,
                "actor_id": actor_id
            }
        )
        entry = await self.queue.wait_for(
            entry_id,
            timeout=self.wait_timeout,
            poll_interval=self.wait_poll_interval
        )
        container = await self.lifecycle.get_container(container.id)

        if OperationStatus(entry.status) == OperationStatus.FAILED:
            raise OperationRetryExhausted(
                entry.id,
                OperationType.CREATE.value,
                entry.attempts,
                last_error=entry.last_error
            )
        if ContainerStatus(container.status) != ContainerStatus.RUNNING or not container.ip_address:
            raise ProvisioningError(
                f"Container {container.name} finished creation in status {ContainerStatus(container.status).value}",
                container_name=container.name
            )

        logger.info(
            "container_provisioned",
            container_id=container.id,
            name=container.name,
            ip_address=container.ip_address,
            generated_key=credentials.generated
        )
        return self._result(container, credentials.private_key, credentials.generated)

    async def request_operation(
        self,
        container_id: int,
        operation: OperationType,
        actor_id: int,
        payload: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Queue start/stop/snapshot/delete for an existing container.

        Returns:
            The queue entry ID
        """
        operation = OperationType(operation)
        if operation == OperationType.CREATE:
            raise ValueError("create operations are issued by provision()")

        container = await self.lifecycle.get_container(container_id)
        if container.removed_at is not None:
            raise ContainerNotFound(f"Container {container_id} has been removed")
        status = ContainerStatus(container.status)
        # Only delete may overtake a container that is still being created
        if status in (ContainerStatus.CREATING, ContainerStatus.DELETING) and operation != OperationType.DELETE:
            raise InvalidTransition(container_id, status.value, operation.value)

        entry_id = await self.queue.enqueue(
            container_id,
            operation,
            payload={**(payload or {}), "actor_id": actor_id}
        )
        logger.info(
            "operation_requested",
            container_id=container_id,
            operation=operation.value,
            entry_id=entry_id,
            actor_id=actor_id
        )
        return entry_id

    async def ssh_target(self, container_id: int) -> SSHConnection:
        """Connection tuple for the shell relay; only available while running"""
        container = await self.lifecycle.get_container(container_id)
        status = ContainerStatus(container.status)
        if status != ContainerStatus.RUNNING or not container.ip_address:
            raise ContainerNotReady(container_id, status.value)
        return SSHConnection(
            host=container.ip_address,
            port=self.driver.ssh_port,
            user=self.driver.ssh_user
        )
