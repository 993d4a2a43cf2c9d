"""Provisioning Driver - launches a lab container and waits until it is reachable"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence

from lab_platform.core.config import settings
from lab_platform.core.exceptions import (
    InvalidTransition,
    ProvisioningError,
    ProvisioningTimeout,
    ProvisioningCancelled,
    LaunchFailure,
    RuntimeCommandError
)
from lab_platform.core.logging_config import get_logger
from lab_platform.core.monitoring import provisioning_total, readiness_wait_seconds
from lab_platform.models.container import ContainerModel, ContainerStatus
from lab_platform.schemas.container import ProvisioningResult, SSHConnection
from lab_platform.schemas.quota import ResourceDemand
from lab_platform.services import boot_config, ssh_credentials
from lab_platform.services.container_lifecycle import ContainerLifecycleManager
from lab_platform.services.container_runtime import ContainerRuntime

logger = get_logger(__name__)

HOST_KEY_COMMAND = ("ssh-keyscan", "-t", "ed25519", "localhost")


@dataclass
class BringUpOutcome:
    """What a successful launch + readiness wait observed"""
    ip_address: str
    host_key: Optional[str] = None


class ProvisioningDriver:
    """
    Turns an admitted container into a running, reachable instance.

    Steps, in order:
    1. Credential preparation (caller key or a fresh in-memory keypair)
    2. Boot configuration (cloud-init with catalog dependencies)
    3. Launch through the container runtime
    4. Readiness wait for a global IPv4 address, then best-effort host key

    A failed or abandoned launch is always torn down, so the same name can be
    launched again on retry.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        lifecycle: ContainerLifecycleManager,
        image: Optional[str] = None,
        ssh_user: Optional[str] = None,
        ssh_port: Optional[int] = None,
        readiness_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None
    ):
        self.runtime = runtime
        self.lifecycle = lifecycle
        self.image = image or settings.CONTAINER_IMAGE
        self.ssh_user = ssh_user or settings.SSH_USER
        self.ssh_port = ssh_port or settings.SSH_PORT
        self.readiness_timeout = (
            settings.READINESS_TIMEOUT_SECONDS if readiness_timeout is None else readiness_timeout
        )
        self.poll_interval = (
            settings.READINESS_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )

    # ========================================================================
    # Steps
    # ========================================================================

    @staticmethod
    def prepare_credentials(
        user_public_key: Optional[str],
        comment: str = "lab-platform"
    ) -> ssh_credentials.SSHKeyMaterial:
        return ssh_credentials.prepare_credentials(user_public_key, comment=comment)

    def build_boot_config(self, dependencies: Sequence[str], public_key: str) -> str:
        return boot_config.build_boot_config(dependencies, public_key, ssh_user=self.ssh_user)

    async def launch(
        self,
        name: str,
        config: str,
        demand: Optional[ResourceDemand] = None
    ) -> None:
        """
        Raises:
            LaunchFailure: The runtime could not create the instance
        """
        logger.info("container_launching", container_name=name, image=self.image)
        try:
            await self.runtime.launch(name, self.image, config, limits=demand)
        except LaunchFailure:
            raise
        except ProvisioningError as e:
            raise LaunchFailure(e.message, container_name=name, details=e.details) from e

    async def wait_for_address(self, name: str) -> str:
        """
        Poll the runtime until the instance reports a global IPv4 address.

        Raises:
            ProvisioningTimeout: No address within the readiness window
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.readiness_timeout
        polls = 0

        while True:
            polls += 1
            try:
                state = await self.runtime.query_state(name)
                address = state.global_ipv4()
            except RuntimeCommandError as e:
                logger.warning(
                    "container_state_query_failed",
                    container_name=name,
                    error=e.message
                )
                address = None

            if address:
                waited = loop.time() - started
                readiness_wait_seconds.observe(waited)
                logger.info(
                    "container_address_ready",
                    container_name=name,
                    ip_address=address,
                    polls=polls,
                    waited_seconds=round(waited, 3)
                )
                return address

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningTimeout(
                    f"Timed out waiting for container {name} to get an address",
                    container_name=name,
                    details={"timeout_seconds": self.readiness_timeout, "polls": polls}
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def fetch_host_key(self, name: str) -> Optional[str]:
        """Host public key as printed by ssh-keyscan, or None when unavailable"""
        try:
            output = await self.runtime.exec_command(name, list(HOST_KEY_COMMAND))
        except ProvisioningError as e:
            logger.info("host_key_unavailable", container_name=name, error=e.message)
            return None
        lines: List[str] = [
            line for line in output.strip().splitlines()
            if line.strip() and not line.startswith("#")
        ]
        return "\n".join(lines) or None

    async def teardown(self, name: str) -> bool:
        """
        Delete a partially created instance.

        Returns:
            True when the runtime confirmed removal
        """
        try:
            await self.runtime.delete(name)
        except Exception as e:
            # The original failure is what the caller needs to see
            logger.error(
                "container_teardown_failed",
                container_name=name,
                error=str(e),
                exc_info=True
            )
            return False
        logger.info("container_torn_down", container_name=name)
        return True

    # ========================================================================
    # Orchestration
    # ========================================================================

    async def bring_up(
        self,
        name: str,
        demand: Optional[ResourceDemand],
        dependencies: Sequence[str],
        public_key: str
    ) -> BringUpOutcome:
        """
        Boot config, launch and readiness wait, without touching container status.

        On any failure or cancellation the instance is torn down before the
        error propagates.
        """
        config = self.build_boot_config(dependencies, public_key)
        try:
            await self.launch(name, config, demand)
            ip_address = await self.wait_for_address(name)
        except (Exception, asyncio.CancelledError):
            await asyncio.shield(self.teardown(name))
            raise

        host_key = await self.fetch_host_key(name)
        return BringUpOutcome(ip_address=ip_address, host_key=host_key)

    async def mark_running(
        self,
        container_id: int,
        name: str,
        outcome: BringUpOutcome,
        actor_id: Optional[int] = None
    ) -> ContainerModel:
        """
        Move a brought-up container to running.

        When the row can no longer take the move, for example because a
        delete landed while the launch was in flight, the instance is torn
        down before the error propagates.
        """
        try:
            return await self.lifecycle.transition(
                container_id,
                ContainerStatus.RUNNING,
                actor_id=actor_id,
                reason="provisioned",
                updates={
                    "ip_address": outcome.ip_address,
                    "meta": {"host_key": outcome.host_key, "ssh_user": self.ssh_user}
                }
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(
                "provisioned_container_discarded",
                container_id=container_id,
                container_name=name,
                error=str(e) or type(e).__name__
            )
            await asyncio.shield(self.teardown(name))
            raise

    async def _mark_failed(
        self,
        container_id: int,
        actor_id: Optional[int],
        reason: str,
        error: ProvisioningError
    ) -> None:
        await self.lifecycle.try_transition(
            container_id,
            ContainerStatus.FAILED,
            actor_id=actor_id,
            reason=reason,
            updates={"meta": {"last_error": error.to_dict()}}
        )

    async def provision(
        self,
        container_id: int,
        name: str,
        demand: Optional[ResourceDemand],
        dependencies: Sequence[str],
        user_public_key: Optional[str],
        actor_id: Optional[int] = None
    ) -> ProvisioningResult:
        """
        Run all four steps for an admitted container.

        Ends with the container `running` and a result, or `failed` and an error.

        Raises:
            LaunchFailure: Runtime refused the launch
            ProvisioningTimeout: No address within the readiness window
            ProvisioningCancelled: The caller cancelled while launching or waiting
        """
        credentials = self.prepare_credentials(user_public_key, comment=name)

        try:
            outcome = await self.bring_up(name, demand, dependencies, credentials.public_key)
        except asyncio.CancelledError:
            error = ProvisioningCancelled("Provisioning was cancelled", container_name=name)
            await asyncio.shield(
                self._mark_failed(container_id, actor_id, "provisioning cancelled", error)
            )
            provisioning_total.labels(outcome="cancelled").inc()
            logger.warning("provisioning_cancelled", container_id=container_id, container_name=name)
            raise error
        except ProvisioningTimeout as e:
            await self._mark_failed(container_id, actor_id, "readiness timeout", e)
            provisioning_total.labels(outcome="timeout").inc()
            logger.error(
                "provisioning_timed_out",
                container_id=container_id,
                container_name=name,
                details=e.details
            )
            raise
        except LaunchFailure as e:
            await self._mark_failed(container_id, actor_id, "launch failed", e)
            provisioning_total.labels(outcome="launch_failure").inc()
            logger.error(
                "provisioning_launch_failed",
                container_id=container_id,
                container_name=name,
                error=e.message,
                details=e.details
            )
            raise
        except Exception as e:
            error = ProvisioningError(f"Provisioning failed: {e}", container_name=name)
            await self._mark_failed(container_id, actor_id, "provisioning error", error)
            provisioning_total.labels(outcome="error").inc()
            logger.error(
                "provisioning_failed",
                container_id=container_id,
                container_name=name,
                error=str(e),
                exc_info=True
            )
            raise error from e

        try:
            container = await self.mark_running(container_id, name, outcome, actor_id=actor_id)
        except InvalidTransition:
            provisioning_total.labels(outcome="discarded").inc()
            raise
        provisioning_total.labels(outcome="ready").inc()

        return ProvisioningResult(
            container_id=container.id,
            name=container.name,
            status=ContainerStatus(container.status),
            ip_address=outcome.ip_address,
            ssh=SSHConnection(host=outcome.ip_address, port=self.ssh_port, user=self.ssh_user),
            private_key=credentials.private_key,
            generated_key=credentials.generated,
            host_key=outcome.host_key,
            installed=boot_config.describe_dependencies(dependencies)
        )
