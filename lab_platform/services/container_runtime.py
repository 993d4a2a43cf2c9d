"""Container Runtime - narrow interface to the VM/container host

The engine only relies on launch/query/exec plus the lifecycle verbs used by
the operation queue. It never depends on a specific runtime's full API.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from lab_platform.core.config import settings
from lab_platform.core.exceptions import LaunchFailure, RuntimeCommandError
from lab_platform.core.logging_config import get_logger
from lab_platform.schemas.quota import ResourceDemand

logger = get_logger(__name__)


@dataclass
class NetworkAddress:
    """One address bound to an instance interface"""
    address: str
    family: str  # inet, inet6
    scope: str  # global, link, local


@dataclass
class NetworkInterface:
    name: str
    addresses: List[NetworkAddress] = field(default_factory=list)


@dataclass
class RuntimeState:
    """Instance state as reported by the runtime"""
    status: str
    network_interfaces: List[NetworkInterface] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        return self.status != "not_found"

    def global_ipv4(self) -> Optional[str]:
        """First IPv4 address with global scope, if the instance has one"""
        for interface in self.network_interfaces:
            for addr in interface.addresses:
                if addr.family == "inet" and addr.scope == "global" and addr.address:
                    return addr.address
        return None


class ContainerRuntime(ABC):
    """
    Abstract runtime interface.

    Implementations raise LaunchFailure from launch() and RuntimeCommandError
    from every other verb. delete() must succeed for an instance that does
    not exist so teardown can be retried safely.
    """

    @abstractmethod
    async def launch(
        self,
        name: str,
        image: str,
        boot_config: str,
        limits: Optional[ResourceDemand] = None
    ) -> None:
        """Create and boot an instance with the given cloud-init user-data"""
        ...

    @abstractmethod
    async def query_state(self, name: str) -> RuntimeState:
        ...

    @abstractmethod
    async def exec_command(self, name: str, cmd: Sequence[str]) -> str:
        """Run a command inside the instance and return its stdout"""
        ...

    @abstractmethod
    async def start(self, name: str) -> None:
        ...

    @abstractmethod
    async def stop(self, name: str) -> None:
        ...

    @abstractmethod
    async def snapshot(self, name: str, snapshot_name: str) -> None:
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        ...


class LxcRuntime(ContainerRuntime):
    """Runtime backed by the `lxc` command line client"""

    def __init__(
        self,
        binary: str = "lxc",
        command_timeout: float = 300.0
    ):
        self.binary = binary
        self.command_timeout = command_timeout

    async def _run(self, *args: str) -> str:
        """
        Run an lxc subcommand and capture stdout.

        Raises:
            RuntimeCommandError: On non-zero exit or timeout
        """
        process = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RuntimeCommandError(
                f"{self.binary} {args[0]} timed out after {self.command_timeout}s"
            )
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            raise RuntimeCommandError(
                f"{self.binary} {' '.join(args[:2])} exited {process.returncode}",
                details={"stderr": stderr.decode(errors="replace").strip()}
            )
        return stdout.decode(errors="replace").strip()

    async def launch(
        self,
        name: str,
        image: str,
        boot_config: str,
        limits: Optional[ResourceDemand] = None
    ) -> None:
        args = ["launch", image, name, "-c", f"user.user-data={boot_config}"]
        if limits is not None:
            args += [
                "-c", f"limits.cpu={limits.cpu}",
                "-c", f"limits.memory={limits.memory_mb}MB",
                "-d", f"root,size={limits.disk_mb}MB",
            ]
        try:
            await self._run(*args)
        except RuntimeCommandError as e:
            raise LaunchFailure(
                f"LXC launch failed: {e.message}",
                container_name=name,
                details=e.details
            ) from e

        logger.info("lxc_instance_launched", container_name=name, image=image)

    async def query_state(self, name: str) -> RuntimeState:
        output = await self._run("list", name, "--format", "json")
        try:
            entries = json.loads(output or "[]")
        except json.JSONDecodeError:
            logger.warning("lxc_list_unparseable", container_name=name)
            return RuntimeState(status="unknown")

        # `lxc list <name>` matches by prefix, keep the exact instance only
        entry = next((e for e in entries if e.get("name") == name), None)
        if entry is None:
            return RuntimeState(status="not_found")

        state = entry.get("state") or {}
        interfaces = []
        for iface_name, iface in (state.get("network") or {}).items():
            addresses = [
                NetworkAddress(
                    address=a.get("address", ""),
                    family=a.get("family", ""),
                    scope=a.get("scope", "")
                )
                for a in iface.get("addresses") or []
            ]
            interfaces.append(NetworkInterface(name=iface_name, addresses=addresses))

        return RuntimeState(
            status=str(entry.get("status", "unknown")).lower(),
            network_interfaces=interfaces
        )

    async def exec_command(self, name: str, cmd: Sequence[str]) -> str:
        return await self._run("exec", name, "--", *cmd)

    async def start(self, name: str) -> None:
        await self._run("start", name)

    async def stop(self, name: str) -> None:
        await self._run("stop", name)

    async def snapshot(self, name: str, snapshot_name: str) -> None:
        await self._run("snapshot", name, snapshot_name)

    async def delete(self, name: str) -> None:
        try:
            await self._run("delete", name, "--force")
        except RuntimeCommandError as e:
            stderr = str(e.details.get("stderr", "")).lower()
            if "not found" in stderr:
                logger.info("lxc_instance_already_absent", container_name=name)
                return
            raise


class SimulatedRuntime(ContainerRuntime):
    """
    In-memory runtime for development hosts without LXC.

    Instances report a 10.0.3.x global address after `polls_until_ready`
    state queries. `polls_until_ready=None` never reports one, and the first
    `launch_failures` launch calls fail.
    """

    def __init__(
        self,
        polls_until_ready: Optional[int] = 1,
        launch_failures: int = 0,
        host_key: Optional[str] = "localhost ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAISimulatedHostKey"
    ):
        self.polls_until_ready = polls_until_ready
        self.launch_failures = launch_failures
        self.host_key = host_key
        self.instances: Dict[str, Dict] = {}
        self.launch_calls: List[str] = []
        self.deleted: List[str] = []
        self.snapshots: Dict[str, List[str]] = {}
        self._next_host = 10

    async def launch(
        self,
        name: str,
        image: str,
        boot_config: str,
        limits: Optional[ResourceDemand] = None
    ) -> None:
        self.launch_calls.append(name)
        if self.launch_failures > 0:
            self.launch_failures -= 1
            raise LaunchFailure("Simulated launch failure", container_name=name)
        if name in self.instances:
            raise LaunchFailure(f"Instance {name} already exists", container_name=name)

        self.instances[name] = {
            "image": image,
            "boot_config": boot_config,
            "status": "running",
            "polls": 0,
            "address": f"10.0.3.{self._next_host}",
        }
        self._next_host = self._next_host % 250 + 1

    async def query_state(self, name: str) -> RuntimeState:
        instance = self.instances.get(name)
        if instance is None:
            return RuntimeState(status="not_found")

        instance["polls"] += 1
        addresses = [NetworkAddress(address="127.0.0.1", family="inet", scope="local")]
        ready = (
            self.polls_until_ready is not None
            and instance["status"] == "running"
            and instance["polls"] >= self.polls_until_ready
        )
        if ready:
            addresses.append(
                NetworkAddress(address=instance["address"], family="inet", scope="global")
            )
        return RuntimeState(
            status=instance["status"],
            network_interfaces=[NetworkInterface(name="eth0", addresses=addresses)]
        )

    def _require(self, name: str) -> Dict:
        instance = self.instances.get(name)
        if instance is None:
            raise RuntimeCommandError(f"Instance {name} not found", container_name=name)
        return instance

    async def exec_command(self, name: str, cmd: Sequence[str]) -> str:
        self._require(name)
        if cmd and cmd[0] == "ssh-keyscan":
            if self.host_key is None:
                raise RuntimeCommandError("ssh-keyscan failed", container_name=name)
            return self.host_key
        return ""

    async def start(self, name: str) -> None:
        self._require(name)["status"] = "running"

    async def stop(self, name: str) -> None:
        self._require(name)["status"] = "stopped"

    async def snapshot(self, name: str, snapshot_name: str) -> None:
        self._require(name)
        self.snapshots.setdefault(name, []).append(snapshot_name)

    async def delete(self, name: str) -> None:
        if self.instances.pop(name, None) is not None:
            self.deleted.append(name)


def create_runtime() -> ContainerRuntime:
    """Build the runtime selected by LXC_ENABLED"""
    if settings.LXC_ENABLED:
        return LxcRuntime(
            binary=settings.LXC_BINARY,
            command_timeout=settings.LXC_COMMAND_TIMEOUT_SECONDS
        )
    logger.warning("lxc_disabled_using_simulated_runtime")
    return SimulatedRuntime()
