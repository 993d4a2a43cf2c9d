"""Wiring of the engine's services"""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.core.config import settings
from lab_platform.services.admission import AdmissionService
from lab_platform.services.container_lifecycle import ContainerLifecycleManager
from lab_platform.services.container_runtime import ContainerRuntime, create_runtime
from lab_platform.services.event_sink import EventSink, LoggingEventSink
from lab_platform.services.operation_queue import OperationQueueManager
from lab_platform.services.provisioning_driver import ProvisioningDriver
from lab_platform.services.provisioning_service import ProvisioningService
from lab_platform.services.queue_worker import OperationExecutor, QueueWorkerPool
from lab_platform.services.reservation_lock import LockBackend, ReservationLockCoordinator


@dataclass
class LabPlatform:
    """All engine services sharing one session factory, runtime and event sink"""
    session_factory: Callable[[], AsyncSession]
    runtime: ContainerRuntime
    event_sink: EventSink
    locks: ReservationLockCoordinator
    lifecycle: ContainerLifecycleManager
    queue: OperationQueueManager
    driver: ProvisioningDriver
    admission: AdmissionService
    workers: QueueWorkerPool
    provisioning: ProvisioningService


def build_platform(
    session_factory: Callable[[], AsyncSession],
    runtime: Optional[ContainerRuntime] = None,
    event_sink: Optional[EventSink] = None,
    lock_backend: Optional[LockBackend] = None,
    lock_retry_interval: Optional[float] = None,
    lock_timeout: Optional[float] = None,
    readiness_timeout: Optional[float] = None,
    readiness_poll_interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
    retry_backoff: Optional[float] = None,
    worker_concurrency: Optional[int] = None,
    worker_poll_interval: Optional[float] = None,
    wait_timeout: Optional[float] = None,
    wait_poll_interval: float = 0.5
) -> LabPlatform:
    """
    Build the service graph.

    Every argument left as None falls back to the corresponding setting.
    """
    runtime = runtime or create_runtime()
    event_sink = event_sink or LoggingEventSink()

    locks = ReservationLockCoordinator(
        backend=lock_backend,
        retry_interval=(
            settings.LOCK_RETRY_INTERVAL_SECONDS if lock_retry_interval is None else lock_retry_interval
        ),
        default_timeout=settings.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
    )
    lifecycle = ContainerLifecycleManager(session_factory, event_sink=event_sink)
    queue = OperationQueueManager(
        session_factory,
        max_attempts=max_attempts or settings.QUEUE_MAX_ATTEMPTS,
        backoff_base=settings.QUEUE_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff,
        backoff_max=settings.QUEUE_RETRY_BACKOFF_MAX_SECONDS
    )
    driver = ProvisioningDriver(
        runtime,
        lifecycle,
        readiness_timeout=readiness_timeout,
        poll_interval=readiness_poll_interval
    )
    admission = AdmissionService(
        session_factory,
        locks,
        lifecycle,
        event_sink=event_sink,
        lock_timeout=lock_timeout
    )
    workers = QueueWorkerPool(
        queue,
        OperationExecutor(driver, lifecycle, session_factory),
        lifecycle,
        event_sink=event_sink,
        concurrency=worker_concurrency,
        poll_interval=worker_poll_interval
    )
    provisioning = ProvisioningService(
        admission,
        queue,
        lifecycle,
        driver,
        wait_timeout=wait_timeout,
        wait_poll_interval=wait_poll_interval
    )

    return LabPlatform(
        session_factory=session_factory,
        runtime=runtime,
        event_sink=event_sink,
        locks=locks,
        lifecycle=lifecycle,
        queue=queue,
        driver=driver,
        admission=admission,
        workers=workers,
        provisioning=provisioning
    )
