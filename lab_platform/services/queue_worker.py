"""Queue Worker Pool - executes operation queue entries against the runtime"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.models.container import ContainerModel, ContainerStatus, SnapshotModel
from lab_platform.models.operation_queue import OperationStatus, OperationType
from lab_platform.schemas.quota import ResourceDemand
from lab_platform.services.container_lifecycle import ContainerLifecycleManager, is_valid_transition
from lab_platform.services.event_sink import EventSink, LabEvent, LabEventType, dispatch_event
from lab_platform.services.operation_queue import OperationQueueManager, QueuedOperation
from lab_platform.services.provisioning_driver import ProvisioningDriver
from lab_platform.core.config import settings
from lab_platform.core.exceptions import ContainerNotFound, InvalidTransition, OperationRetryExhausted
from lab_platform.core.logging_config import get_logger
from lab_platform.core.monitoring import (
    queue_operations_total,
    queue_operation_duration_seconds,
    queue_workers_busy
)

logger = get_logger(__name__)

Handler = Callable[[ContainerModel, QueuedOperation], Awaitable[Dict[str, Any]]]


class OperationExecutor:
    """
    Maps each operation type to a handler.

    Handlers check the target status before calling the runtime, so an
    operation that the lifecycle would refuse never reaches the host.
    """

    def __init__(
        self,
        driver: ProvisioningDriver,
        lifecycle: ContainerLifecycleManager,
        session_factory: Callable[[], AsyncSession]
    ):
        self.driver = driver
        self.runtime = driver.runtime
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self._handlers: Dict[OperationType, Handler] = {
            OperationType.CREATE: self._create,
            OperationType.START: self._start,
            OperationType.STOP: self._stop,
            OperationType.SNAPSHOT: self._snapshot,
            OperationType.DELETE: self._delete,
        }

    async def execute(self, op: QueuedOperation) -> Dict[str, Any]:
        container = await self.lifecycle.get_container(op.container_id)
        handler = self._handlers[op.operation]
        return await handler(container, op)

    @staticmethod
    def _require_transition(container: ContainerModel, new_status: ContainerStatus) -> None:
        old_status = ContainerStatus(container.status)
        if not is_valid_transition(old_status, new_status):
            raise InvalidTransition(container.id, old_status.value, new_status.value)

    async def _create(self, container: ContainerModel, op: QueuedOperation) -> Dict[str, Any]:
        status = ContainerStatus(container.status)
        if status == ContainerStatus.RUNNING:
            # A previous attempt got this far before its entry was marked
            return {"ip_address": container.ip_address}
        if status != ContainerStatus.CREATING:
            raise InvalidTransition(container.id, status.value, ContainerStatus.RUNNING.value)

        demand = ResourceDemand(
            cpu=container.cpu,
            memory_mb=container.memory_mb,
            disk_mb=container.disk_mb
        )
        outcome = await self.driver.bring_up(
            container.name,
            demand,
            op.payload.get("dependencies", []),
            op.payload["public_key"]
        )
        await self.driver.mark_running(
            container.id,
            container.name,
            outcome,
            actor_id=op.payload.get("actor_id")
        )
        return {"ip_address": outcome.ip_address, "host_key": outcome.host_key}

    async def _start(self, container: ContainerModel, op: QueuedOperation) -> Dict[str, Any]:
        status = ContainerStatus(container.status)
        if status == ContainerStatus.RUNNING:
            return {}
        # Only the create handler may take a container out of creating
        if status != ContainerStatus.STOPPED:
            raise InvalidTransition(container.id, status.value, ContainerStatus.RUNNING.value)
        await self.runtime.start(container.name)
        await self.lifecycle.transition(
            container.id,
            ContainerStatus.RUNNING,
            actor_id=op.payload.get("actor_id"),
            reason="started"
        )
        return {}

    async def _stop(self, container: ContainerModel, op: QueuedOperation) -> Dict[str, Any]:
        self._require_transition(container, ContainerStatus.STOPPED)
        await self.runtime.stop(container.name)
        await self.lifecycle.transition(
            container.id,
            ContainerStatus.STOPPED,
            actor_id=op.payload.get("actor_id"),
            reason="stopped"
        )
        return {}

    async def _snapshot(self, container: ContainerModel, op: QueuedOperation) -> Dict[str, Any]:
        snapshot_name = op.payload.get("snapshot_name") or (
            f"snap-{datetime.utcnow().strftime('%Y%m%d%H%M%S')}"
        )
        await self.runtime.snapshot(container.name, snapshot_name)

        async with self.session_factory() as session:
            session.add(SnapshotModel(
                container_id=container.id,
                snapshot_name=snapshot_name,
                created_by=op.payload.get("actor_id"),
                notes=op.payload.get("notes")
            ))
            await session.commit()

        logger.info(
            "container_snapshot_recorded",
            container_id=container.id,
            snapshot_name=snapshot_name
        )
        return {"snapshot_name": snapshot_name}

    async def _delete(self, container: ContainerModel, op: QueuedOperation) -> Dict[str, Any]:
        actor_id = op.payload.get("actor_id")
        await self.lifecycle.transition(
            container.id,
            ContainerStatus.DELETING,
            actor_id=actor_id,
            reason="delete requested"
        )
        await self.runtime.delete(container.name)
        await self.lifecycle.mark_removed(container.id, actor_id=actor_id)
        return {}


class QueueWorkerPool:
    """
    Pool of asyncio workers draining the operation queue.

    Responsibilities:
    - Run `concurrency` dequeue -> execute -> mark loops
    - Move a container to failed exactly once when its operation is exhausted
    - Periodically fail containers stuck in creating
    - Shut down gracefully on stop()
    """

    def __init__(
        self,
        queue: OperationQueueManager,
        executor: OperationExecutor,
        lifecycle: ContainerLifecycleManager,
        event_sink: Optional[EventSink] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stalled_sweep_interval: Optional[float] = None,
        stalled_after: Optional[float] = None
    ):
        self.queue = queue
        self.executor = executor
        self.lifecycle = lifecycle
        self.event_sink = event_sink
        self.concurrency = concurrency or settings.QUEUE_WORKER_CONCURRENCY
        self.poll_interval = poll_interval or settings.QUEUE_POLL_INTERVAL_SECONDS
        self.stalled_sweep_interval = stalled_sweep_interval or settings.STALLED_SWEEP_INTERVAL_SECONDS
        self.stalled_after = stalled_after or settings.PROVISION_WAIT_TIMEOUT_SECONDS
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Spawn the worker tasks and the stalled-container sweep"""
        if self.running:
            logger.warning("queue_worker_pool_already_running")
            return

        self._shutdown_event.clear()
        released = await self.queue.release_stale_claims(timedelta(seconds=self.stalled_after))
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"queue-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="queue-stalled-sweep"))

        logger.info(
            "queue_worker_pool_started",
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
            released_claims=released
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the pool gracefully.

        Workers finish their current operation; anything still running after
        `timeout` seconds is cancelled.
        """
        if not self._tasks:
            logger.warning("queue_worker_pool_not_running")
            return

        logger.info("queue_worker_pool_stopping", timeout=timeout)
        self._shutdown_event.set()

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            logger.warning("queue_worker_pool_shutdown_timeout", pending=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._tasks = []
        logger.info("queue_worker_pool_stopped")

    async def _wait_or_shutdown(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if shutdown was requested meanwhile"""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self._shutdown_event.is_set()

    async def _worker_loop(self, index: int) -> None:
        logger.debug("queue_worker_started", worker=index)
        while not self._shutdown_event.is_set():
            try:
                op = await self.queue.dequeue_next()
                if op is None:
                    if await self._wait_or_shutdown(self.poll_interval):
                        break
                    continue
                await self.process(op)
            except Exception as e:
                logger.error(
                    "queue_worker_error",
                    worker=index,
                    error=str(e),
                    exc_info=True
                )
                # Avoid a tight error loop when the database is unavailable
                if await self._wait_or_shutdown(self.poll_interval):
                    break
        logger.debug("queue_worker_stopped", worker=index)

    async def _sweep_loop(self) -> None:
        while not await self._wait_or_shutdown(self.stalled_sweep_interval):
            try:
                await self.lifecycle.fail_stalled(timedelta(seconds=self.stalled_after))
            except Exception as e:
                logger.error("stalled_sweep_failed", error=str(e), exc_info=True)

    async def run_until_idle(self, max_operations: int = 1000) -> int:
        """
        Process due entries in this task until none is left.

        Entries whose retry is scheduled in the future are not waited for.

        Returns:
            Number of operations processed
        """
        processed = 0
        while processed < max_operations:
            op = await self.queue.dequeue_next()
            if op is None:
                break
            await self.process(op)
            processed += 1
        return processed

    async def process(self, op: QueuedOperation) -> OperationStatus:
        """
        Execute one claimed entry and record its outcome.

        Returns:
            COMPLETED, PENDING (retry scheduled) or FAILED
        """
        operation = op.operation.value
        logger.info("processing_operation", **op.to_dict())
        queue_workers_busy.inc()
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            result = await self.executor.execute(op)
        except asyncio.CancelledError:
            await asyncio.shield(self.queue.mark_failed(op.entry_id, "worker cancelled"))
            queue_operations_total.labels(operation=operation, outcome="cancelled").inc()
            raise
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            status = await self.queue.mark_failed(op.entry_id, str(e), retryable=retryable)
            if status == OperationStatus.FAILED:
                queue_operations_total.labels(operation=operation, outcome="failed").inc()
                await self._on_permanent_failure(op, e)
            else:
                queue_operations_total.labels(operation=operation, outcome="retry").inc()
            return status
        finally:
            queue_workers_busy.dec()
            queue_operation_duration_seconds.labels(operation=operation).observe(
                loop.time() - started
            )

        await self.queue.mark_completed(op.entry_id, details=result)
        queue_operations_total.labels(operation=operation, outcome="completed").inc()
        logger.info("operation_completed_successfully", **op.to_dict())
        return OperationStatus.COMPLETED

    async def _on_permanent_failure(self, op: QueuedOperation, error: Exception) -> None:
        """Fail the container once, or note the failure when it cannot move to failed"""
        entry = await self.queue.get_entry(op.entry_id)
        exhausted = OperationRetryExhausted(
            op.entry_id,
            op.operation.value,
            entry.attempts,
            last_error=entry.last_error
        )
        try:
            container = await self.lifecycle.get_container(op.container_id)
        except ContainerNotFound:
            logger.error(
                "operation_failed_container_missing",
                container_id=op.container_id,
                entry_id=op.entry_id,
                error=exhausted.message
            )
            return
        status = ContainerStatus(container.status)
        fail_container = (
            status != ContainerStatus.FAILED
            and is_valid_transition(status, ContainerStatus.FAILED)
            # A refused follow-up operation does not end a provisioning in progress
            and not (status == ContainerStatus.CREATING and op.operation != OperationType.CREATE)
        )

        if fail_container:
            await self.lifecycle.transition(
                op.container_id,
                ContainerStatus.FAILED,
                actor_id=op.payload.get("actor_id"),
                reason=exhausted.message,
                updates={"meta": {"last_error": exhausted.to_dict()}}
            )
        else:
            await self.lifecycle.record_metadata(
                op.container_id,
                last_operation_error=exhausted.to_dict()
            )
            logger.warning(
                "operation_failure_recorded_without_transition",
                container_id=op.container_id,
                status=status.value,
                operation=op.operation.value
            )

        await dispatch_event(self.event_sink, LabEvent(
            requester_id=container.user_id,
            event_type=LabEventType.OPERATION_FAILED,
            payload={
                "container_id": op.container_id,
                "entry_id": op.entry_id,
                "operation": op.operation.value,
                "attempts": entry.attempts,
                "error": str(error)
            }
        ))
