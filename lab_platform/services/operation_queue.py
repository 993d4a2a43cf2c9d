"""Operation Queue Manager - durable queue of long-running container operations"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.models.operation_queue import (
    OperationQueueModel,
    OperationAuditModel,
    OperationStatus,
    OperationType
)
from lab_platform.core.exceptions import ContainerNotFound, ProvisioningTimeout
from lab_platform.core.logging_config import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = (OperationStatus.COMPLETED, OperationStatus.FAILED)

MAX_ERROR_LENGTH = 4000


class QueuedOperation:
    """A claimed queue entry, owned by exactly one worker until it is marked"""
    def __init__(
        self,
        entry_id: int,
        container_id: int,
        operation: OperationType,
        payload: Dict[str, Any],
        attempts: int
    ):
        self.entry_id = entry_id
        self.container_id = container_id
        self.operation = operation
        self.payload = payload
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "container_id": self.container_id,
            "operation": self.operation.value,
            "attempts": self.attempts
        }


class QueueStats:
    """Queue statistics"""
    def __init__(
        self,
        total_pending: int,
        total_in_progress: int,
        total_completed: int,
        total_failed: int
    ):
        self.total_pending = total_pending
        self.total_in_progress = total_in_progress
        self.total_completed = total_completed
        self.total_failed = total_failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pending": self.total_pending,
            "total_in_progress": self.total_in_progress,
            "total_completed": self.total_completed,
            "total_failed": self.total_failed
        }


class OperationQueueManager:
    """
    Manages the operation queue table.

    Entries are claimed with a conditional `pending -> in_progress` update so
    a single worker owns each one. A failed attempt goes back to `pending`
    with exponential backoff until `max_attempts` executions have failed,
    after which the entry is failed permanently.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0
    ):
        """
        Initialize Operation Queue Manager.

        Args:
            session_factory: Factory producing new AsyncSessions
            max_attempts: Total executions before an entry fails permanently
            backoff_base: Delay before the first retry (seconds), doubled per attempt
            backoff_max: Upper bound on the retry delay (seconds)
        """
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @staticmethod
    def _audit(
        session: AsyncSession,
        entry: OperationQueueModel,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        session.add(OperationAuditModel(
            operation_queue_id=entry.id,
            container_id=entry.container_id,
            action=action,
            details=details or {}
        ))

    def backoff_for(self, attempts: int) -> float:
        """Delay before the retry that follows `attempts` failed executions"""
        return min(self.backoff_base * (2 ** max(attempts - 1, 0)), self.backoff_max)

    # ========================================================================
    # Producer Side
    # ========================================================================

    async def enqueue(
        self,
        container_id: int,
        operation: OperationType,
        payload: Optional[Dict[str, Any]] = None,
        scheduled_at: Optional[datetime] = None
    ) -> int:
        """
        Add an operation for a container.

        Returns:
            The new entry ID
        """
        operation = OperationType(operation)
        async with self.session_factory() as session:
            entry = OperationQueueModel(
                container_id=container_id,
                operation=operation,
                payload=payload or {},
                status=OperationStatus.PENDING,
                attempts=0,
                scheduled_at=scheduled_at or datetime.utcnow()
            )
            session.add(entry)
            await session.flush()
            self._audit(session, entry, "enqueue")
            await session.commit()
            entry_id = entry.id

        logger.info(
            "operation_enqueued",
            entry_id=entry_id,
            container_id=container_id,
            operation=operation.value
        )
        return entry_id

    # ========================================================================
    # Consumer Side
    # ========================================================================

    async def _claim(self, session: AsyncSession, entry_id: int) -> bool:
        stmt = (
            update(OperationQueueModel)
            .where(
                OperationQueueModel.id == entry_id,
                OperationQueueModel.status == OperationStatus.PENDING
            )
            .values(status=OperationStatus.IN_PROGRESS, started_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def dequeue_next(self) -> Optional[QueuedOperation]:
        """
        Claim the due pending entry with the oldest scheduled_at.

        Returns:
            The claimed operation, or None when nothing is due
        """
        async with self.session_factory() as session:
            while True:
                now = datetime.utcnow()
                stmt = (
                    select(OperationQueueModel.id)
                    .where(
                        OperationQueueModel.status == OperationStatus.PENDING,
                        OperationQueueModel.scheduled_at <= now
                    )
                    .order_by(OperationQueueModel.scheduled_at.asc(), OperationQueueModel.id.asc())
                    .limit(1)
                )
                entry_id = (await session.execute(stmt)).scalar_one_or_none()
                if entry_id is None:
                    return None

                if not await self._claim(session, entry_id):
                    # Another worker won this entry; look for the next one
                    await session.rollback()
                    continue

                entry = await session.get(OperationQueueModel, entry_id, populate_existing=True)
                self._audit(session, entry, "start", {"attempt": entry.attempts + 1})
                await session.commit()

                logger.info(
                    "operation_dequeued",
                    entry_id=entry.id,
                    container_id=entry.container_id,
                    operation=OperationType(entry.operation).value,
                    attempts=entry.attempts
                )
                return QueuedOperation(
                    entry_id=entry.id,
                    container_id=entry.container_id,
                    operation=OperationType(entry.operation),
                    payload=dict(entry.payload or {}),
                    attempts=entry.attempts
                )

    async def mark_in_progress(self, entry_id: int) -> bool:
        """
        Claim a specific pending entry.

        Returns:
            True if this caller now owns the entry
        """
        async with self.session_factory() as session:
            claimed = await self._claim(session, entry_id)
            if claimed:
                entry = await session.get(OperationQueueModel, entry_id, populate_existing=True)
                self._audit(session, entry, "start", {"attempt": entry.attempts + 1})
            await session.commit()
        return claimed

    async def _load_for_update(self, session: AsyncSession, entry_id: int) -> OperationQueueModel:
        stmt = (
            select(OperationQueueModel)
            .where(OperationQueueModel.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = (await session.execute(stmt)).scalar_one_or_none()
        if entry is None:
            raise ContainerNotFound(f"Operation entry {entry_id} not found")
        return entry

    async def mark_completed(self, entry_id: int, details: Optional[Dict[str, Any]] = None) -> None:
        async with self.session_factory() as session:
            entry = await self._load_for_update(session, entry_id)
            entry.status = OperationStatus.COMPLETED
            entry.completed_at = datetime.utcnow()
            self._audit(session, entry, "complete", details)
            await session.commit()

        logger.info("operation_completed", entry_id=entry_id)

    async def mark_failed(
        self,
        entry_id: int,
        error: str,
        retryable: bool = True
    ) -> OperationStatus:
        """
        Record a failed execution.

        Args:
            entry_id: Entry that failed
            error: Error text kept in last_error
            retryable: False fails the entry now regardless of attempts left

        Returns:
            PENDING when the entry will be retried, FAILED when it is exhausted
        """
        error = (error or "")[:MAX_ERROR_LENGTH]
        async with self.session_factory() as session:
            entry = await self._load_for_update(session, entry_id)
            entry.attempts = (entry.attempts or 0) + 1
            entry.last_error = error

            if not retryable or entry.attempts >= self.max_attempts:
                entry.status = OperationStatus.FAILED
                entry.completed_at = datetime.utcnow()
                self._audit(
                    session,
                    entry,
                    "fail",
                    {"attempts": entry.attempts, "error": error, "retryable": retryable}
                )
                delay = None
            else:
                delay = self.backoff_for(entry.attempts)
                entry.status = OperationStatus.PENDING
                entry.started_at = None
                entry.scheduled_at = datetime.utcnow() + timedelta(seconds=delay)
                self._audit(
                    session,
                    entry,
                    "retry",
                    {"attempts": entry.attempts, "error": error, "backoff_seconds": delay}
                )

            status = OperationStatus(entry.status)
            attempts = entry.attempts
            await session.commit()

        if status == OperationStatus.FAILED:
            logger.error(
                "operation_failed_permanently",
                entry_id=entry_id,
                attempts=attempts,
                error=error
            )
        else:
            logger.warning(
                "operation_failed_retrying",
                entry_id=entry_id,
                attempts=attempts,
                max_attempts=self.max_attempts,
                backoff_seconds=delay,
                error=error
            )
        return status

    async def release_stale_claims(self, older_than: timedelta) -> int:
        """
        Return in_progress entries abandoned by a dead worker to pending.

        Returns:
            Number of entries released
        """
        cutoff = datetime.utcnow() - older_than
        async with self.session_factory() as session:
            stmt = (
                update(OperationQueueModel)
                .where(
                    OperationQueueModel.status == OperationStatus.IN_PROGRESS,
                    OperationQueueModel.started_at < cutoff
                )
                .values(status=OperationStatus.PENDING, started_at=None)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount:
            logger.warning("stale_operation_claims_released", count=result.rowcount)
        return result.rowcount

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_entry(self, entry_id: int) -> OperationQueueModel:
        async with self.session_factory() as session:
            entry = await session.get(OperationQueueModel, entry_id)
            if entry is None:
                raise ContainerNotFound(f"Operation entry {entry_id} not found")
            return entry

    async def wait_for(
        self,
        entry_id: int,
        timeout: float,
        poll_interval: float = 0.5
    ) -> OperationQueueModel:
        """
        Poll until the entry is completed or failed.

        Raises:
            ProvisioningTimeout: Entry still open after `timeout` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            entry = await self.get_entry(entry_id)
            if OperationStatus(entry.status) in TERMINAL_STATUSES:
                return entry
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningTimeout(
                    f"Operation entry {entry_id} did not finish within {timeout}s",
                    details={"entry_id": entry_id, "status": OperationStatus(entry.status).value}
                )
            await asyncio.sleep(min(poll_interval, remaining))

    async def list_for_container(self, container_id: int) -> List[OperationQueueModel]:
        async with self.session_factory() as session:
            stmt = (
                select(OperationQueueModel)
                .where(OperationQueueModel.container_id == container_id)
                .order_by(OperationQueueModel.created_at.asc(), OperationQueueModel.id.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_audit_trail(self, entry_id: int) -> List[OperationAuditModel]:
        async with self.session_factory() as session:
            stmt = (
                select(OperationAuditModel)
                .where(OperationAuditModel.operation_queue_id == entry_id)
                .order_by(OperationAuditModel.id.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_stats(self) -> QueueStats:
        """Entry counts by status"""
        async with self.session_factory() as session:
            stmt = select(
                OperationQueueModel.status,
                func.count(OperationQueueModel.id).label('count')
            ).group_by(OperationQueueModel.status)
            result = await session.execute(stmt)
            status_counts = {OperationStatus(row.status): row.count for row in result}

        return QueueStats(
            total_pending=status_counts.get(OperationStatus.PENDING, 0),
            total_in_progress=status_counts.get(OperationStatus.IN_PROGRESS, 0),
            total_completed=status_counts.get(OperationStatus.COMPLETED, 0),
            total_failed=status_counts.get(OperationStatus.FAILED, 0)
        )
