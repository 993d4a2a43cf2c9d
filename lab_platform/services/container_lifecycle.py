"""Container Lifecycle State Machine - validated, audited status transitions"""

from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from sqlalchemy import select, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.models.container import (
    ContainerModel,
    ContainerLifecycleModel,
    ContainerStatus
)
from lab_platform.models.operation_queue import OperationQueueModel, OperationStatus
from lab_platform.services.event_sink import EventSink, LabEvent, LabEventType, dispatch_event
from lab_platform.services.quota_ledger import QuotaLedger
from lab_platform.core.exceptions import InvalidTransition, ContainerNotFound
from lab_platform.core.logging_config import get_logger
from lab_platform.core.monitoring import container_transitions_total

logger = get_logger(__name__)

S = ContainerStatus

# Self-transitions are allowed no-ops; every state may move to deleting.
ALLOWED_TRANSITIONS: Mapping[ContainerStatus, FrozenSet[ContainerStatus]] = MappingProxyType({
    S.CREATING: frozenset({S.CREATING, S.RUNNING, S.FAILED, S.DELETING}),
    S.RUNNING: frozenset({S.RUNNING, S.STOPPED, S.DELETING}),
    S.STOPPED: frozenset({S.STOPPED, S.RUNNING, S.DELETING}),
    S.FAILED: frozenset({S.FAILED, S.DELETING}),
    S.DELETING: frozenset({S.DELETING}),
})

# Entering one of these gives the container's reservation back to the ledger
RELEASING_STATES = frozenset({S.FAILED, S.DELETING})


def is_valid_transition(old_status: ContainerStatus, new_status: ContainerStatus) -> bool:
    return ContainerStatus(new_status) in ALLOWED_TRANSITIONS[ContainerStatus(old_status)]


def _status_value(status: Optional[ContainerStatus]) -> Optional[str]:
    if status is None:
        return None
    return ContainerStatus(status).value


class ContainerLifecycleManager:
    """
    Owns every status change of a Container row.

    Each transition runs in its own transaction: the row is locked, the move
    is validated against ALLOWED_TRANSITIONS before anything is mutated, and
    the status change, its audit row and any quota release commit together.
    Notification hooks run only after that commit.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        event_sink: Optional[EventSink] = None
    ):
        """
        Initialize Container Lifecycle Manager.

        Args:
            session_factory: Factory producing new AsyncSessions
            event_sink: Receiver for notification/audit events
        """
        self.session_factory = session_factory
        self.event_sink = event_sink

    # ========================================================================
    # Creation
    # ========================================================================

    @staticmethod
    def record_creation(
        session: AsyncSession,
        container: ContainerModel,
        actor_id: Optional[int],
        reason: str = "admitted"
    ) -> ContainerLifecycleModel:
        """
        Add the initial audit row for a freshly inserted container.

        Runs in the admission transaction; the caller commits.
        """
        entry = ContainerLifecycleModel(
            container_id=container.id,
            old_status=None,
            new_status=ContainerStatus(container.status),
            changed_by=actor_id,
            reason=reason
        )
        session.add(entry)
        return entry

    async def notify_created(self, container: ContainerModel, actor_id: Optional[int] = None) -> None:
        await dispatch_event(self.event_sink, LabEvent(
            requester_id=container.user_id,
            event_type=LabEventType.CREATED,
            payload={
                "container_id": container.id,
                "name": container.name,
                "status": _status_value(container.status),
                "actor_id": actor_id
            }
        ))

    # ========================================================================
    # Transitions
    # ========================================================================

    async def _load_for_update(self, session: AsyncSession, container_id: int) -> ContainerModel:
        stmt = (
            select(ContainerModel)
            .where(ContainerModel.id == container_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        container = result.scalar_one_or_none()
        if container is None:
            raise ContainerNotFound(f"Container {container_id} not found")
        return container

    async def _reject(
        self,
        container: ContainerModel,
        new_status: ContainerStatus,
        actor_id: Optional[int],
        reason: Optional[str]
    ) -> InvalidTransition:
        old_value = _status_value(container.status)
        container_transitions_total.labels(
            old_status=old_value,
            new_status=new_status.value,
            result="rejected"
        ).inc()
        logger.warning(
            "container_transition_rejected",
            container_id=container.id,
            old_status=old_value,
            new_status=new_status.value,
            actor_id=actor_id,
            reason=reason
        )
        await dispatch_event(self.event_sink, LabEvent(
            requester_id=container.user_id,
            event_type=LabEventType.TRANSITION_REJECTED,
            payload={
                "container_id": container.id,
                "old_status": old_value,
                "new_status": new_status.value,
                "actor_id": actor_id,
                "reason": reason
            }
        ))
        return InvalidTransition(container.id, old_value, new_status.value)

    async def transition(
        self,
        container_id: int,
        new_status: ContainerStatus,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
        updates: Optional[Dict[str, Any]] = None
    ) -> ContainerModel:
        """
        Move a container to `new_status`.

        Args:
            container_id: Container to change
            new_status: Target status
            actor_id: Who requested the change (None for the engine itself)
            reason: Free-text audit reason
            updates: Extra column values applied in the same commit; a
                "meta" entry is merged into the existing metadata

        Returns:
            The updated container

        Raises:
            ContainerNotFound: Unknown container
            InvalidTransition: Move not in the transition table; nothing is written
        """
        new_status = ContainerStatus(new_status)

        async with self.session_factory() as session:
            container = await self._load_for_update(session, container_id)
            old_status = ContainerStatus(container.status)

            if not is_valid_transition(old_status, new_status):
                error = await self._reject(container, new_status, actor_id, reason)
                await session.rollback()
                raise error

            now = datetime.utcnow()
            for column, value in (updates or {}).items():
                if column == "meta":
                    value = {**(container.meta or {}), **value}
                setattr(container, column, value)

            container.status = new_status
            if old_status != new_status:
                if new_status == S.RUNNING:
                    container.started_at = now
                elif new_status == S.STOPPED:
                    container.stopped_at = now

            session.add(ContainerLifecycleModel(
                container_id=container.id,
                old_status=old_status,
                new_status=new_status,
                changed_by=actor_id,
                reason=reason,
                changed_at=now
            ))

            if new_status in RELEASING_STATES:
                await QuotaLedger(session).release(container)

            await session.commit()

        container_transitions_total.labels(
            old_status=old_status.value,
            new_status=new_status.value,
            result="applied"
        ).inc()
        logger.info(
            "container_transitioned",
            container_id=container_id,
            name=container.name,
            old_status=old_status.value,
            new_status=new_status.value,
            actor_id=actor_id,
            reason=reason
        )

        if old_status != new_status:
            await dispatch_event(self.event_sink, LabEvent(
                requester_id=container.user_id,
                event_type=LabEventType.STATUS_CHANGED,
                payload={
                    "container_id": container.id,
                    "name": container.name,
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "ip_address": container.ip_address,
                    "actor_id": actor_id,
                    "reason": reason
                }
            ))

        return container

    async def try_transition(
        self,
        container_id: int,
        new_status: ContainerStatus,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[ContainerModel]:
        """Like transition(), but returns None instead of raising InvalidTransition"""
        try:
            return await self.transition(container_id, new_status, actor_id, reason, updates)
        except InvalidTransition:
            return None

    async def record_metadata(self, container_id: int, **entries: Any) -> ContainerModel:
        """Merge entries into the container's metadata without touching its status"""
        async with self.session_factory() as session:
            container = await self._load_for_update(session, container_id)
            meta = dict(container.meta or {})
            meta.update(entries)
            container.meta = meta
            await session.commit()
        return container

    async def mark_removed(self, container_id: int, actor_id: Optional[int] = None) -> ContainerModel:
        """Stamp removed_at once a deleting container's instance is gone"""
        async with self.session_factory() as session:
            container = await self._load_for_update(session, container_id)
            if ContainerStatus(container.status) != S.DELETING:
                raise InvalidTransition(
                    container_id,
                    _status_value(container.status),
                    "removed"
                )
            container.removed_at = datetime.utcnow()
            await session.commit()

        logger.info("container_removed", container_id=container_id, actor_id=actor_id)
        return container

    async def fail_stalled(self, older_than: timedelta) -> List[int]:
        """
        Fail `creating` containers that nothing is going to finish.

        A container is stalled when it was created before the cutoff and has
        no pending or in-progress queue entry.

        Returns:
            IDs of containers moved to failed
        """
        cutoff = datetime.utcnow() - older_than
        live_entry = exists().where(and_(
            OperationQueueModel.container_id == ContainerModel.id,
            OperationQueueModel.status.in_([OperationStatus.PENDING, OperationStatus.IN_PROGRESS])
        ))

        async with self.session_factory() as session:
            stmt = select(ContainerModel.id).where(
                ContainerModel.status == S.CREATING,
                ContainerModel.created_at < cutoff,
                ~live_entry
            )
            result = await session.execute(stmt)
            stalled_ids = list(result.scalars().all())

        failed = []
        for container_id in stalled_ids:
            container = await self.try_transition(
                container_id,
                S.FAILED,
                reason="stalled in creating without a live operation"
            )
            if container is not None:
                failed.append(container_id)

        if failed:
            logger.warning("stalled_containers_failed", container_ids=failed)
        return failed

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_container(self, container_id: int) -> ContainerModel:
        async with self.session_factory() as session:
            container = await session.get(ContainerModel, container_id)
            if container is None:
                raise ContainerNotFound(f"Container {container_id} not found")
            return container

    async def get_history(self, container_id: int) -> List[ContainerLifecycleModel]:
        """Audit rows for a container, oldest first"""
        async with self.session_factory() as session:
            if await session.get(ContainerModel, container_id) is None:
                raise ContainerNotFound(f"Container {container_id} not found")
            stmt = (
                select(ContainerLifecycleModel)
                .where(ContainerLifecycleModel.container_id == container_id)
                .order_by(ContainerLifecycleModel.changed_at, ContainerLifecycleModel.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_containers(
        self,
        user_id: Optional[int] = None,
        status: Optional[ContainerStatus] = None,
        include_removed: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[ContainerModel]:
        async with self.session_factory() as session:
            stmt = select(ContainerModel)
            if user_id is not None:
                stmt = stmt.where(ContainerModel.user_id == user_id)
            if status is not None:
                stmt = stmt.where(ContainerModel.status == ContainerStatus(status))
            if not include_removed:
                stmt = stmt.where(ContainerModel.removed_at.is_(None))
            stmt = stmt.order_by(ContainerModel.created_at.desc(), ContainerModel.id.desc())
            stmt = stmt.limit(limit).offset(offset)
            result = await session.execute(stmt)
            return list(result.scalars().all())
