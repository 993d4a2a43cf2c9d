"""Admission Service - quota-checked creation of container records"""

import secrets
from typing import Callable, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.models.container import ContainerModel, ContainerStatus
from lab_platform.schemas.quota import Requester, ResourceDemand, QuotaCheckResult
from lab_platform.services.container_lifecycle import ContainerLifecycleManager
from lab_platform.services.event_sink import EventSink, LabEvent, LabEventType, dispatch_event
from lab_platform.services.quota_ledger import QuotaLedger
from lab_platform.services.reservation_lock import ReservationLockCoordinator
from lab_platform.core.config import settings
from lab_platform.core.exceptions import QuotaExceeded, ContainerNameConflict
from lab_platform.core.logging_config import get_logger
from lab_platform.core.monitoring import admissions_total

logger = get_logger(__name__)


def generate_container_name(prefix: Optional[str] = None) -> str:
    """<prefix>-<6 hex chars>, e.g. lab-5f3a91"""
    return f"{prefix or settings.CONTAINER_NAME_PREFIX}-{secrets.token_hex(3)}"


class AdmissionService:
    """
    Admits provisioning requests.

    Under the requester's reservation lock, one transaction checks and
    reserves quota, inserts the container in `creating` and writes its first
    lifecycle row. Nothing slow happens while the lock is held.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        locks: ReservationLockCoordinator,
        lifecycle: ContainerLifecycleManager,
        event_sink: Optional[EventSink] = None,
        lock_timeout: Optional[float] = None
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.lifecycle = lifecycle
        self.event_sink = event_sink
        self.lock_timeout = settings.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout

    async def _decide(
        self,
        requester: Requester,
        name: str,
        demand: ResourceDemand,
        dependencies: Sequence[str],
        image: str,
        actor_id: Optional[int]
    ) -> Tuple[QuotaCheckResult, Optional[ContainerModel]]:
        async with self.session_factory() as session:
            check = await QuotaLedger(session).reserve(requester, demand)
            if not check.allowed:
                await session.rollback()
                return check, None

            container = ContainerModel(
                name=name,
                user_id=requester.user_id,
                team_id=requester.team_id,
                image=image,
                cpu=demand.cpu,
                memory_mb=demand.memory_mb,
                disk_mb=demand.disk_mb,
                status=ContainerStatus.CREATING,
                meta={"dependencies": list(dependencies)},
                usage_period=check.period_start,
                usage_released=False
            )
            session.add(container)
            try:
                await session.flush()
            except IntegrityError as e:
                await session.rollback()
                raise ContainerNameConflict(name) from e

            self.lifecycle.record_creation(session, container, actor_id)
            await session.commit()
            return check, container

    async def admit(
        self,
        requester: Requester,
        name: str,
        demand: ResourceDemand,
        dependencies: Sequence[str] = (),
        image: Optional[str] = None,
        actor_id: Optional[int] = None
    ) -> ContainerModel:
        """
        Reserve quota and create the container record.

        Returns:
            The new container, in `creating`

        Raises:
            LockTimeout: The requester's lock stayed busy past the timeout
            QuotaExceeded: The demand does not fit the applicable quota
            ContainerNameConflict: The name is already taken
        """
        image = image or settings.CONTAINER_IMAGE

        async def decide():
            return await self._decide(requester, name, demand, dependencies, image, actor_id)

        check, container = await self.locks.with_lock(requester, self.lock_timeout, decide)

        if container is None:
            admissions_total.labels(outcome="rejected").inc()
            logger.warning(
                "admission_rejected",
                user_id=requester.user_id,
                team_id=requester.team_id,
                exceeded_resource=check.exceeded_resource,
                quota_source=check.quota_source
            )
            await dispatch_event(self.event_sink, LabEvent(
                requester_id=requester.user_id,
                event_type=LabEventType.ADMISSION_REJECTED,
                payload={
                    "name": name,
                    "exceeded_resource": check.exceeded_resource,
                    "demand": demand.model_dump(),
                    "actor_id": actor_id
                }
            ))
            raise QuotaExceeded(
                requester.user_id,
                exceeded_resource=check.exceeded_resource,
                details={
                    "quota_source": check.quota_source,
                    "current_usage": check.current_usage,
                    "quota_limits": check.quota_limits,
                    "demand": demand.model_dump()
                }
            )

        admissions_total.labels(outcome="granted").inc()
        logger.info(
            "admission_granted",
            container_id=container.id,
            name=container.name,
            user_id=requester.user_id,
            team_id=requester.team_id,
            quota_source=check.quota_source
        )
        await dispatch_event(self.event_sink, LabEvent(
            requester_id=requester.user_id,
            event_type=LabEventType.ADMISSION_GRANTED,
            payload={
                "container_id": container.id,
                "name": container.name,
                "demand": demand.model_dump(),
                "actor_id": actor_id
            }
        ))
        await self.lifecycle.notify_created(container, actor_id=actor_id)
        return container
