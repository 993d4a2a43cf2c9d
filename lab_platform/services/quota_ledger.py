"""Quota Ledger - admission checks and usage counters for lab containers"""

from datetime import date, datetime
from typing import Dict, Optional, Tuple

from sqlalchemy import select, update, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.models.container import ContainerModel
from lab_platform.models.quota import QuotaModel, UsageCounterModel
from lab_platform.schemas.quota import (
    Requester,
    ResourceDemand,
    QuotaCheckResult,
    QuotaUsage
)
from lab_platform.core.logging_config import get_logger

logger = get_logger(__name__)


def current_period() -> date:
    """Usage periods are UTC calendar days"""
    return datetime.utcnow().date()


class QuotaLedger:
    """
    Quota Ledger enforces per-user / per-team resource ceilings.

    Responsibilities:
    - Resolve the applicable quota (user record first, team record second)
    - Lazily create the current-period usage counter
    - Admit or reject a demand, incrementing counters only on admission
    - Release a container's reservation exactly once

    Every method works inside the caller's session and never commits, so the
    admission check and the container insert share one transaction under the
    caller's reservation lock.
    """

    def __init__(self, db_session: AsyncSession):
        """
        Initialize Quota Ledger.

        Args:
            db_session: Database session owned by the caller
        """
        self.db_session = db_session

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_applicable_quota(
        self,
        requester: Requester
    ) -> Tuple[Optional[QuotaModel], Optional[str]]:
        """
        Find the quota record that governs a requester.

        Returns:
            (quota, source) where source is "user", "team" or None when no
            record applies (unlimited)
        """
        stmt = select(QuotaModel).where(QuotaModel.user_id == requester.user_id).limit(1)
        result = await self.db_session.execute(stmt)
        quota = result.scalar_one_or_none()
        if quota is not None:
            return quota, "user"

        if requester.team_id is not None:
            stmt = select(QuotaModel).where(
                QuotaModel.team_id == requester.team_id,
                QuotaModel.user_id.is_(None)
            ).limit(1)
            result = await self.db_session.execute(stmt)
            quota = result.scalar_one_or_none()
            if quota is not None:
                return quota, "team"

        return None, None

    async def _get_counter(
        self,
        user_id: int,
        period: date,
        for_update: bool = False
    ) -> Optional[UsageCounterModel]:
        stmt = select(UsageCounterModel).where(
            UsageCounterModel.user_id == user_id,
            UsageCounterModel.period_start == period
        ).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db_session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_counter(
        self,
        requester: Requester,
        period: Optional[date] = None
    ) -> UsageCounterModel:
        """
        Load the period's usage counter, creating a zeroed row on first use.

        The insert runs in a savepoint; when another transaction created the
        row first, the savepoint is rolled back and that row is loaded instead.
        """
        period = period or current_period()
        counter = await self._get_counter(requester.user_id, period, for_update=True)
        if counter is not None:
            return counter

        counter = UsageCounterModel(
            user_id=requester.user_id,
            team_id=requester.team_id,
            period_start=period,
            cores_used=0,
            memory_mb_used=0,
            storage_mb_used=0,
            concurrent_containers=0
        )
        try:
            async with self.db_session.begin_nested():
                self.db_session.add(counter)
        except IntegrityError:
            logger.info(
                "usage_counter_insert_lost_race",
                user_id=requester.user_id,
                period_start=period.isoformat()
            )
            counter = await self._get_counter(requester.user_id, period, for_update=True)
            if counter is None:
                raise
            return counter

        logger.debug(
            "usage_counter_created",
            user_id=requester.user_id,
            period_start=period.isoformat()
        )
        return counter

    # ========================================================================
    # Admission
    # ========================================================================

    @staticmethod
    def _find_exceeded(
        quota: QuotaModel,
        counter: UsageCounterModel,
        demand: ResourceDemand
    ) -> Optional[str]:
        """Name of the first resource whose limit the demand would cross"""
        if quota.cores_limit is not None and counter.cores_used + demand.cpu > quota.cores_limit:
            return "cores"
        if quota.memory_mb_limit is not None and counter.memory_mb_used + demand.memory_mb > quota.memory_mb_limit:
            return "memory_mb"
        if quota.disk_mb_limit is not None and counter.storage_mb_used + demand.disk_mb > quota.disk_mb_limit:
            return "disk_mb"
        return None

    @staticmethod
    def _limits(quota: Optional[QuotaModel]) -> Optional[Dict[str, Optional[int]]]:
        if quota is None:
            return None
        return {
            "cores_limit": quota.cores_limit,
            "memory_mb_limit": quota.memory_mb_limit,
            "disk_mb_limit": quota.disk_mb_limit,
            "max_concurrent_containers": quota.max_concurrent_containers
        }

    @staticmethod
    def _usage(counter: UsageCounterModel) -> Dict[str, int]:
        return {
            "cores_used": counter.cores_used,
            "memory_mb_used": counter.memory_mb_used,
            "storage_mb_used": counter.storage_mb_used,
            "concurrent_containers": counter.concurrent_containers
        }

    async def reserve(
        self,
        requester: Requester,
        demand: ResourceDemand
    ) -> QuotaCheckResult:
        """
        Admit or reject a demand and, on admission, charge it to the counter.

        Rejection leaves the counter untouched. With no applicable quota the
        demand is always admitted but still recorded.

        Args:
            requester: Who the reservation is for
            demand: Resources to reserve

        Returns:
            QuotaCheckResult describing the decision
        """
        quota, source = await self.get_applicable_quota(requester)
        period = current_period()
        counter = await self.get_or_create_counter(requester, period)

        if quota is not None:
            exceeded = self._find_exceeded(quota, counter, demand)
            if exceeded is not None:
                logger.warning(
                    "quota_exceeded",
                    user_id=requester.user_id,
                    team_id=requester.team_id,
                    quota_source=source,
                    exceeded_resource=exceeded,
                    demand=demand.model_dump(),
                    usage=self._usage(counter)
                )
                return QuotaCheckResult(
                    allowed=False,
                    exceeded_resource=exceeded,
                    quota_source=source,
                    current_usage=self._usage(counter),
                    quota_limits=self._limits(quota),
                    period_start=period
                )

        stmt = (
            update(UsageCounterModel)
            .where(UsageCounterModel.id == counter.id)
            .values(
                cores_used=UsageCounterModel.cores_used + demand.cpu,
                memory_mb_used=UsageCounterModel.memory_mb_used + demand.memory_mb,
                storage_mb_used=UsageCounterModel.storage_mb_used + demand.disk_mb,
                concurrent_containers=UsageCounterModel.concurrent_containers + 1,
                updated_at=datetime.utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        await self.db_session.execute(stmt)
        await self.db_session.refresh(counter)

        logger.info(
            "quota_reserved",
            user_id=requester.user_id,
            team_id=requester.team_id,
            quota_source=source,
            cpu=demand.cpu,
            memory_mb=demand.memory_mb,
            disk_mb=demand.disk_mb
        )

        return QuotaCheckResult(
            allowed=True,
            quota_source=source,
            current_usage=self._usage(counter),
            quota_limits=self._limits(quota),
            period_start=period
        )

    async def check_and_reserve(
        self,
        requester: Requester,
        demand: ResourceDemand
    ) -> bool:
        """Admission decision as a plain boolean"""
        result = await self.reserve(requester, demand)
        return result.allowed

    # ========================================================================
    # Release
    # ========================================================================

    @staticmethod
    def _clamped_decrement(column, amount: int):
        return case((column - amount < 0, 0), else_=column - amount)

    async def release(self, container: ContainerModel) -> bool:
        """
        Give a container's demand back to the counter it was charged to.

        Idempotent per container: the `usage_released` flag is set in the same
        transaction, so a later failed -> deleting move does not release twice.

        Returns:
            True if counters were decremented
        """
        if container.usage_released:
            return False

        period = container.usage_period or container.created_at.date()
        counter = await self._get_counter(container.user_id, period, for_update=True)
        container.usage_released = True

        if counter is None:
            logger.warning(
                "usage_counter_missing_on_release",
                container_id=container.id,
                user_id=container.user_id,
                period_start=period.isoformat()
            )
            return False

        stmt = (
            update(UsageCounterModel)
            .where(UsageCounterModel.id == counter.id)
            .values(
                cores_used=self._clamped_decrement(UsageCounterModel.cores_used, container.cpu),
                memory_mb_used=self._clamped_decrement(UsageCounterModel.memory_mb_used, container.memory_mb),
                storage_mb_used=self._clamped_decrement(UsageCounterModel.storage_mb_used, container.disk_mb),
                concurrent_containers=self._clamped_decrement(UsageCounterModel.concurrent_containers, 1),
                updated_at=datetime.utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        await self.db_session.execute(stmt)

        logger.info(
            "quota_released",
            container_id=container.id,
            user_id=container.user_id,
            period_start=period.isoformat(),
            cpu=container.cpu,
            memory_mb=container.memory_mb,
            disk_mb=container.disk_mb
        )
        return True

    # ========================================================================
    # Usage Queries
    # ========================================================================

    async def get_usage(self, requester: Requester) -> QuotaUsage:
        """Current-period usage and limits, without creating a counter row"""
        quota, source = await self.get_applicable_quota(requester)
        period = current_period()
        counter = await self._get_counter(requester.user_id, period)

        return QuotaUsage(
            user_id=requester.user_id,
            team_id=requester.team_id,
            period_start=period.isoformat(),
            quota_source=source,
            cores_used=counter.cores_used if counter else 0,
            cores_limit=quota.cores_limit if quota else None,
            memory_mb_used=counter.memory_mb_used if counter else 0,
            memory_mb_limit=quota.memory_mb_limit if quota else None,
            storage_mb_used=counter.storage_mb_used if counter else 0,
            disk_mb_limit=quota.disk_mb_limit if quota else None,
            concurrent_containers=counter.concurrent_containers if counter else 0,
            max_concurrent_containers=quota.max_concurrent_containers if quota else None
        )
