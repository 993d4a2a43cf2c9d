"""Unit tests for the quota ledger"""

from datetime import timedelta

import pytest
import pytest_asyncio

from lab_platform.models import ContainerModel, ContainerStatus, QuotaModel, UsageCounterModel
from lab_platform.schemas.quota import Requester, ResourceDemand
from lab_platform.services.quota_ledger import QuotaLedger, current_period


@pytest_asyncio.fixture
async def ledger(db_session):
    return QuotaLedger(db_session)


async def _add_quota(db_session, **kwargs) -> QuotaModel:
    quota = QuotaModel(**kwargs)
    db_session.add(quota)
    await db_session.flush()
    return quota


async def _counter(ledger: QuotaLedger, user_id: int) -> UsageCounterModel:
    return await ledger._get_counter(user_id, current_period())


# ============================================================================
# Applicable quota
# ============================================================================

@pytest.mark.asyncio
async def test_user_quota_takes_precedence(ledger, db_session):
    await _add_quota(db_session, team_id=10, cores_limit=100)
    user_quota = await _add_quota(db_session, user_id=1, cores_limit=2)

    quota, source = await ledger.get_applicable_quota(Requester(user_id=1, team_id=10))

    assert quota.id == user_quota.id
    assert source == "user"


@pytest.mark.asyncio
async def test_team_quota_is_fallback(ledger, db_session):
    team_quota = await _add_quota(db_session, team_id=10, cores_limit=100)

    quota, source = await ledger.get_applicable_quota(Requester(user_id=1, team_id=10))

    assert quota.id == team_quota.id
    assert source == "team"


@pytest.mark.asyncio
async def test_no_quota_means_unlimited(ledger, db_session):
    await _add_quota(db_session, team_id=99, cores_limit=1)

    quota, source = await ledger.get_applicable_quota(Requester(user_id=1, team_id=10))

    assert quota is None
    assert source is None


# ============================================================================
# Reservation
# ============================================================================

@pytest.mark.asyncio
async def test_reserve_increments_counters(ledger, db_session):
    await _add_quota(db_session, user_id=1, cores_limit=4, memory_mb_limit=8192, disk_mb_limit=40960)
    requester = Requester(user_id=1)

    result = await ledger.reserve(requester, ResourceDemand(cpu=2, memory_mb=2048, disk_mb=10240))

    assert result.allowed is True
    assert result.quota_source == "user"
    assert result.period_start == current_period()
    counter = await _counter(ledger, 1)
    assert counter.cores_used == 2
    assert counter.memory_mb_used == 2048
    assert counter.storage_mb_used == 10240
    assert counter.concurrent_containers == 1


@pytest.mark.asyncio
async def test_reserve_up_to_limit_then_reject(ledger, db_session):
    """Exactly reaching a limit is allowed; crossing it is not"""
    await _add_quota(db_session, user_id=1, cores_limit=2)
    requester = Requester(user_id=1)
    demand = ResourceDemand(cpu=1)

    assert await ledger.check_and_reserve(requester, demand) is True
    assert await ledger.check_and_reserve(requester, demand) is True
    assert await ledger.check_and_reserve(requester, demand) is False

    counter = await _counter(ledger, 1)
    assert counter.cores_used == 2
    assert counter.concurrent_containers == 2


@pytest.mark.asyncio
async def test_rejection_leaves_counters_untouched(ledger, db_session):
    await _add_quota(db_session, user_id=1, memory_mb_limit=1024)
    requester = Requester(user_id=1)

    result = await ledger.reserve(requester, ResourceDemand(cpu=1, memory_mb=2048))

    assert result.allowed is False
    assert result.exceeded_resource == "memory_mb"
    assert result.current_usage["memory_mb_used"] == 0
    counter = await _counter(ledger, 1)
    assert counter.cores_used == 0
    assert counter.memory_mb_used == 0
    assert counter.concurrent_containers == 0


@pytest.mark.asyncio
async def test_exceeded_resource_reported_in_check_order(ledger, db_session):
    """cores is reported before memory, memory before disk"""
    await _add_quota(db_session, user_id=1, cores_limit=1, memory_mb_limit=512, disk_mb_limit=1024)
    requester = Requester(user_id=1)

    result = await ledger.reserve(requester, ResourceDemand(cpu=2, memory_mb=1024, disk_mb=2048))
    assert result.exceeded_resource == "cores"

    result = await ledger.reserve(requester, ResourceDemand(cpu=1, memory_mb=1024, disk_mb=2048))
    assert result.exceeded_resource == "memory_mb"

    result = await ledger.reserve(requester, ResourceDemand(cpu=1, memory_mb=512, disk_mb=2048))
    assert result.exceeded_resource == "disk_mb"


@pytest.mark.asyncio
async def test_null_limit_is_unlimited_for_that_resource(ledger, db_session):
    await _add_quota(db_session, user_id=1, cores_limit=None, memory_mb_limit=4096)

    result = await ledger.reserve(Requester(user_id=1), ResourceDemand(cpu=64, memory_mb=1024))

    assert result.allowed is True


@pytest.mark.asyncio
async def test_unlimited_requester_is_still_recorded(ledger):
    requester = Requester(user_id=5, team_id=6)

    result = await ledger.reserve(requester, ResourceDemand(cpu=3, memory_mb=1024, disk_mb=1024))

    assert result.allowed is True
    assert result.quota_source is None
    assert result.quota_limits is None
    counter = await _counter(ledger, 5)
    assert counter.cores_used == 3
    assert counter.team_id == 6


@pytest.mark.asyncio
async def test_counter_created_once_per_period(ledger):
    requester = Requester(user_id=1)

    first = await ledger.get_or_create_counter(requester)
    second = await ledger.get_or_create_counter(requester)

    assert first.id == second.id
    assert first.period_start == current_period()


@pytest.mark.asyncio
async def test_counter_created_concurrently_is_reused(session_factory):
    """Losing the insert race loads the row the other transaction created"""
    requester = Requester(user_id=1)
    async with session_factory() as other:
        existing = await QuotaLedger(other).get_or_create_counter(requester)
        await other.commit()

    async with session_factory() as session:
        ledger = QuotaLedger(session)
        real_get_counter = ledger._get_counter
        reads = []

        async def stale_first_read(*args, **kwargs):
            reads.append(args)
            if len(reads) == 1:
                return None
            return await real_get_counter(*args, **kwargs)

        ledger._get_counter = stale_first_read
        counter = await ledger.get_or_create_counter(requester)

        assert counter.id == existing.id
        assert len(reads) == 2

        result = await ledger.reserve(requester, ResourceDemand(cpu=1))
        assert result.allowed is True
        assert result.current_usage["cores_used"] == 1


@pytest.mark.asyncio
async def test_previous_period_usage_does_not_count(ledger, db_session):
    await _add_quota(db_session, user_id=1, cores_limit=2)
    db_session.add(UsageCounterModel(
        user_id=1,
        period_start=current_period() - timedelta(days=1),
        cores_used=2,
        memory_mb_used=0,
        storage_mb_used=0,
        concurrent_containers=2
    ))
    await db_session.flush()

    result = await ledger.reserve(Requester(user_id=1), ResourceDemand(cpu=2))

    assert result.allowed is True


# ============================================================================
# Release
# ============================================================================

async def _container(db_session, **kwargs) -> ContainerModel:
    values = {
        "name": "lab-release",
        "user_id": 1,
        "image": "ubuntu:24.04",
        "cpu": 2,
        "memory_mb": 2048,
        "disk_mb": 10240,
        "status": ContainerStatus.FAILED,
        "meta": {},
        "usage_period": current_period(),
        "usage_released": False
    }
    values.update(kwargs)
    container = ContainerModel(**values)
    db_session.add(container)
    await db_session.flush()
    return container


@pytest.mark.asyncio
async def test_release_gives_demand_back(ledger, db_session):
    requester = Requester(user_id=1)
    await ledger.reserve(requester, ResourceDemand(cpu=2, memory_mb=2048, disk_mb=10240))
    container = await _container(db_session)

    assert await ledger.release(container) is True

    counter = await _counter(ledger, 1)
    assert counter.cores_used == 0
    assert counter.memory_mb_used == 0
    assert counter.storage_mb_used == 0
    assert counter.concurrent_containers == 0
    assert container.usage_released is True


@pytest.mark.asyncio
async def test_release_is_idempotent(ledger, db_session):
    requester = Requester(user_id=1)
    await ledger.reserve(requester, ResourceDemand(cpu=2, memory_mb=2048, disk_mb=10240))
    await ledger.reserve(requester, ResourceDemand(cpu=2, memory_mb=2048, disk_mb=10240))
    container = await _container(db_session)

    assert await ledger.release(container) is True
    assert await ledger.release(container) is False

    counter = await _counter(ledger, 1)
    assert counter.cores_used == 2
    assert counter.concurrent_containers == 1


@pytest.mark.asyncio
async def test_release_clamps_at_zero(ledger, db_session):
    db_session.add(UsageCounterModel(
        user_id=1,
        period_start=current_period(),
        cores_used=1,
        memory_mb_used=512,
        storage_mb_used=0,
        concurrent_containers=0
    ))
    await db_session.flush()
    container = await _container(db_session, cpu=4, memory_mb=4096, disk_mb=20480)

    await ledger.release(container)

    counter = await _counter(ledger, 1)
    assert counter.cores_used == 0
    assert counter.memory_mb_used == 0
    assert counter.storage_mb_used == 0
    assert counter.concurrent_containers == 0


@pytest.mark.asyncio
async def test_release_targets_charged_period(ledger, db_session):
    """A reservation is returned to the period it was charged to"""
    yesterday = current_period() - timedelta(days=1)
    db_session.add(UsageCounterModel(
        user_id=1,
        period_start=yesterday,
        cores_used=2,
        memory_mb_used=2048,
        storage_mb_used=10240,
        concurrent_containers=1
    ))
    await db_session.flush()
    await ledger.reserve(Requester(user_id=1), ResourceDemand(cpu=1))
    container = await _container(db_session, usage_period=yesterday)

    await ledger.release(container)

    old_counter = await ledger._get_counter(1, yesterday)
    assert old_counter.cores_used == 0
    today_counter = await _counter(ledger, 1)
    assert today_counter.cores_used == 1


@pytest.mark.asyncio
async def test_release_without_counter_marks_released(ledger, db_session):
    container = await _container(db_session)

    assert await ledger.release(container) is False
    assert container.usage_released is True


# ============================================================================
# Usage
# ============================================================================

@pytest.mark.asyncio
async def test_usage_without_counter_reports_zero(ledger, db_session):
    await _add_quota(db_session, team_id=10, cores_limit=8, max_concurrent_containers=3)

    usage = await ledger.get_usage(Requester(user_id=1, team_id=10))

    assert usage.quota_source == "team"
    assert usage.cores_used == 0
    assert usage.cores_limit == 8
    data = usage.to_dict()
    assert data["containers"] == {"concurrent": 0, "limit": 3}
    assert await _counter(ledger, 1) is None


@pytest.mark.asyncio
async def test_usage_reflects_reservations(ledger):
    requester = Requester(user_id=2)
    await ledger.reserve(requester, ResourceDemand(cpu=2, memory_mb=1024, disk_mb=2048))

    usage = await ledger.get_usage(requester)

    assert usage.cores_used == 2
    assert usage.memory_mb_used == 1024
    assert usage.storage_mb_used == 2048
    assert usage.concurrent_containers == 1
    assert usage.period_start == current_period().isoformat()
