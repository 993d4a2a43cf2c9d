"""Unit tests for the request-level provisioning service"""

import pytest

from lab_platform.core.exceptions import (
    ContainerNotFound,
    ContainerNotReady,
    InvalidTransition,
    ProvisioningTimeout,
    QuotaExceeded
)
from lab_platform.models import ContainerStatus, OperationStatus, OperationType
from lab_platform.schemas.container import ProvisionRequest
from lab_platform.services.admission import generate_container_name
from lab_platform.services.boot_config import DEPENDENCY_CATALOG

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKey student@laptop"


def _request(**overrides) -> ProvisionRequest:
    values = {"name": "lab-direct", "dependencies": ["nginx"], "user_id": 1, "ssh_public_key": PUBLIC_KEY}
    values.update(overrides)
    return ProvisionRequest(**values)


def test_generated_names_have_prefix_and_hex_suffix():
    name = generate_container_name()
    prefix, suffix = name.rsplit("-", 1)

    assert prefix == "lab"
    assert len(suffix) == 6
    int(suffix, 16)
    assert generate_container_name("class").startswith("class-")


@pytest.mark.asyncio
async def test_direct_provision_without_queue(platform):
    result = await platform.provisioning.provision(_request(ssh_public_key=None), use_queue=False)

    assert result.status == ContainerStatus.RUNNING
    assert result.generated_key is True
    assert "OPENSSH PRIVATE KEY" in result.private_key
    assert await platform.queue.list_for_container(result.container_id) == []


@pytest.mark.asyncio
async def test_queued_provision_records_create_entry(platform):
    await platform.workers.start()
    try:
        result = await platform.provisioning.provision(_request(), actor_id=8)
    finally:
        await platform.workers.stop()

    entries = await platform.queue.list_for_container(result.container_id)
    assert [OperationType(e.operation) for e in entries] == [OperationType.CREATE]
    assert OperationStatus(entries[0].status) == OperationStatus.COMPLETED
    assert entries[0].payload["actor_id"] == 8
    assert entries[0].payload["public_key"] == PUBLIC_KEY
    assert result.installed == [DEPENDENCY_CATALOG["nginx"].label]


@pytest.mark.asyncio
async def test_queued_provision_times_out_without_workers(platform):
    platform.provisioning.wait_timeout = 0.05

    with pytest.raises(ProvisioningTimeout):
        await platform.provisioning.provision(_request())


@pytest.mark.asyncio
async def test_quota_rejection_creates_nothing(platform, make_quota):
    await make_quota(user_id=1, cores_limit=1)

    with pytest.raises(QuotaExceeded):
        await platform.provisioning.provision(_request(cpu=2))

    assert await platform.lifecycle.list_containers(user_id=1, include_removed=True) == []


@pytest.mark.asyncio
async def test_request_operation_rules(platform, make_container):
    running = await make_container(status=ContainerStatus.RUNNING)
    deleting = await make_container(status=ContainerStatus.DELETING)

    entry_id = await platform.provisioning.request_operation(
        running.id, OperationType.SNAPSHOT, actor_id=2, payload={"notes": "before exam"}
    )
    entry = await platform.queue.get_entry(entry_id)
    assert entry.payload == {"notes": "before exam", "actor_id": 2}

    with pytest.raises(ValueError):
        await platform.provisioning.request_operation(running.id, OperationType.CREATE, actor_id=2)
    with pytest.raises(InvalidTransition):
        await platform.provisioning.request_operation(deleting.id, OperationType.STOP, actor_id=2)
    await platform.provisioning.request_operation(deleting.id, OperationType.DELETE, actor_id=2)
    with pytest.raises(ContainerNotFound):
        await platform.provisioning.request_operation(4242, OperationType.STOP, actor_id=2)


@pytest.mark.asyncio
async def test_only_delete_accepted_while_creating(platform, make_container):
    creating = await make_container(status=ContainerStatus.CREATING)

    for operation in (OperationType.START, OperationType.STOP, OperationType.SNAPSHOT):
        with pytest.raises(InvalidTransition):
            await platform.provisioning.request_operation(creating.id, operation, actor_id=2)

    entry_id = await platform.provisioning.request_operation(creating.id, OperationType.DELETE, actor_id=2)
    entry = await platform.queue.get_entry(entry_id)
    assert OperationType(entry.operation) == OperationType.DELETE


@pytest.mark.asyncio
async def test_ssh_target_only_while_running(platform, make_container):
    running = await make_container(status=ContainerStatus.RUNNING, ip_address="10.0.3.99")
    creating = await make_container(status=ContainerStatus.CREATING)

    target = await platform.provisioning.ssh_target(running.id)
    assert (target.host, target.port, target.user) == ("10.0.3.99", 22, "labuser")

    with pytest.raises(ContainerNotReady):
        await platform.provisioning.ssh_target(creating.id)
