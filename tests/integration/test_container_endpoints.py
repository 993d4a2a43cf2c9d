"""Integration tests for container provisioning endpoints"""

import asyncio

import pytest
from httpx import AsyncClient

from lab_platform.models import ContainerStatus

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKey student@laptop"


async def _provision(client: AsyncClient, **overrides):
    body = {
        "name": "lab-api01",
        "dependencies": ["node", "redis"],
        "cpu": 1,
        "memory_mb": 1024,
        "disk_mb": 10240,
        "user_id": 1,
        "ssh_public_key": PUBLIC_KEY,
    }
    body.update(overrides)
    return await client.post("/api/v1/containers", json=body)


async def _wait_for_entry(client: AsyncClient, entry_id: int) -> dict:
    for _ in range(500):
        response = await client.get(f"/api/v1/operations/{entry_id}")
        data = response.json()
        if data["status"] in ("completed", "failed"):
            return data
        await asyncio.sleep(0.01)
    raise AssertionError(f"operation {entry_id} did not finish")


@pytest.mark.asyncio
async def test_provision_success(client: AsyncClient, runtime):
    """Test provisioning a container end to end through the queue"""
    response = await _provision(client)

    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "lab-api01"
    assert data["status"] == "running"
    assert data["ip_address"].startswith("10.0.3.")
    assert data["ssh"] == {"host": data["ip_address"], "port": 22, "user": "labuser"}
    assert data["private_key"] is None
    assert data["generated_key"] is False
    assert data["host_key"] == runtime.host_key

    boot_config = runtime.instances["lab-api01"]["boot_config"]
    assert boot_config.index("nodejs") < boot_config.index("redis-server")


@pytest.mark.asyncio
async def test_provision_generates_keypair(client: AsyncClient):
    response = await _provision(client, name=None, ssh_public_key=None)

    assert response.status_code == 201
    data = response.json()
    assert data["name"].startswith("lab-")
    assert data["generated_key"] is True
    assert "OPENSSH PRIVATE KEY" in data["private_key"]

    detail = await client.get(f"/api/v1/containers/{data['container_id']}")
    assert "OPENSSH PRIVATE KEY" not in detail.text


@pytest.mark.asyncio
async def test_provision_quota_exceeded(client: AsyncClient, make_quota):
    await make_quota(user_id=1, cores_limit=1)
    assert (await _provision(client, name="lab-first")).status_code == 201

    response = await _provision(client, name="lab-second")

    assert response.status_code == 429
    data = response.json()
    assert data["type"] == "quota_exceeded"
    assert data["layer"] == "admission"
    assert data["details"]["quota_source"] == "user"
    assert data["details"]["current_usage"]["cores_used"] == 1

    listing = await client.get("/api/v1/containers", params={"user_id": 1})
    assert [c["name"] for c in listing.json()] == ["lab-first"]


@pytest.mark.asyncio
async def test_provision_validation_errors(client: AsyncClient):
    response = await _provision(client, dependencies=["node", "cobol"])
    assert response.status_code == 422
    data = response.json()
    assert data["type"] == "validation_error"
    assert any("dependencies" in e["field"] for e in data["errors"])

    response = await _provision(client, name="Bad Name!")
    assert response.status_code == 422

    response = await _provision(client, cpu=0)
    assert response.status_code == 422

    response = await _provision(client, ssh_public_key="not a key")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_provision_failure_reports_layer(client: AsyncClient, runtime):
    """A launch that keeps failing surfaces as a provisioning-layer error"""
    runtime.launch_failures = 3

    response = await _provision(client, name="lab-broken")

    assert response.status_code == 502
    data = response.json()
    assert data["type"] == "operation_retry_exhausted"
    assert data["layer"] == "queue"
    assert data["details"]["attempts"] == 3
    assert data["details"]["operation"] == "create"


@pytest.mark.asyncio
async def test_get_container_not_found(client: AsyncClient):
    response = await client.get("/api/v1/containers/9999")

    assert response.status_code == 404
    assert response.json()["type"] == "not_found"


@pytest.mark.asyncio
async def test_container_detail_and_history(client: AsyncClient):
    container_id = (await _provision(client)).json()["container_id"]

    detail = await client.get(f"/api/v1/containers/{container_id}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["status"] == "running"
    assert body["metadata"]["dependencies"] == ["node", "redis"]
    assert body["started_at"] is not None

    history = await client.get(f"/api/v1/containers/{container_id}/history")
    assert history.status_code == 200
    rows = history.json()
    assert [(r["old_status"], r["new_status"]) for r in rows] == [
        (None, "creating"),
        ("creating", "running"),
    ]


@pytest.mark.asyncio
async def test_ssh_target(client: AsyncClient):
    data = (await _provision(client)).json()

    response = await client.get(f"/api/v1/containers/{data['container_id']}/ssh-target")

    assert response.status_code == 200
    assert response.json() == {"host": data["ip_address"], "port": 22, "user": "labuser"}


@pytest.mark.asyncio
async def test_ssh_target_requires_running(client: AsyncClient, make_container):
    container = await make_container(status=ContainerStatus.STOPPED)

    response = await client.get(f"/api/v1/containers/{container.id}/ssh-target")

    assert response.status_code == 409
    assert response.json()["type"] == "container_not_ready"


@pytest.mark.asyncio
async def test_operations_stop_start_delete(client: AsyncClient, runtime):
    container_id = (await _provision(client)).json()["container_id"]

    response = await client.post(
        f"/api/v1/containers/{container_id}/operations",
        json={"operation": "stop", "actor_id": 1}
    )
    assert response.status_code == 202
    entry = response.json()
    assert entry["operation"] == "stop"
    assert entry["status"] == "pending"
    assert (await _wait_for_entry(client, entry["id"]))["status"] == "completed"
    detail = (await client.get(f"/api/v1/containers/{container_id}")).json()
    assert detail["status"] == "stopped"

    response = await client.post(
        f"/api/v1/containers/{container_id}/operations",
        json={"operation": "start", "actor_id": 1}
    )
    assert (await _wait_for_entry(client, response.json()["id"]))["status"] == "completed"

    response = await client.post(
        f"/api/v1/containers/{container_id}/operations",
        json={"operation": "delete", "actor_id": 1}
    )
    assert (await _wait_for_entry(client, response.json()["id"]))["status"] == "completed"
    assert "lab-api01" in runtime.deleted

    listing = await client.get("/api/v1/containers", params={"user_id": 1})
    assert listing.json() == []
    listing = await client.get("/api/v1/containers", params={"user_id": 1, "include_removed": True})
    assert listing.json()[0]["removed_at"] is not None

    operations = await client.get(f"/api/v1/containers/{container_id}/operations")
    assert [o["operation"] for o in operations.json()] == ["create", "stop", "start", "delete"]

    response = await client.post(
        f"/api/v1/containers/{container_id}/operations",
        json={"operation": "start", "actor_id": 1}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_operation_create_not_accepted(client: AsyncClient, make_container):
    container = await make_container(status=ContainerStatus.RUNNING)

    response = await client.post(
        f"/api/v1/containers/{container.id}/operations",
        json={"operation": "create", "actor_id": 1}
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_failed_operation_recorded(client: AsyncClient, make_container):
    """Starting a failed container fails its entry without changing status"""
    container = await make_container(status=ContainerStatus.FAILED)

    response = await client.post(
        f"/api/v1/containers/{container.id}/operations",
        json={"operation": "start", "actor_id": 1}
    )
    entry = await _wait_for_entry(client, response.json()["id"])

    assert entry["status"] == "failed"
    assert entry["attempts"] == 1
    assert "Invalid container status transition" in entry["last_error"]
    detail = (await client.get(f"/api/v1/containers/{container.id}")).json()
    assert detail["status"] == "failed"


@pytest.mark.asyncio
async def test_queue_stats(client: AsyncClient):
    await _provision(client)

    response = await client.get("/api/v1/operations")

    assert response.status_code == 200
    assert response.json()["total_completed"] == 1
