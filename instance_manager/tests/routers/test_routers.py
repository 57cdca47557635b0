#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Tests for the admin HTTP API.
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from instance_manager.config import config
from instance_manager.db.session import get_db
from instance_manager.executors.docker.errors import BuildFailureError, DaemonUnreachableError
from instance_manager.executors.docker.log_stream import LogStream, encode_frame
from instance_manager.executors.docker.persistent_container import get_container_manager
from instance_manager.models.instance import Instance
from instance_manager.routers.routers import app
from instance_manager.schemas.instance import InstanceConfig
from instance_manager.services.owner_locks import OwnerLocks, get_owner_locks
from instance_manager.services.rolling_updater import RollingUpdater, get_rolling_updater

TOKEN = "test-admin-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


class ChunkedBody(httpx.AsyncByteStream):
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


@pytest.fixture
def client(manager, session_factory, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_TOKEN", TOKEN)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_container_manager] = lambda: manager
    owner_locks = OwnerLocks()
    app.dependency_overrides[get_owner_locks] = lambda: owner_locks
    app.dependency_overrides[get_rolling_updater] = lambda: RollingUpdater(manager, OwnerLocks())
    # No context manager: lifespan (image build, enforcer) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(manager, db, owner_id, instance_status="running"):
    container_id = asyncio.run(
        manager.create_instance(InstanceConfig(instance_id=0, owner_id=owner_id, model="gpt-4o"))
    )
    instance = Instance(owner_id=owner_id, container_id=container_id, status=instance_status,
                        model="gpt-4o", secrets={})
    db.add(instance)
    db.commit()
    return instance, container_id


class TestAuth:
    """Test cases for admin authentication"""

    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_missing_token(self, client):
        assert client.get("/admin/api/containers").status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/admin/api/containers", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_query_token(self, client):
        assert client.get(f"/admin/api/containers?token={TOKEN}").status_code == 200

    def test_unconfigured_admin(self, client, monkeypatch):
        monkeypatch.setattr(config, "ADMIN_TOKEN", "")
        assert client.get("/admin/api/containers", headers=AUTH).status_code == 503


class TestContainerRoutes:
    """Test cases for per-container routes"""

    def test_list_containers_enriched(self, client, manager, db):
        instance, container_id = _create(manager, db, "u1")
        asyncio.run(manager.create_instance(InstanceConfig(instance_id=0, owner_id="orphan", model="m")))

        response = client.get("/admin/api/containers", headers=AUTH)

        assert response.status_code == 200
        by_name = {c["name"]: c for c in response.json()["containers"]}
        assert by_name["pmc-instance-u1"]["instance_id"] == instance.id
        assert by_name["pmc-instance-u1"]["owner_id"] == "u1"
        assert by_name["pmc-instance-u1"]["db_status"] == "running"
        assert by_name["pmc-instance-orphan"]["instance_id"] is None

    def test_list_containers_daemon_down(self, client, manager):
        manager.docker.list_containers = AsyncMock(side_effect=DaemonUnreachableError("down"))
        assert client.get("/admin/api/containers", headers=AUTH).status_code == 500

    def test_status(self, client, manager, db):
        _, container_id = _create(manager, db, "u1")

        response = client.get(f"/admin/api/containers/{container_id}/status", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_status_unknown_container(self, client):
        response = client.get("/admin/api/containers/deadbeef/status", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["status"] == "error"

    def test_stats(self, client, manager):
        manager.docker.container_stats = AsyncMock(
            return_value={"memory_stats": {"usage": 1024 * 1024, "limit": 4 * 1024 * 1024}}
        )
        response = client.get("/admin/api/containers/abc/stats", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["memory_percent"] == 25.0

    def test_logs(self, client, manager):
        manager.docker.container_logs = AsyncMock(return_value=encode_frame(1, b"ready\n"))

        response = client.get("/admin/api/containers/abc/logs?tail=5", headers=AUTH)

        assert response.json() == {"logs": "ready\n"}
        manager.docker.container_logs.assert_awaited_once_with("abc", tail=5)

    def test_logs_stream(self, client, manager):
        body = ChunkedBody([encode_frame(1, b"tick 1\n"), encode_frame(2, b"warn\n")])
        log_stream = LogStream(httpx.Response(200, stream=body), "abc")
        manager.stream_logs = AsyncMock(return_value=log_stream)

        response = client.get(f"/admin/api/containers/abc/logs/stream?token={TOKEN}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in response.text.splitlines()
            if line.startswith("data: ")
        ]
        assert events == [{"log": "tick 1"}, {"log": "warn"}, {"done": True}]
        assert log_stream.closed is True

    def test_logs_stream_start_failure(self, client, manager):
        manager.stream_logs = AsyncMock(side_effect=DaemonUnreachableError("down"))

        response = client.get("/admin/api/containers/abc/logs/stream", headers=AUTH)

        assert response.text == 'data: {"error": "Failed to start log stream"}\n\n'

    def test_stop_and_start_update_db(self, client, manager, fake_docker, db):
        instance, container_id = _create(manager, db, "u1")

        response = client.post(f"/admin/api/containers/{container_id}/stop", headers=AUTH)
        assert response.json() == {"ok": True, "action": "stopped"}
        assert fake_docker.containers[container_id]["running"] is False
        db.expire_all()
        assert db.get(Instance, instance.id).status == "stopped"

        response = client.post(f"/admin/api/containers/{container_id}/start", headers=AUTH)
        assert response.json() == {"ok": True, "action": "started"}
        db.expire_all()
        assert db.get(Instance, instance.id).status == "pending"

    def test_start_unknown_container(self, client):
        response = client.post("/admin/api/containers/deadbeef/start", headers=AUTH)
        assert response.status_code == 404

    def test_start_missing_container_recreated(self, client, manager, fake_docker, db):
        """Test a container removed out of band is recreated from its instance"""
        instance, container_id = _create(manager, db, "u1", instance_status="stopped")
        del fake_docker.containers[container_id]

        response = client.post(f"/admin/api/containers/{container_id}/start", headers=AUTH)

        body = response.json()
        assert response.status_code == 200
        assert body["action"] == "recreated"
        assert body["container_id"] in fake_docker.containers
        assert fake_docker.containers[body["container_id"]]["running"] is True
        db.expire_all()
        stored = db.get(Instance, instance.id)
        assert stored.container_id == body["container_id"]
        assert stored.status == "pending"

    def test_start_daemon_failure(self, client, manager, db):
        _, container_id = _create(manager, db, "u1")
        manager.docker.start_container = AsyncMock(side_effect=DaemonUnreachableError("down"))
        response = client.post(f"/admin/api/containers/{container_id}/start", headers=AUTH)
        assert response.status_code == 500

    def test_restart(self, client, manager, db):
        _, container_id = _create(manager, db, "u1")
        response = client.post(f"/admin/api/containers/{container_id}/restart", headers=AUTH)
        assert response.json() == {"ok": True, "action": "restarted"}

    def test_delete_detaches_instance(self, client, manager, fake_docker, db):
        instance, container_id = _create(manager, db, "u1")

        response = client.post(f"/admin/api/containers/{container_id}/delete", headers=AUTH)

        assert response.json() == {"ok": True, "action": "deleted"}
        assert fake_docker.containers == {}
        db.expire_all()
        stored = db.get(Instance, instance.id)
        assert stored is not None
        assert stored.container_id is None
        assert stored.status == "stopped"


class TestFleetRoutes:
    """Test cases for bulk and fleet-wide routes"""

    def test_stop_all_and_start_all(self, client, manager, fake_docker, db):
        _create(manager, db, "u1")
        _create(manager, db, "u2")

        response = client.post("/admin/api/containers/stop-all", headers=AUTH)
        assert response.json()["succeeded"] == 2
        assert not any(c["running"] for c in fake_docker.containers.values())

        response = client.post("/admin/api/containers/start-all", headers=AUTH)
        assert response.json()["succeeded"] == 2
        assert all(c["running"] for c in fake_docker.containers.values())

    def test_restart_all_reports_failures(self, client, manager, fake_docker, db):
        _create(manager, db, "u1")
        fake_docker.restart_container = AsyncMock(side_effect=DaemonUnreachableError("down"))

        body = client.post("/admin/api/containers/restart-all", headers=AUTH).json()

        assert body["succeeded"] == 0
        assert body["failed"] == 1
        assert body["results"][0]["name"] == "pmc-instance-u1"
        assert body["results"][0]["ok"] is False

    def test_update_all(self, client, manager, fake_docker, db):
        instance, old_id = _create(manager, db, "u1")
        asyncio.run(manager.create_instance(InstanceConfig(instance_id=0, owner_id="orphan", model="m")))

        response = client.post("/admin/api/update-all", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["summary"] == {"total": 2, "updated": 1, "skipped": 1, "failed": 0}
        db.expire_all()
        stored = db.get(Instance, instance.id)
        assert stored.container_id != old_id
        assert stored.container_id in fake_docker.containers
        assert stored.status == "pending"

    def test_update_all_rebuild_failure(self, client, manager):
        manager.image_builder.force_rebuild_instance_image = AsyncMock(
            side_effect=BuildFailureError("pmc-openclaw-instance:test", 1)
        )
        response = client.post("/admin/api/update-all", headers=AUTH)
        assert response.status_code == 500
        assert response.json()["detail"].startswith("Update failed")

    def test_rebuild_image(self, client, manager):
        response = client.post("/admin/api/rebuild-image", headers=AUTH)
        assert response.json()["ok"] is True
        manager.image_builder.force_rebuild_instance_image.assert_awaited_once()

    def test_overview(self, client, manager, db):
        _create(manager, db, "u1")

        body = client.get("/admin/api/overview", headers=AUTH).json()

        assert body["instances"] == 1
        assert body["containers"] == {"total": 1, "running": 1, "stopped": 0}
        assert body["docker"]["server_version"] == "27.0.1"

    def test_overview_daemon_down(self, client, manager):
        manager.docker.info = AsyncMock(side_effect=DaemonUnreachableError("down"))
        manager.docker.list_containers = AsyncMock(side_effect=DaemonUnreachableError("down"))

        body = client.get("/admin/api/overview", headers=AUTH).json()

        assert body["docker"] is None
        assert body["containers"]["total"] == 0


class TestInstanceRoutes:
    """Test cases for creating and recreating instances"""

    def test_create_instance(self, client, fake_docker, db):
        response = client.post(
            "/admin/api/instances",
            json={"owner_id": "u1", "model": "gpt-4o", "secrets": {"API_KEY": "k"}},
            headers=AUTH,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "pending"
        container = fake_docker.containers[body["container_id"]]
        assert container["name"] == "pmc-instance-u1"
        assert "API_KEY=k" in container["config"]["Env"]
        instance = db.get(Instance, body["instance_id"])
        assert instance.owner_id == "u1"
        assert instance.container_id == body["container_id"]
        assert instance.started_at is not None

    def test_create_twice_reuses_instance(self, client, fake_docker, db):
        """Test a second create replaces the container but keeps one record"""
        first = client.post(
            "/admin/api/instances", json={"owner_id": "u1", "model": "gpt-4o"}, headers=AUTH
        ).json()
        second = client.post(
            "/admin/api/instances", json={"owner_id": "u1", "model": "claude-sonnet"}, headers=AUTH
        ).json()

        assert second["instance_id"] == first["instance_id"]
        assert list(fake_docker.containers) == [second["container_id"]]
        assert db.query(Instance).count() == 1
        assert db.get(Instance, first["instance_id"]).model == "claude-sonnet"

    @pytest.mark.parametrize("owner_id", ["../etc", "a/b", "..", ""])
    def test_create_rejects_bad_owner_id(self, client, fake_docker, owner_id):
        response = client.post(
            "/admin/api/instances", json={"owner_id": owner_id, "model": "gpt-4o"}, headers=AUTH
        )
        assert response.status_code in (400, 422)
        assert fake_docker.containers == {}

    def test_create_failure_recorded(self, client, manager, db):
        """Test a failed container creation leaves the instance in error"""
        manager.image_builder.ensure_images_ready = AsyncMock(
            side_effect=BuildFailureError("pmc-openclaw-instance:test", 1, ["ERROR: failed to solve"])
        )

        response = client.post(
            "/admin/api/instances", json={"owner_id": "u1", "model": "gpt-4o"}, headers=AUTH
        )

        assert response.status_code == 500
        instance = db.query(Instance).filter(Instance.owner_id == "u1").one()
        assert instance.status == "error"
        assert instance.container_id is None
        assert instance.error_message

    def test_recreate_instance(self, client, manager, fake_docker, db):
        instance, old_container_id = _create(manager, db, "u1")

        response = client.post(f"/admin/api/instances/{instance.id}/recreate", headers=AUTH)

        new_container_id = response.json()["container_id"]
        assert new_container_id != old_container_id
        assert list(fake_docker.containers) == [new_container_id]
        db.expire_all()
        assert db.get(Instance, instance.id).container_id == new_container_id

    def test_recreate_unknown_instance(self, client):
        response = client.post("/admin/api/instances/999/recreate", headers=AUTH)
        assert response.status_code == 404


class TestWorkspaceRoutes:
    """Test cases for browsing an owner's workspace"""

    @pytest.fixture
    def workspace_dir(self, data_root):
        path = os.path.join(data_root, "user-u1", "workspace")
        os.makedirs(path)
        with open(os.path.join(path, "TRADES.json"), "w") as f:
            json.dump({"trades": [{"symbol": "PUMP", "qty": 3}]}, f)
        with open(os.path.join(path, "MY_TOKEN.md"), "w") as f:
            f.write("# My token\n")
        return path

    def test_list_files(self, client, workspace_dir):
        files = client.get("/admin/api/owners/u1/workspace", headers=AUTH).json()["files"]

        assert [f["name"] for f in files] == ["MY_TOKEN.md", "TRADES.json"]
        assert files[0]["is_directory"] is False
        assert files[0]["size"] == len("# My token\n")

    def test_list_missing_workspace(self, client):
        response = client.get("/admin/api/owners/nobody/workspace", headers=AUTH)
        assert response.json() == {"files": []}

    def test_read_json_file(self, client, workspace_dir):
        response = client.get("/admin/api/owners/u1/workspace/TRADES.json", headers=AUTH)
        assert response.json() == {
            "file": "TRADES.json",
            "content": {"trades": [{"symbol": "PUMP", "qty": 3}]},
        }

    def test_read_text_file(self, client, workspace_dir):
        response = client.get("/admin/api/owners/u1/workspace/MY_TOKEN.md", headers=AUTH)
        assert response.json() == {"file": "MY_TOKEN.md", "content": "# My token\n"}

    def test_read_missing_file(self, client, workspace_dir):
        response = client.get("/admin/api/owners/u1/workspace/NOPE.json", headers=AUTH)
        assert response.status_code == 404

    def test_file_name_sanitized(self, client, workspace_dir):
        response = client.get("/admin/api/owners/u1/workspace/TRADES$@.json", headers=AUTH)
        assert response.json()["file"] == "TRADES.json"

    def test_dot_only_names_rejected(self, client, workspace_dir):
        assert client.get("/admin/api/owners/u1/workspace/...", headers=AUTH).status_code == 400
        assert client.get("/admin/api/owners/.../workspace", headers=AUTH).status_code == 400

    def test_requires_auth(self, client, workspace_dir):
        assert client.get("/admin/api/owners/u1/workspace").status_code == 401
