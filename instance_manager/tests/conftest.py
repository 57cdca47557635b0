#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Shared fixtures for instance manager tests.
"""

import os

# Keep module-level engines off the real data directory
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENFORCER_ENABLED", "false")

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from instance_manager.db.base import Base
from instance_manager.executors.docker.errors import NotFoundError, RuntimeApiError
from instance_manager.executors.docker.persistent_container import PersistentContainerManager
from instance_manager.models import instance, subscription  # noqa: F401


class FakeDocker:
    """In-memory stand-in for DockerClient"""

    def __init__(self):
        self.containers = {}
        self.images = set()
        self._seq = 0

    def _find(self, ref):
        for container_id, container in self.containers.items():
            if container_id == ref or container["name"] == ref:
                return container_id
        raise NotFoundError(f"No such container: {ref}")

    def by_name(self, name):
        return [c for c in self.containers.values() if c["name"] == name]

    async def ping(self):
        return None

    async def info(self):
        return {"ServerVersion": "27.0.1", "NCPU": 4, "MemTotal": 8 * 1024 ** 3,
                "OperatingSystem": "Debian", "Images": 2, "ContainersRunning": 1}

    async def image_exists(self, name):
        return name in self.images

    async def create_container(self, name, config):
        if self.by_name(name):
            raise RuntimeApiError(409, f"Conflict. The container name \"/{name}\" is already in use")
        self._seq += 1
        container_id = f"{self._seq:064x}"
        self.containers[container_id] = {
            "name": name,
            "config": config,
            "running": False,
            "exit_code": 0,
        }
        return container_id

    async def start_container(self, container_id):
        self.containers[self._find(container_id)]["running"] = True

    async def stop_container(self, container_id, timeout=None):
        self.containers[self._find(container_id)]["running"] = False

    async def restart_container(self, container_id):
        self.containers[self._find(container_id)]["running"] = True

    async def remove_container(self, container_id, force=True):
        del self.containers[self._find(container_id)]

    async def inspect_container(self, container_id):
        found = self._find(container_id)
        container = self.containers[found]
        state = {
            "Running": container["running"],
            "Restarting": False,
            "ExitCode": container["exit_code"],
            "Error": "",
        }
        if "health" in container:
            state["Health"] = {"Status": container["health"]}
        return {"Id": found, "RestartCount": 0, "State": state}

    async def list_containers(self, all=True, filters=None):
        return [
            {
                "Id": container_id,
                "Names": [f"/{c['name']}"],
                "State": "running" if c["running"] else "exited",
                "Status": "",
                "Image": c["config"]["Image"],
                "Labels": c["config"]["Labels"],
                "Created": 1700000000,
            }
            for container_id, c in self.containers.items()
        ]


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def image_builder():
    builder = MagicMock()
    builder.ensure_images_ready = AsyncMock()
    builder.force_rebuild_instance_image = AsyncMock()
    return builder


@pytest.fixture
def data_root(tmp_path):
    return str(tmp_path / "instances")


@pytest.fixture
def manager(fake_docker, image_builder, data_root):
    return PersistentContainerManager(
        docker=fake_docker,
        image_builder=image_builder,
        data_dir=data_root,
        image="pmc-openclaw-instance:test",
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()
