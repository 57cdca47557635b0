#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Resolve an instance lifecycle state from container inspection data
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from instance_manager.executors.docker.client import DockerClient
from instance_manager.executors.docker.constants import (
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_RESTARTING,
    STATUS_RUNNING,
    STATUS_STOPPED,
)
from instance_manager.executors.docker.errors import DockerError, NotFoundError
from shared.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class DetailedStatus:
    """Operator-facing container status"""

    status: str
    restart_count: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None
    health_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_state(state: Dict[str, Any]) -> str:
    """
    Map the `State` object of a container inspection to a lifecycle state.

    A running container is only "running" once its healthcheck (if any)
    reports healthy.
    """
    if state.get("Restarting"):
        return STATUS_RESTARTING
    if state.get("Running"):
        health = state.get("Health")
        if not health:
            return STATUS_RUNNING
        health_status = health.get("Status")
        if health_status == "healthy":
            return STATUS_RUNNING
        if health_status == "unhealthy":
            return STATUS_ERROR
        # "starting" or nothing reported yet
        return STATUS_PENDING
    if (state.get("ExitCode") or 0) != 0:
        return STATUS_ERROR
    return STATUS_STOPPED


def resolve_detailed_status(info: Dict[str, Any]) -> DetailedStatus:
    """Build a DetailedStatus from a full inspection payload"""
    state = info.get("State") or {}
    health = state.get("Health") if state.get("Running") and not state.get("Restarting") else None
    return DetailedStatus(
        status=resolve_state(state),
        restart_count=info.get("RestartCount") or 0,
        exit_code=state.get("ExitCode"),
        error=state.get("Error") or None,
        health_status=health.get("Status") if health else None,
    )


async def get_status(docker: DockerClient, container_id: str) -> str:
    """Current lifecycle state; any inspection failure counts as error"""
    try:
        info = await docker.inspect_container(container_id)
    except DockerError as e:
        logger.debug(f"Error inspecting container {container_id[:12]}: {e}")
        return STATUS_ERROR
    return resolve_state(info.get("State") or {})


async def get_detailed_status(docker: DockerClient, container_id: str) -> DetailedStatus:
    """Lifecycle state plus restart count, exit code and health"""
    try:
        info = await docker.inspect_container(container_id)
    except DockerError as e:
        return DetailedStatus(status=STATUS_ERROR, error=str(e))
    return resolve_detailed_status(info)


async def is_running(docker: DockerClient, container_id: str) -> bool:
    """
    Whether the container process is up, whatever its healthcheck says.

    A missing container is not running. Other inspection failures are raised.
    """
    try:
        info = await docker.inspect_container(container_id)
    except NotFoundError:
        return False
    state = info.get("State") or {}
    return bool(state.get("Running") or state.get("Restarting"))
