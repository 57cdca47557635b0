#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Persistent container manager for per-owner agent containers
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from instance_manager.config.config import (
    CONTAINER_DNS,
    CONTAINER_MEMORY_MB,
    CONTAINER_NANO_CPUS,
    INSTANCE_IMAGE_NAME,
    INSTANCES_DATA_DIR,
)
from instance_manager.executors.docker import log_stream, stats, status
from instance_manager.executors.docker.client import DockerClient, get_docker_client
from instance_manager.executors.docker.constants import (
    CONTAINER_PREFIX,
    CONTAINER_USER,
    DATA_MOUNT_PATH,
    INSTANCE_ID_LABEL,
    MANAGED_LABEL,
    OWNER_ID_LABEL,
    RESTART_POLICY,
)
from instance_manager.executors.docker.data_dir import ensure_user_data_dir
from instance_manager.executors.docker.errors import NotFoundError
from instance_manager.executors.docker.image_builder import ImageBuilder
from instance_manager.schemas.instance import InstanceConfig, ManagedContainer
from shared.logger import setup_logger

logger = setup_logger(__name__)


class PersistentContainerManager:
    """
    Manager for persistent (long-running) per-owner containers.

    Container names and data directories are keyed by owner identity, so
    both survive delete/recreate cycles of the instance record.
    """

    def __init__(
        self,
        docker: Optional[DockerClient] = None,
        image_builder: Optional[ImageBuilder] = None,
        data_dir: str = INSTANCES_DATA_DIR,
        image: str = INSTANCE_IMAGE_NAME,
    ):
        self.docker = docker or get_docker_client()
        self.image_builder = image_builder or ImageBuilder(self.docker)
        self.data_dir = data_dir
        self.image = image

    def _generate_container_name(self, owner_id: str) -> str:
        """Canonical container name for an owner"""
        return f"{CONTAINER_PREFIX}{owner_id}"

    def _build_container_config(self, config: InstanceConfig, host_dir: str) -> Dict[str, Any]:
        env = [
            f"OWNER_ID={config.owner_id}",
            f"OPENCLAW_MODEL={config.model}",
        ]
        env.extend(f"{key}={value}" for key, value in config.secrets.items())

        return {
            "Image": self.image,
            "User": CONTAINER_USER,
            "Env": env,
            "HostConfig": {
                "Binds": [f"{host_dir}:{DATA_MOUNT_PATH}"],
                # Public resolvers avoid lookup failures on some subdomains
                "Dns": CONTAINER_DNS,
                "Memory": CONTAINER_MEMORY_MB * 1024 * 1024,
                "NanoCpus": CONTAINER_NANO_CPUS,
                "RestartPolicy": {"Name": RESTART_POLICY, "MaximumRetryCount": 0},
            },
            "Labels": {
                MANAGED_LABEL: "true",
                INSTANCE_ID_LABEL: str(config.instance_id),
                OWNER_ID_LABEL: config.owner_id,
            },
        }

    async def create_instance(self, config: InstanceConfig) -> str:
        """
        Create and start the owner's container, replacing any existing one.

        Args:
            config: Instance configuration

        Returns:
            Docker ID of the new container

        Raises:
            DockerError: image preparation, create or start failed
        """
        await self.image_builder.ensure_images_ready()

        name = self._generate_container_name(config.owner_id)
        data_dir = ensure_user_data_dir(config.owner_id, self.data_dir)

        await self.remove_container(name)

        logger.info(f"Creating container {name} (image: {self.image})")
        container_id = await self.docker.create_container(
            name, self._build_container_config(config, data_dir.path)
        )
        await self.docker.start_container(container_id)
        logger.info(f"Container {name} started ({container_id[:12]})")
        return container_id

    async def remove_container(self, container_id: str) -> None:
        """Stop and force-remove a container. A missing container is fine."""
        try:
            await self.docker.stop_container(container_id)
        except NotFoundError:
            return
        except Exception as e:
            logger.debug(f"Stop before remove failed for {container_id}: {e}")
        try:
            await self.docker.remove_container(container_id, force=True)
            logger.info(f"Removed existing container {container_id}")
        except NotFoundError:
            pass

    async def stop_instance(self, container_id: str) -> None:
        """Stop a running container"""
        logger.info(f"Stopping container {container_id[:12]}")
        try:
            await self.docker.stop_container(container_id)
        except NotFoundError:
            logger.info(f"Container {container_id[:12]} not found, nothing to stop")

    async def start_instance(self, container_id: str) -> None:
        """Start a stopped container"""
        logger.info(f"Starting container {container_id[:12]}")
        await self.docker.start_container(container_id)

    async def restart_instance(self, container_id: str) -> None:
        """Restart a container"""
        logger.info(f"Restarting container {container_id[:12]}")
        await self.docker.restart_container(container_id)

    async def delete_instance(self, container_id: str) -> None:
        """
        Stop and remove a container.

        The owner's data directory is left untouched so a future instance
        picks up the same workspace and credentials.
        """
        logger.info(f"Deleting container {container_id[:12]}")
        await self.remove_container(container_id)
        logger.info("Instance deleted, user data preserved for future instances")

    async def get_status(self, container_id: str) -> str:
        return await status.get_status(self.docker, container_id)

    async def get_detailed_status(self, container_id: str) -> status.DetailedStatus:
        return await status.get_detailed_status(self.docker, container_id)

    async def is_running(self, container_id: str) -> bool:
        return await status.is_running(self.docker, container_id)

    async def get_logs(self, container_id: str, tail: int = 100) -> str:
        return await log_stream.get_logs(self.docker, container_id, tail)

    async def stream_logs(self, container_id: str, tail: int = 50) -> log_stream.LogStream:
        return await log_stream.stream_logs(self.docker, container_id, tail)

    async def get_container_stats(self, container_id: str) -> stats.ContainerStats:
        return await stats.get_container_stats(self.docker, container_id)

    async def list_managed_containers(self) -> List[ManagedContainer]:
        """List every managed container, stopped ones included"""
        raw = await self.docker.list_containers(
            all=True, filters={"label": [f"{MANAGED_LABEL}=true"]}
        )
        containers = []
        for item in raw:
            names = item.get("Names") or []
            created = item.get("Created")
            containers.append(
                ManagedContainer(
                    id=item["Id"],
                    name=names[0].lstrip("/") if names else item["Id"][:12],
                    state=item.get("State", ""),
                    status=item.get("Status", ""),
                    image=item.get("Image", ""),
                    labels=item.get("Labels") or {},
                    created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
                )
            )
        return containers

    async def get_docker_info(self) -> Dict[str, Any]:
        """Daemon facts for the admin overview"""
        info = await self.docker.info()
        return {
            "server_version": info.get("ServerVersion"),
            "cpus": info.get("NCPU"),
            "memory_total_gb": round((info.get("MemTotal") or 0) / 1024 ** 3, 1),
            "operating_system": info.get("OperatingSystem"),
            "images": info.get("Images"),
            "containers_running": info.get("ContainersRunning"),
        }


_container_manager: Optional[PersistentContainerManager] = None


def get_container_manager() -> PersistentContainerManager:
    """Get the global PersistentContainerManager instance"""
    global _container_manager
    if _container_manager is None:
        _container_manager = PersistentContainerManager()
    return _container_manager
