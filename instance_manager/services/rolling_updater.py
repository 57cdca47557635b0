#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Rolling update service: rebuild the instance image, then recreate every
managed container on it one at a time
"""

import inspect
from typing import Awaitable, Callable, List, Optional, Union

from instance_manager.executors.docker.persistent_container import (
    PersistentContainerManager,
    get_container_manager,
)
from instance_manager.schemas.instance import (
    InstanceConfig,
    UpdateResult,
    UpdateStatus,
    UpdateSummary,
)
from instance_manager.services.owner_locks import OwnerLocks, get_owner_locks
from shared.logger import setup_logger

logger = setup_logger(__name__)

ConfigLookup = Callable[
    [str], Union[Optional[InstanceConfig], Awaitable[Optional[InstanceConfig]]]
]


def summarize(results: List[UpdateResult]) -> UpdateSummary:
    return UpdateSummary(
        total=len(results),
        updated=sum(1 for r in results if r.status == UpdateStatus.UPDATED),
        skipped=sum(1 for r in results if r.status == UpdateStatus.SKIPPED),
        failed=sum(1 for r in results if r.status == UpdateStatus.FAILED),
    )


class RollingUpdater:
    """
    Recreates managed containers sequentially against a fresh image.

    One container at a time. A failing container is recorded and the
    rollout moves on to the next one.
    """

    def __init__(
        self,
        manager: Optional[PersistentContainerManager] = None,
        owner_locks: Optional[OwnerLocks] = None,
    ):
        self.manager = manager or get_container_manager()
        self.owner_locks = owner_locks or get_owner_locks()

    async def rolling_update_all(self, config_lookup: ConfigLookup) -> List[UpdateResult]:
        """
        Rebuild the instance image and recreate every managed container.

        Args:
            config_lookup: Maps a container ID to its InstanceConfig, or None
                when no instance owns it. May be sync or async.

        Returns:
            One UpdateResult per managed container found before the rollout

        Raises:
            DockerError: the image rebuild or the container listing failed,
                in which case no container was touched
        """
        logger.info("Rolling update: rebuilding instance image")
        await self.manager.image_builder.force_rebuild_instance_image()

        containers = await self.manager.list_managed_containers()
        logger.info(f"Rolling update: {len(containers)} managed containers")

        results: List[UpdateResult] = []
        for container in containers:
            result = UpdateResult(
                container_id=container.id,
                name=container.name,
                status=UpdateStatus.SKIPPED,
            )
            try:
                config = config_lookup(container.id)
                if inspect.isawaitable(config):
                    config = await config
                if config is None:
                    logger.warning(f"Rolling update: no instance for {container.name}, skipping")
                    results.append(result)
                    continue

                result.instance_id = config.instance_id
                result.owner_id = config.owner_id
                async with self.owner_locks.lock(config.owner_id):
                    try:
                        await self.manager.remove_container(container.id)
                    except Exception as e:
                        logger.warning(f"Rolling update: could not remove {container.name}: {e}")
                    new_id = await self.manager.create_instance(config)

                result.status = UpdateStatus.UPDATED
                result.new_container_id = new_id
                logger.info(f"Rolling update: {container.name} -> {new_id[:12]}")
            except Exception as e:
                result.status = UpdateStatus.FAILED
                result.error = str(e)
                logger.error(f"Rolling update: failed to update {container.name}: {e}")
            results.append(result)

        summary = summarize(results)
        logger.info(
            f"Rolling update complete: {summary.updated} updated, "
            f"{summary.skipped} skipped, {summary.failed} failed"
        )
        return results


_rolling_updater: Optional[RollingUpdater] = None


def get_rolling_updater() -> RollingUpdater:
    """Get the global RollingUpdater instance"""
    global _rolling_updater
    if _rolling_updater is None:
        _rolling_updater = RollingUpdater()
    return _rolling_updater
