#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Subscription enforcer.

Periodically stops containers of owners whose subscription is no longer
active and whose paid period has ended.

Rules:
- Only stops containers, never deletes them, never touches billing rows.
- "active" and "pending" subscriptions are always allowed.
- Any other status keeps running until current_period_end passes; a missing
  current_period_end means the container is stopped right away.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from instance_manager.config.config import ENFORCER_INTERVAL
from instance_manager.db.session import SessionLocal
from instance_manager.executors.docker.persistent_container import (
    PersistentContainerManager,
    get_container_manager,
)
from instance_manager.models.instance import Instance
from instance_manager.models.subscription import Subscription
from instance_manager.services import instance_store
from instance_manager.services.owner_locks import OwnerLocks, get_owner_locks
from shared.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class EnforcementReport:
    """Outcome of one enforcement sweep"""

    checked: int = 0
    stopped: int = 0
    reconciled: int = 0
    failed: int = 0


class SubscriptionEnforcer:
    """Fixed-interval control loop over lapsed subscriptions"""

    def __init__(
        self,
        manager: Optional[PersistentContainerManager] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        interval: float = ENFORCER_INTERVAL,
        owner_locks: Optional[OwnerLocks] = None,
    ):
        self.manager = manager or get_container_manager()
        self.session_factory = session_factory
        self.interval = interval
        self.owner_locks = owner_locks or get_owner_locks()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def enforce_once(self, now: Optional[datetime] = None) -> EnforcementReport:
        """Run one enforcement sweep"""
        report = EnforcementReport()
        db = self.session_factory()
        try:
            lapsed = instance_store.find_lapsed_subscriptions(db, now)
            for sub in lapsed:
                async with self.owner_locks.lock(sub.owner_id):
                    for instance in instance_store.find_active_instances(db, sub.owner_id):
                        report.checked += 1
                        try:
                            stopped = await self._enforce_instance(db, sub, instance)
                        except Exception as e:
                            db.rollback()
                            report.failed += 1
                            logger.error(
                                f"Failed to stop instance {instance.id} for owner {sub.owner_id}: {e}"
                            )
                            continue
                        if stopped:
                            report.stopped += 1
                        else:
                            report.reconciled += 1
        finally:
            db.close()

        if report.checked:
            logger.info(
                f"Enforcement sweep: {report.checked} checked, {report.stopped} stopped, "
                f"{report.reconciled} reconciled, {report.failed} failed"
            )
        return report

    async def _enforce_instance(self, db: Session, sub: Subscription, instance: Instance) -> bool:
        """Stop one instance, returns False when it was already down"""
        container_id = instance.container_id
        if not await self.manager.is_running(container_id):
            # Already down, bring the stored status in line
            instance_store.mark_instance_stopped(db, instance.id)
            return False

        period_end = sub.current_period_end.isoformat() if sub.current_period_end else "unknown"
        logger.info(
            f"Stopping container for owner {sub.owner_id}: subscription {sub.id} is "
            f"{sub.status}, period ended {period_end}"
        )
        await self.manager.stop_instance(container_id)
        instance_store.mark_instance_stopped(db, instance.id)
        logger.info(
            f"Stopped instance {instance.id} (container {container_id[:12]}) for owner {sub.owner_id}"
        )
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.enforce_once()
            except Exception as e:
                logger.error(f"Error during enforcement sweep: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the loop, first sweep runs immediately. Safe to call twice."""
        if self.running:
            return
        logger.info(f"Starting subscription enforcer (checking every {self.interval:.0f}s)")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped subscription enforcer")
