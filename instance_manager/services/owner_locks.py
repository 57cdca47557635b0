#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Per-owner locks so the enforcer and a rolling update never act on the same
owner's container at the same time
"""

import asyncio
from typing import Dict, Optional


class OwnerLocks:
    """In-process registry of one asyncio.Lock per owner identity"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, owner_id: str) -> asyncio.Lock:
        """Lock for an owner, use as `async with owner_locks.lock(owner_id)`"""
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        return lock

    def is_locked(self, owner_id: str) -> bool:
        lock = self._locks.get(owner_id)
        return lock is not None and lock.locked()


_owner_locks: Optional[OwnerLocks] = None


def get_owner_locks() -> OwnerLocks:
    """Get the global OwnerLocks instance"""
    global _owner_locks
    if _owner_locks is None:
        _owner_locks = OwnerLocks()
    return _owner_locks
