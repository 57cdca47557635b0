#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Per-owner persistent data directories.

Each owner gets <INSTANCES_DATA_DIR>/user-<owner_id>/, bind-mounted into the
container so agent state, workspace and credentials survive container
recreation and instance deletion. Nothing in this package deletes them.
"""

import errno
import os
from dataclasses import dataclass, field
from typing import List

from instance_manager.config.config import INSTANCES_DATA_DIR
from instance_manager.executors.docker.constants import DATA_DIR_PREFIX, DATA_SUBDIRS
from shared.logger import setup_logger

logger = setup_logger(__name__)

# Container process UID differs from the host one
DATA_DIR_MODE = 0o777


@dataclass
class DataDirResult:
    """Result of preparing an owner's data directory"""

    path: str
    degraded: bool = False
    warnings: List[str] = field(default_factory=list)


def get_user_data_dir_path(owner_id: str, base_dir: str = INSTANCES_DATA_DIR) -> str:
    """Host path of an owner's data directory, keyed by owner identity"""
    return os.path.join(os.path.abspath(base_dir), f"{DATA_DIR_PREFIX}{owner_id}")


def ensure_user_data_dir(owner_id: str, base_dir: str = INSTANCES_DATA_DIR) -> DataDirResult:
    """
    Create the owner's data directory and its subdirectories if missing.

    Directories left root-owned by earlier container runs cannot be chmod'ed
    from here; those failures are reported in the result rather than raised,
    the container entrypoint fixes ownership on start.

    Args:
        owner_id: Stable owner identity
        base_dir: Root directory holding every owner's data

    Returns:
        DataDirResult with degraded=True when any permission fix-up failed
    """
    path = get_user_data_dir_path(owner_id, base_dir)
    result = DataDirResult(path=path)

    for subdir in ("",) + DATA_SUBDIRS:
        target = os.path.join(path, subdir) if subdir else path
        try:
            os.makedirs(target, mode=DATA_DIR_MODE, exist_ok=True)
        except PermissionError as e:
            # Parent already exists with root ownership
            result.degraded = True
            result.warnings.append(f"Could not create {target}: {e}")
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise

    for subdir in ("",) + DATA_SUBDIRS:
        target = os.path.join(path, subdir) if subdir else path
        if not os.path.isdir(target):
            continue
        try:
            os.chmod(target, DATA_DIR_MODE)
        except OSError as e:
            result.degraded = True
            result.warnings.append(f"Could not chmod {target}: {e}")

    if result.degraded:
        logger.warning(
            f"User data dir {path} ready with permission issues "
            f"(container will handle it): {'; '.join(result.warnings)}"
        )
    else:
        logger.info(f"User data dir ready: {path}")
    return result
