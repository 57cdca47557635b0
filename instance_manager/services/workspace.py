# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

"""
Read-only access to the workspace directory an owner's agent writes into
"""

import json
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

from instance_manager.config.config import INSTANCES_DATA_DIR
from instance_manager.executors.docker.data_dir import get_user_data_dir_path
from shared.logger import setup_logger

logger = setup_logger(__name__)

WORKSPACE_SUBDIR = "workspace"

_OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_UNSAFE_FILE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def validate_owner_id(owner_id: str) -> str:
    """Owner identities become path components, reject anything else"""
    if not _OWNER_ID_PATTERN.match(owner_id or "") or set(owner_id) == {"."}:
        raise ValueError(f"Invalid owner id: {owner_id!r}")
    return owner_id


def sanitize_file_name(file_name: str) -> str:
    """
    Strip everything but letters, digits, dot, dash and underscore.

    Separators are removed, so the result always names an entry directly
    inside the workspace. Names that reduce to nothing or to dots only are
    rejected.
    """
    safe_name = _UNSAFE_FILE_CHARS.sub("", file_name or "")
    if not safe_name or set(safe_name) == {"."}:
        raise ValueError(f"Invalid file name: {file_name!r}")
    return safe_name


def get_workspace_dir(owner_id: str, base_dir: str = INSTANCES_DATA_DIR) -> str:
    return os.path.join(get_user_data_dir_path(validate_owner_id(owner_id), base_dir), WORKSPACE_SUBDIR)


def list_workspace_files(owner_id: str, base_dir: str = INSTANCES_DATA_DIR) -> List[Dict[str, Any]]:
    """
    Entries of the owner's workspace, sorted by name.

    A workspace that does not exist yet is empty.
    """
    workspace_dir = get_workspace_dir(owner_id, base_dir)
    if not os.path.isdir(workspace_dir):
        return []

    files = []
    with os.scandir(workspace_dir) as entries:
        for entry in entries:
            stat = entry.stat()
            files.append(
                {
                    "name": entry.name,
                    "size": stat.st_size,
                    "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                    "is_directory": entry.is_dir(),
                }
            )
    return sorted(files, key=lambda f: f["name"])


def read_workspace_file(owner_id: str, file_name: str, base_dir: str = INSTANCES_DATA_DIR) -> Dict[str, Any]:
    """
    Contents of one workspace file, parsed when it holds JSON.

    Returns:
        {"file": <sanitized name>, "content": <parsed JSON or text>}

    Raises:
        ValueError: owner id or file name is unusable
        FileNotFoundError: no such regular file in the workspace
    """
    safe_name = sanitize_file_name(file_name)
    file_path = os.path.join(get_workspace_dir(owner_id, base_dir), safe_name)
    if not os.path.isfile(file_path):
        raise FileNotFoundError(f"Workspace file not found: {safe_name}")

    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    try:
        content = json.loads(text)
    except json.JSONDecodeError:
        content = text
    logger.debug(f"Read workspace file {safe_name} for owner {owner_id}")
    return {"file": safe_name, "content": content}
