# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

"""
Instance schemas
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class InstanceStatus(str, Enum):
    """Lifecycle status of an instance"""

    PENDING = "pending"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    ERROR = "error"


class InstanceConfig(BaseModel):
    """Everything needed to (re)create an owner's container"""

    instance_id: int = Field(..., description="Internal instance record ID")
    owner_id: str = Field(..., description="Stable owner identity, keys container and data dir")
    model: str = Field(..., description="Model name passed to the agent")
    secrets: Dict[str, str] = Field(
        default_factory=dict, description="Secrets exported as container environment variables"
    )


class CreateInstanceRequest(BaseModel):
    """Admin request to create or replace an owner's instance"""

    owner_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9._-]+$")
    model: str = Field(..., min_length=1, max_length=200)
    secrets: Dict[str, str] = Field(default_factory=dict)


class ManagedContainer(BaseModel):
    """A container carrying the managed label"""

    id: str
    name: str
    state: str
    status: str = ""
    image: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    created: Optional[datetime] = None


class UpdateStatus(str, Enum):
    """Outcome of recreating one container during a rolling update"""

    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class UpdateResult(BaseModel):
    container_id: str
    name: str
    status: UpdateStatus
    instance_id: Optional[int] = None
    owner_id: Optional[str] = None
    new_container_id: Optional[str] = None
    error: Optional[str] = None


class UpdateSummary(BaseModel):
    total: int
    updated: int
    skipped: int
    failed: int


class RollingUpdateResponse(BaseModel):
    message: str
    results: List[UpdateResult]
    summary: UpdateSummary


class BulkActionResult(BaseModel):
    name: str
    ok: bool
    error: Optional[str] = None
