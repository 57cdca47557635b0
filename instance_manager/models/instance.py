# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

"""
Instance model for per-owner agent containers
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)

from instance_manager.db.base import Base, utcnow


class Instance(Base):
    """Durable record of an owner's agent instance"""

    __tablename__ = "instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False, index=True)  # Stable owner identity
    container_id = Column(String(64), nullable=True)  # Docker container ID
    status = Column(String(20), nullable=False, default="pending")  # pending/running/restarting/stopped/error
    model = Column(String(200), nullable=False)
    secrets = Column(JSON, nullable=False, default=dict)  # Env secrets, encrypted upstream
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_instance_status", "status"),
        Index("idx_instance_container", "container_id"),
    )
