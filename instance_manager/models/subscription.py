# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

"""
Billing subscription model, written by the payment collaborator
"""
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String

from instance_manager.db.base import Base, utcnow


class SubscriptionStatus(str, Enum):
    """Status for subscription"""

    ACTIVE = "active"
    PENDING = "pending"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"


# Owners in these states keep their instances regardless of period end
ALLOWED_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING.value)


class Subscription(Base):
    """Subscription model, read-only for the instance manager"""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.PENDING.value)
    # End of the current paid billing period, naive UTC like all timestamps here
    current_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
