# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

"""
Database access for instances and subscriptions
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from instance_manager.db.base import utcnow
from instance_manager.models.instance import Instance
from instance_manager.models.subscription import ALLOWED_STATUSES, Subscription
from instance_manager.schemas.instance import (
    InstanceConfig,
    InstanceStatus,
    UpdateResult,
    UpdateStatus,
)
from shared.logger import setup_logger

logger = setup_logger(__name__)

ACTIVE_INSTANCE_STATUSES = (InstanceStatus.RUNNING.value, InstanceStatus.PENDING.value)


def find_lapsed_subscriptions(db: Session, now: Optional[datetime] = None) -> List[Subscription]:
    """
    Subscriptions that are neither active nor pending and whose paid period
    is over. A missing period end counts as over. `now` is naive UTC.
    """
    now = now or utcnow()
    return (
        db.query(Subscription)
        .filter(
            Subscription.status.notin_(ALLOWED_STATUSES),
            or_(
                Subscription.current_period_end.is_(None),
                Subscription.current_period_end < now,
            ),
        )
        .all()
    )


def find_active_instances(db: Session, owner_id: str) -> List[Instance]:
    """Instances of an owner marked running or pending that have a container"""
    return (
        db.query(Instance)
        .filter(
            Instance.owner_id == owner_id,
            Instance.status.in_(ACTIVE_INSTANCE_STATUSES),
            Instance.container_id.isnot(None),
        )
        .all()
    )


def mark_instance_stopped(db: Session, instance_id: int, clear_container: bool = False) -> None:
    instance = db.query(Instance).filter(Instance.id == instance_id).first()
    if not instance:
        return
    instance.status = InstanceStatus.STOPPED.value
    instance.stopped_at = utcnow()
    if clear_container:
        instance.container_id = None
    db.commit()


def update_status_by_container(db: Session, container_id: str, status: InstanceStatus) -> int:
    """Set the status of whichever instance owns a container, returns rows touched"""
    now = utcnow()
    values = {Instance.status: status.value}
    if status == InstanceStatus.STOPPED:
        values[Instance.stopped_at] = now
    elif status == InstanceStatus.PENDING:
        values[Instance.started_at] = now
    count = (
        db.query(Instance)
        .filter(Instance.container_id == container_id)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return count


def detach_container(db: Session, container_id: str) -> int:
    """Forget a deleted container, the instance record itself is kept"""
    count = (
        db.query(Instance)
        .filter(Instance.container_id == container_id)
        .update(
            {
                Instance.container_id: None,
                Instance.status: InstanceStatus.STOPPED.value,
                Instance.stopped_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return count


def config_for_container(db: Session, container_id: str) -> Optional[InstanceConfig]:
    """Reverse lookup used by rolling updates"""
    instance = db.query(Instance).filter(Instance.container_id == container_id).first()
    if not instance:
        return None
    return config_for_instance(instance)


def config_for_instance(instance: Instance) -> InstanceConfig:
    return InstanceConfig(
        instance_id=instance.id,
        owner_id=instance.owner_id,
        model=instance.model,
        secrets=dict(instance.secrets or {}),
    )


def apply_update_results(db: Session, results: Iterable[UpdateResult]) -> int:
    """Point updated instances at their new containers"""
    updated = 0
    now = utcnow()
    for result in results:
        if result.status != UpdateStatus.UPDATED or not result.instance_id or not result.new_container_id:
            continue
        instance = db.query(Instance).filter(Instance.id == result.instance_id).first()
        if not instance:
            logger.warning(f"Instance {result.instance_id} vanished during rolling update")
            continue
        instance.container_id = result.new_container_id
        instance.status = InstanceStatus.PENDING.value
        instance.started_at = now
        updated += 1
    db.commit()
    return updated


def upsert_owner_instance(db: Session, owner_id: str, model: str, secrets: Dict[str, str]) -> Instance:
    """
    The owner's instance record with the given settings.

    Owners have at most one instance, an existing record is reused.
    """
    instance = (
        db.query(Instance)
        .filter(Instance.owner_id == owner_id)
        .order_by(Instance.id.desc())
        .first()
    )
    if instance is None:
        instance = Instance(owner_id=owner_id, status=InstanceStatus.PENDING.value)
        db.add(instance)
    instance.model = model
    instance.secrets = dict(secrets)
    db.commit()
    db.refresh(instance)
    return instance


def record_container_created(db: Session, instance: Instance, container_id: str) -> None:
    """Point an instance at a freshly created container"""
    instance.container_id = container_id
    instance.status = InstanceStatus.PENDING.value
    instance.started_at = utcnow()
    instance.stopped_at = None
    instance.error_message = None
    db.commit()


def record_instance_error(db: Session, instance: Instance, message: str) -> None:
    instance.status = InstanceStatus.ERROR.value
    instance.error_message = message
    db.commit()
