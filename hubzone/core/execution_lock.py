"""
Single-flight execution lock.

A lease row in execution_locks, acquired by compare-and-swap so that at
most one import execution runs across every engine instance. An expired
lease is free to take over.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hubzone.core.models import ExecutionLock

logger = logging.getLogger(__name__)

MAP_UPDATE_LOCK = "hubzone_map_update"


def _ensure_lock_row(db: Session, name: str) -> None:
    if db.get(ExecutionLock, name) is not None:
        return
    db.add(ExecutionLock(name=name))
    try:
        db.commit()
    except IntegrityError:
        # Another instance created it first
        db.rollback()


def acquire_lock(
    db: Session,
    execution_id: str,
    lease_seconds: int,
    name: str = MAP_UPDATE_LOCK,
    now: Optional[datetime] = None,
) -> bool:
    """
    Try to take the lock for an execution.

    Returns:
        True if the lock is now held by execution_id
    """
    now = now or datetime.utcnow()
    _ensure_lock_row(db, name)

    result = db.execute(
        update(ExecutionLock)
        .where(
            ExecutionLock.name == name,
            or_(
                ExecutionLock.holder_execution_id.is_(None),
                ExecutionLock.expires_at < now,
            ),
        )
        .values(
            holder_execution_id=execution_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=lease_seconds),
        )
    )
    db.commit()

    acquired = result.rowcount == 1
    if acquired:
        logger.info(f"Execution lock '{name}' acquired by {execution_id}")
    return acquired


def current_holder(
    db: Session, name: str = MAP_UPDATE_LOCK, now: Optional[datetime] = None
) -> Optional[str]:
    """Execution id holding an unexpired lease, if any."""
    now = now or datetime.utcnow()
    lock = db.get(ExecutionLock, name, populate_existing=True)
    if lock is None or lock.holder_execution_id is None:
        return None
    if lock.expires_at is not None and lock.expires_at < now:
        return None
    return lock.holder_execution_id


def release_lock(db: Session, execution_id: str, name: str = MAP_UPDATE_LOCK) -> bool:
    """
    Release the lock if execution_id still holds it.

    Returns:
        True if a lease was released
    """
    result = db.execute(
        update(ExecutionLock)
        .where(
            ExecutionLock.name == name,
            ExecutionLock.holder_execution_id == execution_id,
        )
        .values(holder_execution_id=None, acquired_at=None, expires_at=None)
    )
    db.commit()
    released = result.rowcount == 1
    if released:
        logger.info(f"Execution lock '{name}' released by {execution_id}")
    return released
