"""Change relay between the devices of one user.

Devices push opaque change records; other devices of the same user pull
them back in timestamp order. No merging or conflict detection happens here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.constants import RECENT_CHANGES_DAYS
from notesync.models import SyncLogEntry
from notesync.services.user_service import touch_device

logger = logging.getLogger(__name__)


@dataclass
class ChangeInput:
    entity_type: str
    entity_id: str
    operation: str
    timestamp: int
    data: dict[str, Any] | None = None


async def record_changes(
    db: AsyncSession,
    user_id: int,
    device_pk: int,
    changes: list[ChangeInput],
) -> int:
    """Append *changes* to the log and stamp the device's last sync time."""
    for change in changes:
        db.add(
            SyncLogEntry(
                user_id=user_id,
                device_id=device_pk,
                entity_type=change.entity_type,
                entity_id=change.entity_id,
                operation=change.operation,
                data=change.data,
                timestamp=change.timestamp,
            )
        )

    await touch_device(db, device_pk)
    await db.commit()

    logger.info("Recorded %d change(s) from device=%s", len(changes), device_pk)
    return len(changes)


async def get_changes_since(
    db: AsyncSession,
    user_id: int,
    device_pk: int,
    since: int | None = None,
    limit: int = 1000,
) -> list[SyncLogEntry]:
    """Changes made by the user's other devices after *since* (ms), oldest first."""
    stmt = (
        select(SyncLogEntry)
        .where(SyncLogEntry.user_id == user_id)
        .where(or_(SyncLogEntry.device_id.is_(None), SyncLogEntry.device_id != device_pk))
    )
    if since is not None:
        stmt = stmt.where(SyncLogEntry.timestamp > since)

    stmt = stmt.order_by(SyncLogEntry.timestamp.asc(), SyncLogEntry.id.asc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_recent_changes(
    db: AsyncSession,
    user_id: int,
    days: int = RECENT_CHANGES_DAYS,
) -> int:
    cutoff_ms = int((datetime.now(UTC) - timedelta(days=days)).timestamp() * 1000)
    result = await db.execute(
        select(func.count())
        .select_from(SyncLogEntry)
        .where(SyncLogEntry.user_id == user_id)
        .where(SyncLogEntry.timestamp > cutoff_ms)
    )
    return result.scalar() or 0
