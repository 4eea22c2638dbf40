"""
Background janitor for retired file shares.

Download checks never rely on this running: expiry is enforced at read
time. The janitor only reclaims storage.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from config import settings
from database import connection, storage_errors
from object_storage import LocalObjectStorage
from utils.clock import utcnow, to_iso

logger = logging.getLogger(__name__)


async def cleanup_expired(db: aiosqlite.Connection, storage: LocalObjectStorage,
                          now: Optional[datetime] = None) -> int:
    """
    Delete shares whose window has closed, with their stored objects.

    Exhausted shares keep their object until then so a redirected client
    can still fetch it.

    Returns:
        Number of shares removed
    """
    now = to_iso(now or utcnow())
    async with storage_errors(db, "sweep expired shares"):
        cursor = await db.execute(
            "SELECT id, public_id FROM file_shares WHERE expires_at <= ?",
            (now,),
        )
        expired = await cursor.fetchall()
    if not expired:
        return 0

    for row in expired:
        try:
            storage.delete(row["public_id"])
        except Exception as e:
            logger.warning(f"Could not delete object {row['public_id']}: {e}")

    ids = [(row["id"],) for row in expired]
    async with storage_errors(db, "purge expired shares"):
        await db.executemany("DELETE FROM share_downloads WHERE share_id = ?", ids)
        await db.executemany("DELETE FROM file_shares WHERE id = ?", ids)
        await db.commit()

    logger.info(f"Purged {len(ids)} retired file shares")
    return len(ids)


async def cleanup_loop(storage: LocalObjectStorage, interval: Optional[float] = None):
    """Run cleanup every CLEANUP_INTERVAL_SECONDS."""
    interval = interval or settings.CLEANUP_INTERVAL_SECONDS
    while True:
        try:
            async with connection() as db:
                await cleanup_expired(db, storage)
        except Exception as e:
            logger.error(f"Cleanup error: {e}")
        await asyncio.sleep(interval)
