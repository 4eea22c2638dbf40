"""
Time- and count-limited file shares.

A share is issued with a short code, stays redeemable for a fixed window
and can be downloaded at most `max_downloads` times. Download accounting
is a single conditional UPDATE so concurrent redeemers cannot both win
the last download.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional

import aiosqlite

from config import settings
from database import storage_errors
from errors import Expired, LimitReached, NotFound, Forbidden
from security import new_fetch_ticket
from utils.clock import utcnow, to_iso, from_iso
from utils.code_generator import generate_code, ensure_unique_code

logger = logging.getLogger(__name__)


@dataclass
class FileMeta:
    """What the object storage hands back for one upload."""
    file_name: str
    original_name: str
    file_size: int
    file_url: str
    public_id: str
    content_type: str


@dataclass
class FileShare:
    id: int
    share_code: str
    uploader_id: int
    file_name: str
    original_name: str
    file_size: int
    file_url: str
    public_id: str
    content_type: str
    created_at: datetime
    expires_at: datetime
    download_count: int
    max_downloads: int
    is_active: bool
    # One-time object fetch ticket, only on the share returned by record_download
    ticket: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "FileShare":
        return cls(
            id=row["id"],
            share_code=row["share_code"],
            uploader_id=row["uploader_id"],
            file_name=row["file_name"],
            original_name=row["original_name"],
            file_size=row["file_size"],
            file_url=row["file_url"],
            public_id=row["public_id"],
            content_type=row["content_type"],
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            download_count=row["download_count"],
            max_downloads=row["max_downloads"],
            is_active=bool(row["is_active"]),
        )


def normalize_code(share_code: str) -> str:
    return (share_code or "").strip().upper()


def can_download(share: FileShare, now: Optional[datetime] = None) -> bool:
    """Expiry is checked here, not by the janitor."""
    now = now or utcnow()
    return (
        share.is_active
        and now < share.expires_at
        and share.download_count < share.max_downloads
    )


async def _code_in_use(db: aiosqlite.Connection, code: str) -> bool:
    cursor = await db.execute(
        "SELECT 1 FROM file_shares WHERE share_code = ? AND is_active = 1", (code,)
    )
    return await cursor.fetchone() is not None


async def issue_share(
    db: aiosqlite.Connection,
    uploader_id: int,
    meta: FileMeta,
    max_downloads: Optional[int] = None,
    now: Optional[datetime] = None,
) -> FileShare:
    """
    Create an active share with a fresh code.

    Raises:
        CodeSpaceExhausted: If no unused code was found within the attempt budget
        StorageError: If the insert fails for any other reason
    """
    now = now or utcnow()
    expires_at = now + timedelta(minutes=settings.SHARE_WINDOW_MINUTES)
    if max_downloads is None:
        max_downloads = settings.DEFAULT_MAX_DOWNLOADS
    max_downloads = min(max(max_downloads, 1), settings.MAX_DOWNLOADS_LIMIT)

    inserted = {}

    async def code_taken(code: str) -> bool:
        # A code counts as taken if an active share holds it or the insert loses a race for it
        if await _code_in_use(db, code):
            return True
        try:
            cursor = await db.execute(
                """
                INSERT INTO file_shares (
                    share_code, uploader_id, file_name, original_name, file_size,
                    file_url, public_id, content_type, created_at, expires_at,
                    download_count, max_downloads, is_active
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, 1)
                RETURNING *
                """,
                (
                    code, uploader_id, meta.file_name, meta.original_name,
                    meta.file_size, meta.file_url, meta.public_id, meta.content_type,
                    to_iso(now), to_iso(expires_at), max_downloads,
                ),
            )
            inserted["row"] = await cursor.fetchone()
            await db.commit()
        except aiosqlite.IntegrityError as e:
            if "share_code" not in str(e):
                raise
            await db.rollback()
            logger.info(f"Share code collision on insert for {code}")
            return True
        return False

    async with storage_errors(db, "create file share"):
        await ensure_unique_code(
            code_taken,
            generate=generate_code,
            max_attempts=settings.CODE_MAX_ATTEMPTS,
        )

    share = FileShare.from_row(inserted["row"])
    logger.info(f"Issued share {share.share_code} for user {uploader_id}, expires {share.expires_at}")
    return share


async def find_share(db: aiosqlite.Connection, share_code: str) -> FileShare:
    """
    Latest share with this code, preferring the active one.

    Raises:
        NotFound: If no share ever used the code
    """
    code = normalize_code(share_code)
    async with storage_errors(db, "look up file share"):
        cursor = await db.execute(
            """
            SELECT * FROM file_shares
            WHERE share_code = ?
            ORDER BY is_active DESC, id DESC
            LIMIT 1
            """,
            (code,),
        )
        row = await cursor.fetchone()
    if not row:
        raise NotFound("Share code not found")
    return FileShare.from_row(row)


def _rejection(share: FileShare, now: datetime):
    if share.download_count >= share.max_downloads:
        return LimitReached("Download limit reached")
    return Expired("Share has expired")


async def record_download(
    db: aiosqlite.Connection,
    share: FileShare,
    downloader_id: Optional[int],
    origin_address: Optional[str],
    now: Optional[datetime] = None,
) -> FileShare:
    """
    Consume one download of `share`.

    The counter increment, the deactivation at the limit and the download
    record commit together, and only if the share is still redeemable at
    the time of the update.

    Raises:
        Expired: The window passed or the share was revoked
        LimitReached: Every allowed download was already taken
        NotFound: The share row no longer exists
    """
    now = now or utcnow()
    ticket = new_fetch_ticket()
    async with storage_errors(db, "record download"):
        cursor = await db.execute(
            """
            UPDATE file_shares
            SET download_count = download_count + 1,
                is_active = CASE WHEN download_count + 1 >= max_downloads THEN 0 ELSE 1 END
            WHERE id = ? AND is_active = 1
              AND download_count < max_downloads
              AND expires_at > ?
            RETURNING *
            """,
            (share.id, to_iso(now)),
        )
        row = await cursor.fetchone()
        if row is None:
            await db.rollback()
        else:
            await db.execute(
                """
                INSERT INTO share_downloads (share_id, downloader_id, downloaded_at, origin_address, ticket)
                VALUES (?, ?, ?, ?, ?)
                """,
                (share.id, downloader_id, to_iso(now), origin_address, ticket),
            )
            await db.commit()

    if row is None:
        async with storage_errors(db, "look up file share"):
            cursor = await db.execute("SELECT * FROM file_shares WHERE id = ?", (share.id,))
            current = await cursor.fetchone()
        if current is None:
            raise NotFound("Share code not found")
        raise _rejection(FileShare.from_row(current), now)

    updated = FileShare.from_row(row)
    updated.ticket = ticket
    logger.info(
        f"Share {updated.share_code} downloaded ({updated.download_count}/{updated.max_downloads})"
    )
    return updated


async def redeem_ticket(db: aiosqlite.Connection, public_id: str, ticket: Optional[str],
                        now: Optional[datetime] = None):
    """
    Spend the fetch ticket handed out with one download.

    Each counted download lets its redirect be followed once, within
    FETCH_TICKET_TTL_SECONDS of the download.

    Raises:
        Forbidden: No ticket was presented
        Expired: The ticket is unknown, used, stale or for another object
    """
    if not ticket:
        raise Forbidden("A download ticket is required")
    now = now or utcnow()
    issued_after = now - timedelta(seconds=settings.FETCH_TICKET_TTL_SECONDS)
    async with storage_errors(db, "redeem download ticket"):
        cursor = await db.execute(
            """
            UPDATE share_downloads SET fetched_at = ?
            WHERE ticket = ? AND fetched_at IS NULL AND downloaded_at > ?
              AND share_id IN (SELECT id FROM file_shares WHERE public_id = ?)
            RETURNING id
            """,
            (to_iso(now), ticket, to_iso(issued_after), public_id),
        )
        row = await cursor.fetchone()
        await db.commit()
    if row is None:
        raise Expired("Download link has expired or was already used")


async def list_downloads(db: aiosqlite.Connection, share_id: int) -> List[dict]:
    async with storage_errors(db, "list downloads"):
        cursor = await db.execute(
            """
            SELECT downloader_id, downloaded_at, origin_address
            FROM share_downloads WHERE share_id = ? ORDER BY id
            """,
            (share_id,),
        )
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def list_uploads(db: aiosqlite.Connection, uploader_id: int) -> List[FileShare]:
    async with storage_errors(db, "list file shares"):
        cursor = await db.execute(
            "SELECT * FROM file_shares WHERE uploader_id = ? ORDER BY id DESC",
            (uploader_id,),
        )
        rows = await cursor.fetchall()
    return [FileShare.from_row(row) for row in rows]


async def deactivate_share(db: aiosqlite.Connection, share: FileShare, user_id: int) -> FileShare:
    """Revoke a share before it expires. Only the uploader may do this."""
    if share.uploader_id != user_id:
        raise Forbidden("Only the uploader can revoke this share")
    async with storage_errors(db, "revoke file share"):
        await db.execute("UPDATE file_shares SET is_active = 0 WHERE id = ?", (share.id,))
        await db.commit()
    share.is_active = False
    logger.info(f"Share {share.share_code} revoked by user {user_id}")
    return share


def share_info(share: FileShare, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    info = asdict(share)
    info.pop("public_id")
    info.pop("file_url")
    info.pop("ticket")
    info["created_at"] = share.created_at.isoformat()
    info["expires_at"] = share.expires_at.isoformat()
    info["is_active"] = share.is_active and now < share.expires_at
    info["can_download"] = can_download(share, now)
    info["downloads_left"] = max(share.max_downloads - share.download_count, 0)
    info["seconds_left"] = max(int((share.expires_at - now).total_seconds()), 0)
    return info
