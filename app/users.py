"""
User accounts, presence persistence and friend requests.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

import aiosqlite

from config import settings
from database import storage_errors
from errors import NotFound, Unauthorized, ValidationError
from security import hash_token, new_api_token
from utils.clock import utcnow, to_iso
from utils.code_generator import ensure_unique_code, generate_user_code

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, user_code, name, email, online, last_seen, created_at"


def _user(row) -> Optional[dict]:
    if row is None:
        return None
    user = dict(row)
    user["online"] = bool(user["online"])
    return user


async def create_user(db: aiosqlite.Connection, name: str, email: str) -> Tuple[dict, str]:
    """
    Register a user.

    Returns:
        The user and the plain API token (only ever returned here)
    """
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name or len(name) > 50:
        raise ValidationError("Name must be 1-50 characters")
    if "@" not in email:
        raise ValidationError("Invalid email")

    async with storage_errors(db, "create user"):
        cursor = await db.execute("SELECT 1 FROM users WHERE email = ?", (email,))
        if await cursor.fetchone():
            raise ValidationError("Email already registered")

        async def code_taken(code: str) -> bool:
            cursor = await db.execute("SELECT 1 FROM users WHERE user_code = ?", (code,))
            return await cursor.fetchone() is not None

        user_code = await ensure_unique_code(
            code_taken, generate=generate_user_code, max_attempts=settings.CODE_MAX_ATTEMPTS
        )
        token = new_api_token()
        cursor = await db.execute(
            f"""
            INSERT INTO users (user_code, name, email, token_hash, online, last_seen, created_at)
            VALUES (?, ?, ?, ?, 0, NULL, ?)
            RETURNING {USER_COLUMNS}
            """,
            (user_code, name, email, hash_token(token), to_iso(utcnow())),
        )
        row = await cursor.fetchone()
        await db.commit()

    logger.info(f"Registered user {user_code}")
    return _user(row), token


async def authenticate(db: aiosqlite.Connection, token: Optional[str]) -> dict:
    if not token:
        raise Unauthorized("Missing API token")
    async with storage_errors(db, "authenticate"):
        cursor = await db.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE token_hash = ?", (hash_token(token),)
        )
        row = await cursor.fetchone()
    if row is None:
        raise Unauthorized("Invalid API token")
    return _user(row)


async def get_user(db: aiosqlite.Connection, user_id: int) -> dict:
    async with storage_errors(db, "look up user"):
        cursor = await db.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
    if row is None:
        raise NotFound("User not found")
    return _user(row)


async def find_by_code(db: aiosqlite.Connection, user_code: str) -> dict:
    code = (user_code or "").strip().upper()
    async with storage_errors(db, "look up user"):
        cursor = await db.execute(f"SELECT {USER_COLUMNS} FROM users WHERE user_code = ?", (code,))
        row = await cursor.fetchone()
    if row is None:
        raise NotFound(f"No user with code {code}")
    return _user(row)


async def set_presence(db: aiosqlite.Connection, user_id: int, online: bool,
                       now: Optional[datetime] = None):
    now = now or utcnow()
    async with storage_errors(db, "update presence"):
        await db.execute(
            "UPDATE users SET online = ?, last_seen = ? WHERE id = ?",
            (1 if online else 0, to_iso(now), user_id),
        )
        await db.commit()


async def reset_presence(db: aiosqlite.Connection) -> int:
    """Mark everyone offline; no connection survives a restart."""
    async with storage_errors(db, "reset presence"):
        cursor = await db.execute("UPDATE users SET online = 0 WHERE online = 1")
        await db.commit()
    return cursor.rowcount


# ============ FRIENDS ============

async def are_friends(db: aiosqlite.Connection, user_id: int, other_id: int) -> bool:
    cursor = await db.execute(
        "SELECT 1 FROM friendships WHERE user_id = ? AND friend_id = ?", (user_id, other_id)
    )
    return await cursor.fetchone() is not None


async def send_friend_request(db: aiosqlite.Connection, from_user: dict, to_code: str) -> dict:
    target = await find_by_code(db, to_code)
    if target["id"] == from_user["id"]:
        raise ValidationError("Cannot send a friend request to yourself")

    async with storage_errors(db, "send friend request"):
        if await are_friends(db, from_user["id"], target["id"]):
            raise ValidationError("Already friends")
        cursor = await db.execute(
            """
            SELECT 1 FROM friend_requests
            WHERE status = 'pending'
              AND ((from_user_id = ? AND to_user_id = ?) OR (from_user_id = ? AND to_user_id = ?))
            """,
            (from_user["id"], target["id"], target["id"], from_user["id"]),
        )
        if await cursor.fetchone():
            raise ValidationError("A friend request between these users is already pending")

        cursor = await db.execute(
            """
            INSERT INTO friend_requests (from_user_id, to_user_id, status, created_at)
            VALUES (?, ?, 'pending', ?)
            RETURNING *
            """,
            (from_user["id"], target["id"], to_iso(utcnow())),
        )
        row = await cursor.fetchone()
        await db.commit()
    return dict(row)


async def respond_friend_request(db: aiosqlite.Connection, user: dict, request_id: int,
                                 accept: bool) -> dict:
    """Accept or reject a pending request addressed to `user`."""
    async with storage_errors(db, "respond to friend request"):
        cursor = await db.execute("SELECT * FROM friend_requests WHERE id = ?", (request_id,))
        request = await cursor.fetchone()
        if request is None or request["to_user_id"] != user["id"]:
            raise NotFound("Friend request not found")
        if request["status"] != "pending":
            raise ValidationError(f"Friend request already {request['status']}")

        status = "accepted" if accept else "rejected"
        await db.execute("UPDATE friend_requests SET status = ? WHERE id = ?", (status, request_id))
        if accept:
            now = to_iso(utcnow())
            await db.executemany(
                "INSERT OR IGNORE INTO friendships (user_id, friend_id, created_at) VALUES (?, ?, ?)",
                [
                    (request["from_user_id"], request["to_user_id"], now),
                    (request["to_user_id"], request["from_user_id"], now),
                ],
            )
        await db.commit()

    result = dict(request)
    result["status"] = status
    return result


async def list_friend_requests(db: aiosqlite.Connection, user_id: int) -> List[dict]:
    async with storage_errors(db, "list friend requests"):
        cursor = await db.execute(
            """
            SELECT r.id, r.status, r.created_at, u.id AS from_user_id,
                   u.user_code AS from_user_code, u.name AS from_name
            FROM friend_requests r JOIN users u ON u.id = r.from_user_id
            WHERE r.to_user_id = ? AND r.status = 'pending'
            ORDER BY r.id DESC
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


async def list_friends(db: aiosqlite.Connection, user_id: int) -> List[dict]:
    async with storage_errors(db, "list friends"):
        cursor = await db.execute(
            """
            SELECT u.id, u.user_code, u.name, u.email, u.online, u.last_seen, u.created_at
            FROM friendships f JOIN users u ON u.id = f.friend_id
            WHERE f.user_id = ?
            ORDER BY u.name
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
    return [_user(row) for row in rows]
