"""
Chats, messages and read receipts.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

import aiosqlite

from database import storage_errors
from errors import Forbidden, NotFound, ValidationError
from utils.clock import utcnow, to_iso

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("text", "image", "voice", "file")


def _direct_key(user_id: int, other_id: int) -> str:
    low, high = sorted((user_id, other_id))
    return f"{low}:{high}"


async def _participants(db: aiosqlite.Connection, chat_id: int) -> List[int]:
    cursor = await db.execute(
        "SELECT user_id FROM chat_participants WHERE chat_id = ? ORDER BY user_id", (chat_id,)
    )
    return [row["user_id"] for row in await cursor.fetchall()]


async def get_chat(db: aiosqlite.Connection, chat_id: int) -> dict:
    async with storage_errors(db, "load chat"):
        cursor = await db.execute("SELECT * FROM chats WHERE id = ?", (chat_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFound("Chat not found")
        chat = dict(row)
        chat.pop("direct_key")
        chat["participants"] = await _participants(db, chat_id)
    return chat


async def _create_chat(db: aiosqlite.Connection, chat_type: str, member_ids: Iterable[int],
                       name: Optional[str] = None, admin_id: Optional[int] = None,
                       direct_key: Optional[str] = None) -> int:
    now = to_iso(utcnow())
    cursor = await db.execute(
        """
        INSERT INTO chats (type, name, admin_id, direct_key, last_activity, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (chat_type, name, admin_id, direct_key, now, now),
    )
    chat_id = cursor.lastrowid
    await db.executemany(
        "INSERT INTO chat_participants (chat_id, user_id) VALUES (?, ?)",
        [(chat_id, member_id) for member_id in sorted(set(member_ids))],
    )
    await db.commit()
    return chat_id


async def get_or_create_direct_chat(db: aiosqlite.Connection, user_id: int, other_id: int) -> dict:
    """One direct chat per unordered pair of users."""
    if user_id == other_id:
        raise ValidationError("Cannot open a direct chat with yourself")
    key = _direct_key(user_id, other_id)
    async with storage_errors(db, "open direct chat"):
        cursor = await db.execute("SELECT id FROM chats WHERE direct_key = ?", (key,))
        row = await cursor.fetchone()
        if row is not None:
            chat_id = row["id"]
        else:
            try:
                chat_id = await _create_chat(db, "direct", (user_id, other_id), direct_key=key)
            except aiosqlite.IntegrityError:
                # Lost the race to the other participant; theirs is the chat
                await db.rollback()
                cursor = await db.execute("SELECT id FROM chats WHERE direct_key = ?", (key,))
                chat_id = (await cursor.fetchone())["id"]
    return await get_chat(db, chat_id)


async def create_group_chat(db: aiosqlite.Connection, admin_id: int, name: str,
                            member_ids: Iterable[int]) -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Group chats need a name")
    members = set(member_ids) | {admin_id}
    async with storage_errors(db, "create group chat"):
        chat_id = await _create_chat(db, "group", members, name=name, admin_id=admin_id)
    logger.info(f"Group chat {chat_id} created by user {admin_id} with {len(members)} members")
    return await get_chat(db, chat_id)


async def is_participant(db: aiosqlite.Connection, chat_id: int, user_id: int) -> bool:
    async with storage_errors(db, "check chat membership"):
        cursor = await db.execute(
            "SELECT 1 FROM chat_participants WHERE chat_id = ? AND user_id = ?",
            (chat_id, user_id),
        )
        return await cursor.fetchone() is not None


async def require_participant(db: aiosqlite.Connection, chat_id: int, user_id: int):
    if not await is_participant(db, chat_id, user_id):
        raise Forbidden("Not a member of this chat")


async def list_chats(db: aiosqlite.Connection, user_id: int) -> List[dict]:
    """Chats of a user, most recently active first, with their unread count."""
    async with storage_errors(db, "list chats"):
        cursor = await db.execute(
            """
            SELECT c.id, c.type, c.name, c.admin_id, c.last_message_id, c.last_activity,
                   c.created_at, p.unread_count
            FROM chats c JOIN chat_participants p ON p.chat_id = c.id
            WHERE p.user_id = ?
            ORDER BY c.last_activity DESC, c.id DESC
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
        chats = []
        for row in rows:
            chat = dict(row)
            chat["participants"] = await _participants(db, row["id"])
            chats.append(chat)
    return chats


def _message(row) -> dict:
    return dict(row)


async def get_message(db: aiosqlite.Connection, message_id: int) -> dict:
    async with storage_errors(db, "load message"):
        cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFound("Message not found")
        message = _message(row)
        cursor = await db.execute(
            "SELECT user_id, read_at FROM message_reads WHERE message_id = ? ORDER BY read_at",
            (message_id,),
        )
        message["read_by"] = [dict(r) for r in await cursor.fetchall()]
    return message


async def list_messages(db: aiosqlite.Connection, chat_id: int, limit: int = 50,
                        before_id: Optional[int] = None) -> List[dict]:
    """Newest page of a chat's history, returned oldest first."""
    async with storage_errors(db, "list messages"):
        cursor = await db.execute(
            """
            SELECT * FROM messages
            WHERE chat_id = ? AND (? IS NULL OR id < ?)
            ORDER BY id DESC
            LIMIT ?
            """,
            (chat_id, before_id, before_id, limit),
        )
        rows = await cursor.fetchall()
    return [_message(row) for row in reversed(rows)]


def validate_message(payload: dict):
    message_type = payload.get("type") or "text"
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f"Unknown message type: {message_type}")
    if message_type == "text" and not payload.get("content"):
        raise ValidationError("Text messages need content")
    if message_type != "text" and not payload.get("file_url"):
        raise ValidationError(f"{message_type} messages need a file_url")


async def persist_message(db: aiosqlite.Connection, chat_id: int, sender_id: int,
                          payload: dict, now: Optional[datetime] = None) -> dict:
    """
    Store a message and bump its chat in one transaction.

    The message row is written first; the chat's last_message_id,
    last_activity and the other participants' unread counters follow.
    Nothing is committed unless every step succeeds.
    """
    validate_message(payload)
    now = to_iso(now or utcnow())
    reply_to = payload.get("reply_to")

    async with storage_errors(db, "store message"):
        if reply_to is not None:
            cursor = await db.execute(
                "SELECT 1 FROM messages WHERE id = ? AND chat_id = ?", (reply_to, chat_id)
            )
            if await cursor.fetchone() is None:
                raise ValidationError("reply_to must reference a message in the same chat")

        cursor = await db.execute(
            """
            INSERT INTO messages (chat_id, sender_id, type, content, file_url, file_name,
                                  file_size, duration, status, reply_to, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'sent', ?, ?)
            RETURNING *
            """,
            (
                chat_id, sender_id, payload.get("type") or "text", payload.get("content"),
                payload.get("file_url"), payload.get("file_name"), payload.get("file_size"),
                payload.get("duration"), reply_to, now,
            ),
        )
        message = _message(await cursor.fetchone())
        await db.execute(
            "UPDATE chats SET last_message_id = ?, last_activity = ? WHERE id = ?",
            (message["id"], now, chat_id),
        )
        await db.execute(
            """
            UPDATE chat_participants SET unread_count = unread_count + 1
            WHERE chat_id = ? AND user_id != ?
            """,
            (chat_id, sender_id),
        )
        await db.commit()

    message["read_by"] = []
    return message


async def mark_delivered(db: aiosqlite.Connection, message_id: int) -> bool:
    """Move a message from sent to delivered; read messages stay read."""
    async with storage_errors(db, "mark message delivered"):
        cursor = await db.execute(
            "UPDATE messages SET status = 'delivered' WHERE id = ? AND status = 'sent'",
            (message_id,),
        )
        await db.commit()
    return cursor.rowcount == 1


async def mark_read(db: aiosqlite.Connection, chat_id: int, user_id: int,
                    now: Optional[datetime] = None) -> List[int]:
    """
    Record read receipts for every message from other senders and reset
    the reader's unread counter.

    Returns:
        Ids of the messages newly marked as read
    """
    now = to_iso(now or utcnow())
    async with storage_errors(db, "mark messages read"):
        cursor = await db.execute(
            """
            SELECT m.id FROM messages m
            WHERE m.chat_id = ? AND m.sender_id != ?
              AND NOT EXISTS (
                  SELECT 1 FROM message_reads r WHERE r.message_id = m.id AND r.user_id = ?
              )
            ORDER BY m.id
            """,
            (chat_id, user_id, user_id),
        )
        message_ids = [row["id"] for row in await cursor.fetchall()]
        await db.executemany(
            "INSERT OR IGNORE INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
            [(message_id, user_id, now) for message_id in message_ids],
        )
        await db.executemany(
            "UPDATE messages SET status = 'read' WHERE id = ?",
            [(message_id,) for message_id in message_ids],
        )
        await db.execute(
            "UPDATE chat_participants SET unread_count = 0 WHERE chat_id = ? AND user_id = ?",
            (chat_id, user_id),
        )
        await db.commit()
    return message_ids
