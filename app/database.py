"""
SQLite async database connection and initialization.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import aiosqlite

from config import settings
from errors import StorageError

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_code TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        token_hash TEXT UNIQUE NOT NULL,
        online INTEGER NOT NULL DEFAULT 0,
        last_seen TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS friend_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        from_user_id INTEGER NOT NULL REFERENCES users(id),
        to_user_id INTEGER NOT NULL REFERENCES users(id),
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS friendships (
        user_id INTEGER NOT NULL REFERENCES users(id),
        friend_id INTEGER NOT NULL REFERENCES users(id),
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, friend_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        name TEXT,
        admin_id INTEGER REFERENCES users(id),
        direct_key TEXT UNIQUE,
        last_message_id INTEGER,
        last_activity TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participants (
        chat_id INTEGER NOT NULL REFERENCES chats(id),
        user_id INTEGER NOT NULL REFERENCES users(id),
        unread_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chat_id INTEGER NOT NULL REFERENCES chats(id),
        sender_id INTEGER NOT NULL REFERENCES users(id),
        type TEXT NOT NULL DEFAULT 'text',
        content TEXT,
        file_url TEXT,
        file_name TEXT,
        file_size INTEGER,
        duration REAL,
        status TEXT NOT NULL DEFAULT 'sent',
        reply_to INTEGER REFERENCES messages(id),
        edited_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id INTEGER NOT NULL REFERENCES messages(id),
        user_id INTEGER NOT NULL REFERENCES users(id),
        read_at TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_shares (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        share_code TEXT NOT NULL,
        uploader_id INTEGER NOT NULL REFERENCES users(id),
        file_name TEXT NOT NULL,
        original_name TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        file_url TEXT NOT NULL,
        public_id TEXT NOT NULL,
        content_type TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        download_count INTEGER NOT NULL DEFAULT 0,
        max_downloads INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        CHECK (download_count <= max_downloads)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS share_downloads (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        share_id INTEGER NOT NULL REFERENCES file_shares(id),
        downloader_id INTEGER REFERENCES users(id),
        downloaded_at TIMESTAMP NOT NULL,
        origin_address TEXT,
        ticket TEXT UNIQUE,
        fetched_at TIMESTAMP
    )
    """,
    # Codes only need to be unique among active shares
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_file_shares_active_code
    ON file_shares(share_code) WHERE is_active = 1
    """,
    "CREATE INDEX IF NOT EXISTS idx_file_shares_code ON file_shares(share_code)",
    "CREATE INDEX IF NOT EXISTS idx_file_shares_expires ON file_shares(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON chat_participants(user_id)",
]


async def get_db(path: Optional[Path] = None) -> aiosqlite.Connection:
    """Get database connection."""
    try:
        db = await aiosqlite.connect(path or settings.DATABASE_PATH)
    except aiosqlite.Error as e:
        raise StorageError(f"Database unavailable: {e}") from e
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    return db


@asynccontextmanager
async def connection(path: Optional[Path] = None):
    """Open a connection for the duration of one request or event."""
    db = await get_db(path)
    try:
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def storage_errors(db: aiosqlite.Connection, action: str):
    """
    Translate driver failures into StorageError and roll back the open
    transaction so no partial write survives.
    """
    try:
        yield
    except aiosqlite.Error as e:
        logger.error(f"Storage failure during {action}: {e}")
        await db.rollback()
        raise StorageError(f"Could not {action}") from e


async def init_db(path: Optional[Path] = None):
    """Initialize database with required tables."""
    path = Path(path or settings.DATABASE_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(path) as db:
        for statement in SCHEMA:
            await db.execute(statement)
        await db.commit()
    logger.info(f"Database ready at {path}")
