"""
Message relay: persists chat events, then fans them out to chat rooms.

Persistence always completes before anything is broadcast. Any failure
is reported to the originating connection as a single error event and
nothing reaches the room.
"""
import logging
from typing import Callable, Optional

import chats
from config import settings
from connection_manager import ConnectionManager
from database import connection
from errors import ChillChatError, ValidationError, Forbidden
from security import sanitize_input, sanitize_filename
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def _chat_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("chat_id must be an integer")


class MessageRelay:

    def __init__(self, manager: ConnectionManager, db_factory: Callable = connection,
                 clock: Callable = utcnow):
        self.manager = manager
        self.db_factory = db_factory
        self.clock = clock

    async def _fail(self, connection_id: str, error: ChillChatError):
        logger.info(f"Relay error for {connection_id}: {error.code} - {error.detail}")
        await self.manager.send_to_connection(connection_id, error.to_event())

    def _sender(self, connection_id: str) -> int:
        user_id = self.manager.user_of(connection_id)
        if user_id is None:
            raise Forbidden("Connection is not registered")
        return user_id

    async def join_room(self, connection_id: str, chat_id) -> bool:
        """Subscribe a connection to a chat it belongs to."""
        try:
            user_id = self._sender(connection_id)
            chat_id = _chat_id(chat_id)
            async with self.db_factory() as db:
                await chats.require_participant(db, chat_id, user_id)
            await self.manager.join_room(connection_id, chat_id)
        except ChillChatError as e:
            await self._fail(connection_id, e)
            return False
        await self.manager.send_to_connection(connection_id, {"type": "room_joined", "chat_id": chat_id})
        return True

    @staticmethod
    def _payload(message_input: dict) -> dict:
        payload = {
            "type": message_input.get("message_type") or "text",
            "content": sanitize_input(message_input.get("content") or "",
                                      max_length=settings.MESSAGE_MAX_LENGTH).strip() or None,
            "file_url": message_input.get("file_url"),
            "reply_to": message_input.get("reply_to"),
        }
        if message_input.get("file_name"):
            payload["file_name"] = sanitize_filename(message_input["file_name"])
        for field in ("file_size", "duration"):
            if message_input.get(field) is not None:
                payload[field] = message_input[field]
        return payload

    async def relay_message(self, connection_id: str, message_input: dict) -> Optional[dict]:
        """
        Persist a message from `connection_id` and deliver it to the chat room.

        Returns:
            The stored message, or None if it was rejected
        """
        try:
            sender_id = self._sender(connection_id)
            chat_id = _chat_id(message_input.get("chat_id"))
            async with self.db_factory() as db:
                await chats.require_participant(db, chat_id, sender_id)
                message = await chats.persist_message(
                    db, chat_id, sender_id, self._payload(message_input), now=self.clock()
                )
        except ChillChatError as e:
            await self._fail(connection_id, e)
            return None

        delivered = await self.manager.broadcast_room(
            chat_id, {"type": "receive_message", "message": message}, exclude=connection_id
        )
        if delivered:
            await self._mark_delivered(message)
        await self.manager.send_to_connection(connection_id, {
            "type": "message_sent",
            "message": message,
            "client_ref": message_input.get("client_ref"),
        })
        logger.debug(f"Message {message['id']} relayed to {delivered} connections in chat {chat_id}")
        return message

    async def _mark_delivered(self, message: dict):
        # Already broadcast: a failed status update is only logged
        try:
            async with self.db_factory() as db:
                if await chats.mark_delivered(db, message["id"]):
                    message["status"] = "delivered"
        except ChillChatError as e:
            logger.warning(f"Could not mark message {message['id']} delivered: {e.detail}")

    async def mark_read(self, connection_id: str, chat_id) -> Optional[list]:
        try:
            reader_id = self._sender(connection_id)
            chat_id = _chat_id(chat_id)
            async with self.db_factory() as db:
                await chats.require_participant(db, chat_id, reader_id)
                message_ids = await chats.mark_read(db, chat_id, reader_id, now=self.clock())
        except ChillChatError as e:
            await self._fail(connection_id, e)
            return None

        if message_ids:
            await self.manager.broadcast_room(chat_id, {
                "type": "messages_read",
                "chat_id": chat_id,
                "reader_id": reader_id,
                "message_ids": message_ids,
            }, exclude=connection_id)
        return message_ids
