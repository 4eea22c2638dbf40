"""
Connection Manager - live connection registry, presence and chat rooms.

Every WebSocket gets a connection id. The manager maps connection ids to
users, tracks which chat rooms each connection subscribed to and fans
events out to rooms or to everyone. State is process-local; the maps
are only touched under the lock and sends happen on a snapshot.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

PresenceHook = Callable[[int, bool], Awaitable[None]]


class ConnectionManager:
    """
    Registry of live connections.

    A user is online while at least one of their connections is registered.
    """

    def __init__(self, presence_hook: Optional[PresenceHook] = None):
        self.connections: Dict[str, object] = {}
        self.connection_users: Dict[str, int] = {}
        self.user_connections: Dict[int, Set[str]] = {}
        self.rooms: Dict[int, Set[str]] = {}
        self.connection_rooms: Dict[str, Set[int]] = {}
        self.presence_hook = presence_hook
        self._lock = asyncio.Lock()

    # ============ REGISTRY ============

    def _detach(self, connection_id: str) -> Optional[int]:
        """
        Drop a connection from every map. Caller holds the lock.

        Returns:
            The user id if this was the user's last connection
        """
        user_id = self.connection_users.pop(connection_id, None)
        self.connections.pop(connection_id, None)
        for chat_id in self.connection_rooms.pop(connection_id, set()):
            members = self.rooms.get(chat_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.rooms[chat_id]
        if user_id is None:
            return None
        remaining = self.user_connections.get(user_id)
        if remaining is not None:
            remaining.discard(connection_id)
            if not remaining:
                del self.user_connections[user_id]
                return user_id
        return None

    async def register_connection(self, connection_id: str, user_id: int, websocket) -> None:
        """
        Bind a connection to a user and announce the user as online.

        Re-registering a connection id under another user replaces the old
        binding (last write wins).
        """
        went_offline = None
        async with self._lock:
            previous = self.connection_users.get(connection_id)
            if previous is not None and previous != user_id:
                went_offline = self._detach(connection_id)
            self.connections[connection_id] = websocket
            self.connection_users[connection_id] = user_id
            self.user_connections.setdefault(user_id, set()).add(connection_id)

        if went_offline is not None:
            await self._announce_presence(went_offline, False)
        await self._announce_presence(user_id, True, exclude=connection_id)
        logger.info(f"Connection {connection_id} registered for user {user_id}")

    async def unregister_connection(self, connection_id: str) -> bool:
        """
        Remove a connection and its room subscriptions.

        Returns:
            True if the user went offline as a result
        """
        async with self._lock:
            user_id = self.connection_users.get(connection_id)
            went_offline = self._detach(connection_id)

        logger.info(f"Connection {connection_id} of user {user_id} unregistered")
        if went_offline is None:
            return False
        await self._announce_presence(went_offline, False)
        return True

    async def join_room(self, connection_id: str, chat_id: int) -> None:
        async with self._lock:
            if connection_id not in self.connection_users:
                raise KeyError(f"Connection {connection_id} is not registered")
            self.rooms.setdefault(chat_id, set()).add(connection_id)
            self.connection_rooms.setdefault(connection_id, set()).add(chat_id)

    def user_of(self, connection_id: str) -> Optional[int]:
        return self.connection_users.get(connection_id)

    def rooms_of(self, connection_id: str) -> Set[int]:
        return set(self.connection_rooms.get(connection_id, set()))

    def room_members(self, chat_id: int) -> Set[str]:
        return set(self.rooms.get(chat_id, set()))

    def is_user_online(self, user_id: int) -> bool:
        return user_id in self.user_connections

    def online_users(self) -> List[int]:
        return sorted(self.user_connections)

    # ============ DELIVERY ============

    async def _announce_presence(self, user_id: int, online: bool, exclude: Optional[str] = None):
        if self.presence_hook is not None:
            try:
                await self.presence_hook(user_id, online)
            except Exception as e:
                logger.warning(f"Presence persistence failed for user {user_id}: {e}")
        await self.broadcast_all(
            {"type": "presence", "user_id": user_id, "online": online},
            exclude=exclude,
        )

    async def send_to_connection(self, connection_id: str, event: dict) -> bool:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        return await self._safe_send(connection_id, websocket, json.dumps(event, default=str))

    async def broadcast_room(self, chat_id: int, event: dict, exclude: Optional[str] = None) -> int:
        """Send to every connection subscribed to the chat, except `exclude`."""
        async with self._lock:
            targets = [
                (cid, self.connections[cid])
                for cid in self.rooms.get(chat_id, set())
                if cid != exclude and cid in self.connections
            ]
        return await self._broadcast(targets, event)

    async def broadcast_all(self, event: dict, exclude: Optional[str] = None) -> int:
        async with self._lock:
            targets = [(cid, ws) for cid, ws in self.connections.items() if cid != exclude]
        return await self._broadcast(targets, event)

    async def _broadcast(self, targets, event: dict) -> int:
        """Parallel send; returns the number of connections reached."""
        if not targets:
            return 0
        data = json.dumps(event, default=str)
        results = await asyncio.gather(
            *(self._safe_send(cid, ws, data) for cid, ws in targets),
            return_exceptions=True,
        )
        return sum(1 for result in results if result is True)

    async def _safe_send(self, connection_id: str, websocket, data: str) -> bool:
        try:
            await websocket.send_text(data)
            return True
        except Exception as e:
            # Connection may be closing; its receive loop unregisters it
            logger.debug(f"Send to {connection_id} failed: {e}")
            return False
