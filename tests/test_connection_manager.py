"""
Unit tests for the connection registry: presence transitions and room fan-out.
"""
import pytest

from connection_manager import ConnectionManager
from conftest import FakeWebSocket


def _presence(ws: FakeWebSocket):
    return [(e["user_id"], e["online"]) for e in ws.of_type("presence")]


class TestPresence:

    @pytest.mark.asyncio
    async def test_register_announces_online_to_others_only(self):
        manager = ConnectionManager()
        watcher, joiner = FakeWebSocket(), FakeWebSocket()
        await manager.register_connection("w1", 99, watcher)
        watcher.sent.clear()

        await manager.register_connection("a1", 1, joiner)

        assert _presence(watcher) == [(1, True)]
        assert joiner.sent == []
        assert manager.is_user_online(1)

    @pytest.mark.asyncio
    async def test_offline_fires_only_for_last_connection(self):
        manager = ConnectionManager()
        watcher = FakeWebSocket()
        await manager.register_connection("w1", 99, watcher)
        await manager.register_connection("a1", 1, FakeWebSocket())
        await manager.register_connection("a2", 1, FakeWebSocket())
        watcher.sent.clear()

        assert await manager.unregister_connection("a1") is False
        assert _presence(watcher) == []
        assert manager.is_user_online(1)

        assert await manager.unregister_connection("a2") is True
        assert _presence(watcher) == [(1, False)]
        assert not manager.is_user_online(1)

    @pytest.mark.asyncio
    async def test_interleaved_sequence(self):
        manager = ConnectionManager()
        watcher = FakeWebSocket()
        await manager.register_connection("w1", 99, watcher)

        steps = [
            ("register", "a1"), ("register", "a2"), ("unregister", "a1"),
            ("register", "a3"), ("unregister", "a2"), ("unregister", "a3"),
            ("register", "a4"), ("unregister", "a4"),
        ]
        live = set()
        for action, cid in steps:
            watcher.sent.clear()
            if action == "register":
                await manager.register_connection(cid, 1, FakeWebSocket())
                live.add(cid)
            else:
                went_offline = await manager.unregister_connection(cid)
                live.discard(cid)
                offline_events = [e for e in _presence(watcher) if e == (1, False)]
                assert went_offline is (not live)
                assert len(offline_events) == (0 if live else 1)

    @pytest.mark.asyncio
    async def test_unknown_connection_unregister_is_noop(self):
        manager = ConnectionManager()
        watcher = FakeWebSocket()
        await manager.register_connection("w1", 99, watcher)
        watcher.sent.clear()

        assert await manager.unregister_connection("ghost") is False
        assert watcher.sent == []

    @pytest.mark.asyncio
    async def test_reregistering_connection_last_write_wins(self):
        manager = ConnectionManager()
        watcher = FakeWebSocket()
        await manager.register_connection("w1", 99, watcher)
        await manager.register_connection("c1", 1, FakeWebSocket())
        watcher.sent.clear()

        await manager.register_connection("c1", 2, FakeWebSocket())

        assert manager.user_of("c1") == 2
        assert not manager.is_user_online(1)
        assert _presence(watcher) == [(1, False), (2, True)]

    @pytest.mark.asyncio
    async def test_presence_hook_receives_transitions(self):
        calls = []

        async def hook(user_id, online):
            calls.append((user_id, online))

        manager = ConnectionManager(presence_hook=hook)
        await manager.register_connection("a1", 1, FakeWebSocket())
        await manager.register_connection("a2", 1, FakeWebSocket())
        await manager.unregister_connection("a1")
        await manager.unregister_connection("a2")

        assert calls == [(1, True), (1, True), (1, False)]

    @pytest.mark.asyncio
    async def test_failing_presence_hook_does_not_block_broadcast(self):
        async def hook(user_id, online):
            raise RuntimeError("db down")

        manager = ConnectionManager(presence_hook=hook)
        watcher = FakeWebSocket()
        await manager.register_connection("w1", 99, watcher)
        await manager.register_connection("a1", 1, FakeWebSocket())

        assert (1, True) in _presence(watcher)


class TestRooms:

    @pytest.mark.asyncio
    async def test_room_broadcast_excludes_sender_and_non_members(self):
        manager = ConnectionManager()
        sender, member, outsider = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await manager.register_connection("s", 1, sender)
        await manager.register_connection("m", 2, member)
        await manager.register_connection("o", 3, outsider)
        await manager.join_room("s", 10)
        await manager.join_room("m", 10)
        for ws in (sender, member, outsider):
            ws.sent.clear()

        delivered = await manager.broadcast_room(10, {"type": "receive_message", "n": 1}, exclude="s")

        assert delivered == 1
        assert member.of_type("receive_message") == [{"type": "receive_message", "n": 1}]
        assert sender.sent == []
        assert outsider.sent == []

    @pytest.mark.asyncio
    async def test_connection_can_join_several_rooms(self):
        manager = ConnectionManager()
        await manager.register_connection("a", 1, FakeWebSocket())
        await manager.join_room("a", 10)
        await manager.join_room("a", 11)
        await manager.join_room("a", 10)

        assert manager.rooms_of("a") == {10, 11}
        assert manager.room_members(10) == {"a"}

    @pytest.mark.asyncio
    async def test_disconnect_leaves_all_rooms(self):
        manager = ConnectionManager()
        await manager.register_connection("a", 1, FakeWebSocket())
        await manager.register_connection("b", 2, FakeWebSocket())
        await manager.join_room("a", 10)
        await manager.join_room("b", 10)
        await manager.join_room("a", 11)

        await manager.unregister_connection("a")

        assert manager.room_members(10) == {"b"}
        assert manager.room_members(11) == set()
        assert manager.rooms_of("a") == set()

    @pytest.mark.asyncio
    async def test_unregistered_connection_cannot_join(self):
        manager = ConnectionManager()
        with pytest.raises(KeyError):
            await manager.join_room("ghost", 10)

    @pytest.mark.asyncio
    async def test_dead_socket_does_not_stop_fan_out(self):
        manager = ConnectionManager()
        alive = FakeWebSocket()
        await manager.register_connection("dead", 1, FakeWebSocket(fail=True))
        await manager.register_connection("alive", 2, alive)
        await manager.join_room("dead", 10)
        await manager.join_room("alive", 10)
        alive.sent.clear()

        delivered = await manager.broadcast_room(10, {"type": "receive_message"})

        assert delivered == 1
        assert alive.of_type("receive_message")
