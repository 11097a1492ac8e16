import asyncio
import json
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from starlette.websockets import WebSocketDisconnect, WebSocketState

from app.core.database import Base, get_session_scope
from app.core.security import create_access_token
from app.main import app
from app.models.message import Message
from app.models.user import User
from app.realtime.broadcaster import LocalBroadcaster, RedisBroadcaster, build_broadcaster
from app.realtime.connection_manager import ConnectionManager
from app.realtime.events import RealtimeEvent
from app.realtime.notifications import Notifier, message_preview
from app.services.message_service import MessageService


class FakeSocket:
    """Stands in for a Starlette WebSocket inside the connection registry."""

    def __init__(self, connected=True, broken=False):
        self.client_state = WebSocketState.CONNECTED if connected else WebSocketState.DISCONNECTED
        self.broken = broken
        self.sent = []

    async def send_json(self, payload):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


class FakePubSub:
    """Redis pub/sub subscription that fails on listen() or replays canned messages."""

    def __init__(self, messages=(), error=None):
        self.messages = list(messages)
        self.error = error
        self.closed = False

    async def subscribe(self, channel):
        pass

    async def unsubscribe(self, channel):
        pass

    async def aclose(self):
        self.closed = True

    async def listen(self):
        if self.error:
            raise self.error
        for message in self.messages:
            yield message
        await asyncio.Event().wait()


class TestConnectionManager:
    """Per-worker registry of live sockets."""

    async def test_user_and_conversation_channels(self):
        manager = ConnectionManager()
        phone, laptop = FakeSocket(), FakeSocket()
        manager.register(1, phone)
        manager.register(1, laptop)
        manager.join(10, laptop)

        assert await manager.send_to_user(1, "notification", {"n": 1}) == 2
        assert await manager.send_to_conversation(10, "conversation:new_message", {"id": 5}) == 1
        assert laptop.sent[-1] == {"type": "conversation:new_message", "data": {"id": 5}}

    async def test_evict_detaches_all_sockets_of_user(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        manager.register(1, socket)
        manager.join(10, socket)

        manager.evict(10, 1)

        assert await manager.send_to_conversation(10, "x", {}) == 0
        assert manager.is_online(1)

    async def test_dead_sockets_are_dropped(self):
        manager = ConnectionManager()
        manager.register(1, FakeSocket(broken=True))
        manager.register(1, FakeSocket(connected=False))

        assert await manager.send_to_user(1, "x", {}) == 0
        assert not manager.is_online(1)


class TestBroadcaster:
    """Delivery failures never reach the caller."""

    async def test_failed_delivery_returns_false(self):
        manager = MagicMock()
        manager.send_to_user = AsyncMock(side_effect=ConnectionError("down"))
        broadcaster = LocalBroadcaster(manager)

        assert await broadcaster.publish_to_user(1, "x", {}) is False

    async def test_send_survives_broken_broadcaster(self, db_session, alice, bob, identity, failing_broadcaster):
        service = MessageService(db_session, failing_broadcaster, Notifier(failing_broadcaster))

        message = await service.send_message(identity(alice), "still stored", receiver_id=bob.id)

        assert db_session.query(Message).filter(Message.id == message.id).count() == 1

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            build_broadcaster("carrier-pigeon", ConnectionManager(), MagicMock(), "chat:events")

    def test_message_preview(self):
        assert message_preview("x" * 80, limit=50) == "x" * 50 + "..."
        assert message_preview("") == "New message"


class TestRedisBroadcaster:
    """Envelopes published by one worker are dispatched by every worker."""

    async def test_publish_envelope(self):
        cache_manager = MagicMock()
        cache_manager.redis = AsyncMock()
        broadcaster = RedisBroadcaster(ConnectionManager(), cache_manager, "chat:events")

        assert await broadcaster.publish_to_conversation(7, RealtimeEvent.NEW_MESSAGE, {"id": 1}) is True

        channel, raw = cache_manager.redis.publish.call_args.args
        assert channel == "chat:events"
        assert json.loads(raw) == {
            "scope": "conversation", "target": 7, "event": RealtimeEvent.NEW_MESSAGE, "data": {"id": 1}
        }

    async def test_publish_without_redis_is_swallowed(self):
        cache_manager = MagicMock()
        cache_manager.redis = None
        broadcaster = RedisBroadcaster(ConnectionManager(), cache_manager, "chat:events")

        assert await broadcaster.publish_to_user(1, "x", {}) is False

    async def test_dispatch_to_local_sockets(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        manager.register(3, socket)
        manager.join(7, socket)
        broadcaster = RedisBroadcaster(manager, MagicMock(), "chat:events")

        await broadcaster.dispatch({"scope": "user", "target": "3", "event": "notification", "data": {"a": 1}})
        await broadcaster.dispatch({"scope": "unsubscribe", "target": 7, "user_id": 3})
        await broadcaster.dispatch({"scope": "conversation", "target": 7, "event": "x", "data": {}})

        assert socket.sent == [{"type": "notification", "data": {"a": 1}}]

    async def test_relay_resubscribes_after_connection_loss(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        manager.register(3, socket)
        envelope = {"scope": "user", "target": 3, "event": "notification", "data": {"a": 1}}
        dropped = FakePubSub(error=RedisConnectionError("Connection reset by peer"))
        healthy = FakePubSub(messages=[
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": json.dumps(envelope)},
        ])
        cache_manager = MagicMock()
        cache_manager.redis.pubsub.side_effect = [dropped, healthy]
        broadcaster = RedisBroadcaster(manager, cache_manager, "chat:events", retry_initial=0)

        await broadcaster.start()
        for _ in range(100):
            if socket.sent:
                break
            await asyncio.sleep(0.01)

        assert socket.sent == [{"type": "notification", "data": {"a": 1}}]
        assert cache_manager.redis.pubsub.call_count == 2
        assert dropped.closed
        assert broadcaster.is_healthy()

        await broadcaster.stop()
        assert healthy.closed
        assert not broadcaster.is_healthy()


@pytest.mark.integration
class TestWebSocket:
    """Live events over the /ws endpoint."""

    def _connect(self, client, user):
        token = create_access_token({"sub": str(user.id)})
        return client.websocket_connect(f"/ws?token={token}")

    def test_rejects_invalid_token(self, client: TestClient):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws?token=invalid"):
                pass

    def test_ping_and_unknown_events(self, client: TestClient, alice):
        with self._connect(client, alice) as ws:
            assert ws.receive_json()["type"] == RealtimeEvent.CONNECTION_READY

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == RealtimeEvent.PONG

            ws.send_json({"type": "dance"})
            assert ws.receive_json()["type"] == RealtimeEvent.ERROR

            ws.send_text("not json")
            assert ws.receive_json()["type"] == RealtimeEvent.ERROR

    def test_join_requires_membership(self, client: TestClient, alice, bob, carol, auth_headers):
        sent = client.post("/messages", json={"receiver_id": bob.id, "content": "Hallo"}, headers=auth_headers(alice)).json()

        with self._connect(client, carol) as ws:
            ws.receive_json()
            ws.send_json({"type": "conversation:join", "data": {"conversation_id": sent["conversation_id"]}})
            error = ws.receive_json()

        assert error["type"] == RealtimeEvent.ERROR
        assert error["data"]["status_code"] == 403

    def test_new_message_reaches_joined_member(self, client: TestClient, alice, bob, auth_headers):
        sent = client.post("/messages", json={"receiver_id": bob.id, "content": "Hallo"}, headers=auth_headers(alice)).json()
        conversation_id = sent["conversation_id"]

        with self._connect(client, bob) as ws:
            ws.receive_json()
            ws.send_json({"type": "conversation:join", "data": {"conversation_id": conversation_id}})
            assert ws.receive_json() == {
                "type": RealtimeEvent.CONVERSATION_JOINED, "data": {"conversation_id": conversation_id}
            }

            client.post(
                "/messages",
                json={"conversation_id": conversation_id, "content": "Wie geht's?"},
                headers=auth_headers(alice)
            )

            event = ws.receive_json()
            assert event["type"] == RealtimeEvent.NEW_MESSAGE
            assert event["data"]["message"]["content"] == "Wie geht's?"
            assert event["data"]["message"]["sender_id"] == alice.id

    def test_typing_is_relayed_to_conversation(self, client: TestClient, alice, bob, auth_headers):
        sent = client.post("/messages", json={"receiver_id": bob.id, "content": "Hallo"}, headers=auth_headers(alice)).json()
        join = {"type": "conversation:join", "data": {"conversation_id": sent["conversation_id"]}}

        with self._connect(client, bob) as bob_ws, self._connect(client, alice) as alice_ws:
            bob_ws.receive_json()
            alice_ws.receive_json()
            bob_ws.send_json(join)
            bob_ws.receive_json()

            alice_ws.send_json({"type": "typing:start", "data": {"conversation_id": sent["conversation_id"]}})

            event = bob_ws.receive_json()
            assert event["type"] == RealtimeEvent.USER_TYPING
            assert event["data"]["user_id"] == alice.id

    def test_idle_socket_holds_no_connection(self, client: TestClient, tmp_path):
        pooled = create_engine(
            f"sqlite:///{tmp_path / 'pool.db'}",
            connect_args={"check_same_thread": False},
            poolclass=QueuePool,
            pool_size=1,
            max_overflow=0,
            pool_timeout=1,
        )
        Base.metadata.create_all(bind=pooled)
        PooledSession = sessionmaker(autocommit=False, autoflush=False, bind=pooled)
        with PooledSession() as setup:
            user = User(name="Dana", email="dana@example.com", role="user", is_active=True)
            setup.add(user)
            setup.commit()
            user_id = user.id

        @contextmanager
        def pooled_scope():
            with PooledSession() as db:
                yield db

        app.dependency_overrides[get_session_scope] = lambda: pooled_scope
        token = create_access_token({"sub": str(user_id)})

        try:
            with client.websocket_connect(f"/ws?token={token}") as ws:
                assert ws.receive_json()["type"] == RealtimeEvent.CONNECTION_READY

                ws.send_json({"type": "conversation:join", "data": {"conversation_id": 404}})
                assert ws.receive_json()["data"]["status_code"] == 404
                ws.send_json({"type": "ping"})
                assert ws.receive_json()["type"] == RealtimeEvent.PONG

                assert pooled.pool.checkedout() == 0
        finally:
            pooled.dispose()
