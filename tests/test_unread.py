from datetime import timedelta

from fastapi.testclient import TestClient

from app.core.database import utcnow
from app.models.conversation import ConversationMember
from app.models.message import Message
from app.realtime.events import RealtimeEvent
from app.services.conversation_service import ConversationService
from app.services.message_service import MessageService
from app.services.unread_service import UnreadService


class TestUnreadCounts:
    """Unread counts follow the per-member read marker."""

    async def test_unread_transition(self, db_session, alice, bob, identity):
        messages = MessageService(db_session)
        unread = UnreadService(db_session)
        sent = await messages.send_message(identity(alice), "ping", receiver_id=bob.id)

        assert await unread.compute_unread_count(sent.conversation_id, bob.id) == 1
        assert await unread.compute_unread_count(sent.conversation_id, alice.id) == 0

        await unread.mark_conversation_read(sent.conversation_id, bob.id)

        assert await unread.compute_unread_count(sent.conversation_id, bob.id) == 0

    async def test_non_member_counts_zero(self, db_session, alice, bob, carol, identity):
        sent = await MessageService(db_session).send_message(identity(alice), "ping", receiver_id=bob.id)

        assert await UnreadService(db_session).compute_unread_count(sent.conversation_id, carol.id) == 0

    async def test_marker_never_moves_backward(self, db_session, alice, bob):
        conversation, _ = await ConversationService(db_session).ensure_direct_conversation(alice.id, bob.id)
        unread = UnreadService(db_session)
        later = utcnow()
        earlier = later - timedelta(hours=1)

        assert unread.advance_read_marker(conversation.id, bob.id, later) is True
        assert unread.advance_read_marker(conversation.id, bob.id, earlier) is False
        db_session.commit()

        marker = db_session.query(ConversationMember.last_read_at).filter(
            ConversationMember.conversation_id == conversation.id,
            ConversationMember.user_id == bob.id
        ).scalar()
        assert marker == later

    async def test_mark_read_flips_direct_receipts_once(self, db_session, alice, bob, identity, broadcaster):
        messages = MessageService(db_session)
        first = await messages.send_message(identity(alice), "one", receiver_id=bob.id)
        second = await messages.send_message(identity(alice), "two", receiver_id=bob.id)
        unread = UnreadService(db_session, broadcaster)

        _, flipped = await unread.mark_conversation_read(first.conversation_id, bob.id)
        _, flipped_again = await unread.mark_conversation_read(first.conversation_id, bob.id)

        assert sorted(flipped) == sorted([first.id, second.id])
        assert flipped_again == []
        assert all(message.read_status for message in db_session.query(Message).all())
        assert len(broadcaster.named(RealtimeEvent.MESSAGE_READ_ALL)) > 0
        assert alice.id in broadcaster.targets(RealtimeEvent.MESSAGE_READ_ALL)

    async def test_total_and_batched_counts(self, db_session, alice, bob, carol, identity):
        messages = MessageService(db_session)
        with_alice = await messages.send_message(identity(alice), "a1", receiver_id=carol.id)
        await messages.send_message(identity(alice), "a2", receiver_id=carol.id)
        with_bob = await messages.send_message(identity(bob), "b1", receiver_id=carol.id)
        unread = UnreadService(db_session)

        counts = await unread.unread_counts(carol.id, [with_alice.conversation_id, with_bob.conversation_id])

        assert counts == {with_alice.conversation_id: 2, with_bob.conversation_id: 1}
        assert await unread.total_unread(carol.id) == 3


class TestHalloScenario:
    """Two people greet each other over HTTP."""

    def test_hallo_wie_gehts(self, client: TestClient, alice, bob, auth_headers):
        # Alice opens the conversation by writing to Bob
        sent = client.post("/messages", json={"receiver_id": bob.id, "content": "Hallo"}, headers=auth_headers(alice))
        assert sent.status_code == 200
        conversation_id = sent.json()["conversation_id"]

        assert client.get("/unread-count", headers=auth_headers(bob)).json()["unread_count"] == 1
        assert client.get(
            f"/conversations/{conversation_id}/unread-count", headers=auth_headers(alice)
        ).json()["unread_count"] == 0

        # Bob opens the conversation, which marks it read
        page = client.get(f"/conversations/{conversation_id}/messages", headers=auth_headers(bob)).json()
        assert [message["content"] for message in page["messages"]] == ["Hallo"]
        assert page["messages"][0]["read_status"] is True
        assert client.get("/unread-count", headers=auth_headers(bob)).json()["unread_count"] == 0

        reply = client.post(
            "/messages",
            json={"conversation_id": conversation_id, "content": "Wie geht's?"},
            headers=auth_headers(bob)
        )
        assert reply.status_code == 200
        assert reply.json()["receiver_id"] == alice.id

        summaries = client.get("/conversations", headers=auth_headers(alice)).json()
        assert summaries[0]["id"] == conversation_id
        assert summaries[0]["unread_count"] == 1
        assert summaries[0]["last_message"]["content"] == "Wie geht's?"

        read = client.post(f"/conversations/{conversation_id}/read", headers=auth_headers(alice))
        assert read.status_code == 200
        assert read.json()["marked_message_ids"] == [reply.json()["id"]]
        assert client.get("/unread-count", headers=auth_headers(alice)).json()["unread_count"] == 0

    def test_single_message_read_endpoint(self, client: TestClient, alice, bob, auth_headers):
        sent = client.post("/messages", json={"receiver_id": bob.id, "content": "Hallo"}, headers=auth_headers(alice)).json()

        assert client.post(f"/messages/{sent['id']}/read", headers=auth_headers(alice)).status_code == 403

        response = client.post(f"/messages/{sent['id']}/read", headers=auth_headers(bob))
        assert response.status_code == 200
        assert response.json()["read_status"] is True
