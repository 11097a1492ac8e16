import pytest
from fastapi.testclient import TestClient

from app.core.errors import ForbiddenError, NotFoundError, ValidationError
from app.models.message import MessageReaction
from app.realtime.events import RealtimeEvent
from app.services.message_service import MessageService
from app.services.reaction_service import ReactionService


class TestReactionToggle:
    """Toggling is idempotent in pairs and safe under concurrent toggles."""

    async def test_toggle_twice_restores_state(self, db_session, alice, bob, identity, broadcaster):
        message = await MessageService(db_session).send_message(identity(alice), "lunch?", receiver_id=bob.id)
        service = ReactionService(db_session, broadcaster)

        added = await service.toggle_reaction(message.id, identity(bob), "🍕")
        removed = await service.toggle_reaction(message.id, identity(bob), "🍕")

        assert added.action == "added"
        assert added.reactions[0].count == 1
        assert removed.action == "removed"
        assert removed.reactions == []
        assert db_session.query(MessageReaction).count() == 0
        assert len(broadcaster.named(RealtimeEvent.MESSAGE_REACTION)) > 0

    async def test_distinct_emojis_are_independent(self, db_session, alice, bob, identity):
        message = await MessageService(db_session).send_message(identity(alice), "news", receiver_id=bob.id)
        service = ReactionService(db_session)

        await service.toggle_reaction(message.id, identity(bob), "👍")
        result = await service.toggle_reaction(message.id, identity(bob), "🎉")

        assert sorted(group.emoji for group in result.reactions) == sorted(["👍", "🎉"])

    async def test_concurrent_add_is_retried_as_remove(self, db_session, alice, bob, identity, monkeypatch):
        """If another toggle inserted first, the retry removes the reaction."""
        message = await MessageService(db_session).send_message(identity(alice), "race", receiver_id=bob.id)
        service = ReactionService(db_session)
        await service.toggle_reaction(message.id, identity(bob), "👍")

        original = service._delete_existing
        calls = []

        def stale_delete(message_id, user_id, emoji):
            # The first attempt does not yet see the other toggle's row
            calls.append(emoji)
            if len(calls) == 1:
                return 0
            return original(message_id, user_id, emoji)

        monkeypatch.setattr(service, "_delete_existing", stale_delete)

        result = await service.toggle_reaction(message.id, identity(bob), "👍")

        assert result.action == "removed"
        assert len(calls) == 2
        assert db_session.query(MessageReaction).count() == 0

    async def test_validation_and_access(self, db_session, alice, bob, carol, identity):
        message = await MessageService(db_session).send_message(identity(alice), "private", receiver_id=bob.id)
        service = ReactionService(db_session)

        with pytest.raises(ValidationError):
            await service.toggle_reaction(message.id, identity(bob), "  ")
        with pytest.raises(NotFoundError):
            await service.toggle_reaction(99999, identity(bob), "👍")
        with pytest.raises(ForbiddenError):
            await service.toggle_reaction(message.id, identity(carol), "👍")


class TestReactionEndpoint:
    def test_toggle_over_http(self, client: TestClient, alice, bob, auth_headers):
        message = client.post(
            "/messages", json={"receiver_id": bob.id, "content": "ship it"}, headers=auth_headers(alice)
        ).json()

        response = client.post(
            f"/messages/{message['id']}/reactions", json={"emoji": "🚀"}, headers=auth_headers(bob)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "added"
        assert data["reactions"][0]["users"][0]["user_id"] == bob.id

        fetched = client.get(f"/messages/{message['id']}", headers=auth_headers(alice)).json()
        assert fetched["reactions"][0]["emoji"] == "🚀"
