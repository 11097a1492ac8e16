import pytest

from app.core.database import utcnow
from app.models.message import Message, MessageReaction
from app.services.aggregation_service import AggregationService
from app.services.conversation_service import ConversationService
from app.services.message_service import MessageService
from app.services.reaction_service import ReactionService


class TestBatchAggregation:
    """Aggregates are fetched per batch, never per message."""

    async def _direct(self, db_session, alice, bob):
        conversation, _ = await ConversationService(db_session).ensure_direct_conversation(alice.id, bob.id)
        return conversation.id

    def test_empty_batch_issues_no_queries(self, db_session, query_counter):
        with query_counter() as statements:
            result = AggregationService(db_session).enrich_messages([])

        assert result == {}
        assert statements == []

    async def test_single_message_costs_four_queries(self, db_session, alice, bob, identity, query_counter):
        message = await MessageService(db_session).send_message(identity(alice), "hello", receiver_id=bob.id)

        with query_counter() as statements:
            result = AggregationService(db_session).enrich_messages([message.id])

        assert len(statements) == 4
        assert result[message.id].reactions == []
        assert result[message.id].quote is None

    @pytest.mark.slow
    async def test_thousand_messages_cost_four_queries(self, db_session, alice, bob, query_counter):
        conversation_id = await self._direct(db_session, alice, bob)
        now = utcnow()
        messages = [
            Message(conversation_id=conversation_id, sender_id=alice.id, receiver_id=bob.id,
                    content=f"message {i}", created_at=now)
            for i in range(1000)
        ]
        db_session.add_all(messages)
        db_session.commit()
        ids = [message_id for (message_id,) in db_session.query(Message.id).all()]
        db_session.add(MessageReaction(message_id=ids[500], user_id=bob.id, emoji="🎉", created_at=now))
        db_session.commit()

        with query_counter() as statements:
            result = AggregationService(db_session).enrich_messages(ids)

        assert len(statements) == 4
        assert len(result) == 1000
        assert result[ids[500]].reactions[0].emoji == "🎉"

    async def test_reactions_grouped_by_emoji(self, db_session, alice, bob, carol, identity):
        conversation, _ = await ConversationService(db_session).create_conversation(
            created_by=alice.id, conversation_type="group", member_ids=[bob.id, carol.id]
        )
        message = await MessageService(db_session).send_message(identity(alice), "vote", conversation_id=conversation.id)
        reactions = ReactionService(db_session)
        await reactions.toggle_reaction(message.id, identity(bob), "👍")
        await reactions.toggle_reaction(message.id, identity(carol), "👍")
        await reactions.toggle_reaction(message.id, identity(carol), "❤️")

        summary = AggregationService(db_session).reaction_summary(message.id)

        assert [(group.emoji, group.count) for group in summary] == [("👍", 2), ("❤️", 1)]
        assert [user.user_id for user in summary[0].users] == [bob.id, carol.id]
        assert summary[0].users[0].user_name == "Bob"

    async def test_hydrate_preserves_order(self, db_session, alice, bob, identity):
        service = MessageService(db_session)
        first = await service.send_message(identity(alice), "first", receiver_id=bob.id)
        second = await service.send_message(identity(alice), "second", receiver_id=bob.id)

        loaded = AggregationService(db_session).load_messages([second.id, first.id])

        assert [message.id for message in loaded] == [second.id, first.id]
        assert loaded[0].sender_name == "Alice"
