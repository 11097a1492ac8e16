from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from app.models.message import Message, MessageReaction
from app.core.database import transaction, utcnow
from app.core.errors import NotFoundError, ValidationError
from app.core.logging import chat_logger
from app.core.metrics import record_reaction_toggled
from app.core.security import CurrentUser
from app.realtime.broadcaster import Broadcaster
from app.realtime.events import RealtimeEvent
from app.schemas.message import ReactionToggleResponse
from app.services.aggregation_service import AggregationService
from app.services.conversation_service import ConversationService
import logging

logger = logging.getLogger(__name__)


class ReactionService:
	def __init__(self, db: Session, broadcaster: Optional[Broadcaster] = None):
		self.db = db
		self.broadcaster = broadcaster
		self.conversations = ConversationService(db)
		self.aggregation = AggregationService(db)

	def _delete_existing(self, message_id: int, user_id: int, emoji: str) -> int:
		return self.db.query(MessageReaction).filter(
			MessageReaction.message_id == message_id,
			MessageReaction.user_id == user_id,
			MessageReaction.emoji == emoji
		).delete(synchronize_session="fetch")

	def _toggle(self, message_id: int, user_id: int, emoji: str) -> str:
		"""Remove the reaction if present, otherwise add it; runs in the caller's transaction"""
		if self._delete_existing(message_id, user_id, emoji):
			return "removed"
		self.db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji, created_at=utcnow()))
		self.db.flush()
		return "added"

	async def toggle_reaction(self, message_id: int, user: CurrentUser, emoji: str) -> ReactionToggleResponse:
		"""
		Flip one user's emoji reaction on a message.

		The unique (message, user, emoji) constraint is the only guard. Losing
		an insert race to a concurrent toggle means the reaction now exists,
		so the toggle is retried once and removes it.
		"""
		emoji = (emoji or "").strip()
		if not emoji:
			raise ValidationError("Emoji is required")

		message = self.db.query(Message).filter(Message.id == message_id).first()
		if not message:
			raise NotFoundError("Message not found")
		conversation_id = message.conversation_id
		await self.conversations.require_membership(conversation_id, user.id)

		with transaction(self.db, "toggle_reaction", message_id=message_id, user_id=user.id):
			try:
				action = self._toggle(message_id, user.id, emoji)
			except IntegrityError:
				# Nothing else is pending, so rolling back only drops the failed insert
				self.db.rollback()
				logger.info(f"Concurrent reaction on message {message_id}, retrying toggle")
				action = self._toggle(message_id, user.id, emoji)

		record_reaction_toggled(action)
		chat_logger.reaction_toggled(message_id, user.id, emoji, action)

		reactions = self.aggregation.reaction_summary(message_id)
		if self.broadcaster:
			member_ids = await self.conversations.get_member_ids(conversation_id)
			await self.broadcaster.fan_out(
				RealtimeEvent.MESSAGE_REACTION,
				{
					"conversation_id": conversation_id,
					"message_id": message_id,
					"user_id": user.id,
					"emoji": emoji,
					"action": action,
					"reactions": [summary.model_dump(mode="json") for summary in reactions],
				},
				conversation_id=conversation_id,
				user_ids=member_ids
			)
		return ReactionToggleResponse(action=action, reactions=reactions)
