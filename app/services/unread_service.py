from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import and_, or_, func
from app.core.cache import cache_service, CacheKeys, CacheInvalidation
from app.core.database import transaction, utcnow
from app.core.errors import NotFoundError
from app.core.logging import chat_logger
from app.models.conversation import Conversation, ConversationMember
from app.models.message import Message
from app.realtime.broadcaster import Broadcaster
from app.realtime.events import RealtimeEvent
from config import settings
import logging

logger = logging.getLogger(__name__)


class UnreadService:
	"""Per-member read position and unread counts"""

	def __init__(self, db: Session, broadcaster: Optional[Broadcaster] = None):
		self.db = db
		self.broadcaster = broadcaster

	def _unread_query(self, user_id: int):
		"""Messages from others newer than the member's marker; a null marker counts everything"""
		member = ConversationMember
		return self.db.query(Message.conversation_id, func.count(Message.id)).join(
			member,
			and_(member.conversation_id == Message.conversation_id, member.user_id == user_id)
		).filter(
			Message.sender_id != user_id,
			or_(member.last_read_at.is_(None), Message.created_at > member.last_read_at)
		)

	async def compute_unread_count(self, conversation_id: int, user_id: int) -> int:
		cache_key = CacheKeys.unread_count(conversation_id, user_id)
		cached = await cache_service.get(cache_key)
		if cached is not None:
			return int(cached)

		row = self._unread_query(user_id).filter(
			Message.conversation_id == conversation_id
		).group_by(Message.conversation_id).first()
		count = row[1] if row else 0

		await cache_service.set(cache_key, count, ttl=settings.cache_unread_ttl)
		return count

	async def unread_counts(self, user_id: int, conversation_ids: Iterable[int]) -> Dict[int, int]:
		"""Unread count for many conversations in one query"""
		ids = list(conversation_ids)
		if not ids:
			return {}
		rows = self._unread_query(user_id).filter(
			Message.conversation_id.in_(ids)
		).group_by(Message.conversation_id).all()
		counts = {conversation_id: 0 for conversation_id in ids}
		counts.update({conversation_id: count for conversation_id, count in rows})
		return counts

	async def total_unread(self, user_id: int) -> int:
		rows = self._unread_query(user_id).group_by(Message.conversation_id).all()
		return sum(count for _, count in rows)

	def advance_read_marker(self, conversation_id: int, user_id: int, at: datetime) -> bool:
		"""
		Move last_read_at forward to `at`, never backward.

		The comparison lives in the UPDATE itself so concurrent readers cannot
		regress the marker. Runs in the caller's transaction.
		"""
		updated = self.db.query(ConversationMember).filter(
			ConversationMember.conversation_id == conversation_id,
			ConversationMember.user_id == user_id,
			or_(ConversationMember.last_read_at.is_(None), ConversationMember.last_read_at < at)
		).update({ConversationMember.last_read_at: at}, synchronize_session="fetch")
		return updated > 0

	async def mark_conversation_read(self, conversation_id: int, user_id: int) -> Tuple[Optional[datetime], List[int]]:
		"""
		Mark everything in the conversation as read for `user_id`.

		Idempotent. In direct conversations the read receipts of messages
		addressed to the user are flipped too. Returns the member's marker
		after the update and the ids of the messages whose receipt flipped.
		"""
		conversation_type = self.db.query(Conversation.conversation_type).filter(
			Conversation.id == conversation_id
		).scalar()
		if conversation_type is None:
			raise NotFoundError("Conversation not found")

		now = utcnow()
		flipped_ids: List[int] = []
		with transaction(self.db, "mark_conversation_read", conversation_id=conversation_id, user_id=user_id):
			self.advance_read_marker(conversation_id, user_id, now)

			if conversation_type == "direct":
				flipped_ids = [
					message_id for (message_id,) in self.db.query(Message.id).filter(
						Message.conversation_id == conversation_id,
						Message.receiver_id == user_id,
						Message.read_status == False  # noqa: E712
					).all()
				]
				if flipped_ids:
					self.db.query(Message).filter(Message.id.in_(flipped_ids)).update(
						{Message.read_status: True, Message.read_at: now},
						synchronize_session="fetch"
					)

		await CacheInvalidation.invalidate_unread(conversation_id, [user_id])
		chat_logger.conversation_read(conversation_id, user_id, flipped=len(flipped_ids))

		if flipped_ids and self.broadcaster:
			member_ids = [
				member_id for (member_id,) in self.db.query(ConversationMember.user_id).filter(
					ConversationMember.conversation_id == conversation_id
				).all()
			]
			await self.broadcaster.fan_out(
				RealtimeEvent.MESSAGE_READ_ALL,
				{
					"conversation_id": conversation_id,
					"reader_id": user_id,
					"message_ids": flipped_ids,
					"read_at": now.isoformat(),
				},
				conversation_id=conversation_id,
				user_ids=member_ids
			)

		last_read_at = self.db.query(ConversationMember.last_read_at).filter(
			ConversationMember.conversation_id == conversation_id,
			ConversationMember.user_id == user_id
		).scalar()
		return last_read_at, flipped_ids
