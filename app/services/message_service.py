import re
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import desc
from app.models.conversation import Conversation, build_direct_key
from app.models.message import Message, MessageQuote, MessageMention, MessageReference
from app.models.user import User
from app.core.cache import CacheInvalidation
from app.core.database import transaction, insert_or_ignore, utcnow
from app.core.errors import NotFoundError, ForbiddenError, ValidationError
from app.core.logging import chat_logger
from app.core.metrics import record_message_created, record_mentions_created
from app.core.security import CurrentUser
from app.realtime.broadcaster import Broadcaster
from app.realtime.events import RealtimeEvent
from app.realtime.notifications import Notifier
from app.schemas.message import EnrichedMessage, MessagePage, MentionRef, MentionedMessage
from app.services.aggregation_service import AggregationService
from app.services.conversation_service import ConversationService
from app.services.unread_service import UnreadService
from app.services.user_service import UserService
from config import settings
import logging

logger = logging.getLogger(__name__)

SCRIPT_BLOCK = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
REFERENCE_DOMAINS = ("calendar", "task")


def sanitize_content(content: Optional[str]) -> str:
	"""Strip <script> blocks; everything else is stored verbatim"""
	if not content:
		return ""
	return SCRIPT_BLOCK.sub("", content).strip()


class MessageService:
	"""Message lifecycle: send, read, mention, reference and delete"""

	def __init__(self, db: Session, broadcaster: Optional[Broadcaster] = None, notifier: Optional[Notifier] = None):
		self.db = db
		self.broadcaster = broadcaster
		self.notifier = notifier
		self.users = UserService(db)
		self.conversations = ConversationService(db, broadcaster)
		self.unread = UnreadService(db, broadcaster)
		self.aggregation = AggregationService(db)

	async def require_message(self, message_id: int) -> Message:
		message = self.db.query(Message).filter(Message.id == message_id).first()
		if not message:
			raise NotFoundError("Message not found")
		return message

	async def send_message(
		self,
		sender: CurrentUser,
		content: Optional[str] = "",
		conversation_id: Optional[int] = None,
		receiver_id: Optional[int] = None,
		message_type: str = "text",
		attachments: Optional[List[Dict[str, Any]]] = None,
		metadata: Optional[Dict[str, Any]] = None,
		gif: Optional[str] = None,
		quoted_message_id: Optional[int] = None,
		mentioned_user_ids: Iterable[int] = ()
	) -> EnrichedMessage:
		"""
		Store a message with its quote and mentions in one transaction.

		Everything is validated before the first write. Live events and
		notifications go out only after the commit.
		"""
		attachments = list(attachments or [])
		metadata = dict(metadata or {})
		raw_content = content or ""

		if len(raw_content) > settings.max_message_length:
			raise ValidationError(f"Message exceeds {settings.max_message_length} characters")
		text = sanitize_content(raw_content)
		if not text and not attachments and not gif:
			raise ValidationError("Message content, attachment or gif is required")
		if conversation_id is None and receiver_id is None:
			raise ValidationError("Either conversation_id or receiver_id is required")

		quoted = None
		if quoted_message_id is not None:
			quoted = self.db.query(Message).filter(Message.id == quoted_message_id).first()
			if not quoted:
				raise NotFoundError("Quoted message not found")

		mention_ids = [user_id for user_id in dict.fromkeys(mentioned_user_ids) if user_id != sender.id]
		if mention_ids:
			await self.users.require_users(mention_ids)

		created = False
		if conversation_id is not None:
			conversation, _ = await self.conversations.require_membership(conversation_id, sender.id)
			if conversation.conversation_type == "direct":
				receiver_id = next(
					(user_id for user_id in await self.conversations.get_member_ids(conversation.id) if user_id != sender.id),
					None
				)
			else:
				receiver_id = None
			if quoted and quoted.conversation_id != conversation.id:
				raise NotFoundError("Quoted message not found in this conversation")
		else:
			await self.users.require_user(receiver_id)
			if receiver_id == sender.id:
				raise ValidationError("Cannot send a direct message to yourself")
			if quoted:
				existing = self.conversations.find_direct_conversation(build_direct_key(sender.id, receiver_id))
				if not existing or quoted.conversation_id != existing.id:
					raise NotFoundError("Quoted message not found in this conversation")
			conversation, created = await self.conversations.ensure_direct_conversation(sender.id, receiver_id)

		if gif:
			message_type = "gif"
			metadata["gif_url"] = gif
			text = text or gif
		elif not text:
			text = "[attachment]"
		if quoted:
			metadata["quoted_message_id"] = quoted.id

		now = utcnow()
		message = Message(
			conversation_id=conversation.id,
			sender_id=sender.id,
			receiver_id=receiver_id,
			content=text,
			message_type=message_type,
			attachments=attachments,
			message_metadata=metadata,
			created_at=now
		)
		with transaction(self.db, "send_message", conversation_id=conversation.id, sender_id=sender.id):
			self.db.add(message)
			self.db.flush()

			if quoted:
				self.db.add(MessageQuote(
					message_id=message.id,
					quoted_message_id=quoted.id,
					quoted_by=sender.id,
					snippet=(quoted.content or "")[:settings.quote_snippet_length] or None,
					created_at=now
				))

			for user_id in mention_ids:
				insert_or_ignore(self.db, MessageMention, {
					"message_id": message.id,
					"mentioned_user_id": user_id,
					"mentioned_by": sender.id,
					"is_read": False,
					"created_at": now,
				})

			self.db.query(Conversation).filter(Conversation.id == conversation.id).update(
				{Conversation.updated_at: now}, synchronize_session="fetch"
			)
			self.unread.advance_read_marker(conversation.id, sender.id, now)

		record_message_created(message_type)
		if mention_ids:
			record_mentions_created(len(mention_ids))
			chat_logger.mentions_created(message.id, sender.id, len(mention_ids))
		chat_logger.message_sent(message.id, sender.id, conversation.id, message_type)

		member_ids = await self.conversations.get_member_ids(conversation.id)
		await CacheInvalidation.invalidate_unread(conversation.id, member_ids)

		enriched = self.aggregation.load_messages([message.id])[0]
		await self._publish_sent(conversation, created, member_ids, sender, enriched)
		return enriched

	async def _publish_sent(
		self,
		conversation: Conversation,
		created: bool,
		member_ids: List[int],
		sender: CurrentUser,
		message: EnrichedMessage
	):
		if created:
			await self.conversations.announce_created(conversation, member_ids)

		if self.broadcaster:
			await self.broadcaster.fan_out(
				RealtimeEvent.NEW_MESSAGE,
				{"conversation_id": message.conversation_id, "message": message.model_dump(mode="json")},
				conversation_id=message.conversation_id,
				user_ids=member_ids
			)
			await self._publish_mentions(message.conversation_id, message.id, message.mentions)

		if self.notifier:
			for user_id in member_ids:
				if user_id == sender.id:
					continue
				await self.notifier.new_message(
					user_id, sender.name, message.conversation_id, message.id, message.content
				)

	async def _publish_mentions(self, conversation_id: int, message_id: int, mentions: List[MentionRef]):
		if not self.broadcaster or not mentions:
			return
		for mention in mentions:
			await self.broadcaster.publish_to_user(
				mention.mentioned_user_id,
				RealtimeEvent.MESSAGE_MENTIONED,
				{
					"conversation_id": conversation_id,
					"message_id": message_id,
					"mention": mention.model_dump(mode="json"),
				}
			)
		await self.broadcaster.publish_to_conversation(
			conversation_id,
			RealtimeEvent.MESSAGE_MENTIONED,
			{
				"conversation_id": conversation_id,
				"message_id": message_id,
				"mentions": [mention.model_dump(mode="json") for mention in mentions],
			}
		)

	async def send_quoted_reply(self, sender: CurrentUser, quoted_message_id: int, content: str = "", **kwargs) -> EnrichedMessage:
		"""Reply in the quoted message's own conversation"""
		quoted = await self.require_message(quoted_message_id)
		return await self.send_message(
			sender,
			content,
			conversation_id=quoted.conversation_id,
			quoted_message_id=quoted.id,
			**kwargs
		)

	async def mark_read(self, conversation_id: int, user_id: int):
		"""Mark the whole conversation read for a member; see UnreadService.mark_conversation_read"""
		await self.conversations.require_membership(conversation_id, user_id)
		return await self.unread.mark_conversation_read(conversation_id, user_id)

	async def get_conversation_messages(
		self,
		conversation_id: int,
		user_id: int,
		limit: Optional[int] = None,
		before_id: Optional[int] = None
	) -> MessagePage:
		"""
		A page of enriched messages, oldest first.

		Paging walks backwards with `before_id`. Opening a conversation marks
		it read for the caller.
		"""
		await self.conversations.require_membership(conversation_id, user_id)
		await self.unread.mark_conversation_read(conversation_id, user_id)

		limit = limit or settings.message_page_size
		query = self.db.query(Message, User.name).outerjoin(
			User, User.id == Message.sender_id
		).filter(Message.conversation_id == conversation_id)
		if before_id is not None:
			query = query.filter(Message.id < before_id)

		rows = query.order_by(desc(Message.id)).limit(limit + 1).all()
		has_more = len(rows) > limit
		rows = list(reversed(rows[:limit]))

		return MessagePage(
			conversation_id=conversation_id,
			messages=self.aggregation.hydrate(rows),
			has_more=has_more
		)

	async def get_full_message(self, message_id: int, user_id: int) -> EnrichedMessage:
		message = await self.require_message(message_id)
		await self.conversations.require_membership(message.conversation_id, user_id)
		return self.aggregation.load_messages([message.id])[0]

	async def mark_message_read(self, message_id: int, user_id: int) -> Message:
		"""Read receipt for one direct message; only its receiver may set it"""
		message = await self.require_message(message_id)
		if message.receiver_id != user_id:
			raise ForbiddenError("Only the receiver can mark this message as read")
		if message.read_status:
			return message

		with transaction(self.db, "mark_message_read", message_id=message_id, user_id=user_id):
			message.read_status = True
			message.read_at = utcnow()

		if self.broadcaster:
			await self.broadcaster.fan_out(
				RealtimeEvent.MESSAGE_READ,
				{
					"conversation_id": message.conversation_id,
					"message_id": message.id,
					"reader_id": user_id,
					"read_at": message.read_at.isoformat(),
				},
				conversation_id=message.conversation_id,
				user_ids=[message.sender_id]
			)
		return message

	async def delete_message(self, message_id: int, acting_user: CurrentUser):
		"""
		Delete a message; only its sender or a platform admin may.

		Reactions, quotes, mentions and references of the message go with it
		through ON DELETE CASCADE. Quotes of it elsewhere keep their snippet.
		"""
		message = await self.require_message(message_id)
		if message.sender_id != acting_user.id and not acting_user.is_admin:
			raise ForbiddenError("Only the sender can delete this message")

		conversation_id = message.conversation_id
		with transaction(self.db, "delete_message", message_id=message_id, user_id=acting_user.id):
			self.db.delete(message)

		chat_logger.message_deleted(message_id, acting_user.id)
		member_ids = await self.conversations.get_member_ids(conversation_id)
		await CacheInvalidation.invalidate_unread(conversation_id, member_ids)

		if self.broadcaster:
			await self.broadcaster.fan_out(
				RealtimeEvent.MESSAGE_DELETED,
				{"conversation_id": conversation_id, "message_id": message_id, "deleted_by": acting_user.id},
				conversation_id=conversation_id,
				user_ids=member_ids
			)

	async def attach_mentions(self, message_id: int, acting_user: CurrentUser, mentioned_user_ids: Iterable[int]) -> List[MentionRef]:
		"""Mention users on an existing message; returns only the mentions that are new"""
		message = await self.require_message(message_id)
		if message.sender_id != acting_user.id:
			raise ForbiddenError("Only the sender can add mentions")

		ids = [user_id for user_id in dict.fromkeys(mentioned_user_ids) if user_id != acting_user.id]
		if not ids:
			return []
		await self.users.require_users(ids)

		now = utcnow()
		created_ids = []
		with transaction(self.db, "attach_mentions", message_id=message_id, user_id=acting_user.id):
			for user_id in ids:
				if insert_or_ignore(self.db, MessageMention, {
					"message_id": message_id,
					"mentioned_user_id": user_id,
					"mentioned_by": acting_user.id,
					"is_read": False,
					"created_at": now,
				}):
					created_ids.append(user_id)

		if not created_ids:
			return []

		record_mentions_created(len(created_ids))
		chat_logger.mentions_created(message_id, acting_user.id, len(created_ids))

		aggregates = self.aggregation.enrich_messages([message_id])[message_id]
		created = [mention for mention in aggregates.mentions if mention.mentioned_user_id in created_ids]
		await self._publish_mentions(message.conversation_id, message_id, created)
		return created

	async def list_my_mentions(
		self,
		user_id: int,
		is_read: Optional[bool] = None,
		limit: int = 50,
		offset: int = 0
	) -> List[MentionedMessage]:
		query = self.db.query(MessageMention, Message, User.name).join(
			Message, Message.id == MessageMention.message_id
		).outerjoin(
			User, User.id == Message.sender_id
		).filter(MessageMention.mentioned_user_id == user_id)
		if is_read is not None:
			query = query.filter(MessageMention.is_read == is_read)

		rows = query.order_by(desc(MessageMention.created_at), desc(MessageMention.id)).offset(offset).limit(limit).all()
		return [
			MentionedMessage(
				mention_id=mention.id,
				message_id=message.id,
				conversation_id=message.conversation_id,
				sender_id=message.sender_id,
				sender_name=sender_name,
				content=message.content,
				is_read=mention.is_read,
				mentioned_at=mention.created_at,
				read_at=mention.read_at
			)
			for mention, message, sender_name in rows
		]

	async def mark_mention_read(self, mention_id: int, user_id: int) -> MessageMention:
		mention = self.db.query(MessageMention).filter(MessageMention.id == mention_id).first()
		if not mention:
			raise NotFoundError("Mention not found")
		if mention.mentioned_user_id != user_id:
			raise ForbiddenError("Not your mention")
		if not mention.is_read:
			with transaction(self.db, "mark_mention_read", mention_id=mention_id, user_id=user_id):
				mention.is_read = True
				mention.read_at = utcnow()
		return mention

	async def add_reference(
		self,
		message_id: int,
		acting_user: CurrentUser,
		ref_domain: str,
		target_id: int,
		ref_type: str = "mention",
		label: Optional[str] = None
	) -> MessageReference:
		"""Link a calendar event or task to a message"""
		if ref_domain not in REFERENCE_DOMAINS:
			raise ValidationError(f"Unknown reference domain {ref_domain!r}")
		message = await self.require_message(message_id)
		await self.conversations.require_membership(message.conversation_id, acting_user.id)

		reference = MessageReference(
			message_id=message_id,
			ref_domain=ref_domain,
			target_id=target_id,
			ref_type=ref_type or "mention",
			label=label,
			created_at=utcnow()
		)
		with transaction(self.db, "add_reference", message_id=message_id, user_id=acting_user.id):
			self.db.add(reference)

		self.db.refresh(reference)
		return reference
