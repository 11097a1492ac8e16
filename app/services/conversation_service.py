from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from app.models.conversation import Conversation, ConversationMember, build_direct_key
from app.models.message import Message
from app.models.user import User
from app.core.cache import CacheInvalidation
from app.core.database import transaction, insert_or_ignore, utcnow
from app.core.errors import NotFoundError, ForbiddenError, ValidationError, InternalError
from app.core.logging import chat_logger
from app.core.metrics import record_conversation_created
from app.core.security import CurrentUser
from app.realtime.broadcaster import Broadcaster
from app.realtime.events import RealtimeEvent
from app.schemas.conversation import (
	ConversationResponse, ConversationDetail, ConversationSummary, MemberResponse, MemberSnapshot, LastMessagePreview
)
from app.services.unread_service import UnreadService
from app.services.user_service import UserService
import logging

logger = logging.getLogger(__name__)

MANAGER_ROLES = ("owner", "moderator")


class ConversationService:
	"""Conversations, their memberships and the roles inside them"""

	def __init__(self, db: Session, broadcaster: Optional[Broadcaster] = None):
		self.db = db
		self.broadcaster = broadcaster
		self.users = UserService(db)

	# Lookups

	async def fetch_by_id(self, conversation_id: int) -> Optional[Conversation]:
		return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

	async def require_conversation(self, conversation_id: int) -> Conversation:
		conversation = await self.fetch_by_id(conversation_id)
		if not conversation:
			raise NotFoundError("Conversation not found")
		return conversation

	async def get_membership(self, conversation_id: int, user_id: int) -> Optional[ConversationMember]:
		return self.db.query(ConversationMember).filter(
			ConversationMember.conversation_id == conversation_id,
			ConversationMember.user_id == user_id
		).first()

	async def require_membership(self, conversation_id: int, user_id: int) -> Tuple[Conversation, ConversationMember]:
		"""NotFound for an unknown conversation, Forbidden for a non-member"""
		conversation = await self.require_conversation(conversation_id)
		membership = await self.get_membership(conversation_id, user_id)
		if not membership:
			raise ForbiddenError("Not a member of this conversation")
		return conversation, membership

	async def get_member_ids(self, conversation_id: int) -> List[int]:
		rows = self.db.query(ConversationMember.user_id).filter(
			ConversationMember.conversation_id == conversation_id
		).all()
		return [user_id for (user_id,) in rows]

	async def get_members(self, conversation_id: int) -> List[MemberResponse]:
		"""Members joined with their display fields, owners first"""
		rows = self.db.query(ConversationMember, User).join(
			User, User.id == ConversationMember.user_id
		).filter(
			ConversationMember.conversation_id == conversation_id
		).all()

		rows.sort(key=lambda row: (row[0].role != "owner", (row[1].name or "").lower()))
		return [
			MemberResponse(
				user_id=member.user_id,
				role=member.role,
				joined_at=member.joined_at,
				last_read_at=member.last_read_at,
				is_muted=member.is_muted,
				name=user.name,
				email=user.email,
				avatar_url=user.avatar_url,
				user_role=user.role
			)
			for member, user in rows
		]

	async def get_conversation_detail(self, conversation_id: int, user_id: int) -> ConversationDetail:
		conversation, membership = await self.require_membership(conversation_id, user_id)
		members = await self.get_members(conversation_id)
		base = ConversationResponse.model_validate(conversation).model_dump()
		return ConversationDetail(**base, members=members, my_role=membership.role)

	def find_direct_conversation(self, direct_key: str) -> Optional[Conversation]:
		return self.db.query(Conversation).filter(Conversation.direct_key == direct_key).first()

	# Creation

	async def ensure_direct_conversation(self, user_a: int, user_b: int) -> Tuple[Conversation, bool]:
		"""
		Return the direct conversation between two users, creating it if needed.

		The unique direct_key is the only guard against concurrent creators:
		losing the insert race rolls back and re-reads the winner's row.
		Returns (conversation, created).
		"""
		if user_a == user_b:
			raise ValidationError("Cannot start a direct conversation with yourself")

		direct_key = build_direct_key(user_a, user_b)
		existing = self.find_direct_conversation(direct_key)
		if existing:
			return existing, False

		now = utcnow()
		conversation = Conversation(
			conversation_type="direct",
			created_by=user_a,
			settings={"direct_key": direct_key},
			direct_key=direct_key,
			created_at=now,
			updated_at=now
		)
		try:
			self.db.add(conversation)
			self.db.flush()
			self.db.add_all([
				ConversationMember(conversation_id=conversation.id, user_id=user_a, role="owner", joined_at=now),
				ConversationMember(conversation_id=conversation.id, user_id=user_b, role="member", joined_at=now),
			])
			self.db.commit()
		except IntegrityError:
			self.db.rollback()
			existing = self.find_direct_conversation(direct_key)
			if existing:
				logger.info(f"Direct conversation {direct_key} created concurrently, reusing {existing.id}")
				return existing, False
			chat_logger.storage_error("ensure_direct_conversation", "integrity error without existing row", direct_key=direct_key)
			raise InternalError()

		self.db.refresh(conversation)
		record_conversation_created("direct")
		chat_logger.conversation_created(conversation.id, "direct", user_a, 2)
		return conversation, True

	async def announce_created(self, conversation: Conversation, member_ids: Iterable[int]):
		"""Tell every member about a conversation that just committed"""
		if not self.broadcaster:
			return
		payload = {
			"conversation": ConversationResponse.model_validate(conversation).model_dump(mode="json"),
			"member_ids": list(member_ids),
		}
		await self.broadcaster.fan_out(RealtimeEvent.CONVERSATION_CREATED, payload, user_ids=member_ids)

	async def create_conversation(
		self,
		created_by: int,
		conversation_type: str = "group",
		member_ids: Iterable[int] = (),
		name: Optional[str] = None,
		description: Optional[str] = None,
		is_temporary: bool = False,
		expires_at: Optional[datetime] = None
	) -> Tuple[Conversation, bool]:
		others = [user_id for user_id in dict.fromkeys(member_ids) if user_id != created_by]

		if conversation_type == "direct":
			if len(others) != 1:
				raise ValidationError("A direct conversation needs exactly one other member")
			await self.users.require_user(others[0])
			conversation, created = await self.ensure_direct_conversation(created_by, others[0])
			if created:
				await self.announce_created(conversation, [created_by, others[0]])
			return conversation, created

		if conversation_type not in ("group", "topic"):
			raise ValidationError(f"Unknown conversation type {conversation_type!r}")
		if not others:
			raise ValidationError("A group or topic needs at least one other member")
		await self.users.require_users(others)

		now = utcnow()
		conversation = Conversation(
			name=name,
			description=description,
			conversation_type=conversation_type,
			created_by=created_by,
			is_temporary=is_temporary,
			expires_at=expires_at,
			settings={},
			created_at=now,
			updated_at=now
		)
		with transaction(self.db, "create_conversation", created_by=created_by):
			self.db.add(conversation)
			self.db.flush()
			self.db.add(ConversationMember(
				conversation_id=conversation.id, user_id=created_by, role="owner", joined_at=now
			))
			self.db.add_all([
				ConversationMember(conversation_id=conversation.id, user_id=user_id, role="member", joined_at=now)
				for user_id in others
			])

		self.db.refresh(conversation)
		all_members = [created_by] + others
		record_conversation_created(conversation_type)
		chat_logger.conversation_created(conversation.id, conversation_type, created_by, len(all_members))
		await self.announce_created(conversation, all_members)
		return conversation, True

	# Membership changes

	def _can_manage(self, acting_user: CurrentUser, membership: Optional[ConversationMember]) -> bool:
		return acting_user.is_admin or (membership is not None and membership.role in MANAGER_ROLES)

	async def add_members(self, conversation_id: int, member_ids: Iterable[int], acting_user: CurrentUser) -> List[int]:
		"""Add users as plain members; returns the ids that were not members before"""
		conversation = await self.require_conversation(conversation_id)
		membership = await self.get_membership(conversation_id, acting_user.id)
		if not self._can_manage(acting_user, membership):
			raise ForbiddenError("Only owners and moderators can add members")
		if conversation.conversation_type == "direct":
			raise ValidationError("Cannot add members to a direct conversation")

		ids = list(dict.fromkeys(member_ids))
		if not ids:
			raise ValidationError("No members given")
		await self.users.require_users(ids)

		now = utcnow()
		added: List[int] = []
		with transaction(self.db, "add_members", conversation_id=conversation_id):
			for user_id in ids:
				if insert_or_ignore(self.db, ConversationMember, {
					"conversation_id": conversation_id,
					"user_id": user_id,
					"role": "member",
					"joined_at": now,
					"is_muted": False,
				}):
					added.append(user_id)
			if added:
				conversation.updated_at = now

		if not added:
			return added

		chat_logger.member_added(conversation_id, added, acting_user.id)
		if self.broadcaster:
			all_members = await self.get_member_ids(conversation_id)
			await self.broadcaster.fan_out(
				RealtimeEvent.CONVERSATION_MEMBERS_CHANGED,
				{
					"conversation_id": conversation_id,
					"added": added,
					"removed": [],
					"member_ids": all_members,
				},
				conversation_id=conversation_id,
				user_ids=all_members
			)
		return added

	async def remove_member(self, conversation_id: int, member_id: int, acting_user: CurrentUser):
		conversation = await self.require_conversation(conversation_id)
		if conversation.conversation_type == "direct":
			raise ValidationError("Members cannot leave a direct conversation")
		target = await self.get_membership(conversation_id, member_id)
		if not target:
			raise NotFoundError("Member not found")

		if member_id != acting_user.id:
			membership = await self.get_membership(conversation_id, acting_user.id)
			if not self._can_manage(acting_user, membership):
				raise ForbiddenError("Only owners and moderators can remove members")
			if target.role == "owner" and not (membership and membership.role == "owner"):
				raise ForbiddenError("Only an owner can remove an owner")

		with transaction(self.db, "remove_member", conversation_id=conversation_id, member_id=member_id):
			self.db.delete(target)

		chat_logger.member_removed(conversation_id, member_id, acting_user.id)
		await CacheInvalidation.invalidate_unread(conversation_id, [member_id])

		if self.broadcaster:
			await self.broadcaster.unsubscribe(conversation_id, member_id)
			remaining = await self.get_member_ids(conversation_id)
			await self.broadcaster.fan_out(
				RealtimeEvent.CONVERSATION_MEMBERS_CHANGED,
				{
					"conversation_id": conversation_id,
					"added": [],
					"removed": [member_id],
					"member_ids": remaining,
				},
				conversation_id=conversation_id,
				user_ids=remaining
			)
			await self.broadcaster.publish_to_user(
				member_id,
				RealtimeEvent.CONVERSATION_REMOVED,
				{"conversation_id": conversation_id, "removed_by": acting_user.id}
			)

	# Listing

	async def list_user_conversations(self, user_id: int) -> List[ConversationSummary]:
		"""
		Every conversation the user belongs to, most recently active first.

		Four queries regardless of how many conversations there are:
		memberships, member snapshots, last messages and unread counts.
		"""
		rows = self.db.query(Conversation, ConversationMember).join(
			ConversationMember, ConversationMember.conversation_id == Conversation.id
		).filter(ConversationMember.user_id == user_id).all()
		if not rows:
			return []

		conversation_ids = [conversation.id for conversation, _ in rows]

		snapshots = {conversation_id: [] for conversation_id in conversation_ids}
		member_rows = self.db.query(ConversationMember, User.name, User.avatar_url).join(
			User, User.id == ConversationMember.user_id
		).filter(ConversationMember.conversation_id.in_(conversation_ids)).all()
		for member, name, avatar_url in member_rows:
			snapshots[member.conversation_id].append(
				MemberSnapshot(user_id=member.user_id, role=member.role, name=name, avatar_url=avatar_url)
			)

		latest_ids = select(func.max(Message.id)).where(
			Message.conversation_id.in_(conversation_ids)
		).group_by(Message.conversation_id)
		last_messages = {
			message.conversation_id: message
			for message in self.db.query(Message).filter(Message.id.in_(latest_ids)).all()
		}

		unread = await UnreadService(self.db).unread_counts(user_id, conversation_ids)

		summaries = []
		for conversation, membership in rows:
			last = last_messages.get(conversation.id)
			base = ConversationResponse.model_validate(conversation).model_dump()
			summaries.append(ConversationSummary(
				**base,
				my_role=membership.role,
				my_last_read_at=membership.last_read_at,
				is_muted=membership.is_muted,
				participant_count=len(snapshots[conversation.id]),
				members=snapshots[conversation.id],
				last_message=LastMessagePreview(
					id=last.id,
					content=last.content,
					message_type=last.message_type,
					sender_id=last.sender_id,
					created_at=last.created_at
				) if last else None,
				unread_count=unread.get(conversation.id, 0)
			))

		summaries.sort(
			key=lambda summary: summary.last_message.created_at if summary.last_message else summary.updated_at,
			reverse=True
		)
		return summaries
