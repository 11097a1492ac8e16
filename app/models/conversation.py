from sqlalchemy import (
	Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow


CONVERSATION_TYPES = ("direct", "group", "topic")
MEMBER_ROLES = ("owner", "moderator", "member")


def build_direct_key(user_a: int, user_b: int) -> str:
	"""Canonical key for the unordered pair of direct participants"""
	low, high = sorted([int(user_a), int(user_b)])
	return f"{low}:{high}"


class Conversation(Base):
	__tablename__ = "conversations"

	id = Column(Integer, primary_key=True, index=True)
	name = Column(String(200), nullable=True)
	description = Column(Text, nullable=True)
	conversation_type = Column(String(20), default="group", nullable=False)
	created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

	is_temporary = Column(Boolean, default=False, nullable=False)
	expires_at = Column(DateTime, nullable=True)
	settings = Column(JSON, default=dict, nullable=False)

	# Mirrors settings["direct_key"]; the unique index is what prevents duplicate pairs
	direct_key = Column(String(64), unique=True, nullable=True)

	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	members = relationship(
		"ConversationMember",
		back_populates="conversation",
		cascade="all, delete-orphan",
		passive_deletes=True
	)

	__table_args__ = (
		Index('idx_conversations_type_updated', 'conversation_type', 'updated_at'),
	)


class ConversationMember(Base):
	__tablename__ = "conversation_members"

	id = Column(Integer, primary_key=True, index=True)
	conversation_id = Column(
		Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
	)
	user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
	role = Column(String(20), default="member", nullable=False)
	joined_at = Column(DateTime, default=utcnow, nullable=False)
	# Only ever moves forward, see UnreadService.advance_read_marker
	last_read_at = Column(DateTime, nullable=True)
	is_muted = Column(Boolean, default=False, nullable=False)

	conversation = relationship("Conversation", back_populates="members")
	user = relationship("User")

	__table_args__ = (
		UniqueConstraint('conversation_id', 'user_id', name='uq_conversation_member'),
	)
