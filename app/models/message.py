from sqlalchemy import (
	Column, Integer, Text, String, DateTime, Boolean, ForeignKey, BigInteger, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow


# SQLite only autoincrements INTEGER PRIMARY KEY
MessageId = BigInteger().with_variant(Integer, "sqlite")


class Message(Base):
	__tablename__ = "messages"

	id = Column(MessageId, primary_key=True, index=True)
	conversation_id = Column(
		Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
	)
	sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
	# Denormalized for direct conversations only
	receiver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
	content = Column(Text, nullable=False)
	message_type = Column(String(20), default="text", nullable=False)

	# Ordered list of {url, filename, type} supplied by the upload service
	attachments = Column(JSON, default=list, nullable=False)
	message_metadata = Column("metadata", JSON, default=dict, nullable=False)

	created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

	# Read receipts only carry meaning in direct conversations
	read_status = Column(Boolean, default=False, nullable=False)
	read_at = Column(DateTime, nullable=True)

	sender = relationship("User", foreign_keys=[sender_id])

	__table_args__ = (
		Index('idx_messages_conversation_created', 'conversation_id', 'created_at'),
		Index('idx_messages_receiver_read', 'receiver_id', 'read_status'),
	)


class MessageReaction(Base):
	__tablename__ = "message_reactions"

	id = Column(Integer, primary_key=True, index=True)
	message_id = Column(MessageId, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
	user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
	emoji = Column(String(32), nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		UniqueConstraint('message_id', 'user_id', 'emoji', name='uq_message_reaction'),
	)


class MessageQuote(Base):
	__tablename__ = "message_quotes"

	id = Column(Integer, primary_key=True, index=True)
	message_id = Column(
		MessageId, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, unique=True
	)
	# The snippet outlives the original message
	quoted_message_id = Column(MessageId, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
	quoted_by = Column(Integer, ForeignKey("users.id"), nullable=False)
	snippet = Column(String(280), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class MessageMention(Base):
	__tablename__ = "message_mentions"

	id = Column(Integer, primary_key=True, index=True)
	message_id = Column(MessageId, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
	mentioned_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
	mentioned_by = Column(Integer, ForeignKey("users.id"), nullable=False)
	is_read = Column(Boolean, default=False, nullable=False)
	read_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		UniqueConstraint('message_id', 'mentioned_user_id', name='uq_message_mention'),
	)


class MessageReference(Base):
	"""Link from a message to an entity owned by another domain (calendar event, task)"""
	__tablename__ = "message_references"

	id = Column(Integer, primary_key=True, index=True)
	message_id = Column(MessageId, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
	ref_domain = Column(String(20), nullable=False)
	target_id = Column(Integer, nullable=False)
	ref_type = Column(String(20), default="mention", nullable=False)
	label = Column(String(200), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
