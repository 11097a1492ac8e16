from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class Attachment(BaseModel):
	"""Metadata produced by the upload service; stored as-is"""
	url: str
	filename: Optional[str] = None
	type: Optional[str] = None


class MessageCreate(BaseModel):
	conversation_id: Optional[int] = None
	receiver_id: Optional[int] = None
	content: str = ""
	message_type: str = "text"
	attachments: List[Attachment] = []
	metadata: Dict[str, Any] = {}
	gif: Optional[str] = None
	quoted_message_id: Optional[int] = None
	mentioned_user_ids: List[int] = []


class QuoteReplyCreate(BaseModel):
	content: str = ""
	message_type: str = "text"
	attachments: List[Attachment] = []
	metadata: Dict[str, Any] = {}
	gif: Optional[str] = None
	mentioned_user_ids: List[int] = []


class ReactionToggle(BaseModel):
	emoji: str = Field(..., min_length=1, max_length=32)


class MentionsCreate(BaseModel):
	mentioned_user_ids: List[int] = Field(..., min_length=1)


class ReferenceCreate(BaseModel):
	ref_domain: Literal["calendar", "task"]
	target_id: int
	ref_type: str = "mention"
	label: Optional[str] = Field(None, max_length=200)


# Aggregates assembled by AggregationService

class ReactionUser(BaseModel):
	user_id: int
	user_name: Optional[str] = None
	user_photo: Optional[str] = None
	created_at: datetime


class ReactionSummary(BaseModel):
	emoji: str
	count: int
	users: List[ReactionUser] = []


class QuoteRef(BaseModel):
	quoted_message_id: Optional[int] = None
	snippet: Optional[str] = None
	created_at: datetime
	# Current state of the original; None once it has been deleted
	quoted_message: Optional[str] = None
	quoted_message_type: Optional[str] = None
	quoted_sender_id: Optional[int] = None
	quoted_sender_name: Optional[str] = None


class MentionRef(BaseModel):
	id: int
	mentioned_user_id: int
	mentioned_user_name: Optional[str] = None
	mentioned_by: int
	mentioned_by_name: Optional[str] = None
	is_read: bool = False
	created_at: datetime
	read_at: Optional[datetime] = None


class MessageReferenceRef(BaseModel):
	id: int
	ref_domain: str
	target_id: int
	ref_type: str
	label: Optional[str] = None
	created_at: datetime


class EnrichedMessage(BaseModel):
	id: int
	conversation_id: int
	sender_id: int
	sender_name: Optional[str] = None
	receiver_id: Optional[int] = None
	content: str
	message_type: str
	attachments: List[Attachment] = []
	metadata: Dict[str, Any] = {}
	created_at: datetime
	read_status: bool = False
	read_at: Optional[datetime] = None
	reactions: List[ReactionSummary] = []
	quote: Optional[QuoteRef] = None
	mentions: List[MentionRef] = []
	references: List[MessageReferenceRef] = []


class MessagePage(BaseModel):
	conversation_id: int
	messages: List[EnrichedMessage]
	has_more: bool


class ReactionToggleResponse(BaseModel):
	action: Literal["added", "removed"]
	reactions: List[ReactionSummary]


class MentionsResponse(BaseModel):
	mentions: List[MentionRef]


class MentionedMessage(BaseModel):
	mention_id: int
	message_id: int
	conversation_id: int
	sender_id: int
	sender_name: Optional[str] = None
	content: str
	is_read: bool
	mentioned_at: datetime
	read_at: Optional[datetime] = None


class MentionReadResponse(BaseModel):
	id: int
	message_id: int
	is_read: bool
	read_at: Optional[datetime] = None

	class Config:
		from_attributes = True


class ReferenceResponse(BaseModel):
	id: int
	message_id: int
	ref_domain: str
	target_id: int
	ref_type: str
	label: Optional[str] = None
	created_at: datetime

	class Config:
		from_attributes = True
