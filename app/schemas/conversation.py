from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ConversationCreate(BaseModel):
	name: Optional[str] = Field(None, max_length=200)
	description: Optional[str] = None
	type: Literal["direct", "group", "topic"] = "group"
	member_ids: List[int] = []
	is_temporary: bool = False
	expires_at: Optional[datetime] = None


class MembersAdd(BaseModel):
	member_ids: List[int] = Field(..., min_length=1)


class ConversationResponse(BaseModel):
	id: int
	name: Optional[str] = None
	description: Optional[str] = None
	conversation_type: str
	created_by: Optional[int] = None
	is_temporary: bool
	expires_at: Optional[datetime] = None
	settings: Dict[str, Any] = {}
	created_at: datetime
	updated_at: datetime

	class Config:
		from_attributes = True


class MemberResponse(BaseModel):
	user_id: int
	role: str
	joined_at: datetime
	last_read_at: Optional[datetime] = None
	is_muted: bool
	name: Optional[str] = None
	email: Optional[str] = None
	avatar_url: Optional[str] = None
	user_role: Optional[str] = None


class ConversationDetail(ConversationResponse):
	members: List[MemberResponse] = []
	my_role: str


class MemberSnapshot(BaseModel):
	user_id: int
	role: str
	name: Optional[str] = None
	avatar_url: Optional[str] = None


class LastMessagePreview(BaseModel):
	id: int
	content: str
	message_type: str
	sender_id: int
	created_at: datetime


class ConversationSummary(ConversationResponse):
	my_role: str
	my_last_read_at: Optional[datetime] = None
	is_muted: bool = False
	participant_count: int
	members: List[MemberSnapshot] = []
	last_message: Optional[LastMessagePreview] = None
	unread_count: int = 0


class UnreadCountResponse(BaseModel):
	conversation_id: Optional[int] = None
	unread_count: int


class ReadResponse(BaseModel):
	conversation_id: int
	last_read_at: Optional[datetime] = None
	marked_message_ids: List[int] = []
