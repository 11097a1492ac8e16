"""WebSocket envelope models and realtime event names."""

from typing import Any, Dict

from pydantic import BaseModel


class RealtimeEvent:
	CONNECTION_READY = "connection:ready"
	CONVERSATION_CREATED = "conversation:created"
	CONVERSATION_MEMBERS_CHANGED = "conversation:members_changed"
	CONVERSATION_REMOVED = "conversation:removed"
	CONVERSATION_JOINED = "conversation:joined"
	NEW_MESSAGE = "conversation:new_message"
	MESSAGE_REACTION = "message:reaction"
	MESSAGE_MENTIONED = "message:mentioned"
	MESSAGE_READ = "message:read"
	MESSAGE_READ_ALL = "message:read_all"
	MESSAGE_DELETED = "message:deleted"
	USER_TYPING = "user:typing"
	USER_TYPING_STOP = "user:typing_stop"
	NOTIFICATION = "notification"
	PONG = "pong"
	ERROR = "error"


class WsInbound(BaseModel):
	"""Client -> Server."""

	type: str  # conversation:join | conversation:leave | typing:start | typing:stop | ping
	data: Dict[str, Any] = {}


class WsOutbound(BaseModel):
	"""Server -> Client."""

	type: str
	data: Dict[str, Any] = {}
