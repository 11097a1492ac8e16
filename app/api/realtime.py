from typing import Optional
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PayloadError

from app.api.deps import get_broadcaster
from app.core.database import get_session_scope
from app.core.errors import ChatError, ValidationError
from app.core.logging import RequestContext
from app.core.security import CurrentUser, resolve_user
from app.realtime.broadcaster import Broadcaster
from app.realtime.connection_manager import connection_manager
from app.realtime.events import RealtimeEvent, WsInbound, WsOutbound
from app.services.conversation_service import ConversationService
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

TYPING_EVENTS = {
	"typing:start": RealtimeEvent.USER_TYPING,
	"typing:stop": RealtimeEvent.USER_TYPING_STOP,
}


async def send_event(websocket: WebSocket, event: str, data: Optional[dict] = None):
	await websocket.send_json(WsOutbound(type=event, data=data or {}).model_dump(mode="json"))


def conversation_id_of(message: WsInbound) -> int:
	try:
		return int(message.data["conversation_id"])
	except (KeyError, TypeError, ValueError):
		raise ValidationError("conversation_id is required")


async def handle_message(
	websocket: WebSocket,
	message: WsInbound,
	user: CurrentUser,
	conversations: ConversationService,
	broadcaster: Broadcaster
):
	if message.type == "ping":
		await send_event(websocket, RealtimeEvent.PONG)
		return

	if message.type == "conversation:join":
		conversation_id = conversation_id_of(message)
		await conversations.require_membership(conversation_id, user.id)
		connection_manager.join(conversation_id, websocket)
		await send_event(websocket, RealtimeEvent.CONVERSATION_JOINED, {"conversation_id": conversation_id})
		return

	if message.type == "conversation:leave":
		connection_manager.leave(conversation_id_of(message), websocket)
		return

	if message.type in TYPING_EVENTS:
		conversation_id = conversation_id_of(message)
		await conversations.require_membership(conversation_id, user.id)
		await broadcaster.publish_to_conversation(
			conversation_id,
			TYPING_EVENTS[message.type],
			{"conversation_id": conversation_id, "user_id": user.id, "user_name": user.name}
		)
		return

	await send_event(websocket, RealtimeEvent.ERROR, {"message": f"Unknown event type {message.type!r}"})


@router.websocket("/ws")
async def websocket_endpoint(
	websocket: WebSocket,
	token: Optional[str] = Query(None),
	session_scope=Depends(get_session_scope),
	broadcaster: Broadcaster = Depends(get_broadcaster)
):
	"""
	Live channel for one client session.

	The socket is always on the user's personal channel and joins a
	conversation channel on `conversation:join`. Server events are pushed as
	{type, data} envelopes. No database connection is held between events.
	"""
	with session_scope() as db:
		user = resolve_user(token, db)
	if not user:
		await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
		return

	await websocket.accept()
	connection_manager.register(user.id, websocket)

	with RequestContext(user_id=user.id, channel="websocket"):
		try:
			await send_event(websocket, RealtimeEvent.CONNECTION_READY, {"user_id": user.id})
			while True:
				raw = await websocket.receive_text()
				try:
					message = WsInbound.model_validate_json(raw)
					with session_scope() as db:
						await handle_message(websocket, message, user, ConversationService(db), broadcaster)
				except PayloadError:
					await send_event(websocket, RealtimeEvent.ERROR, {"message": "Malformed event"})
				except ChatError as e:
					await send_event(websocket, RealtimeEvent.ERROR, {"message": e.message, "status_code": e.status_code})
		except WebSocketDisconnect:
			logger.debug(f"Socket closed for user {user.id}")
		finally:
			connection_manager.unregister(websocket)
