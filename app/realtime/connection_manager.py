from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from app.realtime.events import WsOutbound
import logging

logger = logging.getLogger(__name__)


class ConnectionManager:
	"""
	Registry of live sockets in this worker.

	Every socket sits on its owner's personal channel; it is additionally on a
	conversation channel while the client is viewing that conversation.
	"""

	def __init__(self):
		self.user_connections: Dict[int, Set[WebSocket]] = defaultdict(set)
		self.conversation_connections: Dict[int, Set[WebSocket]] = defaultdict(set)
		self._socket_users: Dict[WebSocket, int] = {}

	def register(self, user_id: int, websocket: WebSocket):
		self.user_connections[user_id].add(websocket)
		self._socket_users[websocket] = user_id
		logger.debug(f"Socket registered for user {user_id}")

	def unregister(self, websocket: WebSocket):
		user_id = self._socket_users.pop(websocket, None)
		if user_id is not None:
			self.user_connections[user_id].discard(websocket)
			if not self.user_connections[user_id]:
				del self.user_connections[user_id]

		for conversation_id in list(self.conversation_connections):
			self._leave(conversation_id, websocket)

	def join(self, conversation_id: int, websocket: WebSocket):
		self.conversation_connections[conversation_id].add(websocket)

	def leave(self, conversation_id: int, websocket: WebSocket):
		self._leave(conversation_id, websocket)

	def _leave(self, conversation_id: int, websocket: WebSocket):
		sockets = self.conversation_connections.get(conversation_id)
		if sockets is None:
			return
		sockets.discard(websocket)
		if not sockets:
			del self.conversation_connections[conversation_id]

	def evict(self, conversation_id: int, user_id: int):
		"""Detach all of a user's sockets from a conversation channel"""
		for websocket in list(self.user_connections.get(user_id, ())):
			self._leave(conversation_id, websocket)

	def is_online(self, user_id: int) -> bool:
		return bool(self.user_connections.get(user_id))

	async def send_to_conversation(self, conversation_id: int, event: str, data: Dict[str, Any]) -> int:
		sockets = list(self.conversation_connections.get(conversation_id, ()))
		return await self._send_all(sockets, event, data)

	async def send_to_user(self, user_id: int, event: str, data: Dict[str, Any]) -> int:
		sockets = list(self.user_connections.get(user_id, ()))
		return await self._send_all(sockets, event, data)

	async def _send_all(self, sockets, event: str, data: Dict[str, Any]) -> int:
		payload = WsOutbound(type=event, data=data).model_dump(mode="json")
		delivered = 0
		for websocket in sockets:
			if websocket.client_state != WebSocketState.CONNECTED:
				self.unregister(websocket)
				continue
			try:
				await websocket.send_json(payload)
				delivered += 1
			except (RuntimeError, ConnectionError) as e:
				# Socket went away between the state check and the send
				logger.debug(f"Dropping dead socket: {e}")
				self.unregister(websocket)
		return delivered


# Global registry for this worker
connection_manager = ConnectionManager()
