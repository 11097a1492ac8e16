from typing import Any, Dict, Optional

from app.core.logging import chat_logger
from app.realtime.broadcaster import Broadcaster
from app.realtime.events import RealtimeEvent
from config import settings


def message_preview(content: Optional[str], limit: int = None) -> str:
	limit = limit or settings.notification_preview_length
	if not content:
		return "New message"
	if len(content) > limit:
		return f"{content[:limit]}..."
	return content


class Notifier:
	"""
	Push-notification collaborator, called after a send has committed.

	The default implementation pushes a notification event on the user's
	personal channel; deployments with a real push gateway subclass it and
	override deliver().
	"""

	def __init__(self, broadcaster: Broadcaster):
		self.broadcaster = broadcaster

	async def deliver(self, user_id: int, notification: Dict[str, Any]):
		await self.broadcaster.publish_to_user(user_id, RealtimeEvent.NOTIFICATION, notification)

	async def notify(self, user_id: int, notification: Dict[str, Any]):
		try:
			await self.deliver(user_id, notification)
		except Exception as e:  # noqa: BLE001
			chat_logger.warning(
				"Notification delivery failed",
				event_type="notification_failed",
				user_id=user_id,
				error=str(e)
			)

	async def new_message(self, user_id: int, sender_name: str, conversation_id: int, message_id: int, content: str):
		await self.notify(user_id, {
			"title": f"{sender_name} sent a new message",
			"message": message_preview(content),
			"tag": f"conversation_{conversation_id}",
			"data": {
				"conversation_id": conversation_id,
				"message_id": message_id,
			},
		})
