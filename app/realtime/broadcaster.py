"""
Realtime fan-out of committed chat state.

Services receive a Broadcaster and call it only after their transaction has
committed. Delivery is best-effort and at-most-once: there is no outbox, no
retry and no acknowledgement. A client that misses an event reconciles by
re-fetching over HTTP, which is the source of truth.

Two backends exist:

- LocalBroadcaster delivers to sockets registered in this worker.
- RedisBroadcaster publishes to a Redis pub/sub channel; every worker runs
  relay() and hands the envelopes to its own ConnectionManager, so a socket
  connected to worker A sees events produced by worker B.
  A dropped subscription is retried with exponential backoff, and /health
  reports the relay as down until it resubscribes.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as aioredis

from app.core.cache import CacheManager
from app.core.logging import chat_logger
from app.core.metrics import record_broadcast
from app.realtime.connection_manager import ConnectionManager
import logging

logger = logging.getLogger(__name__)


class Broadcaster(ABC):
	"""Publish-to-conversation / publish-to-user capability injected into the services"""

	@abstractmethod
	async def _deliver_to_conversation(self, conversation_id: int, event: str, data: Dict[str, Any]):
		...

	@abstractmethod
	async def _deliver_to_user(self, user_id: int, event: str, data: Dict[str, Any]):
		...

	@abstractmethod
	async def unsubscribe(self, conversation_id: int, user_id: int):
		"""Stop delivering a conversation's channel to a user's live sockets"""

	async def start(self):
		pass

	async def stop(self):
		pass

	def is_healthy(self) -> bool:
		return True

	async def publish_to_conversation(self, conversation_id: int, event: str, data: Dict[str, Any]) -> bool:
		return await self._guarded(
			event, "conversation", conversation_id,
			self._deliver_to_conversation(conversation_id, event, data)
		)

	async def publish_to_user(self, user_id: int, event: str, data: Dict[str, Any]) -> bool:
		return await self._guarded(
			event, "user", user_id,
			self._deliver_to_user(user_id, event, data)
		)

	async def fan_out(
		self,
		event: str,
		data: Dict[str, Any],
		conversation_id: Optional[int] = None,
		user_ids: Iterable[int] = ()
	):
		"""Conversation channel for viewers, personal channels for badges and lists"""
		if conversation_id is not None:
			await self.publish_to_conversation(conversation_id, event, data)
		for user_id in dict.fromkeys(user_ids):
			await self.publish_to_user(user_id, event, data)

	async def _guarded(self, event: str, scope: str, target: Any, delivery) -> bool:
		# A failed push never propagates into the request that caused it
		try:
			await delivery
			record_broadcast(event)
			return True
		except Exception as e:  # noqa: BLE001
			record_broadcast(event, failed=True)
			chat_logger.broadcast_failed(event=event, scope=scope, target=target, error=str(e))
			return False


class LocalBroadcaster(Broadcaster):
	def __init__(self, manager: ConnectionManager):
		self.manager = manager

	async def _deliver_to_conversation(self, conversation_id: int, event: str, data: Dict[str, Any]):
		await self.manager.send_to_conversation(conversation_id, event, data)

	async def _deliver_to_user(self, user_id: int, event: str, data: Dict[str, Any]):
		await self.manager.send_to_user(user_id, event, data)

	async def unsubscribe(self, conversation_id: int, user_id: int):
		self.manager.evict(conversation_id, user_id)


class RedisBroadcaster(Broadcaster):
	def __init__(
		self,
		manager: ConnectionManager,
		cache_manager: CacheManager,
		channel: str,
		retry_initial: float = 0.5,
		retry_max: float = 30.0
	):
		self.manager = manager
		self.cache_manager = cache_manager
		self.channel = channel
		self._relay_task: Optional[asyncio.Task] = None
		self.retry_initial = retry_initial
		self.retry_max = retry_max
		self.relay_healthy = False

	async def _publish(self, envelope: Dict[str, Any]):
		if not self.cache_manager.redis:
			raise ConnectionError("Redis is not connected")
		await self.cache_manager.redis.publish(self.channel, json.dumps(envelope, default=str))

	async def _deliver_to_conversation(self, conversation_id: int, event: str, data: Dict[str, Any]):
		await self._publish({"scope": "conversation", "target": conversation_id, "event": event, "data": data})

	async def _deliver_to_user(self, user_id: int, event: str, data: Dict[str, Any]):
		await self._publish({"scope": "user", "target": user_id, "event": event, "data": data})

	async def unsubscribe(self, conversation_id: int, user_id: int):
		await self._guarded(
			"unsubscribe", "conversation", conversation_id,
			self._publish({"scope": "unsubscribe", "target": conversation_id, "user_id": user_id})
		)

	async def dispatch(self, envelope: Dict[str, Any]):
		"""Hand one relayed envelope to the sockets of this worker"""
		scope = envelope.get("scope")
		target = int(envelope["target"])
		if scope == "conversation":
			await self.manager.send_to_conversation(target, envelope["event"], envelope.get("data") or {})
		elif scope == "user":
			await self.manager.send_to_user(target, envelope["event"], envelope.get("data") or {})
		elif scope == "unsubscribe":
			self.manager.evict(target, int(envelope["user_id"]))
		else:
			logger.warning(f"Ignoring relayed envelope with unknown scope {scope!r}")

	async def _listen(self):
		"""Relay envelopes from one subscription until it fails"""
		pubsub = self.cache_manager.redis.pubsub()
		try:
			await pubsub.subscribe(self.channel)
			self.relay_healthy = True
			async for message in pubsub.listen():
				if message.get("type") != "message":
					continue
				try:
					await self.dispatch(json.loads(message["data"]))
				except (ValueError, KeyError, TypeError) as e:
					logger.warning(f"Dropping malformed relay envelope: {e}")
		finally:
			try:
				await pubsub.unsubscribe(self.channel)
				await pubsub.aclose()
			except (aioredis.RedisError, OSError) as e:
				logger.debug(f"Relay subscription cleanup failed: {e}")

	async def relay(self):
		"""Keep this worker subscribed, resubscribing with backoff when Redis drops"""
		delay = self.retry_initial
		while True:
			try:
				await self._listen()
				error = "subscription closed by server"
			except (aioredis.RedisError, OSError) as e:
				error = str(e)

			if self.relay_healthy:
				delay = self.retry_initial
			self.relay_healthy = False
			record_broadcast("relay", failed=True)
			chat_logger.system_event(
				event_type="relay_disconnected",
				component="broadcaster",
				status="retrying",
				details=f"{error}; resubscribing in {delay}s"
			)
			await asyncio.sleep(delay)
			delay = min(delay * 2, self.retry_max)

	def _relay_finished(self, task: asyncio.Task):
		if task.cancelled():
			return
		error = task.exception()
		if error:
			self.relay_healthy = False
			chat_logger.system_event(
				event_type="relay_stopped",
				component="broadcaster",
				status="error",
				details=repr(error)
			)

	def is_healthy(self) -> bool:
		return self.relay_healthy

	async def start(self):
		if self.cache_manager.redis is None:
			logger.error("Redis broadcaster configured but Redis is unavailable; live events will be dropped")
			return
		self._relay_task = asyncio.create_task(self.relay())
		self._relay_task.add_done_callback(self._relay_finished)

	async def stop(self):
		if self._relay_task:
			self._relay_task.cancel()
			try:
				await self._relay_task
			except (asyncio.CancelledError, aioredis.RedisError):
				pass
			self._relay_task = None
			self.relay_healthy = False


def build_broadcaster(backend: str, manager: ConnectionManager, cache_manager: CacheManager, channel: str) -> Broadcaster:
	if backend == "redis":
		return RedisBroadcaster(manager, cache_manager, channel)
	if backend != "local":
		raise ValueError(f"Unknown broadcast backend {backend!r}")
	return LocalBroadcaster(manager)
