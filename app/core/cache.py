import json
from typing import Any, Iterable, Optional
import redis.asyncio as aioredis
from redis.asyncio import Redis
from config import settings
import logging

logger = logging.getLogger(__name__)


class CacheManager:
	"""Redis connection manager shared by the cache and the pub/sub broadcaster"""

	def __init__(self):
		self.redis: Optional[Redis] = None
		self._connection_pool = None

	async def connect(self):
		"""Initialize Redis connection"""
		if not settings.cache_enabled and settings.broadcast_backend != "redis":
			logger.info("Redis is disabled")
			return

		try:
			self._connection_pool = aioredis.ConnectionPool.from_url(
				settings.get_redis_url,
				max_connections=settings.redis_max_connections,
				retry_on_timeout=settings.redis_retry_on_timeout,
				decode_responses=True
			)
			self.redis = aioredis.Redis(connection_pool=self._connection_pool)

			await self.redis.ping()
			logger.info("Redis connection established successfully")

		except aioredis.RedisError as e:
			logger.error(f"Failed to connect to Redis: {e}")
			self.redis = None

	async def disconnect(self):
		"""Close Redis connection"""
		if self.redis:
			await self.redis.aclose()
			if self._connection_pool:
				await self._connection_pool.disconnect()
			self.redis = None
			logger.info("Redis connection closed")

	async def is_available(self) -> bool:
		"""Check if Redis is available"""
		if not self.redis:
			return False
		try:
			await self.redis.ping()
			return True
		except aioredis.RedisError:
			return False


# Global cache manager instance
cache_manager = CacheManager()


class CacheService:
	"""JSON cache over Redis; every failure degrades to a miss"""

	def __init__(self, cache_manager: CacheManager):
		self.cache_manager = cache_manager

	async def _enabled(self) -> bool:
		return settings.cache_enabled and await self.cache_manager.is_available()

	async def get(self, key: str) -> Optional[Any]:
		if not await self._enabled():
			return None

		try:
			value = await self.cache_manager.redis.get(key)
			if value is None:
				return None
			return json.loads(value)
		except (aioredis.RedisError, json.JSONDecodeError) as e:
			logger.warning(f"Cache get error for key {key}: {e}")
			return None

	async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
		if not await self._enabled():
			return False

		try:
			ttl = ttl or settings.cache_default_ttl
			await self.cache_manager.redis.setex(key, ttl, json.dumps(value, default=str))
			return True
		except aioredis.RedisError as e:
			logger.warning(f"Cache set error for key {key}: {e}")
			return False

	async def delete(self, *keys: str) -> int:
		if not keys or not await self._enabled():
			return 0

		try:
			return await self.cache_manager.redis.delete(*keys)
		except aioredis.RedisError as e:
			logger.warning(f"Cache delete error for keys {keys}: {e}")
			return 0


# Global cache service instance
cache_service = CacheService(cache_manager)


class CacheKeys:
	"""Standardized cache key generators"""

	@staticmethod
	def unread_count(conversation_id: int, user_id: int) -> str:
		return f"unread:{conversation_id}:{user_id}"


class CacheInvalidation:
	"""Cache invalidation strategies"""

	@staticmethod
	async def invalidate_unread(conversation_id: int, user_ids: Iterable[int]):
		"""Drop cached unread counts for the given members of a conversation"""
		keys = [CacheKeys.unread_count(conversation_id, user_id) for user_id in user_ids]
		deleted = await cache_service.delete(*keys)
		if deleted:
			logger.debug(f"Invalidated {deleted} unread counters for conversation {conversation_id}")
