from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
	# Database configuration
	database_url: str = "sqlite:///./chat.db"
	debug: bool = False

	# Redis configuration
	redis_url: str = "redis://localhost:6379/0"
	redis_password: str = ""
	redis_max_connections: int = 20
	redis_retry_on_timeout: bool = True

	# Cache settings
	cache_enabled: bool = True
	cache_default_ttl: int = 300
	cache_unread_ttl: int = 60  # unread counts change with every message

	# Realtime fan-out: "local" keeps sockets in-process, "redis" relays through pub/sub
	broadcast_backend: str = "local"
	broadcast_channel: str = "chat:events"

	# Token verification (tokens are issued by the auth service)
	secret_key: str = "change-this-in-production"
	algorithm: str = "HS256"
	access_token_expire_minutes: int = 60

	# Messaging rules
	max_message_length: int = 5000
	quote_snippet_length: int = 280
	message_page_size: int = 50
	notification_preview_length: int = 50
	admin_roles: List[str] = ["admin", "superadmin"]

	# Application settings
	host: str = "0.0.0.0"
	port: int = 8000
	log_level: str = "INFO"

	class Config:
		env_file = ".env"

	@property
	def is_sqlite(self) -> bool:
		return self.database_url.startswith("sqlite")

	@property
	def get_redis_url(self) -> str:
		"""Get Redis URL with password if provided"""
		if self.redis_password:
			return f"redis://:{self.redis_password}@{self.redis_url.split('://')[1]}"
		return self.redis_url


settings = Settings()
