from fastapi import Depends

from app.core.cache import cache_manager
from app.realtime.broadcaster import Broadcaster, build_broadcaster
from app.realtime.connection_manager import connection_manager
from app.realtime.notifications import Notifier
from config import settings

broadcaster = build_broadcaster(
	settings.broadcast_backend,
	connection_manager,
	cache_manager,
	settings.broadcast_channel
)


def get_broadcaster() -> Broadcaster:
	return broadcaster


def get_notifier(broadcaster: Broadcaster = Depends(get_broadcaster)) -> Notifier:
	return Notifier(broadcaster)
