from fastapi import FastAPI, Request
from sqlalchemy import text
from app.api.conversations import router as conversations_router
from app.api.messages import router as messages_router
from app.api.realtime import router as realtime_router
from app.api.deps import broadcaster
from app.core.database import engine, create_tables
from app.core.cache import cache_manager
from app.core.errors import register_exception_handlers
from app.core.metrics import setup_metrics
from app.core.logging import setup_logging, chat_logger, RequestContext
from app.core.security import decode_token
from config import settings
import logging

# Setup structured logging
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
	title="Team Chat API",
	description="Conversations, messages, reactions, mentions and live events for team chat",
	version="1.0.0"
)

# Setup Prometheus metrics
setup_metrics(app)
register_exception_handlers(app)


@app.middleware("http")
async def request_context(request: Request, call_next):
	"""Bind request id and caller to every log line of the request"""
	user_id = None
	authorization = request.headers.get("authorization", "")
	if authorization.lower().startswith("bearer "):
		payload = decode_token(authorization[7:])
		if payload:
			user_id = payload.get("sub")

	with RequestContext(request_id=request.headers.get("x-request-id"), user_id=user_id) as context:
		context.bind(method=request.method, path=request.url.path)
		response = await call_next(request)
		response.headers["X-Request-ID"] = context.request_id
		return response


@app.on_event("startup")
async def on_startup():
	"""Initialize cache, database tables and the realtime relay"""
	try:
		chat_logger.system_event(
			event_type="application_startup",
			component="team-chat",
			status="starting",
			details="Initializing services"
		)

		await cache_manager.connect()
		chat_logger.system_event(
			event_type="service_initialized",
			component="redis",
			status="started" if cache_manager.redis else "disabled",
			details="Redis cache initialized" if cache_manager.redis else "Running without Redis"
		)

		create_tables()
		chat_logger.system_event(
			event_type="service_initialized",
			component="database",
			status="started",
			details="Database tables created successfully"
		)

		await broadcaster.start()
		chat_logger.system_event(
			event_type="service_initialized",
			component="broadcaster",
			status="started",
			details=f"Realtime backend: {settings.broadcast_backend}"
		)
	except Exception as e:
		chat_logger.system_event(
			event_type="application_startup",
			component="team-chat",
			status="failed",
			details=f"Startup failed: {str(e)}"
		)
		raise


@app.on_event("shutdown")
async def on_shutdown():
	"""Cleanup on shutdown"""
	await broadcaster.stop()
	await cache_manager.disconnect()
	logger.info("Application shutdown completed successfully")


app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(realtime_router)


@app.get("/")
def root():
	return {
		"service": "team-chat",
		"docs": "/docs",
		"realtime": "/ws",
		"status": "running"
	}


@app.get("/health")
async def health_check():
	"""Health check endpoint"""
	health_status = {"status": "healthy"}

	try:
		with engine.connect() as conn:
			conn.execute(text("SELECT 1"))
		health_status["database"] = "connected"
	except Exception as e:
		health_status["database"] = f"error: {str(e)}"
		health_status["status"] = "unhealthy"

	redis_available = await cache_manager.is_available()
	health_status["cache"] = "connected" if redis_available else "disconnected"
	health_status["broadcast_backend"] = settings.broadcast_backend
	if broadcaster.is_healthy():
		health_status["broadcast"] = "connected"
	else:
		health_status["broadcast"] = "disconnected"
		if health_status["status"] == "healthy":
			health_status["status"] = "degraded"

	return health_status


if __name__ == "__main__":
	import uvicorn

	uvicorn.run("app.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
