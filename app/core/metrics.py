from prometheus_client import Counter, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_fastapi_instrumentator import Instrumentator, metrics
from fastapi import Request, Response
import logging

logger = logging.getLogger(__name__)

# Business Metrics
messages_created_total = Counter(
    'chat_messages_created_total',
    'Total number of messages created',
    ['message_type']
)

conversations_created_total = Counter(
    'chat_conversations_created_total',
    'Total number of conversations created',
    ['conversation_type']
)

reactions_toggled_total = Counter(
    'chat_reactions_toggled_total',
    'Total number of reaction toggles',
    ['action']
)

mentions_created_total = Counter(
    'chat_mentions_created_total',
    'Total number of mention rows created'
)

# Realtime Metrics
broadcast_events_total = Counter(
    'chat_broadcast_events_total',
    'Total number of realtime events published',
    ['event']
)

broadcast_failures_total = Counter(
    'chat_broadcast_failures_total',
    'Total number of realtime events that could not be delivered',
    ['event']
)

# Error Metrics
errors_total = Counter(
    'chat_errors_total',
    'Total number of errors',
    ['error_type', 'endpoint', 'status_code']
)

# Application Info
app_info = Info(
    'chat_app_info',
    'Application information'
)


def record_message_created(message_type: str = "text"):
    messages_created_total.labels(message_type=message_type).inc()


def record_conversation_created(conversation_type: str):
    conversations_created_total.labels(conversation_type=conversation_type).inc()


def record_reaction_toggled(action: str):
    reactions_toggled_total.labels(action=action).inc()


def record_mentions_created(count: int):
    if count:
        mentions_created_total.inc(count)


def record_broadcast(event: str, failed: bool = False):
    broadcast_events_total.labels(event=event).inc()
    if failed:
        broadcast_failures_total.labels(event=event).inc()


def record_error(error_type: str, endpoint: str, status_code: int):
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
        status_code=str(status_code)
    ).inc()


def set_app_info(version: str, environment: str):
    app_info.info({
        'version': version,
        'environment': environment,
        'service': 'team-chat'
    })


def error_metrics_middleware(app):
    """Count every 4xx/5xx response by path"""

    @app.middleware("http")
    async def record_error_responses(request: Request, call_next):
        response = await call_next(request)
        if response.status_code >= 400:
            record_error(
                error_type="http_error",
                endpoint=request.url.path,
                status_code=response.status_code
            )
        return response


def setup_metrics(app):
    """Setup Prometheus metrics for the FastAPI app"""

    instrumentator = Instrumentator()
    instrumentator.add(metrics.default())
    instrumentator.instrument(app)

    error_metrics_middleware(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    set_app_info(version="1.0.0", environment="production")

    logger.info("Prometheus metrics setup completed")
