import structlog
import logging
import sys
import time
from typing import Any, Dict, Iterable, Optional
import uuid

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


class ChatLogger:
    """Structured logger for chat domain events"""

    def __init__(self, name: str = "team-chat"):
        self.logger = structlog.get_logger(name)

    def _create_context(self, **kwargs) -> Dict[str, Any]:
        """Create logging context with common fields"""
        context = {"service": "team-chat"}
        context.update(kwargs)
        return context

    def info(self, message: str, **kwargs):
        self.logger.info(message, **self._create_context(**kwargs))

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **self._create_context(**kwargs))

    def error(self, message: str, **kwargs):
        self.logger.error(message, **self._create_context(**kwargs))

    def exception(self, message: str, **kwargs):
        self.logger.exception(message, **self._create_context(**kwargs))

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **self._create_context(**kwargs))

    # Business-specific logging methods
    def conversation_created(self, conversation_id: int, conversation_type: str, created_by: int, member_count: int):
        self.info(
            "Conversation created",
            event_type="conversation_created",
            conversation_id=conversation_id,
            conversation_type=conversation_type,
            created_by=created_by,
            member_count=member_count
        )

    def member_added(self, conversation_id: int, member_ids: Iterable[int], added_by: int):
        self.info(
            "Conversation members added",
            event_type="member_added",
            conversation_id=conversation_id,
            member_ids=list(member_ids),
            added_by=added_by
        )

    def member_removed(self, conversation_id: int, member_id: int, removed_by: int):
        self.info(
            "Conversation member removed",
            event_type="member_removed",
            conversation_id=conversation_id,
            member_id=member_id,
            removed_by=removed_by
        )

    def message_sent(self, message_id: int, sender_id: int, conversation_id: int, message_type: str = "text"):
        """Log message sent event"""
        self.info(
            "Message sent",
            event_type="message_sent",
            message_id=message_id,
            sender_id=sender_id,
            conversation_id=conversation_id,
            message_type=message_type
        )

    def message_deleted(self, message_id: int, deleted_by: int):
        self.info(
            "Message deleted",
            event_type="message_deleted",
            message_id=message_id,
            deleted_by=deleted_by
        )

    def conversation_read(self, conversation_id: int, user_id: int, flipped: int = 0):
        self.debug(
            "Conversation marked read",
            event_type="conversation_read",
            conversation_id=conversation_id,
            user_id=user_id,
            flipped=flipped
        )

    def reaction_toggled(self, message_id: int, user_id: int, emoji: str, action: str):
        self.info(
            "Message reaction toggled",
            event_type="reaction_toggled",
            message_id=message_id,
            user_id=user_id,
            emoji=emoji,
            action=action
        )

    def mentions_created(self, message_id: int, mentioned_by: int, count: int):
        self.info(
            "Message mentions created",
            event_type="mentions_created",
            message_id=message_id,
            mentioned_by=mentioned_by,
            count=count
        )

    def broadcast_failed(self, event: str, scope: str, target: Any, error: str):
        """A live push was dropped; the stored state is unaffected"""
        self.warning(
            "Realtime broadcast failed",
            event_type="broadcast_failed",
            event=event,
            scope=scope,
            target=target,
            error=error
        )

    def storage_error(self, operation: str, error: str, **kwargs):
        self.error(
            "Storage operation failed",
            event_type="storage_error",
            operation=operation,
            error=error,
            **kwargs
        )

    def api_error(self, method: str, endpoint: str, status_code: int, error_message: str, user_id: int = None):
        """Log API error event"""
        self.error(
            "API error",
            event_type="api_error",
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            error_message=error_message,
            user_id=user_id
        )

    def system_event(self, event_type: str, component: str, status: str, details: str = None):
        """Log system event"""
        self.info(
            "System event",
            event_type="system_event",
            system_event_type=event_type,
            component=component,
            status=status,
            details=details
        )


# Global logger instance
chat_logger = ChatLogger()


def setup_logging(log_level: str = "INFO"):
    """Setup structured logging for the application"""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(message)s",
        stream=sys.stdout
    )

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    chat_logger.system_event(
        event_type="application_startup",
        component="team-chat",
        status="started",
        details="Structured logging initialized"
    )


class RequestContext:
    """Binds request_id/user_id to every log line emitted while the request runs"""

    def __init__(self, request_id: str = None, user_id: Optional[int] = None, **kwargs):
        self.request_id = request_id or str(uuid.uuid4())
        self.user_id = user_id
        self.context = kwargs
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        structlog.contextvars.bind_contextvars(
            request_id=self.request_id,
            user_id=self.user_id,
            **self.context
        )
        return self

    def bind(self, **kwargs):
        structlog.contextvars.bind_contextvars(**kwargs)

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time if self.start_time else None
        chat_logger.debug(
            "Request completed",
            event_type="request_completed",
            duration=duration,
            failed=exc_type is not None
        )
        structlog.contextvars.clear_contextvars()
