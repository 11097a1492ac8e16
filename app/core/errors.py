"""
Chat domain exceptions.

Services raise these; the API layer maps them to HTTP status codes through
the handlers registered in register_exception_handlers().
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.core.logging import chat_logger


class ChatError(Exception):
	"""Base class for every error the chat core reports to callers"""
	status_code = 500

	def __init__(self, message: str = "Internal server error"):
		super().__init__(message)
		self.message = message


class NotFoundError(ChatError):
	"""Conversation, message, user or mention does not exist"""
	status_code = 404

	def __init__(self, message: str = "Not found"):
		super().__init__(message)


class ForbiddenError(ChatError):
	"""Caller is not a member, or lacks the role for the operation"""
	status_code = 403

	def __init__(self, message: str = "Access denied"):
		super().__init__(message)


class ValidationError(ChatError):
	"""Request violates a messaging rule (empty content, too long, bad member list)"""
	status_code = 422

	def __init__(self, message: str = "Invalid request"):
		super().__init__(message)


class ConflictError(ChatError):
	status_code = 409

	def __init__(self, message: str = "Conflict"):
		super().__init__(message)


class InternalError(ChatError):
	"""Storage or transaction failure; the cause is logged, never returned"""
	status_code = 500

	def __init__(self, message: str = "Internal server error"):
		super().__init__(message)


def register_exception_handlers(app: FastAPI):
	@app.exception_handler(ChatError)
	async def chat_error_handler(request: Request, exc: ChatError):
		if exc.status_code >= 500:
			chat_logger.api_error(
				method=request.method,
				endpoint=request.url.path,
				status_code=exc.status_code,
				error_message=exc.message
			)
		return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
