from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from app.core.errors import ChatError, InternalError
from app.core.logging import chat_logger
from config import settings
import logging

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
	pass


def utcnow() -> datetime:
	"""Naive UTC timestamp; all DateTime columns store naive UTC."""
	return datetime.now(timezone.utc).replace(tzinfo=None)


def configure_sqlite(target: Engine):
	"""Enable foreign keys on every SQLite connection so ON DELETE CASCADE applies"""
	@event.listens_for(target, "connect")
	def set_sqlite_pragma(dbapi_connection, connection_record):
		cursor = dbapi_connection.cursor()
		cursor.execute("PRAGMA foreign_keys=ON")
		# Wait for concurrent writers instead of failing immediately
		cursor.execute("PRAGMA busy_timeout=5000")
		cursor.close()


if settings.is_sqlite:
	engine = create_engine(
		settings.database_url,
		connect_args={"check_same_thread": False},
		echo=settings.debug
	)
	configure_sqlite(engine)
else:
	engine = create_engine(
		settings.database_url,
		echo=settings.debug,
		pool_pre_ping=True,
		pool_recycle=300,
	)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
	"""Database session dependency for FastAPI"""
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


@contextmanager
def session_scope():
	"""Short-lived session for work outside a request, such as one websocket event"""
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


def get_session_scope():
	"""Session scope dependency for long-lived connections"""
	return session_scope


@contextmanager
def transaction(db: Session, operation: str, **context):
	"""
	Commit everything done inside the block, or roll all of it back.

	Domain errors pass through untouched; storage errors are logged with
	their cause and surface as InternalError.
	"""
	try:
		yield db
		db.commit()
	except ChatError:
		db.rollback()
		raise
	except SQLAlchemyError as e:
		db.rollback()
		chat_logger.storage_error(operation, str(e), **context)
		raise InternalError() from e


def insert_or_ignore(db: Session, model, values: dict) -> bool:
	"""
	Insert a row, treating a unique-constraint conflict as already satisfied.

	Returns True when a new row was written. Runs inside the caller's
	transaction; nothing is committed here.
	"""
	dialect = db.get_bind().dialect.name
	if dialect == "postgresql":
		stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing()
	elif dialect == "sqlite":
		stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing()
	else:
		raise NotImplementedError(f"insert_or_ignore is not supported on {dialect}")

	result = db.execute(stmt)
	return result.rowcount > 0


def create_tables():
	"""Create all tables"""
	# Import models so they register on Base.metadata
	from app.models import user, conversation, message  # noqa: F401

	Base.metadata.create_all(bind=engine)
	logger.info("Database tables created")
