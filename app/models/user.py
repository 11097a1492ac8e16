from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index
from app.core.database import Base, utcnow


class User(Base):
	"""Directory entry mirrored from the auth service; used for display joins"""
	__tablename__ = "users"

	id = Column(Integer, primary_key=True, index=True)
	name = Column(String(100), nullable=False)
	email = Column(String(100), unique=True, index=True, nullable=False)
	# Platform role: "user", "admin", "superadmin"
	role = Column(String(20), default="user", nullable=False)
	is_active = Column(Boolean, default=True, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	avatar_url = Column(Text, nullable=True)

	__table_args__ = (
		Index('idx_users_active_name', 'is_active', 'name'),
	)
