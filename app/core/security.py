from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.user import User
from config import settings

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
	"""Trusted identity handed to the chat core for every call"""
	id: int
	name: str
	role: str = "user"

	@property
	def is_admin(self) -> bool:
		return self.role in settings.admin_roles


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	expire = datetime.now(timezone.utc) + (
		expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
	)
	to_encode.update({"exp": expire})
	return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> Optional[dict]:
	try:
		return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
	except jwt.InvalidTokenError:
		return None


def resolve_user(token: Optional[str], db: Session) -> Optional[CurrentUser]:
	"""Map a bearer token to the identity of an active user, or None"""
	if not token:
		return None
	payload = decode_token(token)
	if not payload or not payload.get("sub"):
		return None

	try:
		user_id = int(payload["sub"])
	except (TypeError, ValueError):
		return None

	user = db.query(User).filter(User.id == user_id, User.is_active == True).first()  # noqa: E712
	if not user:
		return None
	return CurrentUser(id=user.id, name=user.name, role=user.role)


def get_current_user(
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
	db: Session = Depends(get_db)
) -> CurrentUser:
	token = credentials.credentials if credentials else None
	if not token:
		raise HTTPException(status_code=401, detail="Not authenticated")

	user = resolve_user(token, db)
	if not user:
		raise HTTPException(status_code=401, detail="Invalid token")
	return user
