from typing import Dict, Iterable, List, Optional
from sqlalchemy.orm import Session
from app.core.errors import NotFoundError
from app.models.user import User
import logging

logger = logging.getLogger(__name__)


class UserService:
	"""Read access to the user directory owned by the auth service"""

	def __init__(self, db: Session):
		self.db = db

	async def get_user_by_id(self, user_id: int) -> Optional[User]:
		return self.db.query(User).filter(User.id == user_id, User.is_active == True).first()  # noqa: E712

	async def require_user(self, user_id: int) -> User:
		user = await self.get_user_by_id(user_id)
		if not user:
			raise NotFoundError(f"User {user_id} not found")
		return user

	async def get_users_by_ids(self, user_ids: Iterable[int]) -> Dict[int, User]:
		"""Batch lookup keyed by id; unknown or inactive ids are absent"""
		ids = list(dict.fromkeys(user_ids))
		if not ids:
			return {}
		users = self.db.query(User).filter(User.id.in_(ids), User.is_active == True).all()  # noqa: E712
		return {user.id: user for user in users}

	async def require_users(self, user_ids: Iterable[int]) -> List[User]:
		ids = list(dict.fromkeys(user_ids))
		found = await self.get_users_by_ids(ids)
		missing = [user_id for user_id in ids if user_id not in found]
		if missing:
			raise NotFoundError(f"Users not found: {', '.join(str(user_id) for user_id in missing)}")
		return [found[user_id] for user_id in ids]
