# backend/tipu/repositories/user_repository.py
"""User Repository: read-only access to identity data used by booking rules."""

from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.user import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_children(self, parent_id: str) -> List[User]:
        try:
            return self.db.query(User).filter(User.parent_id == parent_id).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading children for {parent_id}: {str(e)}")
            raise RepositoryException(f"Failed to load children: {str(e)}")
