# backend/tipu/repositories/base_repository.py
"""
Base Repository Pattern for the Tipu platform.

Repositories own data access only. They flush but never commit; services
decide transaction boundaries through ``BaseService.transaction()``.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class IRepository(ABC, Generic[T]):
    """Core data access contract shared by all repositories."""

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an entity by primary key, or None."""

    @abstractmethod
    def create(self, **kwargs: Any) -> T:
        """Create and flush a new entity."""

    @abstractmethod
    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        """Update provided fields on an entity, or return None if missing."""


class BaseRepository(IRepository[T]):
    """
    Default CRUD implementation over a single model.

    Attributes:
        db: SQLAlchemy session (transactions managed by services)
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def _pk_column(self) -> Any:
        return getattr(self.model, "id")

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.query(self.model).filter(self._pk_column() == id).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def refresh(self, instance: T) -> None:
        """Refresh an instance from the database."""
        self.db.refresh(instance)

    def create(self, **kwargs: Any) -> T:
        """
        Create a new entity.

        Note: Does NOT commit. ``IntegrityError`` is re-raised untouched so
        callers can treat unique-constraint races as "already exists".
        """
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError:
            self.logger.info("Integrity error creating %s", self.model.__name__)
            raise
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating {self.model.__name__}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}")

    def flush(self) -> None:
        """Flush pending ORM changes."""
        self.db.flush()

    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        """Update only the provided fields and flush."""
        try:
            entity = self.get_by_id(id)
            if not entity:
                return None

            for key, value in kwargs.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)

            self.db.flush()
            return entity
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating {self.model.__name__} {id}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to update {self.model.__name__}: {str(e)}")

    def find_by(self, **kwargs: Any) -> List[T]:
        try:
            return self.db.query(self.model).filter_by(**kwargs).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding by criteria: {str(e)}")
            raise RepositoryException(f"Failed to find records: {str(e)}")

    def find_one_by(self, **kwargs: Any) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding one by criteria: {str(e)}")
            raise RepositoryException(f"Failed to find record: {str(e)}")

    def _conditional_update(self, criteria: List[Any], values: dict[str, Any]) -> int:
        """
        Run ``UPDATE ... WHERE <criteria>`` and return the matched row count.

        This is the read-modify-write primitive: a zero count means another
        writer moved the row first.
        """
        try:
            return (
                self.db.query(self.model)
                .filter(*criteria)
                .update(values, synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Conditional update on {self.model.__name__} failed: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to update {self.model.__name__}: {str(e)}")
