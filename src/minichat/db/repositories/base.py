"""
Base repository with common CRUD operations.
"""

import uuid
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from minichat.exceptions import NotFoundError
from minichat.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Generic repository for a single model."""

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Model field values

        Returns:
            Created instance (flushed, not committed)
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        return instance

    def get(self, id: uuid.UUID) -> Optional[ModelType]:
        """
        Get record by primary key.

        Args:
            id: Record UUID

        Returns:
            Instance or None
        """
        return self.session.get(self.model, id)

    def get_or_raise(self, id: uuid.UUID) -> ModelType:
        """
        Get record by primary key or fail.

        Args:
            id: Record UUID

        Returns:
            Instance

        Raises:
            NotFoundError: If no record has this id
        """
        instance = self.get(id)
        if instance is None:
            raise NotFoundError(self.model.__name__, id)
        return instance

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ModelType]:
        """
        Get all records.

        Args:
            limit: Maximum number of records to return
            offset: Number of records to skip

        Returns:
            List of instances
        """
        stmt = select(self.model).offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def count(self) -> int:
        """Count all records."""
        return self.session.execute(
            select(func.count()).select_from(self.model)
        ).scalar_one()
