"""
Optimistic Locking Infrastructure
Version- and status-guarded updates to prevent race conditions in database operations
"""

import logging
from typing import Any, Dict, Optional, Type
from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Base
from services.exceptions import ConflictError
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class OptimisticLockingError(ConflictError):
    """Raised when optimistic locking fails due to version conflict"""
    pass


class OptimisticLockManager:
    """
    Manager for compare-and-swap style updates.

    Every write issued here is a single UPDATE whose WHERE clause carries the
    expected current value (a version number or a status). A rowcount of zero
    means another writer got there first.
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Type[Base],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: int,
    ) -> int:
        """
        Perform version-controlled update

        Args:
            model_class: SQLAlchemy model class with a ``version`` column
            entity_id: Primary key value
            updates: Dictionary of field updates
            current_version: Expected current version

        Returns:
            int: The new version number

        Raises:
            OptimisticLockingError: If version conflict detected
        """
        new_version = current_version + 1
        stmt = update(model_class).where(
            model_class.id == entity_id,
            model_class.version == current_version
        ).values(**{"updated_at": get_naive_utc_now(), **updates}, version=new_version)

        result = self.session.execute(stmt)

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                f"expected_version={current_version}"
            )
            raise OptimisticLockingError(
                f"Version conflict for {model_class.__name__} id={entity_id}. "
                f"Expected version {current_version} but entity was modified by another process.",
                entity=model_class.__name__,
                entity_id=entity_id,
                expected_version=current_version,
            )

        logger.debug(
            f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
            f"v{current_version} → v{new_version}"
        )
        return new_version

    def conditional_update(
        self,
        model_class: Type[Base],
        criteria: Dict[str, Any],
        updates: Dict[str, Any],
        extra_conditions: Optional[list] = None,
    ) -> int:
        """
        UPDATE ... SET updates WHERE every column in ``criteria`` equals its value.

        Returns the number of rows changed; the caller decides whether zero is
        a conflict.
        """
        conditions = [getattr(model_class, column) == value for column, value in criteria.items()]
        if extra_conditions:
            conditions.extend(extra_conditions)

        stmt = update(model_class).where(*conditions).values(
            **{"updated_at": get_naive_utc_now(), **updates}
        ).execution_options(synchronize_session=False)

        result = self.session.execute(stmt)

        logger.debug(
            f"🔁 Conditional update on {model_class.__name__} where {criteria}: {result.rowcount} row(s)"
        )
        return result.rowcount
