"""
Base repository class for async PostgreSQL access.
"""
from __future__ import annotations

import logging
from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from orderbook_backend.storage.database import Database

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def affected_rows(status: Optional[str]) -> int:
    """Row count from an asyncpg status tag such as 'UPDATE 1'."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class BaseRepository(Generic[T]):
    """
    Base class for async repositories.

    Subclasses define table name and model type. Conversion from records
    happens here so callers only ever handle validated models.
    """

    table_name: str
    model_class: Type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record_to_model(self, record, model_class=None) -> Optional[T]:
        """Convert asyncpg Record to Pydantic model."""
        if record is None:
            return None
        return (model_class or self.model_class)(**dict(record))

    def _records_to_models(self, records, model_class=None) -> list[T]:
        """
        Convert records to models, skipping rows that fail validation.

        A single malformed row is logged and dropped; it never aborts the
        whole batch.
        """
        models = []
        for r in records:
            try:
                models.append(self._record_to_model(r, model_class))
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning(
                    f"Skipping malformed {self.table_name} row "
                    f"{self._describe(r)}: {e}"
                )
        return models

    @staticmethod
    def _describe(record) -> str:
        try:
            row = dict(record)
        except (TypeError, ValueError):
            return "<unreadable>"
        for key in ("conditional_order_id", "order_id", "id"):
            if row.get(key) is not None:
                return f"{key}={row[key]}"
        return "<no id>"
