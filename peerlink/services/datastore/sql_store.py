"""SQLAlchemy-backed data store."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Type
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from peerlink.db.models import Base, CallLog, CallSignal
from peerlink.services.datastore.base import DataStore, InsertCallback, Row, Subscription
from peerlink.services.datastore.notifier import InsertNotifier

logger = logging.getLogger(__name__)

TABLES: Dict[str, Type[Base]] = {
    CallSignal.__tablename__: CallSignal,
    CallLog.__tablename__: CallLog,
}


def row_to_dict(record: Base) -> Row:
    """Convert a model instance to a plain dict with ISO timestamps."""
    row = {}
    for column in record.__table__.columns:
        value = getattr(record, column.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        row[column.name] = value
    return row


class SqlDataStore(DataStore):
    """Data store using one short-lived session per operation."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Optional[InsertNotifier] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or InsertNotifier()

    def _model(self, table: str) -> Type[Base]:
        model = TABLES.get(table)
        if model is None:
            raise ValueError(f"Unknown table: {table}")
        return model

    def _check_columns(self, model: Type[Base], values: Dict[str, Any]) -> None:
        unknown = set(values) - set(model.__table__.columns.keys())
        if unknown:
            raise ValueError(f"Unknown columns for {model.__tablename__}: {sorted(unknown)}")

    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row and notify insert subscribers."""
        model = self._model(table)
        self._check_columns(model, row)
        async with self.session_factory() as session:
            record = model(**row)
            session.add(record)
            await session.commit()
            await session.refresh(record)
            stored = row_to_dict(record)

        matched = self.notifier.publish(table, stored)
        logger.debug(f"[STORE] Inserted {table} row {stored['id']} ({matched} subscribers)")
        return stored

    async def query(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        """Return rows matching all equality filters, oldest first."""
        model = self._model(table)
        self._check_columns(model, filters)
        async with self.session_factory() as session:
            result = await session.execute(
                select(model).filter_by(**filters).order_by(model.id)
            )
            return [row_to_dict(record) for record in result.scalars().all()]

    async def update(self, table: str, row_id: int, values: Dict[str, Any]) -> Optional[Row]:
        """Update a row by primary key."""
        model = self._model(table)
        self._check_columns(model, values)
        async with self.session_factory() as session:
            record = await session.get(model, row_id)
            if record is None:
                return None
            for key, value in values.items():
                setattr(record, key, value)
            await session.commit()
            await session.refresh(record)
            return row_to_dict(record)

    def subscribe_to_inserts(
        self, table: str, filters: Dict[str, Any], callback: InsertCallback
    ) -> Subscription:
        self._model(table)
        return self.notifier.subscribe(table, filters, callback)

    def remove_subscription(self, subscription: Subscription) -> None:
        self.notifier.remove(subscription)
