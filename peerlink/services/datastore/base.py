"""Data store interface."""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

Row = Dict[str, Any]
InsertCallback = Callable[[Row], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by ``subscribe_to_inserts``."""

    def __init__(self, subscription_id: int, table: str, filters: Dict[str, Any], callback: InsertCallback):
        self.id = subscription_id
        self.table = table
        self.filters = dict(filters)
        self.callback = callback
        self.active = True

    def matches(self, table: str, row: Row) -> bool:
        """Check whether an inserted row is wanted by this subscription."""
        if table != self.table:
            return False
        return all(row.get(key) == value for key, value in self.filters.items())

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, table={self.table!r}, filters={self.filters!r})"


class DataStore(ABC):
    """Abstract base class for the shared store backing call signaling."""

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row and notify insert subscribers. Returns the stored row."""
        pass

    @abstractmethod
    async def query(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        """Return rows matching all equality filters, oldest first."""
        pass

    @abstractmethod
    async def update(self, table: str, row_id: int, values: Dict[str, Any]) -> Optional[Row]:
        """Update a row by primary key."""
        pass

    @abstractmethod
    def subscribe_to_inserts(
        self, table: str, filters: Dict[str, Any], callback: InsertCallback
    ) -> Subscription:
        """Register a callback for rows inserted after this call."""
        pass

    @abstractmethod
    def remove_subscription(self, subscription: Subscription) -> None:
        """Stop delivery to a subscription. Safe to call more than once."""
        pass
