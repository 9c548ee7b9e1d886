"""Signal relay over the shared ``call_signals`` table."""
import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from peerlink.services.call_session.context import CallContext
from peerlink.services.call_session.errors import SignalDeliveryError
from peerlink.services.call_session.models import SignalMessage, SignalType
from peerlink.services.datastore.base import Row, Subscription

logger = logging.getLogger(__name__)

SIGNALS_TABLE = "call_signals"

MessageHandler = Callable[[SignalMessage], Union[None, Awaitable[None]]]


def _age(row: Row) -> float:
    """Seconds since a stored row was created."""
    created_at = row.get("created_at")
    if not created_at:
        return 0.0
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return (datetime.utcnow() - created_at).total_seconds()


def rows_to_replay(
    rows: List[Row],
    self_id: str,
    start_at: Optional[Union[SignalType, str]] = None,
    max_age: Optional[float] = None,
) -> List[Row]:
    """Pick the stored rows a late subscriber should still see, oldest first.

    With ``start_at``, the result begins at the newest row of that type sent
    by someone other than ``self_id``. It is empty if there is none, or if that
    row is older than ``max_age`` seconds.
    """
    if start_at is None:
        return list(rows)
    start_at = SignalType(start_at)
    starts = [
        index for index, row in enumerate(rows)
        if row.get("signal_type") == start_at.value and row.get("sender_id") != self_id
    ]
    if not starts:
        return []
    first = rows[starts[-1]]
    if max_age is not None and _age(first) > max_age:
        logger.info(f"[RELAY] Ignoring stale {start_at} row {first.get('id')}")
        return []
    return rows[starts[-1]:]


class SignalRelayClient:
    """Sends signaling messages as rows and delivers the other side's rows.

    Delivery order between rows is not guaranteed; consumers must cope with
    candidates arriving before the description they belong to.
    """

    def __init__(self, context: CallContext):
        self.store = context.store
        self.self_id = context.user_id
        self.settings = context.settings
        self._subscription: Optional[Subscription] = None
        self._handle_row: Optional[Callable[[Row], Any]] = None
        self._seen_ids: Set[int] = set()

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def _backoff(self, attempt: int) -> float:
        delay = self.settings.signal_send_backoff_base * (2 ** (attempt - 1))
        return min(delay, self.settings.signal_send_backoff_max)

    async def send(
        self,
        call_id: str,
        sender_id: str,
        signal_type: Union[SignalType, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Row:
        """Append one signal row, retrying with exponential backoff.

        Raises:
            SignalDeliveryError: every attempt failed
        """
        message = SignalMessage(
            call_id=call_id,
            sender_id=sender_id,
            signal_type=signal_type,
            payload=payload or {},
        )
        max_attempts = max(1, self.settings.signal_send_max_attempts)
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                row = await self.store.insert(SIGNALS_TABLE, message.to_row())
                logger.debug(
                    f"[RELAY] Sent {message.signal_type} for call {call_id} (row {row.get('id')})"
                )
                return row
            except Exception as e:
                last_error = e
                if attempt == max_attempts:
                    break
                delay = self._backoff(attempt)
                logger.warning(
                    f"[RELAY] Send {message.signal_type} for call {call_id} failed "
                    f"(attempt {attempt}/{max_attempts}): {type(e).__name__}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        logger.error(
            f"[RELAY] Giving up on {message.signal_type} for call {call_id} "
            f"after {max_attempts} attempts: {last_error}"
        )
        raise SignalDeliveryError(
            call_id, message.signal_type.value, max_attempts, str(last_error)
        ) from last_error

    def subscribe(self, call_id: str, on_message: MessageHandler) -> Subscription:
        """Deliver every new signal for ``call_id`` not sent by this participant.

        Rows stored before this call are only delivered by ``replay()``.
        """
        if self._subscription is not None:
            logger.warning(f"[RELAY] Replacing existing subscription {self._subscription}")
            self.unsubscribe()
        self._seen_ids = set()

        def _handle_row(row: Row):
            if subscription is not self._subscription:
                return None
            row_id = row.get("id")
            if row_id is not None:
                if row_id in self._seen_ids:
                    return None
                self._seen_ids.add(row_id)
            try:
                message = SignalMessage.from_row(row)
            except ValidationError as e:
                logger.warning(f"[RELAY] Skipping malformed signal row {row.get('id')}: {e}")
                return None
            if message.sender_id == self.self_id:
                return None
            return on_message(message)

        subscription = self.store.subscribe_to_inserts(
            SIGNALS_TABLE, {"call_id": call_id}, _handle_row
        )
        self._subscription = subscription
        self._handle_row = _handle_row
        logger.info(f"[RELAY] Listening for signals on call {call_id} as {self.self_id}")
        return subscription

    async def replay(
        self,
        start_at: Optional[Union[SignalType, str]] = None,
        max_age: Optional[float] = None,
    ) -> None:
        """Deliver rows stored before ``subscribe()``, oldest first.

        ``start_at`` and ``max_age`` select rows as ``rows_to_replay()`` does.
        Rows already delivered live are skipped, so a row reaches the handler
        once whichever path sees it first.
        """
        subscription = self._subscription
        if subscription is None:
            return
        rows = await self.store.query(SIGNALS_TABLE, subscription.filters)
        rows = rows_to_replay(rows, self.self_id, start_at, max_age)
        logger.debug(f"[RELAY] Replaying {len(rows)} stored signals for {subscription.filters}")
        for row in rows:
            if subscription is not self._subscription:
                return
            result = self._handle_row(row)
            if inspect.isawaitable(result):
                await result

    def unsubscribe(self) -> None:
        """Stop delivery. Safe to call when not subscribed."""
        subscription, self._subscription = self._subscription, None
        self._handle_row = None
        if subscription is not None:
            self.store.remove_subscription(subscription)
            logger.info(f"[RELAY] Stopped listening on call {subscription.filters.get('call_id')}")
