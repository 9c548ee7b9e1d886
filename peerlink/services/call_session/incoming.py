"""Incoming call notifications for users who have not joined a call."""
import inspect
import logging
from typing import Any, Callable, Optional, Set

from peerlink.services.call_session.controller import CALL_LOGS_TABLE
from peerlink.services.call_session.models import IncomingCall, SignalType
from peerlink.services.call_session.relay import SIGNALS_TABLE, rows_to_replay
from peerlink.services.datastore.base import DataStore, Row, Subscription

logger = logging.getLogger(__name__)


class IncomingCallWatcher:
    """Announces offers addressed to one user.

    An offer is addressed to the user when the call has a ``ringing`` call
    log naming them as receiver. The initiator writes that log before it
    sends the offer. Each offer is announced at most once.
    """

    def __init__(
        self,
        store: DataStore,
        user_id: str,
        on_call: Callable[[IncomingCall], Any],
        max_age: Optional[float] = None,
    ):
        self.store = store
        self.user_id = user_id
        self.on_call = on_call
        self.max_age = max_age
        self._subscription: Optional[Subscription] = None
        self._announced: Set[int] = set()

    def start(self) -> None:
        """Watch for new offers."""
        if self._subscription is not None:
            return
        self._subscription = self.store.subscribe_to_inserts(
            SIGNALS_TABLE, {"signal_type": SignalType.OFFER.value}, self._on_offer
        )
        logger.info(f"[INCOMING] Watching offers for {self.user_id}")

    def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            self.store.remove_subscription(subscription)

    async def announce_ringing(self) -> None:
        """Announce calls that were already ringing before ``start()``."""
        logs = await self.store.query(
            CALL_LOGS_TABLE, {"receiver_id": self.user_id, "status": "ringing"}
        )
        for call_id in dict.fromkeys(log["call_id"] for log in logs):
            offers = await self.store.query(
                SIGNALS_TABLE, {"call_id": call_id, "signal_type": SignalType.OFFER.value}
            )
            latest = rows_to_replay(offers, self.user_id, SignalType.OFFER, self.max_age)
            if latest:
                await self._announce(latest[0])

    async def _on_offer(self, row: Row) -> None:
        if self._subscription is None or row.get("sender_id") == self.user_id:
            return
        logs = await self.store.query(
            CALL_LOGS_TABLE,
            {"call_id": row.get("call_id"), "receiver_id": self.user_id, "status": "ringing"},
        )
        if not logs:
            return
        await self._announce(row)

    async def _announce(self, row: Row) -> None:
        row_id = row.get("id")
        if row_id in self._announced:
            return
        self._announced.add(row_id)
        call = IncomingCall.from_offer(row)
        logger.info(f"[INCOMING] {call.call_type} call {call.call_id} from {call.caller_id} for {self.user_id}")
        result = self.on_call(call)
        if inspect.isawaitable(result):
            await result
