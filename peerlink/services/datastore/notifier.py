"""In-process insert notifications.

Stands in for the realtime change feed of the hosted backend: every row
inserted through the store is fanned out to the subscriptions whose table and
equality filters match it. Each subscription gets its own queue and consumer
task, so one slow subscriber never delays another and rows reach a given
subscriber in insertion order.
"""
import asyncio
import inspect
import itertools
import logging
from typing import Any, Dict, List

from peerlink.services.datastore.base import InsertCallback, Row, Subscription

logger = logging.getLogger(__name__)


class InsertNotifier:
    """Fan-out of inserted rows to filtered subscribers."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._subscriptions: Dict[int, Subscription] = {}
        self._queues: Dict[int, asyncio.Queue] = {}
        self._tasks: Dict[int, asyncio.Task] = {}

    def subscribe(self, table: str, filters: Dict[str, Any], callback: InsertCallback) -> Subscription:
        """Register a subscriber. Must be called from a running event loop."""
        subscription = Subscription(next(self._ids), table, filters, callback)
        queue: asyncio.Queue = asyncio.Queue()
        self._subscriptions[subscription.id] = subscription
        self._queues[subscription.id] = queue
        self._tasks[subscription.id] = asyncio.get_running_loop().create_task(
            self._consume(subscription, queue)
        )
        logger.debug(f"[NOTIFIER] Subscribed {subscription}")
        return subscription

    def remove(self, subscription: Subscription) -> None:
        """Remove a subscriber; pending rows for it are dropped."""
        subscription.active = False
        self._subscriptions.pop(subscription.id, None)
        queue = self._queues.pop(subscription.id, None)
        while queue is not None and not queue.empty():
            queue.get_nowait()
            queue.task_done()
        task = self._tasks.pop(subscription.id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if task:
            logger.debug(f"[NOTIFIER] Removed {subscription}")

    def publish(self, table: str, row: Row) -> int:
        """Queue a row for every matching subscriber. Returns the match count."""
        matched = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.active and subscription.matches(table, row):
                self._queues[subscription.id].put_nowait(dict(row))
                matched += 1
        return matched

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until every queued row has been handled, including rows
        inserted by the handlers themselves."""

        async def _drain() -> None:
            while True:
                queues: List[asyncio.Queue] = list(self._queues.values())
                await asyncio.gather(*(q.join() for q in queues))
                if all(q.empty() for q in self._queues.values()):
                    return

        await asyncio.wait_for(_drain(), timeout)

    async def close(self) -> None:
        """Cancel all consumers."""
        tasks = list(self._tasks.values())
        for subscription in list(self._subscriptions.values()):
            self.remove(subscription)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _consume(self, subscription: Subscription, queue: asyncio.Queue) -> None:
        while subscription.active:
            row = await queue.get()
            try:
                if not subscription.active:
                    continue
                result = subscription.callback(row)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"[NOTIFIER] Subscriber {subscription.id} failed on {subscription.table} row "
                    f"{row.get('id')}: {type(e).__name__}: {e}",
                    exc_info=True,
                )
            finally:
                queue.task_done()
