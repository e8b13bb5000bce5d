"""
Watches a payment popup for closure.

Closing a window is not reliably observable as an event, so a probe is
checked about once per second until it reports the popup closed.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

ClosedProbe = Callable[[], Union[bool, Awaitable[bool]]]
ClosedCallback = Callable[[str], Awaitable[None]]

class PopupProbe:
    """Closure flag reported by the client that owns the popup window."""

    def __init__(self):
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def __call__(self) -> bool:
        return self.closed

class PopupMonitor:
    def __init__(self, check_interval: float = 1.0):
        self.check_interval = check_interval
        self._watches: Dict[str, asyncio.Task] = {}

    def watch(self, transaction_id: str, is_closed: ClosedProbe,
              on_closed: Optional[ClosedCallback] = None) -> asyncio.Task:
        """Start watching; the returned task resolves to True once the popup closes."""
        self.cancel(transaction_id)
        task = asyncio.get_running_loop().create_task(self._watch(transaction_id, is_closed, on_closed))
        self._watches[transaction_id] = task
        task.add_done_callback(lambda t, txn=transaction_id: self._forget(txn, t))
        return task

    def _forget(self, transaction_id: str, task: asyncio.Task) -> None:
        if self._watches.get(transaction_id) is task:
            del self._watches[transaction_id]

    async def _watch(self, transaction_id: str, is_closed: ClosedProbe,
                     on_closed: Optional[ClosedCallback]) -> bool:
        logger.info(f"Watching payment popup for {transaction_id}")
        while True:
            closed = is_closed()
            if inspect.isawaitable(closed):
                closed = await closed
            if closed:
                break
            await asyncio.sleep(self.check_interval)

        logger.info(f"Payment popup for {transaction_id} closed")
        if on_closed is not None:
            await on_closed(transaction_id)
        return True

    def is_watching(self, transaction_id: str) -> bool:
        return transaction_id in self._watches

    def cancel(self, transaction_id: str) -> bool:
        task = self._watches.pop(transaction_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"Stopped watching payment popup for {transaction_id}")
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._watches.values())
        self._watches.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
