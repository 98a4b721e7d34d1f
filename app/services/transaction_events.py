"""
In-process publish/subscribe for M-Pesa transaction status.

Channels:
- checkout:<checkout_request_id>  state of one STK transaction
- invoice:<invoice_id>            state of every STK transaction for an invoice

Subscribers receive the current state first and then each change. A state
equal to the previous one delivered to the same subscriber is dropped, so
redelivered callbacks never reach clients twice.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})


def checkout_channel(checkout_request_id: str) -> str:
    return f"checkout:{checkout_request_id}"


def invoice_channel(invoice_id: Any) -> str:
    return f"invoice:{invoice_id}"


def state_key(state: Dict[str, Any]) -> tuple:
    """Fields that identify a distinct transaction state."""
    return (
        state.get("checkout_request_id"),
        state.get("status"),
        state.get("result_code"),
    )


class TransactionStatusBroker:
    """
    Fan-out of transaction states to asyncio.Queue subscribers.

    A slow subscriber whose queue is full misses states rather than blocking
    the callback that published them.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, state: Dict[str, Any]) -> int:
        """
        Deliver a state to every subscriber of a channel.

        Returns:
            Number of subscribers that received it
        """
        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(state)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full on {channel}; state dropped")
        logger.debug(f"Published {state.get('status')} on {channel} to {delivered} subscribers")
        return delivered

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[channel].add(queue)
        try:
            yield queue
        finally:
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                self._subscribers.pop(channel, None)

    async def stream(
        self,
        channel: str,
        fetch_current: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
        stop_on_terminal: bool = False,
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield the current state, then changes, skipping consecutive duplicates.

        The queue is registered before the current state is fetched so a
        change published in between is not lost.

        Args:
            fetch_current: Loads the current state from the store (None if unknown)
            stop_on_terminal: End the stream after a completed or failed state
            idle_timeout: End the stream after this many seconds without a change
        """
        async with self.subscribe(channel) as queue:
            last_key = None

            current = await fetch_current()
            if current is not None:
                last_key = state_key(current)
                yield current
                if stop_on_terminal and current.get("status") in TERMINAL_STATUSES:
                    return

            while True:
                try:
                    if idle_timeout is None:
                        state = await queue.get()
                    else:
                        state = await asyncio.wait_for(queue.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    return

                key = state_key(state)
                if key == last_key:
                    continue
                last_key = key
                yield state

                if stop_on_terminal and state.get("status") in TERMINAL_STATUSES:
                    return


_broker: Optional[TransactionStatusBroker] = None


def get_transaction_broker() -> TransactionStatusBroker:
    """Get or create the process-wide transaction status broker."""
    global _broker
    if _broker is None:
        _broker = TransactionStatusBroker()
    return _broker
