"""Fan-in of several blocking watch subscriptions into one async event stream."""

import asyncio
import concurrent.futures
import dataclasses
import threading
from typing import AsyncIterator, Callable, Dict, Iterable, Optional, Tuple

from common.constants import WATCH_QUEUE_MAXSIZE
from common.logging_config import get_logger
from common.types import WatchEvent

logger = get_logger(__name__)

SubscriptionKey = Optional[str]


@dataclasses.dataclass(frozen=True)
class _Ended:
    """Marker posted by a pump thread when its subscription finishes."""
    generation: int
    error: Optional[BaseException] = None


_WAKEUP = object()

# how often a blocked pump thread rechecks for shutdown
_POST_POLL_SECONDS = 0.1


class WatchMultiplexer:
    """
    Merges one subscription per namespace (or a single cluster-wide one,
    keyed None) into a single async stream.

    Each subscription is iterated in its own daemon thread and handed to the
    event loop through an asyncio.Queue, so whichever subscription produces
    first is delivered first. Ordering is preserved per subscription only.
    A subscription that ends does not interrupt the others and can be
    restarted with resubscribe(). The stream ends once no subscription is
    running, or after close().

    The queue is bounded: a pump thread blocks while max_pending items are
    waiting for the consumer.
    """

    def __init__(
        self,
        subscription_factory: Callable[[SubscriptionKey], Iterable[WatchEvent]],
        max_pending: int = WATCH_QUEUE_MAXSIZE,
    ):
        """
        Args:
            subscription_factory: Builds the blocking event iterator for a
                namespace (None for cluster-wide). Retries and backoff are
                the iterator's business.
            max_pending: Events buffered before pump threads block
        """
        self._factory = subscription_factory
        self._max_pending = max_pending
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._subscriptions: Dict[SubscriptionKey, Iterable[WatchEvent]] = {}
        self._running: Dict[SubscriptionKey, int] = {}
        self._generation = 0
        self._closed = False

    @property
    def active(self) -> Tuple[SubscriptionKey, ...]:
        """Keys of subscriptions that are currently running."""
        return tuple(self._running)

    def subscribe(self, namespaces: Optional[Iterable[str]]) -> AsyncIterator[WatchEvent]:
        """
        Open one subscription per distinct namespace and return the merged stream.

        Must be called from inside the running event loop.

        Args:
            namespaces: Namespaces to watch, or None for one cluster-wide watch

        Returns:
            Async iterator over events from all subscriptions
        """
        if self._queue is not None:
            raise RuntimeError("WatchMultiplexer.subscribe() may only be called once")

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._max_pending)

        keys = [None] if namespaces is None else sorted(set(namespaces))
        for key in keys:
            self._start(key)

        logger.info(f"Multiplexing {len(keys)} watch subscription(s): {[k or '<all namespaces>' for k in keys]}")
        return self._events()

    def resubscribe(self, namespace: SubscriptionKey) -> bool:
        """
        Restart a subscription that has ended.

        Returns:
            True if a new subscription was started, False if one is still running
            or the multiplexer is closed
        """
        if self._queue is None:
            raise RuntimeError("subscribe() must be called before resubscribe()")
        if self._closed or namespace in self._running:
            return False
        self._start(namespace)
        logger.info(f"Resubscribed watch for {namespace or '<all namespaces>'}")
        return True

    def close(self) -> None:
        """Stop every subscription and end the merged stream."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions.values():
            stop = getattr(subscription, "stop", None)
            if callable(stop):
                stop()
        if self._queue is not None:
            try:
                self._queue.put_nowait((None, _WAKEUP))
            except asyncio.QueueFull:
                # consumer is busy and checks _closed before its next get()
                pass
        logger.info("Watch multiplexer closed")

    def _start(self, key: SubscriptionKey) -> None:
        self._generation += 1
        generation = self._generation
        subscription = self._factory(key)
        self._subscriptions[key] = subscription
        self._running[key] = generation

        thread = threading.Thread(
            target=self._pump,
            args=(key, generation, subscription),
            daemon=True,
            name=f"watch-{key or 'cluster'}",
        )
        thread.start()

    def _post(self, item) -> None:
        """Hand an item to the event loop, blocking while the queue is full."""
        put = self._queue.put(item)
        try:
            future = asyncio.run_coroutine_threadsafe(put, self._loop)
        except RuntimeError:
            # event loop already closed during shutdown
            put.close()
            logger.debug("Dropped watch item posted after event loop closed")
            return

        while True:
            try:
                future.result(timeout=_POST_POLL_SECONDS)
                return
            except concurrent.futures.TimeoutError:
                if self._closed or self._loop.is_closed():
                    future.cancel()
                    logger.debug("Dropped watch item pending at shutdown")
                    return
            except concurrent.futures.CancelledError:
                logger.debug("Dropped watch item cancelled at shutdown")
                return

    def _pump(self, key: SubscriptionKey, generation: int, subscription: Iterable[WatchEvent]) -> None:
        error: Optional[BaseException] = None
        try:
            for event in subscription:
                if self._closed:
                    break
                self._post((key, event))
        except Exception as e:
            error = e
        finally:
            self._post((key, _Ended(generation, error)))

    def _on_ended(self, key: SubscriptionKey, ended: _Ended) -> None:
        if self._running.get(key) != ended.generation:
            return
        del self._running[key]
        label = key or "<all namespaces>"
        if ended.error is not None:
            logger.error(f"Watch subscription for {label} terminated: {ended.error}", exc_info=ended.error)
        else:
            logger.warning(f"Watch subscription for {label} ended")

    @staticmethod
    def _tag(event: WatchEvent, key: SubscriptionKey) -> WatchEvent:
        if event.source == key:
            return event
        return dataclasses.replace(event, source=key)

    async def _events(self) -> AsyncIterator[WatchEvent]:
        while self._running and not self._closed:
            key, item = await self._queue.get()
            if item is _WAKEUP:
                continue
            if isinstance(item, _Ended):
                self._on_ended(key, item)
                continue
            if self._closed:
                break
            yield self._tag(item, key)
        logger.info("Merged watch stream ended")
