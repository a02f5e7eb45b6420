import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from loguru import logger

from tickerbar.config import SubscriptionSettings
from tickerbar.errors import TransportError
from tickerbar.stream import StreamConnection
from tickerbar.watchlist import WatchlistStore

_LOG_PREFIX = "[subscriptions]"


class SubscriptionManager:
    """Keeps the live subscription set aligned with the watchlist.

    The set holds the ids believed to be subscribed on the stream. While the
    stream is not connected, changes are only recorded locally; a fresh
    connection has no server-side memory, so `restore()` clears the set and
    subscribes the whole watchlist again.

    Requests for the same instrument are serialized by a per-instrument
    lock, so at most one (un)subscribe is in flight for any id.
    """

    def __init__(
        self,
        stream: StreamConnection,
        watchlist: WatchlistStore,
        settings: SubscriptionSettings,
    ) -> None:
        self.stream = stream
        self.watchlist = watchlist
        self.settings = settings
        self.channel = stream.settings.channel
        self._subscribed: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._batch_task: asyncio.Task[None] | None = None

    @property
    def subscribed(self) -> frozenset[str]:
        return frozenset(self._subscribed)

    def is_subscribed(self, inst_id: str) -> bool:
        return inst_id in self._subscribed

    async def subscribe(self, inst_id: str) -> bool:
        """Subscribes one instrument. Already subscribed ids are a no-op.

        The id is inserted optimistically and removed again if the request
        cannot be sent.

        Returns:
            True if the id was added to the subscription set.
        """
        async with self._instrument_lock(inst_id):
            if inst_id in self._subscribed:
                return False
            self._subscribed.add(inst_id)
            if not self.stream.is_connected:
                logger.debug(f"{_LOG_PREFIX} Recorded {inst_id}; sent once connected.")
                return True
            try:
                await self._send("subscribe", inst_id)
            except TransportError as e:
                self._subscribed.discard(inst_id)
                logger.warning(f"{_LOG_PREFIX} Subscribe to {inst_id} failed: {e}")
                return False
            logger.info(f"{_LOG_PREFIX} Subscribed to {inst_id}.")
            return True

    async def unsubscribe(self, inst_id: str) -> bool:
        """Unsubscribes one instrument that is no longer favourited.

        Ids that are still in the watchlist, or not subscribed, are left
        alone.

        Returns:
            True if the id was removed from the subscription set.
        """
        async with self._instrument_lock(inst_id):
            if inst_id in self.watchlist:
                logger.debug(f"{_LOG_PREFIX} {inst_id} is still favourited.")
                return False
            if inst_id not in self._subscribed:
                return False
            self._subscribed.discard(inst_id)
            if not self.stream.is_connected:
                return True
            try:
                await self._send("unsubscribe", inst_id)
            except TransportError as e:
                # The session is gone, and its subscriptions with it.
                logger.warning(f"{_LOG_PREFIX} Unsubscribe of {inst_id} failed: {e}")
            else:
                logger.info(f"{_LOG_PREFIX} Unsubscribed from {inst_id}.")
            return True

    async def reconcile(self) -> None:
        """Brings the subscription set in line with the current watchlist.

        Stale ids are unsubscribed immediately, one request each. Missing ids
        are subscribed in watchlist order: while connected, the first batch is
        sent right away and the rest after `batch_delay_s`, spaced by
        `request_gap_s`. A newer reconcile replaces any pending batch.
        """
        self._cancel_batch()
        wanted = self.watchlist.ids
        if not wanted:
            await self._unsubscribe_all()
            return

        wanted_set = set(wanted)
        for inst_id in sorted(self._subscribed - wanted_set):
            await self.unsubscribe(inst_id)

        pending = [i for i in wanted if i not in self._subscribed]
        if not pending:
            return
        if not self.stream.is_connected:
            for inst_id in pending:
                await self.subscribe(inst_id)
            return

        batch_size = max(1, self.settings.batch_size)
        immediate, deferred = pending[:batch_size], pending[batch_size:]
        for inst_id in immediate:
            await self.subscribe(inst_id)
        if deferred:
            logger.info(
                f"{_LOG_PREFIX} Deferring {len(deferred)} subscriptions by "
                f"{self.settings.batch_delay_s}s."
            )
            self._batch_task = asyncio.create_task(
                self._subscribe_later(deferred), name="subscription-batch"
            )

    async def restore(self) -> None:
        """Re-subscribes the full watchlist on a fresh connection."""
        logger.info(f"{_LOG_PREFIX} Restoring subscriptions for the watchlist.")
        self._cancel_batch()
        self._subscribed.clear()
        await self.reconcile()

    def reset(self) -> None:
        """Forgets every subscription. Called when a session is torn down."""
        self._cancel_batch()
        if self._subscribed:
            logger.debug(f"{_LOG_PREFIX} Clearing {len(self._subscribed)} entries.")
        self._subscribed.clear()

    async def wait_for_batches(self) -> None:
        """Waits until a pending delayed batch has been sent."""
        task = self._batch_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def _subscribe_later(self, inst_ids: Sequence[str]) -> None:
        await asyncio.sleep(self.settings.batch_delay_s)
        for index, inst_id in enumerate(inst_ids):
            if index:
                await asyncio.sleep(self.settings.request_gap_s)
            if inst_id in self.watchlist:
                await self.subscribe(inst_id)
        if self._batch_task is asyncio.current_task():
            self._batch_task = None

    async def _unsubscribe_all(self) -> None:
        if self._subscribed:
            logger.info(f"{_LOG_PREFIX} Watchlist is empty. Tearing down all.")
        for inst_id in sorted(self._subscribed):
            await self.unsubscribe(inst_id)

    def _cancel_batch(self) -> None:
        task = self._batch_task
        self._batch_task = None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()

    @asynccontextmanager
    async def _instrument_lock(self, inst_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(inst_id, asyncio.Lock())
        self._lock_users[inst_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[inst_id] -= 1
            # Drop the lock once nobody waits on it and the id is gone.
            if not self._lock_users[inst_id]:
                del self._lock_users[inst_id]
                if inst_id not in self._subscribed and inst_id not in self.watchlist:
                    del self._locks[inst_id]

    async def _send(self, op: str, inst_id: str) -> None:
        await self.stream.send_json(
            {"op": op, "args": [{"channel": self.channel, "instId": inst_id}]}
        )
