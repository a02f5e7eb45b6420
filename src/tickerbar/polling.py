import asyncio

import httpx
from loguru import logger

from tickerbar.catalog import ProductCatalog
from tickerbar.config import PollingSettings
from tickerbar.errors import PersistenceError, RestError
from tickerbar.models import ConnectionState
from tickerbar.preferences import Preferences
from tickerbar.reconciler import UpdateReconciler
from tickerbar.rest import OkxRestClient
from tickerbar.stream import StreamConnection
from tickerbar.watchlist import WatchlistStore

_LOG_PREFIX = "[polling]"

# States in which a tick asks the stream to reconnect. CONNECTING is left
# alone so a tick never interrupts a handshake in progress.
_RECONNECT_STATES = frozenset({ConnectionState.DISCONNECTED, ConnectionState.FAILED})


class PollingFallback:
    """Periodically refreshes watchlist prices over REST.

    Each tick persists the price cache, fetches one bulk ticker listing per
    instrument type in the watchlist and pushes the results through the
    same acceptance path as streamed frames. Instruments missing from the
    bulk listings are fetched one by one. If the stream is down, the tick
    also requests a reconnect.
    """

    def __init__(
        self,
        settings: PollingSettings,
        rest: OkxRestClient,
        watchlist: WatchlistStore,
        catalog: ProductCatalog,
        reconciler: UpdateReconciler,
        stream: StreamConnection,
        preferences: Preferences,
    ) -> None:
        self.settings = settings
        self.rest = rest
        self.watchlist = watchlist
        self.catalog = catalog
        self.reconciler = reconciler
        self.stream = stream
        self.preferences = preferences
        self.interval_s = self.clamp_interval(settings.interval_s)
        self._task: asyncio.Task[None] | None = None
        self._running = asyncio.Event()

    def clamp_interval(self, seconds: float) -> float:
        """Limits an interval to the configured bounds."""
        low, high = self.settings.min_interval_s, self.settings.max_interval_s
        return min(high, max(low, seconds))

    def start(self, immediate: bool = False) -> None:
        """Starts the polling loop in a background task.

        Args:
            immediate: Fetch prices right away instead of after one interval.
        """
        if self._task is None or self._task.done():
            self._running.set()
            self._task = asyncio.create_task(self._run(immediate), name="polling")
            logger.info(f"{_LOG_PREFIX} Started ({self.interval_s:.0f}s interval).")
        else:
            logger.warning(f"{_LOG_PREFIX} Polling is already running.")

    async def stop(self) -> None:
        """Stops the polling loop gracefully."""
        if not self._running.is_set():
            logger.warning(f"{_LOG_PREFIX} Polling is not running.")
            return

        logger.info(f"{_LOG_PREFIX} Stopping...")
        self._running.clear()
        await self._cancel_task()
        logger.info(f"{_LOG_PREFIX} Stopped.")

    async def set_interval(self, seconds: float) -> float:
        """Changes the polling interval and refreshes immediately.

        The value is clamped, persisted, and the timer is re-armed so the
        next periodic tick is one full new interval away.

        Returns:
            The interval actually applied.
        """
        interval = self.clamp_interval(seconds)
        if interval != seconds:
            logger.warning(
                f"{_LOG_PREFIX} Interval {seconds}s out of bounds. Using {interval}s."
            )
        self.interval_s = interval
        try:
            await self.preferences.save_refresh_interval(interval)
        except PersistenceError as e:
            logger.error(f"{_LOG_PREFIX} Could not persist the interval: {e}")

        if self._running.is_set():
            await self._cancel_task()
            self._task = asyncio.create_task(self._run(immediate=False), name="polling")
        await self.refresh_prices()
        return interval

    async def tick(self) -> None:
        """Runs one polling cycle."""
        await self.save_price_cache()
        await self.refresh_prices()
        if self.stream.state in _RECONNECT_STATES:
            logger.info(
                f"{_LOG_PREFIX} Stream is {self.stream.state.value}. Reconnecting."
            )
            await self.stream.reconnect()

    async def save_price_cache(self) -> None:
        prices = self.catalog.prices(self.watchlist.ids)
        try:
            await self.preferences.save_price_cache(prices)
        except PersistenceError as e:
            logger.error(f"{_LOG_PREFIX} Could not save the price cache: {e}")

    async def refresh_prices(self) -> int:
        """Fetches REST tickers for the watchlist and applies them.

        Returns:
            The number of accepted price changes.
        """
        inst_ids = self.watchlist.ids
        if not inst_ids:
            logger.debug(f"{_LOG_PREFIX} Watchlist is empty. Nothing to refresh.")
            return 0

        wanted = set(inst_ids)
        found: set[str] = set()
        accepted = 0
        for instrument_type in self.watchlist.instrument_types():
            try:
                tickers = await self.rest.fetch_tickers(instrument_type)
            except (httpx.HTTPError, RestError) as e:
                logger.warning(
                    f"{_LOG_PREFIX} Fetching {instrument_type.value} tickers "
                    f"failed: {e}"
                )
                continue
            relevant = [t for t in tickers if t.get("instId") in wanted]
            found.update(t["instId"] for t in relevant)
            accepted += len(self.reconciler.ingest(relevant, allowed_ids=wanted))

        for inst_id in inst_ids:
            if inst_id in found:
                continue
            try:
                ticker = await self.rest.fetch_ticker(inst_id)
            except (httpx.HTTPError, RestError) as e:
                logger.warning(f"{_LOG_PREFIX} Fetching ticker {inst_id} failed: {e}")
                continue
            if ticker is None:
                logger.debug(f"{_LOG_PREFIX} No ticker available for {inst_id}.")
                continue
            accepted += len(self.reconciler.ingest([ticker], allowed_ids=wanted))

        logger.debug(f"{_LOG_PREFIX} Refresh accepted {accepted} price changes.")
        return accepted

    async def _run(self, immediate: bool) -> None:
        if immediate:
            await self.refresh_prices()
        while self._running.is_set():
            await asyncio.sleep(self.interval_s)
            try:
                await self.tick()
            except Exception:
                logger.exception(f"{_LOG_PREFIX} Unexpected error during a tick.")

    async def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass  # Expected cancellation.
