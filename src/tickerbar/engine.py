import time
from collections.abc import Callable

import httpx
import websockets
from loguru import logger

from tickerbar.catalog import ProductCatalog
from tickerbar.config import Settings
from tickerbar.currency import ExchangeRateService
from tickerbar.errors import PersistenceError
from tickerbar.events import ErrorEvent, EventBus, PricesUpdated
from tickerbar.models import Instrument, MarketState
from tickerbar.notifications import (
    LogNotificationSink,
    NotificationDispatcher,
    NotificationSink,
)
from tickerbar.polling import PollingFallback
from tickerbar.preferences import Preferences
from tickerbar.reconciler import UpdateReconciler
from tickerbar.rest import OkxRestClient
from tickerbar.storage import KeyValueStore
from tickerbar.stream import ConnectFactory, StreamConnection
from tickerbar.subscriptions import SubscriptionManager
from tickerbar.watchlist import WatchlistStore


class PriceSyncEngine:
    """Builds and wires every component of the price synchronization core.

    All collaborators are constructed here and handed to each other
    explicitly; nothing is reachable through module-level state, so tests
    can run any number of isolated engines side by side.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        http_client: httpx.AsyncClient,
        connect_factory: ConnectFactory = websockets.connect,
        sink: NotificationSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initializes the engine without starting any I/O.

        Args:
            settings: The application settings.
            store: The key-value store backing all persisted state.
            http_client: A shared httpx.AsyncClient for REST calls.
            connect_factory: Opens the WebSocket transport.
            sink: Where notifications are delivered. Defaults to the log.
            clock: Monotonic clock used by the update throttle.
        """
        self.settings = settings
        self.events = EventBus()
        self.catalog = ProductCatalog()
        self.preferences = Preferences(store)
        self.watchlist = WatchlistStore(
            self.preferences,
            self.catalog,
            self.events,
            default_ids=settings.storage.default_watchlist,
        )
        self.rest = OkxRestClient(http_client, settings.stream.rest_url)
        self.stream = StreamConnection(
            settings.stream,
            on_message=self._on_frame,
            events=self.events,
            connect_factory=connect_factory,
        )
        self.subscriptions = SubscriptionManager(
            self.stream, self.watchlist, settings.subscriptions
        )
        self.reconciler = UpdateReconciler(
            self.catalog,
            self.subscriptions,
            self.events,
            settings.reconciler,
            settings.notifications,
            clock=clock,
        )
        self.polling = PollingFallback(
            settings.polling,
            self.rest,
            self.watchlist,
            self.catalog,
            self.reconciler,
            self.stream,
            self.preferences,
        )
        self.exchange_rates = ExchangeRateService(
            self.rest,
            self.preferences,
            self.events,
            refresh_interval_s=settings.polling.exchange_rate_refresh_s,
        )
        self.notifier = NotificationDispatcher(
            self.events, self.catalog, sink or LogNotificationSink()
        )

        self.watchlist.bind(self.subscriptions)
        self.stream.add_ready_callback(self.subscriptions.restore)
        self.stream.add_reset_callback(self.subscriptions.reset)
        self._started = False

    @property
    def displayed_id(self) -> str | None:
        return self.reconciler.displayed_id

    async def start(self) -> None:
        """Restores persisted state, then starts streaming and polling."""
        if self._started:
            logger.warning("Engine is already running.")
            return
        logger.info("Starting price sync engine...")
        await self.watchlist.load()
        await self._restore_displayed_id()
        await self._restore_refresh_interval()
        await self._restore_price_cache()
        await self.exchange_rates.load()

        # Set before any background task exists; stop() relies on it.
        self._started = True
        try:
            self.notifier.start()
            self.exchange_rates.start()
            await self.subscriptions.reconcile()
            await self.stream.connect()
            self.polling.start(immediate=True)
        except Exception:
            logger.exception("Engine failed to start. Rolling back.")
            await self.stop()
            raise
        logger.success("Price sync engine started.")

    async def stop(self) -> None:
        """Stops all background work and saves the price cache."""
        if not self._started:
            return
        logger.info("Stopping price sync engine...")
        self._started = False
        await self.polling.stop()
        await self.exchange_rates.stop()
        await self.stream.close()
        self.reconciler.flush()
        await self.polling.save_price_cache()
        await self.notifier.stop()
        logger.success("Price sync engine stopped.")

    async def add_instrument(
        self, instrument: Instrument | str, state: MarketState | None = None
    ) -> bool:
        """Favourites an instrument given as an Instrument or an exchange id."""
        if isinstance(instrument, str):
            instrument = Instrument.from_id(instrument)
        added = await self.watchlist.add(instrument, state)
        if added and self.displayed_id is None:
            await self.set_displayed(instrument.inst_id)
        return added

    async def remove_instrument(self, inst_id: str) -> bool:
        """Removes a favourite, moving the display to the first remaining one."""
        removed = await self.watchlist.remove(inst_id)
        if removed and self.displayed_id == inst_id:
            remaining = self.watchlist.ids
            await self.set_displayed(remaining[0] if remaining else None)
        return removed

    async def reorder(self, new_order: list[str]) -> None:
        await self.watchlist.reorder(new_order)

    async def set_displayed(self, inst_id: str | None) -> None:
        """Selects the instrument whose updates bypass throttling.

        Raises:
            ValueError: If `inst_id` is not in the watchlist.
        """
        if inst_id is not None and inst_id not in self.watchlist:
            err_msg = f"{inst_id} is not in the watchlist"
            raise ValueError(err_msg)
        self.reconciler.displayed_id = inst_id
        logger.info(f"Displayed instrument: {inst_id}")
        try:
            await self.preferences.save_displayed_id(inst_id)
        except PersistenceError as e:
            logger.error(f"Could not persist the displayed instrument: {e}")
            self.events.publish(ErrorEvent(message=f"Could not save selection: {e}"))

    async def set_refresh_interval(self, seconds: float) -> float:
        return await self.polling.set_interval(seconds)

    def snapshot(self) -> list[tuple[Instrument, MarketState]]:
        """Returns copies of the watchlist's instruments and market states."""
        rows: list[tuple[Instrument, MarketState]] = []
        for instrument in self.watchlist.instruments:
            state = self.catalog.snapshot(instrument.inst_id)
            rows.append((instrument, state if state is not None else MarketState()))
        return rows

    def _on_frame(self, raw: str | bytes) -> None:
        self.reconciler.handle_frame(raw)

    async def _restore_displayed_id(self) -> None:
        try:
            stored = await self.preferences.load_displayed_id()
        except PersistenceError as e:
            logger.warning(f"Displayed instrument unavailable: {e}")
            stored = None
        if stored is None or stored not in self.watchlist:
            ids = self.watchlist.ids
            stored = ids[0] if ids else None
        self.reconciler.displayed_id = stored
        logger.info(f"Displayed instrument: {stored}")

    async def _restore_refresh_interval(self) -> None:
        try:
            stored = await self.preferences.load_refresh_interval()
        except PersistenceError as e:
            logger.warning(f"Refresh interval unavailable: {e}")
            return
        if stored is not None:
            self.polling.interval_s = self.polling.clamp_interval(stored)

    async def _restore_price_cache(self) -> None:
        prices = await self.preferences.load_price_cache()
        seeded = frozenset(
            inst_id
            for inst_id, price in prices.items()
            if inst_id in self.watchlist and self.catalog.seed_price(inst_id, price)
        )
        if seeded:
            logger.info(f"Seeded {len(seeded)} prices from the cache.")
            self.events.publish(PricesUpdated(inst_ids=seeded))
