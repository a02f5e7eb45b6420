import argparse
import asyncio
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

import httpx
from loguru import logger

from tickerbar.config import CONFIG_FILE, Settings, load_config
from tickerbar.currency import format_percent
from tickerbar.engine import PriceSyncEngine
from tickerbar.events import (
    ConnectionStatusChanged,
    Event,
    ExchangeRateUpdated,
    PricesUpdated,
    WatchlistChanged,
)
from tickerbar.logging_config import setup_logging
from tickerbar.storage import JsonFileStore


class ConsoleStatusView:
    """A headless stand-in for the menu bar: logs what the menu bar would show."""

    def __init__(self, engine: PriceSyncEngine, currency: str = "USD") -> None:
        self.engine = engine
        self.currency = currency
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=500)
        self._sub_id: int | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._sub_id = self.engine.events.subscribe(Event, self._queue)
        self._task = asyncio.create_task(self._update_loop(), name="console-view")

    async def stop(self) -> None:
        if self._sub_id is not None:
            self.engine.events.unsubscribe(self._sub_id)
            self._sub_id = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass  # Expected cancellation.
            finally:
                self._task = None

    def render(self, event: Event) -> str | None:
        """Returns the status line for an event, or None if nothing changes."""
        if isinstance(event, PricesUpdated):
            displayed = self.engine.displayed_id
            if displayed is None or displayed not in event.inst_ids:
                return None
            state = self.engine.catalog.snapshot(displayed)
            if state is None:
                return None
            rates = self.engine.exchange_rates
            price = rates.format(state.current_price, self.currency)
            mode = self.engine.settings.notifications.mode
            return (
                f"{displayed} {price} {format_percent(state.change_percent(mode))} "
                f"({state.direction.value})"
            )
        if isinstance(event, ConnectionStatusChanged):
            return f"Connection {event.state.value} (retries: {event.retry_count})"
        if isinstance(event, WatchlistChanged):
            return f"Watchlist: {', '.join(event.inst_ids)}"
        if isinstance(event, ExchangeRateUpdated):
            return f"USD/CNY rate: {event.usd_cny:.4f}"
        return None

    async def _update_loop(self) -> None:
        while True:
            event = await self._queue.get()
            line = self.render(event)
            if line is not None:
                logger.info(f"[status] {line}")
            self._queue.task_done()


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tickerbar", description="Live cryptocurrency prices for a watchlist."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_FILE,
        help=f"Path to the TOML configuration file (default: {CONFIG_FILE}).",
    )
    return parser.parse_args(argv)


async def run(settings: Settings, stop_event: asyncio.Event) -> None:
    """Runs the engine until `stop_event` is set."""
    store = JsonFileStore(Path(settings.storage.state_file))
    async with httpx.AsyncClient(
        http2=True, timeout=settings.polling.request_timeout_s, follow_redirects=True
    ) as http_client:
        engine = PriceSyncEngine(settings, store, http_client)
        view = ConsoleStatusView(engine, currency=settings.storage.display_currency)
        view.start()
        try:
            await engine.start()
            await stop_event.wait()
        finally:
            await engine.stop()
            await view.stop()


async def main_async(argv: Sequence[str] | None = None) -> int:
    """The main async entry point for the application."""
    args = parse_args(argv)
    settings = load_config(args.config)
    log_dir = (
        Path(settings.general.log_directory)
        if settings.general.log_directory
        else None
    )
    setup_logging(
        console_level=settings.general.log_level_console,
        file_level=settings.general.log_level_file,
        log_dir=log_dir,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops.
            logger.debug(f"Cannot install a handler for {sig.name}.")

    await run(settings, stop_event)
    return 0


def main() -> None:
    """The synchronous entry point for the application."""
    try:
        exit_code = asyncio.run(main_async())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception:
        logger.exception("An unhandled exception reached the top-level entry point.")
        sys.exit(1)


if __name__ == "__main__":
    main()
