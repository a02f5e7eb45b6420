import asyncio

import httpx
from loguru import logger

from tickerbar.errors import PersistenceError, RestError
from tickerbar.events import EventBus, ExchangeRateUpdated
from tickerbar.preferences import Preferences
from tickerbar.rest import OkxRestClient

# --- Constants ---
DEFAULT_USD_CNY_RATE = 7.16
CURRENCY_SYMBOLS = {"USD": "$", "CNY": "¥"}
MIN_DECIMALS = 2
MAX_DECIMALS = 6
PLACEHOLDER_PRICE = "Loading..."


def effective_decimals(
    value: float, minimum: int = MIN_DECIMALS, maximum: int = MAX_DECIMALS
) -> int:
    """Returns how many decimals are needed to show a value's significant digits."""
    fraction = f"{abs(value):.10f}".split(".")[1]
    significant = len(fraction.rstrip("0"))
    return max(minimum, min(significant, maximum))


def format_price(
    price: float, currency: str = "USD", usd_cny_rate: float = DEFAULT_USD_CNY_RATE
) -> str:
    """Formats a USD-quoted price for display.

    CNY prices are converted with `usd_cny_rate`. The number keeps between 2
    and 6 decimals depending on its significant digits and uses thousands
    separators. Unknown currencies are shown without a symbol.

    Examples:
        >>> format_price(30000.5)
        '$30,000.50'
        >>> format_price(0.000123, "CNY", 7.0)
        '¥0.000861'
    """
    if price == 0:
        return PLACEHOLDER_PRICE
    value = price * usd_cny_rate if currency == "CNY" else price
    decimals = effective_decimals(value)
    return f"{CURRENCY_SYMBOLS.get(currency, '')}{value:,.{decimals}f}"


def format_percent(percent: float) -> str:
    """Formats a percentage with an explicit sign, e.g. '+1.25%'."""
    sign = "+" if percent >= 0 else "-"
    return f"{sign}{abs(percent):.2f}%"


class ExchangeRateService:
    """Keeps the USD/CNY rate used for secondary currency display.

    The rate is not part of price correctness: any failure leaves the last
    known rate (or the built-in default) in place.
    """

    def __init__(
        self,
        rest: OkxRestClient,
        preferences: Preferences,
        events: EventBus,
        refresh_interval_s: float = 2 * 60 * 60,
    ) -> None:
        self.rest = rest
        self.preferences = preferences
        self.events = events
        self.refresh_interval_s = refresh_interval_s
        self.usd_cny = DEFAULT_USD_CNY_RATE
        self._task: asyncio.Task[None] | None = None
        self._running = asyncio.Event()

    async def load(self) -> None:
        """Uses the cached rate if it is fresh, otherwise fetches a new one."""
        try:
            cached = await self.preferences.load_exchange_rate()
        except PersistenceError as e:
            logger.warning(f"Cached exchange rate unavailable: {e}")
            cached = None
        if cached is not None:
            self.usd_cny = cached
            logger.info(f"Using cached USD/CNY rate {cached:.4f}.")
            return
        await self.refresh()

    async def refresh(self) -> bool:
        """Fetches and caches the current rate. Returns True on success."""
        try:
            rate = await self.rest.fetch_usd_cny_rate()
        except (httpx.HTTPError, RestError) as e:
            logger.warning(
                f"Could not fetch the USD/CNY rate, keeping {self.usd_cny}: {e}"
            )
            return False

        self.usd_cny = rate
        logger.info(f"Updated USD/CNY rate to {rate:.4f}.")
        try:
            await self.preferences.save_exchange_rate(rate)
        except PersistenceError as e:
            logger.error(f"Could not cache the exchange rate: {e}")
        self.events.publish(ExchangeRateUpdated(usd_cny=rate))
        return True

    def start(self) -> None:
        """Starts the periodic refresh loop in a background task."""
        if self._task is None or self._task.done():
            self._running.set()
            self._task = asyncio.create_task(self._run(), name="exchange-rate")
        else:
            logger.warning("Exchange rate refresh is already running.")

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self._running.clear()
        if self._task:
            try:
                self._task.cancel()
                await self._task
            except asyncio.CancelledError:
                pass  # Expected cancellation.
            finally:
                self._task = None

    def convert(self, price_usd: float, currency: str) -> float:
        return price_usd * self.usd_cny if currency == "CNY" else price_usd

    def format(self, price_usd: float, currency: str) -> str:
        return format_price(price_usd, currency, self.usd_cny)

    async def _run(self) -> None:
        while self._running.is_set():
            await asyncio.sleep(self.refresh_interval_s)
            await self.refresh()
