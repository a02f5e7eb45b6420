from typing import Any, Final

from loguru import logger

from tickerbar.errors import PersistenceError
from tickerbar.storage import KeyValueStore
from tickerbar.utils.time import epoch_seconds, is_within_ttl

# --- Persistence keys ---
WATCHLIST_KEY: Final[str] = "watchlist"
PRICE_CACHE_KEY: Final[str] = "price_cache"
EXCHANGE_RATE_KEY: Final[str] = "exchange_rate"
DISPLAYED_INSTRUMENT_KEY: Final[str] = "displayed_instrument"
REFRESH_INTERVAL_KEY: Final[str] = "refresh_interval"

# --- Validity windows ---
PRICE_CACHE_TTL_S: Final[float] = 30 * 60
EXCHANGE_RATE_TTL_S: Final[float] = 60 * 60


class Preferences:
    """Typed access to the engine's persisted keys.

    Each accessor knows the shape and validity window of its key. Reads of
    malformed or expired values fall back to "nothing stored"; only the
    watchlist raises, because its loss must be surfaced to the user.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def load_watchlist(self) -> list[dict[str, Any]] | None:
        """Returns the raw persisted instrument records, or None if absent.

        Raises:
            PersistenceError: If the stored value is not a list of records.
        """
        raw = await self.store.get(WATCHLIST_KEY)
        if raw is None:
            return None
        if not isinstance(raw, list) or not all(isinstance(r, dict) for r in raw):
            err_msg = f"Stored watchlist has an unexpected shape: {type(raw).__name__}"
            raise PersistenceError(err_msg)
        return raw

    async def save_watchlist(self, records: list[dict[str, Any]]) -> None:
        await self.store.set(WATCHLIST_KEY, records)

    async def load_price_cache(self) -> dict[str, float]:
        """Returns cached prices if they were saved less than 30 minutes ago."""
        try:
            raw = await self.store.get(PRICE_CACHE_KEY)
        except PersistenceError as e:
            logger.warning(f"Price cache unavailable: {e}")
            return {}
        if not isinstance(raw, dict) or not is_within_ttl(
            raw.get("timestamp"), PRICE_CACHE_TTL_S
        ):
            logger.debug("No valid price cache, or the cache has expired.")
            return {}

        prices = raw.get("prices")
        if not isinstance(prices, dict):
            return {}
        result: dict[str, float] = {}
        for inst_id, price in prices.items():
            try:
                result[str(inst_id)] = float(price)
            except (TypeError, ValueError):
                logger.warning(
                    f"Dropping malformed cached price for {inst_id}: {price!r}"
                )
        logger.info(f"Loaded {len(result)} cached prices.")
        return result

    async def save_price_cache(self, prices: dict[str, float]) -> None:
        """Stores a timestamped price map. An empty map leaves the cache alone."""
        if not prices:
            logger.debug("No watchlist prices to cache.")
            return
        await self.store.set(
            PRICE_CACHE_KEY, {"timestamp": epoch_seconds(), "prices": dict(prices)}
        )
        logger.debug(f"Cached {len(prices)} watchlist prices.")

    async def load_exchange_rate(self) -> float | None:
        """Returns the cached USD/CNY rate if it is less than an hour old."""
        raw = await self.store.get(EXCHANGE_RATE_KEY)
        if not isinstance(raw, dict) or not is_within_ttl(
            raw.get("timestamp"), EXCHANGE_RATE_TTL_S
        ):
            return None
        rate = raw.get("rate")
        if isinstance(rate, int | float) and rate > 0:
            return float(rate)
        return None

    async def save_exchange_rate(self, rate: float) -> None:
        await self.store.set(
            EXCHANGE_RATE_KEY, {"rate": rate, "timestamp": epoch_seconds()}
        )

    async def load_displayed_id(self) -> str | None:
        raw = await self.store.get(DISPLAYED_INSTRUMENT_KEY)
        return raw if isinstance(raw, str) and raw else None

    async def save_displayed_id(self, inst_id: str | None) -> None:
        if inst_id is None:
            await self.store.delete(DISPLAYED_INSTRUMENT_KEY)
        else:
            await self.store.set(DISPLAYED_INSTRUMENT_KEY, inst_id)

    async def load_refresh_interval(self) -> float | None:
        raw = await self.store.get(REFRESH_INTERVAL_KEY)
        if isinstance(raw, bool) or not isinstance(raw, int | float) or raw <= 0:
            return None
        return float(raw)

    async def save_refresh_interval(self, seconds: float) -> None:
        await self.store.set(REFRESH_INTERVAL_KEY, seconds)
