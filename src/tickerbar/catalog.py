from collections.abc import Iterable
from dataclasses import dataclass, replace

from loguru import logger

from tickerbar.models import Instrument, MarketState


@dataclass(frozen=True)
class PriceChange:
    """The result of an accepted price update."""

    inst_id: str
    old_price: float
    new_price: float


class ProductCatalog:
    """Owns the instrument identities and their mutable market state.

    Entries are keyed by instrument id so updates are direct dictionary
    mutations. Only the catalog mutates MarketState; readers that live outside
    the event loop's current step should take a `snapshot`.
    """

    def __init__(self) -> None:
        self._instruments: dict[str, Instrument] = {}
        self._states: dict[str, MarketState] = {}

    def __contains__(self, inst_id: object) -> bool:
        return inst_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def register(self, instrument: Instrument) -> None:
        """Records an instrument identity, creating an empty state if needed."""
        self._instruments[instrument.inst_id] = instrument
        self._states.setdefault(instrument.inst_id, MarketState())

    def instrument(self, inst_id: str) -> Instrument | None:
        return self._instruments.get(inst_id)

    def state(self, inst_id: str) -> MarketState | None:
        """Returns the live state object. Callers must not mutate it."""
        return self._states.get(inst_id)

    def snapshot(self, inst_id: str) -> MarketState | None:
        """Returns an independent copy of an instrument's state."""
        state = self._states.get(inst_id)
        return replace(state) if state is not None else None

    def seed(self, inst_id: str, state: MarketState) -> bool:
        """Copies a known snapshot into the catalog if it has no price yet.

        Returns:
            True if the snapshot was applied.
        """
        current = self._states.get(inst_id)
        if current is not None and current.current_price > 0:
            return False
        self._states[inst_id] = replace(state)
        return True

    def seed_price(self, inst_id: str, price: float) -> bool:
        """Sets a starting price with no direction (previous == current).

        Used for cached prices on startup; existing live prices win.
        """
        if price <= 0:
            return False
        state = self._states.setdefault(inst_id, MarketState())
        if state.current_price > 0:
            return False
        state.current_price = price
        state.previous_price = price
        return True

    def apply_price(self, inst_id: str, new_price: float) -> PriceChange | None:
        """Applies a price if it differs from the stored one by more than epsilon.

        On acceptance the current price is rotated into `previous_price`.

        Args:
            inst_id: The instrument to update.
            new_price: The candidate price.

        Returns:
            The accepted change, or None if the price was filtered out.
        """
        state = self._states.setdefault(inst_id, MarketState())
        if not state.differs_from(new_price):
            return None
        old_price = state.current_price
        state.rotate(new_price)
        return PriceChange(inst_id=inst_id, old_price=old_price, new_price=new_price)

    def apply_stats(
        self,
        inst_id: str,
        high: float | None,
        low: float | None,
        change_percent: float,
    ) -> None:
        """Stores 24h statistics. A missing high or low keeps the stored one."""
        state = self._states.get(inst_id)
        if state is None:
            logger.debug(f"Ignoring 24h stats for unknown instrument {inst_id}.")
            return
        if high is not None:
            state.high_24h = high
        if low is not None:
            state.low_24h = low
        state.change_percent_24h = change_percent

    def apply_open_prices(self, inst_id: str, utc0: float, utc8: float) -> None:
        """Stores start-of-day prices. Zero values leave the stored ones intact."""
        state = self._states.get(inst_id)
        if state is None:
            return
        if utc0 > 0:
            state.open_price_utc0 = utc0
        if utc8 > 0:
            state.open_price_utc8 = utc8

    def apply_timestamp(self, inst_id: str, timestamp: str) -> None:
        state = self._states.get(inst_id)
        if state is not None:
            state.exchange_timestamp = timestamp

    def prices(self, inst_ids: Iterable[str]) -> dict[str, float]:
        """Returns the positive current prices of the given instruments."""
        result: dict[str, float] = {}
        for inst_id in inst_ids:
            state = self._states.get(inst_id)
            if state is not None and state.current_price > 0:
                result[inst_id] = state.current_price
        return result
