from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from tickerbar.catalog import ProductCatalog
from tickerbar.errors import PersistenceError, ReorderError
from tickerbar.events import ErrorEvent, EventBus, WatchlistChanged
from tickerbar.models import Instrument, InstrumentType, MarketState
from tickerbar.preferences import Preferences

DEFAULT_WATCHLIST: tuple[str, ...] = ("BTC-USDT", "ETH-USDT")


class SubscriptionRequester(Protocol):
    """What the watchlist needs from the subscription layer."""

    async def subscribe(self, inst_id: str) -> bool: ...

    async def unsubscribe(self, inst_id: str) -> bool: ...


@dataclass(frozen=True)
class TypeCorrection:
    """A stored or caller-supplied instrument type that disagreed with its id."""

    inst_id: str
    stored: InstrumentType
    derived: InstrumentType


class WatchlistStore:
    """The ordered, persisted list of favourite instruments.

    The store is the source of truth for what must be streamed. Every
    mutation is persisted before the subscription layer is asked to act on
    it, so the "still favourited" check in `SubscriptionManager.unsubscribe`
    always sees the new list.
    """

    def __init__(
        self,
        preferences: Preferences,
        catalog: ProductCatalog,
        events: EventBus,
        default_ids: Sequence[str] = DEFAULT_WATCHLIST,
    ) -> None:
        self.preferences = preferences
        self.catalog = catalog
        self.events = events
        self.default_ids = tuple(default_ids)
        # Insertion-ordered; keys double as the uniqueness check.
        self._items: dict[str, Instrument] = {}
        self._corrections: list[TypeCorrection] = []
        self._subscriber: SubscriptionRequester | None = None

    def bind(self, subscriber: SubscriptionRequester) -> None:
        """Connects the store to the component that (un)subscribes instruments."""
        self._subscriber = subscriber

    def __contains__(self, inst_id: object) -> bool:
        return inst_id in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._items))

    def __len__(self) -> int:
        return len(self._items)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._items)

    @property
    def instruments(self) -> list[Instrument]:
        return list(self._items.values())

    @property
    def corrections(self) -> list[TypeCorrection]:
        """Every type repair made since the store was created."""
        return list(self._corrections)

    def instrument_types(self) -> list[InstrumentType]:
        """Returns the distinct instrument types present, in watchlist order."""
        return list(dict.fromkeys(i.instrument_type for i in self._items.values()))

    async def load(self) -> None:
        """Loads the persisted watchlist, repairing it where needed.

        Each stored type is re-derived from its id. Invalid and duplicate
        records are skipped. If anything was repaired, or the list had to be
        seeded with the default pair, the result is persisted once.
        """
        try:
            records = await self.preferences.load_watchlist()
        except PersistenceError as e:
            logger.error(f"Could not load the watchlist: {e}")
            self.events.publish(ErrorEvent(message=f"Watchlist unavailable: {e}"))
            records = None

        loaded: dict[str, Instrument] = {}
        repaired = False
        for record in records or []:
            try:
                instrument = Instrument.from_record(record)
            except ValueError as e:
                logger.warning(f"Skipping invalid watchlist record {record}: {e}")
                repaired = True
                continue
            if instrument.inst_id in loaded:
                logger.warning(f"Skipping duplicate entry {instrument.inst_id}.")
                repaired = True
                continue
            corrected = self._resolve_type(instrument)
            repaired = repaired or corrected is not instrument
            loaded[corrected.inst_id] = corrected

        if not loaded:
            logger.info(f"Watchlist is empty. Seeding with {list(self.default_ids)}.")
            loaded = {i: Instrument.from_id(i) for i in self.default_ids}
            repaired = True

        self._items = loaded
        for instrument in loaded.values():
            self.catalog.register(instrument)
        logger.info(f"Loaded watchlist: {list(self._items)}")

        if repaired:
            await self._persist()
        self._publish_changed()

    async def add(
        self, instrument: Instrument, state: MarketState | None = None
    ) -> bool:
        """Adds an instrument to the end of the watchlist.

        The instrument's type is always re-derived from its id; a mismatched
        caller-supplied type is recorded as a correction.

        Args:
            instrument: The instrument to favourite.
            state: A known market snapshot, copied into the catalog for
                immediate display if the catalog has no price yet.

        Returns:
            True if the instrument was added, False if it was already present.
        """
        if instrument.inst_id in self._items:
            logger.debug(f"{instrument.inst_id} is already in the watchlist.")
            return False

        resolved = self._resolve_type(instrument)
        self.catalog.register(resolved)
        if state is not None:
            self.catalog.seed(resolved.inst_id, state)
        self._items[resolved.inst_id] = resolved
        logger.info(f"Added {resolved.inst_id} to the watchlist.")

        await self._persist()
        self._publish_changed()
        if self._subscriber is not None:
            await self._subscriber.subscribe(resolved.inst_id)
        return True

    async def remove(self, inst_id: str) -> bool:
        """Removes an instrument, then asks for it to be unsubscribed.

        Returns:
            True if the instrument was present.
        """
        if self._items.pop(inst_id, None) is None:
            return False
        logger.info(f"Removed {inst_id} from the watchlist.")

        await self._persist()
        self._publish_changed()
        if self._subscriber is not None:
            await self._subscriber.unsubscribe(inst_id)
        return True

    async def reorder(self, new_order: Iterable[str]) -> None:
        """Replaces the order of the watchlist.

        Raises:
            ReorderError: If `new_order` is not a permutation of the current
                ids. The store is left unchanged.
        """
        order = list(new_order)
        if len(order) != len(self._items) or set(order) != set(self._items):
            err_msg = (
                f"New order {order} is not a permutation of the watchlist "
                f"{list(self._items)}"
            )
            raise ReorderError(err_msg)

        self._items = {inst_id: self._items[inst_id] for inst_id in order}
        logger.debug(f"Reordered watchlist: {order}")
        await self._persist()
        self._publish_changed()

    def _resolve_type(self, instrument: Instrument) -> Instrument:
        if instrument.has_consistent_type:
            return instrument
        corrected = instrument.with_derived_type()
        self._corrections.append(
            TypeCorrection(
                inst_id=instrument.inst_id,
                stored=instrument.instrument_type,
                derived=corrected.instrument_type,
            )
        )
        logger.warning(
            f"Corrected type of {instrument.inst_id}: "
            f"{instrument.instrument_type.value} -> {corrected.instrument_type.value}"
        )
        return corrected

    async def _persist(self) -> None:
        records = [i.to_record() for i in self._items.values()]
        try:
            await self.preferences.save_watchlist(records)
        except PersistenceError as e:
            logger.error(f"Failed to persist the watchlist: {e}")
            self.events.publish(ErrorEvent(message=f"Could not save watchlist: {e}"))

    def _publish_changed(self) -> None:
        self.events.publish(WatchlistChanged(inst_ids=self.ids))
