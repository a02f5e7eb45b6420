from dataclasses import dataclass
from enum import Enum
from typing import Any, Final

# --- Constants ---

# Minimum absolute difference for a new price to count as a change.
PRICE_EPSILON: Final[float] = 1e-6


class InstrumentType(str, Enum):
    """Instrument classification. Values are the exchange's `instType` strings."""

    SPOT = "SPOT"
    PERPETUAL = "SWAP"
    FUTURES = "FUTURES"
    OPTION = "OPTION"


# Id fragments that identify derivative instruments, checked in order.
_TYPE_MARKERS: Final[tuple[tuple[str, InstrumentType], ...]] = (
    ("-SWAP", InstrumentType.PERPETUAL),
    ("-FUTURES", InstrumentType.FUTURES),
    ("-OPTION", InstrumentType.OPTION),
)


class PriceDirection(str, Enum):
    """Direction of the most recent accepted price change."""

    UP = "up"
    DOWN = "down"
    UNCHANGED = "unchanged"


class ChangeMode(str, Enum):
    """How the percentage change of an instrument is calculated."""

    HOURS_24 = "24h"
    TODAY_UTC = "today_utc"
    TODAY_UTC8 = "today_cn"


class ConnectionState(str, Enum):
    """Lifecycle state of the streaming connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def derive_instrument_type(inst_id: str) -> InstrumentType:
    """Derives the authoritative instrument type from an exchange symbol.

    Args:
        inst_id: The exchange symbol (e.g., "BTC-USDT-SWAP").

    Returns:
        PERPETUAL, FUTURES or OPTION when the id carries the matching marker,
        otherwise SPOT.
    """
    for marker, instrument_type in _TYPE_MARKERS:
        if marker in inst_id:
            return instrument_type
    return InstrumentType.SPOT


@dataclass(frozen=True)
class Instrument:
    """Immutable identity of a tradable instrument."""

    inst_id: str
    base_currency: str
    quote_currency: str
    instrument_type: InstrumentType = InstrumentType.SPOT

    @classmethod
    def from_id(
        cls, inst_id: str, instrument_type: InstrumentType | None = None
    ) -> "Instrument":
        """Builds an Instrument by splitting a 'BASE-QUOTE[-SUFFIX]' symbol.

        Args:
            inst_id: The exchange symbol.
            instrument_type: An explicit type. When omitted, the type is
                derived from the id.

        Raises:
            ValueError: If the id does not contain a base and a quote currency.
        """
        parts = inst_id.split("-")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            err_msg = f"Invalid instrument id: '{inst_id}'"
            raise ValueError(err_msg)
        return cls(
            inst_id=inst_id,
            base_currency=parts[0],
            quote_currency=parts[1],
            instrument_type=instrument_type or derive_instrument_type(inst_id),
        )

    @property
    def has_consistent_type(self) -> bool:
        """True if the stored type matches the one derived from the id."""
        return self.instrument_type is derive_instrument_type(self.inst_id)

    def with_derived_type(self) -> "Instrument":
        """Returns a copy whose type is re-derived from the id."""
        if self.has_consistent_type:
            return self
        return Instrument(
            inst_id=self.inst_id,
            base_currency=self.base_currency,
            quote_currency=self.quote_currency,
            instrument_type=derive_instrument_type(self.inst_id),
        )

    def to_record(self) -> dict[str, str]:
        """Serializes the instrument for persistence."""
        return {
            "instId": self.inst_id,
            "baseCcy": self.base_currency,
            "quoteCcy": self.quote_currency,
            "instType": self.instrument_type.value,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Instrument":
        """Deserializes a persisted instrument without repairing its type.

        Raises:
            ValueError: If the record is missing the id or has an unknown type.
        """
        inst_id = record.get("instId")
        if not isinstance(inst_id, str):
            err_msg = f"Instrument record without an id: {record}"
            raise ValueError(err_msg)
        parsed = cls.from_id(inst_id)
        raw_type = record.get("instType")
        return cls(
            inst_id=inst_id,
            base_currency=str(record.get("baseCcy") or parsed.base_currency),
            quote_currency=str(record.get("quoteCcy") or parsed.quote_currency),
            instrument_type=(
                InstrumentType(raw_type) if raw_type else parsed.instrument_type
            ),
        )


@dataclass
class MarketState:
    """Mutable market snapshot of one instrument, owned by the ProductCatalog."""

    current_price: float = 0.0
    previous_price: float = 0.0
    high_24h: float = 0.0
    low_24h: float = 0.0
    change_percent_24h: float = 0.0
    open_price_utc0: float = 0.0
    open_price_utc8: float = 0.0
    exchange_timestamp: str = ""

    @property
    def direction(self) -> PriceDirection:
        if self.current_price > self.previous_price:
            return PriceDirection.UP
        if self.current_price < self.previous_price:
            return PriceDirection.DOWN
        return PriceDirection.UNCHANGED

    def differs_from(self, price: float) -> bool:
        """True if `price` is far enough from the current price to be applied."""
        return abs(self.current_price - price) > PRICE_EPSILON

    def rotate(self, new_price: float) -> None:
        """Moves the current price into `previous_price` and stores the new one."""
        self.previous_price = self.current_price
        self.current_price = new_price

    def change_percent(self, mode: ChangeMode) -> float:
        """Returns the percentage change for the given calculation mode.

        The intraday modes compare against the UTC+0 or UTC+8 start-of-day
        price and return 0 while that price is unknown.
        """
        if mode is ChangeMode.HOURS_24:
            return self.change_percent_24h
        reference = (
            self.open_price_utc0
            if mode is ChangeMode.TODAY_UTC
            else self.open_price_utc8
        )
        if reference <= 0:
            return 0.0
        return (self.current_price - reference) / reference * 100.0
