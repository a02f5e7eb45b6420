import pytest

from tickerbar.models import (
    ChangeMode,
    Instrument,
    InstrumentType,
    MarketState,
    PriceDirection,
    derive_instrument_type,
)


@pytest.mark.parametrize(
    ("inst_id", "expected"),
    [
        ("BTC-USDT", InstrumentType.SPOT),
        ("BTC-USDT-SWAP", InstrumentType.PERPETUAL),
        ("BTC-USD-FUTURES", InstrumentType.FUTURES),
        ("BTC-USD-OPTION", InstrumentType.OPTION),
        ("BTC-USD-240628", InstrumentType.SPOT),
    ],
)
def test_derive_instrument_type(inst_id: str, expected: InstrumentType) -> None:
    """Tests that the type is derived from the id's suffix markers."""
    assert derive_instrument_type(inst_id) is expected


def test_instrument_from_id() -> None:
    """Tests splitting an exchange symbol into its currencies and type."""
    instrument = Instrument.from_id("ETH-USDT-SWAP")
    assert instrument.base_currency == "ETH"
    assert instrument.quote_currency == "USDT"
    assert instrument.instrument_type is InstrumentType.PERPETUAL
    assert instrument.has_consistent_type


@pytest.mark.parametrize("inst_id", ["BTC", "", "-USDT", "BTC-"])
def test_instrument_from_invalid_id(inst_id: str) -> None:
    """Tests that ids without a base and a quote currency are rejected."""
    with pytest.raises(ValueError, match="Invalid instrument id"):
        Instrument.from_id(inst_id)


def test_record_round_trip_keeps_stored_type() -> None:
    """Tests that deserialization does not silently repair a stored type."""
    wrong = Instrument("BTC-USDT-SWAP", "BTC", "USDT", InstrumentType.SPOT)
    record = wrong.to_record()
    assert record == {
        "instId": "BTC-USDT-SWAP",
        "baseCcy": "BTC",
        "quoteCcy": "USDT",
        "instType": "SPOT",
    }

    restored = Instrument.from_record(record)
    assert restored == wrong
    assert not restored.has_consistent_type
    assert restored.with_derived_type().instrument_type is InstrumentType.PERPETUAL


def test_from_record_fills_missing_fields() -> None:
    """Tests that sparse records fall back to values parsed from the id."""
    restored = Instrument.from_record({"instId": "SOL-USDT"})
    assert restored == Instrument("SOL-USDT", "SOL", "USDT", InstrumentType.SPOT)


@pytest.mark.parametrize(
    "record",
    [{}, {"instId": 42}, {"instId": "BTC-USDT", "instType": "MARGIN"}],
)
def test_from_record_rejects_invalid_records(record: dict) -> None:
    """Tests that records without an id or with an unknown type raise."""
    with pytest.raises(ValueError):
        Instrument.from_record(record)


def test_market_state_direction() -> None:
    """Tests that the direction follows the last rotation."""
    state = MarketState()
    assert state.direction is PriceDirection.UNCHANGED

    state.rotate(100.0)
    assert state.direction is PriceDirection.UP
    state.rotate(99.0)
    assert state.direction is PriceDirection.DOWN
    assert state.previous_price == 100.0


def test_market_state_change_percent_modes() -> None:
    """Tests the 24h, UTC+0 and UTC+8 percentage calculations."""
    state = MarketState(
        current_price=110.0,
        change_percent_24h=3.5,
        open_price_utc0=100.0,
        open_price_utc8=0.0,
    )
    assert state.change_percent(ChangeMode.HOURS_24) == 3.5
    assert state.change_percent(ChangeMode.TODAY_UTC) == pytest.approx(10.0)
    # Unknown start-of-day price.
    assert state.change_percent(ChangeMode.TODAY_UTC8) == 0.0
