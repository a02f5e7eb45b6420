import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from tickerbar.catalog import ProductCatalog
from tickerbar.config import NotificationSettings, ReconcilerSettings
from tickerbar.events import (
    Event,
    EventBus,
    PricesUpdated,
    SignificantPriceChange,
)
from tickerbar.models import Instrument
from tickerbar.reconciler import UpdateReconciler, change_percent_24h

IDS = ("BTC-USDT", "ETH-USDT", "SOL-USDT")


def ticker_frame(*entries: dict[str, Any]) -> str:
    """Builds a ticker channel push frame."""
    return json.dumps(
        {"arg": {"channel": "tickers", "instId": entries[0]["instId"]}, "data": entries}
    )


def ticker(inst_id: str, last: float | str, **extra: Any) -> dict[str, Any]:
    return {"instId": inst_id, "last": str(last), **extra}


@pytest.fixture()
def catalog() -> ProductCatalog:
    catalog = ProductCatalog()
    for inst_id in IDS:
        catalog.register(Instrument.from_id(inst_id))
    return catalog


@pytest.fixture()
def subscriptions() -> SimpleNamespace:
    """A subscription view with every test instrument subscribed."""
    return SimpleNamespace(subscribed=frozenset(IDS))


@pytest.fixture()
def notifications() -> NotificationSettings:
    return NotificationSettings(enabled=True, threshold_percent=5.0)


@pytest.fixture()
def reconciler(
    catalog: ProductCatalog,
    subscriptions: SimpleNamespace,
    bus: EventBus,
    notifications: NotificationSettings,
    clock: Any,
) -> UpdateReconciler:
    """Provides a reconciler driven by a manual clock."""
    return UpdateReconciler(
        catalog,
        subscriptions,
        bus,
        ReconcilerSettings(process_every=3, coalesce_window_s=0.05),
        notifications,
        clock=clock,
    )


def price(catalog: ProductCatalog, inst_id: str) -> float:
    state = catalog.state(inst_id)
    assert state is not None
    return state.current_price


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   ",
        "pong",
        '{"event":"subscribe","arg":{"channel":"tickers","instId":"BTC-USDT"}}',
        '{"event":"error","code":"60012","msg":"Invalid request"}',
        '{"arg":{"channel":"tickers"},"data":[{"last":"1"}]}',
        '{"data": [], "instId": broken',
        b"\xff\xfe",
    ],
)
async def test_non_ticker_frames_are_discarded(
    reconciler: UpdateReconciler, catalog: ProductCatalog, raw: str | bytes
) -> None:
    """Tests that heartbeats, acks and malformed frames never change state."""
    reconciler.handle_frame(raw)
    assert reconciler.stats.frames_discarded == 1
    assert reconciler.stats.frames_processed == 0
    assert all(price(catalog, i) == 0.0 for i in IDS)


@pytest.mark.asyncio
async def test_binary_frames_are_decoded(
    reconciler: UpdateReconciler, catalog: ProductCatalog
) -> None:
    reconciler.handle_frame(ticker_frame(ticker("BTC-USDT", 1)).encode("utf-8"))
    assert price(catalog, "BTC-USDT") == 1.0


@pytest.mark.asyncio
async def test_unsubscribed_instruments_are_ignored(
    reconciler: UpdateReconciler,
    catalog: ProductCatalog,
    subscriptions: SimpleNamespace,
) -> None:
    """Tests that frames for ids outside the subscription set are dropped."""
    subscriptions.subscribed = frozenset({"BTC-USDT"})
    reconciler.handle_frame(
        ticker_frame(ticker("ETH-USDT", 2000), ticker("DOGE-USDT", 0.1))
    )
    assert price(catalog, "ETH-USDT") == 0.0
    assert "DOGE-USDT" not in catalog

    reconciler.handle_frame(
        ticker_frame(ticker("BTC-USDT", 30000), ticker("ETH-USDT", 2000))
    )
    assert price(catalog, "BTC-USDT") == 30000.0
    assert price(catalog, "ETH-USDT") == 0.0


@pytest.mark.asyncio
async def test_throttle_processes_every_third_background_frame(
    reconciler: UpdateReconciler, catalog: ProductCatalog
) -> None:
    """Tests the counter once the instrument has been seen recently."""
    for n in range(1, 7):
        reconciler.handle_frame(ticker_frame(ticker("ETH-USDT", 2000 + n)))

    # Frame 1 passes as never seen; frames 3 and 6 pass on the counter.
    assert reconciler.stats.frames_processed == 3
    assert reconciler.stats.frames_throttled == 3
    assert price(catalog, "ETH-USDT") == 2006.0


@pytest.mark.asyncio
async def test_displayed_instrument_is_never_throttled(
    reconciler: UpdateReconciler, catalog: ProductCatalog
) -> None:
    """Tests that every frame for the displayed id is processed."""
    reconciler.displayed_id = "BTC-USDT"
    for n in range(1, 6):
        reconciler.handle_frame(ticker_frame(ticker("BTC-USDT", 30000 + n)))
        assert price(catalog, "BTC-USDT") == 30000 + n

    assert reconciler.stats.frames_processed == 5
    assert reconciler.stats.frames_throttled == 0
    # Priority frames do not consume background slots.
    assert reconciler._counter == 0


@pytest.mark.asyncio
async def test_fairness_lets_stale_instruments_through(
    reconciler: UpdateReconciler, catalog: ProductCatalog, clock: Any
) -> None:
    """Tests that an instrument starved past the window is processed."""
    reconciler.handle_frame(ticker_frame(ticker("ETH-USDT", 2000)))  # counter 1
    reconciler.handle_frame(ticker_frame(ticker("ETH-USDT", 2001)))  # counter 2
    assert price(catalog, "ETH-USDT") == 2000.0

    clock.advance(5.0)
    reconciler.handle_frame(ticker_frame(ticker("ETH-USDT", 2002)))  # counter 3
    reconciler.handle_frame(ticker_frame(ticker("ETH-USDT", 2003)))  # counter 4
    assert price(catalog, "ETH-USDT") == 2002.0

    clock.advance(5.0)
    reconciler.handle_frame(ticker_frame(ticker("ETH-USDT", 2004)))  # counter 5
    assert price(catalog, "ETH-USDT") == 2004.0


@pytest.mark.asyncio
async def test_epsilon_filter_applies_to_frames(
    reconciler: UpdateReconciler, catalog: ProductCatalog
) -> None:
    reconciler.displayed_id = "BTC-USDT"
    reconciler.handle_frame(ticker_frame(ticker("BTC-USDT", "30000.0")))
    reconciler.handle_frame(ticker_frame(ticker("BTC-USDT", "30000.0000001")))
    state = catalog.state("BTC-USDT")
    assert state is not None
    assert (state.current_price, state.previous_price) == (30000.0, 0.0)
    assert reconciler.stats.updates_accepted == 1


@pytest.mark.asyncio
async def test_entry_fields_are_stored(
    reconciler: UpdateReconciler, catalog: ProductCatalog
) -> None:
    """Tests that stats, start-of-day prices and the timestamp are kept."""
    reconciler.ingest(
        [
            ticker(
                "BTC-USDT",
                30500,
                high24h="31000",
                low24h="29000",
                open24h="30000",
                sodUtc0="30100",
                sodUtc8="30200",
                ts="1597026383085",
            )
        ]
    )
    state = catalog.state("BTC-USDT")
    assert state is not None
    assert (state.high_24h, state.low_24h) == (31000.0, 29000.0)
    assert state.change_percent_24h == pytest.approx(500 / 30000 * 100)
    assert (state.open_price_utc0, state.open_price_utc8) == (30100.0, 30200.0)
    assert state.exchange_timestamp == "2020-08-10T02:26:23.085Z"


@pytest.mark.asyncio
async def test_malformed_entry_does_not_block_others(
    reconciler: UpdateReconciler, catalog: ProductCatalog
) -> None:
    """Tests that one bad entry is dropped and its siblings still applied."""
    changes = reconciler.ingest(
        [
            ticker("BTC-USDT", "abc"),
            {"instId": "SOL-USDT"},
            ticker("ETH-USDT", 2000, high24h="oops"),
            ticker("ETH-USDT", -1),
            ticker("SOL-USDT", 150),
        ]
    )
    assert [c.inst_id for c in changes] == ["SOL-USDT"]
    assert reconciler.stats.parse_errors == 4
    assert price(catalog, "ETH-USDT") == 0.0


@pytest.mark.parametrize(
    ("entry", "last", "expected"),
    [
        ({"changePercentage": "2.5%"}, 100.0, 2.5),
        ({"changePercent24h": "-1.25"}, 100.0, -1.25),
        ({"chg24h": "5"}, 100.0, 5.0),
        ({"open24h": "80"}, 100.0, 25.0),
        ({"changePercentage": "n/a", "open24h": "200"}, 100.0, -50.0),
        ({"open24h": "0"}, 100.0, 0.0),
        ({}, 100.0, 0.0),
    ],
)
def test_change_percent_fallback_chain(
    entry: dict[str, Any], last: float, expected: float
) -> None:
    """Tests percent field, absolute change and open price, in that order."""
    assert change_percent_24h(entry, last) == pytest.approx(expected)


@pytest.mark.asyncio
async def test_background_updates_are_coalesced(
    reconciler: UpdateReconciler, bus: EventBus
) -> None:
    """Tests that updates inside the window produce a single signal."""
    queue: asyncio.Queue[PricesUpdated] = asyncio.Queue()
    bus.subscribe(PricesUpdated, queue)

    reconciler.ingest([ticker("ETH-USDT", 2000), ticker("SOL-USDT", 150)])
    reconciler.ingest([ticker("ETH-USDT", 2001)])
    assert queue.empty()

    event = await asyncio.wait_for(queue.get(), timeout=1.0)
    assert event.inst_ids == frozenset({"ETH-USDT", "SOL-USDT"})
    await asyncio.sleep(0.1)
    assert queue.empty()


@pytest.mark.asyncio
async def test_displayed_update_flushes_immediately(
    reconciler: UpdateReconciler, bus: EventBus
) -> None:
    """Tests that the displayed instrument's update is signalled without delay."""
    queue: asyncio.Queue[PricesUpdated] = asyncio.Queue()
    bus.subscribe(PricesUpdated, queue)
    reconciler.displayed_id = "BTC-USDT"

    reconciler.ingest([ticker("ETH-USDT", 2000)])
    reconciler.ingest([ticker("BTC-USDT", 30000)])

    event = queue.get_nowait()
    assert event.inst_ids == frozenset({"ETH-USDT", "BTC-USDT"})
    await asyncio.sleep(0.1)
    assert queue.empty()


@pytest.mark.asyncio
async def test_significant_change_is_published(
    reconciler: UpdateReconciler, bus: EventBus
) -> None:
    """Tests the threshold on the 24h percentage with an inclusive bound."""
    queue: asyncio.Queue[SignificantPriceChange] = asyncio.Queue()
    bus.subscribe(SignificantPriceChange, queue)

    # The first price has no prior price and never alerts.
    reconciler.ingest([ticker("BTC-USDT", 30000, changePercentage="7")])
    assert queue.empty()

    reconciler.ingest([ticker("BTC-USDT", 30100, changePercentage="4.99")])
    assert queue.empty()

    reconciler.ingest([ticker("BTC-USDT", 30200, changePercentage="5")])
    event = queue.get_nowait()
    assert event == SignificantPriceChange(
        inst_id="BTC-USDT", old_price=30100.0, new_price=30200.0, percent=5.0
    )


@pytest.mark.asyncio
async def test_significant_change_respects_mode_and_switch(
    reconciler: UpdateReconciler,
    bus: EventBus,
    notifications: NotificationSettings,
    drain_events: Any,
) -> None:
    """Tests the intraday mode and the master switch."""
    queue: asyncio.Queue[Event] = asyncio.Queue()
    bus.subscribe(SignificantPriceChange, queue)
    notifications.change_mode = "today_utc"

    reconciler.ingest([ticker("SOL-USDT", 100, sodUtc0="100")])
    reconciler.ingest([ticker("SOL-USDT", 106, changePercentage="0.1")])
    events = drain_events(queue)
    assert len(events) == 1
    assert events[0].percent == pytest.approx(6.0)

    notifications.enabled = False
    reconciler.ingest([ticker("SOL-USDT", 120)])
    assert queue.empty()


@pytest.mark.asyncio
async def test_flush_on_demand(reconciler: UpdateReconciler, bus: EventBus) -> None:
    """Tests that flush publishes pending ids and cancels the timer."""
    queue: asyncio.Queue[PricesUpdated] = asyncio.Queue()
    bus.subscribe(PricesUpdated, queue)
    reconciler.ingest([ticker("ETH-USDT", 2000)])

    reconciler.flush()
    assert queue.get_nowait().inst_ids == frozenset({"ETH-USDT"})
    assert reconciler._flush_handle is None
    reconciler.flush()
    assert queue.empty()
