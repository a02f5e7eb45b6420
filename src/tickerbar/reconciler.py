import asyncio
import json
import time
from collections.abc import Callable, Collection, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from tickerbar.catalog import PriceChange, ProductCatalog
from tickerbar.config import NotificationSettings, ReconcilerSettings
from tickerbar.events import EventBus, PricesUpdated, SignificantPriceChange
from tickerbar.utils.time import normalize_timestamp_to_rfc3339

_LOG_PREFIX = "[reconciler]"

# Percent fields seen in ticker payloads, in order of preference.
PERCENT_FIELDS = ("changePercentage", "changePercent24h", "priceChangePercent")
HEARTBEAT_ACK = "pong"


class SubscriptionView(Protocol):
    @property
    def subscribed(self) -> frozenset[str]: ...


@dataclass
class ReconcilerStats:
    """Counters describing what happened to inbound frames."""

    frames_received: int = 0
    frames_processed: int = 0
    frames_throttled: int = 0
    frames_discarded: int = 0
    parse_errors: int = 0
    updates_accepted: int = 0


def _optional_float(value: Any) -> float | None:
    """Converts a payload number (usually a string) to float; blanks are None."""
    if value is None or value == "":
        return None
    return float(value)


def change_percent_24h(entry: Mapping[str, Any], last: float) -> float:
    """Derives the 24h percentage change of a ticker entry.

    The explicit percent field wins (a trailing '%' is stripped). Otherwise
    the percentage is computed from the absolute 24h change, and then from
    the 24h open price. Returns 0 if nothing usable is present.
    """
    for key in PERCENT_FIELDS:
        raw = entry.get(key)
        if raw is None or raw == "":
            continue
        try:
            return float(str(raw).strip().rstrip("%"))
        except ValueError:
            logger.debug(f"{_LOG_PREFIX} Unparseable {key}: {raw!r}")

    try:
        change = _optional_float(entry.get("chg24h"))
        if change is not None and last > 0:
            return change / last * 100.0
        open_24h = _optional_float(entry.get("open24h"))
        if open_24h is not None and open_24h > 0 and last > 0:
            return (last - open_24h) / open_24h * 100.0
    except (TypeError, ValueError):
        logger.debug(f"{_LOG_PREFIX} Unparseable 24h change fields in {entry}")
    return 0.0


class UpdateReconciler:
    """Turns raw ticker frames into ProductCatalog updates and events.

    Frames pass three gates before they touch state: the structural filter
    (non-empty, not a heartbeat ack, carries `data` and `instId`), the
    throttle, and the subscription filter. Entries that survive go through
    the epsilon acceptance rule in `ProductCatalog.apply_price`.

    The throttle processes one in every `process_every` background frames.
    Frames that mention the displayed instrument always pass and do not
    advance the counter. A frame that the counter would drop still passes if
    one of its instruments has not been processed for `fairness_window_s`.
    """

    def __init__(
        self,
        catalog: ProductCatalog,
        subscriptions: SubscriptionView,
        events: EventBus,
        settings: ReconcilerSettings,
        notifications: NotificationSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.events = events
        self.settings = settings
        self.notifications = notifications
        self.displayed_id: str | None = None
        self.stats = ReconcilerStats()
        self._clock = clock
        self._counter = 0
        self._last_processed: dict[str, float] = {}
        self._pending: set[str] = set()
        self._flush_handle: asyncio.TimerHandle | None = None

    def handle_frame(self, raw: str | bytes) -> None:
        """Entry point for frames delivered by the StreamConnection."""
        self.stats.frames_received += 1
        entries = self._parse_frame(raw)
        if entries is None:
            self.stats.frames_discarded += 1
            return

        subscribed = self.subscriptions.subscribed
        frame_ids = {e["instId"] for e in entries} & subscribed
        if not frame_ids:
            self.stats.frames_discarded += 1
            return
        if not self._should_process(frame_ids):
            self.stats.frames_throttled += 1
            return

        self.stats.frames_processed += 1
        self.ingest(entries, allowed_ids=subscribed)

    def ingest(
        self,
        entries: Iterable[Mapping[str, Any]],
        allowed_ids: Collection[str] | None = None,
    ) -> list[PriceChange]:
        """Applies ticker entries to the catalog.

        This is the single acceptance path for both streamed and polled data.

        Args:
            entries: Ticker objects with at least `instId` and `last`.
            allowed_ids: If given, entries for other instruments are ignored.

        Returns:
            The accepted price changes, in entry order.
        """
        accepted: list[PriceChange] = []
        now = self._clock()
        for entry in entries:
            inst_id = entry.get("instId")
            if not isinstance(inst_id, str):
                continue
            if allowed_ids is not None and inst_id not in allowed_ids:
                continue
            try:
                change = self._apply_entry(inst_id, entry)
            except (KeyError, TypeError, ValueError) as e:
                self.stats.parse_errors += 1
                logger.warning(f"{_LOG_PREFIX} Dropping malformed ticker {entry}: {e}")
                continue
            self._last_processed[inst_id] = now
            if change is None:
                continue
            self.stats.updates_accepted += 1
            accepted.append(change)
            self._check_significant(change)
            self._signal(inst_id)
        return accepted

    def flush(self) -> None:
        """Publishes the pending coalesced `PricesUpdated` signal now."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._pending:
            return
        inst_ids = frozenset(self._pending)
        self._pending.clear()
        self.events.publish(PricesUpdated(inst_ids=inst_ids))

    # --- Internals ---

    def _parse_frame(self, raw: str | bytes) -> list[dict[str, Any]] | None:
        if isinstance(raw, bytes | bytearray):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                self.stats.parse_errors += 1
                logger.warning(f"{_LOG_PREFIX} Undecodable binary frame: {e}")
                return None

        text = raw.strip()
        if not text or text == HEARTBEAT_ACK:
            return None
        # Subscription acks and errors carry no "data"; skip them unparsed.
        if '"data"' not in text or '"instId"' not in text:
            logger.trace(f"{_LOG_PREFIX} Ignoring control frame: {text[:200]}")
            return None

        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            self.stats.parse_errors += 1
            logger.warning(f"{_LOG_PREFIX} Malformed frame dropped: {e}")
            return None

        data = message.get("data") if isinstance(message, dict) else None
        if not isinstance(data, list):
            return None
        entries = [
            e
            for e in data
            if isinstance(e, dict) and isinstance(e.get("instId"), str)
        ]
        return entries or None

    def _should_process(self, frame_ids: set[str]) -> bool:
        if self.displayed_id is not None and self.displayed_id in frame_ids:
            return True

        self._counter += 1
        if self._counter % max(1, self.settings.process_every) == 0:
            return True

        now = self._clock()
        window = self.settings.fairness_window_s
        for inst_id in frame_ids:
            last = self._last_processed.get(inst_id)
            if last is None or now - last >= window:
                return True
        return False

    def _apply_entry(
        self, inst_id: str, entry: Mapping[str, Any]
    ) -> PriceChange | None:
        last = float(entry["last"])
        if last <= 0:
            err_msg = f"non-positive last price {last}"
            raise ValueError(err_msg)
        # Parse everything up front so a bad field cannot half-apply an entry.
        high = _optional_float(entry.get("high24h"))
        low = _optional_float(entry.get("low24h"))
        open_utc0 = _optional_float(entry.get("sodUtc0")) or 0.0
        open_utc8 = _optional_float(entry.get("sodUtc8")) or 0.0
        percent = change_percent_24h(entry, last)
        timestamp = ""
        if entry.get("ts"):
            try:
                timestamp = normalize_timestamp_to_rfc3339(entry["ts"])
            except ValueError:
                logger.debug(f"{_LOG_PREFIX} Ignoring bad timestamp {entry['ts']!r}")

        change = self.catalog.apply_price(inst_id, last)
        if change is None:
            return None
        self.catalog.apply_stats(inst_id, high=high, low=low, change_percent=percent)
        self.catalog.apply_open_prices(inst_id, utc0=open_utc0, utc8=open_utc8)
        if timestamp:
            self.catalog.apply_timestamp(inst_id, timestamp)
        return change

    def _check_significant(self, change: PriceChange) -> None:
        settings = self.notifications
        if not settings.enabled or change.old_price <= 0 or change.new_price <= 0:
            return
        state = self.catalog.state(change.inst_id)
        if state is None:
            return
        percent = state.change_percent(settings.mode)
        if abs(percent) < settings.threshold_percent:
            return
        logger.info(
            f"{_LOG_PREFIX} Significant change for {change.inst_id}: {percent:+.2f}%"
        )
        self.events.publish(
            SignificantPriceChange(
                inst_id=change.inst_id,
                old_price=change.old_price,
                new_price=change.new_price,
                percent=percent,
            )
        )

    def _signal(self, inst_id: str) -> None:
        self._pending.add(inst_id)
        if inst_id == self.displayed_id:
            self.flush()
            return
        if self._flush_handle is None:
            loop = asyncio.get_running_loop()
            self._flush_handle = loop.call_later(
                self.settings.coalesce_window_s, self.flush
            )
