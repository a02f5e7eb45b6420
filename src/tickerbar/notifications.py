import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from tickerbar.catalog import ProductCatalog
from tickerbar.events import ErrorEvent, Event, EventBus, SignificantPriceChange

PRICE_CHANGE_CATEGORY = "price_change"
ERROR_CATEGORY = "error"


@dataclass(frozen=True)
class Notification:
    """A user-facing message, independent of how it is delivered."""

    title: str
    body: str
    category: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    """Delivers notifications to the user (OS notification centre, log, ...)."""

    def deliver(self, notification: Notification) -> None: ...


class LogNotificationSink:
    """Writes notifications to the application log."""

    def deliver(self, notification: Notification) -> None:
        level = "WARNING" if notification.category == ERROR_CATEGORY else "SUCCESS"
        logger.log(level, f"{notification.title}: {notification.body}")


def price_change_notification(
    event: SignificantPriceChange, base_currency: str
) -> Notification:
    """Builds the alert shown when a price moves past the threshold."""
    direction = "up" if event.percent >= 0 else "down"
    return Notification(
        title=f"{base_currency} price {direction} alert",
        body=(
            f"{base_currency} moved {direction} {abs(event.percent):.2f}%\n"
            f"from {event.old_price:.2f} to {event.new_price:.2f}"
        ),
        category=PRICE_CHANGE_CATEGORY,
        payload={
            "instId": event.inst_id,
            "baseCcy": base_currency,
            "currentPrice": event.new_price,
            "previousPrice": event.old_price,
            "percentChange": event.percent,
        },
    )


def error_notification(event: ErrorEvent) -> Notification:
    return Notification(
        title="TickerBar error", body=event.message, category=ERROR_CATEGORY
    )


class NotificationDispatcher:
    """Forwards significant-change and error events to a NotificationSink."""

    def __init__(
        self,
        events: EventBus,
        catalog: ProductCatalog,
        sink: NotificationSink,
        queue_size: int = 100,
    ) -> None:
        self.events = events
        self.catalog = catalog
        self.sink = sink
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self._sub_ids: list[int] = []
        self._task: asyncio.Task[None] | None = None
        self._running = asyncio.Event()

    def start(self) -> None:
        """Subscribes to the bus and starts delivering in a background task."""
        if self._task is not None and not self._task.done():
            logger.warning("Notification dispatcher is already running.")
            return
        self._sub_ids = [
            self.events.subscribe(SignificantPriceChange, self._queue),
            self.events.subscribe(ErrorEvent, self._queue),
        ]
        self._running.set()
        self._task = asyncio.create_task(self._run(), name="notifications")

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self._running.clear()
        for sub_id in self._sub_ids:
            self.events.unsubscribe(sub_id)
        self._sub_ids = []
        if self._task:
            try:
                self._task.cancel()
                await self._task
            except asyncio.CancelledError:
                pass  # Expected cancellation.
            finally:
                self._task = None

    def build(self, event: Event) -> Notification | None:
        """Maps an event to the notification it should produce, if any."""
        if isinstance(event, SignificantPriceChange):
            instrument = self.catalog.instrument(event.inst_id)
            base = (
                instrument.base_currency
                if instrument is not None
                else event.inst_id.split("-")[0]
            )
            return price_change_notification(event, base)
        if isinstance(event, ErrorEvent):
            return error_notification(event)
        return None

    async def _run(self) -> None:
        while self._running.is_set():
            event = await self._queue.get()
            notification = self.build(event)
            if notification is None:
                continue
            try:
                self.sink.deliver(notification)
            except Exception:
                logger.exception("Notification sink failed to deliver a message.")
