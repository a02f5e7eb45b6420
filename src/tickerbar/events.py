import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger

from tickerbar.models import ConnectionState
from tickerbar.utils.time import get_current_rfc3339_timestamp


@dataclass(frozen=True)
class Event:
    """Base class for everything published on the EventBus."""

    emitted_at: str = field(
        default_factory=get_current_rfc3339_timestamp, kw_only=True, compare=False
    )


@dataclass(frozen=True)
class PricesUpdated(Event):
    """Coalesced signal that one or more instruments received new prices."""

    inst_ids: frozenset[str]


@dataclass(frozen=True)
class SignificantPriceChange(Event):
    """An accepted update whose percent change crossed the alert threshold."""

    inst_id: str
    old_price: float
    new_price: float
    percent: float


@dataclass(frozen=True)
class ConnectionStatusChanged(Event):
    state: ConnectionState
    retry_count: int


@dataclass(frozen=True)
class ErrorEvent(Event):
    message: str


@dataclass(frozen=True)
class WatchlistChanged(Event):
    inst_ids: tuple[str, ...]


@dataclass(frozen=True)
class ExchangeRateUpdated(Event):
    usd_cny: float


E = TypeVar("E", bound=Event)


class EventBus:
    """A fan-out hub that delivers engine events to subscribed queues.

    Publishing never blocks: each event is pushed with `put_nowait` into every
    queue registered for its type (or for the `Event` base type, which
    receives everything). A full queue drops the event for that subscriber
    only, so one slow consumer cannot stall the engine.
    """

    def __init__(self) -> None:
        # A mapping from event type to a dict of {subscription_id: queue}
        self._subscriptions: defaultdict[
            type[Event], dict[int, asyncio.Queue[Any]]
        ] = defaultdict(dict)
        # A reverse mapping from subscription_id to its event type
        self._id_to_key: dict[int, type[Event]] = {}
        self._id_generator = itertools.count(1)

    def subscribe(self, event_type: type[E], queue: "asyncio.Queue[E]") -> int:
        """Subscribes a queue to receive events of the given type.

        Args:
            event_type: The event class to receive. `Event` receives all events.
            queue: The asyncio.Queue to which events will be pushed.

        Returns:
            A unique subscription ID that can be used to unsubscribe.
        """
        sub_id = next(self._id_generator)
        self._subscriptions[event_type][sub_id] = queue
        self._id_to_key[sub_id] = event_type
        logger.debug(
            f"New event subscription (ID: {sub_id}) for {event_type.__name__}."
        )
        return sub_id

    def unsubscribe(self, sub_id: int) -> None:
        """Removes a subscription using the ID returned by `subscribe`."""
        if sub_id not in self._id_to_key:
            logger.warning(f"Attempted to unsubscribe with invalid ID: {sub_id}")
            return

        key = self._id_to_key.pop(sub_id)
        self._subscriptions[key].pop(sub_id, None)
        if not self._subscriptions[key]:
            del self._subscriptions[key]
        logger.debug(f"Unsubscribed ID {sub_id} from {key.__name__}.")

    def publish(self, event: Event) -> None:
        """Delivers an event to every matching subscriber without waiting."""
        queues = list(self._subscriptions.get(type(event), {}).values())
        if type(event) is not Event:
            queues.extend(self._subscriptions.get(Event, {}).values())

        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:  # noqa: PERF203
                logger.warning(
                    f"Subscriber queue for {type(event).__name__} is full. "
                    "Event was dropped. This may indicate a slow consumer."
                )
