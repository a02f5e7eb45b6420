class TickerBarError(Exception):
    """Base class for all errors raised by the price synchronization engine."""


class TransportError(TickerBarError):
    """The streaming transport could not connect, send or receive.

    Recovered locally by the reconnect policy; never fatal.
    """


class RestError(TickerBarError):
    """A REST endpoint answered with an unusable payload or error code."""


class PersistenceError(TickerBarError):
    """Stored state could not be serialized or deserialized."""


class ReorderError(TickerBarError, ValueError):
    """A watchlist reorder was not a permutation of the current entries."""
