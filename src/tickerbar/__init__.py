# src/tickerbar/__init__.py
"""TickerBar: a real-time cryptocurrency price synchronization engine.

The engine keeps the prices of a user-curated watchlist in sync with the OKX
public API. It is built around asyncio: one event loop owns every piece of
mutable state, and components talk to each other through explicit method
calls and the event bus.

Key modules:
- `stream`: the WebSocket session with heartbeat and reconnect backoff.
- `subscriptions`: keeps the live subscription set aligned with the watchlist.
- `reconciler`: parses ticker frames and applies them to the catalog.
- `polling`: the REST fallback used while the stream is unavailable.
- `engine`: the composition root wiring all of the above together.
"""

import importlib.metadata

try:
    __version__: str = importlib.metadata.version("tickerbar")
except importlib.metadata.PackageNotFoundError:
    # Running from a source checkout without an installed distribution.
    __version__ = "0.0.0-dev"
