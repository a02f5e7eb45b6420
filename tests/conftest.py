import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest

from tickerbar.config import StreamSettings
from tickerbar.events import Event, EventBus

_CLOSED = object()


class FakeWebSocket:
    """An in-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        self.close_code: int | None = None
        self.fail_sends = False
        self.answer_pings = True
        self.pings = 0
        self.closed_at: float | None = None

    # --- websockets API ---
    async def send(self, message: str) -> None:
        if self.fail_sends or self.closed:
            err_msg = "send on a broken connection"
            raise OSError(err_msg)
        self.sent.append(json.loads(message))

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str | bytes:
        item = await self.incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def ping(self) -> "asyncio.Future[float]":
        self.pings += 1
        waiter: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.closed_at = asyncio.get_running_loop().time()
        self.close_code = code
        self.incoming.put_nowait(_CLOSED)

    # --- Test controls ---
    def push(self, frame: str | bytes | dict[str, Any]) -> None:
        """Queues an inbound frame. Dicts are JSON-encoded."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self.incoming.put_nowait(frame)

    def drop(self, error: BaseException | None = None) -> None:
        """Simulates a transport failure on the receive side."""
        self.incoming.put_nowait(error or OSError("connection reset by peer"))

    def ops(self, op: str) -> list[str]:
        """Returns the instrument ids of every sent message with the given op."""
        return [
            arg["instId"] for msg in self.sent if msg["op"] == op for arg in msg["args"]
        ]


class FakeConnector:
    """A connect factory that hands out FakeWebSockets or fails on demand."""

    def __init__(self) -> None:
        self.calls = 0
        self.kwargs: list[dict[str, Any]] = []
        self.call_times: list[float] = []
        self.sockets: list[FakeWebSocket] = []
        self.always_fail = False
        self.failures_left = 0

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls += 1
        self.kwargs.append(kwargs)
        self.call_times.append(asyncio.get_running_loop().time())
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            err_msg = f"connection to {url} refused"
            raise OSError(err_msg)
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


class FakeClock:
    """A manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOkxApi:
    """Serves the public market endpoints through httpx.MockTransport."""

    def __init__(self) -> None:
        self.tickers: dict[str, list[dict[str, Any]]] = {}
        self.singles: dict[str, dict[str, Any]] = {}
        self.usd_cny = "7.2"
        self.status_code = 200
        self.error_code: str | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="unavailable")
        if self.error_code is not None:
            return httpx.Response(
                200, json={"code": self.error_code, "msg": "rate limited", "data": []}
            )

        path = request.url.path
        if path.endswith("/market/tickers"):
            data = self.tickers.get(request.url.params["instType"], [])
        elif path.endswith("/market/ticker"):
            single = self.singles.get(request.url.params["instId"])
            data = [single] if single else []
        elif path.endswith("/market/exchange-rate"):
            data = [{"usdCny": self.usd_cny}]
        else:
            return httpx.Response(404, json={"code": "404", "msg": "not found"})
        return httpx.Response(200, json={"code": "0", "msg": "", "data": data})

    def paths(self) -> list[str]:
        """Returns 'path?query' for every request served so far."""
        return [
            f"{r.url.path.rsplit('/', 1)[-1]}?{r.url.query.decode()}"
            for r in self.requests
        ]


@pytest.fixture
def okx_api() -> FakeOkxApi:
    return FakeOkxApi()


@pytest.fixture
def http_client(okx_api: FakeOkxApi) -> httpx.AsyncClient:
    """An httpx client whose requests are answered by `okx_api`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(okx_api))


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_stream_settings() -> StreamSettings:
    """Stream settings with delays short enough for tests."""
    return StreamSettings(
        connect_timeout_s=1.0,
        close_timeout_s=0.1,
        heartbeat_interval_s=3600.0,
        pong_timeout_s=0.05,
        reconnect_base_delay_s=0.001,
        reconnect_backoff_factor=1.5,
        max_reconnect_attempts=10,
        reconnect_grace_s=0.0,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def collected(bus: EventBus) -> "asyncio.Queue[Event]":
    """A queue receiving every event published on `bus`."""
    queue: asyncio.Queue[Event] = asyncio.Queue()
    bus.subscribe(Event, queue)
    return queue


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Returns a helper that waits until a condition holds or fails the test."""

    async def _eventually(
        condition: Callable[[], bool], timeout: float = 2.0, message: str = ""
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                pytest.fail(message or "condition not met before the timeout")
            await asyncio.sleep(0.005)

    return _eventually


def drain(queue: "asyncio.Queue[Event]") -> list[Event]:
    """Returns every event currently waiting in a queue."""
    events: list[Event] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def drain_events() -> Callable[["asyncio.Queue[Event]"], list[Event]]:
    return drain
