import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from loguru import logger

from tickerbar.config import StreamSettings
from tickerbar.errors import TransportError
from tickerbar.events import ConnectionStatusChanged, ErrorEvent, EventBus
from tickerbar.models import ConnectionState

# --- Types ---
MessageHandler = Callable[[str | bytes], None]
ReadyCallback = Callable[[], Awaitable[None]]
ResetCallback = Callable[[], None]
ConnectFactory = Callable[..., Awaitable[Any]]

# --- Constants ---
NORMAL_CLOSURE = 1000
_LOG_PREFIX = "[stream]"


def reconnect_delay(attempt: int, base: float = 5.0, factor: float = 1.5) -> float:
    """Returns the backoff delay before the given reconnect attempt.

    The delay grows as `base * factor ** (attempt - 1)` with no upper cap:
    5s, 7.5s, 11.25s, ... with the defaults.

    Args:
        attempt: The 1-based attempt number.
        base: The delay before the first attempt, in seconds.
        factor: The growth factor between consecutive attempts.

    Raises:
        ValueError: If `attempt` is smaller than 1.
    """
    if attempt < 1:
        err_msg = f"Reconnect attempts are 1-based, got {attempt}"
        raise ValueError(err_msg)
    return base * factor ** (attempt - 1)


def _log_task_failure(task: "asyncio.Future[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"{_LOG_PREFIX} Background task failed.")


class StreamConnection:
    """Owns one logical WebSocket session to the ticker stream.

    The connection runs a receive loop and a heartbeat while connected and
    reconnects with exponential backoff after unexpected disconnects. After
    `max_reconnect_attempts` consecutive failures it parks in the FAILED
    state until `reconnect()` is called.

    Every session carries a generation id. Tearing a session down bumps the
    id synchronously, so frames that arrive from a superseded session are
    never dispatched.
    """

    def __init__(
        self,
        settings: StreamSettings,
        on_message: MessageHandler,
        events: EventBus,
        connect_factory: ConnectFactory = websockets.connect,
    ) -> None:
        """Initializes the connection in the DISCONNECTED state.

        Args:
            settings: Endpoint and timing configuration.
            on_message: Synchronous handler invoked with every raw frame.
            events: The bus receiving status and error events.
            connect_factory: Opens the transport. Called like
                `websockets.connect(url, **kwargs)`.
        """
        self.settings = settings
        self.events = events
        self._on_message = on_message
        self._connect_factory = connect_factory

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._session_id = 0
        self._ws: Any = None
        self._session_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        # Ready callbacks belong to one session; closes outlive it.
        self._session_work: set[asyncio.Future[None]] = set()
        self._background: set[asyncio.Future[None]] = set()
        self._connect_lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._last_status: tuple[ConnectionState, int] | None = None

        self._ready_callbacks: list[ReadyCallback] = []
        self._reset_callbacks: list[ResetCallback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        """Consecutive reconnect attempts since the last successful connect."""
        return self._attempts

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_ready_callback(self, callback: ReadyCallback) -> None:
        """Registers a coroutine function to run after every successful connect."""
        self._ready_callbacks.append(callback)

    def add_reset_callback(self, callback: ResetCallback) -> None:
        """Registers a function to run whenever a session is torn down."""
        self._reset_callbacks.append(callback)

    async def connect(self) -> None:
        """Opens a new session, tearing down the current one first.

        The session is established in the background. Use
        `wait_until_connected` to block until the CONNECTED state is reached.
        """
        async with self._connect_lock:
            if self._session_active():
                logger.info(f"{_LOG_PREFIX} Session active. Tearing down first.")
                await self.disconnect()
                await asyncio.sleep(self.settings.reconnect_grace_s)
            self._cancel_reconnect()
            self._open_session()

    async def disconnect(self) -> None:
        """Closes the session and stops all automatic reconnection.

        Timers, the reset callbacks and the state transition all complete
        before the first suspension point, so no frame can be dispatched once
        this coroutine has started.
        """
        self._cancel_reconnect()
        ws = self._ws
        self._end_session()
        self._run_reset_callbacks()
        self._set_state(ConnectionState.DISCONNECTED)
        if ws is not None:
            logger.info(f"{_LOG_PREFIX} Closing connection.")
            await self._close_transport(ws)

    async def reconnect(self) -> None:
        """Resets the attempt counter and reconnects, whatever the current state."""
        logger.info(
            f"{_LOG_PREFIX} Reconnect requested (state: {self._state.value})."
        )
        self._attempts = 0
        await self.connect()

    async def close(self) -> None:
        """Disconnects and waits for outstanding background work to finish."""
        await self.disconnect()
        pending = [
            t for t in (*self._background, *self._session_work) if not t.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        """Waits for the CONNECTED state. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Serializes and sends a control message over the live session.

        Raises:
            TransportError: If there is no live session or the send fails.
        """
        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            err_msg = "Cannot send: stream is not connected."
            raise TransportError(err_msg)
        try:
            await ws.send(json.dumps(payload))
        except (websockets.exceptions.ConnectionClosed, OSError) as e:
            err_msg = f"Send failed: {e}"
            raise TransportError(err_msg) from e

    # --- Session lifecycle ---

    def _session_active(self) -> bool:
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return True
        return self._session_task is not None and not self._session_task.done()

    def _open_session(self) -> None:
        self._session_id += 1
        sid = self._session_id
        self._set_state(ConnectionState.CONNECTING)
        self._session_task = asyncio.create_task(
            self._run_session(sid), name=f"stream-session-{sid}"
        )
        self._session_task.add_done_callback(_log_task_failure)

    async def _run_session(self, sid: int) -> None:
        logger.info(f"{_LOG_PREFIX} Connecting to {self.settings.ws_url}...")
        try:
            ws = await asyncio.wait_for(
                self._connect_factory(
                    self.settings.ws_url,
                    ping_interval=None,  # Heartbeats are sent by this class.
                    close_timeout=self.settings.close_timeout_s,
                ),
                timeout=self.settings.connect_timeout_s,
            )
        except (
            websockets.exceptions.WebSocketException,
            asyncio.TimeoutError,
            OSError,
        ) as e:
            self._handle_disconnect(sid, f"connect failed: {type(e).__name__}: {e}")
            return

        if sid != self._session_id:
            # Superseded while the handshake was in flight.
            await self._close_transport(ws)
            return

        self._ws = ws
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        logger.success(f"{_LOG_PREFIX} Connected.")
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(sid, ws), name=f"stream-heartbeat-{sid}"
        )
        self._heartbeat_task.add_done_callback(_log_task_failure)
        self._fire_ready_callbacks()

        reason = "closed by server"
        try:
            async for raw in ws:
                if sid != self._session_id or not self.is_connected:
                    return
                self._dispatch(raw)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except OSError as e:
            reason = f"receive failed: {e}"
        self._handle_disconnect(sid, reason)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            self._on_message(raw)
        except Exception:
            logger.exception(f"{_LOG_PREFIX} Message handler failed. Frame dropped.")

    async def _heartbeat_loop(self, sid: int, ws: Any) -> None:
        """Pings the server periodically and treats a missing pong as a disconnect."""
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_s)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(
                    pong_waiter, timeout=self.settings.pong_timeout_s
                )
            except asyncio.TimeoutError:
                reason = "heartbeat pong timed out"
            except (websockets.exceptions.ConnectionClosed, OSError) as e:
                reason = f"heartbeat failed: {e}"
            else:
                logger.trace(f"{_LOG_PREFIX} Heartbeat acknowledged.")
                continue
            self._handle_disconnect(sid, reason)
            return

    def _handle_disconnect(self, sid: int, reason: str) -> None:
        """Handles an unexpected loss of the session identified by `sid`."""
        if sid != self._session_id or self._state not in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ):
            return
        logger.warning(f"{_LOG_PREFIX} Disconnected: {reason}")
        ws = self._ws
        self._end_session()
        self._run_reset_callbacks()
        if ws is not None:
            self._spawn(self._close_transport(ws), self._background)
        self._schedule_reconnect()

    def _end_session(self) -> None:
        """Invalidates the current session and cancels its tasks.

        The calling task is never cancelled, so this is safe to run from the
        receive loop or the heartbeat itself.
        """
        self._session_id += 1
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._session_task, *self._session_work):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._session_task = None
        self._ws = None

    def _schedule_reconnect(self) -> None:
        max_attempts = self.settings.max_reconnect_attempts
        if self._attempts >= max_attempts:
            self._set_state(ConnectionState.FAILED)
            err_msg = (
                f"Unable to connect after {max_attempts} attempts. "
                "Check the network connection and reconnect manually."
            )
            logger.error(f"{_LOG_PREFIX} {err_msg}")
            self.events.publish(ErrorEvent(message=err_msg))
            return

        self._attempts += 1
        delay = reconnect_delay(
            self._attempts,
            base=self.settings.reconnect_base_delay_s,
            factor=self.settings.reconnect_backoff_factor,
        )
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(
            f"{_LOG_PREFIX} Reconnecting in {delay:.2f} seconds "
            f"(attempt {self._attempts}/{max_attempts})."
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="stream-reconnect"
        )
        self._reconnect_task.add_done_callback(_log_task_failure)

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        self._open_session()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()

    async def _close_transport(self, ws: Any) -> None:
        try:
            await ws.close(code=NORMAL_CLOSURE, reason="client disconnect")
        except (websockets.exceptions.WebSocketException, OSError) as e:
            logger.debug(f"{_LOG_PREFIX} Error while closing transport: {e}")

    # --- Callbacks and status ---

    def _fire_ready_callbacks(self) -> None:
        for callback in self._ready_callbacks:
            self._spawn(callback(), self._session_work)

    def _run_reset_callbacks(self) -> None:
        for callback in self._reset_callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"{_LOG_PREFIX} Reset callback failed.")

    def _spawn(
        self, coro: Awaitable[None], group: "set[asyncio.Future[None]]"
    ) -> None:
        task = asyncio.ensure_future(coro)
        group.add(task)
        task.add_done_callback(group.discard)
        task.add_done_callback(_log_task_failure)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()

        status = (state, self._attempts)
        if status == self._last_status:
            return
        self._last_status = status
        logger.debug(
            f"{_LOG_PREFIX} State -> {state.value} (retries: {self._attempts})"
        )
        self.events.publish(
            ConnectionStatusChanged(state=state, retry_count=self._attempts)
        )
