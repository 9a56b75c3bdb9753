"""Persistent websocket channel to the Session Hub.

Lifecycle: disconnected -> connecting -> connected -> registered. Any close
or transport error drops back to disconnected and, unless the agent is
shutting down, schedules exactly one reconnect with capped exponential
backoff. The attempt counter resets each time a connection opens.

Inbound frames are decoded once (protocol.decode) and dispatched through a
table that must cover every inbound kind. Tab I/O and lifecycle commands run
inline in arrival order; git/docker/stats/tailscale/upload/env requests run
as background tasks so a slow CLI call never stalls keystrokes.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import aiohttp
import psutil

from .config import AgentConfig
from .errors import AgentError, ProtocolError, ReconnectExhaustedError
from .logging_config import get_logger
from .protocol import (
    AGENT_REQUESTS,
    INBOUND_KINDS,
    ORDERED_KINDS,
    REPLY_KINDS,
    RESPONSES,
    MessageKind,
    RegisteredAck,
    decode,
    encode,
)

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

JITTER = 0.05  # +-5% of the nominal delay
WS_PING_INTERVAL = 30.0  # Transport-level ping, separate from agent:heartbeat
DEFAULT_REQUEST_TIMEOUT = 30.0


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REGISTERED = "registered"


@dataclass
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    reconnect_attempts: int = 0  # Reset on every successful open
    should_reconnect: bool = True  # False only after disconnect()
    recovery_mode: bool = False


def nominal_backoff(attempts: int, base: float, maximum: float) -> float:
    """min(base * 2^attempts, maximum). Non-decreasing in attempts."""
    if attempts >= 63:
        return maximum
    return min(base * (2**attempts), maximum)


def compute_backoff(
    attempts: int,
    base: float,
    maximum: float,
    rng: random.Random | None = None,
) -> float:
    """Nominal backoff with uniform +-5% jitter."""
    delay = nominal_backoff(attempts, base, maximum)
    factor = (rng or random).uniform(-JITTER, JITTER)
    return max(0.0, delay * (1 + factor))


class HubConnection:
    """One websocket connection to the hub, with reconnects and a heartbeat.

    handlers maps every inbound kind except agent:registered (handled here)
    to a coroutine function taking the decoded command. For request kinds in
    protocol.RESPONSES the handler's return value becomes the reply payload.
    """

    def __init__(
        self,
        config: AgentConfig,
        handlers: dict[MessageKind, Handler],
        *,
        on_connected: Callable[[], Awaitable[None]] | None = None,
        on_disconnected: Callable[[str], Awaitable[None]] | None = None,
        on_registered: Callable[[bool], Awaitable[None]] | None = None,
        on_error: Callable[[BaseException], Awaitable[None]] | None = None,
        tab_roster: Callable[[], list[dict]] | None = None,
        session: aiohttp.ClientSession | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.state = ConnectionState()
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.on_registered = on_registered
        self.on_error = on_error
        self.tab_roster = tab_roster
        self.rng = rng

        self._dispatch: dict[MessageKind, Handler] = {MessageKind.AGENT_REGISTERED: self._handle_registered}
        self._dispatch.update(handlers)
        missing = sorted(kind.value for kind in INBOUND_KINDS if kind not in self._dispatch)
        if missing:
            raise ValueError(f"No handler for inbound message kinds: {', '.join(missing)}")

        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._conn_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._send_lock = asyncio.Lock()
        self._pending: dict[str, tuple[MessageKind, asyncio.Future]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._started = time.monotonic()

    # --- Public API ---

    @property
    def is_connected(self) -> bool:
        return self.state.phase in (ConnectionPhase.CONNECTED, ConnectionPhase.REGISTERED)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connect(self) -> None:
        """Start connecting. No-op while connecting, connected, or a retry is scheduled."""
        if self.state.phase is not ConnectionPhase.DISCONNECTED or self._reconnect_handle is not None:
            return
        self.state.should_reconnect = True
        self.state.phase = ConnectionPhase.CONNECTING
        self._conn_task = asyncio.create_task(self._run_connection())

    async def disconnect(self) -> None:
        """Close the channel and suppress any further reconnects."""
        self.state.should_reconnect = False
        self._cancel_reconnect()
        await self._stop_heartbeat()

        task = self._conn_task
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if task is not None and task is not asyncio.current_task():
            if self.state.phase is ConnectionPhase.CONNECTING:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._conn_task = None
        self.state.phase = ConnectionPhase.DISCONNECTED

    async def close(self) -> None:
        """disconnect(), then drop in-flight request tasks and the HTTP session."""
        await self.disconnect()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def send(self, kind: MessageKind, data: dict[str, Any]) -> bool:
        """Send one message. Returns False (and drops it) when not connected."""
        ws = self._ws
        if ws is None or ws.closed or not self.is_connected:
            return False
        try:
            async with self._send_lock:
                await ws.send_str(encode(kind, data))
        except (ConnectionError, aiohttp.ClientError, RuntimeError) as e:
            logger.debug(f"Dropped {kind.value}: {e}")
            return False
        return True

    async def request(
        self,
        kind: MessageKind,
        data: dict[str, Any],
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Any:
        """Send an agent-initiated request and wait for its reply command.

        Raises ConnectionError if not connected or the channel drops while
        waiting, asyncio.TimeoutError if no reply arrives in time.
        """
        reply_kind = AGENT_REQUESTS[kind]
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (reply_kind, future)
        try:
            if not await self.send(kind, {**data, "requestId": request_id}):
                raise ConnectionError("Not connected to the hub")
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)

    # --- Connection loop ---

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _run_connection(self) -> None:
        url = self.config.agent_url
        try:
            session = await self._get_session()
            ws = await session.ws_connect(
                url,
                headers={"Authorization": f"Bearer {self.config.agent_token}"},
                heartbeat=WS_PING_INTERVAL,
            )
        except asyncio.CancelledError:
            self.state.phase = ConnectionPhase.DISCONNECTED
            raise
        except Exception as e:
            logger.warning(f"Connection to {url} failed: {e}")
            self.state.phase = ConnectionPhase.DISCONNECTED
            await self._report_error(e)
            self._schedule_reconnect()
            return

        self._ws = ws
        reason = "closed by hub"
        try:
            await self._on_open()
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._on_frame(msg.data)
                elif msg.type is aiohttp.WSMsgType.ERROR:
                    reason = f"transport error: {ws.exception()}"
                    break
            if not self.state.should_reconnect:
                reason = "disconnect requested"
        except asyncio.CancelledError:
            reason = "cancelled"
            raise
        except Exception as e:
            reason = f"transport error: {e}"
            logger.exception("Hub connection loop failed")
        finally:
            await self._on_close(reason)

    async def _on_open(self) -> None:
        self.state.phase = ConnectionPhase.CONNECTED
        self.state.reconnect_attempts = 0
        logger.info(f"Connected to {self.config.agent_url}")
        await self.send(
            MessageKind.AGENT_REGISTER,
            {
                "workspaceId": self.config.workspace_id,
                "token": self.config.agent_token,
                "version": self.config.version,
            },
        )
        self._start_heartbeat()
        if self.on_connected is not None:
            await self._guarded(self.on_connected())

    async def _on_close(self, reason: str) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        await self._stop_heartbeat()
        self.state.phase = ConnectionPhase.DISCONNECTED
        self.state.recovery_mode = False
        logger.info(f"Disconnected from hub: {reason}")

        for request_id, (_kind, future) in list(self._pending.items()):
            if not future.done():
                future.set_exception(ConnectionError("Disconnected from the hub"))
            self._pending.pop(request_id, None)

        if self.on_disconnected is not None:
            await self._guarded(self.on_disconnected(reason))
        self._schedule_reconnect()

    # --- Reconnect ---

    def _schedule_reconnect(self) -> None:
        if not self.state.should_reconnect:
            return
        self._cancel_reconnect()

        max_attempts = self.config.max_reconnect_attempts
        if max_attempts > 0 and self.state.reconnect_attempts >= max_attempts:
            self.state.should_reconnect = False
            error = ReconnectExhaustedError(self.state.reconnect_attempts)
            logger.error(str(error))
            self._spawn(self._report_error(error))
            return

        delay = compute_backoff(
            self.state.reconnect_attempts,
            self.config.reconnect_base_delay,
            self.config.reconnect_max_delay,
            self.rng,
        )
        self.state.reconnect_attempts += 1
        logger.info(f"Reconnect attempt {self.state.reconnect_attempts} in {delay:.1f}s")
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # --- Heartbeat ---

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            await self.send(MessageKind.AGENT_HEARTBEAT, self.heartbeat_payload())

    def heartbeat_payload(self) -> dict[str, Any]:
        tabs = self.tab_roster() if self.tab_roster is not None else []
        return {
            "workspaceId": self.config.workspace_id,
            "tabs": [{"tabId": t["tabId"], "status": t["status"]} for t in tabs],
            "metrics": {
                "uptime": round(time.monotonic() - self._started, 1),
                "memoryUsage": psutil.Process().memory_info().rss,
            },
        }

    # --- Dispatch ---

    async def _on_frame(self, raw: str | bytes) -> None:
        try:
            message = decode(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping inbound frame: {e}")
            return

        if message.kind in REPLY_KINDS:
            self._resolve_reply(message.kind, message.command)
        elif message.kind in ORDERED_KINDS:
            await self._guarded(self._dispatch[message.kind](message.command), message.kind)
        elif message.kind in RESPONSES:
            self._spawn(self._respond(message.kind, message.command))
        else:
            self._spawn(self._guarded(self._dispatch[message.kind](message.command), message.kind))

    async def _respond(self, kind: MessageKind, command: Any) -> None:
        """Run a request handler and reply with {requestId, success, <result> | error}."""
        reply_kind, result_key = RESPONSES[kind]
        payload: dict[str, Any] = {"requestId": command.request_id}
        try:
            result = await self._dispatch[kind](command)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{kind.value} ({command.request_id}) failed: {e}")
            payload.update(success=False, error=str(e) or type(e).__name__)
        else:
            payload["success"] = True
            if result_key is not None:
                payload[result_key] = result
        await self.send(reply_kind, payload)

    def _resolve_reply(self, kind: MessageKind, command: Any) -> None:
        request_id = getattr(command, "request_id", None)
        entry = self._pending.get(request_id) if request_id else None
        if entry is None:
            # Replies without an id go to the oldest waiter for that kind
            entry = next(
                (e for e in self._pending.values() if e[0] is kind and not e[1].done()),
                None,
            )
        if entry is None:
            logger.debug(f"Unsolicited {kind.value}, ignoring")
            return
        _kind, future = entry
        if not future.done():
            future.set_result(command)

    async def _handle_registered(self, ack: RegisteredAck) -> None:
        if not ack.success:
            logger.error(f"Registration rejected by hub: {ack.error or 'no reason given'}")
            await self._report_error(AgentError(f"Registration rejected: {ack.error or 'unknown'}"))
            return
        self.state.phase = ConnectionPhase.REGISTERED
        self.state.recovery_mode = ack.recovery_mode
        logger.info(f"Registered with hub (recovery mode: {ack.recovery_mode})")
        if self.on_registered is not None:
            await self.on_registered(ack.recovery_mode)

    # --- Helpers ---

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, coro: Awaitable[Any], kind: MessageKind | None = None) -> None:
        """Await a handler; log and report failures instead of tearing down the connection."""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            label = kind.value if kind is not None else "callback"
            logger.exception(f"Handler for {label} failed")
            await self._report_error(e)

    async def _report_error(self, error: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            await self.on_error(error)
        except Exception:
            logger.exception("on_error callback failed")

