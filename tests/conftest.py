"""Shared fixtures for agent tests.

Nothing here needs a real tmux: FakeTmuxRegistry answers tmux commands from
an in-memory window table. Output capture can still run a real subprocess
by setting capture_script.
"""

import asyncio
import json
import socket
from pathlib import Path

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from hubagent.config import AgentConfig
from hubagent.errors import TmuxError
from hubagent.hub import ConnectionState
from hubagent.sessions import SessionRegistry


def make_config(tmp_path: Path, **overrides) -> AgentConfig:
    values = dict(
        hub_url="http://127.0.0.1:1",
        workspace_id="ws1",
        agent_token="secret-token",
        heartbeat_interval=30.0,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        buffer_size=100,
        workspace_dir=tmp_path / "workspace",
        upload_dir=tmp_path / "workspace" / ".images",
        env_state_path=tmp_path / "home" / ".session-hub-env-state.json",
        pipe_dir=tmp_path,
    )
    values.update(overrides)
    return AgentConfig(**values)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


async def _noop_output(tab_id, data):
    pass


async def _noop_exit(tab_id, code):
    pass


async def _noop_error(tab_id, error):
    pass


class FakeTmuxRegistry(SessionRegistry):
    """SessionRegistry whose tmux is a dict of {window_index: window_name}."""

    def __init__(
        self,
        session_name="sh_ws1",
        on_output=_noop_output,
        on_exit=_noop_exit,
        on_error=_noop_error,
        *,
        session_exists=False,
        windows=None,
        fail=(),
        scrollback="",
        **kwargs,
    ):
        super().__init__(session_name, on_output, on_exit, on_error, **kwargs)
        self.calls: list[tuple[str, ...]] = []
        self.session_alive = session_exists
        self.tmux_windows: dict[int, str] = dict(windows or {})
        self.fail = set(fail)  # tmux subcommands that exit non-zero
        self.scrollback = scrollback
        self.captures: list[str] = []
        self.capture_script: str | None = None

    def calls_for(self, subcommand: str) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] == subcommand]

    async def _exec(self, *args: str) -> str:
        self.calls.append(args)
        cmd = args[0]
        if cmd in self.fail:
            raise TmuxError(f"tmux {cmd} failed (1): simulated")
        if cmd == "has-session":
            if not self.session_alive:
                raise TmuxError("tmux has-session failed (1): can't find session")
            return ""
        if cmd == "new-session":
            self.session_alive = True
            self.tmux_windows.setdefault(0, "bash")
            return ""
        if cmd == "kill-session":
            self.session_alive = False
            self.tmux_windows.clear()
            return ""
        if cmd == "list-windows":
            return "".join(f"{i}:{name}\n" for i, name in sorted(self.tmux_windows.items()))
        if cmd == "new-window":
            index = 0
            while index in self.tmux_windows:
                index += 1
            self.tmux_windows[index] = args[args.index("-n") + 1]
            return f"{index}\n"
        if cmd == "kill-window":
            target = args[args.index("-t") + 1]
            self.tmux_windows.pop(int(target.rsplit(":", 1)[1]), None)
            return ""
        if cmd == "capture-pane":
            return self.scrollback
        return ""

    def _capture_argv(self, window):
        return ["sh", "-c", self.capture_script or "true"]

    async def _start_capture(self, window):
        self.captures.append(window.tab_id)
        if self.capture_script is not None:
            await super()._start_capture(window)


@pytest.fixture
def fake_registry(tmp_path):
    return FakeTmuxRegistry(pipe_dir=tmp_path, workspace_dir=tmp_path)


class FakeHub:
    """Stands in for HubConnection in coordinator tests."""

    def __init__(self):
        self.sent: list[tuple] = []
        self.state = ConnectionState()
        self.is_connected = True
        self.reply = None
        self.requests: list[tuple] = []

    async def send(self, kind, data):
        self.sent.append((kind, data))
        return True

    async def request(self, kind, data, timeout=30.0):
        self.requests.append((kind, data))
        if isinstance(self.reply, BaseException):
            raise self.reply
        return self.reply

    async def close(self):
        pass

    def kinds(self):
        return [kind.value for kind, _ in self.sent]

    def of_kind(self, kind):
        return [data for k, data in self.sent if k.value == kind]


async def wait_for(predicate, timeout=5.0):
    """Poll predicate() until true; fail the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)


def unused_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class HubServer:
    """A minimal hub: accepts /agent websockets, acks registration, records frames."""

    def __init__(self):
        self.frames: list[dict] = []
        self.auth_headers: list[str | None] = []
        self.connections = 0
        self.ws: web.WebSocketResponse | None = None
        self.register_ack: dict | None = {"success": True, "recoveryMode": False}
        self.on_frame = None  # async (frame, ws) hook
        self.url = ""

    async def handler(self, request: web.Request) -> web.WebSocketResponse:
        self.auth_headers.append(request.headers.get("Authorization"))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.ws = ws
        self.connections += 1
        async for msg in ws:
            if msg.type is not WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.frames.append(frame)
            if frame["event"] == "agent:register" and self.register_ack is not None:
                await ws.send_json({"event": "agent:registered", "data": self.register_ack})
            if self.on_frame is not None:
                await self.on_frame(frame, ws)
        return ws

    async def send(self, event: str, data: dict) -> None:
        await self.ws.send_json({"event": event, "data": data})

    def events(self, name: str) -> list[dict]:
        return [f["data"] for f in self.frames if f["event"] == name]


@pytest.fixture
async def hub_server():
    hub = HubServer()
    app = web.Application()
    app.router.add_get("/agent", hub.handler)
    server = TestServer(app)
    await server.start_server()
    hub.url = str(server.make_url("")).rstrip("/")
    yield hub
    await server.close()
