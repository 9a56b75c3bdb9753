"""Tests for the agent coordinator (hubagent/agent.py).

The hub channel is a FakeHub and tmux is a FakeTmuxRegistry; the coordinator
logic between them is real.
"""

import base64
import os
from unittest.mock import patch

import pytest

from hubagent.agent import AgentCoordinator
from hubagent.errors import AgentError, ReconnectExhaustedError
from hubagent.ipc import IpcServer
from hubagent.protocol import (
    BufferRequest,
    EnvReply,
    EnvUpdate,
    FileUpload,
    MessageKind,
    TabCreate,
    TabInput,
    TabRef,
    TabResize,
    UpdateCommand,
)

from tests.conftest import FakeHub, FakeTmuxRegistry, wait_for


@pytest.fixture(autouse=True)
def tmux_installed():
    with patch("hubagent.sessions.shutil.which", return_value="/usr/bin/tmux"):
        yield


@pytest.fixture
def coordinator(config, tmp_path):
    coord = AgentCoordinator(config)
    coord.hub = FakeHub()
    coord.registry = FakeTmuxRegistry(
        config.session_name,
        coord._on_output,
        coord._on_exit,
        coord._on_tab_error,
        pipe_dir=tmp_path,
    )
    return coord


class TestTabLifecycle:
    async def test_created_then_output_then_ended(self, coordinator):
        coordinator.registry.capture_script = "printf 'hi\\n'; exit 2"
        await coordinator.registry.initialize()
        await coordinator.handle_tab_create(TabCreate(tab_id="t1", command=["bash"]))
        await wait_for(lambda: coordinator.hub.of_kind("tab:ended"))

        kinds = coordinator.hub.kinds()
        assert kinds[0] == "tab:created"
        assert kinds[-1] == "tab:ended"
        assert set(kinds[1:-1]) == {"tab:output"}
        assert coordinator.hub.of_kind("tab:created") == [{"tabId": "t1", "tmuxWindow": 1}]
        assert "".join(d["data"] for d in coordinator.hub.of_kind("tab:output")) == "hi\n"
        assert coordinator.hub.of_kind("tab:ended") == [{"tabId": "t1", "exitCode": 2}]
        assert coordinator.buffers.get_all("t1") == ["hi"]

    async def test_output_during_create_is_held(self, coordinator):
        registry = coordinator.registry
        original = registry._exec

        async def exec_with_output(*args):
            if args[0] == "new-window":
                await coordinator._on_output("t1", "early")
            return await original(*args)

        registry._exec = exec_with_output
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        assert coordinator.hub.kinds() == ["tab:created", "tab:output"]
        assert coordinator._held == {}

    async def test_create_failure_reported(self, coordinator):
        coordinator.registry.fail.add("new-window")
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        assert coordinator.hub.kinds() == ["agent:error"]
        error = coordinator.hub.of_kind("agent:error")[0]
        assert error["code"] == "TAB_CREATE_FAILED"
        assert error["tabId"] == "t1"
        assert coordinator._held == {}

    async def test_create_passes_env(self, coordinator):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1", env_vars={"PORT": "3000"}))
        assert "PORT=3000" in coordinator.registry.calls_for("new-window")[0]

    async def test_input_and_resize_routed(self, coordinator):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        await coordinator.handle_tab_input(TabInput(tab_id="t1", data="ls\r"))
        await coordinator.handle_tab_resize(TabResize(tab_id="t1", cols=90, rows=20))
        assert coordinator.registry.calls_for("send-keys")[-1][-1] == "ls\r"
        assert coordinator.registry.calls_for("resize-window")

    async def test_input_for_unknown_tab_ignored(self, coordinator):
        await coordinator.handle_tab_input(TabInput(tab_id="nope", data="x"))
        assert coordinator.hub.sent == []

    async def test_close_clears_buffer(self, coordinator):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        await coordinator._on_output("t1", "line\n")
        assert coordinator.buffers.has("t1")
        await coordinator.handle_tab_close(TabRef(tab_id="t1"))
        assert not coordinator.buffers.has("t1")
        assert not coordinator.registry.has_active_window("t1")


class TestBuffers:
    async def test_attach_sends_scrollback(self, coordinator):
        coordinator.registry.scrollback = "a\nb\n"
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        await coordinator.handle_tab_attach(TabRef(tab_id="t1"))
        assert coordinator.hub.of_kind("tab:buffer") == [{"tabId": "t1", "lines": ["a", "b"]}]

    async def test_attach_falls_back_to_ring_buffer(self, coordinator):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        await coordinator._on_output("t1", "x\ny\n")
        await coordinator.handle_tab_attach(TabRef(tab_id="t1"))
        assert coordinator.hub.of_kind("tab:buffer") == [{"tabId": "t1", "lines": ["x", "y"]}]

    async def test_attach_unknown_tab_sends_nothing(self, coordinator):
        await coordinator.handle_tab_attach(TabRef(tab_id="nope"))
        assert coordinator.hub.sent == []

    async def test_buffer_request_recent_lines(self, coordinator):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        await coordinator._on_output("t1", "1\n2\n3\n")
        await coordinator.handle_buffer_request(BufferRequest(tab_id="t1", lines=2))
        assert coordinator.hub.of_kind("tab:buffer") == [{"tabId": "t1", "lines": ["2", "3"]}]

    async def test_buffer_request_unknown_tab_sends_empty(self, coordinator):
        await coordinator.handle_buffer_request(BufferRequest(tab_id="nope"))
        assert coordinator.hub.of_kind("tab:buffer") == [{"tabId": "nope", "lines": []}]


class TestHubLifecycle:
    async def test_missing_tmux_stops_agent(self, coordinator):
        with patch("hubagent.sessions.shutil.which", return_value=None):
            await coordinator._on_connected()
        assert coordinator.exit_code == 1
        assert coordinator._stop.is_set()

    async def test_recovery_reports_tabs(self, config, tmp_path):
        coord = AgentCoordinator(config)
        coord.hub = FakeHub()
        coord.registry = FakeTmuxRegistry(
            config.session_name,
            coord._on_output,
            coord._on_exit,
            coord._on_tab_error,
            session_exists=True,
            windows={0: "bash", 2: "tab_t1"},
            pipe_dir=tmp_path,
        )
        await coord._on_connected()
        await coord._on_registered(True)
        assert coord.hub.of_kind("agent:state") == [
            {"tabs": [{"tabId": "t1", "status": "running", "tmuxWindow": 2, "hasBuffer": False}]}
        ]

    async def test_no_state_outside_recovery(self, coordinator):
        await coordinator._on_registered(False)
        assert coordinator.hub.sent == []

    async def test_fatal_hub_error_stops_agent(self, coordinator):
        await coordinator._on_hub_error(ReconnectExhaustedError(3))
        assert coordinator.exit_code == 1

    async def test_transient_hub_error_ignored(self, coordinator):
        await coordinator._on_hub_error(ConnectionRefusedError("refused"))
        assert coordinator.exit_code == 0
        assert not coordinator._stop.is_set()

    async def test_update_unsupported(self, coordinator):
        await coordinator.handle_update(UpdateCommand(version="9.9.9"))
        (error,) = coordinator.hub.of_kind("agent:error")
        assert error["code"] == "UPDATE_UNSUPPORTED"
        assert "9.9.9" in error["message"]

    async def test_loop_exception_handler_swallows(self, coordinator):
        coordinator._handle_loop_exception(None, {"message": "Task exception", "exception": RuntimeError("boom")})
        coordinator._handle_loop_exception(None, {"message": "no exception here"})

    async def test_status(self, coordinator):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        status = coordinator.status()
        assert status["workspaceId"] == "ws1"
        assert status["phase"] == "disconnected"
        assert status["tabs"][0]["tabId"] == "t1"


class TestFileUpload:
    async def test_image_upload_to_tab(self, coordinator, config):
        await coordinator.handle_tab_create(TabCreate(tab_id="t1"))
        data = base64.b64encode(b"\x89PNG").decode()
        await coordinator.handle_file_upload(FileUpload("r1", "t1", "shot.png", data, "image/png"))

        (reply,) = coordinator.hub.of_kind("file:uploaded")
        assert reply["requestId"] == "r1"
        assert reply["success"] is True
        assert reply["filePath"].startswith(str(config.upload_dir))
        assert coordinator.hub.of_kind("tab:output") == [{"tabId": "t1", "data": f"\x1b]1337;File=inline=1:{data}\x07"}]
        assert coordinator.registry.calls_for("send-keys")[-1][-1] == reply["filePath"]

    async def test_non_image_without_tab(self, coordinator):
        data = base64.b64encode(b"hello").decode()
        await coordinator.handle_file_upload(FileUpload("r2", None, "notes.txt", data, "text/plain"))
        assert coordinator.hub.kinds() == ["file:uploaded"]
        assert coordinator.hub.of_kind("file:uploaded")[0]["filePath"].endswith(".txt")

    async def test_invalid_payload(self, coordinator):
        await coordinator.handle_file_upload(FileUpload("r3", "t1", "a.png", "%%%", "image/png"))
        (reply,) = coordinator.hub.of_kind("file:uploaded")
        assert reply["success"] is False
        assert reply["requestId"] == "r3"
        assert "base64" in reply["error"]


class TestEnv:
    async def test_env_update_applied(self, coordinator, monkeypatch):
        monkeypatch.delenv("HUBAGENT_AGENT_TEST", raising=False)
        await coordinator.handle_env_update(EnvUpdate("ws1", {"HUBAGENT_AGENT_TEST": "1"}, "repo1", "r1"))
        assert coordinator.hub.of_kind("env:update:response") == [
            {
                "workspaceId": "ws1",
                "requestId": "r1",
                "success": True,
                "applied": {"added": 1, "removed": 0, "changed": 0},
            }
        ]
        assert os.environ["HUBAGENT_AGENT_TEST"] == "1"
        assert coordinator.env_state.path.exists()
        monkeypatch.delenv("HUBAGENT_AGENT_TEST")

    async def test_env_update_workspace_mismatch(self, coordinator):
        await coordinator.handle_env_update(EnvUpdate("other", {"X": "1"}))
        (reply,) = coordinator.hub.of_kind("env:update:response")
        assert reply["success"] is False
        assert "mismatch" in reply["error"]
        assert "X" not in coordinator.env_state.current_values()

    async def test_env_update_invalid_name_replies_failure(self, coordinator, monkeypatch):
        monkeypatch.delenv("HUBAGENT_AGENT_GOOD", raising=False)
        await coordinator.handle_env_update(EnvUpdate("ws1", {"HUBAGENT_AGENT_GOOD": "1", "BAD=KEY": "x"}, request_id="r1"))
        (reply,) = coordinator.hub.of_kind("env:update:response")
        assert reply["requestId"] == "r1"
        assert reply["success"] is False
        assert "BAD=KEY" in reply["error"]
        assert "HUBAGENT_AGENT_GOOD" not in os.environ
        assert not coordinator.env_state.path.exists()

    async def test_fetch_env_vars(self, coordinator):
        coordinator.hub.reply = EnvReply(env_vars={"A": "1"})
        assert await coordinator.fetch_env_vars() == {"A": "1"}
        assert coordinator.hub.requests == [(MessageKind.ENV_REQUEST, {"workspaceId": "ws1"})]

    async def test_fetch_env_vars_refused(self, coordinator):
        coordinator.hub.reply = EnvReply(env_vars=None, error="forbidden")
        with pytest.raises(AgentError, match="forbidden"):
            await coordinator.fetch_env_vars()

    async def test_refresh_applies(self, coordinator, monkeypatch):
        monkeypatch.delenv("HUBAGENT_REFRESH_TEST", raising=False)
        coordinator.hub.reply = EnvReply(env_vars={"HUBAGENT_REFRESH_TEST": "v"})
        result = await coordinator.refresh_env_vars()
        assert result == {"envVars": {"HUBAGENT_REFRESH_TEST": "v"}, "applied": {"added": 1, "removed": 0, "changed": 0}}
        assert os.environ["HUBAGENT_REFRESH_TEST"] == "v"
        monkeypatch.delenv("HUBAGENT_REFRESH_TEST")


class TestRun:
    async def test_run_until_stopped(self, coordinator, tmp_path):
        coordinator.ipc = IpcServer(coordinator, tmp_path / "agent.sock")
        coordinator.hub.connect = lambda: coordinator.request_stop("test")
        assert await coordinator.run() == 0
        assert not (tmp_path / "agent.sock").exists()

    async def test_run_returns_failure_code(self, coordinator, tmp_path):
        coordinator.ipc = IpcServer(coordinator, tmp_path / "agent.sock")
        coordinator.hub.connect = lambda: coordinator.fail(ReconnectExhaustedError(1))
        assert await coordinator.run() == 1
