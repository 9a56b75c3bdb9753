"""Agent coordinator: wires tmux windows, output buffers and the hub channel.

Session output goes to the per-tab ring buffer and to the hub as tab:output.
Hub commands go to the session registry or to the ancillary handlers.
Shutdown (SIGINT/SIGTERM) disconnects from the hub but leaves the tmux
session running so tabs survive an agent restart.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

from .config import AgentConfig
from .env_state import EnvStateManager
from .errors import AgentError, DependencyMissingError, classify_exception
from .handlers.docker import DockerHandler
from .handlers.git import GitHandler
from .handlers.stats import StatsHandler
from .handlers.tailscale import TailscaleHandler
from .handlers.uploads import UploadHandler, inline_image_escape
from .hub import HubConnection
from .ipc import IpcServer
from .logging_config import get_logger
from .output_buffer import OutputBufferManager
from .protocol import (
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
from .sessions import SCROLLBACK_LINES, SessionRegistry

logger = get_logger(__name__)


class AgentCoordinator:
    def __init__(self, config: AgentConfig, hub_session=None):
        self.config = config
        self.buffers = OutputBufferManager(config.buffer_size)
        self.registry = SessionRegistry(
            config.session_name,
            on_output=self._on_output,
            on_exit=self._on_exit,
            on_error=self._on_tab_error,
            workspace_dir=config.workspace_dir,
            pipe_dir=config.pipe_dir,
        )
        self.env_state = EnvStateManager(config.env_state_path, config.workspace_id)
        self.git = GitHandler(config.workspace_dir)
        self.docker = DockerHandler()
        self.stats = StatsHandler()
        self.tailscale = TailscaleHandler()
        self.uploads = UploadHandler(config.upload_dir)
        self.hub = HubConnection(
            config,
            self._build_handlers(),
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            on_registered=self._on_registered,
            on_error=self._on_hub_error,
            tab_roster=self.tab_roster,
            session=hub_session,
        )
        self.ipc = IpcServer(self, config.ipc_socket_path)
        self.exit_code = 0
        self._stop = asyncio.Event()
        # Tabs mid-creation: their output/exit is held until tab:created is sent
        self._held: dict[str, list[tuple[MessageKind, dict[str, Any]]]] = {}

    def _build_handlers(self) -> dict:
        K = MessageKind
        return {
            K.AGENT_UPDATE: self.handle_update,
            K.TAB_CREATE: self.handle_tab_create,
            K.TAB_INPUT: self.handle_tab_input,
            K.TAB_RESIZE: self.handle_tab_resize,
            K.TAB_CLOSE: self.handle_tab_close,
            K.TAB_ATTACH: self.handle_tab_attach,
            K.TAB_BUFFER_REQUEST: self.handle_buffer_request,
            K.FILE_UPLOAD: self.handle_file_upload,
            K.ENV_UPDATE: self.handle_env_update,
            K.GIT_STATUS: lambda req: self.git.status(),
            K.GIT_DIFF: lambda req: self.git.diff(
                staged=bool(req.params.get("staged")), files=req.params.get("files")
            ),
            K.GIT_STAGE: lambda req: self.git.stage(req.params.get("files")),
            K.GIT_UNSTAGE: lambda req: self.git.unstage(req.params.get("files")),
            K.GIT_COMMIT: lambda req: self.git.commit(req.params.get("message", "")),
            K.GIT_DISCARD: lambda req: self.git.discard(req.params.get("files")),
            K.GIT_CONFIG: lambda req: self.git.set_config(req.params.get("name"), req.params.get("email")),
            K.DOCKER_STATUS: lambda req: self.docker.containers(),
            K.DOCKER_LOGS: lambda req: self.docker.logs(
                req.params.get("containerId", ""), int(req.params.get("tail") or 100)
            ),
            K.DOCKER_START: lambda req: self.docker.start(req.params.get("containerId", "")),
            K.DOCKER_STOP: lambda req: self.docker.stop(req.params.get("containerId", "")),
            K.DOCKER_RESTART: lambda req: self.docker.restart(req.params.get("containerId", "")),
            K.STATS_REQUEST: lambda req: self.stats.stats(),
            K.TAILSCALE_STATUS: lambda req: self.tailscale.status(),
            K.TAILSCALE_CONNECT: lambda req: self.tailscale.connect(req.params.get("authKey", "")),
            K.TAILSCALE_DISCONNECT: lambda req: self.tailscale.disconnect(),
        }

    # --- Session events ---

    async def _emit_for_tab(self, tab_id: str, kind: MessageKind, data: dict[str, Any]) -> None:
        held = self._held.get(tab_id)
        if held is not None:
            held.append((kind, data))
            return
        await self.hub.send(kind, data)

    async def _on_output(self, tab_id: str, data: str) -> None:
        self.buffers.append(tab_id, data)
        await self._emit_for_tab(tab_id, MessageKind.TAB_OUTPUT, {"tabId": tab_id, "data": data})

    async def _on_exit(self, tab_id: str, exit_code: int) -> None:
        logger.info(f"Tab {tab_id} exited with code {exit_code}")
        await self._emit_for_tab(tab_id, MessageKind.TAB_ENDED, {"tabId": tab_id, "exitCode": exit_code})

    async def _on_tab_error(self, tab_id: str, error: BaseException) -> None:
        logger.error(f"Tab {tab_id} error: {error}")
        await self.send_error("TAB_ERROR", str(error), tab_id)

    async def send_error(self, code: str, message: str, tab_id: str | None = None) -> None:
        await self.hub.send(MessageKind.AGENT_ERROR, {"code": code, "message": message, "tabId": tab_id})

    def tab_roster(self) -> list[dict]:
        return [
            {
                "tabId": w.tab_id,
                "status": w.status,
                "tmuxWindow": w.window_index,
                "hasBuffer": self.buffers.has(w.tab_id),
            }
            for w in self.registry.windows.values()
        ]

    # --- Hub lifecycle ---

    async def _on_connected(self) -> None:
        try:
            await self.registry.initialize()
        except DependencyMissingError as e:
            self.fail(e)

    async def _on_disconnected(self, reason: str) -> None:
        logger.info(f"Hub connection lost ({reason}); tabs keep running")

    async def _on_registered(self, recovery_mode: bool) -> None:
        if recovery_mode:
            tabs = self.tab_roster()
            logger.info(f"Recovery mode: reporting {len(tabs)} tab(s)")
            await self.hub.send(MessageKind.AGENT_STATE, {"tabs": tabs})

    async def _on_hub_error(self, error: BaseException) -> None:
        info = classify_exception(error)
        if info.fatal:
            self.fail(error)
        else:
            logger.warning(f"Hub error ({info.category}): {info.text}")

    # --- Tab commands ---

    async def handle_tab_create(self, cmd: TabCreate) -> None:
        logger.info(f"Creating tab {cmd.tab_id}: {cmd.command or '(shell)'}")
        if cmd.env_vars:
            logger.info(f"  with {len(cmd.env_vars)} environment variable(s)")
        self._held.setdefault(cmd.tab_id, [])
        try:
            index = await self.registry.create_window(cmd.tab_id, cmd.command, cmd.env_vars or None)
        except Exception as e:
            logger.error(f"Failed to create tab {cmd.tab_id}: {e}")
            await self.send_error("TAB_CREATE_FAILED", str(e), cmd.tab_id)
        else:
            await self.hub.send(MessageKind.TAB_CREATED, {"tabId": cmd.tab_id, "tmuxWindow": index})
        finally:
            await self._release_held(cmd.tab_id)

    async def _release_held(self, tab_id: str) -> None:
        held = self._held.get(tab_id)
        while held:
            kind, data = held.pop(0)
            await self.hub.send(kind, data)
        self._held.pop(tab_id, None)

    async def handle_tab_input(self, cmd: TabInput) -> None:
        await self.registry.send_input(cmd.tab_id, cmd.data)

    async def handle_tab_resize(self, cmd: TabResize) -> None:
        await self.registry.resize(cmd.tab_id, cmd.cols, cmd.rows)

    async def handle_tab_close(self, cmd: TabRef) -> None:
        logger.info(f"Closing tab {cmd.tab_id}")
        await self.registry.close_window(cmd.tab_id)
        self.buffers.clear(cmd.tab_id)

    async def handle_tab_attach(self, cmd: TabRef) -> None:
        if not self.registry.has_active_window(cmd.tab_id):
            logger.info(f"Attach for unknown tab {cmd.tab_id}")
            return
        lines = await self.registry.capture_scrollback(cmd.tab_id, SCROLLBACK_LINES)
        if not lines:
            lines = self.buffers.get_all(cmd.tab_id)
        if lines:
            await self.hub.send(MessageKind.TAB_BUFFER, {"tabId": cmd.tab_id, "lines": lines})

    async def handle_buffer_request(self, cmd: BufferRequest) -> None:
        lines = await self.registry.capture_scrollback(cmd.tab_id, cmd.lines)
        if not lines:
            lines = self.buffers.get_recent(cmd.tab_id, cmd.lines)
        await self.hub.send(MessageKind.TAB_BUFFER, {"tabId": cmd.tab_id, "lines": lines})

    async def handle_update(self, cmd: UpdateCommand) -> None:
        logger.warning(f"Update to {cmd.version} requested; self-update is not supported")
        await self.send_error(
            "UPDATE_UNSUPPORTED",
            f"Self-update to {cmd.version} is not supported; redeploy the agent package instead",
        )

    # --- Requests with custom replies ---

    async def handle_file_upload(self, cmd: FileUpload) -> None:
        logger.info(f"Upload {cmd.filename or '(unnamed)'} ({cmd.mime_type}) for tab {cmd.tab_id}")
        try:
            path = await self.uploads.save(cmd.filename, cmd.data, cmd.mime_type)
        except (ValueError, OSError) as e:
            logger.error(f"Upload failed: {e}")
            await self.hub.send(
                MessageKind.FILE_UPLOADED, {"requestId": cmd.request_id, "success": False, "error": str(e)}
            )
            return

        if cmd.tab_id and cmd.mime_type.startswith("image/"):
            await self._emit_for_tab(
                cmd.tab_id, MessageKind.TAB_OUTPUT, {"tabId": cmd.tab_id, "data": inline_image_escape(cmd.data)}
            )
        if cmd.tab_id and self.registry.has_active_window(cmd.tab_id):
            # Typed at the cursor so the user can add context around it
            await self.registry.send_input(cmd.tab_id, str(path))

        await self.hub.send(
            MessageKind.FILE_UPLOADED, {"requestId": cmd.request_id, "success": True, "filePath": str(path)}
        )

    async def handle_env_update(self, cmd: EnvUpdate) -> None:
        payload: dict[str, Any] = {"workspaceId": cmd.workspace_id or self.config.workspace_id}
        if cmd.request_id:
            payload["requestId"] = cmd.request_id

        if cmd.workspace_id and cmd.workspace_id != self.config.workspace_id:
            payload.update(success=False, error=f"Workspace mismatch: {cmd.workspace_id}")
        else:
            try:
                diff = await self.env_state.apply_update(cmd.env_vars, cmd.repository_id, self.registry)
            except (AgentError, OSError, ValueError) as e:
                logger.error(f"Failed to apply env update: {e}")
                payload.update(success=False, error=str(e))
            else:
                payload.update(success=True, applied=diff.counts())
        await self.hub.send(MessageKind.ENV_UPDATE_RESPONSE, payload)

    # --- Local IPC operations ---

    async def fetch_env_vars(self) -> dict[str, str]:
        """Ask the hub for the workspace's current environment."""
        reply: EnvReply = await self.hub.request(MessageKind.ENV_REQUEST, {"workspaceId": self.config.workspace_id})
        if reply.error or reply.env_vars is None:
            raise AgentError(f"Hub refused env request: {reply.error or 'no variables returned'}")
        return reply.env_vars

    async def refresh_env_vars(self) -> dict[str, Any]:
        """Fetch the environment from the hub and apply it like a pushed update."""
        env_vars = await self.fetch_env_vars()
        repository_id = self.env_state.state.repository_id if self.env_state.state else None
        diff = await self.env_state.apply_update(env_vars, repository_id, self.registry)
        return {"envVars": env_vars, "applied": diff.counts()}

    def status(self) -> dict[str, Any]:
        return {
            "version": self.config.version,
            "workspaceId": self.config.workspace_id,
            "sessionHubUrl": self.config.hub_url,
            "connected": self.hub.is_connected,
            "phase": self.hub.state.phase.value,
            "recoveryMode": self.hub.state.recovery_mode,
            "reconnectAttempts": self.hub.state.reconnect_attempts,
            "tabs": self.tab_roster(),
        }

    # --- Process lifecycle ---

    def fail(self, error: BaseException) -> None:
        """Stop the agent with a non-zero exit code."""
        logger.error(f"Fatal: {error}")
        self.exit_code = 1
        self._stop.set()

    def request_stop(self, reason: str = "requested") -> None:
        logger.info(f"Received {reason}, shutting down...")
        self._stop.set()

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        """Log unexpected errors from callbacks and orphan tasks; keep running."""
        error = context.get("exception")
        message = context.get("message", "Unhandled error")
        if error is not None:
            info = classify_exception(error)
            logger.error(f"{message} ({info.category}): {info.text}", exc_info=error)
        else:
            logger.error(message)

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop, sig.name)

        logger.info(f"Session Hub Agent v{self.config.version}")
        logger.info(f"Workspace ID: {self.config.workspace_id}")
        logger.info(f"Session Hub URL: {self.config.hub_url}")

        self.env_state.load()
        try:
            await self.ipc.start()
        except OSError as e:
            logger.warning(f"IPC server unavailable: {e}")

        self.hub.connect()
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        return self.exit_code

    async def shutdown(self) -> None:
        """Disconnect and stop local services. tmux windows are left running."""
        await self.hub.close()
        await self.ipc.stop()
        await self.registry.detach()


async def run_agent(config: AgentConfig) -> int:
    return await AgentCoordinator(config).run()
