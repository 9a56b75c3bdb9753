"""Local IPC: small HTTP API on a Unix socket for tools inside the workspace.

Socket: /tmp/session-hub-agent-{workspaceId}.sock (mode 0666)

  GET  /status            agent version, hub connection, tabs
  GET  /env-vars          current workspace env vars, fetched from the hub
  POST /refresh-env-vars  fetch from the hub and apply (process + tmux env)
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import web

from .errors import AgentError
from .logging_config import get_logger

if TYPE_CHECKING:
    from .agent import AgentCoordinator

logger = get_logger(__name__)

CLIENT_TIMEOUT = 40.0  # Longer than the hub request timeout


class IpcServer:
    def __init__(self, coordinator: AgentCoordinator, socket_path: Path):
        self.coordinator = coordinator
        self.socket_path = socket_path
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get("/status", self.get_status),
                web.get("/env-vars", self.get_env_vars),
                web.post("/refresh-env-vars", self.refresh_env_vars),
            ]
        )
        return app

    async def start(self) -> None:
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.UnixSite(self._runner, str(self.socket_path))
        await site.start()
        try:
            os.chmod(self.socket_path, 0o666)
        except OSError as e:
            logger.warning(f"Could not chmod {self.socket_path}: {e}")
        logger.info(f"IPC server listening on {self.socket_path}")

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self.socket_path.unlink(missing_ok=True)

    # --- Routes ---

    async def get_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.coordinator.status())

    async def get_env_vars(self, request: web.Request) -> web.Response:
        try:
            env_vars = await self.coordinator.fetch_env_vars()
        except (AgentError, ConnectionError, asyncio.TimeoutError) as e:
            logger.warning(f"IPC env-vars failed: {e}")
            return web.json_response({"error": str(e) or "Hub did not respond"}, status=503)
        return web.json_response({"envVars": env_vars})

    async def refresh_env_vars(self, request: web.Request) -> web.Response:
        try:
            result = await self.coordinator.refresh_env_vars()
        except (AgentError, ConnectionError, asyncio.TimeoutError, OSError, ValueError) as e:
            logger.warning(f"IPC refresh-env-vars failed: {e}")
            return web.json_response({"success": False, "error": str(e) or "Hub did not respond"}, status=503)
        return web.json_response({"success": True, **result})


async def ipc_request(socket_path: Path, method: str, path: str, timeout: float = CLIENT_TIMEOUT) -> dict[str, Any]:
    """Call the agent's IPC API. Raises AgentError on HTTP errors or if the agent isn't running."""
    if not socket_path.exists():
        raise AgentError(f"Agent is not running (no socket at {socket_path})")
    connector = aiohttp.UnixConnector(path=str(socket_path))
    async with aiohttp.ClientSession(connector=connector, timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.request(method, f"http://localhost{path}") as resp:
            try:
                data = await resp.json()
            except aiohttp.ContentTypeError:
                text = (await resp.text()).strip()
                raise AgentError(f"HTTP {resp.status}: {text or resp.reason}") from None
            if resp.status >= 400:
                raise AgentError(data.get("error") or f"HTTP {resp.status}")
            return data
