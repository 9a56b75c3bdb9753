"""Agent configuration, read from the environment once at startup.

The entry point builds one AgentConfig and passes it down.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from typing_extensions import Self

from . import __version__
from .errors import ConfigError


_REQUIRED = ("SESSION_HUB_URL", "WORKSPACE_ID", "AGENT_TOKEN")


@dataclass
class AgentConfig:
    """Everything the agent needs to run. Durations are in seconds."""

    hub_url: str
    workspace_id: str
    agent_token: str
    version: str = __version__
    heartbeat_interval: float = 30.0
    max_reconnect_attempts: int = 0  # 0 = retry forever
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 300.0
    buffer_size: int = 1000
    tmux_prefix: str = "sh_"
    workspace_dir: Path = Path("/workspace")
    upload_dir: Path = Path("/workspace/.images")
    env_state_path: Path = Path("~/.session-hub-env-state.json").expanduser()
    pipe_dir: Path = Path("/tmp")
    log_dir: Path | None = None

    @property
    def session_name(self) -> str:
        """tmux session owned by this agent."""
        return f"{self.tmux_prefix}{self.workspace_id}"

    @property
    def agent_url(self) -> str:
        """Websocket endpoint on the hub."""
        base = self.hub_url.rstrip("/")
        if base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        elif base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        return f"{base}/agent"

    @property
    def ipc_socket_path(self) -> Path:
        return Path(f"/tmp/session-hub-agent-{self.workspace_id}.sock")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Self:
        """Build a config from environment variables.

        Raises ConfigError if a required variable is missing or a numeric
        variable doesn't parse.
        """
        env = os.environ if environ is None else environ
        missing = [name for name in _REQUIRED if not env.get(name)]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        defaults = cls(hub_url="", workspace_id="", agent_token="")
        log_dir = env.get("LOG_DIR")
        return cls(
            hub_url=env["SESSION_HUB_URL"],
            workspace_id=env["WORKSPACE_ID"],
            agent_token=env["AGENT_TOKEN"],
            heartbeat_interval=_millis(env, "HEARTBEAT_INTERVAL", defaults.heartbeat_interval),
            max_reconnect_attempts=_int(env, "MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts),
            reconnect_base_delay=_millis(env, "RECONNECT_BASE_DELAY", defaults.reconnect_base_delay),
            reconnect_max_delay=_millis(env, "RECONNECT_MAX_DELAY", defaults.reconnect_max_delay),
            buffer_size=_int(env, "BUFFER_SIZE", defaults.buffer_size),
            tmux_prefix=env.get("TMUX_PREFIX", defaults.tmux_prefix),
            workspace_dir=Path(env.get("WORKSPACE_DIR", str(defaults.workspace_dir))),
            upload_dir=Path(env.get("UPLOAD_DIR", str(defaults.upload_dir))),
            env_state_path=Path(env.get("ENV_STATE_PATH", str(defaults.env_state_path))).expanduser(),
            pipe_dir=Path(env.get("PIPE_DIR", str(defaults.pipe_dir))),
            log_dir=Path(log_dir).expanduser() if log_dir else None,
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _millis(env: Mapping[str, str], name: str, default: float) -> float:
    """Read a millisecond duration, returned in seconds."""
    if not env.get(name):
        return default
    return _int(env, name, 0) / 1000.0

