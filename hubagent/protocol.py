"""Hub channel message catalogue.

Frames on the websocket are JSON text: {"event": "<kind>", "data": {...}}.
Every kind the agent sends or accepts is listed in MessageKind; inbound
payloads are decoded once, here, into typed commands so handlers never
touch raw dicts.

Request/response kinds (git, docker, stats, tailscale, file upload, env)
carry a requestId that the reply echoes verbatim.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ProtocolError


class MessageKind(str, Enum):
    # agent -> hub
    AGENT_REGISTER = "agent:register"
    AGENT_HEARTBEAT = "agent:heartbeat"
    AGENT_STATE = "agent:state"
    AGENT_ERROR = "agent:error"
    TAB_CREATED = "tab:created"
    TAB_OUTPUT = "tab:output"
    TAB_ENDED = "tab:ended"
    TAB_BUFFER = "tab:buffer"
    FILE_UPLOADED = "file:uploaded"
    GIT_STATUS_RESPONSE = "git:status:response"
    GIT_DIFF_RESPONSE = "git:diff:response"
    GIT_STAGE_RESPONSE = "git:stage:response"
    GIT_UNSTAGE_RESPONSE = "git:unstage:response"
    GIT_COMMIT_RESPONSE = "git:commit:response"
    GIT_DISCARD_RESPONSE = "git:discard:response"
    GIT_CONFIG_RESPONSE = "git:config:response"
    DOCKER_STATUS_RESPONSE = "docker:status:response"
    DOCKER_LOGS_RESPONSE = "docker:logs:response"
    DOCKER_START_RESPONSE = "docker:start:response"
    DOCKER_STOP_RESPONSE = "docker:stop:response"
    DOCKER_RESTART_RESPONSE = "docker:restart:response"
    STATS_RESPONSE = "stats:response"
    TAILSCALE_STATUS_RESPONSE = "tailscale:status:response"
    TAILSCALE_CONNECT_RESPONSE = "tailscale:connect:response"
    TAILSCALE_DISCONNECT_RESPONSE = "tailscale:disconnect:response"
    ENV_UPDATE_RESPONSE = "env:update:response"
    ENV_REQUEST = "env:request"

    # hub -> agent
    AGENT_REGISTERED = "agent:registered"
    AGENT_UPDATE = "agent:update"
    TAB_CREATE = "tab:create"
    TAB_INPUT = "tab:input"
    TAB_RESIZE = "tab:resize"
    TAB_CLOSE = "tab:close"
    TAB_ATTACH = "tab:attach"
    TAB_BUFFER_REQUEST = "tab:buffer-request"
    FILE_UPLOAD = "file:upload"
    GIT_STATUS = "git:status"
    GIT_DIFF = "git:diff"
    GIT_STAGE = "git:stage"
    GIT_UNSTAGE = "git:unstage"
    GIT_COMMIT = "git:commit"
    GIT_DISCARD = "git:discard"
    GIT_CONFIG = "git:config"
    DOCKER_STATUS = "docker:status"
    DOCKER_LOGS = "docker:logs"
    DOCKER_START = "docker:start"
    DOCKER_STOP = "docker:stop"
    DOCKER_RESTART = "docker:restart"
    STATS_REQUEST = "stats:request"
    TAILSCALE_STATUS = "tailscale:status"
    TAILSCALE_CONNECT = "tailscale:connect"
    TAILSCALE_DISCONNECT = "tailscale:disconnect"
    ENV_UPDATE = "env:update"
    ENV_RESPONSE = "env:response"


# Tab I/O and lifecycle: handled inline, in arrival order
ORDERED_KINDS = frozenset(
    {
        MessageKind.AGENT_REGISTERED,
        MessageKind.AGENT_UPDATE,
        MessageKind.TAB_CREATE,
        MessageKind.TAB_INPUT,
        MessageKind.TAB_RESIZE,
        MessageKind.TAB_CLOSE,
        MessageKind.TAB_ATTACH,
        MessageKind.TAB_BUFFER_REQUEST,
    }
)

# Request kind -> (reply kind, key the result goes under in the reply)
RESPONSES: dict[MessageKind, tuple[MessageKind, str | None]] = {
    MessageKind.GIT_STATUS: (MessageKind.GIT_STATUS_RESPONSE, "data"),
    MessageKind.GIT_DIFF: (MessageKind.GIT_DIFF_RESPONSE, "data"),
    MessageKind.GIT_STAGE: (MessageKind.GIT_STAGE_RESPONSE, None),
    MessageKind.GIT_UNSTAGE: (MessageKind.GIT_UNSTAGE_RESPONSE, None),
    MessageKind.GIT_COMMIT: (MessageKind.GIT_COMMIT_RESPONSE, "data"),
    MessageKind.GIT_DISCARD: (MessageKind.GIT_DISCARD_RESPONSE, None),
    MessageKind.GIT_CONFIG: (MessageKind.GIT_CONFIG_RESPONSE, "data"),
    MessageKind.DOCKER_STATUS: (MessageKind.DOCKER_STATUS_RESPONSE, "data"),
    MessageKind.DOCKER_LOGS: (MessageKind.DOCKER_LOGS_RESPONSE, "data"),
    MessageKind.DOCKER_START: (MessageKind.DOCKER_START_RESPONSE, None),
    MessageKind.DOCKER_STOP: (MessageKind.DOCKER_STOP_RESPONSE, None),
    MessageKind.DOCKER_RESTART: (MessageKind.DOCKER_RESTART_RESPONSE, None),
    MessageKind.STATS_REQUEST: (MessageKind.STATS_RESPONSE, "stats"),
    MessageKind.TAILSCALE_STATUS: (MessageKind.TAILSCALE_STATUS_RESPONSE, "status"),
    MessageKind.TAILSCALE_CONNECT: (MessageKind.TAILSCALE_CONNECT_RESPONSE, None),
    MessageKind.TAILSCALE_DISCONNECT: (MessageKind.TAILSCALE_DISCONNECT_RESPONSE, None),
}

# Agent-initiated request -> the kind that answers it
AGENT_REQUESTS: dict[MessageKind, MessageKind] = {
    MessageKind.ENV_REQUEST: MessageKind.ENV_RESPONSE,
}

INBOUND_KINDS = frozenset(ORDERED_KINDS | set(RESPONSES) | {MessageKind.FILE_UPLOAD, MessageKind.ENV_UPDATE})
REPLY_KINDS = frozenset(AGENT_REQUESTS.values())


# --- Decoded inbound commands ---


@dataclass
class RegisteredAck:
    success: bool
    recovery_mode: bool = False
    error: str | None = None


@dataclass
class UpdateCommand:
    version: str
    bundle_url: str = ""


@dataclass
class TabCreate:
    tab_id: str
    command: list[str] = field(default_factory=list)
    env_vars: dict[str, str] = field(default_factory=dict)


@dataclass
class TabInput:
    tab_id: str
    data: str


@dataclass
class TabResize:
    tab_id: str
    cols: int
    rows: int


@dataclass
class TabRef:
    """tab:close and tab:attach."""

    tab_id: str


@dataclass
class BufferRequest:
    tab_id: str
    lines: int = 1000


@dataclass
class FileUpload:
    request_id: str
    tab_id: str | None
    filename: str
    data: str  # base64
    mime_type: str = "application/octet-stream"


@dataclass
class ToolRequest:
    """A git/docker/stats/tailscale request. params keeps the kind-specific fields."""

    kind: MessageKind
    request_id: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class EnvUpdate:
    workspace_id: str
    env_vars: dict[str, str]
    repository_id: str | None = None
    request_id: str | None = None


@dataclass
class EnvReply:
    env_vars: dict[str, str] | None
    error: str | None = None
    request_id: str | None = None


Command = (
    RegisteredAck
    | UpdateCommand
    | TabCreate
    | TabInput
    | TabResize
    | TabRef
    | BufferRequest
    | FileUpload
    | ToolRequest
    | EnvUpdate
    | EnvReply
)


@dataclass
class Message:
    kind: MessageKind
    command: Command


def encode(kind: MessageKind, data: dict[str, Any]) -> str:
    return json.dumps({"event": kind.value, "data": data})


def decode(raw: str | bytes) -> Message:
    """Parse a frame into a typed command.

    Raises ProtocolError for malformed JSON, unknown kinds, or payloads
    missing required fields.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"invalid JSON frame: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ProtocolError("frame has no event")

    try:
        kind = MessageKind(frame["event"])
    except ValueError:
        raise ProtocolError(f"unknown message kind {frame['event']!r}") from None
    if kind not in INBOUND_KINDS and kind not in REPLY_KINDS:
        raise ProtocolError(f"{kind.value} is not an inbound message")

    data = frame.get("data") or {}
    if not isinstance(data, dict):
        raise ProtocolError(f"{kind.value}: payload is not an object")

    try:
        return Message(kind, _decode_command(kind, data))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"{kind.value}: malformed payload ({e!r})") from e


def _decode_command(kind: MessageKind, data: dict[str, Any]) -> Command:
    if kind is MessageKind.AGENT_REGISTERED:
        return RegisteredAck(
            success=bool(data.get("success", False)),
            recovery_mode=bool(data.get("recoveryMode", False)),
            error=data.get("error"),
        )
    if kind is MessageKind.AGENT_UPDATE:
        return UpdateCommand(version=str(data["version"]), bundle_url=data.get("bundleUrl", ""))
    if kind is MessageKind.TAB_CREATE:
        command = data.get("command") or []
        if isinstance(command, str):
            command = [command]
        return TabCreate(
            tab_id=_str(data, "tabId"),
            command=[str(part) for part in command],
            env_vars={str(k): str(v) for k, v in (data.get("envVars") or {}).items()},
        )
    if kind is MessageKind.TAB_INPUT:
        return TabInput(tab_id=_str(data, "tabId"), data=str(data["data"]))
    if kind is MessageKind.TAB_RESIZE:
        return TabResize(tab_id=_str(data, "tabId"), cols=int(data["cols"]), rows=int(data["rows"]))
    if kind in (MessageKind.TAB_CLOSE, MessageKind.TAB_ATTACH):
        return TabRef(tab_id=_str(data, "tabId"))
    if kind is MessageKind.TAB_BUFFER_REQUEST:
        return BufferRequest(tab_id=_str(data, "tabId"), lines=int(data.get("lines", 1000)))
    if kind is MessageKind.FILE_UPLOAD:
        return FileUpload(
            request_id=_str(data, "requestId"),
            tab_id=data.get("tabId"),
            filename=str(data.get("filename", "")),
            data=str(data["data"]),
            mime_type=str(data.get("mimeType") or "application/octet-stream"),
        )
    if kind is MessageKind.ENV_UPDATE:
        env_vars = data.get("envVars") or {}
        if not isinstance(env_vars, dict):
            raise TypeError("envVars must be an object")
        return EnvUpdate(
            workspace_id=str(data.get("workspaceId", "")),
            env_vars={str(k): str(v) for k, v in env_vars.items()},
            repository_id=data.get("repositoryId"),
            request_id=data.get("requestId"),
        )
    if kind is MessageKind.ENV_RESPONSE:
        env_vars = data.get("envVars")
        return EnvReply(
            env_vars={str(k): str(v) for k, v in env_vars.items()} if isinstance(env_vars, dict) else None,
            error=data.get("error"),
            request_id=data.get("requestId"),
        )
    if kind in RESPONSES:
        params = {k: v for k, v in data.items() if k != "requestId"}
        return ToolRequest(kind=kind, request_id=_str(data, "requestId"), params=params)
    raise ValueError(f"no decoder for {kind.value}")


def _str(data: dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string")
    return value
