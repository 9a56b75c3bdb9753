"""Type definitions for the agent."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from typing_extensions import Self


@dataclass
class Window:
    """A hub tab bound to one tmux window in the agent's session."""

    tab_id: str
    window_index: int
    command: list[str] = field(default_factory=list)  # Empty when recovered
    ended: bool = False
    # Output capture; owned by the SessionRegistry
    capture_proc: asyncio.subprocess.Process | None = None
    capture_task: asyncio.Task | None = None

    @property
    def window_name(self) -> str:
        return window_name_for(self.tab_id)

    @property
    def status(self) -> str:
        return "stopped" if self.ended else "running"


WINDOW_PREFIX = "tab_"


def window_name_for(tab_id: str) -> str:
    return f"{WINDOW_PREFIX}{tab_id}"


@dataclass
class EnvVarEntry:
    value: str
    encrypted: bool = False
    synced_at: str = ""


@dataclass
class EnvVarState:
    """Last environment snapshot applied to the workspace, persisted across restarts."""

    workspace_id: str
    repository_id: str | None = None
    env_vars: dict[str, EnvVarEntry] = field(default_factory=dict)
    last_sync: str = ""
    version: int = 1

    def values(self) -> dict[str, str]:
        return {key: entry.value for key, entry in self.env_vars.items()}

    def to_json(self) -> str:
        """Serialize to JSON string."""
        data = asdict(self)
        return json.dumps(
            {
                "version": data["version"],
                "lastSync": data["last_sync"],
                "workspaceId": data["workspace_id"],
                "repositoryId": data["repository_id"],
                "envVars": {
                    key: {"value": e["value"], "encrypted": e["encrypted"], "syncedAt": e["synced_at"]}
                    for key, e in data["env_vars"].items()
                },
            },
            indent=2,
        )

    @classmethod
    def from_json(cls, data: str) -> Self:
        """Deserialize from JSON string.

        Raises ValueError (json.JSONDecodeError is a subclass) if the content
        isn't a snapshot object.
        """
        parsed = json.loads(data)
        if not isinstance(parsed, dict) or not isinstance(parsed.get("envVars", {}), dict):
            raise ValueError("env snapshot is not an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create from dict, handling missing fields gracefully."""
        env_vars = {}
        for key, entry in data.get("envVars", {}).items():
            if isinstance(entry, dict):
                env_vars[key] = EnvVarEntry(
                    value=str(entry.get("value", "")),
                    encrypted=bool(entry.get("encrypted", False)),
                    synced_at=entry.get("syncedAt", ""),
                )
            else:
                env_vars[key] = EnvVarEntry(value=str(entry))
        return cls(
            workspace_id=data.get("workspaceId", ""),
            repository_id=data.get("repositoryId"),
            env_vars=env_vars,
            last_sync=data.get("lastSync", ""),
            version=data.get("version", 1),
        )

    @classmethod
    def from_values(cls, workspace_id: str, repository_id: str | None, values: dict[str, str]) -> Self:
        now = datetime.now(timezone.utc).isoformat()
        return cls(
            workspace_id=workspace_id,
            repository_id=repository_id,
            env_vars={key: EnvVarEntry(value=value, synced_at=now) for key, value in values.items()},
            last_sync=now,
        )


@dataclass
class EnvVarDiff:
    """Partition of a desired environment against the current snapshot."""

    to_add: dict[str, str] = field(default_factory=dict)
    to_remove: list[str] = field(default_factory=list)
    to_change: dict[str, tuple[str, str]] = field(default_factory=dict)  # key -> (old, new)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove or self.to_change)

    def counts(self) -> dict[str, int]:
        return {"added": len(self.to_add), "removed": len(self.to_remove), "changed": len(self.to_change)}
