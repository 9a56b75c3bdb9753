"""Workspace environment variables pushed by the hub.

The last applied set is kept in a snapshot file (default
~/.session-hub-env-state.json, mode 0600) so a restarted agent can diff the
next push against what the workspace already has.

Snapshot layout:
  {"version": 1, "lastSync": ISO, "workspaceId": ..., "repositoryId": ...,
   "envVars": {KEY: {"value": ..., "encrypted": false, "syncedAt": ISO}}}
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import InvalidEnvVarError
from .logging_config import get_logger
from .types import EnvVarDiff, EnvVarState

if TYPE_CHECKING:
    from .sessions import SessionRegistry

logger = get_logger(__name__)


def validate_env_vars(env_vars: dict[str, str]) -> None:
    """Raise InvalidEnvVarError for any name or value os.environ would refuse."""
    for key, value in env_vars.items():
        if not key or "=" in key or "\0" in key:
            raise InvalidEnvVarError(f"Invalid environment variable name: {key!r}")
        if "\0" in value:
            raise InvalidEnvVarError(f"Environment variable {key} contains a NUL byte")


def _write_atomic(path: Path, text: str) -> None:
    """Write text to path via temp file + chmod 600 + rename.

    A failure at any step leaves the previous file untouched.
    """
    tmp = path.with_name(path.name + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        tmp.write_text(text, encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


class EnvStateManager:
    """Loads, diffs, persists and applies the workspace environment snapshot."""

    def __init__(self, path: Path, workspace_id: str):
        self.path = path
        self.workspace_id = workspace_id
        self.state: EnvVarState | None = None

    def load(self) -> EnvVarState | None:
        """Read the snapshot. Missing -> None; corrupt -> renamed aside, None.

        Other read errors (permissions) propagate.
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.info("No env snapshot yet (fresh workspace)")
            self.state = None
            return None

        try:
            self.state = EnvVarState.from_json(raw.decode("utf-8"))
        except ValueError as e:
            backup = self.path.with_name(f"{self.path.name}.corrupt.{int(time.time() * 1000)}")
            logger.warning(f"Env snapshot is corrupt ({e}), moving it to {backup}")
            try:
                os.replace(self.path, backup)
            except OSError as backup_error:
                logger.error(f"Failed to back up corrupt env snapshot: {backup_error}")
            self.state = None
            return None

        logger.info(f"Loaded env snapshot: {len(self.state.env_vars)} variable(s)")
        return self.state

    def current_values(self) -> dict[str, str]:
        return self.state.values() if self.state else {}

    def compute_diff(self, new_vars: dict[str, str]) -> EnvVarDiff:
        """Partition new_vars against the snapshot into add / remove / change."""
        old = self.current_values()
        diff = EnvVarDiff()
        for key, value in new_vars.items():
            if key not in old:
                diff.to_add[key] = value
            elif old[key] != value:
                diff.to_change[key] = (old[key], value)
        diff.to_remove = [key for key in old if key not in new_vars]
        return diff

    async def save(self, env_vars: dict[str, str], repository_id: str | None) -> EnvVarState:
        """Persist env_vars as the new snapshot without blocking the event loop."""
        state = EnvVarState.from_values(self.workspace_id, repository_id, env_vars)
        await asyncio.to_thread(_write_atomic, self.path, state.to_json())
        self.state = state
        logger.info(f"Saved env snapshot to {self.path}: {len(env_vars)} variable(s)")
        return state

    async def apply_update(
        self,
        env_vars: dict[str, str],
        repository_id: str | None,
        registry: SessionRegistry | None = None,
    ) -> EnvVarDiff:
        """Apply a pushed environment: process env, tmux global env, then snapshot.

        New tabs inherit the tmux global environment; running shells keep theirs.
        """
        validate_env_vars(env_vars)
        diff = self.compute_diff(env_vars)
        for key in diff.to_remove:
            os.environ.pop(key, None)
            if registry is not None:
                await registry.set_environment(key, None)
        for key, value in diff.to_add.items():
            os.environ[key] = value
            if registry is not None:
                await registry.set_environment(key, value)
        for key, (_old, new) in diff.to_change.items():
            os.environ[key] = new
            if registry is not None:
                await registry.set_environment(key, new)

        await self.save(env_vars, repository_id)
        counts = diff.counts()
        logger.info(
            "Applied env update: +%d -%d ~%d", counts["added"], counts["removed"], counts["changed"]
        )
        return diff
