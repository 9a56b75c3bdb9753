"""Git operations on the workspace checkout, via the git CLI."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from ..logging_config import get_logger
from . import _run, run_checked

logger = get_logger(__name__)

_STATUS_CODES = {
    "A": "added",
    "M": "modified",
    "D": "deleted",
    "R": "renamed",
    "C": "copied",
    "T": "modified",
    "U": "modified",
}

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(.*?) b/.*$", re.MULTILINE)


def _parse_branch(header: str) -> str:
    """Branch name from a porcelain '## ' header."""
    if header.startswith("No commits yet on "):
        return header[len("No commits yet on ") :].strip()
    if header.startswith("HEAD (no branch)"):
        return "HEAD"
    return header.split("...", 1)[0].split(" ", 1)[0] or "unknown"


def parse_status(output: str) -> dict[str, Any]:
    """Parse `git status --porcelain=v1 --branch -z` output."""
    entries = output.split("\0")
    branch = "unknown"
    staged: list[dict[str, str]] = []
    unstaged: list[dict[str, str]] = []
    untracked: list[str] = []

    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if not entry:
            continue
        if entry.startswith("## "):
            branch = _parse_branch(entry[3:])
            continue
        if len(entry) < 4:
            continue
        x, y, path = entry[0], entry[1], entry[3:]
        if x == "?":
            untracked.append(path)
            continue
        if x == "!":
            continue
        old_path = None
        if x in "RC":
            # -z puts the source path in the next entry
            old_path = entries[i] if i < len(entries) else None
            i += 1
        if x != " ":
            change = {"path": path, "status": _STATUS_CODES.get(x, "modified")}
            if old_path:
                change["oldPath"] = old_path
            staged.append(change)
        if y != " ":
            unstaged.append({"path": path, "status": _STATUS_CODES.get(y, "modified")})

    return {
        "branch": branch,
        "isClean": not (staged or unstaged or untracked),
        "staged": staged,
        "unstaged": unstaged,
        "untracked": untracked,
    }


def split_diff(diff: str) -> dict[str, str]:
    """Split a unified diff into {path: that file's diff}."""
    result: dict[str, str] = {}
    matches = list(_DIFF_HEADER_RE.finditer(diff))
    for n, match in enumerate(matches):
        end = matches[n + 1].start() if n + 1 < len(matches) else len(diff)
        result[match.group(1)] = diff[match.start() : end].rstrip("\n")
    return result


def parse_numstat(output: str) -> list[tuple[str, int, int]]:
    """(path, additions, deletions) per line of `git diff --numstat`. Binary files count 0."""
    stats = []
    for line in output.splitlines():
        parts = line.split("\t", 2)
        if len(parts) != 3:
            continue
        added, deleted, path = parts
        stats.append((path, int(added) if added.isdigit() else 0, int(deleted) if deleted.isdigit() else 0))
    return stats


class GitHandler:
    def __init__(self, workspace_dir: Path = Path("/workspace")):
        self.workspace_dir = workspace_dir

    async def _git(self, *args: str) -> str:
        return await run_checked("git", *args, cwd=str(self.workspace_dir))

    async def is_repo(self) -> bool:
        rc, _, _ = await _run("git", "rev-parse", "--git-dir", cwd=str(self.workspace_dir))
        return rc == 0

    async def status(self) -> dict[str, Any]:
        return parse_status(await self._git("status", "--porcelain=v1", "--branch", "-z"))

    async def diff(self, staged: bool = False, files: list[str] | None = None) -> dict[str, Any]:
        args = ["--cached"] if staged else []
        if files:
            args += ["--", *files]
        content = await self._git("diff", *args)
        numstat = parse_numstat(await self._git("diff", "--numstat", *args))
        per_file = split_diff(content)

        result_files = [
            {"path": path, "additions": added, "deletions": deleted, "content": per_file.get(path, "")}
            for path, added, deleted in numstat
        ]
        return {
            "files": result_files,
            "summary": {
                "insertions": sum(f["additions"] for f in result_files),
                "deletions": sum(f["deletions"] for f in result_files),
                "filesChanged": len(result_files),
            },
        }

    async def stage(self, files: list[str] | None = None) -> None:
        if files:
            await self._git("add", "--", *files)
        else:
            await self._git("add", "-A")

    async def unstage(self, files: list[str] | None = None) -> None:
        if files:
            await self._git("reset", "-q", "HEAD", "--", *files)
        else:
            await self._git("reset", "-q", "HEAD")

    async def commit(self, message: str) -> dict[str, str]:
        if not message or not message.strip():
            raise ValueError("Commit message is required")
        await self._git("commit", "-m", message)
        log = await self._git("log", "-1", "--format=%H%x00%an%x00%aI")
        commit_hash, author, date = (log.strip().split("\0") + ["", "", ""])[:3]
        logger.info(f"Committed {commit_hash[:8]}")
        return {"hash": commit_hash, "message": message, "author": author, "date": date}

    async def discard(self, files: list[str] | None = None) -> None:
        """Revert tracked files to HEAD and delete untracked ones. All when files is empty."""
        if not files:
            await self._git("checkout", "--", ".")
            await self._git("clean", "-f", "-d")
            return

        untracked = set((await self.status())["untracked"])
        tracked_files = [f for f in files if f not in untracked]
        untracked_files = [f for f in files if f in untracked]
        if tracked_files:
            await self._git("checkout", "--", *tracked_files)
        if untracked_files:
            await self._git("clean", "-f", "--", *untracked_files)

    async def set_config(self, name: str | None = None, email: str | None = None) -> dict[str, str]:
        """Set the global commit identity; returns the effective values."""
        if name:
            await self._git("config", "--global", "user.name", name)
        if email:
            await self._git("config", "--global", "user.email", email)
        _, current_name, _ = await _run("git", "config", "--global", "user.name")
        _, current_email, _ = await _run("git", "config", "--global", "user.email")
        return {"name": current_name.strip(), "email": current_email.strip()}
