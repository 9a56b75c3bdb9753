"""Ancillary request handlers: thin wrappers over local CLIs and psutil.

Commands are always run from an argv list, never through a shell.
"""

import asyncio

from ..errors import CommandError


async def _run(*cmd: str, cwd: str | None = None, timeout: float = 30) -> tuple[int, str, str]:
    """Run a subprocess and return (returncode, stdout, stderr).

    A missing binary is reported as returncode 127, a timeout as -1.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", f"{cmd[0]}: command not found"

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, "", "Command timed out"
    return (
        proc.returncode or 0,
        stdout_bytes.decode("utf-8", errors="replace"),
        stderr_bytes.decode("utf-8", errors="replace"),
    )


async def run_checked(*cmd: str, cwd: str | None = None, timeout: float = 30) -> str:
    """Run a subprocess, return stdout, raise CommandError on non-zero exit."""
    rc, stdout, stderr = await _run(*cmd, cwd=cwd, timeout=timeout)
    if rc != 0:
        raise CommandError(list(cmd), rc, stderr or stdout)
    return stdout
