"""Session registry: hub tabs backed by windows of one tmux session.

The agent owns a single tmux session (`<prefix><workspaceId>`). Each tab the
hub opens becomes a window named `tab_<tabId>` in that session. Output is
streamed, not polled: every window gets a capture process that points
`tmux pipe-pane` at a FIFO and cats the FIFO to its stdout, which a reader
task forwards to the on_output handler.

The tmux session outlives the agent. On startup the registry finds the
existing `tab_*` windows and re-attaches capture (recovery), so tabs survive
agent restarts and upgrades.

FIFOs:
  {pipe_dir}/tmux-pipe-{session}-{window_index}
"""

from __future__ import annotations

import asyncio
import codecs
import shlex
import shutil
from pathlib import Path
from typing import Awaitable, Callable

from .errors import DependencyMissingError, TmuxError
from .logging_config import get_logger
from .types import WINDOW_PREFIX, Window, window_name_for

logger = get_logger(__name__)

OutputHandler = Callable[[str, str], Awaitable[None]]
ExitHandler = Callable[[str, int], Awaitable[None]]
ErrorHandler = Callable[[str, BaseException], Awaitable[None]]

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
SCROLLBACK_LINES = 1000
CAPTURE_READ_SIZE = 4096
CAPTURE_STOP_GRACE = 2.0  # Seconds between SIGTERM and SIGKILL


async def _tmux(*args: str) -> str:
    """Run a tmux command, return stdout."""
    proc = await asyncio.create_subprocess_exec(
        "tmux",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        err = stderr.decode("utf-8", errors="replace").strip()
        raise TmuxError(f"tmux {args[0]} failed ({proc.returncode}): {err}")
    return stdout.decode("utf-8", errors="replace")


def escape_literal_keys(data: str) -> str:
    """Make data safe as a single literal send-keys argument.

    tmux splits commands on an argument ending in ';', so a trailing
    semicolon is escaped. Everything else passes through verbatim with -l.
    """
    if data.endswith(";"):
        return data[:-1] + "\\;"
    return data


class SessionRegistry:
    """Maps hub tab ids to tmux windows and supervises their output capture.

    The only component that runs mutating tmux commands. Window discovery
    and creation are serialized by a lock so concurrent creates can't pick
    the same index.
    """

    def __init__(
        self,
        session_name: str,
        on_output: OutputHandler,
        on_exit: ExitHandler,
        on_error: ErrorHandler,
        workspace_dir: Path = Path("/workspace"),
        pipe_dir: Path = Path("/tmp"),
    ):
        self.session_name = session_name
        self.workspace_dir = workspace_dir
        self.pipe_dir = pipe_dir
        self.on_output = on_output
        self.on_exit = on_exit
        self.on_error = on_error
        self.windows: dict[str, Window] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    async def _exec(self, *args: str) -> str:
        return await _tmux(*args)

    # --- Lifecycle ---

    async def initialize(self) -> list[str]:
        """Check for tmux, then recover or create the session.

        Idempotent. Returns the tab ids recovered from a surviving session.
        Raises DependencyMissingError if tmux isn't installed.
        """
        async with self._lock:
            if self._initialized:
                return []
            if shutil.which("tmux") is None:
                raise DependencyMissingError("tmux")

            recovered: list[str] = []
            if await self._session_exists():
                logger.info(f"Session '{self.session_name}' exists, recovering windows")
                recovered = await self._recover_windows()
                logger.info(f"Recovered {len(recovered)} tab(s): {', '.join(recovered) or '-'}")
            else:
                await self._create_session()
            self._initialized = True
            return recovered

    async def cleanup(self) -> None:
        """Close every window and kill the session. Full teardown only."""
        for tab_id in list(self.windows):
            await self.close_window(tab_id)
        try:
            await self._exec("kill-session", "-t", self.session_name)
        except TmuxError as e:
            logger.debug(f"kill-session: {e}")
        self._initialized = False

    async def detach(self) -> None:
        """Stop output capture but leave every window running (agent shutdown)."""
        for window in list(self.windows.values()):
            await self._stop_capture(window)
            try:
                await self._exec("pipe-pane", "-t", self._target(window))
            except TmuxError as e:
                logger.debug(f"Tab {window.tab_id}: pipe-pane off: {e}")
            self._pipe_path(window.window_index).unlink(missing_ok=True)
        self.windows.clear()
        self._initialized = False

    # --- Windows ---

    async def create_window(self, tab_id: str, command: list[str], env: dict[str, str] | None = None) -> int:
        """Open a window for a tab and start its command. Returns the window index.

        Idempotent: a live window for tab_id is returned as-is.
        """
        existing = self.windows.get(tab_id)
        if existing is not None and not existing.ended:
            return existing.window_index

        async with self._lock:
            existing = self.windows.get(tab_id)
            if existing is not None and not existing.ended:
                return existing.window_index

            await self._ensure_session()
            hint = await self._next_free_index()

            argv = ["new-window", "-d", "-P", "-F", "#{window_index}", "-t", f"{self.session_name}:"]
            argv += ["-n", window_name_for(tab_id)]
            if self.workspace_dir.is_dir():
                argv += ["-c", str(self.workspace_dir)]
            for key, value in (env or {}).items():
                argv += ["-e", f"{key}={value}"]
            out = await self._exec(*argv)

            try:
                index = int(out.strip().splitlines()[-1])
            except (ValueError, IndexError):
                logger.warning(f"Tab {tab_id}: couldn't read window index from tmux ({out!r}), using {hint}")
                index = hint

            window = Window(tab_id=tab_id, window_index=index, command=list(command))
            self.windows[tab_id] = window
            logger.info(f"Tab {tab_id}: created window {index}")

        await self._start_capture(window)
        if command:
            target = self._target(window)
            await self._exec("send-keys", "-t", target, "-l", "--", escape_literal_keys(shlex.join(command)))
            await self._exec("send-keys", "-t", target, "Enter")
        return index

    async def send_input(self, tab_id: str, data: str) -> bool:
        """Type data into a tab's window as literal keystrokes.

        Returns False if the tab is unknown or has ended.
        """
        window = self.windows.get(tab_id)
        if window is None or window.ended:
            logger.warning(f"Input for unknown or ended tab {tab_id}")
            return False
        if not data:
            return True
        try:
            await self._exec("send-keys", "-t", self._target(window), "-l", "--", escape_literal_keys(data))
        except TmuxError as e:
            logger.warning(f"Tab {tab_id}: send-keys failed: {e}")
            return False
        return True

    async def resize(self, tab_id: str, cols: int, rows: int) -> None:
        """Resize a tab's window. Best effort; failures are only logged."""
        window = self.windows.get(tab_id)
        if window is None or window.ended:
            logger.debug(f"Resize for unknown or ended tab {tab_id}")
            return
        try:
            await self._exec("resize-window", "-t", self._target(window), "-x", str(cols), "-y", str(rows))
        except TmuxError as e:
            logger.debug(f"Tab {tab_id}: resize failed: {e}")

    async def close_window(self, tab_id: str) -> bool:
        """Stop capture, kill the window and forget it. Idempotent."""
        window = self.windows.get(tab_id)
        if window is None:
            return False

        window.ended = True
        await self._stop_capture(window)
        try:
            await self._exec("kill-window", "-t", self._target(window))
        except TmuxError as e:
            logger.debug(f"Tab {tab_id}: kill-window: {e}")
        self._pipe_path(window.window_index).unlink(missing_ok=True)
        if self.windows.get(tab_id) is window:
            del self.windows[tab_id]
        logger.info(f"Tab {tab_id}: closed window {window.window_index}")
        return True

    async def capture_scrollback(self, tab_id: str, lines: int = SCROLLBACK_LINES) -> list[str]:
        """Recent screen + scrollback of a tab's window. [] if unavailable."""
        window = self.windows.get(tab_id)
        if window is None or window.ended:
            return []
        try:
            out = await self._exec("capture-pane", "-p", "-t", self._target(window), "-S", f"-{lines}")
        except TmuxError as e:
            logger.debug(f"Tab {tab_id}: capture-pane failed: {e}")
            return []
        result = out.split("\n")
        # Trailing blank rows are unused screen, not output
        while result and not result[-1].strip():
            result.pop()
        return result[-lines:] if lines > 0 else []

    async def set_environment(self, key: str, value: str | None) -> None:
        """Set (or unset, when value is None) a variable in the tmux global environment."""
        try:
            if value is None:
                await self._exec("set-environment", "-g", "-u", key)
            else:
                await self._exec("set-environment", "-g", key, value)
        except TmuxError as e:
            logger.warning(f"set-environment {key}: {e}")

    def get(self, tab_id: str) -> Window | None:
        return self.windows.get(tab_id)

    def has_active_window(self, tab_id: str) -> bool:
        window = self.windows.get(tab_id)
        return window is not None and not window.ended

    def get_window_status(self) -> list[dict]:
        return [
            {"tab_id": w.tab_id, "window_index": w.window_index, "ended": w.ended}
            for w in self.windows.values()
        ]

    # --- Output capture ---

    def _pipe_path(self, window_index: int) -> Path:
        return self.pipe_dir / f"tmux-pipe-{self.session_name}-{window_index}"

    def _capture_argv(self, window: Window) -> list[str]:
        """Command that streams a window's output on stdout until the pane closes."""
        pipe = shlex.quote(str(self._pipe_path(window.window_index)))
        target = shlex.quote(self._target(window))
        pipe_cmd = shlex.quote(f"cat > {pipe}")
        script = f"rm -f {pipe}; mkfifo {pipe} && tmux pipe-pane -t {target} {pipe_cmd} && exec cat {pipe}"
        return ["bash", "-c", script]

    async def _start_capture(self, window: Window) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._capture_argv(window),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Tab {window.tab_id}: failed to start output capture: {e}")
            await self.on_error(window.tab_id, e)
            return
        window.capture_proc = proc
        window.capture_task = asyncio.create_task(self._read_capture(window, proc))

    async def _read_capture(self, window: Window, proc: asyncio.subprocess.Process) -> None:
        """Forward capture output in order, then report the exit."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await proc.stdout.read(CAPTURE_READ_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self.on_output(window.tab_id, text)
            tail = decoder.decode(b"", final=True)
            if tail:
                await self.on_output(window.tab_id, tail)
            returncode = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Tab {window.tab_id}: output capture failed")
            await self.on_error(window.tab_id, e)
            return
        await self._capture_exited(window, returncode)

    async def _capture_exited(self, window: Window, returncode: int | None) -> None:
        if window.ended:
            return
        window.ended = True
        if self.windows.get(window.tab_id) is window:
            del self.windows[window.tab_id]
        self._pipe_path(window.window_index).unlink(missing_ok=True)
        logger.info(f"Tab {window.tab_id}: capture exited ({returncode})")
        await self.on_exit(window.tab_id, returncode or 0)

    async def _stop_capture(self, window: Window) -> None:
        # Reader first, so terminating the process isn't reported as a tab exit
        task = window.capture_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        proc = window.capture_proc
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=CAPTURE_STOP_GRACE)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
        window.capture_proc = None
        window.capture_task = None

    # --- tmux helpers ---

    def _target(self, window: Window) -> str:
        return f"{self.session_name}:{window.window_index}"

    async def _session_exists(self) -> bool:
        try:
            await self._exec("has-session", "-t", f"={self.session_name}")
            return True
        except TmuxError:
            return False

    async def _create_session(self) -> None:
        logger.info(f"Creating tmux session '{self.session_name}'")
        argv = ["new-session", "-d", "-s", self.session_name, "-x", str(DEFAULT_COLS), "-y", str(DEFAULT_ROWS)]
        if self.workspace_dir.is_dir():
            argv += ["-c", str(self.workspace_dir)]
        await self._exec(*argv)

    async def _ensure_session(self) -> None:
        """Recreate the session if something killed it since initialize()."""
        if await self._session_exists():
            return
        logger.warning(f"Session '{self.session_name}' disappeared, recreating")
        await self._create_session()

    async def _list_windows(self) -> list[tuple[int, str]]:
        try:
            out = await self._exec("list-windows", "-t", self.session_name, "-F", "#{window_index}:#{window_name}")
        except TmuxError as e:
            logger.debug(f"list-windows: {e}")
            return []
        windows = []
        for line in out.splitlines():
            index_str, sep, name = line.partition(":")
            if not sep:
                continue
            try:
                windows.append((int(index_str), name))
            except ValueError:
                continue
        return windows

    async def _next_free_index(self) -> int:
        """Smallest index neither tmux nor the registry knows about."""
        used = {index for index, _ in await self._list_windows()}
        used |= {w.window_index for w in self.windows.values()}
        index = 0
        while index in used:
            index += 1
        return index

    async def _recover_windows(self) -> list[str]:
        recovered = []
        for index, name in await self._list_windows():
            if not name.startswith(WINDOW_PREFIX):
                continue
            tab_id = name[len(WINDOW_PREFIX) :]
            if not tab_id or tab_id in self.windows:
                continue
            # Launch commands aren't persisted; recovered windows carry none
            window = Window(tab_id=tab_id, window_index=index, command=[])
            self.windows[tab_id] = window
            await self._start_capture(window)
            recovered.append(tab_id)
        return recovered
