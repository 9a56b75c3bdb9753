"""Bounded per-tab output history.

Lines only, no sequence numbers. Used to replay recent output when the
hub asks for a tab's buffer and tmux scrollback isn't available.
"""

from collections import deque

DEFAULT_CAPACITY = 1000


class RingBuffer:
    """Fixed-capacity FIFO of lines. Pushing past capacity evicts the oldest."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._lines: deque[str] = deque(maxlen=capacity)

    def push(self, line: str) -> None:
        self._lines.append(line)

    def get_all(self) -> list[str]:
        """All retained lines, oldest first."""
        return list(self._lines)

    def get_recent(self, n: int) -> list[str]:
        """The last min(n, size) lines, oldest first."""
        if n <= 0:
            return []
        if n >= len(self._lines):
            return list(self._lines)
        return list(self._lines)[-n:]

    def clear(self) -> None:
        self._lines.clear()

    @property
    def size(self) -> int:
        return len(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class OutputBufferManager:
    """One RingBuffer per tab, created on first output."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._buffers: dict[str, RingBuffer] = {}

    def append(self, tab_id: str, data: str) -> None:
        """Split data on newlines and buffer each non-empty line."""
        buffer = self._buffers.get(tab_id)
        if buffer is None:
            buffer = self._buffers[tab_id] = RingBuffer(self.capacity)
        for line in data.split("\n"):
            if line:
                buffer.push(line)

    def get_recent(self, tab_id: str, n: int) -> list[str]:
        buffer = self._buffers.get(tab_id)
        return buffer.get_recent(n) if buffer else []

    def get_all(self, tab_id: str) -> list[str]:
        buffer = self._buffers.get(tab_id)
        return buffer.get_all() if buffer else []

    def has(self, tab_id: str) -> bool:
        return tab_id in self._buffers

    def clear(self, tab_id: str) -> None:
        """Drop a tab's history. Only called on explicit close."""
        self._buffers.pop(tab_id, None)
