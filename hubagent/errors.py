"""Exceptions and error classification for the agent.

Errors fall into a few buckets:
- fatal at startup (missing tmux, bad config): the agent exits
- transient transport failures: retried with backoff by the hub connection
- per-operation failures (unknown tab, failed shell-out): reported to the hub
"""

from dataclasses import dataclass


class AgentError(Exception):
    """Base class for agent errors."""


class ConfigError(AgentError):
    """Required configuration is missing or malformed."""


class DependencyMissingError(AgentError):
    """A required local binary (tmux) is not installed."""

    def __init__(self, binary: str):
        super().__init__(f"{binary} is not installed or not on PATH")
        self.binary = binary


class TmuxError(AgentError):
    """A tmux command exited non-zero."""


class ProtocolError(AgentError):
    """An inbound message could not be decoded."""


class ReconnectExhaustedError(AgentError):
    """The reconnect ceiling was reached; the hub connection has given up."""

    def __init__(self, attempts: int):
        super().__init__(f"Gave up reconnecting after {attempts} attempts")
        self.attempts = attempts


class InvalidEnvVarError(AgentError):
    """A pushed environment variable cannot be set in the process environment."""


class CommandError(AgentError):
    """A shelled-out command (git, docker, tailscale) failed."""

    def __init__(self, argv: list[str], returncode: int, stderr: str):
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"{argv[0]} failed: {detail}")
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class ErrorInfo:
    """Structured error classification."""

    fatal: bool  # Agent cannot continue without operator action
    category: str  # "dependency", "config", "transport", "reconnect_exhausted", "command", "protocol", "unknown"
    text: str  # The error text for logging / agent:error messages


# Phrases indicating a transient network problem
_TRANSPORT_PHRASES = [
    "connection refused",
    "connection reset",
    "cannot connect",
    "server disconnected",
    "timed out",
    "timeout",
    "broken pipe",
]


def classify_exception(error: BaseException) -> ErrorInfo:
    """Classify an exception for logging and hub error reports."""
    error_msg = str(error) or type(error).__name__

    if isinstance(error, DependencyMissingError):
        return ErrorInfo(fatal=True, category="dependency", text=error_msg)
    if isinstance(error, ConfigError):
        return ErrorInfo(fatal=True, category="config", text=error_msg)
    if isinstance(error, ReconnectExhaustedError):
        return ErrorInfo(fatal=True, category="reconnect_exhausted", text=error_msg)
    if isinstance(error, CommandError):
        return ErrorInfo(fatal=False, category="command", text=error_msg)
    if isinstance(error, ProtocolError):
        return ErrorInfo(fatal=False, category="protocol", text=error_msg)
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorInfo(fatal=False, category="transport", text=error_msg)

    error_lower = error_msg.lower()
    if any(phrase in error_lower for phrase in _TRANSPORT_PHRASES):
        return ErrorInfo(fatal=False, category="transport", text=error_msg)

    return ErrorInfo(fatal=False, category="unknown", text=error_msg)
