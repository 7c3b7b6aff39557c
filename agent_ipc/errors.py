"""Exception types for agent_ipc."""

from __future__ import annotations


class IPCError(RuntimeError):
    """Base error for agent_ipc failures."""


class SessionNotFoundError(IPCError):
    """Raised when a target session does not exist at call time."""

    def __init__(self, target: str) -> None:
        super().__init__(f"session '{target}' not found")
        self.target = target


class TransmitError(IPCError):
    """Raised when injecting keystrokes into a target fails."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"send to '{target}' failed: {reason}")
        self.target = target
        self.reason = reason


class ExchangeTimeoutError(IPCError):
    """Raised when no qualifying response shows up before the deadline."""

    def __init__(self, target: str, timeout_seconds: float) -> None:
        super().__init__(
            f"timeout waiting for response from '{target}' after {timeout_seconds:g}s"
        )
        self.target = target
        self.timeout_seconds = timeout_seconds
