from __future__ import annotations


class DualChatError(Exception):
    """Base class for conversation engine errors."""


class UpstreamError(DualChatError):
    """Non-success status or unreadable body from the completion gateway."""

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body or ""
        detail = f" - {self.body}" if self.body else ""
        super().__init__(f"Upstream error: {status}{detail}")


class Cancelled(DualChatError):
    """The run's cancel token fired while a request was in flight."""

    def __init__(self, message: str = "request cancelled") -> None:
        super().__init__(message)
