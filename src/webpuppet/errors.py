"""Exception taxonomy shared by the puppet, bridge and uploader."""
from __future__ import annotations

from typing import Any, Optional


class PuppetError(RuntimeError):
    """Base class for every failure raised by the automation core."""


class PuppetStateError(PuppetError):
    """Raised when a lifecycle transition would break the target/current ordering."""


class PuppetBusyError(PuppetStateError):
    """Raised when quit() meets a dead puppet that still has a transition in flight."""


class NotLoggedInError(PuppetError):
    """Raised when an operation needs a logged-in account."""


class BridgeError(PuppetError):
    """Failure reported by the call proxy."""


class BridgeNotReadyError(BridgeError):
    """The remote API surface is not present in the page (yet)."""


class EvaluationError(BridgeError):
    """The remote function threw, or the evaluation itself failed."""

    def __init__(self, message: str, *, function_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.function_name = function_name


class InjectError(BridgeError):
    """Script injection or the bootstrap self-test failed."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class AccountBlockedError(BridgeError):
    """The page rendered a structured error payload; reload will not help."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.blocked_message = message


class EmptyResultError(BridgeError):
    """A data fetch returned nothing; retryable."""


class WatchdogResetError(PuppetError):
    """The heartbeat watchdog expired; the session must be quit and re-initialised."""

    def __init__(self, message: str, *, last_food: Any = None, elapsed: float = 0.0) -> None:
        super().__init__(message)
        self.last_food = last_food
        self.elapsed = elapsed


class UploadError(PuppetError):
    """Media upload was refused or the platform rejected it."""


class MediaTooLargeError(UploadError):
    """Payload exceeds a hard size cap; rejected before any network call."""

    def __init__(self, message: str, *, size: int, limit: int) -> None:
        super().__init__(message)
        self.size = size
        self.limit = limit


class SessionError(PuppetError):
    """The rendering session provider failed."""


class SessionTimeoutError(SessionError):
    """A bounded wait on the rendering session elapsed."""


__all__ = [
    "AccountBlockedError",
    "BridgeError",
    "BridgeNotReadyError",
    "EmptyResultError",
    "EvaluationError",
    "InjectError",
    "MediaTooLargeError",
    "NotLoggedInError",
    "PuppetBusyError",
    "PuppetError",
    "PuppetStateError",
    "SessionError",
    "SessionTimeoutError",
    "UploadError",
    "WatchdogResetError",
]
