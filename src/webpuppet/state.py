"""Shared puppet state definitions: lifecycle, events and small value types."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from .errors import PuppetStateError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Liveness(str, enum.Enum):
    LIVE = "live"
    DEAD = "dead"


class EventType(str, enum.Enum):
    """
    Semantic events a puppet surfaces to the surrounding framework.

    LOG is only consumed internally (remote console relay) and never
    broadcast to subscribers.
    """
    LOGIN = "login"
    LOGOUT = "logout"
    SCAN = "scan"
    MESSAGE = "message"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    WATCHDOG = "watchdog"
    ROOM_JOIN = "room-join"
    ROOM_LEAVE = "room-leave"
    ROOM_TOPIC = "room-topic"
    FRIEND = "friend"
    DING = "ding"
    LOG = "log"


@dataclass
class PuppetEvent:
    """Event payload distributed to puppet subscribers."""

    type: EventType
    data: Any = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class ScanInfo:
    """A login QR challenge; `code` is interpreted by the caller."""

    url: str
    code: int


@dataclass(frozen=True)
class WatchdogFood:
    """What a watchdog was last fed with; `timeout` overrides the default window."""

    type: str
    data: Any = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Outcome of a call whose failure is expected rather than exceptional."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "CallResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "CallResult[T]":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class LifecycleState:
    """
    Target/current liveness pair.

    `target` is where the puppet is heading, `current` what has been observed.
    A transition is in process while `current` has been set without `stable`.
    `current` may only take the value `target` already holds.
    """

    name: str = "Puppet"
    target: Liveness = Liveness.DEAD
    current: Liveness = Liveness.DEAD
    _settled: bool = field(default=True, repr=False)

    def set_target(self, state: Liveness) -> None:
        logger.debug("%s: target %s -> %s", self.name, self.target.value, state.value)
        self.target = state

    def set_current(self, state: Liveness, *, stable: bool = True) -> None:
        if state != self.target:
            raise PuppetStateError(
                f"{self.name}: current cannot become {state.value} while target is {self.target.value}"
            )
        logger.debug(
            "%s: current %s -> %s (stable=%s)", self.name, self.current.value, state.value, stable
        )
        self.current = state
        self._settled = stable

    @property
    def stable(self) -> bool:
        return self._settled and self.target == self.current

    @property
    def in_process(self) -> bool:
        return not self.stable


__all__ = [
    "CallResult",
    "EventType",
    "LifecycleState",
    "Liveness",
    "PuppetEvent",
    "ScanInfo",
    "WatchdogFood",
]
