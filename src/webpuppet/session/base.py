"""Narrow interface the bridge drives the rendering session through."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

Cookie = Dict[str, Any]


@dataclass
class SessionEvent:
    """
    Something the session produced on its own.

    kind is "binding" (the page called an exposed function; `payload` is the
    raw string it passed), "dialog" (a modal opened; `payload` is its
    message) or "closed" (the session went away).
    """

    kind: str
    name: str = ""
    payload: Any = None


@dataclass
class SessionHandle:
    """One rendering session bound to one account profile."""

    id: str
    head: bool = False
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)
    closed: bool = False


@runtime_checkable
class SessionProvider(Protocol):
    async def open(self, events: "asyncio.Queue[SessionEvent]", *, head: bool = False) -> SessionHandle:
        ...

    async def navigate(self, handle: SessionHandle, url: str) -> None:
        ...

    async def evaluate(self, handle: SessionHandle, script: str) -> Any:
        ...

    async def set_cookies(self, handle: SessionHandle, cookies: List[Cookie]) -> None:
        ...

    async def get_cookies(self, handle: SessionHandle) -> List[Cookie]:
        ...

    async def reload(self, handle: SessionHandle) -> None:
        ...

    async def expose_binding(self, handle: SessionHandle, name: str) -> None:
        ...

    async def dismiss_dialog(self, handle: SessionHandle) -> None:
        ...

    async def wait_for(self, handle: SessionHandle, expression: str, timeout: float) -> None:
        ...

    async def click(self, handle: SessionHandle, xpath: str) -> bool:
        ...

    async def close(self, handle: SessionHandle) -> None:
        ...


def queue_event(events: "asyncio.Queue[SessionEvent]", event: SessionEvent) -> None:
    """Put without blocking; the oldest buffered event gives way when full."""
    if events.full():
        try:
            events.get_nowait()
        except asyncio.QueueEmpty:
            pass
    events.put_nowait(event)


__all__ = ["Cookie", "SessionEvent", "SessionHandle", "SessionProvider", "queue_event"]
