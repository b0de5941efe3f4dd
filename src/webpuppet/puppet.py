"""Capability interface every automation backend implements."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .media_uploader import MediaPayload
from .session.base import Cookie
from .state import CallResult, EventType, PuppetEvent


@runtime_checkable
class Puppet(Protocol):
    """
    What the surrounding bot framework may ask of a puppet.

    Backends implement this structurally; nothing needs to subclass it.
    Identifiers are the platform's opaque user/room names.
    """

    user_id: Optional[str]

    # lifecycle
    async def init(self) -> None: ...

    async def quit(self) -> None: ...

    def reset(self, reason: str = "") -> "asyncio.Task[None]": ...

    async def logout(self) -> None: ...

    # identity
    def logined(self) -> bool: ...

    def self_id(self) -> str: ...

    # messaging
    async def send(self, to_id: str, content: str) -> bool: ...

    async def say(self, content: str) -> bool: ...

    async def send_media(
        self, payload: MediaPayload, to_id: str, *, raw_message: Optional[Dict[str, Any]] = None
    ) -> bool: ...

    async def forward(self, raw_message: Dict[str, Any], to_id: str, *, to_room: bool = False) -> bool: ...

    # contacts and rooms
    async def get_contact(self, contact_id: str) -> Dict[str, Any]: ...

    async def contact_find(self, filter_func: str) -> List[str]: ...

    async def contact_alias(self, contact_id: str, alias: Optional[str]) -> CallResult[bool]: ...

    async def room_find(self, filter_func: str) -> List[str]: ...

    async def room_add(self, room_id: str, contact_id: str) -> int: ...

    async def room_del(self, room_id: str, contact_id: str) -> int: ...

    async def room_topic(self, room_id: str, topic: str) -> str: ...

    async def room_create(self, contact_ids: Sequence[str], topic: Optional[str] = None) -> str: ...

    # friendship
    async def friend_request_send(self, contact_id: str, hello: str) -> bool: ...

    async def friend_request_accept(self, contact_id: str, ticket: str) -> bool: ...

    # misc
    async def ding(self, data: Any = None) -> Any: ...

    async def hostname(self) -> str: ...

    async def cookies(self) -> List[Cookie]: ...

    async def save_cookie(self) -> None: ...

    async def ready_stable(self) -> None: ...

    # events
    def subscribe(self, maxsize: int = 0) -> "asyncio.Queue[PuppetEvent]": ...

    def unsubscribe(self, queue: "asyncio.Queue[PuppetEvent]") -> None: ...

    def on(self, event_type: EventType, handler: Callable[[PuppetEvent], Any]) -> None: ...


__all__ = ["Puppet"]
