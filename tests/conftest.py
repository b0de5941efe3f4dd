"""Shared fixtures: an in-process session provider standing in for the browser."""
from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from webpuppet.config import Settings
from webpuppet.errors import EvaluationError, SessionTimeoutError
from webpuppet.session.base import Cookie, SessionEvent, SessionHandle, queue_event
from webpuppet.bridge import decode_args

INVOKE_RE = re.compile(
    r"^(?P<ns>\w+)\.(?P<fn>\w+)\.apply\(undefined, "
    r"JSON\.parse\(decodeURIComponent\(window\.atob\('(?P<args>[A-Za-z0-9+/=]*)'\)\)\)\)$"
)

ECHO = object()


class FakeSessionProvider:
    """
    Scriptable SessionProvider.

    `ops` records the bootstrap-relevant calls in order. Remote functions are
    answered from `responders` (name -> callable(*args)); `init` and `ding`
    have defaults that make the bootstrap succeed.
    """

    def __init__(self) -> None:
        self.ops: List[Tuple[str, Any]] = []
        self.invocations: List[Tuple[str, List[Any]]] = []
        self.responders: Dict[str, Callable[..., Any]] = {}
        self.events: Optional[asyncio.Queue[SessionEvent]] = None
        self.handle: Optional[SessionHandle] = None

        self.remote_present = True
        self.ready = True
        self.inject_result: Any = {"code": 200, "message": "inject ok"}
        self.init_result: Any = {"code": 200, "message": "init ok"}
        self.ding_reply: Any = ECHO
        self.body_text = ""
        self.hostname = "wx.qq.com"
        self.page_cookies: List[Cookie] = []
        self.switch_account_visible = False

    # -- SessionProvider ------------------------------------------------

    async def open(self, events: "asyncio.Queue[SessionEvent]", *, head: bool = False) -> SessionHandle:
        self.ops.append(("open", head))
        self.events = events
        self.handle = SessionHandle(id=f"fake-{len(self.ops)}", head=head)
        return self.handle

    async def navigate(self, handle: SessionHandle, url: str) -> None:
        self.ops.append(("navigate", url))

    async def reload(self, handle: SessionHandle) -> None:
        self.ops.append(("reload", None))

    async def evaluate(self, handle: SessionHandle, script: str) -> Any:
        if script.startswith("typeof ") and script.endswith("=== 'undefined'"):
            return not self.remote_present
        if script.startswith("document.body"):
            return self.body_text
        if script == "location.hostname":
            return self.hostname

        match = INVOKE_RE.match(script)
        if match is None:
            self.ops.append(("inject", None))
            return self.inject_result

        fn = match.group("fn")
        args = decode_args(match.group("args"))
        self.invocations.append((fn, args))
        self.ops.append(("invoke", fn))
        if fn == "init":
            return self.init_result
        if fn == "ding":
            return args[0] if self.ding_reply is ECHO else self.ding_reply
        responder = self.responders.get(fn)
        if responder is None:
            return None
        return responder(*args)

    async def set_cookies(self, handle: SessionHandle, cookies: List[Cookie]) -> None:
        self.ops.append(("set_cookies", len(cookies)))
        self.page_cookies = list(cookies)

    async def get_cookies(self, handle: SessionHandle) -> List[Cookie]:
        return list(self.page_cookies)

    async def expose_binding(self, handle: SessionHandle, name: str) -> None:
        self.ops.append(("expose_binding", name))

    async def dismiss_dialog(self, handle: SessionHandle) -> None:
        self.ops.append(("dismiss_dialog", None))

    async def wait_for(self, handle: SessionHandle, expression: str, timeout: float) -> None:
        self.ops.append(("wait_for", expression))
        if not self.ready:
            raise SessionTimeoutError(f"'{expression}' not true after {timeout}s")

    async def click(self, handle: SessionHandle, xpath: str) -> bool:
        self.ops.append(("click", xpath))
        return self.switch_account_visible

    async def close(self, handle: SessionHandle) -> None:
        self.ops.append(("close", None))
        handle.closed = True

    # -- test helpers ---------------------------------------------------

    def emit(self, event: str, data: Any = None) -> None:
        """Act as the injected script calling window.emit()."""
        assert self.events is not None, "session not opened"
        payload = json.dumps({"event": event, "data": data})
        queue_event(self.events, SessionEvent(kind="binding", name="emit", payload=payload))

    def open_dialog(self, message: str) -> None:
        assert self.events is not None, "session not opened"
        queue_event(self.events, SessionEvent(kind="dialog", name="alert", payload=message))

    def fail(self, fn: str, message: str = "remote threw") -> None:
        def raiser(*_: Any) -> Any:
            raise EvaluationError(message)

        self.responders[fn] = raiser

    def op_names(self) -> List[str]:
        return [name for name, _ in self.ops]

    def invoked(self, fn: str) -> List[List[Any]]:
        return [args for name, args in self.invocations if name == fn]


BLOCKED_BODY = "<error><ret>1203</ret><message>This account cannot log in to the web client.</message></error>"


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(_env_file=None, **overrides)


@pytest.fixture
def provider() -> FakeSessionProvider:
    return FakeSessionProvider()


@pytest.fixture
def settings() -> Settings:
    return make_settings(
        retry={"get_contact_max_attempts": 3, "get_contact_backoff": 0.001},
        stability={"ready_stable_timeout": 1.0, "ready_stable_interval": 0.01},
    )


async def next_event(queue: "asyncio.Queue[Any]", event_type: Any, timeout: float = 1.0) -> Any:
    """Skip events until one of `event_type` arrives."""

    async def find() -> Any:
        while True:
            event = await queue.get()
            if event.type == event_type:
                return event

    return await asyncio.wait_for(find(), timeout=timeout)
