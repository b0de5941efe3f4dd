"""DevTools protocol websocket client used by the CDP session provider."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any, Dict, Optional

import websockets

from ..errors import SessionError, SessionTimeoutError

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], None]


class CdpCommandError(SessionError):
    """The browser answered a command with an error object."""

    def __init__(self, method: str, error: Dict[str, Any]) -> None:
        super().__init__(f"{method}: {error.get('message', error)}")
        self.method = method
        self.code = error.get("code")


class CdpConnection:
    """Maintains one DevTools websocket and correlates command ids with replies."""

    def __init__(self, *, command_timeout: float = 30.0) -> None:
        self.command_timeout = command_timeout
        self._conn: Optional[websockets.ClientConnection] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future[Dict[str, Any]]] = {}
        self._methods: Dict[int, str] = {}
        self._closing = False
        self._handler: Optional[EventHandler] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self, ws_url: str, handler: EventHandler) -> None:
        try:
            await self.disconnect()
            logger.info("Connecting to devtools websocket %s", ws_url)
            self._handler = handler
            self._conn = await websockets.connect(ws_url, max_size=None, ping_interval=None)
            self._listener_task = asyncio.create_task(self._listen(), name="cdp-listener")
        except (OSError, websockets.WebSocketException) as e:
            logger.error("Failed to connect to devtools websocket: %s", e)
            raise SessionError(f"devtools connect failed: {e}") from e

    async def disconnect(self) -> None:
        self._closing = True
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during listener task cleanup: %s", e)
        self._listener_task = None
        if self._conn:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning("Error closing devtools websocket: %s", e)
            self._conn = None
        self._fail_pending(SessionError("devtools connection closed"))
        self._handler = None
        self._closing = False

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one command and wait for its reply."""
        if not self._conn:
            raise SessionError(f"{method}: devtools websocket not connected")
        msg_id = next(self._ids)
        future: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        self._methods[msg_id] = method
        try:
            await self._conn.send(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
            return await asyncio.wait_for(future, timeout=self.command_timeout)
        except asyncio.TimeoutError as exc:
            raise SessionTimeoutError(f"{method}: no reply within {self.command_timeout}s") from exc
        except websockets.ConnectionClosed as exc:
            raise SessionError(f"{method}: devtools websocket closed") from exc
        finally:
            self._pending.pop(msg_id, None)
            self._methods.pop(msg_id, None)

    async def _listen(self) -> None:
        assert self._conn is not None
        try:
            async for message in self._conn:
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from devtools: %.200s", message)
                    continue

                msg_id = payload.get("id")
                if msg_id is not None:
                    future = self._pending.get(msg_id)
                    if future is None or future.done():
                        continue
                    if "error" in payload:
                        future.set_exception(CdpCommandError(self._methods.get(msg_id, "?"), payload["error"]))
                    else:
                        future.set_result(payload.get("result") or {})
                    continue

                method = payload.get("method")
                if method and self._handler:
                    try:
                        self._handler(method, payload.get("params") or {})
                    except Exception as e:
                        logger.exception("Error in devtools event handler: %s", e)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Devtools websocket closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Devtools websocket closed: %s", exc)
        finally:
            self._fail_pending(SessionError("devtools connection lost"))
            if self._handler and not self._closing:
                try:
                    self._handler("Inspector.detached", {"reason": "connection closed"})
                except Exception:
                    logger.exception("Error reporting devtools detach")

    def _fail_pending(self, exc: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
        self._methods.clear()


__all__ = ["CdpCommandError", "CdpConnection"]
