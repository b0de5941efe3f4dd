"""Chromium session provider speaking the DevTools protocol."""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
import socket
import tempfile
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from ..backend.cdp_client import CdpConnection
from ..config import BrowserSettings
from ..errors import EvaluationError, SessionError, SessionTimeoutError
from .base import Cookie, SessionEvent, SessionHandle, queue_event

logger = logging.getLogger(__name__)

CHROME_CANDIDATES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
)
WAIT_FOR_POLL_SECONDS = 0.1


def find_chrome() -> Optional[str]:
    for name in CHROME_CANDIDATES:
        path = shutil.which(name)
        if path:
            return path
    return None


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class CdpSessionProvider:
    """
    Launches (or attaches to) a Chromium and drives one page target per session.

    Page-originated events are pushed onto the queue handed to `open()`:
    exposed binding calls, modal dialogs and target detach.
    """

    def __init__(self, settings: Optional[BrowserSettings] = None) -> None:
        self.settings = settings or BrowserSettings()

    async def open(self, events: "asyncio.Queue[SessionEvent]", *, head: bool = False) -> SessionHandle:
        process: Optional[asyncio.subprocess.Process] = None
        user_data_dir: Optional[str] = None

        if self.settings.devtools_url:
            base_url = self.settings.devtools_url.rstrip("/")
        else:
            chrome = self.settings.chrome_path or find_chrome()
            if not chrome:
                raise SessionError("no Chromium executable found; set browser.chrome_path")
            port = find_free_port()
            user_data_dir = tempfile.mkdtemp(prefix="webpuppet-profile-")
            args = [
                f"--remote-debugging-port={port}",
                f"--user-data-dir={user_data_dir}",
                "--disable-gpu",
                "--disable-setuid-sandbox",
                "--no-sandbox",
                "--no-first-run",
                *self.settings.extra_args,
            ]
            if not head:
                args.append("--headless=new")
            args.append("about:blank")
            logger.info("Launching %s (devtools port %d, head=%s)", chrome, port, head)
            process = await asyncio.create_subprocess_exec(
                chrome,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            base_url = f"http://127.0.0.1:{port}"

        try:
            async with httpx.AsyncClient(base_url=base_url, timeout=5.0) as client:
                version = await self._wait_devtools(client)
                logger.info("Devtools ready: %s", version.get("Browser", "?"))
                response = await client.put("/json/new?about:blank")
                response.raise_for_status()
                target = response.json()
        except (httpx.HTTPError, ValueError) as e:
            await self._terminate(process, user_data_dir)
            raise SessionError(f"cannot create page target: {e}") from e
        except BaseException:
            await self._terminate(process, user_data_dir)
            raise

        handle = SessionHandle(id=target.get("id") or uuid.uuid4().hex, head=head)
        conn = CdpConnection(command_timeout=self.settings.command_timeout)
        handle.extra.update(
            conn=conn,
            process=process,
            user_data_dir=user_data_dir,
            base_url=base_url,
            events=events,
            load_waiters=[],
        )

        def on_event(method: str, params: Dict[str, Any]) -> None:
            self._on_event(handle, method, params)

        try:
            await conn.connect(target["webSocketDebuggerUrl"], on_event)
            for domain in ("Page.enable", "Runtime.enable", "Network.enable"):
                await conn.send(domain)
        except BaseException:
            await self.close(handle)
            raise
        return handle

    async def navigate(self, handle: SessionHandle, url: str) -> None:
        logger.debug("navigate(%s)", url)
        loaded = self._expect_load(handle)
        result = await self._conn(handle).send("Page.navigate", {"url": url})
        if result.get("errorText"):
            loaded.cancel()
            raise SessionError(f"navigate({url}) failed: {result['errorText']}")
        await self._await_load(handle, loaded)

    async def reload(self, handle: SessionHandle) -> None:
        loaded = self._expect_load(handle)
        await self._conn(handle).send("Page.reload", {"ignoreCache": False})
        await self._await_load(handle, loaded)

    async def evaluate(self, handle: SessionHandle, script: str) -> Any:
        result = await self._conn(handle).send(
            "Runtime.evaluate",
            {"expression": script, "returnByValue": True, "awaitPromise": True},
        )
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            message = exception.get("description") or details.get("text") or "evaluation failed"
            raise EvaluationError(message)
        return (result.get("result") or {}).get("value")

    async def set_cookies(self, handle: SessionHandle, cookies: List[Cookie]) -> None:
        await self._conn(handle).send("Network.setCookies", {"cookies": cookies})

    async def get_cookies(self, handle: SessionHandle) -> List[Cookie]:
        result = await self._conn(handle).send("Network.getCookies")
        return list(result.get("cookies") or [])

    async def expose_binding(self, handle: SessionHandle, name: str) -> None:
        await self._conn(handle).send("Runtime.addBinding", {"name": name})

    async def dismiss_dialog(self, handle: SessionHandle) -> None:
        await self._conn(handle).send("Page.handleJavaScriptDialog", {"accept": False})

    async def wait_for(self, handle: SessionHandle, expression: str, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            try:
                if await self.evaluate(handle, expression):
                    return
            except EvaluationError as e:
                logger.debug("wait_for(%s) probe error: %s", expression, e)
            if time.monotonic() >= deadline:
                raise SessionTimeoutError(f"'{expression}' not true after {timeout}s")
            await asyncio.sleep(WAIT_FOR_POLL_SECONDS)

    async def click(self, handle: SessionHandle, xpath: str) -> bool:
        script = (
            "(function(){var n=document.evaluate(%s,document,null,"
            "XPathResult.FIRST_ORDERED_NODE_TYPE,null).singleNodeValue;"
            "if(!n){return false}n.click();return true})()" % json.dumps(xpath)
        )
        return bool(await self.evaluate(handle, script))

    async def close(self, handle: SessionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        conn: Optional[CdpConnection] = handle.extra.get("conn")
        process = handle.extra.get("process")
        if conn is not None:
            if process is None and conn.connected:
                # attached to a browser we do not own: close only our page
                try:
                    await conn.send("Page.close")
                except SessionError as e:
                    logger.warning("Page.close failed: %s", e)
            await conn.disconnect()
        await self._terminate(process, handle.extra.get("user_data_dir"))

    def _conn(self, handle: SessionHandle) -> CdpConnection:
        conn: Optional[CdpConnection] = handle.extra.get("conn")
        if handle.closed or conn is None or not conn.connected:
            raise SessionError(f"session {handle.id} is closed")
        return conn

    def _expect_load(self, handle: SessionHandle) -> "asyncio.Future[None]":
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        handle.extra["load_waiters"].append(future)
        return future

    async def _await_load(self, handle: SessionHandle, loaded: "asyncio.Future[None]") -> None:
        try:
            await asyncio.wait_for(loaded, timeout=self.settings.command_timeout)
        except asyncio.TimeoutError as exc:
            raise SessionTimeoutError("page load did not finish in time") from exc
        finally:
            waiters = handle.extra["load_waiters"]
            if loaded in waiters:
                waiters.remove(loaded)

    def _on_event(self, handle: SessionHandle, method: str, params: Dict[str, Any]) -> None:
        events: asyncio.Queue[SessionEvent] = handle.extra["events"]
        if method == "Page.loadEventFired":
            for future in list(handle.extra["load_waiters"]):
                if not future.done():
                    future.set_result(None)
        elif method == "Runtime.bindingCalled":
            queue_event(events, SessionEvent(kind="binding", name=params.get("name", ""), payload=params.get("payload")))
        elif method == "Page.javascriptDialogOpening":
            queue_event(events, SessionEvent(kind="dialog", name=params.get("type", ""), payload=params.get("message", "")))
        elif method in ("Inspector.detached", "Inspector.targetCrashed"):
            queue_event(events, SessionEvent(kind="closed", name=method, payload=params.get("reason")))

    async def _wait_devtools(self, client: httpx.AsyncClient) -> Dict[str, Any]:
        deadline = time.monotonic() + self.settings.launch_timeout
        while True:
            try:
                response = await client.get("/json/version")
                if response.status_code == 200:
                    return response.json()
            except httpx.TransportError:
                pass
            if time.monotonic() >= deadline:
                raise SessionTimeoutError(f"devtools endpoint not up after {self.settings.launch_timeout}s")
            await asyncio.sleep(0.25)

    @staticmethod
    async def _terminate(process: Optional[asyncio.subprocess.Process], user_data_dir: Optional[str]) -> None:
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Browser did not exit, killing pid %s", process.pid)
                process.kill()
                await process.wait()
        if user_data_dir:
            shutil.rmtree(user_data_dir, ignore_errors=True)


__all__ = ["CdpSessionProvider", "find_chrome", "find_free_port"]
