"""Web puppet: lifecycle state machine wiring watchdogs, bridge events and the public API."""
from __future__ import annotations

import asyncio
import html
import inspect
import logging
import re
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Coroutine, DefaultDict, Dict, List, Optional, Sequence, Set, Union

from .backend.http_client import UploadHttpClient
from .bridge import Bridge
from .config import Settings, get_settings
from .errors import (
    AccountBlockedError,
    BridgeError,
    BridgeNotReadyError,
    NotLoggedInError,
    PuppetBusyError,
    PuppetError,
    SessionTimeoutError,
    WatchdogResetError,
)
from .media_uploader import MediaPayload, msg_type_for, upload_media
from .profile import Profile
from .session.base import Cookie, SessionProvider
from .session.cdp import CdpSessionProvider
from .state import CallResult, EventType, LifecycleState, Liveness, PuppetEvent, ScanInfo, WatchdogFood
from .watchdog import Watchdog, WatchdogReset

logger = logging.getLogger(__name__)

HEARTBEAT_DOG = "PuppetWeb"
SCAN_DOG = "Scan"
FILEHELPER = "filehelper"
MATCH_ALL_FILTER = "function (c) { return true }"

# room messages carry "<sender>:<br/>" in front of the text
MENTION_PREFIX = re.compile(r"^@\w+:<br/>")
SENDER_PREFIX = re.compile(r"^[\w\-]+:<br/>")

EventHandler = Callable[[PuppetEvent], Union[None, Awaitable[None]]]


def strip_sender_prefix(content: str) -> str:
    return SENDER_PREFIX.sub("", html.unescape(MENTION_PREFIX.sub("", content or "")))


class PuppetWeb:
    """
    Drives one account through a browser session.

    Bridge and watchdogs push onto `self._channel`; a single dispatcher task
    drains it, updates state and fans events out to subscribers.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[SessionProvider] = None,
        profile: Optional[Profile] = None,
        http_client: Optional[UploadHttpClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.profile = profile or Profile(self.settings.profile)
        self.provider = provider or CdpSessionProvider(self.settings.browser)
        self.state = LifecycleState(name="PuppetWeb")

        self._channel: asyncio.Queue[Union[PuppetEvent, WatchdogReset]] = asyncio.Queue()
        self.heartbeat_dog = Watchdog(self.settings.watchdog.heartbeat_timeout, HEARTBEAT_DOG, self._channel)
        self.scan_dog = Watchdog(self.settings.watchdog.scan_timeout, SCAN_DOG, self._channel)

        self.bridge: Optional[Bridge] = None
        self.user_id: Optional[str] = None
        self.scan_info: Optional[ScanInfo] = None

        self._subscribers: List[asyncio.Queue[PuppetEvent]] = []
        self._handlers: DefaultDict[EventType, List[EventHandler]] = defaultdict(list)
        self._dispatch_task: Optional[asyncio.Task[None]] = None
        self._background_tasks: Set[asyncio.Task[Any]] = set()

        self._http = http_client
        self._owns_http = http_client is None
        self._file_id = 0
        self._last_cookie_save: Optional[float] = None

    def __repr__(self) -> str:
        return f"PuppetWeb(profile={self.profile!r})"

    # ============================================================
    # Lifecycle
    # ============================================================

    async def init(self) -> None:
        logger.info("PuppetWeb.init() with %r", self.profile)
        if self.state.current is Liveness.LIVE and self.state.stable:
            logger.warning("PuppetWeb.init() called on a live puppet, nothing to do")
            return
        if self.state.current is Liveness.LIVE and self.state.target is Liveness.DEAD:
            raise PuppetBusyError("init() called on a dead session, quit() it first")

        self.state.set_target(Liveness.LIVE)
        self.state.set_current(Liveness.LIVE, stable=False)

        try:
            self.profile.load()
            self._start_dispatcher()
            self.bridge = Bridge(
                settings=self.settings,
                profile=self.profile,
                provider=self.provider,
                channel=self._channel,
            )
            await self._init_bridge(self.bridge)

            if await self.bridge.click_switch_account():
                logger.info("PuppetWeb.init() clicked switch account")

            # live before the first feed; a previous quit() left both dogs asleep
            self.state.set_current(Liveness.LIVE)
            self.heartbeat_dog.wake()
            self.scan_dog.wake()
            self._feed_heartbeat("inited", "inited", timeout=self.settings.watchdog.first_login_timeout)
            logger.info("PuppetWeb.init() done")
        except Exception as e:
            logger.error("PuppetWeb.init() failed: %s", e)
            self.state.set_target(Liveness.DEAD)
            self._emit(PuppetEvent(type=EventType.ERROR, error=e))
            await self.quit()
            raise

    async def _init_bridge(self, bridge: Bridge) -> None:
        try:
            await bridge.init()
        except Exception as e:
            try:
                blocked = await bridge.blocked_message_body()
            except Exception as scan_error:
                logger.debug("PuppetWeb: blocked-body scan failed: %s", scan_error)
                blocked = None
            if blocked is not None:
                raise AccountBlockedError(blocked.message, code=blocked.code) from e
            raise

    async def quit(self) -> None:
        logger.info(
            "PuppetWeb.quit() target=%s current=%s stable=%s",
            self.state.target.value,
            self.state.current.value,
            self.state.stable,
        )
        if self.state.current is Liveness.DEAD:
            if self.state.in_process:
                raise PuppetBusyError("quit() called on a dead PuppetWeb with a transition in flight")
            logger.warning("PuppetWeb.quit() on a dead puppet, return directly")
            return

        # no fatal heartbeat error while tearing down
        self.heartbeat_dog.sleep()
        self.scan_dog.sleep()

        self.state.set_target(Liveness.DEAD)
        self.state.set_current(Liveness.DEAD, stable=False)

        try:
            # best-effort, never raises
            if self.bridge is not None:
                await self.bridge.quit()
            else:
                logger.warning("PuppetWeb.quit() no bridge")
        finally:
            await self._stop_tasks()
            if self._owns_http and self._http is not None:
                await self._http.aclose()
                self._http = None
            self.state.set_current(Liveness.DEAD)
            logger.info("PuppetWeb.quit() done")

    def reset(self, reason: str = "") -> "asyncio.Task[None]":
        """Tear the bridge down and bring it back in the background; failures become error events."""
        logger.info("PuppetWeb.reset(%s)", reason)
        return self._spawn(self._reset(reason), name="puppet-reset")

    async def _reset(self, reason: str) -> None:
        bridge = self.bridge
        if bridge is None:
            self._emit(PuppetEvent(type=EventType.ERROR, error=BridgeNotReadyError("reset() without a bridge")))
            return
        # best-effort, never raises
        await bridge.quit()
        try:
            await bridge.init()
            logger.debug("PuppetWeb.reset(%s) done", reason)
        except Exception as e:
            logger.error("PuppetWeb.reset(%s) bridge.init() failed: %s", reason, e)
            self._report(e)

    async def logout(self) -> None:
        """Log out in the page; the remote side confirms with its own logout event."""
        logger.info("PuppetWeb.logout()")
        bridge = self._require_bridge()
        self._logged_out(self.user_id or "")
        try:
            await bridge.logout()
        except BridgeError as e:
            logger.error("PuppetWeb.logout() failed: %s", e)
            self._check_fatal(e)
            raise

    # ============================================================
    # Identity
    # ============================================================

    def logined(self) -> bool:
        return bool(self.user_id)

    def self_id(self) -> str:
        if not self.user_id:
            raise NotLoggedInError("PuppetWeb.self_id() no user")
        return self.user_id

    # ============================================================
    # Messaging
    # ============================================================

    async def send(self, to_id: str, content: str) -> bool:
        if not to_id:
            raise ValueError("message with no destination")
        bridge = self._require_bridge()
        logger.debug("PuppetWeb.send() to %s: %.80s", to_id, content)
        try:
            return bool(await bridge.send(to_id, content))
        except BridgeError as e:
            logger.error("PuppetWeb.send() failed: %s", e)
            self._check_fatal(e)
            raise

    async def say(self, content: str) -> bool:
        """Send to the file helper, as a notice to self."""
        if not self.logined():
            raise NotLoggedInError("can not say before login")
        if not content:
            logger.warning("PuppetWeb.say() can not say nothing")
            return False
        return await self.send(FILEHELPER, content)

    async def send_media(
        self,
        payload: MediaPayload,
        to_id: str,
        *,
        raw_message: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a file or picture to `to_id`.

        When `raw_message` already carries a media id (a received file being
        passed on) nothing is uploaded. Upload or send failures are logged and
        reported as False.
        """
        if not to_id:
            raise ValueError("media message with no destination")
        bridge = self._require_bridge()
        raw = dict(raw_message or {})

        if not raw.get("MediaId"):
            try:
                media_data = await upload_media(
                    bridge,
                    self._http_client(),
                    payload,
                    to_user_name=to_id,
                    from_user_name=self.self_id(),
                    file_id=self._next_file_id(),
                    limits=self.settings.upload,
                )
            except (PuppetError, ValueError) as e:
                logger.error("PuppetWeb.send_media() upload failed: %s", e)
                self._check_fatal(e)
                return False
        else:
            logger.debug("PuppetWeb.send_media() skip upload, media id %s", raw["MediaId"])
            media_data = {
                "ToUserName": to_id,
                "MediaId": raw["MediaId"],
                "MsgType": raw.get("MsgType"),
                "FileName": raw.get("FileName") or payload.filename,
                "FileSize": raw.get("FileSize"),
                "MMFileExt": raw.get("MMFileExt") or payload.ext,
            }
            if raw.get("Signature"):
                media_data["Signature"] = raw["Signature"]

        media_data["MsgType"] = int(msg_type_for(payload.ext))
        logger.debug(
            "PuppetWeb.send_media() to %s media %s type %s", to_id, media_data["MediaId"], media_data["MsgType"]
        )
        try:
            return bool(await bridge.send_media(media_data))
        except BridgeError as e:
            logger.error("PuppetWeb.send_media() failed: %s", e)
            self._check_fatal(e)
            return False

    async def forward(self, raw_message: Dict[str, Any], to_id: str, *, to_room: bool = False) -> bool:
        if not raw_message:
            raise ValueError("no raw message to forward")
        if not to_id:
            raise ValueError("forward with no destination")
        bridge = self._require_bridge()

        base = dict(raw_message)
        large = self.settings.upload.large_file_size
        if int(base.get("FileSize") or 0) >= large and not base.get("Signature"):
            logger.warning(
                "PuppetWeb.forward() files of %dMB or more need a signature to be forwarded",
                large // (1024 * 1024),
            )
            return False

        patch: Dict[str, Any] = {
            "FromUserName": self.user_id or "",
            "isTranspond": True,
            "MsgIdBeforeTranspond": base.get("MsgIdBeforeTranspond") or base.get("MsgId"),
            "MMSourceMsgId": base.get("MsgId"),
            "Content": strip_sender_prefix(base.get("Content") or ""),
            "MMIsChatRoom": to_room,
        }
        base.update(patch)
        patch["ToUserName"] = to_id

        try:
            return bool(await bridge.forward(base, patch))
        except BridgeError as e:
            logger.error("PuppetWeb.forward() failed: %s", e)
            self._check_fatal(e)
            raise

    # ============================================================
    # Contacts & rooms
    # ============================================================

    async def get_contact(self, contact_id: str) -> Dict[str, Any]:
        try:
            return await self._require_bridge().get_contact(contact_id)
        except BridgeError as e:
            logger.error("PuppetWeb.get_contact(%s) failed: %s", contact_id, e)
            self._check_fatal(e)
            raise

    async def contact_find(self, filter_func: str) -> List[str]:
        try:
            return await self._require_bridge().contact_find(filter_func)
        except BridgeError as e:
            logger.warning("PuppetWeb.contact_find(%s) rejected: %s", filter_func, e)
            self._check_fatal(e)
            raise

    async def contact_alias(self, contact_id: str, alias: Optional[str]) -> CallResult[bool]:
        try:
            result = await self._require_bridge().contact_remark(contact_id, alias)
        except AccountBlockedError as e:
            self._check_fatal(e)
            raise
        if not result:
            logger.warning("PuppetWeb.contact_alias(%s, %s) not applied: %s", contact_id, alias, result.error)
        return result

    async def room_find(self, filter_func: str) -> List[str]:
        try:
            return await self._require_bridge().room_find(filter_func)
        except BridgeError as e:
            logger.warning("PuppetWeb.room_find(%s) rejected: %s", filter_func, e)
            self._check_fatal(e)
            raise

    async def room_add(self, room_id: str, contact_id: str) -> int:
        try:
            return await self._require_bridge().room_add_member(room_id, contact_id)
        except BridgeError as e:
            logger.warning("PuppetWeb.room_add(%s, %s) rejected: %s", room_id, contact_id, e)
            self._check_fatal(e)
            raise

    async def room_del(self, room_id: str, contact_id: str) -> int:
        try:
            return await self._require_bridge().room_del_member(room_id, contact_id)
        except BridgeError as e:
            logger.warning("PuppetWeb.room_del(%s, %s) rejected: %s", room_id, contact_id, e)
            self._check_fatal(e)
            raise

    async def room_topic(self, room_id: str, topic: str) -> str:
        if not room_id or topic is None:
            raise ValueError("room or topic not found")
        try:
            return await self._require_bridge().room_mod_topic(room_id, topic)
        except BridgeError as e:
            logger.warning("PuppetWeb.room_topic(%s) rejected: %s", topic, e)
            self._check_fatal(e)
            raise

    async def room_create(self, contact_ids: Sequence[str], topic: Optional[str] = None) -> str:
        try:
            room_id = await self._require_bridge().room_create(contact_ids, topic)
        except BridgeError as e:
            logger.warning("PuppetWeb.room_create(%s, %s) rejected: %s", ",".join(contact_ids), topic, e)
            self._check_fatal(e)
            raise
        if not room_id:
            raise BridgeError(f'room_create() room id "{room_id}" not found')
        return room_id

    # ============================================================
    # Friendship
    # ============================================================

    async def friend_request_send(self, contact_id: str, hello: str) -> bool:
        try:
            return bool(await self._require_bridge().verify_user_request(contact_id, hello))
        except BridgeError as e:
            logger.warning("PuppetWeb.friend_request_send(%s) rejected: %s", contact_id, e)
            self._check_fatal(e)
            raise

    async def friend_request_accept(self, contact_id: str, ticket: str) -> bool:
        try:
            return bool(await self._require_bridge().verify_user_ok(contact_id, ticket))
        except BridgeError as e:
            logger.warning("PuppetWeb.friend_request_accept(%s) rejected: %s", contact_id, e)
            self._check_fatal(e)
            raise

    # ============================================================
    # Misc
    # ============================================================

    async def ding(self, data: Any = None) -> Any:
        try:
            return await self._require_bridge().ding(data)
        except BridgeError as e:
            logger.warning("PuppetWeb.ding(%s) rejected: %s", data, e)
            self._check_fatal(e)
            raise

    async def hostname(self) -> str:
        try:
            name = await self._require_bridge().hostname()
            if not name:
                raise BridgeError("no hostname found")
            return name
        except PuppetError as e:
            logger.error("PuppetWeb.hostname() failed: %s", e)
            self._report(e)
            raise

    async def cookies(self) -> List[Cookie]:
        return await self._require_bridge().cookies()

    async def save_cookie(self) -> None:
        cookies = await self._require_bridge().cookies()
        self.profile.set("cookies", cookies)
        self.profile.save()
        logger.debug("PuppetWeb.save_cookie() saved %d cookie(s)", len(cookies))

    async def ready_stable(self) -> None:
        """Wait until two contact counts in a row agree."""
        bridge = self._require_bridge()
        interval = self.settings.stability.ready_stable_interval
        ceiling = self.settings.stability.ready_stable_timeout
        counter = -1

        async def settle() -> None:
            nonlocal counter
            while True:
                await asyncio.sleep(interval)
                count = len(await bridge.contact_find(MATCH_ALL_FILTER))
                logger.debug("PuppetWeb.ready_stable() counter=%d count=%d", counter, count)
                if count == counter:
                    return
                counter = count

        try:
            await asyncio.wait_for(settle(), timeout=ceiling)
        except AccountBlockedError as e:
            self._check_fatal(e)
            raise
        except asyncio.TimeoutError as exc:
            logger.warning("PuppetWeb.ready_stable() gave up at counter=%d", counter)
            raise SessionTimeoutError(f"contact list not stable after {ceiling} seconds") from exc
        logger.info("PuppetWeb.ready_stable() ready with %d contact(s)", counter)

    # ============================================================
    # Events
    # ============================================================

    def subscribe(self, maxsize: int = 100) -> "asyncio.Queue[PuppetEvent]":
        queue: asyncio.Queue[PuppetEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[PuppetEvent]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def on(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[EventType(event_type)].append(handler)

    def _emit(self, event: PuppetEvent) -> None:
        """Fan out to subscriber queues (oldest dropped when full) and registered handlers."""
        for queue in list(self._subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except asyncio.QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

        for handler in list(self._handlers.get(event.type, ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._spawn(result, name=f"puppet-handler-{event.type.value}")
            except Exception as e:
                logger.exception("Handler for %s failed: %s", event.type.value, e)

    def _start_dispatcher(self) -> None:
        if self._dispatch_task and not self._dispatch_task.done():
            return
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name="puppet-dispatch")

    async def _dispatch_loop(self) -> None:
        try:
            while True:
                item = await self._channel.get()
                try:
                    if isinstance(item, WatchdogReset):
                        await self._on_watchdog_reset(item)
                    else:
                        await self._on_event(item)
                except Exception as e:
                    logger.exception("Failed to dispatch %r: %s", item, e)
        except asyncio.CancelledError:
            raise

    async def _on_event(self, event: PuppetEvent) -> None:
        if event.type is EventType.LOG:
            logger.info("remote: %s", event.data)
            return
        if event.type is EventType.ERROR:
            self._emit(event)
            return

        # anything the page says is proof of life
        self._feed_heartbeat(event.type.value, event.data)

        if event.type is EventType.SCAN:
            await self._on_scan(event)
        elif event.type is EventType.LOGIN:
            await self._on_login(event)
        elif event.type is EventType.LOGOUT:
            self._logged_out(event.data if event.data is not None else self.user_id or "")
        else:
            self._emit(event)

    async def _on_scan(self, event: PuppetEvent) -> None:
        data = event.data if isinstance(event.data, dict) else {}
        try:
            info = ScanInfo(url=str(data.get("url") or ""), code=int(data.get("code") or 0))
        except (TypeError, ValueError):
            logger.warning("PuppetWeb: unusable scan payload %.200r", event.data)
            return
        self.scan_info = info
        self.scan_dog.feed(WatchdogFood(type="scan", data=info))
        logger.info("PuppetWeb: scan code=%d url=%s", info.code, info.url)
        self._emit(PuppetEvent(type=EventType.SCAN, data=info))

    async def _on_login(self, event: PuppetEvent) -> None:
        user_id = event.data if isinstance(event.data, str) and event.data else None
        if user_id is None and self.bridge is not None:
            try:
                user_id = await self.bridge.get_user_name()
            except BridgeError as e:
                logger.error("PuppetWeb: login without a readable user name: %s", e)
                self._report(e)
                return
        self.user_id = user_id
        self.scan_info = None
        self.scan_dog.feed(WatchdogFood(type="login", data=user_id))
        # nothing to watch once the QR code has been used
        self.scan_dog.sleep()
        logger.info("PuppetWeb: login as %s", user_id)
        self._emit(PuppetEvent(type=EventType.LOGIN, data=user_id))

    def _logged_out(self, data: Any) -> None:
        self.user_id = None
        self.scan_dog.feed(WatchdogFood(type="logout", data=data))
        if self.state.target is Liveness.LIVE:
            self.scan_dog.wake()
        logger.info("PuppetWeb: logout %s", data)
        self._emit(PuppetEvent(type=EventType.LOGOUT, data=data))

    async def _on_watchdog_reset(self, reset: WatchdogReset) -> None:
        if reset.name == HEARTBEAT_DOG:
            last = reset.food.data if reset.food else None
            self._session_fatal(
                WatchdogResetError(
                    f"PuppetWeb watchdog reset, last food: {last}",
                    last_food=reset.food,
                    elapsed=reset.elapsed,
                )
            )
        elif reset.name == SCAN_DOG:
            await self._on_scan_stalled(reset)

    async def _on_scan_stalled(self, reset: WatchdogReset) -> None:
        """The login QR code stopped refreshing: reload the page."""
        self._emit(
            PuppetEvent(
                type=EventType.WATCHDOG,
                data={"name": reset.name, "action": "reload", "elapsed": round(reset.elapsed, 1)},
            )
        )
        if self.bridge is None or self.state.target is not Liveness.LIVE:
            return
        try:
            await self.bridge.reload()
        except Exception as e:
            logger.error("PuppetWeb: reload after scan stall failed: %s", e)
            self._report(e)
        # re-arm so a page that never shows a new code is reloaded again
        self.scan_dog.feed(WatchdogFood(type="reload"))

    def _feed_heartbeat(self, food_type: str, data: Any, *, timeout: Optional[float] = None) -> None:
        food = WatchdogFood(type=food_type, data=data, timeout=timeout)
        self.heartbeat_dog.feed(food)
        self._emit(PuppetEvent(type=EventType.WATCHDOG, data=food))
        self._emit(PuppetEvent(type=EventType.HEARTBEAT, data=data))
        self._maybe_save_cookie()

    def _maybe_save_cookie(self) -> None:
        # a session marked fatal stays live but unstable until quit()
        if self.state.current is not Liveness.LIVE or not self.state.stable or self.bridge is None:
            return
        now = time.monotonic()
        if self._last_cookie_save is not None and now - self._last_cookie_save < self.settings.cookie_save_interval:
            return
        self._last_cookie_save = now
        self._spawn(self._save_cookie_quietly(), name="puppet-save-cookie")

    async def _save_cookie_quietly(self) -> None:
        try:
            await self.save_cookie()
        except (PuppetError, OSError) as e:
            logger.warning("PuppetWeb: cookie save failed: %s", e)

    # ============================================================
    # Helpers
    # ============================================================

    def _session_fatal(self, error: PuppetError) -> None:
        """Force the target dead and report; recovery is quit() then init()."""
        logger.error("PuppetWeb: session is dead: %s", error)
        self.heartbeat_dog.sleep()
        self.scan_dog.sleep()
        if self.state.target is Liveness.LIVE:
            self.state.set_target(Liveness.DEAD)
        self._emit(PuppetEvent(type=EventType.ERROR, error=error))

    def _check_fatal(self, error: BaseException) -> bool:
        if isinstance(error, AccountBlockedError):
            self._session_fatal(error)
            return True
        return False

    def _report(self, error: BaseException) -> None:
        if not self._check_fatal(error):
            self._emit(PuppetEvent(type=EventType.ERROR, error=error))

    def _require_bridge(self) -> Bridge:
        if self.bridge is None:
            raise BridgeNotReadyError("PuppetWeb has no bridge; call init() first")
        return self.bridge

    def _http_client(self) -> UploadHttpClient:
        if self._http is None:
            self._http = UploadHttpClient(timeout=self.settings.upload.request_timeout)
        return self._http

    def _next_file_id(self) -> int:
        file_id = self._file_id
        self._file_id += 1
        return file_id

    def _spawn(self, coro: Union[Coroutine[Any, Any, Any], Awaitable[Any]], *, name: str) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._background_tasks if t is not current]
        if self._dispatch_task is not None and self._dispatch_task is not current:
            tasks.append(self._dispatch_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping background task: %s", e)
        self._dispatch_task = None


__all__ = ["PuppetWeb", "strip_sender_prefix"]
