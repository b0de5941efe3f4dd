"""Call proxy into the embedded page: session bootstrap, marshaling and typed wrappers."""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, unquote

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from .config import Settings
from .errors import (
    AccountBlockedError,
    BridgeError,
    BridgeNotReadyError,
    EmptyResultError,
    EvaluationError,
    InjectError,
    SessionError,
)
from .profile import Profile
from .session.base import Cookie, SessionEvent, SessionHandle, SessionProvider
from .state import CallResult, EventType, PuppetEvent

logger = logging.getLogger(__name__)

# characters encodeURIComponent leaves alone besides alphanumerics
URI_COMPONENT_SAFE = "-_.!~*'()"
EMIT_BINDING = "emit"
SUCCESS_CIPHER = "inject() OK!"
AUTH_COOKIE_PATTERN = re.compile(r"^webwx_auth_ticket|webwxuvid$")
SWITCH_ACCOUNT_XPATH = (
    "//div[contains(@class,'association') and contains(@class,'show')]/a[@ng-click='qrcodeLogin()']"
)


def encode_args(args: Sequence[Any]) -> str:
    """JSON, then percent-encode like encodeURIComponent, then base64: safe inside a quoted JS literal."""
    text = json.dumps(list(args), ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    return base64.b64encode(quote(text, safe=URI_COMPONENT_SAFE).encode("ascii")).decode("ascii")


def decode_args(encoded: str) -> List[Any]:
    """Inverse of encode_args; mirrors JSON.parse(decodeURIComponent(atob(...)))."""
    return json.loads(unquote(base64.b64decode(encoded).decode("ascii")))


def build_invoke_script(namespace: str, function_name: str, args: Sequence[Any]) -> str:
    encoded = encode_args(args)
    return (
        f"{namespace}.{function_name}.apply(undefined, "
        f"JSON.parse(decodeURIComponent(window.atob('{encoded}'))))"
    )


def is_success_code(code: Any) -> bool:
    """HTTP-style 2xx/3xx."""
    return str(code)[:1] in ("2", "3")


@dataclass(frozen=True)
class BlockedMessage:
    code: Optional[int]
    message: str


def parse_blocked_message(text: Optional[str]) -> Optional[BlockedMessage]:
    """
    Look for an `<error><ret>code</ret><message>...</message></error>` page body.

    Any error payload with a message counts, not only code 1203.
    """
    if not text:
        return None
    try:
        root = ET.fromstring(text.strip())
    except ET.ParseError:
        return None
    if root.tag != "error":
        return None
    message = (root.findtext("message") or "").strip()
    if not message:
        return None
    raw_code = root.findtext("ret") or root.findtext("code")
    try:
        code = int(raw_code) if raw_code is not None else None
    except ValueError:
        code = None
    return BlockedMessage(code=code, message=message)


class Bridge:
    """
    Owns one rendering session and proxies calls into the injected remote API.

    Events the page produces (binding calls, dialogs) are translated into
    `PuppetEvent`s and pushed onto `channel`; the bridge never calls back into
    its owner.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        profile: Profile,
        provider: SessionProvider,
        channel: "asyncio.Queue[Any]",
    ) -> None:
        self.settings = settings
        self.profile = profile
        self.provider = provider
        self._channel = channel
        self._handle: Optional[SessionHandle] = None
        self._session_events: asyncio.Queue[SessionEvent] = asyncio.Queue(
            maxsize=settings.bridge.session_event_queue_size
        )
        self._drain_task: Optional[asyncio.Task[None]] = None

    def __repr__(self) -> str:
        return f"Bridge(profile={self.profile!r}, handle={self._handle!r})"

    @property
    def namespace(self) -> str:
        return self.settings.bridge.remote_namespace

    @property
    def handle(self) -> Optional[SessionHandle]:
        return self._handle

    # ============================================================
    # Lifecycle
    # ============================================================

    async def init(self) -> None:
        """Open the session and bring the remote API up; any failing step aborts with its error."""
        logger.info("bridge.init: starting session bootstrap")
        try:
            self._handle = await self.provider.open(self._session_events, head=self.settings.head)

            cookies = self.profile.get("cookies") or []
            if not isinstance(cookies, list):
                cookies = []
            host = self.cookie_domain(cookies)
            logger.info("bridge.init: navigating to %s", host)
            await self.provider.navigate(self._handle, host)

            if cookies:
                await self.provider.set_cookies(self._handle, cookies)

            await self.provider.expose_binding(self._handle, EMIT_BINDING)
            self._start_drain()

            await self._bring_up_remote()
        except Exception as e:
            logger.warning("bridge.init: bootstrap failed: %s", e)
            raise
        logger.info("bridge.init: remote API ready")

    async def reload(self) -> None:
        """Reload the page and inject again; the remote API does not survive a reload."""
        handle = self._require_handle()
        logger.info("bridge.reload: reloading page")
        await self.provider.reload(handle)
        await self._bring_up_remote()

    async def quit(self) -> None:
        """Tear the session down; every step is best-effort."""
        logger.info("bridge.quit: tearing down session")
        handle = self._handle
        if handle is not None and not handle.closed:
            try:
                await self.invoke("quit")
            except Exception as e:
                logger.warning("bridge.quit: remote quit failed: %s", e)
            try:
                await self.provider.close(handle)
            except Exception as e:
                logger.warning("bridge.quit: session close failed: %s", e)
        self._handle = None
        await self._stop_drain()

    async def _bring_up_remote(self) -> None:
        handle = self._require_handle()
        await self.provider.wait_for(handle, self.settings.bridge.ready_probe, self.settings.bridge.ready_timeout)
        await self.inject()

    async def inject(self) -> None:
        handle = self._require_handle()
        script = self.settings.bridge.inject_script.read_text(encoding="utf-8")

        ret = await self.provider.evaluate(handle, script)
        self._check_inject_result("inject", ret)

        ret = await self.invoke("init")
        self._check_inject_result("init", ret)

        try:
            echo = await asyncio.wait_for(self.ding(SUCCESS_CIPHER), timeout=self.settings.bridge.ding_timeout)
        except asyncio.TimeoutError as exc:
            raise InjectError(f"ding() no reply within {self.settings.bridge.ding_timeout}s") from exc
        if echo != SUCCESS_CIPHER:
            raise InjectError(f"ding() returned {echo!r}, expected {SUCCESS_CIPHER!r}")
        logger.debug("bridge.inject: ding round trip ok")

    @staticmethod
    def _check_inject_result(step: str, ret: Any) -> None:
        if not isinstance(ret, dict) or not is_success_code(ret.get("code")):
            code = ret.get("code") if isinstance(ret, dict) else None
            message = ret.get("message") if isinstance(ret, dict) else ret
            raise InjectError(f"{step} failed: {code}, {message}", code=code)
        logger.debug("bridge.%s: code[%s] message[%s]", step, ret.get("code"), ret.get("message"))

    # ============================================================
    # Session events
    # ============================================================

    def _start_drain(self) -> None:
        if self._drain_task and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self._drain_session_events(), name="bridge-session-events")

    async def _stop_drain(self) -> None:
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None

    async def _drain_session_events(self) -> None:
        try:
            while True:
                event = await self._session_events.get()
                try:
                    await self._translate(event)
                except Exception as e:
                    logger.exception("bridge: failed to handle session event %s: %s", event.kind, e)
        except asyncio.CancelledError:
            raise

    async def _translate(self, event: SessionEvent) -> None:
        if event.kind == "binding" and event.name == EMIT_BINDING:
            self._relay_emit(event.payload)
        elif event.kind == "dialog":
            logger.warning("bridge: dialog type:%s message:%s", event.name, event.payload)
            if self._handle is not None:
                try:
                    await self.provider.dismiss_dialog(self._handle)
                except SessionError as e:
                    logger.error("bridge: dialog dismiss failed: %s", e)
            self._push(PuppetEvent(type=EventType.ERROR, error=BridgeError(f"dialog: {event.payload}")))
        elif event.kind == "closed":
            logger.warning("bridge: session closed (%s)", event.payload)
            self._push(PuppetEvent(type=EventType.ERROR, error=SessionError(f"session closed: {event.payload}")))

    def _relay_emit(self, payload: Any) -> None:
        try:
            message = json.loads(payload) if isinstance(payload, str) else payload
            name, data = message["event"], message.get("data")
            event_type = EventType(name)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("bridge: unrecognised emit payload %.200r: %s", payload, e)
            return
        self._push(PuppetEvent(type=event_type, data=data))

    def _push(self, event: PuppetEvent) -> None:
        try:
            self._channel.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("bridge: owner channel full, dropped %s", event.type.value)

    # ============================================================
    # Call proxy
    # ============================================================

    def _require_handle(self) -> SessionHandle:
        if self._handle is None or self._handle.closed:
            raise BridgeNotReadyError("no open session")
        return self._handle

    async def invoke(self, function_name: str, *args: Any) -> Any:
        """Call `<namespace>.<function_name>(*args)` inside the page and return its JSON result."""
        if not function_name.isidentifier():
            raise ValueError(f"invalid remote function name: {function_name!r}")
        script = build_invoke_script(self.namespace, function_name, args)
        handle = self._require_handle()
        logger.debug("bridge.invoke(%s) %d arg(s)", function_name, len(args))

        try:
            absent = await self.provider.evaluate(handle, f"typeof {self.namespace} === 'undefined'")
        except Exception as e:
            logger.warning("bridge.invoke(%s): readiness probe failed: %s", function_name, e)
            raise BridgeNotReadyError(f"readiness probe failed: {e}") from e
        if absent:
            raise BridgeNotReadyError(f"there is no {self.namespace} in the page (yet)")

        try:
            return await self.provider.evaluate(handle, script)
        except (EvaluationError, SessionError) as e:
            logger.warning("bridge.invoke(%s): %s", function_name, e)
            blocked = await self._blocked_or_none()
            if blocked is not None:
                raise AccountBlockedError(blocked.message, code=blocked.code) from e
            raise EvaluationError(str(e), function_name=function_name) from e

    async def _blocked_or_none(self) -> Optional[BlockedMessage]:
        try:
            return await self.blocked_message_body()
        except Exception as e:
            logger.debug("bridge: blocked-body scan failed: %s", e)
            return None

    async def blocked_message_body(self) -> Optional[BlockedMessage]:
        handle = self._require_handle()
        text = await self.provider.evaluate(handle, "document.body ? document.body.innerText : ''")
        return parse_blocked_message(text)

    async def evaluate(self, script: str) -> Any:
        return await self.provider.evaluate(self._require_handle(), script)

    # ============================================================
    # Typed wrappers
    # ============================================================

    async def ding(self, data: Any = None) -> Any:
        try:
            return await self.invoke("ding", data)
        except BridgeError as e:
            logger.error("bridge.ding(%s): %s", data, e)
            raise

    async def logout(self) -> Any:
        return await self.invoke("logout")

    async def get_user_name(self) -> str:
        return await self.invoke("getUserName")

    async def contact_remark(self, contact_id: str, remark: Optional[str]) -> CallResult[bool]:
        if not contact_id:
            raise ValueError("no contact id")
        try:
            ok = await self.invoke("contactRemark", contact_id, remark)
        except AccountBlockedError:
            raise
        except BridgeError as e:
            # setting a remark on a non-friend fails remotely
            logger.warning("bridge.contact_remark(%s): %s", contact_id, e)
            return CallResult.failure(str(e))
        if not ok:
            return CallResult.failure("remark refused")
        return CallResult.success(True)

    async def contact_find(self, filter_func: str) -> List[str]:
        return list(await self.invoke("contactFind", filter_func) or [])

    async def room_find(self, filter_func: str) -> List[str]:
        return list(await self.invoke("roomFind", filter_func) or [])

    async def room_del_member(self, room_id: str, contact_id: str) -> int:
        if not room_id or not contact_id:
            raise ValueError("no room id or contact id")
        return await self.invoke("roomDelMember", room_id, contact_id)

    async def room_add_member(self, room_id: str, contact_id: str) -> int:
        if not room_id or not contact_id:
            raise ValueError("no room id or contact id")
        return await self.invoke("roomAddMember", room_id, contact_id)

    async def room_mod_topic(self, room_id: str, topic: str) -> str:
        if not room_id:
            raise ValueError("no room id")
        await self.invoke("roomModTopic", room_id, topic)
        return topic

    async def room_create(self, contact_ids: Sequence[str], topic: Optional[str] = None) -> str:
        if not isinstance(contact_ids, (list, tuple)) or not contact_ids:
            raise ValueError("no valid contact id list")
        room_id = await self.invoke("roomCreate", list(contact_ids), topic)
        if isinstance(room_id, dict):
            # the page reports failures by returning its error object
            raise EvaluationError(f"roomCreate failed: {room_id}", function_name="roomCreate")
        return room_id

    async def verify_user_request(self, contact_id: str, hello: str) -> bool:
        if not contact_id:
            raise ValueError("no valid contact id")
        return await self.invoke("verifyUserRequest", contact_id, hello)

    async def verify_user_ok(self, contact_id: str, ticket: str) -> bool:
        if not contact_id or not ticket:
            raise ValueError("no valid contact id or ticket")
        return await self.invoke("verifyUserOk", contact_id, ticket)

    async def send(self, to_user_name: str, content: str) -> bool:
        if not to_user_name:
            raise ValueError("UserName not found")
        if not content:
            raise ValueError("cannot say nothing")
        return await self.invoke("send", to_user_name, content)

    async def send_media(self, media_data: Dict[str, Any]) -> bool:
        if not media_data.get("ToUserName"):
            raise ValueError("UserName not found")
        if not media_data.get("MediaId"):
            raise ValueError("cannot say nothing")
        return await self.invoke("sendMedia", media_data)

    async def forward(self, base_data: Dict[str, Any], patch_data: Dict[str, Any]) -> bool:
        if not base_data.get("ToUserName"):
            raise ValueError("UserName not found")
        if not any(patch_data.get(k) for k in ("MMActualContent", "MMSendContent", "Content")):
            raise ValueError("cannot say nothing")
        return await self.invoke("forward", base_data, patch_data)

    async def get_contact(self, contact_id: str) -> Dict[str, Any]:
        """Fetch a raw contact, retrying empty or failed answers with linear backoff."""
        if not contact_id:
            raise ValueError("no contact id")
        max_attempts = self.settings.retry.get_contact_max_attempts
        backoff = self.settings.retry.get_contact_backoff
        timeout = max_attempts * (backoff * max_attempts) / 2

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_incrementing(start=backoff, increment=backoff),
                retry=retry_if_exception_type((EmptyResultError, BridgeNotReadyError, EvaluationError)),
                reraise=True,
            ):
                with attempt:
                    logger.debug(
                        "bridge.get_contact(%s): attempt %d/%d (timeout %.1fs)",
                        contact_id,
                        attempt.retry_state.attempt_number,
                        max_attempts,
                        timeout,
                    )
                    contact = await self.invoke("getContact", contact_id)
                    if not contact:
                        raise EmptyResultError("got empty return")
        except BridgeError as e:
            logger.warning("bridge.get_contact(%s): finally failed: %s", contact_id, e)
            raise
        return contact

    async def get_msg_img(self, msg_id: str) -> str:
        return await self.invoke("getMsgImg", msg_id)

    async def get_msg_emoticon(self, msg_id: str) -> str:
        return await self.invoke("getMsgEmoticon", msg_id)

    async def get_msg_video(self, msg_id: str) -> str:
        return await self.invoke("getMsgVideo", msg_id)

    async def get_msg_voice(self, msg_id: str) -> str:
        return await self.invoke("getMsgVoice", msg_id)

    async def get_msg_public_link_img(self, msg_id: str) -> str:
        return await self.invoke("getMsgPublicLinkImg", msg_id)

    async def get_base_request(self) -> str:
        return await self.invoke("getBaseRequest")

    async def get_pass_ticket(self) -> str:
        return await self.invoke("getPassticket")

    async def get_check_upload_url(self) -> str:
        return await self.invoke("getCheckUploadUrl")

    async def get_upload_media_url(self) -> str:
        return await self.invoke("getUploadMediaUrl")

    async def click_switch_account(self) -> bool:
        try:
            return await self.provider.click(self._require_handle(), SWITCH_ACCOUNT_XPATH)
        except (SessionError, EvaluationError) as e:
            logger.debug("bridge.click_switch_account: %s", e)
            return False

    async def hostname(self) -> Optional[str]:
        return await self.evaluate("location.hostname")

    async def cookies(self) -> List[Cookie]:
        return await self.provider.get_cookies(self._require_handle())

    async def set_cookies(self, cookies: List[Cookie]) -> None:
        try:
            await self.provider.set_cookies(self._require_handle(), cookies)
        except (SessionError, BridgeError) as e:
            logger.error("bridge.set_cookies: %s", e)
            self._push(PuppetEvent(type=EventType.ERROR, error=e))

    def cookie_domain(self, cookies: Optional[List[Cookie]] = None) -> str:
        """Login host derived from persisted auth cookies, or the default host."""
        default = self.settings.bridge.default_host
        if not cookies:
            logger.debug("bridge.cookie_domain: no cookie, using %s", default)
            return default
        auth = [c for c in cookies if AUTH_COOKIE_PATTERN.search(str(c.get("name", "")))]
        if not auth:
            logger.debug("bridge.cookie_domain: no auth cookie, using %s", default)
            return default
        domain = str(auth[0].get("domain") or "").lstrip(".")
        if not domain:
            return default
        if domain == "wechat.com":
            domain = "web.wechat.com"
        return f"https://{domain}"


__all__ = [
    "BlockedMessage",
    "Bridge",
    "SUCCESS_CIPHER",
    "build_invoke_script",
    "decode_args",
    "encode_args",
    "is_success_code",
    "parse_blocked_message",
]
