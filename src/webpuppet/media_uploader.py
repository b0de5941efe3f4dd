"""Media upload: size-dependent single- or two-phase protocol against the platform endpoints."""
from __future__ import annotations

import enum
import hashlib
import json
import logging
import mimetypes
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .backend.http_client import UploadHttpClient, cookie_header
from .bridge import Bridge
from .config import UploadSettings
from .errors import MediaTooLargeError, UploadError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"bmp", "jpeg", "jpg", "png", "gif"})
VIDEO_EXTENSIONS = frozenset({"mp4"})
UPLOAD_TYPE = 2
CHECK_FILE_TYPE = 7  # the check endpoint fails without it


class MediaType(enum.IntEnum):
    IMAGE = 1
    VIDEO = 2
    AUDIO = 3
    ATTACHMENT = 4


class MsgType(enum.IntEnum):
    IMAGE = 3
    VIDEO = 43
    EMOTICON = 47
    APP = 49


@dataclass
class MediaPayload:
    """Bytes to upload plus how to describe them; `mime_type` is guessed from the name when omitted."""

    data: bytes
    filename: str
    mime_type: Optional[str] = None

    @property
    def ext(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot else ""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class MediaUploadPlan:
    checksum: str
    size: int
    media_type: MediaType
    mime_type: str
    two_phase: bool
    signature: Optional[str] = None
    aes_key: Optional[str] = field(default=None, repr=False)


def classify(ext: str) -> MediaType:
    ext = ext.lower()
    if ext in IMAGE_EXTENSIONS:
        return MediaType.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return MediaType.VIDEO
    return MediaType.ATTACHMENT


def msg_type_for(ext: str) -> MsgType:
    ext = ext.lower()
    if ext == "gif":
        return MsgType.EMOTICON
    if ext in IMAGE_EXTENSIONS:
        return MsgType.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return MsgType.VIDEO
    return MsgType.APP


def plan_upload(payload: MediaPayload, limits: UploadSettings) -> MediaUploadPlan:
    """Validate and describe `payload`; raises before anything touches the network."""
    mime_type = payload.mime_type or mimetypes.guess_type(payload.filename)[0]
    if not mime_type:
        raise UploadError(f"no MIME type found for {payload.filename}")

    media_type = classify(payload.ext)
    size = payload.size

    if media_type is MediaType.VIDEO and size > limits.max_video_size:
        raise MediaTooLargeError(
            f"video files may not exceed {limits.max_video_size // (1024 * 1024)}MB",
            size=size,
            limit=limits.max_video_size,
        )
    if size > limits.max_file_size:
        raise MediaTooLargeError(
            f"files may not exceed {limits.max_file_size // (1024 * 1024)}MB",
            size=size,
            limit=limits.max_file_size,
        )

    return MediaUploadPlan(
        checksum=hashlib.md5(payload.data).hexdigest(),
        size=size,
        media_type=media_type,
        mime_type=mime_type,
        two_phase=size > limits.large_file_size,
    )


async def upload_media(
    bridge: Bridge,
    http: UploadHttpClient,
    payload: MediaPayload,
    *,
    to_user_name: str,
    from_user_name: str,
    file_id: int,
    limits: UploadSettings,
) -> Dict[str, Any]:
    """
    Upload `payload` for `to_user_name` and return the media data the send call needs.

    Payloads above the large-file threshold first get a signature from the
    check endpoint; the upload endpoint refuses them otherwise.
    """
    if not to_user_name:
        raise ValueError("no destination id")
    plan = plan_upload(payload, limits)
    filename = payload.filename

    base_request = _parse_base_request(await bridge.get_base_request())
    pass_ticket = await bridge.get_pass_ticket()
    upload_url = await bridge.get_upload_media_url()
    check_url = await bridge.get_check_upload_url()
    cookies = await bridge.cookies()
    data_ticket = next((c.get("value") for c in cookies if c.get("name") == "webwx_data_ticket"), None)
    hostname = await bridge.hostname()

    headers = {
        "Referer": f"https://{hostname}",
        "User-Agent": limits.user_agent,
        "Cookie": cookie_header(cookies),
    }

    upload_request: Dict[str, Any] = {
        "BaseRequest": base_request,
        "FileMd5": plan.checksum,
        "FromUserName": from_user_name,
        "ToUserName": to_user_name,
        "UploadType": UPLOAD_TYPE,
        "ClientMediaId": int(time.time() * 1000),
        "MediaType": MediaType.ATTACHMENT.value,
        "StartPos": 0,
        "DataLen": plan.size,
        "TotalLen": plan.size,
    }
    media_data: Dict[str, Any] = {
        "ToUserName": to_user_name,
        "MediaId": "",
        "FileName": filename,
        "FileSize": plan.size,
        "FileMd5": plan.checksum,
        "MMFileExt": payload.ext,
    }

    if plan.two_phase:
        check_data = {
            "BaseRequest": base_request,
            "FromUserName": from_user_name,
            "ToUserName": to_user_name,
            "FileName": filename,
            "FileSize": plan.size,
            "FileMd5": plan.checksum,
            "FileType": CHECK_FILE_TYPE,
        }
        logger.info("upload_media(%s): %d bytes, requesting signature", filename, plan.size)
        status, body = await http.post_json(f"https://{hostname}{check_url}", check_data, headers=headers)
        plan.signature, plan.aes_key = _check_response(status, body)
        upload_request["Signature"] = plan.signature
        upload_request["AESKey"] = plan.aes_key
        media_data["Signature"] = plan.signature

    logger.debug("upload_media(%s): data ticket present=%s", filename, bool(data_ticket))
    form = {
        "id": f"WU_FILE_{file_id}",
        "name": filename,
        "type": plan.mime_type,
        "lastModifiedDate": datetime.now().astimezone().strftime("%a %b %d %Y %H:%M:%S GMT%z"),
        "size": plan.size,
        "mediatype": plan.media_type.value,
        "uploadmediarequest": json.dumps(upload_request, ensure_ascii=False),
        "webwx_data_ticket": data_ticket or "",
        "pass_ticket": pass_ticket or "",
    }
    status, body = await http.post_multipart(
        f"{upload_url}?f=json",
        form,
        {"filename": (filename, payload.data, plan.mime_type)},
        headers=headers,
    )
    if status >= 400:
        raise UploadError(f"upload endpoint answered HTTP {status}")
    media_id = body.get("MediaId") if isinstance(body, dict) else None
    if not media_id:
        logger.error("upload_media(%s): no media id in response %.200r", filename, body)
        raise UploadError("upload failed: empty media id")

    media_data["MediaId"] = media_id
    logger.info("upload_media(%s): uploaded as %s", filename, media_id)
    return media_data


def _parse_base_request(raw: Any) -> Any:
    try:
        obj = json.loads(raw) if isinstance(raw, str) else raw
        return obj["BaseRequest"]
    except (ValueError, TypeError, KeyError) as e:
        raise UploadError(f"unusable base request: {e}") from e


def _check_response(status: int, body: Any) -> "tuple[str, Optional[str]]":
    if status >= 400 or not isinstance(body, dict):
        raise UploadError(f"checkUpload err: HTTP {status} {str(body)[:200]}")
    base = body.get("BaseResponse") or {}
    if base.get("Ret") != 0:
        raise UploadError(f"checkUpload err: {json.dumps(base, ensure_ascii=False)}")
    signature = body.get("Signature")
    if not signature:
        raise UploadError("checkUpload failed to get Signature")
    return signature, body.get("AESKey")


__all__ = [
    "MediaPayload",
    "MediaType",
    "MediaUploadPlan",
    "MsgType",
    "classify",
    "msg_type_for",
    "plan_upload",
    "upload_media",
]
