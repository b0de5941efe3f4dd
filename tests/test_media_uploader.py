"""Tests for the size-dependent media upload protocol."""
from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from webpuppet.backend.http_client import UploadHttpClient
from webpuppet.config import MB, UploadSettings
from webpuppet.errors import MediaTooLargeError, UploadError
from webpuppet.media_uploader import (
    MediaPayload,
    MediaType,
    MsgType,
    classify,
    msg_type_for,
    plan_upload,
    upload_media,
)

CHECK_URL = "/cgi-bin/mmwebwx-bin/webwxcheckupload"
UPLOAD_URL = "https://file.wx.qq.com/cgi-bin/mmwebwx-bin/webwxuploadmedia"


class StubBridge:
    """Answers the getters the uploader reads from the page."""

    def __init__(self) -> None:
        self.calls: List[str] = []

    async def get_base_request(self):
        self.calls.append("get_base_request")
        return json.dumps({"BaseRequest": {"Uin": 1, "Sid": "sid", "Skey": "@key", "DeviceID": "e1"}})

    async def get_pass_ticket(self):
        self.calls.append("get_pass_ticket")
        return "pass-ticket"

    async def get_upload_media_url(self):
        self.calls.append("get_upload_media_url")
        return UPLOAD_URL

    async def get_check_upload_url(self):
        self.calls.append("get_check_upload_url")
        return CHECK_URL

    async def cookies(self):
        self.calls.append("cookies")
        return [
            {"name": "webwx_data_ticket", "value": "data-ticket"},
            {"name": "wxuin", "value": "1"},
        ]

    async def hostname(self):
        self.calls.append("hostname")
        return "wx.qq.com"


class Endpoints:
    """MockTransport handler recording requests in arrival order."""

    def __init__(self, check_body=None, upload_body=None) -> None:
        self.requests: List[httpx.Request] = []
        self.check_body = check_body if check_body is not None else {
            "BaseResponse": {"Ret": 0, "ErrMsg": ""},
            "Signature": "sig-123",
            "AESKey": "aes-456",
        }
        self.upload_body = upload_body if upload_body is not None else {
            "BaseResponse": {"Ret": 0},
            "MediaId": "@crypt_media_1",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == CHECK_URL:
            return httpx.Response(200, json=self.check_body)
        return httpx.Response(200, json=self.upload_body)

    def kinds(self) -> List[str]:
        return ["check" if r.url.path == CHECK_URL else "upload" for r in self.requests]


def client_for(endpoints: Endpoints) -> UploadHttpClient:
    return UploadHttpClient(transport=httpx.MockTransport(endpoints))


async def run_upload(payload, endpoints, limits=None, bridge=None):
    http = client_for(endpoints)
    try:
        return await upload_media(
            bridge or StubBridge(),
            http,
            payload,
            to_user_name="@friend",
            from_user_name="@me",
            file_id=3,
            limits=limits or UploadSettings(),
        )
    finally:
        await http.aclose()


class TestClassification:
    """Extension driven categories."""

    @pytest.mark.parametrize(
        "ext,expected",
        [("jpg", MediaType.IMAGE), ("PNG", MediaType.IMAGE), ("gif", MediaType.IMAGE), ("mp4", MediaType.VIDEO), ("pdf", MediaType.ATTACHMENT), ("", MediaType.ATTACHMENT)],
    )
    def test_classify(self, ext, expected):
        assert classify(ext) is expected

    @pytest.mark.parametrize(
        "ext,expected",
        [("jpg", MsgType.IMAGE), ("gif", MsgType.EMOTICON), ("mp4", MsgType.VIDEO), ("zip", MsgType.APP)],
    )
    def test_message_type(self, ext, expected):
        assert msg_type_for(ext) is expected


class TestPlanUpload:
    """Validation and phase selection, all before any network call."""

    def test_missing_mime_type_is_rejected(self):
        with pytest.raises(UploadError):
            plan_upload(MediaPayload(data=b"x", filename="README"), UploadSettings())

    def test_declared_mime_type_wins(self):
        plan = plan_upload(MediaPayload(data=b"x", filename="README", mime_type="text/plain"), UploadSettings())
        assert plan.mime_type == "text/plain"
        assert plan.media_type is MediaType.ATTACHMENT

    def test_checksum_and_size(self):
        plan = plan_upload(MediaPayload(data=b"hello", filename="a.txt"), UploadSettings())
        assert plan.checksum == "5d41402abc4b2a76b9719d911017c592"
        assert plan.size == 5
        assert not plan.two_phase
        assert plan.signature is None

    def test_caps_follow_configuration(self):
        """Video cap first, then the general cap."""
        limits = UploadSettings(max_file_size=10, large_file_size=5, max_video_size=3)
        with pytest.raises(MediaTooLargeError) as excinfo:
            plan_upload(MediaPayload(data=b"0123", filename="v.mp4", mime_type="video/mp4"), limits)
        assert excinfo.value.limit == 3

        with pytest.raises(MediaTooLargeError) as excinfo:
            plan_upload(MediaPayload(data=b"0" * 11, filename="a.bin", mime_type="application/octet-stream"), limits)
        assert excinfo.value.limit == 10

        plan = plan_upload(MediaPayload(data=b"0" * 6, filename="a.bin", mime_type="application/octet-stream"), limits)
        assert plan.two_phase


@pytest.mark.asyncio
class TestUploadMedia:
    """Check phase only above the large-file threshold."""

    async def test_just_above_threshold_checks_then_uploads(self):
        """25MB + 1 byte: signature first, then the multipart upload carrying it."""
        endpoints = Endpoints()
        payload = MediaPayload(data=b"\0" * (25 * MB + 1), filename="big.bin", mime_type="application/octet-stream")

        media = await run_upload(payload, endpoints)

        assert endpoints.kinds() == ["check", "upload"]
        check = json.loads(endpoints.requests[0].content)
        assert check["FileType"] == 7
        assert check["FileSize"] == 25 * MB + 1
        assert check["ToUserName"] == "@friend"
        assert str(endpoints.requests[0].url) == f"https://wx.qq.com{CHECK_URL}"

        upload = endpoints.requests[1]
        assert str(upload.url) == f"{UPLOAD_URL}?f=json"
        assert b'"Signature": "sig-123"' in upload.content
        assert b'"AESKey": "aes-456"' in upload.content
        assert media["MediaId"] == "@crypt_media_1"
        assert media["Signature"] == "sig-123"

    async def test_exactly_threshold_skips_check(self):
        """25MB exactly goes straight to the upload endpoint without a signature."""
        endpoints = Endpoints()
        payload = MediaPayload(data=b"\0" * (25 * MB), filename="edge.bin", mime_type="application/octet-stream")

        media = await run_upload(payload, endpoints)

        assert endpoints.kinds() == ["upload"]
        assert b'"Signature"' not in endpoints.requests[0].content
        assert "Signature" not in media

    async def test_oversized_video_never_touches_the_network(self):
        """20MB + 1 byte of video is refused before the bridge or HTTP is used."""
        endpoints = Endpoints()
        bridge = StubBridge()
        payload = MediaPayload(data=b"\0" * (20 * MB + 1), filename="clip.mp4", mime_type="video/mp4")

        with pytest.raises(MediaTooLargeError):
            await run_upload(payload, endpoints, bridge=bridge)

        assert endpoints.requests == []
        assert bridge.calls == []

    async def test_small_upload_request_fields(self):
        endpoints = Endpoints()
        payload = MediaPayload(data=b"\x89PNG....", filename="pic.png")

        media = await run_upload(payload, endpoints)

        request = endpoints.requests[0]
        body = request.content
        assert request.headers["Referer"] == "https://wx.qq.com"
        assert "webwx_data_ticket=data-ticket" in request.headers["Cookie"]
        assert b'name="id"' in body and b"WU_FILE_3" in body
        assert b'name="webwx_data_ticket"' in body and b"data-ticket" in body
        assert b'name="pass_ticket"' in body and b"pass-ticket" in body
        assert b'filename="pic.png"' in body
        assert media == {
            "ToUserName": "@friend",
            "MediaId": "@crypt_media_1",
            "FileName": "pic.png",
            "FileSize": len(payload.data),
            "FileMd5": plan_upload(payload, UploadSettings()).checksum,
            "MMFileExt": "png",
        }

    async def test_check_without_success_marker_fails(self):
        """A non-zero Ret is a hard failure and nothing is uploaded."""
        endpoints = Endpoints(check_body={"BaseResponse": {"Ret": 1, "ErrMsg": "nope"}})
        limits = UploadSettings(large_file_size=4)
        payload = MediaPayload(data=b"0123456789", filename="a.bin", mime_type="application/octet-stream")

        with pytest.raises(UploadError, match="checkUpload"):
            await run_upload(payload, endpoints, limits=limits)
        assert endpoints.kinds() == ["check"]

    async def test_check_without_signature_fails(self):
        endpoints = Endpoints(check_body={"BaseResponse": {"Ret": 0}})
        limits = UploadSettings(large_file_size=4)
        payload = MediaPayload(data=b"0123456789", filename="a.bin", mime_type="application/octet-stream")

        with pytest.raises(UploadError, match="Signature"):
            await run_upload(payload, endpoints, limits=limits)
        assert endpoints.kinds() == ["check"]

    async def test_empty_media_id_fails(self):
        endpoints = Endpoints(upload_body={"BaseResponse": {"Ret": 0}, "MediaId": ""})
        payload = MediaPayload(data=b"abc", filename="a.txt")

        with pytest.raises(UploadError, match="empty media id"):
            await run_upload(payload, endpoints)

    async def test_transport_error_becomes_upload_error(self):
        def broken(request):
            raise httpx.ConnectError("refused", request=request)

        http = UploadHttpClient(transport=httpx.MockTransport(broken))
        try:
            with pytest.raises(UploadError, match="network error"):
                await upload_media(
                    StubBridge(),
                    http,
                    MediaPayload(data=b"abc", filename="a.txt"),
                    to_user_name="@friend",
                    from_user_name="@me",
                    file_id=0,
                    limits=UploadSettings(),
                )
        finally:
            await http.aclose()
