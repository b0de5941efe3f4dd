"""HTTP client for the media check/upload endpoints."""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Tuple

import httpx

from ..errors import UploadError

logger = logging.getLogger(__name__)

FileField = Tuple[str, bytes, str]


class UploadHttpClient:
    """Thin wrapper around httpx that returns (status, body) and raises UploadError on transport failure."""

    def __init__(self, *, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)

    async def post_json(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Tuple[int, Any]:
        logger.debug("upload.post_json: %s", url)
        return await self._post(url, headers=headers, json=dict(payload))

    async def post_multipart(
        self,
        url: str,
        data: Mapping[str, Any],
        files: Mapping[str, FileField],
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Tuple[int, Any]:
        logger.debug("upload.post_multipart: %s fields=%s", url, sorted(data))
        form = {key: str(value) for key, value in data.items()}
        return await self._post(url, headers=headers, data=form, files=dict(files))

    async def _post(self, url: str, *, headers: Optional[Mapping[str, str]], **kwargs: Any) -> Tuple[int, Any]:
        try:
            response = await self._client.post(url, headers=dict(headers or {}), **kwargs)
        except httpx.TimeoutException as e:
            logger.error("upload.post %s: request timeout", url)
            raise UploadError(f"request timeout: {url}") from e
        except httpx.NetworkError as e:
            logger.error("upload.post %s: network error - %s", url, e)
            raise UploadError(f"network error: {e}") from e
        except httpx.HTTPError as e:
            logger.error("upload.post %s: http error - %s", url, e)
            raise UploadError(f"http error: {e}") from e
        return response.status_code, decode_body(response.text)

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


def decode_body(text: str) -> Any:
    """JSON when the body parses, the raw text otherwise."""
    try:
        return json.loads(text)
    except ValueError:
        return text


def cookie_header(cookies: Any) -> str:
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies or [] if "name" in c and "value" in c)


__all__ = ["UploadHttpClient", "cookie_header", "decode_body"]
