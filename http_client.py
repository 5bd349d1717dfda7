# http_client.py

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urljoin

import aiohttp
from pydantic import BaseModel, Field

from flow_errors import HttpNetworkError, HttpTimeoutError
from flow_logging import get_logger, mask_headers, preview

logger = get_logger("http")


class HttpResponse(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    latencyMs: float = 0.0


class HttpClient(Protocol):
    """
    Transport used by the step executor. Implementations return an
    HttpResponse for any HTTP status and raise HttpTimeoutError or
    HttpNetworkError when no response could be obtained.
    """

    async def send(self, method: str, url: str, headers: Dict[str, str], body: Any,
                   timeout_ms: int) -> HttpResponse:
        ...


def _prepare_body(body: Any, headers: Dict[str, str]):
    """Returns (json_payload, data_payload) for aiohttp; may add a Content-Type header."""
    if body is None:
        return None, None
    content_type = next((v for k, v in headers.items() if k.lower() == 'content-type'), '').lower()
    is_json_content_type = 'application/json' in content_type
    if isinstance(body, (dict, list)):
        if not is_json_content_type:
            headers['Content-Type'] = 'application/json; charset=utf-8'
        return body, None
    if isinstance(body, str):
        if is_json_content_type:
            try:
                return json.loads(body), None
            except json.JSONDecodeError:
                logger.warning("Content-Type is JSON, but body is not valid JSON. Sending as raw string data.")
        return None, body.encode('utf-8', errors='replace')
    return None, str(body).encode('utf-8', errors='replace')


async def _read_body(resp: aiohttp.ClientResponse) -> Any:
    resp_content_type = resp.headers.get('Content-Type', '').lower()
    if 'application/json' in resp_content_type:
        try:
            return await resp.json(encoding='utf-8')
        except (json.JSONDecodeError, UnicodeDecodeError, aiohttp.ContentTypeError) as json_err:
            logger.warning(f"Failed to decode JSON response ({resp.status}) despite Content-Type. Error: {json_err}. Reading as text.")
            return await resp.text(encoding='utf-8', errors='replace')
    if resp_content_type.startswith('text/') or not resp_content_type:
        text = await resp.text(encoding='utf-8', errors='replace')
        return text or None
    raw_bytes = await resp.read()
    limit = 100
    if len(raw_bytes) > limit:
        return f"[Body Binary Data - Type: {resp_content_type}, Size: {len(raw_bytes)} bytes, Starts: {raw_bytes[:limit]!r}...]"
    return f"[Body Binary Data - Type: {resp_content_type}, Size: {len(raw_bytes)} bytes, Data: {raw_bytes!r}]"


class AiohttpClient:
    """
    HttpClient backed by one shared aiohttp ClientSession.

    The session is created lazily inside the running loop and has no cookie
    jar, so runs never leak cookies into each other. Relative URLs are joined
    onto ``base_url`` when one is configured.
    """

    def __init__(self, base_url: Optional[str] = None, *, connector_limit: int = 100,
                 connector_limit_per_host: int = 50, verify_ssl: bool = True):
        self.base_url = base_url
        self.connector_limit = connector_limit
        self.connector_limit_per_host = connector_limit_per_host
        self.verify_ssl = verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    def create_connector(self) -> aiohttp.BaseConnector:
        logger.debug(f"Creating TCPConnector: limit={self.connector_limit}, limit_per_host={self.connector_limit_per_host}, verify_ssl={self.verify_ssl}")
        return aiohttp.TCPConnector(
            ssl=None if self.verify_ssl else False,
            limit=self.connector_limit,
            limit_per_host=self.connector_limit_per_host,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                # Per-request deadlines are passed on every call
                self._session = aiohttp.ClientSession(
                    connector=self.create_connector(),
                    timeout=aiohttp.ClientTimeout(total=None, connect=10),
                    cookie_jar=aiohttp.DummyCookieJar(),
                )
            return self._session

    def resolve_url(self, url: str) -> str:
        if self.base_url and not url.lower().startswith(("http://", "https://")):
            return urljoin(self.base_url.rstrip('/') + '/', url.lstrip('/'))
        return url

    async def send(self, method: str, url: str, headers: Dict[str, str], body: Any,
                   timeout_ms: int) -> HttpResponse:
        session = await self._get_session()
        final_url = self.resolve_url(url)
        final_headers = dict(headers or {})
        json_payload, data_payload = _prepare_body(body, final_headers)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Sending {method} {final_url} headers={mask_headers(final_headers)} "
                         f"payload={preview(json_payload if json_payload is not None else data_payload)}")

        request_start_time = time.monotonic()
        try:
            async with session.request(
                method,
                final_url,
                headers=final_headers,
                json=json_payload,
                data=data_payload,
                timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000.0),
            ) as resp:
                response_headers = {k: v for k, v in resp.headers.items()}
                response_body = await _read_body(resp)
                latency_ms = (time.monotonic() - request_start_time) * 1000
                return HttpResponse(status=resp.status, headers=response_headers, body=response_body,
                                    latencyMs=round(latency_ms, 3))
        except asyncio.TimeoutError as e:
            raise HttpTimeoutError(f"Request timed out after {timeout_ms} ms: {method} {final_url}") from e
        except (aiohttp.ClientError, ValueError) as e:
            # ValueError covers malformed URLs rejected by yarl
            raise HttpNetworkError(f"{type(e).__name__}: {e}") from e

    async def close(self):
        async with self._lock:
            if self._session is not None and not self._session.closed:
                await self._session.close()
            self._session = None

    async def __aenter__(self) -> "AiohttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
