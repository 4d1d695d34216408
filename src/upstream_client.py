"""
Upstream Client
Pooled keep-alive HTTP client used to fetch manifests and segments from the
single origin. It never retries: retry policy belongs to the caller.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional

import httpx

from config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    MANIFEST = "manifest"
    SEGMENT = "segment"


class UpstreamError(Exception):
    """Failed upstream fetch, with whatever detail the origin gave us"""

    def __init__(
        self,
        message: str,
        url: str,
        kind: ResourceKind,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        super().__init__(message)
        self.message = message
        self.url = url
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.headers = headers or {}

    @property
    def response_info(self) -> Optional[dict]:
        if self.status_code is None:
            return None
        return {"status": self.status_code, "headers": self.headers}

    def to_log_dict(self) -> dict:
        return {
            "url": self.url,
            "message": self.message,
            "code": self.code,
            "response": self.response_info,
        }


class UpstreamClient:
    def __init__(self, config: Settings = default_settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.manifest_timeout = config.MANIFEST_TIMEOUT
        self.segment_timeout = config.SEGMENT_TIMEOUT

        # One long-lived pool against the origin, connections are kept alive
        # between manifest refreshes and segment fetches
        client_kwargs = dict(
            timeout=httpx.Timeout(config.SEGMENT_TIMEOUT),
            follow_redirects=True,
            max_redirects=config.MAX_REDIRECTS,
            limits=httpx.Limits(
                max_keepalive_connections=config.MAX_KEEPALIVE_CONNECTIONS,
                max_connections=config.MAX_CONNECTIONS,
                keepalive_expiry=config.KEEPALIVE_EXPIRY
            ),
            headers={
                "Accept": "*/*",
                "User-Agent": config.DEFAULT_USER_AGENT,
                "Connection": "keep-alive",
            },
        )
        if transport is not None:
            client_kwargs["transport"] = transport
        self.http_client = httpx.AsyncClient(**client_kwargs)

    def timeout_for(self, kind: ResourceKind) -> float:
        if kind == ResourceKind.MANIFEST:
            return self.manifest_timeout
        return self.segment_timeout

    async def get(self, url: str, kind: ResourceKind = ResourceKind.MANIFEST) -> httpx.Response:
        """Buffered GET, the whole body is read before returning"""
        timeout = self.timeout_for(kind)
        try:
            # httpx timeouts apply per phase, wait_for caps the whole request
            response = await asyncio.wait_for(
                self.http_client.get(url, timeout=timeout), timeout=timeout)
        except asyncio.TimeoutError:
            raise UpstreamError(
                f"Request exceeded {timeout}s", url, kind, code="ETIMEDOUT")
        except httpx.RequestError as e:
            raise self._transport_error(e, url, kind)

        self._check_status(response, url, kind)
        return response

    async def fetch_manifest(self, url: str) -> str:
        """Fetch a manifest as text within the manifest time budget"""
        response = await self.get(url, ResourceKind.MANIFEST)
        return response.text

    async def open_segment(self, url: str) -> httpx.Response:
        """
        Send a segment request and return the response with its body unread.

        The caller owns the response and must close it (aclose) once the body
        has been piped or abandoned.
        """
        timeout = self.timeout_for(ResourceKind.SEGMENT)
        request = self.http_client.build_request("GET", url, timeout=timeout)
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.RequestError as e:
            raise self._transport_error(e, url, ResourceKind.SEGMENT)

        try:
            self._check_status(response, url, ResourceKind.SEGMENT)
        except UpstreamError:
            await response.aclose()
            raise
        return response

    async def fetch(self, url: str, kind: ResourceKind):
        """Fetch by kind: manifest text, or an open streaming response for segments"""
        if kind == ResourceKind.MANIFEST:
            return await self.fetch_manifest(url)
        return await self.open_segment(url)

    async def aclose(self):
        await self.http_client.aclose()
        logger.info("Upstream client closed")

    def _check_status(self, response: httpx.Response, url: str, kind: ResourceKind):
        if response.is_success:
            return
        raise UpstreamError(
            f"Request failed with status code {response.status_code}",
            url,
            kind,
            status_code=response.status_code,
            code="EBADSTATUS",
            headers=dict(response.headers)
        )

    @staticmethod
    def _transport_error(error: httpx.RequestError, url: str, kind: ResourceKind) -> UpstreamError:
        message = str(error) or error.__class__.__name__
        return UpstreamError(message, url, kind, code=error.__class__.__name__)
