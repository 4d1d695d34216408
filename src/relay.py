"""
Relay Dispatcher
Classifies each request under the stream route as manifest or segment,
serves manifests through the short-lived cache and pipes segment bodies
straight from the origin to the caller.
"""

import logging
import re
from typing import AsyncIterator, Optional

import httpx
from fastapi import Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from config import Settings, settings as default_settings
from manifest_cache import ManifestCache
from upstream_client import ResourceKind, UpstreamClient, UpstreamError

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/MP2T"
MANIFEST_MARKER = "#EXTM3U"

# Percent-encoded '/', '\', '.', '?' and '#' are refused outright
_ENCODED_SEPARATOR = re.compile(r"%(2f|5c|2e|3f|23)", re.IGNORECASE)

# Decoded characters that would end the path in the origin URL
_URL_DELIMITERS = ('?', '#')


class InvalidPathError(ValueError):
    """Request path the relay refuses to forward"""


def classify_path(path: str) -> ResourceKind:
    """Map a request path to the resource kind it names, by extension"""
    lower = path.lower()
    if lower.endswith('.m3u8'):
        return ResourceKind.MANIFEST
    if lower.endswith('.ts'):
        return ResourceKind.SEGMENT
    raise InvalidPathError(f"Unsupported resource type: {path}")


def sanitize_path(path: str, raw_path: Optional[str] = None) -> str:
    """
    Validate a relative request path before it is appended to the origin URL.

    Returns the path with exactly one leading slash. Dot segments, empty
    segments, backslashes, NUL bytes, '?' and '#' and their encoded forms
    are rejected, so the extension check always sees the path the origin
    will serve.
    """
    if raw_path is not None and _ENCODED_SEPARATOR.search(raw_path):
        raise InvalidPathError("Encoded path separators are not allowed")
    if '\\' in path or '\x00' in path:
        raise InvalidPathError("Invalid characters in path")
    if any(delimiter in path for delimiter in _URL_DELIMITERS):
        raise InvalidPathError("Query or fragment delimiters in path")

    segments = path.lstrip('/').split('/')
    for segment in segments:
        if segment in ('', '.', '..'):
            raise InvalidPathError(f"Invalid path segment in {path!r}")

    return '/' + '/'.join(segments)


def is_valid_manifest(content: Optional[str]) -> bool:
    """
    Heuristic HLS check: a playlist must carry the #EXTM3U marker.

    Substring match rather than a parse, origins sometimes prepend
    whitespace or a BOM.
    """
    return bool(content) and MANIFEST_MARKER in content


class RelayDispatcher:
    def __init__(
        self,
        upstream: UpstreamClient,
        cache: ManifestCache,
        config: Settings = default_settings
    ):
        self.upstream = upstream
        self.cache = cache
        self.origin = config.STREAM_URL
        self.chunk_size = config.SEGMENT_CHUNK_SIZE

    def target_url(self, path: str) -> str:
        return f"{self.origin}{path}"

    async def handle(self, path: str, raw_path: Optional[str] = None) -> Response:
        """Relay a single request path (relative to the stream route)"""
        try:
            path = sanitize_path(path, raw_path)
            kind = classify_path(path)
        except InvalidPathError as e:
            logger.warning(f"Rejected stream request {path!r}: {e}")
            return PlainTextResponse("Invalid request", status_code=400)

        target_url = self.target_url(path)
        try:
            if kind == ResourceKind.MANIFEST:
                return await self.serve_manifest(path, target_url)
            return await self.serve_segment(target_url)
        except UpstreamError as e:
            self._log_failure(e)
            return PlainTextResponse("Error fetching content", status_code=502)

    async def serve_manifest(self, path: str, target_url: str) -> Response:
        content = self.cache.get(path)
        if content is None:
            logger.info(f"Fetching manifest from: {target_url}")
            content = await self.upstream.fetch_manifest(target_url)
            logger.debug(f"Manifest content: {content[:200]!r}")

            if not is_valid_manifest(content):
                raise UpstreamError(
                    "Invalid M3U8 content",
                    target_url,
                    ResourceKind.MANIFEST,
                    code="EINVALIDCONTENT"
                )
            self.cache.put(path, content)

        return Response(
            content=content,
            media_type=MANIFEST_CONTENT_TYPE,
            headers={"Cache-Control": "no-cache"}
        )

    async def serve_segment(self, target_url: str) -> Response:
        logger.info(f"Fetching segment from: {target_url}")
        upstream_response = await self.upstream.open_segment(target_url)

        headers = {"Cache-Control": "public, max-age=0"}
        content_length = upstream_response.headers.get("content-length")
        if content_length and not upstream_response.headers.get("content-encoding"):
            headers["Content-Length"] = content_length

        gen = self._pipe(upstream_response, target_url)

        # Pull the first chunk before committing to a 200, so a failure
        # before any byte is sent still becomes a 502
        try:
            first_chunk = await gen.__anext__()
        except StopAsyncIteration:
            raise UpstreamError(
                "Empty segment body", target_url, ResourceKind.SEGMENT,
                status_code=upstream_response.status_code,
                code="EEMPTYBODY",
                headers=dict(upstream_response.headers))
        except httpx.HTTPError as e:
            await upstream_response.aclose()
            raise UpstreamError(
                str(e) or e.__class__.__name__, target_url, ResourceKind.SEGMENT,
                code=e.__class__.__name__)

        async def generate_with_first_chunk():
            try:
                yield first_chunk
                async for chunk in gen:
                    yield chunk
            finally:
                # Client disconnects close this generator early
                await gen.aclose()

        return StreamingResponse(
            generate_with_first_chunk(),
            media_type=SEGMENT_CONTENT_TYPE,
            headers=headers,
            background=BackgroundTask(upstream_response.aclose)
        )

    async def _pipe(self, upstream_response: httpx.Response, target_url: str) -> AsyncIterator[bytes]:
        # One chunk in flight at a time: the next upstream read only happens
        # after the previous chunk was handed to the server
        bytes_sent = 0
        try:
            async for chunk in upstream_response.aiter_bytes(chunk_size=self.chunk_size):
                if not chunk:
                    continue
                bytes_sent += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            if bytes_sent:
                # Abort the connection, the player will request the segment again
                logger.error(
                    f"Stream error after {bytes_sent} bytes from {target_url}: {e!r}")
            raise
        finally:
            await upstream_response.aclose()

        logger.debug(f"Relayed {bytes_sent} bytes from {target_url}")

    @staticmethod
    def _log_failure(error: UpstreamError):
        logger.error(f"Proxy error: {error.to_log_dict()}")
