import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import Settings
from manifest_cache import ManifestCache
from relay import (
    InvalidPathError,
    RelayDispatcher,
    classify_path,
    is_valid_manifest,
    sanitize_path,
)
from upstream_client import ResourceKind, UpstreamClient
import httpx
import pytest


MANIFEST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:101
#EXTINF:6.0,
seg101.ts
#EXTINF:6.0,
seg102.ts
"""


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Origin:
    """Mock origin recording every request it receives"""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def add(self, path, response_factory):
        self.routes[path] = response_factory

    def __call__(self, request):
        self.requests.append(request)
        factory = self.routes.get(request.url.path)
        if factory is None:
            return httpx.Response(404, text="not found")
        return factory(request)


async def read_body(response) -> bytes:
    if hasattr(response, "body_iterator"):
        return b"".join([chunk async for chunk in response.body_iterator])
    return response.body


class TestPathHandling:
    """Test request path classification and hardening"""

    def test_classify_path(self):
        assert classify_path("/CH2/tracks-v1a1/mono.m3u8") == ResourceKind.MANIFEST
        assert classify_path("/CH2/tracks-v1a1/2024/seg001.TS") == ResourceKind.SEGMENT

    @pytest.mark.parametrize("path", ["/file.mp4", "/index.m3u", "/seg.ts.bak", "/", "/noext"])
    def test_classify_rejects_other_extensions(self, path):
        with pytest.raises(InvalidPathError):
            classify_path(path)

    def test_sanitize_adds_single_leading_slash(self):
        assert sanitize_path("CH2/index.m3u8") == "/CH2/index.m3u8"
        assert sanitize_path("/CH2/index.m3u8") == "/CH2/index.m3u8"

    @pytest.mark.parametrize("path", [
        "../secret.m3u8",
        "/CH2/../../etc/passwd.ts",
        "/CH2/./index.m3u8",
        "/CH2//index.m3u8",
        "/CH2\\..\\index.m3u8",
        "/CH2/index.m3u8\x00.ts",
    ])
    def test_sanitize_rejects_traversal(self, path):
        with pytest.raises(InvalidPathError):
            sanitize_path(path)

    @pytest.mark.parametrize("raw_path", [
        "/stream/CH2%2F..%2Findex.m3u8",
        "/stream/CH2/%2e%2e/index.m3u8",
        "/stream/CH2%5Cindex.m3u8",
    ])
    def test_sanitize_rejects_encoded_separators(self, raw_path):
        with pytest.raises(InvalidPathError):
            sanitize_path("/CH2/index.m3u8", raw_path=raw_path)

    @pytest.mark.parametrize("path,raw_path", [
        ("/admin/config.json#.ts", "/stream/admin/config.json%23.ts"),
        ("/private.mp4?x.ts", "/stream/private.mp4%3Fx.ts"),
        ("/private.mp4?x.m3u8", "/stream/private.mp4%3fx.m3u8"),
    ])
    def test_sanitize_rejects_query_and_fragment(self, path, raw_path):
        with pytest.raises(InvalidPathError):
            sanitize_path(path, raw_path=raw_path)
        # Also when only the decoded path is known
        with pytest.raises(InvalidPathError):
            sanitize_path(path)


class TestManifestValidation:
    """Test the #EXTM3U heuristic"""

    def test_valid_manifest(self):
        assert is_valid_manifest(MANIFEST) is True
        assert is_valid_manifest("\ufeff#EXTM3U\n") is True

    @pytest.mark.parametrize("content", ["", None, "not a manifest", "<html>#EXTINF</html>"])
    def test_invalid_manifest(self, content):
        assert is_valid_manifest(content) is False


class TestRelayDispatcher:
    """Test manifest caching and segment passthrough"""

    @pytest.fixture
    def origin(self):
        return Origin()

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def dispatcher(self, origin, clock):
        config = Settings(STREAM_URL="http://origin.test", SEGMENT_CHUNK_SIZE=4096)
        upstream = UpstreamClient(config, transport=httpx.MockTransport(origin))
        cache = ManifestCache(ttl=2.0, clock=clock)
        return RelayDispatcher(upstream, cache, config)

    @pytest.mark.asyncio
    async def test_manifest_cached_within_ttl(self, dispatcher, origin, clock):
        origin.add("/CH2/index.m3u8", lambda r: httpx.Response(200, text=MANIFEST))

        first = await dispatcher.handle("CH2/index.m3u8")
        clock.now += 1.9
        second = await dispatcher.handle("CH2/index.m3u8")

        assert first.status_code == second.status_code == 200
        assert first.body == second.body == MANIFEST.encode()
        assert first.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert first.headers["cache-control"] == "no-cache"
        assert len(origin.requests) == 1

    @pytest.mark.asyncio
    async def test_manifest_refetched_after_ttl(self, dispatcher, origin, clock):
        origin.add("/CH2/index.m3u8", lambda r: httpx.Response(200, text=MANIFEST))

        await dispatcher.handle("CH2/index.m3u8")
        clock.now += 2.0
        await dispatcher.handle("CH2/index.m3u8")

        assert len(origin.requests) == 2

    @pytest.mark.asyncio
    async def test_invalid_manifest_not_cached(self, dispatcher, origin):
        origin.add("/CH2/index.m3u8", lambda r: httpx.Response(200, text="not a manifest"))

        response = await dispatcher.handle("CH2/index.m3u8")

        assert response.status_code == 502
        assert len(dispatcher.cache) == 0

    @pytest.mark.asyncio
    async def test_upstream_error_status_becomes_502(self, dispatcher, origin):
        origin.add("/CH2/index.m3u8", lambda r: httpx.Response(500, text="origin down"))

        response = await dispatcher.handle("CH2/index.m3u8")

        assert response.status_code == 502
        assert "/CH2/index.m3u8" not in dispatcher.cache

    @pytest.mark.asyncio
    async def test_origin_404_becomes_502(self, dispatcher, origin):
        response = await dispatcher.handle("CH2/missing.ts")
        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_unsupported_extension_makes_no_upstream_call(self, dispatcher, origin):
        response = await dispatcher.handle("CH2/file.mp4")

        assert response.status_code == 400
        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_traversal_makes_no_upstream_call(self, dispatcher, origin):
        response = await dispatcher.handle("CH2/../../admin/index.m3u8")

        assert response.status_code == 400
        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_fragment_in_path_makes_no_upstream_call(self, dispatcher, origin):
        origin.add("/admin/config.json", lambda r: httpx.Response(200, content=b"SECRET"))

        response = await dispatcher.handle("admin/config.json#.ts")

        assert response.status_code == 400
        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_early_close_releases_upstream(self, dispatcher, origin):
        payload = os.urandom(64 * 1024)
        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=payload))

        opened = []
        open_segment = dispatcher.upstream.open_segment

        async def tracking_open(url):
            upstream_response = await open_segment(url)
            opened.append(upstream_response)
            return upstream_response

        dispatcher.upstream.open_segment = tracking_open

        response = await dispatcher.handle("CH2/seg101.ts")
        body = response.body_iterator
        first = await body.__anext__()
        assert len(first) == 4096
        assert opened[0].is_closed is False

        # Client went away after the first chunk
        await body.aclose()

        assert opened[0].is_closed is True

    @pytest.mark.asyncio
    async def test_segment_is_streamed_byte_identical(self, dispatcher, origin):
        payload = os.urandom(256 * 1024)
        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=payload))

        response = await dispatcher.handle("CH2/seg101.ts")
        chunks = [chunk async for chunk in response.body_iterator]

        assert response.status_code == 200
        assert response.headers["content-type"] == "video/MP2T"
        assert response.headers["cache-control"] == "public, max-age=0"
        assert b"".join(chunks) == payload
        # Piped in chunks, never as one buffered body
        assert len(chunks) > 1
        assert max(len(chunk) for chunk in chunks) <= 4096

    @pytest.mark.asyncio
    async def test_segments_are_not_cached(self, dispatcher, origin):
        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=b"\x47" * 188))

        for _ in range(2):
            response = await dispatcher.handle("CH2/seg101.ts")
            await read_body(response)

        assert len(origin.requests) == 2
        assert len(dispatcher.cache) == 0

    @pytest.mark.asyncio
    async def test_empty_segment_becomes_502(self, dispatcher, origin):
        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=b""))

        response = await dispatcher.handle("CH2/seg101.ts")

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_segment_failure_before_first_byte_becomes_502(self, dispatcher, origin):
        async def broken_body():
            raise httpx.ReadError("connection reset")
            yield b""

        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=broken_body()))

        response = await dispatcher.handle("CH2/seg101.ts")

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_segment_failure_mid_stream_aborts(self, dispatcher, origin):
        async def truncated_body():
            yield b"\x47" * 188
            raise httpx.ReadError("connection reset")

        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=truncated_body()))

        response = await dispatcher.handle("CH2/seg101.ts")
        assert response.status_code == 200

        received = []
        with pytest.raises(httpx.ReadError):
            async for chunk in response.body_iterator:
                received.append(chunk)
        assert b"".join(received) == b"\x47" * 188

    @pytest.mark.asyncio
    async def test_segment_content_length_forwarded(self, dispatcher, origin):
        origin.add("/CH2/seg101.ts", lambda r: httpx.Response(200, content=b"\x47" * 376))

        response = await dispatcher.handle("CH2/seg101.ts")
        await read_body(response)

        assert response.headers["content-length"] == "376"
