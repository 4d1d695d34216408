from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import logging
import os

from config import Settings, settings, VERSION
from manifest_cache import ManifestCache
from relay import RelayDispatcher
from upstream_client import ResourceKind, UpstreamClient, UpstreamError

# Set up logging
logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)


def resolve_static_path(config: Settings) -> str:
    """Locate the directory holding the player page"""
    if config.STATIC_DIR:
        return config.STATIC_DIR
    # static/ lives next to src/
    static_path = os.path.join(os.path.dirname(
        os.path.dirname(os.path.abspath(__file__))), "static")
    if not os.path.exists(static_path):
        # Fallback to the current working directory (Docker layout)
        static_path = os.path.join(os.getcwd(), "static")
    return static_path


def create_app(config: Settings = settings, upstream: Optional[UpstreamClient] = None) -> FastAPI:
    """Build the relay application around one upstream client and one manifest cache"""
    upstream_client = upstream or UpstreamClient(config)
    manifest_cache = ManifestCache(ttl=config.manifest_cache_ttl)
    relay = RelayDispatcher(upstream_client, manifest_cache, config)
    static_path = resolve_static_path(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events"""
        logger.info(
            f"HLS relay starting: environment={config.ENVIRONMENT}, "
            f"origin={config.STREAM_URL}, route={config.STREAM_ROUTE}, "
            f"manifest TTL={config.manifest_cache_ttl}s")
        if not os.path.exists(static_path):
            logger.error(f"Static files directory NOT found at: {static_path}")

        yield

        logger.info("HLS relay shutting down...")
        await upstream_client.aclose()

    app = FastAPI(
        title="HLS relay",
        version=VERSION,
        description="Live HLS relay with manifest caching and segment passthrough",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.upstream = upstream_client
    app.state.manifest_cache = manifest_cache
    app.state.relay = relay

    # Browser media engines need length/range metadata for range-aware fetches
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With",
                       "Content-Type", "Accept", "Range", "User-Agent"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"Server error on {request.method} {request.url.path}: {exc!r}")
        return PlainTextResponse("Server error", status_code=500)

    @app.get("/health")
    async def health_check():
        """Liveness only, the origin is not contacted"""
        return {
            "status": "ok",
            "environment": config.ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
        }

    @app.get("/test-stream")
    async def test_stream():
        """Fetch the channel manifest from the origin and report what came back"""
        test_url = config.stream_manifest_url
        logger.info(f"Testing stream URL: {test_url}")
        try:
            response = await upstream_client.get(test_url, ResourceKind.MANIFEST)
        except UpstreamError as e:
            logger.error(f"Test stream error: {e.to_log_dict()}")
            return JSONResponse(status_code=502, content={
                "status": "error",
                "message": e.message,
                "code": e.code,
                "response": e.response_info,
            })

        return {
            "status": "ok",
            "contentType": response.headers.get("content-type"),
            "data": response.text[:500],
            "headers": dict(response.headers),
        }

    @app.get("/player/config")
    async def player_config():
        """Source URL the player page loads, relative to this server"""
        return {"streamUrl": f"{config.STREAM_ROUTE}{config.STREAM_PATH}"}

    # HEAD is relayed as an upstream GET, the server drops the body
    @app.api_route(config.STREAM_ROUTE + "/{path:path}", methods=["GET", "HEAD"])
    async def relay_stream(path: str, request: Request):
        raw_path = request.scope.get("raw_path", b"").decode("latin-1")
        return await relay.handle(path, raw_path)

    @app.get("/", include_in_schema=False)
    async def root():
        return FileResponse(os.path.join(static_path, "index.html"))

    app.mount("/static", StaticFiles(directory=static_path,
              check_dir=False), name="static")

    return app


app = create_app()
