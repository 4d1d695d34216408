"""
Entry point: validate configuration, then serve the relay with uvicorn.

uvicorn owns the process lifecycle: a failed bind exits with status 1, and
SIGINT/SIGTERM stop accepting connections and let in-flight requests finish
before the process exits 0.
"""

import logging
import sys

import uvicorn
from pydantic import ValidationError

logger = logging.getLogger("hls_relay")


def main() -> int:
    try:
        from config import settings
        from api import app
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration, refusing to start: {e}")
        return 1

    logger.info(
        f"Server starting on {settings.HOST}:{settings.PORT} in {settings.ENVIRONMENT} mode")
    logger.info(f"Health check: http://localhost:{settings.PORT}/health")
    logger.info(f"Test stream: http://localhost:{settings.PORT}/test-stream")

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    ))
    server.run()
    return 0 if server.started else 1


if __name__ == "__main__":
    sys.exit(main())
