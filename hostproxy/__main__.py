"""Start the proxy: ``python -m hostproxy``."""

import logging
import sys

import uvicorn

from hostproxy import vars as settings

logger = logging.getLogger("uvicorn.error")


def missing_settings() -> list:
    return [
        name
        for name in ("PROXY_API_KEY", "PROXY_API_DOMAIN")
        if not getattr(settings, name)
    ]


def main() -> int:
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
    missing = missing_settings()
    if missing:
        logger.critical(f"[Server] Required environment variables not set: {', '.join(missing)}")
        return 1

    logger.info(f"[Server] Starting proxy on {settings.HOST}:{settings.PORT}")
    uvicorn.run(
        "hostproxy.server:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level="debug" if settings.DEBUG else "info",
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
