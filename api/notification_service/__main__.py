"""Run the service with uvicorn: ``python -m notification_service``."""

import logging
import sys

import uvicorn

from notification_service.config import settings
from notification_service.logging_config import configure_logging

logger = logging.getLogger("notification_service")


def main() -> int:
    """Serve until signalled. Returns 0 on graceful shutdown, 1 on a fatal error."""
    configure_logging(settings)
    try:
        uvicorn.run(
            "notification_service.main:app",
            host="0.0.0.0",
            port=settings.port,
            log_level=settings.log_level.lower(),
            timeout_graceful_shutdown=int(settings.shutdown_grace_seconds),
        )
    except SystemExit as exc:
        # uvicorn exits non-zero when lifespan startup fails
        if exc.code not in (0, None):
            logger.error("Notification service failed to start (exit %s)", exc.code)
            return 1
    except Exception:
        logger.exception("Notification service terminated by a fatal error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
