"""Process-wide logging setup."""

import logging

from notification_service.config import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Settings) -> None:
    """Configure the root logger once at startup."""
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    # Access logs are emitted by uvicorn; keep SQL chatter out of them.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
