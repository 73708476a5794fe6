import logging
from typing import Optional

from app.core.config import settings

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once per process. Level defaults to LOG_LEVEL."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=settings.log_format or DEFAULT_LOG_FORMAT,
    )
    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
