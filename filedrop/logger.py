from loguru import logger
import sys
from pathlib import Path
from typing import Optional
import logging


class InterceptHandler(logging.Handler):
    """Intercept standard library logging and forward to loguru.

    This allows uvicorn and other libraries that use the logging module to
    be captured by loguru and use the same sinks/formatting.
    """

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None):
    """Configure loguru sinks and route stdlib logging through them.

    Called once from the application lifespan. Passing ``log_dir=None``
    keeps output on stdout only (tests use this).
    """
    # Remove default handlers to avoid duplicate logs
    logger.remove()

    # Console sink: human readable, colorized
    logger.add(
        sys.stdout,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}",
        colorize=True,
    )

    # File sink: daily rotation, JSON serialized, asynchronous (enqueue)
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "app-{time:YYYY-MM-DD}.log"),
            level=level,
            rotation="00:00",
            retention="14 days",
            serialize=True,
            enqueue=True,
            compression="zip",
        )

    # Intercept standard logging
    logging.root.handlers = [InterceptHandler()]
    for name in ("uvicorn.access", "uvicorn.error", "fastapi", "sqlalchemy.engine"):
        l = logging.getLogger(name)
        l.handlers = [InterceptHandler()]
        l.setLevel(logging.INFO)
