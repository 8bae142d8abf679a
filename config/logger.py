"""Logging configuration."""
from loguru import logger
import sys
from .settings import settings


def setup_logger():
    """Configure application logging."""
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.log_level,
    )
    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="10 MB",
            retention="10 days",
            level=settings.log_level,
            enqueue=True,  # sync runs and health checks log from worker threads
        )
    return logger


# Every record needs extra["name"] for the format above
logger.configure(extra={"name": "app"})

# Initialize logger
setup_logger()
