from __future__ import annotations

from pathlib import Path
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logger(
    log_dir: str | Path = "logs",
    level: str = "INFO",
    rotation: str = "50 MB",
    retention: str = "14 days",
) -> Path:
    """Route loguru to stderr plus a rotating file; return the file path."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "genealogy.log"

    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT)
    logger.add(
        str(log_file),
        level=level,
        format=_FORMAT,
        rotation=rotation,
        retention=retention,
        enqueue=True,
    )
    return log_file
