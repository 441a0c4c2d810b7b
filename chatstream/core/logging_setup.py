from __future__ import annotations

import logging
import os
import sys

from loguru import logger

DEV_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
QUIET_LOGGERS = ("httpx", "httpcore")


def _resolve_level(production: bool) -> tuple[str, int]:
    level_name = (os.getenv("LOG_LEVEL") or ("INFO" if production else "DEBUG")).upper()
    level_value = logging.getLevelName(level_name)
    if not isinstance(level_value, int):
        return "INFO", logging.INFO
    return level_name, level_value


def configure_logging(*, production: bool) -> str:
    """Configure stdlib `logging` (API modules, uvicorn) and the Loguru sink (streaming code).

    INFO in production, DEBUG otherwise; `LOG_LEVEL` overrides both. Production
    output is one JSON record per line. Returns the effective level name.
    """
    level_name, level_value = _resolve_level(production)

    logging.getLogger().setLevel(level_value)
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(logger_name).setLevel(level_value)
    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(level_value, logging.WARNING))

    logger.remove()
    if production:
        logger.add(sys.stdout, level=level_name, serialize=True, backtrace=False, diagnose=False)
    else:
        logger.add(sys.stdout, level=level_name, format=DEV_FORMAT, backtrace=False, diagnose=False)

    return level_name
