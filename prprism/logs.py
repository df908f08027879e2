"""Logging setup: stdlib logging from library modules is routed into loguru."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

from .config import get_data_dir


LOG_FILENAME = "prism.log"


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Console sink on stderr plus a rotating file sink under data/."""
    log_file = log_file or get_data_dir() / LOG_FILENAME
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Remove default loguru handler
    logger.remove()

    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        colorize=True,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
    )
    logger.add(
        str(log_file),
        level="DEBUG",
        rotation="10 MB",
        retention="1 week",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # LiteLLM is chatty at INFO
    for logger_name in ("LiteLLM", "litellm", "httpx"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)
