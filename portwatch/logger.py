"""Logging for portwatch using loguru."""

from __future__ import annotations
import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger

FMT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> | {message}"


def log_dir() -> Path:
    return Path(os.getenv("PORTWATCH_LOG_DIR", str(Path.home() / ".local" / "share" / "portwatch" / "logs")))


def setup_logging(console: bool = True) -> None:
    dbg = os.getenv("PORTWATCH_DEBUG", "").lower() in ("1", "true")
    lvl = os.getenv("PORTWATCH_LOG_LEVEL", "DEBUG" if dbg else "INFO").upper()
    logger.remove()
    if console:
        logger.add(sys.stderr, format=FMT, level=lvl, colorize=True, diagnose=False)
    if os.getenv("PORTWATCH_LOG_FILE", "1") != "0":
        directory = log_dir()
        directory.mkdir(parents=True, exist_ok=True)
        logger.add(
            directory / "portwatch.log",
            format=FMT,
            level=lvl,
            rotation="10 MB",
            retention=5,
            compression="gz",
            diagnose=False,
        )


def debug(msg: str, *a: Any, **k: Any) -> None:
    logger.opt(depth=1).debug(msg, *a, **k)


def info(msg: str, *a: Any, **k: Any) -> None:
    logger.opt(depth=1).info(msg, *a, **k)


def warning(msg: str, *a: Any, **k: Any) -> None:
    logger.opt(depth=1).warning(msg, *a, **k)


def error(msg: str, *a: Any, **k: Any) -> None:
    logger.opt(depth=1).error(msg, *a, **k)


def exception(msg: str, *a: Any, **k: Any) -> None:
    logger.opt(depth=1, exception=True).error(msg, *a, **k)


__all__ = ["setup_logging", "debug", "info", "warning", "error", "exception", "logger"]
