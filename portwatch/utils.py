import atexit
import hashlib
import os
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, Type

import psutil

from . import logger as log

class C:
    RESET = '\033[0m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    CYAN = '\033[36m'
    GRAY = '\033[90m'

# psutil errors and OSError are the expected failure families of a process lookup
OS_ERRORS: Tuple[Type[BaseException], ...] = (psutil.Error, OSError)

_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="portwatch-os")
atexit.register(_POOL.shutdown, wait=False, cancel_futures=True)


def submit(fn: Callable[..., Any], *args: Any) -> Future:
    return _POOL.submit(fn, *args)


def call_with_timeout(fn: Callable[..., Any], *args: Any, timeout: float = 2.0,
                      default: Any = None, what: str = "") -> Any:
    """Run a blocking OS call with an upper bound.

    Returns ``default`` if the call exceeds ``timeout`` or raises one of the
    expected OS error families; anything else is a bug and propagates.
    A timed-out call keeps its worker until the OS returns.
    """
    future = submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        log.debug(f"OS call timed out after {timeout:.1f}s: {what or getattr(fn, '__name__', fn)}")
        return default
    except OS_ERRORS as e:
        log.debug(f"OS call failed: {what or getattr(fn, '__name__', fn)}: {e!r}")
        return default


def readlink(path: Path) -> str:
    try:
        return os.readlink(path)
    except OSError:
        return ""

def read_text(path: Path, limit: int = 1_000_000) -> str:
    try:
        with open(path, "r", errors="ignore") as f:
            return f.read(limit)
    except (IOError, OSError):
        return ""

def read_lines(path: Path, limit_lines: int = 100000) -> List[str]:
    try:
        out = []
        with open(path, "r", errors="ignore") as f:
            for i, line in enumerate(f):
                if i >= limit_lines:
                    break
                out.append(line.rstrip("\n"))
        return out
    except (IOError, OSError):
        return []

def sha256_file(path: Path) -> Optional[str]:
    try:
        h = hashlib.sha256()
        with open(path, "rb") as f:
            while chunk := f.read(1024 * 1024):
                h.update(chunk)
        return h.hexdigest()
    except (IOError, OSError):
        return None
