"""Project marker watcher.

Watches project directories for marker files (``package.json``,
``pyproject.toml``...) and feeds the project name each one declares into the
metadata cache as a hint keyed by directory. The resolver consults these hints
before falling back to path heuristics.

- Debounce: 500ms so an editor's save storm becomes a single update
- Hints go through the same cache lock as the scan path; last write wins
"""
from __future__ import annotations
import json
import math
import os
import threading
import time
import tomllib
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from . import logger as log
from .cache import MetadataCache
from .resolver import HINT_NAMESPACE

DEBOUNCE_DELAY = 0.5
SCAN_DEPTH = 2
SKIP_DIRS = {"node_modules", ".git", ".venv", "venv", "target", "__pycache__", "dist", "build"}


def _package_json(path: Path) -> Optional[str]:
    return json.loads(path.read_text()).get("name")


def _pyproject(path: Path) -> Optional[str]:
    data = tomllib.loads(path.read_text())
    return data.get("project", {}).get("name") or data.get("tool", {}).get("poetry", {}).get("name")


def _cargo(path: Path) -> Optional[str]:
    return tomllib.loads(path.read_text()).get("package", {}).get("name")


def _go_mod(path: Path) -> Optional[str]:
    for line in path.read_text().splitlines():
        if line.startswith("module "):
            return line.split()[1].rstrip("/").rsplit("/", 1)[-1]
    return None


def _compose(path: Path) -> Optional[str]:
    data = yaml.safe_load(path.read_text()) or {}
    return (data.get("name") if isinstance(data, dict) else None) or path.parent.name


def _procfile(path: Path) -> Optional[str]:
    return path.parent.name


MARKERS: Dict[str, Callable[[Path], Optional[str]]] = {
    "package.json": _package_json,
    "pyproject.toml": _pyproject,
    "Cargo.toml": _cargo,
    "go.mod": _go_mod,
    "docker-compose.yml": _compose,
    "docker-compose.yaml": _compose,
    "compose.yaml": _compose,
    "Procfile": _procfile,
}


def parse_marker(path: Path) -> Optional[str]:
    """Project name declared by a marker file, or None if it has none or cannot be read."""
    parser = MARKERS.get(path.name)
    if parser is None:
        return None
    try:
        name = parser(path)
    except (OSError, ValueError, tomllib.TOMLDecodeError, yaml.YAMLError, AttributeError, IndexError) as e:
        log.debug(f"[Watcher] Could not parse {path}: {e}")
        return None
    if not isinstance(name, str) or not name.strip():
        return None
    # npm scopes: "@acme/shop" -> "shop"
    return name.strip().rsplit("/", 1)[-1]


def find_markers(root: Path, depth: int = SCAN_DEPTH) -> Iterable[Path]:
    base = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        here = Path(dirpath)
        if len(here.parts) - base >= depth:
            dirnames[:] = []
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS and not d.startswith(".")]
        for fn in filenames:
            if fn in MARKERS:
                yield here / fn


class DebouncedMarkerHandler(FileSystemEventHandler):
    """Aggregates rapid events per marker path into one callback after a quiet period."""

    def __init__(self, on_ready: Callable[[Path], None], delay: float = DEBOUNCE_DELAY):
        super().__init__()
        self._on_ready = on_ready
        self._delay = delay
        self._pending: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._running = True
        self._thread = threading.Thread(target=self._debounce_loop, name="portwatch-markers", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        self._thread.join(timeout=2)

    def _debounce_loop(self) -> None:
        while self._running:
            self.flush(time.time())
            time.sleep(0.1)

    def flush(self, now: float) -> List[Path]:
        ready: List[Path] = []
        with self._lock:
            for path_str, last in list(self._pending.items()):
                if now - last >= self._delay:
                    ready.append(Path(path_str))
                    del self._pending[path_str]
        for path in ready:
            try:
                self._on_ready(path)
            except Exception as e:
                log.debug(f"[Watcher] Error processing {path}: {e}")
        return ready

    def _queue(self, src: Any) -> None:
        path = Path(src if isinstance(src, str) else src.decode())
        if path.name not in MARKERS:
            return
        with self._lock:
            self._pending[str(path)] = time.time()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._queue(event.src_path)
            self._queue(event.dest_path)


class ProjectMarkerWatcher:
    def __init__(self, cache: MetadataCache, directories: Iterable[str], delay: float = DEBOUNCE_DELAY):
        self.cache = cache
        self.directories = [Path(d) for d in directories]
        self.delay = delay
        self._observer: Any = None
        self._handler: Optional[DebouncedMarkerHandler] = None
        self._running = False
        self._stats = {"markers_applied": 0, "markers_dropped": 0}

    def apply(self, path: Path) -> Optional[str]:
        """Refresh the hint for ``path.parent`` from the marker at ``path``."""
        key = str(path.parent)
        name = parse_marker(path) if path.exists() else None
        if name is None:
            if not any((path.parent / m).exists() for m in MARKERS if m != path.name):
                self.cache.drop_attr(HINT_NAMESPACE, key)
                self._stats["markers_dropped"] += 1
            return None
        self.cache.put_attr(HINT_NAMESPACE, key, name, ttl=math.inf)
        self._stats["markers_applied"] += 1
        log.debug(f"[Watcher] {key} -> project {name}")
        return name

    def initial_scan(self) -> int:
        applied = 0
        for root in self.directories:
            if not root.is_dir():
                continue
            for marker in find_markers(root):
                if self.apply(marker):
                    applied += 1
        return applied

    def start(self) -> bool:
        if self._running:
            return True
        roots = [d for d in self.directories if d.is_dir()]
        if not roots:
            log.debug("[Watcher] No project directories to watch")
            return False
        found = self.initial_scan()
        try:
            self._handler = DebouncedMarkerHandler(self.apply, self.delay)
            self._observer = Observer()
            for root in roots:
                self._observer.schedule(self._handler, str(root), recursive=True)
                log.debug(f"[Watcher] Watching {root}")
            self._observer.start()
        except OSError as e:
            log.error(f"[Watcher] Failed to start: {e}")
            if self._handler:
                self._handler.stop()
            return False
        self._running = True
        log.info(f"[Watcher] Watching {len(roots)} director(ies), {found} project marker(s) found")
        return True

    def stop(self) -> None:
        self._running = False
        if self._handler:
            self._handler.stop()
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> dict:
        return self._stats.copy()
