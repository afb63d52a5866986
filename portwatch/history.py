"""Kill history: append-only records with an explicit, all-or-nothing clear."""
from __future__ import annotations
from pathlib import Path
from typing import List, Optional, Protocol
import json
import os
import tempfile
import threading

from . import logger as log
from .models import HistoryRecord


class HistorySink(Protocol):
    def append(self, record: HistoryRecord) -> None: ...
    def clear(self) -> int: ...
    def all(self) -> List[HistoryRecord]: ...


class MemoryHistory:
    """In-process history; also the base for the file-backed store."""

    def __init__(self, records: Optional[List[HistoryRecord]] = None):
        self._records: List[HistoryRecord] = list(records or [])
        self._lock = threading.Lock()

    def append(self, record: HistoryRecord) -> None:
        with self._lock:
            self._records.append(record)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records = []
        return removed

    def all(self) -> List[HistoryRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def recent(self, limit: int) -> List[HistoryRecord]:
        if limit <= 0:
            return []
        return self.all()[-limit:]

    def range(self, start: Optional[float] = None, end: Optional[float] = None) -> List[HistoryRecord]:
        """Records with ``start <= killed_at < end``; either bound may be open."""
        return [r for r in self.all()
                if (start is None or r.killed_at >= start) and (end is None or r.killed_at < end)]

    def by_group(self, group: str) -> List[HistoryRecord]:
        return [r for r in self.all() if r.group == group]

    def by_project(self, project: str) -> List[HistoryRecord]:
        return [r for r in self.all() if r.project == project]


class JsonHistoryStore(MemoryHistory):
    """History persisted as a JSON list.

    Every mutation rewrites the file through a temp file and ``os.replace`` so a
    reader never sees a half-written list, and a clear either lands completely or
    not at all. An append that cannot be written is rolled back and re-raised.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> List[HistoryRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            log.warning(f"History: could not read {self.path}: {e}")
            return []
        records = []
        for item in data if isinstance(data, list) else []:
            try:
                records.append(HistoryRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                log.debug(f"History: skipping malformed entry {item!r}: {e}")
        return records

    def _write(self, records: List[HistoryRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".history-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump([r.to_dict() for r in records], f, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def append(self, record: HistoryRecord) -> None:
        with self._lock:
            updated = self._records + [record]
            self._write(updated)
            self._records = updated

    def clear(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._write([])
            self._records = []
        log.info(f"History: cleared {removed} record(s) from {self.path}")
        return removed
