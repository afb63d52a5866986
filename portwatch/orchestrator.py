"""The monitor: one scan cycle on a fixed interval, composing every component.

A cycle runs Scanner -> Resolver -> SmartFilter -> diff -> Guard (and the kill
batch it issues) -> history -> analyzer -> listeners. The monitor owns the
current snapshot and the guard's reservation table; readers get immutable,
cycle-stamped values through the query methods.
"""
from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import threading
import time

from . import logger as log
from .analyzer import RestartAnalyzer, RestartEvent
from .auditor import AuditReport, SecurityAuditor
from .cache import MetadataCache
from .config import MonitorConfig
from .filters import SmartFilter
from .guard import PortGuard
from .history import HistorySink, JsonHistoryStore, MemoryHistory
from .models import (
    HOST_PROCESS,
    ChangeKind,
    ConflictEvent,
    GuardState,
    HistoryRecord,
    InvariantViolation,
    KillFailure,
    KillRequest,
    KillResult,
    OffenderStat,
    ProcessRecord,
    ScanDiagnostic,
    ScanSnapshot,
    SnapshotDiff,
    SnapshotEvent,
)
from .resolver import MetadataResolver
from .scanner import Scanner
from .terminator import Terminator
from .utils import call_with_timeout
from .watcher import ProjectMarkerWatcher


def _moved(a: Optional[float], b: Optional[float], tolerance: float) -> bool:
    if a is None or b is None:
        return (a is None) != (b is None)
    return abs(a - b) > tolerance


def record_changed(old: ProcessRecord, new: ProcessRecord, tolerance: float = 0.0) -> bool:
    return (old.start_time != new.start_time
            or old.cmdline != new.cmdline
            or _moved(old.cpu_pct, new.cpu_pct, tolerance)
            or _moved(old.mem_pct, new.mem_pct, tolerance))


def diff_snapshots(old: Optional[ScanSnapshot], new: ScanSnapshot, tolerance: float = 0.0) -> SnapshotDiff:
    """Every ``(port, pid)`` key of either snapshot lands in exactly one bucket."""
    before = {b.key: b.process for b in old.bindings} if old is not None else {}
    after = {b.key: b.process for b in new.bindings}
    seq = new.sequence
    diff = SnapshotDiff()
    for key in sorted(after.keys() - before.keys()):
        diff.added.append(SnapshotEvent(ChangeKind.ADDED, key[0], after[key], sequence=seq))
    for key in sorted(before.keys() - after.keys()):
        diff.removed.append(SnapshotEvent(ChangeKind.REMOVED, key[0], before[key], sequence=seq))
    for key in sorted(after.keys() & before.keys()):
        if record_changed(before[key], after[key], tolerance):
            diff.changed.append(SnapshotEvent(ChangeKind.CHANGED, key[0], after[key], before[key], seq))
        else:
            diff.unchanged.append(key)
    return diff


def check_snapshot(snapshot: ScanSnapshot) -> None:
    """Raise InvariantViolation if a snapshot repeats a binding or gives one pid two identities."""
    keys = set()
    incarnations: Dict[int, float] = {}
    for b in snapshot.bindings:
        if b.key in keys:
            raise InvariantViolation(f"snapshot #{snapshot.sequence}: duplicate binding {b.key}")
        keys.add(b.key)
        known = incarnations.setdefault(b.process.pid, b.process.start_time)
        if known != b.process.start_time:
            raise InvariantViolation(
                f"snapshot #{snapshot.sequence}: pid {b.process.pid} has two start times ({known}, "
                f"{b.process.start_time})")


@dataclass(frozen=True)
class StatusSummary:
    count: int
    conflicts: int
    high_cpu: int
    high_memory: int
    containers: int

    @property
    def text(self) -> str:
        parts = [f"{self.count} process(es)"]
        if self.conflicts:
            parts.append(f"{self.conflicts} conflict(s)")
        if self.high_cpu:
            parts.append(f"{self.high_cpu} high CPU")
        if self.high_memory:
            parts.append(f"{self.high_memory} high memory")
        if self.containers:
            parts.append(f"{self.containers} in containers")
        return ", ".join(parts)

    @property
    def tooltip(self) -> str:
        if not self.count:
            return "portwatch: no watched ports in use"
        return f"portwatch: {self.text}"


@dataclass
class CycleReport:
    sequence: int
    snapshot: ScanSnapshot
    diff: SnapshotDiff
    conflicts: List[ConflictEvent] = field(default_factory=list)
    kills: List[KillResult] = field(default_factory=list)
    restarts: List[RestartEvent] = field(default_factory=list)
    diagnostics: Tuple[ScanDiagnostic, ...] = ()


Listener = Callable[[CycleReport], None]


class Monitor:
    def __init__(self, config: MonitorConfig,
                 scanner: Optional[Scanner] = None,
                 cache: Optional[MetadataCache] = None,
                 resolver: Optional[MetadataResolver] = None,
                 guard: Optional[PortGuard] = None,
                 terminator: Optional[Terminator] = None,
                 history: Optional[HistorySink] = None,
                 analyzer: Optional[RestartAnalyzer] = None,
                 auditor: Optional[SecurityAuditor] = None,
                 watcher: Optional[ProjectMarkerWatcher] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        self.scanner = scanner or Scanner(timeout=config.os_call_timeout)
        self.cache = cache or MetadataCache(config.cache_ttl)
        self.resolver = resolver or MetadataResolver(self.cache, timeout=config.os_call_timeout)
        self.filter = SmartFilter.from_config(config)
        self.guard = guard or PortGuard(config.guard, config.watch_ports)
        self.terminator = terminator or Terminator(config.kill)
        if history is None:
            history = JsonHistoryStore(Path(config.history_file)) if config.history_file else MemoryHistory()
        self.history = history
        self.analyzer = analyzer or RestartAnalyzer(config.analyzer, self.history)
        self.auditor = auditor or SecurityAuditor(config.auditor, self.cache, self.current_snapshot)
        self.watcher = watcher if watcher is not None else ProjectMarkerWatcher(self.cache, config.watch_dirs)
        self._listeners: List[Listener] = []
        self._current: Optional[ScanSnapshot] = None
        self._cycle_lock = threading.Lock()
        self._decision_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_diagnostics: Tuple[str, ...] = ()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # -- cycle --------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        with self._cycle_lock:
            raw = self.scanner.scan(self.config.watch_ports)
            enriched = self.resolver.enrich(raw)
            snapshot = self.filter.apply(enriched)
            check_snapshot(snapshot)
            self._report_diagnostics(raw)
            if snapshot.complete:
                report = self._advance(snapshot, raw)
            else:
                # nothing was enumerated; the last good snapshot and the guard state stay as they are
                report = CycleReport(snapshot.sequence, snapshot, SnapshotDiff(), diagnostics=raw.diagnostics)
        diff = report.diff
        if diff:
            log.debug(f"Cycle #{report.sequence}: +{len(diff.added)} -{len(diff.removed)} "
                      f"~{len(diff.changed)} ={len(diff.unchanged)}")
        self._notify(report)
        return report

    def _advance(self, snapshot: ScanSnapshot, raw: ScanSnapshot) -> CycleReport:
        diff = diff_snapshots(self._current, snapshot, self.config.change_tolerance)
        now = self.clock()
        self.guard.note_removed(diff.removed)
        restarts = self.analyzer.observe(diff.events(), now)

        with self._decision_lock:
            decision = self.guard.evaluate(snapshot)
            results = self.terminator.execute_batch(decision.kills) if decision.kills else []

        by_port: Dict[int, List[KillResult]] = defaultdict(list)
        for r in results:
            by_port[r.request.port].append(r)
        for port, port_results in by_port.items():
            self.guard.record_resolution(port, port_results)
        self._record_history(results)

        self._current = snapshot
        return CycleReport(snapshot.sequence, snapshot, diff, decision.conflicts, results, restarts,
                           raw.diagnostics)

    def _report_diagnostics(self, raw: ScanSnapshot) -> None:
        messages = tuple(sorted({f"{d.source}: {d.message}" for d in raw.diagnostics if d.pid is None}))
        if messages and messages != self._last_diagnostics:
            for m in messages:
                log.warning(f"Scan #{raw.sequence}: {m}")
        self._last_diagnostics = messages

    def _notify(self, report: CycleReport) -> None:
        for listener in list(self._listeners):
            try:
                listener(report)
            except Exception as e:
                log.exception(f"Listener {listener!r} failed on cycle #{report.sequence}: {e}")

    def _record_history(self, results: Sequence[KillResult]) -> None:
        for result in results:
            if result.failure == KillFailure.NOT_FOUND:
                continue
            record = HistoryRecord.from_result(result, self.clock())
            for attempt in (1, 2):
                try:
                    self.history.append(record)
                    break
                except OSError as e:
                    if attempt == 2:
                        log.warning(f"History: dropped record for pid {record.pid} on port {record.port}: {e}")

    # -- user actions -------------------------------------------------------------

    def kill(self, pid: int, start_time: Optional[float] = None) -> KillResult:
        """Terminate one process identity on behalf of the user."""
        target, port = self._lookup_target(pid, start_time)
        request = KillRequest(target, port, requested_by="user")
        # wait out any guard decision in progress; the escalation itself runs unlocked
        with self._decision_lock:
            future = self.terminator.submit(request)
        result = future.result()
        self._record_history([result])
        return result

    def _lookup_target(self, pid: int, start_time: Optional[float]) -> Tuple[ProcessRecord, Optional[int]]:
        snapshot = self._current
        if snapshot is not None:
            for b in snapshot.bindings:
                if b.process.pid == pid and (start_time is None or b.process.start_time == start_time):
                    return b.process, b.port
        if start_time is not None:
            return ProcessRecord(pid, start_time), None
        ident = call_with_timeout(self.scanner.identify, pid, timeout=self.config.os_call_timeout,
                                  what=f"identify pid {pid}")
        if ident is None:
            return ProcessRecord(pid, 0.0), None
        return ProcessRecord(pid, ident[0], ident[1]), None

    def reserve(self, port: int, project: str, process_name: str = ""):
        with self._cycle_lock:
            return self.guard.reserve(port, project, process_name)

    def audit(self, baseline: Optional[Path] = None) -> AuditReport:
        return self.auditor.audit(baseline=baseline)

    # -- read-only feeds ----------------------------------------------------------

    def current_snapshot(self) -> Optional[ScanSnapshot]:
        return self._current

    def processes(self) -> List[ProcessRecord]:
        snapshot = self._current
        if snapshot is None:
            return []
        return list(snapshot.processes().values())

    def conflicts(self) -> List[ConflictEvent]:
        return self.guard.conflicts()

    def guard_state(self) -> GuardState:
        return self.guard.state()

    def offenders(self, min_kills: Optional[int] = None) -> List[OffenderStat]:
        return self.analyzer.offenders(min_kills)

    def audit_findings(self):
        report = self.auditor.latest()
        return list(report.findings) if report else []

    def status(self) -> StatusSummary:
        procs = self.processes()
        g = self.config.guard
        return StatusSummary(
            count=len(procs),
            conflicts=len(self.guard.conflicts()),
            high_cpu=sum(1 for p in procs if (p.cpu_pct or 0.0) >= g.cpu_heavy),
            high_memory=sum(1 for p in procs if (p.mem_pct or 0.0) >= g.memory_heavy),
            containers=sum(1 for p in procs if p.container not in (None, HOST_PROCESS)),
        )

    # -- lifecycle ----------------------------------------------------------------

    def _reservations_path(self) -> Optional[Path]:
        return Path(self.config.reservations_file) if self.config.reservations_file else None

    def run(self, max_cycles: Optional[int] = None) -> None:
        """Drive cycles in the calling thread until stopped (or ``max_cycles`` ran)."""
        cycles = 0
        while not self._stop.is_set():
            started = time.monotonic()
            self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, self.config.poll_interval - elapsed))

    def start(self, background: bool = True) -> None:
        path = self._reservations_path()
        if path is not None:
            loaded = self.guard.load_reservations(path)
            if loaded:
                log.info(f"Restored {loaded} reservation(s) from {path}")
        self.watcher.start()
        self.auditor.start()
        self._stop.clear()
        log.info(f"Monitor started: {len(self.config.watch_ports or ())} watched port(s)"
                 if not self.config.watch_all else "Monitor started: watching all ports")
        if background:
            self._thread = threading.Thread(target=self.run, name="portwatch-monitor", daemon=True)
            self._thread.start()

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling, let in-flight kills finish or time out, then persist reservations."""
        self._stop.set()
        k = self.config.kill
        if timeout is None:
            timeout = 2 * (k.grace_period + k.force_period) + k.os_call_timeout
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            self._thread = None
        self.watcher.stop()
        self.auditor.stop()
        if not self.terminator.drain(timeout):
            log.warning("Shutdown: some kills were still running when the drain timed out")
        self.terminator.shutdown(0)
        path = self._reservations_path()
        if path is not None:
            try:
                self.guard.save_reservations(path)
            except OSError as e:
                log.warning(f"Could not save reservations to {path}: {e}")
        log.info("Monitor stopped")
