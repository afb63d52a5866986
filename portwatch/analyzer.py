"""Offender ranking and recurring-pattern detection over kill history.

The analyzer never touches the live snapshot. It is fed the Removed/Added events
of each cycle (to spot restarts) and reads history through a
:class:`~portwatch.history.HistorySink`; everything it returns is derived.
"""
from __future__ import annotations
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import datetime as dt
import threading
import time

from . import logger as log
from .config import AnalyzerSettings
from .history import HistorySink
from .models import (
    ChangeKind,
    ConflictType,
    HistoryRecord,
    OffenderStat,
    PatternRecord,
    PatternType,
    Severity,
    SnapshotEvent,
)


@dataclass(frozen=True)
class RestartEvent:
    port: int
    process_name: str
    old_pid: int
    new_pid: int
    removed_at: float
    added_at: float

    @property
    def gap(self) -> float:
        return self.added_at - self.removed_at


@dataclass
class HistoryStatistics:
    total_kills: int = 0
    unique_processes: int = 0
    unique_ports: int = 0
    unique_projects: int = 0
    top_processes: List[Tuple[str, int]] = field(default_factory=list)
    top_ports: List[Tuple[int, int]] = field(default_factory=list)
    top_projects: List[Tuple[str, int]] = field(default_factory=list)
    average_kills_per_day: float = 0.0
    oldest_kill: Optional[float] = None
    newest_kill: Optional[float] = None

    @property
    def most_killed_process(self) -> Optional[Tuple[str, int]]:
        return self.top_processes[0] if self.top_processes else None

    @property
    def most_killed_port(self) -> Optional[Tuple[int, int]]:
        return self.top_ports[0] if self.top_ports else None


@dataclass
class TimePatterns:
    total_kills: int
    peak_hour: Optional[int]
    peak_day: Optional[str]
    hour_distribution: Dict[int, int]
    day_distribution: Dict[str, int]


@dataclass
class IgnoreSuggestions:
    ports: List[int]
    processes: List[str]
    groups: List[str]
    offenders: List[OffenderStat]

    def __bool__(self) -> bool:
        return bool(self.ports or self.processes or self.groups)


@dataclass
class HistoricConflict:
    port: int
    processes: List[str]
    conflict_type: ConflictType
    severity: Severity
    recommendation: str


@dataclass
class SmartRecommendation:
    category: str
    title: str
    description: str
    action: str
    impact: str
    priority: Severity


@dataclass
class RootCauseAnalysis:
    conflicts: List[HistoricConflict]
    patterns: List[PatternRecord]
    recommendations: List[SmartRecommendation]
    summary: str
    analyzed_at: float


def _top(counter: Counter, n: int = 3) -> list:
    # stable on ties: by count desc, then key
    return sorted(counter.items(), key=lambda kv: (-kv[1], str(kv[0])))[:n]


def _intervals(times: Sequence[float]) -> List[float]:
    ordered = sorted(times)
    return [b - a for a, b in zip(ordered, ordered[1:])]


class RestartAnalyzer:
    def __init__(self, settings: AnalyzerSettings, history: HistorySink,
                 clock: Callable[[], float] = time.time, max_restarts: int = 1000):
        self.settings = settings
        self.history = history
        self.clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[int, List[Tuple[str, int, float]]] = {}
        self._restarts: deque = deque(maxlen=max_restarts)

    # -- live restart correlation -------------------------------------------------

    def observe(self, events: Sequence[SnapshotEvent], now: Optional[float] = None) -> List[RestartEvent]:
        """Correlate Removed events with a later Added of the same name on the same port."""
        now = self.clock() if now is None else now
        found: List[RestartEvent] = []
        with self._lock:
            horizon = now - self.settings.restart_window
            for port in list(self._pending):
                kept = [p for p in self._pending[port] if p[2] >= horizon]
                if kept:
                    self._pending[port] = kept
                else:
                    del self._pending[port]

            for ev in events:
                if ev.kind == ChangeKind.REMOVED:
                    self._pending.setdefault(ev.port, []).append((ev.process.name, ev.process.pid, now))
            for ev in events:
                if ev.kind != ChangeKind.ADDED:
                    continue
                pending = self._pending.get(ev.port, [])
                for i, (name, pid, removed_at) in enumerate(pending):
                    if name == ev.process.name:
                        restart = RestartEvent(ev.port, name, pid, ev.process.pid, removed_at, now)
                        found.append(restart)
                        del pending[i]
                        break
            self._restarts.extend(found)
        for r in found:
            log.info(f"Analyzer: {r.process_name} restarted on port {r.port} "
                     f"(pid {r.old_pid} -> {r.new_pid}, {r.gap:.1f}s)")
        return found

    def restarts(self) -> List[RestartEvent]:
        with self._lock:
            return list(self._restarts)

    def restart_counts(self) -> Dict[Tuple[str, int], int]:
        with self._lock:
            return dict(Counter((r.process_name, r.port) for r in self._restarts))

    # -- offenders ----------------------------------------------------------------

    def offenders(self, min_kills: Optional[int] = None,
                  records: Optional[Sequence[HistoryRecord]] = None) -> List[OffenderStat]:
        """Rank (process, port) pairs by kill count, most recently killed first on ties."""
        min_kills = self.settings.min_kills if min_kills is None else min_kills
        records = self.history.all() if records is None else records
        grouped: Dict[Tuple[str, int], List[HistoryRecord]] = {}
        for r in records:
            grouped.setdefault((r.process_name, r.port), []).append(r)

        stats = []
        for (name, port), entries in grouped.items():
            if len(entries) < min_kills:
                continue
            first = min(entries, key=lambda e: e.killed_at)
            stats.append(OffenderStat(
                process_name=name,
                port=port,
                kill_count=len(entries),
                first_killed=first.killed_at,
                last_killed=max(e.killed_at for e in entries),
                group=first.group,
                project=first.project,
            ))
        stats.sort(key=lambda s: (-s.kill_count, -s.last_killed, s.process_name, s.port))
        return stats

    # -- patterns -----------------------------------------------------------------

    def patterns(self, records: Optional[Sequence[HistoryRecord]] = None) -> List[PatternRecord]:
        records = self.history.all() if records is None else records
        out = self._hot_reload_patterns(records)
        out.extend(self._restart_patterns())
        out.extend(self._time_patterns(records))
        out.sort(key=lambda p: -p.confidence)
        return out

    def _hot_reload_patterns(self, records: Sequence[HistoryRecord]) -> List[PatternRecord]:
        s = self.settings
        by_name: Dict[str, List[float]] = {}
        for r in records:
            by_name.setdefault(r.process_name, []).append(r.killed_at)
        out = []
        for name in sorted(by_name):
            times = by_name[name]
            if len(times) < s.hot_reload_min_kills:
                continue
            short = sum(1 for gap in _intervals(times) if gap <= s.hot_reload_interval)
            if short >= s.hot_reload_min_short:
                out.append(PatternRecord(
                    PatternType.HOT_RELOAD,
                    f"Process '{name}' shows hot reload behavior",
                    [name],
                    f"{short} times in short intervals",
                    "This looks like a development server with hot reload. Consider adding it to the "
                    "ignore list during development.",
                    s.hot_reload_confidence,
                ))
        return out

    def _restart_patterns(self) -> List[PatternRecord]:
        s = self.settings
        out = []
        for (name, port), count in sorted(self.restart_counts().items()):
            if count < s.min_kills:
                continue
            out.append(PatternRecord(
                PatternType.AUTO_RESTART,
                f"'{name}' came back on port {port} after exiting",
                [name],
                f"{count} restarts observed",
                "A supervisor or file watcher keeps restarting this process; killing it will not "
                "free the port for long.",
                round(min(1.0, s.restart_confidence_step * count), 2),
            ))
        return out

    def _time_patterns(self, records: Sequence[HistoryRecord]) -> List[PatternRecord]:
        s = self.settings
        if len(records) < s.time_min_entries:
            return []
        tp = self.time_patterns(records)
        if tp.peak_hour is None or tp.hour_distribution[tp.peak_hour] < s.time_min_peak:
            return []
        count = tp.hour_distribution[tp.peak_hour]
        return [PatternRecord(
            PatternType.TIME_BASED,
            f"Most kills happen around {tp.peak_hour}:00",
            ["All processes"],
            f"{count} kills at this hour",
            "Consider adding the usual suspects to the ignore list during peak hours.",
            s.time_confidence,
        )]

    def time_patterns(self, records: Optional[Sequence[HistoryRecord]] = None) -> TimePatterns:
        records = self.history.all() if records is None else records
        hours: Counter = Counter()
        days: Counter = Counter()
        for r in records:
            when = dt.datetime.fromtimestamp(r.killed_at)
            hours[when.hour] += 1
            days[when.strftime("%A")] += 1
        peak_hour = _top(hours, 1)[0][0] if hours else None
        peak_day = _top(days, 1)[0][0] if days else None
        return TimePatterns(len(records), peak_hour, peak_day, dict(hours), dict(days))

    # -- summaries ----------------------------------------------------------------

    def statistics(self, records: Optional[Sequence[HistoryRecord]] = None) -> HistoryStatistics:
        records = self.history.all() if records is None else records
        if not records:
            return HistoryStatistics()
        processes = Counter(r.group or r.process_name for r in records)
        ports = Counter(r.port for r in records)
        projects = Counter(r.project for r in records if r.project)
        oldest = min(r.killed_at for r in records)
        newest = max(r.killed_at for r in records)
        days = max((newest - oldest) / 86400.0, 1.0)
        return HistoryStatistics(
            total_kills=len(records),
            unique_processes=len(processes),
            unique_ports=len(ports),
            unique_projects=len(projects),
            top_processes=_top(processes),
            top_ports=_top(ports),
            top_projects=_top(projects),
            average_kills_per_day=len(records) / days,
            oldest_kill=oldest,
            newest_kill=newest,
        )

    def ignore_suggestions(self, min_kills: Optional[int] = None) -> IgnoreSuggestions:
        offenders = self.offenders(min_kills)
        return IgnoreSuggestions(
            ports=sorted({o.port for o in offenders}),
            processes=sorted({o.process_name for o in offenders}),
            groups=sorted({o.group for o in offenders if o.group}),
            offenders=offenders,
        )

    def historic_conflicts(self, records: Optional[Sequence[HistoryRecord]] = None) -> List[HistoricConflict]:
        """Ports killed under several different names, and names killed again within minutes."""
        records = self.history.all() if records is None else records
        s = self.settings
        out: List[HistoricConflict] = []

        by_port: Dict[int, List[HistoryRecord]] = {}
        for r in records:
            by_port.setdefault(r.port, []).append(r)
        for port in sorted(by_port):
            entries = by_port[port]
            names = sorted({e.process_name for e in entries})
            if len(names) < 2:
                continue
            n = len(entries)
            severity = Severity.HIGH if n > 5 else Severity.MEDIUM if n > 3 else Severity.LOW
            out.append(HistoricConflict(
                port, names, ConflictType.PORT_COLLISION, severity,
                f"Port {port} has been used by {', '.join(names)}. Consider using different ports "
                f"for different services.",
            ))

        by_pair: Dict[Tuple[str, int], List[float]] = {}
        for r in records:
            by_pair.setdefault((r.process_name, r.port), []).append(r.killed_at)
        for (name, port), times in sorted(by_pair.items()):
            if len(times) < s.auto_restart_min_kills:
                continue
            short = sum(1 for gap in _intervals(times) if gap < s.auto_restart_interval)
            if not short:
                continue
            out.append(HistoricConflict(
                port, [name], ConflictType.AUTO_RESTART,
                Severity.HIGH if short > 3 else Severity.MEDIUM,
                f"Process '{name}' appears to auto-restart. Killing it may not be effective; add it "
                f"to the ignore list or look for what restarts it.",
            ))
        return out

    def root_cause(self) -> RootCauseAnalysis:
        records = self.history.all()
        conflicts = self.historic_conflicts(records)
        patterns = self.patterns(records)
        recs: List[SmartRecommendation] = []

        offenders = self.offenders(records=records)
        if offenders:
            recs.append(SmartRecommendation(
                "ProcessManagement", "Add frequent offenders to the ignore list",
                f"{len(offenders)} process(es) are being killed repeatedly",
                "Add them to ignore_processes in the config",
                "Less manual intervention", Severity.HIGH))
        if any(c.conflict_type == ConflictType.PORT_COLLISION for c in conflicts):
            n = sum(1 for c in conflicts if c.conflict_type == ConflictType.PORT_COLLISION)
            recs.append(SmartRecommendation(
                "PortOptimization", "Resolve port conflicts",
                f"{n} port(s) have conflicting processes",
                "Give different services different ports or ignore the shared port",
                "Fewer port binding errors", Severity.MEDIUM))
        if any(c.conflict_type == ConflictType.AUTO_RESTART for c in conflicts):
            recs.append(SmartRecommendation(
                "WorkflowImprovement", "Handle auto-restarting processes",
                "Some processes restart automatically after being killed",
                "Find out what restarts them or add them to the ignore list",
                "Kills that actually stick", Severity.MEDIUM))

        if not records:
            summary = "No kill history available for analysis."
        elif not conflicts and not patterns:
            summary = "No significant conflicts or patterns found in the kill history."
        else:
            summary = (f"Analysis of {len(records)} kill(s) found {len(conflicts)} conflict(s), "
                       f"{len(patterns)} pattern(s) and {len(recs)} recommendation(s).")
        return RootCauseAnalysis(conflicts, patterns, recs, summary, self.clock())
