"""Port Guard: reservation table plus conflict detection and auto-resolution.

Each watched port moves through ``Watched -> (Reserved | Conflicted) -> Watched |
Expired``. A port is Conflicted when one snapshot shows more than one distinct
``(pid, start_time)`` on it. Conflicts are classified by the first matching rule
of :data:`CONFLICT_RULES`; the table is ordered by priority.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple
import copy
import json
import threading
import time

from . import logger as log
from .config import GuardSettings
from .models import (
    ConflictEvent,
    ConflictType,
    GuardState,
    KillRequest,
    KillResult,
    PortState,
    ProcessRecord,
    Reservation,
    ScanSnapshot,
    Severity,
    SnapshotEvent,
)

BUNDLERS = frozenset({"vite", "webpack", "esbuild", "parcel", "next", "turbopack", "rollup", "nuxt", "ng serve"})
API_SERVERS = frozenset({"node", "python", "uvicorn", "gunicorn", "flask", "django", "rails", "puma",
                         "java", "deno", "bun", "php", "express"})

RECOMMENDATIONS: Dict[ConflictType, str] = {
    ConflictType.PARENT_CHILD: "Port {port} is shared by a parent and its child process; this is usually one "
                               "service with worker processes. Stop the parent to release the port.",
    ConflictType.AUTO_RESTART: "'{names}' came back on port {port} right after exiting; a supervisor or file "
                               "watcher is restarting it. Stop the supervisor or add it to the ignore list.",
    ConflictType.DEVELOPMENT_STACK: "Port {port} is claimed by several parts of a development stack ({names}). "
                                    "Give the bundler and the API server separate ports.",
    ConflictType.RESOURCE_CONTENTION: "Several heavy processes ({names}) compete for port {port}. Stop the one "
                                      "you no longer need.",
    ConflictType.PORT_COLLISION: "Port {port} is used by multiple processes ({names}). Consider using different "
                                 "ports for different services.",
}


@dataclass
class ConflictContext:
    port: int
    processes: Tuple[ProcessRecord, ...]
    restarted_names: FrozenSet[str]
    settings: GuardSettings

    def texts(self) -> List[str]:
        return [f"{p.name} {p.cmdline}".lower() for p in self.processes]


def is_parent_child(ctx: ConflictContext) -> bool:
    pids = {p.pid for p in ctx.processes}
    return any(p.ppid in pids and p.ppid != p.pid for p in ctx.processes)


def is_auto_restart(ctx: ConflictContext) -> bool:
    return any(p.name in ctx.restarted_names for p in ctx.processes)


def is_development_stack(ctx: ConflictContext) -> bool:
    texts = ctx.texts()
    bundler = {i for i, t in enumerate(texts) if any(b in t for b in BUNDLERS)}
    server = {i for i, t in enumerate(texts) if any(s in t for s in API_SERVERS)}
    return any(i != j for i in bundler for j in server)


def is_resource_contention(ctx: ConflictContext) -> bool:
    s = ctx.settings
    heavy = [p for p in ctx.processes
             if (p.cpu_pct or 0.0) >= s.cpu_heavy or (p.mem_pct or 0.0) >= s.memory_heavy]
    return len(heavy) >= 2


ConflictRule = Tuple[ConflictType, Callable[[ConflictContext], bool]]

CONFLICT_RULES: Tuple[ConflictRule, ...] = (
    (ConflictType.PARENT_CHILD, is_parent_child),
    (ConflictType.AUTO_RESTART, is_auto_restart),
    (ConflictType.DEVELOPMENT_STACK, is_development_stack),
    (ConflictType.RESOURCE_CONTENTION, is_resource_contention),
)


def classify_conflict(ctx: ConflictContext, rules: Sequence[ConflictRule] = CONFLICT_RULES) -> ConflictType:
    for conflict_type, matches in rules:
        if matches(ctx):
            return conflict_type
    return ConflictType.PORT_COLLISION


def conflict_severity(owners: int, reserved: bool, conflict_type: ConflictType) -> Severity:
    rank = 1 + min(owners - 2, 2)
    if reserved:
        rank += 1
    if conflict_type == ConflictType.PARENT_CHILD:
        rank -= 1
    return Severity.from_rank(rank)


def most_recent(processes: Sequence[ProcessRecord]) -> ProcessRecord:
    return max(processes, key=lambda p: (p.start_time, p.pid))


@dataclass
class GuardDecision:
    sequence: int
    conflicts: List[ConflictEvent] = field(default_factory=list)
    kills: List[KillRequest] = field(default_factory=list)
    survivors: Dict[int, ProcessRecord] = field(default_factory=dict)
    expired: List[Reservation] = field(default_factory=list)


class PortGuard:
    def __init__(self, settings: GuardSettings, watch_ports: Optional[FrozenSet[int]] = None,
                 rules: Sequence[ConflictRule] = CONFLICT_RULES,
                 survivor_policy: Callable[[Sequence[ProcessRecord]], ProcessRecord] = most_recent,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.watch_ports = watch_ports
        self.rules = tuple(rules)
        self.survivor_policy = survivor_policy
        self.clock = clock
        self.active = True
        self.conflicts_resolved = 0
        self.last_activity: Optional[float] = None
        self.reservations: Dict[int, Reservation] = {}
        self._lock = threading.RLock()
        self._conflicted: Dict[int, ConflictEvent] = {}
        self._expired: set = set()
        self._removals: Dict[int, List[Tuple[str, float]]] = {}

    def port_state(self, port: int) -> PortState:
        with self._lock:
            if self.watch_ports is not None and port not in self.watch_ports and port not in self.reservations:
                return PortState.UNWATCHED
            if port in self._conflicted:
                return PortState.CONFLICTED
            if port in self.reservations:
                return PortState.RESERVED
            if port in self._expired:
                return PortState.EXPIRED
            return PortState.WATCHED

    def reserve(self, port: int, project: str, process_name: str = "") -> Reservation:
        now = self.clock()
        with self._lock:
            res = Reservation(port, project, process_name, now, self.settings.reservation_silent_cycles,
                              last_seen_at=now, external=True)
            self.reservations[port] = res
            self._expired.discard(port)
            log.info(f"Guard: port {port} reserved for {project or process_name}")
            return res

    def note_removed(self, events: Sequence[SnapshotEvent]) -> None:
        """Remember recent exits so a quick reappearance can be classified as AutoRestart."""
        now = self.clock()
        with self._lock:
            for ev in events:
                self._removals.setdefault(ev.port, []).append((ev.process.name, now))
            horizon = now - self.settings.restart_window
            for port in list(self._removals):
                kept = [(n, t) for n, t in self._removals[port] if t >= horizon]
                if kept:
                    self._removals[port] = kept
                else:
                    del self._removals[port]

    def _externally_reserved(self, port: int) -> bool:
        res = self.reservations.get(port)
        return res is not None and res.external

    def _restarted_names(self, port: int, now: float) -> FrozenSet[str]:
        horizon = now - self.settings.restart_window
        return frozenset(n for n, t in self._removals.get(port, []) if t >= horizon)

    def evaluate(self, snapshot: ScanSnapshot) -> GuardDecision:
        """Run one guard pass over a filtered snapshot.

        Returns the conflicts found and, when auto-resolve is on, the full batch of
        kill requests; the caller executes the batch before the next cycle.
        """
        now = self.clock()
        decision = GuardDecision(snapshot.sequence)
        with self._lock:
            if not self.active:
                return decision
            groups = snapshot.by_port()
            self._conflicted = {}
            self._expired = set()
            self._age_reservations(groups, now, decision)

            for port in sorted(groups):
                owners: Dict[Tuple[int, float], ProcessRecord] = {}
                for b in groups[port]:
                    owners.setdefault(b.process.identity, b.process)
                if len(owners) < 2:
                    continue
                procs = tuple(sorted(owners.values(), key=lambda p: (p.start_time, p.pid)))
                ctx = ConflictContext(port, procs, self._restarted_names(port, now), self.settings)
                ctype = classify_conflict(ctx, self.rules)
                names = ", ".join(sorted({p.name for p in procs}))
                event = ConflictEvent(
                    port=port,
                    processes=procs,
                    conflict_type=ctype,
                    severity=conflict_severity(len(procs), self._externally_reserved(port), ctype),
                    recommendation=RECOMMENDATIONS[ctype].format(port=port, names=names),
                    sequence=snapshot.sequence,
                )
                self._conflicted[port] = event
                decision.conflicts.append(event)
                log.warning(f"Guard: {ctype.value} conflict on port {port} ({names}), severity {event.severity.value}")
                self.last_activity = now
                if self.settings.auto_resolve:
                    self._resolve(event, now, decision)
        return decision

    def _age_reservations(self, groups: Dict[int, list], now: float, decision: GuardDecision) -> None:
        for port, res in list(self.reservations.items()):
            bindings = groups.get(port)
            if bindings:
                res.silent_cycles = 0
                if any(res.owns(b.process) for b in bindings):
                    res.last_seen_at = now
                continue
            res.silent_cycles += 1
            if res.silent_cycles >= res.grace_cycles:
                del self.reservations[port]
                self._expired.add(port)
                decision.expired.append(res)
                log.info(f"Guard: reservation on port {port} for {res.project or res.process_name} expired "
                         f"after {res.silent_cycles} silent cycle(s)")

    def _resolve(self, event: ConflictEvent, now: float, decision: GuardDecision) -> None:
        if event.conflict_type == ConflictType.PARENT_CHILD and not self.settings.resolve_parent_child:
            log.info(f"Guard: leaving parent/child conflict on port {event.port} unresolved")
            return
        survivor = self.survivor_policy(event.processes)
        decision.survivors[event.port] = survivor
        for proc in event.processes:
            if proc.identity != survivor.identity:
                decision.kills.append(KillRequest(proc, event.port, requested_by="auto"))
        existing = self.reservations.get(event.port)
        if existing and existing.owns(survivor):
            existing.silent_cycles = 0
            existing.last_seen_at = now
        else:
            self.reservations[event.port] = Reservation(
                event.port, survivor.project or "", survivor.name, now,
                self.settings.reservation_silent_cycles, last_seen_at=now)
        log.info(f"Guard: port {event.port} kept for {survivor.name} (pid {survivor.pid}); "
                 f"terminating {len(event.processes) - 1} other process(es)")

    def record_resolution(self, port: int, results: Sequence[KillResult]) -> None:
        with self._lock:
            if results and all(r.ok for r in results):
                self.conflicts_resolved += 1
            self.last_activity = self.clock()

    def state(self) -> GuardState:
        with self._lock:
            watched = sorted(self.watch_ports) if self.watch_ports is not None else []
            return GuardState(
                active=self.active,
                watched_ports=watched,
                reservations=[copy.copy(r) for r in sorted(self.reservations.values(), key=lambda r: r.port)],
                conflicts_resolved=self.conflicts_resolved,
                auto_resolve=self.settings.auto_resolve,
                last_activity=self.last_activity,
            )

    def conflicts(self) -> List[ConflictEvent]:
        with self._lock:
            return [self._conflicted[p] for p in sorted(self._conflicted)]

    def save_reservations(self, path: Path) -> None:
        with self._lock:
            data = [r.to_dict() for r in self.reservations.values()]
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))

    def load_reservations(self, path: Path) -> int:
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            log.warning(f"Guard: could not read reservations from {path}: {e}")
            return 0
        with self._lock:
            for item in data:
                res = Reservation.from_dict(item)
                self.reservations[res.port] = replace(res, grace_cycles=self.settings.reservation_silent_cycles)
        return len(data)
