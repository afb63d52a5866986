from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import datetime as dt

HOST_PROCESS = "host"
DOCKER_DAEMON = "docker-daemon"

Identity = Tuple[int, float]


class PortwatchError(Exception):
    pass


class ConfigError(PortwatchError):
    pass


class InvariantViolation(PortwatchError):
    """Internal defect: the engine produced state that must never exist."""


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    start_time: float
    name: str = ""
    cmdline: str = ""
    cwd: Optional[str] = None
    cpu_pct: Optional[float] = None
    mem_pct: Optional[float] = None
    memory_bytes: Optional[int] = None
    container: Optional[str] = None     # container id, HOST_PROCESS or DOCKER_DAEMON
    container_name: Optional[str] = None
    group: Optional[str] = None
    project: Optional[str] = None
    ppid: int = 0
    exe: Optional[str] = None

    @property
    def identity(self) -> Identity:
        return (self.pid, self.start_time)

    def short_name(self) -> str:
        name = self.name.replace("\\", "/").rsplit("/", 1)[-1]
        for ext in (".exe", ".dll", ".so"):
            if name.endswith(ext):
                name = name[: -len(ext)]
        return name

    def display_name(self) -> str:
        parts = [self.name]
        if self.project:
            parts.append(f"[{self.project}]")
        if self.group:
            parts.append(f"({self.group})")
        return " ".join(parts)

    def describe(self) -> str:
        parts = [self.short_name()]
        if self.cmdline and self.cmdline != self.name:
            parts.append(f"({self.cmdline})")
        if self.cwd:
            parts.append(f"in {self.cwd}")
        if self.container_name:
            parts.append(f"[Docker: {self.container_name}]")
        return " ".join(parts)


@dataclass(frozen=True)
class PortBinding:
    port: int
    process: ProcessRecord
    protocol: str = "tcp"
    discovered_at: float = 0.0

    def __post_init__(self) -> None:
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def key(self) -> Tuple[int, int]:
        return (self.port, self.process.pid)


@dataclass(frozen=True)
class ScanDiagnostic:
    source: str
    message: str
    pid: Optional[int] = None


@dataclass(frozen=True)
class ScanSnapshot:
    sequence: int
    bindings: Tuple[PortBinding, ...] = ()
    taken_at: float = 0.0
    diagnostics: Tuple[ScanDiagnostic, ...] = ()
    complete: bool = True

    def ports(self) -> List[int]:
        return sorted({b.port for b in self.bindings})

    def by_port(self) -> Dict[int, List[PortBinding]]:
        groups: Dict[int, List[PortBinding]] = {}
        for b in self.bindings:
            groups.setdefault(b.port, []).append(b)
        return groups

    def processes(self) -> Dict[Identity, ProcessRecord]:
        return {b.process.identity: b.process for b in self.bindings}

    def find(self, pid: int) -> Optional[ProcessRecord]:
        for b in self.bindings:
            if b.process.pid == pid:
                return b.process
        return None

    def with_bindings(self, bindings: Tuple[PortBinding, ...]) -> "ScanSnapshot":
        return ScanSnapshot(self.sequence, tuple(bindings), self.taken_at, self.diagnostics, self.complete)


@dataclass
class CacheEntry:
    value: Any
    ttl: float
    stored_at: float
    last_access: float
    start_time: Optional[float] = None

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


@dataclass
class Reservation:
    port: int
    project: str
    process_name: str
    reserved_at: float
    grace_cycles: int
    last_seen_at: float = 0.0
    silent_cycles: int = 0
    external: bool = False

    def owns(self, proc: ProcessRecord) -> bool:
        if self.project and proc.project == self.project:
            return True
        return bool(self.process_name) and proc.name == self.process_name

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reservation":
        return cls(
            port=int(data["port"]),
            project=data.get("project", ""),
            process_name=data.get("process_name", ""),
            reserved_at=float(data.get("reserved_at", 0.0)),
            grace_cycles=int(data.get("grace_cycles", 3)),
            last_seen_at=float(data.get("last_seen_at", 0.0)),
            silent_cycles=int(data.get("silent_cycles", 0)),
            external=bool(data.get("external", False)),
        )


class PortState(str, Enum):
    UNWATCHED = "unwatched"
    WATCHED = "watched"
    RESERVED = "reserved"
    CONFLICTED = "conflicted"
    EXPIRED = "expired"


class ConflictType(str, Enum):
    PORT_COLLISION = "PortCollision"
    RESOURCE_CONTENTION = "ResourceContention"
    AUTO_RESTART = "AutoRestart"
    PARENT_CHILD = "ParentChild"
    DEVELOPMENT_STACK = "DevelopmentStack"


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)

    @classmethod
    def from_rank(cls, rank: int) -> "Severity":
        levels = list(cls)
        return levels[max(0, min(rank, len(levels) - 1))]


RiskLevel = Severity


@dataclass(frozen=True)
class ConflictEvent:
    port: int
    processes: Tuple[ProcessRecord, ...]
    conflict_type: ConflictType
    severity: Severity
    recommendation: str
    sequence: int = 0

    @property
    def identities(self) -> frozenset:
        return frozenset(p.identity for p in self.processes)


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


@dataclass(frozen=True)
class SnapshotEvent:
    kind: ChangeKind
    port: int
    process: ProcessRecord
    previous: Optional[ProcessRecord] = None
    sequence: int = 0


@dataclass
class SnapshotDiff:
    added: List[SnapshotEvent] = field(default_factory=list)
    removed: List[SnapshotEvent] = field(default_factory=list)
    changed: List[SnapshotEvent] = field(default_factory=list)
    unchanged: List[Tuple[int, int]] = field(default_factory=list)

    def events(self) -> List[SnapshotEvent]:
        return self.removed + self.added + self.changed

    def __bool__(self) -> bool:
        return bool(self.added or self.removed or self.changed)


class KillOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class KillFailure(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"


GRACEFUL = "graceful"
FORCEFUL = "forceful"


@dataclass(frozen=True)
class KillRequest:
    target: ProcessRecord
    port: Optional[int] = None
    signals: Tuple[str, ...] = (GRACEFUL, FORCEFUL)
    requested_by: str = "user"


@dataclass
class KillResult:
    request: KillRequest
    outcome: KillOutcome
    failure: Optional[KillFailure] = None
    attempts: int = 0
    signals_sent: List[str] = field(default_factory=list)
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == KillOutcome.SUCCESS

    def reason(self) -> str:
        if self.failure is not None:
            return self.failure.value
        return self.outcome.value


@dataclass(frozen=True)
class HistoryRecord:
    port: int
    pid: int
    process_name: str
    killed_at: float
    group: Optional[str] = None
    project: Optional[str] = None
    killed_by: str = "user"
    outcome: str = KillOutcome.SUCCESS.value
    cmdline: Optional[str] = None
    cwd: Optional[str] = None

    @classmethod
    def from_result(cls, result: KillResult, killed_at: float) -> "HistoryRecord":
        proc = result.request.target
        return cls(
            port=result.request.port or 0,
            pid=proc.pid,
            process_name=proc.name,
            killed_at=killed_at,
            group=proc.group,
            project=proc.project,
            killed_by=result.request.requested_by,
            outcome=result.reason(),
            cmdline=proc.cmdline or None,
            cwd=proc.cwd,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            port=int(data["port"]),
            pid=int(data["pid"]),
            process_name=data.get("process_name", ""),
            killed_at=float(data["killed_at"]),
            group=data.get("group"),
            project=data.get("project"),
            killed_by=data.get("killed_by", "user"),
            outcome=data.get("outcome", KillOutcome.SUCCESS.value),
            cmdline=data.get("cmdline"),
            cwd=data.get("cwd"),
        )

    def display_name(self) -> str:
        if self.group and self.project:
            return f"{self.group} ({self.project})"
        if self.group:
            return self.group
        if self.project:
            return f"{self.process_name} ({self.project})"
        return self.process_name


@dataclass
class OffenderStat:
    process_name: str
    port: int
    kill_count: int
    first_killed: float
    last_killed: float
    group: Optional[str] = None
    project: Optional[str] = None


class PatternType(str, Enum):
    HOT_RELOAD = "HotReload"
    AUTO_RESTART = "AutoRestart"
    TIME_BASED = "TimeBased"


@dataclass
class PatternRecord:
    pattern_type: PatternType
    description: str
    affected: List[str]
    frequency: str
    recommendation: str
    confidence: float


class SuspicionReason(str, Enum):
    SUSPICIOUS_PORT = "SuspiciousPort"
    UNKNOWN_BINARY = "UnknownBinary"
    UNEXPECTED_LOCATION = "UnexpectedLocation"
    HASH_MISMATCH = "HashMismatch"


class Classification(str, Enum):
    APPROVED = "Approved"
    UNKNOWN = "Unknown"
    SUSPICIOUS = "Suspicious"


@dataclass
class AuditFinding:
    port: int
    process: ProcessRecord
    classification: Classification
    risk_level: Severity
    suspicion_reason: Optional[SuspicionReason] = None
    binary_hash: Optional[str] = None
    service_type: Optional[str] = None
    first_seen: float = 0.0


@dataclass
class Recommendation:
    title: str
    description: str
    action: str
    priority: Severity
    affected_ports: List[int] = field(default_factory=list)


@dataclass
class GuardState:
    active: bool
    watched_ports: List[int]
    reservations: List[Reservation]
    conflicts_resolved: int
    auto_resolve: bool
    last_activity: Optional[float] = None


def fmt_ts(ts: float) -> str:
    return dt.datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


