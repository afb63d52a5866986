"""Binary-hash risk classification of the processes holding ports.

The auditor runs on its own trigger or timer. It reads the latest published
snapshot through a provider callable and memoizes hashes in the shared
:class:`~portwatch.cache.MetadataCache`; it never writes core state.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple
import fnmatch
import json
import os
import threading
import time

from . import logger as log
from .cache import MISSING, MetadataCache
from .config import AuditorSettings
from .models import (
    AuditFinding,
    Classification,
    ConfigError,
    Identity,
    PortBinding,
    ProcessRecord,
    Recommendation,
    ScanSnapshot,
    Severity,
    SuspicionReason,
)
from .utils import call_with_timeout, sha256_file

HASH_NAMESPACE = "binary_hash"

# Ordered: first match wins. Predicates get (lowercase process name, port).
SERVICE_RULES: Tuple[Tuple[str, Callable[[str, int], bool]], ...] = (
    ("SSH", lambda n, p: n in ("sshd", "ssh") or p == 22),
    ("DNS", lambda n, p: n in ("named", "dnsmasq", "unbound", "systemd-resolved") or p == 53),
    ("Mail", lambda n, p: n in ("postfix", "master", "exim", "dovecot", "sendmail") or p in (25, 465, 587, 993, 995)),
    ("Database", lambda n, p: any(s in n for s in ("postgres", "mysqld", "mariadbd", "redis", "mongod"))
                             or p in (3306, 5432, 6379, 27017)),
    ("WebServer", lambda n, p: n in ("nginx", "httpd", "apache2", "caddy", "lighttpd") or p in (80, 443, 8443)),
)


def service_type(proc: ProcessRecord, port: int) -> str:
    name = proc.short_name().lower()
    for service, matches in SERVICE_RULES:
        if matches(name, port):
            return service
    return "Custom"


def _severity(name: str) -> Severity:
    try:
        return Severity(name)
    except ValueError:
        raise ConfigError(f"unknown risk level: {name!r}") from None


@dataclass
class Allowlist:
    """Approved hashes per service type or process name, plus hashes pinned per path."""
    approved: Dict[str, Set[str]] = field(default_factory=dict)
    pinned: Dict[str, str] = field(default_factory=dict)
    standard_locations: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: AuditorSettings) -> "Allowlist":
        return cls(
            approved={k: set(v) for k, v in settings.approved.items()},
            pinned=dict(settings.pinned),
            standard_locations=list(settings.standard_locations),
        )

    def approves(self, digest: str, service: str, name: str) -> bool:
        return digest in self.approved.get(service, ()) or digest in self.approved.get(name, ())

    def pinned_hash(self, exe: str) -> Optional[str]:
        return self.pinned.get(exe)

    def is_standard(self, exe: str) -> bool:
        return any(fnmatch.fnmatch(exe, pat) for pat in self.standard_locations)


@dataclass
class BaselineChange:
    port: int
    old: Dict[str, object]
    new: Dict[str, object]
    change_type: str  # BinaryChanged | LocationChanged | ArgumentsChanged


@dataclass
class BaselineComparison:
    baseline_file: str
    new: List[Dict[str, object]] = field(default_factory=list)
    removed: List[Dict[str, object]] = field(default_factory=list)
    changed: List[BaselineChange] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.new or self.removed or self.changed)


@dataclass
class AuditReport:
    audited_at: float
    sequence: int
    total_ports: int
    findings: List[AuditFinding]
    score: float
    recommendations: List[Recommendation]
    baseline: Optional[BaselineComparison] = None

    def by_classification(self, classification: Classification) -> List[AuditFinding]:
        return [f for f in self.findings if f.classification == classification]

    @property
    def suspicious(self) -> List[AuditFinding]:
        return self.by_classification(Classification.SUSPICIOUS)

    @property
    def approved(self) -> List[AuditFinding]:
        return self.by_classification(Classification.APPROVED)


def _baseline_entry(f: AuditFinding) -> Dict[str, object]:
    return {
        "port": f.port,
        "name": f.process.name,
        "exe": f.process.exe,
        "cmdline": f.process.cmdline,
        "hash": f.binary_hash,
    }


class SecurityAuditor:
    def __init__(self, settings: AuditorSettings, cache: MetadataCache,
                 snapshot_provider: Callable[[], Optional[ScanSnapshot]],
                 hasher: Callable[[Path], Optional[str]] = sha256_file,
                 timeout: float = 10.0, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.allowlist = Allowlist.from_settings(settings)
        self.cache = cache
        self.snapshot_provider = snapshot_provider
        self.hasher = hasher
        self.timeout = timeout
        self.clock = clock
        self.risk_standard = _severity(settings.unknown_risk_standard)
        self.risk_other = _severity(settings.unknown_risk_other)
        self.risk_mismatch = _severity(settings.mismatch_risk)
        self.risk_port = _severity(settings.suspicious_port_risk)
        self._first_seen: Dict[Identity, float] = {}
        self._lock = threading.Lock()
        self._latest: Optional[AuditReport] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- hashing ------------------------------------------------------------------

    def binary_hash(self, proc: ProcessRecord) -> Optional[str]:
        """SHA-256 of the executable, memoized per (path, mtime, size).

        Only attribute entries are touched: the snapshot being audited may be older
        than the cache's view of a pid, so its identities must not be observed.
        """
        if not proc.exe:
            return None
        exe = proc.exe
        st = call_with_timeout(os.stat, exe, timeout=self.timeout, what=f"stat {exe}")
        if st is None:
            return None
        key = (exe, st.st_mtime_ns, st.st_size)
        cached = self.cache.get_attr(HASH_NAMESPACE, key)
        if cached is not MISSING:
            return cached
        digest = call_with_timeout(self.hasher, Path(exe), timeout=self.timeout, what=f"hash {exe}")
        if digest:
            self.cache.put_attr(HASH_NAMESPACE, key, digest)
        return digest

    # -- classification -----------------------------------------------------------

    def classify(self, binding: PortBinding, now: Optional[float] = None) -> AuditFinding:
        proc = binding.process
        now = self.clock() if now is None else now
        with self._lock:
            first_seen = self._first_seen.setdefault(proc.identity, now)
        service = service_type(proc, binding.port)
        digest = self.binary_hash(proc)

        def finding(classification, risk, reason=None) -> AuditFinding:
            return AuditFinding(binding.port, proc, classification, risk, reason, digest, service, first_seen)

        if not proc.exe or not digest:
            risk = self.risk_standard if proc.exe and self.allowlist.is_standard(proc.exe) else self.risk_other
            return finding(Classification.UNKNOWN, risk, SuspicionReason.UNKNOWN_BINARY)
        pinned = self.allowlist.pinned_hash(proc.exe)
        if pinned is not None and pinned != digest:
            return finding(Classification.SUSPICIOUS, self.risk_mismatch, SuspicionReason.HASH_MISMATCH)
        if pinned == digest or self.allowlist.approves(digest, service, proc.short_name()):
            return finding(Classification.APPROVED, Severity.LOW)
        if binding.port in self.settings.suspicious_ports:
            return finding(Classification.SUSPICIOUS, self.risk_port, SuspicionReason.SUSPICIOUS_PORT)
        if self.allowlist.is_standard(proc.exe):
            return finding(Classification.UNKNOWN, self.risk_standard, SuspicionReason.UNKNOWN_BINARY)
        return finding(Classification.UNKNOWN, self.risk_other, SuspicionReason.UNEXPECTED_LOCATION)

    def score(self, findings: Sequence[AuditFinding]) -> float:
        """100 means nothing to worry about; each non-approved finding costs its risk penalty."""
        penalties = self.settings.risk_penalties
        lost = sum(penalties.get(f.risk_level.value, 0.0) for f in findings
                   if f.classification != Classification.APPROVED)
        return max(0.0, 100.0 - lost)

    def recommendations(self, findings: Sequence[AuditFinding]) -> List[Recommendation]:
        recs: List[Recommendation] = []
        mismatched = [f.port for f in findings if f.suspicion_reason == SuspicionReason.HASH_MISMATCH]
        if mismatched:
            recs.append(Recommendation(
                "Binary hash mismatch",
                f"{len(mismatched)} process(es) run a binary that differs from its pinned hash",
                "Verify the binary and stop the process if it was not updated on purpose",
                Severity.CRITICAL, sorted(set(mismatched))))
        odd_ports = [f.port for f in findings if f.suspicion_reason == SuspicionReason.SUSPICIOUS_PORT]
        if odd_ports:
            recs.append(Recommendation(
                "Listener on a suspicious port",
                "Ports commonly used by miners and backdoors are open",
                "Identify the owning process and close the port if it is not expected",
                Severity.HIGH, sorted(set(odd_ports))))
        unknown = [f.port for f in findings if f.classification == Classification.UNKNOWN]
        if unknown:
            recs.append(Recommendation(
                "Unreviewed binaries",
                f"{len(unknown)} listener(s) run binaries without an approved hash",
                "Add their hashes to auditor.approved once reviewed",
                Severity.MEDIUM if any(f.risk_level.rank >= Severity.MEDIUM.rank for f in findings
                                       if f.classification == Classification.UNKNOWN) else Severity.LOW,
                sorted(set(unknown))))
        return recs

    def audit(self, snapshot: Optional[ScanSnapshot] = None,
              baseline: Optional[Path] = None) -> AuditReport:
        snapshot = snapshot if snapshot is not None else self.snapshot_provider()
        now = self.clock()
        if snapshot is None:
            report = AuditReport(now, 0, 0, [], 100.0, [])
        else:
            findings = [self.classify(b, now) for b in snapshot.bindings]
            live = snapshot.processes()
            with self._lock:
                for ident in [i for i in self._first_seen if i not in live]:
                    del self._first_seen[ident]
            findings.sort(key=lambda f: (-f.risk_level.rank, f.port, f.process.pid))
            report = AuditReport(now, snapshot.sequence, len(snapshot.ports()), findings,
                                 self.score(findings), self.recommendations(findings))
            if baseline is not None:
                report.baseline = self.compare_baseline(findings, baseline)
        with self._lock:
            self._latest = report
        log.info(f"Audit of snapshot #{report.sequence}: {report.total_ports} port(s), "
                 f"{len(report.suspicious)} suspicious, score {report.score:.0f}")
        return report

    def latest(self) -> Optional[AuditReport]:
        with self._lock:
            return self._latest

    # -- baseline -----------------------------------------------------------------

    def save_baseline(self, report: AuditReport, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps([_baseline_entry(f) for f in report.findings], indent=2))
        log.info(f"Audit baseline with {len(report.findings)} entries written to {path}")

    def compare_baseline(self, findings: Sequence[AuditFinding], path: Path) -> Optional[BaselineComparison]:
        try:
            saved = json.loads(Path(path).read_text())
        except (OSError, ValueError) as e:
            log.warning(f"Audit: could not read baseline {path}: {e}")
            return None
        old = {(e["port"], e["name"]): e for e in saved}
        new = {(f.port, f.process.name): _baseline_entry(f) for f in findings}
        cmp = BaselineComparison(str(path))
        cmp.new = [new[k] for k in sorted(new.keys() - old.keys())]
        cmp.removed = [old[k] for k in sorted(old.keys() - new.keys())]
        for key in sorted(old.keys() & new.keys()):
            a, b = old[key], new[key]
            if a.get("hash") and b.get("hash") and a["hash"] != b["hash"]:
                change = "BinaryChanged"
            elif a.get("exe") != b.get("exe"):
                change = "LocationChanged"
            elif a.get("cmdline") != b.get("cmdline"):
                change = "ArgumentsChanged"
            else:
                continue
            cmp.changed.append(BaselineChange(key[0], a, b, change))
        return cmp

    # -- schedule -----------------------------------------------------------------

    def start(self) -> bool:
        """Audit every ``interval`` seconds on a background thread; a zero interval means on demand only."""
        if self.settings.interval <= 0 or self._thread is not None:
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="portwatch-audit", daemon=True)
        self._thread.start()
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.settings.interval):
            try:
                self.audit()
            except Exception as e:
                log.exception(f"Audit run failed: {e}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
