from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional
from pathlib import Path
import copy
import os

import yaml

from . import logger as log
from .models import ConfigError

DATA_DIR = Path(os.path.expanduser("~/.local/share/portwatch"))

DEFAULT_CONFIG: Dict[str, Any] = {
    "ports": "3000,3001,3002,4000,4321,5000,5173,8000,8080,9000",
    "ignore_ports": [],
    "ignore_processes": [],
    "ignore_patterns": [],
    "ignore_groups": [],
    "only_groups": [],
    "poll_interval": 2.0,
    "change_tolerance": 1.0,
    "auto_resolve": False,
    "resolve_parent_child": False,
    "os_call_timeout": 2.0,
    "kill": {
        "grace_period": 0.5,
        "force_period": 2.0,
        "poll_interval": 0.05,
        "auto_retry": True,
    },
    "cache": {
        "ttl": 300.0,
    },
    "guard": {
        "reservation_silent_cycles": 3,
        "restart_window": 10.0,
        "cpu_heavy": 50.0,
        "memory_heavy": 10.0,
    },
    "analyzer": {
        "restart_window": 10.0,
        "min_kills": 2,
        "auto_restart_min_kills": 3,
        "auto_restart_interval": 300.0,
        "hot_reload_min_kills": 3,
        "hot_reload_interval": 120.0,
        "hot_reload_min_short": 2,
        "hot_reload_confidence": 0.8,
        "time_min_entries": 5,
        "time_min_peak": 3,
        "time_confidence": 0.7,
        "restart_confidence_step": 0.2,
    },
    "auditor": {
        "interval": 0.0,
        "suspicious_ports": [3333, 4444, 5555, 6666, 7777, 14444, 33333],
        "approved": {},
        "pinned": {},
        "standard_locations": ["/usr/*", "/bin/*", "/sbin/*", "/opt/homebrew/*",
                               "/usr/local/*", "/Applications/*", "C:\\Program Files*"],
        "unknown_risk_standard": "Low",
        "unknown_risk_other": "Medium",
        "mismatch_risk": "Critical",
        "suspicious_port_risk": "High",
        "risk_penalties": {"Low": 2, "Medium": 10, "High": 25, "Critical": 40},
        "baseline_file": str(DATA_DIR / "audit-baseline.json"),
    },
    "watch_dirs": [],
    "history_file": str(DATA_DIR / "history.json"),
    "reservations_file": str(DATA_DIR / "reservations.json"),
}

PRESETS: Dict[str, Dict[str, Any]] = {
    "dev": {
        "description": "Common development ports (React, Node.js, Python, etc.)",
        "ports": "3000,3001,3002,4321,5000,8000,8080,9000",
        "ignore_ports": [5353, 7000],
        "ignore_processes": ["Chrome", "Safari", "Firefox"],
    },
    "database": {
        "description": "Database services (MySQL, PostgreSQL, Redis, MongoDB, etc.)",
        "ports": "3306,5432,6379,27017,1433,9200,9300",
    },
    "web": {
        "description": "Web servers and proxies",
        "ports": "80,443,8080,8443,3000,5000,8000,9000",
        "ignore_ports": [5353],
        "ignore_processes": ["nginx", "apache2", "httpd"],
    },
    "react": {
        "description": "React development servers",
        "ports": "3000-3005",
    },
    "node": {
        "description": "Node.js development servers",
        "ports": "3000,5000,8000,8080,9000",
    },
    "python": {
        "description": "Python development servers (Django, Flask, FastAPI, etc.)",
        "ports": "5000,8000,8080,9000",
    },
    "full": {
        "description": "Comprehensive port monitoring (2000-8000)",
        "ports": "2000-8000",
    },
    "minimal": {
        "description": "Essential development ports only",
        "ports": "3000,8080,4321",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None) -> Dict[str, Any]:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path:
        try:
            data = yaml.safe_load(Path(path).read_text()) or {}
            if not isinstance(data, dict):
                raise ConfigError(f"top level of {path} must be a mapping")
            cfg = _deep_merge(cfg, data)
            log.info(f"Loaded config from {path}")
        except (OSError, yaml.YAMLError, ConfigError) as e:
            log.warning(f"Could not load config {path}: {e}")
    return cfg


def apply_preset(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    if name not in PRESETS:
        raise ConfigError(f"unknown preset: {name}")
    preset = {k: v for k, v in PRESETS[name].items() if k != "description"}
    return _deep_merge(cfg, preset)


def parse_ports(value: Any) -> Optional[FrozenSet[int]]:
    """Parse a watch list; ``None`` means every port.

    Accepts ``"all"``, ``"3000,8000"``, ranges like ``"3000-3005"`` or a list of ints.
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        if value.strip().lower() == "all":
            return None
        items: List[Any] = [s for s in value.split(",") if s.strip()]
    elif isinstance(value, int):
        items = [value]
    else:
        items = list(value)

    ports = set()
    for item in items:
        text = str(item).strip()
        if "-" in text:
            lo_s, hi_s = text.split("-", 1)
            lo, hi = _port(lo_s), _port(hi_s)
            if lo > hi:
                raise ConfigError(f"invalid port range: {text}")
            ports.update(range(lo, hi + 1))
        else:
            ports.add(_port(text))
    return frozenset(ports)


def _port(text: str) -> int:
    try:
        port = int(str(text).strip())
    except ValueError:
        raise ConfigError(f"invalid port: {text!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"port out of range: {port}")
    return port


@dataclass
class KillSettings:
    grace_period: float = 0.5
    force_period: float = 2.0
    poll_interval: float = 0.05
    auto_retry: bool = True
    os_call_timeout: float = 2.0


@dataclass
class GuardSettings:
    reservation_silent_cycles: int = 3
    restart_window: float = 10.0
    cpu_heavy: float = 50.0
    memory_heavy: float = 10.0
    auto_resolve: bool = False
    resolve_parent_child: bool = False


@dataclass
class AnalyzerSettings:
    restart_window: float = 10.0
    min_kills: int = 2
    auto_restart_min_kills: int = 3
    auto_restart_interval: float = 300.0
    hot_reload_min_kills: int = 3
    hot_reload_interval: float = 120.0
    hot_reload_min_short: int = 2
    hot_reload_confidence: float = 0.8
    time_min_entries: int = 5
    time_min_peak: int = 3
    time_confidence: float = 0.7
    restart_confidence_step: float = 0.2


@dataclass
class AuditorSettings:
    interval: float = 0.0
    suspicious_ports: FrozenSet[int] = frozenset()
    approved: Dict[str, List[str]] = field(default_factory=dict)
    pinned: Dict[str, str] = field(default_factory=dict)
    standard_locations: List[str] = field(default_factory=list)
    unknown_risk_standard: str = "Low"
    unknown_risk_other: str = "Medium"
    mismatch_risk: str = "Critical"
    suspicious_port_risk: str = "High"
    risk_penalties: Dict[str, float] = field(default_factory=lambda: {"Low": 2, "Medium": 10, "High": 25, "Critical": 40})
    baseline_file: Optional[str] = None


@dataclass
class MonitorConfig:
    watch_ports: Optional[FrozenSet[int]] = frozenset()
    ignore_ports: FrozenSet[int] = frozenset()
    ignore_processes: FrozenSet[str] = frozenset()
    ignore_patterns: List[str] = field(default_factory=list)
    ignore_groups: FrozenSet[str] = frozenset()
    only_groups: FrozenSet[str] = frozenset()
    poll_interval: float = 2.0
    change_tolerance: float = 1.0
    os_call_timeout: float = 2.0
    cache_ttl: float = 300.0
    kill: KillSettings = field(default_factory=KillSettings)
    guard: GuardSettings = field(default_factory=GuardSettings)
    analyzer: AnalyzerSettings = field(default_factory=AnalyzerSettings)
    auditor: AuditorSettings = field(default_factory=AuditorSettings)
    watch_dirs: List[str] = field(default_factory=list)
    history_file: Optional[str] = None
    reservations_file: Optional[str] = None

    @property
    def watch_all(self) -> bool:
        return self.watch_ports is None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "MonitorConfig":
        cfg = _deep_merge(DEFAULT_CONFIG, cfg)
        poll = float(cfg["poll_interval"])
        if poll <= 0:
            raise ConfigError("poll_interval must be positive")
        timeout = float(cfg["os_call_timeout"])
        kc, gc, ac, au = cfg["kill"], cfg["guard"], cfg["analyzer"], cfg["auditor"]
        return cls(
            watch_ports=parse_ports(cfg.get("ports")),
            ignore_ports=parse_ports(cfg.get("ignore_ports") or []) or frozenset(),
            ignore_processes=frozenset(str(p) for p in cfg.get("ignore_processes") or []),
            ignore_patterns=[str(p) for p in cfg.get("ignore_patterns") or []],
            ignore_groups=frozenset(str(g) for g in cfg.get("ignore_groups") or []),
            only_groups=frozenset(str(g) for g in cfg.get("only_groups") or []),
            poll_interval=poll,
            change_tolerance=float(cfg["change_tolerance"]),
            os_call_timeout=timeout,
            cache_ttl=float(cfg["cache"]["ttl"]),
            kill=KillSettings(
                grace_period=float(kc["grace_period"]),
                force_period=float(kc["force_period"]),
                poll_interval=float(kc["poll_interval"]),
                auto_retry=bool(kc["auto_retry"]),
                os_call_timeout=timeout,
            ),
            guard=GuardSettings(
                reservation_silent_cycles=max(1, int(gc["reservation_silent_cycles"])),
                restart_window=float(gc["restart_window"]),
                cpu_heavy=float(gc["cpu_heavy"]),
                memory_heavy=float(gc["memory_heavy"]),
                auto_resolve=bool(cfg["auto_resolve"]),
                resolve_parent_child=bool(cfg["resolve_parent_child"]),
            ),
            analyzer=AnalyzerSettings(**{k: type(getattr(AnalyzerSettings, k))(v) for k, v in ac.items()
                                         if hasattr(AnalyzerSettings, k)}),
            auditor=AuditorSettings(
                interval=float(au["interval"]),
                suspicious_ports=parse_ports(au.get("suspicious_ports") or []) or frozenset(),
                approved={str(k): [str(h).lower() for h in v] for k, v in (au.get("approved") or {}).items()},
                pinned={str(k): str(v).lower() for k, v in (au.get("pinned") or {}).items()},
                standard_locations=[str(p) for p in au.get("standard_locations") or []],
                unknown_risk_standard=str(au["unknown_risk_standard"]),
                unknown_risk_other=str(au["unknown_risk_other"]),
                mismatch_risk=str(au["mismatch_risk"]),
                suspicious_port_risk=str(au["suspicious_port_risk"]),
                risk_penalties={str(k): float(v) for k, v in (au.get("risk_penalties") or {}).items()},
                baseline_file=au.get("baseline_file"),
            ),
            watch_dirs=[os.path.expanduser(str(d)) for d in cfg.get("watch_dirs") or []],
            history_file=cfg.get("history_file"),
            reservations_file=cfg.get("reservations_file"),
        )
