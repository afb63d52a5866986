from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple
import fnmatch

from .config import MonitorConfig
from .models import PortBinding, ScanSnapshot


@dataclass(frozen=True)
class FilterStats:
    ignore_ports: int = 0
    ignore_processes: int = 0
    ignore_patterns: int = 0
    ignore_groups: int = 0
    only_groups: int = 0

    def is_active(self) -> bool:
        return any((self.ignore_ports, self.ignore_processes, self.ignore_patterns,
                    self.ignore_groups, self.only_groups))

    def describe(self) -> str:
        parts = [f"{n} {label}" for n, label in (
            (self.ignore_ports, "ports"),
            (self.ignore_processes, "processes"),
            (self.ignore_patterns, "patterns"),
            (self.ignore_groups, "groups"),
            (self.only_groups, "only-groups"),
        ) if n]
        return f"filtering: {', '.join(parts)}" if parts else "no filters"


@dataclass(frozen=True)
class SmartFilter:
    """Ignore rules beat watch rules. Holds configuration only, no per-cycle state."""

    watch_ports: Optional[FrozenSet[int]] = None  # None watches every port
    ignore_ports: FrozenSet[int] = frozenset()
    ignore_processes: FrozenSet[str] = frozenset()
    ignore_patterns: Tuple[str, ...] = ()
    ignore_groups: FrozenSet[str] = frozenset()
    only_groups: FrozenSet[str] = frozenset()

    @classmethod
    def from_config(cls, cfg: MonitorConfig) -> "SmartFilter":
        return cls(
            watch_ports=cfg.watch_ports,
            ignore_ports=cfg.ignore_ports,
            ignore_processes=frozenset(p.lower() for p in cfg.ignore_processes),
            ignore_patterns=tuple(cfg.ignore_patterns),
            ignore_groups=cfg.ignore_groups,
            only_groups=cfg.only_groups,
        )

    def ignore_reason(self, binding: PortBinding) -> Optional[str]:
        proc = binding.process
        if binding.port in self.ignore_ports:
            return f"port {binding.port} ignored"
        name = proc.name.lower()
        for needle in self.ignore_processes:
            if needle.lower() in name:
                return f"process name matches '{needle}'"
        for pat in self.ignore_patterns:
            if fnmatch.fnmatchcase(proc.name, pat) or fnmatch.fnmatchcase(proc.cmdline or "", pat):
                return f"pattern '{pat}'"
        if proc.group and proc.group in self.ignore_groups:
            return f"group {proc.group} ignored"
        if self.only_groups and proc.group not in self.only_groups:
            return "group not in only-groups"
        return None

    def is_watched(self, binding: PortBinding) -> bool:
        return self.watch_ports is None or binding.port in self.watch_ports

    def accepts(self, binding: PortBinding) -> bool:
        return self.ignore_reason(binding) is None and self.is_watched(binding)

    def apply(self, snapshot: ScanSnapshot) -> ScanSnapshot:
        return snapshot.with_bindings(tuple(b for b in snapshot.bindings if self.accepts(b)))

    def stats(self) -> FilterStats:
        return FilterStats(len(self.ignore_ports), len(self.ignore_processes), len(self.ignore_patterns),
                           len(self.ignore_groups), len(self.only_groups))
