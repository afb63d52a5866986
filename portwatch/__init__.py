"""
PortWatch - port monitor with conflict guard, safe termination
and kill-history analytics.

CLI entry: portwatch (see pyproject.toml)
"""

from .models import ProcessRecord, PortBinding, ScanSnapshot, ConflictEvent, KillResult, HistoryRecord
from .config import MonitorConfig, load_config
from .orchestrator import Monitor, diff_snapshots

__all__ = [
    "ProcessRecord",
    "PortBinding",
    "ScanSnapshot",
    "ConflictEvent",
    "KillResult",
    "HistoryRecord",
    "MonitorConfig",
    "load_config",
    "Monitor",
    "diff_snapshots",
]

__version__ = "1.0.0"
