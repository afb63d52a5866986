"""
Shared fixtures for portwatch tests.

This module provides:
- Record factories (processes, bindings, snapshots)
- Fakes for the OS-facing protocols (BindingSource, ProcessProbe, ProcessControl)
- A controllable clock
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

import psutil
import pytest

from portwatch.models import PortBinding, ProcessRecord, ScanSnapshot
from portwatch.scanner import RawBinding

T0 = 1_700_000_000.0


def make_proc(pid: int, start_time: float = T0, name: str = "node", **kw) -> ProcessRecord:
    return ProcessRecord(pid=pid, start_time=start_time, name=name, cmdline=kw.pop("cmdline", name), **kw)


def make_snapshot(pairs: Iterable[Tuple[int, ProcessRecord]], sequence: int = 1) -> ScanSnapshot:
    bindings = tuple(PortBinding(port, proc) for port, proc in pairs)
    return ScanSnapshot(sequence, bindings, T0)


class FakeClock:
    def __init__(self, t: float = T0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeSource:
    """BindingSource over a mutable table of (port, pid) plus an identity map.

    While ``failures`` is positive each enumeration raises OSError and counts it down.
    """

    name = "fake"

    def __init__(self):
        self.bindings: List[RawBinding] = []
        self.identities: Dict[int, Tuple[float, str]] = {}
        self.diagnostics = []
        self.failures = 0

    def bind(self, port: int, pid: int, start_time: float = T0, name: str = "node") -> None:
        self.bindings.append(RawBinding(port, pid))
        self.identities[pid] = (start_time, name)

    def unbind(self, pid: int) -> None:
        self.bindings = [b for b in self.bindings if b.pid != pid]
        self.identities.pop(pid, None)

    def enumerate_bindings(self):
        if self.failures:
            self.failures -= 1
            raise OSError("netlink unavailable")
        return list(self.bindings), list(self.diagnostics)

    def identify(self, pid: int) -> Tuple[float, str]:
        if pid not in self.identities:
            raise psutil.NoSuchProcess(pid)
        return self.identities[pid]


class FakeProbe:
    """ProcessProbe whose handles are plain pids; counts the expensive lookups."""

    def __init__(self):
        self.cwds: Dict[int, Optional[str]] = {}
        self.exes: Dict[int, Optional[str]] = {}
        self.samples: Dict[int, dict] = {}
        self.cgroups: Dict[int, str] = {}
        self.cwd_calls = 0
        self.open_calls = 0

    def open(self, pid: int) -> int:
        self.open_calls += 1
        return pid

    def sample(self, handle: int) -> dict:
        return dict(self.samples.get(handle, {}))

    def cwd(self, handle: int) -> Optional[str]:
        self.cwd_calls += 1
        return self.cwds.get(handle)

    def exe(self, handle: int) -> Optional[str]:
        return self.exes.get(handle)

    def cgroup(self, pid: int) -> str:
        return self.cgroups.get(pid, "")


class FakeControl:
    """ProcessControl over an in-memory process table.

    ``dies_on[pid]`` names the signal kinds that make the process exit;
    pids in ``denied`` refuse every signal.
    """

    def __init__(self):
        self.procs: Dict[int, float] = {}
        self.dies_on: Dict[int, Set[str]] = {}
        self.denied: Set[int] = set()
        self.sent: List[Tuple[int, str]] = []

    def spawn(self, pid: int, start_time: float = T0, dies_on: Iterable[str] = ()) -> None:
        self.procs[pid] = start_time
        self.dies_on[pid] = set(dies_on)

    def lookup(self, pid: int) -> Optional[float]:
        return self.procs.get(pid)

    def send(self, pid: int, start_time: float, kind: str) -> None:
        self.sent.append((pid, kind))
        if self.procs.get(pid) != start_time:
            raise psutil.NoSuchProcess(pid)
        if pid in self.denied:
            raise psutil.AccessDenied(pid)
        if kind in self.dies_on.get(pid, ()):
            del self.procs[pid]

    def alive(self, pid: int, start_time: float) -> bool:
        return self.procs.get(pid) == start_time


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def control() -> FakeControl:
    return FakeControl()
