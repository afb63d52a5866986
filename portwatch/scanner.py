"""Enumerate listening sockets and the processes that hold them.

Two interchangeable strategies implement the :class:`BindingSource` capability:

- :class:`ProcNetSource` reads the Linux socket tables in ``/proc/net`` and maps
  socket inodes back to pids through ``/proc/<pid>/fd``.
- :class:`PsutilSource` asks psutil for the system-wide connection table and
  falls back to per-process inspection where that is not permitted (macOS
  without root, for instance).

:class:`Scanner` only depends on the capability. It bounds the enumeration by
a timeout, attaches process identity ``(pid, start_time)`` and stamps the
result with a monotonically increasing sequence number.
"""
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol, Set, Tuple
import itertools
import os
import socket
import sys
import time

import psutil

from . import logger as log
from .models import PortBinding, ProcessRecord, ScanDiagnostic, ScanSnapshot
from .utils import call_with_timeout, read_lines, readlink

TCP_LISTEN = "0A"


@dataclass(frozen=True)
class RawBinding:
    port: int
    pid: int
    protocol: str = "tcp"


Enumeration = Tuple[List[RawBinding], List[ScanDiagnostic]]


class BindingSource(Protocol):
    name: str

    def enumerate_bindings(self) -> Enumeration: ...


def parse_listen_table(lines: List[str], protocol: str) -> Dict[str, Tuple[int, str]]:
    """Map socket inode -> (local port, protocol) for LISTEN rows of a /proc/net table."""
    listening: Dict[str, Tuple[int, str]] = {}
    for line in lines[1:]:
        parts = line.split()
        if len(parts) < 10 or parts[3] != TCP_LISTEN or not parts[9].isdigit():
            continue
        try:
            port = int(parts[1].rsplit(":", 1)[1], 16)
        except (IndexError, ValueError):
            continue
        inode = parts[9]
        if port and inode != "0":
            listening[inode] = (port, protocol)
    return listening


class ProcNetSource:
    name = "procfs"

    def __init__(self, root: Path = Path("/proc")):
        self.root = root

    def _listening_inodes(self) -> Dict[str, Tuple[int, str]]:
        inodes: Dict[str, Tuple[int, str]] = {}
        for table, proto in (("tcp", "tcp"), ("tcp6", "tcp6")):
            inodes.update(parse_listen_table(read_lines(self.root / "net" / table), proto))
        return inodes

    def enumerate_bindings(self) -> Enumeration:
        diagnostics: List[ScanDiagnostic] = []
        inodes = self._listening_inodes()
        if not inodes:
            return [], diagnostics

        found: List[RawBinding] = []
        owned: Set[str] = set()
        denied = 0
        for entry in os.listdir(self.root):
            if not entry.isdigit():
                continue
            fd_dir = self.root / entry / "fd"
            try:
                fds = os.listdir(fd_dir)
            except PermissionError:
                denied += 1
                continue
            except OSError:
                continue  # exited between listings
            for fd in fds:
                link = readlink(fd_dir / fd)
                if link.startswith("socket:[") and link.endswith("]"):
                    inode = link[8:-1]
                    if inode in inodes:
                        port, proto = inodes[inode]
                        found.append(RawBinding(port, int(entry), proto))
                        owned.add(inode)

        orphans = len(inodes) - len(owned)
        if orphans and denied:
            diagnostics.append(ScanDiagnostic(
                self.name,
                f"{orphans} listening socket(s) with unknown owner; "
                f"{denied} process fd table(s) not readable (insufficient privilege)",
            ))
        return found, diagnostics


class PsutilSource:
    name = "psutil"

    @staticmethod
    def _protocol(conn) -> str:
        return "tcp6" if conn.family == socket.AF_INET6 else "tcp"

    def enumerate_bindings(self) -> Enumeration:
        try:
            conns = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            return self._per_process()
        found = [
            RawBinding(c.laddr.port, c.pid, self._protocol(c))
            for c in conns
            if c.status == psutil.CONN_LISTEN and c.pid and c.laddr
        ]
        diagnostics: List[ScanDiagnostic] = []
        unowned = sum(1 for c in conns if c.status == psutil.CONN_LISTEN and not c.pid)
        if unowned:
            diagnostics.append(ScanDiagnostic(self.name, f"{unowned} listening socket(s) with unknown owner"))
        return found, diagnostics

    def _per_process(self) -> Enumeration:
        found: List[RawBinding] = []
        denied: List[int] = []
        for proc in psutil.process_iter(["pid"]):
            try:
                conns = proc.net_connections(kind="tcp")
            except psutil.AccessDenied:
                denied.append(proc.pid)
                continue
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
            for c in conns:
                if c.status == psutil.CONN_LISTEN and c.laddr:
                    found.append(RawBinding(c.laddr.port, proc.pid, self._protocol(c)))
        diagnostics = []
        if denied:
            diagnostics.append(ScanDiagnostic(self.name, f"access denied for {len(denied)} process(es)"))
        return found, diagnostics


def select_source() -> BindingSource:
    if sys.platform.startswith("linux") and Path("/proc/net/tcp").exists():
        return ProcNetSource()
    return PsutilSource()


def process_identity(pid: int) -> Tuple[float, str]:
    proc = psutil.Process(pid)
    with proc.oneshot():
        return proc.create_time(), proc.name()


class Scanner:
    def __init__(self, source: Optional[BindingSource] = None, timeout: float = 2.0,
                 identify: Callable[[int], Tuple[float, str]] = process_identity,
                 clock: Callable[[], float] = time.time):
        self.source = source or select_source()
        self.timeout = timeout
        self.identify = identify
        self.clock = clock
        self._sequence = itertools.count(1)

    def scan(self, watch_ports: Optional[FrozenSet[int]] = None) -> ScanSnapshot:
        """Produce the next snapshot; ``watch_ports=None`` keeps every port."""
        seq = next(self._sequence)
        now = self.clock()
        result = call_with_timeout(self.source.enumerate_bindings, timeout=self.timeout,
                                   default=None, what=f"{self.source.name} enumerate")
        if result is None:
            log.warning(f"Scan #{seq}: {self.source.name} enumeration failed or timed out")
            diag = ScanDiagnostic(self.source.name, "enumeration failed or timed out")
            return ScanSnapshot(seq, (), now, (diag,), complete=False)

        raw, diagnostics = result
        seen: Set[Tuple[int, int]] = set()
        wanted: List[RawBinding] = []
        for rb in raw:
            if watch_ports is not None and rb.port not in watch_ports:
                continue
            if (rb.port, rb.pid) in seen:
                continue  # same socket seen over IPv4 and IPv6
            seen.add((rb.port, rb.pid))
            wanted.append(rb)

        identities: Dict[int, Optional[Tuple[float, str]]] = {}
        bindings: List[PortBinding] = []
        for rb in wanted:
            if rb.pid not in identities:
                identities[rb.pid] = call_with_timeout(self.identify, rb.pid, timeout=self.timeout,
                                                       default=None, what=f"identify pid {rb.pid}")
                if identities[rb.pid] is None:
                    diagnostics.append(ScanDiagnostic(self.source.name, "process vanished or unreadable", rb.pid))
            ident = identities[rb.pid]
            if ident is None:
                continue
            start_time, name = ident
            bindings.append(PortBinding(rb.port, ProcessRecord(rb.pid, start_time, name), rb.protocol, now))

        bindings.sort(key=lambda b: (b.port, b.process.pid))
        for d in diagnostics:
            log.debug(f"Scan #{seq} diagnostic [{d.source}]: {d.message}" + (f" (pid {d.pid})" if d.pid else ""))
        return ScanSnapshot(seq, tuple(bindings), now, tuple(diagnostics))
