from __future__ import annotations
from dataclasses import replace
from pathlib import Path, PurePath
from typing import Any, Callable, Dict, Optional, Protocol, Tuple
import math
import os
import re

import psutil

from . import logger as log
from .cache import MISSING, MetadataCache
from .models import DOCKER_DAEMON, HOST_PROCESS, PortBinding, ProcessRecord, ScanSnapshot
from .utils import call_with_timeout, read_text

# Ordered: first matching rule wins. Predicates get (lowercase name, lowercase cmdline).
GROUP_RULES: Tuple[Tuple[str, Callable[[str, str], bool]], ...] = (
    ("Docker", lambda n, c: "docker" in n or n in ("containerd", "vpnkit", "com.docker.backend")),
    ("Node.js", lambda n, c: "node" in n or "node" in c or any(s in c for s in ("vite", "webpack", "next dev", "nodemon", "npm run", "yarn ", "pnpm "))),
    ("Bun", lambda n, c: n == "bun" or c.startswith("bun ")),
    ("Deno", lambda n, c: n == "deno"),
    ("Python", lambda n, c: "python" in n or "python" in c or any(s in c for s in ("uvicorn", "gunicorn", "manage.py runserver", "flask run"))),
    ("Java", lambda n, c: "java" in n or "java" in c),
    ("Go", lambda n, c: n in ("go", "golang") or c.startswith("go ") or " go " in c),
    ("Rust", lambda n, c: "rust" in n or "cargo" in c),
    ("PHP", lambda n, c: "php" in n or "php" in c),
    ("Ruby", lambda n, c: "ruby" in n or "ruby" in c or "rails" in c or "puma" in n),
    ("Web Server", lambda n, c: "nginx" in n or "apache" in c or n in ("httpd", "caddy")),
    ("Database", lambda n, c: any(s in n for s in ("postgres", "mysql", "mariadb", "redis", "mongod"))),
)

DOCKER_DAEMON_NAMES = ("dockerd", "docker-proxy", "com.docker.backend", "com.docker.vpnkit", "vpnkit", "containerd")

# Directory names that never identify a project on their own.
NON_PROJECT_DIRS = {"", "/", "~", "home", "Users", "root", "tmp", "src", "bin", "usr", "var"}
PROJECT_HINT_WORDS = ("project", "app", "service", "api", "frontend", "backend", "client", "server")
CGROUP_CONTAINER_RE = re.compile(r"(?:docker[-/]|containerd[-/]|/kubepods/.*/|libpod-)([0-9a-f]{12,64})")

HINT_NAMESPACE = "project_hint"


def classify_group(name: str, cmdline: str) -> Optional[str]:
    n, c = name.lower(), cmdline.lower()
    for group, matches in GROUP_RULES:
        if matches(n, c):
            return group
    return None


def project_from_path(work_dir: Optional[str]) -> Optional[str]:
    if not work_dir:
        return None
    path = PurePath(work_dir)
    if path.name and path.name not in NON_PROJECT_DIRS:
        return path.name
    for part in reversed(path.parts):
        if part not in NON_PROJECT_DIRS and any(w in part.lower() for w in PROJECT_HINT_WORDS):
            return part
    return None


def project_from_cmdline(cmdline: str) -> Optional[str]:
    """Use the directory of the first path-like argument (``node /srv/shop/server.js``)."""
    for arg in cmdline.split()[1:]:
        if "/" in arg and not arg.startswith("-"):
            parent = PurePath(arg).parent
            if parent.name and parent.name not in NON_PROJECT_DIRS:
                return parent.name
    return None


def container_from_cgroup(text: str) -> Optional[str]:
    m = CGROUP_CONTAINER_RE.search(text)
    return m.group(1)[:12] if m else None


class ProcessProbe(Protocol):
    def open(self, pid: int) -> Any: ...
    def sample(self, handle: Any) -> Dict[str, Any]: ...
    def cwd(self, handle: Any) -> Optional[str]: ...
    def exe(self, handle: Any) -> Optional[str]: ...
    def cgroup(self, pid: int) -> str: ...


class PsutilProbe:
    """psutil-backed probe; handles are ``psutil.Process`` objects kept across cycles
    so ``cpu_percent(None)`` measures the interval between scans."""

    def open(self, pid: int) -> psutil.Process:
        return psutil.Process(pid)

    def sample(self, handle: psutil.Process) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        with handle.oneshot():
            for key, fn in (("ppid", handle.ppid),
                            ("cmdline", lambda: " ".join(handle.cmdline())),
                            ("cpu_pct", lambda: handle.cpu_percent(interval=None)),
                            ("mem_pct", handle.memory_percent),
                            ("memory_bytes", lambda: handle.memory_info().rss)):
                try:
                    out[key] = fn()
                except psutil.AccessDenied:
                    continue
        return out

    def cwd(self, handle: psutil.Process) -> Optional[str]:
        return handle.cwd() or None

    def exe(self, handle: psutil.Process) -> Optional[str]:
        return handle.exe() or None

    def cgroup(self, pid: int) -> str:
        return read_text(Path(f"/proc/{pid}/cgroup"), 64_000)


class MetadataResolver:
    def __init__(self, cache: MetadataCache, probe: Optional[ProcessProbe] = None, timeout: float = 2.0):
        self.cache = cache
        self.probe = probe or PsutilProbe()
        self.timeout = timeout

    def _bounded(self, fn: Callable[..., Any], *args: Any, what: str) -> Any:
        return call_with_timeout(fn, *args, timeout=self.timeout, default=None, what=what)

    def _handle(self, proc: ProcessRecord) -> Any:
        # kept until the incarnation goes away; a fresh handle restarts cpu_percent at 0.0
        return self.cache.get_or_compute(
            proc.identity, "handle", lambda: self._bounded(self.probe.open, proc.pid, what=f"open pid {proc.pid}"),
            ttl=math.inf)

    def resolve(self, proc: ProcessRecord) -> ProcessRecord:
        """Enrich a bare record; anything that cannot be resolved stays ``None``."""
        handle = self._handle(proc)
        if handle is None:
            return proc
        pid = proc.pid
        sample = self._bounded(self.probe.sample, handle, what=f"sample pid {pid}") or {}
        cwd = self.cache.get_or_compute(proc.identity, "cwd",
                                        lambda: self._bounded(self.probe.cwd, handle, what=f"cwd pid {pid}"))
        exe = self.cache.get_or_compute(proc.identity, "exe",
                                        lambda: self._bounded(self.probe.exe, handle, what=f"exe pid {pid}"))
        cmdline = sample.get("cmdline") or proc.cmdline or proc.name
        container, container_name = self._container(proc, cmdline)
        return replace(
            proc,
            cmdline=cmdline,
            cwd=cwd,
            exe=exe,
            ppid=int(sample.get("ppid", proc.ppid) or 0),
            cpu_pct=sample.get("cpu_pct"),
            mem_pct=sample.get("mem_pct"),
            memory_bytes=sample.get("memory_bytes"),
            container=container,
            container_name=container_name,
            group=classify_group(proc.name, cmdline),
            project=self._project(cwd, cmdline),
        )

    def _container(self, proc: ProcessRecord, cmdline: str) -> Tuple[str, Optional[str]]:
        if proc.name.lower() in DOCKER_DAEMON_NAMES:
            name = None
            if proc.name == "docker-proxy":
                m = re.search(r"-container-ip\s+(\S+)", cmdline)
                name = m.group(1) if m else None
            return DOCKER_DAEMON, name
        cid = self.cache.get_or_compute(
            proc.identity, "container",
            lambda: container_from_cgroup(self._bounded(self.probe.cgroup, proc.pid, what="cgroup") or "") or HOST_PROCESS)
        return cid, None

    def _project(self, cwd: Optional[str], cmdline: str) -> Optional[str]:
        if cwd:
            path = Path(cwd)
            for candidate in (path, *path.parents):
                hint = self.cache.get_attr(HINT_NAMESPACE, str(candidate))
                if hint is not MISSING:
                    return hint
        return project_from_path(cwd) or project_from_cmdline(cmdline)

    def enrich(self, snapshot: ScanSnapshot) -> ScanSnapshot:
        if not snapshot.complete:
            return snapshot
        live = {b.process.pid: b.process.start_time for b in snapshot.bindings}
        dropped = self.cache.reconcile(live)
        if dropped:
            log.debug(f"Resolver: evicted {dropped} cache entries for exited or restarted processes")
        resolved: Dict[Tuple[int, float], ProcessRecord] = {}
        bindings = []
        for b in snapshot.bindings:
            ident = b.process.identity
            if ident not in resolved:
                resolved[ident] = self.resolve(b.process)
            bindings.append(PortBinding(b.port, resolved[ident], b.protocol, b.discovered_at))
        return snapshot.with_bindings(tuple(bindings))


def home_relative(path: str) -> str:
    home = os.path.expanduser("~")
    return "~" + path[len(home):] if path.startswith(home) else path
