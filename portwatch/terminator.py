"""Bounded graceful-then-forceful process termination.

One escalation: send the graceful signal, wait up to ``grace_period``; if the
target still holds its identity send the forceful signal and wait up to
``force_period``. A target missing at request time fails with NotFound and no
signal is sent. Insufficient privilege stops the escalation. A sequence that
ends with the process still alive is retried once when ``auto_retry`` is set.
"""
from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from typing import Callable, Dict, List, Optional, Protocol, Sequence
import threading
import time

import psutil

from . import logger as log
from .config import KillSettings
from .models import (
    FORCEFUL,
    GRACEFUL,
    Identity,
    KillFailure,
    KillOutcome,
    KillRequest,
    KillResult,
)
from .utils import submit

SIGNAL_ORDER = (GRACEFUL, FORCEFUL)


class ProcessControl(Protocol):
    def lookup(self, pid: int) -> Optional[float]: ...
    def send(self, pid: int, start_time: float, kind: str) -> None: ...
    def alive(self, pid: int, start_time: float) -> bool: ...


class PsutilProcessControl:
    """Raises ``psutil.NoSuchProcess`` / ``psutil.AccessDenied`` like psutil itself."""

    def lookup(self, pid: int) -> Optional[float]:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None

    def send(self, pid: int, start_time: float, kind: str) -> None:
        proc = psutil.Process(pid)
        if proc.create_time() != start_time:
            raise psutil.NoSuchProcess(pid)
        if kind == GRACEFUL:
            proc.terminate()
        else:
            proc.kill()

    def alive(self, pid: int, start_time: float) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.create_time() == start_time and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            return True


class _OsCallTimeout(Exception):
    pass


class Terminator:
    def __init__(self, settings: KillSettings, control: Optional[ProcessControl] = None,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep,
                 max_workers: int = 4):
        self.settings = settings
        self.control = control or PsutilProcessControl()
        self.clock = clock
        self.sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="portwatch-kill")
        self._locks: Dict[Identity, list] = {}
        self._locks_guard = threading.Lock()
        self._inflight: set = set()
        self._closed = False

    def _bounded(self, fn: Callable, *args):
        future = submit(fn, *args)
        try:
            return future.result(timeout=self.settings.os_call_timeout)
        except FutureTimeout:
            raise _OsCallTimeout(getattr(fn, "__name__", str(fn))) from None

    def _claim(self, identity: Identity) -> list:
        with self._locks_guard:
            entry = self._locks.setdefault(identity, [threading.Lock(), 0])
            entry[1] += 1
            return entry

    def _unclaim(self, identity: Identity, entry: list) -> None:
        with self._locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[identity]

    def execute(self, request: KillRequest) -> KillResult:
        """Run the escalation for one target. Requests for the same identity are serialized,
        so a second request only sees a process that is already gone."""
        target = request.target
        entry = self._claim(target.identity)
        try:
            with entry[0]:
                result = self._run(request)
        finally:
            self._unclaim(target.identity, entry)
        level = log.info if result.ok else log.warning
        level(f"Kill pid {target.pid} ({target.name}) port {request.port}: {result.reason()} "
              f"after {result.attempts} attempt(s), signals {result.signals_sent}")
        return result

    def _run(self, request: KillRequest) -> KillResult:
        result = KillResult(request, KillOutcome.FAILED)
        attempts = 2 if self.settings.auto_retry else 1
        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            self._escalate(request, result, first=attempt == 1)
            if not (result.outcome == KillOutcome.FAILED and result.failure == KillFailure.TIMEOUT):
                break
            if attempt < attempts:
                log.info(f"Kill pid {request.target.pid}: still alive after escalation, retrying once")
        return result

    def _escalate(self, request: KillRequest, result: KillResult, first: bool) -> None:
        pid, start_time = request.target.identity
        signals = [s for s in SIGNAL_ORDER if s in request.signals]
        try:
            try:
                current = self._bounded(self.control.lookup, pid)
            except psutil.AccessDenied:
                self._finish(result, KillOutcome.FAILED, KillFailure.PERMISSION_DENIED, "permission denied")
                return
            if current != start_time:
                if first:
                    self._finish(result, KillOutcome.FAILED, KillFailure.NOT_FOUND, "process not found")
                else:
                    self._finish(result, KillOutcome.SUCCESS)
                return
            for kind in signals:
                try:
                    self._bounded(self.control.send, pid, start_time, kind)
                except (psutil.NoSuchProcess, psutil.ZombieProcess):
                    self._finish(result, KillOutcome.SUCCESS)
                    return
                except psutil.AccessDenied:
                    self._finish(result, KillOutcome.FAILED, KillFailure.PERMISSION_DENIED,
                                 f"permission denied sending {kind} signal")
                    return
                result.signals_sent.append(kind)
                period = self.settings.grace_period if kind == GRACEFUL else self.settings.force_period
                if self._wait_gone(pid, start_time, period):
                    self._finish(result, KillOutcome.SUCCESS)
                    return
            self._finish(result, KillOutcome.FAILED, KillFailure.TIMEOUT, "process survived escalation")
        except _OsCallTimeout as e:
            self._finish(result, KillOutcome.TIMED_OUT, None, f"OS call timed out: {e}")

    def _wait_gone(self, pid: int, start_time: float, period: float) -> bool:
        deadline = self.clock() + period
        while True:
            if not self._bounded(self.control.alive, pid, start_time):
                return True
            if self.clock() >= deadline:
                return False
            self.sleep(self.settings.poll_interval)

    @staticmethod
    def _finish(result: KillResult, outcome: KillOutcome, failure: Optional[KillFailure] = None,
                detail: str = "") -> None:
        result.outcome = outcome
        result.failure = failure
        result.detail = detail

    def submit(self, request: KillRequest) -> Future:
        if self._closed:
            raise RuntimeError("terminator is shut down")
        future = self._pool.submit(self.execute, request)
        self._inflight.add(future)
        future.add_done_callback(self._inflight.discard)
        return future

    def execute_batch(self, requests: Sequence[KillRequest]) -> List[KillResult]:
        """Run a batch concurrently (distinct targets) and wait for all of it."""
        futures = [self.submit(r) for r in requests]
        return [f.result() for f in futures]

    def drain(self, timeout: Optional[float] = None) -> bool:
        pending = list(self._inflight)
        if not pending:
            return True
        log.info(f"Waiting for {len(pending)} in-flight kill(s)")
        done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self._closed = True
        self.drain(timeout)
        self._pool.shutdown(wait=False)
