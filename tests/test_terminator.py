"""Tests for the bounded kill escalation."""

import threading

import pytest

from portwatch.config import KillSettings
from portwatch.models import FORCEFUL, GRACEFUL, KillFailure, KillOutcome, KillRequest
from portwatch.terminator import Terminator

from conftest import T0, make_proc

FAST = dict(grace_period=0.05, force_period=0.05, poll_interval=0.01, os_call_timeout=1.0)


@pytest.fixture
def terminator(control):
    t = Terminator(KillSettings(**FAST), control)
    yield t
    t.shutdown(timeout=2)


def request(pid: int, start_time: float = T0, port: int = 3000) -> KillRequest:
    return KillRequest(make_proc(pid, start_time), port)


class TestEscalation:
    """Graceful then forceful, bounded by the configured periods."""

    def test_missing_target_sends_nothing(self, terminator, control):
        result = terminator.execute(request(99999))
        assert result.outcome == KillOutcome.FAILED
        assert result.failure == KillFailure.NOT_FOUND
        assert result.signals_sent == []
        assert control.sent == []

    def test_restarted_pid_is_not_found(self, terminator, control):
        control.spawn(10, T0 + 60, dies_on={GRACEFUL})
        result = terminator.execute(request(10, T0))
        assert result.failure == KillFailure.NOT_FOUND
        assert control.sent == []
        assert 10 in control.procs

    def test_graceful_is_enough(self, terminator, control):
        control.spawn(10, dies_on={GRACEFUL})
        result = terminator.execute(request(10))
        assert result.ok
        assert result.signals_sent == [GRACEFUL]
        assert result.attempts == 1

    def test_forceful_after_grace_period(self, terminator, control):
        control.spawn(10, dies_on={FORCEFUL})
        result = terminator.execute(request(10))
        assert result.ok
        assert result.signals_sent == [GRACEFUL, FORCEFUL]

    def test_survivor_is_retried_once(self, terminator, control):
        control.spawn(10)
        result = terminator.execute(request(10))
        assert result.outcome == KillOutcome.FAILED
        assert result.failure == KillFailure.TIMEOUT
        assert result.attempts == 2
        assert result.signals_sent == [GRACEFUL, FORCEFUL, GRACEFUL, FORCEFUL]

    def test_no_retry_when_disabled(self, control):
        t = Terminator(KillSettings(auto_retry=False, **FAST), control)
        control.spawn(10)
        try:
            result = t.execute(request(10))
        finally:
            t.shutdown(timeout=2)
        assert result.attempts == 1
        assert result.signals_sent == [GRACEFUL, FORCEFUL]

    def test_permission_denied_stops(self, terminator, control):
        control.spawn(10, dies_on={GRACEFUL, FORCEFUL})
        control.denied.add(10)
        result = terminator.execute(request(10))
        assert result.failure == KillFailure.PERMISSION_DENIED
        assert control.sent == [(10, GRACEFUL)]
        assert 10 in control.procs

    def test_os_call_timeout(self, control):
        gate = threading.Event()

        class StuckControl(type(control)):
            def lookup(self, pid):
                gate.wait(5)
                return super().lookup(pid)

        t = Terminator(KillSettings(**{**FAST, "os_call_timeout": 0.05}), StuckControl())
        try:
            result = t.execute(request(10))
        finally:
            gate.set()
            t.shutdown(timeout=2)
        assert result.outcome == KillOutcome.TIMED_OUT
        assert result.failure is None
        assert result.attempts == 1


class TestConcurrency:
    """Requests for one identity never double-signal."""

    def test_same_identity_twice(self, terminator, control):
        control.spawn(10, dies_on={GRACEFUL})
        results = terminator.execute_batch([request(10), request(10)])
        outcomes = sorted(r.reason() for r in results)
        assert outcomes == [KillFailure.NOT_FOUND.value, KillOutcome.SUCCESS.value]
        assert control.sent == [(10, GRACEFUL)]

    def test_batch_of_distinct_targets(self, terminator, control):
        for pid in (1, 2, 3):
            control.spawn(pid, dies_on={GRACEFUL})
        results = terminator.execute_batch([request(1), request(2, port=3001), request(3, port=3002)])
        assert all(r.ok for r in results)
        assert [r.request.port for r in results] == [3000, 3001, 3002]

    def test_submit_after_shutdown(self, control):
        t = Terminator(KillSettings(**FAST), control)
        t.shutdown()
        with pytest.raises(RuntimeError):
            t.submit(request(1))

    def test_drain_waits_for_inflight(self, terminator, control):
        control.spawn(10, dies_on={FORCEFUL})
        future = terminator.submit(request(10))
        assert terminator.drain(timeout=5)
        assert future.done() and future.result().ok
