"""Tests for offender ranking, restart correlation and pattern detection."""

from portwatch.analyzer import RestartAnalyzer
from portwatch.config import AnalyzerSettings
from portwatch.history import MemoryHistory
from portwatch.models import ChangeKind, ConflictType, HistoryRecord, PatternType, SnapshotEvent

from conftest import T0, FakeClock, make_proc


def kill(name, port, at, pid=1, **kw) -> HistoryRecord:
    return HistoryRecord(port=port, pid=pid, process_name=name, killed_at=at, **kw)


def analyzer(records=(), **settings) -> RestartAnalyzer:
    return RestartAnalyzer(AnalyzerSettings(**settings), MemoryHistory(list(records)), clock=FakeClock())


class TestOffenders:
    """Ranking of repeatedly killed (process, port) pairs."""

    def test_most_killed_first(self):
        records = [kill("node", 3000, T0 + i * 3600) for i in range(5)]
        records += [kill("python", 8000, T0 + i * 3600) for i in range(2)]
        ranked = analyzer(records).offenders()
        assert [(o.process_name, o.port, o.kill_count) for o in ranked] == [("node", 3000, 5), ("python", 8000, 2)]
        assert ranked[0].first_killed == T0
        assert ranked[0].last_killed == T0 + 4 * 3600

    def test_ties_break_on_most_recent_kill(self):
        records = [kill("a", 1000, T0), kill("a", 1000, T0 + 10),
                   kill("b", 2000, T0 + 1), kill("b", 2000, T0 + 50)]
        assert [o.process_name for o in analyzer(records).offenders()] == ["b", "a"]

    def test_min_kills(self):
        records = [kill("node", 3000, T0), kill("node", 3000, T0 + 1), kill("deno", 8000, T0)]
        a = analyzer(records)
        assert [o.process_name for o in a.offenders()] == ["node"]
        assert [o.process_name for o in a.offenders(min_kills=1)] == ["node", "deno"]

    def test_suggestions(self):
        records = [kill("node", 3000, T0 + i, group="Node.js") for i in range(3)]
        suggestions = analyzer(records).ignore_suggestions()
        assert suggestions
        assert suggestions.ports == [3000]
        assert suggestions.processes == ["node"]
        assert suggestions.groups == ["Node.js"]
        assert not analyzer().ignore_suggestions()


class TestRestartCorrelation:
    """Removed followed by Added of the same name."""

    def test_restart_within_window(self):
        a = analyzer(restart_window=10.0)
        a.observe([SnapshotEvent(ChangeKind.REMOVED, 3000, make_proc(1, name="nodemon"))], now=T0)
        found = a.observe([SnapshotEvent(ChangeKind.ADDED, 3000, make_proc(2, T0 + 3, name="nodemon"))], now=T0 + 3)
        assert [(r.old_pid, r.new_pid, r.gap) for r in found] == [(1, 2, 3.0)]
        assert a.restart_counts() == {("nodemon", 3000): 1}

    def test_late_return_is_not_a_restart(self):
        a = analyzer(restart_window=10.0)
        a.observe([SnapshotEvent(ChangeKind.REMOVED, 3000, make_proc(1, name="nodemon"))], now=T0)
        assert a.observe([SnapshotEvent(ChangeKind.ADDED, 3000, make_proc(2, name="nodemon"))], now=T0 + 20) == []

    def test_different_name_is_not_a_restart(self):
        a = analyzer()
        a.observe([SnapshotEvent(ChangeKind.REMOVED, 3000, make_proc(1, name="node"))], now=T0)
        assert a.observe([SnapshotEvent(ChangeKind.ADDED, 3000, make_proc(2, name="python"))], now=T0 + 1) == []

    def test_repeated_restarts_become_a_pattern(self):
        a = analyzer()
        for i in range(3):
            t = T0 + i * 100
            a.observe([SnapshotEvent(ChangeKind.REMOVED, 3000, make_proc(i, name="nodemon"))], now=t)
            a.observe([SnapshotEvent(ChangeKind.ADDED, 3000, make_proc(i + 10, name="nodemon"))], now=t + 1)
        pattern = [p for p in a.patterns() if p.pattern_type == PatternType.AUTO_RESTART][0]
        assert pattern.confidence == 0.6
        assert pattern.affected == ["nodemon"]

    def test_restart_log_is_bounded(self):
        a = RestartAnalyzer(AnalyzerSettings(), MemoryHistory(), clock=FakeClock(), max_restarts=2)
        for i in range(5):
            t = T0 + i * 100
            a.observe([SnapshotEvent(ChangeKind.REMOVED, 3000 + i, make_proc(i, name="nodemon"))], now=t)
            a.observe([SnapshotEvent(ChangeKind.ADDED, 3000 + i, make_proc(i + 10, name="nodemon"))], now=t + 1)
        assert [r.port for r in a.restarts()] == [3003, 3004]


class TestPatterns:
    """Patterns mined from history."""

    def test_hot_reload(self):
        records = [kill("vite", 5173, T0 + i * 30) for i in range(3)]
        patterns = analyzer(records).patterns()
        assert [p.pattern_type for p in patterns] == [PatternType.HOT_RELOAD]
        assert patterns[0].confidence == 0.8

    def test_spread_out_kills_are_not_hot_reload(self):
        records = [kill("vite", 5173, T0 + i * 3600) for i in range(3)]
        assert analyzer(records).patterns() == []

    def test_time_pattern(self):
        records = [kill(f"p{i}", 3000 + i, T0 + i * 10) for i in range(5)]
        a = analyzer(records)
        tp = a.time_patterns()
        assert tp.total_kills == 5
        assert tp.hour_distribution[tp.peak_hour] == 5
        assert [p.pattern_type for p in a.patterns()] == [PatternType.TIME_BASED]

    def test_thresholds_are_tunable(self):
        records = [kill("vite", 5173, T0 + i * 30) for i in range(3)]
        assert analyzer(records, hot_reload_min_kills=4).patterns() == []


class TestSummaries:
    """Statistics and root-cause analysis."""

    def test_statistics(self):
        records = [kill("node", 3000, T0, group="Node.js", project="shop"),
                   kill("node", 3000, T0 + 60, group="Node.js", project="shop"),
                   kill("python", 8000, T0 + 120)]
        stats = analyzer(records).statistics()
        assert stats.total_kills == 3
        assert stats.most_killed_process == ("Node.js", 2)
        assert stats.most_killed_port == (3000, 2)
        assert stats.unique_projects == 1
        assert stats.average_kills_per_day == 3.0

    def test_statistics_empty(self):
        stats = analyzer().statistics()
        assert stats.total_kills == 0 and stats.most_killed_process is None

    def test_historic_conflicts(self):
        records = [kill("node", 3000, T0 + i * 10) for i in range(3)] + [kill("python", 3000, T0 + 500)]
        conflicts = analyzer(records).historic_conflicts()
        kinds = {(c.conflict_type, c.port) for c in conflicts}
        assert kinds == {(ConflictType.PORT_COLLISION, 3000), (ConflictType.AUTO_RESTART, 3000)}

    def test_root_cause_with_history(self):
        records = [kill("node", 3000, T0 + i * 10) for i in range(3)] + [kill("python", 3000, T0 + 500)]
        report = analyzer(records).root_cause()
        assert report.conflicts
        assert {r.category for r in report.recommendations} == {
            "ProcessManagement", "PortOptimization", "WorkflowImprovement"}
        assert "4 kill(s)" in report.summary

    def test_root_cause_without_history(self):
        report = analyzer().root_cause()
        assert report.conflicts == [] and report.recommendations == []
        assert report.summary == "No kill history available for analysis."
