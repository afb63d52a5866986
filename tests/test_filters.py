"""Tests for the SmartFilter."""

from portwatch.config import MonitorConfig
from portwatch.filters import SmartFilter
from portwatch.models import PortBinding

from conftest import make_proc, make_snapshot


def smart_filter(**cfg) -> SmartFilter:
    return SmartFilter.from_config(MonitorConfig.from_config(cfg))


class TestSmartFilter:
    """Ignore and watch rules."""

    def test_ignored_process_never_appears(self):
        f = smart_filter(ports="3000,8080", ignore_processes=["Chrome"])
        snap = make_snapshot([
            (3000, make_proc(1, name="Google Chrome Helper")),
            (8080, make_proc(2, name="node")),
        ])
        assert [b.process.name for b in f.apply(snap).bindings] == ["node"]

    def test_name_match_is_case_insensitive_substring(self):
        f = smart_filter(ports="all", ignore_processes=["chrome"])
        assert f.ignore_reason(PortBinding(3000, make_proc(1, name="CHROME"))) is not None
        assert f.ignore_reason(PortBinding(3000, make_proc(1, name="chromium"))) is None

    def test_ignore_beats_watch(self):
        f = smart_filter(ports="3000", ignore_ports=[3000])
        assert not f.accepts(PortBinding(3000, make_proc(1)))

    def test_unwatched_port_dropped(self):
        f = smart_filter(ports="3000")
        assert not f.accepts(PortBinding(4000, make_proc(1)))
        assert smart_filter(ports="all").accepts(PortBinding(4000, make_proc(1)))

    def test_group_matching_is_exact(self):
        f = smart_filter(ports="all", ignore_groups=["Python"])
        assert not f.accepts(PortBinding(8000, make_proc(1, name="python", group="Python")))
        assert f.accepts(PortBinding(8000, make_proc(1, name="python", group="python")))

    def test_ignore_patterns_match_name_or_cmdline(self):
        f = smart_filter(ports="all", ignore_patterns=["*webpack*", "redis-*"])
        assert not f.accepts(PortBinding(3000, make_proc(1, cmdline="node node_modules/.bin/webpack serve")))
        assert not f.accepts(PortBinding(6379, make_proc(2, name="redis-server")))
        assert f.accepts(PortBinding(3000, make_proc(3, cmdline="node server.js")))

    def test_only_groups(self):
        f = smart_filter(ports="all", only_groups=["Node.js"])
        assert f.accepts(PortBinding(3000, make_proc(1, group="Node.js")))
        assert not f.accepts(PortBinding(8000, make_proc(2, name="python", group="Python")))
        assert not f.accepts(PortBinding(9000, make_proc(3, name="mystery")))

    def test_apply_keeps_sequence_and_is_pure(self):
        f = smart_filter(ports="all", ignore_ports=[9000])
        snap = make_snapshot([(3000, make_proc(1)), (9000, make_proc(2))], sequence=42)
        first, second = f.apply(snap), f.apply(snap)
        assert first == second
        assert first.sequence == 42
        assert len(snap.bindings) == 2

    def test_stats(self):
        f = smart_filter(ignore_ports=[1, 2], ignore_processes=["x"])
        assert f.stats().is_active()
        assert f.stats().describe() == "filtering: 2 ports, 1 processes"
        assert not smart_filter().stats().is_active()
