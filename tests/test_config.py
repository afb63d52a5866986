"""Tests for configuration loading, presets and port parsing."""

import pytest

from portwatch.config import (
    DEFAULT_CONFIG,
    PRESETS,
    MonitorConfig,
    apply_preset,
    load_config,
    parse_ports,
)
from portwatch.models import ConfigError


class TestParsePorts:
    """Watch-list parsing."""

    def test_comma_list(self):
        assert parse_ports("3000, 8080,9000") == frozenset({3000, 8080, 9000})

    def test_range(self):
        assert parse_ports("3000-3003") == frozenset({3000, 3001, 3002, 3003})

    def test_all_means_every_port(self):
        assert parse_ports("all") is None
        assert parse_ports(" ALL ") is None

    def test_list_of_ints(self):
        assert parse_ports([22, "80", "8000-8001"]) == frozenset({22, 80, 8000, 8001})

    @pytest.mark.parametrize("bad", ["0", "70000", "abc", "3005-3000"])
    def test_invalid_values_raise(self, bad):
        with pytest.raises(ConfigError):
            parse_ports(bad)


class TestLoadConfig:
    """YAML loading merged over defaults."""

    def test_defaults_without_file(self):
        cfg = load_config(None)
        assert cfg == DEFAULT_CONFIG
        assert cfg is not DEFAULT_CONFIG

    def test_nested_merge(self, tmp_path):
        path = tmp_path / "portwatch.yml"
        path.write_text("ports: '4000'\nkill:\n  grace_period: 1.5\nignore_processes: [Chrome]\n")
        cfg = load_config(str(path))
        assert cfg["ports"] == "4000"
        assert cfg["kill"]["grace_period"] == 1.5
        assert cfg["kill"]["force_period"] == DEFAULT_CONFIG["kill"]["force_period"]
        assert cfg["ignore_processes"] == ["Chrome"]

    def test_invalid_yaml_falls_back(self, tmp_path):
        path = tmp_path / "broken.yml"
        path.write_text("ports: [unclosed\n")
        assert load_config(str(path)) == DEFAULT_CONFIG

    def test_missing_file_falls_back(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yml")) == DEFAULT_CONFIG

    def test_non_mapping_falls_back(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- 1\n- 2\n")
        assert load_config(str(path)) == DEFAULT_CONFIG


class TestPresets:
    """Named presets."""

    def test_apply_preset_overrides_ports_and_ignores(self):
        cfg = apply_preset(load_config(None), "dev")
        assert cfg["ports"] == PRESETS["dev"]["ports"]
        assert "Chrome" in cfg["ignore_processes"]
        assert "description" not in cfg

    def test_unknown_preset(self):
        with pytest.raises(ConfigError):
            apply_preset(load_config(None), "nope")

    def test_every_preset_parses(self):
        for name in PRESETS:
            config = MonitorConfig.from_config(apply_preset(load_config(None), name))
            assert config.watch_ports


class TestMonitorConfig:
    """Typed configuration."""

    def test_from_defaults(self):
        config = MonitorConfig.from_config({})
        assert 3000 in config.watch_ports
        assert config.kill.grace_period == 0.5
        assert config.kill.auto_retry is True
        assert config.guard.auto_resolve is False
        assert config.guard.reservation_silent_cycles == 3
        assert config.auditor.suspicious_ports >= {4444, 3333}

    def test_watch_all(self):
        assert MonitorConfig.from_config({"ports": "all"}).watch_all

    def test_flags_reach_guard(self):
        config = MonitorConfig.from_config({"auto_resolve": True, "resolve_parent_child": True})
        assert config.guard.auto_resolve
        assert config.guard.resolve_parent_child

    def test_os_call_timeout_shared_with_kill(self):
        assert MonitorConfig.from_config({"os_call_timeout": 0.7}).kill.os_call_timeout == 0.7

    def test_analyzer_thresholds_are_tunable(self):
        config = MonitorConfig.from_config({"analyzer": {"hot_reload_confidence": 0.5, "min_kills": 4}})
        assert config.analyzer.hot_reload_confidence == 0.5
        assert config.analyzer.min_kills == 4

    def test_bad_poll_interval(self):
        with pytest.raises(ConfigError):
            MonitorConfig.from_config({"poll_interval": 0})

    def test_approved_hashes_lowercased(self):
        config = MonitorConfig.from_config({"auditor": {"approved": {"WebServer": ["ABCDEF"]}}})
        assert config.auditor.approved == {"WebServer": ["abcdef"]}
