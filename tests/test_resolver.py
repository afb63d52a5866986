"""Tests for metadata enrichment and its heuristics."""

import pytest

from portwatch.cache import MetadataCache
from portwatch.models import DOCKER_DAEMON, HOST_PROCESS, ScanSnapshot
from portwatch.resolver import (
    HINT_NAMESPACE,
    MetadataResolver,
    classify_group,
    container_from_cgroup,
    project_from_cmdline,
    project_from_path,
)

from conftest import T0, make_proc, make_snapshot


class TestHeuristics:
    """Group, project and container inference."""

    @pytest.mark.parametrize("name,cmdline,group", [
        ("node", "node server.js", "Node.js"),
        ("python3", "python3 manage.py runserver", "Python"),
        ("uvicorn", "uvicorn app:app", "Python"),
        ("dockerd", "dockerd", "Docker"),
        ("java", "java -jar app.jar", "Java"),
        ("postgres", "postgres -D /var/lib/pg", "Database"),
        ("nginx", "nginx: master process", "Web Server"),
        ("mystery", "mystery", None),
    ])
    def test_classify_group(self, name, cmdline, group):
        assert classify_group(name, cmdline) == group

    def test_project_from_path(self):
        assert project_from_path("/home/dev/code/shop") == "shop"
        assert project_from_path("/home/dev/my-api/src") == "my-api"
        assert project_from_path("/") is None
        assert project_from_path(None) is None

    def test_project_from_cmdline(self):
        assert project_from_cmdline("node /srv/shop/server.js") == "shop"
        assert project_from_cmdline("node --inspect") is None

    def test_container_from_cgroup(self):
        text = "0::/system.slice/docker-3f2a9c1b7d4e5f60718293a4b5c6d7e8f9a0b1c2d3e4f5a6b7c8d9e0f1a2b3c4.scope\n"
        assert container_from_cgroup(text) == "3f2a9c1b7d4e"
        assert container_from_cgroup("0::/user.slice/session-2.scope") is None


class TestMetadataResolver:
    """Enrichment through the cache."""

    def test_enriches_record(self, probe, clock):
        probe.cwds[10] = "/home/dev/shop"
        probe.exes[10] = "/usr/bin/node"
        probe.samples[10] = {"cmdline": "node server.js", "cpu_pct": 3.0, "mem_pct": 1.5, "ppid": 1}
        rec = MetadataResolver(MetadataCache(clock=clock), probe).resolve(make_proc(10))
        assert rec.cwd == "/home/dev/shop"
        assert rec.project == "shop"
        assert rec.group == "Node.js"
        assert rec.container == HOST_PROCESS
        assert (rec.cpu_pct, rec.mem_pct, rec.ppid) == (3.0, 1.5, 1)

    def test_unresolvable_fields_stay_empty(self, probe, clock):
        rec = MetadataResolver(MetadataCache(clock=clock), probe).resolve(make_proc(10, name="mystery"))
        assert rec.cwd is None and rec.exe is None and rec.cpu_pct is None
        assert rec.pid == 10

    def test_cwd_is_cached_per_incarnation(self, probe, clock):
        probe.cwds[1234] = "/home/dev/alpha"
        resolver = MetadataResolver(MetadataCache(clock=clock), probe)
        resolver.resolve(make_proc(1234, T0))
        resolver.resolve(make_proc(1234, T0))
        assert probe.cwd_calls == 1

    def test_restart_discards_old_cwd(self, probe, clock):
        probe.cwds[1234] = "/home/dev/alpha"
        resolver = MetadataResolver(MetadataCache(clock=clock), probe)
        assert resolver.resolve(make_proc(1234, T0)).project == "alpha"
        probe.cwds[1234] = "/home/dev/beta"
        rec = resolver.resolve(make_proc(1234, T0 + 30))
        assert rec.cwd == "/home/dev/beta"
        assert probe.cwd_calls == 2

    def test_project_hint_wins(self, probe, clock):
        cache = MetadataCache(clock=clock)
        cache.put_attr(HINT_NAMESPACE, "/home/dev/repo", "storefront")
        probe.cwds[10] = "/home/dev/repo/packages/web"
        assert MetadataResolver(cache, probe).resolve(make_proc(10)).project == "storefront"

    def test_docker_daemon_sentinel(self, probe, clock):
        probe.samples[7] = {"cmdline": "docker-proxy -host-port 5432 -container-ip 172.17.0.2"}
        rec = MetadataResolver(MetadataCache(clock=clock), probe).resolve(make_proc(7, name="docker-proxy"))
        assert rec.container == DOCKER_DAEMON
        assert rec.container_name == "172.17.0.2"

    def test_enrich_resolves_each_identity_once(self, probe, clock):
        probe.cwds[10] = "/srv/api"
        proc = make_proc(10)
        snap = make_snapshot([(3000, proc), (3001, proc)], sequence=7)
        out = MetadataResolver(MetadataCache(clock=clock), probe).enrich(snap)
        assert out.sequence == 7
        assert [b.process.project for b in out.bindings] == ["api", "api"]
        assert probe.open_calls == 1

    def test_handle_outlives_cache_ttl(self, probe, clock):
        resolver = MetadataResolver(MetadataCache(ttl=60, clock=clock), probe)
        resolver.resolve(make_proc(10))
        clock.advance(600)
        resolver.resolve(make_proc(10))
        assert probe.open_calls == 1

    def test_failed_scan_keeps_cache(self, probe, clock):
        probe.cwds[10] = "/srv/api"
        cache = MetadataCache(clock=clock)
        resolver = MetadataResolver(cache, probe)
        resolver.enrich(make_snapshot([(3000, make_proc(10))]))
        failed = ScanSnapshot(2, (), T0, complete=False)
        assert resolver.enrich(failed) is failed
        assert cache.get((10, T0), "cwd") == "/srv/api"
