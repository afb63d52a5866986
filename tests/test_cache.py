"""Tests for MetadataCache invalidation rules."""

import math

from portwatch.cache import MISSING, MetadataCache

from conftest import T0, FakeClock


class TestIdentityEntries:
    """Entries keyed by (pid, start_time)."""

    def test_hit_and_miss(self, clock):
        cache = MetadataCache(ttl=60, clock=clock)
        assert cache.get((1, T0), "cwd") is MISSING
        cache.put((1, T0), "cwd", "/srv/app")
        assert cache.get((1, T0), "cwd") == "/srv/app"
        assert cache.stats()["hits"] == 1

    def test_restart_invalidates_despite_ttl(self, clock):
        cache = MetadataCache(ttl=3600, clock=clock)
        cache.put((1234, T0), "cwd", "/old")
        cache.put((1234, T0), "exe", "/usr/bin/node")
        assert cache.get((1234, T0 + 5), "cwd") is MISSING
        # the old incarnation is gone for good, not just shadowed
        assert cache.get((1234, T0), "exe") is MISSING
        assert cache.stats()["invalidations"] == 2

    def test_ttl_expiry_is_lazy(self, clock):
        cache = MetadataCache(ttl=10, clock=clock)
        cache.put((1, T0), "cwd", "/a")
        clock.advance(11)
        assert cache.stats()["entries"] == 1
        assert cache.get((1, T0), "cwd") is MISSING
        assert cache.stats()["entries"] == 0

    def test_other_pids_untouched(self, clock):
        cache = MetadataCache(clock=clock)
        cache.put((1, T0), "cwd", "/a")
        cache.put((2, T0), "cwd", "/b")
        cache.observe((1, T0 + 1))
        assert cache.get((2, T0), "cwd") == "/b"

    def test_reconcile_drops_gone_and_restarted(self, clock):
        cache = MetadataCache(clock=clock)
        cache.put((1, T0), "cwd", "/a")
        cache.put((2, T0), "cwd", "/b")
        cache.put((3, T0), "cwd", "/c")
        dropped = cache.reconcile({1: T0, 2: T0 + 9})
        assert dropped == 2
        assert cache.get((1, T0), "cwd") == "/a"

    def test_get_or_compute_skips_none(self, clock):
        cache = MetadataCache(clock=clock)
        calls = []

        def compute():
            calls.append(1)
            return None

        assert cache.get_or_compute((1, T0), "cwd", compute) is None
        assert cache.get_or_compute((1, T0), "cwd", compute) is None
        assert len(calls) == 2


class TestAttributeEntries:
    """Entries keyed by a resolved attribute."""

    def test_put_get_drop(self):
        cache = MetadataCache(ttl=60, clock=FakeClock())
        cache.put_attr("project_hint", "/srv/shop", "shop")
        assert cache.get_attr("project_hint", "/srv/shop") == "shop"
        cache.drop_attr("project_hint", "/srv/shop")
        assert cache.get_attr("project_hint", "/srv/shop") is MISSING

    def test_last_write_wins(self):
        cache = MetadataCache(clock=FakeClock())
        cache.put_attr("project_hint", "/srv/shop", "shop")
        cache.put_attr("project_hint", "/srv/shop", "storefront")
        assert cache.get_attr("project_hint", "/srv/shop") == "storefront"

    def test_infinite_ttl(self):
        clock = FakeClock()
        cache = MetadataCache(ttl=1, clock=clock)
        cache.put_attr("project_hint", "/x", "x", ttl=math.inf)
        clock.advance(10_000)
        assert cache.get_attr("project_hint", "/x") == "x"
