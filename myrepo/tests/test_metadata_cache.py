"""Tests for the upstream metadata cache"""

import json
import os
import threading
from datetime import datetime

import pytest

from myrepo.core.errors import PackageManagerError
from myrepo.core.metadata_cache import MetadataCache, effective_max_age, upstream_index

from conftest import sig


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class Fetcher:
    """Counts upstream queries; sources in `fail` raise."""

    def __init__(self, data, fail=()):
        self.data = data
        self.fail = set(fail)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, source):
        with self._lock:
            self.calls.append(source)
        if source in self.fail:
            raise PackageManagerError(f"repoquery for {source} failed")
        return set(self.data.get(source, ()))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fetcher():
    return Fetcher({
        'ol9_baseos_latest': {sig('bash-5.1.8-9.el9.x86_64'), sig('glibc-2.34-60.el9.x86_64')},
        'ol9_appstream': {sig('perl-Carp-1.50-460.el9.noarch')},
    })


class TestFreshness:

    def test_first_lookup_queries_and_persists(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, max_age=100, clock=clock)
        result = cache.get_index('ol9_baseos_latest')
        assert not result.from_cache
        assert len(result.packages) == 2
        data = json.loads(cache.cache_path('ol9_baseos_latest').read_text())
        assert data['source'] == 'ol9_baseos_latest'
        assert data['timestamp'] == clock.now
        assert 'bash-0:5.1.8-9.el9.x86_64' in data['packages']

    def test_fresh_entry_not_requeried(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, max_age=100, clock=clock)
        cache.get_index('ol9_baseos_latest')
        clock.now += 100
        result = cache.get_index('ol9_baseos_latest')
        assert result.from_cache
        assert fetcher.calls == ['ol9_baseos_latest']

    def test_stale_entry_requeried(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, max_age=100, clock=clock)
        cache.get_index('ol9_baseos_latest')
        clock.now += 101
        result = cache.get_index('ol9_baseos_latest')
        assert not result.from_cache
        assert fetcher.calls == ['ol9_baseos_latest', 'ol9_baseos_latest']

    def test_full_rebuild_always_requeries(self, tmp_path, fetcher, clock):
        MetadataCache(tmp_path, fetcher, clock=clock).get_index('ol9_appstream')
        cache = MetadataCache(tmp_path, fetcher, full_rebuild=True, clock=clock)
        cache.get_index('ol9_appstream')
        assert fetcher.calls == ['ol9_appstream', 'ol9_appstream']

    def test_max_age_override(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, max_age=1000, clock=clock)
        cache.get_index('ol9_appstream')
        clock.now += 10
        assert not cache.get_index('ol9_appstream', max_age=5).from_cache


class TestFailures:

    def test_failure_uses_stale_cache(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, max_age=10, clock=clock)
        cache.get_index('ol9_appstream')
        clock.now += 1000
        fetcher.fail.add('ol9_appstream')
        result = cache.get_index('ol9_appstream')
        assert result.stale
        assert result.from_cache
        assert result.packages == {sig('perl-Carp-1.50-460.el9.noarch')}

    def test_failure_without_cache_is_soft(self, tmp_path, clock):
        fetcher = Fetcher({}, fail={'broken'})
        result = MetadataCache(tmp_path, fetcher, clock=clock).get_index('broken')
        assert result.failed
        assert result.packages == set()

    def test_corrupt_file_ignored(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, clock=clock)
        cache.cache_path('ol9_appstream').write_text('{not json')
        assert cache.load('ol9_appstream') is None
        assert not cache.get_index('ol9_appstream').from_cache

    def test_no_persist(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path / 'cache', fetcher, clock=clock, persist=False)
        cache.get_index('ol9_appstream')
        assert not (tmp_path / 'cache').exists()


class TestBuildIndex:

    def test_builds_all_sources_in_order(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, parallel=4, clock=clock)
        results = cache.build_index(['ol9_appstream', 'ol9_baseos_latest', 'ol9_appstream'])
        assert list(results) == ['ol9_appstream', 'ol9_baseos_latest']
        index = upstream_index(results)
        assert len(index['ol9_baseos_latest']) == 2

    def test_cancel_stops_new_queries(self, tmp_path, fetcher, clock):
        cancel = threading.Event()
        cancel.set()
        cache = MetadataCache(tmp_path, fetcher, clock=clock)
        assert cache.build_index(['ol9_appstream'], cancel=cancel) == {}
        assert fetcher.calls == []

    def test_no_temp_files_left(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, parallel=2, clock=clock)
        cache.build_index(['ol9_appstream', 'ol9_baseos_latest'])
        assert not list(tmp_path.glob('*.tmp'))


class TestCleanup:

    def test_removes_old_untracked_files(self, tmp_path, fetcher, clock):
        cache = MetadataCache(tmp_path, fetcher, clock=clock)
        cache.get_index('ol9_appstream')
        cache.get_index('ol9_baseos_latest')
        old = clock.now - 10 * 86400
        os.utime(cache.cache_path('ol9_appstream'), (old, old))
        os.utime(cache.cache_path('ol9_baseos_latest'), (old, old))

        removed = cache.cleanup(keep_sources=['ol9_baseos_latest'], max_days=7)
        assert [p.name for p in removed] == ['ol9_appstream.json']
        assert cache.cache_path('ol9_baseos_latest').exists()


class TestNightWindow:

    def test_day(self):
        assert effective_max_age(14400, 3600, now=datetime(2024, 1, 1, 12)) == 14400

    def test_night_wraps_midnight(self):
        assert effective_max_age(14400, 3600, now=datetime(2024, 1, 1, 23)) == 3600
        assert effective_max_age(14400, 3600, now=datetime(2024, 1, 1, 5)) == 3600

    def test_night_disabled(self):
        assert effective_max_age(14400, 0, now=datetime(2024, 1, 1, 23)) == 14400
