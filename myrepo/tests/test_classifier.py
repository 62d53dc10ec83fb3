"""Tests for package classification"""

import pytest

from myrepo.core.classifier import (
    ReverseLookup, Status, apply_repo_filter, classify, limit_changed,
    select_candidates, source_order,
)
from myrepo.core.mirror import LocalMirrorState

from conftest import installed, sig


@pytest.fixture
def state(repo_root):
    return LocalMirrorState(repo_root)


class TestReverseLookup:

    def test_source_order(self):
        assert source_order(['c', 'a', 'b'], priority=['b']) == ['b', 'a', 'c']
        assert source_order(['c', 'a'], priority=['zzz']) == ['a', 'c']

    def test_prefers_recorded_repo(self):
        s = sig('a-1.0-1.x86_64')
        lookup = ReverseLookup({'alpha': {s}, 'beta': {s}})
        assert lookup.resolve(s, preferred='beta') == 'beta'

    def test_alphabetical_without_preference(self):
        s = sig('a-1.0-1.x86_64')
        lookup = ReverseLookup({'beta': {s}, 'alpha': {s}})
        assert lookup.resolve(s) == 'alpha'
        assert lookup.resolve(s, preferred='gamma') == 'alpha'

    def test_priority_beats_alphabetical(self):
        s = sig('a-1.0-1.x86_64')
        lookup = ReverseLookup({'beta': {s}, 'alpha': {s}}, priority=['beta'])
        assert lookup.resolve(s) == 'beta'

    def test_unknown_signature(self):
        assert ReverseLookup({}).resolve(sig('a-1.0-1.x86_64')) is None


class TestClassify:

    def test_exists(self, state):
        a = sig('A-1.0-1.x86_64')
        state.add('R', a)
        result = classify([installed('A-1.0-1.x86_64', 'R')], {'R': {a}}, state)
        assert [i.signature for i in result.packages(Status.EXISTS, 'R')] == [a]
        assert result.changed() == []

    def test_update(self, state):
        old = sig('A-1.0-1.x86_64')
        state.add('R', old)
        result = classify([installed('A-2.0-1.x86_64', 'R')], {'R': {sig('A-2.0-1.x86_64')}}, state)
        [item] = result.packages(Status.UPDATE, 'R')
        assert item.replaces == [old]
        assert not item.is_downgrade

    def test_downgrade_flagged(self, state):
        state.add('R', sig('A-3.0-1.x86_64'))
        result = classify([installed('A-2.0-1.x86_64', 'R')], {'R': {sig('A-2.0-1.x86_64')}}, state)
        assert result.packages(Status.UPDATE, 'R')[0].is_downgrade

    def test_new(self, state):
        state.add('R', sig('A-1.0-1.noarch'))
        result = classify([installed('A-1.0-1.x86_64', 'R')], {'R': {sig('A-1.0-1.x86_64')}}, state)
        assert len(result.packages(Status.NEW, 'R')) == 1

    def test_resolved_through_index_when_record_has_no_repo(self, state):
        result = classify([installed('A-1.0-1.x86_64', '')], {'R': {sig('A-1.0-1.x86_64')}}, state)
        assert len(result.packages(Status.NEW, 'R')) == 1

    def test_record_repo_used_when_index_lacks_package(self, state):
        result = classify([installed('A-1.0-1.x86_64', 'R')], {'R': set()}, state)
        assert len(result.packages(Status.NEW, 'R')) == 1

    def test_unknown_when_source_disabled(self, state):
        result = classify([installed('A-1.0-1.x86_64', 'gone')], {'R': set()}, state)
        [item] = result.unknown
        assert item.status == Status.UNKNOWN
        assert "gone" in item.reason
        assert result.by_repo == {}

    def test_unknown_when_source_excluded(self, state):
        a = sig('A-1.0-1.x86_64')
        result = classify([installed('A-1.0-1.x86_64', 'X')], {'X': {a}}, state, excluded_repos=['X'])
        assert result.unknown[0].reason == "source repository 'X' is excluded"

    def test_unknown_without_any_source(self, state):
        result = classify([installed('A-1.0-1.x86_64')], {'R': set()}, state)
        assert result.unknown[0].reason == 'not found in any enabled repository'

    def test_manual_repo_by_local_file(self, state):
        state.add('my_builds', sig('tool-0.9-1.x86_64'))
        result = classify([installed('tool-1.0-1.x86_64')], {'R': set()}, state,
                          manual_repos=['my_builds'])
        [item] = result.packages(Status.UPDATE, 'my_builds')
        assert item.manual

    def test_manual_repo_by_recorded_repo(self, state):
        result = classify([installed('tool-1.0-1.x86_64', 'my_builds')], {'R': set()}, state,
                          manual_repos=['my_builds'])
        assert result.packages(Status.NEW, 'my_builds')[0].manual

    def test_local_rpm_source(self, state, tmp_path):
        rpms = tmp_path / 'rpmbuild' / 'RPMS'
        (rpms / 'x86_64').mkdir(parents=True)
        (rpms / 'x86_64' / 'tool-1.0-1.x86_64.rpm').write_bytes(b'rpm')
        result = classify([installed('tool-1.0-1.x86_64')], {'R': set()}, state,
                          manual_repos=['my_builds'], local_rpm_sources=[rpms])
        [item] = result.packages(Status.NEW, 'my_builds')
        assert item.local_source == rpms / 'x86_64' / 'tool-1.0-1.x86_64.rpm'

    def test_total_and_disjoint(self, state):
        state.add('R', sig('a-1.0-1.x86_64'))
        state.add('R', sig('b-1.0-1.x86_64'))
        index = {'R': {sig('a-1.0-1.x86_64'), sig('b-2.0-1.x86_64'), sig('c-1.0-1.x86_64')}}
        records = [installed('a-1.0-1.x86_64', 'R'), installed('b-2.0-1.x86_64', 'R'),
                   installed('c-1.0-1.x86_64', 'R'), installed('d-1.0-1.x86_64', 'nowhere')]
        result = classify(records, index, state)

        items = result.all_items()
        assert len(items) == len(records)
        assert {i.signature for i in items} == {r.signature for r in records}
        assert [i.status for i in items] == [Status.NEW, Status.UPDATE, Status.EXISTS, Status.UNKNOWN]

    def test_idempotent(self, state):
        state.add('R', sig('a-1.0-1.x86_64'))
        index = {'R': {sig('a-2.0-1.x86_64'), sig('b-1.0-1.x86_64')}, 'S': {sig('b-1.0-1.x86_64')}}
        records = [installed('b-1.0-1.x86_64'), installed('a-2.0-1.x86_64', 'R')]
        first = classify(records, index, state)
        second = classify(list(reversed(records)), index, state)
        assert first == second


class TestFilters:

    def test_name_filter_and_max_packages(self):
        records = [installed(f'{name}-1.0-1.x86_64') for name in ('zlib', 'kernel-core', 'kernel', 'bash')]
        selected, filtered = select_candidates(records, name_filter='^kernel', max_packages=1)
        assert [r.name for r in selected] == ['kernel']
        assert filtered == 3

    def test_max_packages_is_deterministic(self):
        records = [installed(f'{name}-1.0-1.x86_64') for name in ('c', 'a', 'b')]
        selected, _ = select_candidates(records, max_packages=2)
        assert [r.name for r in selected] == ['a', 'b']

    def test_repo_filter(self, state):
        index = {'R': {sig('a-1.0-1.x86_64')}, 'S': {sig('b-1.0-1.x86_64')}}
        records = [installed('a-1.0-1.x86_64'), installed('b-1.0-1.x86_64')]
        result = apply_repo_filter(classify(records, index, state), ['S'])
        assert result.repos() == ['S']
        assert result.filtered_out == 1

    def test_max_changed_packages(self, state):
        index = {'R': {sig(f'{n}-1.0-1.x86_64') for n in 'dcba'}}
        records = [installed(f'{n}-1.0-1.x86_64', 'R') for n in 'dcba']
        result = limit_changed(classify(records, index, state), 2)
        assert [i.signature.name for i in result.changed()] == ['a', 'b']
        assert [i.signature.name for i in result.deferred] == ['c', 'd']
