"""End-to-end tests of a reconciliation run against fake dnf and fake commands"""

import threading

import pytest

from myrepo.core.errors import MyrepoError, PackageManagerError, RepositoryError
from myrepo.core.operations import SyncOperations
from myrepo.core.report import EXIT_INTERRUPTED, EXIT_OK, EXIT_PARTIAL

from conftest import FakePackageManager, FakeRunner, add_rpm, installed, sig


def make_ops(config, pm, runner=None, **kwargs):
    return SyncOperations(config, package_manager=pm, runner=runner or FakeRunner(),
                          read_headers=False, sleep=lambda s: None,
                          createrepo='createrepo_c', **kwargs)


def rpm_files(root, repo):
    return sorted(p.name for p in (root / repo / 'getPackage').glob('*.rpm'))


@pytest.fixture
def golden(repo_root):
    """A golden copy with one update, one unchanged, one unknown package and a stale local file."""
    add_rpm(repo_root, 'R', 'A-1.0-1.x86_64.rpm')
    add_rpm(repo_root, 'R', 'B-1.0-1.x86_64.rpm')
    add_rpm(repo_root, 'R', 'Z-1.0-1.x86_64.rpm')
    return FakePackageManager(
        installed=[installed('A-2.0-1.x86_64', 'R'), installed('B-1.0-1.x86_64', 'R'),
                   installed('C-1.0-1.x86_64', 'gone')],
        repos={'R': {sig('A-2.0-1.x86_64'), sig('B-1.0-1.x86_64')}},
    )


class TestFullRun:

    def test_reconciles(self, config, repo_root, golden):
        runner = FakeRunner()
        report = make_ops(config, golden, runner).run()

        assert rpm_files(repo_root, 'R') == ['A-2.0-1.x86_64.rpm', 'B-1.0-1.x86_64.rpm']
        r = report.repos['R']
        assert (r.new, r.update, r.exists, r.removed, r.failed) == (0, 1, 1, 2, 0)
        assert [u.signature for u in report.unknown] == [sig('C-1.0-1.x86_64')]
        assert report.changed_repos == ['R']
        assert runner.calls == [['createrepo_c', '--update', str(repo_root / 'R')]]
        assert report.sync.skipped_reason == 'no shared path configured'
        assert report.exit_status() == EXIT_PARTIAL
        assert report.exit_status(continue_on_error=True) == EXIT_OK

    def test_second_run_is_quiet(self, config, repo_root, golden):
        make_ops(config, golden).run()
        runner = FakeRunner()
        report = make_ops(config, golden, runner).run()

        assert report.totals().new == 0 and report.totals().update == 0
        assert report.totals().removed == 0
        assert report.changed_repos == []
        assert runner.calls == []

    def test_syncs_to_shared(self, config, tmp_path, golden):
        shared = tmp_path / 'shared'
        shared.mkdir()
        config.shared_repo_path = str(shared)
        runner = FakeRunner()
        report = make_ops(config, golden, runner).run()

        assert report.sync.performed and report.sync.success
        assert runner.calls[-1][0] == 'rsync'

    def test_metadata_failure_is_reported(self, config, repo_root, golden):
        runner = FakeRunner(fail={str(repo_root / 'R')})
        report = make_ops(config, golden, runner).run()
        assert [m.repo for m in report.metadata_failures] == ['R']
        assert report.exit_status(continue_on_error=True) == EXIT_PARTIAL

    def test_new_packages_with_adaptive_batches(self, config, repo_root):
        sigs = [sig(f'p{i}-1.0-1.x86_64') for i in range(5)]
        pm = FakePackageManager(installed=[installed(str(s), 'R') for s in sigs],
                                repos={'R': set(sigs)}, max_batch=2)
        config.batch_size = 8
        config.max_retries = 0
        report = make_ops(config, pm).run()

        assert report.repos['R'].new == 5
        assert len(rpm_files(repo_root, 'R')) == 5
        assert report.exit_status() == EXIT_OK

    def test_failed_update_keeps_old_version(self, config, repo_root, golden):
        golden.missing = {sig('A-2.0-1.x86_64')}
        report = make_ops(config, golden).run()

        assert 'A-1.0-1.x86_64.rpm' in rpm_files(repo_root, 'R')
        assert [f.reason for f in report.failures] == ['not-found']
        assert report.exit_status(continue_on_error=True) == EXIT_PARTIAL

    def test_installed_older_version_kept(self, config, repo_root):
        add_rpm(repo_root, 'R', 'kernel-5.14-1.x86_64.rpm')
        kernels = [sig('kernel-5.14-1.x86_64'), sig('kernel-5.14-2.x86_64')]
        pm = FakePackageManager(installed=[installed(str(k), 'R') for k in kernels],
                                repos={'R': set(kernels)})

        for _ in range(2):
            report = make_ops(config, pm).run()
            assert rpm_files(repo_root, 'R') == ['kernel-5.14-1.x86_64.rpm', 'kernel-5.14-2.x86_64.rpm']
            assert report.totals().removed == 0
            assert report.failures == []

    def test_force_redownload(self, config, repo_root, golden):
        config.force_redownload = True
        make_ops(config, golden).run()
        assert (repo_root / 'R' / 'getPackage' / 'B-1.0-1.x86_64.rpm').read_bytes() == b'downloaded'

    def test_excluded_repo_removed(self, config, repo_root, golden):
        add_rpm(repo_root, 'ol9_debug', 'dbg-1.0-1.x86_64.rpm')
        config.excluded_repos = ['ol9_debug']
        runner = FakeRunner()
        report = make_ops(config, golden, runner).run()

        assert not (repo_root / 'ol9_debug').exists()
        assert report.excluded_removed == ['ol9_debug']
        assert all(str(repo_root / 'ol9_debug') not in call for call in runner.calls)


class TestDryRun:

    def test_no_side_effects(self, config, repo_root, golden, tmp_path):
        config.dry_run = True
        runner = FakeRunner()
        report = make_ops(config, golden, runner).run()

        assert rpm_files(repo_root, 'R') == ['A-1.0-1.x86_64.rpm', 'B-1.0-1.x86_64.rpm', 'Z-1.0-1.x86_64.rpm']
        assert golden.downloads == []
        assert runner.calls == []
        assert not (tmp_path / 'cache').exists()
        assert not (repo_root / 'R' / 'repodata').exists()

        assert report.dry_run
        r = report.repos['R']
        assert (r.update, r.removed) == (1, 2)
        assert [m.dry_run for m in report.metadata] == [True]


class TestPartialRuns:

    def test_limits_skip_cleanup_and_sync(self, config, repo_root, golden, tmp_path):
        shared = tmp_path / 'shared'
        shared.mkdir()
        config.shared_repo_path = str(shared)
        config.name_filter = '^A'
        report = make_ops(config, golden).run()

        assert 'Z-1.0-1.x86_64.rpm' in rpm_files(repo_root, 'R')
        assert report.cleanup_skipped == 'partial run'
        assert report.sync.skipped_reason == 'partial run'
        assert report.filtered_out == 2

    def test_cleanup_disabled(self, config, repo_root, golden):
        config.cleanup_uninstalled = False
        report = make_ops(config, golden).run()
        assert 'Z-1.0-1.x86_64.rpm' in rpm_files(repo_root, 'R')
        assert report.cleanup_skipped == 'disabled'

    def test_interrupted_before_downloads(self, config, repo_root, golden):
        cancel = threading.Event()
        cancel.set()
        report = make_ops(config, golden, cancel=cancel).run()

        assert golden.downloads == []
        assert 'Z-1.0-1.x86_64.rpm' in rpm_files(repo_root, 'R')
        assert report.sync is None
        assert report.exit_status() == EXIT_INTERRUPTED

    def test_interrupted_during_downloads(self, config, repo_root, golden):
        cancel = threading.Event()
        golden.installed += [installed('D-1.0-1.x86_64', 'R'), installed('E-1.0-1.x86_64', 'R')]
        golden.repos['R'] |= {sig('D-1.0-1.x86_64'), sig('E-1.0-1.x86_64')}
        golden.on_download = lambda sigs: cancel.set()
        config.batch_size = 1
        config.parallel = 1
        runner = FakeRunner()
        report = make_ops(config, golden, runner, cancel=cancel).run()

        assert rpm_files(repo_root, 'R') == ['A-2.0-1.x86_64.rpm', 'B-1.0-1.x86_64.rpm', 'Z-1.0-1.x86_64.rpm']
        assert len(golden.downloads) == 1
        assert report.cancelled_downloads == 2
        assert report.failures == []
        assert report.cleanup_skipped == 'interrupted'
        assert runner.calls == [['createrepo_c', '--update', str(repo_root / 'R')]]
        assert report.sync is None
        assert report.exit_status() == EXIT_INTERRUPTED


class TestManualRepos:

    def test_manual_packages_not_downloaded_nor_cleaned(self, config, repo_root):
        add_rpm(repo_root, 'my_builds', 'old-1.0-1.x86_64.rpm')
        pm = FakePackageManager(installed=[installed('tool-1.0-1.x86_64', 'my_builds')],
                                repos={'R': set(), 'my_builds': set()})
        config.manual_repos = ['my_builds']
        report = make_ops(config, pm).run()

        assert pm.downloads == []
        assert 'my_builds' not in pm.queries
        assert report.repos['my_builds'].skipped == 1
        assert report.skipped_manual == [sig('tool-1.0-1.x86_64')]
        assert rpm_files(repo_root, 'my_builds') == ['old-1.0-1.x86_64.rpm']


class TestFatal:

    def test_missing_root(self, config, tmp_path, golden):
        config.local_repo_path = tmp_path / 'missing'
        with pytest.raises(RepositoryError):
            make_ops(config, golden).run()

    def test_no_enabled_sources(self, config):
        with pytest.raises(MyrepoError):
            make_ops(config, FakePackageManager()).run()

    def test_installed_query_failure(self, config, golden):
        golden.installed_error = 'rpm database locked'
        with pytest.raises(PackageManagerError):
            make_ops(config, golden).run()
        assert golden.downloads == []

    def test_source_failure_is_soft(self, config, repo_root, golden):
        golden.repos['S'] = set()
        golden.fail_sources = {'S'}
        report = make_ops(config, golden).run()
        assert report.failed_sources == ['S']
        assert report.repos['R'].update == 1


class TestSyncOnly:

    def test_regenerates_all_and_syncs(self, config, repo_root, tmp_path):
        add_rpm(repo_root, 'A', 'a-1.0-1.x86_64.rpm')
        add_rpm(repo_root, 'B', 'b-1.0-1.x86_64.rpm')
        shared = tmp_path / 'shared'
        shared.mkdir()
        config.shared_repo_path = str(shared)
        config.sync_only = True
        pm = FakePackageManager()
        runner = FakeRunner()
        report = make_ops(config, pm, runner).run()

        assert [call[0] for call in runner.calls] == ['createrepo_c', 'createrepo_c', 'rsync']
        assert pm.queries == []
        assert report.exit_status() == EXIT_OK
