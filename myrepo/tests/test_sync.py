"""Tests for the shared path synchronization"""

from myrepo.core.sync import rsync_command, sync_to_shared

from conftest import FakeRunner


class TestCommand:

    def test_trailing_slashes(self, tmp_path):
        cmd = rsync_command(tmp_path / 'repo', '/srv/shared/')
        assert cmd[:3] == ['rsync', '-a', '--delete']
        assert cmd[-2:] == [f'{tmp_path}/repo/', '/srv/shared/']
        assert '--dry-run' not in cmd

    def test_dry_run_and_elevate(self, tmp_path):
        cmd = rsync_command(tmp_path, '/srv/shared', dry_run=True, elevate_commands=True)
        assert cmd[:3] == ['sudo', '-n', 'rsync']
        assert '--dry-run' in cmd


class TestSync:

    def test_disabled(self, repo_root):
        runner = FakeRunner()
        result = sync_to_shared(repo_root, '', runner=runner)
        assert not result.performed and result.success
        assert runner.calls == []

    def test_partial_run_skipped(self, repo_root, tmp_path):
        runner = FakeRunner()
        result = sync_to_shared(repo_root, str(tmp_path), partial_run=True, runner=runner)
        assert result.skipped_reason == 'partial run'
        assert runner.calls == []

    def test_unavailable_target_soft_skip(self, repo_root, tmp_path):
        result = sync_to_shared(repo_root, str(tmp_path / 'nfs'), runner=FakeRunner())
        assert not result.performed
        assert result.success
        assert result.skipped_reason == 'shared path not available'

    def test_runs_rsync(self, repo_root, tmp_path):
        shared = tmp_path / 'shared'
        shared.mkdir()
        runner = FakeRunner()
        result = sync_to_shared(repo_root, str(shared), runner=runner)
        assert result.performed and result.success
        assert runner.calls[0][0] == 'rsync'

    def test_failure_reported(self, repo_root, tmp_path):
        shared = tmp_path / 'shared'
        shared.mkdir()
        result = sync_to_shared(repo_root, str(shared), runner=FakeRunner(fail={'rsync'}))
        assert result.performed
        assert not result.success
        assert result.error == 'Error: something broke'
