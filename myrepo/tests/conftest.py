"""Shared fixtures: fake dnf front-end, fake command runner, repo tree helpers"""

from pathlib import Path

import pytest

from myrepo.core.command import CommandResult
from myrepo.core.config import MyrepoConfig
from myrepo.core.errors import PackageManagerError
from myrepo.core.inventory import InstalledPackage
from myrepo.core.rpm import parse_nevra


def sig(text):
    """Signature from 'name-[E:]V-R.arch'."""
    result = parse_nevra(text)
    assert result is not None, text
    return result


def installed(text, repo=''):
    return InstalledPackage(sig(text), repo)


def add_rpm(root, repo, filename, content=b'rpm'):
    """Create <root>/<repo>/getPackage/<filename>."""
    pkg_dir = Path(root) / repo / 'getPackage'
    pkg_dir.mkdir(parents=True, exist_ok=True)
    path = pkg_dir / filename
    path.write_bytes(content)
    return path


class FakePackageManager:
    """Stands in for PackageManager.

    Args:
        installed: InstalledPackage records
        repos: repo -> iterable of signatures it offers
        fail_sources: repos whose repoquery fails
        missing: signatures dnf cannot find
        max_batch: larger download requests fail as a whole
        error_text: stderr of a rejected oversized batch
        on_download: called with the signatures before each download
    """

    def __init__(self, installed=(), repos=None, fail_sources=(), missing=(),
                 max_batch=None, error_text='Error: Cannot download, all mirrors were tried',
                 on_download=None):
        self.installed = list(installed)
        self.repos = {name: set(sigs) for name, sigs in (repos or {}).items()}
        self.fail_sources = set(fail_sources)
        self.missing = set(missing)
        self.max_batch = max_batch
        self.error_text = error_text
        self.on_download = on_download
        self.installed_error = None
        self.queries = []
        self.downloads = []

    def list_installed(self):
        if self.installed_error:
            raise PackageManagerError(self.installed_error, ['dnf'], 1, 'fatal')
        return list(self.installed)

    def list_enabled_repos(self):
        return sorted(self.repos)

    def list_available(self, repo, timeout=None):
        self.queries.append(repo)
        if repo in self.fail_sources:
            raise PackageManagerError(f"repoquery for {repo} failed", ['dnf'], 1, 'Curl error')
        return set(self.repos.get(repo, ()))

    def download(self, signatures, destdir, repo='', timeout=None):
        signatures = list(signatures)
        self.downloads.append((repo, signatures))
        if self.on_download:
            self.on_download(signatures)
        cmd = ['dnf', 'download', f'--destdir={destdir}']
        if self.max_batch is not None and len(signatures) > self.max_batch:
            return CommandResult(cmd, 1, '', self.error_text)

        not_found = []
        for s in signatures:
            if s in self.missing:
                not_found.append(s)
                continue
            (Path(destdir) / s.filename).write_bytes(b'downloaded')
        if not_found:
            return CommandResult(cmd, 1, '', f"No match for argument: {not_found[0].nevra}")
        return CommandResult(cmd, 0)


class FakeRunner:
    """Records external commands (createrepo, rsync) instead of running them."""

    def __init__(self, fail=()):
        self.calls = []
        self.fail = set(fail)

    def __call__(self, cmd, timeout=None, env=None):
        self.calls.append(list(cmd))
        if any(part in self.fail for part in cmd):
            return CommandResult(list(cmd), 1, '', 'Error: something broke')
        return CommandResult(list(cmd), 0)


@pytest.fixture
def repo_root(tmp_path):
    root = tmp_path / 'repo'
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path, repo_root):
    """A config pointing at temporary directories, with no manual repos and no sync."""
    return MyrepoConfig(
        local_repo_path=repo_root,
        shared_repo_path='',
        manual_repos=[],
        cache_dir=tmp_path / 'cache',
        user_mode=True,
        elevate_commands=False,
    )
