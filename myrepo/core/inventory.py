"""
Inventory of the golden-copy host.

Wraps the dnf command line for the four queries the sync engine needs:
installed packages, enabled repositories, available packages of one
repository, and downloading packages into a directory.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .command import CommandResult, elevate, run_command
from .errors import PackageManagerError
from .rpm import Signature

logger = logging.getLogger(__name__)

# Query format shared by installed and available queries
QUERY_FORMAT = '%{name}|%{epoch}|%{version}|%{release}|%{arch}'
INSTALLED_QUERY_FORMAT = QUERY_FORMAT + '|%{from_repo}'

# Source names dnf reports when the origin is not a repository
UNKNOWN_SOURCES = ('', 'System', '@System', '(none)', '<unknown>', 'installed', 'anaconda')

DNF_ENV = {'LC_ALL': 'C'}

# Header and progress lines in repolist output
REPOLIST_NOISE = ('repo id', 'last metadata', 'updating', 'repositories loaded', 'waiting')


@dataclass(frozen=True)
class InstalledPackage:
    """An installed package and the repository it came from ('' if unknown)."""
    signature: Signature
    repo: str = ''

    @property
    def name(self) -> str:
        return self.signature.name


def normalize_repo(repo: Optional[str]) -> str:
    """Strip dnf's '@' prefix and map placeholder sources to ''."""
    repo = (repo or '').strip()
    if repo in UNKNOWN_SOURCES:
        return ''
    repo = repo.lstrip('@')
    if repo in UNKNOWN_SOURCES:
        return ''
    return repo


def parse_query_line(line: str) -> Optional[Signature]:
    """Parse one 'name|epoch|version|release|arch' line."""
    parts = line.strip().split('|')
    if len(parts) < 5 or not all(parts[i] for i in (0, 2, 3, 4)):
        return None
    name, epoch, version, release, arch = parts[:5]
    return Signature(name, epoch, version, release, arch)


def parse_installed_output(output: str) -> List[InstalledPackage]:
    """Parse `dnf repoquery --installed` output in INSTALLED_QUERY_FORMAT."""
    packages = []
    seen = set()
    for line in output.splitlines():
        if '|' not in line:
            continue
        sig = parse_query_line(line)
        if sig is None:
            logger.debug(f"Skipping unparsable line: {line!r}")
            continue
        if sig in seen:
            continue
        seen.add(sig)
        parts = line.strip().split('|')
        repo = normalize_repo(parts[5] if len(parts) > 5 else '')
        packages.append(InstalledPackage(sig, repo))
    return packages


def parse_available_output(output: str) -> Set[Signature]:
    """Parse `dnf repoquery` output in QUERY_FORMAT."""
    sigs = set()
    for line in output.splitlines():
        if '|' not in line:
            continue
        sig = parse_query_line(line)
        if sig is not None:
            sigs.add(sig)
    return sigs


def parse_repolist_output(output: str) -> List[str]:
    """Parse `dnf repolist --enabled` output into repository ids."""
    repos = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.lower().startswith(REPOLIST_NOISE):
            continue
        repos.append(line.split()[0])
    return repos


class PackageManager:
    """Thin dnf front-end used by the sync engine.

    Args:
        arches: Architectures to query for available packages
        query_timeout: Timeout for repoquery/repolist calls
        elevate_downloads: Prefix `dnf download` with sudo
        dnf: dnf executable
    """

    def __init__(self, arches: Iterable[str] = ('x86_64', 'noarch'),
                 query_timeout: int = 120, elevate_downloads: bool = False,
                 dnf: str = 'dnf'):
        self.arches = list(arches)
        self.query_timeout = query_timeout
        self.elevate_downloads = elevate_downloads
        self.dnf = dnf

    def _run(self, args: List[str], timeout: float) -> CommandResult:
        return run_command([self.dnf] + args, timeout=timeout, env=DNF_ENV)

    def list_installed(self) -> List[InstalledPackage]:
        """List installed packages with their source repository.

        Raises:
            PackageManagerError: if the query fails (fatal for a run)
        """
        result = self._run(
            ['repoquery', '--installed', '--quiet', '--qf', INSTALLED_QUERY_FORMAT + '\\n'],
            self.query_timeout,
        )
        if not result.success:
            raise PackageManagerError("Failed to list installed packages",
                                      result.command, result.returncode, result.stderr)
        packages = parse_installed_output(result.stdout)
        logger.info(f"Found {len(packages)} installed packages")
        return packages

    def list_enabled_repos(self) -> List[str]:
        """List enabled repository ids.

        Raises:
            PackageManagerError: if dnf cannot be queried
        """
        result = self._run(['repolist', '--enabled', '--quiet'], self.query_timeout)
        if not result.success:
            raise PackageManagerError("Failed to list enabled repositories",
                                      result.command, result.returncode, result.stderr)
        return parse_repolist_output(result.stdout)

    def list_available(self, repo: str, timeout: Optional[float] = None) -> Set[Signature]:
        """List package signatures available from a single repository.

        Raises:
            PackageManagerError: if the query fails or times out
        """
        args = ['repoquery', '--quiet', '--disablerepo=*', f'--enablerepo={repo}',
                '--qf', QUERY_FORMAT + '\\n']
        if self.arches:
            args.append(f"--arch={','.join(self.arches)}")
        result = self._run(args, timeout or self.query_timeout)
        if not result.success:
            reason = 'timed out' if result.timed_out else f'exit code {result.returncode}'
            raise PackageManagerError(f"repoquery for {repo} failed ({reason})",
                                      result.command, result.returncode, result.stderr)
        return parse_available_output(result.stdout)

    def download(self, signatures: List[Signature], destdir: Path, repo: str = '',
                 timeout: Optional[float] = None) -> CommandResult:
        """Download packages into destdir.

        Returns the CommandResult; the caller inspects destdir for what
        actually arrived.
        """
        args = ['download', '--quiet', f'--destdir={destdir}']
        if repo:
            args += ['--disablerepo=*', f'--enablerepo={repo}']
        args += [sig.nevra for sig in signatures]
        cmd = elevate([self.dnf] + args, self.elevate_downloads)
        return run_command(cmd, timeout=timeout, env=DNF_ENV)
