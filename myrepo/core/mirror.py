"""
Local mirror state.

Tracks which package signatures are physically present under each local
repository:

    <root>/<repo>/getPackage/*.rpm
    <root>/<repo>/repodata/

RPM filenames carry no epoch. When scanning, the epoch is taken from a
known signature with the same name-version-release.arch (installed or
upstream), and only otherwise read from the RPM header.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from .config import PACKAGES_SUBDIR
from .errors import RepositoryError
from .rpm import Signature, parse_rpm_filename, read_rpm_signature, sort_key

logger = logging.getLogger(__name__)

# Download staging directory inside each repository (same filesystem)
STAGING_DIR = ".myrepo-staging"


def repo_dir(root: Path, repo: str) -> Path:
    """Repository root: <root>/<repo>/ (metadata lives here)."""
    return Path(root) / repo


def packages_dir(root: Path, repo: str) -> Path:
    """Package storage: <root>/<repo>/getPackage/."""
    return repo_dir(root, repo) / PACKAGES_SUBDIR


def staging_dir(root: Path, repo: str) -> Path:
    return repo_dir(root, repo) / STAGING_DIR


def check_repo_root(root: Path):
    """Make sure the local repository root is usable.

    Raises:
        RepositoryError: if missing, not a directory or not readable
    """
    root = Path(root)
    if not root.exists():
        raise RepositoryError(f"Local repository path does not exist: {root}")
    if not root.is_dir():
        raise RepositoryError(f"Local repository path is not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise RepositoryError(f"Local repository path is not accessible: {root}")


def list_local_repos(root: Path) -> List[str]:
    """Repositories under root that have a package directory."""
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir()
                  if p.is_dir() and (p / PACKAGES_SUBDIR).is_dir())


class LocalMirrorState:
    """Signatures present per local repository.

    All mutations go through add()/remove() which hold a lock, so worker
    threads can update the state concurrently.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._repos: Dict[str, Dict[Signature, Path]] = {}
        self._lock = threading.Lock()

    def add(self, repo: str, sig: Signature, path: Optional[Path] = None):
        with self._lock:
            self._repos.setdefault(repo, {})[sig] = path or (packages_dir(self.root, repo) / sig.filename)

    def remove(self, repo: str, sig: Signature) -> bool:
        with self._lock:
            return self._repos.get(repo, {}).pop(sig, None) is not None

    def contains(self, repo: str, sig: Signature) -> bool:
        with self._lock:
            return sig in self._repos.get(repo, {})

    def path_for(self, repo: str, sig: Signature) -> Optional[Path]:
        with self._lock:
            return self._repos.get(repo, {}).get(sig)

    def signatures(self, repo: str) -> Set[Signature]:
        with self._lock:
            return set(self._repos.get(repo, {}))

    def versions_of(self, repo: str, name: str, arch: str) -> List[Signature]:
        """Local signatures with the same name and arch, oldest first."""
        with self._lock:
            found = [s for s in self._repos.get(repo, {}) if s.name == name and s.arch == arch]
        return sorted(found, key=sort_key)

    def has_name_arch(self, repo: str, name: str, arch: str) -> bool:
        return bool(self.versions_of(repo, name, arch))

    def repos(self) -> List[str]:
        with self._lock:
            return sorted(self._repos)

    def ensure_repo(self, repo: str):
        with self._lock:
            self._repos.setdefault(repo, {})

    def count(self, repo: Optional[str] = None) -> int:
        with self._lock:
            if repo is not None:
                return len(self._repos.get(repo, {}))
            return sum(len(p) for p in self._repos.values())


def scan_local_mirror(root: Path, known: Iterable[Signature] = (),
                      repos: Optional[Iterable[str]] = None,
                      header_reader: Optional[Callable[[Path], Optional[Signature]]] = read_rpm_signature
                      ) -> LocalMirrorState:
    """Build the local mirror state from the filesystem.

    Args:
        root: Local repository root
        known: Signatures whose epochs can be trusted (installed + upstream)
        repos: Restrict to these repositories (default: all with getPackage/)
        header_reader: Fallback for files matching no known signature;
            None means epoch 0

    Returns:
        LocalMirrorState
    """
    state = LocalMirrorState(root)

    by_nvra: Dict[str, Signature] = {}
    for sig in sorted(known, key=lambda s: s.nevra):
        by_nvra.setdefault(sig.nvra, sig)

    repo_names = list_local_repos(root) if repos is None else list(repos)
    for repo in repo_names:
        pkg_dir = packages_dir(root, repo)
        if not pkg_dir.is_dir():
            continue
        state.ensure_repo(repo)
        for rpm_path in sorted(pkg_dir.glob('*.rpm')):
            if not rpm_path.is_file():
                continue
            sig = parse_rpm_filename(rpm_path.name)
            if sig is None:
                logger.debug(f"Ignoring unrecognised file {rpm_path}")
                continue
            if sig.nvra in by_nvra:
                sig = by_nvra[sig.nvra]
            elif header_reader is not None:
                header_sig = header_reader(rpm_path)
                if header_sig is not None and header_sig.nvra == sig.nvra:
                    sig = header_sig
            state.add(repo, sig, rpm_path)

        logger.debug(f"Local repository {repo}: {state.count(repo)} packages")

    return state


class ChangedRepos:
    """Repositories whose contents changed during this run.

    Only grows; read once by metadata regeneration.
    """

    def __init__(self):
        self._repos: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, repo: str):
        with self._lock:
            self._repos.add(repo)

    def __contains__(self, repo: str) -> bool:
        with self._lock:
            return repo in self._repos

    def __len__(self) -> int:
        with self._lock:
            return len(self._repos)

    def __iter__(self):
        return iter(self.sorted())

    def sorted(self) -> List[str]:
        with self._lock:
            return sorted(self._repos)
