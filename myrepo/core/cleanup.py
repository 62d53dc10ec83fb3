"""
Removal of packages that are no longer installed.

A local package is removed when its signature is not installed anywhere on
the golden copy. Replacement versions that failed to download protect the
old version they were meant to replace, and nothing in flight is touched.
Repositories listed in EXCLUDED_REPOS are removed from the local root.
"""

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .mirror import ChangedRepos, LocalMirrorState, list_local_repos, packages_dir, repo_dir
from .rpm import Signature, sort_key

logger = logging.getLogger(__name__)


@dataclass
class RemovalItem:
    """A local package file scheduled for deletion."""
    repo: str
    signature: Signature
    path: Path


@dataclass
class RemovalResult:
    item: RemovalItem
    success: bool
    error: str = ''
    dry_run: bool = False


def plan_removals(state: LocalMirrorState, installed: Iterable[Signature],
                  repos: Optional[Iterable[str]] = None, skip_repos: Iterable[str] = (),
                  protected: Iterable[Tuple[str, Signature]] = (),
                  in_flight: Iterable[Tuple[str, Signature]] = (),
                  already_removed: Optional[Dict[str, List[Signature]]] = None) -> List[RemovalItem]:
    """Select local packages to delete.

    Args:
        state: Local mirror state
        installed: Every installed signature (unfiltered)
        repos: Repositories to consider (default: all in state)
        skip_repos: Repositories never cleaned (manual repositories)
        protected: (repo, signature) pairs to keep
        in_flight: (repo, signature) pairs currently being downloaded
        already_removed: Signatures already handled by the download engine

    Returns:
        RemovalItems sorted by repository, then package
    """
    installed = set(installed)
    skip = set(skip_repos)
    keep = set(protected) | set(in_flight)
    handled = {(repo, sig) for repo, sigs in (already_removed or {}).items() for sig in sigs}

    plan = []
    for repo in sorted(state.repos() if repos is None else repos):
        if repo in skip:
            continue
        for sig in sorted(state.signatures(repo), key=sort_key):
            if sig in installed or (repo, sig) in keep or (repo, sig) in handled:
                continue
            path = state.path_for(repo, sig) or packages_dir(state.root, repo) / sig.filename
            plan.append(RemovalItem(repo, sig, path))
    return plan


class RemovalEngine:
    """Delete planned files with bounded concurrency.

    Args:
        state: Local mirror state, updated on each deletion
        changed: Changed-repository set
        parallel: Concurrent deletions
        dry_run: Log only
    """

    def __init__(self, state: LocalMirrorState, changed: ChangedRepos,
                 parallel: int = 6, dry_run: bool = False,
                 in_flight=None):
        self.state = state
        self.changed = changed
        self.parallel = max(1, parallel)
        self.dry_run = dry_run
        self.in_flight = in_flight or (lambda: set())
        self._lock = threading.Lock()

    def _delete_file(self, item: RemovalItem) -> RemovalResult:
        """Delete one package file.

        Returns:
            RemovalResult (success also when the file already vanished)
        """
        if (item.repo, item.signature) in self.in_flight():
            return RemovalResult(item, False, error='download in progress')

        if self.dry_run:
            logger.info(f"[dry-run] Would remove {item.path.name} from {item.repo}")
            return RemovalResult(item, True, dry_run=True)

        try:
            if item.path.exists():
                item.path.unlink()
                logger.debug(f"Deleted: {item.path}")
        except OSError as e:
            logger.warning(f"Failed to delete {item.path}: {e}")
            return RemovalResult(item, False, error=str(e))

        self.state.remove(item.repo, item.signature)
        self.changed.add(item.repo)
        return RemovalResult(item, True)

    def run(self, plan: Iterable[RemovalItem]) -> List[RemovalResult]:
        plan = list(plan)
        if not plan:
            return []

        logger.info(f"Removing {len(plan)} packages no longer installed")
        results = []
        with ThreadPoolExecutor(max_workers=self.parallel) as executor:
            futures = {executor.submit(self._delete_file, item): item for item in plan}
            for future in as_completed(futures):
                results.append(future.result())

        if self.dry_run:
            for repo in sorted({r.item.repo for r in results}):
                self.changed.add(repo)

        results.sort(key=lambda r: (r.item.repo, sort_key(r.item.signature)))
        return results


def remove_excluded_repos(root: Path, excluded: Iterable[str], dry_run: bool = False) -> List[str]:
    """Delete local repositories that are excluded from mirroring.

    Returns:
        Names of the repositories removed (or that would be)
    """
    present = set(list_local_repos(root))
    removed = []
    for repo in sorted(set(excluded) & present):
        path = repo_dir(root, repo)
        if dry_run:
            logger.info(f"[dry-run] Would remove excluded repository {path}")
            removed.append(repo)
            continue
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to remove excluded repository {path}: {e}")
            continue
        logger.info(f"Removed excluded repository {repo}")
        removed.append(repo)
    return removed
