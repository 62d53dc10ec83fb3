"""
Repository metadata regeneration.

Runs `createrepo_c --update <repo_dir>` (or `createrepo` when createrepo_c
is not installed) for every repository whose contents changed. Metadata
lives at <repo>/repodata, next to getPackage/, never inside it.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .command import CommandResult, elevate, run_command
from .mirror import list_local_repos, packages_dir, repo_dir
from .config import REPODATA_DIR

logger = logging.getLogger(__name__)

CREATEREPO_COMMANDS = ('createrepo_c', 'createrepo')


def find_createrepo(which: Callable[[str], Optional[str]] = shutil.which) -> Optional[str]:
    """Return the first available metadata generator, or None."""
    for cmd in CREATEREPO_COMMANDS:
        if which(cmd):
            return cmd
    return None


@dataclass
class RegenResult:
    """Outcome of regenerating one repository."""
    repo: str
    success: bool
    skipped: bool = False
    dry_run: bool = False
    error: str = ''


def fix_repodata_structure(root: Path, repo: str, dry_run: bool = False) -> bool:
    """Move a repodata directory found inside getPackage/ up to the repository.

    When repository-level metadata already exists the misplaced copy is
    removed instead.

    Returns:
        True if something was (or would be) fixed
    """
    misplaced = packages_dir(root, repo) / REPODATA_DIR
    if not misplaced.is_dir():
        return False

    target = repo_dir(root, repo) / REPODATA_DIR
    if dry_run:
        logger.info(f"[dry-run] Would fix misplaced metadata in {misplaced}")
        return True

    if target.exists():
        logger.info(f"Removing misplaced metadata {misplaced} (repository level exists)")
        shutil.rmtree(misplaced)
    else:
        logger.info(f"Moving misplaced metadata {misplaced} -> {target}")
        shutil.move(str(misplaced), str(target))
    return True


def select_repos(changed: Iterable[str], root: Path, full_rebuild: bool = False,
                 skip: Iterable[str] = ()) -> List[str]:
    """Repositories needing regeneration: the changed ones, or all on full rebuild."""
    skip = set(skip)
    if full_rebuild:
        repos = list_local_repos(root)
    else:
        repos = sorted(set(changed))
    return [r for r in repos if r not in skip]


class MetadataRegenerator:
    """Regenerate repository metadata one repository at a time.

    Args:
        root: Local repository root
        timeout: Per-repository timeout (s)
        elevate_commands: Prefix createrepo with sudo
        dry_run: Log only
        runner: Command runner (for tests)
        createrepo: Generator command; looked up on PATH when None
    """

    def __init__(self, root: Path, timeout: int = 600, elevate_commands: bool = False,
                 dry_run: bool = False, runner: Callable[..., CommandResult] = run_command,
                 createrepo: Optional[str] = None):
        self.root = Path(root)
        self.timeout = timeout
        self.elevate_commands = elevate_commands
        self.dry_run = dry_run
        self.runner = runner
        self.createrepo = createrepo

    def command(self, repo: str) -> List[str]:
        cmd = [self.createrepo or 'createrepo_c', '--update', str(repo_dir(self.root, repo))]
        return elevate(cmd, self.elevate_commands)

    def regenerate(self, repo: str) -> RegenResult:
        path = repo_dir(self.root, repo)
        if not packages_dir(self.root, repo).is_dir():
            logger.warning(f"Skipping metadata for {repo}: no package directory")
            return RegenResult(repo, True, skipped=True)

        try:
            fix_repodata_structure(self.root, repo, self.dry_run)
        except OSError as e:
            logger.warning(f"Could not fix metadata layout of {repo}: {e}")

        cmd = self.command(repo)
        if self.dry_run:
            logger.info(f"[dry-run] Would run: {' '.join(cmd)}")
            return RegenResult(repo, True, dry_run=True)

        logger.info(f"Updating metadata for {repo}...")
        result = self.runner(cmd, timeout=self.timeout)
        if not result.success:
            if result.timed_out:
                error = f"timed out after {self.timeout}s"
            else:
                lines = result.stderr.strip().splitlines()
                error = lines[-1] if lines else f"exit code {result.returncode}"
            logger.error(f"Metadata update failed for {repo} ({path}): {error}")
            return RegenResult(repo, False, error=error)

        logger.debug(f"Metadata updated for {repo}")
        return RegenResult(repo, True)

    def regenerate_all(self, repos: Iterable[str]) -> List[RegenResult]:
        """Regenerate each repository; a failure never stops the others."""
        repos = list(repos)
        if not repos:
            logger.info("No repositories changed, metadata update skipped")
            return []

        if self.createrepo is None:
            self.createrepo = find_createrepo()
            if self.createrepo is None:
                if self.dry_run:
                    self.createrepo = CREATEREPO_COMMANDS[0]
                else:
                    logger.error("Neither createrepo_c nor createrepo is installed")
                    return [RegenResult(r, False, error="createrepo not found") for r in repos]

        return [self.regenerate(repo) for repo in repos]
