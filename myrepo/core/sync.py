"""
Synchronization of the local mirror to the shared distribution path.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

from .command import CommandResult, elevate, run_command
from .mirror import STAGING_DIR

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Result of the rsync step."""
    performed: bool
    success: bool = True
    skipped_reason: str = ''
    dry_run: bool = False
    error: str = ''


def rsync_command(source: Path, target: str, dry_run: bool = False,
                  elevate_commands: bool = False) -> List[str]:
    """Build `rsync -a --delete <source>/ <target>/`."""
    cmd = ['rsync', '-a', '--delete', f'--exclude={STAGING_DIR}/']
    if dry_run:
        cmd.append('--dry-run')
    cmd += [f"{str(source).rstrip('/')}/", f"{target.rstrip('/')}/"]
    return elevate(cmd, elevate_commands)


def sync_to_shared(source: Path, target: str, timeout: int = 3600, dry_run: bool = False,
                   partial_run: bool = False, elevate_commands: bool = False,
                   runner: Callable[..., CommandResult] = run_command) -> SyncResult:
    """Mirror the local repository root to the shared path.

    Args:
        source: Local repository root
        target: Shared path ('' disables the step)
        timeout: rsync timeout (s)
        dry_run: Pass --dry-run to rsync
        partial_run: Filters or limits are active; a partial mirror
            must not overwrite the shared copy
        elevate_commands: Prefix rsync with sudo
        runner: Command runner (for tests)

    Returns:
        SyncResult; failures are reported, never raised
    """
    if not target:
        return SyncResult(False, skipped_reason='no shared path configured')
    if partial_run:
        logger.info("Shared sync skipped: filters or limits are active")
        return SyncResult(False, skipped_reason='partial run')
    if not Path(target).is_dir():
        logger.warning(f"Shared path {target} is not available, sync skipped")
        return SyncResult(False, skipped_reason='shared path not available')

    cmd = rsync_command(source, target, dry_run, elevate_commands)
    logger.info(f"Syncing {source} -> {target}{' (dry-run)' if dry_run else ''}")
    result = runner(cmd, timeout=timeout)
    if not result.success:
        if result.timed_out:
            error = f"timed out after {timeout}s"
        else:
            lines = result.stderr.strip().splitlines()
            error = lines[-1] if lines else f"exit code {result.returncode}"
        logger.error(f"Shared sync failed: {error}")
        return SyncResult(True, success=False, dry_run=dry_run, error=error)

    return SyncResult(True, dry_run=dry_run)
