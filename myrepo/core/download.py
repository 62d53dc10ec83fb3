"""
Batch download engine.

Fetches NEW and UPDATE packages into the local mirror with `dnf download`.

Packages are grouped per repository into batches of BATCH_SIZE and the
batches run on a bounded worker pool. Every batch is fetched into a private
staging directory inside its repository and each file is moved into
getPackage/ with os.replace(), so a partial download is never visible.

A failing batch is retried (linear backoff) and then split in halves,
down to single packages, so one bad package does not fail its neighbours.
"""

import errno
import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .command import CommandResult
from .mirror import ChangedRepos, LocalMirrorState, packages_dir, staging_dir
from .rpm import Signature, sort_key

logger = logging.getLogger(__name__)

# Failure reasons, most specific first
_REASON_PATTERNS = (
    ('disk-space', ('no space left', 'disk quota exceeded', 'not enough free space',
                    'insufficient space')),
    ('permission', ('permission denied', 'operation not permitted',
                    'a password is required', 'a terminal is required')),
    ('not-found', ('no package', 'no match for argument', 'not found', 'status code: 404',
                   'unable to find a match')),
    ('network', ('could not resolve', 'connection', 'curl error', 'network',
                 'cannot download', 'failed to download', 'all mirrors were tried',
                 'timed out', 'status code: 5')),
)

# Reasons worth another attempt
RETRYABLE_REASONS = ('network', 'timeout', 'error')

CANCELLED = 'cancelled'


def classify_failure(result: CommandResult) -> str:
    """Map a failed download command to a reason keyword.

    Returns one of: timeout, disk-space, permission, not-found, network, error
    """
    if result.timed_out:
        return 'timeout'
    text = result.output.lower()
    for reason, patterns in _REASON_PATTERNS:
        if any(p in text for p in patterns):
            return reason
    return 'error'


# =============================================================================
# Retry combinator
# =============================================================================

class Outcome(Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass
class AttemptResult:
    """Typed result of one (or the last) attempt of an operation."""
    outcome: Outcome
    reason: str = ''
    message: str = ''
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED


def retry_call(func: Callable[[int], AttemptResult], max_retries: int,
               backoff: float = 1.0, sleep: Callable[[float], None] = time.sleep,
               cancel: Optional[threading.Event] = None) -> AttemptResult:
    """Call func until it succeeds, fails terminally or retries run out.

    Args:
        func: Callable(attempt_number) returning an AttemptResult
        max_retries: Additional attempts after the first
        backoff: Base delay; attempt n waits backoff * n seconds
        sleep: Sleep function (for tests)
        cancel: Stop retrying once set

    Returns:
        The last AttemptResult, with `attempts` filled in
    """
    attempt = 0
    while True:
        result = func(attempt)
        result.attempts = attempt + 1
        if result.outcome != Outcome.RETRYABLE or attempt >= max_retries:
            return result
        if cancel is not None and cancel.is_set():
            return result
        attempt += 1
        delay = backoff * attempt
        logger.debug(f"Retry {attempt}/{max_retries} in {delay:.0f}s ({result.reason})")
        if delay > 0:
            sleep(delay)


# =============================================================================
# Items and results
# =============================================================================

@dataclass
class DownloadItem:
    """A package to place into a local repository."""
    repo: str
    signature: Signature
    replaces: List[Signature] = field(default_factory=list)
    force: bool = False
    local_source: Optional[Path] = None

    @property
    def filename(self) -> str:
        return self.signature.filename


@dataclass
class DownloadResult:
    """Result of a download operation."""
    item: DownloadItem
    success: bool
    path: Optional[Path] = None
    reason: str = ''
    error: str = ''
    attempts: int = 0
    dry_run: bool = False

    @property
    def cancelled(self) -> bool:
        return self.reason == CANCELLED


@dataclass
class Failure:
    """A package that could not be fetched."""
    repo: str
    signature: Signature
    reason: str
    detail: str = ''


def make_batches(items: Iterable[DownloadItem], batch_size: int) -> List[List[DownloadItem]]:
    """Group items per repository, then cut into batches of batch_size."""
    by_repo: Dict[str, List[DownloadItem]] = {}
    for item in items:
        by_repo.setdefault(item.repo, []).append(item)

    batches = []
    for repo in sorted(by_repo):
        repo_items = sorted(by_repo[repo], key=lambda i: sort_key(i.signature))
        for start in range(0, len(repo_items), batch_size):
            batches.append(repo_items[start:start + batch_size])
    return batches


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1].strip() if lines else ''


# =============================================================================
# Engine
# =============================================================================

class DownloadEngine:
    """Download packages into the local mirror.

    Args:
        package_manager: Object with download(signatures, destdir, repo, timeout)
        root: Local repository root
        state: Local mirror state, updated as files land
        changed: Changed-repository set
        batch_size: Packages per dnf invocation
        parallel: Concurrent batches
        max_retries: Retries per batch before splitting it
        download_timeout: Per-package timeout (s)
        batch_timeout: Ceiling for one dnf invocation (s)
        dry_run: Log intended actions only
        cancel: Event; once set no new batches start
        backoff: Base retry delay (s)
        sleep: Sleep function (for tests)
    """

    def __init__(self, package_manager, root: Path, state: LocalMirrorState,
                 changed: ChangedRepos, batch_size: int = 50, parallel: int = 6,
                 max_retries: int = 2, download_timeout: int = 300,
                 batch_timeout: int = 1800, dry_run: bool = False,
                 cancel: Optional[threading.Event] = None, backoff: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.package_manager = package_manager
        self.root = Path(root)
        self.state = state
        self.changed = changed
        self.batch_size = max(1, batch_size)
        self.parallel = max(1, parallel)
        self.max_retries = max(0, max_retries)
        self.download_timeout = download_timeout
        self.batch_timeout = batch_timeout
        self.dry_run = dry_run
        self.cancel = cancel or threading.Event()
        self.backoff = backoff
        self.sleep = sleep

        self.failures: Dict[Signature, Failure] = {}
        # Old versions removed (or, on dry run, to be removed) per repository
        self.replaced: Dict[str, List[Signature]] = {}
        # Old versions that must survive because their replacement did not land
        self.protected: Set[Tuple[str, Signature]] = set()
        self._in_flight: Set[Tuple[str, Signature]] = set()
        self._lock = threading.Lock()

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def in_flight(self) -> Set[Tuple[str, Signature]]:
        with self._lock:
            return set(self._in_flight)

    def _set_in_flight(self, items: Iterable[DownloadItem], active: bool):
        with self._lock:
            for item in items:
                key = (item.repo, item.signature)
                if active:
                    self._in_flight.add(key)
                else:
                    self._in_flight.discard(key)

    def _record_failure(self, item: DownloadItem, reason: str, detail: str = '') -> DownloadResult:
        with self._lock:
            self.failures[item.signature] = Failure(item.repo, item.signature, reason, detail)
            for old in item.replaces:
                self.protected.add((item.repo, old))
        logger.debug(f"Failed {item.signature} ({reason}): {detail}")
        return DownloadResult(item, False, reason=reason, error=detail)

    def _cancelled(self, item: DownloadItem) -> DownloadResult:
        with self._lock:
            for old in item.replaces:
                self.protected.add((item.repo, old))
        return DownloadResult(item, False, reason=CANCELLED)

    def _note_replaced(self, repo: str, sig: Signature):
        with self._lock:
            self.replaced.setdefault(repo, []).append(sig)

    # =========================================================================
    # Filesystem steps
    # =========================================================================

    def _remove_existing(self, item: DownloadItem):
        """FORCE_REDOWNLOAD: drop the current file for this signature first."""
        path = self.state.path_for(item.repo, item.signature) or \
            packages_dir(self.root, item.repo) / item.filename
        if path.exists():
            path.unlink()
            logger.debug(f"Removed {path} before re-download")
        if self.state.remove(item.repo, item.signature):
            self.changed.add(item.repo)

    def _remove_replaced(self, item: DownloadItem):
        """Remove older versions once the new one is in place."""
        for old in item.replaces:
            # Same file on disk (epoch differs only): drop the stale entry, keep the file
            if old.filename == item.filename:
                self.state.remove(item.repo, old)
                continue
            path = self.state.path_for(item.repo, old) or packages_dir(self.root, item.repo) / old.filename
            try:
                if path.exists():
                    path.unlink()
                self.state.remove(item.repo, old)
                self._note_replaced(item.repo, old)
                logger.debug(f"Replaced {old} with {item.signature}")
            except OSError as e:
                logger.warning(f"Failed to remove old version {path}: {e}")

    def _install_file(self, item: DownloadItem, staged: Path) -> Path:
        """Move a staged file into getPackage/ and record it."""
        dest_dir = packages_dir(self.root, item.repo)
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / item.filename
        os.replace(staged, dest)
        self.state.add(item.repo, item.signature, dest)
        self.changed.add(item.repo)
        self._remove_replaced(item)
        return dest

    def _finalize(self, item: DownloadItem, staged: Path) -> DownloadResult:
        try:
            dest = self._install_file(item, staged)
        except OSError as e:
            reason = 'disk-space' if e.errno in (errno.ENOSPC, errno.EDQUOT) else \
                'permission' if e.errno in (errno.EACCES, errno.EPERM) else 'error'
            return self._record_failure(item, reason, str(e))
        logger.debug(f"Downloaded {item.signature} -> {item.repo}")
        return DownloadResult(item, True, path=dest)

    # =========================================================================
    # Fetching
    # =========================================================================

    def _batch_timeout(self, count: int) -> int:
        return min(self.batch_timeout, self.download_timeout * max(1, count))

    def _attempt(self, items: List[DownloadItem], staging: Path) -> AttemptResult:
        """One dnf invocation for the items not yet present in staging."""
        pending = [i for i in items if not (staging / i.filename).is_file()]
        if not pending:
            return AttemptResult(Outcome.SUCCEEDED)

        result = self.package_manager.download(
            [i.signature for i in pending], staging, repo=pending[0].repo,
            timeout=self._batch_timeout(len(pending)),
        )

        if result.timed_out:
            # Files of a killed download cannot be trusted
            for item in pending:
                partial = staging / item.filename
                if partial.exists():
                    partial.unlink()

        missing = [i for i in pending if not (staging / i.filename).is_file()]
        if not missing:
            return AttemptResult(Outcome.SUCCEEDED)

        reason = classify_failure(result) if not result.success else 'not-found'
        outcome = Outcome.RETRYABLE if reason in RETRYABLE_REASONS else Outcome.TERMINAL
        message = _last_line(result.stderr) or _last_line(result.stdout) or \
            f"exit code {result.returncode}"
        return AttemptResult(outcome, reason=reason, message=message)

    def _download_group(self, items: List[DownloadItem], staging: Path) -> List[DownloadResult]:
        """Fetch a group, then split what is still missing (adaptive fallback)."""
        if self.cancel.is_set():
            return [self._cancelled(i) for i in items]

        attempt = retry_call(lambda n: self._attempt(items, staging), self.max_retries,
                             backoff=self.backoff, sleep=self.sleep, cancel=self.cancel)

        results = []
        missing = []
        for item in items:
            staged = staging / item.filename
            if staged.is_file():
                results.append(self._finalize(item, staged))
            else:
                missing.append(item)

        if not missing:
            return results

        if len(missing) > 1 and not self.cancel.is_set():
            half = len(missing) // 2
            logger.debug(f"Batch of {len(missing)} failed ({attempt.reason}), splitting")
            results.extend(self._download_group(missing[:half], staging))
            results.extend(self._download_group(missing[half:], staging))
            return results

        for item in missing:
            if self.cancel.is_set() and attempt.outcome == Outcome.RETRYABLE:
                results.append(self._cancelled(item))
            else:
                result = self._record_failure(item, attempt.reason, attempt.message)
                result.attempts = attempt.attempts
                results.append(result)
        return results

    def _copy_local(self, item: DownloadItem, staging: Path) -> DownloadResult:
        """Manual repositories: copy a locally built RPM instead of downloading."""
        staged = staging / item.filename
        try:
            shutil.copy2(item.local_source, staged)
        except OSError as e:
            reason = 'disk-space' if e.errno in (errno.ENOSPC, errno.EDQUOT) else \
                'permission' if e.errno in (errno.EACCES, errno.EPERM) else 'not-found'
            return self._record_failure(item, reason, str(e))
        return self._finalize(item, staged)

    def _run_batch(self, batch: List[DownloadItem]) -> List[DownloadResult]:
        if self.cancel.is_set():
            return [self._cancelled(i) for i in batch]

        repo = batch[0].repo
        self._set_in_flight(batch, True)
        staging_root = staging_dir(self.root, repo)
        staging = None
        try:
            for item in batch:
                if item.force:
                    self._remove_existing(item)

            staging_root.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(dir=staging_root, prefix='batch-'))

            results = []
            fetch = [i for i in batch if i.local_source is None]
            for item in batch:
                if item.local_source is not None:
                    results.append(self._copy_local(item, staging))
            if fetch:
                results.extend(self._download_group(fetch, staging))
            return results
        except OSError as e:
            reason = 'disk-space' if e.errno in (errno.ENOSPC, errno.EDQUOT) else \
                'permission' if e.errno in (errno.EACCES, errno.EPERM) else 'error'
            logger.warning(f"Batch for {repo} failed: {e}")
            return [self._record_failure(i, reason, str(e)) for i in batch]
        finally:
            self._set_in_flight(batch, False)
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            try:
                staging_root.rmdir()
            except OSError:
                pass  # other batches still use it

    def _plan_only(self, items: List[DownloadItem]) -> List[DownloadResult]:
        results = []
        for item in items:
            action = 'copy' if item.local_source is not None else 'download'
            logger.info(f"[dry-run] Would {action} {item.signature} into {item.repo}")
            for old in item.replaces:
                logger.info(f"[dry-run] Would replace {old}")
                self._note_replaced(item.repo, old)
            self.changed.add(item.repo)
            results.append(DownloadResult(item, True, dry_run=True))
        return results

    def run(self, items: Iterable[DownloadItem]) -> List[DownloadResult]:
        """Download all items.

        Returns:
            One DownloadResult per item; failures are also collected in
            self.failures
        """
        items = list(items)
        if not items:
            return []

        batches = make_batches(items, self.batch_size)
        logger.info(f"Downloading {len(items)} packages in {len(batches)} batches "
                    f"({self.parallel} parallel)")

        if self.dry_run:
            results = []
            for batch in batches:
                results.extend(self._plan_only(batch))
            return results

        results = []
        with ThreadPoolExecutor(max_workers=self.parallel) as executor:
            futures = {executor.submit(self._run_batch, batch): batch for batch in batches}

            for future in as_completed(futures):
                batch = futures[future]
                try:
                    results.extend(future.result())
                except Exception as e:
                    logger.error(f"Unexpected error in batch for {batch[0].repo}: {e}")
                    results.extend(self._record_failure(i, 'error', str(e)) for i in batch)

        ok = sum(1 for r in results if r.success)
        failed = sum(1 for r in results if not r.success and not r.cancelled)
        logger.info(f"Downloads finished: {ok} ok, {failed} failed")
        return results
