"""
Run summary.

Collects per-repository counts (new, update, exists, removed, failed,
skipped), the UNKNOWN packages with their reasons and every failure
record, and derives the process exit status.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional

from .classifier import ClassificationResult, Status
from .cleanup import RemovalResult
from .download import DownloadResult, Failure
from .metadata import RegenResult
from .rpm import Signature, sort_key
from .sync import SyncResult

# Exit statuses
EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_PARTIAL = 2
EXIT_INTERRUPTED = 130


@dataclass
class RepoSummary:
    repo: str
    new: int = 0
    update: int = 0
    exists: int = 0
    removed: int = 0
    failed: int = 0
    skipped: int = 0
    manual: bool = False

    def add(self, other: 'RepoSummary'):
        for name in ('new', 'update', 'exists', 'removed', 'failed', 'skipped'):
            setattr(self, name, getattr(self, name) + getattr(other, name))


@dataclass
class UnknownPackage:
    signature: Signature
    reason: str


@dataclass
class RunReport:
    """Everything the summary display and the JSON output need."""
    repos: Dict[str, RepoSummary] = field(default_factory=dict)
    unknown: List[UnknownPackage] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    skipped_manual: List[Signature] = field(default_factory=list)
    installed: int = 0
    filtered_out: int = 0
    deferred: int = 0
    downgrades: int = 0
    cancelled_downloads: int = 0
    stale_sources: List[str] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    excluded_removed: List[str] = field(default_factory=list)
    metadata: List[RegenResult] = field(default_factory=list)
    sync: Optional[SyncResult] = None
    changed_repos: List[str] = field(default_factory=list)
    cleanup_skipped: str = ''
    dry_run: bool = False
    cancelled: bool = False

    def repo(self, name: str) -> RepoSummary:
        if name not in self.repos:
            self.repos[name] = RepoSummary(name)
        return self.repos[name]

    def totals(self) -> RepoSummary:
        total = RepoSummary('TOTAL')
        for summary in self.repos.values():
            total.add(summary)
        return total

    @property
    def metadata_failures(self) -> List[RegenResult]:
        return [r for r in self.metadata if not r.success]

    @property
    def has_failures(self) -> bool:
        sync_failed = self.sync is not None and not self.sync.success
        return bool(self.failures or self.metadata_failures or sync_failed)

    def exit_status(self, continue_on_error: bool = False) -> int:
        """0 clean, 2 failures or unknowns, 130 interrupted.

        With continue_on_error, unknown packages alone do not change the
        status.
        """
        if self.cancelled:
            return EXIT_INTERRUPTED
        if self.has_failures:
            return EXIT_PARTIAL
        if self.unknown and not continue_on_error:
            return EXIT_PARTIAL
        return EXIT_OK

    def to_dict(self) -> dict:
        """Counts-only summary for --json."""
        return {
            'dry_run': self.dry_run,
            'cancelled': self.cancelled,
            'installed': self.installed,
            'filtered_out': self.filtered_out,
            'deferred': self.deferred,
            'downgrades': self.downgrades,
            'repositories': {
                name: {k: v for k, v in asdict(s).items() if k != 'repo'}
                for name, s in sorted(self.repos.items())
            },
            'totals': {k: v for k, v in asdict(self.totals()).items() if k not in ('repo', 'manual')},
            'unknown': len(self.unknown),
            'failed': len(self.failures),
            'stale_sources': len(self.stale_sources),
            'failed_sources': len(self.failed_sources),
            'metadata_failed': len(self.metadata_failures),
            'changed_repositories': len(self.changed_repos),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


def build_report(classification: ClassificationResult,
                 downloads: Iterable[DownloadResult] = (),
                 removals: Iterable[RemovalResult] = (),
                 replaced: Optional[Dict[str, List[Signature]]] = None,
                 manual_repos: Iterable[str] = ()) -> RunReport:
    """Fold classification and engine results into a RunReport."""
    report = RunReport()
    manual_repos = set(manual_repos)

    for repo in classification.repos():
        summary = report.repo(repo)
        summary.manual = repo in manual_repos
        for status in (Status.NEW, Status.UPDATE):
            for item in classification.packages(status, repo):
                if item.manual and item.local_source is None:
                    summary.skipped += 1
                    report.skipped_manual.append(item.signature)
                elif status == Status.NEW:
                    summary.new += 1
                else:
                    summary.update += 1
                    if item.is_downgrade:
                        report.downgrades += 1
        summary.exists = len(classification.packages(Status.EXISTS, repo))

    report.unknown = [UnknownPackage(i.signature, i.reason) for i in classification.unknown]
    report.deferred = len(classification.deferred)
    report.filtered_out = classification.filtered_out

    for result in downloads:
        if result.success:
            continue
        if result.cancelled:
            report.cancelled_downloads += 1
            continue
        report.repo(result.item.repo).failed += 1
        report.failures.append(Failure(result.item.repo, result.item.signature,
                                       result.reason, result.error))

    for result in removals:
        if result.success:
            report.repo(result.item.repo).removed += 1

    for repo, sigs in (replaced or {}).items():
        report.repo(repo).removed += len(sigs)

    report.failures.sort(key=lambda f: (f.repo, sort_key(f.signature)))
    report.skipped_manual.sort(key=sort_key)
    return report
