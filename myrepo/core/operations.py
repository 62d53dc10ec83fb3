"""
Run orchestration for myrepo.

One run walks the pipeline in order:

    inventory -> upstream index -> local scan -> classification
    -> downloads -> removals -> metadata -> shared sync -> report

All state of a run lives in a RunContext; nothing is kept at module level.
Fatal conditions (configuration, no enabled sources, local root missing,
installed-package query failing) raise MyrepoError subclasses before
anything is classified. Everything after that is collected into the
report instead of raised.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .classifier import (
    ClassificationResult, Classifier, ReverseLookup, Status,
    apply_repo_filter, limit_changed, select_candidates,
)
from .cleanup import RemovalEngine, RemovalResult, plan_removals, remove_excluded_repos
from .command import CommandResult, needs_elevation, run_command
from .config import MyrepoConfig
from .download import DownloadEngine, DownloadItem, DownloadResult
from .errors import MyrepoError
from .inventory import InstalledPackage, PackageManager
from .metadata import MetadataRegenerator, RegenResult, select_repos
from .metadata_cache import IndexResult, MetadataCache, effective_max_age, upstream_index
from .mirror import ChangedRepos, LocalMirrorState, check_repo_root, list_local_repos, scan_local_mirror
from .report import RunReport, build_report
from .rpm import Signature, check_rpm_available, read_rpm_signature
from .sync import SyncResult, sync_to_shared

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """State of one run, passed explicitly between the pipeline steps."""
    config: MyrepoConfig
    cancel: threading.Event = field(default_factory=threading.Event)
    installed: List[InstalledPackage] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    index_results: Dict[str, IndexResult] = field(default_factory=dict)
    index: Dict[str, Set[Signature]] = field(default_factory=dict)
    lookup: Optional[ReverseLookup] = None
    state: Optional[LocalMirrorState] = None
    classification: Optional[ClassificationResult] = None
    changed: ChangedRepos = field(default_factory=ChangedRepos)
    downloads: List[DownloadResult] = field(default_factory=list)
    removals: List[RemovalResult] = field(default_factory=list)
    replaced: Dict[str, List[Signature]] = field(default_factory=dict)
    excluded_removed: List[str] = field(default_factory=list)
    metadata: List[RegenResult] = field(default_factory=list)
    sync: Optional[SyncResult] = None
    cleanup_skipped: str = ''

    @property
    def root(self) -> Path:
        return Path(self.config.local_repo_path)

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


class SyncOperations:
    """Run the reconciliation pipeline for one configuration.

    Args:
        config: Effective configuration
        package_manager: dnf front-end (default: PackageManager from config)
        cancel: Event set by the signal handlers
        runner: Command runner for createrepo/rsync (for tests)
        read_headers: Read epochs from RPM headers when rpm is available
        sleep: Sleep used between download retries (for tests)
        clock: Time source for cache freshness (for tests)
        createrepo: Metadata generator command (default: looked up on PATH)
    """

    def __init__(self, config: MyrepoConfig, package_manager=None,
                 cancel: Optional[threading.Event] = None,
                 runner: Callable[..., CommandResult] = run_command,
                 read_headers: bool = True,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 createrepo: Optional[str] = None):
        self.config = config
        self.elevate = needs_elevation(config.user_mode, config.elevate_commands)
        self.package_manager = package_manager or PackageManager(
            arches=config.arches,
            query_timeout=config.dnf_query_timeout,
            elevate_downloads=self.elevate,
        )
        self.cancel = cancel or threading.Event()
        self.runner = runner
        self.header_reader = read_rpm_signature if read_headers and check_rpm_available() else None
        self.sleep = sleep
        self.clock = clock
        self.createrepo = createrepo

    # =========================================================================
    # Inventory and index
    # =========================================================================

    def load_inventory(self, ctx: RunContext):
        """Installed packages and tracked upstream sources (fatal on failure)."""
        config = ctx.config
        ctx.installed = self.package_manager.list_installed()

        enabled = self.package_manager.list_enabled_repos()
        skip = set(config.excluded_repos) | set(config.manual_repos)
        ctx.sources = [repo for repo in dict.fromkeys(enabled) if repo not in skip]
        if not ctx.sources:
            raise MyrepoError("No enabled upstream repositories to mirror")
        logger.info(f"Tracking {len(ctx.sources)} upstream repositories")

    def refresh_index(self, ctx: RunContext):
        config = ctx.config
        timeout = config.dnf_query_timeout
        cache = MetadataCache(
            config.cache_dir,
            fetch=lambda source: self.package_manager.list_available(source, timeout=timeout),
            max_age=effective_max_age(config.cache_max_age, config.cache_max_age_night,
                                      config.night_start_hour, config.night_end_hour),
            full_rebuild=config.full_rebuild,
            parallel=1 if config.dnf_serial else config.repoquery_parallel,
            clock=self.clock,
            persist=not config.dry_run,
        )

        if not config.dry_run:
            removed = cache.cleanup(ctx.sources, config.cache_cleanup_days)
            if removed:
                logger.info(f"Removed {len(removed)} stale cache files")

        ctx.index_results = cache.build_index(ctx.sources, cancel=ctx.cancel)
        ctx.index = upstream_index(ctx.index_results)
        ctx.lookup = ReverseLookup(ctx.index, config.repo_priority)
        logger.info(f"Upstream index: {len(ctx.lookup)} packages from {len(ctx.index)} repositories")

    def scan_mirror(self, ctx: RunContext):
        known = {p.signature for p in ctx.installed}
        for sigs in ctx.index.values():
            known.update(sigs)
        ctx.state = scan_local_mirror(ctx.root, known, header_reader=self.header_reader)
        logger.info(f"Local mirror: {ctx.state.count()} packages in {len(ctx.state.repos())} repositories")

    # =========================================================================
    # Classification
    # =========================================================================

    def classify(self, ctx: RunContext):
        config = ctx.config
        records, filtered = select_candidates(ctx.installed, config.name_filter, config.max_packages)

        classifier = Classifier(
            ctx.lookup,
            ctx.state,
            tracked_sources=ctx.sources,
            manual_repos=config.manual_repos,
            excluded_repos=config.excluded_repos,
            local_rpm_sources=[Path(p) for p in config.local_rpm_sources],
        )
        result = classifier.classify(records)
        result.filtered_out += filtered
        apply_repo_filter(result, config.repo_filter)
        limit_changed(result, config.max_changed_packages)
        ctx.classification = result

        logger.info(f"Classified {len(records)} packages: "
                    f"{len(result.packages(Status.NEW))} new, "
                    f"{len(result.packages(Status.UPDATE))} update, "
                    f"{len(result.packages(Status.EXISTS))} exists, "
                    f"{len(result.unknown)} unknown")
        if result.deferred:
            logger.info(f"{len(result.deferred)} changed packages deferred by MAX_CHANGED_PACKAGES")

    def build_download_items(self, ctx: RunContext) -> List[DownloadItem]:
        """NEW/UPDATE packages to fetch; EXISTS too when re-downloading."""
        config = ctx.config
        # Older versions still installed (installonly packages) are never replaced
        installed = {p.signature for p in ctx.installed}
        items = []
        skipped = 0
        for item in ctx.classification.changed():
            if item.manual and item.local_source is None:
                logger.debug(f"{item.signature}: manual repository (no download attempted)")
                skipped += 1
                continue
            if item.is_downgrade:
                logger.warning(f"{item.signature} is older than the local copy in {item.repo}")
            replaces = [old for old in item.replaces if old not in installed]
            items.append(DownloadItem(item.repo, item.signature, replaces=replaces,
                                      local_source=item.local_source))

        if config.force_redownload:
            for item in ctx.classification.packages(Status.EXISTS):
                if item.manual:
                    continue
                items.append(DownloadItem(item.repo, item.signature, force=True))

        if skipped:
            logger.info(f"{skipped} packages in manual repositories skipped (no download attempted)")
        return items

    # =========================================================================
    # Mutations
    # =========================================================================

    def download(self, ctx: RunContext, items: List[DownloadItem]) -> DownloadEngine:
        config = ctx.config
        engine = DownloadEngine(
            self.package_manager, ctx.root, ctx.state, ctx.changed,
            batch_size=config.batch_size,
            parallel=config.parallel,
            max_retries=config.max_retries,
            download_timeout=config.dnf_download_timeout,
            batch_timeout=config.dnf_batch_timeout,
            dry_run=config.dry_run,
            cancel=ctx.cancel,
            sleep=self.sleep,
        )
        ctx.downloads = engine.run(items)
        ctx.replaced = engine.replaced
        return engine

    def cleanup(self, ctx: RunContext, engine: DownloadEngine):
        """Remove uninstalled packages and excluded repositories."""
        config = ctx.config
        if not config.cleanup_uninstalled:
            ctx.cleanup_skipped = 'disabled'
            logger.info("Cleanup of uninstalled packages disabled")
            return
        if config.limits_active:
            ctx.cleanup_skipped = 'partial run'
            logger.info("Cleanup skipped: filters or limits are active")
            return
        if ctx.cancelled:
            ctx.cleanup_skipped = 'interrupted'
            return

        plan = plan_removals(
            ctx.state,
            installed={p.signature for p in ctx.installed},
            skip_repos=set(config.manual_repos) | set(config.excluded_repos),
            protected=engine.protected,
            in_flight=engine.in_flight(),
            already_removed=engine.replaced,
        )
        removal = RemovalEngine(ctx.state, ctx.changed, parallel=config.parallel,
                                dry_run=config.dry_run, in_flight=engine.in_flight)
        ctx.removals = removal.run(plan)
        ctx.excluded_removed = remove_excluded_repos(ctx.root, config.excluded_repos, config.dry_run)

    def regenerate_metadata(self, ctx: RunContext, all_repos: bool = False):
        config = ctx.config
        if config.no_metadata_update:
            logger.info("Metadata update disabled")
            return
        repos = select_repos(ctx.changed, ctx.root, full_rebuild=config.full_rebuild or all_repos,
                             skip=ctx.excluded_removed)
        regenerator = MetadataRegenerator(ctx.root, timeout=config.createrepo_timeout,
                                          elevate_commands=self.elevate, dry_run=config.dry_run,
                                          runner=self.runner, createrepo=self.createrepo)
        ctx.metadata = regenerator.regenerate_all(repos)

    def sync_shared(self, ctx: RunContext):
        config = ctx.config
        if ctx.cancelled:
            logger.info("Shared sync skipped: interrupted")
            return
        ctx.sync = sync_to_shared(
            ctx.root, config.shared_repo_path,
            timeout=config.rsync_timeout,
            dry_run=config.dry_run,
            partial_run=config.limits_active and not config.sync_only,
            elevate_commands=self.elevate,
            runner=self.runner,
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    def make_report(self, ctx: RunContext) -> RunReport:
        classification = ctx.classification or ClassificationResult()
        report = build_report(classification, ctx.downloads, ctx.removals, ctx.replaced,
                              manual_repos=ctx.config.manual_repos)
        report.installed = len(ctx.installed)
        report.stale_sources = sorted(s for s, r in ctx.index_results.items() if r.stale)
        report.failed_sources = sorted(s for s, r in ctx.index_results.items()
                                       if r.failed and not r.stale)
        report.excluded_removed = list(ctx.excluded_removed)
        report.metadata = list(ctx.metadata)
        report.sync = ctx.sync
        report.changed_repos = ctx.changed.sorted()
        report.cleanup_skipped = ctx.cleanup_skipped
        report.dry_run = ctx.config.dry_run
        report.cancelled = ctx.cancelled
        return report

    def sync_only(self) -> RunReport:
        """SYNC_ONLY: regenerate metadata of every local repository, then rsync."""
        ctx = RunContext(self.config, cancel=self.cancel)
        check_repo_root(ctx.root)
        logger.info(f"Sync only: {len(list_local_repos(ctx.root))} local repositories")
        self.regenerate_metadata(ctx, all_repos=True)
        self.sync_shared(ctx)
        return self.make_report(ctx)

    def run(self) -> RunReport:
        """Full reconciliation run.

        Raises:
            MyrepoError: on a fatal condition, before anything is changed
        """
        if self.config.sync_only:
            return self.sync_only()

        ctx = RunContext(self.config, cancel=self.cancel)
        if self.config.dry_run:
            logger.info("Dry run: no files will be changed")

        check_repo_root(ctx.root)
        self.load_inventory(ctx)
        self.refresh_index(ctx)
        self.scan_mirror(ctx)
        self.classify(ctx)

        if not ctx.cancelled:
            engine = self.download(ctx, self.build_download_items(ctx))
            self.cleanup(ctx, engine)

        # Repositories already changed get consistent metadata even when interrupted
        self.regenerate_metadata(ctx)
        self.sync_shared(ctx)
        return self.make_report(ctx)
