"""
Package classification.

Decides, for every installed package, which local repository it belongs
to and whether the mirror already has it:

    EXISTS   exact signature present in the local repository
    UPDATE   another version of the same name.arch is present
    NEW      no version of name.arch is present
    UNKNOWN  no repository could be resolved (kept with a reason)

Source resolution order:
    1. Reverse lookup over the upstream index. When several repositories
       offer the signature, the one recorded by dnf for the installed
       package wins if it is among them; otherwise the first in priority
       order (REPO_PRIORITY, then alphabetical).
    2. The repository recorded by dnf, if it is a tracked upstream source.
    3. Manual (local-only) repositories: the recorded repository when it is
       manual, a manual repository already holding this name.arch, or a
       locally built RPM found in LOCAL_RPM_SOURCES.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .inventory import InstalledPackage
from .mirror import LocalMirrorState
from .rpm import Signature, sort_key, version_is_newer

logger = logging.getLogger(__name__)


class Status(Enum):
    """Classification of an installed package against the local mirror."""
    NEW = "new"
    UPDATE = "update"
    EXISTS = "exists"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedPackage:
    """One installed package with its resolved repository and status."""
    package: InstalledPackage
    status: Status
    repo: str = ''
    reason: str = ''
    replaces: List[Signature] = field(default_factory=list)
    manual: bool = False
    local_source: Optional[Path] = None

    @property
    def signature(self) -> Signature:
        return self.package.signature

    @property
    def is_downgrade(self) -> bool:
        """True when every local version being replaced is newer."""
        if self.status != Status.UPDATE or not self.replaces:
            return False
        return all(version_is_newer(old.evr, self.signature.evr) for old in self.replaces)


@dataclass
class ClassificationResult:
    """Classification output grouped by repository.

    Packages dropped by MAX_CHANGED_PACKAGES are kept in `deferred` so the
    totals stay exact.
    """
    by_repo: Dict[str, Dict[Status, List[ClassifiedPackage]]] = field(default_factory=dict)
    unknown: List[ClassifiedPackage] = field(default_factory=list)
    deferred: List[ClassifiedPackage] = field(default_factory=list)
    filtered_out: int = 0

    def add(self, item: ClassifiedPackage):
        if item.status == Status.UNKNOWN:
            self.unknown.append(item)
            return
        repo = self.by_repo.setdefault(item.repo, {s: [] for s in (Status.NEW, Status.UPDATE, Status.EXISTS)})
        repo[item.status].append(item)

    def repos(self) -> List[str]:
        return sorted(self.by_repo)

    def packages(self, status: Status, repo: Optional[str] = None) -> List[ClassifiedPackage]:
        if status == Status.UNKNOWN:
            return list(self.unknown)
        repos = [repo] if repo is not None else self.repos()
        items = []
        for name in repos:
            items.extend(self.by_repo.get(name, {}).get(status, []))
        return items

    def all_items(self) -> List[ClassifiedPackage]:
        items = []
        for repo in self.repos():
            for status in (Status.NEW, Status.UPDATE, Status.EXISTS):
                items.extend(self.by_repo[repo][status])
        return items + list(self.unknown)

    def changed(self) -> List[ClassifiedPackage]:
        """NEW and UPDATE packages, grouped by repository."""
        items = []
        for repo in self.repos():
            items.extend(self.by_repo[repo][Status.NEW])
            items.extend(self.by_repo[repo][Status.UPDATE])
        return items

    def sort(self):
        for groups in self.by_repo.values():
            for items in groups.values():
                items.sort(key=lambda i: sort_key(i.signature))
        self.unknown.sort(key=lambda i: sort_key(i.signature))
        self.deferred.sort(key=lambda i: sort_key(i.signature))


def source_order(sources: Iterable[str], priority: Iterable[str] = ()) -> List[str]:
    """Deterministic source ordering: configured priority first, then alphabetical."""
    sources = set(sources)
    ordered = [s for s in dict.fromkeys(priority) if s in sources]
    ordered += sorted(sources - set(ordered))
    return ordered


class ReverseLookup:
    """Signature -> candidate sources, in tie-break order."""

    def __init__(self, index: Dict[str, Set[Signature]], priority: Iterable[str] = ()):
        self.order = source_order(index.keys(), priority)
        self._table: Dict[Signature, List[str]] = {}
        for source in self.order:
            for sig in index[source]:
                self._table.setdefault(sig, []).append(source)

    def __len__(self):
        return len(self._table)

    def candidates(self, sig: Signature) -> List[str]:
        return list(self._table.get(sig, []))

    def resolve(self, sig: Signature, preferred: str = '') -> Optional[str]:
        """Pick the source for a signature, or None if no source offers it."""
        candidates = self._table.get(sig)
        if not candidates:
            return None
        if preferred and preferred in candidates:
            return preferred
        return candidates[0]


def find_local_rpm(sig: Signature, sources: Iterable[Path]) -> Optional[Path]:
    """Look for a locally built RPM (e.g. rpmbuild/RPMS/<arch>/) by filename."""
    for source in sources:
        source = Path(source)
        for candidate in (source / sig.filename, source / sig.arch / sig.filename):
            if candidate.is_file():
                return candidate
    return None


class Classifier:
    """Classify installed packages against the local mirror.

    Args:
        lookup: Reverse lookup built from the upstream index
        mirror: Local mirror state
        tracked_sources: Enabled, non-excluded upstream sources
        manual_repos: Local-only repositories (never downloaded from)
        excluded_repos: Sources to ignore entirely
        local_rpm_sources: Directories holding locally built RPMs
    """

    def __init__(self, lookup: ReverseLookup, mirror: LocalMirrorState,
                 tracked_sources: Iterable[str] = (), manual_repos: Iterable[str] = (),
                 excluded_repos: Iterable[str] = (), local_rpm_sources: Iterable[Path] = ()):
        self.lookup = lookup
        self.mirror = mirror
        self.excluded = set(excluded_repos)
        self.manual_repos = [r for r in manual_repos if r not in self.excluded]
        self.tracked = set(tracked_sources) - self.excluded
        self.local_rpm_sources = [Path(p) for p in local_rpm_sources]

    def resolve(self, record: InstalledPackage) -> Tuple[Optional[str], str, Optional[Path]]:
        """Resolve the local repository for an installed package.

        Returns:
            (repo, reason, local_source); repo is None when unresolved and
            reason then explains why
        """
        sig = record.signature

        candidates = [c for c in self.lookup.candidates(sig) if c not in self.excluded]
        if candidates:
            if record.repo in candidates:
                return record.repo, '', None
            return candidates[0], '', None

        if record.repo and record.repo in self.tracked:
            return record.repo, '', None

        if record.repo in self.manual_repos:
            return record.repo, '', find_local_rpm(sig, self.local_rpm_sources)
        for manual in self.manual_repos:
            if self.mirror.has_name_arch(manual, sig.name, sig.arch):
                return manual, '', find_local_rpm(sig, self.local_rpm_sources)
        if self.manual_repos:
            local_source = find_local_rpm(sig, self.local_rpm_sources)
            if local_source is not None:
                return self.manual_repos[0], '', local_source

        if record.repo in self.excluded:
            return None, f"source repository '{record.repo}' is excluded", None
        if record.repo:
            return None, (f"source repository '{record.repo}' is not enabled and the package "
                          f"is not found in any enabled repository"), None
        return None, "not found in any enabled repository", None

    def classify_one(self, record: InstalledPackage) -> ClassifiedPackage:
        repo, reason, local_source = self.resolve(record)
        if repo is None:
            logger.debug(f"UNKNOWN {record.signature}: {reason}")
            return ClassifiedPackage(record, Status.UNKNOWN, reason=reason)

        sig = record.signature
        manual = repo in self.manual_repos
        if self.mirror.contains(repo, sig):
            status, replaces = Status.EXISTS, []
        else:
            replaces = self.mirror.versions_of(repo, sig.name, sig.arch)
            status = Status.UPDATE if replaces else Status.NEW

        return ClassifiedPackage(record, status, repo=repo, replaces=replaces,
                                 manual=manual, local_source=local_source)

    def classify(self, records: Iterable[InstalledPackage]) -> ClassificationResult:
        """Classify every record; one failure never stops the rest."""
        result = ClassificationResult()
        for record in records:
            result.add(self.classify_one(record))
        result.sort()
        return result


def select_candidates(records: Iterable[InstalledPackage], name_filter: str = '',
                      max_packages: int = 0) -> Tuple[List[InstalledPackage], int]:
    """Apply NAME_FILTER and MAX_PACKAGES before classification.

    Records are sorted (name, version, release, arch) first, so the same
    limit always selects the same packages.

    Returns:
        (selected records, number filtered out)
    """
    records = sorted(records, key=lambda r: sort_key(r.signature))
    total = len(records)
    if name_filter:
        pattern = re.compile(name_filter)
        records = [r for r in records if pattern.search(r.name)]
    if max_packages > 0:
        records = records[:max_packages]
    return records, total - len(records)


def apply_repo_filter(result: ClassificationResult, repos: Iterable[str]) -> ClassificationResult:
    """Keep only the given repositories (UNKNOWN packages are always kept)."""
    repos = set(repos)
    if not repos:
        return result
    for repo in list(result.by_repo):
        if repo not in repos:
            groups = result.by_repo.pop(repo)
            result.filtered_out += sum(len(items) for items in groups.values())
    return result


def limit_changed(result: ClassificationResult, max_changed: int) -> ClassificationResult:
    """Apply MAX_CHANGED_PACKAGES: keep the first N NEW/UPDATE packages.

    Ordering is by (name, version, release, arch) across repositories;
    the remainder moves to `deferred`.
    """
    if max_changed <= 0:
        return result
    changed = sorted(result.changed(), key=lambda i: sort_key(i.signature))
    for item in changed[max_changed:]:
        result.by_repo[item.repo][item.status].remove(item)
        result.deferred.append(item)
    result.sort()
    return result


def classify(installed_records: Iterable[InstalledPackage], upstream_index: Dict[str, Set[Signature]],
             local_mirror_state: LocalMirrorState, manual_repos: Iterable[str] = (),
             excluded_repos: Iterable[str] = (), priority: Iterable[str] = (),
             local_rpm_sources: Iterable[Path] = ()) -> ClassificationResult:
    """Classify installed packages in one call.

    Args:
        installed_records: Installed packages with dnf source repository
        upstream_index: Source -> available signatures
        local_mirror_state: Current local mirror contents
        manual_repos: Local-only repositories
        excluded_repos: Sources to ignore
        priority: Tie-break order for signatures offered by several sources
        local_rpm_sources: Directories with locally built RPMs

    Returns:
        ClassificationResult grouped by repository
    """
    excluded = set(excluded_repos)
    index = {s: sigs for s, sigs in upstream_index.items() if s not in excluded}
    classifier = Classifier(
        ReverseLookup(index, priority),
        local_mirror_state,
        tracked_sources=index.keys(),
        manual_repos=manual_repos,
        excluded_repos=excluded,
        local_rpm_sources=local_rpm_sources,
    )
    return classifier.classify(installed_records)
