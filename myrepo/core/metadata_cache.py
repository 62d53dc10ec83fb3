"""
Upstream metadata cache.

Keeps, per upstream repository, the set of package signatures the
repository offers, so that the expensive `dnf repoquery` runs at most
once per freshness window.

Layout:
    <cache_dir>/<source>.json   - {"source", "timestamp", "packages": [NEVRA, ...]}
    <cache_dir>/<source>.lock   - writer lock (flock)

Writes go to a temp file in the same directory and are moved into place
with os.replace(), so concurrent readers (other runs) never see a
partial file.
"""

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from .errors import PackageManagerError
from .rpm import Signature, parse_nevra

logger = logging.getLogger(__name__)

# Default freshness window (seconds)
DEFAULT_MAX_AGE = 4 * 3600

CACHE_FORMAT_VERSION = 1


@dataclass
class CacheEntry:
    """A persisted package list for one upstream source."""
    source: str
    timestamp: float
    packages: Set[Signature] = field(default_factory=set)

    def age(self, now: float) -> float:
        return max(0.0, now - self.timestamp)

    def to_json(self) -> str:
        return json.dumps({
            'version': CACHE_FORMAT_VERSION,
            'source': self.source,
            'timestamp': self.timestamp,
            'packages': sorted(sig.nevra for sig in self.packages),
        }, indent=0)

    @classmethod
    def from_json(cls, data: str) -> 'CacheEntry':
        d = json.loads(data)
        packages = set()
        for nevra in d.get('packages', []):
            sig = parse_nevra(nevra)
            if sig is not None:
                packages.add(sig)
        return cls(source=d['source'], timestamp=float(d['timestamp']), packages=packages)


@dataclass
class IndexResult:
    """Result of looking up one source."""
    source: str
    packages: Set[Signature]
    from_cache: bool = False
    stale: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def effective_max_age(day_max_age: int, night_max_age: int = 0,
                      night_start: int = 22, night_end: int = 6,
                      now: Optional[datetime] = None) -> int:
    """Pick the freshness window for the current time of day.

    Between night_start and night_end (wrapping midnight) the night value
    applies when it is non-zero.
    """
    if not night_max_age:
        return day_max_age
    hour = (now or datetime.now()).hour
    if night_start <= night_end:
        is_night = night_start <= hour < night_end
    else:
        is_night = hour >= night_start or hour < night_end
    return night_max_age if is_night else day_max_age


def _safe_name(source: str) -> str:
    """Turn a repo id (may contain ':' or '/') into a file name."""
    return re.sub(r'[^A-Za-z0-9._-]', '_', source)


class MetadataCache:
    """Per-source cache of available package signatures.

    Args:
        cache_dir: Directory holding the JSON files
        fetch: Callable(source) -> set of Signature, the upstream query
        max_age: Freshness window in seconds
        full_rebuild: Always re-query, ignoring cached entries
        parallel: Max concurrent upstream queries
        clock: Time source (for tests)
        persist: Write refreshed entries to disk (off for dry runs)
    """

    def __init__(self, cache_dir: Path, fetch: Callable[[str], Set[Signature]],
                 max_age: int = DEFAULT_MAX_AGE, full_rebuild: bool = False,
                 parallel: int = 4, clock: Callable[[], float] = time.time,
                 persist: bool = True):
        self.cache_dir = Path(cache_dir)
        self.fetch = fetch
        self.max_age = max_age
        self.full_rebuild = full_rebuild
        self.parallel = max(1, parallel)
        self.clock = clock
        self.persist = persist
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # =========================================================================
    # Storage
    # =========================================================================

    def cache_path(self, source: str) -> Path:
        return self.cache_dir / f"{_safe_name(source)}.json"

    def _lock_for(self, source: str) -> threading.Lock:
        with self._locks_guard:
            if source not in self._locks:
                self._locks[source] = threading.Lock()
            return self._locks[source]

    def load(self, source: str) -> Optional[CacheEntry]:
        """Read the persisted entry for a source, or None if absent/corrupt."""
        path = self.cache_path(source)
        try:
            entry = CacheEntry.from_json(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None
        if entry.source != source:
            logger.warning(f"Cache file {path} belongs to {entry.source}, ignoring")
            return None
        return entry

    def store(self, source: str, packages: Set[Signature],
              timestamp: Optional[float] = None) -> CacheEntry:
        """Persist the package list for a source atomically."""
        entry = CacheEntry(source, self.clock() if timestamp is None else timestamp, set(packages))
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.cache_path(source)
        lock_path = path.with_suffix('.lock')

        with self._lock_for(source), open(lock_path, 'w') as lock_fd:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            try:
                with tempfile.NamedTemporaryFile('w', dir=self.cache_dir, prefix=f".{path.name}.",
                                                 suffix='.tmp', delete=False) as tmp:
                    tmp.write(entry.to_json())
                    tmp.flush()
                    os.fsync(tmp.fileno())
                try:
                    os.replace(tmp.name, path)
                except OSError:
                    os.unlink(tmp.name)
                    raise
            finally:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)

        return entry

    # =========================================================================
    # Lookup
    # =========================================================================

    def is_fresh(self, entry: Optional[CacheEntry], max_age: Optional[int] = None) -> bool:
        """Whether an entry may be used without querying upstream."""
        if entry is None or self.full_rebuild:
            return False
        limit = self.max_age if max_age is None else max_age
        return entry.age(self.clock()) <= limit

    def get_index(self, source: str, max_age: Optional[int] = None) -> IndexResult:
        """Return the available signatures for one source.

        Fresh cache entries are returned as-is. Otherwise upstream is
        queried and the result persisted. When the query fails, a stale
        entry is returned if one exists, else an empty set; neither case
        raises.
        """
        cached = self.load(source)
        if self.is_fresh(cached, max_age):
            logger.debug(f"Using cached metadata for {source} "
                         f"({int(cached.age(self.clock()))}s old, {len(cached.packages)} packages)")
            return IndexResult(source, cached.packages, from_cache=True)

        logger.info(f"Fetching metadata for {source}...")
        try:
            packages = self.fetch(source)
        except (PackageManagerError, OSError) as e:
            if cached is not None:
                logger.warning(f"Metadata query for {source} failed, using stale cache: {e}")
                return IndexResult(source, cached.packages, from_cache=True, stale=True, error=str(e))
            logger.warning(f"Metadata query for {source} failed, no cache available: {e}")
            return IndexResult(source, set(), error=str(e))

        if self.persist:
            try:
                self.store(source, packages)
            except OSError as e:
                logger.warning(f"Could not write metadata cache for {source}: {e}")
        logger.debug(f"Fetched {len(packages)} packages for {source}")
        return IndexResult(source, set(packages))

    def build_index(self, sources: Iterable[str], max_age: Optional[int] = None,
                    cancel: Optional[threading.Event] = None) -> Dict[str, IndexResult]:
        """Look up many sources, refreshing stale ones concurrently.

        Args:
            sources: Upstream source names
            max_age: Freshness window override
            cancel: If set, no new queries are started

        Returns:
            Dict source -> IndexResult, in the order of `sources`
        """
        sources = list(dict.fromkeys(sources))
        results: Dict[str, IndexResult] = {}
        if not sources:
            return results

        with ThreadPoolExecutor(max_workers=self.parallel) as executor:
            futures = {}
            for source in sources:
                if cancel is not None and cancel.is_set():
                    break
                futures[executor.submit(self.get_index, source, max_age)] = source

            for future in as_completed(futures):
                source = futures[future]
                results[source] = future.result()

        return {s: results[s] for s in sources if s in results}

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup(self, keep_sources: Iterable[str], max_days: int) -> List[Path]:
        """Remove cache files of sources no longer tracked and older than max_days.

        Returns:
            List of removed paths
        """
        if not self.cache_dir.is_dir() or max_days <= 0:
            return []

        keep = {self.cache_path(s).name for s in keep_sources}
        cutoff = self.clock() - max_days * 86400
        removed = []
        for path in self.cache_dir.glob('*.json'):
            if path.name in keep:
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
                lock_path = path.with_suffix('.lock')
                if lock_path.exists():
                    lock_path.unlink()
                removed.append(path)
                logger.debug(f"Removed stale cache file {path.name}")
            except OSError as e:
                logger.warning(f"Failed to remove cache file {path}: {e}")
        return removed


def upstream_index(results: Dict[str, IndexResult]) -> Dict[str, Set[Signature]]:
    """Reduce lookup results to the plain source -> signatures mapping."""
    return {source: result.packages for source, result in results.items()}
