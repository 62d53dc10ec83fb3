"""
Central configuration for myrepo.

Resolution order (later wins):
    1. Built-in defaults
    2. Config file (myrepo.cfg, see below)
    3. Environment variables with the same KEY names
    4. Command line flags (applied by the CLI through overrides)

Config file lookup:
    1. Path given with --config
    2. ./myrepo.cfg
    3. myrepo.cfg next to the running script
    4. /etc/myrepo.cfg

myrepo.cfg format (one setting per line):
    LOCAL_REPO_PATH="/repo"
    MANUAL_REPOS="ol9_edge,pgdg16"   # inline comments are allowed
    # Comments start with #

Structure under LOCAL_REPO_PATH:
    <repo>/getPackage/*.rpm     - Mirrored RPMs
    <repo>/repodata/            - Metadata (repository level)
"""

import logging
import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Config file name
CONFIG_FILE = "myrepo.cfg"
SYSTEM_CONFIG_FILE = Path("/etc/myrepo.cfg")

# Package storage subdirectory inside each repository
PACKAGES_SUBDIR = "getPackage"
REPODATA_DIR = "repodata"

DEFAULT_CACHE_DIR = Path.home() / ".cache" / "myrepo"

LOG_LEVELS = ('ERROR', 'WARN', 'WARNING', 'INFO', 'DEBUG')

# Older key names still accepted in config files and the environment
KEY_ALIASES = {
    'LOCAL_REPOS': 'MANUAL_REPOS',
    'MAX_PARALLEL_DOWNLOADS': 'PARALLEL',
}

# Older keys given in hours; stored in seconds
HOUR_KEYS = {
    'CACHE_MAX_AGE_HOURS': 'CACHE_MAX_AGE',
    'CACHE_MAX_AGE_HOURS_NIGHT': 'CACHE_MAX_AGE_NIGHT',
}

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off', '')


def _list(value: str) -> List[str]:
    """Split a comma (or space) separated list."""
    return [item.strip() for item in value.replace(' ', ',').split(',') if item.strip()]


@dataclass
class MyrepoConfig:
    """All tunables consumed by the sync engine.

    Attribute names are the lowercase form of the config file keys.
    """
    local_repo_path: Path = Path("/repo")
    shared_repo_path: str = "/mnt/hgfs/ForVMware/ol9_repos"
    manual_repos: List[str] = field(default_factory=lambda: ["ol9_edge"])
    local_rpm_sources: List[str] = field(default_factory=list)
    excluded_repos: List[str] = field(default_factory=list)
    repo_priority: List[str] = field(default_factory=list)

    # Upstream metadata cache
    cache_dir: Path = DEFAULT_CACHE_DIR
    cache_max_age: int = 14400
    cache_max_age_night: int = 0
    night_start_hour: int = 22
    night_end_hour: int = 6
    cache_cleanup_days: int = 7

    # Download engine
    batch_size: int = 50
    parallel: int = 6
    repoquery_parallel: int = 4
    max_retries: int = 2
    dnf_query_timeout: int = 120
    dnf_download_timeout: int = 300
    dnf_batch_timeout: int = 1800
    createrepo_timeout: int = 600
    rsync_timeout: int = 3600
    arches: List[str] = field(default_factory=lambda: ["x86_64", "noarch"])

    # Behaviour flags
    dry_run: bool = False
    force_redownload: bool = False
    full_rebuild: bool = False
    no_metadata_update: bool = False
    cleanup_uninstalled: bool = True
    continue_on_error: bool = False
    dnf_serial: bool = False
    user_mode: bool = False
    elevate_commands: bool = True
    sync_only: bool = False

    # Filters and limits
    name_filter: str = ""
    repo_filter: List[str] = field(default_factory=list)
    max_packages: int = 0
    max_changed_packages: int = 0

    # Output
    log_level: str = "INFO"
    log_dir: str = ""
    report_limit: int = 20

    @property
    def limits_active(self) -> bool:
        """True when a filter or limit makes this a partial run."""
        return bool(self.max_packages or self.max_changed_packages
                    or self.name_filter or self.repo_filter)

    def validate(self):
        """Check value ranges.

        Raises:
            ConfigError: on the first invalid value
        """
        positive = ('batch_size', 'parallel', 'repoquery_parallel', 'dnf_query_timeout',
                    'dnf_download_timeout', 'dnf_batch_timeout', 'createrepo_timeout',
                    'rsync_timeout')
        for name in positive:
            if getattr(self, name) < 1:
                raise ConfigError(f"{name.upper()} must be >= 1, got {getattr(self, name)}")

        non_negative = ('max_retries', 'cache_max_age', 'cache_max_age_night', 'cache_cleanup_days',
                        'max_packages', 'max_changed_packages', 'report_limit')
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigError(f"{name.upper()} must be >= 0, got {getattr(self, name)}")

        for name in ('night_start_hour', 'night_end_hour'):
            if not 0 <= getattr(self, name) <= 23:
                raise ConfigError(f"{name.upper()} must be between 0 and 23")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

        if self.name_filter:
            try:
                re.compile(self.name_filter)
            except re.error as e:
                raise ConfigError(f"NAME_FILTER is not a valid regular expression: {e}")


def _field_types() -> Dict[str, str]:
    """Map attribute name to a type tag derived from its default value."""
    defaults = MyrepoConfig()
    types = {}
    for f in fields(MyrepoConfig):
        value = getattr(defaults, f.name)
        if isinstance(value, bool):
            types[f.name] = "bool"
        elif isinstance(value, int):
            types[f.name] = "int"
        elif isinstance(value, Path):
            types[f.name] = "path"
        elif isinstance(value, list):
            types[f.name] = "list"
        else:
            types[f.name] = "str"
    return types


def convert_value(key: str, raw: str, type_name: str):
    """Convert a raw string from file/environment to the field type.

    Raises:
        ConfigError: if the value does not parse
    """
    raw = raw.strip()
    if type_name == 'bool':
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigError(f"{key}: expected 0/1, got '{raw}'")
    if type_name == 'int':
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{key}: expected an integer, got '{raw}'")
    if type_name == 'path':
        return Path(raw).expanduser()
    if type_name == 'list':
        return _list(raw)
    return raw


def _strip_value(value: str) -> str:
    """Remove inline comments and surrounding quotes."""
    value = value.strip()
    if value[:1] in ('"', "'"):
        quote = value[0]
        end = value.find(quote, 1)
        if end != -1:
            return value[1:end]
    if ' #' in value:
        value = value.split(' #', 1)[0]
    return value.strip()


def read_config_file(path: Path) -> Dict[str, str]:
    """Read a KEY=VALUE config file.

    Returns:
        Dict of raw string values keyed by upper-case key

    Raises:
        ConfigError: if the file cannot be read
    """
    config = {}
    try:
        with open(path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                if line.startswith('export '):
                    line = line[len('export '):]
                if '=' not in line:
                    raise ConfigError(f"{path}:{lineno}: expected KEY=VALUE, got '{line}'")
                key, value = line.split('=', 1)
                config[key.strip().upper()] = _strip_value(value)
    except (OSError, IOError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")

    return config


def find_config_file() -> Optional[Path]:
    """Locate the default config file, or None."""
    candidates = [Path.cwd() / CONFIG_FILE]
    if sys.argv and sys.argv[0]:
        candidates.append(Path(sys.argv[0]).resolve().parent / CONFIG_FILE)
    candidates.append(SYSTEM_CONFIG_FILE)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def apply_values(config: MyrepoConfig, values: Mapping[str, str], source: str,
                 quiet: bool = False):
    """Apply raw KEY=VALUE strings onto a config object.

    Args:
        config: Config to update in place
        values: Raw values keyed by upper-case name
        source: Description for log/error messages
        quiet: If True, unknown keys are skipped without logging
    """
    types = _field_types()
    for key, raw in values.items():
        if key in HOUR_KEYS:
            attr = HOUR_KEYS[key].lower()
            setattr(config, attr, convert_value(key, raw, 'int') * 3600)
            continue
        key = KEY_ALIASES.get(key, key)
        attr = key.lower()
        if attr not in types:
            if not quiet:
                logger.debug(f"{source}: ignoring unknown setting {key}")
            continue
        setattr(config, attr, convert_value(key, raw, types[attr]))


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None,
                overrides: Optional[Dict] = None) -> MyrepoConfig:
    """Build the effective configuration.

    Args:
        path: Explicit config file (must exist)
        env: Environment mapping (default: os.environ)
        overrides: Already-typed values from the command line, keyed by
            attribute name; None values are skipped

    Returns:
        Validated MyrepoConfig

    Raises:
        ConfigError: unreadable file or invalid value
    """
    config = MyrepoConfig()

    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = find_config_file()

    if path is not None:
        logger.debug(f"Loading configuration from {path}")
        apply_values(config, read_config_file(path), str(path))

    env = os.environ if env is None else env
    types = _field_types()
    known = set(KEY_ALIASES) | set(HOUR_KEYS)
    env_values = {k: v for k, v in env.items()
                  if k.isupper() and (k.lower() in types or k in known)}
    apply_values(config, env_values, 'environment', quiet=True)

    for attr, value in (overrides or {}).items():
        if value is None:
            continue
        if not hasattr(config, attr):
            raise ConfigError(f"Unknown option: {attr}")
        setattr(config, attr, value)

    config.validate()
    return config
