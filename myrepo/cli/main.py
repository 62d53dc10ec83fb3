"""
Main CLI entry point for myrepo

Builds the local mirror of the packages installed on this host:

    myrepo                      # full run with myrepo.cfg settings
    myrepo --dry-run --json     # show what would change, JSON summary
    myrepo --name-filter '^kernel' --max-packages 20
    myrepo --sync-only          # regenerate metadata and rsync only

Exit status: 0 clean, 1 aborted, 2 failures or unknown packages,
130 interrupted.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List

from .. import __version__
from ..core.config import load_config
from ..core.errors import ConfigError, MyrepoError
from ..core.operations import SyncOperations
from ..core.report import EXIT_ABORTED, EXIT_INTERRUPTED

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DEBUG_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE = 'myrepo.log'


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser; every option defaults to None (= config value)."""
    parser = argparse.ArgumentParser(
        prog='myrepo',
        description='Mirror the packages installed on this host into a local repository',
        epilog='Settings come from myrepo.cfg and environment variables; flags override them.'
    )

    parser.add_argument('--version', '-V', action='version', version=f'myrepo {__version__}')
    parser.add_argument('--config', '-c', type=Path, help='Config file (default: ./myrepo.cfg)')

    paths = parser.add_argument_group('repositories')
    paths.add_argument('--local-repo-path', type=Path, help='Local mirror root')
    paths.add_argument('--shared-repo-path', help='rsync target ("" disables the sync)')
    paths.add_argument('--manual-repos', type=_csv, metavar='REPOS',
                       help='Comma-separated local-only repositories')
    paths.add_argument('--exclude-repos', type=_csv, metavar='REPOS', dest='excluded_repos',
                       help='Comma-separated repositories to ignore')

    engine = parser.add_argument_group('engine')
    engine.add_argument('--batch-size', type=int, help='Packages per dnf download call')
    engine.add_argument('--parallel', type=int, help='Concurrent download batches')
    engine.add_argument('--cache-max-age', type=int, metavar='SECONDS',
                        help='Upstream metadata freshness window')
    engine.add_argument('--dnf-serial', action='store_true', default=None,
                        help='Query repositories one at a time')

    limits = parser.add_argument_group('filters')
    limits.add_argument('--name-filter', metavar='REGEX', help='Only packages whose name matches')
    limits.add_argument('--repo-filter', type=_csv, metavar='REPOS',
                        help='Only these repositories')
    limits.add_argument('--max-packages', type=int, help='Limit packages before classification')
    limits.add_argument('--max-changed-packages', type=int, help='Limit new+update packages')

    mode = parser.add_argument_group('mode')
    mode.add_argument('--dry-run', '-n', action='store_true', default=None,
                      help='Show what would be done, change nothing')
    mode.add_argument('--force-redownload', action='store_true', default=None,
                      help='Re-fetch packages already present')
    mode.add_argument('--full-rebuild', action='store_true', default=None,
                      help='Ignore the metadata cache and regenerate every repository')
    mode.add_argument('--no-metadata-update', action='store_true', default=None,
                      help='Skip createrepo')
    mode.add_argument('--no-cleanup', action='store_false', default=None,
                      dest='cleanup_uninstalled', help='Keep packages no longer installed')
    mode.add_argument('--sync-only', action='store_true', default=None,
                      help='Only regenerate metadata and sync to the shared path')
    mode.add_argument('--user-mode', action='store_true', default=None,
                      help='Never use sudo')

    output = parser.add_argument_group('output')
    output.add_argument('--json', action='store_true', help='Print the JSON summary')
    output.add_argument('--debug', type=int, nargs='?', const=1, default=0, metavar='N',
                        help='Debug logging (2: per-package detail)')
    output.add_argument('--log-level', choices=('ERROR', 'WARN', 'INFO', 'DEBUG'),
                        type=str.upper, help='Log level')
    output.add_argument('--nocolor', action='store_true', help='Disable colored output')

    return parser


# Parser dests that map onto MyrepoConfig attributes
_OVERRIDE_KEYS = (
    'local_repo_path', 'shared_repo_path', 'manual_repos', 'excluded_repos',
    'batch_size', 'parallel', 'cache_max_age', 'dnf_serial',
    'name_filter', 'repo_filter', 'max_packages', 'max_changed_packages',
    'dry_run', 'force_redownload', 'full_rebuild', 'no_metadata_update',
    'cleanup_uninstalled', 'sync_only', 'user_mode', 'log_level',
)


def config_overrides(args: argparse.Namespace) -> Dict:
    """Command line values to apply on top of file and environment."""
    return {key: getattr(args, key) for key in _OVERRIDE_KEYS if getattr(args, key, None) is not None}


def setup_logging(level: str = 'INFO', debug: int = 0, log_dir: str = ''):
    """Configure logging for the myrepo package.

    Args:
        level: ERROR, WARN, INFO or DEBUG
        debug: --debug level; 1 or more forces DEBUG, 2 adds logger names
        log_dir: Also write myrepo.log in this directory
    """
    level = 'WARNING' if level.upper() == 'WARN' else level.upper()
    if debug:
        level = 'DEBUG'

    fmt = DEBUG_LOG_FORMAT if debug >= 2 else LOG_FORMAT
    logging.basicConfig(format=fmt, stream=sys.stderr)

    package_logger = logging.getLogger('myrepo')
    package_logger.setLevel(getattr(logging, level, logging.INFO))

    if log_dir:
        path = Path(log_dir).expanduser() / LOG_FILE
        if not any(isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve()
                   for h in package_logger.handlers):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(path)
            except OSError as e:
                logger.warning(f"Cannot write log file {path}: {e}")
            else:
                handler.setFormatter(logging.Formatter(fmt))
                package_logger.addHandler(handler)


def install_signal_handlers(cancel: threading.Event) -> Dict:
    """SIGINT/SIGTERM set `cancel`; a second signal interrupts immediately.

    Returns:
        Previous handlers, for restore_signal_handlers()
    """
    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()
        logger.warning("Interrupt received: finishing in-flight work (press again to abort)")

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def restore_signal_handlers(previous: Dict):
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    from . import colors
    colors.init(nocolor=args.nocolor)

    try:
        config = load_config(args.config, overrides=config_overrides(args))
    except ConfigError as e:
        print(colors.error(f"Error: {e}"), file=sys.stderr)
        return EXIT_ABORTED

    setup_logging(config.log_level, args.debug, config.log_dir)

    cancel = threading.Event()
    previous = install_signal_handlers(cancel)
    try:
        report = SyncOperations(config, cancel=cancel).run()
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_INTERRUPTED
    except MyrepoError as e:
        if args.debug:
            logger.exception("Run aborted")
        print(colors.error(f"Error: {e}"), file=sys.stderr)
        return EXIT_ABORTED
    finally:
        restore_signal_handlers(previous)

    from . import display
    if args.json:
        print(report.to_json())
    else:
        display.print_report(report, config.report_limit)

    return report.exit_status(config.continue_on_error)


if __name__ == '__main__':
    sys.exit(main())
