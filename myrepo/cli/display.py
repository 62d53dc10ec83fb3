"""Display utilities for the myrepo CLI.

Renders the run report:
- a fixed-width per-repository table (new, update, exists, removed,
  failed, skipped)
- the UNKNOWN and failed package lists, capped with "... and N more"
- metadata, sync and source warnings
"""

from typing import Callable, List, Optional

from . import colors
from ..core.report import RunReport, RepoSummary

TABLE_COLUMNS = ('New', 'Update', 'Exists', 'Removed', 'Failed', 'Skipped')
NUMBER_WIDTH = 8


def format_capped(items: List[str], limit: int, indent: int = 2,
                  color_func: Optional[Callable[[str], str]] = None) -> List[str]:
    """Format one item per line, capped at `limit` (0 = no cap).

    Returns:
        Lines, ending with "... and N more" when the list was capped
    """
    pad = ' ' * indent
    shown = items if limit <= 0 else items[:limit]
    lines = [f"{pad}{color_func(item) if color_func else item}" for item in shown]
    hidden = len(items) - len(shown)
    if hidden > 0:
        lines.append(colors.dim(f"{pad}... and {hidden} more"))
    return lines


def _row(name: str, summary: RepoSummary, name_width: int, total: bool = False) -> str:
    values = (summary.new, summary.update, summary.exists,
              summary.removed, summary.failed, summary.skipped)
    label = f"{name}{' (manual)' if summary.manual else ''}"
    cells = [f"{label:<{name_width}}"]
    for column, value in zip(TABLE_COLUMNS, values):
        cell = f"{value:>{NUMBER_WIDTH}}"
        if value and column == 'Failed':
            cell = colors.error(cell)
        elif value and column == 'New':
            cell = colors.success(cell)
        elif value and column == 'Update':
            cell = colors.info(cell)
        elif value and column == 'Skipped':
            cell = colors.warning(cell)
        cells.append(cell)
    line = ' '.join(cells)
    return colors.bold(line) if total else line


def format_table(report: RunReport) -> List[str]:
    """Per-repository counts in a fixed-width table with a total row."""
    names = [f"{name}{' (manual)' if s.manual else ''}" for name, s in report.repos.items()]
    name_width = max([len('Repository'), len('TOTAL')] + [len(n) for n in names])

    header = f"{'Repository':<{name_width}} " + ' '.join(f"{c:>{NUMBER_WIDTH}}" for c in TABLE_COLUMNS)
    rule = '-' * len(header)
    lines = [colors.bold(header), rule]
    for name in sorted(report.repos):
        lines.append(_row(name, report.repos[name], name_width))
    lines.append(rule)
    lines.append(_row('TOTAL', report.totals(), name_width, total=True))
    return lines


def format_report(report: RunReport, limit: int = 20) -> List[str]:
    """Full human-readable summary."""
    title = "Summary (dry run)" if report.dry_run else "Summary"
    lines = [colors.bold(title), '']
    lines += format_table(report)

    if report.unknown:
        lines += ['', colors.error(f"Unknown packages ({len(report.unknown)}):")]
        lines += format_capped([f"{u.signature}: {u.reason}" for u in report.unknown], limit)

    if report.failures:
        lines += ['', colors.error(f"Failed downloads ({len(report.failures)}):")]
        lines += format_capped(
            [f"{f.signature} [{f.repo}]: {f.reason}{f' ({f.detail})' if f.detail else ''}"
             for f in report.failures],
            limit,
        )

    if report.skipped_manual:
        lines += ['', colors.warning(
            f"Manual repository packages not downloaded ({len(report.skipped_manual)}):")]
        lines += format_capped([str(s) for s in report.skipped_manual], limit)

    notes = []
    if report.filtered_out:
        notes.append(f"{report.filtered_out} packages excluded by filters or limits")
    if report.deferred:
        notes.append(f"{report.deferred} changed packages deferred by MAX_CHANGED_PACKAGES")
    if report.downgrades:
        notes.append(colors.warning(f"{report.downgrades} updates older than the local copy"))
    if report.cancelled_downloads:
        notes.append(colors.warning(f"{report.cancelled_downloads} downloads not started (interrupted)"))
    for source in report.stale_sources:
        notes.append(colors.warning(f"Repository {source}: query failed, stale cache used"))
    for source in report.failed_sources:
        notes.append(colors.warning(f"Repository {source}: query failed, no packages indexed"))
    for repo in report.excluded_removed:
        notes.append(f"Excluded repository {repo} removed")
    if report.cleanup_skipped:
        notes.append(f"Cleanup skipped ({report.cleanup_skipped})")
    for result in report.metadata_failures:
        notes.append(colors.error(f"Metadata update failed for {result.repo}: {result.error}"))
    if report.metadata:
        ok = len(report.metadata) - len(report.metadata_failures)
        notes.append(f"Metadata updated for {ok}/{len(report.metadata)} repositories")
    if report.sync is not None:
        if report.sync.performed and report.sync.success:
            notes.append(colors.success("Shared path synchronized"))
        elif report.sync.performed:
            notes.append(colors.error(f"Shared sync failed: {report.sync.error}"))
        else:
            notes.append(f"Shared sync skipped ({report.sync.skipped_reason})")
    if report.cancelled:
        notes.append(colors.warning("Run interrupted"))

    if notes:
        lines.append('')
        lines += notes
    return lines


def print_report(report: RunReport, limit: int = 20):
    for line in format_report(report, limit):
        print(line)
