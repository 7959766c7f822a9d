"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_report`` -- post-sync summary.
- ``format_failure`` -- one-paragraph description of a failed run.
- ``report_to_json`` -- structured dict for logs or callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .errors import SyncError
    from .models import SyncReport


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one change.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = ["Sync report", f"Started: {report.started_at}"]
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    if report.pushed_upserts or report.pushed_deletes:
        lines.append("Pushed:")
        lines.append(f"  Upserts: {report.pushed_upserts}")
        lines.append(f"  Deletes: {report.pushed_deletes}")
        if report.conflicts_resolved:
            lines.append(
                f"  Conflicts resolved: {report.conflicts_resolved}"
            )
        lines.append("")

    if report.pulled_upserts or report.pulled_deletes or report.shielded:
        lines.append(f"Pulled ({report.pages_fetched} page(s)):")
        lines.append(f"  Upserts: {report.pulled_upserts}")
        lines.append(f"  Deletes: {report.pulled_deletes}")
        if report.shielded:
            lines.append(
                f"  Skipped (pushed this run): {report.shielded}"
            )
        lines.append("")

    has_changes = (
        report.pushed_upserts
        or report.pushed_deletes
        or report.pulled_upserts
        or report.pulled_deletes
        or report.shielded
    )
    if not has_changes:
        lines.append("Nothing to sync.")
        lines.append("")

    lines.append(f"Cursor: {report.cursor or '-'}")
    return "\n".join(lines)


def format_failure(error: SyncError) -> str:
    """Describe a failed run, including the phase and underlying cause."""
    text = (
        f"Sync failed during {error.phase.value}: {error.message}"
    )
    if error.cause is not None:
        text += f"\nCaused by: {type(error.cause).__name__}: {error.cause}"
    return text


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a JSON-serialisable dict.

    Args:
        report: The sync report to convert.

    Returns:
        Dict with ``pushed``, ``pulled`` and ``cursor`` sections plus
        timestamps.
    """
    return {
        "pushed": {
            "upserts": report.pushed_upserts,
            "deletes": report.pushed_deletes,
            "conflicts_resolved": report.conflicts_resolved,
        },
        "pulled": {
            "pages": report.pages_fetched,
            "upserts": report.pulled_upserts,
            "deletes": report.pulled_deletes,
            "shielded": report.shielded,
        },
        "cursor": report.cursor,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
    }
