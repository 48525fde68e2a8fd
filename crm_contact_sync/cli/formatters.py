"""CLI output formatting functions.

This module contains functions for displaying configs, sync runs, the
change log and statistics on the command line.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import click

from crm_contact_sync.storage.models import RunStatus

if TYPE_CHECKING:
    from crm_contact_sync.service import Page
    from crm_contact_sync.storage.models import ChangeLogEntry, SyncConfig, SyncRun

STATUS_COLORS = {
    RunStatus.COMPLETED: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "red",
    RunStatus.IN_PROGRESS: "cyan",
}

# Error details shown per run before truncating
MAX_ERRORS_SHOWN = 10


def _when(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _status(status: RunStatus) -> str:
    return click.style(status.value, fg=STATUS_COLORS[status])


def show_config(config: "SyncConfig") -> None:
    """Display an owner's sync configuration."""
    click.echo("=== Sync Configuration ===\n")
    state = click.style("connected", fg="green") if config.is_active else click.style(
        "disconnected", fg="yellow"
    )
    click.echo(f"Owner:             {config.owner_id}")
    click.echo(f"Provider:          {config.provider} ({state})")
    click.echo(f"Account:           {config.remote_account_email or 'unknown'}")
    click.echo(f"Sync mode:         {config.sync_mode.value}")
    click.echo(f"Conflict policy:   {config.conflict_policy.value}")
    click.echo(f"Deletion handling: {config.deletion_handling.value}")

    if config.auto_sync_enabled:
        click.echo(f"Auto-sync:         every {config.sync_frequency} minute(s)")
        click.echo(f"Next run:          {_when(config.next_run_at)}")
    else:
        click.echo("Auto-sync:         off")
    click.echo(f"Last run:          {_when(config.last_run_at)}")

    if config.field_mapping:
        click.echo("\nField mapping:")
        for key, value in sorted(config.field_mapping.items()):
            click.echo(f"  {key}: {value}")


def show_run(run: "SyncRun", verbose: bool = False) -> None:
    """
    Display one sync run with its counters and errors.

    Args:
        run: The run to display
        verbose: Also show every recorded error instead of the first few
    """
    click.echo(f"Run:       {run.id}")
    click.echo(f"Status:    {_status(run.status)}")
    click.echo(f"Trigger:   {run.trigger.value}")
    click.echo(f"Mode:      {run.sync_mode.value}")
    click.echo(f"Started:   {_when(run.started_at)}")
    if run.is_finished:
        click.echo(f"Completed: {_when(run.completed_at)}")
        if run.duration is not None:
            click.echo(f"Duration:  {run.duration:.2f}s")
    if run.summary:
        click.echo(f"Summary:   {run.summary}")

    counters = run.counters
    click.echo("\n                 CRM   Provider")
    click.echo(f"  Created    {counters.created_local:>8} {counters.created_remote:>10}")
    click.echo(f"  Updated    {counters.updated_local:>8} {counters.updated_remote:>10}")
    click.echo(f"  Deleted    {counters.deleted_local:>8} {counters.deleted_remote:>10}")
    click.echo(f"\n  Skipped:   {counters.skipped}")
    click.echo(f"  Conflicts: {counters.conflicts}")
    click.echo(f"  Errors:    {counters.errors}")

    if run.error_details:
        click.echo(click.style("\nErrors:", fg="red"))
        shown = run.error_details if verbose else run.error_details[:MAX_ERRORS_SHOWN]
        for detail in shown:
            click.echo(f"  - {_describe_error(detail)}")
        remaining = len(run.error_details) - len(shown)
        if remaining > 0:
            click.echo(f"  ... and {remaining} more (use --verbose to see all)")


def _describe_error(detail: dict[str, Any]) -> str:
    parts = []
    if detail.get("fatal"):
        parts.append("[fatal]")
    if detail.get("action"):
        parts.append(f"{detail['action']}:")
    parts.append(str(detail.get("error", "unknown error")))
    ids = [
        f"{key}={detail[key]}"
        for key in ("local_id", "remote_id")
        if detail.get(key)
    ]
    if ids:
        parts.append(f"({', '.join(ids)})")
    return " ".join(parts)


def show_history(page: "Page[SyncRun]") -> None:
    """Display one page of run history as a table."""
    if not page.items:
        click.echo("No sync runs recorded yet.")
        return

    click.echo(
        f"{'RUN':<36}  {'STATUS':<11}  {'TRIGGER':<7}  {'STARTED':<19}  SUMMARY"
    )
    for run in page.items:
        status = click.style(
            f"{run.status.value:<11}", fg=STATUS_COLORS[run.status]
        )
        click.echo(
            f"{run.id:<36}  {status}  {run.trigger.value:<7}  "
            f"{_when(run.started_at):<19}  {run.summary or ''}"
        )
    _show_page_footer(page)


def show_change_log(page: "Page[ChangeLogEntry]") -> None:
    """Display one page of change log entries."""
    if not page.items:
        click.echo("No changes recorded.")
        return

    for entry in page.items:
        label = entry.contact_name or entry.contact_email or entry.local_id or "?"
        click.echo(
            f"{_when(entry.created_at)}  "
            f"{click.style(entry.operation.value, bold=True):<14}  {label}"
        )
        ids = f"local={entry.local_id or '-'} remote={entry.remote_id or '-'}"
        click.echo(f"    {ids}")

        for change in entry.changed_fields:
            click.echo(
                f"    {change.get('field')}: "
                f"'{change.get('local_value', '')}' (CRM) / "
                f"'{change.get('remote_value', '')}' (provider)"
            )

        if entry.conflict_reason:
            winner = entry.winning_side.value if entry.winning_side else "?"
            click.echo(
                f"    conflict: {entry.conflict_reason} "
                f"[{entry.conflict_policy}, {winner} wins]"
            )
    _show_page_footer(page)


def show_stats(stats: dict[str, Any]) -> None:
    """Display the dictionary returned by ContactSyncService.get_stats()."""
    config = stats["config"]
    overview = stats["overview"]
    operations = stats["operations"]
    statistics = stats["statistics"]

    click.echo("=== Sync Statistics ===\n")
    click.echo(f"Owner:            {config['owner_id']}")
    click.echo(f"Provider:         {config['provider']}")
    click.echo(f"Mapped contacts:  {stats['mapped_contacts']}")
    if stats["active_run_id"]:
        click.echo(f"Run in progress:  {stats['active_run_id']}")

    click.echo(f"\nLast {overview['recent_runs']} run(s):")
    click.echo(f"  Completed:    {overview['completed']}")
    click.echo(f"  Partial:      {overview['partial']}")
    click.echo(f"  Failed:       {overview['failed']}")
    click.echo(f"  In progress:  {overview['in_progress']}")
    click.echo(f"  Success rate: {overview['success_rate']}%")

    click.echo("\nOperations over those runs:")
    for name, value in operations.items():
        click.echo(f"  {name.replace('_', ' ').capitalize() + ':':<16} {value}")

    click.echo("\nAll time:")
    click.echo(f"  Total runs:      {statistics['total_runs']}")
    click.echo(f"  Successful:      {statistics['successful_runs']}")
    click.echo(f"  Failed:          {statistics['failed_runs']}")
    click.echo(f"  Contacts synced: {statistics['total_contacts_synced']}")
    click.echo(f"  Last duration:   {statistics['last_run_duration']:.2f}s")
    click.echo(f"  Success rate:    {statistics['success_rate']}%")


def _show_page_footer(page: "Page[Any]") -> None:
    click.echo(f"\nPage {page.page} of {max(page.total_pages, 1)} ({page.total} total)")
    if page.has_next:
        click.echo(f"Use --page {page.page + 1} to see more.")
