"""
Command-line interface for crm_contact_sync.

Provides CLI commands for connecting an owner's Google account, managing
their sync settings, running reconciliations and inspecting the results.

Usage:
    # Show help
    crm-contact-sync --help

    # Connect Google Contacts for an owner
    crm-contact-sync auth-url --owner owner-42
    crm-contact-sync connect --owner owner-42 CODE

    # Run synchronization
    crm-contact-sync sync --owner owner-42

    # Inspect results
    crm-contact-sync history --owner owner-42
    crm-contact-sync changes --owner owner-42 RUN_ID
    crm-contact-sync stats --owner owner-42
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from crm_contact_sync import __version__
from crm_contact_sync.api.provider import ProviderError
from crm_contact_sync.auth.google_auth import AuthenticationError, CredentialStoreError
from crm_contact_sync.cli.formatters import (
    show_change_log,
    show_config,
    show_history,
    show_run,
    show_stats,
)
from crm_contact_sync.config.loader import (
    DEFAULT_CONFIG_FILE,
    AppSettings,
    ConfigError,
    ConfigLoader,
)
from crm_contact_sync.daemon import (
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    PIDFileManager,
    default_pid_file,
    parse_interval,
)
from crm_contact_sync.service import ContactSyncService
from crm_contact_sync.storage.db import PersistenceError
from crm_contact_sync.storage.models import (
    ChangeType,
    ConflictPolicy,
    DeletionHandling,
    Operation,
    RunStatus,
    SyncMode,
)
from crm_contact_sync.sync.errors import SyncError
from crm_contact_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging
from crm_contact_sync.utils.paths import CONFIG_DIR_ENV_VAR, resolve_config_dir

# Environment variable holding the default owner for every command
OWNER_ENV_VAR = "CRM_CONTACT_SYNC_OWNER"

# Errors a command reports as a one-line message instead of a traceback
SERVICE_ERRORS = (
    SyncError,
    ProviderError,
    AuthenticationError,
    CredentialStoreError,
    PersistenceError,
)

owner_option = click.option(
    "--owner",
    "-o",
    required=True,
    envvar=OWNER_ENV_VAR,
    help=f"CRM owner id (or set {OWNER_ENV_VAR}).",
)

json_option = click.option(
    "--json", "as_json", is_flag=True, help="Print machine-readable JSON."
)


def get_config_file(config_dir: Path, config_file: Optional[str]) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


def get_service(ctx: click.Context) -> ContactSyncService:
    """
    Build the service on first use and reuse it for the rest of the command.

    Commands that never touch the database (e.g. ``daemon status``) never
    open it.
    """
    root = ctx.find_root()
    service = root.obj.get("service")
    if service is None:
        service = ContactSyncService.from_settings(root.obj["settings"])
        root.obj["service"] = service
        root.call_on_close(service.shutdown)
    return service


def _fail(error: Any) -> None:
    click.echo(click.style(f"Error: {error}", fg="red"), err=True)
    sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _choice(enum_cls: Any) -> click.Choice:
    return click.Choice([member.value for member in enum_cls])


@click.group()
@click.version_option(version=__version__, prog_name="crm-contact-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar=CONFIG_DIR_ENV_VAR,
    help="Configuration directory path (default: ~/.crm-contact-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CRM_CONTACT_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    Two-way contact sync between a CRM and Google Contacts.

    Keeps each owner's CRM contacts and their Google Contacts account
    consistent through reconciliation runs.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = resolve_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # The CLI still works with defaults
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    settings = AppSettings.from_dict(config, config_dir=resolved_config_dir)
    ctx.obj["settings"] = settings

    # CLI flag takes precedence over the config file
    effective_verbose = verbose or settings.verbose
    ctx.obj["verbose"] = effective_verbose

    log_dir = settings.log_dir or resolved_config_dir / "logs"
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)


# =============================================================================
# Connection Commands
# =============================================================================


@cli.command("auth-url")
@owner_option
@click.pass_context
def auth_url_command(ctx: click.Context, owner: str) -> None:
    """
    Print the Google authorization URL for an owner.

    Open the URL, grant access, then pass the returned code to
    'crm-contact-sync connect'.

    Examples:

        crm-contact-sync auth-url --owner owner-42
    """
    try:
        url = get_service(ctx).get_authorization_url(owner)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    click.echo("Open this URL in a browser to grant access to Google Contacts:\n")
    click.echo(url)
    click.echo(f"\nThen run: crm-contact-sync connect --owner {owner} CODE")


@cli.command("connect")
@owner_option
@click.argument("code")
@click.pass_context
def connect_command(ctx: click.Context, owner: str, code: str) -> None:
    """
    Complete authorization with the code Google returned.

    Creates the owner's sync configuration, or reactivates it after a
    disconnect. Existing contact mappings are kept.

    Examples:

        crm-contact-sync connect --owner owner-42 4/0AX4XfWh...
    """
    logger = get_logger(__name__)

    try:
        config = get_service(ctx).connect_provider(owner, code)
    except SERVICE_ERRORS as e:
        logger.error(f"Connect failed for owner {owner}: {e}")
        _fail(e)
        return

    account = config.remote_account_email or "Google account"
    click.echo(click.style(f"Connected {account} for owner {owner}.", fg="green"))


@cli.command("disconnect")
@owner_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def disconnect_command(ctx: click.Context, owner: str, yes: bool) -> None:
    """
    Disconnect Google Contacts for an owner.

    Stored tokens are deleted and automatic sync is turned off. Contact
    mappings and run history are kept, so reconnecting resumes where the
    last run left off.

    Examples:

        crm-contact-sync disconnect --owner owner-42 --yes
    """
    if not yes:
        click.confirm(f"Disconnect Google Contacts for owner {owner}?", abort=True)

    try:
        get_service(ctx).disconnect(owner)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    click.echo(click.style(f"Disconnected owner {owner}.", fg="green"))


# =============================================================================
# Config Commands
# =============================================================================


@cli.group("config")
def config_group() -> None:
    """Show or change an owner's sync settings."""


@config_group.command("show")
@owner_option
@json_option
@click.pass_context
def config_show_command(ctx: click.Context, owner: str, as_json: bool) -> None:
    """
    Show an owner's sync configuration.

    Examples:

        crm-contact-sync config show --owner owner-42
    """
    try:
        config = get_service(ctx).get_config(owner)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    if as_json:
        _echo_json(config.to_public_dict())
    else:
        show_config(config)


@config_group.command("set")
@owner_option
@click.option("--sync-mode", type=_choice(SyncMode), help="Which sides runs may change.")
@click.option(
    "--conflict-policy",
    type=_choice(ConflictPolicy),
    help="Which side wins when both sides changed.",
)
@click.option(
    "--deletion-handling",
    type=_choice(DeletionHandling),
    help="What happens when a contact disappears from one side.",
)
@click.option(
    "--auto-sync/--no-auto-sync",
    default=None,
    help="Enable or disable automatic runs by the daemon.",
)
@click.option(
    "--frequency",
    type=click.IntRange(min=1),
    help="Minutes between automatic runs.",
)
@click.option(
    "--field-mapping",
    help="Field mapping as a YAML/JSON mapping, e.g. '{company: organization}'.",
)
@click.pass_context
def config_set_command(
    ctx: click.Context,
    owner: str,
    sync_mode: Optional[str],
    conflict_policy: Optional[str],
    deletion_handling: Optional[str],
    auto_sync: Optional[bool],
    frequency: Optional[int],
    field_mapping: Optional[str],
) -> None:
    """
    Change an owner's sync settings.

    Only the given options are changed.

    Examples:

        crm-contact-sync config set --owner owner-42 --sync-mode remote_to_local

        crm-contact-sync config set --owner owner-42 --auto-sync --frequency 30
    """
    updates: dict[str, Any] = {}
    if sync_mode is not None:
        updates["sync_mode"] = sync_mode
    if conflict_policy is not None:
        updates["conflict_policy"] = conflict_policy
    if deletion_handling is not None:
        updates["deletion_handling"] = deletion_handling
    if auto_sync is not None:
        updates["auto_sync_enabled"] = auto_sync
    if frequency is not None:
        updates["sync_frequency"] = frequency
    if field_mapping is not None:
        try:
            updates["field_mapping"] = yaml.safe_load(field_mapping) or {}
        except yaml.YAMLError as e:
            _fail(f"Could not parse --field-mapping: {e}")
            return

    if not updates:
        click.echo("Nothing to change. See 'crm-contact-sync config set --help'.")
        return

    try:
        config = get_service(ctx).create_or_update_config(owner, **updates)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    click.echo(click.style("Configuration updated.\n", fg="green"))
    show_config(config)


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@owner_option
@json_option
@click.pass_context
def sync_command(ctx: click.Context, owner: str, as_json: bool) -> None:
    """
    Run a reconciliation for an owner and wait for it to finish.

    Exits with status 1 if the run failed, and 2 if it finished with
    per-contact errors.

    Examples:

        crm-contact-sync sync --owner owner-42

        crm-contact-sync -v sync --owner owner-42
    """
    logger = get_logger(__name__)
    verbose = ctx.obj["verbose"]

    if not as_json:
        click.echo(f"Syncing contacts for owner {owner}...")

    try:
        run = get_service(ctx).run_sync_now(owner)
    except SERVICE_ERRORS as e:
        logger.error(f"Sync failed for owner {owner}: {e}")
        _fail(e)
        return

    if as_json:
        _echo_json(run.to_dict())
    else:
        click.echo()
        show_run(run, verbose=verbose)

    if run.status == RunStatus.PARTIAL:
        sys.exit(2)


# =============================================================================
# History Commands
# =============================================================================


@cli.command("history")
@owner_option
@click.option("--page", "-p", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", "-l", type=click.IntRange(min=1), default=20, show_default=True)
@json_option
@click.pass_context
def history_command(
    ctx: click.Context, owner: str, page: int, limit: int, as_json: bool
) -> None:
    """
    List an owner's sync runs, newest first.

    Examples:

        crm-contact-sync history --owner owner-42 --page 2
    """
    try:
        result = get_service(ctx).get_run_history(owner, page=page, limit=limit)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    if as_json:
        _echo_json(
            {
                "runs": [run.to_dict() for run in result.items],
                "total": result.total,
                "page": result.page,
                "limit": result.limit,
            }
        )
    else:
        show_history(result)


@cli.command("run")
@owner_option
@click.argument("run_id")
@json_option
@click.pass_context
def run_command(ctx: click.Context, owner: str, run_id: str, as_json: bool) -> None:
    """
    Show the details of one sync run.

    Examples:

        crm-contact-sync run --owner owner-42 3f2a...
    """
    try:
        run = get_service(ctx).get_run_details(owner, run_id)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    if as_json:
        _echo_json(run.to_dict())
    else:
        show_run(run, verbose=ctx.obj["verbose"])


@cli.command("changes")
@owner_option
@click.argument("run_id")
@click.option(
    "--operation", type=_choice(Operation), help="Only show one kind of operation."
)
@click.option(
    "--change-type", type=_choice(ChangeType), help="Only show creates, updates or deletes."
)
@click.option("--page", "-p", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", "-l", type=click.IntRange(min=1), default=50, show_default=True)
@json_option
@click.pass_context
def changes_command(
    ctx: click.Context,
    owner: str,
    run_id: str,
    operation: Optional[str],
    change_type: Optional[str],
    page: int,
    limit: int,
    as_json: bool,
) -> None:
    """
    Show the change log of one sync run.

    Examples:

        crm-contact-sync changes --owner owner-42 RUN_ID

        crm-contact-sync changes --owner owner-42 RUN_ID --change-type delete
    """
    try:
        result = get_service(ctx).get_change_log(
            owner,
            run_id,
            operation=operation,
            change_type=change_type,
            page=page,
            limit=limit,
        )
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    if as_json:
        _echo_json(
            {
                "changes": [entry.to_dict() for entry in result.items],
                "total": result.total,
                "page": result.page,
                "limit": result.limit,
            }
        )
    else:
        show_change_log(result)


@cli.command("contact-changes")
@owner_option
@click.argument("local_id")
@click.option("--page", "-p", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", "-l", type=click.IntRange(min=1), default=50, show_default=True)
@click.pass_context
def contact_changes_command(
    ctx: click.Context, owner: str, local_id: str, page: int, limit: int
) -> None:
    """
    Show every recorded change of one CRM contact across runs.

    Examples:

        crm-contact-sync contact-changes --owner owner-42 LOCAL_ID
    """
    try:
        result = get_service(ctx).get_contact_change_log(
            owner, local_id, page=page, limit=limit
        )
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    show_change_log(result)


@cli.command("stats")
@owner_option
@json_option
@click.pass_context
def stats_command(ctx: click.Context, owner: str, as_json: bool) -> None:
    """
    Show sync statistics for an owner.

    Examples:

        crm-contact-sync stats --owner owner-42 --json
    """
    try:
        stats = get_service(ctx).get_stats(owner)
    except SERVICE_ERRORS as e:
        _fail(e)
        return

    if as_json:
        _echo_json(stats)
    else:
        show_stats(stats)


# =============================================================================
# Daemon Commands
# =============================================================================


def _pid_file(ctx: click.Context) -> Path:
    settings: AppSettings = ctx.find_root().obj["settings"]
    return settings.daemon_pid_file or default_pid_file(settings.config_dir)


@cli.group("daemon")
def daemon_group() -> None:
    """
    Manage the automatic sync daemon.

    The daemon wakes up at a fixed interval and starts a run for every
    owner whose automatic sync is due.
    """


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help=(
        "How often to look for due runs (e.g., '30s', '5m', '1h'). "
        "Defaults to config value or '5m'."
    ),
)
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Wait one interval before the first dispatch.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: Optional[str], no_initial_sync: bool
) -> None:
    """
    Start the sync daemon in the foreground.

    The daemon will:
    - Start runs for every configuration whose next run is due
    - Keep checking at the given interval
    - Handle SIGTERM/SIGINT by waiting for in-flight runs and exiting
    - Write a PID file for 'daemon stop' and 'daemon status'

    Examples:

        crm-contact-sync -v daemon start

        crm-contact-sync daemon start --interval 1m
    """
    logger = get_logger(__name__)
    settings: AppSettings = ctx.obj["settings"]

    # CLI > config > default
    effective_interval = interval or settings.daemon_interval
    try:
        interval_seconds = parse_interval(effective_interval)
    except ValueError as e:
        _fail(e)
        return

    if ctx.obj["verbose"]:
        click.echo(f"  Config directory: {ctx.obj['config_dir']}")
        click.echo(f"  Interval: {interval_seconds} seconds")
        click.echo(f"  Initial dispatch: {'No' if no_initial_sync else 'Yes'}")

    try:
        service = get_service(ctx)
        scheduler = DaemonScheduler(
            interval=interval_seconds,
            pid_file=_pid_file(ctx),
            run_immediately=not no_initial_sync,
        )
        scheduler.set_dispatch_callback(service.start_due_syncs)
        scheduler.set_shutdown_callback(service.shutdown)

        click.echo(f"Starting daemon with {effective_interval} interval (Ctrl+C to stop)")
        logger.info(f"Daemon starting (interval={interval_seconds}s)")
        scheduler.run()

        click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))

    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'crm-contact-sync daemon stop' to stop the running daemon.")
        sys.exit(1)

    except (DaemonError, PersistenceError) as e:
        logger.error(f"Daemon error: {e}")
        click.echo(click.style(f"Daemon error: {e}", fg="red"), err=True)
        sys.exit(1)


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """
    Stop the running sync daemon.

    Sends SIGTERM; the daemon finishes in-flight runs before exiting.
    """
    logger = get_logger(__name__)
    pid_file = _pid_file(ctx)

    try:
        pid = DaemonScheduler.get_running_pid(pid_file)
    except DaemonError as e:
        _fail(e)
        return

    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")

    if DaemonScheduler.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
        click.echo("The daemon will shut down after in-progress runs finish.")
        logger.info(f"Sent stop signal to daemon (PID: {pid})")
    else:
        click.echo(
            click.style("Failed to send stop signal to daemon.", fg="red"), err=True
        )
        sys.exit(1)


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the sync daemon is running."""
    pid_file = _pid_file(ctx)

    click.echo("=== Daemon Status ===\n")

    try:
        pid = DaemonScheduler.get_running_pid(pid_file)
        stale_pid = None if pid is not None else PIDFileManager(pid_file).read()
    except DaemonError as e:
        _fail(e)
        return

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        if stale_pid is not None:
            click.echo(f"Stale PID file exists (PID: {stale_pid})")
            click.echo("It will be cleaned up on next daemon start.")
        else:
            click.echo("No daemon is currently running.")

    if ctx.obj["verbose"]:
        click.echo(f"\nPID file: {pid_file}")
