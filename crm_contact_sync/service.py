"""
Service surface of crm-contact-sync.

ContactSyncService is what the CLI (or a web layer) talks to. It owns
the engine and the run worker and exposes:
- Provider connection (authorization URL, code exchange, disconnect)
- Per-owner configuration reads and updates
- Starting runs in the background or synchronously
- Run history, run details, change log and statistics queries
- Dispatch of due automatic runs for the daemon

start_sync() returns once the run is recorded. A run that later fails
is only observable through get_run_history()/get_run_details().
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from crm_contact_sync.api.people_api import GoogleContactsProvider
from crm_contact_sync.api.provider import ProviderRegistry
from crm_contact_sync.auth.google_auth import CredentialStore, GoogleOAuth
from crm_contact_sync.config.loader import AppSettings
from crm_contact_sync.daemon.scheduler import DispatchResult
from crm_contact_sync.storage.contact_store import ContactStore, SQLiteContactStore
from crm_contact_sync.storage.db import PersistenceError, SyncDatabase
from crm_contact_sync.storage.models import (
    ChangeLogEntry,
    ChangeType,
    ConflictPolicy,
    DeletionHandling,
    Operation,
    RunStatus,
    RunTrigger,
    SyncConfig,
    SyncMode,
    SyncRun,
    utcnow,
)
from crm_contact_sync.sync.engine import (
    DEFAULT_ACTION_WORKERS,
    DEFAULT_STALE_RUN_MINUTES,
    SyncEngine,
)
from crm_contact_sync.sync.errors import (
    ConfigNotFoundError,
    ConfigValidationError,
    RunInProgressError,
    RunNotFoundError,
    SyncError,
)
from crm_contact_sync.sync.worker import DEFAULT_RUN_WORKERS, RunHandle, RunWorker

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 200
RECENT_RUNS_FOR_STATS = 10

# Settings owners may change through create_or_update_config()
EDITABLE_CONFIG_FIELDS = (
    "sync_mode",
    "conflict_policy",
    "deletion_handling",
    "auto_sync_enabled",
    "sync_frequency",
    "field_mapping",
)


@dataclass
class Page(Generic[T]):
    """One page of a query result."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return page, limit


@dataclass
class _OperationTotals:
    created_local: int = 0
    updated_local: int = 0
    deleted_local: int = 0
    created_remote: int = 0
    updated_remote: int = 0
    deleted_remote: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    by_status: dict[str, int] = field(default_factory=dict)

    def add(self, run: SyncRun) -> None:
        for name, value in run.counters.to_dict().items():
            setattr(self, name, getattr(self, name) + value)
        self.by_status[run.status.value] = self.by_status.get(run.status.value, 0) + 1


class ContactSyncService:
    """
    Facade over the sync engine for one installation.

    Usage:
        service = ContactSyncService.from_settings(ConfigLoader().load_settings())

        url = service.get_authorization_url("owner-42")
        service.connect_provider("owner-42", code)

        run_id = service.start_sync("owner-42")
        ...
        run = service.get_run_details("owner-42", run_id)
    """

    def __init__(
        self,
        database: SyncDatabase,
        providers: ProviderRegistry,
        credential_store: CredentialStore,
        contact_store: Optional[ContactStore] = None,
        run_workers: int = DEFAULT_RUN_WORKERS,
        action_workers: int = DEFAULT_ACTION_WORKERS,
        stale_run_minutes: int = DEFAULT_STALE_RUN_MINUTES,
    ):
        self.database = database
        self.providers = providers
        self.credential_store = credential_store
        self.contact_store = contact_store or SQLiteContactStore(database)
        self.engine = SyncEngine(
            database,
            self.contact_store,
            providers,
            credential_store,
            action_workers=action_workers,
            stale_run_minutes=stale_run_minutes,
        )
        self.worker = RunWorker(database, max_workers=run_workers)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ContactSyncService":
        """Wire the SQLite store and the Google provider from application settings."""
        settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        database = SyncDatabase(str(settings.database_path))
        database.initialize()

        oauth = GoogleOAuth(
            settings.client_secrets_file,
            redirect_uri=settings.redirect_uri,
            auth_timeout=settings.auth_timeout,
        )
        registry = ProviderRegistry()
        registry.register(
            GoogleContactsProvider.name,
            lambda: GoogleContactsProvider(
                oauth,
                page_size=settings.api_page_size,
                max_retries=settings.api_max_retries,
                initial_retry_delay=settings.api_initial_retry_delay,
                max_retry_delay=settings.api_max_retry_delay,
            ),
        )

        return cls(
            database,
            registry,
            CredentialStore(settings.token_dir),
            run_workers=settings.run_workers,
            action_workers=settings.action_workers,
            stale_run_minutes=settings.stale_run_minutes,
        )

    # =========================================================================
    # Provider connection
    # =========================================================================

    def get_authorization_url(self, owner_id: str, provider: str = "google") -> str:
        return self.providers.create(provider).get_authorization_url(owner_id)

    def connect_provider(
        self, owner_id: str, code: str, provider: str = "google"
    ) -> SyncConfig:
        """
        Complete the authorization flow and create or reactivate the config.

        A new config starts bidirectional, newest-wins, soft-delete, with
        auto-sync off.
        """
        tokens = self.providers.create(provider).exchange_code_for_tokens(code)
        reference = self.credential_store.save(owner_id, provider, tokens)

        config = self.database.get_config_for_owner(owner_id, provider)
        if config is None:
            config = SyncConfig(
                owner_id=owner_id,
                provider=provider,
                credential_ref=reference,
                remote_account_email=tokens.remote_account_email,
            )
            self.database.create_config(config)
            logger.info(f"Connected {provider} for owner {owner_id} (config {config.id})")
            return config

        config.is_active = True
        config.credential_ref = reference
        config.remote_account_email = tokens.remote_account_email
        config.schedule_next_run()
        self.database.update_config(config)
        logger.info(f"Reconnected {provider} for owner {owner_id} (config {config.id})")
        return config

    def disconnect(self, owner_id: str, provider: str = "google") -> SyncConfig:
        """
        Deactivate the config and forget the stored credentials.

        Mappings and history are kept so a reconnect resumes where it left off.
        """
        config = self.get_config(owner_id, provider)
        if config.credential_ref:
            self.credential_store.delete(config.credential_ref)

        config.is_active = False
        config.auto_sync_enabled = False
        config.credential_ref = None
        config.next_run_at = None
        self.database.update_config(config)
        logger.info(f"Disconnected {provider} for owner {owner_id}")
        return config

    # =========================================================================
    # Configuration
    # =========================================================================

    def get_config(self, owner_id: str, provider: str = "google") -> SyncConfig:
        """
        Raises:
            ConfigNotFoundError: If the owner never connected the provider
        """
        config = self.database.get_config_for_owner(owner_id, provider)
        if config is None:
            raise ConfigNotFoundError(
                f"Owner {owner_id} has not connected {provider}; connect first"
            )
        return config

    def create_or_update_config(
        self, owner_id: str, provider: str = "google", **updates: Any
    ) -> SyncConfig:
        """
        Change an owner's sync settings.

        Accepts any of EDITABLE_CONFIG_FIELDS; enum fields take their
        string values. The config itself is created by connect_provider().

        Raises:
            ConfigNotFoundError: If the owner never connected the provider
            ConfigValidationError: On unknown fields or invalid values
        """
        unknown = sorted(set(updates) - set(EDITABLE_CONFIG_FIELDS))
        if unknown:
            raise ConfigValidationError(f"Unknown config field(s): {', '.join(unknown)}")

        config = self.get_config(owner_id, provider)
        reschedule = False

        if "sync_mode" in updates:
            config.sync_mode = _parse_enum(SyncMode, "sync_mode", updates["sync_mode"])
        if "conflict_policy" in updates:
            config.conflict_policy = _parse_enum(
                ConflictPolicy, "conflict_policy", updates["conflict_policy"]
            )
        if "deletion_handling" in updates:
            config.deletion_handling = _parse_enum(
                DeletionHandling, "deletion_handling", updates["deletion_handling"]
            )
        if "auto_sync_enabled" in updates:
            value = updates["auto_sync_enabled"]
            if not isinstance(value, bool):
                raise ConfigValidationError("auto_sync_enabled must be true or false")
            reschedule = reschedule or value != config.auto_sync_enabled
            config.auto_sync_enabled = value
        if "sync_frequency" in updates:
            value = updates["sync_frequency"]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigValidationError(
                    f"sync_frequency must be a positive number of minutes, got {value!r}"
                )
            reschedule = reschedule or value != config.sync_frequency
            config.sync_frequency = value
        if "field_mapping" in updates:
            value = updates["field_mapping"]
            if not isinstance(value, dict):
                raise ConfigValidationError("field_mapping must be a mapping")
            config.field_mapping = value

        if reschedule:
            config.schedule_next_run(utcnow())

        self.database.update_config(config)
        logger.info(f"Updated sync config {config.id} for owner {owner_id}")
        return config

    # =========================================================================
    # Runs
    # =========================================================================

    def start_sync(
        self,
        owner_id: str,
        config_id: Optional[int] = None,
        trigger: RunTrigger = RunTrigger.MANUAL,
    ) -> str:
        """
        Start a run in the background and return its id.

        Raises:
            ConfigNotFoundError: If the owner has no configuration
            ConfigInactiveError: If the configuration was disconnected
            RunInProgressError: If a run is already in progress
        """
        return self.submit_sync(owner_id, config_id, trigger).run_id

    def submit_sync(
        self,
        owner_id: str,
        config_id: Optional[int] = None,
        trigger: RunTrigger = RunTrigger.MANUAL,
    ) -> RunHandle:
        """Like start_sync() but returns the handle to wait on."""
        run = self.engine.begin_run(owner_id, config_id, trigger)
        return self.worker.submit(run, lambda: self.engine.execute(run))

    def run_sync_now(self, owner_id: str, config_id: Optional[int] = None) -> SyncRun:
        """Run a sync on the calling thread; fatal failures are re-raised."""
        return self.engine.run_sync(owner_id, config_id, RunTrigger.MANUAL)

    def start_due_syncs(self) -> DispatchResult:
        """Start automatic runs for every configuration whose next run is due."""
        result = DispatchResult()
        for config in self.database.list_due_configs(utcnow()):
            try:
                run_id = self.start_sync(config.owner_id, config.id, RunTrigger.AUTO)
            except RunInProgressError:
                result.busy += 1
                continue
            except (SyncError, PersistenceError) as e:
                result.errors.append(f"config {config.id} (owner {config.owner_id}): {e}")
                continue
            result.started.append(run_id)
        return result

    def wait(self, timeout: Optional[float] = None) -> None:
        self.worker.wait(timeout)

    def shutdown(self, wait: bool = True) -> None:
        self.worker.shutdown(wait=wait)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_run_history(
        self, owner_id: str, page: int = 1, limit: int = 20
    ) -> Page[SyncRun]:
        """Runs for an owner, newest first."""
        page, limit = _page_bounds(page, limit)
        runs = self.database.list_runs(owner_id, limit=limit, offset=(page - 1) * limit)
        return Page(runs, self.database.count_runs(owner_id), page, limit)

    def get_run_details(self, owner_id: str, run_id: str) -> SyncRun:
        """
        Raises:
            RunNotFoundError: If the run does not exist or belongs to another owner
        """
        run = self.database.get_run(run_id)
        if run is None or run.owner_id != owner_id:
            raise RunNotFoundError(f"Sync run not found: {run_id}")
        return run

    def get_change_log(
        self,
        owner_id: str,
        run_id: str,
        operation: Optional[str] = None,
        change_type: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[ChangeLogEntry]:
        """
        Change log rows of one run, newest first.

        Raises:
            RunNotFoundError: If the run does not exist or belongs to another owner
            ValueError: If operation or change_type is not a known value
        """
        self.get_run_details(owner_id, run_id)
        page, limit = _page_bounds(page, limit)
        filters = {
            "run_id": run_id,
            "operation": Operation(operation).value if operation else None,
            "change_type": ChangeType(change_type).value if change_type else None,
        }
        entries = self.database.query_change_log(
            limit=limit, offset=(page - 1) * limit, **filters
        )
        return Page(entries, self.database.count_change_log(**filters), page, limit)

    def get_contact_change_log(
        self, owner_id: str, local_id: str, page: int = 1, limit: int = 50
    ) -> Page[ChangeLogEntry]:
        """Every change recorded for one CRM contact, across runs."""
        page, limit = _page_bounds(page, limit)
        entries = self.engine.changelog.for_contact(
            owner_id, local_id, limit=limit, offset=(page - 1) * limit
        )
        total = self.database.count_change_log(owner_id=owner_id, local_id=local_id)
        return Page(entries, total, page, limit)

    def get_stats(self, owner_id: str, provider: str = "google") -> dict[str, Any]:
        """
        Dashboard statistics for an owner.

        Returns:
            Dictionary with the config, an overview of the most recent
            runs, operation totals over those runs, the recent runs
            themselves and the config's rolling statistics
        """
        config = self.get_config(owner_id, provider)
        recent = self.database.list_runs(owner_id, limit=RECENT_RUNS_FOR_STATS)

        totals = _OperationTotals()
        for run in recent:
            totals.add(run)

        completed = totals.by_status.get(RunStatus.COMPLETED.value, 0)
        finished = len([r for r in recent if r.is_finished])
        active = self.database.get_active_run(config.id)

        return {
            "config": config.to_public_dict(),
            "overview": {
                "recent_runs": len(recent),
                "completed": completed,
                "partial": totals.by_status.get(RunStatus.PARTIAL.value, 0),
                "failed": totals.by_status.get(RunStatus.FAILED.value, 0),
                "in_progress": totals.by_status.get(RunStatus.IN_PROGRESS.value, 0),
                "success_rate": round(completed / finished * 100, 2) if finished else 0.0,
            },
            "operations": {
                name: getattr(totals, name)
                for name in (
                    "created_local",
                    "updated_local",
                    "deleted_local",
                    "created_remote",
                    "updated_remote",
                    "deleted_remote",
                    "skipped",
                    "conflicts",
                    "errors",
                )
            },
            "recent_runs": [run.to_dict() for run in recent],
            "statistics": {
                **config.stats.to_dict(),
                "success_rate": config.stats.success_rate,
            },
            "mapped_contacts": self.database.count_mappings(owner_id),
            "active_run_id": active.id if active else None,
        }


def _parse_enum(enum_cls: Any, name: str, value: Any) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigValidationError(
            f"Invalid {name} '{value}'. Must be one of: {choices}"
        ) from e
