"""
Sync engine for two-way reconciliation between the CRM and a provider.

Orchestrates one run end to end:
- Validates the owner's configuration and opens a run record
- Loads credentials and fetches the provider contact set
- Loads CRM contacts and mappings
- Plans with the two-pass Reconciler
- Applies mutations concurrently, isolating per-contact failures
- Finalizes the run and folds it into the config statistics
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from typing import Optional

from crm_contact_sync.api.provider import (
    DirectoryProvider,
    ProviderError,
    ProviderRegistry,
    RemoteAuthExpiredError,
    RemoteContact,
    TokenBundle,
)
from crm_contact_sync.auth.google_auth import CredentialStore, CredentialStoreError
from crm_contact_sync.storage.contact_store import ContactStore
from crm_contact_sync.storage.db import IntegrityViolation, PersistenceError, SyncDatabase
from crm_contact_sync.storage.models import (
    Mapping,
    RunStatus,
    RunTrigger,
    SyncConfig,
    SyncRun,
    utcnow,
)
from crm_contact_sync.sync.appliers import MutationAppliers
from crm_contact_sync.sync.changelog import ChangeLogWriter
from crm_contact_sync.sync.contact import LocalContact, NormalizedContact
from crm_contact_sync.sync.errors import (
    ConfigInactiveError,
    ConfigNotFoundError,
    ItemProcessingError,
    LocalFetchError,
    RemoteFetchError,
    RunInProgressError,
)
from crm_contact_sync.sync.reconciler import ReconciliationPlan, Reconciler
from crm_contact_sync.utils.logging import get_run_logger

logger = logging.getLogger(__name__)

DEFAULT_ACTION_WORKERS = 4
DEFAULT_STALE_RUN_MINUTES = 120


class SyncEngine:
    """
    Runs reconciliations for sync configurations.

    begin_run() performs every check that can reject a request and
    records the in-progress run; execute() does the actual work and may
    be called on another thread.

    Usage:
        engine = SyncEngine(
            database=SyncDatabase('/path/to/sync.db'),
            contact_store=SQLiteContactStore(database),
            providers=registry,
            credential_store=CredentialStore(),
        )

        # Open a run (raises if another run is in progress)
        run = engine.begin_run("owner-42")

        # Reconcile
        run = engine.execute(run)
        print(run.summary)

        # Or both in one call
        run = engine.run_sync("owner-42")
    """

    def __init__(
        self,
        database: SyncDatabase,
        contact_store: ContactStore,
        providers: ProviderRegistry,
        credential_store: CredentialStore,
        action_workers: int = DEFAULT_ACTION_WORKERS,
        stale_run_minutes: int = DEFAULT_STALE_RUN_MINUTES,
    ):
        """
        Initialize the sync engine.

        Args:
            database: SyncDatabase for configs, mappings, runs and the change log
            contact_store: CRM contact storage
            providers: Registry used to create a provider instance per run
            credential_store: Where connected accounts' tokens are kept
            action_workers: Threads applying mutations within one run
            stale_run_minutes: In-progress runs older than this are marked
                failed before a new run starts
        """
        self.database = database
        self.contact_store = contact_store
        self.providers = providers
        self.credential_store = credential_store
        self.action_workers = max(1, action_workers)
        self.stale_run_minutes = stale_run_minutes
        self.changelog = ChangeLogWriter(database)

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    def resolve_config(
        self, owner_id: str, config_id: Optional[int] = None, provider: str = "google"
    ) -> SyncConfig:
        """
        Find the owner's configuration.

        Raises:
            ConfigNotFoundError: If there is none, or config_id belongs to
                another owner
        """
        if config_id is not None:
            config = self.database.get_config(config_id)
        else:
            config = self.database.get_config_for_owner(owner_id, provider)

        if config is None or config.owner_id != owner_id:
            raise ConfigNotFoundError(
                f"No sync configuration for owner {owner_id}"
                + (f" (config {config_id})" if config_id is not None else "")
                + "; connect first"
            )
        return config

    def begin_run(
        self,
        owner_id: str,
        config_id: Optional[int] = None,
        trigger: RunTrigger = RunTrigger.MANUAL,
        provider: str = "google",
    ) -> SyncRun:
        """
        Validate the configuration and record a new in-progress run.

        Raises:
            ConfigNotFoundError: If the owner has no configuration
            ConfigInactiveError: If the configuration was disconnected
            RunInProgressError: If the configuration already has a live run
        """
        config = self.resolve_config(owner_id, config_id, provider)
        if not config.is_active:
            raise ConfigInactiveError(
                f"Sync configuration {config.id} is disconnected; reconnect first"
            )

        cutoff = utcnow() - timedelta(minutes=self.stale_run_minutes)
        recovered = self.database.fail_stale_runs(config.id, cutoff)
        if recovered:
            logger.warning(
                f"Marked {recovered} stale run(s) of config {config.id} as failed"
            )

        run = SyncRun(
            config_id=config.id,
            owner_id=owner_id,
            trigger=trigger,
            sync_mode=config.sync_mode,
        )
        try:
            self.database.create_run(run)
        except IntegrityViolation as e:
            active = self.database.get_active_run(config.id)
            raise RunInProgressError(config.id, active.id if active else None) from e

        logger.info(
            f"Started {trigger.value} sync run {run.id} for owner {owner_id} "
            f"({config.sync_mode.value})"
        )
        return run

    def run_sync(
        self,
        owner_id: str,
        config_id: Optional[int] = None,
        trigger: RunTrigger = RunTrigger.MANUAL,
    ) -> SyncRun:
        """Open and execute a run on the calling thread."""
        run = self.begin_run(owner_id, config_id, trigger)
        return self.execute(run)

    def execute(self, run: SyncRun) -> SyncRun:
        """
        Reconcile and finalize an in-progress run.

        Per-contact failures are recorded on the run, which finishes as
        PARTIAL. Anything else (auth, fetch or load failures) marks the
        run FAILED and is re-raised.

        Returns:
            The finished run
        """
        run_log = get_run_logger(__name__, run.id)
        started = time.monotonic()
        config = self.database.get_config(run.config_id)

        try:
            if config is None:
                raise ConfigNotFoundError(f"Sync configuration {run.config_id} was removed")

            provider = self.providers.create(config.provider)
            remote_contacts, unreadable = self._fetch_remote(provider, config, run)
            local_contacts, mappings, tombstones = self._load_local(config)
            run_log.info(
                f"Reconciling {len(remote_contacts)} provider contacts with "
                f"{len(local_contacts)} CRM contacts ({len(mappings)} mapped)"
            )

            plan = Reconciler.for_config(config).plan(
                remote_contacts,
                local_contacts,
                mappings,
                tombstones,
                unreadable_remote_ids=unreadable,
            )
            run.counters.skipped += plan.skipped
            run.counters.conflicts += plan.conflicts

            appliers = MutationAppliers(
                provider,
                self.contact_store,
                self.database,
                self.changelog,
                run,
                deletion_handling=config.deletion_handling,
            )
            self._apply(plan, appliers, run)

        except Exception as e:
            run_log.error(f"Sync run failed: {e}")
            try:
                self._finish(run, started, error=e)
            except PersistenceError as finish_error:
                run_log.error(f"Could not record the failed run: {finish_error}")
            raise

        self._finish(run, started)
        run_log.info(f"Sync run {run.status.value}: {run.summary}")
        return run

    # =========================================================================
    # Fetching
    # =========================================================================

    def _fetch_remote(
        self, provider: DirectoryProvider, config: SyncConfig, run: SyncRun
    ) -> tuple[list[NormalizedContact], set[str]]:
        """
        Fetch and normalize the provider contact set.

        Contacts that cannot be normalized are recorded as item errors;
        their ids are returned so their mappings are left alone.

        Raises:
            RemoteAuthExpiredError: If credentials are missing or expired
            RemoteFetchError: If listing fails
        """
        if not config.credential_ref:
            raise RemoteAuthExpiredError(
                f"No {config.provider} account is connected for owner {config.owner_id}"
            )

        try:
            tokens = self.credential_store.load(config.credential_ref)
        except CredentialStoreError as e:
            raise RemoteFetchError(f"Stored credentials are unreadable: {e}") from e
        if tokens is None:
            raise RemoteAuthExpiredError(
                f"Stored credentials for owner {config.owner_id} are missing; reconnect"
            )

        access_token = tokens.access_token
        credentials = provider.build_credentials(tokens)
        if tokens.access_token != access_token:
            self._save_refreshed_tokens(config, tokens)

        try:
            raw_contacts = provider.fetch_all_contacts(credentials)
        except RemoteAuthExpiredError:
            raise
        except ProviderError as e:
            raise RemoteFetchError(f"Failed to fetch {config.provider} contacts: {e}") from e

        contacts: list[NormalizedContact] = []
        unreadable: set[str] = set()
        for raw in raw_contacts:
            remote_id = _raw_id(raw)
            try:
                contact = provider.normalize(raw)
                if not contact.remote_id:
                    raise ValueError("contact has no identifier")
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                error = ItemProcessingError(
                    f"Unreadable provider contact: {e}",
                    remote_id=remote_id,
                    action="normalize",
                )
                run.counters.errors += 1
                run.error_details.append(error.to_detail())
                if remote_id:
                    unreadable.add(remote_id)
                continue
            contacts.append(contact)

        return contacts, unreadable

    def _save_refreshed_tokens(self, config: SyncConfig, tokens: TokenBundle) -> None:
        try:
            self.credential_store.update(config.credential_ref, tokens)
        except CredentialStoreError as e:
            # The refreshed token is still usable for this run
            logger.warning(f"Could not persist refreshed token: {e}")

    def _load_local(
        self, config: SyncConfig
    ) -> tuple[list[LocalContact], list[Mapping], list[Mapping]]:
        """
        Load CRM contacts, active mappings and tombstones.

        Raises:
            LocalFetchError: If any of them cannot be read
        """
        try:
            contacts = self.contact_store.fetch_all(config.owner_id)
            mappings = self.database.get_active_mappings(config.owner_id)
            tombstones = self.database.get_deleted_mappings(config.owner_id)
        except PersistenceError as e:
            raise LocalFetchError(f"Failed to load CRM contacts: {e}") from e
        return contacts, mappings, tombstones

    # =========================================================================
    # Applying
    # =========================================================================

    def _apply(
        self, plan: ReconciliationPlan, appliers: MutationAppliers, run: SyncRun
    ) -> None:
        """
        Apply every mutation of the plan on a thread pool.

        Counters are only touched here, on the calling thread. Every
        future is collected, even after an unexpected failure.
        """
        mutations = plan.mutations
        if not mutations:
            return

        with ThreadPoolExecutor(
            max_workers=self.action_workers, thread_name_prefix="sync-action"
        ) as pool:
            futures = {pool.submit(appliers.apply, action): action for action in mutations}
            for future in as_completed(futures):
                action = futures[future]
                try:
                    operation = future.result()
                except ItemProcessingError as e:
                    run.counters.errors += 1
                    run.error_details.append(e.to_detail())
                    continue
                except Exception as e:
                    logger.warning(f"Failed to {action.describe()}: {e}")
                    run.counters.errors += 1
                    run.error_details.append(
                        ItemProcessingError(str(e), action=action.kind.value).to_detail()
                    )
                    continue
                run.counters.record(operation)

    # =========================================================================
    # Finalizing
    # =========================================================================

    def _finish(
        self, run: SyncRun, started: float, error: Optional[BaseException] = None
    ) -> None:
        run.completed_at = utcnow()
        run.duration = round(time.monotonic() - started, 3)
        counters = run.counters

        if error is not None:
            run.status = RunStatus.FAILED
            counters.errors += 1
            run.error_details.append(
                {
                    "error": str(error),
                    "action": "run",
                    "type": type(error).__name__,
                    "fatal": True,
                }
            )
            run.summary = f"Sync failed: {error}"
        else:
            run.status = RunStatus.PARTIAL if counters.errors else RunStatus.COMPLETED
            run.summary = counters.summary()

        run.total_contacts = counters.total_contacts
        self.database.finalize_run(run)

        # Reload so concurrent settings changes are not overwritten
        config = self.database.get_config(run.config_id)
        if config is None:
            return
        config.stats.record(
            run.status, run.duration, counters.total_created + counters.total_updated
        )
        config.last_run_at = run.completed_at
        config.schedule_next_run(run.completed_at)
        self.database.update_config(config)

    def __repr__(self) -> str:
        return (
            f"SyncEngine(providers={self.providers.names()}, "
            f"action_workers={self.action_workers})"
        )


def _raw_id(raw: RemoteContact) -> Optional[str]:
    if isinstance(raw, dict):
        value = raw.get("resourceName")
        return value if isinstance(value, str) and value else None
    return None
