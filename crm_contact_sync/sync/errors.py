"""
Exceptions raised by sync runs and the service surface.

Provider-side failures live in crm_contact_sync.api.provider and
database failures in crm_contact_sync.storage.db.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for sync run errors."""

    pass


class ConfigNotFoundError(SyncError):
    """Raised when no sync configuration exists for the owner/config pair."""

    pass


class ConfigInactiveError(SyncError):
    """Raised when the sync configuration has been disconnected."""

    pass


class ConfigValidationError(SyncError):
    """Raised when a configuration update carries invalid values."""

    pass


class RunInProgressError(SyncError):
    """Raised when a run is requested while another is still in progress."""

    def __init__(self, config_id: int, run_id: Optional[str] = None):
        self.config_id = config_id
        self.run_id = run_id
        detail = f" ({run_id})" if run_id else ""
        super().__init__(f"A sync run is already in progress for config {config_id}{detail}")


class RunNotFoundError(SyncError):
    """Raised when a run id does not exist or belongs to another owner."""

    pass


class RemoteFetchError(SyncError):
    """Raised when the provider contact set cannot be fetched. Fatal to the run."""

    pass


class LocalFetchError(SyncError):
    """Raised when the CRM contact set or mappings cannot be loaded. Fatal to the run."""

    pass


class ItemProcessingError(SyncError):
    """
    Raised when one contact cannot be processed.

    Recorded in the run's error details; the run continues.
    """

    def __init__(
        self,
        message: str,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
        action: Optional[str] = None,
    ):
        super().__init__(message)
        self.local_id = local_id
        self.remote_id = remote_id
        self.action = action

    def to_detail(self) -> dict[str, Any]:
        """Entry stored in SyncRun.error_details."""
        return {
            "error": str(self),
            "action": self.action,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
        }
