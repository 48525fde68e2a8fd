"""
Google People API provider for contact reconciliation.

Implements DirectoryProvider on top of the People API:
- Listing all connections with pagination
- Creating and updating contacts (etag-checked)
- Soft deletion by removing the contact from the starred group
- Hard deletion
- Exponential backoff retry for rate limits and server errors
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Optional

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from crm_contact_sync.api.provider import (
    DirectoryProvider,
    ProviderError,
    RateLimitError,
    RemoteAuthExpiredError,
    RemoteContact,
    StaleVersionError,
    TokenBundle,
)
from crm_contact_sync.sync.contact import NormalizedContact, to_google_person

if TYPE_CHECKING:
    from crm_contact_sync.auth.google_auth import GoogleOAuth

# Person fields needed to project the compared field set
PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "addresses",
        "organizations",
        "biographies",
        "metadata",
    ]
)

# Fields overwritten on update
UPDATE_PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "addresses",
        "organizations",
        "biographies",
    ]
)

STARRED_GROUP = "contactGroups/starred"

DEFAULT_PAGE_SIZE = 1000
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds

logger = logging.getLogger(__name__)


class GoogleContactsProvider(DirectoryProvider):
    """
    Google Contacts directory provider.

    Attributes:
        oauth: GoogleOAuth used for consent URLs, code exchange and credentials
        credentials: Credentials bound by fetch_all_contacts()

    Usage:
        provider = GoogleContactsProvider(oauth)
        creds = provider.build_credentials(tokens)

        # Fetch (binds the provider to this account)
        people = provider.fetch_all_contacts(creds)

        # Mutate the bound account
        created = provider.create_contact({"name": "Jane Doe"})
        provider.update_contact(created["resourceName"], fields, created["etag"])
        provider.soft_delete_contact(created["resourceName"])
    """

    name = "google"

    def __init__(
        self,
        oauth: Optional["GoogleOAuth"] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        """
        Initialize the provider.

        Args:
            oauth: OAuth helper; required for the authorization methods
            page_size: Connections per page when listing (API max 1000)
            max_retries: Maximum attempts for a single API call
            initial_retry_delay: Initial backoff delay in seconds
            max_retry_delay: Maximum backoff delay in seconds
        """
        self.oauth = oauth
        self.page_size = min(page_size, 1000)
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.credentials: Optional[Credentials] = None
        # httplib2 transports are not thread-safe; one service per thread
        self._local = threading.local()

    # =========================================================================
    # Authorization
    # =========================================================================

    def _require_oauth(self) -> "GoogleOAuth":
        if self.oauth is None:
            raise ProviderError("Google provider was created without OAuth settings")
        return self.oauth

    def get_authorization_url(self, owner_id: str) -> str:
        return self._require_oauth().get_authorization_url(owner_id)

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        return self._require_oauth().exchange_code_for_tokens(code)

    def build_credentials(self, tokens: TokenBundle) -> Credentials:
        return self._require_oauth().build_credentials(tokens)

    # =========================================================================
    # Service plumbing
    # =========================================================================

    def bind(self, credentials: Credentials) -> None:
        """Point subsequent calls at the account owning these credentials."""
        self.credentials = credentials
        self._local = threading.local()

    @property
    def service(self) -> Any:
        """
        Get or create the People API service object for the calling thread.

        Raises:
            ProviderError: If no credentials are bound or the service cannot be built
        """
        if self.credentials is None:
            raise ProviderError("No credentials bound; call fetch_all_contacts first")
        service = getattr(self._local, "service", None)
        if service is None:
            try:
                service = build(
                    "people", "v1", credentials=self.credentials, cache_discovery=False
                )
                logger.debug("Created People API service")
            except Exception as e:
                logger.error(f"Failed to create People API service: {e}")
                raise ProviderError(f"Failed to create API service: {e}") from e
            self._local.service = service
        return service

    def _retry_with_backoff(
        self, operation: Callable[[], Any], operation_name: str
    ) -> Any:
        """
        Execute an operation with exponential backoff retry.

        Retries 429/403 (quota) and 5xx responses. Other HTTP errors are
        re-raised unchanged so callers can map their status codes.

        Raises:
            RateLimitError: If retries are exhausted due to rate limits
            RemoteAuthExpiredError: If the token cannot be refreshed
            HttpError: For non-retryable HTTP errors
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                return operation()

            except RefreshError as e:
                raise RemoteAuthExpiredError(
                    f"{operation_name} failed: Google authorization expired"
                ) from e

            except HttpError as e:
                status_code = e.resp.status
                last_attempt = attempt >= self.max_retries - 1

                if status_code in (429, 403) and _is_rate_limit(e):
                    if last_attempt:
                        raise RateLimitError(
                            f"Rate limit exceeded for {operation_name} "
                            f"after {self.max_retries} retries"
                        ) from e
                    logger.warning(
                        f"{operation_name} rate limited, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                if status_code >= 500 and not last_attempt:
                    logger.warning(
                        f"{operation_name} server error ({status_code}), "
                        f"retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                if status_code == 401:
                    raise RemoteAuthExpiredError(
                        f"{operation_name} rejected: Google authorization expired"
                    ) from e

                raise

        raise ProviderError(f"{operation_name} failed after all retries")

    # =========================================================================
    # DirectoryProvider operations
    # =========================================================================

    def fetch_all_contacts(self, credentials: Credentials) -> list[RemoteContact]:
        """
        List every connection of the account, following nextPageToken.

        Raises:
            ProviderError: If listing fails
            RemoteAuthExpiredError: If the credentials are no longer valid
        """
        self.bind(credentials)
        people: list[RemoteContact] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "resourceName": "people/me",
                "personFields": PERSON_FIELDS,
                "pageSize": self.page_size,
            }
            if page_token:
                params["pageToken"] = page_token

            def execute_list(p: dict[str, Any] = params) -> Any:
                return self.service.people().connections().list(**p).execute()

            try:
                response = self._retry_with_backoff(execute_list, "list_contacts")
            except HttpError as e:
                raise ProviderError(f"list_contacts failed: {e}") from e

            connections = response.get("connections", [])
            people.extend(connections)
            logger.debug(f"Fetched {len(connections)} contacts (total {len(people)})")

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Listed {len(people)} Google contacts")
        return people

    def create_contact(self, fields: dict[str, Any]) -> RemoteContact:
        body = to_google_person(fields)

        def execute_create() -> Any:
            return (
                self.service.people()
                .createContact(body=body, personFields=PERSON_FIELDS)
                .execute()
            )

        try:
            person: RemoteContact = self._retry_with_backoff(
                execute_create, "create_contact"
            )
        except HttpError as e:
            raise ProviderError(f"create_contact failed: {e}") from e

        logger.info(f"Created Google contact: {person.get('resourceName')}")
        return person

    def update_contact(
        self, remote_id: str, fields: dict[str, Any], version_tag: Optional[str]
    ) -> RemoteContact:
        """
        Overwrite the compared fields of a contact.

        Raises:
            StaleVersionError: If the etag is outdated (HTTP 409/412 or
                FAILED_PRECONDITION)
            ProviderError: If the contact is missing or the update fails
        """
        body = to_google_person(fields)
        body["etag"] = version_tag

        def execute_update() -> Any:
            return (
                self.service.people()
                .updateContact(
                    resourceName=remote_id,
                    body=body,
                    updatePersonFields=UPDATE_PERSON_FIELDS,
                    personFields=PERSON_FIELDS,
                )
                .execute()
            )

        try:
            person: RemoteContact = self._retry_with_backoff(
                execute_update, f"update_contact({remote_id})"
            )
        except HttpError as e:
            status = e.resp.status
            if status in (409, 412) or (status == 400 and "etag" in str(e).lower()):
                raise StaleVersionError(
                    f"Contact {remote_id} was modified by another client"
                ) from e
            if status == 404:
                raise ProviderError(f"Contact not found: {remote_id}") from e
            raise ProviderError(f"update_contact({remote_id}) failed: {e}") from e

        logger.info(f"Updated Google contact: {remote_id}")
        return person

    def soft_delete_contact(self, remote_id: str) -> None:
        """
        Remove the contact from the starred system group.

        The contact itself stays in the account.
        """
        body = {"resourceNamesToRemove": [remote_id]}

        def execute_unstar() -> Any:
            return (
                self.service.contactGroups()
                .members()
                .modify(resourceName=STARRED_GROUP, body=body)
                .execute()
            )

        try:
            self._retry_with_backoff(execute_unstar, f"soft_delete({remote_id})")
        except HttpError as e:
            raise ProviderError(f"soft_delete({remote_id}) failed: {e}") from e

        logger.info(f"Unstarred Google contact: {remote_id}")

    def hard_delete_contact(self, remote_id: str) -> None:
        """Permanently delete a contact. A 404 counts as already deleted."""

        def execute_delete() -> Any:
            return self.service.people().deleteContact(resourceName=remote_id).execute()

        try:
            self._retry_with_backoff(execute_delete, f"delete_contact({remote_id})")
        except HttpError as e:
            if e.resp.status == 404:
                logger.debug(f"Contact already deleted: {remote_id}")
                return
            raise ProviderError(f"delete_contact({remote_id}) failed: {e}") from e

        logger.info(f"Deleted Google contact: {remote_id}")

    def normalize(self, remote: RemoteContact) -> NormalizedContact:
        return NormalizedContact.from_google_person(remote)


def _is_rate_limit(error: HttpError) -> bool:
    """429 always; 403 only when Google reports a quota or rate limit reason."""
    if error.resp.status == 429:
        return True
    text = str(error).lower()
    return "rate" in text or "quota" in text
