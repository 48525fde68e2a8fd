"""
Unit tests for the People API provider.

Tests GoogleContactsProvider with a mocked googleapiclient service:
pagination, retry/backoff, etag conflicts and the two delete styles.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from crm_contact_sync.api.people_api import (
    DEFAULT_PAGE_SIZE,
    PERSON_FIELDS,
    STARRED_GROUP,
    UPDATE_PERSON_FIELDS,
    GoogleContactsProvider,
)
from crm_contact_sync.api.provider import (
    ProviderError,
    ProviderRegistry,
    RateLimitError,
    RemoteAuthExpiredError,
    StaleVersionError,
    TokenBundle,
    UnknownProviderError,
)


def _http_error(status, content=b"error"):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.reason = ""
    return HttpError(mock_resp, content)


@pytest.fixture
def mock_service():
    return MagicMock()


@pytest.fixture
def provider(mock_service):
    """Provider bound to mock credentials, with build() patched."""
    with patch("crm_contact_sync.api.people_api.build", return_value=mock_service):
        api = GoogleContactsProvider(
            MagicMock(), max_retries=3, initial_retry_delay=0.01
        )
        api.bind(MagicMock())
        yield api


class TestInitialization:
    def test_defaults(self):
        api = GoogleContactsProvider()

        assert api.page_size == DEFAULT_PAGE_SIZE
        assert api.credentials is None
        assert api.name == "google"

    def test_page_size_capped_at_1000(self):
        assert GoogleContactsProvider(page_size=5000).page_size == 1000

    def test_service_requires_credentials(self):
        with pytest.raises(ProviderError, match="No credentials bound"):
            GoogleContactsProvider().service

    def test_authorization_requires_oauth(self):
        with pytest.raises(ProviderError):
            GoogleContactsProvider().get_authorization_url("owner-1")

    def test_authorization_delegates_to_oauth(self):
        oauth = MagicMock()
        oauth.get_authorization_url.return_value = "https://accounts.google.com/x"
        tokens = TokenBundle(access_token="a")
        oauth.exchange_code_for_tokens.return_value = tokens

        api = GoogleContactsProvider(oauth)

        assert api.get_authorization_url("owner-1") == "https://accounts.google.com/x"
        assert api.exchange_code_for_tokens("code") is tokens
        oauth.get_authorization_url.assert_called_once_with("owner-1")


class TestService:
    """Tests for per-thread service creation."""

    @patch("crm_contact_sync.api.people_api.build")
    def test_service_is_cached_per_thread(self, mock_build):
        mock_build.side_effect = lambda *args, **kwargs: MagicMock()
        api = GoogleContactsProvider()
        api.bind(MagicMock())

        first = api.service
        assert api.service is first

        other = []
        thread = threading.Thread(target=lambda: other.append(api.service))
        thread.start()
        thread.join()

        assert other[0] is not first
        assert mock_build.call_count == 2
        mock_build.assert_called_with(
            "people", "v1", credentials=api.credentials, cache_discovery=False
        )

    @patch("crm_contact_sync.api.people_api.build")
    def test_bind_resets_service(self, mock_build):
        api = GoogleContactsProvider()
        api.bind(MagicMock())
        api.service
        api.bind(MagicMock())
        api.service

        assert mock_build.call_count == 2

    @patch("crm_contact_sync.api.people_api.build")
    def test_build_failure(self, mock_build):
        mock_build.side_effect = Exception("discovery failed")
        api = GoogleContactsProvider()
        api.bind(MagicMock())

        with pytest.raises(ProviderError, match="Failed to create API service"):
            api.service


class TestRetryWithBackoff:
    """Tests for retry and error mapping."""

    @patch("time.sleep")
    def test_retries_rate_limit_then_succeeds(self, mock_sleep, provider):
        calls = {"count": 0}

        def operation():
            calls["count"] += 1
            if calls["count"] < 3:
                raise _http_error(429, b"Rate limited")
            return "ok"

        assert provider._retry_with_backoff(operation, "test") == "ok"
        assert mock_sleep.call_count == 2

    @patch("time.sleep")
    def test_rate_limit_exhausted(self, mock_sleep, provider):
        def operation():
            raise _http_error(429, b"Rate limited")

        with pytest.raises(RateLimitError):
            provider._retry_with_backoff(operation, "test")

    @patch("time.sleep")
    def test_backoff_doubles_and_caps(self, mock_sleep, provider):
        provider.max_retries = 5
        provider.initial_retry_delay = 1.0
        provider.max_retry_delay = 3.0

        def operation():
            raise _http_error(429)

        with pytest.raises(RateLimitError):
            provider._retry_with_backoff(operation, "test")

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 3.0, 3.0]

    @patch("time.sleep")
    def test_403_quota_is_retried(self, mock_sleep, provider):
        def operation():
            raise _http_error(403, b"Quota exceeded")

        with pytest.raises(RateLimitError):
            provider._retry_with_backoff(operation, "test")

    def test_403_permission_is_not_retried(self, provider):
        def operation():
            raise _http_error(403, b"Forbidden")

        with pytest.raises(HttpError):
            provider._retry_with_backoff(operation, "test")

    @patch("time.sleep")
    def test_server_error_is_retried(self, mock_sleep, provider):
        calls = {"count": 0}

        def operation():
            calls["count"] += 1
            if calls["count"] == 1:
                raise _http_error(503, b"Backend error")
            return "ok"

        assert provider._retry_with_backoff(operation, "test") == "ok"

    @patch("time.sleep")
    def test_server_error_exhausted_is_reraised(self, mock_sleep, provider):
        def operation():
            raise _http_error(500, b"Server error")

        with pytest.raises(HttpError):
            provider._retry_with_backoff(operation, "test")
        assert mock_sleep.call_count == 2

    def test_401_means_expired_authorization(self, provider):
        def operation():
            raise _http_error(401, b"Unauthorized")

        with pytest.raises(RemoteAuthExpiredError):
            provider._retry_with_backoff(operation, "test")

    def test_refresh_error_means_expired_authorization(self, provider):
        def operation():
            raise RefreshError("invalid_grant")

        with pytest.raises(RemoteAuthExpiredError):
            provider._retry_with_backoff(operation, "test")


class TestFetchAllContacts:
    """Tests for listing connections."""

    def test_follows_page_tokens(self, provider, mock_service):
        list_call = mock_service.people.return_value.connections.return_value.list
        list_call.return_value.execute.side_effect = [
            {"connections": [{"resourceName": "people/c1"}], "nextPageToken": "p2"},
            {"connections": [{"resourceName": "people/c2"}]},
        ]
        credentials = MagicMock()

        people = provider.fetch_all_contacts(credentials)

        assert [p["resourceName"] for p in people] == ["people/c1", "people/c2"]
        assert provider.credentials is credentials
        first_kwargs = list_call.call_args_list[0].kwargs
        assert first_kwargs["resourceName"] == "people/me"
        assert first_kwargs["personFields"] == PERSON_FIELDS
        assert "pageToken" not in first_kwargs
        assert list_call.call_args_list[1].kwargs["pageToken"] == "p2"

    def test_empty_account(self, provider, mock_service):
        list_call = mock_service.people.return_value.connections.return_value.list
        list_call.return_value.execute.return_value = {}

        assert provider.fetch_all_contacts(MagicMock()) == []

    def test_http_error_becomes_provider_error(self, provider, mock_service):
        list_call = mock_service.people.return_value.connections.return_value.list
        list_call.return_value.execute.side_effect = _http_error(400, b"Bad request")

        with pytest.raises(ProviderError, match="list_contacts failed"):
            provider.fetch_all_contacts(MagicMock())


class TestMutations:
    """Tests for create, update and delete."""

    def test_create_contact(self, provider, mock_service):
        create_call = mock_service.people.return_value.createContact
        create_call.return_value.execute.return_value = {
            "resourceName": "people/c9",
            "etag": "e1",
        }

        person = provider.create_contact({"name": "Jane Doe", "email": "jane@example.com"})

        assert person["resourceName"] == "people/c9"
        body = create_call.call_args.kwargs["body"]
        assert body["names"][0]["unstructuredName"] == "Jane Doe"
        assert body["emailAddresses"][0]["value"] == "jane@example.com"

    def test_update_sends_etag(self, provider, mock_service):
        update_call = mock_service.people.return_value.updateContact
        update_call.return_value.execute.return_value = {"resourceName": "people/c1"}

        provider.update_contact("people/c1", {"name": "Jane"}, "etag-1")

        kwargs = update_call.call_args.kwargs
        assert kwargs["resourceName"] == "people/c1"
        assert kwargs["body"]["etag"] == "etag-1"
        assert kwargs["updatePersonFields"] == UPDATE_PERSON_FIELDS

    @pytest.mark.parametrize(
        "status,content",
        [(409, b"Conflict"), (412, b"Precondition failed"), (400, b"etag mismatch")],
    )
    def test_update_stale_etag(self, provider, mock_service, status, content):
        update_call = mock_service.people.return_value.updateContact
        update_call.return_value.execute.side_effect = _http_error(status, content)

        with pytest.raises(StaleVersionError):
            provider.update_contact("people/c1", {"name": "Jane"}, "old")

    def test_update_missing_contact(self, provider, mock_service):
        update_call = mock_service.people.return_value.updateContact
        update_call.return_value.execute.side_effect = _http_error(404, b"Not found")

        with pytest.raises(ProviderError, match="Contact not found"):
            provider.update_contact("people/c1", {"name": "Jane"}, "e1")

    def test_soft_delete_unstars(self, provider, mock_service):
        modify = mock_service.contactGroups.return_value.members.return_value.modify

        provider.soft_delete_contact("people/c1")

        modify.assert_called_once_with(
            resourceName=STARRED_GROUP,
            body={"resourceNamesToRemove": ["people/c1"]},
        )
        mock_service.people.return_value.deleteContact.assert_not_called()

    def test_hard_delete(self, provider, mock_service):
        delete_call = mock_service.people.return_value.deleteContact

        provider.hard_delete_contact("people/c1")

        delete_call.assert_called_once_with(resourceName="people/c1")

    def test_hard_delete_of_missing_contact_is_ignored(self, provider, mock_service):
        delete_call = mock_service.people.return_value.deleteContact
        delete_call.return_value.execute.side_effect = _http_error(404, b"Not found")

        provider.hard_delete_contact("people/c1")

    def test_hard_delete_failure(self, provider, mock_service):
        delete_call = mock_service.people.return_value.deleteContact
        delete_call.return_value.execute.side_effect = _http_error(400, b"Bad request")

        with pytest.raises(ProviderError):
            provider.hard_delete_contact("people/c1")

    def test_normalize(self, provider):
        contact = provider.normalize(
            {"resourceName": "people/c1", "names": [{"displayName": "Jane"}]}
        )
        assert contact.remote_id == "people/c1"
        assert contact.name == "Jane"


class TestProviderRegistry:
    def test_create_returns_fresh_instances(self):
        registry = ProviderRegistry()
        registry.register("google", GoogleContactsProvider)

        first = registry.create("google")

        assert isinstance(first, GoogleContactsProvider)
        assert registry.create("google") is not first
        assert "google" in registry
        assert registry.names() == ["google"]

    def test_unknown_provider(self):
        with pytest.raises(UnknownProviderError, match="Registered: none"):
            ProviderRegistry().create("google")


class TestTokenBundle:
    def test_dict_round_trip_keeps_expiry(self):
        bundle = TokenBundle.from_dict(
            {
                "access_token": "a",
                "refresh_token": "r",
                "expiry": "2024-01-01T00:00:00+00:00",
                "scopes": ["openid"],
            }
        )

        assert TokenBundle.from_dict(bundle.to_dict()) == bundle
        assert bundle.expiry.year == 2024
