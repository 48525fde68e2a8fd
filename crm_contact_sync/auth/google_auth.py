"""
OAuth2 authentication module for the Google Contacts provider.

Provides:
- Authorization URL generation for the web consent flow (owner id as state)
- Authorization code exchange with account email lookup
- Conversion of stored tokens into refreshable Google credentials
- Secure on-disk storage of token bundles behind opaque references
"""

import json
import logging
import re
from datetime import timezone
from pathlib import Path
from typing import Any, Optional

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from crm_contact_sync.api.provider import RemoteAuthExpiredError, TokenBundle
from crm_contact_sync.utils.paths import default_token_dir

# OAuth2 scopes required for contact reconciliation
SCOPES = [
    "https://www.googleapis.com/auth/contacts",
    "https://www.googleapis.com/auth/contacts.other.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "openid",
]

TOKEN_URI = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

DEFAULT_REDIRECT_URI = "http://localhost:8080/oauth2/callback"

# Default timeout for network requests (in seconds)
DEFAULT_AUTH_TIMEOUT = 10

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when the OAuth flow fails or client secrets are unusable."""

    pass


class CredentialStoreError(Exception):
    """Raised when a token bundle cannot be read or written."""

    pass


class GoogleOAuth:
    """
    OAuth2 web flow for connecting an owner's Google account.

    Attributes:
        client_secrets_file: OAuth client secrets JSON from Google Cloud Console
        redirect_uri: Callback URL registered for the OAuth client

    Usage:
        oauth = GoogleOAuth(Path("~/.crm-contact-sync/credentials.json"))

        # Send the owner to the consent screen
        url = oauth.get_authorization_url("owner-42")

        # On callback, exchange the code
        tokens = oauth.exchange_code_for_tokens(code)

        # Later, for a sync run
        creds = oauth.build_credentials(tokens)
    """

    def __init__(
        self,
        client_secrets_file: Path,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        auth_timeout: int = DEFAULT_AUTH_TIMEOUT,
    ):
        self.client_secrets_file = Path(client_secrets_file).expanduser()
        self.redirect_uri = redirect_uri
        self.auth_timeout = auth_timeout
        self._client_config: Optional[dict[str, Any]] = None

    def _load_client_config(self) -> dict[str, Any]:
        """
        Read the client secrets file.

        Raises:
            AuthenticationError: If the file is missing or malformed
        """
        if self._client_config is not None:
            return self._client_config

        if not self.client_secrets_file.exists():
            raise AuthenticationError(
                f"OAuth client secrets file not found: {self.client_secrets_file}\n"
                "Download your OAuth client credentials from Google Cloud Console "
                "and save them to this location."
            )

        try:
            data = json.loads(self.client_secrets_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise AuthenticationError(f"Invalid client secrets file: {e}") from e

        section = data.get("web") or data.get("installed")
        if not section or "client_id" not in section:
            raise AuthenticationError(
                "Client secrets file must contain a 'web' or 'installed' client"
            )

        self._client_config = data
        return data

    def _client_section(self) -> dict[str, Any]:
        config = self._load_client_config()
        return config.get("web") or config["installed"]

    def _create_flow(self, state: Optional[str] = None) -> Flow:
        return Flow.from_client_config(
            self._load_client_config(),
            scopes=SCOPES,
            redirect_uri=self.redirect_uri,
            state=state,
        )

    def get_authorization_url(self, owner_id: str) -> str:
        """
        Build the consent screen URL for an owner.

        Requests offline access and forces the consent prompt so a refresh
        token is always returned. The owner id is passed through as state.
        """
        flow = self._create_flow()
        url, _state = flow.authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
            state=owner_id,
        )
        logger.debug(f"Generated authorization URL for owner {owner_id}")
        return url

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        """
        Exchange an authorization code for tokens.

        Raises:
            AuthenticationError: If the exchange fails
        """
        flow = self._create_flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"Authorization code exchange failed: {e}")
            raise AuthenticationError(f"Failed to exchange authorization code: {e}") from e

        creds = flow.credentials
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None

        bundle = TokenBundle(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expiry=expiry,
            remote_account_email=self._fetch_user_email(creds),
            scopes=list(creds.scopes or SCOPES),
        )
        logger.info(f"Exchanged authorization code for {bundle.remote_account_email}")
        return bundle

    def _fetch_user_email(self, creds: Credentials) -> Optional[str]:
        """Email of the authorized account, or None if userinfo is unavailable."""
        session = AuthorizedSession(creds)
        try:
            response = session.get(USERINFO_URL, timeout=self.auth_timeout)
            if response.status_code != 200:
                logger.debug(f"userinfo returned status {response.status_code}")
                return None
            email: Optional[str] = response.json().get("email")
            return email
        except (GoogleAuthError, ValueError, OSError) as e:
            logger.debug(f"Failed to fetch user email: {e}")
            return None
        finally:
            session.close()

    def build_credentials(self, tokens: TokenBundle) -> Credentials:
        """
        Build Google credentials from stored tokens, refreshing when expired.

        Raises:
            RemoteAuthExpiredError: If the token cannot be refreshed
        """
        client = self._client_section()
        expiry = None
        if tokens.expiry:
            # google-auth compares expiry as naive UTC
            expiry = tokens.expiry.astimezone(timezone.utc).replace(tzinfo=None)

        creds = Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=client.get("token_uri", TOKEN_URI),
            client_id=client["client_id"],
            client_secret=client.get("client_secret"),
            scopes=tokens.scopes or SCOPES,
            expiry=expiry,
        )

        if creds.valid:
            return creds

        if not creds.refresh_token:
            raise RemoteAuthExpiredError(
                "Access token expired and no refresh token is stored; reconnect the account"
            )

        try:
            creds.refresh(Request())
            logger.debug("Refreshed Google access token")
        except RefreshError as e:
            logger.warning(f"Failed to refresh credentials: {e}")
            raise RemoteAuthExpiredError(f"Google authorization expired: {e}") from e

        tokens.access_token = creds.token
        tokens.expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        return creds


class CredentialStore:
    """
    Token bundle storage under the configuration directory.

    Each bundle is a 0600 JSON file; callers only ever hold the opaque
    reference returned by save().

    Usage:
        store = CredentialStore()
        ref = store.save("owner-42", "google", tokens)
        tokens = store.load(ref)
    """

    def __init__(self, token_dir: Optional[Path] = None):
        self.token_dir = Path(token_dir) if token_dir else default_token_dir()

    @staticmethod
    def make_reference(owner_id: str, provider: str) -> str:
        return f"{provider}-{owner_id}"

    def _path_for(self, reference: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", reference)
        return self.token_dir / f"token_{safe}.json"

    def _ensure_dir(self) -> None:
        if not self.token_dir.exists():
            self.token_dir.mkdir(parents=True, mode=0o700)
            logger.debug(f"Created token directory: {self.token_dir}")

    def save(self, owner_id: str, provider: str, tokens: TokenBundle) -> str:
        """
        Persist tokens and return their reference.

        Raises:
            CredentialStoreError: If the file cannot be written
        """
        reference = self.make_reference(owner_id, provider)
        self.update(reference, tokens)
        return reference

    def update(self, reference: str, tokens: TokenBundle) -> None:
        """Overwrite the tokens stored under an existing reference."""
        path = self._path_for(reference)
        try:
            self._ensure_dir()
            path.write_text(json.dumps(tokens.to_dict()), encoding="utf-8")
            path.chmod(0o600)
        except OSError as e:
            raise CredentialStoreError(f"Failed to write tokens to {path}: {e}") from e
        logger.debug(f"Saved tokens for {reference}")

    def load(self, reference: str) -> Optional[TokenBundle]:
        """
        Load tokens by reference.

        Returns:
            TokenBundle, or None if nothing is stored under the reference

        Raises:
            CredentialStoreError: If the stored file is unreadable
        """
        path = self._path_for(reference)
        if not path.exists():
            return None
        try:
            return TokenBundle.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, OSError) as e:
            raise CredentialStoreError(f"Invalid token file {path}: {e}") from e

    def delete(self, reference: str) -> bool:
        """Remove stored tokens. Returns False if none existed."""
        path = self._path_for(reference)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Removed stored tokens for {reference}")
        return True
