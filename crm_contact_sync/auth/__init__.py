"""
crm_contact_sync.auth - Provider authorization module

OAuth web flow for Google and on-disk token storage.
"""

from crm_contact_sync.auth.google_auth import (
    SCOPES,
    AuthenticationError,
    CredentialStore,
    CredentialStoreError,
    GoogleOAuth,
)

__all__ = [
    "SCOPES",
    "AuthenticationError",
    "CredentialStore",
    "CredentialStoreError",
    "GoogleOAuth",
]
