"""Data models for connections and their authentication state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

# MSAL result and account field names
FIELD_ACCESS_TOKEN = "access_token"
FIELD_EXPIRES_IN = "expires_in"
FIELD_ERROR = "error"
FIELD_ERROR_DESCRIPTION = "error_description"
FIELD_CORRELATION_ID = "correlation_id"
FIELD_ID_TOKEN_CLAIMS = "id_token_claims"
FIELD_USERNAME = "username"
FIELD_NAME = "name"
CLAIM_PREFERRED_USERNAME = "preferred_username"
CLAIM_NAME = "name"


@dataclass(frozen=True)
class ConnectionIdentity:
    """A registered remote environment.

    Attributes:
        id: Stable opaque identifier; keys the credential cache and never changes.
        display_name: User-chosen label, unique among connections.
        remote_base_url: Environment URL without a trailing slash
            (e.g. "https://contoso.crm.dynamics.com").
    """

    id: str
    display_name: str
    remote_base_url: str

    @property
    def scopes(self) -> list[str]:
        """Scopes requested for the environment's Web API audience."""
        return [f"{self.remote_base_url}/.default"]


@dataclass
class AuthSession:
    """Mutable authentication state of one connection.

    Only TokenSessionManager mutates instances. ``access_token`` and
    ``expires_at`` are always set or cleared together.
    """

    account: dict[str, Any] | None = None
    access_token: str | None = None
    expires_at: datetime | None = None

    def clear_token(self) -> None:
        self.access_token = None
        self.expires_at = None


@dataclass(frozen=True)
class Credential:
    """A usable access token handed to callers."""

    access_token: str
    expires_at: datetime
    account: dict[str, Any] | None

    @property
    def username(self) -> str | None:
        """Sign-in name of the account, if known."""
        if not self.account:
            return None
        return self.account.get(FIELD_USERNAME)

    @property
    def display_name(self) -> str | None:
        """Full name of the signed-in user, falling back to the sign-in name."""
        if not self.account:
            return None
        return self.account.get(FIELD_NAME) or self.username

    def __repr__(self) -> str:
        return f"Credential(expires_at={self.expires_at.isoformat()}, username={self.username!r})"
