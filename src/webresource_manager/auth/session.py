"""Per-connection token lifecycle: silent renewal with interactive fallback."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import msal

from webresource_manager.auth.models import (
    CLAIM_NAME,
    CLAIM_PREFERRED_USERNAME,
    FIELD_ACCESS_TOKEN,
    FIELD_CORRELATION_ID,
    FIELD_ERROR,
    FIELD_ERROR_DESCRIPTION,
    FIELD_EXPIRES_IN,
    FIELD_ID_TOKEN_CLAIMS,
    FIELD_NAME,
    AuthSession,
    ConnectionIdentity,
    Credential,
)
from webresource_manager.auth.templates import ERROR_TEMPLATE, SUCCESS_TEMPLATE
from webresource_manager.config import (
    DEFAULT_INTERACTIVE_TIMEOUT_SECONDS,
    DEFAULT_RENEWAL_BUFFER_SECONDS,
    ConfigurationError,
)

if TYPE_CHECKING:
    from webresource_manager.auth.credential_cache import CredentialCache
    from webresource_manager.config import AppConfig

logger = logging.getLogger(__name__)

AUTHORITY_BASE_URL = "https://login.microsoftonline.com"
DEFAULT_AUTHORITY_TENANT = "organizations"

# Error codes MSAL reports when the cached refresh token cannot be used
# without the user signing in again.
INTERACTION_REQUIRED_ERRORS = frozenset(
    {"interaction_required", "login_required", "consent_required", "bad_token"}
)

OpenBrowser = Callable[[str], Awaitable[None]]
Clock = Callable[[], datetime]


class AuthenticationError(Exception):
    """Raised when a token could not be acquired."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.correlation_id = correlation_id


class AuthTimeoutError(AuthenticationError):
    """Raised when the interactive login did not complete within its window."""


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    AUTHENTICATING_SILENT = "authenticating_silent"
    AUTHENTICATING_INTERACTIVE = "authenticating_interactive"
    VALID = "valid"
    EXPIRING = "expiring"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenSessionManager:
    """Produces valid access tokens for one connection, prompting as rarely as possible.

    Lifecycle::

        UNINITIALIZED -> INITIALIZED -> AUTHENTICATING_SILENT
            -> AUTHENTICATING_INTERACTIVE -> VALID -> EXPIRING -> ...
                                          \\-> FAILED

    A token is treated as due for renewal once the clock passes
    ``expires_at - renewal_buffer``, so requests never leave with a token
    that expires mid-flight. Concurrent callers share one in-flight
    acquisition instead of opening a second browser window.
    """

    def __init__(
        self,
        connection: ConnectionIdentity,
        client_id: str,
        credential_cache: CredentialCache,
        tenant_id: str = "",
        renewal_buffer: timedelta = timedelta(seconds=DEFAULT_RENEWAL_BUFFER_SECONDS),
        interactive_timeout: float = DEFAULT_INTERACTIVE_TIMEOUT_SECONDS,
        clock: Clock = _utcnow,
    ) -> None:
        """Initialise the manager. No I/O happens until initialize().

        Args:
            connection: The connection this manager authenticates.
            client_id: Azure AD application (client) ID.
            credential_cache: Persistence for the serialized MSAL token cache.
            tenant_id: Azure AD tenant ID; the multi-tenant organizations
                authority is used when empty.
            renewal_buffer: Margin before expiry at which a token is renewed.
            interactive_timeout: Seconds to wait for the browser login.
            clock: Returns the current timezone-aware UTC time.
        """
        self._connection = connection
        self._client_id = client_id
        self._tenant_id = tenant_id
        self._credential_cache = credential_cache
        self._renewal_buffer = renewal_buffer
        self._interactive_timeout = interactive_timeout
        self._clock = clock

        self._session = AuthSession()
        self._state = SessionState.UNINITIALIZED
        self._app: msal.PublicClientApplication | None = None
        self._token_cache: msal.SerializableTokenCache | None = None
        self._inflight: asyncio.Future[Credential] | None = None
        self._waiters: dict[asyncio.Future[Credential], int] = {}

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def connection(self) -> ConnectionIdentity:
        return self._connection

    @property
    def session(self) -> AuthSession:
        """A copy of the current session; mutate it only through this manager."""
        return replace(self._session)

    @property
    def state(self) -> SessionState:
        if self._state is SessionState.VALID and self.is_renewal_due():
            return SessionState.EXPIRING
        return self._state

    @property
    def authority(self) -> str:
        return f"{AUTHORITY_BASE_URL}/{self._tenant_id or DEFAULT_AUTHORITY_TENANT}"

    def is_renewal_due(self) -> bool:
        """Whether the next request needs a fresh token.

        True when no token is held, or when the clock has entered the
        renewal buffer before ``expires_at``.
        """
        if self._session.access_token is None or self._session.expires_at is None:
            return True
        return self._clock() > self._session.expires_at - self._renewal_buffer

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the MSAL client and restore persisted credentials.

        Only the first call has an effect.

        Raises:
            ConfigurationError: If no client id is configured.
            AuthenticationError: If the persisted token cache cannot be read.
        """
        if self._app is not None:
            return
        if not self._client_id:
            raise ConfigurationError(
                "An application (client) ID is required; set WRM_CLIENT_ID before connecting"
            )

        token_cache = msal.SerializableTokenCache()
        blob = self._credential_cache.load(self._connection.id)
        if blob:
            try:
                token_cache.deserialize(blob)
            except ValueError as exc:
                raise AuthenticationError(
                    f"Cached credentials for '{self._connection.display_name}' are unreadable;"
                    " remove and re-add the connection"
                ) from exc

        self._app = msal.PublicClientApplication(
            client_id=self._client_id,
            authority=self.authority,
            token_cache=token_cache,
        )
        self._token_cache = token_cache
        self._state = SessionState.INITIALIZED
        logger.info(
            "[initialize] session initialised; connection_id:%s;restored_cache:%s",
            self._connection.id,
            bool(blob),
        )

    async def connect(self, open_browser: OpenBrowser) -> Credential:
        """Initialise if needed and return a credential that is not due for renewal.

        On failure the session holds no token, so the connection must be
        considered not connected.
        """
        self.initialize()
        credential = await self.acquire_valid_credential(open_browser)
        logger.info(
            "[connect] connected; connection_id:%s;expires_at:%s",
            self._connection.id,
            credential.expires_at.isoformat(),
        )
        return credential

    async def acquire_valid_credential(self, open_browser: OpenBrowser) -> Credential:
        """Return a credential, renewing it silently or interactively when due.

        Args:
            open_browser: Coroutine function called with the login URL when
                the user has to sign in interactively.

        Returns:
            A credential whose expiry lies beyond the renewal buffer.

        Raises:
            AuthenticationError: If silent and interactive acquisition failed.
            AuthTimeoutError: If the browser login did not finish in time.
        """
        self.initialize()
        if not self.is_renewal_due():
            logger.debug("[acquire_valid_credential] cached token still valid; connection_id:%s", self._connection.id)
            return self._current_credential()

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._acquire(open_browser))
        else:
            logger.info(
                "[acquire_valid_credential] joining in-flight acquisition; connection_id:%s",
                self._connection.id,
            )
        inflight = self._inflight
        self._waiters[inflight] = self._waiters.get(inflight, 0) + 1
        try:
            return await asyncio.shield(inflight)
        finally:
            self._release_waiter(inflight)

    def _release_waiter(self, inflight: asyncio.Future[Credential]) -> None:
        # The shared acquisition is only abandoned once every waiter has left.
        remaining = self._waiters[inflight] - 1
        if remaining:
            self._waiters[inflight] = remaining
            return
        del self._waiters[inflight]
        if not inflight.done():
            logger.info(
                "[acquire_valid_credential] all callers cancelled, abandoning acquisition; connection_id:%s",
                self._connection.id,
            )
            inflight.cancel()

    async def sign_out(self) -> None:
        """Forget every cached account and delete the persisted token cache."""
        if self._app is not None:
            await asyncio.to_thread(self._remove_accounts)
        await asyncio.to_thread(self._credential_cache.delete, self._connection.id)
        self._session = AuthSession()
        self._state = SessionState.INITIALIZED if self._app is not None else SessionState.UNINITIALIZED
        logger.info("[sign_out] signed out; connection_id:%s", self._connection.id)

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def _acquire(self, open_browser: OpenBrowser) -> Credential:
        prior_state = self._state
        try:
            result = await self._acquire_result(open_browser)
            session = self._session_from_result(result)
            await self._persist_cache()
        except asyncio.CancelledError:
            self._state = prior_state
            logger.info("[_acquire] acquisition cancelled; connection_id:%s", self._connection.id)
            raise
        except AuthenticationError as exc:
            self._state = SessionState.FAILED
            self._session.clear_token()
            logger.error(
                "[_acquire] authentication failed; connection_id:%s;error:%s;correlation_id:%s",
                self._connection.id,
                exc.error_code,
                exc.correlation_id,
            )
            raise
        except Exception:
            self._state = SessionState.FAILED
            self._session.clear_token()
            logger.error(
                "[_acquire] unexpected failure; connection_id:%s", self._connection.id, exc_info=True
            )
            raise

        self._session = session
        self._state = SessionState.VALID
        return self._current_credential()

    async def _acquire_result(self, open_browser: OpenBrowser) -> dict[str, Any]:
        assert self._app is not None
        scopes = self._connection.scopes
        account = self._discover_account()
        correlation_id: str | None = None

        if account is None:
            logger.info("[_acquire_result] no cached account; connection_id:%s", self._connection.id)
        else:
            self._state = SessionState.AUTHENTICATING_SILENT
            try:
                result = await asyncio.to_thread(self._app.acquire_token_silent, scopes, account=account)
            except Exception as exc:
                raise AuthenticationError(f"Silent token acquisition failed: {exc}") from exc

            if result and FIELD_ACCESS_TOKEN in result:
                logger.info("[_acquire_result] silent acquisition succeeded; connection_id:%s", self._connection.id)
                return result  # type: ignore[no-any-return]
            if result is not None and result.get(FIELD_ERROR) not in INTERACTION_REQUIRED_ERRORS:
                raise _error_from_result(result, "Silent token acquisition failed")

            correlation_id = result.get(FIELD_CORRELATION_ID) if result else None
            logger.info(
                "[_acquire_result] interaction required; connection_id:%s;correlation_id:%s",
                self._connection.id,
                correlation_id,
            )

        return await self._acquire_interactive(scopes, open_browser, account, correlation_id)

    async def _acquire_interactive(
        self,
        scopes: list[str],
        open_browser: OpenBrowser,
        account: dict[str, Any] | None,
        correlation_id: str | None,
    ) -> dict[str, Any]:
        assert self._app is not None
        self._state = SessionState.AUTHENTICATING_INTERACTIVE
        loop = asyncio.get_running_loop()

        def auth_uri_callback(url: str) -> None:
            # Runs on MSAL's worker thread; block it until the browser was launched.
            asyncio.run_coroutine_threadsafe(open_browser(url), loop).result()

        kwargs: dict[str, Any] = {
            "prompt": "select_account",
            "timeout": self._interactive_timeout,
            "success_template": SUCCESS_TEMPLATE,
            "error_template": ERROR_TEMPLATE,
            "auth_uri_callback": auth_uri_callback,
        }
        if account and account.get("username"):
            kwargs["login_hint"] = account["username"]

        logger.info("[_acquire_interactive] starting browser login; connection_id:%s", self._connection.id)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._app.acquire_token_interactive, scopes, **kwargs),
                timeout=self._interactive_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise AuthTimeoutError(
                f"Interactive login did not complete within {self._interactive_timeout:g} seconds",
                error_code="timeout",
                correlation_id=correlation_id,
            ) from exc
        except Exception as exc:
            raise AuthenticationError(
                f"Interactive login failed: {exc}", correlation_id=correlation_id
            ) from exc

        if not result or FIELD_ACCESS_TOKEN not in result:
            raise _error_from_result(result or {}, "Interactive login failed", correlation_id)
        logger.info("[_acquire_interactive] browser login succeeded; connection_id:%s", self._connection.id)
        return result  # type: ignore[no-any-return]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _remove_accounts(self) -> None:
        assert self._app is not None
        for account in self._app.get_accounts():
            self._app.remove_account(account)

    def _discover_account(self) -> dict[str, Any] | None:
        if self._session.account is not None:
            return self._session.account
        assert self._app is not None
        accounts = self._app.get_accounts()
        if not accounts:
            return None
        # TODO: let the caller choose when several accounts are cached.
        if len(accounts) > 1:
            logger.warning(
                "[_discover_account] several cached accounts, using the first; connection_id:%s;count:%d",
                self._connection.id,
                len(accounts),
            )
        return accounts[0]  # type: ignore[no-any-return]

    def _session_from_result(self, result: dict[str, Any]) -> AuthSession:
        now = self._clock()
        expires_at = now + timedelta(seconds=int(result.get(FIELD_EXPIRES_IN, 0)))
        if expires_at <= now:
            raise AuthenticationError("The identity provider returned an already expired token")
        return AuthSession(
            account=self._account_for_result(result),
            access_token=str(result[FIELD_ACCESS_TOKEN]),
            expires_at=expires_at,
        )

    def _account_for_result(self, result: dict[str, Any]) -> dict[str, Any] | None:
        assert self._app is not None
        claims = result.get(FIELD_ID_TOKEN_CLAIMS) or {}
        username = claims.get(CLAIM_PREFERRED_USERNAME)
        accounts = self._app.get_accounts(username=username) if username else []
        account = accounts[0] if accounts else self._discover_account()
        if account is not None and claims.get(CLAIM_NAME):
            account = {**account, FIELD_NAME: claims[CLAIM_NAME]}
        return account

    async def _persist_cache(self) -> None:
        assert self._token_cache is not None
        blob = self._token_cache.serialize()
        saved = await asyncio.to_thread(self._credential_cache.save, self._connection.id, blob)
        if not saved:
            logger.warning(
                "[_persist_cache] credentials not persisted; next start will prompt again; connection_id:%s",
                self._connection.id,
            )

    def _current_credential(self) -> Credential:
        assert self._session.access_token is not None and self._session.expires_at is not None
        return Credential(
            access_token=self._session.access_token,
            expires_at=self._session.expires_at,
            account=self._session.account,
        )


def _error_from_result(
    result: dict[str, Any], message: str, correlation_id: str | None = None
) -> AuthenticationError:
    error = result.get(FIELD_ERROR, "unknown_error")
    description = result.get(FIELD_ERROR_DESCRIPTION, "No description provided")
    return AuthenticationError(
        f"{message}: {error} ({description})",
        error_code=error,
        correlation_id=result.get(FIELD_CORRELATION_ID) or correlation_id,
    )


def token_session_manager_from_config(
    connection: ConnectionIdentity,
    credential_cache: CredentialCache,
    config: AppConfig,
) -> TokenSessionManager:
    """Construct a TokenSessionManager from application configuration.

    Args:
        connection: The connection to authenticate.
        credential_cache: Persistence for the serialized token cache.
        config: Application configuration instance.

    Returns:
        Configured, not yet initialised TokenSessionManager.
    """
    return TokenSessionManager(
        connection=connection,
        client_id=config.client_id,
        credential_cache=credential_cache,
        tenant_id=config.tenant_id,
        renewal_buffer=timedelta(seconds=config.renewal_buffer_seconds),
        interactive_timeout=config.interactive_timeout_seconds,
    )
