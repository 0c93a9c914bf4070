"""Unit tests for auth/session.py: the TokenSessionManager state machine."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from webresource_manager.auth.models import ConnectionIdentity
from webresource_manager.auth.session import (
    AuthenticationError,
    AuthTimeoutError,
    SessionState,
    TokenSessionManager,
    token_session_manager_from_config,
)
from webresource_manager.config import AppConfig, ConfigurationError

CONNECTION = ConnectionIdentity(
    id="conn-1", display_name="Dev", remote_base_url="https://contoso.crm.dynamics.com"
)
SCOPES = ["https://contoso.crm.dynamics.com/.default"]
ACCOUNT = {"username": "ada@contoso.com", "home_account_id": "uid.tid", "environment": "login"}
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _make_manager(
    blob: str | None = None,
    clock: FakeClock | None = None,
    **kwargs: Any,
) -> tuple[TokenSessionManager, MagicMock, MagicMock]:
    """Return (initialised manager, mock_msal_app, mock_credential_cache)."""
    credential_cache = MagicMock()
    credential_cache.load.return_value = blob
    credential_cache.save.return_value = True
    manager = TokenSessionManager(
        connection=CONNECTION,
        client_id="client-id",
        credential_cache=credential_cache,
        clock=clock or FakeClock(),
        **kwargs,
    )
    with (
        patch("webresource_manager.auth.session.msal.PublicClientApplication") as mock_pca,
        patch("webresource_manager.auth.session.msal.SerializableTokenCache") as mock_tc,
    ):
        mock_tc.return_value.serialize.return_value = "serialized-cache"
        manager.initialize()
    app = mock_pca.return_value
    app.get_accounts.return_value = []
    return manager, app, credential_cache


def _token_result(token: str = "token-1", expires_in: int = 3600, **extra: Any) -> dict[str, Any]:
    return {"access_token": token, "expires_in": expires_in, **extra}


async def _no_browser(url: str) -> None:
    raise AssertionError(f"browser should not open: {url}")


def _interactive_returning(result: dict[str, Any], opened: list[str] | None = None, delay: float = 0.0):
    """side_effect for acquire_token_interactive that drives the browser callback."""

    def _side_effect(scopes: list[str], **kwargs: Any) -> dict[str, Any]:
        kwargs["auth_uri_callback"]("https://login.microsoftonline.com/authorize?x=1")
        if delay:
            time.sleep(delay)
        return result

    return _side_effect


# ---------------------------------------------------------------------------
# initialize tests
# ---------------------------------------------------------------------------


class TestInitialize:
    def test_missing_client_id_raises_configuration_error(self) -> None:
        manager = TokenSessionManager(CONNECTION, client_id="", credential_cache=MagicMock())
        with pytest.raises(ConfigurationError):
            manager.initialize()
        assert manager.state is SessionState.UNINITIALIZED

    def test_creates_public_client_with_tenant_authority(self) -> None:
        credential_cache = MagicMock()
        credential_cache.load.return_value = None
        manager = TokenSessionManager(CONNECTION, "cid", credential_cache, tenant_id="tid-001")
        with (
            patch("webresource_manager.auth.session.msal.PublicClientApplication") as mock_pca,
            patch("webresource_manager.auth.session.msal.SerializableTokenCache") as mock_tc,
        ):
            manager.initialize()

        mock_pca.assert_called_once_with(
            client_id="cid",
            authority="https://login.microsoftonline.com/tid-001",
            token_cache=mock_tc.return_value,
        )
        assert manager.state is SessionState.INITIALIZED

    def test_defaults_to_organizations_authority(self) -> None:
        manager = TokenSessionManager(CONNECTION, "cid", MagicMock())
        assert manager.authority == "https://login.microsoftonline.com/organizations"

    def test_is_idempotent(self) -> None:
        credential_cache = MagicMock()
        credential_cache.load.return_value = None
        manager = TokenSessionManager(CONNECTION, "cid", credential_cache)
        with (
            patch("webresource_manager.auth.session.msal.PublicClientApplication") as mock_pca,
            patch("webresource_manager.auth.session.msal.SerializableTokenCache"),
        ):
            manager.initialize()
            manager.initialize()

        mock_pca.assert_called_once()
        credential_cache.load.assert_called_once_with("conn-1")

    def test_restores_persisted_cache(self) -> None:
        credential_cache = MagicMock()
        credential_cache.load.return_value = '{"Account": {}}'
        manager = TokenSessionManager(CONNECTION, "cid", credential_cache)
        with (
            patch("webresource_manager.auth.session.msal.PublicClientApplication"),
            patch("webresource_manager.auth.session.msal.SerializableTokenCache") as mock_tc,
        ):
            manager.initialize()

        mock_tc.return_value.deserialize.assert_called_once_with('{"Account": {}}')

    def test_unreadable_cache_raises_authentication_error(self) -> None:
        credential_cache = MagicMock()
        credential_cache.load.return_value = "not json"
        manager = TokenSessionManager(CONNECTION, "cid", credential_cache)
        with (
            patch("webresource_manager.auth.session.msal.PublicClientApplication"),
            patch("webresource_manager.auth.session.msal.SerializableTokenCache") as mock_tc,
        ):
            mock_tc.return_value.deserialize.side_effect = ValueError("bad json")
            with pytest.raises(AuthenticationError, match="unreadable"):
                manager.initialize()


# ---------------------------------------------------------------------------
# acquire_valid_credential tests
# ---------------------------------------------------------------------------


class TestAcquireValidCredential:
    def test_without_cached_account_goes_straight_to_interactive(self) -> None:
        manager, app, _ = _make_manager()
        opened: list[str] = []
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result())

        async def open_browser(url: str) -> None:
            opened.append(url)

        credential = asyncio.run(manager.acquire_valid_credential(open_browser))

        assert credential.access_token == "token-1"
        assert credential.expires_at == START + timedelta(seconds=3600)
        assert opened == ["https://login.microsoftonline.com/authorize?x=1"]
        app.acquire_token_silent.assert_not_called()
        app.acquire_token_interactive.assert_called_once()
        assert manager.state is SessionState.VALID

    def test_interactive_receives_scopes_templates_and_timeout(self) -> None:
        manager, app, _ = _make_manager(interactive_timeout=30)
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result())

        async def open_browser(url: str) -> None:
            return None

        asyncio.run(manager.acquire_valid_credential(open_browser))

        args, kwargs = app.acquire_token_interactive.call_args
        assert args == (SCOPES,)
        assert kwargs["timeout"] == 30
        assert "Authentication Successful" in kwargs["success_template"]
        assert "Authentication Failed" in kwargs["error_template"]

    def test_silent_success_with_cached_account(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result("silent-token")

        credential = asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert credential.access_token == "silent-token"
        app.acquire_token_silent.assert_called_once_with(SCOPES, account=ACCOUNT)
        app.acquire_token_interactive.assert_not_called()

    def test_second_call_with_valid_token_is_a_cache_hit(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result()

        async def run() -> tuple[Any, Any]:
            first = await manager.acquire_valid_credential(_no_browser)
            second = await manager.acquire_valid_credential(_no_browser)
            return first, second

        first, second = asyncio.run(run())

        assert first == second
        app.acquire_token_silent.assert_called_once()
        app.acquire_token_interactive.assert_not_called()

    def test_interaction_required_falls_back_to_one_interactive_call(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = {
            "error": "interaction_required",
            "error_description": "AADSTS50076: MFA required",
            "correlation_id": "corr-1",
        }
        app.acquire_token_interactive.side_effect = _interactive_returning(
            _token_result("interactive-token")
        )

        async def open_browser(url: str) -> None:
            return None

        credential = asyncio.run(manager.acquire_valid_credential(open_browser))

        assert credential.access_token == "interactive-token"
        app.acquire_token_interactive.assert_called_once()
        assert app.acquire_token_interactive.call_args.kwargs["login_hint"] == "ada@contoso.com"

    def test_silent_none_result_falls_back_to_interactive(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = None
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result())

        async def open_browser(url: str) -> None:
            return None

        asyncio.run(manager.acquire_valid_credential(open_browser))

        app.acquire_token_interactive.assert_called_once()

    def test_other_silent_error_is_fatal(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = {
            "error": "invalid_client",
            "error_description": "Client is disabled",
        }

        with pytest.raises(AuthenticationError, match="invalid_client") as exc_info:
            asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert exc_info.value.error_code == "invalid_client"
        app.acquire_token_interactive.assert_not_called()
        credential_cache.save.assert_not_called()
        assert manager.state is SessionState.FAILED

    def test_silent_exception_is_wrapped_with_cause(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        cause = ConnectionError("network down")
        app.acquire_token_silent.side_effect = cause

        with pytest.raises(AuthenticationError) as exc_info:
            asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert exc_info.value.__cause__ is cause

    def test_interactive_failure_preserves_correlation_id(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = {
            "error": "login_required",
            "correlation_id": "corr-42",
        }
        app.acquire_token_interactive.side_effect = _interactive_returning(
            {"error": "access_denied", "error_description": "User cancelled"}
        )

        async def open_browser(url: str) -> None:
            return None

        with pytest.raises(AuthenticationError) as exc_info:
            asyncio.run(manager.acquire_valid_credential(open_browser))

        assert exc_info.value.error_code == "access_denied"
        assert exc_info.value.correlation_id == "corr-42"
        assert manager.session.access_token is None
        assert manager.state is SessionState.FAILED

    def test_browser_failure_surfaces_as_authentication_error(self) -> None:
        manager, app, _ = _make_manager()
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result())

        async def open_browser(url: str) -> None:
            raise OSError("no browser available")

        with pytest.raises(AuthenticationError, match="no browser available"):
            asyncio.run(manager.acquire_valid_credential(open_browser))

    def test_interactive_timeout_raises_auth_timeout_error(self) -> None:
        manager, app, _ = _make_manager(interactive_timeout=0.05)
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result(), delay=0.5)

        async def open_browser(url: str) -> None:
            return None

        with pytest.raises(AuthTimeoutError):
            asyncio.run(manager.acquire_valid_credential(open_browser))

        assert manager.state is SessionState.FAILED
        assert manager.session.access_token is None

    def test_already_expired_token_is_rejected(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result(expires_in=0)

        with pytest.raises(AuthenticationError, match="expired"):
            asyncio.run(manager.acquire_valid_credential(_no_browser))

    def test_persists_cache_after_success(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result()

        asyncio.run(manager.acquire_valid_credential(_no_browser))

        credential_cache.save.assert_called_once_with("conn-1", "serialized-cache")

    def test_persist_failure_still_returns_credential(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result()
        credential_cache.save.return_value = False

        credential = asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert credential.access_token == "token-1"

    def test_account_carries_display_name_from_id_token(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result(
            id_token_claims={"preferred_username": "ada@contoso.com", "name": "Ada Lovelace"}
        )

        credential = asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert credential.display_name == "Ada Lovelace"
        assert credential.username == "ada@contoso.com"

    def test_first_cached_account_wins_when_several_exist(self) -> None:
        # Known simplification: account selection is not exposed to the caller.
        manager, app, _ = _make_manager()
        other = {**ACCOUNT, "username": "bob@contoso.com"}
        app.get_accounts.return_value = [ACCOUNT, other]
        app.acquire_token_silent.return_value = _token_result()

        asyncio.run(manager.acquire_valid_credential(_no_browser))

        app.acquire_token_silent.assert_called_once_with(SCOPES, account=ACCOUNT)


# ---------------------------------------------------------------------------
# Renewal buffer tests
# ---------------------------------------------------------------------------


class TestRenewalBuffer:
    def _valid_manager(self) -> tuple[TokenSessionManager, MagicMock, FakeClock]:
        clock = FakeClock()
        manager, app, _ = _make_manager(clock=clock, renewal_buffer=timedelta(minutes=5))
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result(expires_in=3600)
        asyncio.run(manager.acquire_valid_credential(_no_browser))
        return manager, app, clock

    def test_renewal_due_without_token(self) -> None:
        manager, _, _ = _make_manager()
        assert manager.is_renewal_due() is True

    def test_not_due_outside_buffer(self) -> None:
        manager, _, clock = self._valid_manager()
        clock.advance(minutes=54)
        assert manager.is_renewal_due() is False
        assert manager.state is SessionState.VALID

    def test_due_inside_buffer_before_actual_expiry(self) -> None:
        manager, _, clock = self._valid_manager()
        clock.advance(minutes=55, seconds=1)
        assert manager.is_renewal_due() is True
        assert manager.state is SessionState.EXPIRING

    def test_token_inside_buffer_is_renewed(self) -> None:
        manager, app, clock = self._valid_manager()
        clock.advance(minutes=56)
        app.acquire_token_silent.return_value = _token_result("renewed")

        credential = asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert credential.access_token == "renewed"
        assert app.acquire_token_silent.call_count == 2

    def test_failed_renewal_drops_stale_token(self) -> None:
        manager, app, clock = self._valid_manager()
        clock.advance(minutes=56)
        app.acquire_token_silent.return_value = {"error": "invalid_grant"}

        with pytest.raises(AuthenticationError):
            asyncio.run(manager.acquire_valid_credential(_no_browser))

        session = manager.session
        assert session.access_token is None
        assert session.expires_at is None
        assert session.account == ACCOUNT


# ---------------------------------------------------------------------------
# Concurrency tests
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_concurrent_callers_share_one_interactive_flow(self) -> None:
        manager, app, _ = _make_manager()
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result(), delay=0.1)

        async def open_browser(url: str) -> None:
            return None

        async def run() -> list[Any]:
            return await asyncio.gather(
                manager.acquire_valid_credential(open_browser),
                manager.acquire_valid_credential(open_browser),
            )

        first, second = asyncio.run(run())

        assert first == second
        app.acquire_token_interactive.assert_called_once()

    def test_cancellation_leaves_prior_state(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result(), delay=0.3)

        async def open_browser(url: str) -> None:
            return None

        async def run() -> None:
            task = asyncio.ensure_future(manager.acquire_valid_credential(open_browser))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())

        assert manager.state is SessionState.INITIALIZED
        assert manager.session.access_token is None
        credential_cache.save.assert_not_called()

    def test_cancelling_one_caller_does_not_cancel_the_other(self) -> None:
        manager, app, _ = _make_manager()
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result(), delay=0.3)

        async def open_browser(url: str) -> None:
            return None

        async def run() -> Any:
            first = asyncio.ensure_future(manager.acquire_valid_credential(open_browser))
            second = asyncio.ensure_future(manager.acquire_valid_credential(open_browser))
            await asyncio.sleep(0.05)
            first.cancel()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await second

        credential = asyncio.run(run())

        assert credential.access_token == "token-1"
        app.acquire_token_interactive.assert_called_once()
        assert manager.state is SessionState.VALID

    def test_all_callers_cancelled_abandons_acquisition(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.acquire_token_interactive.side_effect = _interactive_returning(_token_result(), delay=0.3)

        async def open_browser(url: str) -> None:
            return None

        async def run() -> None:
            tasks = [
                asyncio.ensure_future(manager.acquire_valid_credential(open_browser)) for _ in range(2)
            ]
            await asyncio.sleep(0.05)
            for task in tasks:
                task.cancel()
            for task in tasks:
                with pytest.raises(asyncio.CancelledError):
                    await task
            await asyncio.sleep(0.01)

        asyncio.run(run())

        assert manager.state is SessionState.INITIALIZED
        assert manager.session.access_token is None
        credential_cache.save.assert_not_called()


# ---------------------------------------------------------------------------
# Unexpected failure tests
# ---------------------------------------------------------------------------


class TestUnexpectedFailure:
    def test_persist_error_marks_session_failed(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result()
        credential_cache.save.side_effect = RuntimeError("store exploded")

        with pytest.raises(RuntimeError, match="store exploded"):
            asyncio.run(manager.acquire_valid_credential(_no_browser))

        assert manager.state is SessionState.FAILED
        assert manager.session.access_token is None


# ---------------------------------------------------------------------------
# connect / sign_out tests
# ---------------------------------------------------------------------------


class TestConnectAndSignOut:
    def test_connect_returns_credential(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result()

        credential = asyncio.run(manager.connect(_no_browser))

        assert credential.access_token == "token-1"

    def test_sign_out_forgets_accounts_and_cache(self) -> None:
        manager, app, credential_cache = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]
        app.acquire_token_silent.return_value = _token_result()
        asyncio.run(manager.connect(_no_browser))

        asyncio.run(manager.sign_out())

        app.remove_account.assert_called_once_with(ACCOUNT)
        credential_cache.delete.assert_called_once_with("conn-1")
        assert manager.session.access_token is None
        assert manager.state is SessionState.INITIALIZED

    def test_sign_out_runs_account_removal_off_the_event_loop(self) -> None:
        manager, app, _ = _make_manager()
        app.get_accounts.return_value = [ACCOUNT]

        with patch(
            "webresource_manager.auth.session.asyncio.to_thread", wraps=asyncio.to_thread
        ) as mock_to_thread:
            asyncio.run(manager.sign_out())

        offloaded = [c.args[0] for c in mock_to_thread.call_args_list]
        assert manager._remove_accounts in offloaded
        app.remove_account.assert_called_once_with(ACCOUNT)


# ---------------------------------------------------------------------------
# token_session_manager_from_config tests
# ---------------------------------------------------------------------------


class TestFromConfig:
    def test_applies_config_values(self) -> None:
        config = AppConfig(
            client_id="cid",
            tenant_id="tid",
            renewal_buffer_seconds=120,
            interactive_timeout_seconds=60,
        )
        manager = token_session_manager_from_config(CONNECTION, MagicMock(), config)

        assert manager.authority == "https://login.microsoftonline.com/tid"
        assert manager.connection is CONNECTION
        assert manager._renewal_buffer == timedelta(seconds=120)
        assert manager._interactive_timeout == 60
