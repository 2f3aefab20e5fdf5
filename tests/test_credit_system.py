"""Tests for the CreditSystem facade.

The HTTP transport is a mock and the refresh scheduler is a mock, so every
test runs without network access or live timers.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, Mock, patch

import jwt
import pytest

from credit_system_sdk import (
    APIError,
    AuthenticationFailedError,
    CreditSystem,
    CreditSystemConfiguration,
    CreditSystemEvent,
    InsufficientCreditsError,
    NotInitializedError,
    OperatingMode,
    SimulatedHostContext,
    TokenExpiredError,
    User,
    create_credit_system,
)
from credit_system_sdk.async_api_client import AsyncApiClient
from credit_system_sdk.scheduler import RefreshScheduler

# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
PARENT = "https://parent.example.com"
STANDALONE = "/secure-credits/standalone"


def _login_response() -> dict:
    return {
        "success": True,
        "data": {
            "token": "session-token",
            "expires_at": (NOW + timedelta(hours=1)).isoformat(),
            "user": {"id": 1, "name": "Ada", "email": "ada@example.com"},
        },
    }


def _balance_response(balance: float = 100) -> dict:
    return {"success": True, "data": {"balance": balance}}


def _spend_response() -> dict:
    return {
        "success": True,
        "data": {
            "transaction": {"id": 5, "type": "spend", "amount": -10, "description": "Export"},
            "updated_balance": 90,
        },
    }


def _make_system(nested: bool = False, parent_origin: Optional[str] = None, **options):
    """Return a CreditSystem wired to a mocked transport and scheduler."""
    api_client = Mock(spec=AsyncApiClient)
    api_client.request = AsyncMock(return_value=_balance_response())
    api_client.get = AsyncMock(return_value={})
    api_client.post = AsyncMock(return_value=_login_response())
    api_client.close = AsyncMock()
    host = SimulatedHostContext(nested=nested)
    clock = Mock(return_value=NOW)
    config = CreditSystemConfiguration(
        api_url="https://credits.example.com",
        parent_origin=parent_origin,
        balance_retry_delay=0,
        delegation_timeout=0.05,
        on_error=Mock(),
        on_balance_update=Mock(),
        on_token_expired=Mock(),
        **options,
    )
    system = CreditSystem(
        config,
        host_context=host,
        api_client=api_client,
        scheduler=Mock(spec=RefreshScheduler),
        clock=clock,
    )
    return system, api_client, host, clock


async def _logged_in(system: CreditSystem) -> None:
    await system.initialize()
    await system.login("ada@example.com", "secret")


class TestCreditSystemLifecycle:
    @pytest.mark.asyncio
    async def test_login_emits_authenticated(self):
        system, _, _, _ = _make_system()
        handler = Mock()
        system.on(CreditSystemEvent.AUTHENTICATED, handler)

        await _logged_in(system)

        handler.assert_called_once_with(system.get_user())
        assert system.is_authenticated()
        assert system.get_user().name == "Ada"
        system.logout()

    @pytest.mark.asyncio
    async def test_operations_before_initialize(self):
        system, api_client, _, _ = _make_system()
        errors = Mock()
        system.on("error", errors)

        with pytest.raises(NotInitializedError):
            await system.login("ada@example.com", "secret")
        with pytest.raises(NotInitializedError):
            await system.get_balance()

        assert errors.call_count == 2
        assert system.config.on_error.call_count == 2
        api_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self):
        system, _, host, _ = _make_system(nested=True)

        await system.initialize()
        await system.initialize()

        assert len(host.sent_of_type("REQUEST_CREDENTIALS")) == 1
        await system.close()

    @pytest.mark.asyncio
    async def test_delegated_start_is_authenticated(self):
        system, _, host, _ = _make_system(nested=True, parent_origin=PARENT)
        host.responder = lambda message, origin: (
            host.deliver(
                {
                    "type": "JWT_TOKEN",
                    "token": "parent-token",
                    "expiresAt": (NOW + timedelta(hours=1)).isoformat(),
                    "user": {"id": 42},
                },
                PARENT,
            )
            if message["type"] == "REQUEST_CREDENTIALS"
            else None
        )
        handler = Mock()
        system.on("authenticated", handler)

        await system.initialize()

        assert system.is_authenticated()
        assert handler.call_args.args[0].id == 42
        await system.close()

    @pytest.mark.asyncio
    async def test_logout_drops_balance_cache(self):
        system, api_client, _, _ = _make_system()
        await _logged_in(system)
        await system.get_balance()

        system.logout()
        await system.login("ada@example.com", "secret")
        await system.get_balance()

        assert api_client.request.await_count == 2
        system.logout()

    @pytest.mark.asyncio
    async def test_async_context_manager_closes_transport(self):
        system, api_client, host, _ = _make_system(nested=True)

        async with system:
            await system.initialize()
            assert host.listener_count == 1

        api_client.close.assert_awaited_once()
        assert host.listener_count == 0

    @pytest.mark.asyncio
    async def test_login_with_parent_token_and_user(self):
        system, api_client, _, _ = _make_system()
        handler = Mock()
        system.on(CreditSystemEvent.AUTHENTICATED, handler)
        await system.initialize()
        token = jwt.encode(
            {"exp": int((NOW + timedelta(hours=1)).timestamp())},
            "credit-system-test-signing-key-0001",
            algorithm="HS256",
        )

        user = await system.login_with_token(
            token, trust=True, user=User(id=42, name="Kid")
        )

        assert user == User(id=42, name="Kid")
        handler.assert_called_once_with(user)
        assert system.is_authenticated()
        assert system.session.get_credential().source == OperatingMode.PARENT_DELEGATED
        api_client.get.assert_not_called()
        api_client.post.assert_not_called()
        system.logout()

    def test_operating_mode(self):
        top_level, _, _, _ = _make_system()
        nested, _, _, _ = _make_system(nested=True, auth_mode="jwt")

        assert top_level.operating_mode == OperatingMode.PASSWORD_LOGIN
        assert nested.operating_mode == OperatingMode.PARENT_DELEGATED

    def test_factory_builds_configuration(self):
        system = create_credit_system("https://credits.example.com/", auth_mode="standalone")

        assert system.config.api_url == "https://credits.example.com"
        assert system.session.api_prefix == STANDALONE


class TestCreditSystemBalance:
    @pytest.mark.asyncio
    async def test_balance_is_cached(self):
        system, api_client, _, clock = _make_system()
        await _logged_in(system)

        first = await system.get_balance()
        second = await system.get_balance()

        assert first.balance == second.balance == 100
        api_client.request.assert_awaited_once_with(
            "GET", f"{STANDALONE}/balance", params=None, json_data=None
        )

        clock.return_value = NOW + timedelta(seconds=31)
        await system.get_balance()
        assert api_client.request.await_count == 2
        system.logout()

    @pytest.mark.asyncio
    async def test_cache_can_be_bypassed(self):
        system, api_client, _, _ = _make_system()
        await _logged_in(system)

        await system.get_balance()
        await system.get_balance(use_cache=False)

        assert api_client.request.await_count == 2
        system.logout()

    @pytest.mark.asyncio
    async def test_balance_change_notifications(self):
        system, _, _, _ = _make_system()
        handler = Mock()
        system.on(CreditSystemEvent.BALANCE_CHANGED, handler)
        await _logged_in(system)

        await system.get_balance()

        handler.assert_called_once_with(100)
        system.config.on_balance_update.assert_called_once_with(100)
        system.logout()

    @pytest.mark.asyncio
    async def test_has_sufficient_credits(self):
        system, _, _, _ = _make_system()
        await _logged_in(system)

        assert await system.has_sufficient_credits(100)
        assert not await system.has_sufficient_credits(100.5)
        system.logout()

    @pytest.mark.asyncio
    async def test_silent_refresh_after_login(self):
        with patch("credit_system_sdk.credit_system.BALANCE_REFRESH_DELAY", 0.01):
            system, api_client, _, _ = _make_system()
        handler = Mock()
        system.on("balance_changed", handler)

        await _logged_in(system)
        await asyncio.sleep(0.1)

        api_client.request.assert_awaited_once_with(
            "GET", f"{STANDALONE}/balance", params=None, json_data=None
        )
        handler.assert_called_once_with(100)
        system.logout()

    @pytest.mark.asyncio
    async def test_silent_refresh_failures_are_not_reported(self):
        with patch("credit_system_sdk.credit_system.BALANCE_REFRESH_DELAY", 0.01):
            system, api_client, _, _ = _make_system()
        errors = Mock()
        system.on("error", errors)
        api_client.request.return_value = {"success": False, "error": "Ledger down"}

        await _logged_in(system)
        await asyncio.sleep(0.1)

        errors.assert_not_called()
        system.logout()


class TestCreditSystemTransactions:
    @pytest.mark.asyncio
    async def test_spend_emits_transaction_complete_and_drops_cache(self):
        system, api_client, _, _ = _make_system()
        completed = Mock()
        system.on("transaction_complete", completed)
        await _logged_in(system)
        await system.get_balance()

        api_client.request.return_value = _spend_response()
        transaction = await system.spend(10, "Export", metadata={"job": 7})

        assert transaction.id == 5
        assert transaction.amount == 10
        completed.assert_called_once_with(transaction)
        api_client.request.assert_awaited_with(
            "POST",
            f"{STANDALONE}/spend",
            params=None,
            json_data={"amount": 10.0, "description": "Export", "metadata": {"job": 7}},
        )

        api_client.request.return_value = _balance_response(90)
        balance = await system.get_balance()
        assert balance.balance == 90
        system.logout()

    @pytest.mark.asyncio
    async def test_spend_requires_authentication(self):
        system, api_client, _, _ = _make_system()
        await system.initialize()

        with pytest.raises(AuthenticationFailedError, match="not authenticated"):
            await system.spend(10, "Export")
        api_client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_insufficient_credits_reported(self):
        system, api_client, _, _ = _make_system()
        errors = Mock()
        system.on("error", errors)
        await _logged_in(system)
        api_client.request.side_effect = InsufficientCreditsError(
            "Insufficient credits. Current balance: 3", available=3
        )

        with pytest.raises(InsufficientCreditsError) as exc:
            await system.spend(10, "Export")

        errors.assert_called_once_with(exc.value)
        system.logout()

    @pytest.mark.asyncio
    async def test_rejected_token_expires_password_session(self):
        system, api_client, _, _ = _make_system()
        expired = Mock()
        system.on(CreditSystemEvent.SESSION_EXPIRED, expired)
        await _logged_in(system)
        api_client.request.side_effect = AuthenticationFailedError("Unauthorized", 401)

        with pytest.raises(TokenExpiredError):
            await system.get_balance()

        assert not system.is_authenticated()
        expired.assert_called_once_with()
        system.config.on_token_expired.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self):
        system, api_client, _, _ = _make_system()
        errors = Mock()
        system.on("error", errors)
        await _logged_in(system)
        api_client.request.side_effect = RuntimeError("socket exploded")

        with pytest.raises(APIError, match="socket exploded") as exc:
            await system.refund_transaction(5, "Duplicate")

        assert isinstance(exc.value.__cause__, RuntimeError)
        errors.assert_called_once_with(exc.value)
        system.logout()

    @pytest.mark.asyncio
    async def test_history_passes_filters(self):
        system, api_client, _, _ = _make_system()
        await _logged_in(system)
        api_client.request.return_value = {"success": True, "data": {"transactions": []}}

        await system.get_transaction_history({"limit": 20, "type": "refund"})

        api_client.request.assert_awaited_with(
            "GET",
            f"{STANDALONE}/history",
            params={"limit": "20", "type": "refund"},
            json_data=None,
        )
        system.logout()


class TestCreditSystemEvents:
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_sdk(self):
        system, _, _, _ = _make_system()
        system.on("authenticated", Mock(side_effect=RuntimeError("handler bug")))
        after = Mock()
        system.on("authenticated", after)

        await _logged_in(system)

        after.assert_called_once()
        system.logout()

    @pytest.mark.asyncio
    async def test_off_removes_handlers(self):
        system, _, _, _ = _make_system()
        kept, removed = Mock(), Mock()
        system.on("authenticated", kept)
        system.on("authenticated", removed)

        system.off("authenticated", removed)
        await _logged_in(system)

        kept.assert_called_once()
        removed.assert_not_called()

        system.off("authenticated")
        system.logout()
        await system.login("ada@example.com", "secret")
        assert kept.call_count == 1
        system.logout()

    @pytest.mark.asyncio
    async def test_parent_balance_update(self):
        system, api_client, host, _ = _make_system(nested=True, parent_origin=PARENT)
        handler = Mock()
        system.on("balance_changed", handler)
        await system.initialize()
        await system.login("ada@example.com", "secret")

        host.deliver({"type": "BALANCE_UPDATE", "balance": 55}, PARENT)
        host.deliver({"type": "BALANCE_UPDATE", "balance": 1}, "https://evil.example.com")
        balance = await system.get_balance()

        assert balance.balance == 55
        handler.assert_called_once_with(55)
        api_client.request.assert_not_called()
        await system.close()

    @pytest.mark.asyncio
    async def test_parent_error_is_emitted(self):
        system, _, host, _ = _make_system(nested=True, parent_origin=PARENT)
        errors = Mock()
        system.on("error", errors)
        await system.initialize()

        host.deliver({"type": "ERROR", "message": "Parent crashed"}, PARENT)

        error = errors.call_args.args[0]
        assert error.message == "Parent crashed"
        await system.close()
