"""Tests for AsyncLedgerApiClient."""
from typing import Optional
from unittest.mock import AsyncMock, Mock

import pytest

from credit_system_sdk.credential_injector import CredentialInjector
from credit_system_sdk.exceptions import (
    APIError,
    InsufficientCreditsError,
    InvalidAmountError,
    NetworkError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from credit_system_sdk.host_context import SimulatedHostContext
from credit_system_sdk.ledger_client import AsyncLedgerApiClient
from credit_system_sdk.models import (
    AddCreditsRequest,
    SpendRequest,
    TransactionHistoryParams,
    TransactionType,
)
from credit_system_sdk.session_manager import SessionManager

PREFIX = "/secure-credits/standalone"
PARENT = "https://parent.example.com"


def _make_ledger(parent_origin: Optional[str] = None, nested: bool = True):
    requester = Mock(spec=CredentialInjector)
    requester.get = AsyncMock(return_value={})
    requester.post = AsyncMock(return_value={})
    session = Mock(spec=SessionManager)
    session.api_prefix = PREFIX
    host = SimulatedHostContext(nested=nested)
    ledger = AsyncLedgerApiClient(
        requester,
        session,
        host,
        parent_origin=parent_origin,
        retry_attempts=3,
        retry_delay=0,
    )
    return ledger, requester, host


def _transaction(**overrides) -> dict:
    data = {
        "id": 101,
        "type": "spend",
        "amount": -25,
        "description": "Report export",
        "createdAt": "2024-01-01T12:00:00Z",
    }
    data.update(overrides)
    return data


class TestGetBalance:
    @pytest.mark.asyncio
    async def test_success(self):
        ledger, requester, _ = _make_ledger()
        requester.get.return_value = {"success": True, "data": {"balance": 120.5, "currency": "credits"}}

        balance = await ledger.get_balance()

        requester.get.assert_awaited_once_with(f"{PREFIX}/balance")
        assert balance.balance == 120.5
        assert balance.currency == "credits"

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        ledger, requester, _ = _make_ledger()
        requester.get.side_effect = [
            NetworkError(),
            ServerError("busy", 503),
            {"success": True, "data": {"balance": 10}},
        ]

        balance = await ledger.get_balance()

        assert balance.balance == 10
        assert requester.get.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_attempts(self):
        ledger, requester, _ = _make_ledger()
        requester.get.side_effect = NetworkError()

        with pytest.raises(NetworkError):
            await ledger.get_balance()

        assert requester.get.await_count == 3

    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self):
        ledger, requester, _ = _make_ledger()
        requester.get.side_effect = ValidationError("bad request")

        with pytest.raises(ValidationError):
            await ledger.get_balance()

        assert requester.get.await_count == 1

    @pytest.mark.asyncio
    async def test_unsuccessful_body(self):
        ledger, requester, _ = _make_ledger()
        requester.get.return_value = {"success": False, "error": "Ledger unavailable"}

        with pytest.raises(APIError, match="Ledger unavailable"):
            await ledger.get_balance()

    @pytest.mark.asyncio
    async def test_notifies_parent(self):
        ledger, requester, host = _make_ledger(parent_origin=PARENT)
        requester.get.return_value = {"success": True, "data": {"balance": 7}}

        await ledger.get_balance()

        (message, origin), = host.sent
        assert origin == PARENT
        assert message["type"] == "BALANCE_UPDATE"
        assert message["balance"] == 7
        assert "timestamp" in message

    @pytest.mark.asyncio
    async def test_no_parent_notification_without_origin(self):
        ledger, requester, host = _make_ledger(parent_origin=None)
        requester.get.return_value = {"success": True, "data": {"balance": 7}}

        await ledger.get_balance()

        assert host.sent == []


class TestSpend:
    @pytest.mark.asyncio
    async def test_success(self):
        ledger, requester, host = _make_ledger(parent_origin=PARENT)
        requester.post.return_value = {
            "success": True,
            "data": {"transaction": _transaction(), "updated_balance": 95},
        }

        transaction = await ledger.spend(SpendRequest(amount=25, description="Report export"))

        requester.post.assert_awaited_once_with(
            f"{PREFIX}/spend",
            json_data={"amount": 25.0, "description": "Report export"},
        )
        assert transaction.id == 101
        assert transaction.amount == 25
        assert transaction.status == "completed"
        message = host.sent_of_type("OPERATION_COMPLETE")[0]
        assert message["operation"] == "spend"
        assert message["newBalance"] == 95

    @pytest.mark.asyncio
    async def test_new_balance_fallback_key(self):
        ledger, requester, host = _make_ledger(parent_origin=PARENT)
        requester.post.return_value = {
            "success": True,
            "data": {"transaction": _transaction(), "new_balance": 80},
        }

        await ledger.spend(SpendRequest(amount=25, description="Report export"))

        assert host.sent_of_type("OPERATION_COMPLETE")[0]["newBalance"] == 80

    @pytest.mark.asyncio
    async def test_invalid_amount_makes_no_call(self):
        ledger, requester, _ = _make_ledger()

        with pytest.raises(InvalidAmountError):
            await ledger.spend(SpendRequest(amount=-1, description="x"))
        requester.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_insufficient_credits(self):
        ledger, requester, _ = _make_ledger()
        requester.post.side_effect = InsufficientCreditsError(
            "Insufficient credits. Current balance: 3", available=3
        )

        with pytest.raises(InsufficientCreditsError) as exc:
            await ledger.spend(SpendRequest(amount=50, description="Big job"))

        assert exc.value.required == 50
        assert exc.value.available == 3
        assert "Required: 50" in exc.value.message

    @pytest.mark.asyncio
    async def test_insufficient_credits_in_body(self):
        ledger, requester, _ = _make_ledger()
        requester.post.return_value = {
            "success": False,
            "error": "Insufficient credits. Available: 4",
        }

        with pytest.raises(InsufficientCreditsError) as exc:
            await ledger.spend(SpendRequest(amount=10, description="Job"))

        assert exc.value.available == 4

    @pytest.mark.asyncio
    async def test_malformed_transaction(self):
        ledger, requester, _ = _make_ledger()
        requester.post.return_value = {"success": True, "data": {"transaction": None}}

        with pytest.raises(APIError, match="Malformed transaction"):
            await ledger.spend(SpendRequest(amount=1, description="Job"))


class TestAddCredits:
    @pytest.mark.asyncio
    async def test_default_description(self):
        ledger, requester, _ = _make_ledger()
        requester.post.return_value = {
            "success": True,
            "data": {"transaction": _transaction(type="credit", amount=50)},
        }

        transaction = await ledger.add_credits(AddCreditsRequest(amount=50))

        requester.post.assert_awaited_once_with(
            f"{PREFIX}/add",
            json_data={"amount": 50.0, "type": "manual", "description": "Manual credit addition"},
        )
        assert transaction.type == "credit"

    @pytest.mark.asyncio
    async def test_invalid_amount(self):
        ledger, requester, _ = _make_ledger()

        with pytest.raises(InvalidAmountError):
            await ledger.add_credits(AddCreditsRequest(amount=0))
        requester.post.assert_not_called()


class TestHistory:
    @pytest.mark.asyncio
    async def test_query_params(self):
        ledger, requester, _ = _make_ledger()
        requester.get.return_value = {
            "success": True,
            "data": {"transactions": [_transaction(), _transaction(id=102, amount=5)]},
        }

        transactions = await ledger.get_transaction_history(
            TransactionHistoryParams(limit=5, offset=10, type=TransactionType.SPEND)
        )

        requester.get.assert_awaited_once_with(
            f"{PREFIX}/history",
            params={"limit": "5", "offset": "10", "type": "spend"},
        )
        assert [tx.id for tx in transactions] == [101, 102]

    @pytest.mark.asyncio
    async def test_without_params(self):
        ledger, requester, _ = _make_ledger()
        requester.get.return_value = {"success": True, "data": {"transactions": []}}

        assert await ledger.get_transaction_history() == []
        requester.get.assert_awaited_once_with(f"{PREFIX}/history", params=None)

    @pytest.mark.asyncio
    async def test_invalid_params_make_no_call(self):
        ledger, requester, _ = _make_ledger()

        with pytest.raises(ValidationError):
            await ledger.get_transaction_history({"limit": 5000})
        requester.get.assert_not_called()


class TestTransactionLookupAndRefund:
    @pytest.mark.asyncio
    async def test_get_transaction(self):
        ledger, requester, _ = _make_ledger()
        requester.get.return_value = {"success": True, "data": _transaction()}

        transaction = await ledger.get_transaction(101)

        requester.get.assert_awaited_once_with(f"{PREFIX}/transaction/101")
        assert transaction.description == "Report export"

    @pytest.mark.asyncio
    async def test_get_transaction_not_found(self):
        ledger, requester, _ = _make_ledger()
        requester.get.side_effect = NotFoundError("missing")

        with pytest.raises(NotFoundError, match="Transaction not found"):
            await ledger.get_transaction(999)

    @pytest.mark.asyncio
    async def test_refund(self):
        ledger, requester, host = _make_ledger(parent_origin=PARENT)
        requester.post.return_value = {
            "success": True,
            "data": {"transaction": _transaction(id=103, type="refund"), "updated_balance": 120},
        }

        transaction = await ledger.refund(101, "Duplicate charge")

        requester.post.assert_awaited_once_with(
            f"{PREFIX}/refund",
            json_data={"transactionId": 101, "reason": "Duplicate charge"},
        )
        assert transaction.type == "refund"
        assert host.sent_of_type("OPERATION_COMPLETE")[0]["operation"] == "refund"

    @pytest.mark.asyncio
    async def test_refund_not_found(self):
        ledger, requester, _ = _make_ledger()
        requester.post.side_effect = NotFoundError()

        with pytest.raises(NotFoundError, match="Transaction not found"):
            await ledger.refund(999)
