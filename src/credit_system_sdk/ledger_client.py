"""Async client for the credit ledger endpoints (balance, spend, add, history, refund)."""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .credential_injector import CredentialInjector
from .exceptions import (
    APIError,
    InsufficientCreditsError,
    NetworkError,
    NotFoundError,
    ServerError,
    error_from_response,
)
from .host_context import HostContext
from .models import (
    AddCreditsRequest,
    Balance,
    MessageType,
    SpendRequest,
    Transaction,
    TransactionHistoryParams,
)
from .session_manager import SessionManager
from .utils import utc_now
from .validators import coerce_history_params, validate_amount, validate_spend_request


class AsyncLedgerApiClient:
    """Ledger operations under the session's mode-specific path prefix."""

    def __init__(
        self,
        requester: CredentialInjector,
        session: SessionManager,
        host_context: HostContext,
        parent_origin: Optional[str] = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the ledger client.

        Args:
            requester: Sends authorized requests
            session: Source of the API prefix for the current operating mode
            host_context: Channel used to notify the parent frame
            parent_origin: Target origin for parent notifications; None disables them
            retry_attempts: Attempts for the balance read
            retry_delay: Base delay in seconds between balance attempts
            logger: Logger to use instead of the module logger
        """
        self._requester = requester
        self._session = session
        self._host = host_context
        self._parent_origin = parent_origin
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._logger = logger or logging.getLogger(__name__)

    def _endpoint(self, path: str) -> str:
        return self._session.api_prefix + path

    async def get_balance(self) -> Balance:
        """Fetch the current balance, retrying transient failures."""
        self._logger.debug("Fetching balance...")
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_incrementing(start=self._retry_delay, increment=self._retry_delay),
            retry=retry_if_exception_type((NetworkError, ServerError)),
            before_sleep=before_sleep_log(self._logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                response = await self._requester.get(self._endpoint("/balance"))

        data = self._require_data(response)
        if data.get("balance") is None:
            raise error_from_response(response)

        balance = Balance(balance=data["balance"], currency=data.get("currency"))
        self._notify_parent(MessageType.BALANCE_UPDATE, {"balance": balance.balance})
        self._logger.info("Balance fetched: %s", balance.balance)
        return balance

    async def spend(self, request: SpendRequest) -> Transaction:
        """Spend credits.

        Raises:
            ValidationError: Bad amount or description; no request is made
            InsufficientCreditsError: The balance does not cover ``request.amount``
        """
        validate_spend_request(request)
        self._logger.debug("Processing spend request (amount=%s)", request.amount)

        try:
            response = await self._requester.post(
                self._endpoint("/spend"),
                json_data=request.model_dump(exclude_none=True),
            )
            data = self._require_data(response)
        except InsufficientCreditsError as e:
            available = e.available if e.available is not None else 0
            raise InsufficientCreditsError.for_amount(request.amount, available) from e

        transaction = self._parse_transaction(data.get("transaction"))
        self._notify_parent(
            MessageType.OPERATION_COMPLETE,
            {
                "operation": "spend",
                "details": request.model_dump(exclude_none=True),
                "newBalance": self._new_balance(data),
            },
        )
        self._logger.info(
            "Spend successful (transaction_id=%s, amount=%s)", transaction.id, transaction.amount
        )
        return transaction

    async def add_credits(self, request: AddCreditsRequest) -> Transaction:
        validate_amount(request.amount)
        self._logger.debug("Adding credits (amount=%s)", request.amount)

        body: Dict[str, Any] = {
            "amount": request.amount,
            "type": "manual",
            "description": request.description or "Manual credit addition",
        }
        if request.metadata:
            body["metadata"] = request.metadata

        response = await self._requester.post(self._endpoint("/add"), json_data=body)
        data = self._require_data(response)

        transaction = self._parse_transaction(data.get("transaction"))
        self._notify_parent(
            MessageType.OPERATION_COMPLETE,
            {
                "operation": "add_credits",
                "details": request.model_dump(exclude_none=True),
                "newBalance": self._new_balance(data),
            },
        )
        self._logger.info(
            "Credits added (transaction_id=%s, amount=%s)", transaction.id, transaction.amount
        )
        return transaction

    async def get_transaction_history(
        self,
        params: Union[TransactionHistoryParams, Mapping[str, Any], None] = None,
    ) -> List[Transaction]:
        history_params = coerce_history_params(params)
        self._logger.debug("Fetching transaction history")

        response = await self._requester.get(
            self._endpoint("/history"),
            params=history_params.to_query_params() if history_params else None,
        )
        data = self._require_data(response)

        transactions = [self._parse_transaction(tx) for tx in data.get("transactions") or []]
        self._logger.info("Transaction history fetched: %d transactions", len(transactions))
        return transactions

    async def get_transaction(self, transaction_id: Union[int, str]) -> Transaction:
        self._logger.debug("Fetching transaction %s", transaction_id)
        try:
            response = await self._requester.get(self._endpoint(f"/transaction/{transaction_id}"))
        except NotFoundError as e:
            raise NotFoundError("Transaction not found", details=e.details) from e

        return self._parse_transaction(self._require_data(response))

    async def refund(
        self,
        transaction_id: Union[int, str],
        reason: Optional[str] = None,
    ) -> Transaction:
        self._logger.debug("Processing refund for transaction %s", transaction_id)
        try:
            response = await self._requester.post(
                self._endpoint("/refund"),
                json_data={"transactionId": transaction_id, "reason": reason},
            )
        except NotFoundError as e:
            raise NotFoundError("Transaction not found", details=e.details) from e

        data = self._require_data(response)
        transaction = self._parse_transaction(data.get("transaction"))
        self._notify_parent(
            MessageType.OPERATION_COMPLETE,
            {
                "operation": "refund",
                "details": {"transactionId": transaction_id, "reason": reason},
                "newBalance": self._new_balance(data),
            },
        )
        self._logger.info(
            "Refund successful (transaction_id=%s, amount=%s)", transaction.id, transaction.amount
        )
        return transaction

    @staticmethod
    def _require_data(response: Dict[str, Any]) -> Dict[str, Any]:
        data = response.get("data")
        if not response.get("success") or not isinstance(data, dict):
            raise error_from_response(response)
        return data

    @staticmethod
    def _new_balance(data: Dict[str, Any]) -> Optional[float]:
        if data.get("updated_balance") is not None:
            return data["updated_balance"]
        return data.get("new_balance")

    @staticmethod
    def _parse_transaction(raw: Any) -> Transaction:
        if not isinstance(raw, dict):
            raise APIError("Malformed transaction data in response")
        try:
            return Transaction.model_validate(raw)
        except PydanticValidationError as e:
            raise APIError("Malformed transaction data in response", response_data=raw) from e

    def _notify_parent(self, message_type: MessageType, data: Dict[str, Any]) -> None:
        if not self._parent_origin or not self._host.is_nested():
            return
        self._host.send_to_parent(
            {"type": message_type.value, **data, "timestamp": utc_now().isoformat()},
            self._parent_origin,
        )
