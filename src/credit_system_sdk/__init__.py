"""Client SDK for the secure credits ledger."""

from typing import Optional

from .async_api_client import AsyncApiClient
from .config import AuthMode, CreditSystemConfiguration
from .credential_acquirer import CredentialAcquirer
from .credential_injector import CredentialInjector
from .credit_system import CreditSystem, CreditSystemEvent
from .exceptions import (
    APIError,
    AuthenticationFailedError,
    CreditSystemError,
    ErrorCode,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidConfigurationError,
    NetworkError,
    NotFoundError,
    NotInitializedError,
    RateLimitError,
    ServerError,
    TokenExpiredError,
    ValidationError,
    error_from_response,
)
from .host_context import HostContext, HostMessage, SimulatedHostContext, TopLevelHostContext
from .ledger_client import AsyncLedgerApiClient
from .models import (
    AddCreditsRequest,
    AuthCredentials,
    Balance,
    Credential,
    MessageType,
    OperatingMode,
    ParentMessage,
    SessionState,
    SpendRequest,
    TokenStatus,
    Transaction,
    TransactionHistoryParams,
    TransactionStatus,
    TransactionType,
    User,
)
from .scheduler import AsyncioRefreshScheduler, RefreshScheduler
from .session_manager import SessionManager
from .token_store import TokenStore

__version__ = "0.1.0"


def create_credit_system(
    api_url: str,
    host_context: Optional[HostContext] = None,
    **options,
) -> CreditSystem:
    """Build a ``CreditSystem`` from keyword configuration options."""
    return CreditSystem(CreditSystemConfiguration(api_url, **options), host_context=host_context)


__all__ = [
    "APIError",
    "AddCreditsRequest",
    "AsyncApiClient",
    "AsyncLedgerApiClient",
    "AsyncioRefreshScheduler",
    "AuthCredentials",
    "AuthMode",
    "AuthenticationFailedError",
    "Balance",
    "Credential",
    "CredentialAcquirer",
    "CredentialInjector",
    "CreditSystem",
    "CreditSystemConfiguration",
    "CreditSystemError",
    "CreditSystemEvent",
    "ErrorCode",
    "HostContext",
    "HostMessage",
    "InsufficientCreditsError",
    "InvalidAmountError",
    "InvalidConfigurationError",
    "MessageType",
    "NetworkError",
    "NotFoundError",
    "NotInitializedError",
    "OperatingMode",
    "ParentMessage",
    "RateLimitError",
    "RefreshScheduler",
    "ServerError",
    "SessionManager",
    "SessionState",
    "SimulatedHostContext",
    "SpendRequest",
    "TokenExpiredError",
    "TokenStatus",
    "TokenStore",
    "TopLevelHostContext",
    "Transaction",
    "TransactionHistoryParams",
    "TransactionStatus",
    "TransactionType",
    "User",
    "ValidationError",
    "create_credit_system",
    "error_from_response",
    "__version__",
]
