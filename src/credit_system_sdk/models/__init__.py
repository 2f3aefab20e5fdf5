from .auth import (
    AuthCredentials,
    Credential,
    OperatingMode,
    SessionState,
    TokenStatus,
    User,
)
from .messages import MessageType, ParentMessage
from .transaction import (
    AddCreditsRequest,
    Balance,
    SpendRequest,
    Transaction,
    TransactionHistoryParams,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "AddCreditsRequest",
    "AuthCredentials",
    "Balance",
    "Credential",
    "MessageType",
    "OperatingMode",
    "ParentMessage",
    "SessionState",
    "SpendRequest",
    "TokenStatus",
    "Transaction",
    "TransactionHistoryParams",
    "TransactionStatus",
    "TransactionType",
    "User",
]
