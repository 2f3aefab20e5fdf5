"""Exception hierarchy for the credit system SDK."""

import re
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    AUTHENTICATION_FAILED = "AUTH_FAILED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    INVALID_CONFIGURATION = "INVALID_CONFIG"


class CreditSystemError(Exception):
    """Base class for every error raised by the SDK.

    Args:
        message: Human readable description
        status_code: HTTP status code, when the error came from a response
        details: Extra context (response body, original exception, ...)
    """

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class AuthenticationFailedError(CreditSystemError):
    code = ErrorCode.AUTHENTICATION_FAILED

    def __init__(
        self,
        message: str = "Authentication failed",
        status_code: Optional[int] = 401,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code, details)


class TokenExpiredError(CreditSystemError):
    code = ErrorCode.TOKEN_EXPIRED

    def __init__(
        self,
        message: str = "Token has expired",
        status_code: Optional[int] = 401,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code, details)


class ValidationError(CreditSystemError):
    """Malformed input, rejected before any network call where possible."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 400,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code, details)


class InvalidAmountError(ValidationError):
    code = ErrorCode.INVALID_AMOUNT

    def __init__(self, amount: Any) -> None:
        super().__init__(
            f"Invalid amount: {amount}. Amount must be a positive number.",
            details={"amount": amount},
        )


class NotFoundError(ValidationError):
    def __init__(
        self,
        message: str = "Resource not found",
        status_code: Optional[int] = 404,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code, details)


class InsufficientCreditsError(CreditSystemError):
    code = ErrorCode.INSUFFICIENT_CREDITS

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 400,
        details: Any = None,
        required: Optional[float] = None,
        available: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code, details)
        self.required = required
        self.available = available

    @classmethod
    def for_amount(cls, required: float, available: float) -> "InsufficientCreditsError":
        return cls(
            f"Insufficient credits. Required: {required}, Available: {available}",
            details={"required": required, "available": available},
            required=required,
            available=available,
        )


class NetworkError(CreditSystemError):
    """Transport level failure with no interpretable response."""

    code = ErrorCode.NETWORK_ERROR

    def __init__(
        self,
        message: str = "Network error occurred while communicating with the credit system",
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code, details)


class InvalidConfigurationError(CreditSystemError):
    code = ErrorCode.INVALID_CONFIGURATION


class NotInitializedError(CreditSystemError):
    code = ErrorCode.NOT_INITIALIZED

    def __init__(
        self,
        message: str = "Credit system is not initialized. Please call initialize() first.",
    ) -> None:
        super().__init__(message)


class APIError(CreditSystemError):
    """The backend answered, but with a failure the SDK has no better name for."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status_code, response_data)
        self.response_data = response_data


class ServerError(APIError):
    pass


class RateLimitError(APIError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, status_code, response_data)
        self.retry_after = retry_after


_AVAILABLE_PATTERN = re.compile(r"Available: (\d+(?:\.\d+)?)|Current balance: (\d+(?:\.\d+)?)")


def extract_error_message(response_data: Any, default: str = "Unknown error occurred") -> str:
    """Pull a readable message out of an API error body."""
    if not isinstance(response_data, dict):
        return default
    message = response_data.get("error") or response_data.get("message")
    if not message:
        return default
    if not isinstance(message, str):
        message = str(message)
    return message


def parse_available_credits(message: str) -> float:
    """Read the available balance out of an "insufficient credits" message, or 0."""
    match = _AVAILABLE_PATTERN.search(message or "")
    if not match:
        return 0
    value = match.group(1) or match.group(2)
    number = float(value)
    return int(number) if number.is_integer() else number


def error_from_response(
    response_data: Any,
    status_code: Optional[int] = None,
) -> CreditSystemError:
    """Classify a failed API response into the SDK error taxonomy.

    Never raises; anything unrecognised becomes a generic ``APIError``.
    """
    message = extract_error_message(response_data)
    if status_code is None and isinstance(response_data, dict):
        candidate = response_data.get("statusCode")
        if isinstance(candidate, int):
            status_code = candidate

    if status_code == 401:
        return AuthenticationFailedError(message, status_code, response_data)

    lowered = message.lower()
    if "insufficient" in lowered:
        return InsufficientCreditsError(
            message,
            status_code,
            response_data,
            available=parse_available_credits(message),
        )
    if "invalid" in lowered:
        return ValidationError(message, status_code, response_data)

    return APIError(
        message,
        status_code,
        response_data if isinstance(response_data, dict) else None,
    )
