"""Local input validation; every check here runs before any network call."""

import math
import re
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .exceptions import InvalidAmountError, ValidationError
from .models import SpendRequest, TransactionHistoryParams, TransactionType

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_DESCRIPTION_LENGTH = 255
MAX_HISTORY_LIMIT = 1000
MAX_SAFE_AMOUNT = 2**53 - 1


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))


def validate_login(email: Any, password: Any) -> None:
    if not is_valid_email(email):
        raise ValidationError("Invalid email format")
    if not password:
        raise ValidationError("Password is required")


def validate_amount(amount: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidAmountError(amount)
    if math.isnan(amount) or amount <= 0:
        raise InvalidAmountError(amount)
    if math.isinf(amount) or amount > MAX_SAFE_AMOUNT:
        raise ValidationError(f"Amount {amount} exceeds maximum safe integer")


def validate_spend_request(request: SpendRequest) -> None:
    validate_amount(request.amount)
    if not request.description or not request.description.strip():
        raise ValidationError("Description is required for spend requests")
    if len(request.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less"
        )


def validate_history_params(params: TransactionHistoryParams) -> None:
    if params.limit is not None and not 1 <= params.limit <= MAX_HISTORY_LIMIT:
        raise ValidationError(f"Limit must be between 1 and {MAX_HISTORY_LIMIT}")
    if params.offset is not None and params.offset < 0:
        raise ValidationError("Offset must be a positive number")
    if params.start_date and params.end_date and params.start_date > params.end_date:
        raise ValidationError("Start date must be before end date")


def is_expired(expires_at: Optional[datetime], now: datetime, skew: float = 0.0) -> bool:
    """True once ``now`` has reached ``expires_at - skew`` seconds.

    A missing expiry never expires.
    """
    if expires_at is None:
        return False
    return (expires_at - now).total_seconds() <= skew


def coerce_history_params(
    params: Union[TransactionHistoryParams, Mapping[str, Any], None],
) -> Optional[TransactionHistoryParams]:
    """Turn a mapping of history filters into validated ``TransactionHistoryParams``."""
    if params is None or isinstance(params, TransactionHistoryParams):
        result = params
    else:
        requested_type = params.get("type")
        valid_types = [t.value for t in TransactionType]
        if requested_type is not None and requested_type not in valid_types:
            raise ValidationError(
                f"Invalid transaction type. Must be one of: {', '.join(valid_types)}"
            )
        try:
            result = TransactionHistoryParams.model_validate(dict(params))
        except PydanticValidationError as e:
            raise ValidationError("Invalid transaction history parameters", details=e) from e

    if result is not None:
        validate_history_params(result)
    return result
