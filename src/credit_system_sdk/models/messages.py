from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from ..utils import ensure_utc
from .auth import User


class MessageType(str, Enum):
    REQUEST_CREDENTIALS = "REQUEST_CREDENTIALS"
    JWT_TOKEN = "JWT_TOKEN"
    USER_CREDENTIALS = "USER_CREDENTIALS"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    BALANCE_UPDATE = "BALANCE_UPDATE"
    OPERATION_COMPLETE = "OPERATION_COMPLETE"
    ERROR = "ERROR"
    RESIZE_IFRAME = "RESIZE_IFRAME"


class ParentMessage(BaseModel):
    """A message pushed by the hosting parent context.

    Unknown message types are kept as plain strings so callers can ignore them.
    """

    model_config = {"populate_by_name": True, "extra": "ignore"}

    type: str = Field(...)
    token: Optional[str] = Field(None)
    expires_at: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("expires_at", "expiresAt"),
    )
    user: Optional[User] = Field(None)
    balance: Optional[float] = Field(None)
    error: Optional[str] = Field(None)
    message: Optional[str] = Field(None)

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def message_type(self) -> Optional[MessageType]:
        try:
            return MessageType(self.type)
        except ValueError:
            return None
