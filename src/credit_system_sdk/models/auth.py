from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..utils import ensure_utc


class OperatingMode(str, Enum):
    PASSWORD_LOGIN = "password-login"
    PRE_ISSUED_TOKEN = "pre-issued-token"
    PARENT_DELEGATED = "parent-delegated"


class TokenStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    REFRESHING = "refreshing"
    LOGGED_OUT = "logged_out"


class User(BaseModel):
    """The authenticated principal."""

    model_config = {"frozen": True}

    id: Union[int, str] = Field(...)
    name: Optional[str] = Field(None)
    email: Optional[str] = Field(None)


class AuthCredentials(BaseModel):
    email: str = Field(...)
    password: str = Field(...)

    def __repr__(self) -> str:
        return f"AuthCredentials(email={self.email!r}, password='***')"


class Credential(BaseModel):
    """A token, its expiry and its principal, held as one read-only unit."""

    model_config = {"frozen": True}

    token: str = Field(...)
    expires_at: Optional[datetime] = Field(
        None, description="Absolute expiry; None for tokens that never expire"
    )
    user: Optional[User] = Field(None)
    source: OperatingMode = Field(
        OperatingMode.PASSWORD_LOGIN,
        description="How the credential was acquired",
    )

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def __repr__(self) -> str:
        return (
            f"Credential(expires_at={self.expires_at!r}, user={self.user!r}, "
            f"source={self.source.value!r})"
        )
