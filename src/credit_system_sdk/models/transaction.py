from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_serializer, model_validator


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    SPEND = "spend"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Balance(BaseModel):
    balance: float = Field(...)
    currency: Optional[str] = Field(None)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Transaction(BaseModel):
    model_config = {"populate_by_name": True}

    id: Union[int, str] = Field(...)
    type: str = Field(..., description="credit, debit, spend or refund")
    amount: float = Field(..., description="Always positive; the type carries the direction")
    description: Optional[str] = Field(None)
    created_at: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    status: str = Field(TransactionStatus.COMPLETED.value)
    metadata: Optional[Dict[str, Any]] = Field(None)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        """Accept the backend's mixed field styles and signed amounts."""
        if isinstance(data, dict):
            data = dict(data)
            if data.get("amount") is not None:
                data["amount"] = abs(float(data["amount"]))
            if not data.get("status"):
                data["status"] = TransactionStatus.COMPLETED.value
        return data


class SpendRequest(BaseModel):
    amount: float = Field(...)
    description: str = Field(...)
    metadata: Optional[Dict[str, Any]] = Field(None)


class AddCreditsRequest(BaseModel):
    amount: float = Field(...)
    description: Optional[str] = Field(None)
    metadata: Optional[Dict[str, Any]] = Field(None)


class TransactionHistoryParams(BaseModel):
    model_config = {"populate_by_name": True}

    limit: Optional[int] = Field(None, description="Between 1 and 1000")
    offset: Optional[int] = Field(None)
    start_date: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("start_date", "startDate"),
        serialization_alias="startDate",
    )
    end_date: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("end_date", "endDate"),
        serialization_alias="endDate",
    )
    type: Optional[TransactionType] = Field(None)

    @field_serializer("start_date", "end_date")
    def serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @field_serializer("type")
    def serialize_type(self, value: Optional[TransactionType]) -> Optional[str]:
        return value.value if value else None

    def to_query_params(self) -> Dict[str, Any]:
        return {
            key: str(value)
            for key, value in self.model_dump(by_alias=True, exclude_none=True).items()
        }
