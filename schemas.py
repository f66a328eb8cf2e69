from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import TransactionType


class TransactionIn(BaseModel):
    """Full transaction form.

    For credit purchases ``amount_cents`` is the total purchase price; the service
    amortizes it into per-installment records.
    """

    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., max_length=200)
    date: datetime
    type: TransactionType
    category: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None
    is_credit: bool = False
    installments: Optional[int] = Field(default=None, ge=1, le=24)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description is required")
        return value

    @field_validator("category", "notes")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _credit_fields(self) -> "TransactionIn":
        if self.is_credit:
            if self.type != TransactionType.expense:
                raise ValueError("Only expenses can be credit purchases")
            if self.installments is None:
                raise ValueError("Installments are required for credit purchases")
        else:
            self.installments = None
        return self


class QuickTransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., max_length=200)
    type: TransactionType = TransactionType.expense
    category: Optional[str] = Field(default=None, max_length=100)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description is required")
        return value

    @field_validator("category")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class SignupIn(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(..., min_length=8, max_length=72)
    full_name: Optional[str] = Field(default=None, max_length=120)


class ProfileIn(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    full_name: Optional[str] = Field(default=None, max_length=120)
    avatar_url: Optional[str] = Field(default=None, max_length=500)


class ChatMessage(BaseModel):
    role: str
    content: str

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        return "user" if value == "user" else "assistant"


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage]
    transactions: Optional[list[dict[str, Any]]] = None
    financial_summary: Optional[dict[str, Any]] = Field(
        default=None, alias="financialSummary"
    )


class ChatEvent(BaseModel):
    type: Literal["thinking", "content", "error"]
    text: str
