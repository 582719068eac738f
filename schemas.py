from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, TransactionType

Granularity = Literal["day", "week", "month", "year"]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    currency: str = Field(default="USD", min_length=3, max_length=3)
    color: str = Field(default="#3B82F6", max_length=9)
    icon: str = Field(default="wallet", max_length=40)
    is_active: bool = True


class AccountUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=40)
    is_active: Optional[bool] = None


class TransactionIn(BaseModel):
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    occurred_at: datetime
    account_id: int
    to_account_id: Optional[int] = None
    tags: list[str] = Field(default_factory=list)


class AnalyticsQuery(BaseModel):
    period: str = "month"
    account_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
