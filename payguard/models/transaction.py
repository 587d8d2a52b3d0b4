from __future__ import annotations

from datetime import datetime
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserHistorySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_count: int = Field(default=0, ge=0)
    average_amount: float = Field(default=0, ge=0)
    last_transaction_at: Optional[datetime] = None
    used_payment_methods: FrozenSet[str] = frozenset()


class TransactionFeatures(BaseModel):
    """Immutable snapshot of one payment attempt, shared by every scorer."""

    model_config = ConfigDict(frozen=True)

    amount: int = Field(gt=0, description="Amount in minor currency units")
    payment_method: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    time_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(ge=0, le=6, description="0 is Sunday")
    user_history: Optional[UserHistorySummary] = None
    transactions_last_hour: Optional[int] = Field(default=None, ge=0)
    transaction_type: str = "payment"


class TransactionHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    transaction_id: str
    timestamp: datetime
    amount: int
    payment_method: str
    success: bool = True
