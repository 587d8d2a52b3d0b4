from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from payguard.models.challenge import CardData
from payguard.models.risk import GeoLocation

AttemptOutcome = Literal["success", "transient_failure", "permanent_failure"]
ActionType = Literal["verification", "manual_review", "retry_later"]


class CustomerContext(BaseModel):
    phone_verified: bool = False
    email_verified: bool = False
    registered_location: Optional[GeoLocation] = None


class PaymentRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex}")
    user_id: str = Field(min_length=1)
    amount: int = Field(gt=0, description="Amount in minor currency units")
    currency: str = Field(default="JPY", min_length=3, max_length=3)
    payment_method: str
    order_id: Optional[str] = None
    card: Optional[CardData] = None
    device_signals: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    customer: CustomerContext = Field(default_factory=CustomerContext)


class PipelineOptions(BaseModel):
    enable_fraud_detection: bool = True
    enable_3d_secure: bool = True
    enable_challenges: bool = True
    collect_device_info: bool = True
    retry_on_failure: bool = True
    max_retries: Optional[int] = Field(default=None, ge=0)
    route_manual_review: bool = True


class AuthorizeRequest(BaseModel):
    payment: PaymentRequest
    options: PipelineOptions = Field(default_factory=PipelineOptions)


class GatewayReceipt(BaseModel):
    transaction_id: str
    receipt_url: Optional[str] = None


class PaymentAttempt(BaseModel):
    attempt_number: int = Field(ge=1)
    amount: int
    payment_method: str
    idempotency_key: str
    outcome: AttemptOutcome
    transaction_id: Optional[str] = None
    receipt_url: Optional[str] = None
    error: Optional[str] = None
    attempted_at: datetime


class PaymentResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    receipt_url: Optional[str] = None
    error: Optional[str] = None
    attempts: List[PaymentAttempt] = Field(default_factory=list)


class AuthorizationResult(BaseModel):
    approved: bool
    request_id: str
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    requires_action: bool = False
    action_type: Optional[ActionType] = None
    reasons: List[str] = Field(default_factory=list)
    suggested_actions: List[str] = Field(default_factory=list)
    risk_score: Optional[float] = None
    challenge_session_id: Optional[str] = None
