from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ChallengeMethod = Literal["sms", "email", "captcha", "3ds"]
ChallengeStatus = Literal["pending", "success", "failed", "canceled"]

TERMINAL_STATUSES = ("success", "failed", "canceled")


class ChallengeSession(BaseModel):
    id: str
    request_id: str
    method: ChallengeMethod
    risk_level: str
    reasons: List[str] = Field(default_factory=list)
    created_at: datetime
    status: ChallengeStatus = "pending"
    completed_at: Optional[datetime] = None
    failure_reason: Optional[Literal["rejected", "timeout", "undelivered"]] = None
    authentication_url: Optional[str] = None
    issuer_reference: Optional[str] = None
    frictionless: bool = False
    otp_sent_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CardData(BaseModel):
    card_number: str = Field(min_length=12, max_length=23)
    expiry_month: str = Field(min_length=1, max_length=2)
    expiry_year: str = Field(min_length=2, max_length=4)
    cvc: Optional[str] = Field(default=None, repr=False)
    cardholder_name: Optional[str] = None

    @property
    def digits(self) -> str:
        return "".join(ch for ch in self.card_number if ch.isdigit())


class SanitizedCard(BaseModel):
    masked_number: str
    last_four: str
    expiry_month: str
    expiry_year: str


class ThreeDSecureData(BaseModel):
    id: str
    status: ChallengeStatus
    authentication_url: Optional[str] = None


class ChallengeOutcome(BaseModel):
    success: bool


class OtpVerification(BaseModel):
    code: str = Field(min_length=4, max_length=10)


class ThreeDSecureMessage(BaseModel):
    """Completion message posted by the issuer's challenge page."""

    origin: str
    data: dict | str
