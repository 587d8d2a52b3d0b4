from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RiskLevel = Literal["low", "medium", "high"]
SignalSource = Literal["anomaly", "geo", "velocity", "device"]


class RiskSignal(BaseModel):
    """Output of one scorer for one attempt."""

    model_config = ConfigDict(frozen=True)

    source: SignalSource
    score: float = Field(ge=0, le=1)
    reasons: List[str] = Field(default_factory=list)
    suggests_challenge: bool = False
    suggests_block: bool = False


class GeoLocation(BaseModel):
    country: str = Field(min_length=2, max_length=2)
    region: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    timezone: Optional[str] = None
    ip_address: Optional[str] = None


class GeoRiskResult(BaseModel):
    signal: RiskSignal
    risk_level: RiskLevel
    distance_km: Optional[float] = None
    country_match: bool = True
    region_match: bool = True
    city_match: bool = True


class VelocityCheckResult(BaseModel):
    allow: bool
    signal: RiskSignal
    transactions_last_hour: int
    transactions_last_day: int
    amount_last_day: int
    unique_payment_methods_last_day: int
    remaining_cooldown_seconds: float = 0


class DetailedScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    anomaly: float
    geo: float
    velocity: float
    device: float


class ConsolidatedAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall_score: float = Field(ge=0, le=1)
    requires_manual_review: bool
    requires_additional_verification: bool
    block_transaction: bool
    detailed_scores: DetailedScores
    reasons: List[str]
    suggested_actions: List[str]
    assessed_at: datetime

    @property
    def risk_level(self) -> RiskLevel:
        if self.block_transaction or self.requires_manual_review:
            return "high"
        if self.requires_additional_verification:
            return "medium"
        return "low"


class FraudAuditEntry(BaseModel):
    recorded_at: datetime
    overall_score: float
    detailed_scores: DetailedScores
    reasons: List[str]
    requires_additional_verification: bool
    block_transaction: bool


class DeviceFingerprint(BaseModel):
    device_id: Optional[str] = None
    signals: dict = Field(default_factory=dict)
    error: Optional[str] = None
