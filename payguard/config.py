"""Configuration for the authorization engine.

Runtime settings come from the environment (``PAYGUARD_*``) or a ``.env``
file. Every tunable weight, threshold and limit the engine uses lives in one
of the typed component configs below so tuning stays auditable.
"""
from __future__ import annotations

from typing import List, Tuple

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeoConfig(BaseModel):
    high_risk_countries: List[str] = Field(default_factory=lambda: ["XX", "YY", "ZZ"])
    medium_risk_countries: List[str] = Field(default_factory=lambda: ["AA", "BB", "CC"])
    max_expected_distance_km: float = Field(default=300.0, gt=0)


class VelocityConfig(BaseModel):
    max_per_hour: int = Field(default=3, ge=1)
    max_per_day: int = Field(default=10, ge=1)
    max_amount_per_day: int = Field(default=100_000, gt=0)
    max_methods_per_day: int = Field(default=3, ge=1)
    cooldown_minutes: float = Field(default=5, ge=0)


class AnomalyConfig(BaseModel):
    usual_max_amount: int = Field(default=50_000, gt=0)
    unusual_hours: Tuple[int, int] = (0, 5)
    average_multiplier: float = Field(default=5.0, gt=0)
    burst_transactions_per_hour: int = Field(default=3, ge=0)
    # Payer clock when the browser reports no usable timezone offset (JST).
    default_utc_offset_minutes: int = Field(default=540, ge=-840, le=840)
    risk_threshold: float = Field(default=0.7, gt=0, le=1)
    # Fractions of risk_threshold; they trade false positives against false negatives.
    verification_fraction: float = Field(default=0.7, gt=0, le=1)
    block_fraction: float = Field(default=1.0, gt=0, le=1)

    @property
    def verification_score(self) -> float:
        return self.risk_threshold * self.verification_fraction

    @property
    def block_score(self) -> float:
        return self.risk_threshold * self.block_fraction


class RiskWeights(BaseModel):
    anomaly: float = 0.4
    geo: float = 0.2
    velocity: float = 0.25
    device: float = 0.15

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "RiskWeights":
        total = self.anomaly + self.geo + self.velocity + self.device
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"risk weights must sum to 1.0, got {total}")
        return self


class RiskThresholds(BaseModel):
    additional_verification: float = Field(default=0.4, ge=0, le=1)
    manual_review: float = Field(default=0.6, ge=0, le=1)
    block: float = Field(default=0.8, ge=0, le=1)

    @model_validator(mode="after")
    def _monotonic(self) -> "RiskThresholds":
        if not (self.additional_verification <= self.manual_review <= self.block):
            raise ValueError(
                "thresholds must satisfy additional_verification <= manual_review <= block"
            )
        return self


class ScoringConfig(BaseModel):
    """Everything the scorers and the consolidator read, in one value."""

    geo: GeoConfig = Field(default_factory=GeoConfig)
    velocity: VelocityConfig = Field(default_factory=VelocityConfig)
    anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
    weights: RiskWeights = Field(default_factory=RiskWeights)
    thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    no_device_score: float = Field(default=0.8, ge=0, le=1)
    missing_signal_penalty: float = Field(default=0.2, ge=0, le=1)


class SignalConfig(BaseModel):
    collection_timeout_seconds: float = Field(default=3.0, gt=0)
    geo_lookup_retries: int = Field(default=1, ge=0)


class ChallengeConfig(BaseModel):
    timeout_seconds: float = Field(default=300.0, gt=0)
    otp_resend_cooldown_seconds: float = Field(default=60.0, ge=0)
    otp_length: int = Field(default=6, ge=4, le=10)
    otp_max_attempts: int = Field(default=3, ge=1)
    session_retention_seconds: float = Field(default=3600.0, ge=0)
    card_payment_methods: List[str] = Field(
        default_factory=lambda: ["credit_card", "debit_card", "card"]
    )


class ThreeDSecureConfig(BaseModel):
    skip_below_amount: int = Field(default=1_000, ge=0)
    always_require_from_amount: int = Field(default=15_000, gt=0)
    test_card_suffixes: List[str] = Field(default_factory=lambda: ["0000"])
    sample_rate: float = Field(default=0.5, ge=0, le=1)
    allowed_origins: List[str] = Field(default_factory=list)


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=1, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0)
    transient_patterns: List[str] = Field(
        default_factory=lambda: ["timeout", "network", "temporary", "retry", "unavailable"]
    )

    def backoff_for(self, attempt_number: int) -> float:
        """Linear backoff: the wait after attempt N is ``backoff_seconds * N``."""
        return self.backoff_seconds * attempt_number


class EngineConfig(BaseModel):
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    signals: SignalConfig = Field(default_factory=SignalConfig)
    challenge: ChallengeConfig = Field(default_factory=ChallengeConfig)
    three_d_secure: ThreeDSecureConfig = Field(default_factory=ThreeDSecureConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class Settings(BaseSettings):
    """Process settings loaded from ``PAYGUARD_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PAYGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_path: str = "payguard.db"
    log_level: str = "INFO"

    challenge_timeout_seconds: float = 300.0
    otp_resend_cooldown_seconds: float = 60.0
    signal_timeout_seconds: float = 3.0
    max_retries: int = 1
    retry_backoff_seconds: float = 1.0
    three_ds_allowed_origins: List[str] = Field(default_factory=list)
    three_ds_sample_rate: float = 0.5
    housekeeping_interval_seconds: float = 60.0
    session_retention_seconds: float = 3600.0

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            signals=SignalConfig(collection_timeout_seconds=self.signal_timeout_seconds),
            challenge=ChallengeConfig(
                timeout_seconds=self.challenge_timeout_seconds,
                otp_resend_cooldown_seconds=self.otp_resend_cooldown_seconds,
                session_retention_seconds=self.session_retention_seconds,
            ),
            three_d_secure=ThreeDSecureConfig(
                allowed_origins=self.three_ds_allowed_origins,
                sample_rate=self.three_ds_sample_rate,
            ),
            retry=RetryPolicy(
                max_retries=self.max_retries,
                backoff_seconds=self.retry_backoff_seconds,
            ),
        )


def get_settings() -> Settings:
    return Settings()
