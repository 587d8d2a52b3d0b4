from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from payguard.config import AnomalyConfig
from payguard.models.risk import RiskSignal
from payguard.models.transaction import TransactionFeatures
from payguard.services.device_fingerprint import signal_number
from payguard.services.fraud_patterns import (
    PatternPredicate,
    amount_ratio_pattern,
    burst_pattern,
)

# Browsers report offsets between UTC-12 and UTC+14.
MAX_UTC_OFFSET_MINUTES = 14 * 60


def payer_local_time(now: datetime, device_signals: Optional[Dict[str, Any]],
                     config: Optional[AnomalyConfig] = None) -> datetime:
    """``now`` on the payer's wall clock.

    Uses the browser-reported ``timezone_offset`` (minutes behind UTC, so JST
    is -540) when it is usable, else the configured business offset.
    """
    config = config or AnomalyConfig()
    offset = signal_number((device_signals or {}).get("timezone_offset"))
    if offset is not None and abs(offset) <= MAX_UTC_OFFSET_MINUTES:
        minutes = -offset
    else:
        minutes = config.default_utc_offset_minutes
    return now.astimezone(timezone(timedelta(minutes=minutes)))


def default_patterns(config: Optional[AnomalyConfig] = None) -> list:
    config = config or AnomalyConfig()
    return [
        burst_pattern(config.burst_transactions_per_hour),
        amount_ratio_pattern(config.average_multiplier),
    ]


def _in_unusual_hours(hour: int, window: tuple) -> bool:
    start, end = window
    if start <= end:
        return start <= hour <= end
    # window wraps midnight, e.g. (22, 4)
    return hour >= start or hour <= end


def detect_anomaly(
    features: TransactionFeatures,
    config: Optional[AnomalyConfig] = None,
    patterns: Optional[Sequence[PatternPredicate]] = None,
) -> RiskSignal:
    """Rule-based anomaly score for a single transaction, capped at 1.0."""
    config = config or AnomalyConfig()
    if patterns is None:
        patterns = default_patterns(config)

    reasons = []
    score = 0.0

    if features.amount > config.usual_max_amount:
        reasons.append("Amount is higher than usual")
        score += 0.3

    if _in_unusual_hours(features.time_of_day, config.unusual_hours):
        reasons.append("Transaction at an unusual time of day")
        score += 0.2

    history = features.user_history
    if history is None or history.transaction_count == 0:
        reasons.append("No prior transaction history")
        score += 0.2

    if not features.device_id:
        reasons.append("Device id could not be determined")
        score += 0.3

    if history is not None and history.average_amount > 0:
        if features.amount > history.average_amount * config.average_multiplier:
            reasons.append(
                f"Amount exceeds {config.average_multiplier:g}x the user's average"
            )
            score += 0.2

    for pattern in patterns:
        if pattern(features):
            name = getattr(pattern, "name", None)
            reasons.append(f"Matches known fraud pattern: {name}" if name else "Matches known fraud pattern")
            score += 0.4

    score = min(score, 1.0)
    return RiskSignal(
        source="anomaly",
        score=score,
        reasons=reasons,
        suggests_challenge=score >= config.verification_score,
        suggests_block=score >= config.block_score,
    )
