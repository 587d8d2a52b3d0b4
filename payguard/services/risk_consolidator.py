"""Weighted combination of the individual risk signals.

Everything here is pure: the same signals and config always produce the same
assessment, and nothing touches I/O.
"""
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional

from payguard.config import ScoringConfig
from payguard.models.risk import (
    ConsolidatedAssessment,
    DetailedScores,
    DeviceFingerprint,
    GeoRiskResult,
    RiskSignal,
    VelocityCheckResult,
)

# Signal name -> what its absence says about the device.
DEVICE_CHECKS = {
    "canvas_fingerprint": "Stable rendering fingerprint unavailable",
    "webgl_fingerprint": "Secondary rendering check unavailable",
    "audio_fingerprint": "Audio check unavailable",
    "platform": "Platform string unavailable",
}


def device_trust_signal(
    fingerprint: Optional[DeviceFingerprint], config: Optional[ScoringConfig] = None
) -> RiskSignal:
    """Device risk from how much of the fingerprint could be collected."""
    config = config or ScoringConfig()
    if fingerprint is None or not fingerprint.device_id:
        return RiskSignal(
            source="device",
            score=config.no_device_score,
            reasons=["Device information could not be collected"],
            suggests_challenge=True,
        )

    reasons = []
    score = 0.0
    for name, reason in DEVICE_CHECKS.items():
        if not fingerprint.signals.get(name):
            reasons.append(reason)
            score += config.missing_signal_penalty
    return RiskSignal(source="device", score=min(score, 1.0), reasons=reasons)


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def consolidate(
    anomaly: RiskSignal,
    geo: RiskSignal,
    velocity: RiskSignal,
    device: RiskSignal,
    config: Optional[ScoringConfig] = None,
    geo_result: Optional[GeoRiskResult] = None,
    velocity_result: Optional[VelocityCheckResult] = None,
    assessed_at: Optional[datetime] = None,
) -> ConsolidatedAssessment:
    """Combine the four signals into one weighted score and a decision."""
    config = config or ScoringConfig()
    weights = config.weights
    thresholds = config.thresholds

    overall = (
        anomaly.score * weights.anomaly
        + geo.score * weights.geo
        + velocity.score * weights.velocity
        + device.score * weights.device
    )
    overall = min(max(overall, 0.0), 1.0)

    requires_verification = overall >= thresholds.additional_verification
    requires_review = overall >= thresholds.manual_review
    block = overall >= thresholds.block

    reasons = anomaly.reasons + geo.reasons + velocity.reasons + device.reasons
    suggested_actions: List[str] = []

    if device.score >= config.no_device_score:
        suggested_actions.append("Check your browser settings and enable JavaScript")

    geo_high = geo_result.risk_level == "high" if geo_result else geo.score >= 0.7
    if geo_high:
        suggested_actions.append("Access from your usual region or verify your account")

    if velocity_result is not None and velocity_result.remaining_cooldown_seconds > 0:
        minutes = math.ceil(velocity_result.remaining_cooldown_seconds / 60)
        suggested_actions.append(f"Wait about {minutes} minute(s) before trying again")

    if block:
        suggested_actions.append("Contact support")
    elif requires_verification:
        suggested_actions.append("Complete additional verification")

    return ConsolidatedAssessment(
        overall_score=overall,
        requires_manual_review=requires_review,
        requires_additional_verification=requires_verification,
        block_transaction=block,
        detailed_scores=DetailedScores(
            anomaly=anomaly.score,
            geo=geo.score,
            velocity=velocity.score,
            device=device.score,
        ),
        reasons=_dedupe(reasons),
        suggested_actions=_dedupe(suggested_actions),
        assessed_at=assessed_at or datetime.now(timezone.utc),
    )


def handle_assessment(assessment: ConsolidatedAssessment) -> Dict[str, object]:
    """Translate an assessment into the next step shown to the payer."""
    if assessment.block_transaction:
        return {
            "allow_transaction": False,
            "require_challenge": False,
            "message": "This transaction cannot be processed for security reasons. Please contact support.",
            "redirect_url": "/support/contact",
        }
    if assessment.requires_additional_verification:
        return {
            "allow_transaction": True,
            "require_challenge": True,
            "message": "Additional verification is required to continue.",
            "redirect_url": "/verification",
        }
    return {
        "allow_transaction": True,
        "require_challenge": False,
        "message": "Proceeding with the transaction.",
        "redirect_url": None,
    }
