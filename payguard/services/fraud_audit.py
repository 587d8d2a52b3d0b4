import logging
from datetime import datetime, timezone
from typing import List

from payguard.models.payment import PaymentRequest
from payguard.models.risk import ConsolidatedAssessment, FraudAuditEntry
from payguard.stores import KeyValueStore

logger = logging.getLogger(__name__)

MAX_AUDIT_ENTRIES = 10


def audit_key(user_id: str) -> str:
    return f"fraud_audit:{user_id}"


def record_assessment(
    store: KeyValueStore, user_id: str, assessment: ConsolidatedAssessment
) -> FraudAuditEntry:
    """Keep the newest assessments per user, pruned to ``MAX_AUDIT_ENTRIES``."""
    entry = FraudAuditEntry(
        recorded_at=datetime.now(timezone.utc),
        overall_score=assessment.overall_score,
        detailed_scores=assessment.detailed_scores,
        reasons=assessment.reasons,
        requires_additional_verification=assessment.requires_additional_verification,
        block_transaction=assessment.block_transaction,
    )
    store.append(audit_key(user_id), entry.model_dump(mode="json"), limit=MAX_AUDIT_ENTRIES)
    return entry


def assessment_history(store: KeyValueStore, user_id: str) -> List[FraudAuditEntry]:
    raw = store.get(audit_key(user_id)) or []
    return [FraudAuditEntry.model_validate(item) for item in raw]


def report_suspicious(request: PaymentRequest, assessment: ConsolidatedAssessment) -> None:
    if not assessment.requires_manual_review:
        return
    logger.warning(
        "Suspicious transaction: user=%s amount=%s method=%s score=%.3f reasons=%s",
        request.user_id,
        request.amount,
        request.payment_method,
        assessment.overall_score,
        assessment.reasons,
    )
    if assessment.block_transaction:
        logger.error("Blocked high-risk transaction %s for user %s", request.request_id, request.user_id)
