from fastapi import APIRouter, Depends

from payguard.dependencies import get_pipeline
from payguard.models.payment import PaymentRequest
from payguard.models.risk import ConsolidatedAssessment
from payguard.services.fraud_audit import assessment_history
from payguard.services.pipeline import AuthorizationPipeline

router = APIRouter(tags=["risk"])


@router.post("/risk/assess", response_model=ConsolidatedAssessment)
async def assess_risk(
    payment: PaymentRequest, pipeline: AuthorizationPipeline = Depends(get_pipeline)
) -> ConsolidatedAssessment:
    """Score a payment without challenging or charging it. The assessment is audited."""
    fingerprint = await pipeline.collect_fingerprint(payment)
    return await pipeline.screen(payment, fingerprint)


@router.get("/risk/history/{user_id}")
async def get_risk_history(user_id: str, pipeline: AuthorizationPipeline = Depends(get_pipeline)):
    """Most recent assessments for a user, newest first."""
    return {"user_id": user_id, "entries": assessment_history(pipeline.store, user_id)}
