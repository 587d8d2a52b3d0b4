from fastapi import APIRouter, Depends, HTTPException

from payguard.dependencies import get_pipeline
from payguard.models.challenge import ChallengeSession
from payguard.models.payment import AuthorizationResult, AuthorizeRequest
from payguard.services.pipeline import AuthorizationPipeline

router = APIRouter(tags=["payments"])


@router.post("/payments/authorize", response_model=AuthorizationResult)
async def authorize_payment(
    body: AuthorizeRequest, pipeline: AuthorizationPipeline = Depends(get_pipeline)
) -> AuthorizationResult:
    """Score, challenge if needed, and charge. Suspends while a challenge is open."""
    return await pipeline.authorize(body.payment, body.options)


@router.get("/payments/{request_id}/challenge", response_model=ChallengeSession)
async def get_active_challenge(
    request_id: str, pipeline: AuthorizationPipeline = Depends(get_pipeline)
) -> ChallengeSession:
    """The challenge the front-end should currently present for this payment."""
    session = pipeline.orchestrator.active_for_request(request_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No active challenge for {request_id}")
    return session


@router.get("/payments/{request_id}/attempts")
async def list_payment_attempts(
    request_id: str, pipeline: AuthorizationPipeline = Depends(get_pipeline)
):
    return {"attempts": pipeline.executor.attempts_for(request_id)}
