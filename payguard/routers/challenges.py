from fastapi import APIRouter, Depends, HTTPException

from payguard.dependencies import get_pipeline
from payguard.errors import ChallengeError, ChallengeNotFoundError, ResendCooldownError
from payguard.models.challenge import (
    ChallengeOutcome,
    ChallengeSession,
    OtpVerification,
    ThreeDSecureMessage,
)
from payguard.services.pipeline import AuthorizationPipeline

router = APIRouter(tags=["challenges"])


def _http_error(exc: ChallengeError) -> HTTPException:
    if isinstance(exc, ChallengeNotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, ResendCooldownError):
        return HTTPException(
            status_code=429,
            detail=exc.message,
            headers={"Retry-After": str(max(int(exc.remaining_seconds), 1))},
        )
    return HTTPException(status_code=409, detail=exc.message)


@router.get("/challenges/{session_id}", response_model=ChallengeSession)
async def get_challenge(session_id: str, pipeline: AuthorizationPipeline = Depends(get_pipeline)):
    try:
        return pipeline.orchestrator.get(session_id)
    except ChallengeError as exc:
        raise _http_error(exc)


@router.post("/challenges/{session_id}/complete", response_model=ChallengeSession)
async def complete_challenge(
    session_id: str, outcome: ChallengeOutcome,
    pipeline: AuthorizationPipeline = Depends(get_pipeline),
):
    """Completion callback from the challenge front-end. Repeats are ignored.

    3DS sessions stay pending until the issuer confirms the result.
    """
    try:
        if pipeline.orchestrator.get(session_id).method == "3ds":
            return pipeline.orchestrator.report(session_id, outcome.success)
        return pipeline.orchestrator.complete(session_id, outcome.success)
    except ChallengeError as exc:
        raise _http_error(exc)


@router.post("/challenges/{session_id}/cancel", response_model=ChallengeSession)
async def cancel_challenge(session_id: str, pipeline: AuthorizationPipeline = Depends(get_pipeline)):
    try:
        return pipeline.orchestrator.cancel(session_id)
    except ChallengeError as exc:
        raise _http_error(exc)


@router.post("/challenges/{session_id}/verify", response_model=ChallengeSession)
async def verify_challenge_code(
    session_id: str, body: OtpVerification,
    pipeline: AuthorizationPipeline = Depends(get_pipeline),
):
    try:
        return pipeline.orchestrator.verify_code(session_id, body.code)
    except ChallengeError as exc:
        raise _http_error(exc)


@router.post("/challenges/{session_id}/resend", response_model=ChallengeSession)
async def resend_challenge_code(session_id: str, pipeline: AuthorizationPipeline = Depends(get_pipeline)):
    try:
        return await pipeline.orchestrator.resend_code(session_id)
    except ChallengeError as exc:
        raise _http_error(exc)


@router.post("/challenges/{session_id}/3ds-message")
async def receive_three_ds_message(
    session_id: str, message: ThreeDSecureMessage,
    pipeline: AuthorizationPipeline = Depends(get_pipeline),
):
    """Relay of the issuer page's completion message. Untrusted origins are dropped."""
    accepted = pipeline.three_d_secure.receive_message(session_id, message.origin, message.data)
    return {"accepted": accepted}
