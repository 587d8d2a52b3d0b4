"""Error taxonomy for the authorization engine.

High risk is a scoring result, never an exception. These types cover
infrastructure failures and challenge/gateway outcomes that end an attempt.
"""
from typing import Optional


class PayguardError(Exception):
    """Base class carrying a stable machine-readable code."""

    code = "PAYGUARD_ERROR"

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class SignalCollectionError(PayguardError):
    """Device signals could not be collected. Degrades scoring only."""

    code = "SIGNAL_COLLECTION_FAILED"


class GeoResolutionError(PayguardError):
    """IP geolocation failed. The location is treated as unknown."""

    code = "GEO_RESOLUTION_FAILED"


class ChallengeError(PayguardError):
    code = "CHALLENGE_ERROR"


class ChallengeNotFoundError(ChallengeError):
    code = "CHALLENGE_NOT_FOUND"


class ChallengeTimeoutError(ChallengeError):
    code = "CHALLENGE_TIMEOUT"


class ChallengeCanceledError(ChallengeError):
    code = "CHALLENGE_CANCELED"


class ResendCooldownError(ChallengeError):
    code = "OTP_RESEND_COOLDOWN"

    def __init__(self, remaining_seconds: float):
        self.remaining_seconds = remaining_seconds
        super().__init__(f"code can be resent in {remaining_seconds:.0f}s")


class ThreeDSecureError(ChallengeError):
    code = "THREE_DS_ERROR"


class GatewayError(PayguardError):
    """Raised by payment gateways. Subclasses pin the retry classification."""

    code = "GATEWAY_ERROR"


class TransientGatewayError(GatewayError):
    code = "GATEWAY_TRANSIENT"


class PermanentGatewayError(GatewayError):
    code = "GATEWAY_PERMANENT"


class InternalPipelineError(PayguardError):
    code = "INTERNAL_ERROR"
