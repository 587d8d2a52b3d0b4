"""3-D Secure authentication on top of the challenge orchestrator.

The issuer either approves immediately (frictionless) or returns an
authentication URL. In the latter case the payer completes the issuer's
page in a cross-origin frame, which posts a single ``3ds-complete`` message
back; that message is only trusted when it comes from the expected origin.
"""
import json
import logging
import random
from typing import Any, Callable, Dict, List, Optional, Protocol, Union
from urllib.parse import urlsplit

from payguard.config import ThreeDSecureConfig
from payguard.errors import ThreeDSecureError
from payguard.models.challenge import CardData, ChallengeSession, SanitizedCard, ThreeDSecureData
from payguard.services.challenge import ChallengeOrchestrator
from payguard.services.device_fingerprint import device_risk_score

logger = logging.getLogger(__name__)

COMPLETION_MESSAGE_TYPE = "3ds-complete"


class IssuerAuthenticator(Protocol):
    async def initiate(self, card: SanitizedCard, amount: int, order_id: str,
                       risk_score: int) -> ThreeDSecureData: ...

    async def complete(self, three_ds_id: str, params: Dict[str, str]) -> bool: ...


def sanitize_card(card: CardData) -> SanitizedCard:
    """Keep only the first six and last four digits. The CVC is dropped."""
    digits = card.digits
    return SanitizedCard(
        masked_number=f"{digits[:6]}******{digits[-4:]}",
        last_four=digits[-4:],
        expiry_month=card.expiry_month,
        expiry_year=card.expiry_year,
    )


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class ThreeDSecurePolicy:
    """Decides whether a card payment must go through 3-D Secure.

    The contextual decision for amounts between the floor and the ceiling is
    business risk appetite, so it is injectable.
    """

    def __init__(
        self,
        config: Optional[ThreeDSecureConfig] = None,
        contextual: Optional[Callable[[CardData, int], bool]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ThreeDSecureConfig()
        self._rng = rng or random.Random()
        self._contextual = contextual or self._sampled

    def _sampled(self, card: CardData, amount: int) -> bool:
        return self._rng.random() < self.config.sample_rate

    def is_test_card(self, card: CardData) -> bool:
        return any(card.digits.endswith(suffix) for suffix in self.config.test_card_suffixes)

    def should_require(self, card: CardData, amount: int) -> bool:
        if self.is_test_card(card):
            return False
        if amount < self.config.skip_below_amount:
            return False
        if amount >= self.config.always_require_from_amount:
            return True
        return self._contextual(card, amount)


class ThreeDSecureAuthenticator:
    def __init__(
        self,
        issuer: IssuerAuthenticator,
        orchestrator: ChallengeOrchestrator,
        config: Optional[ThreeDSecureConfig] = None,
    ):
        self._issuer = issuer
        self._orchestrator = orchestrator
        self.config = config or ThreeDSecureConfig()
        self._expected_origins: Dict[str, str] = {}
        self._issuer_refs: Dict[str, str] = {}
        self._callback_params: Dict[str, Dict[str, str]] = {}

    async def open(
        self,
        request_id: str,
        card: CardData,
        amount: int,
        order_id: str,
        device_signals: Optional[Dict[str, Any]] = None,
        risk_level: str = "medium",
        reasons: Optional[List[str]] = None,
    ) -> ChallengeSession:
        """Initiate with the issuer and open the matching challenge session."""
        risk_score = device_risk_score(device_signals or {})
        data = await self._issuer.initiate(sanitize_card(card), amount, order_id, risk_score)

        if data.status == "success":
            logger.info("Frictionless 3DS approval %s for request %s", data.id, request_id)
            return self._orchestrator.record_frictionless(
                request_id, risk_level, reasons or [], issuer_reference=data.id
            )
        if data.status != "pending":
            raise ThreeDSecureError(f"issuer rejected 3DS initiation ({data.status})")
        if not data.authentication_url:
            raise ThreeDSecureError("issuer returned no authentication URL")

        session = await self._orchestrator.request_challenge(
            request_id, "3ds", risk_level, reasons or [],
            authentication_url=data.authentication_url,
            issuer_reference=data.id,
        )
        self._expected_origins[session.id] = origin_of(data.authentication_url)
        self._issuer_refs[session.id] = data.id
        return session

    async def finish(self, session: ChallengeSession) -> ChallengeSession:
        """Wait for the completion message and confirm it with the issuer.

        The session stays pending until the issuer has answered, so its
        terminal state is the confirmed one.
        """
        if session.frictionless:
            return session
        issuer_ref = self._issuer_refs.get(session.id, session.issuer_reference)

        async def confirm() -> bool:
            params = self._callback_params.get(session.id, {})
            confirmed = await self._issuer.complete(issuer_ref, params)
            if not confirmed:
                logger.warning("Issuer did not confirm 3DS %s for session %s", issuer_ref, session.id)
            return confirmed

        try:
            return await self._orchestrator.wait_for_outcome(session.id, confirm=confirm)
        finally:
            self._expected_origins.pop(session.id, None)
            self._callback_params.pop(session.id, None)
            self._issuer_refs.pop(session.id, None)
        if not await self._issuer.complete(issuer_ref, params):
            logger.warning("Issuer did not confirm 3DS %s for session %s", issuer_ref, session.id)
            outcome.status = "failed"
            outcome.failure_reason = "rejected"
        return outcome

    async def authenticate(
        self,
        request_id: str,
        card: CardData,
        amount: int,
        order_id: str,
        device_signals: Optional[Dict[str, Any]] = None,
        risk_level: str = "medium",
        reasons: Optional[List[str]] = None,
    ) -> ChallengeSession:
        session = await self.open(
            request_id, card, amount, order_id, device_signals, risk_level, reasons
        )
        return await self.finish(session)

    def _origin_allowed(self, session_id: str, origin: str) -> bool:
        expected = self._expected_origins.get(session_id)
        return origin == expected or origin in self.config.allowed_origins

    def receive_message(self, session_id: str, origin: str, data: Union[Dict[str, Any], str]) -> bool:
        """Handle a message posted by the issuer's page. Returns True if accepted."""
        if session_id not in self._expected_origins:
            logger.warning("3DS message for unknown or finished session %s", session_id)
            return False
        if not self._origin_allowed(session_id, origin):
            logger.warning("Rejected 3DS message for %s from untrusted origin %s", session_id, origin)
            return False

        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                logger.warning("Unparseable 3DS message for session %s", session_id)
                return False
        if not isinstance(data, dict) or data.get("type") != COMPLETION_MESSAGE_TYPE:
            return False

        params = data.get("params") or {}
        if isinstance(params, dict):
            self._callback_params[session_id] = {str(k): str(v) for k, v in params.items()}
        self._orchestrator.report(session_id, data.get("success") is True)
        return True
