"""In-process stand-ins for the external services.

These back the app when no real gateway, issuer or geolocation provider is
configured, and drive the tests. Their behaviour is scripted, never random.
"""
import logging
import uuid
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Union

from payguard.errors import GeoResolutionError, PermanentGatewayError
from payguard.models.challenge import ChallengeSession, SanitizedCard, ThreeDSecureData
from payguard.models.payment import GatewayReceipt
from payguard.models.risk import GeoLocation

logger = logging.getLogger(__name__)

SANDBOX_3DS_BASE_URL = "https://3ds.sandbox.example.com"
# Recorded calls kept per stand-in; older entries are dropped.
RECORD_LIMIT = 1_000


class StaticGeoResolver:
    """Resolves IPs from a fixed table; unknown IPs fail."""

    def __init__(self, table: Optional[Dict[str, GeoLocation]] = None):
        self.table = dict(table or {})
        self.calls = 0

    async def resolve_ip(self, ip_address: str) -> GeoLocation:
        self.calls += 1
        location = self.table.get(ip_address)
        if location is None:
            raise GeoResolutionError(f"no location known for {ip_address}")
        return location.model_copy(update={"ip_address": ip_address})


GatewayOutcome = Union[GatewayReceipt, BaseException]


class ScriptedPaymentGateway:
    """Plays back queued outcomes, then succeeds.

    A key that already succeeded returns the same receipt again instead of
    charging twice, the way an idempotent gateway does.
    """

    def __init__(self, outcomes: Optional[List[GatewayOutcome]] = None,
                 record_limit: int = RECORD_LIMIT):
        self._outcomes: Deque[GatewayOutcome] = deque(outcomes or [])
        self._settled: "OrderedDict[str, GatewayReceipt]" = OrderedDict()
        self._record_limit = record_limit
        self.calls: List[Dict[str, Any]] = []

    @property
    def charge_count(self) -> int:
        return len(self._settled)

    async def charge(self, idempotency_key: str, amount: int, method: str,
                     details: Dict[str, Any]) -> GatewayReceipt:
        self.calls.append({
            "idempotency_key": idempotency_key,
            "amount": amount,
            "method": method,
            "details": details,
        })
        del self.calls[:-self._record_limit]
        if idempotency_key in self._settled:
            return self._settled[idempotency_key]

        outcome = self._outcomes.popleft() if self._outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if amount <= 0:
            raise PermanentGatewayError("invalid amount")

        receipt = outcome or GatewayReceipt(
            transaction_id=f"txn_{uuid.uuid4().hex[:12]}",
            receipt_url=f"https://sandbox.example.com/receipts/{idempotency_key}",
        )
        self._settled[idempotency_key] = receipt
        while len(self._settled) > self._record_limit:
            self._settled.popitem(last=False)
        return receipt


class ScriptedIssuer:
    """Sandbox 3-D Secure issuer.

    Low device risk and test cards are approved frictionlessly; everything
    else gets a challenge page under ``SANDBOX_3DS_BASE_URL``.
    """

    def __init__(self, confirm: bool = True, frictionless_below_risk: int = 15):
        self.confirm = confirm
        self.frictionless_below_risk = frictionless_below_risk
        self.initiated: List[Dict[str, Any]] = []
        self.completed: List[str] = []

    async def initiate(self, card: SanitizedCard, amount: int, order_id: str,
                       risk_score: int) -> ThreeDSecureData:
        three_ds_id = f"3ds_{uuid.uuid4().hex[:12]}"
        self.initiated.append({
            "id": three_ds_id,
            "card": card.model_dump(),
            "amount": amount,
            "order_id": order_id,
            "risk_score": risk_score,
        })
        del self.initiated[:-RECORD_LIMIT]
        if risk_score < self.frictionless_below_risk or card.last_four == "0000":
            return ThreeDSecureData(id=three_ds_id, status="success")
        return ThreeDSecureData(
            id=three_ds_id,
            status="pending",
            authentication_url=f"{SANDBOX_3DS_BASE_URL}/auth?id={three_ds_id}",
        )

    async def complete(self, three_ds_id: str, params: Dict[str, str]) -> bool:
        self.completed.append(three_ds_id)
        del self.completed[:-RECORD_LIMIT]
        return self.confirm


class LoggingOtpSender:
    """Logs deliveries without ever logging the code itself.

    Codes are only kept when ``keep_codes`` is set, for tests that play the
    payer; the default wiring keeps none.
    """

    def __init__(self, keep_codes: bool = False) -> None:
        self.keep_codes = keep_codes
        self.sent: "OrderedDict[str, str]" = OrderedDict()

    async def send(self, session: ChallengeSession, code: str) -> None:
        if self.keep_codes:
            self.sent[session.id] = code
            while len(self.sent) > RECORD_LIMIT:
                self.sent.popitem(last=False)
        logger.info("Sent %s verification code for challenge %s", session.method, session.id)
