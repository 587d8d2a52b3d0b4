"""
Shared test fixtures for the Payguard authorization API.

Provides:
- a fixed, advanceable clock so time-of-day and cooldown rules are stable
- sandbox collaborators (geo table, scripted gateway and issuer, OTP sender)
- an engine factory over in-memory stores for service-level tests
- async test client (httpx.AsyncClient against the FastAPI app) on a fresh
  in-memory SQLite database
- payment payload and history factories
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Force test database before importing app
os.environ["PAYGUARD_DATABASE_PATH"] = ":memory:"
os.environ["PAYGUARD_LOG_LEVEL"] = "WARNING"

from httpx import ASGITransport, AsyncClient

from payguard.config import EngineConfig
from payguard.models.risk import GeoLocation
from payguard.models.transaction import TransactionHistoryEntry
from payguard.services.challenge import ChallengeOrchestrator
from payguard.services.payment_executor import PaymentExecutor
from payguard.services.pipeline import AuthorizationPipeline
from payguard.services.sandbox import (
    LoggingOtpSender,
    ScriptedIssuer,
    ScriptedPaymentGateway,
    StaticGeoResolver,
)
from payguard.services.three_d_secure import ThreeDSecureAuthenticator, ThreeDSecurePolicy
from payguard.stores import InMemoryHistoryStore, InMemoryKeyValueStore

# A Monday, at noon UTC: outside the unusual-hours window.
FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

TOKYO_IP = "203.0.113.10"
LOS_ANGELES_IP = "198.51.100.20"

TOKYO = GeoLocation(
    country="JP", region="Tokyo", city="Tokyo",
    latitude=35.6762, longitude=139.6503, timezone="Asia/Tokyo",
)
LOS_ANGELES = GeoLocation(
    country="US", region="California", city="Los Angeles",
    latitude=34.0522, longitude=-118.2437, timezone="America/Los_Angeles",
)

SANDBOX_3DS_ORIGIN = "https://3ds.sandbox.example.com"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


async def no_sleep(seconds: float) -> None:
    return None


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class GatedGateway(ScriptedPaymentGateway):
    """Blocks every charge until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def charge(self, idempotency_key, amount, method, details):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.gate.wait()
            return await super().charge(idempotency_key, amount, method, details)
        finally:
            self.in_flight -= 1


async def wait_for_active_challenge(orchestrator: ChallengeOrchestrator, request_id: str,
                                    attempts: int = 200):
    """Poll until the pipeline has opened a challenge for ``request_id``."""
    for _ in range(attempts):
        session = orchestrator.active_for_request(request_id)
        if session is not None:
            return session
        await asyncio.sleep(0.01)
    raise AssertionError(f"no challenge opened for {request_id}")


# ---------------------------------------------------------------------------
# Sample data factories
# ---------------------------------------------------------------------------

def full_device_signals(**overrides) -> Dict[str, Any]:
    """Everything a modern browser in Japan reports."""
    base = {
        "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15",
        "language": "ja-JP",
        "color_depth": 24,
        "screen_resolution": "1920x1080",
        "timezone_offset": -540,
        "platform": "MacIntel",
        "webgl_fingerprint": "ANGLE (Apple, Apple M2, OpenGL 4.1)",
        "canvas_fingerprint": "data:image/png;base64,iVBORw0KGgoAAAANSUhEUg",
        "hardware_concurrency": 8,
        "device_memory": 8,
        "audio_fingerprint": "124.04347527516074",
    }
    base.update(overrides)
    return base


def make_card(**overrides) -> Dict[str, Any]:
    base = {
        "card_number": "4242 4242 4242 4242",
        "expiry_month": "12",
        "expiry_year": "2030",
        "cvc": "123",
        "cardholder_name": "TARO YAMADA",
    }
    base.update(overrides)
    return base


def make_payment(**overrides) -> Dict[str, Any]:
    """Build a payment payload with sensible low-risk defaults."""
    base = {
        "user_id": "user_001",
        "amount": 3000,
        "currency": "JPY",
        "payment_method": "bank_transfer",
        "order_id": "order_001",
        "device_signals": full_device_signals(),
        "ip_address": TOKYO_IP,
        "customer": {
            "phone_verified": True,
            "email_verified": True,
            "registered_location": TOKYO.model_dump(),
        },
    }
    base.update(overrides)
    return base


def make_history(
    user_id: str,
    count: int,
    amount: int = 2000,
    end: datetime = FIXED_NOW - timedelta(days=2),
    spacing: timedelta = timedelta(days=1),
    payment_method: str = "bank_transfer",
    success: bool = True,
) -> List[TransactionHistoryEntry]:
    """``count`` transactions ending at ``end``, ``spacing`` apart, oldest first."""
    return [
        TransactionHistoryEntry(
            user_id=user_id,
            transaction_id=f"txn_{user_id}_{i:03d}",
            timestamp=end - spacing * (count - 1 - i),
            amount=amount,
            payment_method=payment_method,
            success=success,
        )
        for i in range(count)
    ]


def make_pipeline(
    clock: FixedClock,
    config: Optional[EngineConfig] = None,
    gateway: Optional[ScriptedPaymentGateway] = None,
    issuer: Optional[ScriptedIssuer] = None,
    otp_sender: Optional[LoggingOtpSender] = None,
    three_ds_policy: Optional[ThreeDSecurePolicy] = None,
    history: Optional[InMemoryHistoryStore] = None,
) -> AuthorizationPipeline:
    """Engine over in-memory stores. Mid-range 3DS sampling is off unless a policy is given."""
    config = config or EngineConfig()
    orchestrator = ChallengeOrchestrator(
        config.challenge, otp_sender or LoggingOtpSender(keep_codes=True), clock=clock
    )
    return AuthorizationPipeline(
        config=config,
        history=history or InMemoryHistoryStore(),
        store=InMemoryKeyValueStore(),
        geo_resolver=StaticGeoResolver({TOKYO_IP: TOKYO, LOS_ANGELES_IP: LOS_ANGELES}),
        executor=PaymentExecutor(gateway or ScriptedPaymentGateway(), config.retry, sleep=no_sleep),
        orchestrator=orchestrator,
        three_d_secure=ThreeDSecureAuthenticator(
            issuer or ScriptedIssuer(), orchestrator, config.three_d_secure
        ),
        three_ds_policy=three_ds_policy or ThreeDSecurePolicy(
            config.three_d_secure, contextual=lambda card, amount: False
        ),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Collaborator fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def gateway() -> ScriptedPaymentGateway:
    return ScriptedPaymentGateway()


@pytest.fixture
def issuer() -> ScriptedIssuer:
    # Always challenge, so the 3DS page flow is exercised.
    return ScriptedIssuer(frictionless_below_risk=0)


@pytest.fixture
def otp_sender() -> LoggingOtpSender:
    return LoggingOtpSender(keep_codes=True)


# ---------------------------------------------------------------------------
# App / client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(clock, gateway, issuer, otp_sender):
    """Async test client that talks to the FastAPI app with a fresh in-memory DB.

    The lifespan does not run under ASGITransport, so the fixture initializes
    the schema and wires the engine onto ``app.state`` itself.
    """
    from payguard import database
    from payguard.config import get_settings
    from payguard.dependencies import build_pipeline
    from payguard.main import app

    database.close_connection()
    database.init_db()
    settings = get_settings()
    app.state.pipeline = build_pipeline(
        settings,
        database.get_connection(),
        geo_resolver=StaticGeoResolver({TOKYO_IP: TOKYO, LOS_ANGELES_IP: LOS_ANGELES}),
        gateway=gateway,
        issuer=issuer,
        otp_sender=otp_sender,
        three_ds_policy=ThreeDSecurePolicy(
            settings.engine_config().three_d_secure, contextual=lambda card, amount: False
        ),
        clock=clock,
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    database.close_connection()
