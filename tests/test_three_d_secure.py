"""
Tests for 3-D Secure: policy, card sanitization and the issuer challenge flow.
"""
import json
import random

import pytest

from payguard.config import ChallengeConfig, ThreeDSecureConfig
from payguard.errors import ChallengeTimeoutError, ThreeDSecureError
from payguard.models.challenge import CardData, ThreeDSecureData
from payguard.services.challenge import ChallengeOrchestrator
from payguard.services.sandbox import ScriptedIssuer
from payguard.services.three_d_secure import (
    ThreeDSecureAuthenticator,
    ThreeDSecurePolicy,
    origin_of,
    sanitize_card,
)
from tests.conftest import SANDBOX_3DS_ORIGIN, full_device_signals, make_card

COMPLETE = {"type": "3ds-complete", "success": True}


class RejectingIssuer(ScriptedIssuer):
    async def initiate(self, card, amount, order_id, risk_score):
        return ThreeDSecureData(id="3ds_declined", status="failed")


@pytest.fixture
def card():
    return CardData(**make_card())


@pytest.fixture
def orchestrator(clock):
    return ChallengeOrchestrator(ChallengeConfig(), clock=clock)


@pytest.fixture
def authenticator(issuer, orchestrator):
    return ThreeDSecureAuthenticator(issuer, orchestrator, ThreeDSecureConfig())


class TestSanitizeCard:

    def test_masks_number_and_drops_cvc(self, card):
        sanitized = sanitize_card(card)
        assert sanitized.masked_number == "424242******4242"
        assert sanitized.last_four == "4242"
        assert "cvc" not in sanitized.model_dump()
        assert "123" not in json.dumps(sanitized.model_dump())

    def test_cvc_not_in_repr(self, card):
        assert "123" not in repr(card)


class TestPolicy:

    def test_test_card_never_requires(self):
        card = CardData(**make_card(card_number="4000000000000000"))
        assert not ThreeDSecurePolicy().should_require(card, 100_000)

    def test_small_amount_skips(self, card):
        assert not ThreeDSecurePolicy().should_require(card, 999)

    def test_large_amount_always_requires(self, card):
        assert ThreeDSecurePolicy().should_require(card, 15_000)

    def test_mid_range_uses_contextual_decision(self, card):
        assert ThreeDSecurePolicy(contextual=lambda c, a: True).should_require(card, 5_000)
        assert not ThreeDSecurePolicy(contextual=lambda c, a: False).should_require(card, 5_000)

    def test_default_sampling_is_seedable(self, card):
        config = ThreeDSecureConfig(sample_rate=1.0)
        assert ThreeDSecurePolicy(config, rng=random.Random(7)).should_require(card, 5_000)
        config = ThreeDSecureConfig(sample_rate=0.0)
        assert not ThreeDSecurePolicy(config, rng=random.Random(7)).should_require(card, 5_000)


class TestAuthenticationFlow:

    @pytest.mark.asyncio
    async def test_frictionless_approval(self, orchestrator, card):
        authenticator = ThreeDSecureAuthenticator(ScriptedIssuer(), orchestrator)
        session = await authenticator.authenticate(
            "req_1", card, 20_000, "order_1", full_device_signals()
        )
        assert session.frictionless
        assert session.status == "success"
        assert not orchestrator.has_waiter(session.id)

    @pytest.mark.asyncio
    async def test_issuer_receives_sanitized_card_and_risk(self, authenticator, issuer, card):
        await authenticator.open("req_1", card, 20_000, "order_1", full_device_signals(language="en-US"))
        sent = issuer.initiated[0]
        assert sent["card"]["masked_number"] == "424242******4242"
        assert sent["risk_score"] == 5
        assert sent["order_id"] == "order_1"

    @pytest.mark.asyncio
    async def test_challenge_completes_from_trusted_origin(self, authenticator, issuer, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        assert session.status == "pending"
        assert origin_of(session.authentication_url) == SANDBOX_3DS_ORIGIN

        assert authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, COMPLETE)
        outcome = await authenticator.finish(session)
        assert outcome.status == "success"
        assert issuer.completed == [session.issuer_reference]

    @pytest.mark.asyncio
    async def test_message_from_untrusted_origin_is_ignored(self, authenticator, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        assert not authenticator.receive_message(session.id, "https://evil.example.com", COMPLETE)
        assert session.status == "pending"

    @pytest.mark.asyncio
    async def test_allow_listed_origin_is_trusted(self, issuer, orchestrator, card):
        config = ThreeDSecureConfig(allowed_origins=["https://acs.issuer.example"])
        authenticator = ThreeDSecureAuthenticator(issuer, orchestrator, config)
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        assert authenticator.receive_message(session.id, "https://acs.issuer.example", COMPLETE)

    @pytest.mark.asyncio
    async def test_json_string_message(self, authenticator, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        assert authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, json.dumps(COMPLETE))
        assert (await authenticator.finish(session)).status == "success"

    @pytest.mark.asyncio
    async def test_unparseable_and_foreign_messages_are_ignored(self, authenticator, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        assert not authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, "not json")
        assert not authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, {"type": "resize"})
        assert session.status == "pending"

    @pytest.mark.asyncio
    async def test_only_literal_true_counts_as_success(self, authenticator, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, {"type": "3ds-complete", "success": "true"})
        outcome = await authenticator.finish(session)
        assert outcome.status == "failed"

    @pytest.mark.asyncio
    async def test_issuer_refusing_confirmation_fails(self, orchestrator, card):
        issuer = ScriptedIssuer(confirm=False, frictionless_below_risk=0)
        authenticator = ThreeDSecureAuthenticator(issuer, orchestrator)
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, COMPLETE)
        assert session.status == "pending"

        outcome = await authenticator.finish(session)
        assert outcome.status == "failed"
        assert outcome.failure_reason == "rejected"
        assert orchestrator.complete(session.id, True).status == "failed"

    @pytest.mark.asyncio
    async def test_session_is_terminal_only_after_issuer_confirms(self, authenticator, issuer, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, COMPLETE)
        assert session.status == "pending"
        assert session.completed_at is None
        assert issuer.completed == []

        outcome = await authenticator.finish(session)
        assert outcome.status == "success"
        assert issuer.completed == [session.issuer_reference]

    @pytest.mark.asyncio
    async def test_messages_after_finish_are_ignored(self, authenticator, card):
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, COMPLETE)
        await authenticator.finish(session)
        assert not authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, COMPLETE)

    @pytest.mark.asyncio
    async def test_rejected_initiation(self, orchestrator, card):
        authenticator = ThreeDSecureAuthenticator(RejectingIssuer(), orchestrator)
        with pytest.raises(ThreeDSecureError):
            await authenticator.open("req_1", card, 20_000, "order_1")
        assert orchestrator.sessions_for_request("req_1") == []

    @pytest.mark.asyncio
    async def test_no_response_times_out(self, issuer, clock, card):
        orchestrator = ChallengeOrchestrator(ChallengeConfig(timeout_seconds=0.05), clock=clock)
        authenticator = ThreeDSecureAuthenticator(issuer, orchestrator)
        session = await authenticator.open("req_1", card, 20_000, "order_1")
        with pytest.raises(ChallengeTimeoutError):
            await authenticator.finish(session)
        assert session.status == "failed"
        assert not authenticator.receive_message(session.id, SANDBOX_3DS_ORIGIN, COMPLETE)
