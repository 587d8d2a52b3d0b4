"""
Tests for rule-based anomaly detection and known-fraud patterns.
"""
from datetime import datetime, timezone

import pytest

from payguard.config import AnomalyConfig
from payguard.models.patterns import PatternCondition, PatternResponse
from payguard.models.transaction import TransactionFeatures, UserHistorySummary
from payguard.services.anomaly import detect_anomaly, payer_local_time
from payguard.services.fraud_patterns import FraudPattern
from tests.conftest import FIXED_NOW, full_device_signals


def make_features(**overrides) -> TransactionFeatures:
    """Features of an unremarkable payment by a known user on a known device."""
    base = dict(
        amount=3000,
        payment_method="bank_transfer",
        device_id="a" * 64,
        ip_address="203.0.113.10",
        time_of_day=12,
        day_of_week=1,
        user_history=UserHistorySummary(
            transaction_count=5,
            average_amount=2000,
            used_payment_methods=frozenset({"bank_transfer"}),
        ),
        transactions_last_hour=0,
    )
    base.update(overrides)
    return TransactionFeatures(**base)


def make_pattern(*conditions, name="Test pattern") -> FraudPattern:
    return FraudPattern(PatternResponse(
        id="pattern_test",
        name=name,
        conditions=[PatternCondition(**c) for c in conditions],
        is_active=True,
        created_at=FIXED_NOW,
    ))


class TestDetectAnomaly:

    def test_clean_transaction_scores_zero(self):
        signal = detect_anomaly(make_features())
        assert signal.score == 0
        assert signal.reasons == []
        assert not signal.suggests_challenge

    def test_high_amount(self):
        signal = detect_anomaly(make_features(
            amount=60_000,
            user_history=UserHistorySummary(transaction_count=5, average_amount=40_000),
        ))
        assert signal.score == pytest.approx(0.3)
        assert "Amount is higher than usual" in signal.reasons

    def test_unusual_hour(self):
        signal = detect_anomaly(make_features(time_of_day=3))
        assert signal.score == pytest.approx(0.2)
        assert "Transaction at an unusual time of day" in signal.reasons

    def test_unusual_hour_window_wraps_midnight(self):
        config = AnomalyConfig(unusual_hours=(22, 4))
        assert detect_anomaly(make_features(time_of_day=23), config).score == pytest.approx(0.2)
        assert detect_anomaly(make_features(time_of_day=2), config).score == pytest.approx(0.2)
        assert detect_anomaly(make_features(time_of_day=12), config).score == 0

    def test_no_history(self):
        signal = detect_anomaly(make_features(user_history=None))
        assert signal.score == pytest.approx(0.2)
        assert "No prior transaction history" in signal.reasons

    def test_missing_device_id(self):
        signal = detect_anomaly(make_features(device_id=None))
        assert signal.score == pytest.approx(0.3)

    def test_amount_far_above_average_also_matches_pattern(self):
        signal = detect_anomaly(make_features(amount=12_000))
        # +0.2 for the ratio rule, +0.4 for the default ratio pattern
        assert signal.score == pytest.approx(0.6)

    def test_burst_pattern(self):
        signal = detect_anomaly(make_features(transactions_last_hour=4))
        assert signal.score == pytest.approx(0.4)
        assert any("known fraud pattern" in r for r in signal.reasons)

    def test_score_is_capped_at_one(self):
        signal = detect_anomaly(make_features(
            amount=200_000, time_of_day=2, device_id=None, transactions_last_hour=5,
        ))
        assert signal.score == 1.0
        assert signal.suggests_block

    def test_challenge_suggested_at_verification_score(self):
        config = AnomalyConfig()
        # 0.2 + 0.3 = 0.5 >= 0.7 * 0.7
        signal = detect_anomaly(make_features(time_of_day=3, device_id=None), config)
        assert signal.suggests_challenge
        assert not signal.suggests_block


class TestFraudPatterns:

    def test_conditions_are_and_combined(self):
        pattern = make_pattern(
            {"field": "amount", "operator": "gt", "value": 1000},
            {"field": "payment_method", "operator": "eq", "value": "card"},
        )
        assert not pattern(make_features(amount=5000))
        assert pattern(make_features(amount=5000, payment_method="card"))

    def test_virtual_ratio_field(self):
        pattern = make_pattern({"field": "amount_to_average_ratio", "operator": "gte", "value": 2})
        assert pattern(make_features(amount=4000))
        assert not pattern(make_features(amount=3000))
        assert not pattern(make_features(user_history=None))

    def test_new_payment_method(self):
        pattern = make_pattern({"field": "payment_method_is_new", "operator": "eq", "value": True})
        assert pattern(make_features(payment_method="paypay"))
        assert not pattern(make_features())

    def test_field_to_field_comparison(self):
        pattern = make_pattern(
            {"field": "transactions_last_hour", "operator": "gte", "value_field": "transaction_count"}
        )
        assert pattern(make_features(transactions_last_hour=5))
        assert not pattern(make_features(transactions_last_hour=1))

    def test_type_mismatch_does_not_match(self):
        pattern = make_pattern({"field": "amount", "operator": "gt", "value": "lots"})
        assert not pattern(make_features())

    def test_custom_pattern_is_named_in_reasons(self):
        pattern = make_pattern(
            {"field": "payment_method", "operator": "in", "value": ["gift_card"]},
            name="Gift card cash-out",
        )
        signal = detect_anomaly(make_features(payment_method="gift_card"), patterns=[pattern])
        assert signal.score == pytest.approx(0.4)
        assert "Matches known fraud pattern: Gift card cash-out" in signal.reasons


class TestPayerLocalTime:

    EARLY_UTC = datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc)

    def test_browser_offset_is_minutes_behind_utc(self):
        assert payer_local_time(self.EARLY_UTC, full_device_signals()).hour == 10
        assert payer_local_time(self.EARLY_UTC, {"timezone_offset": 300}).hour == 20

    def test_offset_sent_as_string(self):
        assert payer_local_time(self.EARLY_UTC, {"timezone_offset": "-540"}).hour == 10

    def test_missing_offset_uses_configured_default(self):
        assert payer_local_time(self.EARLY_UTC, None).hour == 10
        assert payer_local_time(self.EARLY_UTC, {}).hour == 10
        config = AnomalyConfig(default_utc_offset_minutes=0)
        assert payer_local_time(self.EARLY_UTC, None, config).hour == 1

    def test_unusable_offset_uses_configured_default(self):
        assert payer_local_time(self.EARLY_UTC, {"timezone_offset": "abc"}).hour == 10
        assert payer_local_time(self.EARLY_UTC, {"timezone_offset": 5000}).hour == 10

    def test_weekday_follows_local_date(self):
        # Sunday 20:00 UTC is already Monday in Tokyo
        sunday_evening = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)
        assert payer_local_time(sunday_evening, None).isoweekday() == 1
