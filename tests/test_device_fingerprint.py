"""
Tests for device signal collection, device id derivation and device risk.
"""
import asyncio

import pytest

from payguard.config import SignalConfig
from payguard.services.device_fingerprint import (
    ClientSignalCollector,
    DeviceFingerprintCollector,
    derive_device_id,
    device_id_key,
    device_risk_score,
    signal_number,
)
from payguard.stores import InMemoryKeyValueStore
from tests.conftest import full_device_signals


class SlowCollector:
    async def collect(self):
        await asyncio.sleep(1)
        return full_device_signals()


class TestDeriveDeviceId:

    def test_is_sha256_hex(self):
        device_id = derive_device_id(full_device_signals())
        assert len(device_id) == 64
        int(device_id, 16)

    def test_same_signals_same_id(self):
        assert derive_device_id(full_device_signals()) == derive_device_id(full_device_signals())

    def test_different_signals_different_id(self):
        assert derive_device_id(full_device_signals()) != derive_device_id(
            full_device_signals(screen_resolution="2560x1440")
        )

    def test_signals_outside_the_component_list_are_ignored(self):
        assert derive_device_id(full_device_signals()) == derive_device_id(
            full_device_signals(battery_level=0.42)
        )


class TestCollector:

    @pytest.mark.asyncio
    async def test_collect_is_idempotent_and_stores_id(self):
        store = InMemoryKeyValueStore()
        collector = DeviceFingerprintCollector(store)
        first = await collector.collect("u1", ClientSignalCollector(full_device_signals()))
        second = await collector.collect("u1", ClientSignalCollector(full_device_signals()))
        assert first.device_id == second.device_id
        assert store.get(device_id_key("u1")) == first.device_id
        assert first.error is None

    @pytest.mark.asyncio
    async def test_missing_signals_fall_back_to_stored_id(self):
        store = InMemoryKeyValueStore()
        store.set(device_id_key("u1"), "stored-device")
        collector = DeviceFingerprintCollector(store)
        result = await collector.collect("u1", ClientSignalCollector(None))
        assert result.device_id == "stored-device"
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_missing_signals_without_stored_id(self):
        collector = DeviceFingerprintCollector(InMemoryKeyValueStore())
        result = await collector.collect("u1", ClientSignalCollector(None))
        assert result.device_id is None

    @pytest.mark.asyncio
    async def test_empty_signals_are_degraded(self):
        collector = DeviceFingerprintCollector(InMemoryKeyValueStore())
        result = await collector.collect("u1", ClientSignalCollector({}))
        assert result.device_id is None
        assert result.error == "no device signals available"

    @pytest.mark.asyncio
    async def test_collection_has_its_own_timeout(self):
        store = InMemoryKeyValueStore()
        store.set(device_id_key("u1"), "stored-device")
        collector = DeviceFingerprintCollector(store, SignalConfig(collection_timeout_seconds=0.01))
        result = await collector.collect("u1", SlowCollector())
        assert result.device_id == "stored-device"
        assert "timed out" in result.error


class TestDeviceRiskScore:

    def test_typical_japanese_browser_is_zero(self):
        assert device_risk_score(full_device_signals()) == 0

    def test_foreign_and_unusual_device(self):
        signals = full_device_signals(
            language="en-US", timezone_offset=0, screen_resolution="1234x567",
            hardware_concurrency=1, device_memory=1,
        )
        assert device_risk_score(signals) == 40

    def test_portrait_resolution_counts_as_standard(self):
        assert device_risk_score(full_device_signals(screen_resolution="1080x1920")) == 0

    def test_numbers_sent_as_strings_score_like_numbers(self):
        as_strings = full_device_signals(timezone_offset="-540", hardware_concurrency="8", device_memory="8")
        assert device_risk_score(as_strings) == device_risk_score(full_device_signals())

    def test_garbage_values_count_as_missing(self):
        signals = full_device_signals(timezone_offset="lots", hardware_concurrency=None, device_memory=[])
        assert device_risk_score(signals) == 5
        assert device_risk_score(full_device_signals(device_memory="nan")) == 0


class TestSignalNumber:

    def test_parses_numbers_and_numeric_strings(self):
        assert signal_number(8) == 8.0
        assert signal_number("-540") == -540.0
        assert signal_number(" 4 ") == 4.0

    def test_rejects_everything_else(self):
        for value in (None, True, "lots", [], {}, "inf", float("nan")):
            assert signal_number(value) is None
