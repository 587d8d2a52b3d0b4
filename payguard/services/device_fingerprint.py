"""Device fingerprint collection and device id derivation.

The checkout front-end runs the browser checks (screen geometry, timezone,
canvas/WebGL/audio rendering) and posts whatever it managed to gather with
the payment request. This module turns those signals into a stable device id
and remembers the id per user so a failed collection can fall back to it.
"""
import asyncio
import hashlib
import logging
import math
from typing import Any, Dict, Optional, Protocol

from payguard.config import SignalConfig
from payguard.errors import SignalCollectionError
from payguard.models.risk import DeviceFingerprint
from payguard.stores import KeyValueStore

logger = logging.getLogger(__name__)

# Order matters: changing it changes every derived id.
DEVICE_ID_COMPONENTS = (
    "user_agent",
    "language",
    "color_depth",
    "screen_resolution",
    "timezone_offset",
    "platform",
    "webgl_fingerprint",
    "canvas_fingerprint",
    "hardware_concurrency",
    "device_memory",
    "audio_fingerprint",
)
COMPONENT_SEPARATOR = ":::|:::"

STANDARD_RESOLUTIONS = {
    (1920, 1080), (1366, 768), (1536, 864), (1440, 900),
    (1280, 720), (2560, 1440), (3840, 2160),
}


class DeviceSignalCollector(Protocol):
    async def collect(self) -> Dict[str, Any]: ...


class ClientSignalCollector:
    """Signals reported by the client alongside the payment request."""

    def __init__(self, signals: Optional[Dict[str, Any]]):
        self._signals = signals

    async def collect(self) -> Dict[str, Any]:
        if self._signals is None:
            raise SignalCollectionError("client did not report device signals")
        return {k: v for k, v in self._signals.items() if v is not None}


def derive_device_id(signals: Dict[str, Any]) -> str:
    """One-way SHA-256 over the fixed, ordered component subset."""
    parts = []
    for name in DEVICE_ID_COMPONENTS:
        value = signals.get(name)
        parts.append("" if value is None else str(value))
    return hashlib.sha256(COMPONENT_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


def signal_number(value: Any) -> Optional[float]:
    """A numeric client signal, or None when it is missing or garbled."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_resolution(value: Any) -> Optional[tuple]:
    if not isinstance(value, str) or "x" not in value:
        return None
    width, _, height = value.partition("x")
    try:
        return int(width), int(height)
    except ValueError:
        return None


def device_risk_score(signals: Dict[str, Any]) -> int:
    """Issuer-facing device risk on a 0-100 scale, sent with 3DS initiation."""
    score = 0
    if not str(signals.get("language", "")).startswith("ja"):
        score += 5
    offset = signal_number(signals.get("timezone_offset"))
    if offset is None or abs(offset) != 540:
        score += 5
    resolution = _parse_resolution(signals.get("screen_resolution"))
    if resolution is None or (
        resolution not in STANDARD_RESOLUTIONS
        and (resolution[1], resolution[0]) not in STANDARD_RESOLUTIONS
    ):
        score += 10
    concurrency = signal_number(signals.get("hardware_concurrency"))
    if concurrency is not None and concurrency < 2:
        score += 10
    memory = signal_number(signals.get("device_memory"))
    if memory is not None and memory < 2:
        score += 10
    return min(score, 100)


def device_id_key(user_id: str) -> str:
    return f"device_id:{user_id}"


class DeviceFingerprintCollector:
    def __init__(self, store: KeyValueStore, config: Optional[SignalConfig] = None):
        self._store = store
        self._config = config or SignalConfig()

    async def collect(self, user_id: str, collector: DeviceSignalCollector) -> DeviceFingerprint:
        """Collect signals and derive the device id. Never raises for collection failures."""
        try:
            signals = await asyncio.wait_for(
                collector.collect(), timeout=self._config.collection_timeout_seconds
            )
        except asyncio.TimeoutError:
            return self._degraded(user_id, "device signal collection timed out")
        except SignalCollectionError as exc:
            return self._degraded(user_id, exc.message)

        if not signals:
            return self._degraded(user_id, "no device signals available")

        device_id = derive_device_id(signals)
        self._store.set(device_id_key(user_id), device_id)
        return DeviceFingerprint(device_id=device_id, signals=signals)

    def _degraded(self, user_id: str, reason: str) -> DeviceFingerprint:
        logger.warning("Device signals unavailable for user %s: %s", user_id, reason)
        return DeviceFingerprint(device_id=self._store.get(device_id_key(user_id)), error=reason)
