"""Rolling-window velocity checks over a user's successful transactions."""
import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from payguard.config import VelocityConfig
from payguard.models.risk import RiskSignal, VelocityCheckResult
from payguard.models.transaction import TransactionHistoryEntry


def _partial_scores(
    hourly: int,
    daily: int,
    amount: int,
    methods: int,
    remaining_cooldown: float,
    config: VelocityConfig,
) -> float:
    score = 0.0
    if hourly > config.max_per_hour:
        score += 0.2 * min((hourly - config.max_per_hour) / 2, 1)
    if daily > config.max_per_day:
        score += 0.2 * min((daily - config.max_per_day) / 5, 1)
    if amount > config.max_amount_per_day:
        score += 0.3 * min(amount / config.max_amount_per_day - 1, 1)
    if methods > config.max_methods_per_day:
        score += 0.2 * min(methods - config.max_methods_per_day, 1)
    if remaining_cooldown > 0 and config.cooldown_minutes > 0:
        score += 0.1 * min(remaining_cooldown / (config.cooldown_minutes * 60), 1)
    return min(score, 1.0)


def velocity_score(result: VelocityCheckResult, config: Optional[VelocityConfig] = None) -> float:
    """Map a velocity result onto [0, 1] with weighted partial scores."""
    if result.allow:
        return 0.0
    return _partial_scores(
        result.transactions_last_hour,
        result.transactions_last_day,
        result.amount_last_day,
        result.unique_payment_methods_last_day,
        result.remaining_cooldown_seconds,
        config or VelocityConfig(),
    )


def check_velocity(
    user_id: str,
    amount: int,
    payment_method: str,
    history: Iterable[TransactionHistoryEntry],
    config: Optional[VelocityConfig] = None,
    now: Optional[datetime] = None,
) -> VelocityCheckResult:
    config = config or VelocityConfig()
    now = now or datetime.now(timezone.utc)
    one_hour_ago = now - timedelta(hours=1)
    one_day_ago = now - timedelta(days=1)

    user_history = [e for e in history if e.user_id == user_id and e.success]

    last_hour = [e for e in user_history if e.timestamp >= one_hour_ago]
    last_day = [e for e in user_history if e.timestamp >= one_day_ago]

    amount_last_day = sum(e.amount for e in last_day) + amount
    methods_last_day = len({e.payment_method for e in last_day} | {payment_method})

    remaining_cooldown = 0.0
    if user_history:
        latest = max(user_history, key=lambda e: e.timestamp)
        elapsed = (now - latest.timestamp).total_seconds()
        cooldown = config.cooldown_minutes * 60
        if elapsed < cooldown:
            remaining_cooldown = cooldown - elapsed

    reasons = []
    if len(last_hour) >= config.max_per_hour:
        reasons.append(f"Hourly transaction limit ({config.max_per_hour}) exceeded")
    if len(last_day) >= config.max_per_day:
        reasons.append(f"Daily transaction limit ({config.max_per_day}) exceeded")
    if amount_last_day > config.max_amount_per_day:
        reasons.append(f"Daily amount limit ({config.max_amount_per_day:,}) exceeded")
    if methods_last_day > config.max_methods_per_day:
        reasons.append(f"Daily payment method limit ({config.max_methods_per_day}) exceeded")
    if remaining_cooldown > 0:
        minutes = math.ceil(remaining_cooldown / 60)
        reasons.append(
            f"Less than {config.cooldown_minutes:g} minutes since the previous transaction; "
            f"retry in about {minutes} minute(s)"
        )

    allow = not reasons
    result = VelocityCheckResult(
        allow=allow,
        signal=RiskSignal(source="velocity", score=0.0, reasons=reasons, suggests_challenge=not allow),
        transactions_last_hour=len(last_hour),
        transactions_last_day=len(last_day),
        amount_last_day=amount_last_day,
        unique_payment_methods_last_day=methods_last_day,
        remaining_cooldown_seconds=remaining_cooldown,
    )
    if allow:
        return result
    signal = result.signal.model_copy(update={"score": velocity_score(result, config)})
    return result.model_copy(update={"signal": signal})
