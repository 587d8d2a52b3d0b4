"""Declarative known-fraud patterns.

Patterns are stored in the database and evaluated against transaction
features by the anomaly detector. Each matched pattern adds to the anomaly
score. Any plain ``Callable[[TransactionFeatures], bool]`` works as a pattern
too; ``FraudPattern`` is the persisted, condition-based kind.
"""
import json
import sqlite3
from typing import Any, Callable, List

from payguard.models.patterns import PatternCondition, PatternResponse
from payguard.models.transaction import TransactionFeatures

PatternPredicate = Callable[[TransactionFeatures], bool]


def _resolve_field(field: str, features: TransactionFeatures) -> Any:
    """Resolve virtual fields computed at evaluation time."""
    history = features.user_history
    if field == "amount_to_average_ratio":
        if history is None or not history.average_amount:
            return None
        return features.amount / history.average_amount
    if field == "payment_method_is_new":
        if history is None:
            return True
        return features.payment_method not in history.used_payment_methods
    if field == "transaction_count":
        return history.transaction_count if history else 0
    return getattr(features, field, None)


class FraudPattern:
    """A stored pattern: all conditions must match (AND logic)."""

    OPERATORS = {
        "eq": lambda a, b: a == b,
        "neq": lambda a, b: a != b,
        "gt": lambda a, b: a > b,
        "gte": lambda a, b: a >= b,
        "lt": lambda a, b: a < b,
        "lte": lambda a, b: a <= b,
        "in": lambda a, b: a in b,
        "not_in": lambda a, b: a not in b,
    }

    def __init__(self, definition: PatternResponse):
        self.definition = definition

    @property
    def name(self) -> str:
        return self.definition.name

    def _evaluate_condition(self, cond: PatternCondition, features: TransactionFeatures) -> bool:
        field_val = _resolve_field(cond.field, features)

        if cond.value_field is not None:
            compare_val = _resolve_field(cond.value_field, features)
        else:
            compare_val = cond.value

        op_func = self.OPERATORS.get(cond.operator)
        if op_func is None or field_val is None:
            return False

        try:
            return bool(op_func(field_val, compare_val))
        except (TypeError, ValueError):
            return False

    def __call__(self, features: TransactionFeatures) -> bool:
        return all(self._evaluate_condition(c, features) for c in self.definition.conditions)

    def __repr__(self) -> str:
        return f"FraudPattern({self.definition.id!r}, {self.name!r})"


def row_to_pattern(row) -> PatternResponse:
    """Convert a database row to a PatternResponse."""
    conditions_raw = json.loads(row["conditions"])
    return PatternResponse(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        conditions=[PatternCondition(**c) for c in conditions_raw],
        is_active=bool(row["is_active"]),
        priority=row["priority"],
        created_at=row["created_at"],
    )


def load_active_patterns(conn: sqlite3.Connection) -> List[FraudPattern]:
    rows = conn.execute(
        "SELECT * FROM fraud_patterns WHERE is_active = 1 ORDER BY priority ASC"
    ).fetchall()
    return [FraudPattern(row_to_pattern(row)) for row in rows]


def burst_pattern(max_per_hour: int) -> PatternPredicate:
    def _matches(features: TransactionFeatures) -> bool:
        return (features.transactions_last_hour or 0) > max_per_hour

    return _matches


def amount_ratio_pattern(multiplier: float) -> PatternPredicate:
    def _matches(features: TransactionFeatures) -> bool:
        history = features.user_history
        return bool(history and history.average_amount) and (
            features.amount > history.average_amount * multiplier
        )

    return _matches
