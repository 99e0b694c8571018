"""Declarative numeric rules for snapshots, plus boundary sanitization.

Validation never raises: it returns a list of issues. Sanitization takes that
list and moves every offending value to the nearest valid boundary, so no
entity is ever dropped for being out of range.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from chainpulse.models.schema import (
    ActivityPattern,
    CategoryMetricsSnapshot,
    ProjectMetricsDaily,
    ProjectMetricsSnapshot,
    WalletMetricsSnapshot,
    WalletType,
)
from chainpulse.scoring.sanitize import round_half_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldRule:
    min: float | None = None
    max: float | None = None
    type: type = float
    # Upper bound taken from another field of the same record
    max_field: str | None = None


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    value: object
    rule: str  # "type", "min", "max", "max_field", "count_sum"
    message: str


SCORE = FieldRule(min=0, max=100, type=int)
COUNT = FieldRule(min=0, type=int)
AMOUNT = FieldRule(min=0, type=float)
PERCENT = FieldRule(min=0, max=100, type=float)
RATE = FieldRule(min=-100, type=float)  # a period can't lose more than everything
RATIO = FieldRule(min=0, max=1, type=float)

PROJECT_RULES: dict[str, FieldRule] = {
    "total_customers": COUNT,
    "total_transactions": COUNT,
    "successful_transactions": FieldRule(min=0, type=int, max_field="total_transactions"),
    "failed_transactions": FieldRule(min=0, type=int, max_field="total_transactions"),
    "total_volume": AMOUNT,
    "total_gas_used": COUNT,
    "success_rate": PERCENT,
    "customer_growth_rate": RATE,
    "transaction_growth_rate": RATE,
    "volume_growth_rate": RATE,
    "daily_active_customers": FieldRule(min=0, type=int, max_field="total_customers"),
    "weekly_active_customers": FieldRule(min=0, type=int, max_field="total_customers"),
    "monthly_active_customers": FieldRule(min=0, type=int, max_field="total_customers"),
    "retention_rate": PERCENT,
    "customer_stickiness": RATIO,
    "customer_concentration": RATIO,
    "volume_volatility": AMOUNT,
    "growth_score": SCORE,
    "health_score": SCORE,
    "risk_score": SCORE,
    "first_activity": COUNT,
    "last_activity": COUNT,
}

WALLET_RULES: dict[str, FieldRule] = {
    "total_interactions": COUNT,
    "unique_contracts": FieldRule(min=0, type=int, max_field="total_interactions"),
    "total_spent": AMOUNT,
    "avg_transaction_size": AMOUNT,
    "total_gas_used": COUNT,
    "first_interaction": COUNT,
    "last_interaction": COUNT,
    "days_active": AMOUNT,
    "interaction_frequency": AMOUNT,
    "wallet_type": FieldRule(type=WalletType),
    "activity_pattern": FieldRule(type=ActivityPattern),
    "loyalty_score": SCORE,
}

CATEGORY_RULES: dict[str, FieldRule] = {
    "project_count": COUNT,
    "total_customers": COUNT,
    "total_transactions": COUNT,
    "total_volume": AMOUNT,
    "avg_growth_score": PERCENT,
    "avg_health_score": PERCENT,
    "avg_risk_score": PERCENT,
    "transaction_share": PERCENT,
    "customer_share": PERCENT,
    "volume_share": PERCENT,
}

DAILY_RULES: dict[str, FieldRule] = {
    "daily_transactions": COUNT,
    "daily_customers": COUNT,
    "daily_volume": AMOUNT,
    "total_customers": COUNT,
    "total_transactions": COUNT,
    "growth_score": SCORE,
    "health_score": SCORE,
    "risk_score": SCORE,
}

RULES_BY_MODEL: dict[type, dict[str, FieldRule]] = {
    ProjectMetricsSnapshot: PROJECT_RULES,
    WalletMetricsSnapshot: WALLET_RULES,
    CategoryMetricsSnapshot: CATEGORY_RULES,
    ProjectMetricsDaily: DAILY_RULES,
}


def rules_for(record: BaseModel) -> dict[str, FieldRule]:
    return RULES_BY_MODEL[type(record)]


def _type_ok(value, rule: FieldRule) -> bool:
    if issubclass(rule.type, Enum):
        try:
            rule.type(value)
        except ValueError:
            return False
        return True
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and not math.isfinite(value):
        return False
    if rule.type is int:
        return isinstance(value, int)
    return True


def validate_record(record: BaseModel, rules: dict[str, FieldRule] | None = None) -> list[ValidationIssue]:
    """Check every ruled field; return the violations (empty when valid)."""
    rules = rules if rules is not None else rules_for(record)
    issues: list[ValidationIssue] = []

    for name, rule in rules.items():
        value = getattr(record, name)
        if not _type_ok(value, rule):
            issues.append(ValidationIssue(name, value, "type", f"{name}={value!r} is not a valid {rule.type.__name__}"))
            continue
        if issubclass(rule.type, Enum):
            continue
        if rule.min is not None and value < rule.min:
            issues.append(ValidationIssue(name, value, "min", f"{name}={value} below minimum {rule.min}"))
        elif rule.max is not None and value > rule.max:
            issues.append(ValidationIssue(name, value, "max", f"{name}={value} above maximum {rule.max}"))
        elif rule.max_field is not None and value > getattr(record, rule.max_field):
            issues.append(ValidationIssue(
                name, value, "max_field",
                f"{name}={value} exceeds {rule.max_field}={getattr(record, rule.max_field)}",
            ))

    if isinstance(record, ProjectMetricsSnapshot):
        counted = record.successful_transactions + record.failed_transactions
        if counted != record.total_transactions:
            issues.append(ValidationIssue(
                "total_transactions", record.total_transactions, "count_sum",
                f"successful + failed = {counted} != total_transactions={record.total_transactions}",
            ))

    return issues


def _coerce(value, rule: FieldRule):
    """Nearest valid value for a single field, ignoring cross-field bounds."""
    if issubclass(rule.type, Enum):
        # Unknown label: fall back to the lowest tier of the variant
        return list(rule.type)[-1]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        number = 0.0
    elif isinstance(value, float) and math.isnan(value):
        number = 0.0
    else:
        number = float(value)
    if rule.min is not None:
        number = max(rule.min, number)
    if rule.max is not None:
        number = min(rule.max, number)
    if math.isinf(number):
        number = 0.0
    if rule.type is int:
        return round_half_up(number)
    return number


def sanitize_record(
    record: BaseModel,
    issues: list[ValidationIssue],
    rules: dict[str, FieldRule] | None = None,
    entity: str = "",
) -> BaseModel:
    """Return a copy of record with every issue moved to its nearest boundary."""
    if not issues:
        return record
    rules = rules if rules is not None else rules_for(record)
    updates: dict[str, object] = {}

    def current(name: str):
        return updates.get(name, getattr(record, name))

    for issue in issues:
        if issue.rule in ("type", "min", "max"):
            updates[issue.field] = _coerce(issue.value, rules[issue.field])

    for issue in issues:
        if issue.rule == "max_field":
            bound = current(rules[issue.field].max_field)
            updates[issue.field] = min(current(issue.field), bound)

    # Out-of-range single fields can also break the cross-field bounds
    for name, rule in rules.items():
        if rule.max_field is not None and name in updates:
            updates[name] = min(updates[name], current(rule.max_field))

    if isinstance(record, ProjectMetricsSnapshot):
        total = current("total_transactions")
        successful = min(current("successful_transactions"), total)
        failed = total - successful
        if successful + current("failed_transactions") != total:
            updates["successful_transactions"] = successful
            updates["failed_transactions"] = failed

    for name, new_value in updates.items():
        old_value = getattr(record, name)
        if old_value != new_value:
            logger.warning(f"Sanitized {entity or type(record).__name__}: {name} {old_value!r} -> {new_value!r}")

    return record.model_copy(update=updates)
