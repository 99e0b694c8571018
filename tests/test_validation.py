"""
Tests for rule-based validation and boundary sanitization.
"""

from __future__ import annotations

import logging

from chainpulse.models.schema import (
    ActivityPattern,
    CategoryMetricsSnapshot,
    ProjectMetricsSnapshot,
    WalletMetricsSnapshot,
    WalletType,
)
from chainpulse.pipeline.validation import sanitize_record, validate_record


def _valid_project(**overrides) -> ProjectMetricsSnapshot:
    fields = dict(
        contract_address="0xabc",
        total_customers=10,
        total_transactions=20,
        successful_transactions=18,
        failed_transactions=2,
        success_rate=90.0,
        daily_active_customers=3,
        weekly_active_customers=6,
        monthly_active_customers=10,
    )
    fields.update(overrides)
    return ProjectMetricsSnapshot(**fields)


def test_valid_project_has_no_issues():
    assert validate_record(_valid_project()) == []


def test_validation_returns_issues_without_raising():
    record = _valid_project(growth_score=140, success_rate=-5.0, total_volume=float("nan"))
    issues = validate_record(record)
    by_field = {i.field: i.rule for i in issues}
    assert by_field == {"growth_score": "max", "success_rate": "min", "total_volume": "type"}


def test_sanitize_moves_to_nearest_boundary():
    record = _valid_project(growth_score=140, risk_score=-3, success_rate=-5.0, customer_concentration=1.7)
    clean = sanitize_record(record, validate_record(record))
    assert clean.growth_score == 100
    assert clean.risk_score == 0
    assert clean.success_rate == 0.0
    assert clean.customer_concentration == 1.0
    # Untouched fields survive
    assert clean.total_customers == 10
    assert validate_record(clean) == []


def test_sanitize_restores_count_invariant():
    record = _valid_project(successful_transactions=25, failed_transactions=4)
    issues = validate_record(record)
    assert {i.rule for i in issues} == {"max_field", "count_sum"}
    clean = sanitize_record(record, issues)
    assert clean.successful_transactions == 20
    assert clean.failed_transactions == 0
    assert clean.successful_transactions + clean.failed_transactions == clean.total_transactions


def test_sanitize_fixes_mismatched_counts():
    record = _valid_project(successful_transactions=10, failed_transactions=3)
    clean = sanitize_record(record, validate_record(record))
    assert (clean.successful_transactions, clean.failed_transactions) == (10, 10)


def test_sanitize_caps_active_customers_by_total():
    record = _valid_project(total_customers=-4, daily_active_customers=3)
    clean = sanitize_record(record, validate_record(record))
    assert clean.total_customers == 0
    assert clean.daily_active_customers == 0


def test_sanitize_wallet():
    record = WalletMetricsSnapshot(
        wallet_address="0xw",
        total_interactions=3,
        unique_contracts=9,
        total_spent=-1.0,
        loyalty_score=101,
    )
    record = record.model_copy(update={"wallet_type": "mega", "activity_pattern": "bot"})
    issues = validate_record(record)
    assert {i.field for i in issues} == {
        "unique_contracts", "total_spent", "loyalty_score", "wallet_type", "activity_pattern",
    }
    clean = sanitize_record(record, issues)
    assert clean.unique_contracts == 3
    assert clean.total_spent == 0.0
    assert clean.loyalty_score == 100
    assert clean.wallet_type == WalletType.SMALL
    assert clean.activity_pattern == ActivityPattern.ONE_TIME
    assert validate_record(clean) == []


def test_sanitize_category_shares():
    record = CategoryMetricsSnapshot(category="dex", transaction_share=130.0, customer_share=-1.0)
    clean = sanitize_record(record, validate_record(record))
    assert clean.transaction_share == 100.0
    assert clean.customer_share == 0.0


def test_sanitize_logs_each_change(caplog):
    record = _valid_project(growth_score=140, risk_score=-3)
    with caplog.at_level(logging.WARNING, logger="chainpulse.pipeline.validation"):
        sanitize_record(record, validate_record(record), entity="project:1:0xabc")
    messages = [r.getMessage() for r in caplog.records]
    assert len(messages) == 2
    assert all("project:1:0xabc" in m for m in messages)


def test_sanitize_without_issues_returns_same_record():
    record = _valid_project()
    assert sanitize_record(record, []) is record
