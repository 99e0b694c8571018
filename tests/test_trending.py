"""
Tests for leaderboards, trend direction and failing-project detection.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import math

import pandas as pd
import pytest

from chainpulse.config import Settings
from chainpulse.models.schema import ProjectMetricsSnapshot, TrendDirection
from chainpulse.pipeline.pipeline import EntityKey, MetricsDataPipeline
from chainpulse.scoring.trending import (
    TrendingService,
    parse_period,
    ranking_scores,
    risk_level,
    trend_direction,
)
from chainpulse.storage.aggregates import DuckDBCounterSource

from conftest import DAY, DEX, LENDING, POLY_DEX, T0

NOW = T0 + 60 * DAY  # 2026-04-30


def _recompute_all(conn, now=NOW):
    pipeline = MetricsDataPipeline(conn, DuckDBCounterSource(conn), clock=lambda: now)

    async def scenario():
        for address, chain_id in [(DEX, 1), (LENDING, 1), (POLY_DEX, 137)]:
            await pipeline.on_entity_changed(EntityKey.project(address, chain_id))

    asyncio.run(scenario())
    return pipeline


@pytest.fixture
def scored(ledger):
    _recompute_all(ledger)
    return ledger


def _service(conn, normalizer, now=NOW):
    return TrendingService(conn, normalizer, settings=Settings(), clock=lambda: now)


# --- Pure helpers ---


@pytest.mark.parametrize("period,days", [("7d", 7), ("30d", 30), ("2w", 14), (" 90D ", 90)])
def test_parse_period(period, days):
    assert parse_period(period) == days


@pytest.mark.parametrize("period", ["", "30", "d30", "1m", "0d", "-7d", "7 days"])
def test_parse_period_rejects_garbage(period):
    with pytest.raises(ValueError):
        parse_period(period)


def test_trend_direction_dead_band():
    assert trend_direction(70, 68) == (TrendDirection.STABLE, 2.0)
    assert trend_direction(70, 67) == (TrendDirection.STABLE, 3.0)
    assert trend_direction(71, 67) == (TrendDirection.RISING, 4.0)
    assert trend_direction(60, 80) == (TrendDirection.FALLING, -20.0)


def test_trend_direction_without_history_is_stable():
    assert trend_direction(90, None) == (TrendDirection.STABLE, 0.0)
    assert trend_direction(90, float("nan")) == (TrendDirection.STABLE, 0.0)


def test_risk_level_bands():
    assert [risk_level(s) for s in (0, 30, 31, 60, 61, 99)] == [
        "low", "low", "medium", "medium", "high", "high",
    ]


def test_ranking_scores_caps_customer_component():
    settings = Settings()
    scores = ranking_scores(
        pd.Series([100.0, 100.0, 0.0]),
        pd.Series([10_000.0, 10_000_000.0, 0.0]),
        pd.Series([100.0, 100.0, 0.0]),
        settings,
    )
    assert scores[0] == pytest.approx(100.0)
    assert scores[1] == pytest.approx(100.0)
    assert scores[2] == 0.0


# --- Rankings ---


def test_empty_database_has_no_rankings(conn, normalizer):
    service = _service(conn, normalizer)
    assert service.trending_projects() == []
    assert service.failing_projects() == []


def test_trending_across_chains(scored, normalizer):
    entries = _service(scored, normalizer).trending_projects()
    assert [e.snapshot.contract_address for e in entries] == [DEX, POLY_DEX, LENDING]
    assert [e.rank for e in entries] == [1, 2, 3]
    scores = [e.ranking_score for e in entries]
    assert scores == sorted(scores, reverse=True)
    assert entries[0].name == "Swapper"
    assert entries[1].normalized.chain_name == "polygon"
    # No daily history yet
    assert {e.trend_direction for e in entries} == {TrendDirection.STABLE}


def test_trending_respects_limit_and_category(scored, normalizer):
    service = _service(scored, normalizer)
    assert len(service.trending_projects(limit=1)) == 1
    dex = service.category_rankings("dex")
    assert {e.snapshot.contract_address for e in dex} == {DEX, POLY_DEX}
    assert all(e.category == "dex" for e in dex)


def test_single_chain_ranking_uses_raw_scores(scored, normalizer):
    entries = _service(scored, normalizer).chain_rankings(1)
    assert [e.snapshot.contract_address for e in entries] == [DEX, LENDING]
    dex = entries[0]
    # 0.45 * 94 + 0.25 * customer score + 0.30 * 60
    customer_score = 100 * math.log1p(36) / math.log1p(10_000)
    assert dex.ranking_score == pytest.approx(0.45 * 94 + 0.25 * customer_score + 0.30 * 60, abs=1e-3)
    assert dex.risk_level == "medium"


def test_inactive_projects_rank_on_baseline(scored, normalizer):
    """A week with no activity: growth and health drop to baseline, customers decide."""
    entries = _service(scored, normalizer, now=T0 + 100 * DAY).trending_projects(period="7d")
    assert [e.snapshot.contract_address for e in entries] == [DEX, LENDING, POLY_DEX]
    # Stored scores are untouched
    assert entries[0].snapshot.growth_score == 94


def test_ties_broken_by_recent_activity(conn, normalizer):
    from chainpulse.storage import database

    older = ProjectMetricsSnapshot(contract_address="0x01", last_activity=NOW - 2 * DAY)
    newer = ProjectMetricsSnapshot(contract_address="0x02", last_activity=NOW - DAY)
    database.upsert_project_metrics(conn, [older, newer])
    entries = _service(conn, normalizer).trending_projects()
    assert [e.snapshot.contract_address for e in entries] == ["0x02", "0x01"]
    assert entries[0].ranking_score == entries[1].ranking_score


# --- Failing projects ---


def test_failing_projects(scored, normalizer):
    failing = _service(scored, normalizer).failing_projects()
    assert [f.entry.snapshot.contract_address for f in failing] == [LENDING]
    lending = failing[0]
    assert lending.entry.snapshot.risk_score == 65
    assert lending.entry.risk_level == "high"
    assert "high_customer_concentration" in lending.decline_indicators
    # 50% success sits on the floor, not below it
    assert "low_success_rate" not in lending.decline_indicators
    assert "small_customer_base" in lending.decline_indicators


def test_failing_requires_a_decline_indicator(conn, normalizer):
    from chainpulse.storage import database

    risky_but_steady = ProjectMetricsSnapshot(
        contract_address="0x01",
        risk_score=75,
        success_rate=90.0,
        customer_concentration=0.5,
        last_activity=NOW,
    )
    database.upsert_project_metrics(conn, [risky_but_steady])
    assert _service(conn, normalizer).failing_projects() == []


# --- Trend analysis ---


def test_analyze_trend_against_daily_history(scored, normalizer):
    pipeline = MetricsDataPipeline(scored, DuckDBCounterSource(scored), clock=lambda: NOW)
    result = asyncio.run(pipeline.run_daily_batch(dt.date(2026, 4, 10)))
    assert result.success

    service = _service(scored, normalizer)
    trend = service.analyze_trend(DEX.upper().replace("0X", "0x"))
    assert trend.contract_address == DEX
    assert trend.period_days == 30
    # 94 now against 67 at the end of 2026-04-10
    assert trend.direction is TrendDirection.RISING
    assert trend.delta == 27.0
    assert [p["date"] for p in trend.history] == ["2026-04-10"]
    assert trend.history[0]["growth_score"] == 67

    entries = service.chain_rankings(1)
    assert entries[0].trend_direction is TrendDirection.RISING

    # Outside a 7-day window the 2026-04-10 row is ignored
    assert service.analyze_trend(DEX, period="7d").direction is TrendDirection.STABLE


def test_analyze_trend_unknown_project(conn, normalizer):
    trend = _service(conn, normalizer).analyze_trend("0x" + "f" * 40, period="7d")
    assert trend.direction is TrendDirection.STABLE
    assert trend.growth_score == 50
    assert trend.risk_level == "medium"
    assert trend.history == []
