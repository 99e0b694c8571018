"""Leaderboards, trend direction and failing-project detection over persisted snapshots.

Ranking score (0-100):
- growth x 0.45
- customers x 0.25, log-scaled so a few huge projects don't flatten the rest
- health x 0.30

Rankings that span several chains use the normalized cross-chain scores and
customer counts; single-chain rankings use the raw ones.
"""

from __future__ import annotations

import datetime as dt
import re
import time
from typing import Callable

import duckdb
import numpy as np
import pandas as pd
from pydantic import BaseModel, Field

from chainpulse.config import Settings, get_settings
from chainpulse.models.schema import (
    ContractProfile,
    FailingProject,
    ProjectMetricsSnapshot,
    RankingEntry,
    TrendDirection,
)
from chainpulse.scoring.calculator import SECONDS_PER_DAY
from chainpulse.scoring.normalizer import CrossChainNormalizer
from chainpulse.storage import database

_PERIOD = re.compile(r"(\d+)([dw])")
_PERIOD_UNITS = {"d": 1, "w": 7}


class ProjectTrend(BaseModel):
    contract_address: str
    chain_id: int
    period_days: int
    direction: TrendDirection
    delta: float
    growth_score: int
    health_score: int
    risk_score: int
    risk_level: str
    history: list[dict] = Field(default_factory=list)


def parse_period(period: str) -> int:
    """'7d', '30d', '2w' -> days. Anything else is a ValueError."""
    match = _PERIOD.fullmatch(str(period).strip().lower())
    if match is None:
        raise ValueError(f"Invalid period {period!r}, expected e.g. '7d' or '30d'")
    days = int(match.group(1)) * _PERIOD_UNITS[match.group(2)]
    if days <= 0:
        raise ValueError(f"Period must be positive, got {period!r}")
    return days


def trend_direction(current: float, earlier: float | None, dead_band: float = 3.0) -> tuple[TrendDirection, float]:
    """Classify the change in growth score; changes within the dead band are stable."""
    if earlier is None or pd.isna(earlier):
        return TrendDirection.STABLE, 0.0
    delta = float(current) - float(earlier)
    if abs(delta) <= dead_band:
        return TrendDirection.STABLE, delta
    return (TrendDirection.RISING if delta > 0 else TrendDirection.FALLING), delta


def risk_level(risk_score: float) -> str:
    if risk_score <= 30:
        return "low"
    if risk_score <= 60:
        return "medium"
    return "high"


def ranking_scores(
    growth: pd.Series,
    customers: pd.Series,
    health: pd.Series,
    settings: Settings,
) -> pd.Series:
    customer_score = np.minimum(
        100.0,
        100.0 * np.log1p(customers.clip(lower=0)) / np.log1p(settings.customer_log_scale),
    )
    return (
        settings.ranking_growth_weight * growth
        + settings.ranking_customer_weight * customer_score
        + settings.ranking_health_weight * health
    ).round(4)


def decline_indicators(
    snapshot: ProjectMetricsSnapshot,
    direction: TrendDirection,
    settings: Settings,
) -> list[str]:
    """Triggered decline signals; a project is failing only with high risk and at least one."""
    indicators = []
    if direction is TrendDirection.FALLING:
        indicators.append("falling_trend")
    if snapshot.success_rate < settings.failing_success_floor:
        indicators.append("low_success_rate")
    if snapshot.customer_concentration > settings.failing_concentration_ceiling:
        indicators.append("high_customer_concentration")
    return indicators


def _context_indicators(snapshot: ProjectMetricsSnapshot) -> list[str]:
    indicators = []
    if snapshot.retention_rate < 30:
        indicators.append("poor_customer_retention")
    if snapshot.total_customers < 10:
        indicators.append("small_customer_base")
    if snapshot.total_transactions < 100:
        indicators.append("low_transaction_volume")
    return indicators


class TrendingService:
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        normalizer: CrossChainNormalizer,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.conn = conn
        self.normalizer = normalizer
        self.settings = settings or get_settings()
        self.clock = clock

    def _today(self) -> dt.date:
        return dt.datetime.fromtimestamp(self.clock(), tz=dt.timezone.utc).date()

    def _earliest_growth(self, period_days: int, chain_id: int | None) -> dict[tuple[str, int], float]:
        """Earliest daily growth score per project inside the period window."""
        since = self._today() - dt.timedelta(days=period_days)
        history = database.get_daily_history(self.conn, since, chain_id=chain_id)
        if history.empty:
            return {}
        earliest = history.sort_values("date").groupby(["contract_address", "chain_id"])["growth_score"].first()
        return {(address, int(chain)): float(score) for (address, chain), score in earliest.items()}

    def _rank(
        self,
        rows: list[tuple[ProjectMetricsSnapshot, ContractProfile]],
        period: str | None,
        chain_id: int | None,
    ) -> list[RankingEntry]:
        period_days = parse_period(period or self.settings.default_period)
        if not rows:
            return []

        cutoff = int(self.clock()) - period_days * SECONDS_PER_DAY
        cross_chain = len({s.chain_id for s, _ in rows}) > 1
        earliest = self._earliest_growth(period_days, chain_id)
        baseline = self.normalizer.calculator.weights.baseline

        normalized_views = [self.normalizer.normalize(snapshot) for snapshot, _ in rows]
        records = []
        for idx, ((snapshot, _), normalized) in enumerate(zip(rows, normalized_views)):
            if cross_chain:
                growth = normalized.cross_chain_growth_score
                health = normalized.cross_chain_health_score
                customers = normalized.normalized_customer_acquisition
            else:
                growth, health, customers = snapshot.growth_score, snapshot.health_score, snapshot.total_customers
            if snapshot.last_activity < cutoff:
                # Nothing happened in the period
                growth = health = baseline
            records.append({
                "idx": idx,
                "growth": float(growth),
                "health": float(health),
                "customers": float(customers),
                "last_activity": snapshot.last_activity,
                "earliest_growth": earliest.get((snapshot.contract_address, snapshot.chain_id)),
            })

        df = pd.DataFrame(records)
        df["ranking_score"] = ranking_scores(df["growth"], df["customers"], df["health"], self.settings)
        df = df.sort_values(["ranking_score", "last_activity"], ascending=[False, False], kind="mergesort")
        df = df.reset_index(drop=True)

        entries = []
        for i, row in df.iterrows():
            snapshot, profile = rows[int(row["idx"])]
            direction, delta = trend_direction(
                snapshot.growth_score, row["earliest_growth"], self.settings.trend_dead_band
            )
            entries.append(RankingEntry(
                snapshot=snapshot,
                name=profile.name,
                category=profile.category,
                normalized=normalized_views[int(row["idx"])],
                ranking_score=float(row["ranking_score"]),
                trend_direction=direction,
                trend_delta=round(delta, 2),
                risk_level=risk_level(snapshot.risk_score),
                rank=i + 1,
            ))
        return entries

    def trending_projects(
        self,
        period: str | None = None,
        chain_id: int | None = None,
        category: str | None = None,
        limit: int = 20,
    ) -> list[RankingEntry]:
        rows = database.list_project_metrics(self.conn, chain_id=chain_id, category=category)
        return self._rank(rows, period, chain_id)[:limit]

    def category_rankings(
        self,
        category: str,
        period: str | None = None,
        chain_id: int | None = None,
        limit: int = 10,
    ) -> list[RankingEntry]:
        return self.trending_projects(period=period, chain_id=chain_id, category=category, limit=limit)

    def chain_rankings(
        self,
        chain_id: int,
        period: str | None = None,
        category: str | None = None,
        limit: int = 10,
    ) -> list[RankingEntry]:
        return self.trending_projects(period=period, chain_id=chain_id, category=category, limit=limit)

    def failing_projects(
        self,
        period: str | None = None,
        chain_id: int | None = None,
        category: str | None = None,
        limit: int = 10,
    ) -> list[FailingProject]:
        """Projects above the risk threshold with at least one decline indicator, riskiest first."""
        rows = database.list_project_metrics(self.conn, chain_id=chain_id, category=category)
        failing = []
        for entry in self._rank(rows, period, chain_id):
            snapshot = entry.snapshot
            if snapshot.risk_score <= self.settings.failing_risk_threshold:
                continue
            indicators = decline_indicators(snapshot, entry.trend_direction, self.settings)
            if not indicators:
                continue
            failing.append(FailingProject(
                entry=entry,
                decline_indicators=indicators + _context_indicators(snapshot),
            ))
        failing.sort(key=lambda f: (-f.entry.snapshot.risk_score, f.entry.snapshot.success_rate))
        return failing[:limit]

    def analyze_trend(self, contract_address: str, chain_id: int = 1, period: str | None = None) -> ProjectTrend:
        """Trend of one project over the period, with its daily score history."""
        period_days = parse_period(period or self.settings.default_period)
        address = contract_address.lower()
        snapshot = database.get_project_metrics(self.conn, address, chain_id)
        if snapshot is None:
            snapshot = ProjectMetricsSnapshot(contract_address=address, chain_id=chain_id)

        since = self._today() - dt.timedelta(days=period_days)
        history = database.get_daily_history(self.conn, since, chain_id=chain_id, contract_address=address)
        earliest = None if history.empty else float(history.iloc[0]["growth_score"])
        direction, delta = trend_direction(snapshot.growth_score, earliest, self.settings.trend_dead_band)

        points = []
        for _, row in history.iterrows():
            points.append({
                "date": pd.Timestamp(row["date"]).date().isoformat(),
                "growth_score": int(row["growth_score"]),
                "health_score": int(row["health_score"]),
                "risk_score": int(row["risk_score"]),
                "daily_transactions": int(row["daily_transactions"]),
                "daily_customers": int(row["daily_customers"]),
            })

        return ProjectTrend(
            contract_address=address,
            chain_id=chain_id,
            period_days=period_days,
            direction=direction,
            delta=round(delta, 2),
            growth_score=snapshot.growth_score,
            health_score=snapshot.health_score,
            risk_score=snapshot.risk_score,
            risk_level=risk_level(snapshot.risk_score),
            history=points,
        )
