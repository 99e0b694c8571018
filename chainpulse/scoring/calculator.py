"""Business scores and classifications from pre-aggregated counters.

Everything here is pure: counters in, scores and snapshot records out. No I/O
and no wall-clock reads, so the same counters always produce the same output.

Score inputs may be mappings or objects with the named attributes (counters,
snapshots). Missing and non-finite values are read as 0.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping

from chainpulse.config import ScoringWeights
from chainpulse.models.schema import (
    ActivityPattern,
    CategoryCounters,
    CategoryMetricsSnapshot,
    DailyCounters,
    ProjectCounters,
    ProjectMetricsDaily,
    ProjectMetricsSnapshot,
    WalletCounters,
    WalletMetricsSnapshot,
    WalletType,
)
from chainpulse.scoring.sanitize import (
    clamp,
    clamp_score,
    finite_or_zero,
    growth_rate,
    safe_ratio,
)

SECONDS_PER_DAY = 86400


def _get(metrics, key: str) -> float:
    if isinstance(metrics, Mapping):
        return finite_or_zero(metrics.get(key))
    return finite_or_zero(getattr(metrics, key, None))


class MetricsCalculator:
    """Turns counters into growth/health/risk scores and wallet classes."""

    def __init__(self, weights: ScoringWeights | None = None):
        self.weights = weights or ScoringWeights()

    # --- Scores ---

    def growth_score(self, metrics) -> int:
        """Baseline plus fixed bonuses for growth, reliability and engagement.

        Inputs: customer_growth_rate, transaction_growth_rate,
        volume_growth_rate, success_rate (percent), daily_active_customers,
        weekly_active_customers.
        """
        w = self.weights
        score = w.baseline
        if _get(metrics, "customer_growth_rate") > w.customer_growth_threshold:
            score += w.customer_growth_bonus
        if _get(metrics, "transaction_growth_rate") > w.transaction_growth_threshold:
            score += w.transaction_growth_bonus
        if _get(metrics, "success_rate") > w.growth_success_threshold:
            score += w.growth_success_bonus
        if _get(metrics, "volume_growth_rate") > w.volume_growth_threshold:
            score += w.volume_growth_bonus
        active_ratio = safe_ratio(
            _get(metrics, "daily_active_customers"),
            _get(metrics, "weekly_active_customers"),
        )
        if active_ratio > w.active_ratio_threshold:
            score += w.active_ratio_bonus
        return clamp_score(score)

    def health_score(self, metrics) -> int:
        """Inputs: success_rate, retention_rate, volume_trend, customer_stickiness."""
        w = self.weights
        score = w.baseline
        if _get(metrics, "success_rate") > w.health_success_threshold:
            score += w.health_success_bonus
        if _get(metrics, "retention_rate") > w.retention_threshold:
            score += w.retention_bonus
        if _get(metrics, "volume_trend") > w.volume_trend_threshold:
            score += w.volume_trend_bonus
        if _get(metrics, "customer_stickiness") > w.stickiness_threshold:
            score += w.stickiness_bonus
        return clamp_score(score)

    def risk_score(self, metrics) -> int:
        """Higher is riskier. Penalties are cumulative.

        Inputs: success_rate, customer_concentration, volume_volatility.
        """
        w = self.weights
        score = w.baseline
        if _get(metrics, "success_rate") < w.risk_success_floor:
            score += w.risk_success_penalty
        if _get(metrics, "customer_concentration") > w.concentration_threshold:
            score += w.concentration_penalty
        if _get(metrics, "volume_volatility") > w.volatility_threshold:
            score += w.volatility_penalty
        return clamp_score(score)

    def score_project(self, inputs) -> tuple[int, int, int]:
        """(growth, health, risk) for a project's score inputs.

        A project without transactions has nothing to score and sits at the
        baseline on all three.
        """
        if _get(inputs, "total_transactions") <= 0:
            baseline = clamp_score(self.weights.baseline)
            return baseline, baseline, baseline
        return self.growth_score(inputs), self.health_score(inputs), self.risk_score(inputs)

    # --- Ratios and classifications ---

    @staticmethod
    def customer_concentration(unique_customers, total_transactions) -> float:
        """1 - customers/transactions in [0, 1]. 0 when there is nothing to measure."""
        customers = finite_or_zero(unique_customers)
        transactions = finite_or_zero(total_transactions)
        if transactions <= 0 or customers <= 0:
            return 0.0
        return clamp(1.0 - customers / transactions, 0.0, 1.0)

    def classify_wallet(self, total_spent_eth) -> WalletType:
        """Spend tiers, checked from the highest down."""
        w = self.weights
        spent = finite_or_zero(total_spent_eth)
        if spent > w.whale_threshold:
            return WalletType.WHALE
        if spent > w.premium_threshold:
            return WalletType.PREMIUM
        if spent > w.regular_threshold:
            return WalletType.REGULAR
        return WalletType.SMALL

    @staticmethod
    def classify_activity(interaction_frequency, total_interactions) -> ActivityPattern:
        frequency = finite_or_zero(interaction_frequency)
        total = finite_or_zero(total_interactions)
        if frequency > 1 and total > 100:
            return ActivityPattern.POWER_USER
        if frequency > 0.1 and total > 20:
            return ActivityPattern.REGULAR
        if total > 5:
            return ActivityPattern.OCCASIONAL
        return ActivityPattern.ONE_TIME

    @staticmethod
    def loyalty_score(total_interactions, repeat_interactions, days_active, unique_contracts) -> int:
        """Repeat ratio x40 + tenure x30 + breadth x20, +10 for steady non-bot usage."""
        total = finite_or_zero(total_interactions)
        days = finite_or_zero(days_active)
        score = safe_ratio(repeat_interactions, total) * 40
        score += min(days / 365, 1.0) * 30
        score += min(finite_or_zero(unique_contracts) / 20, 1.0) * 20
        if days > 0:
            per_day = total / days
            if 0.1 < per_day < 10:
                score += 10
        return clamp_score(score)

    # --- Snapshot builders ---

    def project_snapshot(
        self,
        contract_address: str,
        chain_id: int,
        counters: ProjectCounters,
    ) -> ProjectMetricsSnapshot:
        c = counters
        inputs = {
            "total_transactions": c.total_transactions,
            "success_rate": round(safe_ratio(c.successful_transactions, c.total_transactions) * 100, 4),
            "customer_growth_rate": round(growth_rate(c.window_customers, c.prev_window_customers), 4),
            "transaction_growth_rate": round(
                growth_rate(c.window_transactions, c.prev_window_transactions), 4
            ),
            "volume_growth_rate": round(growth_rate(c.window_volume, c.prev_window_volume), 4),
            "daily_active_customers": c.daily_active_customers,
            "weekly_active_customers": c.weekly_active_customers,
            "retention_rate": round(safe_ratio(c.retained_customers, c.prev_window_customers) * 100, 4),
            "customer_stickiness": round(
                safe_ratio(c.daily_active_customers, c.monthly_active_customers), 4
            ),
            "customer_concentration": round(
                self.customer_concentration(c.unique_customers, c.total_transactions), 4
            ),
            "volume_volatility": round(c.volume_volatility, 4),
        }
        inputs["volume_trend"] = inputs["volume_growth_rate"]
        growth, health, risk = self.score_project(inputs)

        return ProjectMetricsSnapshot(
            contract_address=contract_address,
            chain_id=chain_id,
            total_customers=c.unique_customers,
            total_transactions=c.total_transactions,
            successful_transactions=c.successful_transactions,
            failed_transactions=c.failed_transactions,
            total_volume=c.total_volume,
            total_gas_used=c.total_gas_used,
            success_rate=inputs["success_rate"],
            customer_growth_rate=inputs["customer_growth_rate"],
            transaction_growth_rate=inputs["transaction_growth_rate"],
            volume_growth_rate=inputs["volume_growth_rate"],
            daily_active_customers=c.daily_active_customers,
            weekly_active_customers=c.weekly_active_customers,
            monthly_active_customers=c.monthly_active_customers,
            retention_rate=inputs["retention_rate"],
            customer_stickiness=inputs["customer_stickiness"],
            customer_concentration=inputs["customer_concentration"],
            volume_volatility=inputs["volume_volatility"],
            growth_score=growth,
            health_score=health,
            risk_score=risk,
            first_activity=c.first_activity,
            last_activity=c.last_activity,
        )

    def wallet_snapshot(
        self,
        wallet_address: str,
        chain_id: int,
        counters: WalletCounters,
    ) -> WalletMetricsSnapshot:
        c = counters
        days_active = 0.0
        if c.total_interactions > 0:
            span = max(c.last_interaction - c.first_interaction, 0) / SECONDS_PER_DAY
            days_active = round(max(span, 1.0), 4)
        frequency = round(safe_ratio(c.total_interactions, days_active), 4)
        repeat = max(c.total_interactions - c.unique_contracts, 0)

        return WalletMetricsSnapshot(
            wallet_address=wallet_address,
            chain_id=chain_id,
            total_interactions=c.total_interactions,
            unique_contracts=c.unique_contracts,
            total_spent=c.total_spent,
            avg_transaction_size=safe_ratio(c.total_spent, c.total_interactions),
            total_gas_used=c.total_gas_used,
            first_interaction=c.first_interaction,
            last_interaction=c.last_interaction,
            days_active=days_active,
            interaction_frequency=frequency,
            wallet_type=self.classify_wallet(c.total_spent),
            activity_pattern=self.classify_activity(frequency, c.total_interactions),
            preferred_categories=list(c.preferred_categories),
            loyalty_score=self.loyalty_score(
                c.total_interactions, repeat, days_active, c.unique_contracts
            ),
        )

    @staticmethod
    def category_snapshot(
        category: str,
        chain_id: int,
        counters: CategoryCounters,
    ) -> CategoryMetricsSnapshot:
        c = counters
        return CategoryMetricsSnapshot(
            category=category,
            chain_id=chain_id,
            project_count=c.project_count,
            total_customers=c.total_customers,
            total_transactions=c.total_transactions,
            total_volume=c.total_volume,
            avg_growth_score=round(c.avg_growth_score, 2),
            avg_health_score=round(c.avg_health_score, 2),
            avg_risk_score=round(c.avg_risk_score, 2),
            transaction_share=round(safe_ratio(c.total_transactions, c.chain_transactions) * 100, 4),
            customer_share=round(safe_ratio(c.total_customers, c.chain_customers) * 100, 4),
            volume_share=round(safe_ratio(c.total_volume, c.chain_volume) * 100, 4),
        )

    @staticmethod
    def daily_project_metrics(
        snapshot: ProjectMetricsSnapshot,
        day: dt.date,
        daily: DailyCounters,
    ) -> ProjectMetricsDaily:
        """Daily trend row: that day's activity plus the scores as of day end."""
        return ProjectMetricsDaily(
            contract_address=snapshot.contract_address,
            chain_id=snapshot.chain_id,
            date=day,
            daily_transactions=daily.daily_transactions,
            daily_customers=daily.daily_customers,
            daily_volume=daily.daily_volume,
            total_customers=snapshot.total_customers,
            total_transactions=snapshot.total_transactions,
            growth_score=snapshot.growth_score,
            health_score=snapshot.health_score,
            risk_score=snapshot.risk_score,
        )
