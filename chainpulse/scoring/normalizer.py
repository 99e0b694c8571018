"""Cross-chain normalization: divide out each chain's baseline so projects on
different networks can be ranked against each other.

Factors depend only on the chain profile, never on the project being
normalized. Two projects on the same chain always get the same factors.
"""

from __future__ import annotations

import logging

from chainpulse.chain.registry import UNKNOWN_CHAIN, ChainProfile, ChainRegistry
from chainpulse.errors import ConfigurationError, NormalizationError
from chainpulse.models.schema import (
    CrossChainContext,
    NormalizationFactors,
    NormalizedMetrics,
    ProjectComparison,
    ProjectMetricsSnapshot,
)
from chainpulse.scoring.calculator import MetricsCalculator
from chainpulse.scoring.sanitize import clamp, finite_or_zero

logger = logging.getLogger(__name__)

EPSILON = 1e-9
FACTOR_MIN, FACTOR_MAX = 0.1, 5.0
MATURITY_MIN, MATURITY_MAX = 0.1, 1.0

NEUTRAL_FACTORS = NormalizationFactors(
    volume_factor=1.0,
    customer_factor=1.0,
    revenue_factor=1.0,
    maturity_factor=UNKNOWN_CHAIN.maturity,
)

# Relative difference under which two compared values count as a tie
TIE_THRESHOLD = 0.05

OVERALL_WEIGHTS = {
    "growth": 0.3,
    "health": 0.25,
    "risk": 0.2,
    "volume": 0.15,
    "revenue": 0.1,
}


class CrossChainNormalizer:
    """Computes chain normalization factors and normalized project views."""

    def __init__(
        self,
        registry: ChainRegistry,
        calculator: MetricsCalculator | None = None,
        reference_chain_id: int = 1,
    ):
        self.registry = registry
        self.calculator = calculator or MetricsCalculator()
        reference = registry.get_profile(reference_chain_id)
        if reference is None:
            raise ConfigurationError(f"Reference chain_id={reference_chain_id} has no profile")
        self.reference = reference
        self._warned: set[tuple[int, str]] = set()
        self._factor_cache: dict[int, NormalizationFactors] = {}

    def _warn_once(self, chain_id: int, reason: str, message: str) -> None:
        if (chain_id, reason) in self._warned:
            return
        self._warned.add((chain_id, reason))
        logger.warning(message)

    def _lookup(self, chain_id: int) -> ChainProfile:
        profile = self.registry.get_profile(chain_id)
        if profile is None:
            raise NormalizationError(f"No chain profile for chain_id={chain_id}")
        return profile

    def profile_for(self, chain_id: int) -> ChainProfile:
        try:
            return self._lookup(chain_id)
        except NormalizationError as e:
            self._warn_once(chain_id, "unknown", f"{e}, using neutral fallback factors")
            return UNKNOWN_CHAIN

    def factors_for(self, chain_id: int) -> NormalizationFactors:
        if chain_id in self._factor_cache:
            return self._factor_cache[chain_id]
        profile = self.profile_for(chain_id)
        factors = NEUTRAL_FACTORS if profile is UNKNOWN_CHAIN else self._compute_factors(profile)
        self._factor_cache[chain_id] = factors
        return factors

    def _compute_factors(self, profile: ChainProfile) -> NormalizationFactors:
        ref = self.reference
        # Busy chains are discounted, quiet chains boosted; a non-positive
        # baseline pins the factor at the ceiling.
        volume_factor = clamp(
            ref.expected_volume_baseline / max(profile.expected_volume_baseline, EPSILON),
            FACTOR_MIN,
            FACTOR_MAX,
        )
        customer_factor = clamp(
            ref.expected_customer_baseline / max(profile.expected_customer_baseline, EPSILON),
            FACTOR_MIN,
            FACTOR_MAX,
        )
        try:
            revenue_factor = _revenue_factor(profile)
        except NormalizationError as e:
            self._warn_once(profile.chain_id, "revenue", f"{e}, using 1.0")
            revenue_factor = NEUTRAL_FACTORS.revenue_factor
        maturity_factor = clamp(profile.maturity, MATURITY_MIN, MATURITY_MAX)
        return NormalizationFactors(
            volume_factor=round(volume_factor, 4),
            customer_factor=round(customer_factor, 4),
            revenue_factor=revenue_factor,
            maturity_factor=round(maturity_factor, 4),
        )

    def normalize(self, snapshot: ProjectMetricsSnapshot) -> NormalizedMetrics:
        factors = self.factors_for(snapshot.chain_id)
        profile = self.profile_for(snapshot.chain_id)
        maturity = factors.maturity_factor

        # Young chains grow and swing fast from a small base; damp rate-type
        # inputs by maturity before re-scoring.
        inputs = {
            "total_transactions": snapshot.total_transactions,
            "customer_growth_rate": snapshot.customer_growth_rate * maturity,
            "transaction_growth_rate": snapshot.transaction_growth_rate * maturity,
            "volume_growth_rate": snapshot.volume_growth_rate * maturity,
            "volume_trend": snapshot.volume_growth_rate * maturity,
            "volume_volatility": snapshot.volume_volatility * maturity,
            "success_rate": snapshot.success_rate,
            "daily_active_customers": snapshot.daily_active_customers,
            "weekly_active_customers": snapshot.weekly_active_customers,
            "retention_rate": snapshot.retention_rate,
            "customer_stickiness": snapshot.customer_stickiness,
            "customer_concentration": snapshot.customer_concentration,
        }
        growth, health, risk = self.calculator.score_project(inputs)

        return NormalizedMetrics(
            contract_address=snapshot.contract_address,
            chain_id=snapshot.chain_id,
            chain_name=profile.name,
            normalized_transaction_volume=round(snapshot.total_transactions * factors.volume_factor, 2),
            normalized_customer_acquisition=round(snapshot.total_customers * factors.customer_factor, 2),
            normalized_revenue_usd=round(max(snapshot.total_volume, 0.0) * factors.revenue_factor, 2),
            cross_chain_growth_score=growth,
            cross_chain_health_score=health,
            cross_chain_risk_score=risk,
            normalization_factors=factors,
        )

    def compare_projects(
        self,
        project_a: ProjectMetricsSnapshot,
        project_b: ProjectMetricsSnapshot,
    ) -> ProjectComparison:
        norm_a = self.normalize(project_a)
        norm_b = self.normalize(project_b)

        winners = {
            "volume": _winner(norm_a.normalized_transaction_volume, norm_b.normalized_transaction_volume),
            "customers": _winner(norm_a.normalized_customer_acquisition, norm_b.normalized_customer_acquisition),
            "revenue": _winner(norm_a.normalized_revenue_usd, norm_b.normalized_revenue_usd),
            "growth": _winner(norm_a.cross_chain_growth_score, norm_b.cross_chain_growth_score),
            "health": _winner(norm_a.cross_chain_health_score, norm_b.cross_chain_health_score),
            # Lower risk wins
            "risk": _winner(norm_b.cross_chain_risk_score, norm_a.cross_chain_risk_score),
        }
        overall = _winner(_overall_score(norm_a), _overall_score(norm_b))

        same_chain = project_a.chain_id == project_b.chain_id
        diverging: dict[str, tuple[float, float]] = {}
        if not same_chain:
            fa = norm_a.normalization_factors.model_dump()
            fb = norm_b.normalization_factors.model_dump()
            diverging = {name: (fa[name], fb[name]) for name in fa if fa[name] != fb[name]}

        context = CrossChainContext(
            same_chain=same_chain,
            normalization_applied=not same_chain,
            chain_a=norm_a.chain_name if norm_a.chain_name != UNKNOWN_CHAIN.name else str(project_a.chain_id),
            chain_b=norm_b.chain_name if norm_b.chain_name != UNKNOWN_CHAIN.name else str(project_b.chain_id),
            diverging_factors=diverging,
        )
        return ProjectComparison(
            project_a=norm_a,
            project_b=norm_b,
            winners=winners,
            overall_winner=overall,
            cross_chain_context=context,
        )

    def chain_info(self, chain_id: int) -> ChainProfile | None:
        return self.registry.get_profile(chain_id)

    def supported_chains(self) -> list[ChainProfile]:
        return list(self.registry.values())


def _winner(value_a: float, value_b: float) -> str:
    diff = abs(value_a - value_b)
    avg = (value_a + value_b) / 2
    if avg == 0 or diff / abs(avg) < TIE_THRESHOLD:
        return "tie"
    return "A" if value_a > value_b else "B"


def _overall_score(metrics: NormalizedMetrics) -> float:
    volume = min(100.0, metrics.normalized_transaction_volume / 1000 * 100)
    revenue = min(100.0, metrics.normalized_revenue_usd / 10_000 * 100)
    return (
        metrics.cross_chain_growth_score * OVERALL_WEIGHTS["growth"]
        + metrics.cross_chain_health_score * OVERALL_WEIGHTS["health"]
        + (100 - metrics.cross_chain_risk_score) * OVERALL_WEIGHTS["risk"]
        + volume * OVERALL_WEIGHTS["volume"]
        + revenue * OVERALL_WEIGHTS["revenue"]
    )


def _revenue_factor(profile: ChainProfile) -> float:
    rate = finite_or_zero(profile.token_usd_rate)
    if rate <= 0:
        raise NormalizationError(f"Non-positive token_usd_rate for chain_id={profile.chain_id}")
    return rate
