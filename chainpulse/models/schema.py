"""Pydantic v2 data models for ledger rows, counters, snapshots and views."""

from __future__ import annotations

import math
import datetime as dt
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class TxStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class WalletType(str, Enum):
    WHALE = "whale"
    PREMIUM = "premium"
    REGULAR = "regular"
    SMALL = "small"


class ActivityPattern(str, Enum):
    POWER_USER = "power_user"
    REGULAR = "regular"
    OCCASIONAL = "occasional"
    ONE_TIME = "one_time"


class TrendDirection(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class EntityKind(str, Enum):
    PROJECT = "project"
    WALLET = "wallet"


# --- Ledger rows (written by ingestion, read here) ---


class TransactionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    chain_id: int = Field(default=1, description="EVM chain ID")
    hash: str
    contract_address: str
    from_address: str
    to_address: str = ""
    value: float = Field(default=0.0, description="Value in native token (ETH, MATIC, etc.)")
    status: TxStatus = TxStatus.SUCCESS
    gas_used: int = 0
    block_timestamp: int


class ContractProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    chain_id: int = Field(default=1)
    address: str
    category: str = "uncategorized"
    is_verified: bool = False
    name: str = ""


# --- Counters (input contract) ---


class _Counters(BaseModel):
    """Pre-aggregated counters. Missing or non-finite numbers default to 0."""

    @field_validator("*", mode="before")
    @classmethod
    def _zero_missing(cls, value, info: ValidationInfo):
        field = cls.model_fields[info.field_name]
        if field.annotation not in (int, float):
            return value
        if value is None:
            return 0
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return value


class ProjectCounters(_Counters):
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    unique_customers: int = 0
    total_volume: float = 0.0
    total_gas_used: int = 0
    first_activity: int = 0
    last_activity: int = 0

    # Current vs previous growth window
    window_customers: int = 0
    prev_window_customers: int = 0
    window_transactions: int = 0
    prev_window_transactions: int = 0
    window_volume: float = 0.0
    prev_window_volume: float = 0.0
    retained_customers: int = 0

    daily_active_customers: int = 0
    weekly_active_customers: int = 0
    monthly_active_customers: int = 0
    volume_volatility: float = 0.0


class WalletCounters(_Counters):
    total_interactions: int = 0
    unique_contracts: int = 0
    total_spent: float = 0.0
    total_gas_used: int = 0
    first_interaction: int = 0
    last_interaction: int = 0
    preferred_categories: list[str] = Field(default_factory=list)


class CategoryCounters(_Counters):
    project_count: int = 0
    total_customers: int = 0
    total_transactions: int = 0
    total_volume: float = 0.0
    chain_customers: int = 0
    chain_transactions: int = 0
    chain_volume: float = 0.0
    avg_growth_score: float = 0.0
    avg_health_score: float = 0.0
    avg_risk_score: float = 0.0


class DailyCounters(_Counters):
    daily_transactions: int = 0
    daily_customers: int = 0
    daily_volume: float = 0.0


# --- Snapshots (derived, persisted) ---


class ProjectMetricsSnapshot(BaseModel):
    contract_address: str
    chain_id: int = Field(default=1)
    total_customers: int = 0
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    total_volume: float = 0.0
    total_gas_used: int = 0
    success_rate: float = 0.0
    customer_growth_rate: float = 0.0
    transaction_growth_rate: float = 0.0
    volume_growth_rate: float = 0.0
    daily_active_customers: int = 0
    weekly_active_customers: int = 0
    monthly_active_customers: int = 0
    retention_rate: float = 0.0
    customer_stickiness: float = 0.0
    customer_concentration: float = 0.0
    volume_volatility: float = 0.0
    growth_score: int = 50
    health_score: int = 50
    risk_score: int = 50
    first_activity: int = 0
    last_activity: int = 0
    last_updated: int = 0


class WalletMetricsSnapshot(BaseModel):
    wallet_address: str
    chain_id: int = Field(default=1)
    total_interactions: int = 0
    unique_contracts: int = 0
    total_spent: float = 0.0
    avg_transaction_size: float = 0.0
    total_gas_used: int = 0
    first_interaction: int = 0
    last_interaction: int = 0
    days_active: float = 0.0
    interaction_frequency: float = 0.0
    wallet_type: WalletType = WalletType.SMALL
    activity_pattern: ActivityPattern = ActivityPattern.ONE_TIME
    preferred_categories: list[str] = Field(default_factory=list)
    loyalty_score: int = 0
    last_updated: int = 0

    @field_validator("preferred_categories", mode="before")
    @classmethod
    def _split_categories(cls, value):
        # Stored as a comma-joined string
        if value is None:
            return []
        if isinstance(value, str):
            return [c for c in value.split(",") if c]
        return value


class CategoryMetricsSnapshot(BaseModel):
    category: str
    chain_id: int = Field(default=1)
    project_count: int = 0
    total_customers: int = 0
    total_transactions: int = 0
    total_volume: float = 0.0
    avg_growth_score: float = 0.0
    avg_health_score: float = 0.0
    avg_risk_score: float = 0.0
    transaction_share: float = 0.0
    customer_share: float = 0.0
    volume_share: float = 0.0
    last_updated: int = 0


class ProjectMetricsDaily(BaseModel):
    contract_address: str
    chain_id: int = Field(default=1)
    date: dt.date
    daily_transactions: int = 0
    daily_customers: int = 0
    daily_volume: float = 0.0
    total_customers: int = 0
    total_transactions: int = 0
    growth_score: int = 50
    health_score: int = 50
    risk_score: int = 50


# --- Ephemeral views ---


class NormalizationFactors(BaseModel):
    model_config = ConfigDict(frozen=True)

    volume_factor: float
    customer_factor: float
    revenue_factor: float
    maturity_factor: float


class NormalizedMetrics(BaseModel):
    contract_address: str
    chain_id: int
    chain_name: str
    normalized_transaction_volume: float
    normalized_customer_acquisition: float
    normalized_revenue_usd: float
    cross_chain_growth_score: int
    cross_chain_health_score: int
    cross_chain_risk_score: int
    normalization_factors: NormalizationFactors


class CrossChainContext(BaseModel):
    same_chain: bool
    normalization_applied: bool
    chain_a: str
    chain_b: str
    diverging_factors: dict[str, tuple[float, float]] = Field(default_factory=dict)


class ProjectComparison(BaseModel):
    project_a: NormalizedMetrics
    project_b: NormalizedMetrics
    winners: dict[str, str]
    overall_winner: str
    cross_chain_context: CrossChainContext


class RankingEntry(BaseModel):
    snapshot: ProjectMetricsSnapshot
    name: str = ""
    category: str = ""
    normalized: NormalizedMetrics | None = None
    ranking_score: float = 0.0
    trend_direction: TrendDirection = TrendDirection.STABLE
    trend_delta: float = 0.0
    risk_level: str = "medium"
    rank: int = 0


class FailingProject(BaseModel):
    entry: RankingEntry
    decline_indicators: list[str]
