"""Centralized configuration via pydantic-settings. Overrides from .env."""

from pathlib import Path
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parent.parent


class ScoringWeights(BaseModel):
    """Thresholds and point values for the additive score cascades.

    The values are empirical; they are kept here so they can be tuned without
    touching the scoring code.
    """

    baseline: float = 50.0

    # Growth bonuses
    customer_growth_threshold: float = 20.0
    customer_growth_bonus: float = 15.0
    transaction_growth_threshold: float = 30.0
    transaction_growth_bonus: float = 12.0
    growth_success_threshold: float = 95.0
    growth_success_bonus: float = 10.0
    volume_growth_threshold: float = 25.0
    volume_growth_bonus: float = 7.0
    active_ratio_threshold: float = 0.3
    active_ratio_bonus: float = 5.0

    # Health bonuses
    health_success_threshold: float = 98.0
    health_success_bonus: float = 20.0
    retention_threshold: float = 50.0
    retention_bonus: float = 12.0
    volume_trend_threshold: float = 20.0
    volume_trend_bonus: float = 10.0
    stickiness_threshold: float = 0.4
    stickiness_bonus: float = 7.0

    # Risk penalties (cumulative)
    risk_success_floor: float = 50.0
    risk_success_penalty: float = 17.0
    concentration_threshold: float = 0.8
    concentration_penalty: float = 15.0
    volatility_threshold: float = 100.0
    volatility_penalty: float = 17.0

    # Wallet spend tiers in native token (ETH-equivalent)
    whale_threshold: float = 100.0
    premium_threshold: float = 10.0
    regular_threshold: float = 1.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Data paths
    duckdb_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "chainpulse.duckdb")
    # Optional replacement for the bundled chain profile table
    chain_profiles_path: Path | None = None

    # Normalization
    reference_chain_id: int = 1

    # Pipeline
    growth_window_days: int = 30
    recompute_timeout: float = 30.0  # seconds
    stale_after_days: int = 7

    # Trending
    default_period: str = "30d"
    trend_dead_band: float = 3.0
    failing_risk_threshold: float = 60.0
    failing_success_floor: float = 50.0
    failing_concentration_ceiling: float = 0.8
    ranking_growth_weight: float = 0.45
    ranking_customer_weight: float = 0.25
    ranking_health_weight: float = 0.30
    customer_log_scale: float = 10_000.0

    log_level: str = "INFO"

    scoring: ScoringWeights = Field(default_factory=ScoringWeights)


@lru_cache
def get_settings() -> Settings:
    return Settings()
