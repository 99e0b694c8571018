"""Chain profile registry mapping chain_id to normalization baselines."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from types import MappingProxyType

from chainpulse.errors import ConfigurationError


@dataclass(frozen=True)
class ChainProfile:
    chain_id: int
    name: str
    native_token: str
    expected_volume_baseline: float  # transactions per growth window
    expected_customer_baseline: float  # unique customers per growth window
    token_usd_rate: float  # native token -> USD
    maturity: float  # network-age index, 0.1 (new) to 1.0 (mature)


# Neutral factors: volume/customer/revenue 1.0, maturity 0.5
UNKNOWN_CHAIN = ChainProfile(
    chain_id=-1,
    name="unknown",
    native_token="?",
    expected_volume_baseline=0.0,
    expected_customer_baseline=0.0,
    token_usd_rate=1.0,
    maturity=0.5,
)

BUNDLED_PROFILES = Path(__file__).with_name("profiles.json")

_REQUIRED = {f.name for f in fields(ChainProfile)} - {"chain_id"}


class ChainRegistry(Mapping):
    """Read-only mapping of chain_id -> ChainProfile, loaded once."""

    def __init__(self, profiles: Mapping[int, ChainProfile]):
        for chain_id, profile in profiles.items():
            if not isinstance(profile, ChainProfile):
                raise ConfigurationError(f"Profile for chain_id={chain_id} is not a ChainProfile")
            if profile.chain_id != chain_id:
                raise ConfigurationError(
                    f"Profile keyed {chain_id} declares chain_id={profile.chain_id}"
                )
        self._profiles = MappingProxyType(dict(profiles))

    def __getitem__(self, chain_id: int) -> ChainProfile:
        return self._profiles[chain_id]

    def __iter__(self):
        return iter(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def get_profile(self, chain_id: int) -> ChainProfile | None:
        return self._profiles.get(chain_id)

    def resolve(self, name_or_id: str | int) -> ChainProfile | None:
        """Resolve a chain name or ID to its profile."""
        if isinstance(name_or_id, int):
            return self.get_profile(name_or_id)
        name = str(name_or_id).lower()
        if name.isdigit():
            return self.get_profile(int(name))
        for profile in self._profiles.values():
            if profile.name == name:
                return profile
        return None

    @classmethod
    def from_dict(cls, data: Mapping) -> "ChainRegistry":
        """Build from {chain_id: {field: value}} as found in profiles.json."""
        if not isinstance(data, Mapping):
            raise ConfigurationError("Chain profile table must be an object keyed by chain_id")
        profiles: dict[int, ChainProfile] = {}
        for key, entry in data.items():
            try:
                chain_id = int(key)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid chain_id key {key!r}") from e
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"Profile for chain_id={chain_id} must be an object")
            missing = _REQUIRED - set(entry)
            if missing:
                raise ConfigurationError(
                    f"Profile for chain_id={chain_id} missing fields: {sorted(missing)}"
                )
            try:
                profiles[chain_id] = ChainProfile(
                    chain_id=chain_id,
                    name=str(entry["name"]).lower(),
                    native_token=str(entry["native_token"]),
                    expected_volume_baseline=float(entry["expected_volume_baseline"]),
                    expected_customer_baseline=float(entry["expected_customer_baseline"]),
                    token_usd_rate=float(entry["token_usd_rate"]),
                    maturity=float(entry["maturity"]),
                )
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value in profile for chain_id={chain_id}: {e}") from e
        return cls(profiles)

    @classmethod
    def from_file(cls, path: Path) -> "ChainRegistry":
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Chain profile file {path} is not valid JSON: {e}") from e
        return cls.from_dict(data)


def load_default_registry(path: Path | None = None) -> ChainRegistry:
    """Load the configured profile table, falling back to the bundled one."""
    if path is None:
        from chainpulse.config import get_settings

        path = get_settings().chain_profiles_path
    return ChainRegistry.from_file(path or BUNDLED_PROFILES)
