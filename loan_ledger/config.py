"""
config.py - Lending configuration

LendingConfig gathers every tunable constant of the engine in one frozen,
validated object. Defaults reproduce the reference demo: 80% target LTV,
85% liquidation threshold, auto-charge one hour before the hold expires.

Usage:
    config = LendingConfig()                              # defaults
    config = LendingConfig.from_dict({"max_ltv_percent": 90})
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from datetime import timedelta
from decimal import Decimal
from typing import Any, FrozenSet, Mapping

from .core import HUNDRED, ZERO, to_decimal


# Annual rates in percent. Stablecoins sit around 5%; borrowing a volatile
# asset against card collateral is priced at 10%.
DEFAULT_INTEREST_RATES: Mapping[str, Decimal] = {
    "USDC": Decimal("5.2"),
    "USDT": Decimal("4.8"),
    "DAI": Decimal("5.5"),
    "ETH": Decimal("10.0"),
    "LINK": Decimal("10.0"),
}

DEFAULT_STABLE_ASSETS: FrozenSet[str] = frozenset({"USDC", "USDT", "DAI", "USD"})

DEFAULT_STABLE_RATE = Decimal("5.0")
DEFAULT_VOLATILE_RATE = Decimal("10.0")


@dataclass(frozen=True, slots=True)
class RiskBands:
    """
    Upper LTV bound (inclusive, percent) of each risk band.

    LTV <= safe_max is Safe, <= moderate_max Moderate, <= high_max High,
    anything above is Critical.
    """
    safe_max: Decimal = Decimal("40")
    moderate_max: Decimal = Decimal("55")
    high_max: Decimal = Decimal("70")

    def __post_init__(self):
        for name in ("safe_max", "moderate_max", "high_max"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not (ZERO < self.safe_max < self.moderate_max < self.high_max):
            raise ValueError(
                f"Risk bands must be strictly increasing and positive: "
                f"{self.safe_max}, {self.moderate_max}, {self.high_max}"
            )


@dataclass(frozen=True, slots=True)
class LendingConfig:
    """
    Engine-wide settings.

    Attributes:
        default_target_ltv_percent: LTV used to size the hold when a request omits one
        max_ltv_percent: Highest LTV a new loan may open at (100 = collateral >= principal)
        liquidation_threshold_percent: Debt/collateral ratio that triggers liquidation
        automation_lead_time: How long before hold expiry the auto-charge fires
        automation_enabled: Whether the expiry watcher auto-charges at all
        collaborator_timeout_seconds: Bound on every external call
        risk_bands: LTV thresholds for risk_level()
        interest_rates: Per-asset annual rate table
        stable_assets: Assets priced at 1 USD
        default_stable_rate / default_volatile_rate: Fallback rates per asset class
    """
    default_target_ltv_percent: Decimal = Decimal("80")
    max_ltv_percent: Decimal = Decimal("100")
    liquidation_threshold_percent: Decimal = Decimal("85")
    automation_lead_time: timedelta = timedelta(hours=1)
    automation_enabled: bool = True
    collaborator_timeout_seconds: float = 30.0
    risk_bands: RiskBands = field(default_factory=RiskBands)
    interest_rates: Mapping[str, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_INTEREST_RATES)
    )
    stable_assets: FrozenSet[str] = DEFAULT_STABLE_ASSETS
    default_stable_rate: Decimal = DEFAULT_STABLE_RATE
    default_volatile_rate: Decimal = DEFAULT_VOLATILE_RATE

    def __post_init__(self):
        for name in ("default_target_ltv_percent", "max_ltv_percent",
                     "liquidation_threshold_percent", "default_stable_rate",
                     "default_volatile_rate"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        object.__setattr__(
            self, "interest_rates",
            {k.upper(): to_decimal(v) for k, v in self.interest_rates.items()},
        )
        object.__setattr__(self, "stable_assets", frozenset(a.upper() for a in self.stable_assets))
        if isinstance(self.risk_bands, Mapping):
            object.__setattr__(self, "risk_bands", RiskBands(**self.risk_bands))
        if not isinstance(self.automation_lead_time, timedelta):
            object.__setattr__(
                self, "automation_lead_time", timedelta(seconds=float(self.automation_lead_time))
            )

        if not (ZERO < self.max_ltv_percent <= HUNDRED):
            raise ValueError(f"max_ltv_percent must be in (0, 100], got {self.max_ltv_percent}")
        if not (ZERO < self.default_target_ltv_percent <= self.max_ltv_percent):
            raise ValueError(
                f"default_target_ltv_percent must be in (0, {self.max_ltv_percent}], "
                f"got {self.default_target_ltv_percent}"
            )
        if not (ZERO < self.liquidation_threshold_percent <= HUNDRED):
            raise ValueError(
                f"liquidation_threshold_percent must be in (0, 100], "
                f"got {self.liquidation_threshold_percent}"
            )
        if self.automation_lead_time < timedelta(0):
            raise ValueError("automation_lead_time cannot be negative")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("collaborator_timeout_seconds must be positive")
        for asset, rate in self.interest_rates.items():
            if rate < ZERO:
                raise ValueError(f"Interest rate for {asset} cannot be negative")
        if self.default_stable_rate < ZERO or self.default_volatile_rate < ZERO:
            raise ValueError("Default interest rates cannot be negative")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> LendingConfig:
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**values)


DEFAULT_CONFIG = LendingConfig()
