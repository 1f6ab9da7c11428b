"""
rates.py - Rate & Risk Calculator

Pure, stateless functions over Decimal. No ledger access, no I/O, no clock:
every input is an explicit parameter, so each formula is trivially testable
and stress-testable.

Key Formulas:
    required_collateral     = ceil(principal_value / (target_ltv / 100))
    effective_ltv           = principal_value / collateral_value * 100
    collateralization_ratio = collateral_value / principal_value * 100
    accrued (continuous)    = principal * (exp(rate/100 * t / seconds_per_year) - 1)

Liquidation price has two mirrored cases:

    BORROW_VOLATILE (volatile asset borrowed against stable collateral):
        Risk rises with the asset price. Liquidation when
        asset_amount * price / collateral_value = threshold / 100
        =>  price = (threshold/100 * collateral_value) / asset_amount

    BORROW_STABLE (stable asset borrowed against volatile collateral):
        Risk rises as the collateral price falls. Liquidation when
        collateral_asset_amount * price * threshold/100 = debt_value
        =>  price = debt_value / (collateral_asset_amount * threshold/100)

Functions guarding against non-positive inputs return Decimal("0"), which
callers must read as "not computable", never as a real price or ratio.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from enum import Enum
from typing import Optional

from .config import DEFAULT_CONFIG, LendingConfig, RiskBands
from .core import (
    DAYS_PER_YEAR, HUNDRED, SECONDS_PER_YEAR, ZERO,
    LoanRecord, to_decimal,
)


class PositionSide(str, Enum):
    """Which side of a position carries the price risk."""
    BORROW_VOLATILE = "borrow_volatile"
    BORROW_STABLE = "borrow_stable"


class RiskLevel(str, Enum):
    SAFE = "Safe"
    MODERATE = "Moderate"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    RiskLevel.SAFE: 0,
    RiskLevel.MODERATE: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

_RISK_DESCRIPTIONS = {
    RiskLevel.SAFE: "Low risk, price can move significantly before liquidation",
    RiskLevel.MODERATE: "Moderate risk, monitor price movements",
    RiskLevel.HIGH: "High risk, adverse price moves are dangerous",
    RiskLevel.CRITICAL: "Very high risk, liquidation if price moves further",
}


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    level: RiskLevel
    description: str


# ============================================================================
# RATES
# ============================================================================

def is_stable_asset(asset: str, config: LendingConfig = DEFAULT_CONFIG) -> bool:
    return asset.upper() in config.stable_assets


def interest_rate_for(asset: str, config: LendingConfig = DEFAULT_CONFIG) -> Decimal:
    """
    Annual interest rate (percent) for borrowing `asset`.

    Total function: symbols missing from the rate table get the default of
    their asset class (stable if listed in config.stable_assets, volatile
    otherwise).
    """
    symbol = (asset or "").upper()
    rate = config.interest_rates.get(symbol)
    if rate is not None:
        return rate
    if symbol in config.stable_assets:
        return config.default_stable_rate
    return config.default_volatile_rate


# ============================================================================
# COLLATERAL AND RATIOS
# ============================================================================

def required_collateral(principal_value: Decimal, target_ltv_percent: Decimal) -> Decimal:
    """
    Collateral needed to borrow principal_value at target_ltv_percent, rounded
    up to a whole currency unit.

    PRECONDITION: target_ltv_percent > 0. Callers validate this first; a zero
    or negative LTV is a programming error and raises.
    """
    principal_value = to_decimal(principal_value)
    target_ltv_percent = to_decimal(target_ltv_percent)
    if target_ltv_percent <= ZERO:
        raise ValueError(f"target_ltv_percent must be positive, got {target_ltv_percent}")
    raw = principal_value / (target_ltv_percent / HUNDRED)
    return raw.to_integral_value(rounding=ROUND_CEILING)


def max_borrow(collateral_value: Decimal, target_ltv_percent: Decimal) -> Decimal:
    """Largest whole principal value that collateral_value supports at target LTV."""
    collateral_value = to_decimal(collateral_value)
    target_ltv_percent = to_decimal(target_ltv_percent)
    if collateral_value <= ZERO or target_ltv_percent <= ZERO:
        return ZERO
    return (collateral_value * target_ltv_percent / HUNDRED).to_integral_value(rounding=ROUND_FLOOR)


def effective_ltv(principal_value: Decimal, collateral_value: Decimal) -> Decimal:
    """principal_value / collateral_value * 100, or 0 for an empty position."""
    principal_value = to_decimal(principal_value)
    collateral_value = to_decimal(collateral_value)
    if principal_value <= ZERO or collateral_value <= ZERO:
        return ZERO
    return principal_value / collateral_value * HUNDRED


def collateralization_ratio(collateral_value: Decimal, principal_value: Decimal) -> Decimal:
    """collateral_value / principal_value * 100, or 0 for an empty position."""
    collateral_value = to_decimal(collateral_value)
    principal_value = to_decimal(principal_value)
    if principal_value <= ZERO or collateral_value <= ZERO:
        return ZERO
    return collateral_value / principal_value * HUNDRED


def health_factor(principal_value: Decimal, collateral_value: Decimal) -> Decimal:
    """Collateral over borrow; below 1 means under-collateralized. 0 if not computable."""
    principal_value = to_decimal(principal_value)
    collateral_value = to_decimal(collateral_value)
    if principal_value <= ZERO or collateral_value <= ZERO:
        return ZERO
    return collateral_value / principal_value


# ============================================================================
# LIQUIDATION
# ============================================================================

def liquidation_price(
    borrowed_value: Decimal,
    collateral_value: Decimal,
    reference_price: Decimal,
    liquidation_threshold_percent: Decimal,
    side: PositionSide = PositionSide.BORROW_VOLATILE,
) -> Decimal:
    """
    Price of the volatile side at which debt/collateral hits the threshold.

    Args:
        borrowed_value: USD value of the debt at creation
        collateral_value: USD value of the collateral at creation
        reference_price: Price of the volatile asset used to value the position
        liquidation_threshold_percent: e.g. 85
        side: BORROW_VOLATILE (price rising is the risk) or
              BORROW_STABLE (price falling is the risk)

    Returns:
        Liquidation price, or 0 if any input is non-positive.

    Example:
        >>> liquidation_price(1000, 1250, 3500, 85)
        Decimal('3718.75')
    """
    borrowed_value = to_decimal(borrowed_value)
    collateral_value = to_decimal(collateral_value)
    reference_price = to_decimal(reference_price)
    threshold = to_decimal(liquidation_threshold_percent) / HUNDRED
    if min(borrowed_value, collateral_value, reference_price, threshold) <= ZERO:
        return ZERO

    if PositionSide(side) is PositionSide.BORROW_VOLATILE:
        # asset_amount_borrowed = borrowed_value / reference_price
        return threshold * collateral_value * reference_price / borrowed_value

    # collateral_asset_amount = collateral_value / reference_price
    return borrowed_value * reference_price / (collateral_value * threshold)


def liquidation_buffer_percent(
    current_price: Decimal,
    liquidation_price_value: Decimal,
    side: PositionSide = PositionSide.BORROW_VOLATILE,
) -> Decimal:
    """
    Distance from current price to liquidation, as percent of current price.

    Returns 0 when either price is non-positive or the position is already
    past its liquidation price.
    """
    current_price = to_decimal(current_price)
    liq = to_decimal(liquidation_price_value)
    if current_price <= ZERO or liq <= ZERO:
        return ZERO
    if PositionSide(side) is PositionSide.BORROW_VOLATILE:
        distance = liq - current_price
    else:
        distance = current_price - liq
    if distance <= ZERO:
        return ZERO
    return distance / current_price * HUNDRED


def risk_level(current_ltv_percent: Decimal, bands: Optional[RiskBands] = None) -> RiskAssessment:
    """
    Band an LTV into Safe / Moderate / High / Critical.

    Band upper bounds are inclusive, so with the default bands 40 is Safe and
    40.5 is Moderate. Monotonic: a higher LTV never maps to a lower band.
    """
    bands = bands or DEFAULT_CONFIG.risk_bands
    ltv = to_decimal(current_ltv_percent)
    if ltv <= bands.safe_max:
        level = RiskLevel.SAFE
    elif ltv <= bands.moderate_max:
        level = RiskLevel.MODERATE
    elif ltv <= bands.high_max:
        level = RiskLevel.HIGH
    else:
        level = RiskLevel.CRITICAL
    return RiskAssessment(level=level, description=_RISK_DESCRIPTIONS[level])


# ============================================================================
# INTEREST
# ============================================================================

def accrued_interest_continuous(
    principal: Decimal,
    annual_rate_percent: Decimal,
    elapsed_seconds: Decimal,
) -> Decimal:
    """
    Continuously compounded interest: principal * (e^(r*t) - 1).

    t is elapsed_seconds / seconds-per-year (365 days). Negative elapsed time
    is clamped to zero, so for principal, rate >= 0 the result is
    non-decreasing in elapsed_seconds.

    Example:
        >>> round(accrued_interest_continuous(1000, Decimal("5.2"), 365 * 86400), 2)
        Decimal('53.38')
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)
    elapsed = to_decimal(elapsed_seconds)
    if principal <= ZERO or rate <= ZERO or elapsed <= ZERO:
        return ZERO
    exponent = rate / HUNDRED * elapsed / SECONDS_PER_YEAR
    return principal * (exponent.exp() - 1)


def accrued_interest_simple(principal: Decimal, annual_rate_percent: Decimal, days: Decimal) -> Decimal:
    """Simple interest P * r * d / 365, as shown on the loan dashboard."""
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)
    days = to_decimal(days)
    if principal <= ZERO or rate <= ZERO or days <= ZERO:
        return ZERO
    return principal * (rate / HUNDRED) * days / DAYS_PER_YEAR


def daily_interest(principal: Decimal, annual_rate_percent: Decimal) -> Decimal:
    return accrued_interest_simple(principal, annual_rate_percent, Decimal("1"))


def elapsed_seconds(start: datetime, end: datetime) -> Decimal:
    """Seconds from start to end as Decimal (negative if end precedes start)."""
    return to_decimal((end - start).total_seconds())


def amount_due(record: LoanRecord, now: datetime) -> Decimal:
    """Principal plus continuous interest accrued since the loan was created."""
    interest = accrued_interest_continuous(
        record.principal,
        record.interest_rate_annual_percent,
        elapsed_seconds(record.created_at, now),
    )
    return record.principal + interest
