"""
collaborators.py - Contracts for the external systems the engine drives

The engine never talks to a payment processor, a chain or a price feed
directly. It calls these protocols, and implementations live outside the
package (tests use the in-memory fakes in tests/fakes.py).

Protocols:
- CollateralHoldProvider: card pre-authorization (place, capture, cancel)
- SettlementProvider: on-chain borrow / repay / position state
- PriceOracle: current price for an asset pair

All methods are coroutines. Implementations signal failure by raising
CollaboratorFailure (or any exception); the LifecycleManager wraps it into
the matching CollaboratorError kind and applies the call timeout.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from .core import to_decimal


class CollaboratorFailure(Exception):
    """
    Raised by collaborator implementations.

    Attributes:
        code: Provider error code (e.g. "card_declined")
        retryable: Whether the same call may succeed later
    """

    def __init__(self, message: str, code: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class CaptureResult:
    captured_amount: Decimal
    settlement_ref: str

    def __post_init__(self):
        object.__setattr__(self, "captured_amount", to_decimal(self.captured_amount))


@dataclass(frozen=True, slots=True)
class CancelResult:
    settlement_ref: str


@dataclass(frozen=True, slots=True)
class BorrowResult:
    position_ref: str
    principal_amount: Decimal
    tx_ref: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "principal_amount", to_decimal(self.principal_amount))


@dataclass(frozen=True, slots=True)
class RepayResult:
    tx_ref: str


@dataclass(frozen=True, slots=True)
class PositionState:
    principal: Decimal
    accrued_interest: Decimal
    is_expired: bool
    is_active: bool

    def __post_init__(self):
        object.__setattr__(self, "principal", to_decimal(self.principal))
        object.__setattr__(self, "accrued_interest", to_decimal(self.accrued_interest))


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """A price as returned by an oracle; authoritative for the call it was fetched for."""
    price: Decimal
    timestamp: datetime
    source: str

    def __post_init__(self):
        object.__setattr__(self, "price", to_decimal(self.price))
        if self.price <= 0:
            raise ValueError(f"PriceQuote price must be positive, got {self.price}")


@dataclass(frozen=True, slots=True)
class BorrowParams:
    """What the settlement contract needs to open an on-chain position."""
    owner_key: str
    asset: str
    principal: Decimal
    collateral_amount: Decimal
    hold_id: str
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class CollateralHoldProvider(Protocol):
    """Payment processor holding the card pre-authorization."""

    async def place_hold(self, owner_key: str, amount: Decimal, payment_method_ref: Optional[str]) -> str:
        """Place a hold for `amount` and return its id."""
        ...

    async def capture(self, hold_id: str) -> CaptureResult:
        """Convert the hold into a charge."""
        ...

    async def cancel(self, hold_id: str) -> CancelResult:
        """Void the hold, releasing the funds on the card."""
        ...


@runtime_checkable
class SettlementProvider(Protocol):
    """On-chain lending contract."""

    async def borrow(self, params: BorrowParams) -> BorrowResult:
        ...

    async def repay(self, position_ref: str, amount: Decimal) -> RepayResult:
        ...

    async def get_position_state(self, position_ref: str) -> PositionState:
        ...


@runtime_checkable
class PriceOracle(Protocol):

    async def current_price(self, asset_pair: str) -> PriceQuote:
        """Price for a pair such as "ETH/USD"."""
        ...
