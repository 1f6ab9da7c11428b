"""
Core types and pure helpers for the loan ledger.

This module provides the foundational data structures for the lending engine:
1. Decimal context configuration shared by every calculation
2. Enums: LoanStatus, SettlementKind, AutomationStatus
3. Exceptions: LendingError and the domain-specific error kinds
4. Immutable records: LoanRecord (with its settlement variants), CreditLine,
   CreditSummary, LoanChange
5. The status transition table

Records are frozen. A change to a loan is a new LoanRecord built with
dataclasses.replace(), never an in-place field write.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All money and rate arithmetic runs on Decimal. The global context is set
# once at import time; callers needing a different context should use
# decimal.localcontext().
#
_LOAN_DECIMAL_CONTEXT = getcontext()
_LOAN_DECIMAL_CONTEXT.prec = 50
_LOAN_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

SECONDS_PER_DAY = Decimal("86400")
DAYS_PER_YEAR = Decimal("365")
SECONDS_PER_YEAR = SECONDS_PER_DAY * DAYS_PER_YEAR

# Display precision for money (cents).
CENT = Decimal("0.01")

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Fields fixed at creation. LoanLedger.update() refuses to change them.
IMMUTABLE_FIELDS: FrozenSet[str] = frozenset({"id", "owner_key", "collateral_reference_id"})

# Fields frozen once a loan reaches a terminal status.
SETTLEMENT_FIELDS: FrozenSet[str] = frozenset(
    {"settled_at", "settlement_reference_id", "captured_amount", "settlement"}
)


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(str, Enum):
    """
    Lifecycle status of a loan.

    ACTIVE is the only non-terminal status. Every other status is final.
    """
    ACTIVE = "active"
    CHARGED = "charged"       # Hold captured
    RELEASED = "released"     # Hold cancelled, settled without capture
    REPAID = "repaid"         # Principal returned on-chain
    DEFAULTED = "defaulted"   # Expired without resolution

    @property
    def is_terminal(self) -> bool:
        return self is not LoanStatus.ACTIVE


class SettlementKind(str, Enum):
    """Discriminant for the per-integration extension of a LoanRecord."""
    PAYMENT = "payment"
    CONTRACT = "contract"


class AutomationStatus(str, Enum):
    """Side-channel status of expiry automation for a loan."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    TRIGGERED = "triggered"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[LoanStatus] = frozenset(
    s for s in LoanStatus if s.is_terminal
)

# status -> statuses reachable in one step
ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({
        LoanStatus.CHARGED,
        LoanStatus.RELEASED,
        LoanStatus.REPAID,
        LoanStatus.DEFAULTED,
    }),
    LoanStatus.CHARGED: frozenset(),
    LoanStatus.RELEASED: frozenset(),
    LoanStatus.REPAID: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Return True if a loan in `current` may move to `target`."""
    return target in ALLOWED_TRANSITIONS[LoanStatus(current)]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """
    Base exception for all lending errors.

    Every error carries a stable `kind` string, a human-readable message and,
    where applicable, the loan id it concerns. to_dict() is the shape handed
    to UI-facing callers; no stack detail crosses that boundary.
    """
    kind = "lending_error"

    def __init__(self, message: str, loan_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.loan_id = loan_id

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.loan_id is not None:
            out["loan_id"] = self.loan_id
        return out


class ValidationError(LendingError):
    """Raised for malformed or out-of-range requests. Nothing is applied."""
    kind = "validation_error"


class NotFound(LendingError):
    """Raised when a referenced loan id does not exist."""
    kind = "not_found"


class DuplicateId(LendingError):
    """Raised when a loan id is already present in the ledger."""
    kind = "duplicate_id"


class InvalidTransition(LendingError):
    """Raised when an operation is illegal for the loan's current status."""
    kind = "invalid_transition"

    def __init__(self, message: str, loan_id: Optional[str] = None,
                 current_status: Optional[LoanStatus] = None):
        super().__init__(message, loan_id)
        self.current_status = current_status

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.current_status is not None:
            out["current_status"] = LoanStatus(self.current_status).value
        return out


class InsufficientCredit(LendingError):
    """Raised when required collateral exceeds the owner's available credit."""
    kind = "insufficient_credit"

    def __init__(self, message: str, required: Decimal, available: Decimal,
                 loan_id: Optional[str] = None):
        super().__init__(message, loan_id)
        self.required = required
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["required"] = str(self.required)
        out["available"] = str(self.available)
        return out


class CollaboratorError(LendingError):
    """
    Base for failures reported by an external system.

    `code` is the collaborator's own error code ("timeout" for our timeouts)
    and `retryable` tells the caller whether a retry can succeed.
    """
    kind = "collaborator_error"

    def __init__(self, message: str, loan_id: Optional[str] = None,
                 code: Optional[str] = None, retryable: bool = False):
        super().__init__(message, loan_id)
        self.code = code
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["code"] = self.code
        out["retryable"] = self.retryable
        return out


class CollateralCollaboratorError(CollaboratorError):
    """Failure of the payment processor (place hold, capture, cancel)."""
    kind = "collateral_collaborator_error"


class ContractCollaboratorError(CollaboratorError):
    """Failure of the on-chain settlement contract (borrow, repay)."""
    kind = "contract_collaborator_error"


class OracleCollaboratorError(CollaboratorError):
    """No price could be obtained from any oracle source."""
    kind = "oracle_collaborator_error"


class InconsistentEvent(LendingError):
    """An inbound automation event attempted an illegal transition."""
    kind = "inconsistent_event"


class UnknownEventType(ValidationError):
    """An inbound event named a type this system does not handle."""
    kind = "unknown_event_type"


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal via str() so floats keep their printed value."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Expected a number, got {value!r}")
    return Decimal(str(value))


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    """Round half-up to cents. For display only; records keep full precision."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ============================================================================
# SETTLEMENT VARIANTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PaymentSettlement:
    """
    Extension fields for loans settled through the card-payment processor.

    Attributes:
        customer_ref: Processor customer id
        payment_method_ref: Processor payment method id
    """
    customer_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None

    kind = SettlementKind.PAYMENT


@dataclass(frozen=True, slots=True)
class ContractSettlement:
    """
    Extension fields for loans whose principal lives in an on-chain contract.

    Attributes:
        position_ref: On-chain position / loan id
        borrow_tx_ref: Transaction that opened the position
        repaid_amount: Principal + interest paid back (set on repay)
    """
    position_ref: str
    borrow_tx_ref: Optional[str] = None
    repaid_amount: Optional[Decimal] = None

    kind = SettlementKind.CONTRACT

    def __post_init__(self):
        if not self.position_ref or not self.position_ref.strip():
            raise ValueError("ContractSettlement position_ref cannot be empty")
        object.__setattr__(self, "repaid_amount", _optional_decimal(self.repaid_amount))


Settlement = Union[PaymentSettlement, ContractSettlement]


# ============================================================================
# LOAN RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanRecord:
    """
    One borrowing position.

    Attributes:
        id: Unique loan id, immutable
        owner_key: Wallet/account owning the loan
        collateral_reference_id: External hold id (payment pre-authorization), immutable
        principal: Amount borrowed, in units of principal_asset
        principal_asset: Symbol of the borrowed asset
        principal_value: USD value of the principal at creation
        collateral_amount: USD value of the held collateral
        interest_rate_annual_percent: Fixed nominal annual rate, percent
        ltv_ratio_percent: principal_value / collateral_amount * 100 at creation
        created_at: Creation time
        original_credit_limit_at_creation: Owner's credit line when opened
        settlement: Per-integration extension (PaymentSettlement or ContractSettlement)
        status: Current LoanStatus
        collateral_created_at / collateral_expires_at: Hold validity window
        settled_at / settlement_reference_id: Set iff status is terminal
        captured_amount: Amount actually captured (set on charge)
        automation_status / next_automation_check: Expiry automation side channel

    __post_init__ enforces the record invariants, so every replace() that
    produces a new record is validated as well.
    """
    id: str
    owner_key: str
    collateral_reference_id: str
    principal: Decimal
    principal_asset: str
    principal_value: Decimal
    collateral_amount: Decimal
    interest_rate_annual_percent: Decimal
    ltv_ratio_percent: Decimal
    created_at: datetime
    original_credit_limit_at_creation: Decimal
    settlement: Settlement = field(default_factory=PaymentSettlement)
    status: LoanStatus = LoanStatus.ACTIVE
    collateral_created_at: Optional[datetime] = None
    collateral_expires_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    settlement_reference_id: Optional[str] = None
    captured_amount: Optional[Decimal] = None
    automation_status: AutomationStatus = AutomationStatus.PENDING
    next_automation_check: Optional[datetime] = None

    def __post_init__(self):
        for name in ("id", "owner_key", "collateral_reference_id", "principal_asset"):
            value = getattr(self, name)
            if not value or not str(value).strip():
                raise ValueError(f"LoanRecord {name} cannot be empty")

        for name in ("principal", "principal_value", "collateral_amount",
                     "interest_rate_annual_percent", "ltv_ratio_percent",
                     "original_credit_limit_at_creation"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        object.__setattr__(self, "captured_amount", _optional_decimal(self.captured_amount))
        object.__setattr__(self, "status", LoanStatus(self.status))
        object.__setattr__(self, "automation_status", AutomationStatus(self.automation_status))

        if self.principal <= ZERO:
            raise ValueError(f"LoanRecord principal must be positive, got {self.principal}")
        if self.interest_rate_annual_percent < ZERO:
            raise ValueError("LoanRecord interest rate cannot be negative")
        if self.collateral_amount < self.principal_value:
            raise ValueError(
                f"LoanRecord under-collateralized: collateral {self.collateral_amount} "
                f"< principal value {self.principal_value}"
            )
        if not isinstance(self.settlement, (PaymentSettlement, ContractSettlement)):
            raise ValueError(f"Unknown settlement variant {type(self.settlement).__name__}")

        settled = self.settled_at is not None and self.settlement_reference_id is not None
        unsettled = self.settled_at is None and self.settlement_reference_id is None
        if self.status.is_terminal and not settled:
            raise ValueError(
                f"LoanRecord {self.id} is {self.status.value} but settled_at/"
                f"settlement_reference_id are missing"
            )
        if not self.status.is_terminal and not unsettled:
            raise ValueError(f"LoanRecord {self.id} is active but carries settlement fields")

        if (self.collateral_created_at is not None and self.collateral_expires_at is not None
                and self.collateral_expires_at < self.collateral_created_at):
            raise ValueError("collateral_expires_at precedes collateral_created_at")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def settlement_kind(self) -> SettlementKind:
        return self.settlement.kind

    def to_dict(self) -> Dict[str, Any]:
        """Flat dict view (enum values, nested settlement) for audit and serialization."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, (PaymentSettlement, ContractSettlement)):
                value = {"kind": value.kind.value,
                         **{sf.name: getattr(value, sf.name) for sf in fields(value)}}
            out[f.name] = value
        return out


# ============================================================================
# CREDIT LINE AND SUMMARY
# ============================================================================

@dataclass(frozen=True, slots=True)
class CreditLine:
    """
    Pre-authorization data registered for an owner before any loan exists.

    credit_limit is the total the owner's card can have on hold at once.
    """
    owner_key: str
    credit_limit: Decimal
    payment_method_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    card_brand: str = "unknown"
    card_last_four: str = "****"
    registered_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.owner_key or not self.owner_key.strip():
            raise ValueError("CreditLine owner_key cannot be empty")
        object.__setattr__(self, "credit_limit", to_decimal(self.credit_limit))
        if self.credit_limit < ZERO:
            raise ValueError(f"CreditLine credit_limit cannot be negative, got {self.credit_limit}")


@dataclass(frozen=True, slots=True)
class CreditSummary:
    """Aggregate credit position of one owner, derived on demand."""
    total_credit_limit: Decimal
    total_borrowed: Decimal
    total_charged: Decimal
    total_released: Decimal
    available_credit: Decimal
    utilization_percentage: Decimal
    active_loans: int

    @classmethod
    def empty(cls, credit_limit: Decimal = ZERO) -> CreditSummary:
        return cls(
            total_credit_limit=credit_limit,
            total_borrowed=ZERO,
            total_charged=ZERO,
            total_released=ZERO,
            available_credit=credit_limit,
            utilization_percentage=ZERO,
            active_loans=0,
        )


# ============================================================================
# CHANGE RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanChange:
    """
    Audit entry for one ledger mutation.

    Stores complete before/after records. old is None for a creation.

    Attributes:
        loan_id: Loan that changed
        old: Record before the change (None on create)
        new: Record after the change
        timestamp: When the change was committed
        sequence_number: Monotonic within the ledger
    """
    loan_id: str
    old: Optional[LoanRecord]
    new: LoanRecord
    timestamp: datetime
    sequence_number: int

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old_value, new_value)} for fields that differ."""
        old = self.old.to_dict() if self.old is not None else {}
        new = self.new.to_dict()
        changes = {}
        for key in set(old) | set(new):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes

    def __repr__(self) -> str:
        w = 80
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w - 3] + "..."
            return text + " " * (w - len(text))

        action = "created" if self.old is None else "updated"
        lines = [
            f"┌{bar}┐",
            f"│{pad(f' Loan {self.loan_id} {action} (#{self.sequence_number})')}│",
            f"│{pad('   timestamp : ' + self.timestamp.isoformat())}│",
            f"│{pad('   status    : ' + self.new.status.value)}│",
        ]
        if self.old is not None:
            lines.append(f"├{bar}┤")
            for name, (before, after) in sorted(self.changed_fields().items()):
                lines.append(f"│{pad(f'   {name}: {before!r} → {after!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


def coerce_updates(updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate field names for a LoanRecord replace(); raise ValueError on unknown names."""
    known = {f.name for f in fields(LoanRecord)}
    unknown = set(updates) - known
    if unknown:
        raise ValueError(f"Unknown LoanRecord fields: {sorted(unknown)}")
    return dict(updates)
