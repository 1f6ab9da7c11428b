"""
loan_ledger - Loan accounting and lifecycle engine

Card pre-authorizations serve as collateral for crypto loans. This package
keeps the loan records, prices them, and drives them from ACTIVE to a
terminal state.

Usage:
    from loan_ledger import LoanLedger, LifecycleManager, OpenLoanRequest, CreditLine

    ledger = LoanLedger("main")
    ledger.register_credit_line(CreditLine("0xabc", 2000))
    manager = LifecycleManager(ledger, hold_provider)

    loan = await manager.open_loan(OpenLoanRequest("0xabc", 1000, "USDC"))
    ledger.credit_summary("0xabc").available_credit      # Decimal('750')

    await manager.charge_loan(loan.id, reason="Borrower defaulted")
"""

# Core types
from .core import (
    LoanRecord,
    LoanStatus,
    SettlementKind,
    AutomationStatus,
    PaymentSettlement,
    ContractSettlement,
    CreditLine,
    CreditSummary,
    LoanChange,
    TERMINAL_STATUSES,
    ALLOWED_TRANSITIONS,
    can_transition,
    quantize_money,
    LendingError,
    ValidationError,
    NotFound,
    DuplicateId,
    InvalidTransition,
    InsufficientCredit,
    CollaboratorError,
    CollateralCollaboratorError,
    ContractCollaboratorError,
    OracleCollaboratorError,
    InconsistentEvent,
    UnknownEventType,
)

# Configuration
from .config import LendingConfig, RiskBands, DEFAULT_CONFIG

# Rate & risk calculator
from .rates import (
    PositionSide,
    RiskLevel,
    RiskAssessment,
    is_stable_asset,
    interest_rate_for,
    required_collateral,
    max_borrow,
    effective_ltv,
    collateralization_ratio,
    health_factor,
    liquidation_price,
    liquidation_buffer_percent,
    risk_level,
    accrued_interest_continuous,
    accrued_interest_simple,
    daily_interest,
    amount_due,
)

# Ledger
from .ledger import LoanLedger

# Collaborator contracts
from .collaborators import (
    CollateralHoldProvider,
    SettlementProvider,
    PriceOracle,
    CollaboratorFailure,
    CaptureResult,
    CancelResult,
    BorrowParams,
    BorrowResult,
    RepayResult,
    PositionState,
    PriceQuote,
)

# Pricing
from .pricing_source import StaticPriceOracle, FallbackPriceOracle, normalize_pair

# Lifecycle
from .lifecycle import (
    LifecycleManager,
    OpenLoanRequest,
    LoanQuote,
    SettlementResult,
    ExpiryCheck,
)

# Events and watcher
from .event_handlers import EventType, LoanEvent, DEFAULT_HANDLERS
from .expiry_watcher import ExpiryWatcher, WatcherAction, EventOutcome


__all__ = [
    # Core
    'LoanRecord', 'LoanStatus', 'SettlementKind', 'AutomationStatus',
    'PaymentSettlement', 'ContractSettlement', 'CreditLine', 'CreditSummary',
    'LoanChange', 'TERMINAL_STATUSES', 'ALLOWED_TRANSITIONS', 'can_transition',
    'quantize_money',
    # Errors
    'LendingError', 'ValidationError', 'NotFound', 'DuplicateId',
    'InvalidTransition', 'InsufficientCredit', 'CollaboratorError',
    'CollateralCollaboratorError', 'ContractCollaboratorError',
    'OracleCollaboratorError', 'InconsistentEvent', 'UnknownEventType',
    # Config
    'LendingConfig', 'RiskBands', 'DEFAULT_CONFIG',
    # Rates
    'PositionSide', 'RiskLevel', 'RiskAssessment', 'is_stable_asset',
    'interest_rate_for', 'required_collateral', 'max_borrow', 'effective_ltv',
    'collateralization_ratio', 'health_factor', 'liquidation_price',
    'liquidation_buffer_percent', 'risk_level', 'accrued_interest_continuous',
    'accrued_interest_simple', 'daily_interest', 'amount_due',
    # Ledger
    'LoanLedger',
    # Collaborators
    'CollateralHoldProvider', 'SettlementProvider', 'PriceOracle',
    'CollaboratorFailure', 'CaptureResult', 'CancelResult', 'BorrowParams',
    'BorrowResult', 'RepayResult', 'PositionState', 'PriceQuote',
    # Pricing
    'StaticPriceOracle', 'FallbackPriceOracle', 'normalize_pair',
    # Lifecycle
    'LifecycleManager', 'OpenLoanRequest', 'LoanQuote', 'SettlementResult',
    'ExpiryCheck',
    # Events
    'EventType', 'LoanEvent', 'DEFAULT_HANDLERS',
    'ExpiryWatcher', 'WatcherAction', 'EventOutcome',
]

__version__ = '1.0.0'
