"""
lifecycle.py - Lifecycle Manager

Orchestrates every state change of a loan:

            [open_loan]
                 │
                 ▼
              ACTIVE ──charge_loan──▶ CHARGED
                 ├────release_loan──▶ RELEASED
                 ├──────repay_loan──▶ REPAID     (contract loans)
                 └───mark_defaulted─▶ DEFAULTED  (hold expired)

Rules:
1. State-changing operations on one loan are serialized by a per-loan
   asyncio.Lock; open_loan is serialized per owner so two concurrent opens
   cannot both pass the credit check.
2. The ledger is written only after the external call has resolved. A
   failed or timed-out call leaves the loan exactly as it was.
3. Every external call is bounded by config.collaborator_timeout_seconds.
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Type
import asyncio
import logging
import secrets

from .collaborators import (
    BorrowParams, CollateralHoldProvider, CollaboratorFailure,
    PositionState, PriceOracle, SettlementProvider,
)
from .config import DEFAULT_CONFIG, LendingConfig
from .core import (
    LoanRecord, LoanStatus, SettlementKind, AutomationStatus,
    PaymentSettlement, ContractSettlement,
    ZERO,
    CollaboratorError, CollateralCollaboratorError, ContractCollaboratorError,
    OracleCollaboratorError, DuplicateId, InsufficientCredit, InvalidTransition,
    NotFound, ValidationError,
    to_decimal, utc_now,
)
from .ledger import LoanLedger
from .pricing_source import normalize_pair
from .rates import (
    PositionSide, RiskAssessment,
    amount_due, effective_ltv, interest_rate_for, is_stable_asset,
    liquidation_price, required_collateral, risk_level,
)

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST AND RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class OpenLoanRequest:
    """
    A borrower's request to open a loan.

    Attributes:
        owner_key: Wallet/account opening the loan
        principal: Amount of principal_asset to borrow
        principal_asset: Asset symbol (e.g. "USDC", "ETH")
        target_ltv_percent: LTV used to size the hold (config default if None)
        asset_price: USD price of principal_asset; stable assets default to 1,
            others are priced by the oracle when None
        payment_method_ref / customer_ref: Card details for placing the hold
        collateral_reference_id: Id of an already-placed hold; a new hold is
            placed when None
        collateral_expires_at: Hold expiry; or give hold_duration instead
        credit_limit: Owner's current credit limit; the ledger's view is used when None
        settlement_kind: PAYMENT, or CONTRACT to borrow through the on-chain contract
        loan_id: Explicit loan id (generated when None)
    """
    owner_key: str
    principal: Any
    principal_asset: str
    target_ltv_percent: Optional[Any] = None
    asset_price: Optional[Any] = None
    payment_method_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    collateral_reference_id: Optional[str] = None
    collateral_expires_at: Optional[datetime] = None
    hold_duration: Optional[timedelta] = None
    credit_limit: Optional[Any] = None
    settlement_kind: SettlementKind = SettlementKind.PAYMENT
    loan_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class LoanQuote:
    """Numbers a borrower sees before accepting a loan."""
    principal: Decimal
    principal_asset: str
    asset_price: Decimal
    principal_value: Decimal
    interest_rate_annual_percent: Decimal
    target_ltv_percent: Decimal
    required_collateral: Decimal
    ltv_ratio_percent: Decimal
    risk: RiskAssessment
    liquidation_price: Decimal
    credit_limit: Decimal
    available_credit: Decimal

    @property
    def affordable(self) -> bool:
        return self.required_collateral <= self.available_credit


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """
    Outcome of a settling operation.

    warning is set when the loan settled but a best-effort follow-up (hold
    release after repay) failed.
    """
    loan: LoanRecord
    action: str
    amount: Decimal
    settlement_reference_id: str
    reason: Optional[str] = None
    warning: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ExpiryCheck:
    """expired is False and seconds_remaining None for a loan without a hold expiry."""
    expired: bool
    seconds_remaining: Optional[int]


# ============================================================================
# LIFECYCLE MANAGER
# ============================================================================

class LifecycleManager:
    """
    Owns loan state transitions and the calls to external collaborators.

    Example:
        manager = LifecycleManager(ledger, hold_provider)
        loan = await manager.open_loan(OpenLoanRequest("0xabc", 1000, "USDC", credit_limit=2000))
        await manager.release_loan(loan.id, reason="Loan repaid off-platform")
    """

    def __init__(
        self,
        ledger: LoanLedger,
        hold_provider: CollateralHoldProvider,
        settlement_provider: Optional[SettlementProvider] = None,
        price_oracle: Optional[PriceOracle] = None,
        config: LendingConfig = DEFAULT_CONFIG,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.hold_provider = hold_provider
        self.settlement_provider = settlement_provider
        self.price_oracle = price_oracle
        self.config = config
        self._clock = clock or utc_now
        self._loan_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._owner_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def now(self) -> datetime:
        return self._clock()

    @asynccontextmanager
    async def locked(self, loan_id: str) -> AsyncIterator[None]:
        """
        Hold the per-loan lock. Not reentrant: do not call manager operations inside.

        Raises:
            NotFound: Unknown loan id; no lock is created for it
        """
        if loan_id not in self.ledger:
            raise NotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        async with self._loan_locks[loan_id]:
            yield

    # ========================================================================
    # QUOTE AND OPEN
    # ========================================================================

    async def quote(self, request: OpenLoanRequest) -> LoanQuote:
        """Price a request without placing a hold or writing the ledger."""
        self._validate_request(request)
        return await self._build_quote(request)

    async def open_loan(self, request: OpenLoanRequest) -> LoanRecord:
        """
        Validate, check credit, secure the hold and persist a new ACTIVE loan.

        Raises:
            ValidationError: Bad request (non-positive principal, missing owner,
                LTV outside (0, max_ltv], hold expiry not in the future or not
                timezone-aware, contract loan without a settlement provider)
            InsufficientCredit: Required collateral exceeds available credit
            CollateralCollaboratorError: Hold could not be placed
            DuplicateId: loan_id already taken
            ContractCollaboratorError: On-chain borrow failed
            OracleCollaboratorError: No price for a volatile asset

        A hold placed here is voided again if anything after it fails.
        """
        self._validate_request(request)

        async with self._owner_locks[request.owner_key]:
            quote = await self._build_quote(request)
            if not quote.affordable:
                raise InsufficientCredit(
                    f"Required collateral {quote.required_collateral} exceeds available "
                    f"credit {quote.available_credit}",
                    required=quote.required_collateral,
                    available=quote.available_credit,
                )

            loan_id = request.loan_id or self._new_loan_id()
            if loan_id in self.ledger:
                raise DuplicateId(f"Loan {loan_id} already exists", loan_id=loan_id)

            now = self._clock()
            placed_here = request.collateral_reference_id is None
            if placed_here:
                hold_id = await self._call(
                    self.hold_provider.place_hold(
                        request.owner_key, quote.required_collateral, request.payment_method_ref
                    ),
                    CollateralCollaboratorError, "place_hold", loan_id,
                )
            else:
                hold_id = request.collateral_reference_id

            try:
                record = await self._record_new_loan(request, quote, loan_id, hold_id, now)
            except Exception:
                if placed_here:
                    await self._void_hold_quietly(hold_id, loan_id)
                raise

        logger.info(
            "Opened loan %s for %s: %s %s against %s collateral (LTV %.2f%%)",
            record.id, record.owner_key, record.principal, record.principal_asset,
            record.collateral_amount, record.ltv_ratio_percent,
        )
        return record

    async def _record_new_loan(self, request, quote, loan_id, hold_id, now) -> LoanRecord:
        """Borrow on-chain if needed and write the record. Callers void a fresh hold on failure."""
        expires_at = request.collateral_expires_at
        if expires_at is None and request.hold_duration is not None:
            expires_at = now + request.hold_duration

        if SettlementKind(request.settlement_kind) is SettlementKind.CONTRACT:
            settlement = await self._borrow_on_chain(request, quote, hold_id, expires_at, loan_id)
        else:
            settlement = PaymentSettlement(
                customer_ref=request.customer_ref,
                payment_method_ref=request.payment_method_ref,
            )

        try:
            record = LoanRecord(
                id=loan_id,
                owner_key=request.owner_key,
                collateral_reference_id=hold_id,
                principal=quote.principal,
                principal_asset=quote.principal_asset,
                principal_value=quote.principal_value,
                collateral_amount=quote.required_collateral,
                interest_rate_annual_percent=quote.interest_rate_annual_percent,
                ltv_ratio_percent=quote.ltv_ratio_percent,
                created_at=now,
                original_credit_limit_at_creation=quote.credit_limit,
                settlement=settlement,
                collateral_created_at=now,
                collateral_expires_at=expires_at,
            )
        except (ValueError, TypeError) as exc:
            raise ValidationError(f"Loan {loan_id} could not be recorded: {exc}", loan_id=loan_id) from exc

        # Another owner may have taken an explicit loan_id while the hold was placed
        self.ledger.create(record)
        return record

    def _validate_request(self, request: OpenLoanRequest) -> None:
        if not isinstance(request.owner_key, str) or not request.owner_key.strip():
            raise ValidationError("owner_key is required")
        if not isinstance(request.principal_asset, str) or not request.principal_asset.strip():
            raise ValidationError("principal_asset is required")
        if request.loan_id is not None and (not isinstance(request.loan_id, str) or not request.loan_id.strip()):
            raise ValidationError("loan_id must be a non-empty string")
        try:
            kind = SettlementKind(request.settlement_kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown settlement_kind {request.settlement_kind!r}") from exc
        principal = self._decimal_field(request.principal, "principal")
        if principal <= ZERO:
            raise ValidationError(f"principal must be positive, got {principal}")

        if request.target_ltv_percent is not None:
            ltv = self._decimal_field(request.target_ltv_percent, "target_ltv_percent")
            if not (ZERO < ltv <= self.config.max_ltv_percent):
                raise ValidationError(
                    f"target_ltv_percent must be in (0, {self.config.max_ltv_percent}], got {ltv}"
                )
        if request.asset_price is not None:
            if self._decimal_field(request.asset_price, "asset_price") <= ZERO:
                raise ValidationError("asset_price must be positive")
        if request.credit_limit is not None:
            if self._decimal_field(request.credit_limit, "credit_limit") < ZERO:
                raise ValidationError("credit_limit cannot be negative")

        if request.collateral_expires_at is not None and request.hold_duration is not None:
            raise ValidationError("Give collateral_expires_at or hold_duration, not both")
        if request.hold_duration is not None:
            if not isinstance(request.hold_duration, timedelta):
                raise ValidationError(f"hold_duration must be a timedelta, got {request.hold_duration!r}")
            if request.hold_duration <= timedelta(0):
                raise ValidationError("hold_duration must be positive")
        if request.collateral_expires_at is not None:
            self._validate_expiry(request.collateral_expires_at)
        if kind is SettlementKind.CONTRACT and self.settlement_provider is None:
            raise ValidationError("Contract loans need a settlement provider")

    def _validate_expiry(self, expires_at: Any) -> None:
        if not isinstance(expires_at, datetime):
            raise ValidationError(f"collateral_expires_at must be a datetime, got {expires_at!r}")
        if expires_at.tzinfo is None or expires_at.utcoffset() is None:
            raise ValidationError("collateral_expires_at must be timezone-aware")
        try:
            already_expired = expires_at <= self._clock()
        except TypeError as exc:
            raise ValidationError(f"collateral_expires_at cannot be compared with the clock: {exc}") from exc
        if already_expired:
            raise ValidationError(f"collateral_expires_at {expires_at.isoformat()} is not in the future")

    @staticmethod
    def _decimal_field(value: Any, name: str) -> Decimal:
        try:
            result = to_decimal(value)
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise ValidationError(f"{name} is not a number: {value!r}") from exc
        if not result.is_finite():
            raise ValidationError(f"{name} must be finite, got {value!r}")
        return result

    async def _build_quote(self, request: OpenLoanRequest) -> LoanQuote:
        asset = request.principal_asset.strip().upper()
        principal = to_decimal(request.principal)
        target_ltv = (to_decimal(request.target_ltv_percent)
                      if request.target_ltv_percent is not None
                      else self.config.default_target_ltv_percent)

        price = await self._asset_price(asset, request.asset_price)
        principal_value = principal * price
        collateral = required_collateral(principal_value, target_ltv)
        ltv = effective_ltv(principal_value, collateral)

        held = sum(
            (r.collateral_amount for r in self.ledger.list_by_owner(request.owner_key)
             if r.status is LoanStatus.ACTIVE),
            ZERO,
        )
        if request.credit_limit is not None:
            credit_limit = to_decimal(request.credit_limit)
        else:
            credit_limit = self.ledger.credit_summary(request.owner_key).total_credit_limit
        available = max(ZERO, credit_limit - held)

        if is_stable_asset(asset, self.config):
            liq_price = ZERO
        else:
            liq_price = liquidation_price(
                principal_value, collateral, price,
                self.config.liquidation_threshold_percent,
                PositionSide.BORROW_VOLATILE,
            )

        return LoanQuote(
            principal=principal,
            principal_asset=asset,
            asset_price=price,
            principal_value=principal_value,
            interest_rate_annual_percent=interest_rate_for(asset, self.config),
            target_ltv_percent=target_ltv,
            required_collateral=collateral,
            ltv_ratio_percent=ltv,
            risk=risk_level(ltv, self.config.risk_bands),
            liquidation_price=liq_price,
            credit_limit=credit_limit,
            available_credit=available,
        )

    async def _asset_price(self, asset: str, explicit: Optional[Any]) -> Decimal:
        if explicit is not None:
            return to_decimal(explicit)
        if is_stable_asset(asset, self.config):
            return Decimal("1")
        if self.price_oracle is None:
            raise ValidationError(f"No price given for {asset} and no price oracle configured")
        quote = await self._call(
            self.price_oracle.current_price(normalize_pair(asset)),
            OracleCollaboratorError, "current_price",
        )
        return quote.price

    async def _borrow_on_chain(self, request, quote, hold_id, expires_at, loan_id) -> ContractSettlement:
        params = BorrowParams(
            owner_key=request.owner_key,
            asset=quote.principal_asset,
            principal=quote.principal,
            collateral_amount=quote.required_collateral,
            hold_id=hold_id,
            expires_at=expires_at,
        )
        result = await self._call(
            self.settlement_provider.borrow(params), ContractCollaboratorError, "borrow", loan_id,
        )
        if result.principal_amount != quote.principal:
            logger.warning(
                "Contract reported principal %s for loan %s, requested %s",
                result.principal_amount, loan_id, quote.principal,
            )
        return ContractSettlement(position_ref=result.position_ref, borrow_tx_ref=result.tx_ref)

    def _new_loan_id(self) -> str:
        while True:
            loan_id = f"loan_{secrets.token_hex(6)}"
            if loan_id not in self.ledger:
                return loan_id

    # ========================================================================
    # SETTLEMENT
    # ========================================================================

    async def charge_loan(self, loan_id: str, reason: Optional[str] = None,
                          automated: bool = False) -> SettlementResult:
        """
        Capture the hold and move the loan to CHARGED.

        Raises:
            NotFound, InvalidTransition, CollateralCollaboratorError
        """
        async with self.locked(loan_id):
            record = self.ledger.get(loan_id)
            self._require_active(record, "charge")
            capture = await self._call(
                self.hold_provider.capture(record.collateral_reference_id),
                CollateralCollaboratorError, "capture", loan_id,
            )
            updated = self.ledger.update(
                loan_id,
                status=LoanStatus.CHARGED,
                settled_at=self._clock(),
                settlement_reference_id=capture.settlement_ref,
                captured_amount=capture.captured_amount,
                automation_status=AutomationStatus.TRIGGERED if automated else AutomationStatus.CANCELLED,
            )
        logger.info("Charged loan %s: %s captured (%s)", loan_id, capture.captured_amount,
                    reason or "manual charge")
        return SettlementResult(
            loan=updated,
            action="charge",
            amount=capture.captured_amount,
            settlement_reference_id=capture.settlement_ref,
            reason=reason,
        )

    async def release_loan(self, loan_id: str, reason: Optional[str] = None) -> SettlementResult:
        """
        Void the hold and move the loan to RELEASED.

        Raises:
            NotFound, InvalidTransition, CollateralCollaboratorError
        """
        async with self.locked(loan_id):
            record = self.ledger.get(loan_id)
            self._require_active(record, "release")
            cancel = await self._call(
                self.hold_provider.cancel(record.collateral_reference_id),
                CollateralCollaboratorError, "cancel", loan_id,
            )
            updated = self.ledger.update(
                loan_id,
                status=LoanStatus.RELEASED,
                settled_at=self._clock(),
                settlement_reference_id=cancel.settlement_ref,
                automation_status=AutomationStatus.CANCELLED,
            )
        logger.info("Released loan %s (%s)", loan_id, reason or "manual release")
        return SettlementResult(
            loan=updated,
            action="release",
            amount=record.collateral_amount,
            settlement_reference_id=cancel.settlement_ref,
            reason=reason,
        )

    async def repay_loan(self, loan_id: str) -> SettlementResult:
        """
        Repay a contract loan on-chain, then release its card hold.

        The amount due is principal plus continuous interest up to now. Once
        the contract confirms, the loan is REPAID for good: a failed hold
        release afterwards is logged and returned as a warning, never rolled
        back.

        Raises:
            NotFound, InvalidTransition, ValidationError (payment loan),
            ContractCollaboratorError
        """
        async with self.locked(loan_id):
            record = self.ledger.get(loan_id)
            self._require_active(record, "repay")
            if not isinstance(record.settlement, ContractSettlement):
                raise ValidationError(
                    f"Loan {loan_id} is settled through the payment processor and cannot be repaid on-chain",
                    loan_id=loan_id,
                )
            if self.settlement_provider is None:
                raise ValidationError("No settlement provider configured", loan_id=loan_id)

            due = amount_due(record, self._clock())
            receipt = await self._call(
                self.settlement_provider.repay(record.settlement.position_ref, due),
                ContractCollaboratorError, "repay", loan_id,
            )
            updated = self.ledger.update(
                loan_id,
                status=LoanStatus.REPAID,
                settled_at=self._clock(),
                settlement_reference_id=receipt.tx_ref,
                settlement=replace(record.settlement, repaid_amount=due),
                automation_status=AutomationStatus.CANCELLED,
            )
            logger.info("Repaid loan %s: %s (tx %s)", loan_id, due, receipt.tx_ref)

            warning = None
            try:
                await self._call(
                    self.hold_provider.cancel(record.collateral_reference_id),
                    CollateralCollaboratorError, "cancel", loan_id,
                )
            except CollateralCollaboratorError as exc:
                warning = f"Loan repaid but card hold release failed: {exc.message}"
                logger.warning("Hold %s for repaid loan %s not released: %s",
                               record.collateral_reference_id, loan_id, exc.message)

        return SettlementResult(
            loan=updated,
            action="repay",
            amount=due,
            settlement_reference_id=receipt.tx_ref,
            warning=warning,
        )

    async def mark_defaulted(self, loan_id: str, now: Optional[datetime] = None) -> LoanRecord:
        """
        Move an ACTIVE loan whose hold has expired to DEFAULTED.

        Raises:
            NotFound, InvalidTransition, ValidationError (hold not expired)
        """
        now = now or self._clock()
        async with self.locked(loan_id):
            record = self.ledger.get(loan_id)
            self._require_active(record, "default")
            if record.collateral_expires_at is None or now < record.collateral_expires_at:
                raise ValidationError(f"Loan {loan_id} has not expired", loan_id=loan_id)
            updated = self.ledger.update(
                loan_id,
                status=LoanStatus.DEFAULTED,
                settled_at=now,
                settlement_reference_id=f"expired:{record.collateral_reference_id}",
            )
        logger.info("Loan %s defaulted at %s", loan_id, now.isoformat())
        return updated

    # ========================================================================
    # QUERIES
    # ========================================================================

    def check_expiry(self, loan_id: str, now: Optional[datetime] = None) -> ExpiryCheck:
        """Pure check against the hold expiry. Does not mutate state."""
        record = self.ledger.get(loan_id)
        return expiry_of(record, now or self._clock())

    def amount_due(self, loan_id: str, now: Optional[datetime] = None) -> Decimal:
        return amount_due(self.ledger.get(loan_id), now or self._clock())

    async def position_state(self, loan_id: str) -> PositionState:
        """On-chain view of a contract loan."""
        record = self.ledger.get(loan_id)
        if not isinstance(record.settlement, ContractSettlement) or self.settlement_provider is None:
            raise ValidationError(f"Loan {loan_id} has no on-chain position", loan_id=loan_id)
        return await self._call(
            self.settlement_provider.get_position_state(record.settlement.position_ref),
            ContractCollaboratorError, "get_position_state", loan_id,
        )

    # ========================================================================
    # HELPERS
    # ========================================================================

    @staticmethod
    def _require_active(record: LoanRecord, action: str) -> None:
        if record.status is not LoanStatus.ACTIVE:
            raise InvalidTransition(
                f"Cannot {action} loan {record.id}: status is {record.status.value}",
                loan_id=record.id,
                current_status=record.status,
            )

    async def _call(
        self,
        awaitable: Awaitable[Any],
        error_cls: Type[CollaboratorError],
        action: str,
        loan_id: Optional[str] = None,
    ) -> Any:
        """Await a collaborator call under the timeout, translating failures to error_cls."""
        timeout = self.config.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise error_cls(f"{action} timed out after {timeout}s", loan_id=loan_id,
                            code="timeout", retryable=True) from exc
        except CollaboratorError as exc:
            if exc.loan_id is None and loan_id is not None:
                exc.loan_id = loan_id
            raise
        except CollaboratorFailure as exc:
            raise error_cls(f"{action} failed: {exc}", loan_id=loan_id,
                            code=exc.code, retryable=exc.retryable) from exc
        except Exception as exc:
            raise error_cls(f"{action} failed: {exc}", loan_id=loan_id,
                            code=type(exc).__name__) from exc

    async def _void_hold_quietly(self, hold_id: str, loan_id: str) -> None:
        try:
            await self._call(self.hold_provider.cancel(hold_id), CollateralCollaboratorError,
                             "cancel", loan_id)
        except CollateralCollaboratorError as exc:
            logger.warning("Could not void hold %s after failed open: %s", hold_id, exc.message)


def expiry_of(record: LoanRecord, now: datetime) -> ExpiryCheck:
    if record.collateral_expires_at is None:
        return ExpiryCheck(expired=False, seconds_remaining=None)
    remaining = (record.collateral_expires_at - now).total_seconds()
    if remaining <= 0:
        return ExpiryCheck(expired=True, seconds_remaining=0)
    return ExpiryCheck(expired=False, seconds_remaining=int(remaining))
