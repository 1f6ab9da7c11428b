"""
ledger.py - Loan Ledger

The LoanLedger is the store of record for loans. It holds every LoanRecord
keyed by id, a secondary index from owner to loan ids, registered credit
lines, and an append-only change log.

Key responsibilities:
    - create / get / list_by_owner / update / credit_summary
    - Refuses changes to immutable fields and illegal status transitions
    - Always logs: every mutation is appended to change_log
    - Consistent snapshots: records are frozen and swapped whole under a lock,
      so a reader never sees a half-applied update
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import threading

from .core import (
    # Types
    LoanRecord, LoanStatus, CreditLine, CreditSummary, LoanChange,
    # Constants
    HUNDRED, IMMUTABLE_FIELDS, SETTLEMENT_FIELDS, ZERO,
    # Exceptions
    LendingError, DuplicateId, NotFound, InvalidTransition, ValidationError,
    # Helpers
    can_transition, coerce_updates, utc_now,
)


class LoanLedger:
    """
    In-memory loan store with an owner index and audit trail.

    Design Principles:
        - Records are immutable. update() builds a new record with replace(),
          which re-runs LoanRecord validation.
        - Status changes are checked against the transition table here as
          well as in the LifecycleManager; nothing leaves a terminal state.
        - Nothing is deleted in normal operation. clear() exists for tests only.

    Thread Safety:
        Mutations and index reads are guarded by an RLock.

    Example:
        ledger = LoanLedger("main")
        ledger.register_credit_line(CreditLine("0xabc", Decimal("2000")))
        ledger.create(record)
        ledger.credit_summary("0xabc").available_credit
    """

    def __init__(
        self,
        name: str = "main",
        verbose: bool = False,
        test_mode: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            verbose: Print every committed change (default: False)
            test_mode: Allow clear() (default: False)
            clock: Time source for change-log timestamps (default: UTC now)
        """
        self.name = name
        self.verbose = verbose
        self._test_mode = test_mode
        self._clock = clock or utc_now
        self._loans: Dict[str, LoanRecord] = {}
        self._owner_index: Dict[str, List[str]] = defaultdict(list)
        self._credit_lines: Dict[str, CreditLine] = {}
        # Insertion order breaks created_at ties in newest-first listings
        self._insertion_order: Dict[str, int] = {}
        self.change_log: List[LoanChange] = []
        self._next_sequence = 0
        self._lock = threading.RLock()

    # ========================================================================
    # READS
    # ========================================================================

    def __contains__(self, loan_id: str) -> bool:
        return loan_id in self._loans

    def __len__(self) -> int:
        return len(self._loans)

    def get(self, loan_id: str) -> LoanRecord:
        """
        Return the loan with this id.

        Raises:
            NotFound: If no such loan exists
        """
        record = self._loans.get(loan_id)
        if record is None:
            raise NotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        return record

    def list_by_owner(self, owner_key: str) -> List[LoanRecord]:
        """Owner's loans, newest created_at first. Unknown owner gives []."""
        with self._lock:
            ids = list(self._owner_index.get(owner_key, ()))
            records = [self._loans[i] for i in ids if i in self._loans]
        return self._newest_first(records)

    def all_loans(self) -> List[LoanRecord]:
        """Every loan in the ledger, newest first."""
        with self._lock:
            records = list(self._loans.values())
        return self._newest_first(records)

    def active_loans(self) -> List[LoanRecord]:
        """Active loans, oldest first (processing order for the watcher)."""
        with self._lock:
            records = [r for r in self._loans.values() if r.status is LoanStatus.ACTIVE]
        return list(reversed(self._newest_first(records)))

    def history(self, loan_id: str) -> List[LoanChange]:
        """All change-log entries for one loan, oldest first."""
        self.get(loan_id)
        with self._lock:
            return [c for c in self.change_log if c.loan_id == loan_id]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_loans": len(self._loans),
                "total_owners": len(self._owner_index),
                "loans_per_owner": {o: len(ids) for o, ids in self._owner_index.items()},
            }

    def _newest_first(self, records: List[LoanRecord]) -> List[LoanRecord]:
        return sorted(
            records,
            key=lambda r: (r.created_at, self._insertion_order.get(r.id, 0)),
            reverse=True,
        )

    # ========================================================================
    # CREDIT LINES
    # ========================================================================

    def register_credit_line(self, credit_line: CreditLine) -> None:
        """Store (or replace) the pre-authorization data for an owner."""
        if credit_line.registered_at is None:
            credit_line = replace(credit_line, registered_at=self._clock())
        with self._lock:
            self._credit_lines[credit_line.owner_key] = credit_line
        if self.verbose:
            print(f"📝 Credit line: {credit_line.owner_key} limit={credit_line.credit_limit} "
                  f"[{credit_line.card_brand} ****{credit_line.card_last_four[-4:]}]")

    def get_credit_line(self, owner_key: str) -> Optional[CreditLine]:
        return self._credit_lines.get(owner_key)

    def has_credit_line(self, owner_key: str) -> bool:
        return owner_key in self._credit_lines

    # ========================================================================
    # CREDIT SUMMARY
    # ========================================================================

    def credit_summary(self, owner_key: str) -> CreditSummary:
        """
        Aggregate credit position for one owner.

        total_credit_limit is the limit stamped on the owner's most recent
        loan; with no loans it falls back to the registered credit line.
        Available credit is that limit minus collateral held by active loans,
        floored at zero.
        """
        with self._lock:
            loans = self.list_by_owner(owner_key)
            credit_line = self._credit_lines.get(owner_key)

        if not loans:
            limit = credit_line.credit_limit if credit_line is not None else ZERO
            return CreditSummary.empty(limit)

        total_credit_limit = loans[0].original_credit_limit_at_creation

        active = [r for r in loans if r.status is LoanStatus.ACTIVE]
        charged = [r for r in loans if r.status is LoanStatus.CHARGED]
        released = [r for r in loans if r.status is LoanStatus.RELEASED]

        total_borrowed = sum((r.principal_value for r in active), ZERO)
        total_charged = sum(
            (r.captured_amount if r.captured_amount is not None else r.collateral_amount
             for r in charged),
            ZERO,
        )
        total_released = sum((r.principal_value for r in released), ZERO)
        held = sum((r.collateral_amount for r in active), ZERO)

        available = max(ZERO, total_credit_limit - held)
        if total_credit_limit > ZERO:
            utilization = (held / total_credit_limit * HUNDRED).quantize(Decimal("0.01"))
        else:
            utilization = ZERO

        return CreditSummary(
            total_credit_limit=total_credit_limit,
            total_borrowed=total_borrowed,
            total_charged=total_charged,
            total_released=total_released,
            available_credit=available,
            utilization_percentage=utilization,
            active_loans=len(active),
        )

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def create(self, record: LoanRecord) -> None:
        """
        Insert a new loan and index it under its owner.

        Raises:
            DuplicateId: If the id is already present
        """
        with self._lock:
            if record.id in self._loans:
                raise DuplicateId(f"Loan {record.id} already exists", loan_id=record.id)
            self._loans[record.id] = record
            self._owner_index[record.owner_key].append(record.id)
            self._insertion_order[record.id] = len(self._insertion_order)
            change = self._log_change(record.id, None, record)
        if self.verbose:
            print(repr(change))

    def update(self, loan_id: str, **updates: Any) -> LoanRecord:
        """
        Merge fields into an existing loan and return the new record.

        Raises:
            NotFound: Unknown loan id
            ValidationError: Attempt to change id, owner_key or
                collateral_reference_id, unknown field names, or a result
                that violates LoanRecord invariants
            InvalidTransition: Status change not allowed by the transition table,
                or a change to the settlement fields of a settled loan
        """
        try:
            updates = coerce_updates(updates)
        except ValueError as exc:
            raise ValidationError(str(exc), loan_id=loan_id) from exc

        with self._lock:
            old = self.get(loan_id)

            for name in IMMUTABLE_FIELDS & set(updates):
                if updates[name] != getattr(old, name):
                    raise ValidationError(
                        f"Field '{name}' is immutable after creation", loan_id=loan_id
                    )

            if "status" in updates:
                target = LoanStatus(updates["status"])
                if target is not old.status and not can_transition(old.status, target):
                    raise InvalidTransition(
                        f"Loan {loan_id} cannot move from {old.status.value} to {target.value}",
                        loan_id=loan_id,
                        current_status=old.status,
                    )

            if old.status.is_terminal:
                for name in sorted(SETTLEMENT_FIELDS & set(updates)):
                    if updates[name] != getattr(old, name):
                        raise InvalidTransition(
                            f"Loan {loan_id} is {old.status.value}; '{name}' cannot change after settlement",
                            loan_id=loan_id,
                            current_status=old.status,
                        )

            try:
                new = replace(old, **updates)
            except ValueError as exc:
                raise ValidationError(str(exc), loan_id=loan_id) from exc

            self._loans[loan_id] = new
            change = self._log_change(loan_id, old, new)
        if self.verbose:
            print(repr(change))
        return new

    def clear(self) -> None:
        """
        Drop every loan, credit line and log entry.

        Raises:
            LendingError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LendingError(
                "clear() is disabled in production mode. "
                "Set test_mode=True when creating LoanLedger for testing."
            )
        with self._lock:
            self._loans.clear()
            self._owner_index.clear()
            self._credit_lines.clear()
            self._insertion_order.clear()
            self.change_log.clear()
            self._next_sequence = 0

    def _log_change(self, loan_id: str, old: Optional[LoanRecord], new: LoanRecord) -> LoanChange:
        change = LoanChange(
            loan_id=loan_id,
            old=old,
            new=new,
            timestamp=self._clock(),
            sequence_number=self._next_sequence,
        )
        self._next_sequence += 1
        self.change_log.append(change)
        return change

    def __repr__(self) -> str:
        return f"LoanLedger({self.name!r}, {len(self._loans)} loans, {len(self._owner_index)} owners)"
