"""
event_handlers.py - Inbound automation events

Externally delivered lifecycle events (contract automation webhooks) are
parsed into a LoanEvent and turned into ledger updates by plain handler
functions:

    handler(event, record, now) -> Dict[str, Any]     # fields for LoanLedger.update

Handlers are pure: they read the current record and return the fields to
change. They never touch the ledger themselves, so the ExpiryWatcher applies
the result under the same per-loan lock the LifecycleManager uses.

An event that would move a settled loan (e.g. a replayed LoanLiquidated)
raises InconsistentEvent and changes nothing.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from .core import (
    LoanRecord, LoanStatus, AutomationStatus,
    HUNDRED,
    InconsistentEvent, UnknownEventType, ValidationError,
    to_decimal,
)


class EventType(str, Enum):
    AUTOMATION_SCHEDULED = "AutomationScheduled"
    AUTO_CHARGE_EXECUTED = "AutoChargeExecuted"
    LOAN_RELEASED = "LoanReleased"
    LOAN_LIQUIDATED = "LoanLiquidated"


# ============================================================================
# EVENT DATA STRUCTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanEvent:
    """
    One inbound event.

    Attributes:
        event_type: Which lifecycle event happened
        loan_id: Loan the event refers to
        data: Event payload as a frozen tuple of (key, value) pairs
    """
    event_type: EventType
    loan_id: str
    data: tuple = ()

    @property
    def data_dict(self) -> Dict[str, Any]:
        return dict(self.data)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> LoanEvent:
        """
        Parse a webhook body {"eventType": ..., "loanId": ..., "data": {...}}.

        Raises:
            UnknownEventType: eventType missing or not one of EventType
            ValidationError: loanId missing or data not a mapping
        """
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Event payload must be a mapping, got {type(payload).__name__}")

        raw_type = payload.get("eventType")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise UnknownEventType(
                f"Unknown event type {raw_type!r}", loan_id=payload.get("loanId")
            ) from None

        loan_id = payload.get("loanId")
        if not isinstance(loan_id, str) or not loan_id.strip():
            raise ValidationError(f"{event_type.value} event has no loanId")

        data = payload.get("data") or {}
        if not isinstance(data, Mapping):
            raise ValidationError(f"{event_type.value} event data must be a mapping", loan_id=loan_id)

        return cls(event_type=event_type, loan_id=loan_id, data=tuple(sorted(data.items())))


# ============================================================================
# HANDLER FUNCTIONS
# ============================================================================

def _require_active(event: LoanEvent, record: LoanRecord) -> None:
    if record.status is not LoanStatus.ACTIVE:
        raise InconsistentEvent(
            f"{event.event_type.value} for loan {record.id} rejected: loan is already {record.status.value}",
            loan_id=record.id,
        )


def _amount(event: LoanEvent, key: str, scale: Decimal = Decimal("1")):
    value = event.data_dict.get(key)
    if value is None:
        return None
    try:
        return to_decimal(value) / scale
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{key} is not a number: {value!r}", loan_id=event.loan_id) from exc


def handle_automation_scheduled(event: LoanEvent, record: LoanRecord, now: datetime) -> Dict[str, Any]:
    """Automation registered on-chain. triggerTime is epoch seconds."""
    _require_active(event, record)
    trigger = event.data_dict.get("triggerTime")
    if trigger is None:
        raise ValidationError("AutomationScheduled event has no triggerTime", loan_id=record.id)
    try:
        next_check = datetime.fromtimestamp(float(trigger), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise ValidationError(f"Bad triggerTime {trigger!r}", loan_id=record.id) from exc
    return {
        "automation_status": AutomationStatus.SCHEDULED,
        "next_automation_check": next_check,
    }


def handle_auto_charge_executed(event: LoanEvent, record: LoanRecord, now: datetime) -> Dict[str, Any]:
    """
    Result of an automated capture. chargedAmount is in cents.

    A failed auto-charge only flags the loan; it stays ACTIVE.
    """
    _require_active(event, record)
    data = event.data_dict
    if not data.get("success"):
        return {"automation_status": AutomationStatus.FAILED}

    reference = data.get("stripeChargeId") or data.get("txHash") or f"auto-charge:{record.collateral_reference_id}"
    updates: Dict[str, Any] = {
        "status": LoanStatus.CHARGED,
        "settled_at": now,
        "settlement_reference_id": str(reference),
        "automation_status": AutomationStatus.TRIGGERED,
    }
    charged = _amount(event, "chargedAmount", scale=HUNDRED)
    updates["captured_amount"] = charged if charged is not None else record.collateral_amount
    return updates


def handle_loan_released(event: LoanEvent, record: LoanRecord, now: datetime) -> Dict[str, Any]:
    _require_active(event, record)
    reference = event.data_dict.get("txHash") or f"released:{record.collateral_reference_id}"
    return {
        "status": LoanStatus.RELEASED,
        "settled_at": now,
        "settlement_reference_id": str(reference),
        "automation_status": AutomationStatus.CANCELLED,
    }


def handle_loan_liquidated(event: LoanEvent, record: LoanRecord, now: datetime) -> Dict[str, Any]:
    """Forced settlement: the hold is treated as captured."""
    _require_active(event, record)
    reference = event.data_dict.get("txHash") or f"liquidated:{record.collateral_reference_id}"
    amount = _amount(event, "amount")
    return {
        "status": LoanStatus.CHARGED,
        "settled_at": now,
        "settlement_reference_id": str(reference),
        "captured_amount": amount if amount is not None else record.collateral_amount,
        "automation_status": AutomationStatus.TRIGGERED,
    }


# ============================================================================
# HANDLER REGISTRY
# ============================================================================

EventHandler = Callable[[LoanEvent, LoanRecord, datetime], Dict[str, Any]]

DEFAULT_HANDLERS: Dict[EventType, EventHandler] = {
    EventType.AUTOMATION_SCHEDULED: handle_automation_scheduled,
    EventType.AUTO_CHARGE_EXECUTED: handle_auto_charge_executed,
    EventType.LOAN_RELEASED: handle_loan_released,
    EventType.LOAN_LIQUIDATED: handle_loan_liquidated,
}
