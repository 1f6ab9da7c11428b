"""
expiry_watcher.py - Expiry / Automation Watcher

Drives the time-based part of the loan lifecycle and the inbound event
side door.

Processing order each step(now), over ACTIVE loans oldest first:
1. Hold already expired            -> mark_defaulted
2. Within automation_lead_time     -> charge_loan (auto-charge), unless
   automation is disabled or a previous auto-charge failed
3. Otherwise                       -> nothing

apply_event() feeds webhook payloads through the handler registry in
event_handlers.py. Events and manual actions share the LifecycleManager's
per-loan lock, so they are serialized against each other.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from .config import LendingConfig
from .core import (
    LoanRecord, LoanStatus, AutomationStatus,
    CollaboratorError, InconsistentEvent, InvalidTransition, NotFound, UnknownEventType,
)
from .event_handlers import DEFAULT_HANDLERS, EventHandler, EventType, LoanEvent
from .lifecycle import LifecycleManager, expiry_of

logger = logging.getLogger(__name__)

AUTO_CHARGE_REASON = "auto-charge before expiry"


@dataclass(frozen=True, slots=True)
class WatcherAction:
    """
    What the watcher did to one loan in one step.

    action is "defaulted", "charged" or "charge_failed"; error holds the
    collaborator error's to_dict() for a failed charge.
    """
    loan_id: str
    action: str
    timestamp: datetime
    status: LoanStatus
    error: Optional[Dict[str, Any]] = None


@dataclass(frozen=True, slots=True)
class EventOutcome:
    loan_id: str
    event_type: EventType
    status: LoanStatus
    automation_status: AutomationStatus


class ExpiryWatcher:
    """
    Evaluates active loans against their hold expiry.

    Example:
        watcher = ExpiryWatcher(manager)
        actions = await watcher.step(now)
        outcome = await watcher.apply_event({"eventType": "LoanReleased", "loanId": "loan_1"})
    """

    def __init__(
        self,
        manager: LifecycleManager,
        config: Optional[LendingConfig] = None,
        handlers: Optional[Dict[EventType, EventHandler]] = None,
    ):
        """
        Args:
            manager: LifecycleManager performing the transitions
            config: Lead time and automation switch (default: manager.config)
            handlers: Event handler registry (default: DEFAULT_HANDLERS)
        """
        self.manager = manager
        self.ledger = manager.ledger
        self.config = config or manager.config
        self.handlers: Dict[EventType, EventHandler] = dict(handlers or DEFAULT_HANDLERS)

    def register(self, event_type: EventType, handler: EventHandler) -> None:
        self.handlers[EventType(event_type)] = handler

    def trigger_time(self, record: LoanRecord) -> Optional[datetime]:
        """When the auto-charge for this loan fires, or None without a hold expiry."""
        if record.collateral_expires_at is None:
            return None
        return record.collateral_expires_at - self.config.automation_lead_time

    # ========================================================================
    # TIME-DRIVEN PROCESSING
    # ========================================================================

    async def step(self, now: datetime) -> List[WatcherAction]:
        """
        Evaluate every active loan at `now`.

        Loans settled concurrently by someone else are skipped; the watcher
        never reports their InvalidTransition.
        """
        actions: List[WatcherAction] = []

        for record in self.ledger.active_loans():
            check = expiry_of(record, now)
            if check.seconds_remaining is None and not check.expired:
                continue

            if check.expired:
                action = await self._default(record, now)
            elif self._due_for_auto_charge(record, now):
                action = await self._auto_charge(record, now)
            else:
                action = None

            if action is not None:
                actions.append(action)

        return actions

    async def run(self, timestamps: Iterable[datetime]) -> List[WatcherAction]:
        """Step through a sequence of timestamps, collecting every action."""
        all_actions: List[WatcherAction] = []
        for timestamp in timestamps:
            all_actions.extend(await self.step(timestamp))
        return all_actions

    def _due_for_auto_charge(self, record: LoanRecord, now: datetime) -> bool:
        if not self.config.automation_enabled:
            return False
        if record.automation_status is AutomationStatus.FAILED:
            return False
        trigger = self.trigger_time(record)
        return trigger is not None and now >= trigger

    async def _default(self, record: LoanRecord, now: datetime) -> Optional[WatcherAction]:
        try:
            updated = await self.manager.mark_defaulted(record.id, now=now)
        except InvalidTransition:
            return None
        return WatcherAction(loan_id=record.id, action="defaulted", timestamp=now, status=updated.status)

    async def _auto_charge(self, record: LoanRecord, now: datetime) -> Optional[WatcherAction]:
        try:
            result = await self.manager.charge_loan(record.id, reason=AUTO_CHARGE_REASON, automated=True)
        except InvalidTransition:
            return None
        except CollaboratorError as exc:
            logger.warning("Auto-charge of loan %s failed: %s", record.id, exc.message)
            status = await self._flag_failed(record.id)
            return WatcherAction(
                loan_id=record.id,
                action="charge_failed",
                timestamp=now,
                status=status,
                error=exc.to_dict(),
            )
        return WatcherAction(loan_id=record.id, action="charged", timestamp=now, status=result.loan.status)

    async def _flag_failed(self, loan_id: str) -> LoanStatus:
        async with self.manager.locked(loan_id):
            current = self.ledger.get(loan_id)
            if current.status is LoanStatus.ACTIVE:
                current = self.ledger.update(loan_id, automation_status=AutomationStatus.FAILED)
        return current.status

    # ========================================================================
    # INBOUND EVENTS
    # ========================================================================

    async def apply_event(self, payload: Mapping[str, Any], now: Optional[datetime] = None) -> EventOutcome:
        """
        Apply one webhook payload.

        Raises:
            UnknownEventType: eventType not handled
            ValidationError: Malformed payload
            NotFound: loanId does not exist
            InconsistentEvent: Event would move a settled loan; nothing is applied
        """
        try:
            event = LoanEvent.from_payload(payload)
        except UnknownEventType as exc:
            logger.error("Rejected event: %s", exc.message)
            raise
        handler = self.handlers.get(event.event_type)
        if handler is None:
            raise UnknownEventType(f"No handler registered for {event.event_type.value}", loan_id=event.loan_id)

        if event.loan_id not in self.ledger:
            logger.error("%s event for unknown loan %s", event.event_type.value, event.loan_id)
            raise NotFound(f"Loan {event.loan_id} not found", loan_id=event.loan_id)

        now = now or self.manager.now()
        async with self.manager.locked(event.loan_id):
            record = self.ledger.get(event.loan_id)
            try:
                updates = handler(event, record, now)
            except InconsistentEvent as exc:
                logger.error("Inconsistent event rejected: %s", exc.message)
                raise
            updated = self.ledger.update(event.loan_id, **updates)

        logger.info(
            "Applied %s to loan %s: status=%s automation=%s",
            event.event_type.value, event.loan_id, updated.status.value, updated.automation_status.value,
        )
        return EventOutcome(
            loan_id=updated.id,
            event_type=event.event_type,
            status=updated.status,
            automation_status=updated.automation_status,
        )
