"""
test_loan_scenarios.py - End-to-end loan lifecycle scenarios

Each test walks a realistic sequence through the public API: register a
credit line, open loans, let time pass, settle through the manager, the
watcher or inbound events, and check the ledger and credit summary at each
stage.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from loan_ledger import (
    AutomationStatus, CreditLine, ExpiryWatcher, FallbackPriceOracle, InconsistentEvent, InsufficientCredit,
    InvalidTransition, LifecycleManager, LoanLedger, LoanStatus, OpenLoanRequest,
    SettlementKind, StaticPriceOracle, accrued_interest_continuous, quantize_money,
)
from tests.fakes import FailingOracle, FakeClock, FakeHoldProvider, FakeSettlementProvider, run


WALLET = "0x71c7656ec7ab88b098defb751b7401b5f6d8976f"


@pytest.fixture
def system():
    clock = FakeClock()
    ledger = LoanLedger("scenario", test_mode=True, clock=clock)
    holds = FakeHoldProvider()
    contract = FakeSettlementProvider()
    oracle = FallbackPriceOracle(
        [FailingOracle(), StaticPriceOracle({"ETH": 3500, "LINK": 20}, clock=clock, source="backup")],
        clock=clock,
    )
    manager = LifecycleManager(ledger, holds, contract, oracle, clock=clock)
    watcher = ExpiryWatcher(manager)
    ledger.register_credit_line(CreditLine(WALLET, Decimal("2000"), card_brand="visa", card_last_four="4242"))
    return clock, ledger, holds, contract, manager, watcher


def test_stablecoin_loan_opened_and_released(system):
    clock, ledger, holds, _, manager, _ = system

    assert ledger.credit_summary(WALLET).available_credit == Decimal("2000")

    loan = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("1000"), "USDC", payment_method_ref="pm_visa")))
    assert loan.collateral_amount == Decimal("1250")
    assert loan.interest_rate_annual_percent == Decimal("5.2")

    summary = ledger.credit_summary(WALLET)
    assert summary.available_credit == Decimal("750")
    assert summary.total_borrowed == Decimal("1000")
    assert summary.active_loans == 1

    clock.advance(days=30)
    run(manager.release_loan(loan.id, reason="Loan repaid off-platform"))

    summary = ledger.credit_summary(WALLET)
    assert summary.available_credit == Decimal("2000")
    assert summary.total_released == Decimal("1000")
    assert summary.active_loans == 0
    assert [c.new.status for c in ledger.history(loan.id)] == [LoanStatus.ACTIVE, LoanStatus.RELEASED]


def test_one_year_interest_on_contract_loan(system):
    clock, ledger, holds, contract, manager, _ = system

    loan = run(manager.open_loan(OpenLoanRequest(
        WALLET, Decimal("1000"), "USDC", settlement_kind=SettlementKind.CONTRACT,
        hold_duration=timedelta(days=400),
    )))
    clock.advance(days=365)

    interest = accrued_interest_continuous(loan.principal, loan.interest_rate_annual_percent, 365 * 86400)
    assert quantize_money(interest) == Decimal("53.38")

    result = run(manager.repay_loan(loan.id))
    assert quantize_money(result.amount) == quantize_money(loan.principal + interest)
    assert ledger.get(loan.id).status is LoanStatus.REPAID
    assert holds.holds[loan.collateral_reference_id].state == "cancelled"
    assert not run(manager.position_state(loan.id)).is_active


def test_volatile_borrow_needs_more_credit(system):
    _, ledger, holds, _, manager, _ = system

    with pytest.raises(InsufficientCredit) as exc_info:
        run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("1"), "ETH")))
    assert exc_info.value.required == Decimal("4375")
    assert exc_info.value.available == Decimal("2000")
    assert len(ledger) == 0
    assert holds.holds == {}

    # priced through the backup source when the primary feed is down
    loan = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("1"), "ETH", credit_limit=Decimal("5000"))))
    assert loan.principal_value == Decimal("3500")
    assert loan.ltv_ratio_percent == Decimal("80")


def test_expiring_loan_auto_charged_by_watcher(system):
    clock, ledger, holds, _, manager, watcher = system

    loan = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("500"), "USDC", hold_duration=timedelta(days=7))))
    ticks = [clock.now + timedelta(days=d) for d in range(1, 7)]
    assert run(watcher.run(ticks)) == []

    clock.advance(days=6, hours=23, minutes=15)
    actions = run(watcher.step(clock.now))
    assert [(a.loan_id, a.action) for a in actions] == [(loan.id, "charged")]

    stored = ledger.get(loan.id)
    assert stored.status is LoanStatus.CHARGED
    assert stored.automation_status is AutomationStatus.TRIGGERED
    assert stored.captured_amount == Decimal("625")
    assert ledger.credit_summary(WALLET).total_charged == Decimal("625")

    with pytest.raises(InvalidTransition):
        run(manager.release_loan(loan.id))


def test_liquidation_event_and_replay(system):
    _, ledger, _, _, manager, watcher = system

    loan = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("1000"), "USDC")))
    payload = {"eventType": "LoanLiquidated", "loanId": loan.id, "data": {"amount": 500}}

    outcome = run(watcher.apply_event(payload))
    assert outcome.status is LoanStatus.CHARGED
    assert ledger.get(loan.id).settled_at is not None

    with pytest.raises(InconsistentEvent):
        run(watcher.apply_event(payload))
    assert ledger.get(loan.id).status is LoanStatus.CHARGED
    assert len(ledger.history(loan.id)) == 2


def test_automation_lifecycle_from_events(system):
    clock, ledger, _, _, manager, watcher = system

    loan = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("800"), "USDC", hold_duration=timedelta(days=7))))
    trigger = int(watcher.trigger_time(loan).timestamp())

    run(watcher.apply_event({"eventType": "AutomationScheduled", "loanId": loan.id, "data": {"triggerTime": trigger}}))
    assert ledger.get(loan.id).automation_status is AutomationStatus.SCHEDULED

    run(watcher.apply_event({
        "eventType": "AutoChargeExecuted",
        "loanId": loan.id,
        "data": {"success": False, "error": "card_declined"},
    }))
    assert ledger.get(loan.id).automation_status is AutomationStatus.FAILED
    assert ledger.get(loan.id).status is LoanStatus.ACTIVE

    run(watcher.apply_event({
        "eventType": "AutoChargeExecuted",
        "loanId": loan.id,
        "data": {"success": True, "chargedAmount": 100000, "stripeChargeId": "ch_3Nxyz"},
    }))
    stored = ledger.get(loan.id)
    assert stored.status is LoanStatus.CHARGED
    assert stored.captured_amount == Decimal("1000")
    assert stored.settlement_reference_id == "ch_3Nxyz"


def test_multiple_loans_share_credit_line(system):
    clock, ledger, _, _, manager, _ = system

    first = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("800"), "USDC")))
    clock.advance(hours=1)
    second = run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("600"), "DAI")))
    assert second.interest_rate_annual_percent == Decimal("5.5")
    assert ledger.credit_summary(WALLET).available_credit == Decimal("250")

    with pytest.raises(InsufficientCredit):
        run(manager.open_loan(OpenLoanRequest(WALLET, Decimal("400"), "USDT")))

    run(manager.charge_loan(first.id, reason="Borrower defaulted"))
    summary = ledger.credit_summary(WALLET)
    assert summary.available_credit == Decimal("1250")
    assert summary.total_charged == Decimal("1000")
    assert [r.id for r in ledger.list_by_owner(WALLET)] == [second.id, first.id]
