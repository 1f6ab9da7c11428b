#!/usr/bin/env python3
"""
demo.py - Walkthrough: A Card-Backed Loan From Quote to Settlement

Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL SEE:
  1-2: Pricing     - Rates, LTV and how big the card hold must be
  3-4: Opening     - Credit lines, the first loan, credit exhaustion
  5-6: Settlement  - Manual release, automatic charge before hold expiry
  7:   Events      - Inbound automation events and replay rejection

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import asyncio
import sys

from loan_ledger import (
    # Store and engine
    LoanLedger, LifecycleManager, ExpiryWatcher,
    # Types
    CreditLine, OpenLoanRequest, CaptureResult, CancelResult,
    # Calculator
    interest_rate_for, required_collateral, effective_ltv, risk_level,
    accrued_interest_continuous, quantize_money,
    # Oracles and errors
    StaticPriceOracle, InsufficientCredit, InconsistentEvent,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the walkthrough. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    wallet: str = "0x71c7656ec7ab88b098defb751b7401b5f6d8976f"
    credit_limit: Decimal = Decimal("2000")
    first_principal: Decimal = Decimal("1000")
    hold_days: int = 7


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


class DemoClock:
    """Time only moves when the demo says so."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class DemoCardProcessor:
    """Pretend payment processor: every hold succeeds."""

    def __init__(self):
        self.holds = {}

    async def place_hold(self, owner_key, amount, payment_method_ref):
        hold_id = f"pi_demo_{len(self.holds) + 1:03d}"
        self.holds[hold_id] = amount
        print(f"    [card] hold {hold_id} for ${amount}")
        return hold_id

    async def capture(self, hold_id):
        print(f"    [card] captured {hold_id}")
        return CaptureResult(captured_amount=self.holds[hold_id], settlement_ref=f"ch_{hold_id}")

    async def cancel(self, hold_id):
        print(f"    [card] voided {hold_id}")
        return CancelResult(settlement_ref=f"void_{hold_id}")


# ============================================================================
# STEPS
# ============================================================================

def step_01_rates():
    step_header(1, "Interest Rates", "Stablecoins borrow cheap, volatile assets pay a premium.")
    for asset in ("USDC", "DAI", "ETH", "LINK", "DOGE"):
        print(f"  {asset:<6} {interest_rate_for(asset)}% APR")

    principal = CONFIG.first_principal
    print(f"\n  One year on {principal} USDC, compounded continuously:")
    interest = accrued_interest_continuous(principal, interest_rate_for("USDC"), 365 * 86400)
    print(f"    interest = {quantize_money(interest)}")


def step_02_collateral():
    step_header(2, "Sizing the Hold", "The card hold is the principal value divided by the target LTV.")
    for ltv in ("80", "60", "40"):
        hold = required_collateral(CONFIG.first_principal, Decimal(ltv))
        assessment = risk_level(effective_ltv(CONFIG.first_principal, hold))
        print(f"  target LTV {ltv}%  ->  hold ${hold}  ({assessment.level.value}: {assessment.description})")


def step_03_open_loan(manager: LifecycleManager, ledger: LoanLedger):
    step_header(3, "Opening a Loan", "A credit line caps how much can be on hold at once.")
    ledger.register_credit_line(CreditLine(CONFIG.wallet, CONFIG.credit_limit, card_brand="visa",
                                           card_last_four="4242"))
    loan = asyncio.run(manager.open_loan(OpenLoanRequest(
        CONFIG.wallet, CONFIG.first_principal, "USDC",
        payment_method_ref="pm_visa", hold_duration=timedelta(days=CONFIG.hold_days),
    )))
    print(f"\n  Opened {loan.id}: {loan.principal} {loan.principal_asset}, hold ${loan.collateral_amount}")
    summary = ledger.credit_summary(CONFIG.wallet)
    print(f"  Available credit: ${summary.available_credit} of ${summary.total_credit_limit}")
    return loan


def step_04_insufficient_credit(manager: LifecycleManager):
    step_header(4, "Credit Exhaustion", "Borrowing ETH at $3500 needs a bigger hold than is left.")
    try:
        asyncio.run(manager.open_loan(OpenLoanRequest(CONFIG.wallet, Decimal("1"), "ETH")))
    except InsufficientCredit as exc:
        print(f"  Rejected: {exc.to_dict()}")


def step_05_release(manager: LifecycleManager, ledger: LoanLedger, clock: DemoClock):
    step_header(5, "Manual Release", "Releasing voids the hold and frees the credit.")
    second = asyncio.run(manager.open_loan(OpenLoanRequest(CONFIG.wallet, Decimal("300"), "DAI")))
    clock.advance(days=2)
    result = asyncio.run(manager.release_loan(second.id, reason="Repaid off-platform"))
    print(f"  {result.action}: {result.loan.id} -> {result.loan.status.value}")
    print(f"  Available credit: ${ledger.credit_summary(CONFIG.wallet).available_credit}")


def step_06_auto_charge(watcher: ExpiryWatcher, ledger: LoanLedger, clock: DemoClock):
    step_header(6, "Auto-Charge", "An hour before the hold expires the watcher charges the card.")
    for day in range(1, CONFIG.hold_days):
        actions = asyncio.run(watcher.step(CONFIG.start_time + timedelta(days=day)))
        print(f"  day {day}: {len(actions)} action(s)")
    now = clock.advance(days=CONFIG.hold_days - 2, hours=23, minutes=30)
    for action in asyncio.run(watcher.step(now)):
        print(f"  {action.timestamp:%Y-%m-%d %H:%M} {action.loan_id}: {action.action}")
    print(ledger)


def step_07_events(watcher: ExpiryWatcher, manager: LifecycleManager):
    step_header(7, "Inbound Events", "Automation events update loans; replays are refused.")
    loan = asyncio.run(manager.open_loan(OpenLoanRequest(CONFIG.wallet, Decimal("200"), "USDT")))
    payload = {"eventType": "LoanLiquidated", "loanId": loan.id, "data": {"amount": 250}}
    outcome = asyncio.run(watcher.apply_event(payload))
    print(f"  {outcome.event_type.value}: {outcome.loan_id} -> {outcome.status.value}")
    try:
        asyncio.run(watcher.apply_event(payload))
    except InconsistentEvent as exc:
        print(f"  Replay rejected: {exc.message}")


def main():
    clock = DemoClock(CONFIG.start_time)
    ledger = LoanLedger("demo", verbose=True, clock=clock)
    manager = LifecycleManager(
        ledger, DemoCardProcessor(),
        price_oracle=StaticPriceOracle({"ETH": 3500}, clock=clock),
        clock=clock,
    )
    watcher = ExpiryWatcher(manager)

    step_01_rates()
    wait_for_enter()
    step_02_collateral()
    wait_for_enter()
    step_03_open_loan(manager, ledger)
    wait_for_enter()
    step_04_insufficient_credit(manager)
    wait_for_enter()
    step_05_release(manager, ledger, clock)
    wait_for_enter()
    step_06_auto_charge(watcher, ledger, clock)
    wait_for_enter()
    step_07_events(watcher, manager)

    print("\n" + "=" * 70)
    print("       WALKTHROUGH COMPLETE")
    print("=" * 70)
    print("\n  Run tests: pytest tests/\n")


if __name__ == "__main__":
    main()
