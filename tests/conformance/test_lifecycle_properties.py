"""
Lifecycle Conformance Tests

INVARIANTS:

    No backward transitions:
        op1 moves loan L to a terminal state  ⟹  op2(L) raises InvalidTransition
        and status(L) after op2 = status(L) after op1

    At most one terminal transition:
        any set of concurrent charge/release calls on L  ⟹  exactly one succeeds

    Credit summary:
        ∀ owner, after every operation:
            available_credit = max(0, total_credit_limit − Σ collateral over ACTIVE loans)
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from loan_ledger import (
    CreditLine, InsufficientCredit, InvalidTransition, LendingConfig, LifecycleManager,
    LoanLedger, LoanStatus, OpenLoanRequest, SettlementKind,
)
from tests.fakes import OWNER, FakeClock, FakeHoldProvider, FakeSettlementProvider, run


def build_system(credit_limit=Decimal("5000")):
    clock = FakeClock()
    ledger = LoanLedger("conformance", test_mode=True, clock=clock)
    holds = FakeHoldProvider()
    manager = LifecycleManager(
        ledger, holds, FakeSettlementProvider(),
        config=LendingConfig(collaborator_timeout_seconds=1.0),
        clock=clock,
    )
    ledger.register_credit_line(CreditLine(OWNER, credit_limit))
    return clock, ledger, holds, manager


def settle(manager, op, loan_id):
    if op == "charge":
        return manager.charge_loan(loan_id)
    if op == "release":
        return manager.release_loan(loan_id)
    if op == "repay":
        return manager.repay_loan(loan_id)
    return manager.mark_defaulted(loan_id)


SETTLING_OPS = ["charge", "release", "repay", "default"]


class TestNoBackwardTransitions:

    @given(st.sampled_from(SETTLING_OPS), st.sampled_from(SETTLING_OPS))
    @settings(max_examples=50)
    def test_second_settlement_rejected(self, op1, op2):
        """PROPERTY: Once terminal, every settling operation is refused."""
        clock, ledger, holds, manager = build_system()
        loan = run(manager.open_loan(OpenLoanRequest(
            OWNER, Decimal("1000"), "USDC",
            settlement_kind=SettlementKind.CONTRACT,
            hold_duration=timedelta(days=1),
        )))
        clock.advance(days=2)

        run(settle(manager, op1, loan.id))
        after_first = ledger.get(loan.id)
        assert after_first.is_terminal

        try:
            run(settle(manager, op2, loan.id))
        except InvalidTransition as exc:
            assert exc.current_status is after_first.status
        else:
            raise AssertionError(f"{op2} after {op1} was accepted")

        assert ledger.get(loan.id) is after_first


class TestConcurrentSettlement:

    @given(st.lists(st.sampled_from(["charge", "release"]), min_size=2, max_size=5))
    @settings(max_examples=30, deadline=None)
    def test_exactly_one_wins(self, ops):
        """PROPERTY: Concurrent settlements commit exactly one terminal transition."""
        _, ledger, holds, manager = build_system()
        holds.delays["capture"] = 0.001
        holds.delays["cancel"] = 0.001
        loan = run(manager.open_loan(OpenLoanRequest(OWNER, Decimal("1000"), "USDC")))

        async def race():
            return await asyncio.gather(*(settle(manager, op, loan.id) for op in ops), return_exceptions=True)

        results = run(race())
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]

        assert len(winners) == 1
        assert all(isinstance(r, InvalidTransition) for r in losers)
        assert holds.count("capture") + holds.count("cancel") == 1
        expected = LoanStatus.CHARGED if winners[0].action == "charge" else LoanStatus.RELEASED
        assert ledger.get(loan.id).status is expected


operations = st.lists(
    st.one_of(
        st.tuples(st.just("open"), st.integers(min_value=1, max_value=2500)),
        st.tuples(st.sampled_from(["charge", "release"]), st.integers(min_value=0, max_value=9)),
    ),
    min_size=1,
    max_size=15,
)


class TestCreditSummaryInvariant:

    @given(operations)
    @settings(max_examples=60, deadline=None)
    def test_available_credit_tracks_active_collateral(self, ops):
        """PROPERTY: available = max(0, limit − held) after every operation."""
        _, ledger, _, manager = build_system(credit_limit=Decimal("3000"))

        for op, arg in ops:
            loans = ledger.list_by_owner(OWNER)
            try:
                if op == "open":
                    run(manager.open_loan(OpenLoanRequest(OWNER, Decimal(arg), "USDC")))
                elif loans:
                    run(settle(manager, op, loans[arg % len(loans)].id))
            except (InsufficientCredit, InvalidTransition):
                pass

            loans = ledger.list_by_owner(OWNER)
            summary = ledger.credit_summary(OWNER)
            held = sum((r.collateral_amount for r in loans if r.status is LoanStatus.ACTIVE), Decimal("0"))
            assert summary.available_credit == max(Decimal("0"), summary.total_credit_limit - held)
            assert summary.active_loans == sum(1 for r in loans if r.status is LoanStatus.ACTIVE)
            assert held <= Decimal("3000")
