"""
conftest.py - Shared pytest fixtures for loan ledger tests

Provides:
- A frozen clock and a test-mode ledger using it
- In-memory collaborators (holds, contract, prices)
- A LifecycleManager and ExpiryWatcher wired to all of the above
- An owner with a registered 2000 USD credit line
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from loan_ledger import (
    CreditLine, ExpiryWatcher, LendingConfig, LifecycleManager, LoanLedger, LoanRecord,
    OpenLoanRequest, StaticPriceOracle,
)

from tests.fakes import OWNER, FakeClock, FakeHoldProvider, FakeSettlementProvider, run


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    """Empty ledger in test mode."""
    return LoanLedger("test", verbose=False, test_mode=True, clock=clock)


@pytest.fixture
def holds():
    return FakeHoldProvider()


@pytest.fixture
def contract():
    return FakeSettlementProvider()


@pytest.fixture
def oracle(clock):
    return StaticPriceOracle({"ETH": Decimal("3500"), "LINK": Decimal("20")}, clock=clock)


@pytest.fixture
def config():
    return LendingConfig(collaborator_timeout_seconds=0.5)


@pytest.fixture
def manager(ledger, holds, contract, oracle, config, clock):
    return LifecycleManager(
        ledger,
        holds,
        settlement_provider=contract,
        price_oracle=oracle,
        config=config,
        clock=clock,
    )


@pytest.fixture
def watcher(manager):
    return ExpiryWatcher(manager)


@pytest.fixture
def owner(ledger):
    """Owner with a 2000 USD credit line and no loans."""
    ledger.register_credit_line(CreditLine(OWNER, Decimal("2000"), card_brand="visa", card_last_four="4242"))
    return OWNER


@pytest.fixture
def open_loan(manager, owner):
    """Factory opening a loan for `owner`; 1000 USDC at 80% LTV by default."""
    def _open(principal="1000", asset="USDC", **kwargs) -> LoanRecord:
        request = OpenLoanRequest(owner_key=owner, principal=Decimal(principal), principal_asset=asset, **kwargs)
        return run(manager.open_loan(request))
    return _open


@pytest.fixture
def expiring_loan(open_loan, clock):
    """Loan whose hold expires 7 days from now."""
    return open_loan(hold_duration=timedelta(days=7))
