"""
conftest.py - Shared pytest fixtures for settlement tests

Provides:
- A funded ledger with two tokens (AAA, BBB) and the native unit
- A lender engine charging 1% on AAA and nothing on BBB or NATIVE
- The default call context and a well-behaved receiver
"""

import pytest

from flashloan import CallContext

from tests.doubles import ALICE, RepayingReceiver, make_engine, make_ledger


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Ledger with AAA, BBB and NATIVE; lender and receiver funded."""
    return make_ledger()


@pytest.fixture
def engine(ledger):
    """Lender engine: 1% on AAA, 0% on BBB and NATIVE."""
    return make_engine(ledger)


@pytest.fixture
def ctx():
    return CallContext(ALICE)


@pytest.fixture
def receiver(ledger):
    return RepayingReceiver(ledger)
