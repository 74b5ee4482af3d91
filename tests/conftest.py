"""
conftest.py - Shared pytest fixtures for kvledger tests

Provides common fixtures used across unit, conformance and functional tests:
- An empty in-memory store
- Quiet ledgers and order workflows for both settlement policies
- A ledger with one funded user
"""

import pytest
from decimal import Decimal

from kvledger import InMemoryStore, Ledger, OrderWorkflow, SettlementPolicy


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    """An empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def ledger(store):
    """A quiet ledger over the store fixture."""
    return Ledger(store, verbose=False)


@pytest.fixture
def status_only(store, ledger):
    """Order workflow that only flips status on settlement."""
    return OrderWorkflow(store, ledger, SettlementPolicy.STATUS_ONLY, verbose=False)


@pytest.fixture
def debit_total(store, ledger):
    """Order workflow that debits total on settlement."""
    return OrderWorkflow(store, ledger, SettlementPolicy.DEBIT_TOTAL, verbose=False)


@pytest.fixture
def funded_ledger(store, ledger):
    """Ledger with u1 holding 100 available / 100 total."""
    ledger.open_account("u1", Decimal("100"))
    return ledger
