"""
conftest.py - Shared pytest fixtures for loan ledger tests

Provides:
- A fresh LoanLedger starting at a fixed time
- Ledgers with loan 0 already requested or funded on the reference terms
"""

import pytest

from collateral_ledger import LoanLedger

from tests.loan_helpers import START, LENDER, LOAN_AMOUNT, request_reference_loan


@pytest.fixture
def loans():
    """Empty loan ledger at START."""
    return LoanLedger(initial_time=START)


@pytest.fixture
def requested(loans):
    """Ledger holding loan 0 in REQUESTED state."""
    request_reference_loan(loans)
    return loans


@pytest.fixture
def funded(requested):
    """Ledger holding loan 0 in FUNDED state."""
    requested.fund_loan(LENDER, 0, attached_value=LOAN_AMOUNT)
    return requested
