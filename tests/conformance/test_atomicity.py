"""
Atomicity Conformance Tests

INVARIANT: Loan operations are all-or-nothing.

    ∀ operation O:
        O succeeds ⟹ state change, value moves and event are all recorded
        O fails    ⟹ ledger, event log and id counter are unchanged

A refused operation leaves no trace, whatever the reason for refusal.
"""

import pytest
from dataclasses import replace
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from collateral_ledger import LoanLedger, LoanError, LedgerError
from collateral_ledger.core import _freeze_state

from tests.loan_helpers import (
    START, BORROWER, LENDER, OUTSIDER, COLLATERAL, LOAN_AMOUNT, REPAYMENT,
    request_reference_loan, snapshot, past_due,
)


amounts = st.one_of(
    st.decimals(min_value=Decimal("-10"), max_value=Decimal("10"), places=19),
    st.sampled_from(["abc", "", "NaN", "Infinity", True]),
)
loan_ids = st.one_of(st.integers(min_value=-5, max_value=20), st.sampled_from(["0", None, 0.0]))
callers = st.sampled_from([BORROWER, LENDER, OUTSIDER, "escrow", "system", ""])


def fresh_funded() -> LoanLedger:
    loans = LoanLedger(initial_time=START)
    request_reference_loan(loans)
    loans.fund_loan(LENDER, 0, attached_value=LOAN_AMOUNT)
    return loans


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(caller=callers, rate=st.integers(min_value=-3, max_value=300),
           duration=st.integers(min_value=-10, max_value=10),
           collateral=amounts, principal=amounts, attached=amounts)
    @settings(max_examples=100)
    def test_request_all_or_nothing(self, caller, rate, duration, collateral, principal, attached):
        """
        PROPERTY: A request either creates exactly one loan or changes nothing.
        """
        loans = LoanLedger(initial_time=START)
        before = snapshot(loans)
        try:
            result = loans.request_loan(caller, rate, duration, collateral, principal, attached)
        except LoanError:
            assert snapshot(loans) == before
        else:
            assert result.loan_id == 0
            assert loans.loan_count == 1
            assert len(loans.events) == 1
            assert loans.escrow_balance() == loans.get_loan(0).collateral_amount

    @given(caller=callers, loan_id=loan_ids, attached=amounts)
    @settings(max_examples=100)
    def test_fund_repay_claim_all_or_nothing(self, caller, loan_id, attached):
        """
        PROPERTY: Refused fund/repay/claim calls leave the ledger untouched.
        """
        loans = fresh_funded()
        past_due(loans)
        for operation in (
            lambda: loans.fund_loan(caller, loan_id, attached),
            lambda: loans.repay_loan(caller, loan_id, attached),
        ):
            before = snapshot(loans)
            try:
                operation()
            except LoanError:
                assert snapshot(loans) == before

        before = snapshot(loans)
        try:
            loans.claim_collateral(caller, loan_id)
        except LoanError:
            assert snapshot(loans) == before


class TestAtomicityExamples:
    """Explicit atomicity examples."""

    def test_wrong_repayment_changes_nothing(self):
        loans = fresh_funded()
        before = snapshot(loans)
        for wrong in ("1.05", "1.0999999999", "1.11", "0"):
            with pytest.raises(LoanError):
                loans.repay_loan(BORROWER, 0, attached_value=wrong)
        assert snapshot(loans) == before

    def test_handler_veto_changes_nothing(self):
        def veto(transfers):
            if any(t.purpose == "repayment" for t in transfers):
                raise ConnectionError("settlement rail unavailable")

        loans = LoanLedger(initial_time=START, transfer_handler=veto)
        request_reference_loan(loans)
        loans.fund_loan(LENDER, 0, attached_value=LOAN_AMOUNT)
        before = snapshot(loans)
        with pytest.raises(ConnectionError):
            loans.repay_loan(BORROWER, 0, attached_value=REPAYMENT)
        assert snapshot(loans) == before
        assert not loans.get_loan(0).is_repaid

    def test_unexpected_ledger_rejection_is_an_error(self):
        """If the ledger refuses a validated transition, nothing is recorded."""
        loans = LoanLedger(initial_time=START)
        request_reference_loan(loans)

        # changes the loan unit between validation and commit
        def tamper(transfers):
            unit = loans.ledger.units["LOAN_0"]
            loans.ledger.units["LOAN_0"] = replace(
                unit, _frozen_state=_freeze_state({**unit.state, "interest_rate": 99})
            )

        loans.transfer_handler = tamper
        events_before = loans.events
        with pytest.raises(LedgerError) as excinfo:
            loans.fund_loan("new_lender", 0, attached_value=LOAN_AMOUNT)
        assert not isinstance(excinfo.value, LoanError)
        assert loans.events == events_before
        assert not loans.ledger.is_registered("new_lender")
        assert loans.balance_of(BORROWER) == -COLLATERAL
