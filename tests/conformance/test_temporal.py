"""
Temporal Conformance Tests

INVARIANT: History is reconstructible.

    ∀ loan L, ∀ time t ≤ now:
        get_loan_at(L, t) = get_loan(L) as observed at time t

clone_at() unwinds the transaction log, so a snapshot taken later must
agree with what a caller saw live.
"""

from datetime import timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

import pytest

from collateral_ledger import LoanLedger, LoanError, LoanNotFound

from tests.loan_helpers import START


@st.composite
def timeline(draw):
    """Steps of (seconds to wait, action, loan index)."""
    return draw(st.lists(
        st.tuples(
            st.integers(min_value=0, max_value=4000),
            st.sampled_from(["request", "fund", "repay", "claim"]),
            st.integers(min_value=0, max_value=3),
        ),
        min_size=1, max_size=25,
    ))


class TestTemporalProperties:
    """Property-based history tests."""

    @given(timeline())
    @settings(max_examples=100, deadline=None)
    def test_snapshots_match_live_view(self, steps):
        """
        PROPERTY: Every live observation can be reproduced with get_loan_at.
        """
        loans = LoanLedger(initial_time=START)
        now = START
        observed = []
        for wait, action, index in steps:
            now += timedelta(seconds=wait)
            loans.advance_time(now)
            try:
                if action == "request":
                    loans.request_loan(f"b{index}", 10, 3600, "2", "1", "2")
                elif action == "fund":
                    loans.fund_loan("lender", index, "1")
                elif action == "repay":
                    loans.repay_loan(loans.get_loan(index).borrower, index, "1.1")
                else:
                    loans.claim_collateral("lender", index)
            except LoanError:
                pass
            observed.append((now, [loans.get_loan(i) for i in range(loans.loan_count)]))

        # the last observation at an instant is what a snapshot at that instant shows
        final = dict(observed)
        for moment, records in final.items():
            for record in records:
                assert loans.get_loan_at(record.id, moment) == record

    def test_snapshot_before_creation(self):
        loans = LoanLedger(initial_time=START)
        loans.advance_time(START + timedelta(seconds=1))
        loans.request_loan("b", 10, 60, "2", "1", "2")
        with pytest.raises(LoanNotFound):
            loans.get_loan_at(0, START)

