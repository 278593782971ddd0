"""
Concurrency Conformance Tests

INVARIANT: Operations are serialized.

    Concurrent fund/repay/claim calls on one loan: exactly one of each
    competing kind succeeds, never both a repay and a claim.
    Concurrent requests: ids are unique and contiguous.

INVARIANT: No nested state changes.

    A transfer handler that calls back into a state-changing operation gets
    ReentrantCall; the outer operation still decides its own outcome.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from collateral_ledger import (
    LoanLedger, LoanError, ReentrantCall, LoanStatus, AlreadyFunded,
)

from tests.loan_helpers import (
    START, BORROWER, LENDER, COLLATERAL, LOAN_AMOUNT, REPAYMENT,
    request_reference_loan, past_due,
)


def race(n, fn):
    """Run fn(i) for i in range(n) from n threads released together."""
    barrier = threading.Barrier(n)
    outcomes = [None] * n

    def worker(i):
        barrier.wait()
        try:
            outcomes[i] = ("ok", fn(i))
        except LoanError as e:
            outcomes[i] = ("error", e.code)

    with ThreadPoolExecutor(max_workers=n) as pool:
        list(pool.map(worker, range(n)))
    return outcomes


class TestSerialization:
    """Concurrent calls against one LoanLedger."""

    def test_concurrent_requests_get_unique_ids(self):
        loans = LoanLedger(initial_time=START)
        outcomes = race(16, lambda i: request_reference_loan(loans, f"b{i}").loan_id)
        ids = sorted(value for kind, value in outcomes)
        assert ids == list(range(16))
        assert loans.escrow_balance() == COLLATERAL * 16

    def test_single_winner_for_funding(self):
        loans = LoanLedger(initial_time=START)
        request_reference_loan(loans)
        outcomes = race(8, lambda i: loans.fund_loan(f"lender_{i}", 0, LOAN_AMOUNT).loan_id)
        assert [o[0] for o in outcomes].count("ok") == 1
        assert all(o == ("error", AlreadyFunded.code) for o in outcomes if o[0] == "error")
        assert loans.balance_of(BORROWER) == LOAN_AMOUNT - COLLATERAL

    def test_repay_and_claim_race(self):
        loans = LoanLedger(initial_time=START)
        request_reference_loan(loans)
        loans.fund_loan(LENDER, 0, LOAN_AMOUNT)
        past_due(loans)

        def act(i):
            if i % 2:
                return loans.repay_loan(BORROWER, 0, REPAYMENT).events[0].name
            return loans.claim_collateral(LENDER, 0).events[0].name

        outcomes = race(8, act)
        winners = [value for kind, value in outcomes if kind == "ok"]
        assert len(winners) == 1
        assert loans.get_loan(0).status in (LoanStatus.REPAID, LoanStatus.DEFAULTED)
        assert loans.escrow_balance() == Decimal("0")
        assert loans.verify_accounting()["valid"]

    def test_many_loans_in_parallel(self):
        loans = LoanLedger(initial_time=START)

        def lifecycle(i):
            borrower, lender = f"b{i}", f"l{i}"
            loan_id = loans.request_loan(borrower, 10, 60, "2", "1", "2").loan_id
            loans.fund_loan(lender, loan_id, "1")
            loans.repay_loan(borrower, loan_id, "1.1")
            return loan_id

        outcomes = race(12, lifecycle)
        assert all(kind == "ok" for kind, _ in outcomes)
        assert len(loans.events) == 36
        assert loans.escrow_balance() == Decimal("0")
        assert loans.verify_accounting()["valid"]


class TestReentrancy:
    """Nested calls from the transfer handler."""

    def test_nested_operation_refused(self):
        nested = []

        def handler(transfers):
            try:
                loans.request_loan("intruder", 10, 60, "1", "1", "1")
            except ReentrantCall as e:
                nested.append(e.code)

        loans = LoanLedger(initial_time=START, transfer_handler=handler)
        request_reference_loan(loans)
        assert nested == ["ReentrantCall"]
        assert loans.loan_count == 1
        assert loans.list_loans(borrower="intruder") == []

    def test_nested_error_propagating_aborts_outer(self):
        def handler(transfers):
            loans.fund_loan(LENDER, 0, LOAN_AMOUNT)

        loans = LoanLedger(initial_time=START, transfer_handler=handler)
        with pytest.raises(ReentrantCall):
            request_reference_loan(loans)
        assert loans.loan_count == 0
        assert loans.events == ()

    def test_queries_allowed_from_handler(self):
        seen = []

        def handler(transfers):
            seen.append((loans.escrow_balance(), loans.loan_count))

        loans = LoanLedger(initial_time=START, transfer_handler=handler)
        request_reference_loan(loans)
        assert seen == [(Decimal("0"), 0)]

    def test_ledger_usable_after_reentrancy_failure(self):
        calls = []

        def handler(transfers):
            calls.append(transfers)
            if len(calls) == 1:
                loans.claim_collateral(LENDER, 0)

        loans = LoanLedger(initial_time=START, transfer_handler=handler)
        with pytest.raises(ReentrantCall):
            request_reference_loan(loans)
        result = request_reference_loan(loans)
        assert result.loan_id == 0
        loans.advance_time(START + timedelta(minutes=1))
        assert loans.get_loan(0).status == LoanStatus.REQUESTED
