"""
test_loan_scenarios.py - End-to-end loan lifecycle scenarios

Scenarios:
- A: request a loan on the reference terms
- B: fund it
- C: repay it in full; a short repayment is refused
- D: let it go overdue and claim the collateral, once
- E: fund a loan that does not exist
- Mixed book: several loans ending differently, audited afterwards
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from collateral_ledger import (
    LoanLedger, LoanStatus,
    LoanRequested, LoanFunded, LoanRepaid, CollateralClaimed,
    LoanNotFound, IncorrectAmount, AlreadyResolved, AlreadyFunded, AlreadyRepaid,
    NotOverdue,
)

from tests.loan_helpers import (
    START, BORROWER, LENDER, OUTSIDER,
    DURATION, COLLATERAL, LOAN_AMOUNT, REPAYMENT,
    request_reference_loan,
)


class TestReferenceScenarios:
    """The five reference scenarios, each from a fresh ledger."""

    def test_a_request(self, loans):
        """A: request(10%, 3600s, collateral 1.1, principal 1.0) -> id 0."""
        result = loans.request_loan(BORROWER, 10, 3600, Decimal("1.1"), Decimal("1.0"),
                                    attached_value=Decimal("1.1"))
        assert result.loan_id == 0
        assert result.events == (
            LoanRequested(0, BORROWER, Decimal("1.1"), Decimal("1.0"), 10,
                          START + timedelta(seconds=3600)),
        )

    def test_b_fund(self, requested):
        """B: fund(0, 1.0) -> LoanFunded(0, lender), loan is funded."""
        result = requested.fund_loan(LENDER, 0, attached_value=Decimal("1.0"))
        assert result.events == (LoanFunded(0, LENDER),)
        assert requested.get_loan(0).is_funded is True

    def test_c_repay(self, funded):
        """C: repay(0, 1.1) -> LoanRepaid(0, borrower)."""
        result = funded.repay_loan(BORROWER, 0, attached_value=Decimal("1.1"))
        assert result.events == (LoanRepaid(0, BORROWER),)
        assert funded.loan_status(0) == LoanStatus.REPAID

    def test_c_short_repayment(self, funded):
        """C: repay(0, 1.05) -> IncorrectAmount, loan still open."""
        with pytest.raises(IncorrectAmount, match="Incorrect repayment amount."):
            funded.repay_loan(BORROWER, 0, attached_value=Decimal("1.05"))
        assert funded.loan_status(0) == LoanStatus.FUNDED

    def test_d_claim_after_due(self, funded):
        """D: 3601s later the lender claims once; a second claim is refused."""
        funded.advance_time(START + timedelta(seconds=3601))
        result = funded.claim_collateral(LENDER, 0)
        assert result.events == (CollateralClaimed(0, LENDER),)
        with pytest.raises(AlreadyResolved):
            funded.claim_collateral(LENDER, 0)

    def test_e_fund_missing(self, loans):
        """E: fund(999) on an empty ledger -> LoanNotFound."""
        with pytest.raises(LoanNotFound, match="Loan does not exist."):
            loans.fund_loan(LENDER, 999, attached_value=Decimal("1.0"))


class TestFullLifecycles:
    """Longer walkthroughs across several loans."""

    def test_happy_path_event_log(self, loans):
        request_reference_loan(loans)
        loans.advance_time(START + timedelta(minutes=5))
        loans.fund_loan(LENDER, 0, LOAN_AMOUNT)
        loans.advance_time(START + timedelta(minutes=50))
        loans.repay_loan(BORROWER, 0, REPAYMENT)

        assert [e.name for e in loans.events] == ["LoanRequested", "LoanFunded", "LoanRepaid"]
        loan = loans.get_loan(0)
        assert loan.funded_at == START + timedelta(minutes=5)
        assert loan.closed_at == START + timedelta(minutes=50)
        assert loans.balance_of(LENDER) == REPAYMENT - LOAN_AMOUNT
        assert loans.escrow_balance() == Decimal("0")

    def test_default_path(self, loans):
        request_reference_loan(loans)
        loans.fund_loan(LENDER, 0, LOAN_AMOUNT)
        loans.advance_time(START + timedelta(seconds=DURATION))
        with pytest.raises(NotOverdue):
            loans.claim_collateral(LENDER, 0)
        loans.advance_time(START + timedelta(seconds=DURATION, microseconds=1))
        loans.claim_collateral(LENDER, 0)

        assert loans.loan_status(0) == LoanStatus.DEFAULTED
        assert loans.balance_of(LENDER) == COLLATERAL - LOAN_AMOUNT
        assert loans.balance_of(BORROWER) == LOAN_AMOUNT - COLLATERAL

    def test_terminal_loans_refuse_everything(self, loans):
        request_reference_loan(loans)
        request_reference_loan(loans)
        for i in (0, 1):
            loans.fund_loan(LENDER, i, LOAN_AMOUNT)
        loans.repay_loan(BORROWER, 0, REPAYMENT)
        loans.advance_time(START + timedelta(hours=2))
        loans.claim_collateral(LENDER, 1)

        for loan_id in (0, 1):
            with pytest.raises(AlreadyFunded):
                loans.fund_loan(OUTSIDER, loan_id, LOAN_AMOUNT)
            with pytest.raises((AlreadyRepaid, AlreadyResolved)):
                loans.repay_loan(BORROWER, loan_id, REPAYMENT)
            with pytest.raises(AlreadyResolved):
                loans.claim_collateral(LENDER, loan_id)

    def test_mixed_book_audit(self):
        loans = LoanLedger(name="book", currency="USDC", decimal_places=6, initial_time=START)
        terms = [
            ("ann", "150", "100", 8, timedelta(days=30)),
            ("ben", "3000", "2000", 12, timedelta(days=7)),
            ("cat", "75.5", "50", 0, timedelta(days=1)),
            ("dan", "10", "5", 20, timedelta(days=1)),
        ]
        for borrower, collateral, principal, rate, term in terms:
            loans.request_loan(borrower, rate, term, collateral, principal, collateral)

        loans.fund_loan("fund_a", 0, "100")
        loans.fund_loan("fund_b", 1, "2000")
        loans.fund_loan("fund_a", 2, "50")

        loans.advance_time(START + timedelta(days=2))
        assert loans.list_overdue() == [2]
        loans.claim_collateral("fund_a", 2)
        loans.repay_loan("ben", 1, "2240")

        assert [r.status for r in loans.list_loans()] == [
            LoanStatus.FUNDED, LoanStatus.REPAID, LoanStatus.DEFAULTED, LoanStatus.REQUESTED,
        ]
        assert [r.id for r in loans.list_loans(lender="fund_a")] == [0, 2]
        assert loans.escrow_balance() == Decimal("160")
        assert loans.balance_of("fund_a") == Decimal("-100") - Decimal("50") + Decimal("75.5")
        assert loans.balance_of("fund_b") == Decimal("240")

        audit = loans.verify_accounting()
        assert audit["valid"]
        assert audit["escrow_expected"] == audit["escrow_actual"] == Decimal("160")

        snapshot = loans.get_loan_at(2, START + timedelta(days=1))
        assert snapshot.status == LoanStatus.FUNDED
        assert loans.transaction_log[0].exec_id.startswith("exec:book:")
