#!/usr/bin/env python3
"""
demo.py - Walkthrough: Collateralized Loans Step by Step

Each step runs one loan operation against a fresh or shared LoanLedger and
prints what changed. Press Enter to advance.

WHAT YOU'LL SEE:
  1: Request   - collateral locked in escrow, loan #0 created
  2: Fund      - lender pays principal to the borrower
  3: Repay     - wrong amount refused, exact amount accepted, collateral returned
  4: Default   - loan goes overdue, lender claims the collateral exactly once
  5: Not found - operations on unknown ids are refused
  6: Audit     - zero-sum check, escrow check, historical snapshot

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from collateral_ledger import (
    LoanLedger, LoanError, LoanStatus,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the walkthrough. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    currency: str = "ETH"
    interest_rate: int = 10
    duration_seconds: int = 3600
    collateral: Decimal = Decimal("1.1")
    loan_amount: Decimal = Decimal("1")
    verbose_ledger: bool = False


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def show_balances(loans: LoanLedger, *identities: str):
    for identity in identities:
        print(f"  {identity:<10} {loans.balance_of(identity):>8} {loans.currency}")
    print(f"  {'escrow':<10} {loans.escrow_balance():>8} {loans.currency}")


def show_refusal(label: str, call):
    try:
        call()
    except LoanError as e:
        print(f"  {label:<40} -> refused: {e.code}: {e.message}")
    else:
        print(f"  {label:<40} -> accepted")


def new_ledger() -> LoanLedger:
    loans = LoanLedger(
        currency=CONFIG.currency,
        initial_time=CONFIG.start_time,
        verbose=CONFIG.verbose_ledger,
    )
    loans.subscribe(lambda event: print(f"  event: {event.name}{event.args}"))
    return loans


def request(loans: LoanLedger):
    return loans.request_loan(
        "borrower", CONFIG.interest_rate, CONFIG.duration_seconds,
        CONFIG.collateral, CONFIG.loan_amount, attached_value=CONFIG.collateral,
    )


# ============================================================================
# STEPS
# ============================================================================

def step_01_request() -> LoanLedger:
    step_header(1, "Request a Loan",
        "The borrower locks collateral and states the principal they want.")
    loans = new_ledger()
    print(f">>> loans.request_loan('borrower', {CONFIG.interest_rate}, "
          f"{CONFIG.duration_seconds}, {CONFIG.collateral}, {CONFIG.loan_amount}, "
          f"attached_value={CONFIG.collateral})")
    result = request(loans)
    print(f"\n  new loan id: {result.loan_id}")
    for transfer in result.transfers:
        print(f"  {transfer}")
    section_header("Balances (net flow with the ledger)")
    show_balances(loans, "borrower")
    return loans


def step_02_fund(loans: LoanLedger):
    step_header(2, "Fund the Loan",
        "A lender pays exactly the requested principal and becomes the counterparty.")
    show_refusal("fund with 0.9", lambda: loans.fund_loan("lender", 0, "0.9"))
    show_refusal("borrower funds own loan", lambda: loans.fund_loan("borrower", 0, CONFIG.loan_amount))
    loans.fund_loan("lender", 0, CONFIG.loan_amount)
    show_refusal("second lender funds", lambda: loans.fund_loan("late", 0, CONFIG.loan_amount))
    section_header("Balances")
    show_balances(loans, "borrower", "lender")


def step_03_repay(loans: LoanLedger):
    step_header(3, "Repay",
        "Repayment must be principal plus flat interest, to the last decimal.")
    due = loans.repayment_amount(0)
    print(f"  repayment due: {due} {loans.currency}")
    show_refusal("repay 1.05", lambda: loans.repay_loan("borrower", 0, "1.05"))
    loans.advance_time(CONFIG.start_time + timedelta(minutes=30))
    loans.repay_loan("borrower", 0, due)
    show_refusal("repay again", lambda: loans.repay_loan("borrower", 0, due))
    section_header("Balances")
    show_balances(loans, "borrower", "lender")
    print(f"\n  status: {loans.loan_status(0).value}")


def step_04_default():
    step_header(4, "Default and Claim",
        "Past the due date the lender may take the collateral, once.")
    loans = new_ledger()
    request(loans)
    loans.fund_loan("lender", 0, CONFIG.loan_amount)
    show_refusal("claim before due", lambda: loans.claim_collateral("lender", 0))
    loans.advance_time(CONFIG.start_time + timedelta(seconds=CONFIG.duration_seconds + 1))
    print(f"  overdue loans: {loans.list_overdue()}")
    loans.claim_collateral("lender", 0)
    show_refusal("claim again", lambda: loans.claim_collateral("lender", 0))
    show_refusal("late repayment", lambda: loans.repay_loan("borrower", 0, loans.repayment_amount(0)))
    section_header("Balances")
    show_balances(loans, "borrower", "lender")
    return loans


def step_05_not_found():
    step_header(5, "Unknown Loans",
        "Operations on ids that were never issued are refused.")
    loans = new_ledger()
    show_refusal("fund 999 on an empty ledger", lambda: loans.fund_loan("lender", 999, "1"))
    show_refusal("claim -1", lambda: loans.claim_collateral("lender", -1))


def step_06_audit(loans: LoanLedger):
    step_header(6, "Audit",
        "Value is conserved and history can be reconstructed from the log.")
    audit = loans.verify_accounting()
    print(f"  accounting valid: {audit['valid']}")
    print(f"  escrow expected {audit['escrow_expected']}, actual {audit['escrow_actual']}")
    before_due = loans.get_loan_at(0, CONFIG.start_time)
    print(f"  loan 0 at {CONFIG.start_time}: {before_due.status.value}")
    print(f"  loan 0 now: {loans.loan_status(0).value}")
    section_header("Transaction log")
    for tx in loans.transaction_log:
        print(f"  #{tx.sequence_number} {tx.origin.event_type:<8} {tx.execution_time}  "
              + ", ".join(f"{m.quantity} {m.source}→{m.dest}" for m in tx.moves))
    assert audit['valid']
    assert loans.loan_status(0) == LoanStatus.DEFAULTED


def main():
    loans = step_01_request()
    wait_for_enter()
    step_02_fund(loans)
    wait_for_enter()
    step_03_repay(loans)
    wait_for_enter()
    defaulted = step_04_default()
    wait_for_enter()
    step_05_not_found()
    wait_for_enter()
    step_06_audit(defaulted)
    print("\nDone.")


if __name__ == "__main__":
    main()
