"""
Units module - Ledger units with lifecycle logic.

Currently a single unit type: the collateralized loan record. Its pure
calculations and transition builders are re-exported here for convenience.
"""

from .collateralized_loan import (
    LOAN_SYMBOL_PREFIX,
    PERCENT,
    LoanStatus,
    TERMINAL_STATUSES,
    LoanTerms,
    LoanState,
    LoanRecord,
    loan_symbol,
    parse_amount,
    parse_duration,
    parse_interest_rate,
    load_loan,
    load_loan_record,
    to_state_dict,
    create_loan_unit,
    calculate_repayment_amount,
    calculate_due_date,
    calculate_status,
    calculate_is_overdue,
    compute_loan_request,
    compute_loan_funding,
    compute_loan_repayment,
    compute_collateral_claim,
)
