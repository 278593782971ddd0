"""
collateral_ledger - Collateralized Loan Ledger

A registry of collateralized loans on top of an atomic double-entry ledger.
Borrowers lock collateral and request principal, lenders fund, and each loan
ends either repaid (collateral returned) or defaulted (collateral claimed).

Usage:
    from datetime import datetime, timedelta
    from collateral_ledger import LoanLedger

    loans = LoanLedger(initial_time=datetime(2024, 1, 1))
    loans.subscribe(print)

    result = loans.request_loan("alice", interest_rate=10, duration=3600,
                                collateral_amount="1.1", loan_amount="1",
                                attached_value="1.1")
    loans.fund_loan("bob", result.loan_id, attached_value="1")

    loans.advance_time(datetime(2024, 1, 1) + timedelta(seconds=3601))
    loans.claim_collateral("bob", result.loan_id)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    settlement_currency,
    SYSTEM_WALLET,
    ESCROW_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_COLLATERALIZED_LOAN,
    QUANTITY_EPSILON,
    # Exceptions
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    LoanError,
    LoanNotFound,
    InvalidAmount,
    InvalidDuration,
    InvalidInterestRate,
    AlreadyFunded,
    NotFunded,
    AlreadyRepaid,
    AlreadyResolved,
    IncorrectAmount,
    NotOverdue,
    Unauthorized,
    ReentrantCall,
)

# Ledger
from .ledger import Ledger

# Loan units
from .units import (
    LoanStatus,
    LoanTerms,
    LoanState,
    LoanRecord,
    load_loan,
    calculate_repayment_amount,
    calculate_due_date,
    calculate_status,
    calculate_is_overdue,
    compute_loan_request,
    compute_loan_funding,
    compute_loan_repayment,
    compute_collateral_claim,
)

# Events
from .events import (
    LoanRequested,
    LoanFunded,
    LoanRepaid,
    CollateralClaimed,
    ValueTransfer,
    LoanOperationResult,
)

# Loan registry
from .loan_ledger import LoanLedger, DEFAULT_CURRENCY, DEFAULT_DECIMAL_PLACES

__version__ = "1.0.0"
