"""
events.py - Records emitted by LoanLedger operations

Events are appended to the ledger's event log after the transaction that
caused them commits. Each carries exactly the fields a front end needs to
react to the transition, plus `name` and `args` for uniform dispatch.

ValueTransfer describes one value movement an operation causes, so that a
front end can mirror it on its own payment backend.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Union

from .core import Transaction


@dataclass(frozen=True, slots=True)
class _LoanEvent:

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def args(self) -> tuple:
        """Field values in declaration order."""
        return tuple(getattr(self, f.name) for f in fields(self))


@dataclass(frozen=True, slots=True)
class LoanRequested(_LoanEvent):
    loan_id: int
    borrower: str
    collateral_amount: Decimal
    loan_amount: Decimal
    interest_rate: int
    due_date: datetime


@dataclass(frozen=True, slots=True)
class LoanFunded(_LoanEvent):
    loan_id: int
    lender: str


@dataclass(frozen=True, slots=True)
class LoanRepaid(_LoanEvent):
    loan_id: int
    borrower: str


@dataclass(frozen=True, slots=True)
class CollateralClaimed(_LoanEvent):
    loan_id: int
    lender: str


LoanEvent = Union[LoanRequested, LoanFunded, LoanRepaid, CollateralClaimed]


@dataclass(frozen=True, slots=True)
class ValueTransfer:
    """
    One value movement caused by a loan operation.

    Attributes:
        amount: Quantity moved (always positive)
        currency: Settlement currency symbol
        payer: Identity the value leaves (the escrow wallet for releases)
        payee: Identity the value reaches
        purpose: One of collateral_deposit, principal_disbursement,
                 repayment, collateral_release, collateral_seizure
    """
    amount: Decimal
    currency: str
    payer: str
    payee: str
    purpose: str

    def __repr__(self) -> str:
        return f"ValueTransfer({self.purpose}: {self.amount} {self.currency} {self.payer}→{self.payee})"


@dataclass(frozen=True, slots=True)
class LoanOperationResult:
    """
    Outcome of a committed loan operation.

    Attributes:
        loan_id: Loan the operation acted on (the new id for requests)
        events: Events emitted by the operation, in order
        transfers: Value movements applied by the operation
        transaction: The ledger transaction that recorded it
        observer_errors: Exceptions raised by observers after the commit
    """
    loan_id: int
    events: Tuple[LoanEvent, ...]
    transfers: Tuple[ValueTransfer, ...]
    transaction: Optional[Transaction] = None
    observer_errors: Tuple[Exception, ...] = ()
