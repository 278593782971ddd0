"""
collateralized_loan.py - Collateralized Loan Records

=== LOAN MODEL ===

A loan record is a ledger unit (symbol LOAN_<id>) whose state holds the
terms and lifecycle flags. The unit itself carries no positions; value sits
in settlement currency wallets:

    request:  collateral   borrower -> escrow
    fund:     principal    lender   -> borrower
    repay:    repayment    borrower -> lender
              collateral   escrow   -> borrower
    claim:    collateral   escrow   -> lender

Lifecycle:

    REQUESTED --fund--> FUNDED --repay-----------------> REPAID     (terminal)
                               --claim (after due)-----> DEFAULTED  (terminal)

=== PURE FUNCTION ARCHITECTURE ===

1. FROZEN DATACLASSES: LoanTerms (fixed at request), LoanState (lifecycle)
2. PURE CALCULATIONS (calculate_*): explicit inputs, no LedgerView
3. ADAPTER (load_loan): the only place that reads loan state from a LedgerView
4. TRANSITION BUILDERS (compute_*): validate against a view, raise a LoanError
   on refusal, otherwise return a PendingTransaction for Ledger.execute()

Key Formula:
    repayment_amount = loan_amount + loan_amount * interest_rate / 100
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, Inexact, InvalidOperation, localcontext
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    ESCROW_WALLET, RESERVED_WALLETS, UNIT_TYPE_COLLATERALIZED_LOAN,
    UnitNotRegistered,
    LoanNotFound, InvalidAmount, InvalidDuration, InvalidInterestRate,
    AlreadyFunded, NotFunded, AlreadyRepaid, AlreadyResolved,
    IncorrectAmount, NotOverdue, Unauthorized,
    build_transaction, _freeze_state,
)


LOAN_SYMBOL_PREFIX = "LOAN_"
PERCENT = Decimal(100)

Amount = Union[Decimal, int, str, float]
Duration = Union[int, timedelta]


# Move purposes, carried in Move.metadata and surfaced as ValueTransfer.purpose
PURPOSE_COLLATERAL_DEPOSIT = "collateral_deposit"
PURPOSE_PRINCIPAL_DISBURSEMENT = "principal_disbursement"
PURPOSE_REPAYMENT = "repayment"
PURPOSE_COLLATERAL_RELEASE = "collateral_release"
PURPOSE_COLLATERAL_SEIZURE = "collateral_seizure"


class LoanStatus(str, Enum):
    """Lifecycle status of a loan record."""
    REQUESTED = "requested"     # Collateral locked, awaiting a lender
    FUNDED = "funded"           # Principal disbursed, repayment outstanding
    REPAID = "repaid"           # Repaid in full, collateral returned
    DEFAULTED = "defaulted"     # Collateral claimed by the lender


TERMINAL_STATUSES = frozenset({LoanStatus.REPAID, LoanStatus.DEFAULTED})


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanTerms:
    """
    Immutable terms of a loan, fixed when it is requested.
    """
    loan_id: int
    borrower: str
    currency: str
    collateral_amount: Decimal
    loan_amount: Decimal
    interest_rate: int            # Flat percentage, 10 means 10%
    requested_at: datetime
    due_date: datetime


@dataclass(frozen=True, slots=True)
class LoanState:
    """
    Immutable snapshot of the lifecycle part of a loan.

    Each transition produces a new instance.
    """
    lender: Optional[str] = None
    is_funded: bool = False
    is_repaid: bool = False
    is_claimed: bool = False
    funded_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class LoanRecord:
    """
    Read-only view of a loan returned to callers of LoanLedger.

    Combines terms and lifecycle flags with the derived figures a front end
    usually needs.
    """
    id: int
    borrower: str
    lender: Optional[str]
    currency: str
    collateral_amount: Decimal
    loan_amount: Decimal
    interest_rate: int
    requested_at: datetime
    due_date: datetime
    is_funded: bool
    is_repaid: bool
    is_claimed: bool
    funded_at: Optional[datetime]
    closed_at: Optional[datetime]

    @classmethod
    def from_parts(cls, terms: LoanTerms, state: LoanState) -> LoanRecord:
        return cls(
            id=terms.loan_id,
            borrower=terms.borrower,
            lender=state.lender,
            currency=terms.currency,
            collateral_amount=terms.collateral_amount,
            loan_amount=terms.loan_amount,
            interest_rate=terms.interest_rate,
            requested_at=terms.requested_at,
            due_date=terms.due_date,
            is_funded=state.is_funded,
            is_repaid=state.is_repaid,
            is_claimed=state.is_claimed,
            funded_at=state.funded_at,
            closed_at=state.closed_at,
        )

    @property
    def status(self) -> LoanStatus:
        return calculate_status(
            LoanState(self.lender, self.is_funded, self.is_repaid, self.is_claimed)
        )

    @property
    def repayment_amount(self) -> Decimal:
        return calculate_repayment_amount(self.loan_amount, self.interest_rate)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ============================================================================
# INPUT NORMALIZATION
# ============================================================================

def loan_symbol(loan_id: int) -> str:
    """Unit symbol under which a loan is stored, e.g. LOAN_0."""
    return f"{LOAN_SYMBOL_PREFIX}{loan_id}"


def parse_amount(value: Amount, field_name: str = "amount") -> Decimal:
    """
    Convert a caller-supplied value to a finite Decimal.

    Accepts Decimal, int, str and float (floats go through str()). Booleans,
    NaN, infinities and unparseable strings raise InvalidAmount.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"{field_name} must be a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmount(f"{field_name} is not a number: {value!r}") from None
    else:
        raise InvalidAmount(f"{field_name} must be a number, got {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmount(f"{field_name} must be finite, got {value!r}")
    return result


def _require_representable(value: Decimal, currency_unit: Unit, field_name: str) -> None:
    try:
        representable = currency_unit.is_representable(value)
    except InvalidOperation:
        raise InvalidAmount(f"{field_name} exceeds the supported magnitude") from None
    if not representable:
        raise InvalidAmount(
            f"{field_name} {value} exceeds {currency_unit.symbol} precision "
            f"of {currency_unit.decimal_places} decimal places"
        )


def parse_positive_amount(value: Amount, currency_unit: Unit, field_name: str) -> Decimal:
    """Parse an amount that must be > 0 and representable in the currency."""
    result = parse_amount(value, field_name)
    if result <= 0:
        raise InvalidAmount(f"{field_name} must be positive, got {result}")
    _require_representable(result, currency_unit, field_name)
    return result


def parse_interest_rate(interest_rate: Any) -> int:
    """Interest rates are non-negative integer percentages."""
    if isinstance(interest_rate, bool) or not isinstance(interest_rate, int):
        raise InvalidInterestRate(
            f"Interest rate must be an integer percentage, got {interest_rate!r}"
        )
    if interest_rate < 0:
        raise InvalidInterestRate(f"Interest rate cannot be negative, got {interest_rate}")
    return interest_rate


def parse_duration(duration: Any) -> timedelta:
    """Durations are positive whole seconds (int) or a positive timedelta."""
    if isinstance(duration, timedelta):
        result = duration
    elif isinstance(duration, int) and not isinstance(duration, bool):
        try:
            result = timedelta(seconds=duration)
        except OverflowError:
            raise InvalidDuration("Due date out of range") from None
    else:
        raise InvalidDuration(f"Duration must be seconds or a timedelta, got {duration!r}")
    if result <= timedelta(0):
        raise InvalidDuration(f"Duration must be positive, got {duration!r}")
    return result


def require_party(caller: Any) -> str:
    """A caller must be a non-empty identity other than the ledger's own wallets."""
    if not isinstance(caller, str) or not caller.strip():
        raise Unauthorized(f"Caller identity must be a non-empty string, got {caller!r}")
    if caller in RESERVED_WALLETS:
        raise Unauthorized(f"Reserved identity {caller!r} cannot act as a caller")
    return caller


# ============================================================================
# ADAPTER
# ============================================================================

def _require_loan_symbol(view: LedgerView, loan_id: Any) -> str:
    if isinstance(loan_id, bool) or not isinstance(loan_id, int) or loan_id < 0:
        raise LoanNotFound()
    symbol = loan_symbol(loan_id)
    try:
        unit = view.get_unit(symbol)
    except UnitNotRegistered:
        raise LoanNotFound() from None
    if unit.unit_type != UNIT_TYPE_COLLATERALIZED_LOAN:
        raise LoanNotFound()
    return symbol


def load_loan(view: LedgerView, loan_id: int) -> Tuple[LoanTerms, LoanState]:
    """
    Load a loan from ledger state as typed frozen dataclasses.

    Raises:
        LoanNotFound: If loan_id is not an existing loan
    """
    raw = view.get_unit_state(_require_loan_symbol(view, loan_id))
    terms = LoanTerms(
        loan_id=raw['loan_id'],
        borrower=raw['borrower'],
        currency=raw['currency'],
        collateral_amount=raw['collateral_amount'],
        loan_amount=raw['loan_amount'],
        interest_rate=raw['interest_rate'],
        requested_at=raw['requested_at'],
        due_date=raw['due_date'],
    )
    state = LoanState(
        lender=raw.get('lender'),
        is_funded=raw.get('is_funded', False),
        is_repaid=raw.get('is_repaid', False),
        is_claimed=raw.get('is_claimed', False),
        funded_at=raw.get('funded_at'),
        closed_at=raw.get('closed_at'),
    )
    return terms, state


def load_loan_record(view: LedgerView, loan_id: int) -> LoanRecord:
    return LoanRecord.from_parts(*load_loan(view, loan_id))


def to_state_dict(terms: LoanTerms, state: LoanState) -> Dict[str, Any]:
    """Inverse of load_loan(): the dict stored as the loan unit's state."""
    return {
        'loan_id': terms.loan_id,
        'borrower': terms.borrower,
        'lender': state.lender,
        'currency': terms.currency,
        'collateral_amount': terms.collateral_amount,
        'loan_amount': terms.loan_amount,
        'interest_rate': terms.interest_rate,
        'requested_at': terms.requested_at,
        'due_date': terms.due_date,
        'is_funded': state.is_funded,
        'is_repaid': state.is_repaid,
        'is_claimed': state.is_claimed,
        'funded_at': state.funded_at,
        'closed_at': state.closed_at,
    }


def create_loan_unit(terms: LoanTerms, state: Optional[LoanState] = None) -> Unit:
    """
    Create the unit that stores a loan record.

    The unit never holds positions, so its balance bounds are zero.
    """
    return Unit(
        symbol=loan_symbol(terms.loan_id),
        name=f"Collateralized loan #{terms.loan_id}",
        unit_type=UNIT_TYPE_COLLATERALIZED_LOAN,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        decimal_places=0,
        _frozen_state=_freeze_state(to_state_dict(terms, state or LoanState())),
    )


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_repayment_amount(loan_amount: Decimal, interest_rate: int) -> Decimal:
    """
    Principal plus flat interest.

    Example:
        calculate_repayment_amount(Decimal("1"), 10) -> Decimal("1.1")
    """
    return loan_amount + loan_amount * interest_rate / PERCENT


def calculate_due_date(requested_at: datetime, duration: timedelta) -> datetime:
    """Raises InvalidDuration if the due date falls outside the datetime range."""
    try:
        return requested_at + duration
    except OverflowError:
        raise InvalidDuration("Due date out of range") from None


def calculate_status(state: LoanState) -> LoanStatus:
    if state.is_claimed:
        return LoanStatus.DEFAULTED
    if state.is_repaid:
        return LoanStatus.REPAID
    if state.is_funded:
        return LoanStatus.FUNDED
    return LoanStatus.REQUESTED


def calculate_is_overdue(terms: LoanTerms, state: LoanState, now: datetime) -> bool:
    """
    True when the lender may claim the collateral: funded, unresolved and
    strictly past the due date.
    """
    return calculate_status(state) == LoanStatus.FUNDED and now > terms.due_date


# ============================================================================
# TRANSITION BUILDERS
# ============================================================================

def _origin(caller: str, symbol: str, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=caller,
        unit_symbol=symbol,
        event_type=event_type,
    )


def _move(quantity: Decimal, currency: str, source: str, dest: str,
          symbol: str, purpose: str) -> Move:
    return Move(
        quantity=quantity,
        unit_symbol=currency,
        source=source,
        dest=dest,
        contract_id=f"{purpose}_{symbol}",
        metadata={'purpose': purpose},
    )


def _transition(view: LedgerView, terms: LoanTerms, old: LoanState, new: LoanState,
                moves, caller: str, event_type: str) -> PendingTransaction:
    symbol = loan_symbol(terms.loan_id)
    change = UnitStateChange(
        unit=symbol,
        old_state=to_state_dict(terms, old),
        new_state=to_state_dict(terms, new),
    )
    return build_transaction(view, list(moves), [change], _origin(caller, symbol, event_type))


def compute_loan_request(
    view: LedgerView,
    loan_id: int,
    caller: str,
    interest_rate: int,
    duration: Duration,
    collateral_amount: Amount,
    loan_amount: Amount,
    attached_value: Amount,
    currency: str,
) -> PendingTransaction:
    """
    Open a new loan: lock the borrower's collateral in escrow.

    Validation order: caller, interest rate, duration, amounts, attached value.

    Returns:
        PendingTransaction creating the LOAN_<id> unit and moving the
        collateral from the borrower to escrow.

    Raises:
        Unauthorized, InvalidInterestRate, InvalidDuration, InvalidAmount

    Example:
        pending = compute_loan_request(view, 0, "alice", 10, 3600,
                                       "1.1", "1", "1.1", "ETH")
        ledger.execute(pending)
    """
    borrower = require_party(caller)
    rate = parse_interest_rate(interest_rate)
    term = parse_duration(duration)
    currency_unit = view.get_unit(currency)
    collateral = parse_positive_amount(collateral_amount, currency_unit, "collateral_amount")
    principal = parse_positive_amount(loan_amount, currency_unit, "loan_amount")
    attached = parse_amount(attached_value, "attached_value")
    if attached != collateral:
        raise InvalidAmount(
            f"Attached value {attached} must equal collateral_amount {collateral}"
        )
    try:
        with localcontext() as ctx:
            ctx.traps[Inexact] = True
            repayment = calculate_repayment_amount(principal, rate)
    except Inexact:
        raise InvalidAmount("repayment amount exceeds the supported magnitude") from None
    _require_representable(repayment, currency_unit, "repayment amount")

    now = view.current_time
    terms = LoanTerms(
        loan_id=loan_id,
        borrower=borrower,
        currency=currency,
        collateral_amount=collateral,
        loan_amount=principal,
        interest_rate=rate,
        requested_at=now,
        due_date=calculate_due_date(now, term),
    )
    symbol = loan_symbol(loan_id)
    moves = [_move(collateral, currency, borrower, ESCROW_WALLET, symbol,
                   PURPOSE_COLLATERAL_DEPOSIT)]
    return build_transaction(
        view, moves,
        origin=_origin(borrower, symbol, "REQUEST"),
        units_to_create=(create_loan_unit(terms),),
    )


def compute_loan_funding(
    view: LedgerView,
    loan_id: int,
    caller: str,
    attached_value: Amount,
) -> PendingTransaction:
    """
    Fund a requested loan: the caller becomes lender and pays the principal
    to the borrower.

    Raises:
        LoanNotFound, AlreadyFunded, Unauthorized,
        IncorrectAmount ("Incorrect funding amount.")
    """
    lender = require_party(caller)
    terms, state = load_loan(view, loan_id)
    if state.is_funded:
        raise AlreadyFunded()
    if lender == terms.borrower:
        raise Unauthorized("Borrower cannot fund their own loan.")
    if parse_amount(attached_value, "attached_value") != terms.loan_amount:
        raise IncorrectAmount("Incorrect funding amount.")

    now = view.current_time
    new_state = LoanState(lender=lender, is_funded=True, funded_at=now)
    moves = [_move(terms.loan_amount, terms.currency, lender, terms.borrower,
                   loan_symbol(loan_id), PURPOSE_PRINCIPAL_DISBURSEMENT)]
    return _transition(view, terms, state, new_state, moves, lender, "FUND")


def compute_loan_repayment(
    view: LedgerView,
    loan_id: int,
    caller: str,
    attached_value: Amount,
) -> PendingTransaction:
    """
    Repay a funded loan in full and release the collateral.

    Repayment after the due date is accepted as long as the collateral has
    not been claimed.

    Raises:
        LoanNotFound, NotFunded, AlreadyRepaid, AlreadyResolved, Unauthorized,
        IncorrectAmount ("Incorrect repayment amount.")
    """
    borrower = require_party(caller)
    terms, state = load_loan(view, loan_id)
    if not state.is_funded:
        raise NotFunded()
    if state.is_repaid:
        raise AlreadyRepaid()
    if state.is_claimed:
        raise AlreadyResolved("Collateral has already been claimed.")
    if borrower != terms.borrower:
        raise Unauthorized("Only the borrower can repay this loan.")
    due = calculate_repayment_amount(terms.loan_amount, terms.interest_rate)
    if parse_amount(attached_value, "attached_value") != due:
        raise IncorrectAmount("Incorrect repayment amount.")

    symbol = loan_symbol(loan_id)
    new_state = LoanState(
        lender=state.lender,
        is_funded=True,
        is_repaid=True,
        funded_at=state.funded_at,
        closed_at=view.current_time,
    )
    moves = [
        _move(due, terms.currency, borrower, state.lender, symbol, PURPOSE_REPAYMENT),
        _move(terms.collateral_amount, terms.currency, ESCROW_WALLET, borrower, symbol,
              PURPOSE_COLLATERAL_RELEASE),
    ]
    return _transition(view, terms, state, new_state, moves, borrower, "REPAY")


def compute_collateral_claim(
    view: LedgerView,
    loan_id: int,
    caller: str,
) -> PendingTransaction:
    """
    Seize the collateral of an overdue loan for its lender.

    Raises:
        LoanNotFound, NotFunded, AlreadyResolved, Unauthorized,
        NotOverdue ("Loan is not overdue.")
    """
    lender = require_party(caller)
    terms, state = load_loan(view, loan_id)
    if not state.is_funded:
        raise NotFunded()
    if state.is_repaid or state.is_claimed:
        raise AlreadyResolved()
    if lender != state.lender:
        raise Unauthorized("Only the lender can claim the collateral.")
    if not calculate_is_overdue(terms, state, view.current_time):
        raise NotOverdue()

    symbol = loan_symbol(loan_id)
    new_state = LoanState(
        lender=lender,
        is_funded=True,
        is_claimed=True,
        funded_at=state.funded_at,
        closed_at=view.current_time,
    )
    moves = [_move(terms.collateral_amount, terms.currency, ESCROW_WALLET, lender, symbol,
                   PURPOSE_COLLATERAL_SEIZURE)]
    return _transition(view, terms, state, new_state, moves, lender, "CLAIM")
