"""
loan_ledger.py - Registry of collateralized loans

LoanLedger is the component front ends talk to. It owns:
    - the loan id counter (sequential from 0, never reused)
    - a Ledger holding the settlement currency balances and one unit per loan
    - the append-only event log and the observers subscribed to it
    - an optional transfer handler that mirrors value movements elsewhere

Every operation runs the same pipeline under one lock:

    compute_*(view, ...)        validate, build PendingTransaction or raise LoanError
    transfer_handler(transfers) may veto by raising; nothing has changed yet
    Ledger.execute(pending)     moves and state change applied atomically
    events appended             observers notified in commit order

Example:
    loans = LoanLedger(initial_time=datetime(2024, 1, 1))
    loans.request_loan("alice", 10, 3600, "1.1", "1", attached_value="1.1")
    loans.fund_loan("bob", 0, attached_value="1")
    loans.repay_loan("alice", 0, attached_value="1.1")
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
import threading
from typing import Callable, List, Optional, Tuple, Union

from .core import (
    PendingTransaction, Transaction, ExecuteResult,
    ESCROW_WALLET,
    LedgerError, LoanError, ReentrantCall,
    settlement_currency,
)
from .ledger import Ledger
from .events import (
    LoanEvent, LoanRequested, LoanFunded, LoanRepaid, CollateralClaimed,
    ValueTransfer, LoanOperationResult,
)
from .units.collateralized_loan import (
    LoanRecord, LoanStatus, Amount, Duration, TERMINAL_STATUSES,
    load_loan, load_loan_record, calculate_is_overdue, calculate_status,
    compute_loan_request, compute_loan_funding, compute_loan_repayment,
    compute_collateral_claim,
)


DEFAULT_CURRENCY = "ETH"
DEFAULT_DECIMAL_PLACES = 18

Observer = Callable[[LoanEvent], None]
TransferHandler = Callable[[Tuple[ValueTransfer, ...]], None]


class LoanLedger:
    """
    Collateralized loan registry with atomic, serialized operations.

    Operations either commit completely (state change, value moves, events)
    or raise and leave no trace. All operations and queries hold a single
    re-entrant lock; a state-changing call made while another is in flight
    (from a transfer handler, for instance) raises ReentrantCall.

    Observers run after commit, still under the lock, and may call back into
    the ledger. Every observer receives every event. An observer that raises
    does not undo the committed operation; its exception is reported in
    LoanOperationResult.observer_errors instead.
    """

    def __init__(
        self,
        name: str = "loans",
        currency: str = DEFAULT_CURRENCY,
        decimal_places: int = DEFAULT_DECIMAL_PLACES,
        initial_time: Optional[datetime] = None,
        verbose: bool = False,
        transfer_handler: Optional[TransferHandler] = None,
    ):
        """
        Create an empty loan ledger.

        Args:
            name: Ledger name, used in transaction exec ids
            currency: Settlement currency for collateral, principal and interest
            decimal_places: Precision of the settlement currency
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print one line per committed or refused operation
            transfer_handler: Called with each operation's transfers before commit
        """
        self.name = name
        self.currency = currency
        self.verbose = verbose
        self.transfer_handler = transfer_handler
        self._lock = threading.RLock()
        self._in_flight = False
        self._next_id = 0
        self._events: List[LoanEvent] = []
        self._observers: List[Observer] = []

        self._ledger = Ledger(name, initial_time=initial_time, verbose=verbose)
        self._ledger.register_unit(settlement_currency(currency, currency, decimal_places))
        self._ledger.register_wallet(ESCROW_WALLET)

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[LOAN] {message}")

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def request_loan(
        self,
        caller: str,
        interest_rate: int,
        duration: Duration,
        collateral_amount: Amount,
        loan_amount: Amount,
        attached_value: Amount,
    ) -> LoanOperationResult:
        """
        Lock collateral and open a loan request.

        Args:
            caller: Borrower identity
            interest_rate: Flat interest as an integer percentage
            duration: Seconds (int) or timedelta until the due date
            collateral_amount: Collateral to lock
            loan_amount: Principal the borrower wants to receive
            attached_value: Value sent with the call; must equal collateral_amount

        Returns:
            LoanOperationResult whose loan_id is the new loan's id

        Raises:
            Unauthorized, InvalidInterestRate, InvalidDuration, InvalidAmount
        """
        def build() -> Tuple[int, PendingTransaction]:
            loan_id = self._next_id
            return loan_id, compute_loan_request(
                self._ledger, loan_id, caller, interest_rate, duration,
                collateral_amount, loan_amount, attached_value, self.currency,
            )

        def emit(record: LoanRecord) -> List[LoanEvent]:
            return [LoanRequested(
                record.id, record.borrower, record.collateral_amount,
                record.loan_amount, record.interest_rate, record.due_date,
            )]

        return self._run("request", caller, build, emit, creates_loan=True)

    def fund_loan(self, caller: str, loan_id: int, attached_value: Amount) -> LoanOperationResult:
        """
        Pay the principal of a requested loan and become its lender.

        Raises:
            LoanNotFound, AlreadyFunded, Unauthorized, IncorrectAmount
        """
        return self._run(
            "fund", caller,
            lambda: (loan_id, compute_loan_funding(self._ledger, loan_id, caller, attached_value)),
            lambda record: [LoanFunded(record.id, record.lender)],
        )

    def repay_loan(self, caller: str, loan_id: int, attached_value: Amount) -> LoanOperationResult:
        """
        Repay principal plus interest and get the collateral back.

        Raises:
            LoanNotFound, NotFunded, AlreadyRepaid, AlreadyResolved,
            Unauthorized, IncorrectAmount
        """
        return self._run(
            "repay", caller,
            lambda: (loan_id, compute_loan_repayment(self._ledger, loan_id, caller, attached_value)),
            lambda record: [LoanRepaid(record.id, record.borrower)],
        )

    def claim_collateral(self, caller: str, loan_id: int) -> LoanOperationResult:
        """
        Seize the collateral of an overdue loan.

        Raises:
            LoanNotFound, NotFunded, AlreadyResolved, Unauthorized, NotOverdue
        """
        return self._run(
            "claim", caller,
            lambda: (loan_id, compute_collateral_claim(self._ledger, loan_id, caller)),
            lambda record: [CollateralClaimed(record.id, record.lender)],
        )

    def _run(
        self,
        operation: str,
        caller: str,
        build: Callable[[], Tuple[int, PendingTransaction]],
        emit: Callable[[LoanRecord], List[LoanEvent]],
        creates_loan: bool = False,
    ) -> LoanOperationResult:
        with self._lock:
            if self._in_flight:
                raise ReentrantCall(f"Cannot {operation} while another loan operation is in flight.")
            self._in_flight = True
            try:
                try:
                    loan_id, pending = build()
                except LoanError as e:
                    self._log(f"REFUSED {operation} by {caller!r}: {e.code}: {e.message}")
                    raise

                transfers = tuple(
                    ValueTransfer(
                        amount=m.quantity,
                        currency=m.unit_symbol,
                        payer=m.source,
                        payee=m.dest,
                        purpose=m.metadata['purpose'],
                    )
                    for m in pending.moves
                )
                if self.transfer_handler is not None:
                    self.transfer_handler(transfers)

                tx = self._commit(pending)
                if creates_loan:
                    self._next_id += 1
                events = tuple(emit(load_loan_record(self._ledger, loan_id)))
                self._events.extend(events)
            finally:
                self._in_flight = False

            self._log(f"{operation.upper()} #{loan_id} by {caller}: "
                      + ", ".join(repr(t) for t in transfers))
            observer_errors = self._notify(events)
            return LoanOperationResult(loan_id, events, transfers, tx, observer_errors)

    def _notify(self, events: Tuple[LoanEvent, ...]) -> Tuple[Exception, ...]:
        """Deliver events to every observer; failures are collected, not raised."""
        errors = []
        for event in events:
            for observer in list(self._observers):
                try:
                    observer(event)
                except Exception as e:
                    self._log(f"OBSERVER FAILED on {event.name} #{event.loan_id}: {e!r}")
                    errors.append(e)
        return tuple(errors)

    def _commit(self, pending: PendingTransaction) -> Transaction:
        added = []
        for move in pending.moves:
            for wallet in (move.source, move.dest):
                if not self._ledger.is_registered(wallet):
                    added.append(self._ledger.register_wallet(wallet))

        result = self._ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            for wallet in added:
                self._ledger.unregister_wallet(wallet)
            raise LedgerError(f"Ledger refused loan transaction {pending.intent_id}: {result.value}")
        return self._ledger.transaction_log[-1]

    # ========================================================================
    # OBSERVERS AND TIME
    # ========================================================================

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Register a callable to receive every event after it commits.

        Returns:
            A function that removes the observer again
        """
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    @property
    def current_time(self) -> datetime:
        with self._lock:
            return self._ledger.current_time

    def advance_time(self, new_time: datetime) -> None:
        """Move the logical clock forward (ValueError if new_time is earlier)."""
        with self._lock:
            self._ledger.advance_time(new_time)

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def ledger(self) -> Ledger:
        """Underlying double-entry ledger. Treat as read-only."""
        return self._ledger

    @property
    def loan_count(self) -> int:
        """Number of loans ever requested; also the id the next request receives."""
        with self._lock:
            return self._next_id

    @property
    def events(self) -> Tuple[LoanEvent, ...]:
        with self._lock:
            return tuple(self._events)

    @property
    def transaction_log(self) -> Tuple[Transaction, ...]:
        with self._lock:
            return tuple(self._ledger.transaction_log)

    def get_loan(self, loan_id: int) -> LoanRecord:
        """Raises LoanNotFound if loan_id does not exist."""
        with self._lock:
            return load_loan_record(self._ledger, loan_id)

    def get_loan_at(self, loan_id: int, as_of: datetime) -> LoanRecord:
        """
        Rebuild a loan as it stood at a past time from the transaction log.

        Raises:
            LoanNotFound: If the loan did not exist at as_of
            ValueError: If as_of is in the future
        """
        with self._lock:
            return load_loan_record(self._ledger.clone_at(as_of), loan_id)

    def repayment_amount(self, loan_id: int) -> Decimal:
        return self.get_loan(loan_id).repayment_amount

    def loan_status(self, loan_id: int) -> LoanStatus:
        return self.get_loan(loan_id).status

    def is_overdue(self, loan_id: int) -> bool:
        with self._lock:
            terms, state = load_loan(self._ledger, loan_id)
            return calculate_is_overdue(terms, state, self._ledger.current_time)

    def list_loans(
        self,
        borrower: Optional[str] = None,
        lender: Optional[str] = None,
        status: Optional[Union[LoanStatus, str]] = None,
    ) -> List[LoanRecord]:
        """Loans matching every given filter, in id order."""
        wanted = LoanStatus(status) if status is not None else None
        with self._lock:
            records = [load_loan_record(self._ledger, i) for i in range(self._next_id)]
        return [
            r for r in records
            if (borrower is None or r.borrower == borrower)
            and (lender is None or r.lender == lender)
            and (wanted is None or r.status == wanted)
        ]

    def list_overdue(self) -> List[int]:
        """Ids of loans whose collateral the lender could claim right now."""
        with self._lock:
            now = self._ledger.current_time
            overdue = []
            for loan_id in range(self._next_id):
                terms, state = load_loan(self._ledger, loan_id)
                if calculate_is_overdue(terms, state, now):
                    overdue.append(loan_id)
            return overdue

    def escrow_balance(self) -> Decimal:
        """Collateral currently locked by the ledger."""
        with self._lock:
            return self._ledger.get_balance(ESCROW_WALLET, self.currency)

    def balance_of(self, identity: str) -> Decimal:
        """
        Net value an identity has received from (positive) or sent to
        (negative) the ledger. Unknown identities have a zero balance.
        """
        with self._lock:
            if not self._ledger.is_registered(identity):
                return Decimal("0")
            return self._ledger.get_balance(identity, self.currency)

    def verify_accounting(self) -> dict:
        """
        Check the accounting invariants.

        - the settlement currency sums to zero across all wallets
        - escrow holds exactly the collateral of every non-terminal loan

        Returns:
            Dict with 'valid', 'escrow_expected', 'escrow_actual' and the
            ledger's 'discrepancies'
        """
        with self._lock:
            double_entry = self._ledger.verify_double_entry()
            expected = Decimal("0")
            for loan_id in range(self._next_id):
                terms, state = load_loan(self._ledger, loan_id)
                if calculate_status(state) not in TERMINAL_STATUSES:
                    expected += terms.collateral_amount
            actual = self._ledger.get_balance(ESCROW_WALLET, self.currency)
            return {
                'valid': double_entry['valid'] and expected == actual,
                'escrow_expected': expected,
                'escrow_actual': actual,
                'discrepancies': double_entry['discrepancies'],
            }

    def __repr__(self) -> str:
        return (f"LoanLedger({self.name!r}, currency={self.currency!r}, "
                f"loans={self.loan_count}, escrow={self.escrow_balance()})")

