"""
Core types and pure functions for the collateralized loan ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError, LoanError and the loan error taxonomy
4. Type aliases: Positions, UnitState
5. Unit factories: settlement currency units

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Loan amounts are compared for exact equality, so arithmetic must be
# deterministic. The global context is configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
#   - prec=50: enough headroom for 18 decimal places on very large principals
#   - rounding=ROUND_HALF_EVEN: only used by Unit.round() quantization
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption; exempt from balance validation.
SYSTEM_WALLET = "system"

# The loan ledger's own account. All locked collateral sits here.
ESCROW_WALLET = "escrow"

RESERVED_WALLETS = frozenset({SYSTEM_WALLET, ESCROW_WALLET})

UNIT_TYPE_CASH = "CASH"
UNIT_TYPE_COLLATERALIZED_LOAN = "COLLATERALIZED_LOAN"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-18")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Internal state for a unit (loan terms, lifecycle flags, etc.)
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Loan transition builders accept a LedgerView to declare that they only
    read. The Ledger class implements this protocol but also provides mutation
    methods; tests use FakeView, a truly immutable implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a specific unit in a wallet."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    ALREADY_APPLIED: Transaction intent was previously processed.
    REJECTED: Transaction failed validation.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # Borrower or lender call
    CONTRACT = "contract"                 # Generated by a unit module
    SYSTEM = "system"                     # Setup and issuance


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


class LoanError(LedgerError):
    """
    Base exception for refused loan operations.

    Every refusal is a caller-input or state-precondition violation. The
    operation that raised it has made no change to the ledger.

    Attributes:
        code: Stable, machine-checkable error kind (e.g. "LoanNotFound")
        message: Human-readable explanation
    """
    code = "LoanError"
    default_message = "Loan operation refused."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class LoanNotFound(LoanError):
    code = "LoanNotFound"
    default_message = "Loan does not exist."


class InvalidAmount(LoanError):
    code = "InvalidAmount"
    default_message = "Invalid amount."


class InvalidDuration(LoanError):
    code = "InvalidDuration"
    default_message = "Duration must be positive."


class InvalidInterestRate(LoanError):
    code = "InvalidInterestRate"
    default_message = "Interest rate must be a non-negative integer percentage."


class AlreadyFunded(LoanError):
    code = "AlreadyFunded"
    default_message = "Loan is already funded."


class NotFunded(LoanError):
    code = "NotFunded"
    default_message = "Loan is not funded."


class AlreadyRepaid(LoanError):
    code = "AlreadyRepaid"
    default_message = "Loan is already repaid."


class AlreadyResolved(LoanError):
    code = "AlreadyResolved"
    default_message = "Loan is already resolved."


class IncorrectAmount(LoanError):
    code = "IncorrectAmount"
    default_message = "Incorrect amount."


class NotOverdue(LoanError):
    code = "NotOverdue"
    default_message = "Loan is not overdue."


class Unauthorized(LoanError):
    code = "Unauthorized"
    default_message = "Caller is not permitted to perform this operation."


class ReentrantCall(LoanError):
    code = "ReentrantCall"
    default_message = "Nested loan operation while another is in flight."


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identity that initiated the transaction (caller, module name)
        unit_symbol: Symbol of the unit affected (if applicable)
        event_type: Specific event within the source (e.g. "FUND", "CLAIM")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change with complete before/after snapshots.

    Forward replay applies new_state; clone_at() restores old_state.

    Attributes:
        unit: Symbol of the unit whose state changed
        old_state: Complete state before the change (dict or None)
        new_state: Complete state after the change (dict)
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old_value, new_value)} for fields that differ."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = (old_val, new_val)
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be finite and non-zero).
        unit_symbol: The symbol of the unit being transferred (e.g. "ETH").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
        metadata: Optional additional information about the move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Independent of dict insertion order and Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, set):
        serialized = ",".join(_canonicalize(item) for item in sorted(value, key=str))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = ()
) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    Based solely on semantic content (moves, state changes, origin, units to
    create), never on timestamps. Used for idempotency checking.
    """
    sorted_moves = tuple(sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    ))

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        content_parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        content_parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}|{_canonicalize(unit.state)}")

    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    for sc in sorted(state_changes, key=lambda s: s.unit):
        old_canonical = _canonicalize(sc.old_state)
        new_canonical = _canonicalize(sc.new_state)
        content_parts.append(f"state_change:{sc.unit}|{old_canonical}|{new_canonical}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction before execution - represents INTENT.

    Built by the loan transition functions and submitted to Ledger.execute().

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        units_to_create: Tuple of Unit objects to register before executing moves
        intent_id: Content-addressable hash of the transaction intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.units_to_create
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves, no state deltas, and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state deltas.

    State snapshots are deep-copied so later mutation by the caller cannot
    leak into the transaction.

    Example:
        def compute_release(view, symbol):
            state = view.get_unit_state(symbol)
            moves = [Move(state['collateral_amount'], "ETH", "escrow", state['borrower'], "release")]
            new_state = {**state, "is_repaid": True}
            changes = [UnitStateChange(unit=symbol, old_state=state, new_state=new_state)]
            return build_transaction(view, moves, changes)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.CONTRACT,
            source_id="contract",
        )

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger
        units_to_create: Units registered by this transaction
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   ledger_name    : ' + self.ledger_name)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        if self.units_to_create:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Units Created (' + str(len(self.units_to_create)) + '):')}│")
            for unit in self.units_to_create:
                lines.append(f"│{pad('   ' + unit.symbol + ' (' + unit.name + ')')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            move_str = f"   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}"
            lines.append(f"│{pad(move_str)}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' State Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.unit + ']')}│")
                for field_name, (old_val, new_val) in sc.changed_fields().items():
                    lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a tuple of (key, value) pairs sorted by key."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a mutable dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit registered in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g. "ETH", "LOAN_0").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (CASH, COLLATERALIZED_LOAN).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
        _frozen_state: Internal frozen state representation (tuple of key-value pairs).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a new dict."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """
        Round a value to this unit's decimal precision.

        Returns the value unchanged if decimal_places is None.
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        return value.quantize(quantizer, rounding=ROUND_HALF_EVEN)

    def is_representable(self, value: Decimal) -> bool:
        """True if value needs no rounding at this unit's precision."""
        return self.round(value) == value


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def settlement_currency(symbol: str, name: str, decimal_places: int = 18) -> Unit:
    """
    Create the currency unit in which collateral, principal and interest settle.

    Party wallets record their net flow with the loan ledger, so the unit has
    no lower bound: a borrower who deposited collateral shows a negative
    balance until the collateral comes back.

    Args:
        symbol: Currency code (e.g. "ETH", "USDC").
        name: Full name of the currency.
        decimal_places: Smallest representable fraction (default: 18).

    Returns:
        A CASH unit with unbounded balances.
    """
    if decimal_places < 0:
        raise ValueError(f"decimal_places cannot be negative, got {decimal_places}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_CASH,
        decimal_places=decimal_places,
        min_balance=Decimal("-Infinity"),
        _frozen_state=_freeze_state({'decimal_places': decimal_places}),
    )
