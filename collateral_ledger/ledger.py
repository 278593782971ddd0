"""
ledger.py - Stateful double-entry store behind the loan ledger

The Ledger class is the only place where balances and unit state change.
Loan transitions are computed elsewhere as PendingTransactions; the Ledger
validates them and applies them all-or-nothing.

Key responsibilities:
    - Implements LedgerView for read-only access by the loan transition builders
    - Executes transactions atomically (every move and state change, or none)
    - Keeps wallet balances, unit definitions and the logical clock
    - Records every applied transaction so past state can be rebuilt (clone_at)
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState,
    QUANTITY_EPSILON, SYSTEM_WALLET,
    LedgerError, UnitNotRegistered, WalletNotRegistered,
    _freeze_state,
)


class Ledger:
    """
    Double-entry ledger with full validation and an audit trail.

    Every transaction is validated against registration, transfer rules,
    balance limits, timestamps and the expected prior state of each unit it
    touches. Every applied transaction is logged.

    Thread Safety:
        Not thread-safe on its own. LoanLedger serializes all access.

    Example:
        ledger = Ledger("loans")
        ledger.register_unit(settlement_currency("ETH", "Ether"))
        ledger.register_wallet("alice")
        ledger.register_wallet("escrow")

        tx = build_transaction(ledger, [
            Move(Decimal("2"), "ETH", "alice", "escrow", "loan_0")
        ])
        result = ledger.execute(tx)
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print each applied or rejected transaction (default: True)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity}, non-zero entries only
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return copy.deepcopy(self.units[unit_symbol].state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum a unit's balances across all wallets.

        Wallets are summed in sorted order so the accumulation is deterministic.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Optional[Dict[str, Decimal]] = None,
    ) -> Dict[str, Any]:
        """
        Check that every unit's balances sum to the expected supply.

        Loan accounting creates no value, so the settlement currency is
        expected to sum to zero unless expected_supplies says otherwise.
        Comparison is exact.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'supplies': Dict[str, Decimal] of current totals per unit
            - 'discrepancies': List of {unit, expected, actual, difference}

        Example:
            result = ledger.verify_double_entry()
            assert result['valid'], result['discrepancies']
        """
        expected_supplies = expected_supplies or {}
        supplies: Dict[str, Decimal] = {}
        discrepancies: List[Dict[str, Any]] = []

        for unit_symbol in sorted(self.units):
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply
            expected = expected_supplies.get(unit_symbol, Decimal("0"))
            if current_supply != expected:
                discrepancies.append({
                    'unit': unit_symbol,
                    'expected': expected,
                    'actual': current_supply,
                    'difference': current_supply - expected,
                })

        for unit_symbol, expected in expected_supplies.items():
            if unit_symbol not in supplies:
                discrepancies.append({
                    'unit': unit_symbol,
                    'expected': expected,
                    'actual': Decimal("0"),
                    'difference': -expected,
                    'error': 'unit not registered',
                })

        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the logical clock forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is empty or already registered
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("Wallet id cannot be empty")
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def unregister_wallet(self, wallet_id: str) -> None:
        """
        Remove a wallet that never held a balance.

        Raises:
            WalletNotRegistered: If wallet is not registered
            LedgerError: If wallet is the system wallet or holds any balance
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if wallet_id == SYSTEM_WALLET:
            raise LedgerError("Cannot unregister the system wallet")
        if any(qty != 0 for qty in self.balances[wallet_id].values()):
            raise LedgerError(f"Wallet {wallet_id} holds balances")
        self.registered_wallets.discard(wallet_id)
        del self.balances[wallet_id]

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Units to create are registered only for the duration of validation and
        removed again if validation fails. A pending transaction whose
        intent_id was already applied is not applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if the intent was already executed
            ExecuteResult.REJECTED if validation failed (ledger unchanged)
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"! ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        newly_registered_units: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol not in self.units:
                self.units[unit.symbol] = unit
                newly_registered_units.append(unit.symbol)

        valid, reason = self.validate(pending)
        if not valid:
            for sym in newly_registered_units:
                del self.units[sym]
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)
        for sc in tx.state_changes:
            self._set_unit_state(sc.unit, sc.new_state)

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")
        return ExecuteResult.APPLIED

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print the boxed Transaction repr with a result line appended."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w
        text = f" {icon} {result}"
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{text[:w].ljust(w)}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def validate(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Check a pending transaction against every ledger constraint.

        Checks, in order:
        1. Timestamp is not in the ledger's future
        2. Units and wallets are registered
        3. Transfer rules accept each move
        4. Each touched unit's current state equals the change's old_state
        5. Resulting balances stay within each unit's min/max

        Returns:
            (True, "") on success, (False, reason) otherwise
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"unit not registered: {sc.unit}"
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                return False, f"stale state for {sc.unit}"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = unit.round(self.balances[wallet][unit_sym] + delta)
            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _set_unit_state(self, symbol: str, state: Any) -> None:
        unit = self.units[symbol]
        new_state = copy.deepcopy(state) if isinstance(state, dict) else {}
        self.units[symbol] = replace(unit, _frozen_state=_freeze_state(new_state))

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _apply_delta(self, wallet_id: str, unit_symbol: str, delta: Decimal) -> None:
        unit = self.units[unit_symbol]
        new_balance = unit.round(self.balances[wallet_id][unit_symbol] + delta)
        self.balances[wallet_id][unit_symbol] = new_balance
        self._update_position_index(wallet_id, unit_symbol, new_balance)

    def _execute_moves(self, moves) -> None:
        for move in moves:
            self._apply_delta(move.source, move.unit_symbol, -move.quantity)
            self._apply_delta(move.dest, move.unit_symbol, move.quantity)

    # ========================================================================
    # HISTORICAL STATE
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a fully independent deep copy of this ledger.

        Units, balances, wallets, the transaction log, the clock and the
        verbose flag are all copied.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose

        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }

        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {
            wallet: defaultdict(lambda: Decimal("0"), bals)
            for wallet, bals in self.balances.items()
        }

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned

    def clone_at(self, target_time: datetime) -> Ledger:
        """
        Reconstruct this ledger as it stood at a past time.

        Clones the current state, then walks the log backwards undoing every
        transaction whose execution_time is after target_time: moves are
        reversed, each state change restores old_state, and units created by
        the transaction are removed.

        Raises:
            ValueError: If target_time is in the future
            LedgerError: If a logged move refers to a unit that no longer exists
        """
        if target_time > self._current_time:
            raise ValueError(f"Target time {target_time} is in the future")

        cloned = self.clone()
        cloned._current_time = target_time
        cloned.transaction_log = [
            tx for tx in self.transaction_log
            if tx.execution_time <= target_time
        ]
        cloned.seen_intent_ids = {tx.intent_id for tx in cloned.transaction_log}
        cloned._next_sequence = len(cloned.transaction_log)

        for tx in reversed(self.transaction_log):
            if tx.execution_time <= target_time:
                break

            for move in tx.moves:
                if move.unit_symbol not in cloned.units:
                    raise LedgerError(f"Cannot unwind: unit {move.unit_symbol} not found in cloned ledger")
                cloned._apply_delta(move.source, move.unit_symbol, move.quantity)
                cloned._apply_delta(move.dest, move.unit_symbol, -move.quantity)

            for sc in tx.state_changes:
                if sc.unit in cloned.units:
                    cloned._set_unit_state(sc.unit, sc.old_state)

            for unit in tx.units_to_create:
                cloned.units.pop(unit.symbol, None)
                for wallet in cloned.registered_wallets:
                    cloned.balances[wallet].pop(unit.symbol, None)
                cloned._positions_by_unit.pop(unit.symbol, None)

        return cloned
