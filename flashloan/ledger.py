"""
ledger.py - Stateful Asset Ledger

The Ledger class is the central state manager for settlement. It is the only
module that mutates balances, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Maintains wallet balances, unit definitions and pull allowances
    - Routes the reserved native asset through its own transfer path
    - Provides nested transactional scopes with exact rollback (atomic())
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Set, Optional, Tuple, Any
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit, TransactionOrigin, OriginType,
    PendingTransaction, build_transaction,
    ExecuteResult,
    Positions, BalanceMap, AllowanceMap,
    # Constants
    SYSTEM_WALLET, NATIVE_ASSET,
    # Exceptions
    LedgerError, InsufficientFunds, InsufficientAllowance, DuplicateTransfer,
    UnitNotRegistered, WalletNotRegistered,
    native_unit,
)


class Ledger:
    """
    Double-entry asset ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    functions that access only read-only methods.

    Every ledger registers the system wallet and the native unit on creation.

    Thread Safety:
        Not thread-safe. Each thread should maintain its own Ledger instance.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        ledger.issue("alice", "USDC", Decimal("100"))
        ledger.transfer("alice", "bob", "USDC", Decimal("40"), "payment_001")
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print applied and rejected transactions (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.allowances: AllowanceMap = {}
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        self._next_operation: int = 0
        # Inverted index mapping unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        # One snapshot per open atomic() scope, innermost last
        self._snapshots: List[Dict[str, Any]] = []

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))
        self.units[NATIVE_ASSET] = native_unit()

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

        Returns:
            Current balance (Decimal("0") if wallet has no balance for this unit)

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a specific unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def allowance(self, owner: str, spender: str, unit_symbol: str) -> Decimal:
        """Remaining amount of `unit_symbol` that `spender` may pull from `owner`."""
        return self.allowances.get((owner, spender, unit_symbol), Decimal("0"))

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Calculate total supply of a unit across all wallets.

        Wallets are sorted before summation to ensure deterministic
        accumulation order.

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
        tolerance: Decimal = Decimal("0")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        For every unit the sum of all balances across all wallets (system
        wallet included) is a constant. Settlements only redistribute value.

        Args:
            expected_supplies: Optional dict mapping unit symbols to expected totals.
            tolerance: Maximum allowed difference (default: exact).

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, Decimal] - Current total supply for each unit
            - 'discrepancies': List[Dict] - unit, expected, actual, difference

        Example:
            before = ledger.verify_double_entry()['supplies']
            engine.settle(ctx, receiver, ["USDC"], [Decimal("100")])
            assert ledger.verify_double_entry(before)['valid']
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': Decimal("0"),
                        'difference': abs(expected),
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time can only move forward.

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
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered or the id is blank
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("Wallet id cannot be empty")
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset type) in the ledger.

        Raises:
            ValueError: If the symbol is already registered. The native
                        symbol is always registered, so it can never be claimed
                        by a token.
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: This method bypasses double-entry accounting and is only
        available in test mode. Use issue() to fund wallets otherwise.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use issue() or transfer() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. Execution is
        idempotent: a pending transaction with the same intent_id will not be
        applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        valid, reason = self._validate_pending(pending)
        if not valid:
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        self._execute_moves(tx.moves)

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(f"✓ APPLIED: {tx!r}")
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Balance constraint validation (min/max balance limits)

        Returns:
            Tuple of (success, reason); reason is empty on success.
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
            if not self.units[move.unit_symbol].is_representable(move.quantity):
                return False, f"{move.quantity} exceeds {move.unit_symbol} precision"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt: it is the issuance counterparty
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue

            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Update the inverted position index after a balance change."""
        if quantity != 0:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply all moves to wallet balances and update the position index."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # TRANSFER PRIMITIVES (Mutating)
    # ========================================================================

    def issue(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> Transaction:
        """Mint `quantity` of a unit into a wallet from the system wallet."""
        origin = TransactionOrigin(OriginType.SYSTEM, SYSTEM_WALLET, unit_symbol, "ISSUE")
        return self._transfer(
            SYSTEM_WALLET, wallet_id, unit_symbol, quantity,
            f"issue:{wallet_id}:{self._next_sequence}", origin,
        )

    def approve(self, owner: str, spender: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Authorize `spender` to pull up to `quantity` of a unit from `owner`.

        Overwrites any previous allowance for the same (owner, spender, unit).

        Raises:
            WalletNotRegistered / UnitNotRegistered: on unknown identifiers
            ValueError: If quantity is negative or not a Decimal
        """
        if owner not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {owner} not registered")
        if spender not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {spender} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal) or not quantity.is_finite() or quantity < 0:
            raise ValueError(f"Allowance must be a non-negative Decimal, got {quantity!r}")
        key = (owner, spender, unit_symbol)
        if quantity == 0:
            self.allowances.pop(key, None)
        else:
            self.allowances[key] = quantity

    def transfer(
        self,
        source: str,
        dest: str,
        unit_symbol: str,
        quantity: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """
        Push-transfer a token from `source` to `dest`.

        Raises:
            ValueError: If unit_symbol is the native asset (use transfer_native),
                        or quantity has more decimal places than the unit allows
            InsufficientFunds: If the ledger rejects the move
            DuplicateTransfer: If the same transfer intent was already applied
        """
        if unit_symbol == NATIVE_ASSET:
            raise ValueError("Native asset must be moved with transfer_native()")
        return self._transfer(source, dest, unit_symbol, quantity, contract_id, origin, path="token")

    def transfer_from(
        self,
        spender: str,
        owner: str,
        dest: str,
        unit_symbol: str,
        quantity: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """
        Pull-transfer a token from `owner` to `dest` on `spender`'s authority.

        Consumes `quantity` of the allowance owner granted to spender.

        Raises:
            InsufficientAllowance: If the allowance does not cover quantity
            InsufficientFunds: If owner's balance does not cover quantity
        """
        if unit_symbol == NATIVE_ASSET:
            raise ValueError("Native asset must be moved with transfer_native_from()")
        return self._transfer_from(spender, owner, dest, unit_symbol, quantity, contract_id, origin, path="token")

    def transfer_native(
        self,
        source: str,
        dest: str,
        quantity: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """Push-transfer native currency from `source` to `dest`."""
        return self._transfer(source, dest, NATIVE_ASSET, quantity, contract_id, origin, path="native")

    def transfer_native_from(
        self,
        spender: str,
        owner: str,
        dest: str,
        quantity: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """Pull-transfer native currency from `owner` to `dest` on `spender`'s authority."""
        return self._transfer_from(spender, owner, dest, NATIVE_ASSET, quantity, contract_id, origin, path="native")

    def _transfer(
        self,
        source: str,
        dest: str,
        unit_symbol: str,
        quantity: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin],
        path: Optional[str] = None,
    ) -> Transaction:
        metadata = {"path": path} if path else None
        move = Move(quantity, unit_symbol, source, dest, contract_id, metadata)
        unit = self.units.get(unit_symbol)
        if unit is not None and not unit.is_representable(quantity):
            raise ValueError(f"{quantity} exceeds the precision of {unit_symbol}")
        if origin is None:
            origin = TransactionOrigin(OriginType.USER_ACTION, source, unit_symbol, "TRANSFER")
        result = self.execute(build_transaction(self, [move], origin))
        if result == ExecuteResult.REJECTED:
            raise InsufficientFunds(
                f"Transfer of {quantity} {unit_symbol} from {source} to {dest} rejected"
            )
        if result == ExecuteResult.ALREADY_APPLIED:
            raise DuplicateTransfer(f"Transfer {contract_id} was already applied")
        return self.transaction_log[-1]

    def _transfer_from(
        self,
        spender: str,
        owner: str,
        dest: str,
        unit_symbol: str,
        quantity: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin],
        path: str,
    ) -> Transaction:
        if spender not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {spender} not registered")
        approved = self.allowance(owner, spender, unit_symbol)
        if approved < quantity:
            raise InsufficientAllowance(
                f"{spender} may pull {approved} {unit_symbol} from {owner}, needs {quantity}"
            )
        if origin is None:
            origin = TransactionOrigin(OriginType.USER_ACTION, spender, unit_symbol, "TRANSFER_FROM")
        tx = self._transfer(owner, dest, unit_symbol, quantity, contract_id, origin, path=path)
        remaining = approved - quantity
        if remaining > 0:
            self.allowances[(owner, spender, unit_symbol)] = remaining
        else:
            self.allowances.pop((owner, spender, unit_symbol), None)
        return tx

    # ========================================================================
    # TRANSACTIONAL SCOPE
    # ========================================================================

    @property
    def in_atomic(self) -> bool:
        """True while at least one atomic() scope is open."""
        return bool(self._snapshots)

    def operation_id(self, scope: str) -> str:
        """
        Allocate a ledger-wide operation id, e.g. "lender:3".

        Ids are unique across every engine sharing this ledger. A rollback
        restores the counter together with the intents built from it.
        """
        self._next_operation += 1
        return f"{scope}:{self._next_operation}"

    def _snapshot(self) -> Dict[str, Any]:
        return {
            'balances': {w: dict(b) for w, b in self.balances.items()},
            'allowances': dict(self.allowances),
            'positions': {u: dict(p) for u, p in self._positions_by_unit.items()},
            'log_length': len(self.transaction_log),
            'seen_intent_ids': set(self.seen_intent_ids),
            'next_sequence': self._next_sequence,
            'next_operation': self._next_operation,
            'units': dict(self.units),
            'current_time': self._current_time,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        # Wallets registered inside the scope are dropped with their balances
        self.balances = {
            w: defaultdict(lambda: Decimal("0"), b)
            for w, b in snapshot['balances'].items()
        }
        self.registered_wallets = set(snapshot['balances'])
        self.allowances = snapshot['allowances']
        self._positions_by_unit = defaultdict(dict, snapshot['positions'])
        del self.transaction_log[snapshot['log_length']:]
        self.seen_intent_ids = snapshot['seen_intent_ids']
        self._next_sequence = snapshot['next_sequence']
        self._next_operation = snapshot['next_operation']
        self.units = snapshot['units']
        self._current_time = snapshot['current_time']

    @contextmanager
    def atomic(self) -> Iterator['Ledger']:
        """
        Open a transactional scope over all ledger state.

        Balances, allowances, registered wallets and units, the log, seen
        intents, counters and the clock are restored on failure.

        If the block raises, every mutation made inside it is undone and the
        exception propagates. Scopes nest: an inner failure only undoes the
        inner scope.

        Example:
            with ledger.atomic():
                ledger.transfer("alice", "bob", "USDC", Decimal("10"), "a")
                ledger.transfer("bob", "carol", "USDC", Decimal("99"), "b")  # raises
            # neither transfer is visible here
        """
        self._snapshots.append(self._snapshot())
        try:
            yield self
        except BaseException:
            self._restore(self._snapshots[-1])
            raise
        finally:
            self._snapshots.pop()

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a deep copy of this ledger.

        Modifications to the clone will not affect the original ledger, and
        vice versa. Open atomic() scopes are not carried over.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        # Units are frozen and can be shared
        cloned.units = dict(self.units)
        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.allowances = dict(self.allowances)
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence
        cloned._next_operation = self._next_operation
        cloned._snapshots = []

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned
