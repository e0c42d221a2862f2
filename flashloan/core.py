"""
Core types and pure functions for the flash-loan settlement system.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError, FlashLoanError and the settlement error taxonomy
4. Protocol constants: the native-asset sentinel and the callback acknowledgment
5. Unit factories: Functions to create token and native units

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Settlement arithmetic must be deterministic: a fee quoted before disbursement
# has to be the same Decimal that is collected afterwards.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Reserved identifier for the environment's native currency. The ledger
# registers this unit itself; no token may be registered under this symbol.
NATIVE_ASSET = "NATIVE"

# Canonical string the acknowledgment constant is derived from.
CALLBACK_SUCCESS_PREIMAGE = "BatchFlashBorrower.onSettle"

# Value every conforming receiver must return from on_settle.
CALLBACK_SUCCESS: bytes = hashlib.sha256(CALLBACK_SUCCESS_PREIMAGE.encode()).digest()

UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_NATIVE = "NATIVE"

# Default decimal precision for ledger-tracked tokens and the native unit.
TOKEN_DECIMAL_PLACES = 6
NATIVE_DECIMAL_PLACES = 18

DECIMAL_ROUNDING = {
    'TOKEN': ROUND_DOWN,
    'NATIVE': ROUND_DOWN,
    'FEES': ROUND_UP,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# (owner, spender, unit) -> remaining pull authorization
AllowanceMap = Dict[Tuple[str, str, str], Decimal]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Fee calculators and the batch validator accept a LedgerView to declare
    their read-only intent. The Ledger class implements this protocol but also
    provides mutation methods. For testing, FakeView provides a truly
    immutable implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a specific unit in a wallet."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def list_units(self) -> List[str]:
        """Return the sorted list of registered unit symbols."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...

    def allowance(self, owner: str, spender: str, unit_symbol: str) -> Decimal:
        """Return how much of a unit `spender` may still pull from `owner`."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was successfully validated and applied to the ledger.
    ALREADY_APPLIED: Transaction ID was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation (unregistered unit or wallet,
              balance constraints).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # Manual transfer or approval
    SETTLEMENT = "settlement"             # Disbursement or collection by a lender engine
    SYSTEM = "system"                     # Issuance, initial setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would cause a wallet balance to fall below the unit's minimum."""
    pass


class InsufficientAllowance(LedgerError):
    """Raised when a pull transfer exceeds what the owner has authorized."""
    pass


class DuplicateTransfer(LedgerError):
    """Raised when a transfer with the same intent was already applied."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


class FlashLoanError(LedgerError):
    """
    Base exception for settlement failures.

    Every FlashLoanError is terminal for the batch that raised it: the engine
    rolls the ledger back and reports the error in an ABORTED outcome.
    """
    pass


class LengthMismatch(FlashLoanError):
    """Asset, amount and fee sequences are empty or not aligned in length."""
    pass


class UnsupportedAsset(FlashLoanError):
    """A fee quote was requested for an asset the lender does not recognize."""

    def __init__(self, asset_id: str):
        super().__init__(f"Unsupported asset: {asset_id}")
        self.asset_id = asset_id


class InsufficientLiquidity(FlashLoanError):
    """Requested amount exceeds what the lender can disburse for that asset."""
    pass


class InvalidAmount(FlashLoanError):
    """Requested amount is not a finite, positive Decimal."""
    pass


class InvalidReceiver(FlashLoanError):
    """The receiver reference is malformed or its wallet is not registered."""
    pass


class CallbackRejected(FlashLoanError):
    """The receiver's callback failed or did not return CALLBACK_SUCCESS."""
    pass


class RepaymentFailed(FlashLoanError):
    """Collection of principal plus fee could not complete for some asset."""
    pass


class ReentrantSettlement(FlashLoanError):
    """A settlement was started on an engine that is already settling."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the specific source (engine wallet, user ID, etc.)
        unit_symbol: Symbol of the unit being moved (if applicable)
        event_type: Specific event within the source (e.g., "DISBURSE", "COLLECT")
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
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be a finite, positive Decimal).
        unit_symbol: The symbol of the unit being transferred.
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
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    @property
    def path(self) -> Optional[str]:
        """Transfer path tag ("native" or "token") recorded by the ledger."""
        return (self.metadata or {}).get("path")

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


def _compute_intent_id(moves: Tuple[Move, ...], origin: TransactionOrigin) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    The hash depends only on the moves and the origin, never on timestamps, so
    the same business transaction always produces the same intent_id.
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

    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Attributes:
        moves: Tuple of value transfers between wallets
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        intent_id: Content-addressable hash of the transaction intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', _compute_intent_id(self.moves, self.origin))

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves."""
        return not self.moves

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: List of moves to include in the transaction
        origin: Transaction origin (defaults to a USER_ACTION origin)

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USDC", SYSTEM_WALLET, "lender", "funding")
        ])
        ledger.execute(tx)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.USER_ACTION,
            source_id="user",
        )
    return PendingTransaction(
        moves=tuple(moves),
        origin=origin,
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transaction must have moves")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        moves = ", ".join(repr(m) for m in self.moves)
        return f"Transaction({self.exec_id}, {self.origin}, [{moves}])"


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a transferable unit (asset type) in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "USDC", "WETH").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (TOKEN or NATIVE).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None

    @property
    def is_native(self) -> bool:
        return self.unit_type == UNIT_TYPE_NATIVE

    def round(self, value: Decimal, rounding: Optional[str] = None) -> Decimal:
        """
        Round a value to this unit's decimal precision using quantize.

        Returns the value unchanged if decimal_places is None. `rounding`
        overrides the unit type's default mode (fees pass ROUND_UP).
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        rounding_mode = rounding or DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=rounding_mode)

    def is_representable(self, value: Decimal) -> bool:
        """True if `value` needs no rounding at this unit's precision."""
        return self.round(value) == value


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimal_places: int = TOKEN_DECIMAL_PLACES) -> Unit:
    """
    Create a ledger-tracked token unit.

    Args:
        symbol: Token symbol (e.g., "USDC"). Must not be NATIVE_ASSET.
        name: Full name of the token.
        decimal_places: Number of decimal places for amounts (default: 6).

    Returns:
        A Unit that cannot be held in negative quantities.
    """
    if symbol == NATIVE_ASSET:
        raise ValueError(f"{NATIVE_ASSET} is reserved for the native asset")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimal_places,
    )


def native_unit(name: str = "Native Currency") -> Unit:
    """Create the native currency unit registered by every ledger."""
    return Unit(
        symbol=NATIVE_ASSET,
        name=name,
        unit_type=UNIT_TYPE_NATIVE,
        decimal_places=NATIVE_DECIMAL_PLACES,
    )
