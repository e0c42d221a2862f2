"""
batch.py - Loan batch data model and settlement state machine

A LoanBatch lives only for the duration of one settle() call. Once fees are
bound the batch is frozen: assets, amounts and fees stay order-aligned from
disbursement through collection.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .core import FlashLoanError, LedgerError, Transaction


@dataclass(frozen=True, slots=True)
class LoanItem:
    """
    One (asset, amount, fee) triple of a batch.

    Attributes:
        asset: Asset identifier (token symbol or NATIVE_ASSET)
        amount: Principal disbursed to the receiver
        fee: Fee owed on top of the principal, quoted before disbursement
    """
    asset: str
    amount: Decimal
    fee: Decimal

    @property
    def repayment(self) -> Decimal:
        return self.amount + self.fee


@dataclass(frozen=True, slots=True)
class LoanBatch:
    """
    A validated, fee-bound batch.

    Attributes:
        initiator: Wallet of the caller that started the settlement
        receiver: Wallet of the receiver the principal is lent to
        items: Loan items in caller-supplied order
        data: Opaque payload forwarded to the receiver unmodified
    """
    initiator: str
    receiver: str
    items: Tuple[LoanItem, ...]
    data: bytes = b""

    def __post_init__(self):
        if not self.items:
            raise ValueError("LoanBatch must contain at least one item")
        if not isinstance(self.data, bytes):
            raise ValueError(f"LoanBatch data must be bytes, got {type(self.data)}")

    @property
    def assets(self) -> Tuple[str, ...]:
        return tuple(item.asset for item in self.items)

    @property
    def amounts(self) -> Tuple[Decimal, ...]:
        return tuple(item.amount for item in self.items)

    @property
    def fees(self) -> Tuple[Decimal, ...]:
        return tuple(item.fee for item in self.items)

    def __len__(self) -> int:
        return len(self.items)


class SettlementState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DISBURSING = "disbursing"
    AWAITING_CALLBACK = "awaiting_callback"
    VERIFYING = "verifying"
    COLLECTING = "collecting"
    SETTLED = "settled"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementState.SETTLED, SettlementState.ABORTED)


_FORWARD: Dict[SettlementState, SettlementState] = {
    SettlementState.IDLE: SettlementState.VALIDATING,
    SettlementState.VALIDATING: SettlementState.DISBURSING,
    SettlementState.DISBURSING: SettlementState.AWAITING_CALLBACK,
    SettlementState.AWAITING_CALLBACK: SettlementState.VERIFYING,
    SettlementState.VERIFYING: SettlementState.COLLECTING,
    SettlementState.COLLECTING: SettlementState.SETTLED,
}

# Every non-terminal state may abort
TRANSITIONS: Dict[SettlementState, FrozenSet[SettlementState]] = {
    state: frozenset({nxt, SettlementState.ABORTED}) for state, nxt in _FORWARD.items()
}
TRANSITIONS[SettlementState.SETTLED] = frozenset()
TRANSITIONS[SettlementState.ABORTED] = frozenset()


class SettlementStatus(Enum):
    SETTLED = "settled"
    ABORTED = "aborted"


@dataclass
class SettlementTracker:
    """Walks one settlement through the state machine and records the path."""
    state: SettlementState = SettlementState.IDLE
    trace: List[SettlementState] = field(default_factory=lambda: [SettlementState.IDLE])

    def advance(self, new_state: SettlementState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise LedgerError(f"Illegal settlement transition {self.state.name} -> {new_state.name}")
        self.state = new_state
        self.trace.append(new_state)


@dataclass(frozen=True)
class SettlementOutcome:
    """
    Result of one settle() call. There is no partial outcome.

    Attributes:
        status: SETTLED or ABORTED
        batch: The fee-bound batch, or None if the call aborted before fees were bound
        error: The FlashLoanError that aborted the batch (None when settled)
        transactions: Ledger transactions applied by the settlement (empty when aborted)
        trace: States visited, from IDLE to the terminal state
    """
    status: SettlementStatus
    batch: Optional[LoanBatch] = None
    error: Optional[FlashLoanError] = None
    transactions: Tuple[Transaction, ...] = ()
    trace: Tuple[SettlementState, ...] = ()

    @property
    def settled(self) -> bool:
        return self.status == SettlementStatus.SETTLED

    def raise_for_status(self) -> None:
        """Re-raise the abort reason, if any."""
        if self.error is not None:
            raise self.error

    def __repr__(self) -> str:
        if self.settled:
            return f"SettlementOutcome(SETTLED, {len(self.batch)} items, {len(self.transactions)} txs)"
        return f"SettlementOutcome(ABORTED, {type(self.error).__name__}: {self.error})"
