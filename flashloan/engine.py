"""
engine.py - Lender Engine

Orchestrates one batch settlement inside a single ledger transactional scope:

    IDLE -> VALIDATING -> DISBURSING -> AWAITING_CALLBACK -> VERIFYING
         -> COLLECTING -> SETTLED

Any FlashLoanError moves the batch to ABORTED and restores the ledger to its
exact pre-call state, including disbursements already made. Nothing is
retried.

Reentrancy policy: forbidden. A settle() started while the same engine is
still settling (typically from inside a receiver callback) aborts with
ReentrantSettlement before touching the ledger.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Union

from .assets import asset_from_id
from .batch import (
    LoanBatch, LoanItem,
    SettlementOutcome, SettlementState, SettlementStatus, SettlementTracker,
)
from .core import (
    Transaction, TransactionOrigin, OriginType,
    LedgerError, FlashLoanError, WalletNotRegistered, DuplicateTransfer,
    InsufficientLiquidity, InvalidReceiver, RepaymentFailed, ReentrantSettlement,
)
from .fees import FeeCalculator, FeeSchedule, FlatFeeCalculator
from .ledger import Ledger
from .receiver import CallbackDispatcher, FlashBorrower
from .validation import check_aligned, validate_batch


@dataclass(frozen=True, slots=True)
class CallContext:
    """
    Identity of the caller, established by the host that routes the call.

    The engine reads `sender` once per settlement and uses it as the
    initiator; it is never taken from receiver-controlled data.
    """
    sender: str

    def __post_init__(self):
        if not isinstance(self.sender, str) or not self.sender.strip():
            raise ValueError("CallContext sender cannot be empty")


class LenderEngine:
    """
    Batch flash-loan lender.

    Example:
        engine = LenderEngine(ledger, "lender", schedule=FeeSchedule.from_mapping({"USDC": 9}))
        outcome = engine.settle(CallContext("alice"), receiver, ["USDC"], [Decimal("1000")])
        outcome.raise_for_status()
    """

    def __init__(
        self,
        ledger: Ledger,
        wallet: str,
        schedule: Optional[FeeSchedule] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        dispatcher: Optional[CallbackDispatcher] = None,
        verbose: Optional[bool] = None,
    ):
        """
        Args:
            ledger: The ledger holding lender and receiver balances
            wallet: Lender wallet; disburses principal and receives repayment
            schedule: Fee policy used to build a FlatFeeCalculator
            fee_calculator: Custom calculator (takes precedence over schedule)
            dispatcher: Callback dispatcher (default: CallbackDispatcher())
            verbose: Print settlement progress (default: ledger.verbose)
        """
        if not ledger.is_registered(wallet):
            raise WalletNotRegistered(f"Wallet {wallet} not registered")
        if fee_calculator is None:
            if schedule is None:
                raise ValueError("LenderEngine needs a fee schedule or a fee calculator")
            fee_calculator = FlatFeeCalculator(ledger, wallet, schedule)

        self.ledger = ledger
        self.wallet = wallet
        self.fee_calculator = fee_calculator
        self.dispatcher = dispatcher or CallbackDispatcher()
        self.verbose = ledger.verbose if verbose is None else verbose

        self._settling = False

    # ========================================================================
    # LENDER-FACING QUERIES
    # ========================================================================

    def max_amount(self, assets: Sequence[str]) -> List[Decimal]:
        """Maximum loan per asset, zero for unsupported assets. Never raises."""
        return [self.fee_calculator.max_amount(asset_id) for asset_id in assets]

    def quote(self, assets: Sequence[str], amounts: Sequence[Decimal]) -> List[Decimal]:
        """
        Fee per (asset, amount) pair.

        Raises:
            LengthMismatch: If assets and amounts are not aligned
            UnsupportedAsset: If any asset is not supported
        """
        check_aligned(assets, amounts)
        return [self.fee_calculator.quote(a, m) for a, m in zip(assets, amounts)]

    @property
    def settling(self) -> bool:
        """True while a settlement on this engine is in flight."""
        return self._settling

    # ========================================================================
    # SETTLEMENT
    # ========================================================================

    def settle(
        self,
        context: CallContext,
        receiver: FlashBorrower,
        assets: Sequence[str],
        amounts: Sequence[Decimal],
        data: Union[bytes, bytearray, memoryview] = b"",
    ) -> SettlementOutcome:
        """
        Lend every (asset, amount) to the receiver and collect principal plus fee.

        Args:
            context: Trusted caller identity; context.sender becomes the initiator
            receiver: Object implementing FlashBorrower
            assets: Asset identifiers, in disbursement and collection order
            amounts: Principal per asset, aligned with assets
            data: Opaque payload forwarded to the receiver

        Returns:
            SettlementOutcome, SETTLED or ABORTED with the specific error.
            An aborted outcome guarantees no balance or allowance changed.
        """
        if not isinstance(context, CallContext):
            raise TypeError(f"settle() needs a CallContext, got {type(context).__name__}")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"settle() data must be bytes, got {type(data).__name__}")
        payload = bytes(data)
        tracker = SettlementTracker()

        if self._settling:
            return self._abort(
                tracker,
                ReentrantSettlement(f"{self.wallet} is already settling a batch"),
                None,
            )

        initiator = context.sender
        self._settling = True
        batch: Optional[LoanBatch] = None
        transactions: List[Transaction] = []

        try:
            with self.ledger.atomic():
                settlement_id = self.ledger.operation_id(self.wallet)
                tracker.advance(SettlementState.VALIDATING)
                batch = self._bind_batch(initiator, receiver, assets, amounts, payload)
                self._log(f"[SETTLE {settlement_id}] validated {len(batch)} items for {batch.receiver}")

                tracker.advance(SettlementState.DISBURSING)
                transactions.extend(self._disburse(batch, settlement_id))

                tracker.advance(SettlementState.AWAITING_CALLBACK)
                result = self.dispatcher.invoke(receiver, batch)

                tracker.advance(SettlementState.VERIFYING)
                self.dispatcher.verify(batch, result)

                tracker.advance(SettlementState.COLLECTING)
                transactions.extend(self._collect(batch, settlement_id))

                tracker.advance(SettlementState.SETTLED)
        except FlashLoanError as e:
            return self._abort(tracker, e, batch)
        finally:
            self._settling = False

        self._log(f"[SETTLE {settlement_id}] ✓ settled")
        return SettlementOutcome(
            status=SettlementStatus.SETTLED,
            batch=batch,
            transactions=tuple(transactions),
            trace=tuple(tracker.trace),
        )

    def flash_loan(
        self,
        context: CallContext,
        receiver: FlashBorrower,
        asset: str,
        amount: Decimal,
        data: Union[bytes, bytearray, memoryview] = b"",
    ) -> SettlementOutcome:
        """Settle a batch of one asset."""
        return self.settle(context, receiver, [asset], [amount], data)

    def _bind_batch(
        self,
        initiator: str,
        receiver: FlashBorrower,
        assets: Sequence[str],
        amounts: Sequence[Decimal],
        data: bytes,
    ) -> LoanBatch:
        receiver_wallet = validate_batch(self.ledger, receiver, assets, amounts, self.fee_calculator)
        if receiver_wallet == self.wallet:
            raise InvalidReceiver(f"Lender {self.wallet} cannot lend to itself")
        fees = self.quote(assets, amounts)
        items = tuple(LoanItem(a, m, f) for a, m, f in zip(assets, amounts, fees))
        return LoanBatch(initiator, receiver_wallet, items, data)

    def _origin(self, asset_id: str, event_type: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.SETTLEMENT, self.wallet, asset_id, event_type)

    def _disburse(self, batch: LoanBatch, settlement_id: str) -> List[Transaction]:
        applied = []
        for i, item in enumerate(batch.items):
            asset = asset_from_id(item.asset)
            try:
                tx = asset.push(
                    self.ledger, self.wallet, batch.receiver, item.amount,
                    f"flashloan:{settlement_id}:{i}:disburse",
                    self._origin(item.asset, "DISBURSE"),
                )
            except DuplicateTransfer:
                raise
            except LedgerError as e:
                raise InsufficientLiquidity(
                    f"Disbursement of {item.amount} {item.asset} to {batch.receiver} failed: {e}"
                ) from e
            applied.append(tx)
        return applied

    def _collect(self, batch: LoanBatch, settlement_id: str) -> List[Transaction]:
        applied = []
        for i, item in enumerate(batch.items):
            asset = asset_from_id(item.asset)
            try:
                tx = asset.pull(
                    self.ledger, self.wallet, batch.receiver, self.wallet, item.repayment,
                    f"flashloan:{settlement_id}:{i}:collect",
                    self._origin(item.asset, "COLLECT"),
                )
            except DuplicateTransfer:
                raise
            except LedgerError as e:
                raise RepaymentFailed(
                    f"Collection of {item.repayment} {item.asset} from {batch.receiver} failed: {e}"
                ) from e
            applied.append(tx)
        return applied

    def _abort(
        self,
        tracker: SettlementTracker,
        error: FlashLoanError,
        batch: Optional[LoanBatch],
    ) -> SettlementOutcome:
        tracker.advance(SettlementState.ABORTED)
        self._log(f"[SETTLE] ✗ aborted: {type(error).__name__}: {error}")
        return SettlementOutcome(
            status=SettlementStatus.ABORTED,
            batch=batch,
            error=error,
            trace=tuple(tracker.trace),
        )

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)
