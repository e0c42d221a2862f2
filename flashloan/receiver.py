"""
receiver.py - Receiver contract and Callback Dispatcher

The receiver is untrusted code. The dispatcher is the only place the engine
hands control to it: one synchronous call per batch, whose return value must
equal CALLBACK_SUCCESS byte for byte.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any, Protocol, Tuple, runtime_checkable

from .batch import LoanBatch
from .core import CALLBACK_SUCCESS, CallbackRejected


@runtime_checkable
class FlashBorrower(Protocol):
    """
    Receiver-facing contract.

    Before returning, on_settle must authorize the lender to pull
    amounts[i] + fees[i] of assets[i] for every i, then return
    CALLBACK_SUCCESS.
    """

    wallet: str

    def on_settle(
        self,
        initiator: str,
        assets: Tuple[str, ...],
        amounts: Tuple[Decimal, ...],
        fees: Tuple[Decimal, ...],
        data: bytes,
    ) -> Any:
        ...


class CallbackDispatcher:
    """Invokes a receiver's on_settle once and checks the acknowledgment."""

    def __init__(self, acknowledgment: bytes = CALLBACK_SUCCESS):
        self.acknowledgment = acknowledgment

    def dispatch(self, receiver: FlashBorrower, batch: LoanBatch) -> None:
        """
        Hand the whole batch to the receiver and verify its answer.

        Raises:
            CallbackRejected: If the handler raised, or returned anything but
                              the acknowledgment constant.
        """
        self.verify(batch, self.invoke(receiver, batch))

    def invoke(self, receiver: FlashBorrower, batch: LoanBatch) -> Any:
        """Call on_settle exactly once and return whatever it returned."""
        try:
            return receiver.on_settle(
                batch.initiator,
                batch.assets,
                batch.amounts,
                batch.fees,
                batch.data,
            )
        except Exception as e:
            raise CallbackRejected(f"Callback of {batch.receiver} failed: {e!r}") from e

    def verify(self, batch: LoanBatch, result: Any) -> None:
        if not self.is_acknowledgment(result):
            raise CallbackRejected(
                f"Callback of {batch.receiver} returned {result!r}, expected acknowledgment"
            )

    def is_acknowledgment(self, value: Any) -> bool:
        # bytearray/memoryview or subclasses with custom __eq__ never count
        return type(value) is bytes and value == self.acknowledgment
