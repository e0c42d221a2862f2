"""
validation.py - Batch Validator

Structural and policy checks run before any funds move. Every function here
is pure: it reads through a LedgerView and raises on the first violation.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any, Sequence

from .core import (
    LedgerView, LedgerError,
    LengthMismatch, InsufficientLiquidity, InvalidAmount, InvalidReceiver,
)
from .fees import FeeCalculator


def check_aligned(*sequences: Sequence[Any]) -> int:
    """
    Check that all sequences have the same, non-zero length.

    Returns:
        The common length

    Raises:
        LengthMismatch: If any sequence differs in length or all are empty
    """
    lengths = [len(s) for s in sequences]
    if len(set(lengths)) > 1:
        raise LengthMismatch(f"Sequence lengths differ: {lengths}")
    if not lengths or lengths[0] == 0:
        raise LengthMismatch("Batch must contain at least one asset")
    return lengths[0]


def check_amount(view: LedgerView, asset_id: str, amount: Any) -> None:
    """
    Check an amount is a finite positive Decimal the asset's unit can hold
    without rounding.

    Unregistered assets skip the precision check; the liquidity check
    rejects them.
    """
    if not isinstance(amount, Decimal):
        raise InvalidAmount(f"Amount for {asset_id} must be Decimal, got {type(amount).__name__}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount for {asset_id} must be finite and positive, got {amount}")
    try:
        unit = view.get_unit(asset_id)
    except LedgerError:
        return
    if not unit.is_representable(amount):
        raise InvalidAmount(
            f"Amount {amount} has more than {unit.decimal_places} decimal places for {asset_id}"
        )


def check_receiver(view: LedgerView, receiver: Any) -> str:
    """
    Check the receiver reference is well formed.

    A receiver needs a non-empty wallet registered with the ledger and a
    callable on_settle.

    Returns:
        The receiver's wallet id
    """
    wallet = getattr(receiver, "wallet", None)
    if not isinstance(wallet, str) or not wallet.strip():
        raise InvalidReceiver(f"Receiver {receiver!r} has no wallet")
    if wallet not in view.list_wallets():
        raise InvalidReceiver(f"Receiver wallet {wallet} not registered")
    if not callable(getattr(receiver, "on_settle", None)):
        raise InvalidReceiver(f"Receiver {wallet} does not implement on_settle")
    return wallet


def validate_batch(
    view: LedgerView,
    receiver: Any,
    assets: Sequence[str],
    amounts: Sequence[Decimal],
    fee_calculator: FeeCalculator,
) -> str:
    """
    Validate a candidate batch before any transfer.

    Checks, in order:
        1. assets and amounts are aligned and non-empty  (LengthMismatch)
        2. every amount is a finite positive Decimal at
           the asset's precision                          (InvalidAmount)
        3. every amount is within max_amount(asset)        (InsufficientLiquidity)
        4. the receiver is well formed                     (InvalidReceiver)

    Repeated assets are checked against their combined amount, since the
    lender disburses them from the same holding.

    Returns:
        The receiver's wallet id
    """
    check_aligned(assets, amounts)

    totals = {}
    for asset_id, amount in zip(assets, amounts):
        if not isinstance(asset_id, str):
            raise InsufficientLiquidity(f"Lender cannot disburse {asset_id!r}")
        check_amount(view, asset_id, amount)
        totals[asset_id] = totals.get(asset_id, Decimal("0")) + amount

    for asset_id, total in totals.items():
        available = fee_calculator.max_amount(asset_id)
        if total > available:
            raise InsufficientLiquidity(
                f"Requested {total} {asset_id}, lender can disburse {available}"
            )

    return check_receiver(view, receiver)
