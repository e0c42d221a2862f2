"""
assets.py - Native and token asset kinds

An asset is either the environment's native currency or a ledger-tracked
token. Both expose the same three capabilities to the settlement engine:

    balance(ledger, wallet)                                 -> Decimal
    push(ledger, source, dest, amount, contract_id)         -> Transaction
    pull(ledger, spender, owner, dest, amount, contract_id) -> Transaction

The engine picks a variant once per loan item with asset_from_id() and never
compares identifiers against NATIVE_ASSET itself.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Union

from .core import NATIVE_ASSET, Transaction, TransactionOrigin
from .ledger import Ledger


class AssetCapability(Protocol):
    """What the engine needs from an asset, whatever its kind."""

    @property
    def asset_id(self) -> str:
        ...

    def balance(self, ledger: Ledger, wallet: str) -> Decimal:
        ...

    def push(
        self,
        ledger: Ledger,
        source: str,
        dest: str,
        amount: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        ...

    def pull(
        self,
        ledger: Ledger,
        spender: str,
        owner: str,
        dest: str,
        amount: Decimal,
        contract_id: str,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        ...


@dataclass(frozen=True, slots=True)
class NativeAsset:
    """The environment's native currency, moved on the native path."""

    @property
    def asset_id(self) -> str:
        return NATIVE_ASSET

    def balance(self, ledger: Ledger, wallet: str) -> Decimal:
        return ledger.get_balance(wallet, NATIVE_ASSET)

    def push(self, ledger, source, dest, amount, contract_id, origin=None):
        return ledger.transfer_native(source, dest, amount, contract_id, origin)

    def pull(self, ledger, spender, owner, dest, amount, contract_id, origin=None):
        return ledger.transfer_native_from(spender, owner, dest, amount, contract_id, origin)


@dataclass(frozen=True, slots=True)
class TokenAsset:
    """A ledger-tracked token identified by its unit symbol."""
    symbol: str

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Token symbol cannot be empty")
        if self.symbol == NATIVE_ASSET:
            raise ValueError(f"{NATIVE_ASSET} is the native asset, not a token")

    @property
    def asset_id(self) -> str:
        return self.symbol

    def balance(self, ledger: Ledger, wallet: str) -> Decimal:
        return ledger.get_balance(wallet, self.symbol)

    def push(self, ledger, source, dest, amount, contract_id, origin=None):
        return ledger.transfer(source, dest, self.symbol, amount, contract_id, origin)

    def pull(self, ledger, spender, owner, dest, amount, contract_id, origin=None):
        return ledger.transfer_from(spender, owner, dest, self.symbol, amount, contract_id, origin)


Asset = Union[NativeAsset, TokenAsset]


def asset_from_id(asset_id: str) -> Asset:
    """
    Map an asset identifier to its kind.

    >>> asset_from_id("NATIVE")
    NativeAsset()
    >>> asset_from_id("USDC")
    TokenAsset(symbol='USDC')
    """
    if asset_id == NATIVE_ASSET:
        return NativeAsset()
    return TokenAsset(asset_id)
