"""
fees.py - Fee Calculator

Pure functions of (asset, amount) -> fee and (asset) -> maximum disbursable
amount. Calculators read the ledger only through a LedgerView.

=== CONTRACT ===

    max_amount(asset) never raises. Zero means "unsupported".
    quote(asset, amount) raises UnsupportedAsset for an unsupported asset,
    because a zero fee would be indistinguishable from "no fee".

Fees are rounded up to the unit's precision so the lender is never
short-changed by rounding.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol, Union

from .core import (
    LedgerView, LedgerError, UnsupportedAsset,
    DECIMAL_ROUNDING,
)


BPS_DENOMINATOR = Decimal("10000")


class FeeCalculator(Protocol):
    def max_amount(self, asset_id: str) -> Decimal:
        ...

    def quote(self, asset_id: str, amount: Decimal) -> Decimal:
        ...


def _as_decimal(value: Union[Decimal, int, str]) -> Decimal:
    if isinstance(value, float):
        raise ValueError("Use Decimal or str for fee parameters, not float")
    return value if isinstance(value, Decimal) else Decimal(value)


@dataclass(frozen=True)
class FeeSchedule:
    """
    Per-asset fee policy.

    Attributes:
        rates_bps: asset id -> proportional fee in basis points (100 = 1%)
        flat_fees: asset id -> fixed fee added to every loan of that asset

    An asset is supported iff it appears in rates_bps.
    """
    rates_bps: Dict[str, Decimal] = field(default_factory=dict)
    flat_fees: Dict[str, Decimal] = field(default_factory=dict)

    def __post_init__(self):
        for asset_id, rate in self.rates_bps.items():
            if not isinstance(rate, Decimal) or not rate.is_finite() or rate < 0:
                raise ValueError(f"Fee rate for {asset_id} must be a non-negative Decimal, got {rate!r}")
        for asset_id, flat in self.flat_fees.items():
            if asset_id not in self.rates_bps:
                raise ValueError(f"Flat fee given for {asset_id}, which has no rate")
            if not isinstance(flat, Decimal) or not flat.is_finite() or flat < 0:
                raise ValueError(f"Flat fee for {asset_id} must be a non-negative Decimal, got {flat!r}")

    @classmethod
    def from_mapping(
        cls,
        rates_bps: Mapping[str, Union[Decimal, int, str]],
        flat_fees: Optional[Mapping[str, Union[Decimal, int, str]]] = None,
    ) -> 'FeeSchedule':
        """
        Build a schedule from plain values.

        Example:
            FeeSchedule.from_mapping({"USDC": 9, "WETH": "5", "NATIVE": 0})
        """
        return cls(
            rates_bps={a: _as_decimal(r) for a, r in rates_bps.items()},
            flat_fees={a: _as_decimal(f) for a, f in (flat_fees or {}).items()},
        )

    def supports(self, asset_id: str) -> bool:
        return asset_id in self.rates_bps


class FlatFeeCalculator:
    """
    Basis-point fee calculator backed by the lender's own holdings.

    The maximum loan for a supported asset is whatever the lender wallet holds.
    """

    def __init__(self, view: LedgerView, lender_wallet: str, schedule: FeeSchedule):
        self.view = view
        self.lender_wallet = lender_wallet
        self.schedule = schedule

    def max_amount(self, asset_id: str) -> Decimal:
        if not isinstance(asset_id, str) or not self.schedule.supports(asset_id):
            return Decimal("0")
        try:
            held = self.view.get_balance(self.lender_wallet, asset_id)
        except LedgerError:
            return Decimal("0")
        return held if held > 0 else Decimal("0")

    def quote(self, asset_id: str, amount: Decimal) -> Decimal:
        if not isinstance(asset_id, str) or not self.schedule.supports(asset_id):
            raise UnsupportedAsset(asset_id)
        try:
            unit = self.view.get_unit(asset_id)
        except LedgerError as e:
            raise UnsupportedAsset(asset_id) from e
        raw = amount * self.schedule.rates_bps[asset_id] / BPS_DENOMINATOR
        raw += self.schedule.flat_fees.get(asset_id, Decimal("0"))
        return unit.round(raw, DECIMAL_ROUNDING['FEES'])
