"""
flashloan - Batch Flash-Loan Settlement

A lender engine that disburses several assets to an untrusted receiver,
calls back into it once, and collects principal plus fee for every asset,
all inside one atomic ledger scope.

Usage:
    from decimal import Decimal
    from flashloan import (
        Ledger, LenderEngine, FeeSchedule, CallContext,
        CALLBACK_SUCCESS, token,
    )

    ledger = Ledger("main", verbose=False)
    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_wallet("lender")
    ledger.register_wallet("borrower")
    ledger.issue("lender", "USDC", Decimal("1000000"))
    ledger.issue("borrower", "USDC", Decimal("100"))

    class Borrower:
        wallet = "borrower"

        def on_settle(self, initiator, assets, amounts, fees, data):
            for asset, amount, fee in zip(assets, amounts, fees):
                ledger.approve(self.wallet, "lender", asset, amount + fee)
            return CALLBACK_SUCCESS

    engine = LenderEngine(ledger, "lender", schedule=FeeSchedule.from_mapping({"USDC": 9}))
    outcome = engine.settle(CallContext("borrower"), Borrower(), ["USDC"], [Decimal("50000")])
    assert outcome.settled
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    ExecuteResult,
    LedgerError,
    InsufficientFunds,
    InsufficientAllowance,
    DuplicateTransfer,
    UnitNotRegistered,
    WalletNotRegistered,
    FlashLoanError,
    LengthMismatch,
    UnsupportedAsset,
    InsufficientLiquidity,
    InvalidAmount,
    InvalidReceiver,
    CallbackRejected,
    RepaymentFailed,
    ReentrantSettlement,
    token,
    native_unit,
    SYSTEM_WALLET,
    NATIVE_ASSET,
    CALLBACK_SUCCESS,
    CALLBACK_SUCCESS_PREIMAGE,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_NATIVE,
)

# Ledger
from .ledger import Ledger

# Assets
from .assets import NativeAsset, TokenAsset, Asset, asset_from_id

# Fees
from .fees import FeeCalculator, FeeSchedule, FlatFeeCalculator

# Batches and outcomes
from .batch import (
    LoanItem,
    LoanBatch,
    SettlementState,
    SettlementStatus,
    SettlementOutcome,
)

# Validation
from .validation import validate_batch, check_aligned

# Receiver contract
from .receiver import FlashBorrower, CallbackDispatcher

# Engine
from .engine import LenderEngine, CallContext


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction',
    'Unit', 'ExecuteResult', 'token', 'native_unit',
    'SYSTEM_WALLET', 'NATIVE_ASSET', 'CALLBACK_SUCCESS', 'CALLBACK_SUCCESS_PREIMAGE',
    'UNIT_TYPE_TOKEN', 'UNIT_TYPE_NATIVE',
    # Errors
    'LedgerError', 'InsufficientFunds',
    'InsufficientAllowance', 'DuplicateTransfer', 'UnitNotRegistered', 'WalletNotRegistered',
    'FlashLoanError', 'LengthMismatch', 'UnsupportedAsset', 'InsufficientLiquidity',
    'InvalidAmount', 'InvalidReceiver', 'CallbackRejected', 'RepaymentFailed',
    'ReentrantSettlement',
    # Ledger
    'Ledger',
    # Assets
    'NativeAsset', 'TokenAsset', 'Asset', 'asset_from_id',
    # Fees
    'FeeCalculator', 'FeeSchedule', 'FlatFeeCalculator',
    # Batches
    'LoanItem', 'LoanBatch', 'SettlementState', 'SettlementStatus', 'SettlementOutcome',
    # Validation
    'validate_batch', 'check_aligned',
    # Receiver
    'FlashBorrower', 'CallbackDispatcher',
    # Engine
    'LenderEngine', 'CallContext',
]

__version__ = '0.1.0'
