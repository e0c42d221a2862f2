"""
test_ledger.py - Unit tests for ledger.py

Tests:
- Ledger creation, wallet and unit registration
- Transaction execution (validation, idempotency, rejection)
- Push and pull transfers, allowances
- Native transfer path
- atomic() scopes and clone()
- Per-unit precision and ledger-wide operation ids
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from flashloan import (
    Ledger, Move, Unit, ExecuteResult, build_transaction, token,
    PendingTransaction, TransactionOrigin, OriginType,
    UNIT_TYPE_TOKEN,
    SYSTEM_WALLET, NATIVE_ASSET,
    LedgerError, InsufficientFunds, InsufficientAllowance,
    WalletNotRegistered, UnitNotRegistered, DuplicateTransfer,
)


def _ledger() -> Ledger:
    ledger = Ledger("test", verbose=False, test_mode=True)
    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.issue("alice", "USDC", Decimal("100"))
    ledger.issue("alice", NATIVE_ASSET, Decimal("5"))
    return ledger


class TestLedgerCreation:

    def test_create_ledger(self):
        ledger = Ledger("test", verbose=False)
        assert ledger.name == "test"
        assert ledger.verbose is False

    def test_create_with_initial_time(self):
        t = datetime(2025, 1, 1, 9, 30)
        ledger = Ledger("test", initial_time=t, verbose=False)
        assert ledger.current_time == t

    def test_system_wallet_and_native_unit_preregistered(self):
        ledger = Ledger("test", verbose=False)
        assert ledger.is_registered(SYSTEM_WALLET)
        assert NATIVE_ASSET in ledger.list_units()
        assert ledger.get_unit(NATIVE_ASSET).is_native


class TestRegistration:

    def test_register_duplicate_wallet_raises(self):
        ledger = Ledger("test", verbose=False)
        ledger.register_wallet("alice")
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_wallet("alice")

    def test_register_blank_wallet_raises(self):
        ledger = Ledger("test", verbose=False)
        with pytest.raises(ValueError):
            ledger.register_wallet("  ")

    def test_register_duplicate_unit_raises(self):
        ledger = Ledger("test", verbose=False)
        ledger.register_unit(token("USDC", "USD Coin"))
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_unit(token("USDC", "USD Coin"))

    def test_native_symbol_cannot_be_claimed(self):
        ledger = Ledger("test", verbose=False)
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_unit(Unit(NATIVE_ASSET, "Impostor", UNIT_TYPE_TOKEN))

    def test_get_balance_unregistered(self):
        ledger = _ledger()
        with pytest.raises(WalletNotRegistered):
            ledger.get_balance("nobody", "USDC")
        with pytest.raises(UnitNotRegistered):
            ledger.get_balance("alice", "DAI")

    def test_set_balance_requires_test_mode(self):
        ledger = Ledger("test", verbose=False)
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        with pytest.raises(LedgerError, match="test_mode"):
            ledger.set_balance("alice", "USDC", Decimal("1"))


class TestExecute:

    def test_applied_and_logged(self):
        ledger = _ledger()
        tx = build_transaction(ledger, [Move(Decimal("10"), "USDC", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.APPLIED
        assert ledger.get_balance("bob", "USDC") == Decimal("10")
        assert ledger.transaction_log[-1].intent_id == tx.intent_id

    def test_idempotent(self):
        ledger = _ledger()
        tx = build_transaction(ledger, [Move(Decimal("10"), "USDC", "alice", "bob", "p1")])
        ledger.execute(tx)
        assert ledger.execute(tx) == ExecuteResult.ALREADY_APPLIED
        assert ledger.get_balance("bob", "USDC") == Decimal("10")

    def test_rejects_overdraft(self):
        ledger = _ledger()
        tx = build_transaction(ledger, [Move(Decimal("101"), "USDC", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert ledger.get_balance("alice", "USDC") == Decimal("100")

    def test_rejects_unregistered_wallet(self):
        ledger = _ledger()
        tx = build_transaction(ledger, [Move(Decimal("1"), "USDC", "alice", "carol", "p1")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED

    def test_rejects_quantity_finer_than_unit(self):
        ledger = _ledger()
        tx = build_transaction(ledger, [Move(Decimal("0.0000001"), "USDC", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert ledger.get_balance("alice", "USDC") == Decimal("100")
        assert tx.intent_id not in ledger.seen_intent_ids

    def test_rejects_future_timestamp(self):
        ledger = _ledger()
        origin = TransactionOrigin(OriginType.USER_ACTION, "user")
        move = Move(Decimal("1"), "USDC", "alice", "bob", "p1")
        tx = PendingTransaction((move,), origin, ledger.current_time + timedelta(seconds=1))
        assert ledger.execute(tx) == ExecuteResult.REJECTED

    def test_sequence_numbers_monotonic(self):
        ledger = _ledger()
        ledger.transfer("alice", "bob", "USDC", Decimal("1"), "p1")
        ledger.transfer("alice", "bob", "USDC", Decimal("1"), "p2")
        seqs = [tx.sequence_number for tx in ledger.transaction_log]
        assert seqs == sorted(seqs)
        assert len(set(seqs)) == len(seqs)


class TestTransfers:

    def test_transfer_tags_token_path(self):
        ledger = _ledger()
        tx = ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        assert tx.moves[0].path == "token"

    def test_transfer_refuses_native(self):
        ledger = _ledger()
        with pytest.raises(ValueError, match="transfer_native"):
            ledger.transfer("alice", "bob", NATIVE_ASSET, Decimal("1"), "p1")

    def test_transfer_native_tags_native_path(self):
        ledger = _ledger()
        tx = ledger.transfer_native("alice", "bob", Decimal("2"), "n1")
        assert tx.moves[0].path == "native"
        assert ledger.get_balance("bob", NATIVE_ASSET) == Decimal("2")

    def test_transfer_finer_than_precision_raises(self):
        ledger = _ledger()
        with pytest.raises(ValueError, match="precision"):
            ledger.transfer("alice", "bob", "USDC", Decimal("1.0000001"), "p1")
        assert ledger.get_balance("alice", "USDC") == Decimal("100")

    def test_native_transfer_at_full_precision(self):
        ledger = _ledger()
        ledger.transfer_native("alice", "bob", Decimal("1e-18"), "n1")
        assert ledger.get_balance("bob", NATIVE_ASSET) == Decimal("1e-18")
        assert ledger.get_positions(NATIVE_ASSET)["bob"] == Decimal("1e-18")

    def test_repeated_transfer_raises_duplicate(self):
        ledger = _ledger()
        ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        with pytest.raises(DuplicateTransfer):
            ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        assert ledger.get_balance("bob", "USDC") == Decimal("10")

    def test_transfer_insufficient_funds(self):
        ledger = _ledger()
        with pytest.raises(InsufficientFunds):
            ledger.transfer("alice", "bob", "USDC", Decimal("500"), "p1")
        assert ledger.get_balance("alice", "USDC") == Decimal("100")


class TestAllowances:

    def test_approve_and_read(self):
        ledger = _ledger()
        ledger.approve("alice", "bob", "USDC", Decimal("30"))
        assert ledger.allowance("alice", "bob", "USDC") == Decimal("30")
        assert ledger.allowance("bob", "alice", "USDC") == Decimal("0")

    def test_approve_overwrites(self):
        ledger = _ledger()
        ledger.approve("alice", "bob", "USDC", Decimal("30"))
        ledger.approve("alice", "bob", "USDC", Decimal("5"))
        assert ledger.allowance("alice", "bob", "USDC") == Decimal("5")

    def test_approve_rejects_negative(self):
        ledger = _ledger()
        with pytest.raises(ValueError):
            ledger.approve("alice", "bob", "USDC", Decimal("-1"))

    def test_transfer_from_consumes_allowance(self):
        ledger = _ledger()
        ledger.approve("alice", "bob", "USDC", Decimal("30"))
        ledger.transfer_from("bob", "alice", "bob", "USDC", Decimal("20"), "pull1")
        assert ledger.get_balance("bob", "USDC") == Decimal("20")
        assert ledger.allowance("alice", "bob", "USDC") == Decimal("10")

    def test_transfer_from_without_allowance(self):
        ledger = _ledger()
        with pytest.raises(InsufficientAllowance):
            ledger.transfer_from("bob", "alice", "bob", "USDC", Decimal("1"), "pull1")
        assert ledger.get_balance("alice", "USDC") == Decimal("100")

    def test_transfer_from_without_balance_keeps_allowance(self):
        ledger = _ledger()
        ledger.approve("alice", "bob", "USDC", Decimal("1000"))
        with pytest.raises(InsufficientFunds):
            ledger.transfer_from("bob", "alice", "bob", "USDC", Decimal("500"), "pull1")
        assert ledger.allowance("alice", "bob", "USDC") == Decimal("1000")

    def test_native_pull_uses_allowance(self):
        ledger = _ledger()
        ledger.approve("alice", "bob", NATIVE_ASSET, Decimal("3"))
        tx = ledger.transfer_native_from("bob", "alice", "bob", Decimal("3"), "npull")
        assert tx.moves[0].path == "native"
        assert ledger.allowance("alice", "bob", NATIVE_ASSET) == Decimal("0")


class TestAtomic:

    def test_commit_on_success(self):
        ledger = _ledger()
        with ledger.atomic():
            ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        assert ledger.get_balance("bob", "USDC") == Decimal("10")
        assert not ledger.in_atomic

    def test_rollback_restores_everything(self):
        ledger = _ledger()
        before = ledger.clone()
        with pytest.raises(InsufficientFunds):
            with ledger.atomic():
                assert ledger.in_atomic
                ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
                ledger.approve("alice", "bob", "USDC", Decimal("7"))
                ledger.transfer("bob", "alice", "USDC", Decimal("99"), "p2")
        assert ledger.balances == before.balances
        assert ledger.allowances == before.allowances
        assert ledger.transaction_log == before.transaction_log
        assert ledger.seen_intent_ids == before.seen_intent_ids
        assert ledger.get_positions("USDC") == before.get_positions("USDC")

    def test_rollback_restores_units_clock_and_operation_ids(self):
        ledger = _ledger()
        units, now = ledger.list_units(), ledger.current_time
        first = ledger.operation_id("lender")
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                ledger.operation_id("lender")
                ledger.register_unit(token("DAI", "Dai"))
                ledger.advance_time(now + timedelta(days=1))
                raise RuntimeError("boom")
        assert ledger.list_units() == units
        assert ledger.current_time == now
        assert ledger.operation_id("lender") == "lender:2"
        assert first == "lender:1"

    def test_rollback_allows_replaying_same_intent(self):
        ledger = _ledger()
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
                raise RuntimeError("boom")
        ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        assert ledger.get_balance("bob", "USDC") == Decimal("10")

    def test_nested_inner_rollback_only(self):
        ledger = _ledger()
        with ledger.atomic():
            ledger.transfer("alice", "bob", "USDC", Decimal("10"), "outer")
            with pytest.raises(InsufficientFunds):
                with ledger.atomic():
                    ledger.transfer("alice", "bob", "USDC", Decimal("5"), "inner")
                    ledger.transfer("alice", "bob", "USDC", Decimal("500"), "too_much")
        assert ledger.get_balance("bob", "USDC") == Decimal("10")

    def test_outer_rollback_undoes_committed_inner(self):
        ledger = _ledger()
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                with ledger.atomic():
                    ledger.transfer("alice", "bob", "USDC", Decimal("5"), "inner")
                raise RuntimeError("boom")
        assert ledger.get_balance("bob", "USDC") == Decimal("0")


class TestConservation:

    def test_transfers_conserve_supply(self):
        ledger = _ledger()
        before = ledger.verify_double_entry()['supplies']
        ledger.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        ledger.transfer_native("alice", "bob", Decimal("1"), "n1")
        assert ledger.verify_double_entry(before)['valid']

    def test_issue_counterparty_is_system(self):
        ledger = _ledger()
        assert ledger.total_supply("USDC") == Decimal("0")
        assert ledger.get_balance(SYSTEM_WALLET, "USDC") == Decimal("-100")


class TestClone:

    def test_clone_is_independent(self):
        ledger = _ledger()
        cloned = ledger.clone()
        cloned.transfer("alice", "bob", "USDC", Decimal("10"), "p1")
        assert ledger.get_balance("bob", "USDC") == Decimal("0")
        assert cloned.get_balance("bob", "USDC") == Decimal("10")

    def test_clone_continues_operation_ids(self):
        ledger = _ledger()
        ledger.operation_id("lender")
        cloned = ledger.clone()
        assert cloned.operation_id("lender") == ledger.operation_id("lender") == "lender:2"


class TestOperationIds:

    def test_ids_unique_across_scopes(self):
        ledger = _ledger()
        ids = [ledger.operation_id(s) for s in ("lender", "lender", "other")]
        assert ids == ["lender:1", "lender:2", "other:3"]


class TestQueriesAndTime:

    def test_wallet_balances(self):
        ledger = _ledger()
        assert ledger.get_wallet_balances("alice") == {
            "USDC": Decimal("100"), NATIVE_ASSET: Decimal("5"),
        }

    def test_advance_time_forward_only(self):
        ledger = _ledger()
        ledger.advance_time(datetime(2025, 1, 2))
        assert ledger.current_time == datetime(2025, 1, 2)
        with pytest.raises(ValueError, match="backwards"):
            ledger.advance_time(datetime(2025, 1, 1))
