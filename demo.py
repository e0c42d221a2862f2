#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Batch Flash Loans Step by Step

A walkthrough of one lender, one receiver and a handful of batches. Each step
builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Setup        - Ledger, tokens, the native asset, the lender engine
  4-5:  Happy Path   - Quoting, settling a two-asset batch, reading the outcome
  6-8:  Failures     - Wrong acknowledgment, short repayment, reentrancy
  9:    Conservation - Total supply never changes

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from decimal import Decimal
import sys

from flashloan import (
    Ledger, LenderEngine, FeeSchedule, CallContext,
    token, NATIVE_ASSET, CALLBACK_SUCCESS,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    lender_funding: Decimal = Decimal("1000000")
    receiver_funding: Decimal = Decimal("1000")

    # Fee policy in basis points
    usdc_fee_bps: int = 100
    weth_fee_bps: int = 0
    native_fee_bps: int = 5

    usdc_loan: Decimal = Decimal("100")
    weth_loan: Decimal = Decimal("50")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_balances(ledger: Ledger, units=("USDC", "WETH", NATIVE_ASSET)):
    for wallet in ("lender", "arb_bot"):
        row = "  ".join(f"{u}={ledger.get_balance(wallet, u)}" for u in units)
        print(f"  {wallet:<8} {row}")


# ============================================================================
# RECEIVERS
# ============================================================================

class ArbBot:
    """A well-behaved receiver: uses the loan, approves principal + fee."""

    def __init__(self, ledger: Ledger, wallet: str = "arb_bot", answer: bytes = CALLBACK_SUCCESS):
        self.ledger = ledger
        self.wallet = wallet
        self.answer = answer
        self.short = False

    def on_settle(self, initiator, assets, amounts, fees, data):
        print(f"  [arb_bot] called by {initiator} with {list(zip(assets, amounts, fees))}")
        print(f"  [arb_bot] payload {data!r}")
        for asset, amount, fee in zip(assets, amounts, fees):
            owed = amount if self.short else amount + fee
            self.ledger.approve(self.wallet, "lender", asset, owed)
        return self.answer


class GreedyBot(ArbBot):
    """Tries to borrow again while still holding the first loan."""

    def __init__(self, ledger: Ledger, engine: LenderEngine):
        super().__init__(ledger)
        self.engine = engine

    def on_settle(self, initiator, assets, amounts, fees, data):
        nested = self.engine.settle(CallContext(self.wallet), self, list(assets), list(amounts))
        print(f"  [greedy] nested settle -> {nested!r}")
        return super().on_settle(initiator, assets, amounts, fees, data)


# ============================================================================
# SETUP (Steps 1-3)
# ============================================================================

def step_01_ledger():
    step_header(1, "The Ledger",
        "A ledger holds balances and allowances. The native asset is built in.")

    print(">>> ledger = Ledger('tutorial', verbose=False)")
    ledger = Ledger("tutorial", verbose=False)
    print(f"Registered units:   {ledger.list_units()}")
    print(f"Native unit:        {ledger.get_unit(NATIVE_ASSET)}")
    return ledger


def step_02_tokens_and_wallets(ledger: Ledger):
    step_header(2, "Tokens and Wallets",
        "Register two tokens, a lender and a receiver, and fund them.")

    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_unit(token("WETH", "Wrapped Ether"))
    ledger.register_wallet("lender")
    ledger.register_wallet("arb_bot")
    for unit in ("USDC", "WETH", NATIVE_ASSET):
        ledger.issue("lender", unit, CONFIG.lender_funding)
        ledger.issue("arb_bot", unit, CONFIG.receiver_funding)

    show_balances(ledger)
    return ledger


def step_03_engine(ledger: Ledger):
    step_header(3, "The Lender Engine",
        "Fees are configured per asset. Assets without a rate are unsupported.")

    schedule = FeeSchedule.from_mapping({
        "USDC": CONFIG.usdc_fee_bps,
        "WETH": CONFIG.weth_fee_bps,
        NATIVE_ASSET: CONFIG.native_fee_bps,
    })
    engine = LenderEngine(ledger, "lender", schedule=schedule, verbose=True)

    print(f"max_amount([USDC, DOGE]) = {engine.max_amount(['USDC', 'DOGE'])}")
    return engine


# ============================================================================
# HAPPY PATH (Steps 4-5)
# ============================================================================

def step_04_quote(engine: LenderEngine):
    step_header(4, "Quoting",
        "Fees are quoted before any money moves and stay fixed for the batch.")

    fees = engine.quote(["USDC", "WETH"], [CONFIG.usdc_loan, CONFIG.weth_loan])
    print(f"quote([USDC, WETH], [{CONFIG.usdc_loan}, {CONFIG.weth_loan}]) = {fees}")


def step_05_settle(ledger: Ledger, engine: LenderEngine):
    step_header(5, "Settling a Batch",
        "Disburse every asset, call back once, collect principal + fee.")

    show_balances(ledger)
    outcome = engine.settle(
        CallContext("alice"), ArbBot(ledger),
        ["USDC", "WETH"], [CONFIG.usdc_loan, CONFIG.weth_loan], b"route:uni->curve",
    )
    print(f"\n{outcome!r}")
    print(f"Trace: {[s.name for s in outcome.trace]}")
    for tx in outcome.transactions:
        print(f"  {tx.origin.event_type:<9} {tx.moves[0]}")
    show_balances(ledger)


# ============================================================================
# FAILURES (Steps 6-8)
# ============================================================================

def step_06_wrong_answer(ledger: Ledger, engine: LenderEngine):
    step_header(6, "Wrong Acknowledgment",
        "Anything other than the exact acknowledgment bytes aborts the batch.")

    before = ledger.get_balance("arb_bot", "USDC")
    outcome = engine.settle(CallContext("alice"), ArbBot(ledger, answer=b"ok"), ["USDC"], [CONFIG.usdc_loan])
    print(f"\n{outcome!r}")
    print(f"arb_bot USDC before={before} after={ledger.get_balance('arb_bot', 'USDC')}")


def step_07_short_repayment(ledger: Ledger, engine: LenderEngine):
    step_header(7, "Short Repayment",
        "Approving the principal but not the fee fails collection; everything rolls back.")

    bot = ArbBot(ledger)
    bot.short = True
    outcome = engine.settle(CallContext("alice"), bot, ["USDC"], [CONFIG.usdc_loan])
    print(f"\n{outcome!r}")
    print(f"Allowance left behind: {ledger.allowance('arb_bot', 'lender', 'USDC')}")


def step_08_reentrancy(ledger: Ledger, engine: LenderEngine):
    step_header(8, "Reentrancy",
        "A second settle() on the same engine during a callback is refused.")

    outcome = engine.settle(CallContext("alice"), GreedyBot(ledger, engine), ["WETH"], [CONFIG.weth_loan])
    print(f"\nOuter: {outcome!r}")


# ============================================================================
# CONSERVATION (Step 9)
# ============================================================================

def step_09_conservation(ledger: Ledger, supplies):
    step_header(9, "Conservation",
        "Settled or aborted, no batch creates or destroys value.")

    result = ledger.verify_double_entry(supplies)
    for unit, supply in result['supplies'].items():
        print(f"  {unit:<8} {supply}")
    print(f"\nConservation holds: {result['valid']}")


def main():
    print("""
    BATCH FLASH LOAN TUTORIAL

      1-3:  Setup        - Ledger, tokens, the native asset, the lender engine
      4-5:  Happy Path   - Quoting, settling a two-asset batch
      6-8:  Failures     - Wrong acknowledgment, short repayment, reentrancy
      9:    Conservation - Total supply never changes
    """)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    ledger = step_01_ledger()
    wait_for_enter()

    ledger = step_02_tokens_and_wallets(ledger)
    supplies = ledger.verify_double_entry()['supplies']
    wait_for_enter()

    engine = step_03_engine(ledger)
    wait_for_enter()

    step_04_quote(engine)
    wait_for_enter()

    step_05_settle(ledger, engine)
    wait_for_enter()

    step_06_wrong_answer(ledger, engine)
    wait_for_enter()

    step_07_short_repayment(ledger, engine)
    wait_for_enter()

    step_08_reentrancy(ledger, engine)
    wait_for_enter()

    step_09_conservation(ledger, supplies)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See flashloan/engine.py for the settlement state machine
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
