#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Tranched Lending Vault Step by Step

Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-2: Setup         - Collaborators, the vault, senior and junior deposits
  3-4: Buying notes  - Risk-based pricing, purchase, accrual over time
  5-6: Resolution    - Keeper-driven repayment, redemptions and withdrawals
  7-8: Losses        - Default, loss waterfall, collateral recovery, invariants

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from tranche_vault import (
    Vault, VaultKeeper, Tranche,
    InMemoryCurrency, SimulatedLendingPlatform, RoleBasedAccessPolicy,
    LoanPricer, CollateralRiskParameters, StaticCollateralOracle, RateModel,
    from_rates, normalize_rate, from_timestamp,
    COLLATERAL_LIQUIDATOR_ROLE, ONE_DAY,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2024, 1, 1)

    # Deposits
    senior_deposit: Decimal = Decimal("60")
    junior_deposit: Decimal = Decimal("40")

    # Collateral and loans
    collateral_value: Decimal = Decimal("100")
    principal: Decimal = Decimal("30")
    repayment: Decimal = Decimal("31.5")
    defaulted_principal: Decimal = Decimal("20")
    defaulted_repayment: Decimal = Decimal("21")
    auction_proceeds: Decimal = Decimal("15")
    loan_duration: int = 30 * ONE_DAY


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv

ADMIN = "admin"
LENDER = "lender"
BORROWER = "borrower"
LIQUIDATOR = "auction_house"
COLLATERAL = "PUNK"


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


def show_tranches(vault: Vault):
    for tranche in Tranche:
        state = vault.tranche_state(tranche)
        print(f"  {tranche.name:<6}  value={state.deposit_value:<24} "
              f"share_price={vault.share_price(tranche)}")


def flat(rate, max_input) -> RateModel:
    return RateModel(offset=rate, slope1=0, slope2=0, kink=max_input, max=max_input)


# ============================================================================
# STEPS
# ============================================================================

def step_01_setup():
    step_header(1, "The Vault and its Collaborators",
        "See what a vault is wired to before any value moves.")

    print("""
    The vault never talks to the world directly. It is given:

      currency       the deposit asset (pull on deposit, push on withdraw)
      price oracle   prices loan notes (here: a LoanPricer)
      access policy  who may administer and liquidate collateral
      custody        who can move collateral (here: the lending platform)
    """)

    weth = InMemoryCurrency("WETH")
    platform = SimulatedLendingPlatform(weth)
    policy = RoleBasedAccessPolicy(ADMIN)
    policy.grant_role(ADMIN, COLLATERAL_LIQUIDATOR_ROLE, LIQUIDATOR)

    pricer = LoanPricer(
        StaticCollateralOracle({COLLATERAL: CONFIG.collateral_value}, currency="WETH"),
        from_rates(normalize_rate("0.10"), normalize_rate("0.20"), normalize_rate("1.00"), "0.8", "1"),
    )
    pricer.set_collateral_parameters(COLLATERAL, CollateralRiskParameters(
        loan_to_value_model=flat(normalize_rate("0.30"), Decimal("0.6")),
        duration_model=flat(normalize_rate("0.25"), Decimal(365 * ONE_DAY)),
        weights=(50, 25, 25),
    ))

    vault = Vault("vault", weth, pricer, policy, platform, initial_time=CONFIG.start_time)
    vault.set_note_adapter(ADMIN, platform.note_token, platform)

    for account in ("alice", "bob", LENDER, BORROWER, LIQUIDATOR):
        weth.mint(account, Decimal("100"))

    print(f"  {vault!r}")
    print(f"  {pricer!r}")
    wait_for_enter()
    return vault, weth, platform, pricer


def step_02_deposits(vault: Vault):
    step_header(2, "Senior and Junior Deposits",
        "Deposits mint shares at the current share price.")

    vault.deposit("alice", Tranche.SENIOR, CONFIG.senior_deposit)
    vault.deposit("bob", Tranche.JUNIOR, CONFIG.junior_deposit)

    print()
    show_tranches(vault)
    balances = vault.balance_state()
    print(f"\n  cash={balances.total_cash_balance}  reserves={balances.total_reserves_balance}")
    print("\n  Senior earns a fixed rate. Junior keeps the rest, and takes losses first.")
    wait_for_enter()


def originate(vault: Vault, platform: SimulatedLendingPlatform, principal, repayment, collateral_id) -> int:
    platform.mint_collateral(COLLATERAL, collateral_id, BORROWER)
    return platform.lend(
        BORROWER, LENDER, principal, repayment, CONFIG.loan_duration,
        COLLATERAL, collateral_id, timestamp=vault.timestamp,
    )


def step_03_buy_note(vault: Vault, platform: SimulatedLendingPlatform, pricer: LoanPricer) -> int:
    step_header(3, "Pricing and Buying a Loan Note",
        "A lender sells a note at the pricer's present value of its repayment.")

    loan_id = originate(vault, platform, CONFIG.principal, CONFIG.repayment, 1)
    quote = pricer.price_loan(
        COLLATERAL, CONFIG.principal, CONFIG.repayment, CONFIG.loan_duration, vault.utilization(),
    )
    print(f"  Loan #{loan_id}: principal {CONFIG.principal}, repayment {CONFIG.repayment}")
    print(f"  Quote at utilization {vault.utilization()}: {quote}\n")

    tx = vault.sell_note(LENDER, platform.note_token, loan_id, quote)
    print(f"\n  senior return {tx.details['senior_return']}")
    print(f"  junior return {tx.details['junior_return']}")
    wait_for_enter()
    return loan_id


def step_04_accrual(vault: Vault):
    step_header(4, "Accrual",
        "Scheduled returns flow into the share price as maturity approaches.")

    for day in (0, 10, 20, 30):
        vault.advance_time(CONFIG.start_time + timedelta(days=day))
        print(f"  day {day:>2}: senior={vault.share_price(Tranche.SENIOR)}  "
              f"junior={vault.share_price(Tranche.JUNIOR)}")
    print("\n  Redemptions are still priced at realized value only:")
    print(f"  junior redemption price = {vault.redemption_share_price(Tranche.JUNIOR)}")
    wait_for_enter()


def step_05_repayment(vault: Vault, platform: SimulatedLendingPlatform, loan_id: int):
    step_header(5, "Repayment via the Keeper",
        "The borrower repays the platform; the keeper tells the vault.")

    platform.repay(loan_id, vault.timestamp)
    keeper = VaultKeeper(vault)
    keeper.step(vault.current_time + timedelta(hours=1))

    print()
    show_tranches(vault)
    wait_for_enter()


def step_06_redemptions(vault: Vault, weth: InMemoryCurrency):
    step_header(6, "Redeem and Withdraw",
        "Redemptions join a FIFO queue; processed cash is withdrawn separately.")

    shares = vault.share_balance(Tranche.SENIOR, "alice") / 2
    vault.redeem("alice", Tranche.SENIOR, shares)
    available = vault.redemption_available(Tranche.SENIOR, "alice")
    print(f"\n  alice can withdraw {available}")
    vault.withdraw("alice", Tranche.SENIOR)
    print(f"  alice's WETH balance: {weth.balance_of('alice')}")
    wait_for_enter()


def step_07_default(vault: Vault, platform: SimulatedLendingPlatform, pricer: LoanPricer) -> int:
    step_header(7, "Default and the Loss Waterfall",
        "An unpaid loan is liquidated; junior absorbs the loss first.")

    loan_id = originate(vault, platform, CONFIG.defaulted_principal, CONFIG.defaulted_repayment, 2)
    quote = pricer.price_loan(
        COLLATERAL, CONFIG.defaulted_principal, CONFIG.defaulted_repayment,
        CONFIG.loan_duration, vault.utilization(),
    )
    vault.sell_note(LENDER, platform.note_token, loan_id, quote)

    maturity = platform.get_loan_info(loan_id).maturity
    keeper = VaultKeeper(vault)
    keeper.step(from_timestamp(maturity + 1))

    print()
    show_tranches(vault)
    wait_for_enter()
    return loan_id


def step_08_recovery(vault: Vault, platform: SimulatedLendingPlatform, loan_id: int):
    step_header(8, "Collateral Recovery",
        "Auction proceeds repay senior's loss first, then junior's.")

    vault.withdraw_collateral(LIQUIDATOR, platform.note_token, loan_id)
    print(f"  collateral now held by {platform.collateral_owner(COLLATERAL, 2)}")
    vault.on_collateral_liquidated(LIQUIDATOR, platform.note_token, loan_id, CONFIG.auction_proceeds)

    print()
    show_tranches(vault)
    result = vault.check_invariants()
    print(f"\n  invariants valid: {result['valid']}")
    print(f"  transactions logged: {len(vault.transaction_log)}")


def main():
    vault, weth, platform, pricer = step_01_setup()
    step_02_deposits(vault)
    loan_id = step_03_buy_note(vault, platform, pricer)
    step_04_accrual(vault)
    step_05_repayment(vault, platform, loan_id)
    step_06_redemptions(vault, weth)
    defaulted = step_07_default(vault, platform, pricer)
    step_08_recovery(vault, platform, defaulted)


if __name__ == "__main__":
    main()
