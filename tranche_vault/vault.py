"""
vault.py - Tranched Lending Vault

The Vault is the aggregate root of the system and the only place vault
state is mutated. Depositors fund a senior and a junior tranche; the vault
buys loan notes at an oracle-computed discount and runs every resulting
gain or loss through the tranche waterfall.

Key responsibilities:
    - Single serialized entry point: every mutation is a command applied by
      execute(), atomically and in sequence
    - Strict phase ordering inside each command: read external state,
      validate, mutate a working copy of the ledger, perform external
      transfers, then commit
    - Value conservation: sum(deposit_value) + withdrawal == cash + loans
      after every command (check_invariants() verifies it)
    - Redemption queue drain after every cash-increasing command, senior first
    - Audit trail of applied commands in transaction_log
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple
import copy
import threading

from .core import (
    # Types
    Tranche, TRANCHES, LoanInfo,
    DepositAsset, NoteAdapter, CollateralCustody, LoanPriceOracle, AccessPolicy,
    # Constants
    ZERO, ONE, TIME_BUCKET_DURATION, SHARE_PRICE_PRORATION_BUCKETS,
    DEFAULT_SENIOR_TRANCHE_RATE, DEFAULT_RESERVE_RATIO,
    # Exceptions
    VaultError, ParameterOutOfRange, InvalidAmount, InvalidAllocation,
    InsufficientTimeRemaining, PriceMismatch, RepaymentTooLow, InsufficientLiquidity,
    UnsupportedNoteToken, LoanAlreadyPurchased, NoteNotOwned,
    UnknownLoan, LoanAlreadyLiquidated, LoanNotRepaid, LoanNotLiquidated, LoanLiquidated,
    LoanNotExpired, CollateralNotLiquidated, CollateralAlreadyWithdrawn,
    TrancheInsolvent, VaultPaused, ReentrantCall,
    # Helpers
    to_timestamp, time_bucket,
)
from .access import ADMIN_ROLE, EMERGENCY_ADMIN_ROLE, COLLATERAL_LIQUIDATOR_ROLE
from .commands import (
    Deposit, Redeem, Withdraw, SellNote, SellNoteAndDeposit,
    OnLoanRepaid, OnLoanLiquidated, LiquidateLoan,
    WithdrawCollateral, OnCollateralLiquidated,
    SetSeniorTrancheRate, SetReserveRatio, SetPaused,
    VaultTransaction,
)
from .fixed_point import Number, to_fixed, mul, div, normalize_rate
from .loan import (
    Loan, calculate_tranche_returns, calculate_loss_allocation,
    calculate_recovery_entitlement, calculate_recovery_allocation,
)
from .tranche import (
    TrancheState, ShareToken, DepositorRedemption,
    compute_estimated_value, compute_share_price, compute_redemption_share_price,
)


# Deferred external calls collected by a command handler
Interactions = List[Callable[[], None]]


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class VaultConfig:
    """
    Immutable vault configuration.

    Attributes:
        time_bucket_duration: Width of a pending-returns time bucket (seconds).
        share_price_proration_buckets: Buckets over which pending returns accrue.
        senior_tranche_rate: Initial annualized senior rate, in (0, 1).
        reserve_ratio: Initial fraction of cash held in reserve, in [0, 1).
        price_tolerance: Largest accepted gap between offered and computed price.
    """
    time_bucket_duration: int = TIME_BUCKET_DURATION
    share_price_proration_buckets: int = SHARE_PRICE_PRORATION_BUCKETS
    senior_tranche_rate: Decimal = DEFAULT_SENIOR_TRANCHE_RATE
    reserve_ratio: Decimal = DEFAULT_RESERVE_RATIO
    price_tolerance: Decimal = ZERO

    def __post_init__(self):
        for name in ('senior_tranche_rate', 'reserve_ratio', 'price_tolerance'):
            object.__setattr__(self, name, to_fixed(getattr(self, name)))
        if self.time_bucket_duration <= 0:
            raise ValueError(f"time_bucket_duration must be positive, got {self.time_bucket_duration}")
        if self.share_price_proration_buckets <= 0:
            raise ValueError(
                f"share_price_proration_buckets must be positive, got {self.share_price_proration_buckets}"
            )
        if not ZERO < self.senior_tranche_rate < ONE:
            raise ValueError(f"senior_tranche_rate must be in (0, 1), got {self.senior_tranche_rate}")
        if not ZERO <= self.reserve_ratio < ONE:
            raise ValueError(f"reserve_ratio must be in [0, 1), got {self.reserve_ratio}")
        if self.price_tolerance < 0:
            raise ValueError(f"price_tolerance must be non-negative, got {self.price_tolerance}")


# ============================================================================
# AGGREGATE STATE
# ============================================================================

@dataclass(slots=True)
class BalanceState:
    """
    Global balances.

    total_cash_balance is everything the vault holds; of it,
    total_reserves_balance is held back and total_withdrawal_balance is owed
    to redeemers. The rest is distributable.
    """
    total_cash_balance: Decimal = ZERO
    total_loan_balance: Decimal = ZERO
    total_reserves_balance: Decimal = ZERO
    total_withdrawal_balance: Decimal = ZERO


@dataclass(slots=True)
class VaultState:
    """Everything a command can change. Commands work on a deep copy and swap it in on success."""
    tranches: Dict[Tranche, TrancheState]
    shares: Dict[Tranche, ShareToken]
    loans: Dict[Tuple[str, int], Loan]
    balances: BalanceState
    senior_tranche_rate: Decimal
    reserve_ratio: Decimal
    paused: bool = False

    @classmethod
    def initial(cls, config: VaultConfig) -> VaultState:
        return cls(
            tranches={tranche: TrancheState() for tranche in TRANCHES},
            shares={tranche: ShareToken(tranche) for tranche in TRANCHES},
            loans={},
            balances=BalanceState(),
            senior_tranche_rate=normalize_rate(config.senior_tranche_rate),
            reserve_ratio=config.reserve_ratio,
        )


# ============================================================================
# VAULT
# ============================================================================

class Vault:
    """
    Two-tranche lending vault.

    Queries read the most recently committed state and never block on or
    observe a command in flight. Commands are serialized by a lock; a
    collaborator that calls back into the vault during a command gets
    ReentrantCall and the outer command fails as a whole.

    Example:
        vault = Vault("vault", currency, pricer, RoleBasedAccessPolicy("admin"), platform)
        vault.set_note_adapter("admin", platform.note_token, platform)

        vault.deposit("alice", Tranche.SENIOR, Decimal("10"))
        vault.deposit("bob", Tranche.JUNIOR, Decimal("5"))
        vault.sell_note("lender", platform.note_token, loan_id, quoted_price)
    """

    def __init__(
        self,
        name: str,
        currency: DepositAsset,
        loan_price_oracle: LoanPriceOracle,
        access_policy: AccessPolicy,
        collateral_custody: CollateralCustody,
        config: Optional[VaultConfig] = None,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
    ):
        """
        Create a vault.

        Args:
            name: Vault identifier; also its account with every collaborator
            currency: Deposit asset
            loan_price_oracle: Prices notes offered to the vault
            access_policy: Role checks for administrative and liquidator operations
            collateral_custody: Moves collateral of liquidated loans
            config: Vault configuration (default: VaultConfig())
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print applied and rejected commands (default: True)
        """
        if not name or not name.strip():
            raise ValueError("Vault name cannot be empty")
        self.name = name
        self.currency = currency
        self.loan_price_oracle = loan_price_oracle
        self.access_policy = access_policy
        self.collateral_custody = collateral_custody
        self.config = config or VaultConfig()
        self.verbose = verbose

        self.note_adapters: Dict[str, NoteAdapter] = {}
        self.transaction_log: List[VaultTransaction] = []
        self._state = VaultState.initial(self.config)
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._next_sequence = 0
        self._lock = threading.RLock()
        self._executing = False

        self._handlers: Dict[type, Callable[[VaultState, Any, Interactions], Dict[str, Any]]] = {
            Deposit: self._deposit,
            Redeem: self._redeem,
            Withdraw: self._withdraw,
            SellNote: self._sell_note,
            SellNoteAndDeposit: self._sell_note_and_deposit,
            OnLoanRepaid: self._on_loan_repaid,
            OnLoanLiquidated: self._on_loan_liquidated,
            LiquidateLoan: self._liquidate_loan,
            WithdrawCollateral: self._withdraw_collateral,
            OnCollateralLiquidated: self._on_collateral_liquidated,
            SetSeniorTrancheRate: self._set_senior_tranche_rate,
            SetReserveRatio: self._set_reserve_ratio,
            SetPaused: self._set_paused,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the vault."""
        return self._current_time

    @property
    def timestamp(self) -> int:
        """Current logical time in whole seconds."""
        return to_timestamp(self._current_time)

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the vault's logical clock.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    # ========================================================================
    # QUERIES (read-only, committed state)
    # ========================================================================

    def share_price(self, tranche: Tranche) -> Decimal:
        """Estimated value per share, including accrued pending returns."""
        return self._share_price(self._state, Tranche(tranche))

    def redemption_share_price(self, tranche: Tranche) -> Decimal:
        """Realized value per share; what a redemption requested now is owed per share."""
        return self._redemption_share_price(self._state, Tranche(tranche))

    def estimated_value(self, tranche: Tranche) -> Decimal:
        return self._estimated_value(self._state, Tranche(tranche))

    def utilization(self) -> Decimal:
        return self._utilization(self._state)

    def tranche_state(self, tranche: Tranche) -> TrancheState:
        return copy.deepcopy(self._state.tranches[Tranche(tranche)])

    def balance_state(self) -> BalanceState:
        return replace(self._state.balances)

    def loan_state(self, note_token: str, loan_id: int) -> Optional[Loan]:
        loan = self._state.loans.get((note_token, loan_id))
        return replace(loan) if loan else None

    def active_loans(self, note_token: Optional[str] = None) -> List[Loan]:
        """Active loans sorted by (note_token, loan_id), optionally for one note token."""
        return [
            replace(loan) for key, loan in sorted(self._state.loans.items())
            if loan.active and (note_token is None or key[0] == note_token)
        ]

    def share_balance(self, tranche: Tranche, account: str) -> Decimal:
        return self._state.shares[Tranche(tranche)].balance_of(account)

    def total_shares(self, tranche: Tranche) -> Decimal:
        return self._state.shares[Tranche(tranche)].total_supply

    def redemption(self, tranche: Tranche, account: str) -> DepositorRedemption:
        return self._state.shares[Tranche(tranche)].redemption(account)

    def redemption_available(self, tranche: Tranche, account: str) -> Decimal:
        """Amount the account could withdraw right now."""
        tranche = Tranche(tranche)
        state = self._state
        processed = state.tranches[tranche].processed_redemption_queue
        return state.shares[tranche].redemption_available(account, processed)

    @property
    def senior_tranche_rate(self) -> Decimal:
        """Per-second senior tranche rate."""
        return self._state.senior_tranche_rate

    @property
    def reserve_ratio(self) -> Decimal:
        return self._state.reserve_ratio

    @property
    def paused(self) -> bool:
        return self._state.paused

    def note_adapter(self, note_token: str) -> NoteAdapter:
        adapter = self.note_adapters.get(note_token)
        if adapter is None:
            raise UnsupportedNoteToken(f"Unsupported note token: {note_token}")
        return adapter

    def check_invariants(self) -> Dict[str, Any]:
        """
        Verify the ledger's accounting invariants on committed state.

        Returns:
            Dict with keys:
            - 'valid': bool - True if every invariant holds
            - 'discrepancies': List[Dict] - One entry per violated invariant
        """
        state = self._state
        balances = state.balances
        discrepancies = []

        deposits = sum((t.deposit_value for t in state.tranches.values()), ZERO)
        assets = balances.total_cash_balance + balances.total_loan_balance
        if deposits + balances.total_withdrawal_balance != assets:
            discrepancies.append({
                'invariant': 'value_conservation',
                'expected': assets,
                'actual': deposits + balances.total_withdrawal_balance,
            })
        if balances.total_reserves_balance + balances.total_withdrawal_balance > balances.total_cash_balance:
            discrepancies.append({
                'invariant': 'cash_coverage',
                'expected': balances.total_cash_balance,
                'actual': balances.total_reserves_balance + balances.total_withdrawal_balance,
            })

        for tranche in TRANCHES:
            tranche_state = state.tranches[tranche]
            token = state.shares[tranche]
            if tranche_state.deposit_value < 0:
                discrepancies.append({'invariant': 'deposit_value_non_negative', 'tranche': tranche.name,
                                      'actual': tranche_state.deposit_value})
            if tranche_state.processed_redemption_queue > tranche_state.redemption_queue:
                discrepancies.append({'invariant': 'queue_processed_bounded', 'tranche': tranche.name,
                                      'expected': tranche_state.redemption_queue,
                                      'actual': tranche_state.processed_redemption_queue})
            supply = sum(token.balances.values(), ZERO)
            if supply != token.total_supply:
                discrepancies.append({'invariant': 'share_supply', 'tranche': tranche.name,
                                      'expected': token.total_supply, 'actual': supply})
            for account in sorted(token.redemptions):
                record = token.redemptions[account]
                if record.withdrawn > record.pending:
                    discrepancies.append({'invariant': 'withdrawn_bounded', 'tranche': tranche.name,
                                          'account': account, 'expected': record.pending,
                                          'actual': record.withdrawn})

        return {
            'valid': len(discrepancies) == 0,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # WIRING (administrative, not part of the ledger state)
    # ========================================================================

    def set_note_adapter(self, caller: str, note_token: str, adapter: Optional[NoteAdapter]) -> None:
        """Register (or, with None, remove) the adapter for a note token."""
        with self._lock:
            self.access_policy.require_role(ADMIN_ROLE, caller)
            if adapter is None:
                self.note_adapters.pop(note_token, None)
            else:
                self.note_adapters[note_token] = adapter
            if self.verbose:
                print(f"📝 Note adapter for {note_token}: {adapter!r}")

    def set_loan_price_oracle(self, caller: str, oracle: LoanPriceOracle) -> None:
        with self._lock:
            self.access_policy.require_role(ADMIN_ROLE, caller)
            if oracle is None:
                raise ValueError("Loan price oracle cannot be None")
            self.loan_price_oracle = oracle
            if self.verbose:
                print(f"📝 Loan price oracle: {oracle!r}")

    # ========================================================================
    # COMMAND EXECUTION
    # ========================================================================

    def execute(self, command: Any) -> VaultTransaction:
        """
        Apply a command atomically.

        The handler validates and mutates a deep copy of the ledger and
        collects external transfers; transfers run after all ledger effects,
        and the copy is committed only if everything succeeded.

        Returns:
            The logged VaultTransaction

        Raises:
            VaultError: Any domain failure; committed state is unchanged
            TypeError: If the command type is not supported
        """
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {type(command).__name__}")

        with self._lock:
            if self._executing:
                raise ReentrantCall(f"{type(command).__name__} issued while another command is executing")
            self._executing = True
            try:
                working = copy.deepcopy(self._state)
                interactions: Interactions = []
                details = handler(working, command, interactions)
                self._settle(working)
                for interaction in interactions:
                    interaction()
            except VaultError as e:
                if self.verbose:
                    print(f"✗ REJECTED: {type(command).__name__}: {e}")
                raise
            finally:
                self._executing = False

            self._state = working
            tx = VaultTransaction(
                sequence_number=self._next_sequence,
                command=command,
                timestamp=self._current_time,
                details=details,
            )
            self._next_sequence += 1
            self.transaction_log.append(tx)
            if self.verbose:
                print(f"✓ APPLIED: {tx!r}")
            return tx

    # Convenience wrappers

    def deposit(self, account: str, tranche: Tranche, amount: Number) -> VaultTransaction:
        return self.execute(Deposit(account, tranche, amount))

    def redeem(self, account: str, tranche: Tranche, shares: Number) -> VaultTransaction:
        return self.execute(Redeem(account, tranche, shares))

    def withdraw(self, account: str, tranche: Tranche, amount: Optional[Number] = None) -> VaultTransaction:
        return self.execute(Withdraw(account, tranche, amount))

    def sell_note(self, account: str, note_token: str, loan_id: int, offered_price: Number) -> VaultTransaction:
        return self.execute(SellNote(account, note_token, loan_id, offered_price))

    def sell_note_and_deposit(
        self,
        account: str,
        note_token: str,
        loan_id: int,
        offered_price: Number,
        allocation: Tuple[Number, Number],
    ) -> VaultTransaction:
        return self.execute(SellNoteAndDeposit(account, note_token, loan_id, offered_price, allocation))

    def on_loan_repaid(self, note_token: str, loan_id: int, **kwargs) -> VaultTransaction:
        return self.execute(OnLoanRepaid(note_token, loan_id, **kwargs))

    def on_loan_liquidated(self, note_token: str, loan_id: int, **kwargs) -> VaultTransaction:
        return self.execute(OnLoanLiquidated(note_token, loan_id, **kwargs))

    def liquidate_loan(self, note_token: str, loan_id: int, **kwargs) -> VaultTransaction:
        return self.execute(LiquidateLoan(note_token, loan_id, **kwargs))

    def withdraw_collateral(self, account: str, note_token: str, loan_id: int) -> VaultTransaction:
        return self.execute(WithdrawCollateral(account, note_token, loan_id))

    def on_collateral_liquidated(
        self, account: str, note_token: str, loan_id: int, proceeds: Number
    ) -> VaultTransaction:
        return self.execute(OnCollateralLiquidated(account, note_token, loan_id, proceeds))

    def set_senior_tranche_rate(self, account: str, rate: Number) -> VaultTransaction:
        return self.execute(SetSeniorTrancheRate(account, rate))

    def set_reserve_ratio(self, account: str, ratio: Number) -> VaultTransaction:
        return self.execute(SetReserveRatio(account, ratio))

    def set_paused(self, account: str, paused: bool) -> VaultTransaction:
        return self.execute(SetPaused(account, paused))

    # ========================================================================
    # COMMAND HANDLERS: DEPOSITORS
    # ========================================================================

    def _deposit(self, state: VaultState, cmd: Deposit, interactions: Interactions) -> Dict[str, Any]:
        self._require_not_paused(state)
        amount = to_fixed(cmd.amount)
        if amount <= 0:
            raise InvalidAmount(f"Deposit amount must be positive, got {cmd.amount}")
        self._require_solvent(state, cmd.tranche)

        share_price = self._share_price(state, cmd.tranche)
        shares = self._credit_deposit(state, cmd.tranche, cmd.account, amount, share_price)
        state.balances.total_cash_balance += amount
        self._process_redemptions(state)

        interactions.append(partial(self.currency.transfer, cmd.account, self.name, amount))
        return {'tranche': cmd.tranche.name, 'amount': amount, 'shares': shares, 'share_price': share_price}

    def _redeem(self, state: VaultState, cmd: Redeem, interactions: Interactions) -> Dict[str, Any]:
        self._require_not_paused(state)
        shares = to_fixed(cmd.shares)
        if shares <= 0:
            raise InvalidAmount(f"Redeemed shares must be positive, got {cmd.shares}")
        self._require_solvent(state, cmd.tranche)

        tranche_state = state.tranches[cmd.tranche]
        redemption_share_price = self._redemption_share_price(state, cmd.tranche)
        amount = mul(shares, redemption_share_price)

        tranche_state.redemption_queue += amount
        state.shares[cmd.tranche].redeem(cmd.account, shares, amount, tranche_state.redemption_queue)
        if amount == 0:
            raise InvalidAmount(f"Redemption of {shares} shares is worth nothing")
        self._process_redemptions(state)

        return {
            'tranche': cmd.tranche.name,
            'shares': shares,
            'amount': amount,
            'redemption_share_price': redemption_share_price,
            'available': self._available_to(state, cmd.tranche, cmd.account),
        }

    def _withdraw(self, state: VaultState, cmd: Withdraw, interactions: Interactions) -> Dict[str, Any]:
        self._require_not_paused(state)
        available = self._available_to(state, cmd.tranche, cmd.account)
        amount = available if cmd.amount is None else to_fixed(cmd.amount)
        if available <= 0 or amount <= 0 or amount > available:
            raise InvalidAmount(f"Invalid amount: requested {amount}, available {available}")

        state.shares[cmd.tranche].withdraw(cmd.account, amount)
        state.balances.total_withdrawal_balance -= amount
        state.balances.total_cash_balance -= amount

        interactions.append(partial(self.currency.transfer, self.name, cmd.account, amount))
        return {'tranche': cmd.tranche.name, 'amount': amount}

    # ========================================================================
    # COMMAND HANDLERS: NOTE SALES
    # ========================================================================

    def _sell_note(self, state: VaultState, cmd: SellNote, interactions: Interactions) -> Dict[str, Any]:
        """
        Buy a note for cash.

        The seller is paid before the note moves, so a failed payment leaves
        the note where it was. Each transfer must itself be all-or-nothing; a
        note transfer that fails after payment is not reversed here.
        """
        self._require_not_paused(state)
        adapter, info = self._load_note(state, cmd.note_token, cmd.loan_id, cmd.account)

        purchase_price = self._quote(state, info)
        self._check_offered_price(purchase_price, cmd.offered_price)
        if info.repayment <= purchase_price:
            raise RepaymentTooLow(f"Repayment {info.repayment} does not exceed purchase price {purchase_price}")
        distributable = self._distributable_cash(state)
        if distributable < purchase_price:
            raise InsufficientLiquidity(
                f"Insufficient liquidity: {distributable} available, {purchase_price} required"
            )

        loan = self._record_loan(state, cmd.note_token, info, purchase_price)
        state.balances.total_cash_balance -= purchase_price

        interactions.append(partial(self.currency.transfer, self.name, cmd.account, purchase_price))
        interactions.append(partial(adapter.transfer_note, cmd.loan_id, cmd.account, self.name))
        return {
            'purchase_price': purchase_price,
            'senior_return': loan.tranche_return(Tranche.SENIOR),
            'junior_return': loan.tranche_return(Tranche.JUNIOR),
        }

    def _sell_note_and_deposit(
        self, state: VaultState, cmd: SellNoteAndDeposit, interactions: Interactions
    ) -> Dict[str, Any]:
        self._require_not_paused(state)
        allocation = cmd.allocation
        if len(allocation) != len(TRANCHES) or any(a < 0 for a in allocation) or sum(allocation) != ONE:
            raise InvalidAllocation(f"Invalid allocation: {allocation}")
        adapter, info = self._load_note(state, cmd.note_token, cmd.loan_id, cmd.account)

        purchase_price = self._quote(state, info)
        self._check_offered_price(purchase_price, cmd.offered_price)
        if info.repayment <= purchase_price:
            raise RepaymentTooLow(f"Repayment {info.repayment} does not exceed purchase price {purchase_price}")

        senior_amount = mul(purchase_price, allocation[Tranche.SENIOR.value])
        amounts = (senior_amount, purchase_price - senior_amount)

        # Share prices are fixed before this loan's returns are scheduled.
        share_prices: Dict[Tranche, Decimal] = {}
        for tranche in TRANCHES:
            if amounts[tranche.value] > 0:
                self._require_solvent(state, tranche)
                share_prices[tranche] = self._share_price(state, tranche)

        loan = self._record_loan(state, cmd.note_token, info, purchase_price)
        shares = {
            tranche.name: self._credit_deposit(state, tranche, cmd.account, amounts[tranche.value], price)
            for tranche, price in share_prices.items()
        }
        self._process_redemptions(state)

        interactions.append(partial(adapter.transfer_note, cmd.loan_id, cmd.account, self.name))
        return {
            'purchase_price': purchase_price,
            'senior_return': loan.tranche_return(Tranche.SENIOR),
            'junior_return': loan.tranche_return(Tranche.JUNIOR),
            'shares': shares,
        }

    # ========================================================================
    # COMMAND HANDLERS: LOAN LIFECYCLE
    # ========================================================================

    def _on_loan_repaid(self, state: VaultState, cmd: OnLoanRepaid, interactions: Interactions) -> Dict[str, Any]:
        loan = self._active_loan(state, cmd.note_token, cmd.loan_id)
        adapter = self.note_adapter(cmd.note_token)
        if loan.liquidated:
            raise LoanLiquidated(f"Loan liquidated: {cmd.note_token}#{cmd.loan_id}")
        if not adapter.is_repaid(cmd.loan_id):
            raise LoanNotRepaid(f"Loan not repaid: {cmd.note_token}#{cmd.loan_id}")

        self._unschedule_returns(state, loan)
        for tranche in TRANCHES:
            state.tranches[tranche].deposit_value += loan.tranche_return(tranche)
        state.balances.total_cash_balance += loan.repayment
        state.balances.total_loan_balance -= loan.purchase_price
        loan.active = False
        self._process_redemptions(state)

        return {
            'repayment': loan.repayment,
            'senior_return': loan.tranche_return(Tranche.SENIOR),
            'junior_return': loan.tranche_return(Tranche.JUNIOR),
        }

    def _on_loan_liquidated(
        self, state: VaultState, cmd: OnLoanLiquidated, interactions: Interactions
    ) -> Dict[str, Any]:
        loan = self._active_loan(state, cmd.note_token, cmd.loan_id)
        if loan.liquidated:
            raise LoanAlreadyLiquidated(f"Loan liquidation processed: {cmd.note_token}#{cmd.loan_id}")
        adapter = self.note_adapter(cmd.note_token)
        if not adapter.is_liquidated(cmd.loan_id):
            raise LoanNotLiquidated(f"Loan not liquidated: {cmd.note_token}#{cmd.loan_id}")
        return self._apply_default(state, loan)

    def _liquidate_loan(self, state: VaultState, cmd: LiquidateLoan, interactions: Interactions) -> Dict[str, Any]:
        loan = self._active_loan(state, cmd.note_token, cmd.loan_id)
        if loan.liquidated:
            raise LoanAlreadyLiquidated(f"Loan liquidation processed: {cmd.note_token}#{cmd.loan_id}")
        adapter = self.note_adapter(cmd.note_token)
        if not adapter.is_expired(cmd.loan_id, self.timestamp):
            raise LoanNotExpired(f"Loan not expired: {cmd.note_token}#{cmd.loan_id}")

        details = self._apply_default(state, loan)
        interactions.append(partial(adapter.liquidate, cmd.loan_id, self.timestamp))
        return details

    def _withdraw_collateral(
        self, state: VaultState, cmd: WithdrawCollateral, interactions: Interactions
    ) -> Dict[str, Any]:
        self.access_policy.require_role(COLLATERAL_LIQUIDATOR_ROLE, cmd.account)
        loan = self._active_loan(state, cmd.note_token, cmd.loan_id)
        if not loan.liquidated:
            raise CollateralNotLiquidated(f"Loan not liquidated: {cmd.note_token}#{cmd.loan_id}")
        if loan.collateral_withdrawn:
            raise CollateralAlreadyWithdrawn(f"Collateral already withdrawn: {cmd.note_token}#{cmd.loan_id}")

        loan.collateral_withdrawn = True
        interactions.append(partial(
            self.collateral_custody.transfer_collateral,
            loan.collateral_token, loan.collateral_token_id, self.name, cmd.account,
        ))
        return {'collateral_token': loan.collateral_token, 'collateral_token_id': loan.collateral_token_id}

    def _on_collateral_liquidated(
        self, state: VaultState, cmd: OnCollateralLiquidated, interactions: Interactions
    ) -> Dict[str, Any]:
        self.access_policy.require_role(COLLATERAL_LIQUIDATOR_ROLE, cmd.account)
        proceeds = to_fixed(cmd.proceeds)
        if proceeds < 0:
            raise InvalidAmount(f"Liquidation proceeds must be non-negative, got {cmd.proceeds}")
        loan = self._active_loan(state, cmd.note_token, cmd.loan_id)
        if not loan.liquidated:
            raise CollateralNotLiquidated(f"Loan not liquidated: {cmd.note_token}#{cmd.loan_id}")

        recovery = calculate_recovery_allocation(proceeds, loan.tranche_return(Tranche.SENIOR))
        for tranche in TRANCHES:
            state.tranches[tranche].deposit_value += recovery[tranche.value]
        state.balances.total_cash_balance += proceeds
        loan.active = False
        self._process_redemptions(state)

        interactions.append(partial(self.currency.transfer, cmd.account, self.name, proceeds))
        return {
            'proceeds': proceeds,
            'senior_recovery': recovery[Tranche.SENIOR.value],
            'junior_recovery': recovery[Tranche.JUNIOR.value],
        }

    # ========================================================================
    # COMMAND HANDLERS: ADMINISTRATION
    # ========================================================================

    def _set_senior_tranche_rate(
        self, state: VaultState, cmd: SetSeniorTrancheRate, interactions: Interactions
    ) -> Dict[str, Any]:
        self.access_policy.require_role(ADMIN_ROLE, cmd.account)
        if not ZERO < cmd.rate < ONE:
            raise ParameterOutOfRange(f"Parameter out of bounds: senior tranche rate {cmd.rate}")
        state.senior_tranche_rate = normalize_rate(cmd.rate)
        return {'senior_tranche_rate': state.senior_tranche_rate}

    def _set_reserve_ratio(self, state: VaultState, cmd: SetReserveRatio, interactions: Interactions) -> Dict[str, Any]:
        self.access_policy.require_role(ADMIN_ROLE, cmd.account)
        if not ZERO <= cmd.ratio < ONE:
            raise ParameterOutOfRange(f"Parameter out of bounds: reserve ratio {cmd.ratio}")
        state.reserve_ratio = to_fixed(cmd.ratio)
        self._process_redemptions(state)
        return {'reserve_ratio': state.reserve_ratio}

    def _set_paused(self, state: VaultState, cmd: SetPaused, interactions: Interactions) -> Dict[str, Any]:
        self.access_policy.require_role(EMERGENCY_ADMIN_ROLE, cmd.account)
        state.paused = bool(cmd.paused)
        return {'paused': state.paused}

    # ========================================================================
    # LEDGER HELPERS
    # ========================================================================

    def _estimated_value(self, state: VaultState, tranche: Tranche) -> Decimal:
        return compute_estimated_value(
            state.tranches[tranche],
            self.timestamp,
            self.config.time_bucket_duration,
            self.config.share_price_proration_buckets,
        )

    def _share_price(self, state: VaultState, tranche: Tranche) -> Decimal:
        return compute_share_price(self._estimated_value(state, tranche), state.shares[tranche].total_supply)

    def _redemption_share_price(self, state: VaultState, tranche: Tranche) -> Decimal:
        return compute_redemption_share_price(state.tranches[tranche], state.shares[tranche].total_supply)

    @staticmethod
    def _utilization(state: VaultState) -> Decimal:
        balances = state.balances
        denominator = (balances.total_cash_balance - balances.total_withdrawal_balance
                       + balances.total_loan_balance)
        if denominator <= 0:
            return ZERO
        return div(balances.total_loan_balance, denominator)

    @staticmethod
    def _reserves(state: VaultState) -> Decimal:
        balances = state.balances
        return mul(balances.total_cash_balance - balances.total_withdrawal_balance, state.reserve_ratio)

    def _distributable_cash(self, state: VaultState) -> Decimal:
        balances = state.balances
        distributable = (balances.total_cash_balance - self._reserves(state)
                         - balances.total_withdrawal_balance)
        return max(distributable, ZERO)

    def _settle(self, state: VaultState) -> None:
        state.balances.total_reserves_balance = self._reserves(state)

    def _process_redemptions(self, state: VaultState) -> None:
        """Release distributable cash to pending redemptions, senior first."""
        available = self._distributable_cash(state)
        for tranche in TRANCHES:
            tranche_state = state.tranches[tranche]
            # Capped by deposit value so an impaired tranche cannot draw on the other's cash.
            amount = min(tranche_state.pending_redemptions, available, max(tranche_state.deposit_value, ZERO))
            if amount <= 0:
                continue
            tranche_state.deposit_value -= amount
            tranche_state.processed_redemption_queue += amount
            state.balances.total_withdrawal_balance += amount
            available -= amount

    def _available_to(self, state: VaultState, tranche: Tranche, account: str) -> Decimal:
        processed = state.tranches[tranche].processed_redemption_queue
        return state.shares[tranche].redemption_available(account, processed)

    def _credit_deposit(
        self, state: VaultState, tranche: Tranche, account: str, amount: Decimal, share_price: Decimal
    ) -> Decimal:
        if share_price == 0:
            raise TrancheInsolvent(f"Tranche is currently insolvent: {tranche.name}")
        shares = div(amount, share_price)
        state.tranches[tranche].deposit_value += amount
        state.shares[tranche].mint(account, shares)
        return shares

    def _require_solvent(self, state: VaultState, tranche: Tranche) -> None:
        # A shortfall owed to queued redeemers makes the tranche insolvent even with no shares left.
        shortfall = state.tranches[tranche].pending_redemptions > state.tranches[tranche].deposit_value
        if shortfall or (
            state.shares[tranche].total_supply > 0 and self._redemption_share_price(state, tranche) == 0
        ):
            raise TrancheInsolvent(f"Tranche is currently insolvent: {tranche.name}")

    @staticmethod
    def _require_not_paused(state: VaultState) -> None:
        if state.paused:
            raise VaultPaused("Vault is paused")

    def _active_loan(self, state: VaultState, note_token: str, loan_id: int) -> Loan:
        loan = state.loans.get((note_token, loan_id))
        if loan is None or not loan.active:
            raise UnknownLoan(f"Unknown loan: {note_token}#{loan_id}")
        return loan

    def _load_note(self, state: VaultState, note_token: str, loan_id: int, seller: str) -> Tuple[NoteAdapter, LoanInfo]:
        adapter = self.note_adapter(note_token)
        existing = state.loans.get((note_token, loan_id))
        if existing is not None and existing.active:
            raise LoanAlreadyPurchased(f"Loan already purchased: {note_token}#{loan_id}")
        if adapter.owner_of(loan_id) != seller:
            raise NoteNotOwned(f"{seller} does not hold note {note_token}#{loan_id}")
        return adapter, adapter.get_loan_info(loan_id)

    def _quote(self, state: VaultState, info: LoanInfo) -> Decimal:
        duration_remaining = info.maturity - self.timestamp
        if duration_remaining <= 0:
            raise InsufficientTimeRemaining(f"Loan {info.loan_id} matured at {info.maturity}")
        price = to_fixed(self.loan_price_oracle.price_loan(
            info.collateral_token,
            info.principal,
            info.repayment,
            duration_remaining,
            self._utilization(state),
        ))
        if price <= 0:
            raise PriceMismatch(f"Oracle returned non-positive price {price} for loan {info.loan_id}")
        return price

    def _check_offered_price(self, purchase_price: Decimal, offered_price: Decimal) -> None:
        if abs(purchase_price - offered_price) > self.config.price_tolerance:
            raise PriceMismatch(f"Purchase price {purchase_price} does not match offered {offered_price}")

    def _record_loan(self, state: VaultState, note_token: str, info: LoanInfo, purchase_price: Decimal) -> Loan:
        """Compute tranche returns, schedule them at maturity and add the loan to the book."""
        tranche_returns = calculate_tranche_returns(
            purchase_price,
            info.repayment,
            state.tranches[Tranche.SENIOR].deposit_value,
            state.tranches[Tranche.JUNIOR].deposit_value,
            state.senior_tranche_rate,
            info.maturity - self.timestamp,
        )
        loan = Loan(
            note_token=note_token,
            loan_id=info.loan_id,
            collateral_token=info.collateral_token,
            collateral_token_id=info.collateral_token_id,
            purchase_price=purchase_price,
            repayment=info.repayment,
            maturity=info.maturity,
            tranche_returns=tranche_returns,
        )
        bucket = loan.maturity_bucket(self.config.time_bucket_duration)
        for tranche in TRANCHES:
            state.tranches[tranche].schedule_return(bucket, loan.tranche_return(tranche))
        state.loans[loan.key] = loan
        state.balances.total_loan_balance += purchase_price
        return loan

    def _unschedule_returns(self, state: VaultState, loan: Loan) -> None:
        bucket = loan.maturity_bucket(self.config.time_bucket_duration)
        for tranche in TRANCHES:
            state.tranches[tranche].unschedule_return(bucket, loan.tranche_return(tranche))

    def _apply_default(self, state: VaultState, loan: Loan) -> Dict[str, Any]:
        """Void the loan's scheduled returns and write off its price, junior first."""
        self._unschedule_returns(state, loan)
        losses = calculate_loss_allocation(loan.purchase_price, state.tranches[Tranche.JUNIOR].deposit_value)
        for tranche in TRANCHES:
            state.tranches[tranche].deposit_value -= losses[tranche.value]
        state.balances.total_loan_balance -= loan.purchase_price
        loan.tranche_returns = calculate_recovery_entitlement(losses, loan.tranche_returns)
        loan.liquidated = True
        return {
            'senior_loss': losses[Tranche.SENIOR.value],
            'junior_loss': losses[Tranche.JUNIOR.value],
        }

    def __repr__(self):
        balances = self._state.balances
        return (f"Vault({self.name}, cash={balances.total_cash_balance}, "
                f"loans={balances.total_loan_balance}, time={self._current_time})")
