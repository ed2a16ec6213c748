"""
tranche_vault - Tranched Lending Vault

A two-tranche lending vault: depositors fund a senior and a junior tranche,
the vault buys collateralized loan notes at a risk-adjusted discount, and
gains and losses flow through a senior/junior waterfall.

Usage:
    from decimal import Decimal
    from tranche_vault import (
        Vault, Tranche, InMemoryCurrency, SimulatedLendingPlatform,
        LoanPricer, StaticCollateralOracle, RateModel, RoleBasedAccessPolicy,
    )

    weth = InMemoryCurrency("WETH")
    platform = SimulatedLendingPlatform(weth)
    pricer = LoanPricer(StaticCollateralOracle({"PUNK": 100}), utilization_model)
    vault = Vault("vault", weth, pricer, RoleBasedAccessPolicy("admin"), platform)
    vault.set_note_adapter("admin", platform.note_token, platform)

    weth.mint("alice", Decimal("10"))
    vault.deposit("alice", Tranche.SENIOR, Decimal("10"))
"""

# Core types
from .core import (
    Tranche,
    TRANCHES,
    UpkeepAction,
    LoanInfo,
    DepositAsset,
    NoteAdapter,
    CollateralCustody,
    LoanPriceOracle,
    AccessPolicy,
    VaultError,
    ParameterOutOfRange,
    InvalidAmount,
    InvalidAllocation,
    InsufficientTimeRemaining,
    UnsupportedCollateral,
    PriceMismatch,
    RepaymentTooLow,
    InsufficientLiquidity,
    SeniorReturnExceedsSpread,
    UnsupportedNoteToken,
    NoteNotOwned,
    LoanAlreadyPurchased,
    UnknownLoan,
    LoanAlreadyLiquidated,
    LoanNotRepaid,
    LoanNotLiquidated,
    LoanLiquidated,
    LoanNotExpired,
    CollateralNotLiquidated,
    CollateralAlreadyWithdrawn,
    InsufficientShares,
    RedemptionInProgress,
    TrancheInsolvent,
    Unauthorized,
    VaultPaused,
    ReentrantCall,
    TransferFailed,
    ZERO,
    ONE,
    KEEPER_ACCOUNT,
    TIME_BUCKET_DURATION,
    SHARE_PRICE_PRORATION_BUCKETS,
    SECONDS_PER_YEAR,
    ONE_DAY,
    to_timestamp,
    from_timestamp,
    time_bucket,
)

# Fixed-point arithmetic
from .fixed_point import (
    DECIMALS,
    to_fixed,
    truncate,
    mul,
    div,
    mul_div,
    normalize_rate,
)

# Pricing
from .rate_model import RateModel, evaluate, from_rates
from .collateral_oracle import CollateralValueOracle, StaticCollateralOracle
from .loan_pricer import LoanPricer, CollateralRiskParameters

# Tranche accounting and loans
from .tranche import (
    TrancheState,
    ShareToken,
    DepositorRedemption,
    compute_prorated_returns,
    compute_estimated_value,
    compute_share_price,
    compute_redemption_share_price,
    compute_redemption_available,
)
from .loan import (
    Loan,
    calculate_tranche_returns,
    calculate_loss_allocation,
    calculate_recovery_entitlement,
    calculate_recovery_allocation,
)

# Commands
from .commands import (
    Deposit,
    Redeem,
    Withdraw,
    SellNote,
    SellNoteAndDeposit,
    OnLoanRepaid,
    OnLoanLiquidated,
    LiquidateLoan,
    WithdrawCollateral,
    OnCollateralLiquidated,
    SetSeniorTrancheRate,
    SetReserveRatio,
    SetPaused,
    VaultTransaction,
)

# Vault
from .vault import Vault, VaultConfig, VaultState, BalanceState

# Keeper
from .lifecycle_engine import VaultKeeper, UpkeepTask

# Collaborators
from .access import RoleBasedAccessPolicy, ADMIN_ROLE, EMERGENCY_ADMIN_ROLE, COLLATERAL_LIQUIDATOR_ROLE
from .currency import InMemoryCurrency
from .lending_platform import SimulatedLendingPlatform, PlatformError
