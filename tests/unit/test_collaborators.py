"""
test_collaborators.py - Unit tests for the standard collaborator implementations

Tests:
- RoleBasedAccessPolicy
- InMemoryCurrency
- StaticCollateralOracle
- SimulatedLendingPlatform (origination, repayment, liquidation, note custody)
- Protocol conformance
"""

import pytest
from decimal import Decimal

from tranche_vault import (
    RoleBasedAccessPolicy, InMemoryCurrency, StaticCollateralOracle, SimulatedLendingPlatform,
    ADMIN_ROLE, EMERGENCY_ADMIN_ROLE, COLLATERAL_LIQUIDATOR_ROLE,
    DepositAsset, NoteAdapter, CollateralCustody, AccessPolicy, LoanPriceOracle, LoanPricer, RateModel,
    Unauthorized, TransferFailed, UnsupportedCollateral, NoteNotOwned, LoanNotExpired, PlatformError,
    ONE_DAY,
)


# =============================================================================
# ACCESS POLICY
# =============================================================================

class TestRoleBasedAccessPolicy:

    @pytest.fixture
    def policy(self):
        return RoleBasedAccessPolicy("admin")

    def test_admin_holds_admin_and_emergency_roles(self, policy):
        assert policy.has_role(ADMIN_ROLE, "admin")
        assert policy.has_role(EMERGENCY_ADMIN_ROLE, "admin")
        assert not policy.has_role(COLLATERAL_LIQUIDATOR_ROLE, "admin")

    def test_grant_and_revoke(self, policy):
        policy.grant_role("admin", COLLATERAL_LIQUIDATOR_ROLE, "auction")
        policy.require_role(COLLATERAL_LIQUIDATOR_ROLE, "auction")
        policy.revoke_role("admin", COLLATERAL_LIQUIDATOR_ROLE, "auction")
        with pytest.raises(Unauthorized):
            policy.require_role(COLLATERAL_LIQUIDATOR_ROLE, "auction")

    def test_only_admin_grants(self, policy):
        with pytest.raises(Unauthorized):
            policy.grant_role("mallory", ADMIN_ROLE, "mallory")

    def test_unknown_role(self, policy):
        with pytest.raises(ValueError):
            policy.grant_role("admin", "SUPERUSER", "mallory")

    def test_empty_admin_rejected(self):
        with pytest.raises(ValueError):
            RoleBasedAccessPolicy("  ")


# =============================================================================
# CURRENCY
# =============================================================================

class TestInMemoryCurrency:

    @pytest.fixture
    def currency(self):
        currency = InMemoryCurrency("WETH")
        currency.mint("alice", Decimal("10"))
        return currency

    def test_transfer(self, currency):
        currency.transfer("alice", "bob", Decimal("4"))
        assert currency.balance_of("alice") == Decimal("6")
        assert currency.balance_of("bob") == Decimal("4")
        assert currency.total_supply == Decimal("10")

    def test_overdraw_fails_without_effect(self, currency):
        with pytest.raises(TransferFailed):
            currency.transfer("alice", "bob", Decimal("11"))
        assert currency.balance_of("alice") == Decimal("10")
        assert currency.balance_of("bob") == Decimal("0")

    def test_negative_transfer_fails(self, currency):
        with pytest.raises(TransferFailed):
            currency.transfer("alice", "bob", Decimal("-1"))

    def test_zero_transfer_is_noop(self, currency):
        currency.transfer("nobody", "bob", Decimal("0"))
        assert currency.balance_of("bob") == Decimal("0")


# =============================================================================
# COLLATERAL ORACLE
# =============================================================================

class TestStaticCollateralOracle:

    def test_value_lookup(self):
        oracle = StaticCollateralOracle({"PUNK": 100})
        assert oracle.collateral_value("PUNK") == Decimal("100")

    def test_unknown_collateral(self):
        with pytest.raises(UnsupportedCollateral):
            StaticCollateralOracle().collateral_value("PUNK")

    def test_non_positive_value_rejected(self):
        with pytest.raises(ValueError):
            StaticCollateralOracle({"PUNK": 0})


# =============================================================================
# LENDING PLATFORM
# =============================================================================

class TestSimulatedLendingPlatform:

    @pytest.fixture
    def currency(self):
        currency = InMemoryCurrency("WETH")
        currency.mint("lender", Decimal("100"))
        currency.mint("borrower", Decimal("100"))
        return currency

    @pytest.fixture
    def platform(self, currency):
        platform = SimulatedLendingPlatform(currency, note_token="note")
        platform.mint_collateral("PUNK", 7, "borrower")
        return platform

    @pytest.fixture
    def loan_id(self, platform):
        return platform.lend("borrower", "lender", Decimal("2"), Decimal("2.2"), 30 * ONE_DAY, "PUNK", 7, timestamp=1000)

    def test_lend_escrows_collateral_and_pays_principal(self, platform, currency, loan_id):
        assert loan_id == 1
        assert platform.collateral_owner("PUNK", 7) == "note"
        assert platform.owner_of(loan_id) == "lender"
        assert currency.balance_of("borrower") == Decimal("102")
        assert currency.balance_of("lender") == Decimal("98")

    def test_loan_info(self, platform, loan_id):
        info = platform.get_loan_info(loan_id)
        assert info.principal == Decimal("2")
        assert info.repayment == Decimal("2.2")
        assert info.maturity == 1000 + 30 * ONE_DAY
        assert info.start == 1000
        assert info.collateral_token == "PUNK" and info.collateral_token_id == 7

    def test_repay_pays_note_holder(self, platform, currency, loan_id):
        platform.transfer_note(loan_id, "lender", "vault")
        platform.repay(loan_id, timestamp=2000)
        assert platform.is_repaid(loan_id)
        assert currency.balance_of("vault") == Decimal("2.2")
        assert platform.collateral_owner("PUNK", 7) == "borrower"

    def test_repay_after_maturity_rejected(self, platform, loan_id):
        with pytest.raises(PlatformError):
            platform.repay(loan_id, timestamp=1000 + 30 * ONE_DAY + 1)

    def test_expiry_and_liquidation(self, platform, loan_id):
        maturity = 1000 + 30 * ONE_DAY
        assert not platform.is_expired(loan_id, maturity)
        with pytest.raises(LoanNotExpired):
            platform.liquidate(loan_id, maturity)
        assert platform.is_expired(loan_id, maturity + 1)
        platform.liquidate(loan_id, maturity + 1)
        assert platform.is_liquidated(loan_id)
        assert not platform.is_expired(loan_id, maturity + 1)
        assert platform.collateral_owner("PUNK", 7) == "lender"

    def test_transfer_note_requires_holder(self, platform, loan_id):
        with pytest.raises(NoteNotOwned):
            platform.transfer_note(loan_id, "mallory", "vault")

    def test_duplicate_collateral_rejected(self, platform):
        with pytest.raises(ValueError):
            platform.mint_collateral("PUNK", 7, "mallory")


# =============================================================================
# PROTOCOL CONFORMANCE
# =============================================================================

class TestProtocols:

    def test_standard_collaborators_satisfy_protocols(self):
        currency = InMemoryCurrency()
        platform = SimulatedLendingPlatform(currency)
        model = RateModel(offset=0, slope1=0, slope2=0, kink=1, max=1)
        assert isinstance(currency, DepositAsset)
        assert isinstance(platform, NoteAdapter)
        assert isinstance(platform, CollateralCustody)
        assert isinstance(RoleBasedAccessPolicy("admin"), AccessPolicy)
        assert isinstance(LoanPricer(StaticCollateralOracle(), model), LoanPriceOracle)
