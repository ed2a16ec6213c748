"""
conftest.py - Shared pytest fixtures for vault tests

Provides common fixtures used across unit, functional and conformance tests:
- A harness: vault plus its collaborators (currency, lending platform,
  access policy, fixed-price oracle)
- Vaults with and without reserves
- A vault funded with senior and junior deposits

Scenario helpers (originate, purchase, repay, default) live in
tests/vault_helpers.py.
"""

import pytest
from decimal import Decimal

from tranche_vault import VaultConfig, Tranche

from tests.vault_helpers import build_harness, ALICE, BOB


# =============================================================================
# HARNESS FIXTURES
# =============================================================================

@pytest.fixture
def harness():
    """Vault without reserves, so every deposited unit is distributable."""
    return build_harness()


@pytest.fixture
def reserved_harness():
    """Vault holding back the default 10% reserve."""
    return build_harness(VaultConfig())


@pytest.fixture
def vault(harness):
    return harness.vault


@pytest.fixture
def currency(harness):
    return harness.currency


@pytest.fixture
def platform(harness):
    return harness.platform


@pytest.fixture
def oracle(harness):
    return harness.oracle


@pytest.fixture
def policy(harness):
    return harness.policy


# =============================================================================
# FUNDED VAULT
# =============================================================================

@pytest.fixture
def funded_vault(vault):
    """Vault with 10 senior (ALICE) and 5 junior (BOB) deposited at START."""
    vault.deposit(ALICE, Tranche.SENIOR, Decimal("10"))
    vault.deposit(BOB, Tranche.JUNIOR, Decimal("5"))
    return vault
