"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the tranche vault.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Vault books match the currency it holds
2. atomicity.py - All-or-nothing command semantics, reentrancy rejection
3. idempotency.py - Lifecycle notifications take effect at most once
4. determinism.py - Reproducible behavior
5. temporal.py - Clock ordering, accrual and expiry

Random workloads are generated by operations.py.
These tests use hypothesis for property-based testing.
"""
