"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the kvledger system.
Any compliant store or workflow MUST pass these tests.

The tests are organized by invariant:
1. test_non_negative.py - Balances never go below zero
2. test_contention.py - Compare-and-swap correctness under concurrent writers
3. test_order_integrity.py - Order amounts are immutable; bad amounts write nothing
4. test_settlement.py - Settlement happens exactly once

These tests use hypothesis for property-based testing.
"""
