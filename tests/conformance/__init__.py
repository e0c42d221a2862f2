"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of batch settlement.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Settlements redistribute value, never create it
2. atomicity.py - A batch settles completely or leaves no trace
3. ordering.py - Disbursement and collection follow caller order
4. determinism.py - Same inputs, same fees and balances

These tests use hypothesis for property-based testing.
"""
