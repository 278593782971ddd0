"""
Conformance Test Suite

Normative behavior of the loan ledger, organized by invariant:
1. test_atomicity.py - Refused operations leave no trace
2. test_state_machine.py - Lifecycle transitions match a reference model
3. test_conservation.py - Zero-sum currency and exact escrow
4. test_concurrency.py - Serialized operations, no nested state changes
5. test_temporal.py - Historical snapshots match what was observed at the time

These tests use hypothesis for property-based testing.
"""
