"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the escrow core.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Credits are never created or destroyed outside issuance
2. escrow_once.py - An escrow resolves exactly once
3. transition_closure.py - Illegal transitions change nothing
4. idempotency.py - Repeated expiry and deposits apply once
5. atomicity.py - A failing transition leaves no partial writes
6. concurrency.py - Racing transitions on one session have one winner

These tests use hypothesis for property-based testing.
"""
