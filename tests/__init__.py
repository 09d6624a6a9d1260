"""
AgriLedger Test Suite

Tests are organized by domain:
- ledger operations and concurrency
- order fulfillment
- provenance and event log
- catalog, audit sink, CLI and support utilities
"""
