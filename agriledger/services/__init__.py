"""Ledger, fulfillment, provenance and supporting services."""
