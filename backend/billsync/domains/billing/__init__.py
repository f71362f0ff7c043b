"""Billing domain: webhook reconciliation, fallback verification and outer billing operations."""
