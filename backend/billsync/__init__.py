"""Billsync: reconciles payment provider events into subscription and payment records."""
