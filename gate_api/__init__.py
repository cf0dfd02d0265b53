"""Entitlement gate: webhook-driven license ledger and access decisions."""

__version__ = "0.3.1"
