"""Reconciliation of bank outflows with member expense claims."""

__version__ = "0.1.0"
