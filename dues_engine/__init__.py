"""Dues engine: monthly dues, payment allocation, ledger and fiscal rollover."""

__version__ = "0.1.0"
