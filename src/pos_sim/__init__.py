"""Receiptless POS checkout simulator core."""

__version__ = "0.4.0"
