"""Unattended agent loop driven by a persistent story ledger."""

__version__ = "0.3.0"
