"""Split Ledger webhook delivery service."""

__version__ = "1.0.0"
