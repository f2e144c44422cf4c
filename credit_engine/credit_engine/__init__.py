"""Credit accounting core: ledger, holds, balances, and billing primitives."""

__version__ = "0.4.0"
