"""Ledger Store, Hold Manager and Balance Service."""

from credit_engine.ledger.balances import BalanceService
from credit_engine.ledger.holds import HoldManager
from credit_engine.ledger.store import LedgerStore

__all__ = ["BalanceService", "HoldManager", "LedgerStore"]
