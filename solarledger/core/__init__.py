"""
solarledger/core/__init__.py
============================
Ledger core: the trading contract and the host it runs on.
"""

from .contract import EnergyTradingContract
from .errors import ContractRevert, InvalidInput, InvalidState, LedgerError, Unauthorized
from .host import CallContext, HostLedger

__all__ = [
    "EnergyTradingContract",
    "HostLedger",
    "CallContext",
    "LedgerError",
    "ContractRevert",
    "InvalidInput",
    "InvalidState",
    "Unauthorized",
]
