"""
solarledger/core/errors.py
==========================
Solar P2P Ledger — exception hierarchy.

Every failed contract call surfaces as a ``ContractRevert`` subclass carrying
a human-readable ``reason``.  The host ledger rolls back all state touched by
the call before the exception reaches the caller, so a revert never leaves
partial effects behind.

Categories
----------
* ``InvalidInput``   — non-positive amount or price, wrong argument type.
* ``Unauthorized``   — caller is not the owner / not an active producer.
* ``InvalidState``   — producer inactive, not enough energy, payment too
  low, unknown transaction index.
* ``InsufficientFunds`` — host-level: the sender's balance cannot cover the
  value attached to the call.
"""

from __future__ import annotations

__all__ = [
    "LedgerError",
    "ContractRevert",
    "InvalidInput",
    "Unauthorized",
    "InvalidState",
    "InsufficientFunds",
]


class LedgerError(RuntimeError):
    """Base exception for all ledger errors."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ContractRevert(LedgerError):
    """A contract call was aborted; no state change escaped."""

    kind: str = "revert"


class InvalidInput(ContractRevert, ValueError):
    kind = "invalid_input"


class Unauthorized(ContractRevert):
    kind = "unauthorized"


class InvalidState(ContractRevert):
    kind = "invalid_state"


class InsufficientFunds(LedgerError):
    """Sender balance too low to cover an attached value or transfer."""

    kind = "insufficient_funds"
