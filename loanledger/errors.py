"""Exception types raised by the ledger core."""
from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(LedgerError):
    """A referenced user, loan or allowance is not in the store."""


class InsufficientLiquidityError(LedgerError):
    """Available allowances cannot fund the requested amount."""


class LedgerDivergenceError(LedgerError):
    """Stored allowance balance disagrees with on-chain contributions."""


class TransientChainError(LedgerError):
    """RPC call failed or timed out; safe to retry on the next tick."""


class DuplicateRecordError(LedgerError):
    """A document with the same key already exists."""


__all__ = [
    "LedgerError",
    "NotFoundError",
    "InsufficientLiquidityError",
    "LedgerDivergenceError",
    "TransientChainError",
    "DuplicateRecordError",
]
