"""Lender allowance bookkeeping: approved, available and utilised capital."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loanledger.errors import LedgerDivergenceError, NotFoundError
from loanledger.finance import ZERO, Number, to_decimal
from loanledger.matching import duration_matches
from loanledger.store import LedgerStore, normalize_address

LOGGER = logging.getLogger("loanledger.allowances")

DEFAULT_ASSET = "USDC"


@dataclass
class BookingResult:
    loan_id: str
    booked: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    already_booked: bool = False

    @property
    def consistent(self) -> bool:
        return not self.skipped


class AllowanceLedger:
    """Keeps ``available_amount + utilisedAmount == lending_amount_approved`` per lender."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def get(self, user_address: str) -> Optional[Dict[str, Any]]:
        return self.store.find("lends", normalize_address(user_address))

    def _new_allowance(
        self,
        address: str,
        amount: Decimal,
        *,
        user_id: Optional[str],
        duration_preference: int,
        opened_on: int,
    ) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "user_address": address,
            "lending_amount_approved": amount,
            "available_amount": amount,
            "utilisedAmount": ZERO,
            "duration_preference": int(duration_preference or 0),
            "openedOn": opened_on,
            "updated_at": opened_on,
            "loans": [],
            "deposits": [],
            "needs_reconciliation": False,
        }

    def _link_user(self, user: Optional[Dict[str, Any]], lend: Dict[str, Any], amount: Decimal, chain_id: Optional[int]) -> None:
        if not user:
            return
        if lend["id"] not in user.setdefault("lendings", []):
            user["lendings"].append(lend["id"])
        totals = user.get("totalCapitalLent") or {"chain_id": chain_id, "asset": DEFAULT_ASSET, "amount": ZERO}
        totals["amount"] = to_decimal(totals.get("amount")) + amount
        if chain_id is not None:
            totals["chain_id"] = chain_id
        totals.setdefault("asset", DEFAULT_ASSET)
        user["totalCapitalLent"] = totals
        self.store.update("users", user["user_address"], user)

    def create_allowance(
        self,
        user_address: str,
        amount: Number,
        duration_preference: int = 0,
        *,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a lender allowance or top up the existing one."""
        address = normalize_address(user_address)
        if not address:
            raise ValueError("user_address is required")
        value = to_decimal(amount)
        if value <= 0:
            raise ValueError("allowance amount must be positive")
        now = int(time.time())
        with self.store.transaction():
            existing = self.store.find("lends", address)
            if existing:
                existing["lending_amount_approved"] = to_decimal(existing["lending_amount_approved"]) + value
                existing["available_amount"] = to_decimal(existing["available_amount"]) + value
                existing["duration_preference"] = int(duration_preference or 0)
                existing["updated_at"] = now
                stored = self.store.update("lends", address, existing)
            else:
                user = self.store.find("users", address)
                stored = self.store.create(
                    "lends",
                    address,
                    self._new_allowance(
                        address,
                        value,
                        user_id=user_id or (user or {}).get("id"),
                        duration_preference=duration_preference,
                        opened_on=now,
                    ),
                )
                if user and stored["id"] not in user.get("lendings", []):
                    user.setdefault("lendings", []).append(stored["id"])
                    self.store.update("users", address, user)
            self.store.record_event(f"lend:{address}", "allowance-updated", {"amount": value})
        return stored

    def record_deposit(
        self,
        user: Dict[str, Any],
        amount: Number,
        transaction_hash: str,
        *,
        chain_id: Optional[int] = None,
        opened_on: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Book an on-chain deposit against the lender's allowance."""
        address = normalize_address(user["user_address"])
        value = to_decimal(amount)
        timestamp = int(opened_on or time.time())
        with self.store.transaction():
            lend = self.store.find("lends", address)
            if lend and transaction_hash in lend.get("deposits", []):
                LOGGER.debug("Deposit %s already booked for %s", transaction_hash, address)
                return lend
            if lend:
                lend["lending_amount_approved"] = to_decimal(lend["lending_amount_approved"]) + value
                lend["available_amount"] = to_decimal(lend["available_amount"]) + value
                lend["updated_at"] = timestamp
                lend.setdefault("deposits", []).append(transaction_hash)
                lend = self.store.update("lends", address, lend)
            else:
                payload = self._new_allowance(
                    address, value, user_id=user.get("id"), duration_preference=0, opened_on=timestamp
                )
                payload["deposits"] = [transaction_hash]
                payload["chain_id"] = chain_id
                lend = self.store.create("lends", address, payload)
            self._link_user(user, lend, value, chain_id)
            self.store.record_event(
                f"lend:{address}", "deposit-recorded", {"amount": value, "transactionHash": transaction_hash}
            )
        return lend

    def _debit(self, lend: Optional[Dict[str, Any]], address: str, amount: Decimal, loan_id: str) -> Dict[str, Any]:
        if lend is None:
            raise LedgerDivergenceError("no allowance recorded for lender", {"lender": address, "loanId": loan_id})
        available = to_decimal(lend.get("available_amount"))
        if available < amount:
            raise LedgerDivergenceError(
                "allowance balance below on-chain contribution",
                {"lender": address, "loanId": loan_id, "available": available, "required": amount},
            )
        lend["available_amount"] = available - amount
        lend["utilisedAmount"] = to_decimal(lend.get("utilisedAmount")) + amount
        if loan_id not in lend.setdefault("loans", []):
            lend["loans"].append(loan_id)
        lend["updated_at"] = int(time.time())
        return self.store.update("lends", address, lend)

    def book_loan(self, loan_id: str) -> BookingResult:
        """Move each contributor's share from available to utilised, once per loan.

        The loan's ``lenders_capital_invested`` entries (read back from the
        contract) drive the debits. A lender whose stored balance cannot cover
        the contribution is skipped and the loan is flagged for manual
        reconciliation; the remaining lenders are still booked.
        """
        result = BookingResult(loan_id=loan_id)
        with self.store.transaction():
            loan = self.store.find("loans", loan_id)
            if loan is None:
                raise NotFoundError("loan not found", {"loanId": loan_id})
            if loan.get("allowances_updated"):
                result.already_booked = True
                return result

            contributions: Dict[str, Decimal] = {}
            for entry in loan.get("lenders_capital_invested", []):
                address = normalize_address(entry.get("user_address"))
                contributions[address] = contributions.get(address, ZERO) + to_decimal(entry.get("amount"))

            for address, amount in contributions.items():
                lend = self.store.find("lends", address)
                try:
                    self._debit(lend, address, amount, loan_id)
                except LedgerDivergenceError as exc:
                    LOGGER.warning("Reconciliation required for loan %s: %s %s", loan_id, exc.message, exc.details)
                    result.skipped.append({"user_address": address, "amount": amount, "reason": exc.message})
                    if lend is not None:
                        lend["needs_reconciliation"] = True
                        self.store.update("lends", address, lend)
                    continue
                result.booked.append({"user_address": address, "amount": amount})

            loan["allowances_updated"] = True
            if result.skipped:
                loan["ledger_inconsistent"] = True
                loan["unbooked_lenders"] = result.skipped
            self.store.update("loans", loan_id, loan)
            self.store.record_event(
                f"loan:{loan_id}",
                "allowances-booked",
                {"booked": result.booked, "skipped": result.skipped},
            )
        return result

    def allowances_for_matching(self, exclude_address: Optional[str] = None) -> List[Dict[str, Any]]:
        excluded = normalize_address(exclude_address)
        allowances = self.store.find_all(
            "lends",
            lambda lend: to_decimal(lend.get("lending_amount_approved")) > 0
            and normalize_address(lend.get("user_address")) != excluded,
        )
        allowances.sort(key=lambda lend: to_decimal(lend.get("lending_amount_approved")), reverse=True)
        return allowances

    def available_liquidity(
        self,
        duration_months: Optional[int] = None,
        exclude_address: Optional[str] = None,
    ) -> Decimal:
        total = ZERO
        for lend in self.allowances_for_matching(exclude_address):
            if duration_months is not None and not duration_matches(lend.get("duration_preference"), duration_months):
                continue
            total += max(to_decimal(lend.get("available_amount")), ZERO)
        return total


__all__ = ["AllowanceLedger", "BookingResult", "DEFAULT_ASSET"]
