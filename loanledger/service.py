"""Entry points the REST layer calls into: matching, reconciliation, reads."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loanledger.allowances import AllowanceLedger
from loanledger.finance import ZERO, Number, loan_summary, to_decimal
from loanledger.matching import MatchResult, match_lenders_for_loan
from loanledger.reconciler import Reconciler, TickReport
from loanledger.store import LedgerStore, normalize_address

LOGGER = logging.getLogger("loanledger.service")


def _day_start(as_of: Optional[datetime]) -> datetime:
    moment = as_of or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def _is_open(loan: Dict[str, Any]) -> bool:
    return bool(loan.get("is_active")) and not loan.get("is_liquidated") and not loan.get("is_repaid")


class LendingService:
    def __init__(self, store: LedgerStore, ledger: Optional[AllowanceLedger] = None, reconciler: Optional[Reconciler] = None) -> None:
        self.store = store
        self.ledger = ledger or AllowanceLedger(store)
        self.reconciler = reconciler

    def register_user(self, user_address: str, **profile: Any) -> Dict[str, Any]:
        address = normalize_address(user_address)
        if not address:
            raise ValueError("user_address is required")
        with self.store.transaction():
            existing = self.store.find("users", address)
            if existing:
                return existing
            record = {
                "user_address": address,
                "loans": [],
                "lendings": [],
                "payments": [],
                "created_at": int(time.time()),
            }
            record.update(profile)
            return self.store.create("users", address, record)

    def match_lenders_for_loan(
        self,
        loan_amount: Number,
        interest_rate: Number,
        duration_months: int,
        *,
        borrower_address: Optional[str] = None,
    ) -> MatchResult:
        allowances = self.ledger.allowances_for_matching(exclude_address=borrower_address)
        result = match_lenders_for_loan(allowances, loan_amount, interest_rate, duration_months)
        LOGGER.info(
            "Matched %s lenders for %s over %s months (success=%s)",
            len(result.lenders),
            loan_amount,
            duration_months,
            result.success,
        )
        return result

    def run_reconciliation_tick(self) -> TickReport:
        if self.reconciler is None:
            LOGGER.error("Reconciliation requested without a configured chain client")
            return TickReport(error="reconciler not configured")
        return self.reconciler.run_tick()

    def create_allowance(self, user_address: str, amount: Number, duration_preference: int = 0) -> Dict[str, Any]:
        return self.ledger.create_allowance(user_address, amount, duration_preference)

    def available_liquidity(self, duration_months: Optional[int] = None, exclude_address: Optional[str] = None) -> Decimal:
        return self.ledger.available_liquidity(duration_months, exclude_address)

    def loan_summary(
        self,
        collateral_btc: Number,
        btc_price: Number,
        principal: Number,
        down_payment: Number,
        annual_rate_percent: Number,
        term: int,
    ) -> Dict[str, Any]:
        return loan_summary(collateral_btc, btc_price, principal, down_payment, annual_rate_percent, term)

    def get_user(self, user_address: str) -> Optional[Dict[str, Any]]:
        return self.store.find("users", normalize_address(user_address))

    def get_loan(self, loan_id: str) -> Optional[Dict[str, Any]]:
        """Look a loan up by chain id, falling back to the internal id."""
        loan = self.store.find("loans", str(loan_id).lower())
        if loan:
            return loan
        matches = self.store.find_all("loans", lambda candidate: candidate.get("id") == loan_id)
        return matches[0] if matches else None

    def get_loans_for_user(self, user_address: str) -> List[Dict[str, Any]]:
        address = normalize_address(user_address)
        return self.store.find_all("loans", lambda loan: normalize_address(loan.get("user_address")) == address)

    def get_allowance(self, user_address: str) -> Optional[Dict[str, Any]]:
        return self.ledger.get(user_address)

    def get_allowances(self) -> List[Dict[str, Any]]:
        return self.store.find_all("lends")

    def get_payments_for_loan(self, loan_id: str) -> List[Dict[str, Any]]:
        key = str(loan_id).lower()
        return self.store.find_all("payments", lambda payment: payment.get("loan_id") == key)

    def loan_history(self, loan_id: str) -> List[Dict[str, Any]]:
        return self.store.history(f"loan:{str(loan_id).lower()}")

    def loans_requiring_reconciliation(self) -> List[Dict[str, Any]]:
        return self.store.find_all("loans", lambda loan: bool(loan.get("ledger_inconsistent")))

    def loans_due(self, as_of: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open loans whose next payment falls on or before the start of ``as_of``'s day."""
        cutoff = int(_day_start(as_of).timestamp())
        return self.store.find_all(
            "loans",
            lambda loan: _is_open(loan)
            and loan.get("next_payment_date") is not None
            and int(loan["next_payment_date"]) <= cutoff,
        )

    def loans_needing_reminder(self, as_of: Optional[datetime] = None) -> List[Dict[str, Any]]:
        today = _day_start(as_of)
        due = []
        for loan in self.store.find_all("loans", _is_open):
            next_payment = loan.get("next_payment_date")
            if next_payment is None:
                continue
            days_before = int(loan.get("reminderDaysBefore") or 3)
            reminder_day = _day_start(datetime.fromtimestamp(int(next_payment), timezone.utc) - timedelta(days=days_before))
            if reminder_day == today:
                due.append(loan)
        return due

    def stats(self) -> Dict[str, Any]:
        loans = self.store.find_all("loans")
        lends = self.store.find_all("lends")
        return {
            "uniqueBorrowers": len({loan.get("user_id") for loan in loans if loan.get("user_id")}),
            "totalLoanedUSD": sum((to_decimal(loan.get("loan_amount")) for loan in loans), ZERO),
            "totalLoanedBTC": sum((to_decimal(loan.get("asset_borrowed")) for loan in loans), ZERO),
            "totalUSDInvested": sum((to_decimal(lend.get("lending_amount_approved")) for lend in lends), ZERO),
            "uniqueLenders": len({lend.get("user_address") for lend in lends}),
        }


__all__ = ["LendingService"]
