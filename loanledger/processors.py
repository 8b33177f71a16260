"""Idempotent projections of lending pool events onto the ledger."""
from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from loanledger.allowances import AllowanceLedger
from loanledger.chain import ChainClient, ChainEvent, to_hex
from loanledger.config import Settings
from loanledger.errors import DuplicateRecordError
from loanledger.finance import PERIOD_SECONDS, ZERO, derive_loan_terms, from_units, quantize_btc, to_decimal
from loanledger.store import LedgerStore, normalize_address

LOGGER = logging.getLogger("loanledger.processors")

COLLATERAL_ASSET = "BTC"


class ProcessOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class EventProcessor:
    """Base class: one processor per contract event.

    ``process`` is safe to call any number of times for the same log. The
    idempotency key is claimed in the same store transaction as the writes, so
    a redelivered event finds its key taken and becomes a no-op.
    """

    event_name = ""

    def __init__(self, store: LedgerStore, chain: ChainClient, ledger: AllowanceLedger, settings: Settings) -> None:
        self.store = store
        self.chain = chain
        self.ledger = ledger
        self.settings = settings

    def idempotency_key(self, event: ChainEvent) -> str:
        return event.idempotency_key

    def process(self, event: ChainEvent) -> ProcessOutcome:
        if self.store.is_processed(self.idempotency_key(event)):
            LOGGER.debug("%s %s already processed", self.event_name, event.transaction_hash)
            return ProcessOutcome.DUPLICATE
        return self.handle(event)

    def handle(self, event: ChainEvent) -> ProcessOutcome:
        raise NotImplementedError

    def _claim(self, event: ChainEvent) -> bool:
        return self.store.claim_event(
            self.idempotency_key(event),
            self.event_name,
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
        )

    def _usd(self, raw: Any) -> Decimal:
        return from_units(raw or 0, self.settings.usdc_decimals)

    def _btc(self, raw: Any) -> Decimal:
        return from_units(raw or 0, self.settings.btc_decimals)

    def _price(self, raw: Any) -> Decimal:
        return from_units(raw or 0, self.settings.price_decimals)

    def _event_time(self, event: ChainEvent) -> int:
        return self.chain.block_timestamp(event.block_number)


class DepositProcessor(EventProcessor):
    event_name = "Deposit"

    def idempotency_key(self, event: ChainEvent) -> str:
        return f"Deposit:{event.transaction_hash}"

    def handle(self, event: ChainEvent) -> ProcessOutcome:
        lender = normalize_address(event.args.get("lender"))
        amount = self._usd(event.args.get("amount"))
        user = self.store.find("users", lender)
        if not user:
            LOGGER.warning("User with address %s not found, skipping deposit %s", lender, event.transaction_hash)
            return ProcessOutcome.SKIPPED
        chain_id = self.chain.chain_id()
        timestamp = self._event_time(event)
        with self.store.transaction():
            if not self._claim(event):
                return ProcessOutcome.DUPLICATE
            lend = self.ledger.record_deposit(
                user,
                amount,
                event.transaction_hash,
                chain_id=chain_id,
                opened_on=timestamp,
            )
        LOGGER.info("Recorded deposit of %s from %s into allowance %s", amount, lender, lend["id"])
        return ProcessOutcome.APPLIED


class LoanCreatedProcessor(EventProcessor):
    """Creates the loan from the contract's own view of it.

    Terms, schedule and per-lender contributions are read back through
    ``loans``, ``getInstallmentSchedule`` and ``getContributions``; the event
    arguments only identify the loan.
    """

    event_name = "LoanCreated"

    def idempotency_key(self, event: ChainEvent) -> str:
        return f"LoanCreated:{to_hex(event.args.get('id'))}"

    def process(self, event: ChainEvent) -> ProcessOutcome:
        loan_id = to_hex(event.args.get("id"))
        existing = self.store.find("loans", loan_id)
        if existing:
            if not existing.get("allowances_updated"):
                LOGGER.info("Loan %s exists without allowance booking, resuming", loan_id)
                self.ledger.book_loan(loan_id)
                return ProcessOutcome.APPLIED
            LOGGER.debug("Loan %s already exists", loan_id)
            return ProcessOutcome.DUPLICATE
        return self.handle(event)

    def _build_loan(self, event: ChainEvent, loan_id: str, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        details = self.chain.loans(loan_id)
        duration = int(details.get("duration") or 0)
        if duration <= 0:
            LOGGER.warning("Loan %s reports no duration, skipping", loan_id)
            return None
        installments = self.chain.get_installment_schedule(loan_id)
        contributions = self.chain.get_contributions(loan_id)
        chain_id = self.chain.chain_id()

        principal = self._usd(details.get("principal", event.args.get("amount")))
        borrower_deposit = self._usd(details.get("borrowerDeposit"))
        interest_rate = int(details.get("interestRate") or 0)
        btc_price = self._price(details.get("btcPriceAtCreation"))
        collateral = self._btc(event.args.get("collateral", details.get("collateral")))
        start_time = int(details.get("startTime") or 0) or self._event_time(event)
        terms = derive_loan_terms(principal, interest_rate, duration, btc_price)

        lenders_capital_invested = []
        receivable_monthly = []
        for contribution in contributions:
            address = normalize_address(contribution.get("lender"))
            amount = self._usd(contribution.get("amount"))
            receivable_interest = self._usd(contribution.get("receivableInterest"))
            lenders_capital_invested.append(
                {
                    "user_address": address,
                    "amount": amount,
                    "amount_received": ZERO,
                    "received_interest": ZERO,
                    "total_received": ZERO,
                    "remaining_amount": amount,
                }
            )
            receivable_monthly.append(
                {
                    "user_address": address,
                    "amount": amount / duration,
                    "interest": receivable_interest / duration,
                    "total_amount": (amount + receivable_interest) / duration,
                    "remaining_amount": amount,
                }
            )

        schedule = [
            {
                "duePrincipal": self._usd(installment.get("duePrincipal")),
                "dueInterest": self._usd(installment.get("dueInterest")),
                "dueTimestamp": int(installment.get("dueTimestamp") or 0),
                "paid": bool(installment.get("paid")),
            }
            for installment in installments
        ]

        return {
            "loan_id": loan_id,
            "user_id": user.get("id"),
            "user_address": user["user_address"],
            "loan_amount": principal,
            "up_front_payment": borrower_deposit,
            "total_amount_payable": terms["total_amount_payable"],
            "remaining_amount": principal,
            "collateral": collateral,
            "asset": COLLATERAL_ASSET,
            "asset_borrowed": terms["asset_borrowed"],
            "asset_remaining": terms["asset_borrowed"],
            "asset_price": btc_price,
            "asset_released_per_month": terms["asset_released_per_month"],
            "chain_id": chain_id,
            "interest_rate": interest_rate,
            "loan_duration": duration,
            "number_of_monthly_installments": duration,
            "interest": terms["interest"],
            "monthly_payable_amount": self._usd(details.get("monthlyPayment")),
            "interest_payable_month": terms["interest_payable_month"],
            "principal_payable_month": terms["principal_payable_month"],
            "liquidation_factor": principal - borrower_deposit,
            "openedOn": start_time,
            "last_payment_date": start_time,
            "next_payment_date": start_time + PERIOD_SECONDS,
            "loan_end": start_time + duration * PERIOD_SECONDS,
            "months_not_paid": 0,
            "reminderDaysBefore": 3,
            "amortization_schedule": schedule,
            "lenders_capital_invested": lenders_capital_invested,
            "receivable_amount_monthly_by_lenders": receivable_monthly,
            "is_active": True,
            "is_liquidated": False,
            "is_repaid": False,
            "is_defaulted": False,
            "allowances_updated": False,
            "ledger_inconsistent": False,
            "loanCreationTxHash": event.transaction_hash,
        }

    def handle(self, event: ChainEvent) -> ProcessOutcome:
        loan_id = to_hex(event.args.get("id"))
        borrower = normalize_address(event.args.get("borrower"))
        user = self.store.find("users", borrower)
        if not user:
            LOGGER.warning("User with wallet address %s not found, skipping loan %s", borrower, loan_id)
            return ProcessOutcome.SKIPPED
        payload = self._build_loan(event, loan_id, user)
        if payload is None:
            return ProcessOutcome.SKIPPED
        with self.store.transaction():
            if not self._claim(event):
                return ProcessOutcome.DUPLICATE
            try:
                loan = self.store.create("loans", loan_id, payload)
            except DuplicateRecordError:
                LOGGER.info("Loan %s created concurrently, skipping", loan_id)
                return ProcessOutcome.DUPLICATE
            user = self.store.find("users", borrower) or user
            user.setdefault("loans", []).append(loan["id"])
            totals = user.get("totalCapitalBorrowed") or {"asset": COLLATERAL_ASSET, "amount": ZERO}
            totals["amount"] = to_decimal(totals.get("amount")) + to_decimal(payload["loan_amount"])
            totals["chain_id"] = payload["chain_id"]
            user["totalCapitalBorrowed"] = totals
            self.store.update("users", borrower, user)
            self.store.record_event(
                f"loan:{loan_id}",
                "loan-created",
                {"principal": payload["loan_amount"], "borrower": borrower, "transactionHash": event.transaction_hash},
            )
            booking = self.ledger.book_loan(loan_id)
        if not booking.consistent:
            LOGGER.warning("Loan %s saved with unbooked lenders %s", loan_id, booking.skipped)
        LOGGER.info("Loan %s saved to ledger", loan_id)
        return ProcessOutcome.APPLIED


def apply_installments(
    loan: Dict[str, Any],
    schedule: List[Dict[str, Any]],
    price: Decimal,
    *,
    fully_repaid: bool,
    timestamp: int,
) -> int:
    """Mark installments the contract reports as paid and roll the loan's dates.

    Lender balances and ``remaining_amount`` are left alone; those move only
    with a Payout. Returns how many installments were newly marked paid.
    """
    stored_schedule = loan.get("amortization_schedule") or []
    newly_paid = 0
    for index, installment in enumerate(schedule):
        if installment.get("paid") and index < len(stored_schedule) and not stored_schedule[index].get("paid"):
            stored_schedule[index]["paid"] = True
            newly_paid += 1
    loan["amortization_schedule"] = stored_schedule

    remaining = to_decimal(loan.get("remaining_amount"))
    loan["asset_remaining"] = quantize_btc(remaining / price) if price > 0 else to_decimal(loan.get("asset_remaining"))

    all_paid = bool(stored_schedule) and all(installment.get("paid") for installment in stored_schedule)
    if fully_repaid or all_paid:
        loan["is_active"] = False
        loan["is_repaid"] = True
        loan["remaining_amount"] = ZERO
        loan["asset_remaining"] = ZERO
        loan["next_payment_date"] = None
        for entry in loan.get("lenders_capital_invested", []):
            entry["remaining_amount"] = ZERO
        for entry in loan.get("receivable_amount_monthly_by_lenders", []):
            entry["remaining_amount"] = ZERO
    else:
        paid_count = sum(1 for installment in stored_schedule if installment.get("paid"))
        loan["next_payment_date"] = int(loan.get("openedOn") or timestamp) + (paid_count + 1) * PERIOD_SECONDS

    if newly_paid:
        loan["last_payment_date"] = timestamp
    return newly_paid


def apply_repayments(
    loan: Dict[str, Any],
    contributions: List[Dict[str, Decimal]],
    schedule: List[Dict[str, Any]],
    price: Decimal,
    *,
    fully_repaid: bool,
    timestamp: int,
) -> List[Dict[str, Any]]:
    """Fold the contract's cumulative repayment figures into ``loan``.

    ``contributions`` carry cumulative ``repaidPrincipal``/``repaidInterest``
    per lender; only the difference against what the loan already recorded is
    applied, so the same snapshot can be folded in repeatedly. Returns the
    per-lender distributions of this application.
    """
    invested = {normalize_address(entry.get("user_address")): entry for entry in loan.get("lenders_capital_invested", [])}
    receivable = {
        normalize_address(entry.get("user_address")): entry
        for entry in loan.get("receivable_amount_monthly_by_lenders", [])
    }
    distributions = []
    principal_paid = ZERO
    for contribution in contributions:
        address = normalize_address(contribution.get("lender"))
        entry = invested.get(address)
        if entry is None:
            LOGGER.warning("Lender %s not recorded on loan %s", address, loan.get("loan_id"))
            continue
        principal_delta = to_decimal(contribution.get("repaidPrincipal")) - to_decimal(entry.get("amount_received"))
        interest_delta = to_decimal(contribution.get("repaidInterest")) - to_decimal(entry.get("received_interest"))
        if principal_delta < 0 or interest_delta < 0:
            LOGGER.warning(
                "Repaid figures for lender %s on loan %s went backwards, ignoring", address, loan.get("loan_id")
            )
            principal_delta = max(principal_delta, ZERO)
            interest_delta = max(interest_delta, ZERO)
        total_delta = principal_delta + interest_delta
        if total_delta == 0:
            continue
        entry["amount_received"] = to_decimal(entry.get("amount_received")) + principal_delta
        entry["received_interest"] = to_decimal(entry.get("received_interest")) + interest_delta
        entry["total_received"] = to_decimal(entry.get("total_received")) + total_delta
        entry["remaining_amount"] = max(to_decimal(entry.get("remaining_amount")) - principal_delta, ZERO)
        if address in receivable:
            receivable[address]["remaining_amount"] = entry["remaining_amount"]
        principal_paid += principal_delta
        distributions.append(
            {"user_address": address, "amount": principal_delta, "interest": interest_delta, "total": total_delta}
        )

    loan["remaining_amount"] = max(to_decimal(loan.get("remaining_amount")) - principal_paid, ZERO)
    apply_installments(loan, schedule, price, fully_repaid=fully_repaid, timestamp=timestamp)
    if distributions:
        loan["last_payment_date"] = timestamp
    return distributions


class _RepaymentProcessor(EventProcessor):
    def _schedule(self, loan_id: str) -> List[Dict[str, Any]]:
        return [{"paid": bool(item.get("paid"))} for item in self.chain.get_installment_schedule(loan_id)]

    def _snapshot(self, loan_id: str) -> Dict[str, Any]:
        contributions = [
            {
                "lender": normalize_address(contribution.get("lender")),
                "repaidPrincipal": self._usd(contribution.get("repaidPrincipal")),
                "repaidInterest": self._usd(contribution.get("repaidInterest")),
            }
            for contribution in self.chain.get_contributions(loan_id)
        ]
        return {
            "contributions": contributions,
            "schedule": self._schedule(loan_id),
            "price": self._price(self.chain.get_price()),
        }


class InstallmentPaidProcessor(_RepaymentProcessor):
    """Keeps the schedule and payment dates in step with the contract.

    Lender balances are settled by the Payout for the same repayment, which
    also records the per-lender distributions.
    """

    event_name = "InstallmentPaid"

    def idempotency_key(self, event: ChainEvent) -> str:
        return f"InstallmentPaid:{to_hex(event.args.get('loanId'))}:{int(event.args.get('index', 0))}"

    def handle(self, event: ChainEvent) -> ProcessOutcome:
        loan_id = to_hex(event.args.get("loanId"))
        index = int(event.args.get("index", 0))
        if not self.store.exists("loans", loan_id):
            LOGGER.warning("Loan with contract ID %s not found, skipping installment %s", loan_id, index)
            return ProcessOutcome.SKIPPED
        schedule = self._schedule(loan_id)
        price = self._price(self.chain.get_price())
        timestamp = self._event_time(event)
        with self.store.transaction():
            if not self._claim(event):
                return ProcessOutcome.DUPLICATE
            loan = self.store.find("loans", loan_id)
            newly_paid = apply_installments(loan, schedule, price, fully_repaid=False, timestamp=timestamp)
            self.store.update("loans", loan_id, loan)
            self.store.record_event(
                f"loan:{loan_id}",
                "installment-paid",
                {"index": index, "newlyPaid": newly_paid, "transactionHash": event.transaction_hash},
            )
        LOGGER.info("Updated loan %s for installment %s", loan_id, index)
        return ProcessOutcome.APPLIED


class PayoutProcessor(_RepaymentProcessor):
    event_name = "Payout"

    def idempotency_key(self, event: ChainEvent) -> str:
        return f"Payout:{event.transaction_hash}"

    def handle(self, event: ChainEvent) -> ProcessOutcome:
        loan_id = to_hex(event.args.get("loanId"))
        borrower = normalize_address(event.args.get("borrower"))
        amount = self._usd(event.args.get("amount"))
        fully_repaid = bool(event.args.get("fullyRepaid"))
        if not self.store.exists("loans", loan_id):
            LOGGER.warning("Loan with contract ID %s not found, skipping payout %s", loan_id, event.transaction_hash)
            return ProcessOutcome.SKIPPED
        if self.store.exists("payments", event.transaction_hash):
            self._claim(event)
            return ProcessOutcome.DUPLICATE
        snapshot = self._snapshot(loan_id)
        timestamp = self._event_time(event)
        with self.store.transaction():
            if not self._claim(event):
                return ProcessOutcome.DUPLICATE
            loan = self.store.find("loans", loan_id)
            distributions = apply_repayments(
                loan,
                snapshot["contributions"],
                snapshot["schedule"],
                snapshot["price"],
                fully_repaid=fully_repaid,
                timestamp=timestamp,
            )
            loan["liquidation_factor"] = to_decimal(loan["remaining_amount"]) - amount
            self.store.update("loans", loan_id, loan)
            payment = self.store.create(
                "payments",
                event.transaction_hash,
                {
                    "user_id": loan.get("user_id"),
                    "user_address": borrower,
                    "payment_amount": amount,
                    "payment_time": timestamp,
                    "loan_id": loan_id,
                    "loan_ref": loan.get("id"),
                    "asset": loan.get("asset"),
                    "distributions": distributions,
                    "transaction_hash": event.transaction_hash,
                },
            )
            user = self.store.find("users", borrower)
            if user:
                user.setdefault("payments", []).append(payment["id"])
                self.store.update("users", borrower, user)
            self.store.record_event(
                f"loan:{loan_id}",
                "payout-recorded",
                {"amount": amount, "fullyRepaid": fully_repaid, "transactionHash": event.transaction_hash},
            )
        LOGGER.info("Payment recorded for loan %s, tx: %s", loan_id, event.transaction_hash)
        return ProcessOutcome.APPLIED


class LiquidationProcessor(EventProcessor):
    event_name = "LoanLiquidated"

    def idempotency_key(self, event: ChainEvent) -> str:
        return f"LoanLiquidated:{to_hex(event.args.get('id'))}"

    def handle(self, event: ChainEvent) -> ProcessOutcome:
        loan_id = to_hex(event.args.get("id"))
        price = self._price(event.args.get("btcPriceNow"))
        with self.store.transaction():
            loan = self.store.find("loans", loan_id)
            if not loan:
                LOGGER.warning("Loan with contract ID %s not found, skipping liquidation", loan_id)
                return ProcessOutcome.SKIPPED
            if not self._claim(event):
                return ProcessOutcome.DUPLICATE
            loan["is_active"] = False
            loan["is_liquidated"] = True
            loan["liquidation_price"] = price
            self.store.update("loans", loan_id, loan)
            self.store.record_event(f"loan:{loan_id}", "loan-liquidated", {"price": price})
        LOGGER.info("Marked loan %s as liquidated", loan_id)
        return ProcessOutcome.APPLIED


def default_processors(
    store: LedgerStore,
    chain: ChainClient,
    ledger: AllowanceLedger,
    settings: Settings,
) -> List[EventProcessor]:
    """Processors in dependency order: a loan exists before its payouts."""
    return [
        processor_cls(store, chain, ledger, settings)
        for processor_cls in (
            DepositProcessor,
            LoanCreatedProcessor,
            InstallmentPaidProcessor,
            PayoutProcessor,
            LiquidationProcessor,
        )
    ]


__all__ = [
    "DepositProcessor",
    "EventProcessor",
    "InstallmentPaidProcessor",
    "LiquidationProcessor",
    "LoanCreatedProcessor",
    "PayoutProcessor",
    "ProcessOutcome",
    "apply_installments",
    "apply_repayments",
    "default_processors",
]
