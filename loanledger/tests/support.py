"""In-memory chain client and fixtures shared by the test modules."""
from __future__ import annotations

import os
import shutil
import tempfile
import unittest
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loanledger.allowances import AllowanceLedger
from loanledger.chain import ChainClient, ChainEvent
from loanledger.config import Settings
from loanledger.finance import amortization_schedule, to_units
from loanledger.service import LendingService
from loanledger.store import LedgerStore

GENESIS_TIME = 1_700_000_000
BORROWER = "0x00000000000000000000000000000000000000b0"
LENDER_ONE = "0x00000000000000000000000000000000000000a1"
LENDER_TWO = "0x00000000000000000000000000000000000000a2"
LOAN_ID = "0x" + "ab" * 32


def usdc(amount: Any) -> int:
    return to_units(Decimal(str(amount)), 6)


def price_units(amount: Any) -> int:
    return to_units(Decimal(str(amount)), 8)


class FakeChainClient(ChainClient):
    def __init__(self, *, head: int = 1000, chain_id: int = 84532, price: Any = 60000) -> None:
        self.head = head
        self._chain_id = chain_id
        self.price = price_units(price)
        self.events: Dict[str, List[ChainEvent]] = {}
        self.loan_details: Dict[str, Dict[str, Any]] = {}
        self.schedules: Dict[str, List[Dict[str, Any]]] = {}
        self.contributions: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[str, Exception] = {}
        self.queries: List[Tuple[str, int, int]] = []

    def _maybe_fail(self, name: str) -> None:
        error = self.failures.get(name)
        if error is not None:
            raise error

    def add_event(self, name: str, args: Dict[str, Any], tx_hash: str, block: int, log_index: int = 0) -> ChainEvent:
        event = ChainEvent(name=name, args=args, transaction_hash=tx_hash, block_number=block, log_index=log_index)
        self.events.setdefault(name, []).append(event)
        return event

    def add_loan(
        self,
        loan_id: str,
        borrower: str,
        principal: Any,
        contributions: Sequence[Tuple[str, Any]],
        *,
        duration: int = 12,
        interest_rate: int = 10,
        btc_price: Any = 60000,
        collateral: Any = "1.5",
        borrower_deposit: Any = 10000,
        start_time: int = GENESIS_TIME,
    ) -> None:
        rows = amortization_schedule(Decimal(str(principal)), interest_rate, duration)
        self.loan_details[loan_id] = {
            "borrower": borrower,
            "principal": usdc(principal),
            "borrowerDeposit": usdc(borrower_deposit),
            "collateral": to_units(Decimal(str(collateral)), 8),
            "interestRate": interest_rate,
            "duration": duration,
            "monthlyPayment": usdc(rows[0].payment),
            "startTime": start_time,
            "btcPriceAtCreation": price_units(btc_price),
            "isActive": True,
        }
        self.schedules[loan_id] = [
            {
                "duePrincipal": usdc(row.principal),
                "dueInterest": usdc(row.interest),
                "dueTimestamp": start_time + row.month * 30 * 86400,
                "paid": False,
            }
            for row in rows
        ]
        self.contributions[loan_id] = [
            {
                "lender": lender,
                "amount": usdc(amount),
                "receivableInterest": usdc(Decimal(str(amount)) * interest_rate / 100),
                "repaidPrincipal": 0,
                "repaidInterest": 0,
            }
            for lender, amount in contributions
        ]

    def repay(self, loan_id: str, lender: str, principal: Any, interest: Any) -> None:
        for contribution in self.contributions[loan_id]:
            if contribution["lender"].lower() == lender.lower():
                contribution["repaidPrincipal"] += usdc(principal)
                contribution["repaidInterest"] += usdc(interest)

    def mark_paid(self, loan_id: str, *indexes: int) -> None:
        for index in indexes:
            self.schedules[loan_id][index]["paid"] = True

    def block_number(self) -> int:
        self._maybe_fail("block_number")
        return self.head

    def chain_id(self) -> int:
        return self._chain_id

    def block_timestamp(self, block_number: int) -> int:
        return GENESIS_TIME + block_number * 2

    def get_events(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        self._maybe_fail(f"events:{event_name}")
        self.queries.append((event_name, from_block, to_block))
        return [event for event in self.events.get(event_name, []) if from_block <= event.block_number <= to_block]

    def loans(self, loan_id: str) -> Dict[str, Any]:
        self._maybe_fail("loans")
        return dict(self.loan_details[loan_id])

    def get_installment_schedule(self, loan_id: str) -> List[Dict[str, Any]]:
        return [dict(item) for item in self.schedules[loan_id]]

    def get_contributions(self, loan_id: str) -> List[Dict[str, Any]]:
        self._maybe_fail("contributions")
        return [dict(item) for item in self.contributions[loan_id]]

    def get_price(self) -> int:
        return self.price


class StoreTestCase(unittest.TestCase):
    """Gives each test a fresh on-disk store, ledger and service."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="loanledger-")
        self.db_path = os.path.join(self.tmpdir, "ledger.db")
        self.store = LedgerStore(self.db_path)
        self.ledger = AllowanceLedger(self.store)
        self.settings = Settings(db_path=self.db_path)
        self.service = LendingService(self.store, self.ledger)

    def tearDown(self) -> None:
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def register(self, *addresses: str) -> List[Dict[str, Any]]:
        return [self.service.register_user(address) for address in addresses]

    def allowance(self, address: str) -> Optional[Dict[str, Any]]:
        return self.ledger.get(address)
