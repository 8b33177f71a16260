import os
import shutil
import tempfile
import unittest
from decimal import Decimal

from loanledger.errors import DuplicateRecordError
from loanledger.finance import to_decimal
from loanledger.store import LedgerStore, normalize_address


class LedgerStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="ledger-store-")
        self.db_path = os.path.join(self.tmpdir, "store.db")
        self.store = LedgerStore(self.db_path)

    def tearDown(self) -> None:
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def test_create_find_update(self) -> None:
        created = self.store.create("users", "0xabc", {"user_address": "0xabc", "loans": []})
        self.assertIn("id", created)
        found = self.store.find("users", "0xabc")
        self.assertEqual(found, created)

        found["loans"].append("loan-1")
        self.store.update("users", "0xabc", found)
        self.assertEqual(self.store.find("users", "0xabc")["loans"], ["loan-1"])
        self.assertTrue(self.store.exists("users", "0xabc"))
        self.assertFalse(self.store.exists("users", "0xdef"))

    def test_duplicate_key_rejected(self) -> None:
        self.store.create("loans", "0x01", {"loan_id": "0x01"})
        with self.assertRaises(DuplicateRecordError):
            self.store.create("loans", "0x01", {"loan_id": "0x01"})

    def test_update_missing_document(self) -> None:
        with self.assertRaises(KeyError):
            self.store.update("loans", "missing", {"loan_id": "missing"})

    def test_decimals_persist_as_strings(self) -> None:
        self.store.create("lends", "0xabc", {"available_amount": Decimal("1500.10")})
        stored = self.store.find("lends", "0xabc")
        self.assertEqual(stored["available_amount"], "1500.10")
        self.assertEqual(to_decimal(stored["available_amount"]), Decimal("1500.10"))

    def test_transaction_rolls_back_every_write(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.store.create("users", "0xabc", {"user_address": "0xabc"})
                self.store.claim_event("Deposit:0x1", "Deposit")
                self.store.record_event("lend:0xabc", "deposit-recorded", {})
                raise RuntimeError("boom")
        self.assertIsNone(self.store.find("users", "0xabc"))
        self.assertFalse(self.store.is_processed("Deposit:0x1"))
        self.assertEqual(self.store.history("lend:0xabc"), [])

    def test_nested_transactions_commit_once(self) -> None:
        with self.store.transaction():
            self.store.create("users", "0xabc", {"user_address": "0xabc"})
            with self.store.transaction():
                self.store.create("users", "0xdef", {"user_address": "0xdef"})
        reopened = LedgerStore(self.db_path)
        try:
            self.assertEqual(len(reopened.find_all("users")), 2)
        finally:
            reopened.close()

    def test_claim_event_only_once(self) -> None:
        self.assertFalse(self.store.is_processed("Payout:0xaa"))
        self.assertTrue(self.store.claim_event("Payout:0xaa", "Payout", transaction_hash="0xaa", block_number=7))
        self.assertFalse(self.store.claim_event("Payout:0xaa", "Payout", transaction_hash="0xaa", block_number=7))
        self.assertTrue(self.store.is_processed("Payout:0xaa"))

    def test_cursors(self) -> None:
        self.assertIsNone(self.store.get_cursor("events:Deposit"))
        self.store.set_cursor("events:Deposit", 120)
        self.store.set_cursor("events:Deposit", 180)
        self.assertEqual(self.store.get_cursor("events:Deposit"), 180)

    def test_find_all_with_predicate(self) -> None:
        for index in range(3):
            self.store.create("loans", f"0x0{index}", {"loan_id": f"0x0{index}", "is_active": index != 1})
        active = self.store.find_all("loans", lambda loan: loan["is_active"])
        self.assertEqual([loan["loan_id"] for loan in active], ["0x00", "0x02"])

    def test_history_is_ordered(self) -> None:
        self.store.record_event("loan:0x01", "loan-created", {"principal": Decimal("100")})
        self.store.record_event("loan:0x01", "allowances-booked", {})
        self.store.record_event("loan:0x02", "loan-created", {})
        history = self.store.history("loan:0x01")
        self.assertEqual([entry["event"] for entry in history], ["loan-created", "allowances-booked"])
        self.assertEqual(history[0]["metadata"], {"principal": "100"})


class NormalizeAddressTests(unittest.TestCase):
    def test_normalize(self) -> None:
        self.assertEqual(normalize_address(" 0xABCdef "), "0xabcdef")
        self.assertEqual(normalize_address(None), "")


if __name__ == "__main__":
    unittest.main()
