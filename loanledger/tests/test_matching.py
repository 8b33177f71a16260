import copy
import unittest
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from loanledger.errors import InsufficientLiquidityError
from loanledger.matching import ROUNDING_TOLERANCE, duration_matches, match_lenders_for_loan


def allowance(address, available, preference=0, user_id=None):
    return {
        "user_address": address,
        "user_id": user_id or f"user-{address}",
        "available_amount": Decimal(str(available)),
        "lending_amount_approved": Decimal(str(available)),
        "duration_preference": preference,
    }


amounts = st.decimals(min_value=Decimal("0"), max_value=Decimal("100000"), places=2, allow_nan=False, allow_infinity=False)


class MatchLendersTests(unittest.TestCase):
    def test_two_lenders_fund_loan_exactly(self) -> None:
        allowances = [allowance("0xl1", 30000, 0), allowance("0xl2", 20000, 12)]
        result = match_lenders_for_loan(allowances, 50000, 10, 12)
        self.assertTrue(result.success)
        self.assertEqual([lender.lender_address for lender in result.lenders], ["0xl1", "0xl2"])
        self.assertEqual([lender.amount for lender in result.lenders], [Decimal("30000"), Decimal("20000")])
        self.assertEqual(result.total_matched, Decimal("50000"))
        self.assertEqual(result.lenders[0].lender_id, "user-0xl1")

    def test_insufficient_liquidity_fails(self) -> None:
        allowances = [allowance("0xl1", 25000), allowance("0xl2", 15000)]
        result = match_lenders_for_loan(allowances, 50000, 10, 12)
        self.assertFalse(result.success)
        with self.assertRaises(InsufficientLiquidityError):
            result.raise_for_status()

    def test_preferred_lenders_come_first(self) -> None:
        allowances = [allowance("0xshort", 30000, 6), allowance("0xopen", 30000, 0)]
        result = match_lenders_for_loan(allowances, 40000, 10, 12)
        self.assertTrue(result.success)
        self.assertEqual(
            [(lender.lender_address, lender.amount) for lender in result.lenders],
            [("0xopen", Decimal("30000")), ("0xshort", Decimal("10000"))],
        )

    def test_single_lender_covers_loan_without_second_pass(self) -> None:
        allowances = [allowance("0xl1", 80000, 24), allowance("0xl2", 10000, 0)]
        result = match_lenders_for_loan(allowances, 50000, 10, 12)
        self.assertEqual(len(result.lenders), 1)
        self.assertEqual(result.lenders[0].amount, Decimal("50000"))

    def test_empty_and_exhausted_allowances_are_ignored(self) -> None:
        allowances = [allowance("0xl1", 0), allowance("0xl2", "-5"), allowance("0xl3", 100)]
        result = match_lenders_for_loan(allowances, 100, 5, 3)
        self.assertTrue(result.success)
        self.assertEqual([lender.lender_address for lender in result.lenders], ["0xl3"])

    def test_each_lender_matched_once(self) -> None:
        allowances = [allowance("0xL1", 100, 6), allowance("0xl1", 100, 0)]
        result = match_lenders_for_loan(allowances, 150, 5, 12)
        self.assertFalse(result.success)
        self.assertEqual(len(result.lenders), 1)

    def test_rounding_remainder_goes_to_first_lender(self) -> None:
        allowances = [allowance("0xl1", "50.009"), allowance("0xl2", "50.009")]
        result = match_lenders_for_loan(allowances, "100.01", 5, 3)
        self.assertTrue(result.success)
        self.assertEqual(result.remainder_assigned, ROUNDING_TOLERANCE)
        self.assertEqual(result.lenders[0].amount, Decimal("50.01"))
        self.assertEqual(result.total_matched, Decimal("100.01"))

    def test_one_cent_short_fails(self) -> None:
        allowances = [allowance("0xl1", 30000, 0), allowance("0xl2", "19999.99", 12)]
        result = match_lenders_for_loan(allowances, 50000, 10, 12)
        self.assertFalse(result.success)
        self.assertEqual(result.remainder_assigned, Decimal("0"))
        self.assertEqual([lender.amount for lender in result.lenders], [Decimal("30000"), Decimal("19999.99")])

    def test_remainder_needs_unrounded_cover(self) -> None:
        allowances = [allowance("0xl1", "50.004"), allowance("0xl2", "50.005")]
        result = match_lenders_for_loan(allowances, "100.01", 5, 3)
        self.assertFalse(result.success)
        self.assertEqual(result.lenders[0].amount, Decimal("50.00"))

    def test_shortfall_above_tolerance_fails(self) -> None:
        allowances = [allowance("0xl1", "50.00"), allowance("0xl2", "50.00")]
        result = match_lenders_for_loan(allowances, "100.02", 5, 3)
        self.assertFalse(result.success)
        self.assertEqual(result.remainder_assigned, Decimal("0"))

    def test_inputs_are_not_mutated(self) -> None:
        allowances = [allowance("0xl1", 30000), allowance("0xl2", 20000, 12)]
        snapshot = copy.deepcopy(allowances)
        match_lenders_for_loan(allowances, 45000, 10, 12)
        self.assertEqual(allowances, snapshot)

    def test_as_dict(self) -> None:
        payload = match_lenders_for_loan([allowance("0xl1", 10)], 10, 5, 1).as_dict()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["lenders"][0]["lender_address"], "0xl1")
        self.assertEqual(payload["totalMatched"], Decimal("10"))

    @settings(max_examples=100, deadline=None)
    @given(
        available=st.lists(amounts, min_size=1, max_size=8),
        preferences=st.lists(st.sampled_from([0, 3, 6, 12, 24]), min_size=8, max_size=8),
        loan_amount=st.decimals(min_value=Decimal("1"), max_value=Decimal("500000"), places=2, allow_nan=False, allow_infinity=False),
    )
    def test_matching_funds_exactly_or_fails(self, available, preferences, loan_amount) -> None:
        allowances = [allowance(f"0x{index:02d}", value, preferences[index]) for index, value in enumerate(available)]
        total_available = sum(available, Decimal("0"))
        result = match_lenders_for_loan(allowances, loan_amount, 10, 12)
        if total_available >= loan_amount:
            self.assertTrue(result.success)
            self.assertEqual(result.total_matched, loan_amount)
            self.assertEqual(sum(lender.amount for lender in result.lenders), loan_amount)
            by_address = {item["user_address"]: item["available_amount"] for item in allowances}
            for lender in result.lenders:
                self.assertGreater(lender.amount, 0)
                self.assertLessEqual(lender.amount, by_address[lender.lender_address])
        else:
            self.assertFalse(result.success)
            self.assertEqual(result.remainder_assigned, Decimal("0"))


class DurationPreferenceTests(unittest.TestCase):
    def test_duration_matches(self) -> None:
        self.assertTrue(duration_matches(0, 12))
        self.assertTrue(duration_matches(None, 12))
        self.assertTrue(duration_matches(12, 12))
        self.assertTrue(duration_matches("24", 12))
        self.assertFalse(duration_matches(6, 12))
        with self.assertLogs("loanledger.matching", level="WARNING"):
            self.assertFalse(duration_matches("bogus", 12))

    def test_unreadable_preference_waits_for_fallback_pass(self) -> None:
        allowances = [allowance("0xodd", 30000, "bogus"), allowance("0xopen", 30000, 0)]
        with self.assertLogs("loanledger.matching", level="WARNING"):
            result = match_lenders_for_loan(allowances, 40000, 10, 12)
        self.assertTrue(result.success)
        self.assertEqual(
            [(lender.lender_address, lender.amount) for lender in result.lenders],
            [("0xopen", Decimal("30000")), ("0xodd", Decimal("10000"))],
        )


if __name__ == "__main__":
    unittest.main()
