"""Greedy lender matching over available allowances."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from loanledger.errors import InsufficientLiquidityError
from loanledger.finance import CENT, ZERO, Number, floor_usd, quantize_usd, to_decimal

LOGGER = logging.getLogger("loanledger.matching")

# Largest leftover the remainder correction may absorb. It must also be
# covered by the sub-cent balances that flooring dropped from matched lenders.
ROUNDING_TOLERANCE = CENT


@dataclass
class MatchedLender:
    lender_address: str
    lender_id: Optional[str]
    amount: Decimal


@dataclass
class MatchResult:
    success: bool
    lenders: List[MatchedLender] = field(default_factory=list)
    total_matched: Decimal = ZERO
    remainder_assigned: Decimal = ZERO

    def raise_for_status(self) -> "MatchResult":
        if not self.success:
            raise InsufficientLiquidityError(
                "not enough liquidity available to fund this loan",
                {"totalMatched": str(self.total_matched)},
            )
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "lenders": [
                {"lender_address": lender.lender_address, "lender_id": lender.lender_id, "amount": lender.amount}
                for lender in self.lenders
            ],
            "totalMatched": self.total_matched,
        }


def duration_matches(preference: Any, duration_months: int) -> bool:
    """Whether an allowance's preference admits a loan of ``duration_months``.

    An unset preference (0) admits any duration. A preference that cannot be
    read admits none, so such an allowance only enters the fallback pass.
    """
    try:
        months = int(preference or 0)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring unreadable duration preference %r", preference)
        return False
    return months == 0 or months >= duration_months


def _greedy_pass(
    allowances: Iterable[Mapping[str, Any]],
    remaining: Decimal,
    matched: List[MatchedLender],
    seen: Set[str],
    slack: Dict[str, Decimal],
    *,
    duration_months: Optional[int],
) -> Decimal:
    for allowance in allowances:
        if remaining <= 0:
            break
        address = str(allowance.get("user_address") or "").lower()
        if address in seen:
            continue
        raw_available = to_decimal(allowance.get("available_amount") or 0)
        available = floor_usd(raw_available)
        if available <= 0:
            continue
        if duration_months is not None and not duration_matches(allowance.get("duration_preference"), duration_months):
            continue
        contribution = min(available, remaining)
        matched.append(
            MatchedLender(
                lender_address=address,
                lender_id=allowance.get("user_id"),
                amount=contribution,
            )
        )
        seen.add(address)
        slack[address] = raw_available - available
        remaining -= contribution
    return remaining


def match_lenders_for_loan(
    allowances: Iterable[Mapping[str, Any]],
    loan_amount: Number,
    interest_rate: Number,
    duration_months: int,
) -> MatchResult:
    """Propose ``(lender, amount)`` pairs that fund ``loan_amount`` exactly.

    The first pass only admits allowances whose duration preference is unset
    (0) or at least ``duration_months``; the second pass fills any shortfall
    from the lenders not yet matched regardless of preference.

    Balances are floored to cents, so a cent or less can be left over even
    when the unrounded balances cover the loan. Only that leftover is charged
    to the first matched lender. Any other shortfall fails the match.

    The allowances are never mutated; booking happens once the loan is
    observed on chain. ``interest_rate`` does not influence the allocation.
    """
    allowances = list(allowances)
    target = quantize_usd(loan_amount)
    matched: List[MatchedLender] = []
    seen: Set[str] = set()
    slack: Dict[str, Decimal] = {}

    remaining = _greedy_pass(allowances, target, matched, seen, slack, duration_months=duration_months)
    if remaining > 0:
        remaining = _greedy_pass(allowances, remaining, matched, seen, slack, duration_months=None)

    assigned = ZERO
    if 0 < remaining <= ROUNDING_TOLERANCE and remaining <= sum(slack.values(), ZERO):
        matched[0].amount += remaining
        assigned = remaining
        LOGGER.info("Assigned rounding remainder %s to lender %s", remaining, matched[0].lender_address)
        remaining = ZERO

    total = sum((lender.amount for lender in matched), ZERO)
    success = remaining <= 0
    if not success:
        LOGGER.info("Insufficient liquidity: matched %s of %s", total, target)
    return MatchResult(success=success, lenders=matched, total_matched=total, remainder_assigned=assigned)


__all__ = ["MatchResult", "MatchedLender", "ROUNDING_TOLERANCE", "duration_matches", "match_lenders_for_loan"]
