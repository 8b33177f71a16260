"""Fixed-point money helpers, amortization schedules and the APR solver.

Every monetary quantity is a :class:`decimal.Decimal`. USD amounts are kept to
cents (ROUND_HALF_UP), BTC amounts to satoshis.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Union

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
SATOSHI = Decimal("0.00000001")
ZERO = Decimal("0")
MONTHS_PER_YEAR = 12
PERIOD_SECONDS = 30 * 24 * 60 * 60
OPENING_FEE_RATE = Decimal("0.01")
APR_TOLERANCE = Decimal("1e-6")
APR_MAX_ITERATIONS = 200


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def quantize_usd(value: Number, rounding: str = ROUND_HALF_UP) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=rounding)


def floor_usd(value: Number) -> Decimal:
    return quantize_usd(value, rounding=ROUND_DOWN)


def quantize_btc(value: Number) -> Decimal:
    return to_decimal(value).quantize(SATOSHI, rounding=ROUND_HALF_UP)


def from_units(raw: Union[int, str], decimals: int) -> Decimal:
    """Convert an integer token amount (base units) into a Decimal."""
    return Decimal(int(raw)).scaleb(-decimals)


def to_units(amount: Number, decimals: int) -> int:
    return int(to_decimal(amount).scaleb(decimals).to_integral_value(rounding=ROUND_HALF_UP))


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    return to_decimal(annual_rate_percent) / Decimal(100) / Decimal(MONTHS_PER_YEAR)


def payment_for_rate(principal: Number, rate: Number, term: int) -> Decimal:
    """Fixed payment for a per-period ``rate`` over ``term`` periods."""
    if term <= 0:
        raise ValueError("term must be positive")
    principal = to_decimal(principal)
    rate = to_decimal(rate)
    if rate == 0:
        return principal / Decimal(term)
    return principal * rate / (1 - (1 + rate) ** -term)


def monthly_payment(principal: Number, annual_rate_percent: Number, term: int) -> Decimal:
    return payment_for_rate(principal, monthly_rate(annual_rate_percent), term)


@dataclass(frozen=True)
class ScheduleRow:
    month: int
    payment: Decimal
    interest: Decimal
    principal: Decimal
    remaining_balance: Decimal
    btc_redeemed: Decimal
    remaining_collateral: Decimal
    liquidation_price: Decimal


def amortization_schedule(
    principal: Number,
    annual_rate_percent: Number,
    term: int,
    collateral_btc: Optional[Number] = None,
) -> List[ScheduleRow]:
    """Fixed-payment amortization with proportional collateral release.

    Interest and principal are rounded to cents each period and the final
    period absorbs the residual balance, so the principal column sums to the
    loan principal exactly.
    """
    if term <= 0:
        raise ValueError("term must be positive")
    loan_principal = quantize_usd(principal)
    rate = monthly_rate(annual_rate_percent)
    payment = quantize_usd(payment_for_rate(loan_principal, rate, term))
    collateral = to_decimal(collateral_btc)
    balance = loan_principal
    remaining_collateral = collateral
    rows: List[ScheduleRow] = []
    for month in range(1, term + 1):
        interest = quantize_usd(balance * rate)
        if month == term:
            principal_part = balance
            period_payment = principal_part + interest
        else:
            principal_part = min(payment - interest, balance)
            period_payment = principal_part + interest
        balance -= principal_part

        redeemed = ZERO
        if collateral > 0 and loan_principal > 0:
            if month == term:
                redeemed = remaining_collateral
            else:
                redeemed = quantize_btc(collateral * principal_part / loan_principal)
        remaining_collateral -= redeemed

        if remaining_collateral > 0:
            liquidation_price = quantize_usd(balance / remaining_collateral)
        else:
            liquidation_price = Decimal("0.00")
        rows.append(
            ScheduleRow(
                month=month,
                payment=period_payment,
                interest=interest,
                principal=principal_part,
                remaining_balance=balance,
                btc_redeemed=redeemed,
                remaining_collateral=remaining_collateral,
                liquidation_price=liquidation_price,
            )
        )
    return rows


def calculate_apr(
    payment: Number,
    term: int,
    principal: Number,
    *,
    tolerance: Decimal = APR_TOLERANCE,
    max_iterations: int = APR_MAX_ITERATIONS,
) -> Decimal:
    """Bisect the monthly rate in ``[0, 1]`` that yields ``payment``.

    Returns the annualised rate as a percentage. The fixed payment grows
    monotonically with the rate, which is what makes bisection valid here.
    """
    payment = to_decimal(payment)
    principal = to_decimal(principal)
    if term <= 0 or principal <= 0:
        raise ValueError("term and principal must be positive")
    if payment * term <= principal:
        return ZERO
    if payment_for_rate(principal, Decimal(1), term) < payment:
        raise ValueError("payment implies a monthly rate above 100%")
    low, high = ZERO, Decimal(1)
    guess = (low + high) / 2
    for _ in range(max_iterations):
        guess = (low + high) / 2
        difference = payment_for_rate(principal, guess, term) - payment
        if abs(difference) <= tolerance:
            break
        if difference > 0:
            high = guess
        else:
            low = guess
    return guess * MONTHS_PER_YEAR * 100


def derive_loan_terms(
    principal: Number,
    interest_rate_percent: Number,
    duration: int,
    btc_price: Number,
) -> Dict[str, Decimal]:
    """Flat-interest terms recorded for a loan observed on chain."""
    if duration <= 0:
        raise ValueError("duration must be positive")
    principal = to_decimal(principal)
    price = to_decimal(btc_price)
    interest = to_decimal(interest_rate_percent) / Decimal(100) * principal
    asset_borrowed = quantize_btc(principal / price) if price > 0 else ZERO
    return {
        "interest": interest,
        "total_amount_payable": principal + interest,
        "interest_payable_month": interest / Decimal(duration),
        "principal_payable_month": principal / Decimal(duration),
        "asset_borrowed": asset_borrowed,
        "asset_released_per_month": quantize_btc(asset_borrowed / Decimal(duration)),
    }


def loan_summary(
    collateral_btc: Number,
    btc_price: Number,
    principal: Number,
    down_payment: Number,
    annual_rate_percent: Number,
    term: int,
) -> Dict[str, Any]:
    collateral = to_decimal(collateral_btc)
    price = to_decimal(btc_price)
    principal = quantize_usd(principal)
    down_payment = quantize_usd(down_payment)
    if collateral <= 0:
        raise ValueError("collateral must be positive")
    opening_fee = quantize_usd(principal * OPENING_FEE_RATE)
    upfront_payment = down_payment + opening_fee
    payment = monthly_payment(principal, annual_rate_percent, term)
    schedule = amortization_schedule(principal, annual_rate_percent, term, collateral)
    total_interest = sum((row.interest for row in schedule), ZERO)
    total_payment = sum((row.payment for row in schedule), ZERO)
    months = [0] + [row.month for row in schedule]
    liquidation_prices = [quantize_usd(principal / collateral)] + [row.liquidation_price for row in schedule]
    return {
        "loanAmount": quantize_usd(collateral * price),
        "openingFee": opening_fee,
        "upfrontPayment": upfront_payment,
        "downPayment": down_payment,
        "principal": principal,
        "monthlyPayment": quantize_usd(payment),
        "totalInterest": total_interest,
        "totalPayment": total_payment,
        "apr": quantize_usd(calculate_apr(payment, term, principal)),
        "interestRate": to_decimal(annual_rate_percent),
        "term": term,
        "amortizationSchedule": [asdict(row) for row in schedule],
        "firstTransaction": {
            "amountSent": upfront_payment,
            "breakdown": {"downPayment": down_payment, "loanOpeningFee": opening_fee},
        },
        "liquidationChart": {"months": months, "liquidationPrices": liquidation_prices},
        "initialBtcCollateral": quantize_btc(collateral),
        "currentBtcPrice": quantize_usd(price),
    }


__all__ = [
    "CENT",
    "PERIOD_SECONDS",
    "ScheduleRow",
    "amortization_schedule",
    "calculate_apr",
    "derive_loan_terms",
    "floor_usd",
    "from_units",
    "loan_summary",
    "monthly_payment",
    "monthly_rate",
    "payment_for_rate",
    "quantize_btc",
    "quantize_usd",
    "to_decimal",
    "to_units",
]
