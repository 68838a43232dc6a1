from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

import pandas as pd

from origination.errors import InvalidArgument

SCHEDULE_COLUMNS = ("month", "payment", "principal", "interest", "balance")


def round_half_up(value: float, places: int = 2) -> float:
    return float(Decimal(repr(value)).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ScheduleRow:
    month: int
    payment: float
    principal: float
    interest: float
    balance: float


@dataclass(frozen=True)
class LoanCalculation:
    monthly_payment: float
    total_payment: float
    total_interest: float
    schedule: list[ScheduleRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        out = asdict(self)
        if not self.schedule:
            out.pop("schedule")
        return out


def _validate_inputs(principal: float, annual_rate: float, term_months: int) -> None:
    if principal is None or not math.isfinite(principal) or principal <= 0:
        raise InvalidArgument("Principal must be a positive amount", code="invalid_principal")
    if annual_rate is None or not math.isfinite(annual_rate) or annual_rate < 0 or annual_rate > 100:
        raise InvalidArgument("Interest rate must be between 0% and 100%", code="invalid_interest_rate")
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise InvalidArgument("Term must be a positive whole number of months", code="invalid_term")


def monthly_rate(annual_rate: float) -> float:
    return annual_rate / 100 / 12


def level_payment(principal: float, rate_per_month: float, term_months: int) -> float:
    """Unrounded level payment for a fully amortizing loan."""
    if rate_per_month == 0:
        return principal / term_months
    growth = (1 + rate_per_month) ** term_months
    return principal * rate_per_month * growth / (growth - 1)


def payable_payment(principal: float, rate_per_month: float, term_months: int) -> float:
    """Level payment, raised to the next cent when the half-up figure would
    not repay the principal over the term (e.g. 1,000 over 12 months at 0%).

    Returns the unrounded payment otherwise, so totals keep full precision.
    """
    payment = level_payment(principal, rate_per_month, term_months)
    if Decimal(repr(round_half_up(payment))) * term_months < Decimal(repr(float(principal))):
        return float(Decimal(repr(payment)).quantize(Decimal("0.01"), rounding=ROUND_CEILING))
    return payment


def calculate_payment(principal: float, annual_rate: float, term_months: int) -> LoanCalculation:
    _validate_inputs(principal, annual_rate, term_months)
    payment = payable_payment(principal, monthly_rate(annual_rate), term_months)
    total = payment * term_months
    return LoanCalculation(
        monthly_payment=round_half_up(payment),
        total_payment=round_half_up(total),
        total_interest=round_half_up(total - principal),
    )


def generate_schedule(principal: float, annual_rate: float, term_months: int) -> LoanCalculation:
    _validate_inputs(principal, annual_rate, term_months)
    r = monthly_rate(annual_rate)
    payment = payable_payment(principal, r, term_months)

    balance = float(principal)
    rows: list[ScheduleRow] = []
    for month in range(1, term_months + 1):
        interest = balance * r
        principal_part = payment - interest
        balance = max(0.0, balance - principal_part)
        if month == term_months:
            # float drift on the last period
            balance = 0.0
        rows.append(
            ScheduleRow(
                month=month,
                payment=round_half_up(payment),
                principal=round_half_up(principal_part),
                interest=round_half_up(interest),
                balance=round_half_up(balance),
            )
        )

    total = payment * term_months
    return LoanCalculation(
        monthly_payment=round_half_up(payment),
        total_payment=round_half_up(total),
        total_interest=round_half_up(total - principal),
        schedule=rows,
    )


def schedule_frame(calculation: LoanCalculation) -> pd.DataFrame:
    return pd.DataFrame([asdict(row) for row in calculation.schedule], columns=list(SCHEDULE_COLUMNS))


def schedule_csv(calculation: LoanCalculation) -> str:
    return schedule_frame(calculation).to_csv(index=False)
