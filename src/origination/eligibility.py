from __future__ import annotations

import math
from decimal import Decimal

from origination.amortization import round_half_up
from origination.config import LendingLimits
from origination.errors import BusinessRuleViolation, InvalidArgument


def _dec(value: float) -> Decimal:
    return Decimal(repr(value))


def loan_to_value_ratio(loan_amount: float, estimated_value: float) -> float:
    """LTV as a percentage, reported to two decimals."""
    if estimated_value <= 0:
        raise InvalidArgument("Estimated value must be positive to compute LTV", code="invalid_estimated_value")
    return round_half_up(float(_dec(loan_amount) / _dec(estimated_value) * 100))


def exceeds_ltv(loan_amount: float, estimated_value: float, max_ltv_percent: float) -> bool:
    # Exact comparison; the two-decimal ratio is only for reporting.
    return _dec(loan_amount) * 100 > _dec(max_ltv_percent) * _dec(estimated_value)


def validate_loan_eligibility(
    loan_amount: float,
    interest_rate: float,
    term_months: int,
    estimated_value: float,
    limits: LendingLimits | None = None,
) -> float:
    """Check a requested loan against ``limits`` and the vehicle's value.

    Rules are evaluated in a fixed order (amount range, LTV, rate, term) and
    the first violation is raised, so the same input always yields the same
    reason. Returns the LTV percentage on success.
    """
    limits = limits or LendingLimits()

    if not all(math.isfinite(v) for v in (loan_amount, interest_rate, term_months, estimated_value)):
        raise BusinessRuleViolation("non_finite_input", "Loan amount, rate, term and value must be finite numbers")

    min_amount = limits.effective_min_loan_amount
    if loan_amount < min_amount:
        raise BusinessRuleViolation(
            "loan_amount_too_low",
            f"Requested loan amount {loan_amount:,.2f} is below minimum limit {min_amount:,.2f}",
        )
    if loan_amount > limits.max_loan_amount:
        raise BusinessRuleViolation(
            "loan_amount_too_high",
            f"Requested loan amount {loan_amount:,.2f} exceeds maximum limit {limits.max_loan_amount:,.2f}",
        )

    if estimated_value <= 0:
        # no loan fits under a worthless vehicle
        raise BusinessRuleViolation(
            "ltv_exceeded",
            f"Loan-to-value ratio cannot be met: estimated value is {estimated_value:,.2f}",
        )
    ltv = loan_to_value_ratio(loan_amount, estimated_value)
    if exceeds_ltv(loan_amount, estimated_value, limits.max_ltv_percent):
        raise BusinessRuleViolation(
            "ltv_exceeded",
            f"Loan-to-value ratio ({ltv}%) exceeds maximum allowed ({limits.max_ltv_percent:g}%)",
        )

    if interest_rate < limits.min_application_rate or interest_rate > limits.max_application_rate:
        raise BusinessRuleViolation(
            "interest_rate_out_of_range",
            f"Interest rate must be between {limits.min_application_rate:g}% and {limits.max_application_rate:g}%",
        )

    if term_months < limits.min_term_months or term_months > limits.max_term_months:
        raise BusinessRuleViolation(
            "term_out_of_range",
            f"Loan term must be between {limits.min_term_months} and {limits.max_term_months} months",
        )

    return ltv
