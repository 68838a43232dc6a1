from __future__ import annotations

import math
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Callable

from origination.amortization import calculate_payment, round_half_up
from origination.config import LendingLimits
from origination.data_models import LoanApplication, LoanApplicationStatus, Offer, OfferStatus, OfferTerms
from origination.errors import BusinessRuleViolation, Conflict


def default_offered_amount(requested_amount: float, limits: LendingLimits) -> float:
    return round_half_up(requested_amount * limits.offer_amount_ratio, places=0)


def _resolve_amount(application: LoanApplication, terms: OfferTerms, limits: LendingLimits) -> float:
    if terms.offered_amount is None:
        return default_offered_amount(application.loan_amount, limits)
    if not math.isfinite(terms.offered_amount) or terms.offered_amount <= 0:
        raise BusinessRuleViolation("invalid_offer_amount", "Offer amount must be positive")
    if terms.offered_amount < limits.min_offer_amount:
        raise BusinessRuleViolation(
            "offer_amount_too_low",
            f"Offer amount must be at least {limits.min_offer_amount:,.2f}",
        )
    return float(terms.offered_amount)


def _resolve_term(application: LoanApplication, terms: OfferTerms, limits: LendingLimits) -> int:
    if terms.loan_term is None:
        return application.term_months
    if terms.loan_term < limits.min_term_months or terms.loan_term > limits.max_term_months:
        raise BusinessRuleViolation(
            "term_out_of_range",
            f"Loan term must be between {limits.min_term_months} and {limits.max_term_months} months",
        )
    return terms.loan_term


def _resolve_expiration_hours(terms: OfferTerms, limits: LendingLimits) -> int:
    if terms.expiration_hours is None:
        return limits.default_offer_expiration_hours
    if not limits.min_offer_expiration_hours <= terms.expiration_hours <= limits.max_offer_expiration_hours:
        raise BusinessRuleViolation(
            "expiration_out_of_range",
            f"Offer expiration must be between {limits.min_offer_expiration_hours} "
            f"and {limits.max_offer_expiration_hours} hours",
        )
    return terms.expiration_hours


def generate_offer(
    application: LoanApplication,
    terms: OfferTerms,
    existing_offers: Iterable[Offer],
    now: datetime,
    limits: LendingLimits | None = None,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> Offer:
    """Derive a new active offer for an approved loan application.

    ``existing_offers`` are the offers already recorded for the application;
    any of them still active makes this a ``Conflict``. The caller's store
    must make this check and the insert a single atomic step.
    """
    limits = limits or LendingLimits()

    if application.status is not LoanApplicationStatus.APPROVED:
        raise BusinessRuleViolation(
            "loan_not_approved", "Loan application must be approved before creating offer"
        )
    if any(offer.status is OfferStatus.ACTIVE for offer in existing_offers):
        raise Conflict("Loan application already has an active offer", code="active_offer_exists")

    if not limits.min_offer_rate <= terms.interest_rate <= limits.max_offer_rate:
        raise BusinessRuleViolation(
            "offer_rate_out_of_range",
            f"Interest rate must be between {limits.min_offer_rate:g}% and {limits.max_offer_rate:g}%",
        )

    offered_amount = _resolve_amount(application, terms, limits)
    loan_term = _resolve_term(application, terms, limits)
    expiration_hours = _resolve_expiration_hours(terms, limits)

    calculation = calculate_payment(offered_amount, terms.interest_rate, loan_term)
    return Offer(
        id=id_factory(),
        loan_application_id=application.id,
        offered_amount=offered_amount,
        interest_rate=terms.interest_rate,
        loan_term=loan_term,
        monthly_payment=calculation.monthly_payment,
        total_payable=calculation.total_payment,
        expires_at=now + timedelta(hours=expiration_hours),
        status=OfferStatus.ACTIVE,
        accepted_at=None,
        created_at=now,
        updated_at=now,
    )
