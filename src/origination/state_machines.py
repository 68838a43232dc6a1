from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from origination.config import LendingLimits
from origination.data_models import (
    LoanApplication,
    LoanApplicationChanges,
    LoanApplicationStatus,
    Offer,
    OfferStatus,
)
from origination.eligibility import validate_loan_eligibility
from origination.errors import BusinessRuleViolation, InvalidStateTransition

LoanStatus = LoanApplicationStatus

LOAN_APPLICATION_TRANSITIONS: dict[LoanApplicationStatus, frozenset[LoanApplicationStatus]] = {
    LoanStatus.PENDING: frozenset(
        {LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.CANCELLED}
    ),
    LoanStatus.UNDER_REVIEW: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset(),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
}

OFFER_TRANSITIONS: dict[OfferStatus, frozenset[OfferStatus]] = {
    OfferStatus.ACTIVE: frozenset({OfferStatus.ACCEPTED, OfferStatus.DECLINED, OfferStatus.EXPIRED}),
    OfferStatus.ACCEPTED: frozenset(),
    OfferStatus.DECLINED: frozenset(),
    OfferStatus.EXPIRED: frozenset(),
}

# Terms may only be edited before a lending decision is taken.
EDITABLE_LOAN_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.UNDER_REVIEW})


def can_transition_loan_application(current: LoanApplicationStatus, requested: LoanApplicationStatus) -> bool:
    return requested in LOAN_APPLICATION_TRANSITIONS[current]


def can_transition_offer(current: OfferStatus, requested: OfferStatus) -> bool:
    return requested in OFFER_TRANSITIONS[current]


def ensure_loan_application_transition(current: LoanApplicationStatus, requested: LoanApplicationStatus) -> None:
    if not can_transition_loan_application(current, requested):
        raise InvalidStateTransition("loan application", current.value, requested.value)


def ensure_offer_transition(current: OfferStatus, requested: OfferStatus) -> None:
    if not can_transition_offer(current, requested):
        raise InvalidStateTransition("offer", current.value, requested.value)


def transition_loan_application(
    application: LoanApplication,
    requested: LoanApplicationStatus,
    now: datetime | None = None,
) -> LoanApplication:
    ensure_loan_application_transition(application.status, requested)
    return replace(application, status=requested, updated_at=now or application.updated_at)


def apply_loan_application_changes(
    application: LoanApplication,
    changes: LoanApplicationChanges,
    estimated_value: float,
    limits: LendingLimits | None = None,
    now: datetime | None = None,
) -> LoanApplication:
    """Apply term edits and/or a status change as one validated step.

    Nothing is applied unless every check passes: edited terms must re-pass
    eligibility against ``estimated_value`` and any status change must be
    allowed from the current status.
    """
    updated = application
    if changes.touches_terms():
        if application.status not in EDITABLE_LOAN_STATUSES:
            raise BusinessRuleViolation(
                "cannot_modify_processed",
                f"Cannot modify loan application in {application.status.value} status",
            )
        loan_amount = application.loan_amount if changes.loan_amount is None else changes.loan_amount
        interest_rate = application.interest_rate if changes.interest_rate is None else changes.interest_rate
        term_months = application.term_months if changes.term_months is None else changes.term_months
        validate_loan_eligibility(loan_amount, interest_rate, term_months, estimated_value, limits)
        updated = replace(
            updated,
            loan_amount=loan_amount,
            interest_rate=interest_rate,
            term_months=term_months,
        )

    if changes.status is not None and changes.status is not application.status:
        ensure_loan_application_transition(application.status, changes.status)
        updated = replace(updated, status=changes.status)

    if updated is not application and now is not None:
        updated = replace(updated, updated_at=now)
    return updated


def transition_offer(offer: Offer, requested: OfferStatus, now: datetime) -> Offer:
    ensure_offer_transition(offer.status, requested)
    accepted_at = now if requested is OfferStatus.ACCEPTED else offer.accepted_at
    return replace(offer, status=requested, accepted_at=accepted_at, updated_at=now)


def ensure_offer_deletable(offer: Offer) -> None:
    if offer.status is OfferStatus.ACCEPTED:
        raise BusinessRuleViolation("cannot_delete_accepted_offer", "Cannot delete accepted offers")
