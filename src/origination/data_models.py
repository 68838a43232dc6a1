from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class VehicleCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class TransmissionType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    CVT = "cvt"
    SEMI_AUTOMATIC = "semi_automatic"


class FuelType(str, Enum):
    GASOLINE = "gasoline"
    DIESEL = "diesel"
    ELECTRIC = "electric"
    HYBRID = "hybrid"
    PLUGIN_HYBRID = "plugin_hybrid"
    HYDROGEN = "hydrogen"


class ValuationSource(str, Enum):
    MANUAL = "manual"
    EXTERNAL_API = "external_api"
    KBB = "kbb"
    EDMUNDS = "edmunds"
    NADA = "nada"


class LoanApplicationStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Vehicle:
    id: str
    vin: str
    make: str
    model: str
    year: int
    mileage: int
    color: str
    condition: VehicleCondition = VehicleCondition.GOOD
    transmission: TransmissionType = TransmissionType.AUTOMATIC
    fuel_type: FuelType = FuelType.GASOLINE
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Valuation:
    id: str
    vehicle_id: str
    estimated_value: float
    min_value: float
    max_value: float
    source: ValuationSource = ValuationSource.EXTERNAL_API
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class LoanApplication:
    id: str
    vehicle_id: str
    valuation_id: str
    loan_amount: float
    interest_rate: float
    term_months: int
    status: LoanApplicationStatus = LoanApplicationStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Offer:
    id: str
    loan_application_id: str
    offered_amount: float
    interest_rate: float
    loan_term: int
    monthly_payment: float
    total_payable: float
    expires_at: datetime
    status: OfferStatus = OfferStatus.ACTIVE
    accepted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is OfferStatus.ACTIVE


@dataclass(frozen=True)
class LoanApplicationChanges:
    """Editable loan terms; ``None`` leaves the current value in place."""

    loan_amount: float | None = None
    interest_rate: float | None = None
    term_months: int | None = None
    status: LoanApplicationStatus | None = None

    def touches_terms(self) -> bool:
        return any(v is not None for v in (self.loan_amount, self.interest_rate, self.term_months))


@dataclass(frozen=True)
class VehicleSearch:
    """Listing filters. Make, model and color match case-insensitive substrings;
    the year and mileage bounds are inclusive."""

    make: str | None = None
    model: str | None = None
    year: int | None = None
    year_min: int | None = None
    year_max: int | None = None
    mileage_min: int | None = None
    mileage_max: int | None = None
    condition: VehicleCondition | None = None
    transmission: TransmissionType | None = None
    fuel_type: FuelType | None = None
    color: str | None = None

    def matches(self, vehicle: Vehicle) -> bool:
        for needle, value in ((self.make, vehicle.make), (self.model, vehicle.model), (self.color, vehicle.color)):
            if needle is not None and needle.lower() not in value.lower():
                return False
        return (
            (self.year is None or vehicle.year == self.year)
            and (self.year_min is None or vehicle.year >= self.year_min)
            and (self.year_max is None or vehicle.year <= self.year_max)
            and (self.mileage_min is None or vehicle.mileage >= self.mileage_min)
            and (self.mileage_max is None or vehicle.mileage <= self.mileage_max)
            and (self.condition is None or vehicle.condition is self.condition)
            and (self.transmission is None or vehicle.transmission is self.transmission)
            and (self.fuel_type is None or vehicle.fuel_type is self.fuel_type)
        )


@dataclass(frozen=True)
class OfferTerms:
    interest_rate: float
    offered_amount: float | None = None
    loan_term: int | None = None
    expiration_hours: int | None = None


def to_record(entity: Any) -> dict[str, Any]:
    """Flatten an entity into a JSON-friendly dict (enum values, ISO dates)."""
    out: dict[str, Any] = {}
    for key, value in entity.__dict__.items():
        if isinstance(value, Enum):
            out[key] = value.value
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out
