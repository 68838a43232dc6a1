from __future__ import annotations

import re
from datetime import datetime, timezone

from origination.config import VehicleLimits
from origination.errors import BusinessRuleViolation

VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")

# Position 10 model-year codes; the cycle repeats every 30 years.
_YEAR_CODES = "ABCDEFGHJKLMNPRSTVWXY123456789"
_YEAR_CODE_MAP = {code: 1980 + i for i, code in enumerate(_YEAR_CODES)}


def normalize_vin(vin: str) -> str:
    return vin.strip().upper()


def validate_vin(vin: str) -> str:
    normalized = normalize_vin(vin)
    if len(normalized) != VehicleLimits().vin_length or not VIN_PATTERN.match(normalized):
        raise BusinessRuleViolation(
            "invalid_vin",
            "VIN must be exactly 17 characters and contain only valid characters",
        )
    return normalized


def model_year_from_vin(vin: str, near_year: int | None = None) -> int | None:
    """Decode the model year from position 10.

    The code is ambiguous across 30-year cycles; the candidate closest to
    ``near_year`` (or the current year) wins.
    """
    if len(vin) < 10:
        return None
    base = _YEAR_CODE_MAP.get(vin[9].upper())
    if base is None:
        return None
    target = near_year or datetime.now(timezone.utc).year
    candidates = [base, base + 30, base + 60]
    return min(candidates, key=lambda y: abs(y - target))


def validate_vehicle_attributes(year: int, mileage: int, limits: VehicleLimits | None = None) -> None:
    limits = limits or VehicleLimits()
    max_year = datetime.now(timezone.utc).year + 1
    if year < limits.min_year or year > max_year:
        raise BusinessRuleViolation(
            "year_out_of_range", f"Vehicle year must be between {limits.min_year} and {max_year}"
        )
    if mileage < 0:
        raise BusinessRuleViolation("mileage_negative", "Vehicle mileage cannot be negative")
    if mileage > limits.max_mileage:
        raise BusinessRuleViolation("mileage_too_high", "Vehicle mileage seems unrealistically high")
