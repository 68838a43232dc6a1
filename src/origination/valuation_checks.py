from __future__ import annotations

import math

from origination.data_models import Valuation
from origination.errors import BusinessRuleViolation, ConsistencyError


def check_valuation_bounds(estimated_value: float, min_value: float, max_value: float) -> None:
    if not all(math.isfinite(v) for v in (estimated_value, min_value, max_value)):
        raise BusinessRuleViolation("non_finite_valuation", "Valuation values must be finite numbers")
    if min_value < 0 or estimated_value < 0 or max_value < 0:
        raise BusinessRuleViolation("negative_valuation", "Valuation values must not be negative")
    if min_value > estimated_value:
        raise BusinessRuleViolation(
            "min_value_above_estimate", "Minimum value cannot be greater than estimated value"
        )
    if estimated_value > max_value:
        raise BusinessRuleViolation(
            "estimate_above_max_value", "Estimated value cannot be greater than maximum value"
        )
    if min_value > max_value:
        raise BusinessRuleViolation(
            "min_value_above_max_value", "Minimum value cannot be greater than maximum value"
        )


def check_valuation_consistency(valuation: Valuation, vehicle_id: str) -> None:
    """Bounds first, then ownership: the valuation must describe ``vehicle_id``."""
    check_valuation_bounds(valuation.estimated_value, valuation.min_value, valuation.max_value)
    if valuation.vehicle_id != vehicle_id:
        raise ConsistencyError(
            f"Valuation {valuation.id} does not belong to vehicle {vehicle_id}",
            code="valuation_vehicle_mismatch",
        )
