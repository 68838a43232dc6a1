from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LendingLimits:
    min_loan_amount: float = 5_000.0
    max_loan_amount: float = 100_000.0
    # Applies even when min_loan_amount is configured lower.
    engine_min_loan_amount: float = 1_000.0
    max_ltv_percent: float = 80.0
    min_application_rate: float = 0.0
    max_application_rate: float = 50.0
    min_term_months: int = 12
    max_term_months: int = 84

    min_offer_rate: float = 5.0
    max_offer_rate: float = 30.0
    offer_amount_ratio: float = 0.85
    min_offer_amount: float = 1_000.0  # 100,000 minor units
    default_offer_expiration_hours: int = 168
    min_offer_expiration_hours: int = 24
    max_offer_expiration_hours: int = 720

    @property
    def effective_min_loan_amount(self) -> float:
        return max(self.min_loan_amount, self.engine_min_loan_amount)


@dataclass(frozen=True)
class VehicleLimits:
    vin_length: int = 17
    min_year: int = 1990
    max_mileage: int = 500_000
