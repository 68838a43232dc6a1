from decimal import Decimal

import pytest

from origination.amortization import (
    SCHEDULE_COLUMNS,
    calculate_payment,
    generate_schedule,
    round_half_up,
    schedule_csv,
    schedule_frame,
)
from origination.errors import InvalidArgument


def test_round_half_up_rounds_away_from_even():
    assert round_half_up(2.675) == 2.68
    assert round_half_up(0.125) == 0.13
    assert round_half_up(17000.5, places=0) == 17001.0


def test_payment_reference_loan():
    calc = calculate_payment(20_000, 5.25, 60)
    assert calc.monthly_payment == 379.72
    assert calc.total_payment == 22_783.18
    assert calc.total_interest == 2_783.18
    assert calc.schedule == []


def test_payment_three_year_loan():
    calc = calculate_payment(10_000, 6.0, 36)
    assert calc.monthly_payment == 304.22
    assert calc.total_payment == 10_951.90
    assert calc.total_interest == 951.90


def test_zero_rate_is_straight_line():
    calc = calculate_payment(12_000, 0, 12)
    assert calc.monthly_payment == 1_000.0
    assert calc.total_payment == 12_000.0
    assert calc.total_interest == 0.0


def test_zero_rate_rounds_up_to_cover_principal():
    calc = calculate_payment(1_000, 0, 3)
    assert calc.monthly_payment == 333.34
    assert calc.total_payment == 1_000.02
    assert calc.total_interest == 0.02


@pytest.mark.parametrize("rate", [0, 0.01, 0.05, 0.1, 1, 5.25, 50])
@pytest.mark.parametrize("principal", [1_000, 1_001.16, 7_777.77, 12_345.67, 50_000])
def test_reported_payment_repays_principal(principal, rate):
    for term in (12, 13, 36, 37, 60, 71, 84):
        calc = generate_schedule(principal, rate, term)
        assert Decimal(repr(calc.monthly_payment)) * term >= Decimal(repr(principal)), (principal, rate, term)
        assert calc.total_payment >= principal
        assert calc.schedule[-1].balance == 0.0


def test_payment_is_monotonic_in_rate():
    low = calculate_payment(15_000, 4.0, 48).monthly_payment
    high = calculate_payment(15_000, 9.0, 48).monthly_payment
    assert high > low


@pytest.mark.parametrize(
    "principal,rate,term,code",
    [
        (0, 5.0, 12, "invalid_principal"),
        (-100, 5.0, 12, "invalid_principal"),
        (1_000, -0.5, 12, "invalid_interest_rate"),
        (1_000, 100.5, 12, "invalid_interest_rate"),
        (1_000, 5.0, 0, "invalid_term"),
        (1_000, 5.0, 12.5, "invalid_term"),
        (1_000, 5.0, True, "invalid_term"),
        (float("nan"), 5.0, 12, "invalid_principal"),
        (float("inf"), 5.0, 12, "invalid_principal"),
        (1_000, float("nan"), 12, "invalid_interest_rate"),
        (1_000, float("inf"), 12, "invalid_interest_rate"),
    ],
)
def test_invalid_inputs_raise(principal, rate, term, code):
    with pytest.raises(InvalidArgument) as exc:
        calculate_payment(principal, rate, term)
    assert exc.value.code == code


def test_invalid_argument_is_a_value_error():
    with pytest.raises(ValueError):
        generate_schedule(1_000, 5.0, -3)


# ── Schedule ────────────────────────────────────────────────────────


def test_schedule_rows_and_final_balance():
    calc = generate_schedule(10_000, 6.0, 36)
    assert len(calc.schedule) == 36
    assert [row.month for row in calc.schedule] == list(range(1, 37))
    assert calc.schedule[-1].balance == 0.0
    assert calc.monthly_payment == 304.22


def test_schedule_first_row_split():
    first = generate_schedule(10_000, 6.0, 36).schedule[0]
    assert first.interest == 50.0
    assert first.principal == 254.22
    assert first.payment == 304.22


def test_schedule_principal_sums_to_loan_within_rounding():
    calc = generate_schedule(20_000, 5.25, 60)
    principal_paid = sum(row.principal for row in calc.schedule)
    assert abs(principal_paid - 20_000) <= 60 * 0.01
    assert all(row.balance >= 0 for row in calc.schedule)


def test_schedule_balances_decrease():
    balances = [row.balance for row in generate_schedule(8_000, 12.0, 24).schedule]
    assert balances == sorted(balances, reverse=True)


def test_schedule_frame_and_csv():
    calc = generate_schedule(5_000, 7.0, 12)
    frame = schedule_frame(calc)
    assert list(frame.columns) == list(SCHEDULE_COLUMNS)
    assert frame.shape == (12, 5)
    csv = schedule_csv(calc)
    assert csv.splitlines()[0] == "month,payment,principal,interest,balance"
    assert len(csv.strip().splitlines()) == 13


def test_to_dict_omits_empty_schedule():
    assert "schedule" not in calculate_payment(5_000, 7.0, 12).to_dict()
    payload = generate_schedule(5_000, 7.0, 12).to_dict()
    assert len(payload["schedule"]) == 12
    assert payload["schedule"][0]["month"] == 1
