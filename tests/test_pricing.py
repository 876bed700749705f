from datetime import date, time
from decimal import Decimal

import pytest

from ndiscare.pricing import (
    BAND_ACTIVE_NIGHT,
    BAND_DAYTIME,
    BAND_EVENING,
    BAND_PUBLIC_HOLIDAY,
    BAND_SATURDAY,
    BAND_SLEEPOVER,
    BAND_SUNDAY,
    classify_time_band,
    default_rate,
    line_hours,
    parse_hhmm,
    price_line,
)

MONDAY = date(2025, 3, 3)


@pytest.mark.parametrize(
    ("service_date", "start", "expected"),
    [
        (MONDAY, time(6, 0), BAND_DAYTIME),
        (MONDAY, time(19, 59), BAND_DAYTIME),
        (MONDAY, time(20, 0), BAND_EVENING),
        (MONDAY, time(23, 30), BAND_EVENING),
        (MONDAY, time(0, 0), BAND_ACTIVE_NIGHT),
        (MONDAY, time(5, 59), BAND_ACTIVE_NIGHT),
        (date(2025, 3, 8), time(10, 0), BAND_SATURDAY),
        (date(2025, 3, 9), time(22, 0), BAND_SUNDAY),
    ],
)
def test_classify_time_band(service_date, start, expected):
    assert classify_time_band(service_date, start, "Personal Care", holidays=set()) == expected


def test_public_holiday_beats_weekday_and_sleepover_beats_everything():
    holiday = date(2025, 12, 25)
    assert classify_time_band(holiday, time(9, 0), "Personal Care", holidays={holiday}) == BAND_PUBLIC_HOLIDAY
    assert classify_time_band(holiday, time(22, 0), "Sleepover", holidays={holiday}) == BAND_SLEEPOVER


def test_line_hours_wraps_past_midnight():
    assert line_hours(time(9, 0), time(12, 30)) == Decimal("3.50")
    assert line_hours(time(22, 0), time(2, 0)) == Decimal("4.00")


def test_price_line_hourly_and_sleepover():
    hourly = price_line(MONDAY, time(9, 0), time(11, 15), "Personal Care", lambda band: default_rate(band, "1:1"), holidays=set())
    assert hourly.time_band == BAND_DAYTIME
    assert hourly.unit == "hour"
    assert hourly.quantity == Decimal("2.25")
    assert hourly.amount == Decimal("90.00")

    sleepover = price_line(MONDAY, time(22, 0), time(7, 0), "Sleepover", lambda band: default_rate(band, "1:1"), holidays=set())
    assert sleepover.unit == "night"
    assert sleepover.quantity == Decimal("1.00")
    assert sleepover.amount == Decimal("100.00")


def test_default_rate_falls_back_to_one_to_one():
    assert default_rate(BAND_DAYTIME, "1:2") == Decimal("25.00")
    assert default_rate(BAND_DAYTIME, "1:4") == Decimal("40.00")


def test_parse_hhmm_rejects_garbage():
    assert parse_hhmm("07:05") == time(7, 5)
    with pytest.raises(ValueError):
        parse_hhmm("25:99")
