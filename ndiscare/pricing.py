from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from .config import settings

SERVICE_TYPES = (
    "Personal Care",
    "Domestic Assistance",
    "Community Participation",
    "Transport",
    "Therapeutic Support",
    "Sleepover",
    "Respite Care",
    "Skill Development",
    "Employment Support",
    "Other",
)
STAFF_RATIOS = ("1:1", "2:1", "1:2", "1:3", "1:4")

BAND_DAYTIME = "Daytime"
BAND_EVENING = "Evening"
BAND_ACTIVE_NIGHT = "Active Night"
BAND_SATURDAY = "Saturday"
BAND_SUNDAY = "Sunday"
BAND_PUBLIC_HOLIDAY = "Public Holiday"
BAND_SLEEPOVER = "Sleepover"
TIME_BANDS = (
    BAND_DAYTIME,
    BAND_EVENING,
    BAND_ACTIVE_NIGHT,
    BAND_SATURDAY,
    BAND_SUNDAY,
    BAND_PUBLIC_HOLIDAY,
    BAND_SLEEPOVER,
)

_CENT = Decimal("0.01")

DEFAULT_RATES = {
    (BAND_DAYTIME, "1:1"): Decimal("40.00"),
    (BAND_EVENING, "1:1"): Decimal("60.00"),
    (BAND_ACTIVE_NIGHT, "1:1"): Decimal("80.00"),
    (BAND_SATURDAY, "1:1"): Decimal("56.00"),
    (BAND_SUNDAY, "1:1"): Decimal("72.00"),
    (BAND_PUBLIC_HOLIDAY, "1:1"): Decimal("90.00"),
    (BAND_SLEEPOVER, "1:1"): Decimal("100.00"),
    (BAND_DAYTIME, "1:2"): Decimal("25.00"),
    (BAND_EVENING, "1:2"): Decimal("35.00"),
    (BAND_ACTIVE_NIGHT, "1:2"): Decimal("45.00"),
    (BAND_SATURDAY, "1:2"): Decimal("32.00"),
    (BAND_SUNDAY, "1:2"): Decimal("40.00"),
    (BAND_PUBLIC_HOLIDAY, "1:2"): Decimal("50.00"),
    (BAND_SLEEPOVER, "1:2"): Decimal("55.00"),
}


@dataclass(frozen=True)
class PricedLine:
    time_band: str
    quantity: Decimal
    unit: str
    rate: Decimal
    amount: Decimal


def round_money(value) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def parse_hhmm(raw: str) -> time:
    try:
        parsed = datetime.strptime((raw or "").strip(), "%H:%M")
    except ValueError:
        raise ValueError(f"Invalid time {raw!r}, expected HH:MM") from None
    return parsed.time()


def public_holidays() -> set[date]:
    out: set[date] = set()
    for raw in settings.NDIS_PUBLIC_HOLIDAYS:
        try:
            out.add(date.fromisoformat(raw))
        except ValueError:
            continue
    return out


def classify_time_band(
    service_date: date,
    start: time,
    service_type: str,
    holidays: set[date] | None = None,
) -> str:
    if service_type == BAND_SLEEPOVER:
        return BAND_SLEEPOVER
    if service_date in (holidays if holidays is not None else public_holidays()):
        return BAND_PUBLIC_HOLIDAY
    weekday = service_date.weekday()
    if weekday == 5:
        return BAND_SATURDAY
    if weekday == 6:
        return BAND_SUNDAY
    if 6 <= start.hour < 20:
        return BAND_DAYTIME
    if start.hour >= 20:
        return BAND_EVENING
    return BAND_ACTIVE_NIGHT


def line_hours(start: time, end: time) -> Decimal:
    begin = datetime.combine(date.min, start)
    finish = datetime.combine(date.min, end)
    if finish <= begin:
        finish += timedelta(days=1)
    seconds = Decimal((finish - begin).total_seconds())
    return (seconds / Decimal(3600)).quantize(_CENT, rounding=ROUND_HALF_UP)


def default_rate(time_band: str, ratio: str) -> Decimal:
    rate = DEFAULT_RATES.get((time_band, ratio))
    if rate is None:
        rate = DEFAULT_RATES.get((time_band, "1:1"))
    if rate is None:
        raise ValueError(f"No default rate for {time_band} {ratio}")
    return rate


def price_line(
    service_date: date,
    start: time,
    end: time,
    service_type: str,
    rate_for_band,
    holidays: set[date] | None = None,
) -> PricedLine:
    """Price one invoice line.

    ``rate_for_band`` is called with the resolved time band and returns the
    hourly (or per-night, for sleepovers) rate as a Decimal.
    """
    band = classify_time_band(service_date, start, service_type, holidays=holidays)
    if band == BAND_SLEEPOVER:
        quantity = Decimal("1.00")
        unit = "night"
    else:
        quantity = line_hours(start, end)
        unit = "hour"
    rate = round_money(rate_for_band(band))
    return PricedLine(
        time_band=band,
        quantity=quantity,
        unit=unit,
        rate=rate,
        amount=round_money(quantity * rate),
    )


def gst_for(subtotal: Decimal) -> Decimal:
    return round_money(subtotal * Decimal(str(settings.INVOICE_GST_RATE)))
