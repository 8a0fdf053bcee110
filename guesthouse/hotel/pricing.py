"""Booking price, duration and availability calculations.

Everything here except :func:`is_room_available` is pure arithmetic on the
values passed in. Availability asks the data store carried by the tenant
context and fails closed: if the store cannot answer, the room is reported
as unavailable.
"""

from __future__ import annotations

import datetime as dt
import enum
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .tenancy import TenantContext

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
BILLING_UNITS = {"HOURS": dt.timedelta(hours=1), "DAYS": dt.timedelta(days=1)}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "AUD": "A$",
    "CAD": "CA$",
}


class BillingMode(str, enum.Enum):
    HOURS = "HOURS"
    DAYS = "DAYS"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class BookingRejection(str, enum.Enum):
    PAST_CHECK_IN = "PastCheckIn"
    INVERTED_RANGE = "InvertedRange"
    NON_POSITIVE_DURATION = "NonPositiveDuration"
    DURATION_MISMATCH = "DurationMismatch"


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: Decimal
    tax_amount: Decimal
    service_charge: Decimal
    total_price: Decimal

    def as_dict(self) -> dict[str, float]:
        return {
            "base_price": float(self.base_price),
            "tax_amount": float(self.tax_amount),
            "service_charge": float(self.service_charge),
            "total_price": float(self.total_price),
        }


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: BookingRejection | None = None
    message: str | None = None

    def __bool__(self) -> bool:
        return self.valid


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Any) -> Decimal:
    """Round half-up to whole cents."""

    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def compute_duration(check_in: dt.datetime, check_out: dt.datetime, mode: BillingMode | str) -> int:
    """Return the number of billable hours or days between two timestamps.

    Any part of a unit, down to a microsecond, is billed as a whole unit.
    """

    elapsed = as_utc(check_out) - as_utc(check_in)
    unit = BILLING_UNITS[BillingMode(mode).value]
    return -(-elapsed // unit)


def compute_price(
    duration_units: int | float | Decimal,
    rate: int | float | Decimal,
    tax_percent: int | float | Decimal | None = None,
    service_charge_percent: int | float | Decimal | None = None,
) -> PriceBreakdown:
    """Price a stay from its duration, unit rate and surcharge percentages.

    The total is summed from the unrounded components; each field is then
    rounded to cents on its own, so the rounded total can differ from the
    sum of the rounded parts by a cent.
    """

    base_price = to_decimal(rate) * to_decimal(duration_units)
    tax_amount = base_price * to_decimal(tax_percent) / 100 if tax_percent else Decimal(0)
    service_charge = (
        base_price * to_decimal(service_charge_percent) / 100
        if service_charge_percent
        else Decimal(0)
    )
    total_price = base_price + tax_amount + service_charge
    return PriceBreakdown(
        base_price=round_money(base_price),
        tax_amount=round_money(tax_amount),
        service_charge=round_money(service_charge),
        total_price=round_money(total_price),
    )


def validate_booking(
    check_in: dt.datetime,
    check_out: dt.datetime,
    duration_units: int | float,
    mode: BillingMode | str,
    *,
    now: dt.datetime | None = None,
) -> ValidationResult:
    """Check a proposed stay before it is priced and stored.

    Rejections are returned rather than raised. The duration supplied by the
    caller may differ from the recomputed one by at most one unit.
    """

    mode = BillingMode(mode)
    check_in = as_utc(check_in)
    check_out = as_utc(check_out)
    now = as_utc(now) if now is not None else dt.datetime.now(dt.timezone.utc)

    if check_in < now:
        return ValidationResult(
            False, BookingRejection.PAST_CHECK_IN, "Check-in date must be in the future"
        )
    if check_out <= check_in:
        return ValidationResult(
            False,
            BookingRejection.INVERTED_RANGE,
            "Check-out date must be after check-in date",
        )
    if duration_units <= 0:
        return ValidationResult(
            False, BookingRejection.NON_POSITIVE_DURATION, "Duration must be greater than 0"
        )
    actual = compute_duration(check_in, check_out, mode)
    if abs(actual - duration_units) > 1:
        return ValidationResult(
            False,
            BookingRejection.DURATION_MISMATCH,
            f"Duration mismatch: expected {duration_units} {mode.value.lower()}, got {actual}",
        )
    return ValidationResult(True)


def is_room_available(
    context: TenantContext,
    room_id: int,
    check_in: dt.datetime,
    check_out: dt.datetime,
    exclude_booking_id: int | None = None,
) -> bool:
    try:
        conflicts = context.data_store.fetch_overlapping_reservations(
            context.tenant_id, room_id, as_utc(check_in), as_utc(check_out), status="ACTIVE"
        )
    except Exception:
        logger.exception("Error checking availability of room %s; treating as unavailable", room_id)
        return False

    if exclude_booking_id is not None:
        conflicts = [booking for booking in conflicts if booking["id"] != exclude_booking_id]
    return not conflicts


def rate_for_mode(
    mode: BillingMode | str,
    hourly_rate: int | float | Decimal,
    daily_rate: int | float | Decimal,
) -> Decimal:
    if BillingMode(mode) is BillingMode.HOURS:
        return to_decimal(hourly_rate)
    return to_decimal(daily_rate)


def default_rate_for(settings: dict, room_type: str, mode: BillingMode | str) -> Decimal:
    """Return the organisation-wide default rate for a room type."""

    prefix = "default_ac" if room_type == "AC" else "default_nonac"
    return rate_for_mode(
        mode, settings.get(f"{prefix}_hourly_rate"), settings.get(f"{prefix}_daily_rate")
    )


def payment_status_for(total: Any, paid: Any) -> PaymentStatus:
    total = to_decimal(total)
    paid = to_decimal(paid)
    if paid >= total:
        return PaymentStatus.PAID
    if paid > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def occupancy_rate(booked_units: Any, total_units: Any) -> Decimal:
    total_units = to_decimal(total_units)
    if total_units == 0:
        return Decimal("0.00")
    return round_money(to_decimal(booked_units) / total_units * 100)


def format_currency(amount: Any, currency: str = "LKR") -> str:
    """Format a money value for display, e.g. ``$1,234.50`` or ``LKR 1,000.00``.

    Grouping is always en-US (comma thousands, dot decimals) whatever the
    currency; only the prefix changes. Codes without a known symbol are
    written out in front of the amount.
    """

    value = round_money(amount)
    code = currency.upper()
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


__all__ = [
    "BillingMode",
    "BookingRejection",
    "PaymentStatus",
    "PriceBreakdown",
    "ValidationResult",
    "compute_duration",
    "compute_price",
    "default_rate_for",
    "format_currency",
    "is_room_available",
    "occupancy_rate",
    "payment_status_for",
    "rate_for_mode",
    "round_money",
    "validate_booking",
]
