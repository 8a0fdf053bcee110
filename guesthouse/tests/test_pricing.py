import datetime as dt
import unittest
from decimal import Decimal

from guesthouse.hotel.pricing import (
    BillingMode,
    BookingRejection,
    PaymentStatus,
    compute_duration,
    compute_price,
    default_rate_for,
    format_currency,
    is_room_available,
    occupancy_rate,
    payment_status_for,
    rate_for_mode,
    validate_booking,
)
from guesthouse.hotel.tenancy import TenantContext

UTC = dt.timezone.utc


class ReservationStore:
    """In-memory stand-in for the reservation query interface."""

    def __init__(self, reservations):
        self.reservations = reservations
        self.calls = []

    def fetch_overlapping_reservations(self, tenant_id, room_id, start, end, status="ACTIVE"):
        self.calls.append((tenant_id, room_id, start, end, status))
        return [
            {"id": r["id"], "check_in": r["check_in"], "check_out": r["check_out"]}
            for r in self.reservations
            if r["tenant_id"] == tenant_id
            and r["room_id"] == room_id
            and r["status"] == status
            and r["check_in"] < end
            and r["check_out"] > start
        ]


class BrokenStore:
    def fetch_overlapping_reservations(self, *args, **kwargs):
        raise ConnectionError("backend unreachable")


class DurationTestCase(unittest.TestCase):
    def test_one_millisecond_over_an_hour_bills_two_hours(self) -> None:
        check_in = dt.datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        check_out = dt.datetime(2024, 1, 1, 1, 0, 0, 1000, tzinfo=UTC)
        self.assertEqual(compute_duration(check_in, check_out, BillingMode.HOURS), 2)

    def test_sub_millisecond_excess_bills_another_unit(self) -> None:
        check_in = dt.datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        check_out = dt.datetime(2024, 1, 1, 1, 0, 0, 500, tzinfo=UTC)
        self.assertEqual(compute_duration(check_in, check_out, BillingMode.HOURS), 2)
        self.assertEqual(compute_duration(check_in, check_out, BillingMode.DAYS), 1)

    def test_exact_units_are_not_rounded_up(self) -> None:
        check_in = dt.datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        self.assertEqual(
            compute_duration(check_in, check_in + dt.timedelta(hours=1), BillingMode.HOURS), 1
        )
        self.assertEqual(
            compute_duration(check_in, check_in + dt.timedelta(days=2), BillingMode.DAYS), 2
        )

    def test_partial_day_counts_as_full_day(self) -> None:
        check_in = dt.datetime(2024, 1, 1, 14, 0, tzinfo=UTC)
        check_out = dt.datetime(2024, 1, 2, 15, 0, tzinfo=UTC)
        self.assertEqual(compute_duration(check_in, check_out, "DAYS"), 2)

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        check_in = dt.datetime(2024, 1, 1, 10, 0)
        check_out = dt.datetime(2024, 1, 1, 12, 30, tzinfo=UTC)
        self.assertEqual(compute_duration(check_in, check_out, BillingMode.HOURS), 3)

    def test_duration_is_monotonic_in_elapsed_time(self) -> None:
        check_in = dt.datetime(2024, 1, 1, tzinfo=UTC)
        for mode in BillingMode:
            previous = 0
            for minutes in range(1, 3 * 24 * 60, 37):
                current = compute_duration(
                    check_in, check_in + dt.timedelta(minutes=minutes), mode
                )
                self.assertGreaterEqual(current, previous)
                previous = current


class PriceTestCase(unittest.TestCase):
    def test_daily_rate_with_tax_and_service_charge(self) -> None:
        price = compute_price(3, 1000, 10, 5)
        self.assertEqual(price.base_price, Decimal("3000.00"))
        self.assertEqual(price.tax_amount, Decimal("300.00"))
        self.assertEqual(price.service_charge, Decimal("150.00"))
        self.assertEqual(price.total_price, Decimal("3450.00"))

    def test_without_surcharges_total_equals_base(self) -> None:
        price = compute_price(3, 33.335, None, None)
        self.assertEqual(price.base_price, Decimal("100.01"))
        self.assertEqual(price.tax_amount, Decimal("0"))
        self.assertEqual(price.service_charge, Decimal("0"))
        self.assertEqual(price.total_price, Decimal("100.01"))

    def test_zero_percentages_are_treated_as_absent(self) -> None:
        price = compute_price(2, 250, 0, 0)
        self.assertEqual(price.total_price, Decimal("500.00"))

    def test_each_field_rounds_half_up(self) -> None:
        price = compute_price(1, "0.5", 1, None)
        self.assertEqual(price.tax_amount, Decimal("0.01"))
        self.assertEqual(price.total_price, Decimal("0.51"))

    def test_total_rounds_from_unrounded_components(self) -> None:
        # 0.004 + 0.004 rounds to 0.00 each, but the total 1.008 rounds to 1.01.
        price = compute_price(1, 1, "0.4", "0.4")
        self.assertEqual(price.tax_amount, Decimal("0.00"))
        self.assertEqual(price.service_charge, Decimal("0.00"))
        self.assertEqual(price.total_price, Decimal("1.01"))

    def test_total_never_below_base_for_non_negative_inputs(self) -> None:
        for units in (0, 1, 2, 7, 30):
            for rate in (0, 1, 99.99, 1250):
                for tax, service in ((None, None), (10, None), (None, 2.5), (18, 10)):
                    price = compute_price(units, rate, tax, service)
                    self.assertGreaterEqual(price.total_price, price.base_price)

    def test_negative_rate_is_not_rejected(self) -> None:
        self.assertEqual(compute_price(2, -100).total_price, Decimal("-200.00"))


class ValidateBookingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.now = dt.datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        self.check_in = dt.datetime(2024, 6, 2, 14, 0, tzinfo=UTC)
        self.check_out = dt.datetime(2024, 6, 5, 10, 0, tzinfo=UTC)

    def test_valid_booking(self) -> None:
        result = validate_booking(self.check_in, self.check_out, 3, "DAYS", now=self.now)
        self.assertTrue(result.valid)
        self.assertIsNone(result.reason)

    def test_past_check_in_wins_over_every_other_problem(self) -> None:
        past = self.now - dt.timedelta(minutes=1)
        for check_out, units in ((self.check_out, 3), (past, 0), (past - dt.timedelta(hours=1), -4)):
            result = validate_booking(past, check_out, units, BillingMode.DAYS, now=self.now)
            self.assertFalse(result.valid)
            self.assertEqual(result.reason, BookingRejection.PAST_CHECK_IN)

    def test_inverted_range(self) -> None:
        result = validate_booking(self.check_in, self.check_in, 1, "HOURS", now=self.now)
        self.assertEqual(result.reason, BookingRejection.INVERTED_RANGE)

    def test_non_positive_duration(self) -> None:
        result = validate_booking(self.check_in, self.check_out, 0, "DAYS", now=self.now)
        self.assertEqual(result.reason, BookingRejection.NON_POSITIVE_DURATION)

    def test_duration_tolerates_one_unit_of_drift(self) -> None:
        self.assertTrue(validate_booking(self.check_in, self.check_out, 4, "DAYS", now=self.now))
        self.assertTrue(validate_booking(self.check_in, self.check_out, 2, "DAYS", now=self.now))
        result = validate_booking(self.check_in, self.check_out, 5, "DAYS", now=self.now)
        self.assertEqual(result.reason, BookingRejection.DURATION_MISMATCH)
        self.assertIn("expected 5 days, got 3", result.message)


class AvailabilityTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.check_in = dt.datetime(2024, 6, 2, 14, 0, tzinfo=UTC)
        self.check_out = dt.datetime(2024, 6, 5, 10, 0, tzinfo=UTC)
        self.store = ReservationStore(
            [
                {
                    "id": 7,
                    "tenant_id": 1,
                    "room_id": 3,
                    "status": "ACTIVE",
                    "check_in": self.check_in,
                    "check_out": self.check_out,
                },
                {
                    "id": 8,
                    "tenant_id": 1,
                    "room_id": 4,
                    "status": "CANCELLED",
                    "check_in": self.check_in,
                    "check_out": self.check_out,
                },
            ]
        )
        self.context = TenantContext(tenant_id=1, data_store=self.store)

    def test_identical_interval_conflicts(self) -> None:
        self.assertFalse(is_room_available(self.context, 3, self.check_in, self.check_out))

    def test_excluding_the_booking_itself(self) -> None:
        self.assertTrue(
            is_room_available(self.context, 3, self.check_in, self.check_out, exclude_booking_id=7)
        )

    def test_touching_endpoints_do_not_overlap(self) -> None:
        later = self.check_out + dt.timedelta(days=2)
        self.assertTrue(is_room_available(self.context, 3, self.check_out, later))
        earlier = self.check_in - dt.timedelta(days=1)
        self.assertTrue(is_room_available(self.context, 3, earlier, self.check_in))

    def test_only_active_reservations_block(self) -> None:
        self.assertTrue(is_room_available(self.context, 4, self.check_in, self.check_out))
        self.assertEqual(self.store.calls[-1][-1], "ACTIVE")

    def test_other_tenants_do_not_block(self) -> None:
        other = TenantContext(tenant_id=2, data_store=self.store)
        self.assertTrue(is_room_available(other, 3, self.check_in, self.check_out))

    def test_store_failure_fails_closed(self) -> None:
        context = TenantContext(tenant_id=1, data_store=BrokenStore())
        with self.assertLogs("guesthouse.hotel.pricing", level="ERROR"):
            self.assertFalse(is_room_available(context, 3, self.check_in, self.check_out))


class HelperTestCase(unittest.TestCase):
    def test_rate_for_mode(self) -> None:
        self.assertEqual(rate_for_mode("HOURS", 500, 4000), Decimal("500"))
        self.assertEqual(rate_for_mode(BillingMode.DAYS, 500, 4000), Decimal("4000"))

    def test_default_rate_for_room_type(self) -> None:
        settings = {
            "default_ac_hourly_rate": 800,
            "default_ac_daily_rate": 6000,
            "default_nonac_hourly_rate": 500,
            "default_nonac_daily_rate": 4000,
        }
        self.assertEqual(default_rate_for(settings, "AC", "DAYS"), Decimal("6000"))
        self.assertEqual(default_rate_for(settings, "NON_AC", "HOURS"), Decimal("500"))

    def test_payment_status(self) -> None:
        self.assertIs(payment_status_for(100, 0), PaymentStatus.PENDING)
        self.assertIs(payment_status_for(100, 40), PaymentStatus.PARTIAL)
        self.assertIs(payment_status_for(100, 100), PaymentStatus.PAID)

    def test_occupancy_rate(self) -> None:
        self.assertEqual(occupancy_rate(0, 0), Decimal("0.00"))
        self.assertEqual(occupancy_rate(10, 30), Decimal("33.33"))

    def test_format_currency(self) -> None:
        self.assertEqual(format_currency(1234.5, "USD"), "$1,234.50")
        self.assertEqual(format_currency(1000), "LKR 1,000.00")
        self.assertEqual(format_currency(-5, "usd"), "-$5.00")
        self.assertEqual(format_currency(1234567.891, "EUR"), "€1,234,567.89")
        self.assertEqual(format_currency(1234567, "INR"), "₹1,234,567.00")
        self.assertEqual(format_currency(98765.4, "LKR"), "LKR 98,765.40")


if __name__ == "__main__":
    unittest.main()
