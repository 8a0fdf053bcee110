"""Core orchestration logic for the guesthouse platform."""

from __future__ import annotations

import calendar
import datetime as dt
import hashlib
import logging
import re
import secrets
import sqlite3
from collections import defaultdict
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .database import (
    DataStore,
    from_db_timestamp,
    initialize_database,
    to_db_timestamp,
)
from .errors import AuthorizationError, ValidationError
from .pricing import (
    BillingMode,
    as_utc,
    compute_duration,
    compute_price,
    default_rate_for,
    format_currency,
    is_room_available,
    occupancy_rate,
    payment_status_for,
    rate_for_mode,
    round_money,
    to_decimal,
    validate_booking,
)
from .tenancy import (
    TenantContext,
    create_record,
    delete_record,
    ensure_organization_context,
    query_records,
    update_record,
    verify_admin,
    verify_data_ownership,
    verify_membership,
)

logger = logging.getLogger(__name__)

PLAN_LIMITS = {"BASIC": (10, 3), "PREMIUM": (50, 10)}
DEFAULT_PLAN_LIMITS = (200, 50)
MEMBER_ROLES = ("OWNER", "MANAGER", "STAFF")

ROOM_TYPES = ("AC", "NON_AC")
ROOM_STATUSES = ("AVAILABLE", "OCCUPIED", "MAINTENANCE", "BLOCKED")
UNBOOKABLE_ROOM_STATUSES = ("MAINTENANCE", "BLOCKED")

BOOKING_SOURCES = ("WALKIN", "PHONE", "ONLINE")
PAYMENT_METHODS = ("CASH", "BANK", "DIGITAL")
REVENUE_STATUSES = ("ACTIVE", "COMPLETED")
EXPENSE_CATEGORIES = (
    "ELECTRICITY",
    "WATER",
    "CLEANING",
    "REPAIRS",
    "INTERNET",
    "STAFF",
    "OTHER",
)

SETTINGS_FIELDS = (
    "business_name",
    "currency",
    "timezone",
    "default_ac_hourly_rate",
    "default_ac_daily_rate",
    "default_nonac_hourly_rate",
    "default_nonac_daily_rate",
    "tax_percentage",
    "service_charge_percentage",
)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse_timestamp(value: str | dt.datetime, field: str) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return as_utc(value)
    try:
        return as_utc(dt.datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc


def _parse_date(value: str | dt.date, field: str) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc


def _number(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}")
    try:
        number = to_decimal(value)
    except ArithmeticError as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc
    if not number.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return number


def _whole_number(value: Any, field: str) -> int:
    number = _number(value, field)
    if number != number.to_integral_value():
        raise ValidationError(f"{field.capitalize()} must be a whole number")
    return int(number)


def _money(value: Any, field: str, *, allow_zero: bool = True) -> float:
    number = _number(value, field)
    try:
        amount = round_money(number)
    except ArithmeticError as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc
    if amount < 0 or (not allow_zero and amount == 0):
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} must be positive")
    return float(amount)


def _percentage(value: Any, field: str) -> float | None:
    if value is None or value == "":
        return None
    percent = _number(value, field)
    if not Decimal(0) <= percent <= Decimal(100):
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} must be between 0 and 100")
    return float(percent)


def _choice(value: str, allowed: tuple[str, ...], field: str) -> str:
    normalised = str(value).upper()
    if normalised not in allowed:
        raise ValidationError(f"Invalid {field}: {value!r}")
    return normalised


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", name.lower())
    return re.sub(r"-+", "-", slug)


class HotelSystem:
    """High level façade that exposes application level behaviours."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.store = DataStore(db_path)
        initialize_database(self.conn)

    @property
    def conn(self) -> sqlite3.Connection:
        """The calling thread's connection."""

        return self.store.conn

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 390000)
        return f"pbkdf2_sha256${salt}${digest.hex()}"

    def _verify_password(self, stored: str, provided: str) -> bool:
        algorithm, salt, hex_digest = stored.split("$")
        candidate = hashlib.pbkdf2_hmac("sha256", provided.encode(), salt.encode(), 390000)
        return secrets.compare_digest(candidate.hex(), hex_digest)

    def _local_zone(self, settings: dict) -> dt.tzinfo:
        name = settings.get("timezone") or "UTC"
        if name == "UTC":
            return dt.timezone.utc
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %s configured; using UTC", name)
            return dt.timezone.utc

    def _day_window(
        self, context: TenantContext, now: dt.datetime
    ) -> tuple[dt.datetime, dt.datetime]:
        zone = self._local_zone(self.get_settings(context))
        local_day = now.astimezone(zone).date()
        start = dt.datetime.combine(local_day, dt.time(0), tzinfo=zone)
        end = dt.datetime.combine(local_day + dt.timedelta(days=1), dt.time(0), tzinfo=zone)
        return as_utc(start), as_utc(end)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def register_user(self, *, email: str, password: str, name: str | None = None) -> dict:
        if not email or "@" not in email:
            raise ValidationError("A valid email address is required")
        if not password or len(password) < 8:
            raise ValidationError("Password must be at least 8 characters")
        try:
            cur = self.conn.execute(
                """
                INSERT INTO users(email, password_hash, api_key, name)
                VALUES (?, ?, ?, ?)
                """,
                (email.strip().lower(), self._hash_password(password), secrets.token_hex(16), name),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Email is already registered") from exc
        self.conn.commit()
        return self.get_user(cur.lastrowid)

    def get_user(self, user_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise ValidationError("User not found")
        return row

    def login(self, *, email: str, password: str) -> dict:
        row = self.conn.execute(
            "SELECT * FROM users WHERE email = ? AND is_active = 1", (email.strip().lower(),)
        ).fetchone()
        if not row or not self._verify_password(row["password_hash"], password):
            logger.warning("Failed login for %s", email)
            raise AuthorizationError("Invalid credentials")
        return {"user_id": row["id"], "api_key": row["api_key"]}

    def user_for_api_key(self, api_key: str) -> dict:
        row = self.conn.execute(
            "SELECT * FROM users WHERE api_key = ? AND is_active = 1", (api_key,)
        ).fetchone()
        if not row:
            raise AuthorizationError("User not authenticated")
        return row

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------
    def create_organization(
        self,
        *,
        user_id: int,
        name: str,
        business_type: str | None = None,
        subscription_plan: str = "BASIC",
    ) -> dict:
        self.get_user(user_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Organization name is required")
        plan = (subscription_plan or "BASIC").upper()
        max_rooms, max_users = PLAN_LIMITS.get(plan, DEFAULT_PLAN_LIMITS)
        cur = self.conn.execute(
            """
            INSERT INTO organizations(
                name, slug, business_type, subscription_plan, subscription_status,
                max_rooms, max_users
            ) VALUES (?, ?, ?, ?, 'ACTIVE', ?, ?)
            """,
            (name, slugify(name), business_type, plan, max_rooms, max_users),
        )
        organization_id = cur.lastrowid
        self.conn.execute(
            """
            INSERT INTO organization_users(organization_id, user_id, role, is_active)
            VALUES (?, ?, 'OWNER', 1)
            """,
            (organization_id, user_id),
        )
        self._set_current_organization(user_id, organization_id)
        self._create_default_settings(organization_id, business_name=name)
        logger.info("Organization %s created by user %s", organization_id, user_id)
        return self.get_organization(organization_id)

    def get_organization(self, organization_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM organizations WHERE id = ?", (organization_id,)
        ).fetchone()
        if not row:
            raise ValidationError("Organization not found")
        return row

    def list_user_organizations(self, user_id: int) -> list[dict]:
        return self.conn.execute(
            """
            SELECT organizations.*, organization_users.role AS role
            FROM organization_users
            JOIN organizations ON organizations.id = organization_users.organization_id
            WHERE organization_users.user_id = ? AND organization_users.is_active = 1
            ORDER BY organization_users.id
            """,
            (user_id,),
        ).fetchall()

    def current_organization(self, user_id: int) -> dict | None:
        try:
            context = ensure_organization_context(self.store, user_id)
        except AuthorizationError:
            return None
        return self.get_organization(context.tenant_id)

    def _set_current_organization(self, user_id: int, organization_id: int) -> None:
        self.conn.execute(
            """
            INSERT INTO user_profiles(user_id, current_organization_id, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                current_organization_id = excluded.current_organization_id,
                updated_at = excluded.updated_at
            """,
            (user_id, organization_id, to_db_timestamp(_now())),
        )
        self.conn.commit()

    def switch_organization(self, *, user_id: int, organization_id: int) -> dict:
        verify_membership(self.store, organization_id, user_id)
        self._set_current_organization(user_id, organization_id)
        return self.get_organization(organization_id)

    def add_member(self, context: TenantContext, *, user_id: int, role: str = "STAFF") -> dict:
        verify_admin(self.store, context.tenant_id, context.user_id)
        role = _choice(role, MEMBER_ROLES, "role")
        self.get_user(user_id)
        organization = self.get_organization(context.tenant_id)
        members = self.conn.execute(
            """
            SELECT COUNT(*) AS total FROM organization_users
            WHERE organization_id = ? AND is_active = 1 AND user_id != ?
            """,
            (context.tenant_id, user_id),
        ).fetchone()["total"]
        if members >= organization["max_users"]:
            raise ValidationError("Organization has reached its user limit")
        self.conn.execute(
            """
            INSERT INTO organization_users(organization_id, user_id, role, is_active)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(organization_id, user_id) DO UPDATE SET
                role = excluded.role,
                is_active = 1
            """,
            (context.tenant_id, user_id, role),
        )
        self.conn.commit()
        return verify_membership(self.store, context.tenant_id, user_id)

    def context_for(self, user_id: int, organization_id: int | None = None) -> TenantContext:
        return ensure_organization_context(self.store, user_id, organization_id)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def _create_default_settings(self, organization_id: int, *, business_name: str) -> dict:
        self.conn.execute(
            """
            INSERT INTO settings(organization_id, business_name, currency, timezone)
            VALUES (?, ?, 'LKR', 'UTC')
            ON CONFLICT(organization_id) DO NOTHING
            """,
            (organization_id, business_name),
        )
        self.conn.commit()
        return self.conn.execute(
            "SELECT * FROM settings WHERE organization_id = ?", (organization_id,)
        ).fetchone()

    def get_settings(self, context: TenantContext) -> dict:
        rows = query_records(context, "settings")
        if rows:
            return rows[0]
        organization = self.get_organization(context.tenant_id)
        return self._create_default_settings(context.tenant_id, business_name=organization["name"])

    def update_settings(self, context: TenantContext, **fields: Any) -> dict:
        unknown = set(fields) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "business_name":
                if not value or not str(value).strip():
                    raise ValidationError("Business name is required")
                values[key] = str(value).strip()
            elif key == "currency":
                code = str(value or "").strip().upper()
                if not re.fullmatch(r"[A-Z]{3}", code):
                    raise ValidationError("Currency must be a three-letter code")
                values[key] = code
            elif key == "timezone":
                if value != "UTC":
                    try:
                        ZoneInfo(str(value))
                    except (ZoneInfoNotFoundError, ValueError) as exc:
                        raise ValidationError(f"Unknown timezone: {value!r}") from exc
                values[key] = value
            elif key in ("tax_percentage", "service_charge_percentage"):
                values[key] = _percentage(value, key)
            else:
                values[key] = _money(value, key)
        settings = self.get_settings(context)
        values["updated_at"] = to_db_timestamp(_now())
        return update_record(context, "settings", settings["id"], values)

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    def _ensure_room_capacity(self, context: TenantContext) -> None:
        organization = self.get_organization(context.tenant_id)
        active = len(query_records(context, "rooms", {"is_active": 1}))
        if active >= organization["max_rooms"]:
            raise ValidationError("Organization has reached its room limit")

    def create_room(
        self,
        context: TenantContext,
        *,
        room_name: str,
        room_type: str = "NON_AC",
        hourly_rate: float | None = None,
        daily_rate: float | None = None,
        maintenance_notes: str | None = None,
    ) -> dict:
        room_name = (room_name or "").strip()
        if not room_name:
            raise ValidationError("Room name is required")
        room_type = _choice(room_type, ROOM_TYPES, "room type")
        self._ensure_room_capacity(context)
        settings = self.get_settings(context)
        if hourly_rate is None:
            hourly_rate = default_rate_for(settings, room_type, BillingMode.HOURS)
        if daily_rate is None:
            daily_rate = default_rate_for(settings, room_type, BillingMode.DAYS)
        room = create_record(
            context,
            "rooms",
            {
                "room_name": room_name,
                "room_type": room_type,
                "hourly_rate": _money(hourly_rate, "hourly_rate"),
                "daily_rate": _money(daily_rate, "daily_rate"),
                "maintenance_notes": maintenance_notes,
                "status": "AVAILABLE",
                "is_active": 1,
            },
        )
        logger.info("Room %s created for organization %s", room["id"], context.tenant_id)
        return room

    def get_room(self, context: TenantContext, room_id: int) -> dict:
        return verify_data_ownership(context, "rooms", room_id)

    def list_rooms(self, context: TenantContext, *, include_inactive: bool = False) -> list[dict]:
        filters = None if include_inactive else {"is_active": 1}
        return query_records(context, "rooms", filters, order_by="room_name")

    def update_room(self, context: TenantContext, room_id: int, **fields: Any) -> dict:
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "room_name":
                if not value or not str(value).strip():
                    raise ValidationError("Room name is required")
                values[key] = str(value).strip()
            elif key == "room_type":
                values[key] = _choice(value, ROOM_TYPES, "room type")
            elif key in ("hourly_rate", "daily_rate"):
                values[key] = _money(value, key)
            elif key == "status":
                values[key] = _choice(value, ROOM_STATUSES, "room status")
            elif key == "maintenance_notes":
                values[key] = value
            elif key == "is_active":
                values[key] = int(bool(value))
            else:
                raise ValidationError(f"Unknown room field: {key}")
        values["updated_at"] = to_db_timestamp(_now())
        return update_record(context, "rooms", room_id, values)

    def deactivate_room(self, context: TenantContext, room_id: int) -> dict:
        return self.update_room(context, room_id, is_active=False)

    def reactivate_room(self, context: TenantContext, room_id: int) -> dict:
        room = self.get_room(context, room_id)
        if not room["is_active"]:
            self._ensure_room_capacity(context)
        return self.update_room(context, room_id, is_active=True)

    def set_room_status(
        self,
        context: TenantContext,
        room_id: int,
        status: str,
        maintenance_notes: str | None = None,
    ) -> dict:
        fields: dict[str, Any] = {"status": status}
        if maintenance_notes is not None:
            fields["maintenance_notes"] = maintenance_notes
        return self.update_room(context, room_id, **fields)

    def available_rooms(
        self,
        context: TenantContext,
        *,
        check_in: str | dt.datetime,
        check_out: str | dt.datetime,
    ) -> list[dict]:
        start = _parse_timestamp(check_in, "check-in date")
        end = _parse_timestamp(check_out, "check-out date")
        if end <= start:
            raise ValidationError("Check-out date must be after check-in date")
        return [
            room
            for room in self.list_rooms(context)
            if room["status"] not in UNBOOKABLE_ROOM_STATUSES
            and is_room_available(context, room["id"], start, end)
        ]

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------
    def create_customer(
        self,
        context: TenantContext,
        *,
        name: str,
        phone_number: str,
        email: str | None = None,
        notes: str | None = None,
    ) -> dict:
        name = (name or "").strip()
        phone_number = (phone_number or "").strip()
        if not name:
            raise ValidationError("Customer name is required")
        if not phone_number:
            raise ValidationError("Phone number is required")
        return create_record(
            context,
            "customers",
            {
                "name": name,
                "phone_number": phone_number,
                "email": email.strip().lower() if email else None,
                "notes": notes,
                "visit_count": 0,
            },
        )

    def get_customer(self, context: TenantContext, customer_id: int) -> dict:
        return verify_data_ownership(context, "customers", customer_id)

    def list_customers(self, context: TenantContext, *, search: str | None = None) -> list[dict]:
        if not search:
            return query_records(context, "customers", order_by="name")
        pattern = f"%{search.strip()}%"
        return self.conn.execute(
            """
            SELECT * FROM customers
            WHERE organization_id = ?
              AND (name LIKE ? OR phone_number LIKE ? OR email LIKE ?)
            ORDER BY name
            """,
            (context.tenant_id, pattern, pattern, pattern),
        ).fetchall()

    def update_customer(self, context: TenantContext, customer_id: int, **fields: Any) -> dict:
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key in ("name", "phone_number"):
                if not value or not str(value).strip():
                    raise ValidationError(f"{key.replace('_', ' ').capitalize()} is required")
                values[key] = str(value).strip()
            elif key == "email":
                values[key] = str(value).strip().lower() if value else None
            elif key == "notes":
                values[key] = value
            elif key == "visit_count":
                count = _whole_number(value, "visit count")
                if count < 0:
                    raise ValidationError("Visit count cannot be negative")
                values[key] = count
            else:
                raise ValidationError(f"Unknown customer field: {key}")
        values["updated_at"] = to_db_timestamp(_now())
        return update_record(context, "customers", customer_id, values)

    def delete_customer(self, context: TenantContext, customer_id: int) -> None:
        self.get_customer(context, customer_id)
        if query_records(context, "bookings", {"customer_id": customer_id}):
            raise ValidationError("Customer has bookings and cannot be deleted")
        delete_record(context, "customers", customer_id)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    def _bookable_room(self, context: TenantContext, room_id: int) -> dict:
        room = self.get_room(context, room_id)
        if not room["is_active"]:
            raise ValidationError("Room is not active")
        if room["status"] in UNBOOKABLE_ROOM_STATUSES:
            raise ValidationError(f"Room is under {room['status'].lower()}")
        return room

    def _price_for(self, context: TenantContext, room: dict, mode: BillingMode, units: int) -> dict:
        settings = self.get_settings(context)
        rate = rate_for_mode(mode, room["hourly_rate"], room["daily_rate"])
        breakdown = compute_price(
            units, rate, settings["tax_percentage"], settings["service_charge_percentage"]
        )
        return {"room_rate": float(rate), **breakdown.as_dict()}

    def quote_booking(
        self,
        context: TenantContext,
        *,
        room_id: int,
        check_in: str | dt.datetime,
        check_out: str | dt.datetime,
        duration_type: str,
    ) -> dict:
        start = _parse_timestamp(check_in, "check-in date")
        end = _parse_timestamp(check_out, "check-out date")
        if end <= start:
            raise ValidationError("Check-out date must be after check-in date")
        mode = BillingMode(_choice(duration_type, tuple(BillingMode.__members__), "duration type"))
        room = self.get_room(context, room_id)
        units = compute_duration(start, end, mode)
        quote = self._price_for(context, room, mode, units)
        quote.update(
            duration_type=mode.value,
            duration_value=units,
            available=is_room_available(context, room_id, start, end),
        )
        return quote

    def create_booking(
        self,
        context: TenantContext,
        *,
        room_id: int,
        customer_id: int,
        check_in: str | dt.datetime,
        check_out: str | dt.datetime,
        duration_type: str,
        duration_value: int | None = None,
        advance_paid: float = 0.0,
        payment_method: str | None = None,
        booking_source: str = "WALKIN",
        notes: str | None = None,
        now: dt.datetime | None = None,
    ) -> dict:
        start = _parse_timestamp(check_in, "check-in date")
        end = _parse_timestamp(check_out, "check-out date")
        mode = BillingMode(_choice(duration_type, tuple(BillingMode.__members__), "duration type"))
        if duration_value is None:
            duration_value = compute_duration(start, end, mode)
        else:
            duration_value = _whole_number(duration_value, "duration value")
        result = validate_booking(start, end, duration_value, mode, now=now)
        if not result.valid:
            raise ValidationError(result.message)

        room = self._bookable_room(context, room_id)
        self.get_customer(context, customer_id)
        price = self._price_for(context, room, mode, duration_value)
        advance = _money(advance_paid, "advance_paid")
        if advance > price["total_price"]:
            raise ValidationError("Advance payment cannot exceed the total price")
        if payment_method is not None:
            payment_method = _choice(payment_method, PAYMENT_METHODS, "payment method")
        booking_source = _choice(booking_source, BOOKING_SOURCES, "booking source")
        balance = float(round_money(to_decimal(price["total_price"]) - to_decimal(advance)))
        timestamp = to_db_timestamp(_now())

        # The availability check and the insert share one write transaction.
        with self.store.transaction():
            if not is_room_available(context, room_id, start, end):
                raise ValidationError("Room is not available for the selected dates")
            booking = create_record(
                context,
                "bookings",
                {
                    "room_id": room_id,
                    "customer_id": customer_id,
                    "check_in_date": to_db_timestamp(start),
                    "check_out_date": to_db_timestamp(end),
                    "duration_type": mode.value,
                    "duration_value": duration_value,
                    "room_rate": price["room_rate"],
                    "base_price": price["base_price"],
                    "tax_amount": price["tax_amount"],
                    "service_charge": price["service_charge"],
                    "subtotal": price["total_price"],
                    "advance_paid": advance,
                    "balance": balance,
                    "payment_status": payment_status_for(price["total_price"], advance).value,
                    "payment_method": payment_method,
                    "booking_source": booking_source,
                    "notes": notes,
                    "status": "ACTIVE",
                    "created_at": timestamp,
                    "updated_at": timestamp,
                },
            )
            if advance > 0:
                create_record(
                    context,
                    "payments",
                    {
                        "booking_id": booking["id"],
                        "amount": advance,
                        "payment_date": timestamp,
                        "payment_method": payment_method or "CASH",
                        "notes": "Advance payment",
                    },
                )
            self.conn.execute(
                "UPDATE customers SET visit_count = visit_count + 1 WHERE id = ?",
                (customer_id,),
            )
        logger.info(
            "Booking %s created for room %s (%s %s, total %s)",
            booking["id"],
            room_id,
            duration_value,
            mode.value.lower(),
            price["total_price"],
        )
        return self.get_booking(context, booking["id"])

    def _active_booking(self, context: TenantContext, booking_id: int) -> dict:
        booking = verify_data_ownership(context, "bookings", booking_id)
        if booking["status"] != "ACTIVE":
            raise ValidationError(f"Booking is already {booking['status'].lower()}")
        return booking

    def update_booking(
        self,
        context: TenantContext,
        booking_id: int,
        *,
        room_id: int | None = None,
        check_in: str | dt.datetime | None = None,
        check_out: str | dt.datetime | None = None,
        duration_type: str | None = None,
        duration_value: int | None = None,
        payment_method: str | None = None,
        booking_source: str | None = None,
        notes: str | None = None,
        now: dt.datetime | None = None,
    ) -> dict:
        """Edit an active booking, re-pricing it when the stay changes.

        A check-in that is left unchanged is not rejected for being in the
        past, so a stay in progress can still be extended.
        """

        booking = self._active_booking(context, booking_id)
        values: dict[str, Any] = {}
        if payment_method is not None:
            values["payment_method"] = _choice(payment_method, PAYMENT_METHODS, "payment method")
        if booking_source is not None:
            values["booking_source"] = _choice(booking_source, BOOKING_SOURCES, "booking source")
        if notes is not None:
            values["notes"] = notes

        reschedule = any(
            value is not None
            for value in (room_id, check_in, check_out, duration_type, duration_value)
        )
        if not reschedule:
            values["updated_at"] = to_db_timestamp(_now())
            update_record(context, "bookings", booking_id, values)
            return self.get_booking(context, booking_id)

        new_room_id = room_id if room_id is not None else booking["room_id"]
        start = (
            _parse_timestamp(check_in, "check-in date")
            if check_in is not None
            else from_db_timestamp(booking["check_in_date"])
        )
        end = (
            _parse_timestamp(check_out, "check-out date")
            if check_out is not None
            else from_db_timestamp(booking["check_out_date"])
        )
        mode = BillingMode(
            _choice(duration_type, tuple(BillingMode.__members__), "duration type")
            if duration_type is not None
            else booking["duration_type"]
        )
        if duration_value is None:
            duration_value = compute_duration(start, end, mode)
        else:
            duration_value = _whole_number(duration_value, "duration value")
        reference = as_utc(now) if now is not None else _now()
        if check_in is None:
            reference = min(reference, start)
        result = validate_booking(start, end, duration_value, mode, now=reference)
        if not result.valid:
            raise ValidationError(result.message)

        room = self._bookable_room(context, new_room_id)
        price = self._price_for(context, room, mode, duration_value)
        values.update(
            room_id=new_room_id,
            check_in_date=to_db_timestamp(start),
            check_out_date=to_db_timestamp(end),
            duration_type=mode.value,
            duration_value=duration_value,
            room_rate=price["room_rate"],
            base_price=price["base_price"],
            tax_amount=price["tax_amount"],
            service_charge=price["service_charge"],
            subtotal=price["total_price"],
            updated_at=to_db_timestamp(_now()),
        )
        with self.store.transaction():
            paid = self._active_booking(context, booking_id)["advance_paid"]
            if paid > price["total_price"]:
                raise ValidationError("Amount already paid exceeds the new total price")
            values["balance"] = float(
                round_money(to_decimal(price["total_price"]) - to_decimal(paid))
            )
            values["payment_status"] = payment_status_for(price["total_price"], paid).value
            if not is_room_available(
                context, new_room_id, start, end, exclude_booking_id=booking_id
            ):
                raise ValidationError("Room is not available for the selected dates")
            update_record(context, "bookings", booking_id, values)
        logger.info("Booking %s rescheduled", booking_id)
        return self.get_booking(context, booking_id)

    def complete_booking(self, context: TenantContext, booking_id: int) -> dict:
        with self.store.transaction():
            self._active_booking(context, booking_id)
            update_record(
                context,
                "bookings",
                booking_id,
                {"status": "COMPLETED", "updated_at": to_db_timestamp(_now())},
            )
        logger.info("Booking %s completed", booking_id)
        return self.get_booking(context, booking_id)

    def cancel_booking(self, context: TenantContext, booking_id: int) -> dict:
        with self.store.transaction():
            self._active_booking(context, booking_id)
            update_record(
                context,
                "bookings",
                booking_id,
                {"status": "CANCELLED", "updated_at": to_db_timestamp(_now())},
            )
        logger.info("Booking %s cancelled", booking_id)
        return self.get_booking(context, booking_id)

    def get_booking(self, context: TenantContext, booking_id: int) -> dict:
        row = verify_data_ownership(context, "bookings", booking_id)
        row["room"] = context.data_store.get("rooms", row["room_id"])
        row["customer"] = context.data_store.get("customers", row["customer_id"])
        row["payments"] = self.list_payments(context, booking_id)
        return row

    def _with_relations(self, rows: list[dict]) -> list[dict]:
        for row in rows:
            row["room"] = self.store.get("rooms", row["room_id"])
            row["customer"] = self.store.get("customers", row["customer_id"])
        return rows

    def list_bookings(
        self,
        context: TenantContext,
        *,
        status: str | None = None,
        payment_status: str | None = None,
    ) -> list[dict]:
        rows = query_records(
            context,
            "bookings",
            {"status": status, "payment_status": payment_status},
            order_by="check_in_date DESC",
        )
        return self._with_relations(rows)

    def _active_between(
        self,
        context: TenantContext,
        column: str,
        start: dt.datetime,
        end: dt.datetime,
        *,
        inclusive_end: bool = False,
    ) -> list[dict]:
        upper = "<=" if inclusive_end else "<"
        rows = self.conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE organization_id = ?
              AND status = 'ACTIVE'
              AND {column} >= ? AND {column} {upper} ?
            ORDER BY {column}
            """,
            (context.tenant_id, to_db_timestamp(start), to_db_timestamp(end)),
        ).fetchall()
        return self._with_relations(rows)

    def todays_bookings(self, context: TenantContext, *, now: dt.datetime | None = None) -> list[dict]:
        start, end = self._day_window(context, as_utc(now) if now else _now())
        return self._active_between(context, "check_in_date", start, end)

    def upcoming_check_ins(
        self, context: TenantContext, *, hours_ahead: int = 4, now: dt.datetime | None = None
    ) -> list[dict]:
        start = as_utc(now) if now else _now()
        return self._active_between(
            context,
            "check_in_date",
            start,
            start + dt.timedelta(hours=hours_ahead),
            inclusive_end=True,
        )

    def upcoming_check_outs(
        self, context: TenantContext, *, hours_ahead: int = 4, now: dt.datetime | None = None
    ) -> list[dict]:
        start = as_utc(now) if now else _now()
        return self._active_between(
            context,
            "check_out_date",
            start,
            start + dt.timedelta(hours=hours_ahead),
            inclusive_end=True,
        )

    def revenue_for_range(
        self,
        context: TenantContext,
        *,
        start: str | dt.datetime,
        end: str | dt.datetime,
    ) -> float:
        placeholders = ",".join("?" for _ in REVENUE_STATUSES)
        row = self.conn.execute(
            f"""
            SELECT COALESCE(SUM(subtotal), 0) AS revenue
            FROM bookings
            WHERE organization_id = ?
              AND status IN ({placeholders})
              AND check_in_date >= ? AND check_in_date < ?
            """,
            (
                context.tenant_id,
                *REVENUE_STATUSES,
                to_db_timestamp(_parse_timestamp(start, "start")),
                to_db_timestamp(_parse_timestamp(end, "end")),
            ),
        ).fetchone()
        return float(round_money(row["revenue"]))

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def record_payment(
        self,
        context: TenantContext,
        booking_id: int,
        *,
        amount: float,
        payment_method: str,
        notes: str | None = None,
        payment_date: str | dt.datetime | None = None,
    ) -> dict:
        amount = _money(amount, "amount", allow_zero=False)
        payment_method = _choice(payment_method, PAYMENT_METHODS, "payment method")
        paid_on = _parse_timestamp(payment_date, "payment date") if payment_date else _now()

        # The balance is read and written under the same write lock.
        with self.store.transaction():
            booking = verify_data_ownership(context, "bookings", booking_id)
            if booking["status"] == "CANCELLED":
                raise ValidationError("Cannot record a payment against a cancelled booking")
            if amount > booking["balance"]:
                raise ValidationError("Payment exceeds the outstanding balance")
            paid = round_money(to_decimal(booking["advance_paid"]) + to_decimal(amount))
            balance = round_money(to_decimal(booking["subtotal"]) - paid)
            create_record(
                context,
                "payments",
                {
                    "booking_id": booking_id,
                    "amount": amount,
                    "payment_date": to_db_timestamp(paid_on),
                    "payment_method": payment_method,
                    "notes": notes,
                },
            )
            update_record(
                context,
                "bookings",
                booking_id,
                {
                    "advance_paid": float(paid),
                    "balance": float(balance),
                    "payment_status": payment_status_for(booking["subtotal"], paid).value,
                    "payment_method": payment_method,
                    "updated_at": to_db_timestamp(_now()),
                },
            )
        logger.info("Payment of %s recorded for booking %s", amount, booking_id)
        return self.get_booking(context, booking_id)

    def list_payments(self, context: TenantContext, booking_id: int) -> list[dict]:
        return query_records(
            context, "payments", {"booking_id": booking_id}, order_by="payment_date"
        )

    def billing_summary(self, context: TenantContext) -> dict:
        rows = self.conn.execute(
            """
            SELECT payment_status,
                   COUNT(*) AS count,
                   COALESCE(SUM(subtotal), 0) AS billed,
                   COALESCE(SUM(advance_paid), 0) AS collected,
                   COALESCE(SUM(balance), 0) AS outstanding
            FROM bookings
            WHERE organization_id = ? AND status != 'CANCELLED'
            GROUP BY payment_status
            """,
            (context.tenant_id,),
        ).fetchall()
        by_status = {
            status: {"count": 0, "billed": 0.0, "collected": 0.0, "outstanding": 0.0}
            for status in ("PENDING", "PARTIAL", "PAID")
        }
        for row in rows:
            by_status[row["payment_status"]] = {
                "count": row["count"],
                "billed": float(round_money(row["billed"])),
                "collected": float(round_money(row["collected"])),
                "outstanding": float(round_money(row["outstanding"])),
            }
        return {
            "by_status": by_status,
            "total_collected": float(
                round_money(sum(to_decimal(v["collected"]) for v in by_status.values()))
            ),
            "total_outstanding": float(
                round_money(sum(to_decimal(v["outstanding"]) for v in by_status.values()))
            ),
        }

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------
    def create_expense(
        self,
        context: TenantContext,
        *,
        category: str,
        amount: float,
        expense_date: str | dt.date,
        description: str | None = None,
    ) -> dict:
        timestamp = to_db_timestamp(_now())
        return create_record(
            context,
            "expenses",
            {
                "category": _choice(category, EXPENSE_CATEGORIES, "expense category"),
                "amount": _money(amount, "amount", allow_zero=False),
                "expense_date": _parse_date(expense_date, "expense date").isoformat(),
                "description": description,
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        )

    def get_expense(self, context: TenantContext, expense_id: int) -> dict:
        return verify_data_ownership(context, "expenses", expense_id)

    def list_expenses(
        self,
        context: TenantContext,
        *,
        category: str | None = None,
        start: str | dt.date | None = None,
        end: str | dt.date | None = None,
    ) -> list[dict]:
        conditions = ["organization_id = ?"]
        params: list[Any] = [context.tenant_id]
        if category:
            conditions.append("category = ?")
            params.append(_choice(category, EXPENSE_CATEGORIES, "expense category"))
        if start:
            conditions.append("expense_date >= ?")
            params.append(_parse_date(start, "start date").isoformat())
        if end:
            conditions.append("expense_date < ?")
            params.append(_parse_date(end, "end date").isoformat())
        return self.conn.execute(
            "SELECT * FROM expenses WHERE "
            + " AND ".join(conditions)
            + " ORDER BY expense_date DESC, id DESC",
            params,
        ).fetchall()

    def update_expense(self, context: TenantContext, expense_id: int, **fields: Any) -> dict:
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "category":
                values[key] = _choice(value, EXPENSE_CATEGORIES, "expense category")
            elif key == "amount":
                values[key] = _money(value, "amount", allow_zero=False)
            elif key == "expense_date":
                values[key] = _parse_date(value, "expense date").isoformat()
            elif key == "description":
                values[key] = value
            else:
                raise ValidationError(f"Unknown expense field: {key}")
        values["updated_at"] = to_db_timestamp(_now())
        return update_record(context, "expenses", expense_id, values)

    def delete_expense(self, context: TenantContext, expense_id: int) -> None:
        delete_record(context, "expenses", expense_id)

    def total_expenses(
        self, context: TenantContext, *, start: str | dt.date, end: str | dt.date
    ) -> float:
        expenses = self.list_expenses(context, start=start, end=end)
        return float(round_money(sum(to_decimal(row["amount"]) for row in expenses)))

    def expense_summary(
        self, context: TenantContext, *, start: str | dt.date, end: str | dt.date
    ) -> dict[str, float]:
        summary: dict[str, Decimal] = defaultdict(Decimal)
        for row in self.list_expenses(context, start=start, end=end):
            summary[row["category"]] += to_decimal(row["amount"])
        return {category: float(round_money(total)) for category, total in summary.items()}

    # ------------------------------------------------------------------
    # Dashboard & reporting
    # ------------------------------------------------------------------
    def dashboard(self, context: TenantContext, *, now: dt.datetime | None = None) -> dict:
        """Return a snapshot summary for the dashboard view."""

        now = as_utc(now) if now else _now()
        settings = self.get_settings(context)
        rooms = self.list_rooms(context)
        stamp = to_db_timestamp(now)
        occupied = self.conn.execute(
            """
            SELECT COUNT(DISTINCT bookings.room_id) AS total
            FROM bookings
            JOIN rooms ON rooms.id = bookings.room_id
            WHERE bookings.organization_id = ?
              AND bookings.status = 'ACTIVE'
              AND rooms.is_active = 1
              AND bookings.check_in_date <= ? AND bookings.check_out_date > ?
            """,
            (context.tenant_id, stamp, stamp),
        ).fetchone()["total"]

        zone = self._local_zone(settings)
        day_start, day_end = self._day_window(context, now)
        month_start = now.astimezone(zone).date().replace(day=1)
        next_month = (month_start + dt.timedelta(days=32)).replace(day=1)
        month_revenue = self.revenue_for_range(
            context,
            start=dt.datetime.combine(month_start, dt.time(0), tzinfo=zone),
            end=dt.datetime.combine(next_month, dt.time(0), tzinfo=zone),
        )
        month_expenses = self.total_expenses(context, start=month_start, end=next_month)
        return {
            "business_name": settings["business_name"],
            "currency": settings["currency"],
            "total_rooms": len(rooms),
            "occupied_rooms": occupied,
            "available_rooms": len(rooms) - occupied,
            "today_revenue": self.revenue_for_range(context, start=day_start, end=day_end),
            "monthly_revenue": month_revenue,
            "monthly_expenses": month_expenses,
            "monthly_profit": float(round_money(to_decimal(month_revenue) - to_decimal(month_expenses))),
            "monthly_revenue_display": format_currency(month_revenue, settings["currency"]),
            "today_bookings": self.todays_bookings(context, now=now),
            "upcoming_check_ins": self.upcoming_check_ins(context, now=now),
            "upcoming_check_outs": self.upcoming_check_outs(context, now=now),
        }

    def monthly_snapshot(self, context: TenantContext, *, year: int, month: int) -> dict:
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12")
        if not dt.MINYEAR <= year < dt.MAXYEAR:
            raise ValidationError(f"Invalid year: {year}")
        zone = self._local_zone(self.get_settings(context))
        first = dt.date(year, month, 1)
        days_in_month = calendar.monthrange(year, month)[1]
        following = first + dt.timedelta(days=days_in_month)
        start = as_utc(dt.datetime.combine(first, dt.time(0), tzinfo=zone))
        end = as_utc(dt.datetime.combine(following, dt.time(0), tzinfo=zone))

        revenue = to_decimal(self.revenue_for_range(context, start=start, end=end))
        expenses = to_decimal(self.total_expenses(context, start=first, end=following))
        net_profit = revenue - expenses
        margin = round_money(net_profit / revenue * 100) if revenue else Decimal("0.00")

        placeholders = ",".join("?" for _ in REVENUE_STATUSES)
        bookings = self.conn.execute(
            f"""
            SELECT check_in_date, check_out_date FROM bookings
            WHERE organization_id = ?
              AND status IN ({placeholders})
              AND check_in_date < ? AND check_out_date > ?
            """,
            (context.tenant_id, *REVENUE_STATUSES, to_db_timestamp(end), to_db_timestamp(start)),
        ).fetchall()
        booked_seconds = Decimal(0)
        for row in bookings:
            overlap_start = max(from_db_timestamp(row["check_in_date"]), start)
            overlap_end = min(from_db_timestamp(row["check_out_date"]), end)
            booked_seconds += Decimal(str((overlap_end - overlap_start).total_seconds()))
        room_days = len(self.list_rooms(context)) * days_in_month
        started = self.conn.execute(
            f"""
            SELECT COUNT(*) AS total FROM bookings
            WHERE organization_id = ?
              AND status IN ({placeholders})
              AND check_in_date >= ? AND check_in_date < ?
            """,
            (context.tenant_id, *REVENUE_STATUSES, to_db_timestamp(start), to_db_timestamp(end)),
        ).fetchone()["total"]
        return {
            "year": year,
            "month": month,
            "total_revenue": float(round_money(revenue)),
            "total_expenses": float(round_money(expenses)),
            "net_profit": float(round_money(net_profit)),
            "profit_margin": float(margin),
            "total_bookings": started,
            "occupancy_rate": float(occupancy_rate(booked_seconds / 86400, room_days)),
        }

    def close(self) -> None:
        self.store.close()
