"""Flask application exposing the guesthouse system as a JSON API."""

from __future__ import annotations

import datetime as dt
from typing import Any, Mapping

from flask import Flask, g, jsonify, request

from guesthouse.hotel.errors import AuthorizationError, ValidationError
from guesthouse.hotel.system import HotelSystem

PUBLIC_ENDPOINTS = {"register", "login", "static"}
BOOKING_EDITABLE_FIELDS = (
    "room_id",
    "check_in",
    "check_out",
    "duration_type",
    "duration_value",
    "payment_method",
    "booking_source",
    "notes",
)


def _public_user(user: dict) -> dict:
    return {key: value for key, value in user.items() if key not in ("password_hash", "api_key")}


def create_app(database_path: str | None = None, config: Mapping[str, Any] | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY="guesthouse-secret",
        DATABASE="guesthouse_app.db",
    )
    app.config.from_prefixed_env("GUESTHOUSE")
    if config:
        app.config.update(config)
    if database_path is not None:
        app.config["DATABASE"] = database_path

    system = HotelSystem(app.config["DATABASE"])
    app.extensions["hotel_system"] = system

    @app.teardown_appcontext
    def release_connection(exc: BaseException | None) -> None:
        system.store.release()

    def payload() -> dict:
        return request.get_json(silent=True) or {}

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Any:
        return jsonify(error=str(exc)), 400

    @app.errorhandler(AuthorizationError)
    def handle_authorization_error(exc: AuthorizationError) -> Any:
        status = 403 if "user" in g else 401
        return jsonify(error=str(exc)), status

    @app.before_request
    def load_tenant() -> Any:
        if request.endpoint in PUBLIC_ENDPOINTS or request.endpoint is None:
            return None
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            return jsonify(error="Missing API key"), 401
        g.user = system.user_for_api_key(api_key)
        g.tenant = None
        if request.endpoint in ("organizations", "switch_organization"):
            return None
        requested = request.headers.get("X-Organization-Id", type=int)
        g.tenant = system.context_for(g.user["id"], requested)
        return None

    # ------------------------------------------------------------------
    # Auth & organizations
    # ------------------------------------------------------------------
    @app.post("/auth/register")
    def register() -> Any:
        data = payload()
        user = system.register_user(
            email=data.get("email", ""),
            password=data.get("password", ""),
            name=data.get("name"),
        )
        app.logger.info("Registered user %s", user["id"])
        return jsonify(_public_user(user)), 201

    @app.post("/auth/login")
    def login() -> Any:
        data = payload()
        return jsonify(system.login(email=data.get("email", ""), password=data.get("password", "")))

    @app.route("/organizations", methods=["GET", "POST"])
    def organizations() -> Any:
        if request.method == "POST":
            data = payload()
            organization = system.create_organization(
                user_id=g.user["id"],
                name=data.get("name", ""),
                business_type=data.get("business_type"),
                subscription_plan=data.get("subscription_plan", "BASIC"),
            )
            return jsonify(organization), 201
        current = system.current_organization(g.user["id"])
        return jsonify(
            organizations=system.list_user_organizations(g.user["id"]),
            current_organization_id=current["id"] if current else None,
        )

    @app.post("/organizations/<int:organization_id>/switch")
    def switch_organization(organization_id: int) -> Any:
        return jsonify(
            system.switch_organization(user_id=g.user["id"], organization_id=organization_id)
        )

    @app.post("/organizations/members")
    def add_member() -> Any:
        data = payload()
        return jsonify(
            system.add_member(g.tenant, user_id=data.get("user_id"), role=data.get("role", "STAFF"))
        ), 201

    @app.route("/settings", methods=["GET", "PUT"])
    def settings() -> Any:
        if request.method == "PUT":
            return jsonify(system.update_settings(g.tenant, **payload()))
        return jsonify(system.get_settings(g.tenant))

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    @app.route("/rooms", methods=["GET", "POST"])
    def rooms() -> Any:
        if request.method == "POST":
            data = payload()
            room = system.create_room(
                g.tenant,
                room_name=data.get("room_name", ""),
                room_type=data.get("room_type", "NON_AC"),
                hourly_rate=data.get("hourly_rate"),
                daily_rate=data.get("daily_rate"),
                maintenance_notes=data.get("maintenance_notes"),
            )
            return jsonify(room), 201
        include_inactive = request.args.get("include_inactive") in ("1", "true")
        return jsonify(system.list_rooms(g.tenant, include_inactive=include_inactive))

    @app.get("/rooms/available")
    def available_rooms() -> Any:
        return jsonify(
            system.available_rooms(
                g.tenant,
                check_in=request.args.get("check_in", ""),
                check_out=request.args.get("check_out", ""),
            )
        )

    @app.route("/rooms/<int:room_id>", methods=["GET", "PUT"])
    def room_detail(room_id: int) -> Any:
        if request.method == "PUT":
            return jsonify(system.update_room(g.tenant, room_id, **payload()))
        return jsonify(system.get_room(g.tenant, room_id))

    @app.post("/rooms/<int:room_id>/deactivate")
    def deactivate_room(room_id: int) -> Any:
        return jsonify(system.deactivate_room(g.tenant, room_id))

    @app.post("/rooms/<int:room_id>/reactivate")
    def reactivate_room(room_id: int) -> Any:
        return jsonify(system.reactivate_room(g.tenant, room_id))

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------
    @app.route("/customers", methods=["GET", "POST"])
    def customers() -> Any:
        if request.method == "POST":
            data = payload()
            customer = system.create_customer(
                g.tenant,
                name=data.get("name", ""),
                phone_number=data.get("phone_number", ""),
                email=data.get("email"),
                notes=data.get("notes"),
            )
            return jsonify(customer), 201
        return jsonify(system.list_customers(g.tenant, search=request.args.get("search")))

    @app.route("/customers/<int:customer_id>", methods=["GET", "PUT", "DELETE"])
    def customer_detail(customer_id: int) -> Any:
        if request.method == "PUT":
            return jsonify(system.update_customer(g.tenant, customer_id, **payload()))
        if request.method == "DELETE":
            system.delete_customer(g.tenant, customer_id)
            return "", 204
        return jsonify(system.get_customer(g.tenant, customer_id))

    # ------------------------------------------------------------------
    # Bookings & billing
    # ------------------------------------------------------------------
    @app.post("/bookings/quote")
    def quote_booking() -> Any:
        data = payload()
        return jsonify(
            system.quote_booking(
                g.tenant,
                room_id=data.get("room_id"),
                check_in=data.get("check_in", ""),
                check_out=data.get("check_out", ""),
                duration_type=data.get("duration_type", "DAYS"),
            )
        )

    @app.route("/bookings", methods=["GET", "POST"])
    def bookings() -> Any:
        if request.method == "POST":
            data = payload()
            booking = system.create_booking(
                g.tenant,
                room_id=data.get("room_id"),
                customer_id=data.get("customer_id"),
                check_in=data.get("check_in", ""),
                check_out=data.get("check_out", ""),
                duration_type=data.get("duration_type", "DAYS"),
                duration_value=data.get("duration_value"),
                advance_paid=data.get("advance_paid", 0),
                payment_method=data.get("payment_method"),
                booking_source=data.get("booking_source", "WALKIN"),
                notes=data.get("notes"),
            )
            return jsonify(booking), 201
        return jsonify(
            system.list_bookings(
                g.tenant,
                status=request.args.get("status"),
                payment_status=request.args.get("payment_status"),
            )
        )

    @app.route("/bookings/<int:booking_id>", methods=["GET", "PUT"])
    def booking_detail(booking_id: int) -> Any:
        if request.method == "PUT":
            fields = {
                key: value for key, value in payload().items() if key in BOOKING_EDITABLE_FIELDS
            }
            return jsonify(system.update_booking(g.tenant, booking_id, **fields))
        return jsonify(system.get_booking(g.tenant, booking_id))

    @app.post("/bookings/<int:booking_id>/complete")
    def complete_booking(booking_id: int) -> Any:
        return jsonify(system.complete_booking(g.tenant, booking_id))

    @app.post("/bookings/<int:booking_id>/cancel")
    def cancel_booking(booking_id: int) -> Any:
        return jsonify(system.cancel_booking(g.tenant, booking_id))

    @app.route("/bookings/<int:booking_id>/payments", methods=["GET", "POST"])
    def booking_payments(booking_id: int) -> Any:
        if request.method == "POST":
            data = payload()
            booking = system.record_payment(
                g.tenant,
                booking_id,
                amount=data.get("amount", 0),
                payment_method=data.get("payment_method", "CASH"),
                notes=data.get("notes"),
            )
            return jsonify(booking), 201
        system.get_booking(g.tenant, booking_id)
        return jsonify(system.list_payments(g.tenant, booking_id))

    @app.get("/billing")
    def billing() -> Any:
        return jsonify(system.billing_summary(g.tenant))

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------
    @app.route("/expenses", methods=["GET", "POST"])
    def expenses() -> Any:
        if request.method == "POST":
            data = payload()
            expense = system.create_expense(
                g.tenant,
                category=data.get("category", ""),
                amount=data.get("amount", 0),
                expense_date=data.get("expense_date") or dt.date.today().isoformat(),
                description=data.get("description"),
            )
            return jsonify(expense), 201
        return jsonify(
            system.list_expenses(
                g.tenant,
                category=request.args.get("category"),
                start=request.args.get("start"),
                end=request.args.get("end"),
            )
        )

    @app.get("/expenses/summary")
    def expense_summary() -> Any:
        start = request.args.get("start", "")
        end = request.args.get("end", "")
        return jsonify(
            by_category=system.expense_summary(g.tenant, start=start, end=end),
            total=system.total_expenses(g.tenant, start=start, end=end),
        )

    @app.route("/expenses/<int:expense_id>", methods=["GET", "PUT", "DELETE"])
    def expense_detail(expense_id: int) -> Any:
        if request.method == "PUT":
            return jsonify(system.update_expense(g.tenant, expense_id, **payload()))
        if request.method == "DELETE":
            system.delete_expense(g.tenant, expense_id)
            return "", 204
        return jsonify(system.get_expense(g.tenant, expense_id))

    # ------------------------------------------------------------------
    # Dashboard & reports
    # ------------------------------------------------------------------
    @app.get("/dashboard")
    def dashboard() -> Any:
        return jsonify(system.dashboard(g.tenant))

    @app.get("/reports/monthly")
    def monthly_report() -> Any:
        today = dt.date.today()
        return jsonify(
            system.monthly_snapshot(
                g.tenant,
                year=request.args.get("year", type=int) or today.year,
                month=request.args.get("month", type=int) or today.month,
            )
        )

    return app


__all__ = ["create_app"]
