import unittest

from guesthouse.webapp import create_app


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.app = create_app(":memory:", {"TESTING": True})
        self.client = self.app.test_client()
        self.headers = self._sign_up("owner@example.com", "Harbour Rooms")
        room = self.client.post(
            "/rooms",
            json={"room_name": "1", "room_type": "AC", "hourly_rate": 500, "daily_rate": 1000},
            headers=self.headers,
        )
        self.assertEqual(room.status_code, 201)
        self.room = room.get_json()
        customer = self.client.post(
            "/customers",
            json={"name": "Dilani", "phone_number": "0761111111"},
            headers=self.headers,
        )
        self.assertEqual(customer.status_code, 201)
        self.customer = customer.get_json()
        self.client.put(
            "/settings",
            json={"tax_percentage": 10, "service_charge_percentage": 5},
            headers=self.headers,
        )

    def tearDown(self) -> None:
        self.app.extensions["hotel_system"].close()

    def _sign_up(self, email: str, organization: str) -> dict:
        response = self.client.post(
            "/auth/register", json={"email": email, "password": "Password!23", "name": "Test"}
        )
        self.assertEqual(response.status_code, 201)
        self.assertNotIn("password_hash", response.get_json())
        login = self.client.post(
            "/auth/login", json={"email": email, "password": "Password!23"}
        ).get_json()
        headers = {"X-API-Key": login["api_key"]}
        created = self.client.post(
            "/organizations", json={"name": organization}, headers=headers
        )
        self.assertEqual(created.status_code, 201)
        return headers

    def _booking_payload(self, **overrides) -> dict:
        payload = {
            "room_id": self.room["id"],
            "customer_id": self.customer["id"],
            "check_in": "2031-03-10T14:00:00Z",
            "check_out": "2031-03-13T10:00:00Z",
            "duration_type": "DAYS",
        }
        payload.update(overrides)
        return payload

    def test_requests_require_an_api_key(self) -> None:
        self.assertEqual(self.client.get("/rooms").status_code, 401)
        response = self.client.get("/rooms", headers={"X-API-Key": "nope"})
        self.assertEqual(response.status_code, 401)

    def test_invalid_login(self) -> None:
        response = self.client.post(
            "/auth/login", json={"email": "owner@example.com", "password": "bad-password"}
        )
        self.assertEqual(response.status_code, 401)

    def test_quote_and_booking(self) -> None:
        quote = self.client.post(
            "/bookings/quote", json=self._booking_payload(), headers=self.headers
        ).get_json()
        self.assertEqual(quote["duration_value"], 3)
        self.assertEqual(quote["total_price"], 3450)
        self.assertTrue(quote["available"])

        created = self.client.post(
            "/bookings",
            json=self._booking_payload(advance_paid=1000, payment_method="CASH"),
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201)
        booking = created.get_json()
        self.assertEqual(booking["payment_status"], "PARTIAL")
        self.assertEqual(booking["balance"], 2450)

        conflict = self.client.post(
            "/bookings",
            json=self._booking_payload(check_in="2031-03-11T10:00:00Z"),
            headers=self.headers,
        )
        self.assertEqual(conflict.status_code, 400)
        self.assertIn("not available", conflict.get_json()["error"])

        updated = self.client.put(
            f"/bookings/{booking['id']}",
            json={"notes": "Late arrival", "organization_id": 99},
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.get_json()["notes"], "Late arrival")

        paid = self.client.post(
            f"/bookings/{booking['id']}/payments",
            json={"amount": 2450, "payment_method": "BANK"},
            headers=self.headers,
        )
        self.assertEqual(paid.status_code, 201)
        self.assertEqual(paid.get_json()["payment_status"], "PAID")
        payments = self.client.get(f"/bookings/{booking['id']}/payments", headers=self.headers)
        self.assertEqual(len(payments.get_json()), 2)

        billing = self.client.get("/billing", headers=self.headers).get_json()
        self.assertEqual(billing["total_collected"], 3450)

        listed = self.client.get("/bookings?status=ACTIVE", headers=self.headers).get_json()
        self.assertEqual([row["id"] for row in listed], [booking["id"]])

    def test_validation_errors_return_400(self) -> None:
        response = self.client.post(
            "/bookings",
            json=self._booking_payload(
                check_in="2020-01-01T00:00:00Z", check_out="2020-01-02T00:00:00Z"
            ),
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Check-in date must be in the future")

    def test_other_organizations_are_forbidden(self) -> None:
        rival = self._sign_up("rival@example.com", "Rival Rooms")
        response = self.client.get(f"/rooms/{self.room['id']}", headers=rival)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get("/rooms", headers=rival).get_json(), [])

        organization_id = self.room["organization_id"]
        spoofed = self.client.get(
            "/rooms", headers={**rival, "X-Organization-Id": str(organization_id)}
        )
        self.assertEqual(spoofed.status_code, 403)
        switched = self.client.post(f"/organizations/{organization_id}/switch", headers=rival)
        self.assertEqual(switched.status_code, 403)

    def test_organizations_listing(self) -> None:
        body = self.client.get("/organizations", headers=self.headers).get_json()
        self.assertEqual([org["name"] for org in body["organizations"]], ["Harbour Rooms"])
        self.assertEqual(body["current_organization_id"], self.room["organization_id"])

    def test_malformed_numbers_return_400(self) -> None:
        created = self.client.post(
            "/bookings", json=self._booking_payload(duration_value="3"), headers=self.headers
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.get_json()["duration_value"], 3)

        bad_duration = self.client.post(
            "/bookings",
            json=self._booking_payload(
                check_in="2031-06-01T10:00:00Z",
                check_out="2031-06-02T10:00:00Z",
                duration_value="one",
            ),
            headers=self.headers,
        )
        self.assertEqual(bad_duration.status_code, 400)

        bad_tax = self.client.put("/settings", json={"tax_percentage": "NaN"}, headers=self.headers)
        self.assertEqual(bad_tax.status_code, 400)

        bad_visits = self.client.put(
            f"/customers/{self.customer['id']}", json={"visit_count": "x"}, headers=self.headers
        )
        self.assertEqual(bad_visits.status_code, 400)

        bad_payment = self.client.post(
            f"/bookings/{created.get_json()['id']}/payments",
            json={"amount": "Infinity", "payment_method": "CASH"},
            headers=self.headers,
        )
        self.assertEqual(bad_payment.status_code, 400)

    def test_expenses_and_dashboard(self) -> None:
        created = self.client.post(
            "/expenses",
            json={"category": "WATER", "amount": 120, "expense_date": "2031-03-02"},
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201)
        summary = self.client.get(
            "/expenses/summary?start=2031-03-01&end=2031-04-01", headers=self.headers
        ).get_json()
        self.assertEqual(summary, {"by_category": {"WATER": 120.0}, "total": 120.0})
        deleted = self.client.delete(
            f"/expenses/{created.get_json()['id']}", headers=self.headers
        )
        self.assertEqual(deleted.status_code, 204)

        dashboard = self.client.get("/dashboard", headers=self.headers).get_json()
        self.assertEqual(dashboard["business_name"], "Harbour Rooms")
        self.assertEqual(dashboard["total_rooms"], 1)

        report = self.client.get("/reports/monthly?year=2031&month=3", headers=self.headers)
        self.assertEqual(report.status_code, 200)
        self.assertEqual(report.get_json()["total_expenses"], 0)


if __name__ == "__main__":
    unittest.main()
