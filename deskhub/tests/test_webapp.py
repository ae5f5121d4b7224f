import unittest

from deskhub.webapp import create_app
from deskhub.workspace.clock import FixedClock
from deskhub.workspace.config import Settings


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FixedClock("2026-03-02T08:00:00Z")
        settings = Settings(
            database_path=":memory:",
            public_token_secret="test-secret",
            admin_api_key="admin-key",
        )
        self.app = create_app(settings=settings, clock=self.clock)
        self.app.config["TESTING"] = True
        self.client = self.app.test_client()
        self.headers = {"X-API-Key": "admin-key"}

    def tearDown(self) -> None:
        self.app.extensions["workspace"].close()

    def post(self, path: str, payload: dict):
        return self.client.post(path, json=payload, headers=self.headers)

    def create_booking(self, start: str = "09:00", end: str = "11:00"):
        return self.post(
            "/api/bookings",
            {
                "desk_id": self.desk_id,
                "customer": {"name": "Ari"},
                "start_time": f"2026-03-02T{start}:00Z",
                "end_time": f"2026-03-02T{end}:00Z",
            },
        )

    @property
    def desk_id(self) -> int:
        desks = self.client.get("/api/desks", headers=self.headers).get_json()
        if desks:
            return desks[0]["id"]
        return self.post("/api/desks", {"label": "A1", "hourly_rate": 10}).get_json()["id"]

    def test_health_is_public(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ok")

    def test_admin_routes_need_the_api_key(self) -> None:
        response = self.client.get("/api/desks")
        self.assertEqual(response.status_code, 401)
        self.assertIn("error", response.get_json())
        response = self.client.get("/api/desks", headers={"X-API-Key": "wrong"})
        self.assertEqual(response.status_code, 401)

    def test_desk_creation_and_conflict(self) -> None:
        created = self.post("/api/desks", {"label": "A1", "hourly_rate": 10})
        self.assertEqual(created.status_code, 201)
        duplicate = self.post("/api/desks", {"label": "A1"})
        self.assertEqual(duplicate.status_code, 409)
        missing = self.client.get("/api/desks/999", headers=self.headers)
        self.assertEqual(missing.status_code, 404)

    def test_double_booking_is_409(self) -> None:
        self.assertEqual(self.create_booking().status_code, 201)
        response = self.create_booking("10:00", "12:00")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.get_json()["error"], "Desk is already booked for this time period"
        )

    def test_validation_errors_are_400(self) -> None:
        response = self.create_booking("11:00", "09:00")
        self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/desks", json=["not", "an", "object"], headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_customer_flow_over_http(self) -> None:
        item = self.post(
            "/api/inventory",
            {"sku": "coffee", "name": "Coffee", "category": "drinks", "price": 5, "quantity": 3},
        ).get_json()
        booking = self.create_booking().get_json()
        token = booking["public_url"].split("?t=", 1)[1]
        public_path = f"/api/public/bookings/{booking['id']}"

        self.assertEqual(self.client.get(public_path).status_code, 401)
        self.assertEqual(self.client.get(public_path, query_string={"t": token}).status_code, 200)

        early = self.client.patch(public_path, query_string={"t": token}, json={"action": "check-in"})
        self.assertEqual(early.status_code, 400)
        self.clock.set("2026-03-02T08:50:00Z")
        checked_in = self.client.patch(
            public_path, query_string={"t": token}, json={"action": "check-in"}
        )
        self.assertEqual(checked_in.status_code, 200)
        self.assertEqual(checked_in.get_json()["status"], "checked-in")

        menu = self.client.get("/api/public/inventory").get_json()
        self.assertEqual(menu["items"][0]["name"], "Coffee")

        too_many = self.client.post(
            f"{public_path}/orders",
            query_string={"t": token},
            json={"items": [{"item_id": item["id"], "quantity": 5}]},
        )
        self.assertEqual(too_many.status_code, 400)
        self.assertIn("Insufficient stock", too_many.get_json()["error"])
        ordered = self.client.post(
            f"{public_path}/orders",
            query_string={"t": token},
            json={"items": [{"item_id": item["id"], "quantity": 2}]},
        )
        self.assertEqual(ordered.status_code, 201)

        invoice = self.client.get(
            f"/api/bookings/{booking['id']}/invoice",
            query_string={"discount_percent": 10},
            headers=self.headers,
        ).get_json()
        self.assertEqual(invoice["final_total"], 27)

        done = self.post(f"/api/bookings/{booking['id']}/checkout", {"discount_percent": 10})
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.get_json()["total_amount"], 27)

        again = self.post(f"/api/bookings/{booking['id']}/checkout", {})
        self.assertEqual(again.status_code, 400)

        summary = self.client.get(
            "/api/transactions/summary", query_string={"month": "2026-03"}, headers=self.headers
        ).get_json()
        self.assertEqual(summary["net_income"], 27)

    def test_booking_patch_dispatches(self) -> None:
        booking = self.create_booking().get_json()
        path = f"/api/bookings/{booking['id']}"
        moved = self.client.patch(path, json={"end_time": "2026-03-02T12:00:00Z"}, headers=self.headers)
        self.assertEqual(moved.get_json()["total_amount"], 30)
        noted = self.client.patch(path, json={"notes": "Quiet corner"}, headers=self.headers)
        self.assertEqual(noted.get_json()["notes"], "Quiet corner")
        cancelled = self.client.patch(path, json={"status": "cancelled"}, headers=self.headers)
        self.assertEqual(cancelled.get_json()["status"], "cancelled")
        backwards = self.client.patch(path, json={"status": "confirmed"}, headers=self.headers)
        self.assertEqual(backwards.status_code, 400)


if __name__ == "__main__":
    unittest.main()
