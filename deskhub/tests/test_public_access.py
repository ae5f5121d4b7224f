import unittest

from deskhub.workspace.access import PublicAccessGate
from deskhub.workspace.clock import FixedClock
from deskhub.workspace.config import Settings
from deskhub.workspace.exceptions import AuthorizationError, TerminalStateError, ValidationError
from deskhub.workspace.system import WorkspaceSystem


class PublicAccessGateTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FixedClock("2026-03-02T08:00:00Z")
        self.gate = PublicAccessGate("gate-secret", clock=self.clock, base_url="https://desk.example/")

    def test_round_trip(self) -> None:
        token = self.gate.issue_token(7, "2026-03-02T12:00:00Z")
        claims = self.gate.validate(7, token)
        self.assertEqual(claims["bookingId"], "7")
        self.assertEqual(self.gate.public_url(7, token), f"https://desk.example/p/7?t={token}")

    def test_rejects_missing_forged_and_mismatched_tokens(self) -> None:
        token = self.gate.issue_token(7, "2026-03-02T12:00:00Z")
        forged = PublicAccessGate("other-secret", clock=self.clock).issue_token(7, "2026-03-02T12:00:00Z")
        for booking_id, candidate in ((7, None), (7, ""), (7, "not-a-jwt"), (7, forged), (8, token)):
            with self.assertRaises(AuthorizationError):
                self.gate.validate(booking_id, candidate)

    def test_expiry_follows_the_injected_clock(self) -> None:
        token = self.gate.issue_token(7, "2026-03-02T12:00:00Z")
        self.clock.set("2026-03-02T12:00:01Z")
        with self.assertRaises(AuthorizationError) as ctx:
            self.gate.validate(7, token)
        self.assertIn("expired", str(ctx.exception))


class PublicBookingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FixedClock("2026-03-02T08:00:00Z")
        self.system = WorkspaceSystem(
            clock=self.clock, settings=Settings(public_token_secret="test-secret")
        )
        desk = self.system.create_desk(label="A1", hourly_rate=10)
        self.tea = self.system.add_inventory_item(
            sku="tea", name="Tea", category="beverage", price=3, quantity=20
        )
        self.booking = self.system.create_booking(
            desk_id=desk["id"],
            customer={"name": "Robin", "email": "robin@example.com", "phone": "0400 000 000"},
            start_time="2026-03-02T10:00:00Z",
            end_time="2026-03-02T12:00:00Z",
        )
        self.token = self.booking["public_url"].split("?t=", 1)[1]

    def tearDown(self) -> None:
        self.system.close()

    def test_view_is_redacted(self) -> None:
        view = self.system.get_public_booking(self.booking["id"], self.token)
        self.assertEqual(view["customer"], {"name": "Robin"})
        self.assertEqual(view["desk"], {"label": "A1"})
        self.assertFalse(view["can_check_in"])
        self.assertNotIn("public_token", view)

    def test_token_lives_at_least_a_day(self) -> None:
        self.clock.set("2026-03-03T07:59:00Z")
        view = self.system.get_public_booking(self.booking["id"], self.token)
        self.assertEqual(view["status"], "completed")
        self.clock.set("2026-03-03T08:00:01Z")
        with self.assertRaises(AuthorizationError):
            self.system.get_public_booking(self.booking["id"], self.token)

    def test_check_in_window(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.public_check_in(self.booking["id"], self.token)
        self.clock.set("2026-03-02T09:45:00Z")
        view = self.system.public_check_in(self.booking["id"], self.token)
        self.assertEqual(view["status"], "checked-in")
        self.assertTrue(view["can_order"])
        with self.assertRaises(ValidationError):
            self.system.public_check_in(self.booking["id"], self.token)

    def test_check_in_after_end_is_refused(self) -> None:
        self.clock.set("2026-03-02T12:30:00Z")
        with self.assertRaises(TerminalStateError):
            self.system.public_check_in(self.booking["id"], self.token)

    def test_orders_through_the_link(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.public_place_order(
                self.booking["id"], self.token, items=[{"item_id": self.tea["id"], "quantity": 1}]
            )
        self.clock.set("2026-03-02T10:05:00Z")
        self.system.public_check_in(self.booking["id"], self.token)
        order = self.system.public_place_order(
            self.booking["id"], self.token, items=[{"item_id": self.tea["id"], "quantity": 2}]
        )
        self.assertEqual(order["total_amount"], 6)
        orders = self.system.public_list_orders(self.booking["id"], self.token)
        self.assertEqual([row["id"] for row in orders], [order["id"]])

    def test_orders_close_when_the_booking_ends(self) -> None:
        self.clock.set("2026-03-02T10:05:00Z")
        self.system.public_check_in(self.booking["id"], self.token)
        self.clock.set("2026-03-02T12:20:00Z")
        with self.assertRaises(TerminalStateError):
            self.system.public_place_order(
                self.booking["id"], self.token, items=[{"item_id": self.tea["id"], "quantity": 1}]
            )
        self.assertEqual(self.system.public_list_orders(self.booking["id"], self.token), [])
        self.assertEqual(self.system.get_booking(self.booking["id"])["status"], "completed")
        self.assertEqual(self.system.get_inventory_item(self.tea["id"])["quantity"], 20)

    def test_regenerating_revokes_the_old_link(self) -> None:
        issued = self.system.issue_public_token(self.booking["id"])
        with self.assertRaises(AuthorizationError):
            self.system.get_public_booking(self.booking["id"], self.token)
        view = self.system.get_public_booking(self.booking["id"], issued["token"])
        self.assertEqual(view["id"], self.booking["id"])

        self.system.reschedule_booking(self.booking["id"], end_time="2026-03-02T13:00:00Z")
        with self.assertRaises(AuthorizationError):
            self.system.get_public_booking(self.booking["id"], issued["token"])

    def test_cancelled_bookings_get_no_new_link(self) -> None:
        self.system.cancel_booking(self.booking["id"])
        with self.assertRaises(ValidationError):
            self.system.issue_public_token(self.booking["id"])


if __name__ == "__main__":
    unittest.main()
