import unittest

from deskhub.workspace.billing import calculate_invoice, desk_cost, resolve_discount
from deskhub.workspace.exceptions import ValidationError

START = "2026-03-02T09:00:00Z"


class DeskCostTestCase(unittest.TestCase):
    def test_whole_hours(self) -> None:
        self.assertEqual(desk_cost(START, "2026-03-02T11:00:00Z", 10), 20)

    def test_partial_hours_round_up(self) -> None:
        self.assertEqual(desk_cost(START, "2026-03-02T10:30:00Z", 7.5), 12)

    def test_float_noise_does_not_add_a_unit(self) -> None:
        # 66 minutes is 1.1 hours; 1.1 * 10 is 11.000000000000002 in floating point
        self.assertEqual(desk_cost(START, "2026-03-02T10:06:00Z", 10), 11)

    def test_end_before_start(self) -> None:
        with self.assertRaises(ValidationError):
            desk_cost(START, START, 10)


class DiscountTestCase(unittest.TestCase):
    def test_flat_amount_wins(self) -> None:
        self.assertEqual(resolve_discount(100, discount_amount=15, discount_percent=50), 15)

    def test_percent(self) -> None:
        self.assertEqual(resolve_discount(30, discount_percent=10), 3)

    def test_no_discount(self) -> None:
        self.assertEqual(resolve_discount(30), 0)

    def test_rejects_out_of_range(self) -> None:
        with self.assertRaises(ValidationError):
            resolve_discount(30, discount_amount=-1)
        with self.assertRaises(ValidationError):
            resolve_discount(30, discount_percent=120)


class InvoiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.orders = [
            {
                "id": 1,
                "status": "delivered",
                "total_amount": 10,
                "items": [{"name": "Croissant", "price": 5, "quantity": 2, "subtotal": 10}],
            },
            {
                "id": 2,
                "status": "cancelled",
                "total_amount": 8,
                "items": [{"name": "Juice", "price": 4, "quantity": 2, "subtotal": 8}],
            },
        ]

    def test_hourly_invoice(self) -> None:
        invoice = calculate_invoice(
            start=START,
            end="2026-03-02T11:00:00Z",
            hourly_rate=10,
            orders=self.orders,
            desk_label="A1",
            discount_percent=10,
        )
        self.assertEqual(invoice["base_cost"], 20)
        self.assertEqual(invoice["orders_total"], 10)
        self.assertEqual(invoice["subtotal"], 30)
        self.assertEqual(invoice["discount"], 3)
        self.assertEqual(invoice["final_total"], 27)
        self.assertEqual(invoice["duration_hours"], 2)
        self.assertEqual(
            [line["description"] for line in invoice["line_items"]], ["Desk A1", "Croissant"]
        )

    def test_combo_price_ignores_duration(self) -> None:
        invoice = calculate_invoice(
            start=START,
            end="2026-03-02T11:00:00Z",
            hourly_rate=10,
            combo_price=50,
            combo_name="HalfDay",
        )
        self.assertTrue(invoice["is_combo"])
        self.assertEqual(invoice["base_cost"], 50)
        self.assertEqual(invoice["final_total"], 50)

    def test_final_total_never_negative(self) -> None:
        invoice = calculate_invoice(
            start=START, end="2026-03-02T10:00:00Z", hourly_rate=10, discount_amount=500
        )
        self.assertEqual(invoice["final_total"], 0)


if __name__ == "__main__":
    unittest.main()
