"""Invoice arithmetic for desk bookings.

Everything in here is a pure function of its arguments so the same numbers
come out for the admin billing screen, checkout and payment reconciliation.
"""

from __future__ import annotations

import datetime as dt
import math
from typing import Any, Iterable

from .clock import parse_timestamp
from .exceptions import ValidationError


def duration_hours(start: dt.datetime | str, end: dt.datetime | str) -> float:
    start_dt = parse_timestamp(start, field="start_time")
    end_dt = parse_timestamp(end, field="end_time")
    if end_dt <= start_dt:
        raise ValidationError("End time must be after start time")
    return (end_dt - start_dt).total_seconds() / 3600


def desk_cost(start: dt.datetime | str, end: dt.datetime | str, hourly_rate: float) -> int:
    """Hours times rate, rounded up to a whole currency unit."""

    if hourly_rate < 0:
        raise ValidationError("Hourly rate cannot be negative")
    # 1.1 * 10 must give 11, not 12.
    return math.ceil(round(duration_hours(start, end) * hourly_rate, 6))


def resolve_discount(
    subtotal: float, discount_amount: float = 0, discount_percent: float = 0
) -> float:
    """A flat amount wins over a percentage when both are supplied."""

    discount_amount = float(discount_amount or 0)
    discount_percent = float(discount_percent or 0)
    if discount_amount < 0 or discount_percent < 0:
        raise ValidationError("Discount cannot be negative")
    if discount_percent > 100:
        raise ValidationError("Discount percent cannot exceed 100")
    if discount_amount > 0:
        return round(discount_amount, 2)
    if discount_percent > 0:
        return round(subtotal * discount_percent / 100, 2)
    return 0.0


def calculate_invoice(
    *,
    start: dt.datetime | str,
    end: dt.datetime | str,
    hourly_rate: float,
    orders: Iterable[dict] = (),
    combo_price: float | None = None,
    combo_name: str | None = None,
    desk_label: str | None = None,
    discount_amount: float = 0,
    discount_percent: float = 0,
) -> dict[str, Any]:
    hours = duration_hours(start, end)
    if combo_price is not None:
        base_cost = float(combo_price)
        base_description = f"Combo - {combo_name}" if combo_name else "Combo package"
    else:
        base_cost = float(desk_cost(start, end, hourly_rate))
        base_description = f"Desk {desk_label}" if desk_label else "Desk rental"

    line_items: list[dict[str, Any]] = [
        {
            "description": base_description,
            "quantity": 1,
            "unit_price": base_cost,
            "total": base_cost,
        }
    ]
    orders_total = 0.0
    for order in orders:
        if order.get("status") == "cancelled":
            continue
        orders_total += order["total_amount"]
        for item in order.get("items", []):
            line_items.append(
                {
                    "description": item["name"],
                    "quantity": item["quantity"],
                    "unit_price": item["price"],
                    "total": item["subtotal"],
                    "order_id": order["id"],
                }
            )

    subtotal = round(base_cost + orders_total, 2)
    discount = resolve_discount(subtotal, discount_amount, discount_percent)
    final_total = round(max(0.0, subtotal - discount), 2)
    return {
        "duration_hours": round(hours, 2),
        "base_cost": base_cost,
        "is_combo": combo_price is not None,
        "orders_total": round(orders_total, 2),
        "subtotal": subtotal,
        "discount": discount,
        "final_total": final_total,
        "line_items": line_items,
    }
