"""Core orchestration logic for the DeskHub co-working platform."""

from __future__ import annotations

import datetime as dt
import functools
import hmac
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Sequence

from .access import PublicAccessGate
from .billing import calculate_invoice, desk_cost
from .clock import Clock, SystemClock, format_timestamp, normalize_timestamp, parse_timestamp
from .config import Settings
from .database import get_connection, get_metadata, initialize_database, transaction
from .exceptions import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TerminalStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DESK_STATUSES = ("available", "occupied", "reserved", "maintenance")

BOOKING_FLOW = ("pending", "confirmed", "checked-in", "completed")
BOOKING_STATUSES = BOOKING_FLOW + ("cancelled",)
ACTIVE_BOOKING_STATUSES = ("pending", "confirmed", "checked-in")
TERMINAL_BOOKING_STATUSES = ("completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "refunded")

ORDER_FLOW = ("pending", "confirmed", "preparing", "ready", "delivered")
ORDER_STATUSES = ORDER_FLOW + ("cancelled",)
TERMINAL_ORDER_STATUSES = ("delivered", "cancelled")
DELETABLE_ORDER_STATUSES = ("pending", "cancelled")

CATEGORIES = ("food", "beverage", "merchandise", "office-supplies", "combo")
CATEGORY_ALIASES = {
    "drinks": "beverage",
    "supplies": "office-supplies",
    "snacks": "merchandise",
}
ITEM_TYPES = ("item", "combo")
STOCK_ADJUSTMENT_MODES = ("add", "subtract", "set")

TRANSACTION_TYPES = ("income", "expense")
TRANSACTION_SOURCES = ("booking", "order", "inventory", "maintenance", "utilities", "other")
REFERENCE_MODELS = ("booking", "order", "inventory_item")

DOUBLE_BOOKED = "Desk is already booked for this time period"


def normalize_category(value: str | None) -> str:
    """Map legacy aliases onto the canonical category names."""

    if value is None or not str(value).strip():
        raise ValidationError("Category is required")
    key = str(value).strip().lower()
    key = CATEGORY_ALIASES.get(key, key)
    if key not in CATEGORIES:
        raise ValidationError(f"Unknown category: {value}")
    return key


def _require_choice(value: Any, choices: Sequence[str], field: str) -> str:
    if value not in choices:
        raise ValidationError(f"Invalid {field}: {value}")
    return value


def _non_negative_number(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number") from exc
    if number < 0:
        raise ValidationError(f"{field} cannot be negative")
    return number


def _non_negative_int(value: Any, field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a whole number") from exc
    if number < 0:
        raise ValidationError(f"{field} cannot be negative")
    return number


def _positive_duration(value: Any) -> float:
    try:
        hours = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Combo duration is required") from exc
    if hours <= 0:
        raise ValidationError("Combo duration must be greater than zero")
    return hours


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _serialized(method):
    """Run a facade method while holding the system lock.

    The connection is shared between request threads; no statement may run
    while another thread has a transaction open on it.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


@dataclass
class CustomerInfo:
    """Who a booking is for. Only the name is mandatory."""

    name: str
    email: str | None = None
    phone: str | None = None

    def __post_init__(self) -> None:
        self.name = (self.name or "").strip()
        if not self.name:
            raise ValidationError("Customer name is required")
        email = _blank_to_none(self.email)
        self.email = email.lower() if email else None
        self.phone = _blank_to_none(self.phone)

    @property
    def has_email(self) -> bool:
        return self.email is not None

    @property
    def has_phone(self) -> bool:
        return self.phone is not None

    @classmethod
    def coerce(cls, value: "CustomerInfo | dict | None") -> "CustomerInfo":
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(name=value.get("name"), email=value.get("email"), phone=value.get("phone"))
        raise ValidationError("Customer details are required")

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "has_email": self.has_email,
            "has_phone": self.has_phone,
        }


class WorkspaceSystem:
    """High level façade over desks, inventory, bookings, orders and the journal."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self.gate = PublicAccessGate(
            self.settings.public_token_secret,
            clock=self.clock,
            base_url=self.settings.public_app_url,
        )
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    @_serialized
    def schema_version(self) -> int:
        return int(get_metadata(self.conn, "schema_version", "0"))

    def _now(self) -> dt.datetime:
        return self.clock.now()

    def _stamp(self) -> str:
        return format_timestamp(self._now())

    @contextmanager
    def _atomic(self) -> Iterator[sqlite3.Connection]:
        with self._lock, transaction(self.conn) as conn:
            yield conn

    def _update_row(self, table: str, row_id: int, fields: dict[str, Any]) -> None:
        fields = dict(fields, updated_at=self._stamp())
        assignments = ", ".join(f"{column} = ?" for column in fields)
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*fields.values(), row_id),
        )

    # ------------------------------------------------------------------
    # Desks
    # ------------------------------------------------------------------
    @_serialized
    def create_desk(
        self,
        *,
        label: str,
        hourly_rate: float = 10,
        location: str | None = None,
        description: str | None = None,
        status: str = "available",
    ) -> dict:
        label = (label or "").strip()
        if not label:
            raise ValidationError("Desk label is required")
        rate = _non_negative_number(hourly_rate, "Hourly rate")
        _require_choice(status, DESK_STATUSES, "desk status")
        try:
            with self._atomic():
                cur = self.conn.execute(
                    """
                    INSERT INTO desks(label, status, hourly_rate, location, description, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (label, status, rate, location, description, self._stamp(), self._stamp()),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Desk label '{label}' already exists") from exc
        return self.get_desk(cur.lastrowid)

    @_serialized
    def get_desk(self, desk_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM desks WHERE id = ?", (desk_id,)).fetchone()
        if not row:
            raise NotFoundError("Desk not found")
        return row

    @_serialized
    def list_desks(self, *, status: str | None = None) -> list[dict]:
        if status is None:
            return self.conn.execute("SELECT * FROM desks ORDER BY label").fetchall()
        _require_choice(status, DESK_STATUSES, "desk status")
        return self.conn.execute(
            "SELECT * FROM desks WHERE status = ? ORDER BY label", (status,)
        ).fetchall()

    @_serialized
    def update_desk(
        self,
        desk_id: int,
        *,
        label: str | None = None,
        status: str | None = None,
        hourly_rate: float | None = None,
        location: str | None = None,
        description: str | None = None,
    ) -> dict:
        desk = self.get_desk(desk_id)
        fields: dict[str, Any] = {}
        if label is not None:
            label = label.strip()
            if not label:
                raise ValidationError("Desk label is required")
            fields["label"] = label
        if hourly_rate is not None:
            fields["hourly_rate"] = _non_negative_number(hourly_rate, "Hourly rate")
        if location is not None:
            fields["location"] = location
        if description is not None:
            fields["description"] = description
        if status is not None:
            _require_choice(status, DESK_STATUSES, "desk status")
            fields["status"] = status
        if not fields:
            return desk
        try:
            with self._atomic():
                if fields.get("status") == "maintenance" and desk["status"] != "maintenance":
                    now = self._stamp()
                    busy = self.conn.execute(
                        """
                        SELECT id FROM bookings
                        WHERE desk_id = ?
                          AND status IN ('confirmed', 'checked-in')
                          AND start_time <= ? AND end_time > ?
                        LIMIT 1
                        """,
                        (desk_id, now, now),
                    ).fetchone()
                    if busy:
                        raise ConflictError(
                            "Desk has an active booking and cannot go into maintenance"
                        )
                self._update_row("desks", desk_id, fields)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Desk label '{label}' already exists") from exc
        return self.get_desk(desk_id)

    @_serialized
    def set_desk_status(self, desk_id: int, status: str) -> dict:
        return self.update_desk(desk_id, status=status)

    def _occupy_desk(self, desk_id: int) -> None:
        self.conn.execute(
            "UPDATE desks SET status = 'occupied', updated_at = ? WHERE id = ? AND status != 'maintenance'",
            (self._stamp(), desk_id),
        )

    def _release_desk(self, desk_id: int) -> None:
        self.conn.execute(
            """
            UPDATE desks SET status = 'available', updated_at = ?
            WHERE id = ? AND status = 'occupied'
              AND NOT EXISTS (
                    SELECT 1 FROM bookings WHERE desk_id = ? AND status = 'checked-in'
              )
            """,
            (self._stamp(), desk_id, desk_id),
        )

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    def _validate_components(
        self, included_items: Iterable[dict] | None, *, combo_id: int | None = None
    ) -> dict[int, int]:
        merged: dict[int, int] = {}
        for entry in included_items or []:
            try:
                item_id = int(entry["item_id"])
                quantity = int(entry.get("quantity", 1))
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError("Included items need an item_id and a quantity") from exc
            if quantity < 1:
                raise ValidationError("Included item quantity must be at least 1")
            if combo_id is not None and item_id == combo_id:
                raise ValidationError("A combo cannot include itself")
            merged[item_id] = merged.get(item_id, 0) + quantity
        for item_id in merged:
            row = self.conn.execute(
                "SELECT id, item_type FROM inventory_items WHERE id = ?", (item_id,)
            ).fetchone()
            if not row:
                raise ValidationError(f"Included item {item_id} does not exist")
            if row["item_type"] == "combo":
                raise ValidationError("Combos cannot include other combos")
        return merged

    def _replace_components(self, combo_id: int, components: dict[int, int]) -> None:
        self.conn.execute("DELETE FROM combo_items WHERE combo_id = ?", (combo_id,))
        self.conn.executemany(
            "INSERT INTO combo_items(combo_id, item_id, quantity) VALUES (?, ?, ?)",
            [(combo_id, item_id, quantity) for item_id, quantity in components.items()],
        )

    @_serialized
    def add_inventory_item(
        self,
        *,
        sku: str,
        name: str,
        category: str,
        price: float,
        quantity: int = 0,
        unit: str = "pcs",
        item_type: str | None = None,
        description: str | None = None,
        low_stock_threshold: int = 5,
        image_url: str | None = None,
        duration: float | None = None,
        included_items: Sequence[dict] | None = None,
        is_active: bool = True,
    ) -> dict:
        sku = (sku or "").strip().upper()
        if not sku:
            raise ValidationError("SKU is required")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Item name is required")
        if item_type is not None:
            _require_choice(item_type, ITEM_TYPES, "item type")
        is_combo = item_type == "combo" or str(category or "").strip().lower() == "combo"
        category = "combo" if is_combo else normalize_category(category)
        price = _non_negative_number(price, "Price")
        quantity = _non_negative_int(quantity, "Quantity")
        low_stock_threshold = _non_negative_int(low_stock_threshold, "Low stock threshold")
        if is_combo:
            duration = _positive_duration(duration)
        elif included_items:
            raise ValidationError("Only combos can include other items")
        else:
            duration = None

        with self._atomic():
            components = self._validate_components(included_items) if is_combo else {}
            if self.conn.execute(
                "SELECT id FROM inventory_items WHERE sku = ?", (sku,)
            ).fetchone():
                raise ConflictError(f"SKU {sku} already exists")
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO inventory_items(
                        sku, name, description, category, item_type, price, quantity, unit,
                        low_stock_threshold, image_url, duration, is_active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sku,
                        name,
                        description,
                        category,
                        "combo" if is_combo else "item",
                        price,
                        quantity,
                        unit or "pcs",
                        low_stock_threshold,
                        image_url,
                        duration,
                        int(bool(is_active)),
                        self._stamp(),
                        self._stamp(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"SKU {sku} already exists") from exc
            item_id = cur.lastrowid
            if components:
                self._replace_components(item_id, components)
        return self.get_inventory_item(item_id)

    def _decorate_item(self, row: dict) -> dict:
        row["is_active"] = bool(row["is_active"])
        row["is_low_stock"] = row["quantity"] <= row["low_stock_threshold"]
        row["included_items"] = []
        if row["item_type"] == "combo":
            row["included_items"] = self.conn.execute(
                """
                SELECT combo_items.item_id, combo_items.quantity, inventory_items.name
                FROM combo_items
                JOIN inventory_items ON inventory_items.id = combo_items.item_id
                WHERE combo_items.combo_id = ?
                ORDER BY inventory_items.name
                """,
                (row["id"],),
            ).fetchall()
        return row

    @_serialized
    def get_inventory_item(self, item_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM inventory_items WHERE id = ?", (item_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Inventory item not found")
        return self._decorate_item(row)

    @_serialized
    def list_inventory_items(
        self,
        *,
        category: str | None = None,
        item_type: str | None = None,
        low_stock_only: bool = False,
        active_only: bool = False,
    ) -> list[dict]:
        params: list[Any] = []
        conditions: list[str] = []
        if category is not None:
            conditions.append("category = ?")
            params.append(normalize_category(category))
        if item_type is not None:
            conditions.append("item_type = ?")
            params.append(_require_choice(item_type, ITEM_TYPES, "item type"))
        if low_stock_only:
            conditions.append("quantity <= low_stock_threshold")
        if active_only:
            conditions.append("is_active = 1")
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        rows = self.conn.execute(
            "SELECT * FROM inventory_items" + where + " ORDER BY category, name",
            params,
        ).fetchall()
        return [self._decorate_item(row) for row in rows]

    @_serialized
    def list_orderable_items(self, *, category: str | None = None) -> dict:
        """Return what a checked-in customer can order, grouped by category."""

        params: list[Any] = []
        where = " WHERE is_active = 1 AND item_type = 'item' AND quantity > 0"
        if category is not None:
            where += " AND category = ?"
            params.append(normalize_category(category))
        rows = self.conn.execute(
            "SELECT id, sku, name, description, category, price, quantity, unit, image_url"
            " FROM inventory_items" + where + " ORDER BY category, name",
            params,
        ).fetchall()
        grouped: dict[str, list[dict]] = {}
        for row in rows:
            grouped.setdefault(row["category"], []).append(row)
        return {"items": rows, "by_category": grouped}

    @_serialized
    def update_inventory_item(
        self,
        item_id: int,
        *,
        name: str | None = None,
        category: str | None = None,
        item_type: str | None = None,
        price: float | None = None,
        unit: str | None = None,
        description: str | None = None,
        low_stock_threshold: int | None = None,
        image_url: str | None = None,
        is_active: bool | None = None,
        duration: float | None = None,
        included_items: Sequence[dict] | None = None,
    ) -> dict:
        item = self.get_inventory_item(item_id)
        was_combo = item["item_type"] == "combo"
        becomes_combo = was_combo
        if item_type is not None:
            _require_choice(item_type, ITEM_TYPES, "item type")
            becomes_combo = item_type == "combo"
        elif category is not None:
            becomes_combo = str(category).strip().lower() == "combo"

        fields: dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Item name is required")
            fields["name"] = name
        if price is not None:
            fields["price"] = _non_negative_number(price, "Price")
        if unit is not None:
            fields["unit"] = unit or "pcs"
        if description is not None:
            fields["description"] = description
        if low_stock_threshold is not None:
            fields["low_stock_threshold"] = _non_negative_int(low_stock_threshold, "Low stock threshold")
        if image_url is not None:
            fields["image_url"] = image_url
        if is_active is not None:
            fields["is_active"] = int(bool(is_active))

        with self._atomic():
            if becomes_combo:
                if not was_combo and self.conn.execute(
                    "SELECT 1 FROM combo_items WHERE item_id = ? LIMIT 1", (item_id,)
                ).fetchone():
                    raise ValidationError("Item is part of a combo and cannot become a combo")
                fields["item_type"] = "combo"
                fields["category"] = "combo"
                fields["duration"] = _positive_duration(
                    duration if duration is not None else item["duration"]
                )
                if included_items is not None:
                    components = self._validate_components(included_items, combo_id=item_id)
                    self._replace_components(item_id, components)
            else:
                if included_items:
                    raise ValidationError("Only combos can include other items")
                new_category = normalize_category(category if category is not None else item["category"])
                if new_category == "combo":
                    raise ValidationError("A regular item needs a non-combo category")
                fields["item_type"] = "item"
                fields["category"] = new_category
                fields["duration"] = None
                if was_combo:
                    self._replace_components(item_id, {})
            self._update_row("inventory_items", item_id, fields)
        return self.get_inventory_item(item_id)

    @_serialized
    def adjust_stock(self, item_id: int, amount: int, mode: str = "add") -> dict:
        _require_choice(mode, STOCK_ADJUSTMENT_MODES, "stock adjustment mode")
        amount = _non_negative_int(amount, "Amount")
        self.get_inventory_item(item_id)
        expressions = {
            "add": "quantity + ?",
            "subtract": "MAX(0, quantity - ?)",
            "set": "?",
        }
        with self._atomic():
            self.conn.execute(
                f"UPDATE inventory_items SET quantity = {expressions[mode]}, updated_at = ? WHERE id = ?",
                (amount, self._stamp(), item_id),
            )
        return self.get_inventory_item(item_id)

    def _decrement_stock(self, item_id: int, quantity: int) -> None:
        cur = self.conn.execute(
            """
            UPDATE inventory_items SET quantity = quantity - ?, updated_at = ?
            WHERE id = ? AND quantity >= ?
            """,
            (quantity, self._stamp(), item_id, quantity),
        )
        if cur.rowcount:
            return
        row = self.conn.execute(
            "SELECT name, quantity FROM inventory_items WHERE id = ?", (item_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Inventory item {item_id} not found")
        raise InsufficientStockError(
            f"Insufficient stock for {row['name']}. Available: {row['quantity']}"
        )

    @_serialized
    def decrement_for_order(self, item_id: int, quantity: int) -> dict:
        quantity = _non_negative_int(quantity, "Quantity")
        if quantity == 0:
            raise ValidationError("Quantity must be greater than zero")
        with self._atomic():
            self._decrement_stock(item_id, quantity)
        return self.get_inventory_item(item_id)

    # ------------------------------------------------------------------
    # Booking lifecycle
    # ------------------------------------------------------------------
    def _get_combo(self, combo_id: int) -> dict:
        combo = self.conn.execute(
            "SELECT * FROM inventory_items WHERE id = ?", (combo_id,)
        ).fetchone()
        if not combo or combo["item_type"] != "combo":
            raise ValidationError("Selected combo does not exist")
        if not combo["is_active"]:
            raise ValidationError(f"Combo {combo['name']} is not available")
        return combo

    def _find_overlap(
        self,
        desk_id: int,
        start: dt.datetime,
        end: dt.datetime,
        *,
        exclude_id: int | None = None,
    ) -> dict | None:
        params: list[Any] = [desk_id, format_timestamp(end), format_timestamp(start)]
        query = """
            SELECT id, start_time, end_time FROM bookings
            WHERE desk_id = ?
              AND status IN ('pending', 'confirmed', 'checked-in')
              AND start_time < ?
              AND end_time > ?
        """
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        return self.conn.execute(query + " LIMIT 1", params).fetchone()

    def _issue_token(self, booking_id: int, end: dt.datetime) -> tuple[str, dt.datetime]:
        expires = max(
            end + dt.timedelta(minutes=self.settings.public_booking_buffer_minutes),
            self._now() + dt.timedelta(hours=self.settings.public_token_min_lifetime_hours),
        )
        token = self.gate.issue_token(booking_id, expires)
        self.conn.execute(
            "UPDATE bookings SET public_token = ?, public_token_expires_at = ? WHERE id = ?",
            (token, format_timestamp(expires), booking_id),
        )
        return token, expires

    @_serialized
    def create_booking(
        self,
        *,
        desk_id: int,
        customer: CustomerInfo | dict,
        start_time: dt.datetime | str,
        end_time: dt.datetime | str | None = None,
        combo_id: int | None = None,
        status: str | None = None,
        payment_status: str | None = None,
        notes: str | None = None,
        created_by: str | None = None,
    ) -> dict:
        customer = CustomerInfo.coerce(customer)
        start_dt = normalize_timestamp(start_time, field="start_time")
        combo = self._get_combo(combo_id) if combo_id is not None else None
        if end_time is None or end_time == "":
            if combo is None:
                raise ValidationError("end_time is required")
            end_dt = normalize_timestamp(start_dt + dt.timedelta(hours=combo["duration"]))
        else:
            end_dt = normalize_timestamp(end_time, field="end_time")
        if end_dt <= start_dt:
            raise ValidationError("End time must be after start time")
        if combo is not None:
            booked_hours = (end_dt - start_dt).total_seconds() / 3600
            if abs(booked_hours - combo["duration"]) > 1e-6:
                logger.warning(
                    "Booking window of %.2f hours does not match combo %s (%s hours); charging the combo price",
                    booked_hours,
                    combo["sku"],
                    combo["duration"],
                )

        status = status or "confirmed"
        _require_choice(status, BOOKING_STATUSES, "booking status")
        if status in TERMINAL_BOOKING_STATUSES:
            raise ValidationError(f"A new booking cannot be {status}")
        payment_status = payment_status or "pending"
        _require_choice(payment_status, ("pending", "paid"), "payment status")

        with self._atomic():
            desk = self.get_desk(desk_id)
            if desk["status"] == "maintenance":
                raise ValidationError(f"Desk {desk['label']} is under maintenance")
            if self._find_overlap(desk_id, start_dt, end_dt):
                raise ConflictError(DOUBLE_BOOKED)
            if combo is not None:
                total = float(combo["price"])
            else:
                total = float(desk_cost(start_dt, end_dt, desk["hourly_rate"]))
            now = self._stamp()
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO bookings(
                        desk_id, customer_name, customer_email, customer_phone, start_time, end_time,
                        status, payment_status, total_amount, combo_id, notes, checked_in_at,
                        created_by, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        desk_id,
                        customer.name,
                        customer.email,
                        customer.phone,
                        format_timestamp(start_dt),
                        format_timestamp(end_dt),
                        status,
                        payment_status,
                        total,
                        combo["id"] if combo else None,
                        notes,
                        now if status == "checked-in" else None,
                        created_by,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(DOUBLE_BOOKED) from exc
            booking_id = cur.lastrowid
            token, _ = self._issue_token(booking_id, end_dt)
            if status == "checked-in":
                self._occupy_desk(desk_id)
            self._append_transaction(
                type="income",
                amount=total,
                source="booking",
                description=(
                    f"Combo booking - {combo['name']} ({desk['label']})"
                    if combo
                    else f"Desk booking - {desk['label']}"
                ),
                reference_id=booking_id,
                reference_model="booking",
                category="combo" if combo else "desk",
                created_by=created_by,
            )
        booking = self.get_booking(booking_id)
        booking["public_url"] = self.gate.public_url(booking_id, token)
        return booking

    def _get_booking_row(self, booking_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        return row

    def _decorate_booking(self, row: dict) -> dict:
        customer = CustomerInfo(
            name=row.pop("customer_name"),
            email=row.pop("customer_email"),
            phone=row.pop("customer_phone"),
        )
        row["customer"] = customer.as_dict()
        row["desk"] = self.conn.execute(
            "SELECT id, label, hourly_rate, status FROM desks WHERE id = ?", (row["desk_id"],)
        ).fetchone()
        row["combo"] = None
        if row["combo_id"] is not None:
            row["combo"] = self.conn.execute(
                "SELECT id, sku, name, price, duration FROM inventory_items WHERE id = ?",
                (row["combo_id"],),
            ).fetchone()
        row["is_combo_booking"] = row["combo_id"] is not None
        return row

    @_serialized
    def get_booking(self, booking_id: int) -> dict:
        self._sweep_quietly()
        return self._decorate_booking(self._get_booking_row(booking_id))

    @_serialized
    def list_bookings(
        self,
        *,
        status: str | None = None,
        desk_id: int | None = None,
        start_date: dt.datetime | str | None = None,
        end_date: dt.datetime | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict]:
        self._sweep_quietly()
        params: list[Any] = []
        conditions: list[str] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(_require_choice(status, BOOKING_STATUSES, "booking status"))
        if desk_id is not None:
            conditions.append("desk_id = ?")
            params.append(desk_id)
        if start_date is not None:
            conditions.append("end_time >= ?")
            params.append(format_timestamp(start_date))
        if end_date is not None:
            conditions.append("start_time <= ?")
            params.append(format_timestamp(end_date))
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        query = "SELECT * FROM bookings" + where + " ORDER BY start_time DESC, id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([_non_negative_int(limit, "limit"), _non_negative_int(offset, "offset")])
        rows = self.conn.execute(query, params).fetchall()
        return [self._decorate_booking(row) for row in rows]

    @_serialized
    def update_booking_status(
        self, booking_id: int, status: str, *, created_by: str | None = None
    ) -> dict:
        _require_choice(status, BOOKING_STATUSES, "booking status")
        booking = self._get_booking_row(booking_id)
        current = booking["status"]
        if current == status:
            return self.get_booking(booking_id)
        if current in TERMINAL_BOOKING_STATUSES:
            raise TerminalStateError(f"Booking is already {current}")
        if status == "cancelled":
            return self.cancel_booking(booking_id, created_by=created_by)
        if BOOKING_FLOW.index(status) < BOOKING_FLOW.index(current):
            raise TerminalStateError(f"Cannot move booking from {current} back to {status}")

        fields: dict[str, Any] = {"status": status}
        if status == "checked-in":
            fields["checked_in_at"] = self._stamp()
        if status == "completed":
            fields["completed_at"] = self._stamp()
        with self._atomic():
            if status == "completed" and booking["payment_status"] == "pending":
                fields["total_amount"] = self._final_amount(booking)
            self._update_row("bookings", booking_id, fields)
            if status == "checked-in":
                self._occupy_desk(booking["desk_id"])
            elif status == "completed":
                self._release_desk(booking["desk_id"])
        return self.get_booking(booking_id)

    @_serialized
    def reschedule_booking(
        self,
        booking_id: int,
        *,
        start_time: dt.datetime | str | None = None,
        end_time: dt.datetime | str | None = None,
        desk_id: int | None = None,
    ) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["status"] in TERMINAL_BOOKING_STATUSES:
            raise TerminalStateError(f"Cannot reschedule a {booking['status']} booking")
        start_dt = normalize_timestamp(
            start_time if start_time is not None else booking["start_time"], field="start_time"
        )
        end_dt = normalize_timestamp(
            end_time if end_time is not None else booking["end_time"], field="end_time"
        )
        if end_dt <= start_dt:
            raise ValidationError("End time must be after start time")
        if booking["status"] == "pending" and start_time is not None and start_dt < self._now():
            raise ValidationError("A pending booking cannot be moved into the past")
        target_desk_id = desk_id if desk_id is not None else booking["desk_id"]

        with self._atomic():
            desk = self.get_desk(target_desk_id)
            if target_desk_id != booking["desk_id"] and desk["status"] == "maintenance":
                raise ValidationError(f"Desk {desk['label']} is under maintenance")
            if self._find_overlap(target_desk_id, start_dt, end_dt, exclude_id=booking_id):
                raise ConflictError(DOUBLE_BOOKED)
            new_start = format_timestamp(start_dt)
            new_end = format_timestamp(end_dt)
            fields: dict[str, Any] = {
                "desk_id": target_desk_id,
                "start_time": new_start,
                "end_time": new_end,
            }
            # A settled amount stays as it was paid.
            repriced = booking["payment_status"] == "pending"
            if repriced:
                if booking["combo_id"] is not None:
                    combo = self.get_inventory_item(booking["combo_id"])
                    fields["total_amount"] = float(combo["price"])
                else:
                    fields["total_amount"] = float(
                        desk_cost(start_dt, end_dt, desk["hourly_rate"])
                    )
            try:
                self._update_row("bookings", booking_id, fields)
            except sqlite3.IntegrityError as exc:
                raise ConflictError(DOUBLE_BOOKED) from exc
            if repriced:
                self.conn.execute(
                    """
                    UPDATE transactions SET amount = ?
                    WHERE id = (
                        SELECT id FROM transactions
                        WHERE reference_model = 'booking' AND reference_id = ?
                          AND source = 'booking' AND type = 'income'
                        ORDER BY id LIMIT 1
                    )
                    """,
                    (fields["total_amount"], booking_id),
                )
            if target_desk_id != booking["desk_id"] and booking["status"] == "checked-in":
                self._release_desk(booking["desk_id"])
                self._occupy_desk(target_desk_id)
            if new_start != booking["start_time"] or new_end != booking["end_time"]:
                self._issue_token(booking_id, end_dt)
        return self.get_booking(booking_id)

    @_serialized
    def update_booking_details(
        self,
        booking_id: int,
        *,
        customer: CustomerInfo | dict | None = None,
        notes: str | None = None,
    ) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["status"] in TERMINAL_BOOKING_STATUSES:
            raise TerminalStateError(f"Cannot edit a {booking['status']} booking")
        fields: dict[str, Any] = {}
        if customer is not None:
            info = CustomerInfo.coerce(customer)
            fields.update(
                customer_name=info.name, customer_email=info.email, customer_phone=info.phone
            )
        if notes is not None:
            fields["notes"] = notes
        if fields:
            with self._atomic():
                self._update_row("bookings", booking_id, fields)
        return self.get_booking(booking_id)

    @_serialized
    def cancel_booking(self, booking_id: int, *, created_by: str | None = None) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["status"] == "cancelled":
            return self.get_booking(booking_id)
        if booking["status"] == "completed":
            raise TerminalStateError("Booking is already completed")
        fields: dict[str, Any] = {"status": "cancelled"}
        with self._atomic():
            if booking["payment_status"] == "paid":
                fields["payment_status"] = "refunded"
                self._append_transaction(
                    type="expense",
                    amount=booking["total_amount"],
                    source="booking",
                    description=f"Refund for cancelled booking #{booking_id}",
                    reference_id=booking_id,
                    reference_model="booking",
                    category="refund",
                    created_by=created_by,
                )
            self._update_row("bookings", booking_id, fields)
            self._release_desk(booking["desk_id"])
        logger.info("Cancelled booking %s", booking_id)
        return self.get_booking(booking_id)

    @_serialized
    def sweep_expired_bookings(self) -> int:
        """Complete every active booking whose end time has passed."""

        now = self._stamp()
        with self._atomic():
            rows = self.conn.execute(
                """
                SELECT * FROM bookings
                WHERE end_time < ? AND status IN ('pending', 'confirmed', 'checked-in')
                """,
                (now,),
            ).fetchall()
            if not rows:
                return 0
            for row in rows:
                total = row["total_amount"]
                if row["payment_status"] == "pending":
                    total = self._final_amount(row)
                self.conn.execute(
                    """
                    UPDATE bookings
                    SET status = 'completed', completed_at = COALESCE(completed_at, ?),
                        total_amount = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (now, total, now, row["id"]),
                )
            for desk_id in {row["desk_id"] for row in rows}:
                self._release_desk(desk_id)
        logger.info("Completed %d expired booking(s)", len(rows))
        return len(rows)

    def _sweep_quietly(self) -> None:
        try:
            self.sweep_expired_bookings()
        except sqlite3.Error:
            logger.exception("Expired booking sweep failed")

    # ------------------------------------------------------------------
    # Public access
    # ------------------------------------------------------------------
    @_serialized
    def issue_public_token(self, booking_id: int) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["status"] == "cancelled":
            raise ValidationError("Cannot share a cancelled booking")
        with self._atomic():
            token, expires = self._issue_token(
                booking_id, parse_timestamp(booking["end_time"])
            )
        return {
            "booking_id": booking_id,
            "token": token,
            "expires_at": format_timestamp(expires),
            "public_url": self.gate.public_url(booking_id, token),
        }

    def _authorize_public(self, booking_id: int, token: str | None) -> dict:
        self.gate.validate(booking_id, token)
        row = self._get_booking_row(booking_id)
        # A regenerated link revokes the previous one.
        if not row["public_token"] or not hmac.compare_digest(row["public_token"], token):
            raise AuthorizationError("Invalid booking token")
        return row

    @_serialized
    def get_public_booking(self, booking_id: int, token: str | None) -> dict:
        self._sweep_quietly()
        booking = self._decorate_booking(self._authorize_public(booking_id, token))
        opens, closes = self._check_in_window(booking)
        now = self._now()
        return {
            "id": booking["id"],
            "customer": {"name": booking["customer"]["name"]},
            "desk": {"label": booking["desk"]["label"]},
            "combo": {"name": booking["combo"]["name"]} if booking["combo"] else None,
            "is_combo_booking": booking["is_combo_booking"],
            "start_time": booking["start_time"],
            "end_time": booking["end_time"],
            "status": booking["status"],
            "payment_status": booking["payment_status"],
            "total_amount": booking["total_amount"],
            "checked_in_at": booking["checked_in_at"],
            "can_check_in": booking["status"] == "confirmed" and opens <= now <= closes,
            "can_order": booking["status"] == "checked-in",
        }

    def _check_in_window(self, booking: dict) -> tuple[dt.datetime, dt.datetime]:
        start = parse_timestamp(booking["start_time"])
        end = parse_timestamp(booking["end_time"])
        return start - dt.timedelta(minutes=self.settings.check_in_early_minutes), end

    @_serialized
    def public_check_in(self, booking_id: int, token: str | None) -> dict:
        self._sweep_quietly()
        booking = self._authorize_public(booking_id, token)
        if booking["status"] in TERMINAL_BOOKING_STATUSES:
            raise TerminalStateError(f"Booking is already {booking['status']}")
        if booking["status"] == "checked-in":
            raise ValidationError("Booking is already checked in")
        if booking["status"] != "confirmed":
            raise ValidationError("Only confirmed bookings can be checked in")
        opens, closes = self._check_in_window(booking)
        now = self._now()
        if now < opens:
            raise ValidationError(
                f"Check-in opens {self.settings.check_in_early_minutes} minutes before the booking starts"
            )
        if now > closes:
            raise ValidationError("Booking has already ended")
        self.update_booking_status(booking_id, "checked-in")
        return self.get_public_booking(booking_id, token)

    @_serialized
    def public_list_orders(self, booking_id: int, token: str | None) -> list[dict]:
        self._sweep_quietly()
        self._authorize_public(booking_id, token)
        return self.list_orders(booking_id=booking_id)

    @_serialized
    def public_place_order(
        self,
        booking_id: int,
        token: str | None,
        *,
        items: Sequence[dict],
        notes: str | None = None,
    ) -> dict:
        self._sweep_quietly()
        self._authorize_public(booking_id, token)
        return self.place_order(booking_id=booking_id, items=items, notes=notes)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def _merge_order_lines(self, items: Sequence[dict] | None) -> dict[int, int]:
        merged: dict[int, int] = {}
        for line in items or []:
            try:
                item_id = int(line["item_id"])
                quantity = int(line["quantity"])
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError("Each order line needs an item_id and a quantity") from exc
            if quantity <= 0:
                raise ValidationError("Quantity must be greater than zero")
            merged[item_id] = merged.get(item_id, 0) + quantity
        if not merged:
            raise ValidationError("An order needs at least one item")
        return merged

    @_serialized
    def place_order(
        self,
        *,
        booking_id: int,
        items: Sequence[dict],
        notes: str | None = None,
        require_checked_in: bool = True,
    ) -> dict:
        self._sweep_quietly()
        booking = self._get_booking_row(booking_id)
        if booking["status"] in TERMINAL_BOOKING_STATUSES:
            raise TerminalStateError(f"Booking is already {booking['status']}")
        if require_checked_in and booking["status"] != "checked-in":
            raise ValidationError("Orders can only be placed after checking in")
        if not require_checked_in and booking["status"] not in ("confirmed", "checked-in"):
            raise ValidationError("Orders can only be placed for active bookings")
        merged = self._merge_order_lines(items)

        with self._atomic():
            lines: list[tuple[int, str, float, int, float]] = []
            for item_id in sorted(merged):
                quantity = merged[item_id]
                item = self.conn.execute(
                    "SELECT * FROM inventory_items WHERE id = ?", (item_id,)
                ).fetchone()
                if not item:
                    raise NotFoundError(f"Inventory item {item_id} not found")
                if not item["is_active"]:
                    raise ValidationError(f"{item['name']} is not available")
                if item["item_type"] == "combo":
                    raise ValidationError(f"{item['name']} is a combo and is booked, not ordered")
                self._decrement_stock(item_id, quantity)
                lines.append(
                    (item_id, item["name"], item["price"], quantity, round(item["price"] * quantity, 2))
                )
            total = round(sum(line[4] for line in lines), 2)
            now = self._stamp()
            cur = self.conn.execute(
                """
                INSERT INTO orders(booking_id, status, total_amount, notes, ordered_at, updated_at)
                VALUES (?, 'pending', ?, ?, ?, ?)
                """,
                (booking_id, total, notes, now, now),
            )
            order_id = cur.lastrowid
            self.conn.executemany(
                """
                INSERT INTO order_items(order_id, item_id, name, price, quantity, subtotal)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(order_id, *line) for line in lines],
            )
            self._append_transaction(
                type="income",
                amount=total,
                source="order",
                description=f"Order #{order_id} for booking #{booking_id}",
                reference_id=order_id,
                reference_model="order",
                category="order",
            )
        return self.get_order(order_id)

    @_serialized
    def get_order(self, order_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if not row:
            raise NotFoundError("Order not found")
        row["items"] = self.conn.execute(
            "SELECT item_id, name, price, quantity, subtotal FROM order_items WHERE order_id = ? ORDER BY id",
            (order_id,),
        ).fetchall()
        return row

    @_serialized
    def list_orders(self, *, booking_id: int | None = None, status: str | None = None) -> list[dict]:
        params: list[Any] = []
        conditions: list[str] = []
        if booking_id is not None:
            conditions.append("booking_id = ?")
            params.append(booking_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(_require_choice(status, ORDER_STATUSES, "order status"))
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        rows = self.conn.execute(
            "SELECT id FROM orders" + where + " ORDER BY ordered_at DESC, id DESC",
            params,
        ).fetchall()
        return [self.get_order(row["id"]) for row in rows]

    @_serialized
    def update_order(
        self,
        order_id: int,
        *,
        status: str | None = None,
        notes: str | None = None,
        delivered_at: dt.datetime | str | None = None,
    ) -> dict:
        order = self.get_order(order_id)
        fields: dict[str, Any] = {}
        if status is not None:
            _require_choice(status, ORDER_STATUSES, "order status")
            current = order["status"]
            if status != current:
                if current in TERMINAL_ORDER_STATUSES:
                    raise TerminalStateError(f"Order is already {current}")
                if status != "cancelled" and ORDER_FLOW.index(status) < ORDER_FLOW.index(current):
                    raise TerminalStateError(f"Cannot move order from {current} back to {status}")
                fields["status"] = status
                if status == "delivered" and not order["delivered_at"] and delivered_at is None:
                    fields["delivered_at"] = self._stamp()
        if delivered_at is not None:
            fields["delivered_at"] = format_timestamp(delivered_at)
        if notes is not None:
            fields["notes"] = notes
        if fields:
            with self._atomic():
                self._update_row("orders", order_id, fields)
        return self.get_order(order_id)

    @_serialized
    def delete_order(self, order_id: int) -> dict:
        order = self.get_order(order_id)
        if order["status"] not in DELETABLE_ORDER_STATUSES:
            raise TerminalStateError("Only pending or cancelled orders can be deleted")
        with self._atomic():
            self.conn.execute("DELETE FROM orders WHERE id = ?", (order_id,))
        return order

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def _invoice_for(
        self, booking: dict, *, discount_amount: float = 0, discount_percent: float = 0
    ) -> dict:
        desk = self.get_desk(booking["desk_id"])
        combo = None
        if booking["combo_id"] is not None:
            combo = self.get_inventory_item(booking["combo_id"])
        invoice = calculate_invoice(
            start=booking["start_time"],
            end=booking["end_time"],
            hourly_rate=desk["hourly_rate"],
            orders=self.list_orders(booking_id=booking["id"]),
            combo_price=combo["price"] if combo else None,
            combo_name=combo["name"] if combo else None,
            desk_label=desk["label"],
            discount_amount=discount_amount,
            discount_percent=discount_percent,
        )
        invoice["booking_id"] = booking["id"]
        invoice["payment_status"] = booking["payment_status"]
        return invoice

    def _final_amount(self, booking: dict) -> float:
        """Desk or combo price plus every non-cancelled order, before discounts."""

        return self._invoice_for(booking)["subtotal"]

    @_serialized
    def get_invoice(
        self, booking_id: int, *, discount_amount: float = 0, discount_percent: float = 0
    ) -> dict:
        booking = self._get_booking_row(booking_id)
        return self._invoice_for(
            booking, discount_amount=discount_amount, discount_percent=discount_percent
        )

    def _mark_paid(
        self,
        booking: dict,
        *,
        final_total: float | None,
        discount_amount: float,
        discount_percent: float,
        created_by: str | None,
    ) -> dict:
        invoice = self._invoice_for(
            booking, discount_amount=discount_amount, discount_percent=discount_percent
        )
        if final_total is not None:
            invoice["final_total"] = round(_non_negative_number(final_total, "Final total"), 2)
        final = invoice["final_total"]
        self._update_row("bookings", booking["id"], {"total_amount": final, "payment_status": "paid"})
        drift = round(final - invoice["subtotal"], 2)
        if drift < 0:
            self._append_transaction(
                type="expense",
                amount=-drift,
                source="booking",
                description=f"Discount on booking #{booking['id']}",
                reference_id=booking["id"],
                reference_model="booking",
                category="discount",
                created_by=created_by,
            )
        elif drift > 0:
            self._append_transaction(
                type="income",
                amount=drift,
                source="booking",
                description=f"Billing adjustment on booking #{booking['id']}",
                reference_id=booking["id"],
                reference_model="booking",
                category="adjustment",
                created_by=created_by,
            )
        invoice["payment_status"] = "paid"
        return invoice

    @_serialized
    def mark_paid(
        self,
        booking_id: int,
        *,
        final_total: float | None = None,
        discount_amount: float = 0,
        discount_percent: float = 0,
        created_by: str | None = None,
    ) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["status"] == "cancelled":
            raise TerminalStateError("Cannot take payment for a cancelled booking")
        if booking["payment_status"] != "pending":
            raise ValidationError(f"Booking payment is already {booking['payment_status']}")
        with self._atomic():
            invoice = self._mark_paid(
                booking,
                final_total=final_total,
                discount_amount=discount_amount,
                discount_percent=discount_percent,
                created_by=created_by,
            )
        result = self.get_booking(booking_id)
        result["invoice"] = invoice
        return result

    @_serialized
    def refund(self, booking_id: int, *, created_by: str | None = None) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["payment_status"] != "paid":
            raise ValidationError("Only paid bookings can be refunded")
        with self._atomic():
            self._update_row("bookings", booking_id, {"payment_status": "refunded"})
            self._append_transaction(
                type="expense",
                amount=booking["total_amount"],
                source="booking",
                description=f"Refund for booking #{booking_id}",
                reference_id=booking_id,
                reference_model="booking",
                category="refund",
                created_by=created_by,
            )
        logger.info("Refunded booking %s (%.2f)", booking_id, booking["total_amount"])
        return self.get_booking(booking_id)

    @_serialized
    def checkout(
        self,
        booking_id: int,
        *,
        final_total: float | None = None,
        discount_amount: float = 0,
        discount_percent: float = 0,
        created_by: str | None = None,
    ) -> dict:
        booking = self._get_booking_row(booking_id)
        if booking["status"] in TERMINAL_BOOKING_STATUSES:
            raise TerminalStateError(f"Booking is already {booking['status']}")
        if booking["status"] not in ("confirmed", "checked-in"):
            raise ValidationError("Only confirmed or checked-in bookings can be checked out")
        with self._atomic():
            if booking["payment_status"] == "pending":
                invoice = self._mark_paid(
                    booking,
                    final_total=final_total,
                    discount_amount=discount_amount,
                    discount_percent=discount_percent,
                    created_by=created_by,
                )
            else:
                invoice = self._invoice_for(
                    booking, discount_amount=discount_amount, discount_percent=discount_percent
                )
            self._update_row(
                "bookings", booking_id, {"status": "completed", "completed_at": self._stamp()}
            )
            self._release_desk(booking["desk_id"])
        result = self.get_booking(booking_id)
        result["invoice"] = invoice
        return result

    # ------------------------------------------------------------------
    # Transaction journal
    # ------------------------------------------------------------------
    def _append_transaction(
        self,
        *,
        type: str,
        amount: float,
        source: str,
        description: str,
        reference_id: int | None = None,
        reference_model: str | None = None,
        category: str | None = None,
        date: dt.datetime | str | None = None,
        created_by: str | None = None,
    ) -> dict:
        cur = self.conn.execute(
            """
            INSERT INTO transactions(
                type, amount, source, description, reference_id, reference_model,
                category, date, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                type,
                round(float(amount), 2),
                source,
                description,
                reference_id,
                reference_model,
                category,
                format_timestamp(date) if date is not None else self._stamp(),
                created_by,
                self._stamp(),
            ),
        )
        return self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    @_serialized
    def record_transaction(
        self,
        *,
        type: str,
        amount: float,
        description: str,
        source: str = "other",
        reference_id: int | None = None,
        reference_model: str | None = None,
        category: str | None = None,
        date: dt.datetime | str | None = None,
        created_by: str | None = None,
    ) -> dict:
        _require_choice(type, TRANSACTION_TYPES, "transaction type")
        _require_choice(source, TRANSACTION_SOURCES, "transaction source")
        if reference_model is not None:
            _require_choice(reference_model, REFERENCE_MODELS, "reference model")
        if _non_negative_number(amount, "Amount") <= 0:
            raise ValidationError("Amount must be greater than zero")
        description = (description or "").strip()
        if not description:
            raise ValidationError("Description is required")
        with self._atomic():
            return self._append_transaction(
                type=type,
                amount=amount,
                source=source,
                description=description,
                reference_id=reference_id,
                reference_model=reference_model,
                category=category,
                date=date,
                created_by=created_by,
            )

    def _journal_filter(
        self, *, month: str | None, type: str | None = None, source: str | None = None
    ) -> tuple[str, list[Any]]:
        params: list[Any] = []
        conditions: list[str] = []
        if month is not None:
            try:
                first = dt.datetime.strptime(month, "%Y-%m").replace(tzinfo=dt.timezone.utc)
            except ValueError as exc:
                raise ValidationError("Month must look like YYYY-MM") from exc
            following = (first + dt.timedelta(days=32)).replace(day=1)
            conditions.append("date >= ? AND date < ?")
            params.extend([format_timestamp(first), format_timestamp(following)])
        if type is not None:
            conditions.append("type = ?")
            params.append(_require_choice(type, TRANSACTION_TYPES, "transaction type"))
        if source is not None:
            conditions.append("source = ?")
            params.append(_require_choice(source, TRANSACTION_SOURCES, "transaction source"))
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        return where, params

    @_serialized
    def list_transactions(
        self,
        *,
        month: str | None = None,
        type: str | None = None,
        source: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict]:
        where, params = self._journal_filter(month=month, type=type, source=source)
        query = "SELECT * FROM transactions" + where + " ORDER BY date DESC, id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([_non_negative_int(limit, "limit"), _non_negative_int(offset, "offset")])
        return self.conn.execute(query, params).fetchall()

    @_serialized
    def transaction_summary(self, *, month: str | None = None) -> dict:
        where, params = self._journal_filter(month=month)
        breakdown = self.conn.execute(
            """
            SELECT type, source, ROUND(SUM(amount), 2) AS total, COUNT(*) AS count
            FROM transactions
            {where}
            GROUP BY type, source
            ORDER BY type, source
            """.format(where=where),
            params,
        ).fetchall()
        income = round(sum(row["total"] for row in breakdown if row["type"] == "income"), 2)
        expenses = round(sum(row["total"] for row in breakdown if row["type"] == "expense"), 2)
        return {
            "month": month,
            "total_income": income,
            "total_expenses": expenses,
            "net_income": round(income - expenses, 2),
            "transaction_count": sum(row["count"] for row in breakdown),
            "breakdown": breakdown,
        }

    @_serialized
    def close(self) -> None:
        self.conn.close()
