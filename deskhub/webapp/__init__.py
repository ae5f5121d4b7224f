"""Flask application exposing the workspace system as a JSON API."""

from __future__ import annotations

import hmac
import logging
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from deskhub.workspace.clock import Clock
from deskhub.workspace.config import Settings
from deskhub.workspace.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkspaceError,
)
from deskhub.workspace.system import WorkspaceSystem

logger = logging.getLogger(__name__)

STATUS_CODES = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthorizationError, 401),
    (ValidationError, 400),
)


def _status_for(exc: WorkspaceError) -> int:
    for error_class, code in STATUS_CODES:
        if isinstance(exc, error_class):
            return code
    return 400


def _body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def create_app(
    database_path: str | None = None,
    *,
    settings: Settings | None = None,
    clock: Clock | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.json.sort_keys = False

    system = WorkspaceSystem(
        database_path or settings.database_path, settings=settings, clock=clock
    )
    app.extensions["workspace"] = system

    @app.errorhandler(WorkspaceError)
    def handle_workspace_error(exc: WorkspaceError) -> Any:
        return jsonify({"error": str(exc)}), _status_for(exc)

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.before_request
    def require_admin_key() -> None:
        path = request.path
        if not path.startswith("/api/") or path.startswith("/api/public/"):
            return
        expected = settings.admin_api_key
        provided = request.headers.get("X-API-Key", "")
        if not expected or not hmac.compare_digest(provided, expected):
            raise AuthorizationError("Admin API key required")

    @app.get("/health")
    def health() -> Any:
        return jsonify({"status": "ok", "schema_version": system.schema_version})

    # Desks -------------------------------------------------------------
    @app.get("/api/desks")
    def list_desks() -> Any:
        return jsonify(system.list_desks(status=request.args.get("status")))

    @app.post("/api/desks")
    def create_desk() -> Any:
        data = _body()
        desk = system.create_desk(
            label=data.get("label", ""),
            hourly_rate=data.get("hourly_rate", 10),
            location=data.get("location"),
            description=data.get("description"),
            status=data.get("status", "available"),
        )
        return jsonify(desk), 201

    @app.get("/api/desks/<int:desk_id>")
    def get_desk(desk_id: int) -> Any:
        return jsonify(system.get_desk(desk_id))

    @app.patch("/api/desks/<int:desk_id>")
    def update_desk(desk_id: int) -> Any:
        data = _body()
        desk = system.update_desk(
            desk_id,
            label=data.get("label"),
            status=data.get("status"),
            hourly_rate=data.get("hourly_rate"),
            location=data.get("location"),
            description=data.get("description"),
        )
        return jsonify(desk)

    # Inventory ---------------------------------------------------------
    @app.get("/api/inventory")
    def list_inventory() -> Any:
        items = system.list_inventory_items(
            category=request.args.get("category"),
            item_type=request.args.get("type"),
            low_stock_only=_flag("low_stock"),
            active_only=_flag("active"),
        )
        return jsonify(items)

    @app.post("/api/inventory")
    def create_inventory_item() -> Any:
        data = _body()
        item = system.add_inventory_item(
            sku=data.get("sku", ""),
            name=data.get("name", ""),
            category=data.get("category"),
            price=data.get("price"),
            quantity=data.get("quantity", 0),
            unit=data.get("unit", "pcs"),
            item_type=data.get("type"),
            description=data.get("description"),
            low_stock_threshold=data.get("low_stock_threshold", 5),
            image_url=data.get("image_url"),
            duration=data.get("duration"),
            included_items=data.get("included_items"),
            is_active=data.get("is_active", True),
        )
        return jsonify(item), 201

    @app.get("/api/inventory/<int:item_id>")
    def get_inventory_item(item_id: int) -> Any:
        return jsonify(system.get_inventory_item(item_id))

    @app.patch("/api/inventory/<int:item_id>")
    def update_inventory_item(item_id: int) -> Any:
        data = _body()
        item = system.update_inventory_item(
            item_id,
            name=data.get("name"),
            category=data.get("category"),
            item_type=data.get("type"),
            price=data.get("price"),
            unit=data.get("unit"),
            description=data.get("description"),
            low_stock_threshold=data.get("low_stock_threshold"),
            image_url=data.get("image_url"),
            is_active=data.get("is_active"),
            duration=data.get("duration"),
            included_items=data.get("included_items"),
        )
        return jsonify(item)

    @app.post("/api/inventory/<int:item_id>/stock")
    def adjust_stock(item_id: int) -> Any:
        data = _body()
        item = system.adjust_stock(item_id, data.get("amount"), data.get("mode", "add"))
        return jsonify(item)

    # Bookings ----------------------------------------------------------
    @app.get("/api/bookings")
    def list_bookings() -> Any:
        bookings = system.list_bookings(
            status=request.args.get("status"),
            desk_id=request.args.get("desk_id", type=int),
            start_date=request.args.get("start"),
            end_date=request.args.get("end"),
            limit=request.args.get("limit", type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify(bookings)

    @app.post("/api/bookings")
    def create_booking() -> Any:
        data = _body()
        booking = system.create_booking(
            desk_id=data.get("desk_id"),
            customer=data.get("customer"),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            combo_id=data.get("combo_id"),
            status=data.get("status"),
            payment_status=data.get("payment_status"),
            notes=data.get("notes"),
            created_by=data.get("created_by"),
        )
        return jsonify(booking), 201

    @app.get("/api/bookings/<int:booking_id>")
    def get_booking(booking_id: int) -> Any:
        return jsonify(system.get_booking(booking_id))

    @app.patch("/api/bookings/<int:booking_id>")
    def update_booking(booking_id: int) -> Any:
        data = _body()
        booking = None
        if any(key in data for key in ("start_time", "end_time", "desk_id")):
            booking = system.reschedule_booking(
                booking_id,
                start_time=data.get("start_time"),
                end_time=data.get("end_time"),
                desk_id=data.get("desk_id"),
            )
        if "customer" in data or "notes" in data:
            booking = system.update_booking_details(
                booking_id, customer=data.get("customer"), notes=data.get("notes")
            )
        if "status" in data:
            booking = system.update_booking_status(
                booking_id, data["status"], created_by=data.get("created_by")
            )
        if booking is None:
            booking = system.get_booking(booking_id)
        return jsonify(booking)

    @app.delete("/api/bookings/<int:booking_id>")
    def cancel_booking(booking_id: int) -> Any:
        return jsonify(system.cancel_booking(booking_id))

    @app.post("/api/bookings/<int:booking_id>/token")
    def regenerate_token(booking_id: int) -> Any:
        return jsonify(system.issue_public_token(booking_id))

    @app.get("/api/bookings/<int:booking_id>/invoice")
    def get_invoice(booking_id: int) -> Any:
        invoice = system.get_invoice(
            booking_id,
            discount_amount=request.args.get("discount_amount", 0, type=float),
            discount_percent=request.args.get("discount_percent", 0, type=float),
        )
        return jsonify(invoice)

    @app.post("/api/bookings/<int:booking_id>/payment")
    def mark_paid(booking_id: int) -> Any:
        data = _body()
        booking = system.mark_paid(
            booking_id,
            final_total=data.get("final_total"),
            discount_amount=data.get("discount_amount", 0),
            discount_percent=data.get("discount_percent", 0),
            created_by=data.get("created_by"),
        )
        return jsonify(booking)

    @app.post("/api/bookings/<int:booking_id>/refund")
    def refund(booking_id: int) -> Any:
        data = _body()
        return jsonify(system.refund(booking_id, created_by=data.get("created_by")))

    @app.post("/api/bookings/<int:booking_id>/checkout")
    def checkout(booking_id: int) -> Any:
        data = _body()
        booking = system.checkout(
            booking_id,
            final_total=data.get("final_total"),
            discount_amount=data.get("discount_amount", 0),
            discount_percent=data.get("discount_percent", 0),
            created_by=data.get("created_by"),
        )
        return jsonify(booking)

    # Orders ------------------------------------------------------------
    @app.get("/api/orders")
    def list_orders() -> Any:
        orders = system.list_orders(
            booking_id=request.args.get("booking_id", type=int),
            status=request.args.get("status"),
        )
        return jsonify(orders)

    @app.post("/api/orders")
    def place_order() -> Any:
        data = _body()
        order = system.place_order(
            booking_id=data.get("booking_id"),
            items=data.get("items") or [],
            notes=data.get("notes"),
            require_checked_in=False,
        )
        return jsonify(order), 201

    @app.get("/api/orders/<int:order_id>")
    def get_order(order_id: int) -> Any:
        return jsonify(system.get_order(order_id))

    @app.patch("/api/orders/<int:order_id>")
    def update_order(order_id: int) -> Any:
        data = _body()
        order = system.update_order(
            order_id,
            status=data.get("status"),
            notes=data.get("notes"),
            delivered_at=data.get("delivered_at"),
        )
        return jsonify(order)

    @app.delete("/api/orders/<int:order_id>")
    def delete_order(order_id: int) -> Any:
        system.delete_order(order_id)
        return jsonify({"deleted": order_id})

    # Transactions ------------------------------------------------------
    @app.get("/api/transactions")
    def list_transactions() -> Any:
        transactions = system.list_transactions(
            month=request.args.get("month"),
            type=request.args.get("type"),
            source=request.args.get("source"),
            limit=request.args.get("limit", type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify(transactions)

    @app.post("/api/transactions")
    def record_transaction() -> Any:
        data = _body()
        entry = system.record_transaction(
            type=data.get("type"),
            amount=data.get("amount"),
            description=data.get("description", ""),
            source=data.get("source", "other"),
            reference_id=data.get("reference_id"),
            reference_model=data.get("reference_model"),
            category=data.get("category"),
            date=data.get("date"),
            created_by=data.get("created_by"),
        )
        return jsonify(entry), 201

    @app.get("/api/transactions/summary")
    def transaction_summary() -> Any:
        return jsonify(system.transaction_summary(month=request.args.get("month")))

    # Public ------------------------------------------------------------
    @app.get("/api/public/inventory")
    def public_inventory() -> Any:
        return jsonify(system.list_orderable_items(category=request.args.get("category")))

    @app.get("/api/public/bookings/<int:booking_id>")
    def public_booking(booking_id: int) -> Any:
        return jsonify(system.get_public_booking(booking_id, request.args.get("t")))

    @app.patch("/api/public/bookings/<int:booking_id>")
    def public_booking_action(booking_id: int) -> Any:
        data = _body()
        if data.get("action") != "check-in":
            raise ValidationError("Unsupported action")
        return jsonify(system.public_check_in(booking_id, request.args.get("t")))

    @app.get("/api/public/bookings/<int:booking_id>/orders")
    def public_orders(booking_id: int) -> Any:
        return jsonify(system.public_list_orders(booking_id, request.args.get("t")))

    @app.post("/api/public/bookings/<int:booking_id>/orders")
    def public_place_order(booking_id: int) -> Any:
        data = _body()
        order = system.public_place_order(
            booking_id,
            request.args.get("t"),
            items=data.get("items") or [],
            notes=data.get("notes"),
        )
        return jsonify(order), 201

    return app
