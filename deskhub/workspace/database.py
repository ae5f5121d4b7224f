"""Database utilities for the DeskHub co-working platform."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


SCHEMA_VERSION = 1

ACTIVE_BOOKING_STATUSES = "('pending', 'confirmed', 'checked-in')"


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    The connection runs in autocommit mode; grouped writes go through
    :func:`transaction`.
    """

    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one write transaction.

    Nested use joins the outer transaction.
    """

    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS desks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            label TEXT UNIQUE NOT NULL,
            status TEXT NOT NULL DEFAULT 'available'
                CHECK (status IN ('available', 'occupied', 'reserved', 'maintenance')),
            hourly_rate REAL NOT NULL DEFAULT 10 CHECK (hourly_rate >= 0),
            location TEXT,
            description TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS inventory_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sku TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            category TEXT NOT NULL
                CHECK (category IN ('food', 'beverage', 'merchandise', 'office-supplies', 'combo')),
            item_type TEXT NOT NULL DEFAULT 'item' CHECK (item_type IN ('item', 'combo')),
            price REAL NOT NULL CHECK (price >= 0),
            quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
            unit TEXT NOT NULL DEFAULT 'pcs',
            low_stock_threshold INTEGER NOT NULL DEFAULT 5,
            image_url TEXT,
            duration REAL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS combo_items (
            combo_id INTEGER NOT NULL,
            item_id INTEGER NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1 CHECK (quantity >= 1),
            PRIMARY KEY (combo_id, item_id),
            FOREIGN KEY(combo_id) REFERENCES inventory_items(id) ON DELETE CASCADE,
            FOREIGN KEY(item_id) REFERENCES inventory_items(id)
        );

        CREATE TABLE IF NOT EXISTS bookings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            desk_id INTEGER NOT NULL,
            customer_name TEXT NOT NULL,
            customer_email TEXT,
            customer_phone TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'confirmed'
                CHECK (status IN ('pending', 'confirmed', 'checked-in', 'completed', 'cancelled')),
            payment_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (payment_status IN ('pending', 'paid', 'refunded')),
            total_amount REAL NOT NULL DEFAULT 0,
            combo_id INTEGER,
            notes TEXT,
            public_token TEXT,
            public_token_expires_at TEXT,
            checked_in_at TEXT,
            completed_at TEXT,
            created_by TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            CHECK (end_time > start_time),
            FOREIGN KEY(desk_id) REFERENCES desks(id),
            FOREIGN KEY(combo_id) REFERENCES inventory_items(id)
        );

        CREATE INDEX IF NOT EXISTS idx_bookings_desk_window
            ON bookings(desk_id, start_time, end_time);

        CREATE TRIGGER IF NOT EXISTS bookings_no_overlap_insert
        BEFORE INSERT ON bookings
        WHEN NEW.status IN {ACTIVE_BOOKING_STATUSES}
        BEGIN
            SELECT RAISE(ABORT, 'desk already booked')
            WHERE EXISTS (
                SELECT 1 FROM bookings
                WHERE desk_id = NEW.desk_id
                  AND status IN {ACTIVE_BOOKING_STATUSES}
                  AND start_time < NEW.end_time
                  AND end_time > NEW.start_time
            );
        END;

        CREATE TRIGGER IF NOT EXISTS bookings_no_overlap_update
        BEFORE UPDATE OF desk_id, start_time, end_time, status ON bookings
        WHEN NEW.status IN {ACTIVE_BOOKING_STATUSES}
        BEGIN
            SELECT RAISE(ABORT, 'desk already booked')
            WHERE EXISTS (
                SELECT 1 FROM bookings
                WHERE desk_id = NEW.desk_id
                  AND id != NEW.id
                  AND status IN {ACTIVE_BOOKING_STATUSES}
                  AND start_time < NEW.end_time
                  AND end_time > NEW.start_time
            );
        END;

        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'confirmed', 'preparing', 'ready', 'delivered', 'cancelled')),
            total_amount REAL NOT NULL DEFAULT 0,
            notes TEXT,
            delivered_at TEXT,
            ordered_at TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id)
        );

        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL,
            item_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            price REAL NOT NULL,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            subtotal REAL NOT NULL,
            FOREIGN KEY(order_id) REFERENCES orders(id) ON DELETE CASCADE,
            FOREIGN KEY(item_id) REFERENCES inventory_items(id)
        );

        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL CHECK (type IN ('income', 'expense')),
            amount REAL NOT NULL CHECK (amount >= 0),
            source TEXT NOT NULL
                CHECK (source IN ('booking', 'order', 'inventory', 'maintenance', 'utilities', 'other')),
            description TEXT NOT NULL,
            reference_id INTEGER,
            reference_model TEXT,
            category TEXT,
            date TEXT NOT NULL,
            created_by TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date);
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default
