"""Database utilities for the guesthouse management platform."""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any, Iterator


SCHEMA_VERSION = 1

TENANT_TABLES = ("rooms", "customers", "bookings", "payments", "expenses", "settings")


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults."""

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def to_db_timestamp(value: dt.datetime) -> str:
    """Serialise a datetime as a fixed-width UTC ISO string.

    Naive datetimes are taken to be UTC. Every stored timestamp has the same
    width and offset so that string comparison in SQL is chronological.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> dt.datetime:
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            api_key TEXT UNIQUE,
            name TEXT,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS organizations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            slug TEXT NOT NULL,
            business_type TEXT,
            subscription_plan TEXT NOT NULL DEFAULT 'BASIC',
            subscription_status TEXT NOT NULL DEFAULT 'ACTIVE',
            max_rooms INTEGER NOT NULL,
            max_users INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS organization_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            role TEXT NOT NULL DEFAULT 'STAFF',
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(organization_id, user_id),
            FOREIGN KEY(organization_id) REFERENCES organizations(id),
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS user_profiles (
            user_id INTEGER PRIMARY KEY,
            current_organization_id INTEGER,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(user_id) REFERENCES users(id),
            FOREIGN KEY(current_organization_id) REFERENCES organizations(id)
        );

        CREATE TABLE IF NOT EXISTS settings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER UNIQUE NOT NULL,
            business_name TEXT NOT NULL,
            currency TEXT NOT NULL DEFAULT 'LKR',
            timezone TEXT NOT NULL DEFAULT 'UTC',
            default_ac_hourly_rate REAL DEFAULT 0,
            default_ac_daily_rate REAL DEFAULT 0,
            default_nonac_hourly_rate REAL DEFAULT 0,
            default_nonac_daily_rate REAL DEFAULT 0,
            tax_percentage REAL,
            service_charge_percentage REAL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(organization_id) REFERENCES organizations(id)
        );

        CREATE TABLE IF NOT EXISTS rooms (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER NOT NULL,
            room_name TEXT NOT NULL,
            room_type TEXT NOT NULL DEFAULT 'NON_AC',
            hourly_rate REAL NOT NULL DEFAULT 0,
            daily_rate REAL NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'AVAILABLE',
            maintenance_notes TEXT,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(organization_id) REFERENCES organizations(id)
        );

        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            phone_number TEXT NOT NULL,
            email TEXT,
            visit_count INTEGER DEFAULT 0,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(organization_id) REFERENCES organizations(id)
        );

        CREATE TABLE IF NOT EXISTS bookings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER NOT NULL,
            room_id INTEGER NOT NULL,
            customer_id INTEGER NOT NULL,
            check_in_date TEXT NOT NULL,
            check_out_date TEXT NOT NULL,
            duration_type TEXT NOT NULL,
            duration_value INTEGER NOT NULL,
            room_rate REAL NOT NULL,
            base_price REAL NOT NULL,
            tax_amount REAL NOT NULL DEFAULT 0,
            service_charge REAL NOT NULL DEFAULT 0,
            subtotal REAL NOT NULL,
            advance_paid REAL NOT NULL DEFAULT 0,
            balance REAL NOT NULL,
            payment_status TEXT NOT NULL DEFAULT 'PENDING',
            payment_method TEXT,
            booking_source TEXT NOT NULL DEFAULT 'WALKIN',
            notes TEXT,
            status TEXT NOT NULL DEFAULT 'ACTIVE',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(organization_id) REFERENCES organizations(id),
            FOREIGN KEY(room_id) REFERENCES rooms(id),
            FOREIGN KEY(customer_id) REFERENCES customers(id)
        );

        CREATE INDEX IF NOT EXISTS idx_bookings_room_interval
            ON bookings(room_id, status, check_in_date, check_out_date);

        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER NOT NULL,
            booking_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            payment_date TEXT NOT NULL,
            payment_method TEXT NOT NULL,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(organization_id) REFERENCES organizations(id),
            FOREIGN KEY(booking_id) REFERENCES bookings(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organization_id INTEGER NOT NULL,
            category TEXT NOT NULL,
            amount REAL NOT NULL,
            expense_date TEXT NOT NULL,
            description TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(organization_id) REFERENCES organizations(id)
        );
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
    conn.commit()


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


class DataStore:
    """Row-level access to the tenant tables.

    This is the storage collaborator handed to the pricing engine and the
    tenancy helpers. It knows nothing about organizations beyond filtering on
    the ``organization_id`` column; scoping decisions live in
    :mod:`guesthouse.hotel.tenancy`.

    A database file gets one connection per thread, so ``BEGIN IMMEDIATE``
    in :meth:`transaction` takes SQLite's write lock and concurrent writers
    queue on ``busy_timeout``. An in-memory database, or a connection passed
    in directly, is a single shared connection meant for tests and scripts;
    its transactions only serialize against each other, through a
    re-entrant lock.
    """

    def __init__(self, source: sqlite3.Connection | str | Path) -> None:
        self._local = threading.local()
        self._registry_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._connections: list[sqlite3.Connection] = []
        self._columns: dict[str, set[str]] = {}
        if isinstance(source, sqlite3.Connection):
            self._path = None
            self._shared: sqlite3.Connection | None = source
        elif str(source) == ":memory:":
            self._path = None
            self._shared = get_connection(source)
            self._connections.append(self._shared)
        else:
            self._path = source
            self._shared = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = get_connection(self._path)
            self._local.conn = conn
            with self._registry_lock:
                self._connections.append(conn)
        return conn

    @property
    def _transaction_depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @_transaction_depth.setter
    def _transaction_depth(self, value: int) -> None:
        self._local.depth = value

    def release(self) -> None:
        """Close the calling thread's connection to a database file."""

        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._registry_lock:
            self._connections.remove(conn)
        conn.close()

    def close(self) -> None:
        with self._registry_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()

    def _table_columns(self, table: str) -> set[str]:
        if table not in TENANT_TABLES:
            raise ValueError(f"Unknown table: {table}")
        if table not in self._columns:
            rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[table] = {row["name"] for row in rows}
        return self._columns[table]

    def _check_columns(self, table: str, names: Any) -> None:
        unknown = set(names) - self._table_columns(table)
        if unknown:
            raise ValueError(f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")

    def _commit(self) -> None:
        if not self._transaction_depth:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the database write lock for the duration of the block."""

        if self._transaction_depth:
            self._transaction_depth += 1
            try:
                yield self.conn
            finally:
                self._transaction_depth -= 1
            return
        guard = self._write_lock if self._shared is not None else nullcontext()
        with guard:
            conn = self.conn
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN IMMEDIATE")
            self._transaction_depth = 1
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            else:
                conn.commit()
            finally:
                self._transaction_depth = 0

    def get(self, table: str, record_id: int) -> dict | None:
        self._table_columns(table)
        return self.conn.execute(
            f"SELECT * FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        filters = filters or {}
        self._check_columns(table, filters)
        params: list[Any] = []
        conditions: list[str] = []
        for column, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                placeholders = ",".join("?" for _ in value)
                conditions.append(f"{column} IN ({placeholders})")
                params.extend(value)
            else:
                conditions.append(f"{column} = ?")
                params.append(value)
        query = f"SELECT * FROM {table}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        if order_by:
            column, _, direction = order_by.partition(" ")
            self._check_columns(table, [column])
            direction = direction.strip().upper() or "ASC"
            if direction not in ("ASC", "DESC"):
                raise ValueError(f"Invalid sort direction: {direction}")
            query += f" ORDER BY {column} {direction}, id {direction}"
        return self.conn.execute(query, params).fetchall()

    def insert(self, table: str, values: dict[str, Any]) -> dict:
        self._check_columns(table, values)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        cur = self.conn.execute(
            f"INSERT INTO {table}({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        self._commit()
        return self.get(table, cur.lastrowid)

    def update(self, table: str, record_id: int, values: dict[str, Any]) -> dict | None:
        if values:
            self._check_columns(table, values)
            assignments = ", ".join(f"{column} = ?" for column in values)
            self.conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*values.values(), record_id),
            )
            self._commit()
        return self.get(table, record_id)

    def delete(self, table: str, record_id: int) -> None:
        self._table_columns(table)
        self.conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        self._commit()

    def fetch_overlapping_reservations(
        self,
        tenant_id: int,
        room_id: int,
        start: dt.datetime,
        end: dt.datetime,
        status: str = "ACTIVE",
    ) -> list[dict]:
        """Return reservations of a room that intersect ``[start, end)``."""

        rows = self.conn.execute(
            """
            SELECT id, check_in_date, check_out_date
            FROM bookings
            WHERE organization_id = ?
              AND room_id = ?
              AND status = ?
              AND check_in_date < ?
              AND check_out_date > ?
            ORDER BY check_in_date
            """,
            (tenant_id, room_id, status, to_db_timestamp(end), to_db_timestamp(start)),
        ).fetchall()
        return [
            {
                "id": row["id"],
                "check_in": from_db_timestamp(row["check_in_date"]),
                "check_out": from_db_timestamp(row["check_out_date"]),
            }
            for row in rows
        ]
