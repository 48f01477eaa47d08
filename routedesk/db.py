from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, List

from flask import Flask, g, has_app_context
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from .config import Settings, load_settings

_logger = logging.getLogger(__name__)

DB_POOL: pool.ThreadedConnectionPool | None = None
_settings: Settings | None = None
_local_db: ContextVar[Any] = ContextVar("routedesk_db", default=None)

Params = List[Any] | tuple[Any, ...] | None

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT,
        display_name TEXT,
        phone_number TEXT,
        student_id TEXT,
        photo_url TEXT,
        roles TEXT[] DEFAULT '{}',
        permissions TEXT[] DEFAULT '{}',
        email_verified BOOLEAN DEFAULT FALSE,
        vendor_id BIGINT,
        created_at TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id BIGSERIAL PRIMARY KEY,
        active BOOLEAN DEFAULT FALSE,
        image_url TEXT,
        address TEXT,
        payment_responsible INTEGER DEFAULT 1,
        name TEXT,
        social_name TEXT,
        rfc TEXT,
        address_number TEXT,
        address2 TEXT,
        address3 TEXT,
        zip TEXT,
        city TEXT,
        state TEXT,
        force_stop_points BOOLEAN DEFAULT TRUE,
        force_route BOOLEAN DEFAULT TRUE,
        force_round BOOLEAN DEFAULT TRUE,
        website TEXT,
        phone_number TEXT,
        primary_contact TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS routes (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL,
        name TEXT,
        description TEXT,
        active BOOLEAN DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stop_points (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL,
        route_id BIGINT NOT NULL,
        name TEXT,
        round1 TEXT,
        round2 TEXT,
        latitude REAL,
        longitude REAL,
        position INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS route_assignments (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL,
        route_id BIGINT NOT NULL,
        active BOOLEAN DEFAULT FALSE,
        ac_required BOOLEAN DEFAULT FALSE,
        is_sunday BOOLEAN DEFAULT FALSE,
        is_monday BOOLEAN DEFAULT TRUE,
        is_tuesday BOOLEAN DEFAULT TRUE,
        is_wednesday BOOLEAN DEFAULT TRUE,
        is_thursday BOOLEAN DEFAULT TRUE,
        is_friday BOOLEAN DEFAULT TRUE,
        is_saturday BOOLEAN DEFAULT FALSE,
        program TEXT,
        round TEXT,
        stop_begin_id BIGINT,
        stop_begin_name TEXT,
        stop_begin_hour TEXT,
        stop_end_id BIGINT,
        stop_end_name TEXT,
        stop_end_hour TEXT,
        time TIMESTAMP,
        type TEXT,
        customer_name TEXT,
        vendor_name TEXT,
        vendor_id BIGINT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vehicle_assignments (
        id BIGSERIAL PRIMARY KEY,
        customer_id BIGINT NOT NULL,
        route_id BIGINT NOT NULL,
        assignment_id BIGINT NOT NULL,
        vendor_id BIGINT NOT NULL,
        vehicle_id BIGINT,
        vehicle_name TEXT,
        vehicle_capacity INTEGER,
        driver_id BIGINT,
        driver_name TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS boarding_passes (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT,
        customer_id BIGINT,
        customer_name TEXT,
        vendor_id BIGINT,
        route_id BIGINT,
        route_name TEXT,
        operation_type TEXT,
        round TEXT,
        status TEXT,
        category TEXT,
        created_at TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vendors (
        id BIGSERIAL PRIMARY KEY,
        name TEXT,
        active BOOLEAN DEFAULT TRUE,
        social_name TEXT,
        rfc TEXT,
        phone_number TEXT,
        email TEXT,
        primary_contact TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS drivers (
        id BIGSERIAL PRIMARY KEY,
        vendor_id BIGINT NOT NULL,
        display_name TEXT,
        email TEXT,
        phone_number TEXT,
        license_number TEXT,
        active BOOLEAN DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vehicles (
        id BIGSERIAL PRIMARY KEY,
        vendor_id BIGINT NOT NULL,
        name TEXT,
        plate TEXT,
        capacity INTEGER,
        active BOOLEAN DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS programs (
        id BIGSERIAL PRIMARY KEY,
        program_date DATE NOT NULL,
        assignment_id BIGINT,
        program TEXT,
        customer_id BIGINT,
        customer_name TEXT,
        route_id BIGINT,
        route_name TEXT,
        vendor_id BIGINT,
        vendor_name TEXT,
        round TEXT,
        vehicle_id BIGINT,
        vehicle_name TEXT,
        vehicle_capacity INTEGER,
        driver_id BIGINT,
        driver_name TEXT,
        begin_hour TEXT,
        time TIMESTAMP,
        stop_end_name TEXT,
        type TEXT,
        created_at TIMESTAMP DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS programs_program_date_idx ON programs (program_date)",
    "CREATE INDEX IF NOT EXISTS route_assignments_route_idx ON route_assignments (route_id, vendor_id)",
    "CREATE INDEX IF NOT EXISTS vehicle_assignments_assignment_idx ON vehicle_assignments (assignment_id)",
]


def init_app(app: Flask, settings: Settings) -> None:
    global _settings
    _settings = settings
    app.teardown_appcontext(close_db)


def get_db_pool() -> pool.ThreadedConnectionPool:
    global DB_POOL, _settings
    if DB_POOL is None:
        if _settings is None:
            _settings = load_settings()
        DB_POOL = pool.ThreadedConnectionPool(
            minconn=_settings.pool_min,
            maxconn=_settings.pool_max,
            dsn=_settings.database_url,
        )
    return DB_POOL


def _release(db) -> None:
    try:
        db.rollback()
    except Exception:
        _logger.exception("Rollback failed while returning a connection")
    get_db_pool().putconn(db)


def get_db():
    local = _local_db.get()
    if local is not None:
        return local
    if not has_app_context():
        raise RuntimeError("No database connection outside an app context; use db.connection()")
    if "db" not in g:
        g.db = get_db_pool().getconn()
    return g.db


@contextmanager
def connection():
    """Pooled connection for code running outside a request (ReactPy handlers).

    Queries made inside the block use it. On exit it is rolled back and
    returned to the pool. Inside an app context or an enclosing block the
    current connection is reused.
    """
    if _local_db.get() is not None or has_app_context():
        yield get_db()
        return
    db = get_db_pool().getconn()
    token = _local_db.set(db)
    try:
        yield db
    finally:
        _local_db.reset(token)
        _release(db)


def close_db(exc: Exception | None) -> None:
    db = g.pop("db", None)
    if db is not None:
        _release(db)


def ensure_column(db, table: str, column: str, col_type: str) -> None:
    with db.cursor() as cursor:
        cursor.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {col_type}")


def init_db(db) -> None:
    with db.cursor() as cursor:
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)

    ensure_column(db, "users", "vendor_id", "BIGINT")
    ensure_column(db, "vehicle_assignments", "vehicle_capacity", "INTEGER")
    ensure_column(db, "programs", "stop_end_name", "TEXT")

    db.commit()


def maybe_init_db_on_startup(settings: Settings) -> None:
    """Create or upgrade the schema once at process startup.

    Schema changes never run on the request path. To run once, set
    RUN_DB_INIT=1, restart the app, then set RUN_DB_INIT=0 again.
    """
    if not settings.run_db_init:
        return

    db = None
    try:
        db = get_db_pool().getconn()
        init_db(db)
        _logger.info("Database schema initialized")
    finally:
        if db is not None:
            _release(db)


def _to_postgres_placeholders(query: str) -> str:
    return query.replace("?", "%s")


def fetch_one(query: str, params: Params = None) -> Dict[str, Any] | None:
    with get_db().cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(_to_postgres_placeholders(query), params)
        row = cursor.fetchone()
        return dict(row) if row is not None else None


def fetch_all_rows(query: str, params: Params = None) -> List[Dict[str, Any]]:
    with get_db().cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(_to_postgres_placeholders(query), params)
        return [dict(row) for row in cursor.fetchall()]


def execute_sql(query: str, params: Params = None) -> int:
    with get_db().cursor() as cursor:
        cursor.execute(_to_postgres_placeholders(query), params)
        return cursor.rowcount


def execute_returning(query: str, params: Params = None) -> Any:
    with get_db().cursor() as cursor:
        cursor.execute(_to_postgres_placeholders(query), params)
        row = cursor.fetchone()
        return row[0] if row else None


def commit() -> None:
    get_db().commit()


def rollback() -> None:
    get_db().rollback()
