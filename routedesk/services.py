"""Collection services.

Thin wrappers over the database, one function per query the views need.
Every write commits and then publishes the collection on the live feed so
subscribed views re-read.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, List

from . import db
from .exceptions import NotFoundError, ValidationFailed
from .forms import entity_def, is_blank, parse_date, route_assignment_submission, sanitize_payload, validate
from .live import feed

_logger = logging.getLogger(__name__)

ORDER_BY = {
    "accounts": "name, id",
    "routes": "name, id",
    "stop_points": "position, id",
    "route_assignments": "time, id",
    "vendors": "name, id",
    "drivers": "display_name, id",
    "vehicles": "name, id",
    "vehicle_assignments": "id",
    "programs": "time NULLS LAST, id",
}

USER_FIELDS = [
    "email",
    "password_hash",
    "display_name",
    "phone_number",
    "student_id",
    "photo_url",
    "roles",
    "permissions",
    "email_verified",
    "vendor_id",
]


def _publish(collection: str, action: str, item_id: Any = None) -> None:
    feed.publish(collection, action=action, id=item_id)


@contextmanager
def _transaction():
    """Commit on success, roll back on error."""
    try:
        yield
    except Exception:
        db.rollback()
        raise
    db.commit()


def fetch_all(
    collection: str,
    where: str | None = None,
    params: List[Any] | None = None,
    order_by: str | None = None,
) -> List[Dict[str, Any]]:
    entity_def(collection)
    query = f"SELECT * FROM {collection}"
    if where:
        query += f" WHERE {where}"
    query += f" ORDER BY {order_by or ORDER_BY.get(collection, 'id')}"
    return db.fetch_all_rows(query, params)


def fetch_by_id(collection: str, item_id: Any) -> Dict[str, Any] | None:
    entity_def(collection)
    return db.fetch_one(f"SELECT * FROM {collection} WHERE id = ?", (item_id,))


def get_required(collection: str, item_id: Any) -> Dict[str, Any]:
    record = fetch_by_id(collection, item_id)
    if record is None:
        raise NotFoundError(collection, item_id)
    return record


def _validated(collection: str, payload: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    data = sanitize_payload(collection, payload, partial=partial)
    errors = validate(collection, data)
    if partial:
        errors = {name: message for name, message in errors.items() if name in data}
    if errors:
        raise ValidationFailed(errors)
    return data


def insert_entity(collection: str, payload: Dict[str, Any]) -> int:
    data = _validated(collection, payload, partial=False)
    columns = ", ".join(data.keys())
    placeholders = ", ".join("%s" for _ in data)
    with _transaction():
        item_id = db.execute_returning(
            f"INSERT INTO {collection} ({columns}) VALUES ({placeholders}) RETURNING id",
            list(data.values()),
        )
    _publish(collection, "created", item_id)
    return item_id


def update_entity(
    collection: str,
    item_id: Any,
    payload: Dict[str, Any],
    partial: bool = False,
    scope: Dict[str, Any] | None = None,
) -> None:
    """Update one row; ``scope`` adds ``column = value`` conditions the row must meet."""
    data = _validated(collection, payload, partial=partial)
    if not data:
        return
    scope = scope or {}
    assignments = ", ".join(f"{key} = %s" for key in data)
    conditions = "".join(f" AND {key} = %s" for key in scope)
    with _transaction():
        updated = db.execute_sql(
            f"UPDATE {collection} SET {assignments} WHERE id = %s{conditions}",
            list(data.values()) + [item_id] + list(scope.values()),
        )
        if not updated:
            raise NotFoundError(collection, item_id)
    _publish(collection, "updated", item_id)


def delete_entity(collection: str, item_id: Any) -> None:
    entity_def(collection)
    with _transaction():
        db.execute_sql(f"DELETE FROM {collection} WHERE id = %s", (item_id,))
    _publish(collection, "deleted", item_id)


# Accounts


def get_accounts() -> List[Dict[str, Any]]:
    return fetch_all("accounts")


def get_account(account_id: Any) -> Dict[str, Any] | None:
    return fetch_by_id("accounts", account_id)


def create_account(values: Dict[str, Any]) -> int:
    return insert_entity("accounts", values)


def update_account(account_id: Any, values: Dict[str, Any]) -> None:
    update_entity("accounts", account_id, values)


# Routes, stop points and route programs


def get_routes(account_id: Any) -> List[Dict[str, Any]]:
    return fetch_all("routes", "account_id = ?", [account_id])


def create_route(account_id: Any, values: Dict[str, Any]) -> int:
    data = _validated("routes", values, partial=False)
    with _transaction():
        item_id = db.execute_returning(
            "INSERT INTO routes (account_id, name, description, active) VALUES (?, ?, ?, ?) RETURNING id",
            (account_id, data["name"], data["description"], data["active"]),
        )
    _publish("routes", "created", item_id)
    return item_id


def get_route_stop_points(account_id: Any, route_id: Any) -> List[Dict[str, Any]]:
    return fetch_all("stop_points", "account_id = ? AND route_id = ?", [account_id, route_id])


def create_stop_point(account_id: Any, route_id: Any, values: Dict[str, Any]) -> int:
    data = _validated("stop_points", values, partial=False)
    data.update({"account_id": account_id, "route_id": route_id})
    columns = ", ".join(data.keys())
    placeholders = ", ".join("%s" for _ in data)
    with _transaction():
        item_id = db.execute_returning(
            f"INSERT INTO stop_points ({columns}) VALUES ({placeholders}) RETURNING id",
            list(data.values()),
        )
    _publish("stop_points", "created", item_id)
    return item_id


def get_route_assignments(account_id: Any, route_id: Any) -> List[Dict[str, Any]]:
    return fetch_all("route_assignments", "account_id = ? AND route_id = ?", [account_id, route_id])


def set_route_assignment(account_id: Any, route_id: Any, values: Dict[str, Any]) -> int:
    return insert_entity("route_assignments", route_assignment_submission(values, account_id, route_id))


def update_route_assignment(account_id: Any, route_id: Any, assignment_id: Any, values: Dict[str, Any]) -> None:
    update_entity(
        "route_assignments",
        assignment_id,
        route_assignment_submission(values, account_id, route_id),
        scope={"account_id": account_id, "route_id": route_id},
    )


def toggle_route_assignment(account_id: Any, route_id: Any, assignment_id: Any, record: Dict[str, Any]) -> bool:
    active = not bool(record.get("active"))
    with _transaction():
        updated = db.execute_sql(
            "UPDATE route_assignments SET active = ? WHERE id = ? AND account_id = ? AND route_id = ?",
            (active, assignment_id, account_id, route_id),
        )
        if not updated:
            raise NotFoundError("route_assignments", assignment_id)
    _publish("route_assignments", "updated", assignment_id)
    return active


def delete_route_assignment(account_id: Any, route_id: Any, assignment_id: Any) -> None:
    with _transaction():
        db.execute_sql(
            "DELETE FROM route_assignments WHERE id = ? AND account_id = ? AND route_id = ?",
            (assignment_id, account_id, route_id),
        )
    _publish("route_assignments", "deleted", assignment_id)


def get_active_assignments_route(vendor_id: Any, route_id: Any) -> List[Dict[str, Any]]:
    return db.fetch_all_rows(
        "SELECT ra.*, ra.account_id AS customer_id, ra.stop_begin_hour AS begin_hour "
        "FROM route_assignments ra "
        "WHERE ra.vendor_id = ? AND ra.route_id = ? AND ra.active "
        "ORDER BY ra.time, ra.id",
        (vendor_id, route_id),
    )


# Vehicle assignments


def get_route_vehicle_assignments(customer_id: Any, route_id: Any, assignment_id: Any, vendor_id: Any) -> List[Dict[str, Any]]:
    return fetch_all(
        "vehicle_assignments",
        "customer_id = ? AND route_id = ? AND assignment_id = ? AND vendor_id = ?",
        [customer_id, route_id, assignment_id, vendor_id],
    )


def create_vehicle_assignment(values: Dict[str, Any]) -> int:
    return insert_entity("vehicle_assignments", values)


def delete_customer_vendor_assignment(assignment_id: Any, customer_id: Any, vendor_id: Any) -> int:
    with _transaction():
        deleted = db.execute_sql(
            "DELETE FROM vehicle_assignments WHERE assignment_id = ? AND customer_id = ? AND vendor_id = ?",
            (assignment_id, customer_id, vendor_id),
        )
    _publish("vehicle_assignments", "deleted", assignment_id)
    return deleted


# Boarding passes


def get_boarding_passes_by_vendor(vendor_id: Any) -> List[Dict[str, Any]]:
    """Latest pass of every passenger riding with ``vendor_id``, newest first."""
    return db.fetch_all_rows(
        "SELECT * FROM ("
        " SELECT DISTINCT ON (COALESCE(user_id, -id)) * FROM boarding_passes"
        " WHERE vendor_id = ?"
        " ORDER BY COALESCE(user_id, -id), created_at DESC, id DESC"
        ") latest ORDER BY created_at DESC, id DESC",
        (vendor_id,),
    )


# Vendors, drivers and vehicles


def get_vendors() -> List[Dict[str, Any]]:
    return fetch_all("vendors")


def get_vendor(vendor_id: Any) -> Dict[str, Any] | None:
    return fetch_by_id("vendors", vendor_id)


def get_drivers(vendor_id: Any) -> List[Dict[str, Any]]:
    return fetch_all("drivers", "vendor_id = ?", [vendor_id])


def get_vendor_vehicles(vendor_id: Any) -> List[Dict[str, Any]]:
    return fetch_all("vehicles", "vendor_id = ?", [vendor_id])


# Day programs


def get_programs_by_day(day: date | datetime) -> List[Dict[str, Any]]:
    program_date = day.date() if isinstance(day, datetime) else day
    return fetch_all("programs", "program_date = ?", [program_date])


def set_program(values: Dict[str, Any]) -> int:
    payload = dict(values)
    if is_blank(payload.get("program_date")):
        payload["program_date"] = parse_date(payload.get("date"))
    item_id = insert_entity("programs", payload)
    _logger.info(
        "Programmed assignment %s (%s / %s) for %s",
        payload.get("assignment_id"),
        payload.get("customer_name"),
        payload.get("route_name"),
        payload.get("program_date"),
    )
    return item_id


# Users


def get_user(user_id: Any) -> Dict[str, Any] | None:
    return db.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))


def get_user_by_email(email: str) -> Dict[str, Any] | None:
    return db.fetch_one("SELECT * FROM users WHERE lower(email) = lower(?)", (email.strip(),))


def create_user(values: Dict[str, Any]) -> int:
    data = {key: values[key] for key in USER_FIELDS if key in values}
    columns = ", ".join(data.keys())
    placeholders = ", ".join("%s" for _ in data)
    with _transaction():
        user_id = db.execute_returning(
            f"INSERT INTO users ({columns}) VALUES ({placeholders}) RETURNING id",
            list(data.values()),
        )
    _publish("users", "created", user_id)
    return user_id


def update_user(user_id: Any, values: Dict[str, Any]) -> None:
    data = {key: values[key] for key in USER_FIELDS if key in values}
    if not data:
        return
    assignments = ", ".join(f"{key} = %s" for key in data)
    with _transaction():
        db.execute_sql(f"UPDATE users SET {assignments} WHERE id = %s", list(data.values()) + [user_id])
    _publish("users", "updated", user_id)
