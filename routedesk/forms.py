from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List

from .exceptions import UnknownEntityError

ROUND_DAY = "Día"
ROUND_AFTERNOON = "Tarde"
ROUNDS = [ROUND_DAY, ROUND_AFTERNOON]
ROUND_HOUR_FIELDS = {ROUND_DAY: "round1", ROUND_AFTERNOON: "round2"}

ASSIGNMENT_TYPES = ["Entrada", "Salida", "Especial"]

PAYMENT_BY_ACCOUNT = 0
PAYMENT_BY_USER = 1

WEEKDAY_FIELDS = [
    "is_monday",
    "is_tuesday",
    "is_wednesday",
    "is_thursday",
    "is_friday",
    "is_saturday",
    "is_sunday",
]


def _text(name: str, label: str, required: bool = False, default: Any = "") -> Dict[str, Any]:
    return {"name": name, "label": label, "input_type": "text", "required": required, "default": default}


def _flag(name: str, label: str, default: bool = False) -> Dict[str, Any]:
    return {"name": name, "label": label, "input_type": "checkbox", "required": False, "default": default}


def _number(name: str, label: str, step: str = "1", required: bool = False, default: Any = None) -> Dict[str, Any]:
    return {"name": name, "label": label, "input_type": "number", "step": step, "required": required, "default": default}


ENTITY_DEFS: Dict[str, Dict[str, Any]] = {
    "accounts": {
        "label": "Account",
        "fields": [
            _flag("active", "Active"),
            _text("image_url", "Logo URL"),
            _text("address", "Address"),
            {
                "name": "payment_responsible",
                "label": "Payment responsible",
                "input_type": "select",
                "options": [
                    {"label": "Account", "value": PAYMENT_BY_ACCOUNT},
                    {"label": "User", "value": PAYMENT_BY_USER},
                ],
                "value_type": "int",
                "required": True,
                "default": PAYMENT_BY_USER,
            },
            _text("name", "Name", required=True),
            _text("social_name", "Legal name"),
            _text("rfc", "Tax id"),
            _text("address_number", "Number"),
            _text("address2", "Address line 2"),
            _text("address3", "Address line 3"),
            _text("zip", "Zip"),
            _text("city", "City"),
            _text("state", "State"),
            _flag("force_stop_points", "Force stop points", default=True),
            _flag("force_route", "Force route", default=True),
            _flag("force_round", "Force round", default=True),
            _text("website", "Website"),
            _text("phone_number", "Phone"),
            _text("primary_contact", "Primary contact"),
        ],
    },
    "routes": {
        "label": "Route",
        "fields": [
            _text("name", "Name", required=True),
            _text("description", "Description"),
            _flag("active", "Active", default=True),
        ],
    },
    "stop_points": {
        "label": "Stop point",
        "fields": [
            _text("name", "Name", required=True),
            _text("round1", "Day round hour"),
            _text("round2", "Afternoon round hour"),
            _number("latitude", "Latitude", step="any"),
            _number("longitude", "Longitude", step="any"),
            _number("position", "Position", default=0),
        ],
    },
    "route_assignments": {
        "label": "Program",
        "fields": [
            _flag("active", "Active"),
            _flag("ac_required", "A/C required"),
            _flag("is_sunday", "Sunday"),
            _flag("is_monday", "Monday", default=True),
            _flag("is_tuesday", "Tuesday", default=True),
            _flag("is_wednesday", "Wednesday", default=True),
            _flag("is_thursday", "Thursday", default=True),
            _flag("is_friday", "Friday", default=True),
            _flag("is_saturday", "Saturday"),
            _text("program", "Program", required=True),
            {"name": "round", "label": "Round", "input_type": "select", "options": ROUNDS, "required": True, "default": ""},
            _number("stop_begin_id", "Begin stop", required=True),
            _text("stop_begin_name", "Begin stop name", required=True),
            _text("stop_begin_hour", "Begin hour", required=True),
            _number("stop_end_id", "End stop", required=True),
            _text("stop_end_name", "End stop name", required=True),
            _text("stop_end_hour", "End hour", required=True),
            {"name": "time", "label": "Time", "input_type": "datetime", "required": True, "default": datetime.now},
            {"name": "type", "label": "Type", "input_type": "select", "options": ASSIGNMENT_TYPES, "required": True, "default": None},
            _text("customer_name", "Customer", required=True),
            _number("account_id", "Customer id", required=True),
            _text("vendor_name", "Vendor", required=True),
            _number("vendor_id", "Vendor id", required=True),
            _number("route_id", "Route id", required=True),
        ],
    },
    "vendors": {
        "label": "Vendor",
        "fields": [
            _text("name", "Name", required=True),
            _flag("active", "Active", default=True),
            _text("social_name", "Legal name"),
            _text("rfc", "Tax id"),
            _text("phone_number", "Phone"),
            _text("email", "Email"),
            _text("primary_contact", "Primary contact"),
        ],
    },
    "drivers": {
        "label": "Driver",
        "fields": [
            _number("vendor_id", "Vendor id", required=True),
            _text("display_name", "Name", required=True),
            _text("email", "Email"),
            _text("phone_number", "Phone"),
            _text("license_number", "License"),
            _flag("active", "Active", default=True),
        ],
    },
    "vehicles": {
        "label": "Vehicle",
        "fields": [
            _number("vendor_id", "Vendor id", required=True),
            _text("name", "Name", required=True),
            _text("plate", "Plate"),
            _number("capacity", "Capacity"),
            _flag("active", "Active", default=True),
        ],
    },
    "vehicle_assignments": {
        "label": "Vehicle assignment",
        "fields": [
            _number("customer_id", "Customer id", required=True),
            _number("route_id", "Route id", required=True),
            _number("assignment_id", "Program id", required=True),
            _number("vendor_id", "Vendor id", required=True),
            _number("vehicle_id", "Vehicle id"),
            _text("vehicle_name", "Vehicle"),
            _number("vehicle_capacity", "Capacity"),
            _number("driver_id", "Driver id"),
            _text("driver_name", "Driver"),
        ],
    },
    "programs": {
        "label": "Day program",
        "fields": [
            {"name": "program_date", "label": "Date", "input_type": "date", "required": True, "default": date.today},
            _number("assignment_id", "Program id", required=True),
            _text("program", "Program"),
            _number("customer_id", "Customer id", required=True),
            _text("customer_name", "Customer"),
            _number("route_id", "Route id", required=True),
            _text("route_name", "Route"),
            _number("vendor_id", "Vendor id", required=True),
            _text("vendor_name", "Vendor"),
            _text("round", "Round"),
            _number("vehicle_id", "Vehicle id"),
            _text("vehicle_name", "Vehicle"),
            _number("vehicle_capacity", "Capacity"),
            _number("driver_id", "Driver id"),
            _text("driver_name", "Driver"),
            _text("begin_hour", "Begins"),
            {"name": "time", "label": "Time", "input_type": "datetime", "required": False, "default": None},
            _text("stop_end_name", "End stop"),
            _text("type", "Type"),
        ],
    },
}


def entity_def(entity: str) -> Dict[str, Any]:
    try:
        return ENTITY_DEFS[entity]
    except KeyError as exc:
        raise UnknownEntityError(entity) from exc


def field_names(entity: str) -> List[str]:
    return [field["name"] for field in entity_def(entity)["fields"]]


def _default(field: Dict[str, Any]) -> Any:
    default = field.get("default")
    if callable(default):
        return default()
    return default


def default_values_for(entity: str) -> Dict[str, Any]:
    return {field["name"]: _default(field) for field in entity_def(entity)["fields"]}


def patch_values(entity: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """Form values for editing ``record``.

    Stored ``False`` and ``0`` are kept; only missing values fall back to the
    field default.
    """
    values = default_values_for(entity)
    for name in values:
        value = record.get(name)
        if value is not None:
            values[name] = value
    return values


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def validate(entity: str, values: Dict[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for field in entity_def(entity)["fields"]:
        if not field.get("required"):
            continue
        if is_blank(values.get(field["name"])):
            errors[field["name"]] = f"{field['label']} is required"
    return errors


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except (ValueError, OverflowError):
        return None


def parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value)
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    parsed = parse_datetime(text)
    return parsed.date() if parsed else None


def _coerce(field: Dict[str, Any], value: Any) -> Any:
    input_type = field.get("input_type")
    if field.get("value_type") == "int":
        return parse_int(value)
    if input_type == "checkbox":
        return parse_bool(value)
    if input_type == "number":
        if field.get("step") == "1":
            return parse_int(value)
        return parse_float(value)
    if input_type == "datetime":
        return parse_datetime(value)
    if input_type == "date":
        return parse_date(value)
    if input_type == "select" and not isinstance(value, str):
        return value
    return "" if value is None else str(value).strip()


def sanitize_payload(entity: str, payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Coerce ``payload`` to the entity's column types, dropping unknown keys.

    With ``partial`` only the keys present in ``payload`` are returned.
    """
    data: Dict[str, Any] = {}
    for field in entity_def(entity)["fields"]:
        name = field["name"]
        if name not in payload:
            if partial:
                continue
            data[name] = _coerce(field, _default(field))
            continue
        data[name] = _coerce(field, payload[name])
    return data


def _find(records: List[Dict[str, Any]], record_id: Any) -> Dict[str, Any] | None:
    if record_id is None or record_id == "":
        return None
    for record in records:
        if str(record.get("id")) == str(record_id):
            return record
    return None


def apply_stop_point(
    values: Dict[str, Any],
    stop_points: List[Dict[str, Any]],
    stop_id: Any,
    name_field: str,
    hour_field: str,
) -> Dict[str, Any]:
    """Copy a stop point's name and the hour of the form's round into ``values``."""
    record = _find(stop_points, stop_id)
    if record is None:
        return values
    round_field = ROUND_HOUR_FIELDS.get(values.get("round") or "", "round1")
    return {**values, name_field: record.get("name"), hour_field: record.get(round_field)}


def apply_vendor(values: Dict[str, Any], vendors: List[Dict[str, Any]], vendor_id: Any) -> Dict[str, Any]:
    record = _find(vendors, vendor_id)
    if record is None:
        return values
    return {**values, "vendor_id": record.get("id"), "vendor_name": record.get("name")}


def route_assignment_submission(values: Dict[str, Any], account_id: Any, route_id: Any) -> Dict[str, Any]:
    """Values of the route program form pinned to the route being edited."""
    return {**values, "account_id": account_id, "route_id": route_id}
