from __future__ import annotations

from . import _compat  # noqa: F401  (must precede the Flask import)

from datetime import date, datetime
from typing import Any, Dict

from flask import Flask, abort, jsonify, request
from flask.json.provider import DefaultJSONProvider
from reactpy.backend.flask import Options, configure
from werkzeug.exceptions import HTTPException

from . import auth, db, services
from .auth import ENTER_ROLES, ROLE_ADMIN, ROLE_SALES, ROLE_VENDOR, login_required, role_required
from .config import load_settings
from .dashboard import make_app_component
from .exceptions import NotFoundError, UnknownEntityError, ValidationFailed
from .forms import parse_date
from .live import LiveFeed
from .scheduling import ProgramWorklist

# Roles allowed to edit each collection through the generic item endpoint.
EDITABLE_ENTITIES = {
    "vendors": (ROLE_ADMIN,),
    "drivers": (ROLE_ADMIN, ROLE_VENDOR),
    "vehicles": (ROLE_ADMIN, ROLE_VENDOR),
    "routes": (ROLE_ADMIN, ROLE_SALES),
    "stop_points": (ROLE_ADMIN, ROLE_SALES),
    "vehicle_assignments": (ROLE_ADMIN, ROLE_VENDOR),
}
VENDOR_SCOPED = {"drivers", "vehicles", "vehicle_assignments"}


class IsoJSONProvider(DefaultJSONProvider):
    @staticmethod
    def default(o: Any) -> Any:
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return DefaultJSONProvider.default(o)


settings = load_settings()

app = Flask(__name__)
app.config["SECRET_KEY"] = settings.secret_key
app.config["ROUTEDESK_SETTINGS"] = settings
app.json = IsoJSONProvider(app)
db.init_app(app, settings)


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def day_arg(name: str = "date") -> date:
    raw = request.args.get(name)
    if not raw:
        return date.today()
    day = parse_date(raw)
    if day is None:
        abort(400, description=f"Invalid {name}: {raw}")
    return day


def cors_origin_for_request() -> str | None:
    origin = request.headers.get("Origin")
    if not origin:
        return None
    if "*" in settings.cors_allowed_origins:
        return "*"
    if origin in settings.cors_allowed_origins:
        return origin
    return None


@app.before_request
def api_cors_preflight():
    if request.method == "OPTIONS" and request.path.startswith("/api/"):
        return "", 204


@app.after_request
def add_api_cors_headers(response):
    if not request.path.startswith("/api/"):
        return response

    origin = cors_origin_for_request()
    if origin:
        response.headers["Access-Control-Allow-Origin"] = origin
        if origin != "*":
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Credentials"] = "true"

    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    response.headers["Access-Control-Max-Age"] = "600"
    return response


@app.errorhandler(ValidationFailed)
def handle_validation_failed(exc: ValidationFailed):
    return jsonify({"error": "Validation failed", "errors": exc.errors}), 400


@app.errorhandler(NotFoundError)
def handle_not_found(exc: NotFoundError):
    return jsonify({"error": str(exc)}), 404


@app.errorhandler(UnknownEntityError)
def handle_unknown_entity(exc: UnknownEntityError):
    return jsonify({"error": f"Unknown collection {exc}"}), 404


@app.errorhandler(400)
def handle_bad_request(exc):
    return jsonify({"error": getattr(exc, "description", "Bad request")}), 400


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    if isinstance(exc, HTTPException):
        return exc
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500


# Authentication


def auth_response(result: auth.AuthResult, ok_status: int = 200):
    if result.ok:
        return jsonify(result.to_dict()), ok_status
    level = result.notice.level if result.notice else "error"
    return jsonify(result.to_dict()), 403 if level == "warning" else 400


@app.route("/api/auth/sign-up", methods=["POST"])
def api_sign_up():
    return auth_response(auth.sign_up(json_body()), ok_status=201)


@app.route("/api/auth/sign-in", methods=["POST"])
def api_sign_in():
    payload = json_body()
    result = auth.sign_in(str(payload.get("email") or ""), str(payload.get("password") or ""))
    if not result.ok and result.notice and result.notice.level == "error":
        return jsonify(result.to_dict()), 401
    return auth_response(result)


@app.route("/api/auth/sign-out", methods=["POST"])
def api_sign_out():
    return auth_response(auth.sign_out())


@app.route("/api/auth/forgot-password", methods=["POST"])
def api_forgot_password():
    return auth_response(auth.forgot_password(str(json_body().get("email") or "")))


@app.route("/api/auth/reset-password", methods=["POST"])
def api_reset_password():
    payload = json_body()
    return auth_response(auth.reset_password(str(payload.get("token") or ""), str(payload.get("password") or "")))


@app.route("/api/auth/verify-email/<token>")
def api_verify_email(token: str):
    return auth_response(auth.verify_email(token))


@app.route("/api/auth/me")
@login_required
def api_me():
    user = auth.current_user()
    return jsonify(
        {
            "user": auth.public_user(user),
            "can_enter": auth.can_enter(user),
            "can_read": auth.can_read(user),
            "can_edit": auth.can_edit(user),
            "can_delete": auth.can_delete(user),
        }
    )


# Accounts and routes


@app.route("/api/accounts", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_accounts():
    if request.method == "GET":
        return jsonify(services.get_accounts())
    if not auth.check_authorization(auth.current_user(), (ROLE_ADMIN, ROLE_SALES)):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.create_account(json_body())
    return jsonify({"ok": True, "id": item_id}), 201


@app.route("/api/accounts/<int:account_id>", methods=["GET", "PUT"])
@role_required(*ENTER_ROLES)
def api_account(account_id: int):
    if request.method == "GET":
        record = services.get_account(account_id)
        if record is None:
            raise NotFoundError("accounts", account_id)
        return jsonify(record)
    if not auth.check_authorization(auth.current_user(), (ROLE_ADMIN, ROLE_SALES)):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    services.update_account(account_id, json_body())
    return jsonify({"ok": True})


@app.route("/api/accounts/<int:account_id>/routes", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_routes(account_id: int):
    if request.method == "GET":
        return jsonify(services.get_routes(account_id))
    if not auth.check_authorization(auth.current_user(), EDITABLE_ENTITIES["routes"]):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.create_route(account_id, json_body())
    return jsonify({"ok": True, "id": item_id}), 201


@app.route("/api/accounts/<int:account_id>/routes/<int:route_id>/stop-points", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_stop_points(account_id: int, route_id: int):
    if request.method == "GET":
        return jsonify(services.get_route_stop_points(account_id, route_id))
    if not auth.check_authorization(auth.current_user(), EDITABLE_ENTITIES["stop_points"]):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.create_stop_point(account_id, route_id, json_body())
    return jsonify({"ok": True, "id": item_id}), 201


@app.route("/api/accounts/<int:account_id>/routes/<int:route_id>/assignments", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_route_assignments(account_id: int, route_id: int):
    if request.method == "GET":
        return jsonify(services.get_route_assignments(account_id, route_id))
    if not auth.check_authorization(auth.current_user(), (ROLE_ADMIN, ROLE_SALES)):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.set_route_assignment(account_id, route_id, json_body())
    return jsonify({"ok": True, "id": item_id}), 201


@app.route(
    "/api/accounts/<int:account_id>/routes/<int:route_id>/assignments/<int:assignment_id>",
    methods=["PUT", "DELETE"],
)
@role_required(ROLE_ADMIN, ROLE_SALES)
def api_route_assignment(account_id: int, route_id: int, assignment_id: int):
    if request.method == "DELETE":
        services.delete_route_assignment(account_id, route_id, assignment_id)
        return jsonify({"ok": True})
    services.update_route_assignment(account_id, route_id, assignment_id, json_body())
    return jsonify({"ok": True})


@app.route(
    "/api/accounts/<int:account_id>/routes/<int:route_id>/assignments/<int:assignment_id>/toggle",
    methods=["POST"],
)
@role_required(ROLE_ADMIN, ROLE_SALES)
def api_toggle_route_assignment(account_id: int, route_id: int, assignment_id: int):
    record = services.get_required("route_assignments", assignment_id)
    active = services.toggle_route_assignment(account_id, route_id, assignment_id, record)
    return jsonify({"ok": True, "active": active})


# Vendors, drivers and vehicles


@app.route("/api/vendors", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_vendors():
    if request.method == "GET":
        return jsonify(services.get_vendors())
    if not auth.check_authorization(auth.current_user(), EDITABLE_ENTITIES["vendors"]):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.insert_entity("vendors", json_body())
    return jsonify({"ok": True, "id": item_id}), 201


def vendor_allowed(user: Dict[str, Any] | None, vendor_id: Any) -> bool:
    if auth.check_authorization(user, (ROLE_ADMIN,)):
        return True
    return user is not None and user.get("vendor_id") is not None and str(user.get("vendor_id")) == str(vendor_id)


def vendor_collection(collection: str, vendor_id: int, loader):
    user = auth.current_user()
    if request.method == "GET":
        return jsonify(loader(vendor_id))
    if not auth.check_authorization(user, EDITABLE_ENTITIES[collection]) or not vendor_allowed(user, vendor_id):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.insert_entity(collection, {**json_body(), "vendor_id": vendor_id})
    return jsonify({"ok": True, "id": item_id}), 201


@app.route("/api/vendors/<int:vendor_id>/drivers", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_vendor_drivers(vendor_id: int):
    return vendor_collection("drivers", vendor_id, services.get_drivers)


@app.route("/api/vendors/<int:vendor_id>/vehicles", methods=["GET", "POST"])
@role_required(*ENTER_ROLES)
def api_vendor_vehicles(vendor_id: int):
    return vendor_collection("vehicles", vendor_id, services.get_vendor_vehicles)


@app.route("/api/vehicle-assignments", methods=["POST"])
@role_required(*EDITABLE_ENTITIES["vehicle_assignments"])
def api_create_vehicle_assignment():
    payload = json_body()
    if not vendor_allowed(auth.current_user(), payload.get("vendor_id")):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    item_id = services.create_vehicle_assignment(payload)
    return jsonify({"ok": True, "id": item_id}), 201


@app.route("/api/vehicle-assignments/<int:assignment_id>", methods=["DELETE"])
@role_required(*EDITABLE_ENTITIES["vehicle_assignments"])
def api_delete_vehicle_assignment(assignment_id: int):
    customer_id = request.args.get("customer_id", type=int)
    if customer_id is None:
        abort(400, description="customer_id is required")
    user = auth.current_user()
    vendor_id = request.args.get("vendor_id", default=user.get("vendor_id"), type=int)
    if vendor_id is None:
        abort(400, description="vendor_id is required")
    if not vendor_allowed(user, vendor_id):
        return jsonify({"error": "This record belongs to another vendor"}), 403
    deleted = services.delete_customer_vendor_assignment(assignment_id, customer_id, vendor_id)
    return jsonify({"ok": True, "deleted": deleted})


@app.route("/api/<entity>/<int:item_id>", methods=["PUT", "DELETE"])
@login_required
def api_entity_item(entity: str, item_id: int):
    if entity not in EDITABLE_ENTITIES:
        abort(404)
    user = auth.current_user()
    if not auth.check_authorization(user, EDITABLE_ENTITIES[entity]):
        return jsonify({"error": "Your role cannot perform this action"}), 403
    record = services.get_required(entity, item_id)
    if entity in VENDOR_SCOPED and not vendor_allowed(user, record.get("vendor_id")):
        return jsonify({"error": "This record belongs to another vendor"}), 403
    if request.method == "DELETE":
        services.delete_entity(entity, item_id)
        return jsonify({"ok": True})
    services.update_entity(entity, item_id, json_body(), partial=True)
    return jsonify({"ok": True})


# Day programs


def worklist_for(day: date) -> ProgramWorklist:
    """A request-scoped worklist; its subscriptions live on a private feed."""
    worklist = ProgramWorklist(live_feed=LiveFeed(), today=day)
    worklist.search_programs()
    return worklist


def requested_vendor_user() -> Dict[str, Any]:
    user = dict(auth.current_user() or {})
    if auth.check_authorization(user, (ROLE_ADMIN,)) and request.args.get("vendor_id"):
        user["vendor_id"] = request.args.get("vendor_id", type=int)
    if user.get("vendor_id") is None:
        abort(400, description="The signed-in user is not linked to a vendor")
    return user


def prepared_worklist(day: date, customer_id: Any, route_id: Any) -> ProgramWorklist:
    worklist = worklist_for(day)
    worklist.open(requested_vendor_user())
    if customer_id is None:
        return worklist
    customer = next((item for item in worklist.customers if str(item["customer_id"]) == str(customer_id)), None)
    if customer is None:
        raise NotFoundError("customers", customer_id)
    worklist.select_customer(customer)
    if route_id is None:
        return worklist
    route = next((item for item in worklist.routes if str(item["route_id"]) == str(route_id)), None)
    if route is None:
        raise NotFoundError("routes", route_id)
    worklist.select_route(route)
    worklist.search()
    return worklist


@app.route("/api/programs")
@role_required(*ENTER_ROLES)
def api_programs():
    return jsonify(services.get_programs_by_day(day_arg()))


@app.route("/api/programs/worklist")
@role_required(ROLE_ADMIN, ROLE_VENDOR)
def api_program_worklist():
    worklist = prepared_worklist(
        day_arg(),
        request.args.get("customer_id", type=int),
        request.args.get("route_id", type=int),
    )
    try:
        return jsonify(
            {
                "date": worklist.day.date(),
                "customers": worklist.customers,
                "routes": worklist.routes,
                "route_path": worklist.route_path,
                "driver_names": worklist.driver_names,
                "vehicle_names": worklist.vehicle_names,
                "rows": worklist.rows,
                "count": worklist.assignments_label,
                "programmed": worklist.programmed_label,
                "message": worklist.found_message,
            }
        )
    finally:
        worklist.teardown()


@app.route("/api/programs", methods=["POST"])
@role_required(ROLE_ADMIN, ROLE_VENDOR)
def api_commit_programs():
    payload = json_body()
    day = parse_date(payload.get("date")) or date.today()
    customer_id = payload.get("customer_id")
    route_id = payload.get("route_id")
    if customer_id is None or route_id is None:
        abort(400, description="customer_id and route_id are required")

    worklist = prepared_worklist(day, customer_id, route_id)
    try:
        for edit in payload.get("edits") or []:
            worklist.edit_row(edit.get("assignment_id"), edit.get("driver_name"), edit.get("vehicle_name"))
        worklist.select(payload.get("assignment_ids") or [])
        if not worklist.selected:
            abort(400, description="None of the requested assignments can be programmed")
        result = worklist.commit()
    except (KeyError, ValueError) as exc:
        app.logger.warning("Rejected program commit: %s", exc)
        abort(400, description=str(exc))
    finally:
        worklist.teardown()

    app.logger.info("Programmed %s assignments for %s", result.programmed, day)
    status = 201 if not result.failed else 207
    return jsonify({"ok": not result.failed, "programmed": result.programmed, "failed": result.failed}), status


@app.route("/api/db-health")
def api_db_health():
    try:
        row = db.fetch_one("SELECT 1 AS ok")
    except Exception:
        app.logger.exception("Database health check failed")
        return jsonify({"ok": False}), 503
    return jsonify({"ok": bool(row and row.get("ok") == 1)})


# One-time optional schema initialization at process startup (not per request)
db.maybe_init_db_on_startup(settings)

configure(
    app,
    make_app_component(app),
    Options(
        head=(
            {"tagName": "title", "children": ["Routedesk"]},
            {
                "tagName": "meta",
                "attributes": {"name": "viewport", "content": "width=device-width, initial-scale=1"},
            },
        )
    ),
)


if __name__ == "__main__":
    app.run(
        host="0.0.0.0",
        port=settings.port,
        debug=settings.debug,
    )
