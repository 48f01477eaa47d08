"""Day-program scheduling.

A vendor operator picks a customer and one of its routes, searches the
route's active programs and the vehicle/driver pairs assigned to them, and
commits the selected rows as programs for the chosen day. Rows already
programmed for that day are left out and every route program appears at
most once in the worklist.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, time
from functools import partial, wraps
from typing import Any, Callable, Deque, Dict, Iterable, List

from .live import LiveFeed, Subscription, SubscriptionGroup, feed as default_feed

_logger = logging.getLogger(__name__)

NOTHING_TO_PROGRAM = "No routes found to program."


def start_of_day(value: Any) -> datetime:
    if isinstance(value, datetime):
        return datetime.combine(value.date(), time.min)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    return datetime.combine(datetime.fromisoformat(str(value).strip()).date(), time.min)


def count_label(count: int) -> str:
    return f"({count})"


def _same(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    return str(left) == str(right)


def customer_route_options(passes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "customer_id": record.get("customer_id"),
            "customer_name": record.get("customer_name"),
            "route_id": record.get("route_id"),
            "route_name": record.get("route_name"),
            "type": record.get("operation_type"),
            "round": record.get("round"),
            "status": record.get("status"),
            "program": record.get("category"),
        }
        for record in passes
    ]


def customer_options(customer_routes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    customers: List[Dict[str, Any]] = []
    seen = set()
    for entry in customer_routes:
        name = entry.get("customer_name")
        if name in seen:
            continue
        seen.add(name)
        customers.append({"customer_id": entry.get("customer_id"), "customer_name": name})
    return customers


def route_options(customer_routes: Iterable[Dict[str, Any]], customer_id: Any) -> List[Dict[str, Any]]:
    routes: List[Dict[str, Any]] = []
    seen = set()
    for entry in customer_routes:
        if not _same(entry.get("customer_id"), customer_id):
            continue
        key = (str(entry.get("route_id")), str(entry.get("customer_id")))
        if key in seen:
            continue
        seen.add(key)
        routes.append({"route_id": entry.get("route_id"), "route_name": entry.get("route_name")})
    return routes


def unique_names(records: Iterable[Dict[str, Any]], field_name: str) -> List[str]:
    names: List[str] = []
    for record in records:
        name = record.get(field_name)
        if name is None or name == "" or name in names:
            continue
        names.append(name)
    return names


def is_programmed(
    programmed: Iterable[Dict[str, Any]],
    customer_id: Any,
    route_name: str,
    driver_name: Any,
    vehicle_name: Any,
    type_: Any,
) -> bool:
    for program in programmed:
        if (
            _same(program.get("customer_id"), customer_id)
            and program.get("route_name") == route_name
            and program.get("driver_name") == driver_name
            and program.get("vehicle_name") == vehicle_name
            and program.get("type") == type_
        ):
            return True
    return False


def build_candidates(
    route_assignments: Iterable[Dict[str, Any]],
    vehicle_assignments: Dict[Any, List[Dict[str, Any]]],
    programmed: List[Dict[str, Any]],
    existing: Iterable[Dict[str, Any]],
    customer_name: str,
    route_name: str,
    day: datetime,
) -> List[Dict[str, Any]]:
    """Worklist rows for the active route programs not yet programmed on ``day``.

    ``vehicle_assignments`` maps a route program id to the vehicle/driver
    pairs serving it. Rows whose ``assignment_id`` is already in
    ``existing`` are skipped.
    """
    seen = {str(row.get("assignment_id")) for row in existing}
    rows: List[Dict[str, Any]] = []
    for assignment in route_assignments:
        if not assignment.get("id") or not assignment.get("active"):
            continue
        customer_id = assignment.get("customer_id", assignment.get("account_id"))
        for pair in vehicle_assignments.get(assignment["id"], []):
            if is_programmed(
                programmed,
                customer_id,
                route_name,
                pair.get("driver_name"),
                pair.get("vehicle_name"),
                assignment.get("type"),
            ):
                continue
            key = str(pair.get("assignment_id"))
            if key in seen:
                continue
            seen.add(key)
            rows.append(
                {
                    "assignment_id": pair.get("assignment_id"),
                    "program": assignment.get("program"),
                    "customer_id": customer_id,
                    "customer_name": customer_name,
                    "route_id": assignment.get("route_id"),
                    "route_name": route_name,
                    "vendor_id": assignment.get("vendor_id"),
                    "vendor_name": assignment.get("vendor_name"),
                    "round": assignment.get("round"),
                    "date": day,
                    "vehicle_capacity": pair.get("vehicle_capacity"),
                    "vehicle_id": pair.get("vehicle_id"),
                    "vehicle_name": pair.get("vehicle_name"),
                    "id": pair.get("id"),
                    "begin_hour": assignment.get("begin_hour", assignment.get("stop_begin_hour")),
                    "time": assignment.get("time"),
                    "stop_end_name": assignment.get("stop_end_name"),
                    "type": assignment.get("type"),
                    "driver_id": pair.get("driver_id"),
                    "driver_name": pair.get("driver_name"),
                }
            )
    return rows


def quick_filter(rows: Iterable[Dict[str, Any]], text: str) -> List[Dict[str, Any]]:
    needle = (text or "").strip().casefold()
    if not needle:
        return list(rows)
    return [
        row
        for row in rows
        if any(needle in str(value).casefold() for value in row.values() if value is not None)
    ]


@dataclass
class CommitResult:
    programmed: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)


def _locked(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            result = method(self, *args, **kwargs)
        self._run_pending()
        return result

    return wrapper


class ProgramWorklist:
    """State behind the program dashboard and its "assignments to program" modal.

    ``services`` is any object exposing the service functions used here
    (``routedesk.services`` in production). Subscriptions made for the view
    live until :meth:`teardown`; those made for the modal end when the modal
    closes.

    Live callbacks run on whichever thread published the change. They are
    queued and applied under the worklist lock: right away when the lock is
    free, otherwise by the thread holding it once its operation returns.
    """

    def __init__(
        self,
        services: Any = None,
        live_feed: LiveFeed | None = None,
        today: Any = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        if services is None:
            from . import services as services_module

            services = services_module
        self.services = services
        self.feed = live_feed or default_feed
        self.on_change = on_change
        self.day = start_of_day(today or datetime.now())

        self._lock = threading.RLock()
        self._pending: Deque[Callable[[], None]] = deque()
        self._view_subscriptions = SubscriptionGroup(self.feed)
        self._modal_subscriptions = SubscriptionGroup(self.feed)
        self._route_subscription: Subscription | None = None

        self.loading = False
        self.programmed: List[Dict[str, Any]] = []
        self.total = 0

        self.is_open = False
        self.user: Dict[str, Any] | None = None
        self.vendor_id: Any = None
        self.customer_routes: List[Dict[str, Any]] = []
        self.customers: List[Dict[str, Any]] = []
        self.routes: List[Dict[str, Any]] = []
        self.drivers: List[Dict[str, Any]] = []
        self.vehicles: List[Dict[str, Any]] = []
        self.driver_names: List[str] = []
        self.vehicle_names: List[str] = []

        self.selected_customer: Dict[str, Any] | None = None
        self.selected_route: Dict[str, Any] | None = None
        self.customer_path = ""
        self.route_path = ""
        self.route_name_selected = ""
        self.route_assignments: List[Dict[str, Any]] = []

        self.assignment_list: List[Dict[str, Any]] = []
        self.rows: List[Dict[str, Any]] = []
        self.selected: set[str] = set()
        self.found_message = ""
        self.rows_filter = ""
        self.programs_filter = ""
        self._searched = False

    # Notifications

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _live(self, refresh: Callable[[Dict[str, Any]], None]) -> Callable[[Dict[str, Any]], None]:
        def callback(change: Dict[str, Any]) -> None:
            self._pending.append(partial(refresh, change))
            self._run_pending()

        return callback

    def _run_pending(self) -> None:
        while self._pending and self._lock.acquire(blocking=False):
            try:
                while self._pending:
                    refresh = self._pending.popleft()
                    try:
                        refresh()
                    except Exception:
                        _logger.exception("Live refresh failed")
            finally:
                self._lock.release()

    # Labels

    @property
    def assignments_label(self) -> str:
        return count_label(len(self.rows))

    @property
    def programmed_label(self) -> str:
        return count_label(len(self.programmed))

    @property
    def selected_label(self) -> str:
        return count_label(len(self.selected))

    def visible_rows(self) -> List[Dict[str, Any]]:
        return quick_filter(self.rows, self.rows_filter)

    def visible_programs(self) -> List[Dict[str, Any]]:
        return quick_filter(self.programmed, self.programs_filter)

    # Day programs

    @_locked
    def start(self) -> None:
        """Load the day's programs and follow changes until teardown."""
        self._view_subscriptions.subscribe("programs", self._live(lambda change: self.search_programs()))
        self.search_programs()

    @_locked
    def search_programs(self, reset: bool = False) -> List[Dict[str, Any]]:
        self.loading = True
        try:
            self.programmed = self.services.get_programs_by_day(self.day)
        finally:
            self.loading = False
        self.total = len(self.programmed)
        self._changed()
        return self.programmed

    @_locked
    def change_day(self, value: Any) -> None:
        day = start_of_day(value)
        if day != self.day:
            _logger.debug("Day changed to %s; clearing the worklist", day.date())
            self.assignment_list = []
            self.rows = []
            self.selected = set()
        self.day = day
        self.search_programs(reset=True)

    # Modal

    @_locked
    def open(self, user: Dict[str, Any]) -> None:
        vendor_id = user.get("vendor_id")
        if vendor_id is None:
            raise ValueError("The signed-in user is not linked to a vendor")
        self.user = user
        self.vendor_id = vendor_id
        self._modal_subscriptions.cancel()
        self._modal_subscriptions.subscribe("boarding_passes", self._live(lambda change: self._load_passes()))
        self._modal_subscriptions.subscribe("vehicles", self._live(lambda change: self._load_vehicles()))
        self._modal_subscriptions.subscribe("drivers", self._live(lambda change: self._load_drivers()))
        self._modal_subscriptions.subscribe("vehicle_assignments", self._live(lambda change: self._refresh_search()))
        self._load_passes()
        self._load_vehicles()
        self._load_drivers()
        if self.selected_route is not None:
            self._follow_route(self.selected_route)
        self.is_open = True
        self._changed()

    def _load_passes(self) -> None:
        passes = self.services.get_boarding_passes_by_vendor(self.vendor_id)
        self.customer_routes = customer_route_options(passes)
        self.customers = customer_options(self.customer_routes)
        if self.selected_customer is not None:
            self.routes = route_options(self.customer_routes, self.selected_customer.get("customer_id"))
        self._changed()

    def _load_vehicles(self) -> None:
        self.vehicles = self.services.get_vendor_vehicles(self.vendor_id)
        self.vehicle_names = unique_names(self.vehicles, "name")
        self._changed()

    def _load_drivers(self) -> None:
        self.drivers = self.services.get_drivers(self.vendor_id)
        self.driver_names = unique_names(self.drivers, "display_name")
        self._changed()

    @_locked
    def select_customer(self, customer: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.selected_customer = customer
        self.customer_path = customer.get("customer_name") or ""
        self.route_path = self.customer_path
        self.routes = route_options(self.customer_routes, customer.get("customer_id"))
        self._changed()
        return self.routes

    @_locked
    def select_route(self, route: Dict[str, Any]) -> None:
        route_name = route.get("route_name") or ""
        self.route_path = f"{self.customer_path} / {route_name}"
        if self.route_name_selected != route_name:
            self.rows = []
            self.assignment_list = []
            self.selected = set()
            self._searched = False
        self.route_name_selected = route_name
        self.selected_route = route
        self._follow_route(route)
        self._changed()

    def _follow_route(self, route: Dict[str, Any]) -> None:
        if self._route_subscription is not None:
            self._route_subscription.cancel()
        route_id = route.get("route_id")

        def load(change: Dict[str, Any] | None = None) -> None:
            self.route_assignments = self.services.get_active_assignments_route(self.vendor_id, route_id)
            self._changed()

        self._route_subscription = self._modal_subscriptions.subscribe("route_assignments", self._live(load))
        load()

    @_locked
    def search(self) -> List[Dict[str, Any]]:
        self.found_message = ""
        pairs: Dict[Any, List[Dict[str, Any]]] = {}
        for assignment in self.route_assignments:
            if not assignment.get("id"):
                continue
            pairs[assignment["id"]] = self.services.get_route_vehicle_assignments(
                assignment.get("customer_id", assignment.get("account_id")),
                assignment.get("route_id"),
                assignment["id"],
                assignment.get("vendor_id"),
            )
        found = build_candidates(
            self.route_assignments,
            pairs,
            self.programmed,
            self.assignment_list,
            self.customer_path,
            self.route_name_selected,
            self.day,
        )
        self.assignment_list.extend(found)
        if not self.assignment_list:
            self.found_message = NOTHING_TO_PROGRAM
        self.rows = list(self.assignment_list)
        self._searched = True
        self._changed()
        return self.rows

    def _refresh_search(self) -> None:
        if self.is_open and self._searched:
            self.search()

    @_locked
    def select(self, assignment_ids: Iterable[Any]) -> str:
        available = {str(row.get("assignment_id")) for row in self.rows}
        self.selected = {str(item) for item in assignment_ids if str(item) in available}
        self._changed()
        return self.selected_label

    @_locked
    def toggle(self, assignment_id: Any) -> str:
        key = str(assignment_id)
        if key in self.selected:
            self.selected.discard(key)
        elif any(str(row.get("assignment_id")) == key for row in self.rows):
            self.selected.add(key)
        self._changed()
        return self.selected_label

    def selected_rows(self) -> List[Dict[str, Any]]:
        return [row for row in self.rows if str(row.get("assignment_id")) in self.selected]

    @_locked
    def edit_row(self, assignment_id: Any, driver_name: str | None = None, vehicle_name: str | None = None) -> Dict[str, Any]:
        row = next((row for row in self.rows if _same(row.get("assignment_id"), assignment_id)), None)
        if row is None:
            raise KeyError(assignment_id)
        if driver_name is not None:
            if driver_name not in self.driver_names:
                raise ValueError(f"Unknown driver {driver_name!r}")
            driver = next((item for item in self.drivers if item.get("display_name") == driver_name), {})
            row["driver_name"] = driver_name
            row["driver_id"] = driver.get("id", row.get("driver_id"))
        if vehicle_name is not None:
            if vehicle_name not in self.vehicle_names:
                raise ValueError(f"Unknown vehicle {vehicle_name!r}")
            vehicle = next((item for item in self.vehicles if item.get("name") == vehicle_name), {})
            row["vehicle_name"] = vehicle_name
            row["vehicle_id"] = vehicle.get("id", row.get("vehicle_id"))
            row["vehicle_capacity"] = vehicle.get("capacity", row.get("vehicle_capacity"))
        self._changed()
        return row

    @_locked
    def commit(self) -> CommitResult:
        result = CommitResult()
        committed = set()
        for row in self.selected_rows():
            try:
                self.services.set_program(dict(row))
            except Exception:
                _logger.exception("Failed to program assignment %s", row.get("assignment_id"))
                result.failed.append(row)
                continue
            committed.add(str(row.get("assignment_id")))
            result.programmed += 1

        self.assignment_list = [row for row in self.assignment_list if str(row.get("assignment_id")) not in committed]
        self.rows = list(self.assignment_list)
        self.selected = set()
        self.found_message = ""
        self.is_open = False
        self._close_subscriptions()
        self.search_programs(reset=True)
        return result

    @_locked
    def cancel(self) -> None:
        self.is_open = False
        self._close_subscriptions()
        self.rows_filter = ""
        self.programs_filter = ""
        self.selected = set()
        self.found_message = ""
        self.rows = []
        self.assignment_list = []
        self.route_assignments = []
        self.route_path = ""
        self.customer_path = ""
        self.route_name_selected = ""
        self.selected_customer = None
        self.selected_route = None
        self._searched = False
        self.search_programs(reset=True)

    @_locked
    def delete_assignment(self, assignment_id: Any, customer_id: Any) -> None:
        self.services.delete_customer_vendor_assignment(assignment_id, customer_id, self.vendor_id)

    def _close_subscriptions(self) -> None:
        self._modal_subscriptions.cancel()
        self._route_subscription = None

    @_locked
    def teardown(self) -> None:
        self._close_subscriptions()
        self._view_subscriptions.cancel()
