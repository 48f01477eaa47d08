from __future__ import annotations

from datetime import date, datetime

import pytest

from routedesk import db, services
from routedesk.exceptions import NotFoundError, ValidationFailed


class RecordingDb:
    def __init__(self) -> None:
        self.calls = []
        self.rows = []
        self.row = None
        self.rowcount = 1
        self.next_id = 41
        self.commits = 0
        self.rollbacks = 0
        self.fail_next = None

    def fetch_one(self, query, params=None):
        self.calls.append(("one", query, list(params or [])))
        return self.row

    def fetch_all_rows(self, query, params=None):
        self.calls.append(("all", query, list(params or [])))
        return self.rows

    def execute_sql(self, query, params=None):
        self.calls.append(("exec", query, list(params or [])))
        return self.rowcount

    def execute_returning(self, query, params=None):
        self.calls.append(("returning", query, list(params or [])))
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        return self.next_id

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def fake_db(monkeypatch):
    recorder = RecordingDb()
    for name in ("fetch_one", "fetch_all_rows", "execute_sql", "execute_returning", "commit", "rollback"):
        monkeypatch.setattr(db, name, getattr(recorder, name))
    return recorder


@pytest.fixture
def published(monkeypatch):
    changes = []
    monkeypatch.setattr(services.feed, "publish", lambda collection, **details: changes.append((collection, details)))
    return changes


def test_get_routes_filters_by_account(fake_db):
    fake_db.rows = [{"id": 10, "name": "North"}]
    assert services.get_routes(1) == [{"id": 10, "name": "North"}]
    kind, query, params = fake_db.calls[0]
    assert query == "SELECT * FROM routes WHERE account_id = ? ORDER BY name, id"
    assert params == [1]


def test_get_required_raises_when_missing(fake_db):
    with pytest.raises(NotFoundError):
        services.get_required("vendors", 3)


def test_create_account_inserts_commits_and_publishes(fake_db, published):
    item_id = services.create_account({"name": "Acme", "payment_responsible": "0"})
    assert item_id == 41
    kind, query, params = fake_db.calls[0]
    assert query.startswith("INSERT INTO accounts (")
    assert query.endswith("RETURNING id")
    assert "Acme" in params
    assert 0 in params
    assert fake_db.commits == 1
    assert published == [("accounts", {"action": "created", "id": 41})]


def test_create_account_requires_a_name(fake_db, published):
    with pytest.raises(ValidationFailed) as excinfo:
        services.create_account({"payment_responsible": 1})
    assert "name" in excinfo.value.errors
    assert fake_db.calls == []
    assert published == []


def test_partial_update_only_validates_given_fields(fake_db, published):
    services.update_entity("vehicles", 5, {"capacity": "30"}, partial=True)
    kind, query, params = fake_db.calls[0]
    assert query == "UPDATE vehicles SET capacity = %s WHERE id = %s"
    assert params == [30, 5]
    assert published == [("vehicles", {"action": "updated", "id": 5})]


def test_update_missing_record_raises(fake_db, published):
    fake_db.rowcount = 0
    with pytest.raises(NotFoundError):
        services.update_entity("vehicles", 5, {"capacity": 30}, partial=True)
    assert fake_db.commits == 0
    assert fake_db.rollbacks == 1
    assert published == []


ROUTE_PROGRAM = {
    "active": True,
    "program": "P1",
    "round": "Día",
    "stop_begin_id": 1,
    "stop_begin_name": "Gate",
    "stop_begin_hour": "06:30",
    "stop_end_id": 2,
    "stop_end_name": "Plant",
    "stop_end_hour": "07:10",
    "time": "2024-03-04T06:30:00",
    "type": "Entrada",
    "customer_name": "Acme",
    "vendor_name": "Fleet",
    "vendor_id": 7,
    "account_id": 99,
}


def test_set_route_assignment_pins_account_and_route(fake_db, published):
    services.set_route_assignment(1, 10, ROUTE_PROGRAM)
    kind, query, params = fake_db.calls[0]
    assert query.startswith("INSERT INTO route_assignments")
    assert 99 not in params
    assert 1 in params and 10 in params
    assert datetime(2024, 3, 4, 6, 30) in params


def test_update_route_assignment_is_scoped_to_its_route(fake_db, published):
    services.update_route_assignment(1, 10, 100, ROUTE_PROGRAM)
    kind, query, params = fake_db.calls[0]
    assert query.startswith("UPDATE route_assignments SET ")
    assert query.endswith("WHERE id = %s AND account_id = %s AND route_id = %s")
    assert params[-3:] == [100, 1, 10]
    assert published == [("route_assignments", {"action": "updated", "id": 100})]


def test_update_route_assignment_of_another_route_is_not_found(fake_db, published):
    fake_db.rowcount = 0
    with pytest.raises(NotFoundError):
        services.update_route_assignment(2, 10, 100, ROUTE_PROGRAM)
    assert fake_db.calls[0][2][-3:] == [100, 2, 10]
    assert fake_db.commits == 0
    assert published == []


def test_failed_write_rolls_back_and_the_next_one_commits(fake_db, published):
    fake_db.fail_next = RuntimeError("duplicate key")
    with pytest.raises(RuntimeError):
        services.create_account({"name": "Acme"})
    assert fake_db.rollbacks == 1
    assert fake_db.commits == 0
    assert published == []

    assert services.create_account({"name": "Globex"}) == 41
    assert fake_db.rollbacks == 1
    assert fake_db.commits == 1
    assert published == [("accounts", {"action": "created", "id": 41})]


def test_toggle_route_assignment_flips_active(fake_db, published):
    assert services.toggle_route_assignment(1, 10, 100, {"active": True}) is False
    kind, query, params = fake_db.calls[0]
    assert params == [False, 100, 1, 10]
    assert published == [("route_assignments", {"action": "updated", "id": 100})]


def test_delete_customer_vendor_assignment(fake_db, published):
    assert services.delete_customer_vendor_assignment(100, 1, 7) == 1
    kind, query, params = fake_db.calls[0]
    assert query.startswith("DELETE FROM vehicle_assignments")
    assert query.endswith("AND vendor_id = ?")
    assert params == [100, 1, 7]
    assert fake_db.commits == 1


def test_get_programs_by_day_uses_the_calendar_date(fake_db):
    services.get_programs_by_day(datetime(2024, 3, 4, 0, 0))
    kind, query, params = fake_db.calls[0]
    assert "program_date = ?" in query
    assert params == [date(2024, 3, 4)]


def test_set_program_maps_the_worklist_date(fake_db, published):
    row = {
        "assignment_id": 100,
        "customer_id": 1,
        "customer_name": "Acme",
        "route_id": 10,
        "route_name": "North",
        "vendor_id": 7,
        "date": datetime(2024, 3, 4),
        "driver_name": "Ana",
        "id": 900,
    }
    assert services.set_program(row) == 41
    kind, query, params = fake_db.calls[0]
    assert query.startswith("INSERT INTO programs (program_date, ")
    assert params[0] == date(2024, 3, 4)
    assert 900 not in params
    assert published == [("programs", {"action": "created", "id": 41})]


def test_get_user_by_email_is_case_insensitive(fake_db):
    services.get_user_by_email(" Ops@Fleet.test ")
    kind, query, params = fake_db.calls[0]
    assert "lower(email) = lower(?)" in query
    assert params == ["Ops@Fleet.test"]


def test_create_user_ignores_unknown_fields(fake_db, published):
    services.create_user({"email": "a@b.c", "roles": ["user"], "is_admin": True})
    kind, query, params = fake_db.calls[0]
    assert query == "INSERT INTO users (email, roles) VALUES (%s, %s) RETURNING id"
    assert params == ["a@b.c", ["user"]]
