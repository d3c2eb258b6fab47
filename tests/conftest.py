import copy
import uuid

import pytest
from postgrest.exceptions import APIError

from config import StagingConfig
from order_store import OrderStore
from staged_order import StagedOrderController


STAGING_ENV = (
    "STAGED_TAX_RATE",
    "STAGED_ORDER_PREFIX",
    "REGULAR_ORDER_PREFIX",
    "MAX_QUANTITY_PER_ITEM",
    "STAGED_EXCLUSIVE_TABLE_SESSIONS",
    "ABANDONED_SESSION_HOURS",
    "SESSION_REAPER_INTERVAL",
)


def _norm(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Just enough of the postgrest request builder for the order store."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self._order = None
        self._limit = None

    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict="id"):
        self.op = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: _norm(row.get(column)) == _norm(value))
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: _norm(row.get(column)) != _norm(value))
        return self

    def in_(self, column, values):
        wanted = {_norm(v) for v in values}
        self.filters.append(lambda row: _norm(row.get(column)) in wanted)
        return self

    def or_(self, conditions):
        # "col.eq.value,col.eq.value" only
        clauses = [c.split(".", 2) for c in conditions.split(",")]
        self.filters.append(
            lambda row: any(_norm(row.get(col)) == value for col, _, value in clauses)
        )
        return self

    def lt(self, column, value):
        self.filters.append(
            lambda row: row.get(column) is not None and str(row.get(column)) < str(value)
        )
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self):
        self.client.calls.append((self.table, self.op))
        applied = self.client.failure_applies(self.table, self.op)
        if applied is False:
            self.client.raise_failure(self.table, self.op)

        response = self._apply(self.client.tables.setdefault(self.table, []))

        if applied:
            self.client.raise_failure(self.table, self.op)
        return response

    def _apply(self, rows):
        if self.op in ("insert", "upsert"):
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            written = []
            for data in payload:
                row = dict(data)
                row.setdefault("id", str(uuid.uuid4()))
                existing = next((r for r in rows if r["id"] == row["id"]), None)
                if existing is not None and self.op == "upsert":
                    existing.update(row)
                else:
                    rows.append(row)
                written.append(copy.deepcopy(row))
            return FakeResponse(written)

        matched = [row for row in rows if all(f(row) for f in self.filters)]

        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return FakeResponse(copy.deepcopy(matched))

        if self.op == "delete":
            for row in matched:
                rows.remove(row)
            return FakeResponse(copy.deepcopy(matched))

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda row: str(row.get(column) or ""), reverse=desc)
        if self._limit is not None:
            matched = matched[:self._limit]
        return FakeResponse(copy.deepcopy(matched))


class FakeSupabaseClient:
    """In-memory stand-in for supabase.Client."""

    def __init__(self):
        self.tables = {"orders": [], "order_items": [], "tables": []}
        self.calls = []
        self.failures = {}

    def table(self, name):
        return FakeQuery(self, name)

    def fail(self, table, op, times=1, message="simulated outage", skip=0, after_write=False):
        """
        Make the next `times` matching requests raise APIError.

        `skip` lets that many matching requests through first; with
        `after_write` the request is applied before raising, like a write
        that lands after the client gave up on it.
        """
        self.failures[(table, op)] = {
            "times": times, "message": message, "skip": skip, "after_write": after_write
        }

    def failure_applies(self, table, op):
        """None if the request succeeds, else whether it is applied before raising."""
        failure = self.failures.get((table, op))
        if not failure or failure["times"] <= 0:
            return None
        if failure["skip"] > 0:
            failure["skip"] -= 1
            return None
        return failure["after_write"]

    def raise_failure(self, table, op):
        failure = self.failures[(table, op)]
        failure["times"] -= 1
        raise APIError({"message": failure["message"], "code": "XX000", "hint": None, "details": None})

    def rows(self, table, **match):
        return [
            row for row in self.tables[table]
            if all(_norm(row.get(k)) == _norm(v) for k, v in match.items())
        ]


@pytest.fixture
def fake_client():
    client = FakeSupabaseClient()
    client.tables["tables"] = [
        {"id": "T1", "table_number": 1, "capacity": 4, "status": "available"},
        {"id": "T2", "table_number": 2, "capacity": 2, "status": "available"},
    ]
    return client


@pytest.fixture
def store(fake_client):
    return OrderStore(client=fake_client, timeout=5)


@pytest.fixture
def settings(monkeypatch):
    for key in STAGING_ENV:
        monkeypatch.delenv(key, raising=False)
    return StagingConfig()


@pytest.fixture
def controller(store, settings):
    return StagedOrderController(store, settings=settings)


@pytest.fixture
def item_a():
    return {"menu_item_id": "A", "name": "Paneer Tikka", "price": 100}


@pytest.fixture
def item_b():
    return {"menu_item_id": "B", "name": "Dal Makhani", "price": 200}
