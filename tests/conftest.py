import copy
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

# Login passwords are hashed when the auth blueprint is imported.
os.environ.setdefault("USER_PASSWORD", "pw")
os.environ.setdefault("ADMIN_PASSWORD", "pw")

from inspection_dashboard.db import InspectionStore
from inspection_dashboard.models import MonthlyInspection, StageRecord

# Jan-25 from the seed data: stage DPUs sum to 20.17 over 24446 inspections
# and 28460 faults.
JAN_25_STAGES = [
    ("BOOMS", 1446, 1018),
    ("SIP1", 1468, 606),
    ("SIP1A", 1466, 620),
    ("SIP2", 1459, 845),
    ("SIP3", 1461, 1858),
    ("SIP4", 1461, 1514),
    ("RR", 1451, 319),
    ("UVI", 1451, 167),
    ("SIP5", 1442, 2585),
    ("FTEST", 1440, 713),
    ("LECREC", 1439, 41),
    ("CT", 1420, 1518),
    ("UV2", 1415, 392),
    ("CABWT", 1415, 42),
    ("SIP6", 1394, 3591),
    ("CFC", 1384, 12630),
    ("CABSIP", 0, 0),
    ("UV3", 0, 0),
    ("SIGN", 1434, 1),
]


class FakeQuery:
    """Chainable stand-in for a PostgREST query builder."""

    def __init__(self, client, table):
        self._client = client
        self._table = table
        self._op = "select"
        self._payload = None
        self._on_conflict = None
        self._filters = []
        self._order = None
        self._limit = None

    def select(self, *_columns):
        self._op = "select"
        return self

    def insert(self, payload):
        self._op = "insert"
        self._payload = payload
        return self

    def upsert(self, payload, on_conflict=None):
        self._op = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self):
        self._client.calls.append((self._table, self._op, list(self._filters)))
        if self._client.fail:
            raise RuntimeError(self._client.fail)
        rows = self._client.tables.setdefault(self._table, [])

        if self._op == "select":
            data = [copy.deepcopy(row) for row in rows if self._matches(row)]
            if self._order:
                column, desc = self._order
                data.sort(key=lambda row: row.get(column), reverse=desc)
            if self._limit is not None:
                data = data[: self._limit]
            return SimpleNamespace(data=data)

        if self._op == "delete":
            removed = [row for row in rows if self._matches(row)]
            self._client.tables[self._table] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=removed)

        payload = self._payload if isinstance(self._payload, list) else [self._payload]
        keys = (self._on_conflict or "").split(",") if self._on_conflict else []
        for item in payload:
            item = copy.deepcopy(item)
            if self._op == "upsert" and keys:
                for index, row in enumerate(rows):
                    if all(row.get(key) == item.get(key) for key in keys):
                        rows[index] = item
                        break
                else:
                    rows.append(item)
            else:
                rows.append(item)
        return SimpleNamespace(data=copy.deepcopy(payload))


class FakeRpc:
    def __init__(self, client, name, params):
        self._client = client
        self._name = name
        self._params = params

    def execute(self):
        self._client.calls.append((self._name, "rpc", []))
        if self._client.fail:
            raise RuntimeError(self._client.fail)
        if self._name != "replace_inspections":
            raise RuntimeError(f"Unknown function {self._name}")
        rows = copy.deepcopy(self._params["rows"])
        self._client.tables[self._params["target_table"]] = rows
        return SimpleNamespace(data=len(rows))


class FakeSupabase:
    """In-memory Supabase client covering the calls the store makes."""

    def __init__(self):
        self.tables = {}
        self.calls = []
        self.fail = None

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)


def build_month(label, counts, year=None):
    """Build a month from ``{stage name: (inspected, faults)}``."""

    if year is None:
        year = 2000 + int(label[-2:])
    stages = tuple(
        StageRecord(name=name, inspected=inspected, faults=faults, order=order)
        for order, (name, (inspected, faults)) in enumerate(counts.items())
    )
    return MonthlyInspection(id=label.lower(), date=label, year=year, stages=stages)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def store(fake_supabase):
    return InspectionStore(fake_supabase)


@pytest.fixture
def jan_25():
    return build_month(
        "Jan-25",
        {name: (inspected, faults) for name, inspected, faults in JAN_25_STAGES},
    )


@pytest.fixture
def make_month():
    return build_month
