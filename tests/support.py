"""
In-memory stand-in for the Supabase client used by the API tests.

Implements only the PostgREST builder calls the app makes (select/insert/update
with eq/is_/ilike/order/range/limit filters) and a storage bucket with upload and
public URL lookup.
"""

import copy
import re
import unittest
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi.testclient import TestClient
from postgrest.exceptions import APIError

from auth import create_access_token, hash_password
from config import Settings
from database import get_db
from main import create_app

PRIMARY_KEYS = {
    "User": "iduser",
    "Categories": "IDCategories",
    "Umkm": "IDUmkm",
    "Comments": "IDComments",
}


class FakeResponse:
    def __init__(self, data: List[dict], count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._columns = "*"
        self._count: Optional[str] = None
        self._payload: Any = None
        self._filters: List[Callable[[dict], bool]] = []
        self._order: List[Tuple[str, bool]] = []
        self._range: Optional[Tuple[int, int]] = None
        self._limit: Optional[int] = None

    def select(self, columns: str = "*", count: Optional[str] = None):
        self._columns = columns
        self._count = count
        return self

    def insert(self, rows):
        self._op = "insert"
        self._payload = rows if isinstance(rows, list) else [rows]
        return self

    def update(self, values: dict):
        self._op = "update"
        self._payload = values
        return self

    def eq(self, column: str, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column: str, value):
        expected = None if value in (None, "null") else value
        self._filters.append(lambda row: row.get(column) is expected)
        return self

    def ilike(self, column: str, pattern: str):
        regex = re.compile(".*".join(re.escape(part) for part in pattern.split("%")), re.IGNORECASE)
        self._filters.append(lambda row: regex.fullmatch(str(row.get(column) or "")) is not None)
        return self

    def order(self, column: str, desc: bool = False):
        self._order.append((column, desc))
        return self

    def range(self, start: int, end: int):
        self._range = (start, end)
        return self

    def limit(self, size: int):
        self._limit = size
        return self

    def execute(self) -> FakeResponse:
        self._db.calls.append((self._op, self._table))
        hook = self._db.hooks.pop((self._op, self._table), None)
        if hook:
            hook()
        if (self._op, self._table) in self._db.failures:
            raise APIError({"message": f"{self._op} on {self._table} failed", "code": "XX000"})
        rows = self._db.tables.setdefault(self._table, [])
        if self._op == "insert":
            return FakeResponse([copy.deepcopy(self._db.add_row(self._table, r)) for r in self._payload])
        matched = [r for r in rows if all(f(r) for f in self._filters)]
        if self._op == "update":
            for row in matched:
                row.update(self._payload)
            return FakeResponse(copy.deepcopy(matched))

        for column, desc in reversed(self._order):
            matched.sort(key=lambda r: r.get(column), reverse=desc)
        total = len(matched)
        if self._range:
            matched = matched[self._range[0]:self._range[1] + 1]
        if self._limit is not None:
            matched = matched[:self._limit]
        return FakeResponse([self._project(r) for r in matched], total if self._count else None)

    def _project(self, row: dict) -> dict:
        if self._columns.strip() == "*":
            return copy.deepcopy(row)
        return {c.strip(): copy.deepcopy(row.get(c.strip())) for c in self._columns.split(",")}


class FakeBucket:
    def __init__(self, name: str, objects: Dict[str, Tuple[bytes, dict]], error: Optional[Exception] = None):
        self.name = name
        self._objects = objects
        self._error = error

    def upload(self, path: str, file: bytes, file_options: Optional[dict] = None):
        if self._error:
            raise self._error
        self._objects[f"{self.name}/{path}"] = (file, file_options or {})
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path: str) -> str:
        return f"https://storage.test/object/public/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.objects: Dict[str, Tuple[bytes, dict]] = {}
        self.upload_error: Optional[Exception] = None

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(bucket, self.objects, self.upload_error)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[dict]] = {name: [] for name in PRIMARY_KEYS}
        self.storage = FakeStorage()
        self.failures = set()
        self.hooks: Dict[Tuple[str, str], Callable[[], None]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._next_id: Dict[str, int] = {name: 1 for name in PRIMARY_KEYS}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def add_row(self, table: str, values: dict) -> dict:
        pk = PRIMARY_KEYS[table]
        row = dict(values)
        if pk not in row:
            row[pk] = self._next_id[table]
        self._next_id[table] = max(self._next_id[table], row[pk]) + 1
        self.tables[table].append(row)
        return row


def make_settings(**overrides) -> Settings:
    values = {"jwt_secret": "test-secret", "supabase_url": None, "supabase_service_role_key": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class ApiTestCase(unittest.TestCase):
    """Test case wiring a fresh app to a fresh in-memory store."""

    settings_overrides: Dict[str, Any] = {}

    def setUp(self):
        self.settings = make_settings(**self.settings_overrides)
        self.db = FakeSupabase()
        self.app = create_app(self.settings)
        self.app.dependency_overrides[get_db] = lambda: self.db
        self.client = TestClient(self.app)

    def token_for(self, user_id: int, role: str = "user") -> str:
        return create_access_token(user_id, role, self.settings)

    def auth(self, user_id: int = 1, role: str = "user") -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_for(user_id, role)}"}

    def add_user(self, username: str = "budi", password: str = "rahasia123", role: str = "user", **extra) -> dict:
        return self.db.add_row(
            "User",
            {
                "username": username,
                "name": extra.pop("name", username.title()),
                "email": extra.pop("email", f"{username}@example.com"),
                "password": hash_password(password),
                "role": role,
                **extra,
            },
        )

    def add_category(self, name: str) -> dict:
        return self.db.add_row("Categories", {"name": name})

    def add_umkm(self, name: str = "Warung Bu Sri", category: int = 1, **extra) -> dict:
        values = {
            "name": name,
            "location": "Yogyakarta",
            "description": "",
            "categories": category,
            "photo": None,
            "user_id": 1,
            "rating": 0,
            "total_rating": 0,
            "is_active": True,
        }
        values.update(extra)
        return self.db.add_row("Umkm", values)
