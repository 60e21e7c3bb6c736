"""In-memory stand-ins for the supabase client used across the suite."""
import copy
import time
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

from supabase import PostgrestAPIError


# Foreign keys enforced by the fake backend: table -> (column, referenced table)
FOREIGN_KEYS = {
    "client_images": ("client_id", "clients"),
}
EMBEDDED = "client_images(*)"


def api_error(code: str, message: str = "backend error") -> PostgrestAPIError:
    return PostgrestAPIError({"message": message, "code": code, "hint": None, "details": None})


class FakeQuery:
    """Mimics the subset of the postgrest-py builder used by the repositories."""

    def __init__(self, backend: "FakeSupabase", table: str):
        self.backend = backend
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload: Optional[Dict[str, Any]] = None
        self.filters: List[tuple] = []
        self.order_by: Optional[str] = None
        self.limit_n: Optional[int] = None

    def select(self, columns: str = "*"):
        self.columns = columns
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", dict(payload)
        return self

    def update(self, payload):
        self.op, self.payload = "update", dict(payload)
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = column
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def _matches(self, row) -> bool:
        return all(str(row.get(column)) == str(value) for column, value in self.filters)

    def execute(self):
        self.backend.calls.append((self.table, self.op))
        self.backend.before_execute(self.table, self.op)
        result = self._apply()
        self.backend.after_execute(self.table, self.op)
        return result

    def _apply(self):
        rows = self.backend.tables.setdefault(self.table, [])

        if self.op == "insert":
            row = {"id": uuid.uuid4().hex, **self.payload}
            self.backend.check_foreign_key(self.table, row)
            rows.append(row)
            return SimpleNamespace(data=[copy.deepcopy(row)])

        matched = [row for row in rows if self._matches(row)]
        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=copy.deepcopy(matched))
        if self.op == "delete":
            for row in matched:
                self.backend.check_not_referenced(self.table, row)
            self.backend.tables[self.table] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=copy.deepcopy(matched))

        result = copy.deepcopy(matched)
        if self.order_by:
            result.sort(key=lambda row: row.get(self.order_by) or 0)
        if EMBEDDED in self.columns:
            for row in result:
                row["client_images"] = [copy.deepcopy(image) for image in self.backend.tables.get("client_images", [])
                                        if image.get("client_id") == row["id"]]
        if self.limit_n is not None:
            result = result[:self.limit_n]
        return SimpleNamespace(data=result)


class FakeBucket:
    def __init__(self, backend: "FakeSupabase", name: str):
        self.backend = backend
        self.name = name

    def upload(self, path, file, file_options=None):
        self.backend.calls.append((f"storage:{self.name}", "upload"))
        self.backend.before_execute(f"storage:{self.name}", "upload")
        self.backend.objects[path] = file
        return SimpleNamespace(path=path)

    def get_public_url(self, path):
        self.backend.before_execute(f"storage:{self.name}", "public_url")
        return f"https://cdn.example.com/storage/v1/object/public/{self.name}/{path}"

    def remove(self, paths):
        self.backend.calls.append((f"storage:{self.name}", "remove"))
        self.backend.before_execute(f"storage:{self.name}", "remove")
        for path in paths:
            self.backend.objects.pop(path, None)
        return [{"name": path} for path in paths]


class FakeSupabase:
    """In-memory stand-in for a supabase `Client` with scripted failures."""

    def __init__(self, tables: Optional[Dict[str, List[dict]]] = None):
        self.tables: Dict[str, List[dict]] = copy.deepcopy(tables or {})
        self.objects: Dict[str, bytes] = {}
        self.calls: List[tuple] = []
        self._failures: Dict[tuple, List[BaseException]] = {}
        self._delays: Dict[tuple, List[float]] = {}
        self._lags: Dict[tuple, List[float]] = {}
        self.storage = SimpleNamespace(from_=lambda bucket: FakeBucket(self, bucket))
        self.auth = MagicMock()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    # --- Scripting ---

    def fail(self, table: str, op: str, exc: BaseException, times: int = 1) -> None:
        self._failures.setdefault((table, op), []).extend([exc] * times)

    def hang(self, table: str, op: str, seconds: float, times: int = 1) -> None:
        self._delays.setdefault((table, op), []).extend([seconds] * times)

    def lag(self, table: str, op: str, seconds: float, times: int = 1) -> None:
        """The write is applied, then the response is held back for `seconds`."""
        self._lags.setdefault((table, op), []).extend([seconds] * times)

    def after_execute(self, table: str, op: str) -> None:
        lags = self._lags.get((table, op))
        if lags:
            time.sleep(lags.pop(0))

    def before_execute(self, table: str, op: str) -> None:
        delays = self._delays.get((table, op))
        if delays:
            seconds = delays.pop(0)
            time.sleep(seconds)
            raise TimeoutError(f"{table} {op} hung for {seconds}s")
        failures = self._failures.get((table, op))
        if failures:
            raise failures.pop(0)

    def count(self, table: str, op: str) -> int:
        return sum(1 for call in self.calls if call == (table, op))

    # --- Constraints ---

    def check_foreign_key(self, table: str, row: dict) -> None:
        if table not in FOREIGN_KEYS:
            return
        column, parent = FOREIGN_KEYS[table]
        if not any(parent_row["id"] == row.get(column) for parent_row in self.tables.get(parent, [])):
            raise api_error("23503", f"insert on {table} violates foreign key on {column}")

    def check_not_referenced(self, table: str, row: dict) -> None:
        for child, (column, parent) in FOREIGN_KEYS.items():
            if parent == table and any(child_row.get(column) == row["id"] for child_row in self.tables.get(child, [])):
                raise api_error("23503", f"delete on {table} violates foreign key from {child}")
