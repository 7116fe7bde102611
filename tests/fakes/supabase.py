"""In-memory stand-in for the supabase-py client (only the calls the project makes)."""
from __future__ import annotations

import copy
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4


class FakeResponse:
    def __init__(self, data: Any, count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    # --- operations ---
    def select(self, *_cols, **_kw) -> "FakeQuery":
        self._op = "select"
        return self

    def insert(self, rows: Any) -> "FakeQuery":
        self._op = "insert"
        self._payload = rows
        return self

    def update(self, patch: Dict[str, Any]) -> "FakeQuery":
        self._op = "update"
        self._payload = patch
        return self

    # --- filters ---
    def eq(self, col: str, val: Any) -> "FakeQuery":
        self._filters.append(lambda r: r.get(col) == val)
        return self

    def lt(self, col: str, val: Any) -> "FakeQuery":
        self._filters.append(lambda r: r.get(col) is not None and r.get(col) < val)
        return self

    def order(self, col: str, desc: bool = False) -> "FakeQuery":
        self._order = (col, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self._limit = n
        return self

    def _match(self, row: Dict[str, Any]) -> bool:
        return all(f(row) for f in self._filters)

    def execute(self) -> FakeResponse:
        self._db.calls.append((self._table, self._op))
        if self._table in self._db.fail_tables:
            raise RuntimeError(f"fake supabase: table {self._table} unavailable")
        rows = self._db.tables.setdefault(self._table, [])

        if self._op == "insert":
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            out = []
            for item in items:
                row = copy.deepcopy(item)
                row.setdefault("id", str(uuid4()))
                rows.append(row)
                out.append(copy.deepcopy(row))
            return FakeResponse(out)

        if self._op == "update":
            out = []
            for row in rows:
                if self._match(row):
                    row.update(copy.deepcopy(self._payload))
                    out.append(copy.deepcopy(row))
            return FakeResponse(out)

        found = [copy.deepcopy(r) for r in rows if self._match(r)]
        if self._order:
            col, desc = self._order
            found.sort(key=lambda r: str(r.get(col) or ""), reverse=desc)
        if self._limit is not None:
            found = found[: self._limit]
        return FakeResponse(found, count=len(found))


class _FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self._db = db
        self._name = name
        self._params = params

    def execute(self) -> FakeResponse:
        if self._name != "get_user_balance":
            raise RuntimeError(f"fake supabase: unknown rpc {self._name}")
        return FakeResponse(self._db.balance_of(self._params["user_telegram_id"]))


class _FakeBucket:
    def __init__(self, db: "FakeSupabase", bucket: str):
        self._db = db
        self._bucket = bucket

    def upload(self, path: str, file: bytes, file_options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._db.uploads[f"{self._bucket}/{path}"] = file
        return {"path": path}

    def get_public_url(self, path: str) -> str:
        return f"https://fake.supabase.co/storage/v1/object/public/{self._bucket}/{path}"


class _FakeStorage:
    def __init__(self, db: "FakeSupabase"):
        self._db = db

    def from_(self, bucket: str) -> _FakeBucket:
        return _FakeBucket(self._db, bucket)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.uploads: Dict[str, bytes] = {}
        self.fail_tables: set = set()
        self.calls: List[tuple] = []
        self.storage = _FakeStorage(self)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> _FakeRpc:
        return _FakeRpc(self, name, params)

    # --- helpers for tests ---
    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def balance_of(self, telegram_id: Any) -> int:
        tid = str(telegram_id)
        total = 0
        for r in self.rows("payments_v2"):
            if r.get("telegram_id") != tid or r.get("status") != "COMPLETED":
                continue
            if r.get("type") == "MONEY_INCOME":
                total += int(r.get("stars") or 0)
            elif r.get("type") == "MONEY_OUTCOME":
                total -= int(r.get("stars") or 0)
        return total

    def seed_user(self, telegram_id: int, *, level: int = 0, username: str = "tester") -> None:
        self.rows("users").append({"telegram_id": str(telegram_id), "username": username, "level": level})

    def seed_balance(self, telegram_id: int, stars: int) -> None:
        self.rows("payments_v2").append(
            {
                "id": str(uuid4()),
                "telegram_id": str(telegram_id),
                "stars": int(stars),
                "amount": int(stars),
                "type": "MONEY_INCOME",
                "status": "COMPLETED",
                "inv_id": f"seed:{uuid4().hex}",
            }
        )

    def outcomes(self, telegram_id: int, status: str = "COMPLETED") -> List[Dict[str, Any]]:
        return [
            r
            for r in self.rows("payments_v2")
            if r.get("telegram_id") == str(telegram_id) and r.get("type") == "MONEY_OUTCOME" and r.get("status") == status
        ]
