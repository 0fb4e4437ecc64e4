import json
import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union


_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")

# tables whose primary key is an opaque string id generated on insert
_TEXT_ID_TABLES = {"transactions", "receipts", "categories"}
_JSON_COLUMNS = {"line_items"}


class StoreError(Exception):
    """Raised for any failure of the backing record store."""


def _get_db_path() -> str:
    """Read the DB path from the environment on every call so tests can monkeypatch it."""
    return os.getenv("LEDGER_STATE_DB", "ledger_state.db")


def _ident(name: str) -> str:
    if not isinstance(name, str) or not _IDENT.match(name):
        raise StoreError(f"invalid identifier: {name!r}")
    return name


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _decode(row: sqlite3.Row) -> Dict:
    out = dict(row)
    for col in _JSON_COLUMNS:
        if col in out and isinstance(out[col], str):
            try:
                out[col] = json.loads(out[col])
            except ValueError:
                out[col] = []
    return out


class Query:
    """Fluent query over a single table: select/update/delete plus filters."""

    def __init__(self, store: "RecordStore", table: str):
        self.store = store
        self.table = _ident(table)
        self._op = "select"
        self._columns = "*"
        self._patch: Dict = {}
        self._where: List[str] = []
        self._params: List[Any] = []
        self._order: List[str] = []
        self._limit: Optional[int] = None

    # --- operations ---
    def select(self, columns: Union[str, Sequence[str]] = "*") -> "Query":
        self._op = "select"
        if isinstance(columns, str):
            columns = [c.strip() for c in columns.split(",")]
        self._columns = "*" if list(columns) == ["*"] else ", ".join(_ident(c) for c in columns)
        return self

    def update(self, patch: Dict) -> "Query":
        if not patch:
            raise StoreError("update requires a non-empty patch")
        self._op = "update"
        self._patch = {_ident(k): v for k, v in patch.items()}
        return self

    def delete(self) -> "Query":
        self._op = "delete"
        return self

    def insert(self, rows: Union[Dict, Iterable[Dict]]) -> List[Any]:
        """Insert rows and return the id of each."""
        if isinstance(rows, dict):
            rows = [rows]
        ids: List[Any] = []
        with self.store._conn() as con:
            for row in rows:
                row = dict(row)
                if self.table in _TEXT_ID_TABLES and not row.get("id"):
                    row["id"] = uuid.uuid4().hex
                cols = [_ident(c) for c in row.keys()]
                sql = f"INSERT INTO {self.table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})"
                cur = con.execute(sql, [_encode(c, row[c]) for c in cols])
                ids.append(row.get("id", cur.lastrowid))
        return ids

    # --- filters ---
    def eq(self, field: str, value: Any) -> "Query":
        self._where.append(f"{_ident(field)} = ?")
        self._params.append(_encode(field, value))
        return self

    def is_null(self, field: str) -> "Query":
        self._where.append(f"{_ident(field)} IS NULL")
        return self

    def not_null(self, field: str) -> "Query":
        self._where.append(f"{_ident(field)} IS NOT NULL")
        return self

    def gte(self, field: str, value: Any) -> "Query":
        self._where.append(f"{_ident(field)} >= ?")
        self._params.append(value)
        return self

    def lte(self, field: str, value: Any) -> "Query":
        self._where.append(f"{_ident(field)} <= ?")
        self._params.append(value)
        return self

    def in_(self, field: str, values: Sequence[Any]) -> "Query":
        values = list(values)
        if not values:
            self._where.append("0")
            return self
        self._where.append(f"{_ident(field)} IN ({', '.join('?' for _ in values)})")
        self._params.extend(values)
        return self

    def order(self, field: str, desc: bool = False) -> "Query":
        self._order.append(f"{_ident(field)} {'DESC' if desc else 'ASC'}")
        return self

    def limit(self, n: int) -> "Query":
        self._limit = int(n)
        return self

    def _where_sql(self) -> str:
        return f" WHERE {' AND '.join(self._where)}" if self._where else ""

    def execute(self) -> Union[List[Dict], int]:
        """Rows for select, affected row count for update/delete."""
        with self.store._conn() as con:
            if self._op == "select":
                sql = f"SELECT {self._columns} FROM {self.table}{self._where_sql()}"
                if self._order:
                    sql += f" ORDER BY {', '.join(self._order)}"
                if self._limit is not None:
                    sql += f" LIMIT {self._limit}"
                return [_decode(r) for r in con.execute(sql, self._params).fetchall()]
            if self._op == "update":
                sets = ", ".join(f"{c} = ?" for c in self._patch)
                values = [_encode(c, v) for c, v in self._patch.items()]
                cur = con.execute(f"UPDATE {self.table} SET {sets}{self._where_sql()}", values + self._params)
                return cur.rowcount
            cur = con.execute(f"DELETE FROM {self.table}{self._where_sql()}", self._params)
            return cur.rowcount

    def maybe_single(self) -> Optional[Dict]:
        rows = self.limit(1).execute()
        return rows[0] if rows else None


class RecordStore:
    """SQLite-backed record store for transactions, receipts and learning data."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def _get_db_path(self) -> str:
        return self.db_path or _get_db_path()

    @contextmanager
    def _conn(self):
        try:
            con = sqlite3.connect(self._get_db_path(), timeout=30)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        con.row_factory = sqlite3.Row
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            yield con
            con.commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  amount REAL NOT NULL,
                  description TEXT,
                  transaction_date TEXT,
                  type TEXT DEFAULT 'expense',
                  receipt_url TEXT,
                  category_id TEXT,
                  vat_amount REAL,
                  vat_rate REAL,
                  notes TEXT DEFAULT '',
                  review_status TEXT DEFAULT 'none',
                  is_reconciled INTEGER DEFAULT 0
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS receipts (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  image_url TEXT,
                  supplier_name TEXT,
                  date TEXT,
                  total_amount REAL,
                  vat_amount REAL,
                  vat_rate REAL,
                  line_items TEXT,
                  confidence REAL,
                  transaction_id TEXT,
                  review_status TEXT DEFAULT 'none'
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS user_corrections (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  vendor_pattern TEXT NOT NULL,
                  original_category TEXT,
                  corrected_category TEXT,
                  corrected_category_id TEXT,
                  corrected_vat_rate REAL,
                  transaction_count INTEGER DEFAULT 1,
                  promoted_to_cache INTEGER DEFAULT 0,
                  UNIQUE(user_id, vendor_pattern)
                );
                """
            )
            # rows with user_id IS NULL are global entries
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS vendor_cache (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT,
                  vendor_pattern TEXT NOT NULL,
                  normalized_name TEXT,
                  category TEXT,
                  vat_type TEXT,
                  vat_deductible INTEGER DEFAULT 0,
                  business_purpose TEXT,
                  confidence INTEGER DEFAULT 0,
                  source TEXT,
                  hit_count INTEGER DEFAULT 0,
                  last_seen TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                  id TEXT PRIMARY KEY,
                  user_id TEXT,
                  name TEXT NOT NULL,
                  type TEXT DEFAULT 'expense'
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  ts TEXT,
                  level TEXT,
                  actor TEXT,
                  action TEXT,
                  target_ids TEXT,
                  score REAL,
                  result TEXT,
                  error TEXT
                );
                """
            )

    def table(self, name: str) -> Query:
        return Query(self, name)

    def upsert(self, table: str, row: Dict, on_conflict: Sequence[str]) -> None:
        """Update the row matching on_conflict columns (NULL equals NULL), else insert."""
        table = _ident(table)
        keys = [_ident(k) for k in on_conflict]
        with self._conn() as con:
            where = " AND ".join(f"{k} IS ?" for k in keys)
            existing = con.execute(
                f"SELECT rowid FROM {table} WHERE {where} LIMIT 1", [_encode(k, row.get(k)) for k in keys]
            ).fetchone()
            cols = [_ident(c) for c in row.keys()]
            values = [_encode(c, row[c]) for c in cols]
            if existing:
                sets = ", ".join(f"{c} = ?" for c in cols)
                con.execute(f"UPDATE {table} SET {sets} WHERE rowid = ?", values + [existing[0]])
            else:
                con.execute(
                    f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})", values
                )

    def upsert_counter(self, table: str, row: Dict, on_conflict: Sequence[str], counter: str) -> None:
        """Insert row, or on a unique-key conflict overwrite its other columns and add 1 to counter.

        One statement, so concurrent writers never lose an increment. on_conflict
        must name a UNIQUE constraint of the table.
        """
        table = _ident(table)
        counter = _ident(counter)
        keys = [_ident(k) for k in on_conflict]
        cols = [_ident(c) for c in row.keys()]
        sets = [f"{c} = excluded.{c}" for c in cols if c not in keys and c != counter]
        sets.append(f"{counter} = {table}.{counter} + 1")
        sql = (
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT({', '.join(keys)}) DO UPDATE SET {', '.join(sets)}"
        )
        with self._conn() as con:
            con.execute(sql, [_encode(c, row[c]) for c in cols])

    def write_audit(
        self,
        level: str,
        actor: str,
        action: str,
        target_ids: list,
        score: Optional[float],
        result: str,
        error: Optional[str] = None,
    ):
        with self._conn() as con:
            con.execute(
                "INSERT INTO audit_log(ts, level, actor, action, target_ids, score, result, error) VALUES (?,?,?,?,?,?,?,?)",
                (datetime.utcnow().isoformat(), level, actor, action, json.dumps(target_ids), score, result, error),
            )

    def read_audit(self, action: Optional[str] = None) -> List[Dict]:
        q = self.table("audit_log").select("*")
        if action:
            q = q.eq("action", action)
        rows = q.order("ts").execute()
        for r in rows:
            r["target_ids"] = json.loads(r.get("target_ids") or "[]")
        return rows
