from __future__ import annotations

import asyncio
import copy
import datetime
import json
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterable, List, Optional, Tuple

import aiosqlite
import structlog

from errors import StoreError

logger = structlog.get_logger(__name__)

INTEGER = "INTEGER"
REAL = "REAL"
TEXT = "TEXT"
BOOLEAN = "BOOLEAN"
JSON = "JSON"

_SQL_TYPES = {INTEGER: "INTEGER", REAL: "REAL", TEXT: "TEXT", BOOLEAN: "INTEGER", JSON: "TEXT"}

# SQLite's default host parameter limit is 999 on older builds.
_CHUNK = 500

_active_transaction: ContextVar[Optional["Transaction"]] = ContextVar(
    "active_transaction", default=None
)


class TableSpec:
    """Declares the columns and indexes of one table."""

    def __init__(
        self,
        columns: dict[str, str],
        indexes: Iterable[str | Tuple[str, ...]] = (),
        primary_key: str = "id",
        auto_increment: bool = True,
        unique: Iterable[Tuple[str, ...]] = (),
    ) -> None:
        if primary_key not in columns:
            raise ValueError(f"primary key {primary_key!r} missing from columns")
        for ctype in columns.values():
            if ctype not in _SQL_TYPES:
                raise ValueError(f"unknown column type {ctype!r}")
        self.columns = dict(columns)
        self.primary_key = primary_key
        self.auto_increment = auto_increment
        self.indexes = tuple(
            (idx,) if isinstance(idx, str) else tuple(idx) for idx in indexes
        )
        self.unique = tuple(tuple(u) for u in unique)
        for fields in self.indexes + self.unique:
            for field in fields:
                if field not in self.columns:
                    raise ValueError(f"index field {field!r} is not a column")

    def extend(
        self,
        columns: dict[str, str] | None = None,
        indexes: Iterable[str | Tuple[str, ...]] = (),
        unique: Iterable[Tuple[str, ...]] = (),
    ) -> "TableSpec":
        """Return a new spec with extra columns and indexes added."""
        return TableSpec(
            {**self.columns, **(columns or {})},
            self.indexes + tuple(indexes),
            self.primary_key,
            self.auto_increment,
            self.unique + tuple(unique),
        )

    @property
    def queryable(self) -> set[str]:
        fields = {self.primary_key}
        for group in self.indexes + self.unique:
            fields.update(group)
        return fields

    def create_sql(self, name: str) -> str:
        parts = []
        for col, ctype in self.columns.items():
            if col == self.primary_key:
                if self.auto_increment:
                    parts.append(f"{col} INTEGER PRIMARY KEY AUTOINCREMENT")
                else:
                    parts.append(f"{col} {_SQL_TYPES[ctype]} PRIMARY KEY")
            else:
                parts.append(f"{col} {_SQL_TYPES[ctype]}")
        return f"CREATE TABLE {name} ({', '.join(parts)});"

    def add_column_sql(self, name: str, column: str) -> str:
        return f"ALTER TABLE {name} ADD COLUMN {column} {_SQL_TYPES[self.columns[column]]};"

    def index_sql(self, name: str) -> List[str]:
        statements = []
        for fields in self.indexes:
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{name}_{'_'.join(fields)} "
                f"ON {name} ({', '.join(fields)});"
            )
        for fields in self.unique:
            statements.append(
                f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{name}_{'_'.join(fields)} "
                f"ON {name} ({', '.join(fields)});"
            )
        return statements

    def covers(self, other: "TableSpec") -> bool:
        """True when this spec keeps every column and index of ``other``."""
        if other.primary_key != self.primary_key:
            return False
        for col, ctype in other.columns.items():
            if self.columns.get(col) != ctype:
                return False
        return set(other.indexes) <= set(self.indexes) and set(other.unique) <= set(
            self.unique
        )

    def encode(self, record: dict) -> dict:
        unknown = set(record) - set(self.columns)
        if unknown:
            raise StoreError(f"unknown fields: {', '.join(sorted(unknown))}")
        return {col: _encode(self.columns[col], val) for col, val in record.items()}

    def decode(self, row: Tuple) -> dict:
        return {
            col: _decode(ctype, row[i]) for i, (col, ctype) in enumerate(self.columns.items())
        }


Layout = dict[str, TableSpec]


def utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


def _encode(ctype: str, value: Any) -> Any:
    if value is None:
        return None
    if ctype == JSON:
        return json.dumps(value, sort_keys=True)
    if ctype == BOOLEAN:
        return 1 if value else 0
    return value


def _decode(ctype: str, value: Any) -> Any:
    if value is None:
        return None
    if ctype == JSON:
        return json.loads(value)
    if ctype == BOOLEAN:
        return bool(value)
    return value


def _sort_key(field: str) -> Callable[[dict], tuple]:
    def key(record: dict) -> tuple:
        value = record.get(field)
        return (value is None, value if value is not None else 0)

    return key


class Transaction:
    """An open transaction scoped to a fixed set of tables."""

    def __init__(self, store: "Store", mode: str, tables: Iterable[str]) -> None:
        if mode not in ("r", "rw"):
            raise StoreError(f"unknown transaction mode {mode!r}")
        self.store = store
        self.mode = mode
        self.tables = frozenset(tables)

    def check(self, table: str, write: bool) -> None:
        if table not in self.tables:
            raise StoreError(f"table {table!r} is not part of this transaction")
        if write and self.mode != "rw":
            raise StoreError(f"cannot write {table!r} in a read-only transaction")

    def table(self, name: str) -> "Table":
        self.check(name, write=False)
        return self.store.table(name)

    async def execute(self, sql: str, params: Tuple = ()) -> aiosqlite.Cursor:
        """Run raw SQL inside the transaction (schema statements)."""
        if self.mode != "rw":
            raise StoreError("raw statements need a read-write transaction")
        return await self.store._conn.execute(sql, params)

    async def fetch_all(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        cursor = await self.store._conn.execute(sql, params)
        return list(await cursor.fetchall())


class Store:
    """Local SQLite store exposing tables of record dicts."""

    def __init__(self, path: str = "planner.db") -> None:
        self.path = path
        self.layout: Layout = {}
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> "Store":
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            await self._conn.execute("PRAGMA foreign_keys=ON;")
        return self

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Store":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def use_layout(self, layout: Layout) -> None:
        self.layout = dict(layout)

    def spec(self, name: str) -> TableSpec:
        try:
            return self.layout[name]
        except KeyError:
            raise StoreError(f"unknown table {name!r}") from None

    def table(self, name: str) -> "Table":
        self.spec(name)
        return Table(self, name)

    async def user_version(self) -> int:
        self._require_open()
        cursor = await self._conn.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    def _require_open(self) -> None:
        if self._conn is None:
            raise StoreError("store is not open")

    @asynccontextmanager
    async def transaction(self, mode: str, tables: Iterable[str]):
        """Open a transaction over ``tables``; nested calls join the outer one."""
        self._require_open()
        tables = list(tables)
        current = _active_transaction.get()
        if current is not None and current.store is self:
            for name in tables:
                current.check(name, write=mode == "rw")
            yield current
            return
        async with self._lock:
            tx = Transaction(self, mode, tables)
            token = _active_transaction.set(tx)
            await self._conn.execute("BEGIN IMMEDIATE;" if mode == "rw" else "BEGIN;")
            try:
                yield tx
            except BaseException:
                await self._conn.execute("ROLLBACK;")
                raise
            else:
                await self._conn.execute("COMMIT;")
            finally:
                _active_transaction.reset(token)

    async def dump(self) -> dict[str, list[dict]]:
        """Every declared table's rows ordered by primary key."""
        async with self.transaction("r", self.layout) as tx:
            return {
                name: await tx.table(name).order_by(spec.primary_key)
                for name, spec in self.layout.items()
            }


class Table:
    """Async accessor for one declared table."""

    def __init__(self, store: Store, name: str) -> None:
        self.store = store
        self.name = name

    @property
    def spec(self) -> TableSpec:
        return self.store.spec(self.name)

    def _select(self) -> str:
        return f"SELECT {', '.join(self.spec.columns)} FROM {self.name}"

    async def _fetch(self, sql: str, params: Tuple = ()) -> List[dict]:
        async with self.store.transaction("r", [self.name]) as tx:
            rows = await tx.fetch_all(sql, params)
        spec = self.spec
        return [spec.decode(row) for row in rows]

    async def _write(self, sql: str, params: Tuple = ()) -> aiosqlite.Cursor:
        async with self.store.transaction("rw", [self.name]):
            return await self.store._conn.execute(sql, params)

    def _check_field(self, field: str) -> None:
        if field not in self.spec.queryable:
            raise StoreError(f"{self.name}.{field} is not indexed")

    async def get(self, key: Any) -> Optional[dict]:
        pk = self.spec.primary_key
        rows = await self._fetch(f"{self._select()} WHERE {pk} = ?;", (key,))
        return rows[0] if rows else None

    async def add(self, record: dict) -> Any:
        spec = self.spec
        data = spec.encode(record)
        if not data:
            cursor = await self._write(f"INSERT INTO {self.name} DEFAULT VALUES;")
        else:
            cols = ", ".join(data)
            marks = ", ".join("?" for _ in data)
            cursor = await self._write(
                f"INSERT INTO {self.name} ({cols}) VALUES ({marks});", tuple(data.values())
            )
        if record.get(spec.primary_key) is not None:
            return record[spec.primary_key]
        return cursor.lastrowid

    async def put(self, record: dict) -> Any:
        spec = self.spec
        data = spec.encode(record)
        cols = ", ".join(data)
        marks = ", ".join("?" for _ in data)
        cursor = await self._write(
            f"INSERT OR REPLACE INTO {self.name} ({cols}) VALUES ({marks});",
            tuple(data.values()),
        )
        if record.get(spec.primary_key) is not None:
            return record[spec.primary_key]
        return cursor.lastrowid

    async def update(self, key: Any, changes: dict) -> int:
        changes = {k: v for k, v in changes.items() if k != self.spec.primary_key}
        if not changes:
            return 0
        data = self.spec.encode(changes)
        assignments = ", ".join(f"{col} = ?" for col in data)
        cursor = await self._write(
            f"UPDATE {self.name} SET {assignments} WHERE {self.spec.primary_key} = ?;",
            tuple(data.values()) + (key,),
        )
        return cursor.rowcount

    async def delete(self, key: Any) -> None:
        await self._write(
            f"DELETE FROM {self.name} WHERE {self.spec.primary_key} = ?;", (key,)
        )

    async def bulk_get(self, keys: Iterable[Any]) -> List[Optional[dict]]:
        keys = list(keys)
        pk = self.spec.primary_key
        found: dict[Any, dict] = {}
        unique = list(dict.fromkeys(k for k in keys if k is not None))
        for start in range(0, len(unique), _CHUNK):
            chunk = unique[start : start + _CHUNK]
            marks = ", ".join("?" for _ in chunk)
            for row in await self._fetch(
                f"{self._select()} WHERE {pk} IN ({marks});", tuple(chunk)
            ):
                found[row[pk]] = row
        return [found.get(k) for k in keys]

    async def bulk_add(self, records: Iterable[dict]) -> List[Any]:
        async with self.store.transaction("rw", [self.name]):
            return [await self.add(record) for record in records]

    async def bulk_put(self, records: Iterable[dict]) -> List[Any]:
        async with self.store.transaction("rw", [self.name]):
            return [await self.put(record) for record in records]

    async def count(self) -> int:
        async with self.store.transaction("r", [self.name]) as tx:
            rows = await tx.fetch_all(f"SELECT COUNT(*) FROM {self.name};")
        return int(rows[0][0])

    async def to_list(self) -> List[dict]:
        return await self._fetch(f"{self._select()};")

    async def order_by(self, field: str, reverse: bool = False) -> List[dict]:
        self._check_field(field)
        direction = "DESC" if reverse else "ASC"
        pk = self.spec.primary_key
        return await self._fetch(
            f"{self._select()} ORDER BY {field} IS NULL, {field} {direction}, {pk} {direction};"
        )

    def to_collection(self) -> "Collection":
        return Collection(self)

    def where(self, **equals: Any) -> "Collection":
        clauses = []
        for field, value in equals.items():
            self._check_field(field)
            if value is None:
                clauses.append((f"{field} IS NULL", ()))
            else:
                clauses.append((f"{field} = ?", (_encode(self.spec.columns[field], value),)))
        return Collection(self, clauses)

    def where_in(self, field: str, values: Iterable[Any]) -> "Collection":
        self._check_field(field)
        ctype = self.spec.columns[field]
        values = [_encode(ctype, v) for v in dict.fromkeys(values) if v is not None]
        if not values:
            return Collection(self, [("0", ())])
        if len(values) > _CHUNK:
            return Collection(self, [], [lambda r, allowed=set(values): r.get(field) in allowed])
        marks = ", ".join("?" for _ in values)
        return Collection(self, [(f"{field} IN ({marks})", tuple(values))])


class Collection:
    """A lazily evaluated selection of rows from one table."""

    def __init__(
        self,
        table: Table,
        clauses: list[tuple[str, tuple]] | None = None,
        filters: list[Callable[[dict], bool]] | None = None,
    ) -> None:
        self.table = table
        self.clauses = list(clauses or [])
        self.filters = list(filters or [])

    def filter(self, predicate: Callable[[dict], bool]) -> "Collection":
        return Collection(self.table, self.clauses, self.filters + [predicate])

    def _sql(self) -> tuple[str, tuple]:
        sql = self.table._select()
        params: tuple = ()
        if self.clauses:
            sql += " WHERE " + " AND ".join(c for c, _ in self.clauses)
            for _, p in self.clauses:
                params += p
        return sql + f" ORDER BY {self.table.spec.primary_key};", params

    async def to_list(self) -> List[dict]:
        sql, params = self._sql()
        rows = await self.table._fetch(sql, params)
        for predicate in self.filters:
            rows = [row for row in rows if predicate(row)]
        return rows

    async def first(self) -> Optional[dict]:
        rows = await self.to_list()
        return rows[0] if rows else None

    async def count(self) -> int:
        return len(await self.to_list())

    async def primary_keys(self) -> List[Any]:
        pk = self.table.spec.primary_key
        return [row[pk] for row in await self.to_list()]

    async def sort_by(self, field: str, reverse: bool = False) -> List[dict]:
        return sorted(await self.to_list(), key=_sort_key(field), reverse=reverse)

    async def modify(self, changes: dict | Callable[[dict], Any]) -> int:
        """Apply a patch dict or an in-place mutator; returns rows changed."""
        table = self.table
        pk = table.spec.primary_key
        changed = 0
        async with table.store.transaction("rw", [table.name]):
            for row in await self.to_list():
                if callable(changes):
                    updated = copy.deepcopy(row)
                    changes(updated)
                else:
                    updated = {**row, **changes}
                patch = {k: v for k, v in updated.items() if row.get(k) != v or k not in row}
                if patch:
                    await table.update(row[pk], patch)
                    changed += 1
        return changed

    async def delete(self) -> int:
        table = self.table
        keys = await self.primary_keys()
        async with table.store.transaction("rw", [table.name]):
            for key in keys:
                await table.delete(key)
        return len(keys)
