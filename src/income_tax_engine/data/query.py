"""Row mapping, a small SELECT builder and the base repository."""

import dataclasses
import sqlite3
import typing
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, TypeVar

from .database import Database, get_db

T = TypeVar("T")


class RowMapper(Generic[T]):
    """Maps sqlite3.Row objects to dataclass instances using type hints.

    Handles Decimal (stored as TEXT), date / datetime (ISO text), bool
    (0/1), str Enums and Optional[...] of those. Fields of any other type
    are passed through unchanged.
    """

    def __init__(self, model_class: type[T]):
        self._model_class = model_class
        self._fields = dataclasses.fields(model_class)  # type: ignore[arg-type]
        self._hints = typing.get_type_hints(model_class)
        self._converters = {
            f.name: self._get_converter(self._hints.get(f.name))
            for f in self._fields
        }

    def _get_converter(self, hint):
        if hint is None:
            return None

        if typing.get_origin(hint) is typing.Union:
            non_none = [a for a in typing.get_args(hint) if a is not type(None)]
            if len(non_none) != 1:
                return None
            inner = self._get_converter(non_none[0])
            if inner is None:
                return None
            return lambda v, c=inner: c(v) if v is not None else None

        if hint is Decimal:
            return lambda v: Decimal(str(v))
        if hint is datetime:
            return lambda v: datetime.fromisoformat(v) if isinstance(v, str) else v
        if hint is date:
            return lambda v: date.fromisoformat(v) if isinstance(v, str) else v
        if hint is bool:
            return bool
        if hint is int:
            return int
        if hint is str:
            return str
        if isinstance(hint, type) and issubclass(hint, Enum):
            return lambda v, cls=hint: cls(v)
        return None

    @staticmethod
    def _default(f: dataclasses.Field):
        if f.default is not dataclasses.MISSING:
            return f.default
        if f.default_factory is not dataclasses.MISSING:  # type: ignore[misc]
            return f.default_factory()  # type: ignore[misc]
        return dataclasses.MISSING

    def map(self, row: sqlite3.Row) -> T:
        kwargs: dict = {}
        row_keys = row.keys()
        for f in self._fields:
            raw = row[f.name] if f.name in row_keys else None
            if raw is None:
                default = self._default(f)
                if default is not dataclasses.MISSING:
                    kwargs[f.name] = default
                elif f.name in row_keys:
                    kwargs[f.name] = None
                # else: leave missing; ModelClass(**kwargs) raises TypeError
                continue
            conv = self._converters.get(f.name)
            kwargs[f.name] = conv(raw) if conv else raw
        return self._model_class(**kwargs)

    def map_all(self, rows) -> list[T]:
        return [self.map(r) for r in rows]

    @staticmethod
    def serialize(val):
        """Python value → SQLite-compatible value."""
        if val is None:
            return None
        if isinstance(val, Decimal):
            return str(val)
        if isinstance(val, (datetime, date)):
            return val.isoformat()
        if isinstance(val, Enum):
            return val.value
        if isinstance(val, bool):
            return int(val)
        return val

    def to_db_dict(self, obj: T, skip: frozenset = frozenset()) -> dict:
        """Return {field_name: serialized_value} for all non-skipped fields."""
        return {
            f.name: self.serialize(getattr(obj, f.name))
            for f in self._fields
            if f.name not in skip
        }


class QueryBuilder:
    """Fluent SELECT query builder for SQLite."""

    def __init__(self, table: str):
        self._table = table
        self._columns: list[str] = ["*"]
        self._conditions: list[str] = []
        self._params: list = []
        self._order: Optional[str] = None
        self._limit_val: Optional[int] = None

    def select(self, *columns: str) -> "QueryBuilder":
        self._columns = list(columns)
        return self

    def where(self, condition: str, *params) -> "QueryBuilder":
        self._conditions.append(condition)
        self._params.extend(params)
        return self

    def order_by(self, clause: str) -> "QueryBuilder":
        self._order = clause
        return self

    def limit(self, n: int) -> "QueryBuilder":
        self._limit_val = n
        return self

    def build(self) -> tuple[str, list]:
        sql = f"SELECT {', '.join(self._columns)} FROM {self._table}"
        if self._conditions:
            sql += " WHERE " + " AND ".join(self._conditions)
        if self._order:
            sql += f" ORDER BY {self._order}"
        if self._limit_val is not None:
            sql += f" LIMIT {self._limit_val}"
        return sql, list(self._params)

    def fetch_one(self, conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
        sql, params = self.build()
        return conn.execute(sql, params).fetchone()

    def fetch_all(self, conn: sqlite3.Connection) -> list[sqlite3.Row]:
        sql, params = self.build()
        return conn.execute(sql, params).fetchall()


class BaseRepository(Generic[T]):
    """Shared helpers: get_by_id, _query, _insert.

    Subclasses set ``_table`` and either ``_mapper`` or override ``_map``
    for models that need hand-written column mapping.
    """

    _table: str
    _mapper: Optional[RowMapper] = None  # type: ignore[type-arg]
    _insert_skip: frozenset = frozenset({"id", "created_at", "updated_at"})

    def _db(self) -> Database:
        return get_db()

    def _query(self) -> QueryBuilder:
        return QueryBuilder(self._table)

    def _map(self, row: sqlite3.Row) -> T:
        return self._mapper.map(row)

    def _to_row(self, obj: T) -> dict:
        return self._mapper.to_db_dict(obj, skip=self._insert_skip)

    def get_by_id(self, id: int) -> Optional[T]:
        row = self._query().where("id = ?", id).fetch_one(self._db().conn)
        return self._map(row) if row else None

    def _insert(self, obj: T) -> T:
        """Generic INSERT of ``_to_row(obj)``; returns the stored row."""
        db = self._db()
        row_dict = self._to_row(obj)
        cols = ", ".join(row_dict)
        placeholders = ", ".join("?" * len(row_dict))
        with db.transaction():
            cursor = db.conn.execute(
                f"INSERT INTO {self._table} ({cols}) VALUES ({placeholders})",
                list(row_dict.values()),
            )
        return self.get_by_id(cursor.lastrowid)
