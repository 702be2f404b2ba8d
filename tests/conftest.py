"""
Pytest configuration and fixtures for perma-cache tests.

Provides:
- Mock environment/settings fixtures
- An in-memory stand-in for the slice of the postgrest query builder the
  access layer uses, raising real postgrest APIErrors with PostgREST codes
- A DBClient wired to two in-memory schemas
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Callable, Generator
from unittest.mock import patch

import pytest
from postgrest.exceptions import APIError

from permacache.config import Settings, clear_settings_cache
from permacache.db.client import DBClient

Row = dict[str, Any]

# =============================================================================
# Settings fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "DATABASE_URL": "https://db.example.com/rest/v1/",
        "DATABASE_TOKEN": "test-token-abcdefghijkl",
        "DATABASE_TIMEOUT_SECONDS": "5",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration."""
    from permacache.config import get_settings

    yield get_settings()
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# In-memory PostgREST
# =============================================================================


def api_error(code: str, message: str = "error", details: str | None = None) -> APIError:
    """Build a postgrest APIError the way the client does from a response body."""
    return APIError({"code": code, "message": message, "details": details, "hint": None})


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not inside parentheses or double quotes."""
    parts: list[str] = []
    depth = 0
    quoted = False
    current = ""
    prev = ""
    for char in text:
        if char == '"' and prev != "\\":
            quoted = not quoted
        elif not quoted and char == "(":
            depth += 1
        elif not quoted and char == ")":
            depth -= 1
        if char == "," and depth == 0 and not quoted:
            parts.append(current.strip())
            current = ""
        else:
            current += char
        prev = char
    if current.strip():
        parts.append(current.strip())
    return parts


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


@dataclass
class FakeResponse:
    data: Any
    count: int | None = None


class FakeDatabase:
    """Tables shared by the fake schema clients.

    ``relations`` maps a foreign key name to (table, column referencing the
    parent id), for embedded selects such as ``keys:auth_key_user_id_fkey(...)``.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[Row]] = {}
        self.relations: dict[str, tuple[str, str]] = {
            "auth_key_user_id_fkey": ("auth_key", "user_id"),
            "user_tag_user_id_fkey": ("user_tag", "user_id"),
        }
        self.unique_active: dict[str, tuple[str, ...]] = {
            "perma_cache": ("user_id", "url"),
        }
        self.fail_with: APIError | None = None
        self.empty_inserts = False
        self.executed: list[FakeQuery] = []
        self._ids = count(1)

    def rows(self, table: str) -> list[Row]:
        return self.tables.setdefault(table, [])

    def add(self, table: str, **values: Any) -> Row:
        row = {"id": next(self._ids), "deleted_at": None, **values}
        self.rows(table).append(row)
        return row

    def next_id(self) -> int:
        return next(self._ids)


class FakeQuery:
    """Records a fluent query and evaluates it against FakeDatabase."""

    def __init__(self, db: FakeDatabase, table: str) -> None:
        self.db = db
        self.table = table
        self.method = "GET"
        self.columns: list[str] = []
        self.payload: Row | None = None
        self.filters: list[Callable[[Row], bool]] = []
        self.embed_filters: dict[str, list[Callable[[Row], bool]]] = {}
        self.order_by: tuple[str, bool] | None = None
        self.limit_to: int | None = None
        self.single_row = False
        self.or_expression: str | None = None

    # builders ---------------------------------------------------------------

    def select(self, *columns: str) -> FakeQuery:
        self.columns = _split_top_level(",".join(columns))
        return self

    def insert(self, payload: Row) -> FakeQuery:
        self.method = "POST"
        self.payload = payload
        return self

    def update(self, payload: Row) -> FakeQuery:
        self.method = "PATCH"
        self.payload = payload
        return self

    def eq(self, column: str, value: Any) -> FakeQuery:
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def lt(self, column: str, value: Any) -> FakeQuery:
        self.filters.append(
            lambda row: row.get(column) is not None
            and _comparable(row[column]) < _comparable(value)
        )
        return self

    def is_(self, column: str, value: Any) -> FakeQuery:
        return self.filter(column, "is", value)

    def match(self, query: Row) -> FakeQuery:
        for column, value in query.items():
            self.eq(column, value)
        return self

    def filter(self, column: str, operator: str, criteria: Any) -> FakeQuery:
        assert operator == "is" and criteria in ("null", None)
        if "." in column:
            alias, field = column.split(".", 1)
            self.embed_filters.setdefault(alias, []).append(
                lambda row: row.get(field) is None
            )
        else:
            self.filters.append(lambda row: row.get(column) is None)
        return self

    def or_(self, filters: str) -> FakeQuery:
        self.or_expression = filters
        conditions = []
        for part in _split_top_level(filters):
            column, operator, value = part.split(".", 2)
            assert operator == "eq"
            conditions.append((column, _unquote(value)))

        def matches(row: Row) -> bool:
            return any(
                row.get(column) is not None and str(row[column]) == value
                for column, value in conditions
            )

        self.filters.append(matches)
        return self

    def order(self, column: str, *, desc: bool = False) -> FakeQuery:
        self.order_by = (column, desc)
        return self

    def limit(self, size: int) -> FakeQuery:
        self.limit_to = size
        return self

    def single(self) -> FakeQuery:
        self.single_row = True
        return self

    # evaluation -------------------------------------------------------------

    def _matching(self) -> list[Row]:
        return [row for row in self.db.rows(self.table) if all(f(row) for f in self.filters)]

    def _project(self, row: Row) -> Row:
        if not self.columns:
            return dict(row)
        out: Row = {}
        for column in self.columns:
            alias, _, source = column.rpartition(":")
            if "(" in source:
                relation, _, inner = source.partition("(")
                table, fk = self.db.relations[relation]
                children = [
                    child
                    for child in self.db.rows(table)
                    if child.get(fk) == row["id"]
                    and all(f(child) for f in self.embed_filters.get(alias or relation, []))
                ]
                fields = _split_top_level(inner.rstrip(")"))
                out[alias or relation] = [{f: child.get(f) for f in fields} for child in children]
            else:
                out[alias or source] = row.get(source)
        return out

    async def execute(self) -> FakeResponse:
        self.db.executed.append(self)
        if self.db.fail_with is not None:
            error, self.db.fail_with = self.db.fail_with, None
            raise error

        if self.method == "POST":
            return self._insert()
        if self.method == "PATCH":
            return self._update()

        rows = self._matching()
        if self.order_by:
            column, desc = self.order_by
            rows = sorted(rows, key=lambda row: _comparable(row[column]), reverse=desc)
        if self.limit_to is not None:
            rows = rows[: self.limit_to]
        projected = [self._project(row) for row in rows]

        if self.single_row:
            if len(projected) != 1:
                raise api_error(
                    "PGRST116",
                    "JSON object requested, multiple (or no) rows returned",
                    f"The result contains {len(projected)} rows",
                )
            return FakeResponse(data=projected[0])
        return FakeResponse(data=projected)

    def _insert(self) -> FakeResponse:
        assert self.payload is not None
        unique = self.db.unique_active.get(self.table)
        if unique:
            for row in self.db.rows(self.table):
                if row.get("deleted_at") is None and all(
                    row.get(c) == self.payload.get(c) for c in unique
                ):
                    raise api_error(
                        "23505",
                        "duplicate key value violates unique constraint",
                    )
        row = {
            "id": self.db.next_id(),
            "updated_at": self.payload.get("inserted_at"),
            "deleted_at": None,
            **self.payload,
        }
        self.db.rows(self.table).append(row)
        if self.db.empty_inserts:
            return FakeResponse(data=[])
        return FakeResponse(data=[dict(row)])

    def _update(self) -> FakeResponse:
        assert self.payload is not None
        updated = []
        for row in self._matching():
            row.update(self.payload)
            updated.append(dict(row))
        return FakeResponse(data=updated)


class FakeRpc:
    def __init__(self, db: FakeDatabase, function: str, params: Row) -> None:
        self.db = db
        self.function = function
        self.params = params

    async def execute(self) -> FakeResponse:
        if self.db.fail_with is not None:
            error, self.db.fail_with = self.db.fail_with, None
            raise error
        assert self.function == "user_used_perma_cache_storage"
        user_id = self.params["query_user_id"]
        used = sum(
            row["size"]
            for row in self.db.rows("perma_cache")
            if row["user_id"] == user_id and row.get("deleted_at") is None
        )
        return FakeResponse(data=used)


class FakeSchemaClient:
    """Drop-in for SchemaClient backed by FakeDatabase."""

    def __init__(self, db: FakeDatabase, schema: str) -> None:
        self.db = db
        self.schema = schema
        self.closed = False

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self.db, name)

    def rpc(self, function: str, params: Row) -> FakeRpc:
        return FakeRpc(self.db, function, params)

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Access layer fixtures
# =============================================================================

T0 = datetime(2022, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """A timestamp ``minutes`` after a fixed origin."""
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def perma_cache_store() -> FakeDatabase:
    """In-memory default schema."""
    return FakeDatabase()


@pytest.fixture
def user_store() -> FakeDatabase:
    """In-memory nftstorage schema."""
    return FakeDatabase()


@pytest.fixture
def db_client(perma_cache_store: FakeDatabase, user_store: FakeDatabase) -> DBClient:
    """DBClient wired to the in-memory schemas."""
    return DBClient(
        FakeSchemaClient(perma_cache_store, "public"),  # type: ignore[arg-type]
        FakeSchemaClient(user_store, "nftstorage"),  # type: ignore[arg-type]
    )
