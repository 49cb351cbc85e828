"""Connection helpers shared by the SQL stores.

The stores take any DB-API connection using ``?`` placeholders (sqlite3 in
practice). Rows are mapped to dicts through ``cursor.description`` so the
stores do not depend on a particular row factory.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rulesync.core.errors import StoreError
from rulesync.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string; lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def _split_sql(sql: str) -> list[str]:
    statements = []
    current: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        current.append(line)
        if stripped.endswith(";"):
            statements.append("\n".join(current).strip())
            current = []
    if current:
        statements.append("\n".join(current).strip())
    return statements


def apply_schema(conn: Any, schema_path: Path | None = None) -> None:
    """Create the rule and notification tables if they are missing."""
    sql = (schema_path or SCHEMA_PATH).read_text(encoding="utf-8")
    for statement in _split_sql(sql):
        conn.execute(statement)
    conn.commit()
    logger.debug("schema_applied", path=str(schema_path or SCHEMA_PATH))


def connect(database: str | Path, *, create_schema: bool = True) -> sqlite3.Connection:
    """Open a SQLite connection, creating parent directories and tables."""
    if str(database) != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        database = Path(database).expanduser()
    conn = sqlite3.connect(str(database))
    if create_schema:
        apply_schema(conn)
    return conn


class SqlStore:
    """Base for stores backed by a DB-API connection."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        try:
            cursor = self.conn.execute(sql, tuple(params))
            columns = [column[0] for column in cursor.description or ()]
            return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"Query failed: {e}", cause=e) from e

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        try:
            cursor = self.conn.execute(sql, tuple(params))
            self.conn.commit()
            return cursor
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Statement failed: {e}", cause=e) from e

    def close(self) -> None:
        self.conn.close()
