import logging
import os
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


logger = logging.getLogger(__name__)

DB_ERRORS = (sqlite3.Error,) + ((psycopg.Error,) if psycopg is not None else ())
INTEGRITY_ERRORS = (sqlite3.IntegrityError,) + ((psycopg.IntegrityError,) if psycopg is not None else ())

_PRAGMA_TABLE_INFO = re.compile(r"\s*PRAGMA\s+table_info\(([^)]+)\)", re.IGNORECASE)
_COLUMNS_QUERY = (
    "SELECT column_name AS name "
    "FROM information_schema.columns "
    "WHERE table_schema = current_schema() AND table_name = %s "
    "ORDER BY ordinal_position"
)


class ResultRow:
    """A Postgres result row that reads like ``sqlite3.Row``: by index or column name."""

    __slots__ = ("_columns", "_values")

    def __init__(self, columns, values):
        self._columns = {name: idx for idx, name in enumerate(columns)}
        self._values = tuple(values)

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._columns[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._columns)


class ResultCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None or isinstance(row, sqlite3.Row):
            return row
        return ResultRow(self._column_names(), row)

    def fetchall(self):
        rows = self._cursor.fetchall()
        if not rows or isinstance(rows[0], sqlite3.Row):
            return rows
        columns = self._column_names()
        return [ResultRow(columns, row) for row in rows]

    def _column_names(self):
        return [getattr(col, "name", None) or col[0] for col in (self._cursor.description or [])]


class BudgetConnection:
    """One qmark-style API over sqlite3 and psycopg.

    SQL is written for SQLite; on Postgres placeholders, ``PRAGMA table_info``
    and ``last_insert_rowid()`` are rewritten before they reach the driver.
    """

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        return ResultCursor(self._conn.execute(sql, params or ()))

    def executemany(self, sql, seq_of_params):
        """Run one statement for every parameter set; returns how many were sent."""
        sql, _ = rewrite_sql(self.backend, sql, None)
        batch = [tuple(params) for params in seq_of_params]
        if batch:
            self._conn.cursor().executemany(sql, batch)
        return len(batch)

    def last_insert_id(self):
        return self.execute("SELECT last_insert_rowid()").fetchone()[0]

    @contextmanager
    def atomic(self):
        """Commit the block's writes together, or roll all of them back and re-raise."""
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        self._conn.commit()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def rewrite_sql(backend, sql, params):
    """Translate SQLite-flavoured SQL and params for ``backend``."""
    if backend != "postgres":
        return sql, params

    sql = sql.replace("last_insert_rowid()", "lastval()")
    pragma = _PRAGMA_TABLE_INFO.match(sql)
    if pragma:
        return _COLUMNS_QUERY, (pragma.group(1).strip().strip("'\""),)
    sql = sql.replace("?", "%s")

    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    return sql, params


def is_postgres_url(value):
    return bool(value) and value.startswith(("postgresql://", "postgres://"))


def parse_database_config(database_path=None):
    """Pick the backend: ``DATABASE_URL`` when it names Postgres, else the SQLite file."""
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if is_postgres_url(db_url):
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": urlparse(db_url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }
    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def describe_database(config):
    if config["backend"] == "postgres":
        return f"Postgres database {config['database_name']}"
    return f"SQLite database at {config['database_path']}"


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        logger.debug("Connecting to %s", describe_database(config))
        return BudgetConnection(psycopg.connect(config["database_url"], row_factory=tuple_row), "postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    # Subcategories cascade with their main category.
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return BudgetConnection(conn, "sqlite")
