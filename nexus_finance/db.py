import os
import sqlite3
from decimal import Decimal
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
    from psycopg_pool import ConnectionPool
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None
    ConnectionPool = None


DEFAULT_POOL_MAX_SIZE = 10
DEFAULT_POOL_IDLE_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 2.0

DATABASE_ERRORS = (sqlite3.Error,) if psycopg is None else (sqlite3.Error, psycopg.Error)


class CompatRow:
    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def keys(self):
        return list(self._columns)


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def description(self):
        return self._cursor.description

    def fetchone(self):
        row = self._cursor.fetchone()
        return self._adapt_row(row)

    def fetchall(self):
        return [self._adapt_row(row) for row in self._cursor.fetchall()]

    def _adapt_row(self, row):
        if row is None:
            return None
        if isinstance(row, sqlite3.Row):
            return row
        columns = [col.name if hasattr(col, "name") else col[0] for col in (self.description or [])]
        return CompatRow(columns, row)


class CompatConnection:
    """Connection wrapper that accepts qmark SQL on both backends.

    ``release`` is called instead of closing the raw connection when the
    connection was borrowed from a pool.
    """

    def __init__(self, conn, backend, release=None):
        self._conn = conn
        self.backend = backend
        self._release = release

    def execute(self, sql, params=None):
        rewritten_sql, rewritten_params = rewrite_sql(self.backend, sql, params)
        cur = self._conn.execute(rewritten_sql, rewritten_params or ())
        return CompatCursor(cur)

    def close(self):
        if self._release is not None:
            release, self._release = self._release, None
            release(self._conn)
            return
        self._conn.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def __enter__(self):
        self._conn.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._conn.__exit__(exc_type, exc, tb)


def is_postgres_url(value):
    return bool(value) and (value.startswith("postgresql://") or value.startswith("postgres://"))


def _convert_qmark_placeholders(sql):
    pieces = sql.split("?")
    if len(pieces) == 1:
        return sql
    return "%s".join(pieces)


def _adapt_param(value):
    # sqlite3 has no Decimal adapter
    if isinstance(value, Decimal):
        return float(value)
    return value


def rewrite_sql(backend, sql, params):
    rewritten_sql = sql
    rewritten_params = params

    if backend == "postgres":
        if "last_insert_rowid()" in rewritten_sql:
            rewritten_sql = rewritten_sql.replace("last_insert_rowid()", "lastval()")
        if "?" in rewritten_sql:
            rewritten_sql = _convert_qmark_placeholders(rewritten_sql)

        if rewritten_params is None:
            rewritten_params = ()
        elif not isinstance(rewritten_params, (tuple, list, dict)):
            rewritten_params = (rewritten_params,)
    elif isinstance(rewritten_params, (tuple, list)):
        rewritten_params = tuple(_adapt_param(value) for value in rewritten_params)

    return rewritten_sql, rewritten_params


def parse_database_config(database_path=None, pool_settings=None):
    pool_settings = pool_settings or {}
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if is_postgres_url(db_url):
        parsed = urlparse(db_url)
        db_name = parsed.path.lstrip("/") or "postgres"
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": db_name,
            "database_path": database_path,
            "pool_max_size": pool_settings.get("max_size", DEFAULT_POOL_MAX_SIZE),
            "pool_idle_timeout": pool_settings.get("idle_timeout", DEFAULT_POOL_IDLE_TIMEOUT),
            "connect_timeout": pool_settings.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT),
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def open_pool(config):
    """Open a bounded Postgres connection pool for ``config``."""
    if ConnectionPool is None:
        raise RuntimeError("psycopg and psycopg_pool are required when DATABASE_URL points to Postgres")
    return ConnectionPool(
        config["database_url"],
        min_size=1,
        max_size=config.get("pool_max_size", DEFAULT_POOL_MAX_SIZE),
        max_idle=config.get("pool_idle_timeout", DEFAULT_POOL_IDLE_TIMEOUT),
        timeout=config.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT),
        kwargs={"row_factory": tuple_row},
        open=True,
    )


def connect_db(config, pool=None):
    backend = config["backend"]
    if backend == "postgres":
        if pool is not None:
            conn = pool.getconn()
            return CompatConnection(conn, backend="postgres", release=pool.putconn)
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        conn = psycopg.connect(
            config["database_url"],
            row_factory=tuple_row,
            connect_timeout=int(config.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)),
        )
        return CompatConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, backend="sqlite")
