import json
import sqlite3
from decimal import Decimal

import pytest

from nexus_finance.db import CompatConnection, rewrite_sql
from nexus_finance.db_migrations import (
    DEFAULT_CATEGORIES,
    MIGRATIONS,
    apply_migrations,
    get_db_health,
    migration_001,
    main,
)


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _RecordingPostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        normalized_sql = " ".join(sql.split())
        self.statements.append(normalized_sql)
        if "FROM pg_indexes" in normalized_sql:
            return _FakeCursor(one=None)
        return _FakeCursor()


class _FakeRawConnection:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent_and_seeds_categories_once(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    count = conn.execute("SELECT COUNT(*) FROM kategori").fetchone()[0]
    fallback = conn.execute("SELECT jenis FROM kategori WHERE nama = 'Lainnya' ORDER BY jenis").fetchall()
    versions = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    conn.close()

    assert count == len(DEFAULT_CATEGORIES)
    assert [row[0] for row in fallback] == ["pemasukan", "pengeluaran"]
    assert versions == len(MIGRATIONS)


def test_health_reports_missing_tables_on_partial_schema(tmp_path):
    db_path = tmp_path / "partial.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL
        );
        """
    )
    conn.commit()
    conn.close()

    health = get_db_health(str(db_path))

    assert health["ok"] is False
    assert "transaksi" in health["missing_tables"]
    assert health["missing_columns"]["users"] == ["created_at", "password_hash"]
    assert "idx_transaksi_user_id" in health["missing_indexes"]


def test_transaksi_rejects_negative_amount_and_unknown_type(tmp_path):
    db_path = tmp_path / "checks.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    bad_rows = [
        ("Kopi", -5, "2026-01-01", "pengeluaran"),
        ("Kopi", 5, "2026-01-01", "transfer"),
    ]
    for judul, jumlah, tanggal, tipe in bad_rows:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO transaksi (judul, jumlah, tanggal, tipe, user_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'u1', 'now', 'now')
                """,
                (judul, jumlah, tanggal, tipe),
            )
    conn.close()


def test_migration_001_uses_bigserial_for_postgres():
    conn = _RecordingPostgresConnection()

    migration_001(conn)

    creates = [sql for sql in conn.statements if sql.startswith("CREATE TABLE")]
    assert len(creates) == 4
    assert all("BIGSERIAL PRIMARY KEY" in sql for sql in creates)
    assert not any("AUTOINCREMENT" in sql for sql in creates)
    assert "CREATE INDEX idx_transaksi_tanggal ON transaksi(tanggal)" in conn.statements


def test_rewrite_sql_for_postgres_converts_placeholders_and_lastval():
    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid() as id FROM t WHERE a = ? AND b = ?", [1, 2])

    assert sql == "SELECT lastval() as id FROM t WHERE a = %s AND b = %s"
    assert params == [1, 2]


def test_rewrite_sql_for_sqlite_adapts_decimals():
    sql, params = rewrite_sql("sqlite", "INSERT INTO t VALUES (?, ?)", (Decimal("12.50"), "x"))

    assert sql == "INSERT INTO t VALUES (?, ?)"
    assert params == (12.5, "x")


def test_pooled_connection_close_returns_to_pool():
    released = []
    raw = _FakeRawConnection()
    conn = CompatConnection(raw, backend="postgres", release=released.append)

    conn.close()

    assert released == [raw]
    assert raw.closed is False


def test_main_reports_health_and_exit_code(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    db_path = tmp_path / "cli.sqlite"

    assert main([str(db_path)]) == 1
    assert json.loads(capsys.readouterr().out)["ok"] is False

    assert main([str(db_path), "--migrate"]) == 0
    health = json.loads(capsys.readouterr().out)
    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
