import argparse
import json
import sys
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


FALLBACK_CATEGORY_NAME = "Lainnya"

DEFAULT_CATEGORIES = [
    ("Gaji", "pemasukan", "💰", "#10b981"),
    ("Bonus", "pemasukan", "🎁", "#10b981"),
    ("Investasi", "pemasukan", "📈", "#10b981"),
    (FALLBACK_CATEGORY_NAME, "pemasukan", "💵", "#10b981"),
    ("Makanan", "pengeluaran", "🍔", "#ef4444"),
    ("Transportasi", "pengeluaran", "🚗", "#ef4444"),
    ("Belanja", "pengeluaran", "🛍️", "#ef4444"),
    ("Tagihan", "pengeluaran", "📄", "#ef4444"),
    ("Hiburan", "pengeluaran", "🎮", "#ef4444"),
    ("Kesehatan", "pengeluaran", "🏥", "#ef4444"),
    ("Pendidikan", "pengeluaran", "📚", "#ef4444"),
    (FALLBACK_CATEGORY_NAME, "pengeluaran", "📌", "#ef4444"),
]

REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "kategori": {
        "columns": {"id", "nama", "jenis", "icon", "warna"},
        "indexes": set(),
    },
    "tabungan": {
        "columns": {"id", "nama", "saldo_awal", "jumlah", "user_id", "created_at", "updated_at"},
        "indexes": {"idx_tabungan_user_id"},
    },
    "transaksi": {
        "columns": {
            "id",
            "judul",
            "jumlah",
            "deskripsi",
            "tanggal",
            "tipe",
            "kategori_id",
            "user_id",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_transaksi_user_id", "idx_transaksi_tanggal"},
    },
    "local_storage": {
        "columns": {"storage_token", "item_key", "item_value", "updated_at"},
        "indexes": set(),
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def seed_default_categories(conn):
    for nama, jenis, icon, warna in DEFAULT_CATEGORIES:
        conn.execute(
            """
            INSERT INTO kategori (nama, jenis, icon, warna) VALUES (?, ?, ?, ?)
            ON CONFLICT (nama, jenis) DO NOTHING
            """,
            (nama, jenis, icon, warna),
        )


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS kategori (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            nama TEXT NOT NULL,
            jenis TEXT NOT NULL CHECK(jenis IN ('pemasukan', 'pengeluaran')),
            icon TEXT,
            warna TEXT,
            UNIQUE(nama, jenis)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS tabungan (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            nama TEXT NOT NULL,
            saldo_awal NUMERIC(14, 2) NOT NULL DEFAULT 0,
            jumlah NUMERIC(14, 2) NOT NULL DEFAULT 0,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transaksi (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            judul TEXT NOT NULL,
            jumlah NUMERIC(14, 2) NOT NULL CHECK(jumlah >= 0),
            deskripsi TEXT,
            tanggal TEXT NOT NULL,
            tipe TEXT NOT NULL CHECK(tipe IN ('pemasukan', 'pengeluaran')),
            kategori_id INTEGER,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (kategori_id) REFERENCES kategori (id) ON DELETE SET NULL
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_tabungan_user_id",
        "CREATE INDEX idx_tabungan_user_id ON tabungan(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transaksi_user_id",
        "CREATE INDEX idx_transaksi_user_id ON transaksi(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_transaksi_tanggal",
        "CREATE INDEX idx_transaksi_tanggal ON transaksi(tanggal)",
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS local_storage (
            storage_token TEXT NOT NULL,
            item_key TEXT NOT NULL,
            item_value TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (storage_token, item_key)
        )
        """,
    )


def migration_003(conn):
    seed_default_categories(conn)


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check and print nexus finance DB schema health")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/nexus_finance.sqlite",
        help="Path to SQLite DB (ignored when DATABASE_URL is postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args(argv)

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    health = get_db_health(config)
    print(json.dumps(health, indent=2, sort_keys=True))
    return 0 if health["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
