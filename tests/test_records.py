import json
from datetime import date

import pytest

from nexus_finance.categories import CategoryCatalog
from nexus_finance.db import connect_db, parse_database_config
from nexus_finance.db_migrations import apply_migrations
from nexus_finance.local_store import (
    GUEST_ID_KEY,
    SAVINGS_KEY_PREFIX,
    TRANSACTIONS_KEY_PREFIX,
    LocalStore,
    TableStorage,
)
from nexus_finance.records import (
    Failure,
    MAX_RECORD_ID,
    LocalRecordStore,
    RecordConflict,
    RecordNotFound,
    RecordService,
    RemoteRecordStore,
    Success,
    ValidationError,
    build_dashboard,
    parse_decimal,
    parse_record_id,
    parse_transaction_date,
    run_isolated,
    summarize,
)
from nexus_finance.sync import replay_local_store, sync_records


@pytest.fixture()
def db(tmp_path):
    config = parse_database_config(str(tmp_path / "records.sqlite"))
    apply_migrations(config)
    conn = connect_db(config)
    yield conn
    conn.close()


@pytest.fixture()
def catalog(db):
    return CategoryCatalog(db)


def category_id(catalog, nama, jenis):
    return catalog.find(nama, jenis)["id"]


def remote_service(db, catalog, owner="1"):
    return RecordService(RemoteRecordStore(db, owner), catalog)


def local_service(storage, catalog):
    return RecordService(LocalRecordStore(LocalStore(storage)), catalog)


def test_parse_decimal_handles_currency_and_parentheses():
    assert str(parse_decimal("Rp 1,250,000")) == "1250000"
    assert str(parse_decimal("(45.10)")) == "-45.10"
    assert parse_decimal("abc") is None
    assert parse_decimal(True) is None
    assert parse_decimal("NaN") is None


def test_parse_transaction_date_accepts_common_formats():
    assert parse_transaction_date("2026-03-05T10:00:00.000Z") == date(2026, 3, 5)
    assert parse_transaction_date("05/03/2026") == date(2026, 3, 5)
    assert parse_transaction_date("5 Mar 2026") == date(2026, 3, 5)
    assert parse_transaction_date("yesterday") is None


def test_guest_identity_is_created_lazily_and_reset():
    storage = {}
    local = LocalStore(storage)

    assert local.guest_identity(create=False) is None
    guest = local.guest_identity()

    assert guest.id.startswith("user_")
    assert storage[GUEST_ID_KEY] == guest.id
    assert local.guest_identity().id == guest.id
    assert guest.to_dict()["isGuest"] is True

    local.update_profile(name="Sari", email="sari@example.com")
    assert local.guest_identity().name == "Sari"

    local.reset_identity()
    assert storage == {}


def test_local_store_ignores_corrupt_mirror():
    local = LocalStore({TRANSACTIONS_KEY_PREFIX + "user_1": "{not json"})

    assert local.load_transactions("user_1") == []


def test_table_storage_partitions_by_token(db):
    first = TableStorage(db, "token-a")
    second = TableStorage(db, "token-b")

    first["financeUserId"] = "user_a"
    first["financeUserId"] = "user_a2"
    second["financeUserId"] = "user_b"

    assert first["financeUserId"] == "user_a2"
    assert dict(second) == {"financeUserId": "user_b"}
    del first["financeUserId"]
    assert len(first) == 0
    with pytest.raises(KeyError):
        del first["financeUserId"]


def test_create_transaction_requires_numeric_amount(db, catalog):
    service = remote_service(db, catalog)
    base = {"judul": "Kopi", "tanggal": "2026-01-10", "tipe": "pengeluaran"}

    with pytest.raises(ValidationError, match="jumlah is required"):
        service.create_transaction(base)
    with pytest.raises(ValidationError, match="valid number"):
        service.create_transaction({**base, "jumlah": "banyak"})
    with pytest.raises(ValidationError, match="tanggal"):
        service.create_transaction({**base, "jumlah": 10, "tanggal": "not a date"})
    with pytest.raises(ValidationError, match="tipe"):
        service.create_transaction({**base, "jumlah": 10, "tipe": "transfer"})


def test_create_transaction_normalizes_amount_and_type(db, catalog):
    service = remote_service(db, catalog)

    record = service.create_transaction(
        {
            "judul": "Gaji",
            "jumlah": "-2500000.50",
            "tanggal": "2026-01-25",
            "tipe": "income",
            "kategoriId": category_id(catalog, "Gaji", "pemasukan"),
        }
    )

    assert record["jumlah"] == 2500000.5
    assert record["tipe"] == "pemasukan"
    assert record["userId"] == "1"


def test_category_must_match_transaction_type(db, catalog):
    service = remote_service(db, catalog)
    payload = {
        "judul": "Makan",
        "jumlah": 20000,
        "tanggal": "2026-01-10",
        "tipe": "pemasukan",
        "kategoriId": category_id(catalog, "Makanan", "pengeluaran"),
    }

    with pytest.raises(ValidationError, match="Makanan"):
        service.create_transaction(payload)

    record = service.create_transaction({**payload, "tipe": "pengeluaran"})
    with pytest.raises(ValidationError):
        service.update_transaction({"id": record["id"], "tipe": "pemasukan"})


def test_update_transaction_is_partial_and_scoped_to_owner(db, catalog):
    service = remote_service(db, catalog)
    record = service.create_transaction(
        {"judul": "Bensin", "jumlah": 50000, "tanggal": "2026-02-01", "tipe": "pengeluaran"}
    )

    updated = service.update_transaction({"id": record["id"], "jumlah": "75000"})
    assert updated["jumlah"] == 75000.0
    assert updated["judul"] == "Bensin"

    with pytest.raises(ValidationError):
        service.update_transaction({"id": record["id"], "jumlah": "n/a"})

    other = remote_service(db, catalog, owner="2")
    with pytest.raises(RecordNotFound):
        other.update_transaction({"id": record["id"], "judul": "Hijack"})
    with pytest.raises(RecordNotFound):
        other.delete_transaction(record["id"])


def test_savings_defaults_and_balance(db, catalog):
    service = remote_service(db, catalog)

    pool = service.create_savings({"nama": "Liburan", "saldoAwal": "lots"})
    assert pool["saldoAwal"] == 0.0
    assert pool["jumlah"] == 0.0

    pool = service.create_savings({"nama": "Darurat", "saldoAwal": "1000000"})
    assert pool["jumlah"] == 1000000.0

    pool = service.update_savings_balance({"id": pool["id"], "jumlah": 1250000})
    assert pool["jumlah"] == 1250000.0
    assert pool["saldoAwal"] == 1000000.0

    with pytest.raises(ValidationError):
        service.update_savings({"id": pool["id"], "saldoAwal": "abc"})
    with pytest.raises(ValidationError):
        service.update_savings_balance({"id": pool["id"]})

    service.delete_savings(pool["id"])
    with pytest.raises(RecordNotFound):
        service.delete_savings(pool["id"])


def test_amounts_beyond_column_range_are_rejected(db, catalog):
    service = remote_service(db, catalog)
    base = {"judul": "Rumah", "tanggal": "2026-01-10", "tipe": "pengeluaran"}

    for too_large in ("1e30", 1000000000000):
        with pytest.raises(ValidationError, match="must not exceed"):
            service.create_transaction({**base, "jumlah": too_large})
    with pytest.raises(ValidationError, match="saldoAwal"):
        service.create_savings({"nama": "Pensiun", "saldoAwal": "1e30"})

    pool = service.create_savings({"nama": "Pensiun", "saldoAwal": 1000})
    with pytest.raises(ValidationError):
        service.update_savings_balance({"id": pool["id"], "jumlah": "1e30"})
    with pytest.raises(ValidationError):
        service.update_savings({"id": pool["id"], "saldoAwal": "-1e13"})

    record = service.create_transaction({**base, "jumlah": "999999999999.99"})
    assert record["jumlah"] == pytest.approx(999999999999.99)


def test_record_ids_must_fit_a_signed_bigint(db, catalog):
    service = remote_service(db, catalog)

    assert parse_record_id(str(MAX_RECORD_ID)) == MAX_RECORD_ID
    for bad_id in ("99999999999999999999", MAX_RECORD_ID + 1, 0, "-3"):
        with pytest.raises(ValidationError, match="out of range"):
            service.delete_transaction(bad_id)
    with pytest.raises(ValidationError):
        service.upsert_savings({"id": 2**70, "nama": "Besar"})


def test_local_store_crud_mirrors_records(catalog):
    storage = {}
    service = local_service(storage, catalog)

    record = service.create_transaction(
        {"judul": "Pulsa", "jumlah": 25000, "tanggal": "2026-03-01", "tipe": "expense"}
    )
    guest_id = storage[GUEST_ID_KEY]
    mirrored = json.loads(storage[TRANSACTIONS_KEY_PREFIX + guest_id])
    assert mirrored[0]["id"] == record["id"]
    assert mirrored[0]["tipe"] == "pengeluaran"
    assert mirrored[0]["jumlah"] == 25000.0

    service.update_transaction({"id": record["id"], "judul": "Pulsa data"})
    assert service.list_transactions()[0]["judul"] == "Pulsa data"

    service.delete_transaction(record["id"])
    assert TRANSACTIONS_KEY_PREFIX + guest_id not in storage
    with pytest.raises(RecordNotFound):
        service.delete_transaction(record["id"])


def test_local_listing_orders_by_created_at_then_id(catalog):
    service = local_service({}, catalog)
    base = {"judul": "x", "jumlah": 1, "tanggal": "2026-01-01", "tipe": "pengeluaran"}
    service.upsert_transaction({**base, "id": 1, "createdAt": "2026-01-01T00:00:00.000Z"})
    service.upsert_transaction({**base, "id": 2, "createdAt": "2026-01-01T00:00:00.000Z"})
    service.upsert_transaction({**base, "id": 3, "createdAt": "2025-12-31T00:00:00.000Z"})

    assert [record["id"] for record in service.list_transactions()] == [2, 1, 3]


def test_remote_upsert_is_idempotent(db, catalog):
    service = remote_service(db, catalog, owner="acct")
    record = {
        "id": 1700000000000123,
        "judul": "Buku",
        "jumlah": 90000,
        "tanggal": "2026-02-02",
        "tipe": "pengeluaran",
        "kategoriId": category_id(catalog, "Pendidikan", "pengeluaran"),
    }

    first = service.upsert_transaction(record)
    second = service.upsert_transaction(record)

    assert first.action == "inserted"
    assert second.action == "updated"
    assert [row["id"] for row in service.list_transactions()] == [record["id"]]
    assert second.record["jumlah"] == 90000.0


def test_remote_upsert_refuses_rows_of_other_accounts(db, catalog):
    record = {"id": 42, "nama": "Motor", "saldoAwal": 100}
    remote_service(db, catalog, owner="alice").upsert_savings(record)

    with pytest.raises(RecordConflict):
        remote_service(db, catalog, owner="bob").upsert_savings(record)


def test_run_isolated_records_each_failure():
    def operation(value):
        if value < 0:
            raise ValueError("negative")
        return {"value": value}

    outcomes = run_isolated([(1, 5), (2, -1), (3, 7)], operation)

    assert [type(outcome) for outcome in outcomes] == [Success, Failure, Success]
    assert summarize(outcomes) == {
        "succeeded": 2,
        "failed": 1,
        "failures": [{"id": 2, "reason": "negative"}],
    }


def guest_storage_with_records(catalog):
    storage = {}
    service = local_service(storage, catalog)
    service.create_savings({"nama": "Darurat", "saldoAwal": 500000})
    service.create_transaction(
        {
            "judul": "Gaji",
            "jumlah": 7000000,
            "tanggal": "2026-01-25",
            "tipe": "pemasukan",
            "kategoriId": category_id(catalog, "Gaji", "pemasukan"),
        }
    )
    service.create_transaction(
        {"judul": "Sate", "jumlah": 30000, "tanggal": "2026-01-26", "tipe": "pengeluaran"}
    )
    return storage


def test_replay_moves_everything_and_resets_identity(db, catalog):
    storage = guest_storage_with_records(catalog)
    account = remote_service(db, catalog, owner="7")

    report = replay_local_store(LocalStore(storage), account)

    assert report["complete"] is True
    assert report["tabungan"]["succeeded"] == 1
    assert report["transaksi"]["succeeded"] == 2
    assert storage == {}
    assert len(account.list_transactions()) == 2
    assert account.list_savings()[0]["nama"] == "Darurat"


def test_replay_is_idempotent(db, catalog):
    storage = guest_storage_with_records(catalog)
    account = remote_service(db, catalog, owner="7")

    replay_local_store(LocalStore(dict(storage)), account)
    before = account.list_transactions()
    replay_local_store(LocalStore(dict(storage)), account)
    after = account.list_transactions()

    assert [record["id"] for record in after] == [record["id"] for record in before]
    assert [record["jumlah"] for record in after] == [record["jumlah"] for record in before]


def test_replay_keeps_failed_records_for_next_attempt(db, catalog):
    storage = guest_storage_with_records(catalog)
    guest_id = storage[GUEST_ID_KEY]
    records = json.loads(storage[TRANSACTIONS_KEY_PREFIX + guest_id])
    records[0]["tanggal"] = "someday"
    storage[TRANSACTIONS_KEY_PREFIX + guest_id] = json.dumps(records)

    report = replay_local_store(LocalStore(storage), remote_service(db, catalog, owner="7"))

    assert report["complete"] is False
    assert report["transaksi"]["failed"] == 1
    assert report["transaksi"]["failures"][0]["id"] == records[0]["id"]
    assert storage[GUEST_ID_KEY] == guest_id
    remaining = json.loads(storage[TRANSACTIONS_KEY_PREFIX + guest_id])
    assert [record["id"] for record in remaining] == [records[0]["id"]]
    assert SAVINGS_KEY_PREFIX + guest_id not in storage


def test_sync_records_reports_missing_ids(db, catalog):
    report = sync_records(
        remote_service(db, catalog, owner="7"),
        savings=[{"nama": "Tanpa id"}],
        transactions=[],
    )

    assert report["complete"] is False
    assert report["tabungan"]["failures"] == [{"id": None, "reason": "id is required"}]


def test_build_dashboard_totals_and_recent():
    today = date(2026, 3, 15)
    transactions = [
        {"id": 1, "jumlah": 5000000.0, "tipe": "pemasukan", "tanggal": "2026-03-01"},
        {"id": 2, "jumlah": 200000.0, "tipe": "pengeluaran", "tanggal": "2026-03-10"},
        {"id": 3, "jumlah": 50000.0, "tipe": "pengeluaran", "tanggal": "2026-03-10"},
        {"id": 4, "jumlah": 75000.0, "tipe": "pengeluaran", "tanggal": "2026-02-27"},
    ]

    stats = build_dashboard(transactions, today=today)

    assert stats["totalPemasukan"] == 5000000.0
    assert stats["totalPengeluaran"] == 325000.0
    assert stats["saldo"] == 4675000.0
    assert [record["id"] for record in stats["recentTransactions"]] == [3, 2]
    assert stats["dailyData"] == [
        {"day": 1, "pemasukan": 5000000.0, "pengeluaran": 0.0},
        {"day": 10, "pemasukan": 0.0, "pengeluaran": 250000.0},
    ]


class _FakeCursor:
    def __init__(self, one=None):
        self._one = one

    def fetchone(self):
        return self._one


class _RecordingPostgresDb:
    backend = "postgres"

    def __init__(self):
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        if sql.startswith("SELECT * FROM transaksi"):
            return _FakeCursor(
                {
                    "id": params[0],
                    "judul": "Kopi",
                    "jumlah": 15000,
                    "deskripsi": None,
                    "tanggal": "2026-01-10",
                    "tipe": "pengeluaran",
                    "kategori_id": None,
                    "user_id": params[1],
                    "created_at": "now",
                    "updated_at": "now",
                }
            )
        return _FakeCursor()

    def commit(self):
        pass


def test_postgres_upsert_with_explicit_id_advances_the_sequence():
    db = _RecordingPostgresDb()
    service = RecordService(RemoteRecordStore(db, "7"), categories=None)

    result = service.upsert_transaction(
        {"id": 3, "judul": "Kopi", "jumlah": 15000, "tanggal": "2026-01-10", "tipe": "pengeluaran"}
    )

    assert result.action == "inserted"
    insert_index = next(i for i, sql in enumerate(db.statements) if sql.startswith("INSERT INTO transaksi"))
    assert db.statements[insert_index + 1] == (
        "SELECT setval(pg_get_serial_sequence('transaksi', 'id'), "
        "GREATEST((SELECT MAX(id) FROM transaksi), 1))"
    )
