"""Transactions and savings pools behind a single store interface.

:class:`RemoteRecordStore` keeps records in the database for an account,
:class:`LocalRecordStore` keeps them in a guest's :class:`LocalStore`.
Both hand back the same JSON-ready dicts, so routes, the spreadsheet
pipeline and the sync bridge never check which one they were given.
"""

import logging
from abc import ABC, abstractmethod
from collections import namedtuple
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from .local_store import generate_local_id, utc_now_text


logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ("pemasukan", "pengeluaran")
TYPE_ALIASES = {
    "pemasukan": "pemasukan",
    "income": "pemasukan",
    "masuk": "pemasukan",
    "in": "pemasukan",
    "pengeluaran": "pengeluaran",
    "expense": "pengeluaran",
    "keluar": "pengeluaran",
    "out": "pengeluaran",
}
DATE_FORMATS = ["%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y", "%d %b %Y", "%d %B %Y"]
CENTS = Decimal("0.01")
# NUMERIC(14, 2) and signed BIGINT column bounds
MAX_AMOUNT = Decimal("999999999999.99")
MAX_RECORD_ID = 2**63 - 1

TRANSACTION_COLUMNS = {
    "judul": "judul",
    "jumlah": "jumlah",
    "deskripsi": "deskripsi",
    "tanggal": "tanggal",
    "tipe": "tipe",
    "kategoriId": "kategori_id",
}
SAVINGS_COLUMNS = {
    "nama": "nama",
    "saldoAwal": "saldo_awal",
    "jumlah": "jumlah",
}
TRANSACTION_ORDERING = {
    "createdAt": "created_at DESC, id DESC",
    "tanggal": "tanggal DESC, id DESC",
}
SAVINGS_ORDERING = {
    "createdAt": "created_at DESC, id DESC",
    "nama": "nama ASC, id ASC",
}

UpsertResult = namedtuple("UpsertResult", ["action", "record"])


class ValidationError(ValueError):
    """A request field is missing or malformed."""


class RecordNotFound(LookupError):
    """No record with the requested id exists for the caller."""


class RecordConflict(RuntimeError):
    """A sync upsert targets an id owned by someone else."""


def normalize_type(value):
    return TYPE_ALIASES.get(str(value or "").strip().lower())


def parse_decimal(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, (int, float)):
        candidate = Decimal(str(value))
    else:
        cleaned = str(value).strip().replace(",", "").replace("$", "").replace("Rp", "").replace(" ", "")
        if not cleaned:
            return None
        if cleaned.startswith("(") and cleaned.endswith(")"):
            cleaned = f"-{cleaned[1:-1]}"
        try:
            candidate = Decimal(cleaned)
        except InvalidOperation:
            return None
    if not candidate.is_finite():
        return None
    return candidate


def parse_transaction_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    cleaned = str(value or "").strip()
    if not cleaned:
        return None
    if "T" in cleaned:
        cleaned = cleaned.split("T", 1)[0]

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def amount_in_range(amount):
    return abs(amount) <= MAX_AMOUNT


def bounded_amount(amount, field="jumlah"):
    if not amount_in_range(amount):
        raise ValidationError(f"{field} must not exceed {MAX_AMOUNT}")
    return amount.quantize(CENTS)


def normalize_amount(value, field="jumlah"):
    return bounded_amount(abs(value), field)


def parse_record_id(value, field="id"):
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        record_id = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer") from None
    if not 0 < record_id <= MAX_RECORD_ID:
        raise ValidationError(f"{field} is out of range")
    return record_id


def _optional_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_title(value):
    text = str(value or "").strip()
    if not text:
        raise ValidationError("judul is required")
    return text


def _clean_transaction_amount(value):
    if value is None or value == "":
        raise ValidationError("jumlah is required")
    amount = parse_decimal(value)
    if amount is None:
        raise ValidationError("jumlah must be a valid number")
    return normalize_amount(amount)


def _clean_date(value):
    if value is None or value == "":
        raise ValidationError("tanggal is required")
    parsed = parse_transaction_date(value)
    if parsed is None:
        raise ValidationError(f"tanggal must be a valid date (YYYY-MM-DD), got {value!r}")
    return parsed.isoformat()


def _clean_type(value):
    tipe = normalize_type(value)
    if tipe is None:
        raise ValidationError("tipe must be pemasukan or pengeluaran")
    return tipe


def _clean_category_id(value):
    if value is None or value == "":
        return None
    return parse_record_id(value, field="kategoriId")


def clean_new_transaction(payload):
    return {
        "judul": _clean_title(payload.get("judul")),
        "jumlah": _clean_transaction_amount(payload.get("jumlah")),
        "deskripsi": _optional_text(payload.get("deskripsi")),
        "tanggal": _clean_date(payload.get("tanggal")),
        "tipe": _clean_type(payload.get("tipe")),
        "kategoriId": _clean_category_id(payload.get("kategoriId")),
    }


def clean_transaction_update(payload):
    cleaners = {
        "judul": _clean_title,
        "jumlah": _clean_transaction_amount,
        "deskripsi": _optional_text,
        "tanggal": _clean_date,
        "tipe": _clean_type,
        "kategoriId": _clean_category_id,
    }
    return {field: clean(payload[field]) for field, clean in cleaners.items() if field in payload}


def clean_new_savings(payload):
    nama = str(payload.get("nama") or "").strip()
    if not nama:
        raise ValidationError("nama is required")
    saldo_awal = bounded_amount(parse_decimal(payload.get("saldoAwal")) or Decimal("0"), "saldoAwal")
    return {"nama": nama, "saldoAwal": saldo_awal, "jumlah": saldo_awal}


def _clean_balance(value, field):
    amount = parse_decimal(value)
    if amount is None:
        raise ValidationError(f"{field} must be a valid number")
    return bounded_amount(amount, field)


def clean_savings_update(payload):
    changes = {}
    if "nama" in payload:
        changes["nama"] = str(payload.get("nama") or "").strip()
        if not changes["nama"]:
            raise ValidationError("nama cannot be empty")
    if "saldoAwal" in payload:
        changes["saldoAwal"] = _clean_balance(payload.get("saldoAwal"), "saldoAwal")
    if "jumlah" in payload:
        changes["jumlah"] = _clean_balance(payload.get("jumlah"), "jumlah")
    return changes


def clean_synced_savings(record):
    fields = clean_new_savings(record)
    if record.get("jumlah") is not None:
        fields["jumlah"] = _clean_balance(record.get("jumlah"), "jumlah")
    return fields


def _wire_amount(value):
    return float(value) if value is not None else 0.0


def transaction_from_row(row):
    return {
        "id": row["id"],
        "judul": row["judul"],
        "jumlah": _wire_amount(row["jumlah"]),
        "deskripsi": row["deskripsi"],
        "tanggal": row["tanggal"],
        "tipe": row["tipe"],
        "kategoriId": row["kategori_id"],
        "userId": row["user_id"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def savings_from_row(row):
    return {
        "id": row["id"],
        "nama": row["nama"],
        "saldoAwal": _wire_amount(row["saldo_awal"]),
        "jumlah": _wire_amount(row["jumlah"]),
        "userId": row["user_id"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _wire_fields(fields):
    return {key: (float(value) if isinstance(value, Decimal) else value) for key, value in fields.items()}


class RecordStore(ABC):
    """Storage target for one caller's transactions and savings pools.

    ``upsert_*`` take a record carrying its own integer ``id``; the id is a
    precondition, never generated, so replaying the same record is a no-op
    apart from refreshing ``updatedAt``.
    """

    kind = None

    @property
    @abstractmethod
    def owner_id(self):
        ...

    @abstractmethod
    def list_transactions(self, order_by="createdAt"):
        ...

    @abstractmethod
    def get_transaction(self, record_id):
        ...

    @abstractmethod
    def create_transaction(self, fields):
        ...

    @abstractmethod
    def update_transaction(self, record_id, changes):
        ...

    @abstractmethod
    def delete_transaction(self, record_id):
        ...

    @abstractmethod
    def upsert_transaction(self, record_id, fields, created_at=None):
        ...

    @abstractmethod
    def list_savings(self, order_by="createdAt"):
        ...

    @abstractmethod
    def get_savings(self, record_id):
        ...

    @abstractmethod
    def create_savings(self, fields):
        ...

    @abstractmethod
    def update_savings(self, record_id, changes):
        ...

    @abstractmethod
    def delete_savings(self, record_id):
        ...

    @abstractmethod
    def upsert_savings(self, record_id, fields, created_at=None):
        ...

    def rollback(self):
        """Discard a half-applied unit of work after a failure."""


class RemoteRecordStore(RecordStore):
    kind = "remote"

    def __init__(self, db, owner_id):
        self.db = db
        self._owner_id = str(owner_id)

    @property
    def owner_id(self):
        return self._owner_id

    def rollback(self):
        self.db.rollback()

    def _fetch(self, table, record_id):
        return self.db.execute(
            f"SELECT * FROM {table} WHERE id = ? AND user_id = ?",
            (record_id, self._owner_id),
        ).fetchone()

    def _update(self, table, columns, record_id, changes):
        assignments = [f"{columns[field]} = ?" for field in changes]
        values = list(changes.values())
        assignments.append("updated_at = ?")
        values.append(utc_now_text())
        values.extend([record_id, self._owner_id])
        cur = self.db.execute(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
            tuple(values),
        )
        return cur.rowcount

    def _insert(self, table, columns, fields, record_id=None, created_at=None):
        now = utc_now_text()
        names = [columns[field] for field in fields]
        values = list(fields.values())
        if record_id is not None:
            names.insert(0, "id")
            values.insert(0, record_id)
        names.extend(["user_id", "created_at", "updated_at"])
        values.extend([self._owner_id, created_at or now, now])
        placeholders = ", ".join("?" for _ in names)
        self.db.execute(
            f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
            tuple(values),
        )
        if record_id is not None:
            if getattr(self.db, "backend", "sqlite") == "postgres":
                # explicit ids bypass the BIGSERIAL sequence
                self.db.execute(
                    f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
                    f"GREATEST((SELECT MAX(id) FROM {table}), 1))"
                )
            return record_id
        return self.db.execute("SELECT last_insert_rowid() as id").fetchone()["id"]

    def _upsert(self, table, columns, record_id, fields, created_at):
        existing = self.db.execute(f"SELECT user_id FROM {table} WHERE id = ?", (record_id,)).fetchone()
        if existing is None:
            self._insert(table, columns, fields, record_id=record_id, created_at=created_at)
            action = "inserted"
        elif existing["user_id"] != self._owner_id:
            raise RecordConflict(f"{table} id {record_id} belongs to another account")
        else:
            self._update(table, columns, record_id, fields)
            action = "updated"
        self.db.commit()
        return action

    def list_transactions(self, order_by="createdAt"):
        rows = self.db.execute(
            f"SELECT * FROM transaksi WHERE user_id = ? ORDER BY {TRANSACTION_ORDERING[order_by]}",
            (self._owner_id,),
        ).fetchall()
        return [transaction_from_row(row) for row in rows]

    def get_transaction(self, record_id):
        row = self._fetch("transaksi", record_id)
        if row is None:
            raise RecordNotFound(f"Transaction {record_id} not found")
        return transaction_from_row(row)

    def create_transaction(self, fields):
        record_id = self._insert("transaksi", TRANSACTION_COLUMNS, fields)
        self.db.commit()
        return self.get_transaction(record_id)

    def update_transaction(self, record_id, changes):
        if self._update("transaksi", TRANSACTION_COLUMNS, record_id, changes) == 0:
            raise RecordNotFound(f"Transaction {record_id} not found")
        self.db.commit()
        return self.get_transaction(record_id)

    def delete_transaction(self, record_id):
        cur = self.db.execute(
            "DELETE FROM transaksi WHERE id = ? AND user_id = ?",
            (record_id, self._owner_id),
        )
        if cur.rowcount == 0:
            raise RecordNotFound(f"Transaction {record_id} not found")
        self.db.commit()

    def upsert_transaction(self, record_id, fields, created_at=None):
        action = self._upsert("transaksi", TRANSACTION_COLUMNS, record_id, fields, created_at)
        return UpsertResult(action, self.get_transaction(record_id))

    def list_savings(self, order_by="createdAt"):
        rows = self.db.execute(
            f"SELECT * FROM tabungan WHERE user_id = ? ORDER BY {SAVINGS_ORDERING[order_by]}",
            (self._owner_id,),
        ).fetchall()
        return [savings_from_row(row) for row in rows]

    def get_savings(self, record_id):
        row = self._fetch("tabungan", record_id)
        if row is None:
            raise RecordNotFound(f"Savings {record_id} not found")
        return savings_from_row(row)

    def create_savings(self, fields):
        record_id = self._insert("tabungan", SAVINGS_COLUMNS, fields)
        self.db.commit()
        return self.get_savings(record_id)

    def update_savings(self, record_id, changes):
        if self._update("tabungan", SAVINGS_COLUMNS, record_id, changes) == 0:
            raise RecordNotFound(f"Savings {record_id} not found")
        self.db.commit()
        return self.get_savings(record_id)

    def delete_savings(self, record_id):
        cur = self.db.execute(
            "DELETE FROM tabungan WHERE id = ? AND user_id = ?",
            (record_id, self._owner_id),
        )
        if cur.rowcount == 0:
            raise RecordNotFound(f"Savings {record_id} not found")
        self.db.commit()

    def upsert_savings(self, record_id, fields, created_at=None):
        action = self._upsert("tabungan", SAVINGS_COLUMNS, record_id, fields, created_at)
        return UpsertResult(action, self.get_savings(record_id))


def _sort_records(records, field, descending):
    return sorted(records, key=lambda record: (record.get(field) or "", record.get("id") or 0), reverse=descending)


class LocalRecordStore(RecordStore):
    kind = "local"

    def __init__(self, local_store):
        self.local_store = local_store
        self.guest = local_store.guest_identity()

    @property
    def owner_id(self):
        return self.guest.id

    def _collection(self, name):
        if name == "transaksi":
            return self.local_store.load_transactions(self.guest.id)
        return self.local_store.load_savings(self.guest.id)

    def _save(self, name, records):
        if name == "transaksi":
            self.local_store.save_transactions(self.guest.id, records)
        else:
            self.local_store.save_savings(self.guest.id, records)

    def _find(self, name, record_id):
        for record in self._collection(name):
            if record.get("id") == record_id:
                return record
        return None

    def _create(self, name, fields):
        records = self._collection(name)
        now = utc_now_text()
        record = {"id": generate_local_id(existing.get("id") for existing in records)}
        record.update(_wire_fields(fields))
        record.update({"userId": self.guest.id, "createdAt": now, "updatedAt": now})
        records.insert(0, record)
        self._save(name, records)
        return record

    def _update(self, name, record_id, changes, missing_message):
        records = self._collection(name)
        for record in records:
            if record.get("id") == record_id:
                record.update(_wire_fields(changes))
                record["updatedAt"] = utc_now_text()
                self._save(name, records)
                return record
        raise RecordNotFound(missing_message)

    def _delete(self, name, record_id, missing_message):
        records = self._collection(name)
        remaining = [record for record in records if record.get("id") != record_id]
        if len(remaining) == len(records):
            raise RecordNotFound(missing_message)
        self._save(name, remaining)

    def _upsert(self, name, record_id, fields, created_at):
        records = self._collection(name)
        now = utc_now_text()
        for record in records:
            if record.get("id") == record_id:
                record.update(_wire_fields(fields))
                record["updatedAt"] = now
                self._save(name, records)
                return UpsertResult("updated", record)

        record = {"id": record_id}
        record.update(_wire_fields(fields))
        record.update({"userId": self.guest.id, "createdAt": created_at or now, "updatedAt": now})
        records.insert(0, record)
        self._save(name, records)
        return UpsertResult("inserted", record)

    def list_transactions(self, order_by="createdAt"):
        if order_by not in TRANSACTION_ORDERING:
            raise KeyError(order_by)
        return _sort_records(self._collection("transaksi"), order_by, descending=True)

    def get_transaction(self, record_id):
        record = self._find("transaksi", record_id)
        if record is None:
            raise RecordNotFound(f"Transaction {record_id} not found")
        return record

    def create_transaction(self, fields):
        return self._create("transaksi", fields)

    def update_transaction(self, record_id, changes):
        return self._update("transaksi", record_id, changes, f"Transaction {record_id} not found")

    def delete_transaction(self, record_id):
        self._delete("transaksi", record_id, f"Transaction {record_id} not found")

    def upsert_transaction(self, record_id, fields, created_at=None):
        return self._upsert("transaksi", record_id, fields, created_at)

    def list_savings(self, order_by="createdAt"):
        if order_by == "nama":
            return _sort_records(self._collection("tabungan"), "nama", descending=False)
        if order_by not in SAVINGS_ORDERING:
            raise KeyError(order_by)
        return _sort_records(self._collection("tabungan"), order_by, descending=True)

    def get_savings(self, record_id):
        record = self._find("tabungan", record_id)
        if record is None:
            raise RecordNotFound(f"Savings {record_id} not found")
        return record

    def create_savings(self, fields):
        return self._create("tabungan", fields)

    def update_savings(self, record_id, changes):
        return self._update("tabungan", record_id, changes, f"Savings {record_id} not found")

    def delete_savings(self, record_id):
        self._delete("tabungan", record_id, f"Savings {record_id} not found")

    def upsert_savings(self, record_id, fields, created_at=None):
        return self._upsert("tabungan", record_id, fields, created_at)


@dataclass
class Success:
    position: object
    record: dict
    action: str = "created"


@dataclass
class Failure:
    position: object
    reason: str


def run_isolated(items, operation, on_failure=None):
    """Apply ``operation`` to each ``(position, item)`` pair in order.

    Every item yields a :class:`Success` or a :class:`Failure`; an exception
    raised for one item is recorded against it and the loop moves on.
    """
    outcomes = []
    for position, item in items:
        try:
            result = operation(item)
        except Exception as exc:
            logger.warning("Item %s failed: %s", position, exc)
            if on_failure is not None:
                on_failure()
            outcomes.append(Failure(position, str(exc) or exc.__class__.__name__))
            continue
        if isinstance(result, UpsertResult):
            outcomes.append(Success(position, result.record, result.action))
        else:
            outcomes.append(Success(position, result))
    return outcomes


def summarize(outcomes):
    failures = [outcome for outcome in outcomes if isinstance(outcome, Failure)]
    return {
        "succeeded": len(outcomes) - len(failures),
        "failed": len(failures),
        "failures": [{"id": failure.position, "reason": failure.reason} for failure in failures],
    }


class RecordService:
    def __init__(self, store, categories):
        self.store = store
        self.categories = categories

    def rollback(self):
        self.store.rollback()

    def _check_category(self, kategori_id, tipe):
        if kategori_id is None:
            return
        category = self.categories.get(kategori_id)
        if category is None:
            raise ValidationError(f"Category {kategori_id} does not exist")
        if category["jenis"] != tipe:
            raise ValidationError(
                f"Category {category['nama']} is for {category['jenis']}, not {tipe}"
            )

    def list_transactions(self, order_by="createdAt"):
        return self.store.list_transactions(order_by=order_by)

    def create_transaction(self, payload):
        fields = clean_new_transaction(payload)
        self._check_category(fields["kategoriId"], fields["tipe"])
        return self.store.create_transaction(fields)

    def update_transaction(self, payload):
        record_id = parse_record_id(payload.get("id"))
        changes = clean_transaction_update(payload)
        current = self.store.get_transaction(record_id)
        if "kategoriId" in changes or "tipe" in changes:
            self._check_category(
                changes.get("kategoriId", current.get("kategoriId")),
                changes.get("tipe", current.get("tipe")),
            )
        if not changes:
            return current
        return self.store.update_transaction(record_id, changes)

    def delete_transaction(self, record_id):
        self.store.delete_transaction(parse_record_id(record_id))

    def upsert_transaction(self, record):
        record_id = parse_record_id(record.get("id"))
        fields = clean_new_transaction(record)
        self._check_category(fields["kategoriId"], fields["tipe"])
        return self.store.upsert_transaction(record_id, fields, created_at=record.get("createdAt"))

    def list_savings(self, order_by="createdAt"):
        return self.store.list_savings(order_by=order_by)

    def create_savings(self, payload):
        return self.store.create_savings(clean_new_savings(payload))

    def update_savings(self, payload):
        record_id = parse_record_id(payload.get("id"))
        changes = clean_savings_update(payload)
        changes.pop("jumlah", None)
        if not changes:
            return self.store.get_savings(record_id)
        return self.store.update_savings(record_id, changes)

    def update_savings_balance(self, payload):
        record_id = parse_record_id(payload.get("id"))
        if payload.get("jumlah") is None:
            raise ValidationError("jumlah is required")
        balance = _clean_balance(payload.get("jumlah"), "jumlah")
        return self.store.update_savings(record_id, {"jumlah": balance})

    def delete_savings(self, record_id):
        self.store.delete_savings(parse_record_id(record_id))

    def upsert_savings(self, record):
        record_id = parse_record_id(record.get("id"))
        fields = clean_synced_savings(record)
        return self.store.upsert_savings(record_id, fields, created_at=record.get("createdAt"))


def build_dashboard(transactions, today=None):
    today = today or date.today()
    week_ago = (today - timedelta(days=7)).isoformat()
    month_prefix = today.strftime("%Y-%m")

    total_in = Decimal("0")
    total_out = Decimal("0")
    daily = {}
    for record in transactions:
        amount = Decimal(str(record["jumlah"]))
        if record["tipe"] == "pemasukan":
            total_in += amount
        else:
            total_out += amount

        tanggal = record.get("tanggal") or ""
        if tanggal.startswith(month_prefix):
            day = int(tanggal[8:10])
            bucket = daily.setdefault(day, {"day": day, "pemasukan": Decimal("0"), "pengeluaran": Decimal("0")})
            bucket[record["tipe"]] += amount

    recent = [record for record in transactions if (record.get("tanggal") or "") >= week_ago]
    recent.sort(key=lambda record: (record.get("tanggal") or "", record.get("id") or 0), reverse=True)

    return {
        "totalPemasukan": float(total_in),
        "totalPengeluaran": float(total_out),
        "saldo": float(total_in - total_out),
        "recentTransactions": recent[:5],
        "dailyData": [
            {"day": day, "pemasukan": float(bucket["pemasukan"]), "pengeluaran": float(bucket["pengeluaran"])}
            for day, bucket in sorted(daily.items())
        ],
    }
