"""Spreadsheet import and CSV export for transactions and savings pools."""

import csv
import io
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import PurePath

import pandas as pd

from .db_migrations import FALLBACK_CATEGORY_NAME
from .records import CENTS, Failure, amount_in_range, normalize_type, parse_decimal, run_isolated


logger = logging.getLogger(__name__)

ALLOWED_IMPORT_EXTENSIONS = {".xlsx": "openpyxl", ".xls": "xlrd"}
MAX_TITLE_LENGTH = 50

HEADER_ALIASES = {
    "tanggal": "tanggal",
    "tgl": "tanggal",
    "date": "tanggal",
    "jumlah": "jumlah",
    "amount": "jumlah",
    "nominal": "jumlah",
    "total": "jumlah",
    "judul": "judul",
    "title": "judul",
    "deskripsi": "deskripsi",
    "keterangan": "deskripsi",
    "description": "deskripsi",
    "catatan": "deskripsi",
    "note": "deskripsi",
    "tipe": "tipe",
    "type": "tipe",
    "jenis": "tipe",
    "kategori": "kategori",
    "category": "kategori",
}
REQUIRED_HEADERS = {"tanggal", "jumlah"}

KEYWORD_CATEGORIES = [
    ("gaji", "Gaji"),
    ("bonus", "Bonus"),
    ("investasi", "Investasi"),
    ("makan", "Makanan"),
    ("makanan", "Makanan"),
    ("belanja", "Belanja"),
    ("transport", "Transportasi"),
    ("bensin", "Transportasi"),
    ("tagihan", "Tagihan"),
    ("listrik", "Tagihan"),
    ("pulsa", "Tagihan"),
    ("hiburan", "Hiburan"),
    ("nonton", "Hiburan"),
    ("bioskop", "Hiburan"),
    ("kesehatan", "Kesehatan"),
    ("dokter", "Kesehatan"),
    ("obat", "Kesehatan"),
    ("pendidikan", "Pendidikan"),
    ("kursus", "Pendidikan"),
    ("buku", "Pendidikan"),
]

MONTH_NAMES = [
    "Januari",
    "Februari",
    "Maret",
    "April",
    "Mei",
    "Juni",
    "Juli",
    "Agustus",
    "September",
    "Oktober",
    "November",
    "Desember",
]

TRANSACTION_EXPORT_HEADER = ["NO", "TANGGAL", "JUDUL", "JUMLAH", "TIPE", "KATEGORI", "DESKRIPSI"]
SAVINGS_EXPORT_HEADER = ["NO", "NAMA", "SALDO AWAL", "JUMLAH", "SELISIH"]


@dataclass
class ImportCandidate:
    row: int
    tanggal: object
    judul: str
    jumlah: Decimal
    tipe: str
    kategori: str
    deskripsi: str = ""

    def to_payload(self, kategori_id=None):
        return {
            "judul": self.judul,
            "jumlah": self.jumlah,
            "deskripsi": self.deskripsi or None,
            "tanggal": self.tanggal,
            "tipe": self.tipe,
            "kategoriId": kategori_id,
        }


@dataclass
class ParsedSheet:
    candidates: list = field(default_factory=list)
    errors: list = field(default_factory=list)


def spreadsheet_extension(filename):
    return PurePath(filename or "").suffix.lower()


def is_allowed_spreadsheet(filename):
    return spreadsheet_extension(filename) in ALLOWED_IMPORT_EXTENSIONS


def normalize_header_name(value):
    return " ".join(str(value or "").strip().lower().split())


def _cell_text(value):
    if value is None:
        return ""
    return str(value).strip()


def read_sheet_rows(file_bytes, filename):
    """Return the first sheet of a workbook as a list of raw cell lists."""
    frame = pd.read_excel(
        io.BytesIO(file_bytes),
        sheet_name=0,
        header=None,
        dtype=object,
        engine=ALLOWED_IMPORT_EXTENSIONS[spreadsheet_extension(filename)],
    )
    rows = []
    for values in frame.itertuples(index=False, name=None):
        rows.append([None if pd.isna(value) else value for value in values])
    return rows


def detect_header(rows):
    """Find the first row naming both a date and an amount column.

    Returns ``(row_index, {field: column_index})`` or ``None``.
    """
    for row_index, row in enumerate(rows):
        mapping = {}
        for column_index, cell in enumerate(row):
            canonical = HEADER_ALIASES.get(normalize_header_name(cell))
            if canonical and canonical not in mapping:
                mapping[canonical] = column_index
        if REQUIRED_HEADERS.issubset(mapping):
            return row_index, mapping
    return None


def derive_title(judul, deskripsi, row_number):
    if judul:
        return judul
    if deskripsi:
        if len(deskripsi) > MAX_TITLE_LENGTH:
            return deskripsi[: MAX_TITLE_LENGTH - 3] + "..."
        return deskripsi
    return f"Imported Transaction {row_number}"


def infer_category(deskripsi, fallback_name=FALLBACK_CATEGORY_NAME):
    lowered = (deskripsi or "").lower()
    for keyword, category in KEYWORD_CATEGORIES:
        if keyword in lowered:
            return category
    return fallback_name


def _is_blank(row):
    return all(_cell_text(cell) == "" for cell in row)


def parse_transaction_rows(rows, fallback_name=FALLBACK_CATEGORY_NAME):
    parsed = ParsedSheet()
    if not rows or all(_is_blank(row) for row in rows):
        return parsed

    header = detect_header(rows)
    if header is None:
        parsed.errors.append(
            {"row": None, "stage": "parse", "message": "No header row with date and amount columns found"}
        )
        return parsed

    header_index, mapping = header

    def cell(row, name):
        column_index = mapping.get(name)
        if column_index is None or column_index >= len(row):
            return None
        return row[column_index]

    for row_index in range(header_index + 1, len(rows)):
        row = rows[row_index]
        row_number = row_index + 1
        if row and _cell_text(row[0]).lower() == "total":
            break
        if _is_blank(row):
            continue

        raw_amount = cell(row, "jumlah")
        if _cell_text(raw_amount) == "":
            continue
        amount = parse_decimal(raw_amount)
        if amount is None:
            parsed.errors.append(
                {"row": row_number, "stage": "parse", "message": f"Invalid amount {raw_amount!r}"}
            )
            continue
        if not amount_in_range(amount):
            parsed.errors.append(
                {"row": row_number, "stage": "parse", "message": f"Amount {raw_amount!r} is out of range"}
            )
            continue

        raw_type = _cell_text(cell(row, "tipe"))
        if raw_type:
            tipe = normalize_type(raw_type)
            if tipe is None:
                parsed.errors.append(
                    {"row": row_number, "stage": "parse", "message": f"Unknown transaction type {raw_type!r}"}
                )
                continue
        else:
            tipe = "pemasukan" if amount >= 0 else "pengeluaran"

        deskripsi = _cell_text(cell(row, "deskripsi"))
        kategori = _cell_text(cell(row, "kategori")) or infer_category(deskripsi, fallback_name)
        parsed.candidates.append(
            ImportCandidate(
                row=row_number,
                tanggal=cell(row, "tanggal"),
                judul=derive_title(_cell_text(cell(row, "judul")), deskripsi, row_number),
                jumlah=abs(amount).quantize(CENTS),
                tipe=tipe,
                kategori=kategori,
                deskripsi=deskripsi,
            )
        )

    return parsed


def parse_spreadsheet(file_bytes, filename, fallback_name=FALLBACK_CATEGORY_NAME):
    if not file_bytes:
        return ParsedSheet()
    try:
        rows = read_sheet_rows(file_bytes, filename)
    except Exception as exc:
        logger.warning("Unable to read spreadsheet %s: %s", filename, exc)
        return ParsedSheet(errors=[{"row": None, "stage": "parse", "message": f"Unable to read spreadsheet: {exc}"}])
    return parse_transaction_rows(rows, fallback_name=fallback_name)


def import_candidates(parsed, service, catalog, fallback_name=FALLBACK_CATEGORY_NAME):
    """Persist every candidate on its own and report the batch."""

    def persist(candidate):
        kategori_id = catalog.resolve(candidate.kategori, candidate.tipe, fallback_name=fallback_name)
        return service.create_transaction(candidate.to_payload(kategori_id))

    outcomes = run_isolated(
        [(candidate.row, candidate) for candidate in parsed.candidates],
        persist,
        on_failure=service.rollback,
    )

    errors = list(parsed.errors)
    transactions = []
    for outcome in outcomes:
        if isinstance(outcome, Failure):
            errors.append({"row": outcome.position, "stage": "persist", "message": outcome.reason})
        else:
            transactions.append(outcome.record)
    errors.sort(key=lambda error: (error["row"] is not None, error["row"] or 0))

    total = len(parsed.candidates)
    return {
        "message": f"Imported {len(transactions)} of {total} transactions",
        "imported": len(transactions),
        "total": total,
        "errors": errors,
        "transactions": transactions,
    }


def export_filename(prefix, day):
    return f"{prefix}_{day.isoformat()}.csv"


def format_amount(value):
    return str(Decimal(str(value or 0)).quantize(CENTS))


def month_title(day):
    return f"{MONTH_NAMES[day.month - 1]} {day.year}"


def _savings_rows(savings):
    ordered = sorted(savings, key=lambda record: (record.get("nama") or "", record.get("id") or 0))
    rows = []
    for number, record in enumerate(ordered, start=1):
        saldo_awal = Decimal(str(record.get("saldoAwal") or 0))
        jumlah = Decimal(str(record.get("jumlah") or 0))
        rows.append([
            number,
            record.get("nama"),
            format_amount(saldo_awal),
            format_amount(jumlah),
            format_amount(jumlah - saldo_awal),
        ])
    return rows


def render_transactions_csv(transactions, savings, category_names, generated_on):
    ordered = sorted(
        transactions,
        key=lambda record: (record.get("tanggal") or "", record.get("id") or 0),
        reverse=True,
    )
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow([f"LAPORAN KEUANGAN - {month_title(generated_on)}"])
    writer.writerow([])
    writer.writerow(TRANSACTION_EXPORT_HEADER)
    for number, record in enumerate(ordered, start=1):
        writer.writerow([
            number,
            record.get("tanggal"),
            record.get("judul"),
            format_amount(record.get("jumlah")),
            record.get("tipe"),
            category_names.get(record.get("kategoriId")) or FALLBACK_CATEGORY_NAME,
            record.get("deskripsi") or "",
        ])
    writer.writerow([])
    writer.writerow(["DAFTAR TABUNGAN"])
    writer.writerow(SAVINGS_EXPORT_HEADER)
    writer.writerows(_savings_rows(savings))
    return output.getvalue()


def render_savings_csv(savings, generated_on):
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow([f"LAPORAN TABUNGAN - {month_title(generated_on)}"])
    writer.writerow([])
    writer.writerow(SAVINGS_EXPORT_HEADER)
    writer.writerows(_savings_rows(savings))
    return output.getvalue()
