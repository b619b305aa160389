from .db_migrations import FALLBACK_CATEGORY_NAME
from .records import ValidationError, normalize_type


def category_from_row(row):
    return {
        "id": row["id"],
        "nama": row["nama"],
        "jenis": row["jenis"],
        "icon": row["icon"],
        "warna": row["warna"],
    }


class CategoryCatalog:
    """Reference categories, shared by every account and guest."""

    def __init__(self, db):
        self.db = db

    def list(self):
        rows = self.db.execute("SELECT * FROM kategori ORDER BY nama ASC, jenis ASC").fetchall()
        return [category_from_row(row) for row in rows]

    def get(self, category_id):
        row = self.db.execute("SELECT * FROM kategori WHERE id = ?", (category_id,)).fetchone()
        return category_from_row(row) if row is not None else None

    def find(self, nama, jenis):
        if not nama or not jenis:
            return None
        row = self.db.execute(
            "SELECT * FROM kategori WHERE nama = ? AND jenis = ?",
            (nama, jenis),
        ).fetchone()
        return category_from_row(row) if row is not None else None

    def names_by_id(self):
        return {category["id"]: category["nama"] for category in self.list()}

    def resolve(self, nama, jenis, fallback_name=FALLBACK_CATEGORY_NAME):
        """Return the id for (nama, jenis), else the fallback of that jenis, else None."""
        category = self.find(nama, jenis)
        if category is None and fallback_name:
            category = self.find(fallback_name, jenis)
        return category["id"] if category is not None else None

    def create(self, payload):
        nama = str(payload.get("nama") or "").strip()
        jenis = normalize_type(payload.get("jenis"))
        if not nama:
            raise ValidationError("nama is required")
        if jenis is None:
            raise ValidationError("jenis must be pemasukan or pengeluaran")
        if self.find(nama, jenis) is not None:
            raise ValidationError(f"Category {nama} ({jenis}) already exists")

        self.db.execute(
            "INSERT INTO kategori (nama, jenis, icon, warna) VALUES (?, ?, ?, ?)",
            (nama, jenis, payload.get("icon"), payload.get("warna")),
        )
        self.db.commit()
        return self.find(nama, jenis)
