import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from nexus_finance import create_app
from nexus_finance.categories import CategoryCatalog
from nexus_finance.local_store import utc_now_text
from nexus_finance.records import RecordService, RemoteRecordStore


SAMPLE_SAVINGS = [("Dana Darurat", 5000000), ("Liburan", 1500000), ("Laptop Baru", 0)]
SAMPLE_EXPENSES = [
    ("Makan siang", "Makanan"),
    ("Bensin motor", "Transportasi"),
    ("Belanja bulanan", "Belanja"),
    ("Listrik", "Tagihan"),
    ("Nonton bioskop", "Hiburan"),
    ("Obat flu", "Kesehatan"),
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        user = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()
        if user is None:
            db.execute(
                "INSERT INTO users (username, password_hash, created_at) VALUES (?, ?, ?)",
                ("demo", generate_password_hash("demo123"), utc_now_text()),
            )
            db.commit()
            user = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()

        catalog = CategoryCatalog(db)
        service = RecordService(RemoteRecordStore(db, user["id"]), catalog)

        for nama, saldo_awal in SAMPLE_SAVINGS:
            service.create_savings({"nama": nama, "saldoAwal": saldo_awal})

        start = date.today() - timedelta(days=60)
        for i in range(30):
            tanggal = (start + timedelta(days=i * 2)).isoformat()
            if i % 10 == 0:
                payload = {
                    "judul": "Gaji bulanan",
                    "jumlah": 8000000,
                    "tanggal": tanggal,
                    "tipe": "pemasukan",
                    "kategoriId": catalog.resolve("Gaji", "pemasukan"),
                }
            else:
                judul, kategori = random.choice(SAMPLE_EXPENSES)
                payload = {
                    "judul": judul,
                    "jumlah": random.randrange(10, 500) * 1000,
                    "deskripsi": f"Sample transaksi {i + 1}",
                    "tanggal": tanggal,
                    "tipe": "pengeluaran",
                    "kategoriId": catalog.resolve(kategori, "pengeluaran"),
                }
            service.create_transaction(payload)

    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()
