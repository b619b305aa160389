"""Key/value storage for guest sessions.

The layout mirrors what the browser client keeps in ``localStorage``: a
handful of fixed identity keys plus one JSON mirror per record collection,
suffixed with the guest id. Any ``MutableMapping`` of strings can back it;
the web app uses :class:`TableStorage`, a partition of the ``local_storage``
table addressed by the guest's storage cookie.
"""

import json
import random
import string
import time
from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


GUEST_ID_KEY = "financeUserId"
GUEST_NAME_KEY = "financeUserName"
GUEST_EMAIL_KEY = "financeUserEmail"
GUEST_CREATED_AT_KEY = "financeUserCreatedAt"
SAVINGS_KEY_PREFIX = "finance_data_tabungan_"
TRANSACTIONS_KEY_PREFIX = "finance_data_transaksi_"

IDENTITY_KEYS = (GUEST_ID_KEY, GUEST_NAME_KEY, GUEST_EMAIL_KEY, GUEST_CREATED_AT_KEY)
_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_guest_id():
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"user_{int(time.time() * 1000)}_{suffix}"


def generate_local_id(existing_ids=()):
    """Return an integer id for a locally created record.

    Ids are millisecond timestamps scaled by 1000 plus a random suffix, far
    above anything the database sequences hand out, so they can be upserted
    into the shared tables unchanged.
    """
    taken = set(existing_ids)
    while True:
        candidate = int(time.time() * 1000) * 1000 + random.randrange(1000)
        if candidate not in taken:
            return candidate


@dataclass
class GuestIdentity:
    id: str
    created_at: str
    name: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name or f"User {self.id[-6:]}",
            "email": self.email,
            "createdAt": self.created_at,
            "isGuest": True,
        }


class LocalStore:
    def __init__(self, storage):
        self._storage = storage

    def get_item(self, key):
        return self._storage.get(key)

    def set_item(self, key, value):
        self._storage[key] = str(value)

    def remove_item(self, key):
        self._storage.pop(key, None)

    def read_json(self, key, default=None):
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def write_json(self, key, value):
        self.set_item(key, json.dumps(value))

    def guest_identity(self, create=True):
        guest_id = self.get_item(GUEST_ID_KEY)
        if not guest_id:
            if not create:
                return None
            guest_id = generate_guest_id()
            self.set_item(GUEST_ID_KEY, guest_id)
            self.set_item(GUEST_CREATED_AT_KEY, utc_now_text())

        return GuestIdentity(
            id=guest_id,
            created_at=self.get_item(GUEST_CREATED_AT_KEY) or utc_now_text(),
            name=self.get_item(GUEST_NAME_KEY),
            email=self.get_item(GUEST_EMAIL_KEY),
        )

    def update_profile(self, name=None, email=None):
        identity = self.guest_identity()
        if name is not None:
            self.set_item(GUEST_NAME_KEY, name)
            identity.name = name
        if email is not None:
            self.set_item(GUEST_EMAIL_KEY, email)
            identity.email = email
        return identity

    def reset_identity(self):
        for key in IDENTITY_KEYS:
            self.remove_item(key)

    def load_savings(self, guest_id):
        return list(self.read_json(SAVINGS_KEY_PREFIX + guest_id, []) or [])

    def save_savings(self, guest_id, records):
        self._save_collection(SAVINGS_KEY_PREFIX + guest_id, records)

    def load_transactions(self, guest_id):
        return list(self.read_json(TRANSACTIONS_KEY_PREFIX + guest_id, []) or [])

    def save_transactions(self, guest_id, records):
        self._save_collection(TRANSACTIONS_KEY_PREFIX + guest_id, records)

    def clear_records(self, guest_id):
        self.remove_item(SAVINGS_KEY_PREFIX + guest_id)
        self.remove_item(TRANSACTIONS_KEY_PREFIX + guest_id)

    def _save_collection(self, key, records):
        if records:
            self.write_json(key, list(records))
        else:
            self.remove_item(key)


class TableStorage(MutableMapping):
    """One browser's slice of the ``local_storage`` table."""

    def __init__(self, db, storage_token):
        self.db = db
        self.storage_token = storage_token

    def __getitem__(self, key):
        row = self.db.execute(
            "SELECT item_value FROM local_storage WHERE storage_token = ? AND item_key = ?",
            (self.storage_token, key),
        ).fetchone()
        if row is None:
            raise KeyError(key)
        return row["item_value"]

    def __setitem__(self, key, value):
        self.db.execute(
            """
            INSERT INTO local_storage (storage_token, item_key, item_value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (storage_token, item_key)
            DO UPDATE SET item_value = excluded.item_value, updated_at = excluded.updated_at
            """,
            (self.storage_token, key, value, utc_now_text()),
        )
        self.db.commit()

    def __delitem__(self, key):
        cur = self.db.execute(
            "DELETE FROM local_storage WHERE storage_token = ? AND item_key = ?",
            (self.storage_token, key),
        )
        self.db.commit()
        if cur.rowcount == 0:
            raise KeyError(key)

    def __iter__(self):
        rows = self.db.execute(
            "SELECT item_key FROM local_storage WHERE storage_token = ? ORDER BY item_key",
            (self.storage_token,),
        ).fetchall()
        return iter([row["item_key"] for row in rows])

    def __len__(self):
        row = self.db.execute(
            "SELECT COUNT(*) AS c FROM local_storage WHERE storage_token = ?",
            (self.storage_token,),
        ).fetchone()
        return int(row["c"])
