from __future__ import annotations
from typing import Optional, List
import sqlite3, os
from medkey_core.crypto import PrivateKeyHandle, open_handle, seal_handle
from medkey_core.keystore.provider import LocalKeyStore
from medkey_core.logger import get_logger
from medkey_core.utils import normalize_identity

log = get_logger("medkey.keystore.sqlite")


class SQLiteKeyStore(LocalKeyStore):
    """
    Durable key store. Private keys are kept as passphrase-encrypted
    PKCS#8; the raw key is only ever materialized inside a handle.
    """

    def __init__(self, path="db/medkey_keystore.db", passphrase: bytes | str = b""):
        self._passphrase = passphrase.encode("utf-8") if isinstance(passphrase, str) else passphrase
        if not self._passphrase:
            raise ValueError("SQLiteKeyStore requires a passphrase (MEDKEY_KEYSTORE_PASSPHRASE)")

        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False)

        self._init()

    def _init(self) -> None:
        c = self.db.cursor()
        c.execute("""CREATE TABLE IF NOT EXISTS private_keys(
            identity TEXT PRIMARY KEY,
            sealed_key BLOB NOT NULL,
            pub_key_fpr TEXT NOT NULL,
            created_at TEXT NOT NULL
        )""")
        self.db.commit()

    def put(self, identity: str, handle: PrivateKeyHandle) -> None:
        ident = normalize_identity(identity)
        self.db.execute(
            "INSERT INTO private_keys(identity,sealed_key,pub_key_fpr,created_at) VALUES(?,?,?,?) "
            "ON CONFLICT(identity) DO UPDATE SET sealed_key=excluded.sealed_key, "
            "pub_key_fpr=excluded.pub_key_fpr, created_at=excluded.created_at",
            (ident, seal_handle(handle, self._passphrase), handle.fingerprint, handle.created_at)
        )
        self.db.commit()
        log.debug(f"[KEYSTORE] stored key for {ident} fpr={handle.fingerprint}")

    def get(self, identity: str) -> Optional[PrivateKeyHandle]:
        ident = normalize_identity(identity)
        cur = self.db.execute(
            "SELECT sealed_key, created_at FROM private_keys WHERE identity=?", (ident,)
        )
        row = cur.fetchone()
        if not row:
            return None
        sealed, created_at = row
        # handles carry the caller-facing identity (normalized)
        return open_handle(ident, sealed, self._passphrase, created_at=created_at)

    def delete(self, identity: str) -> None:
        self.db.execute("DELETE FROM private_keys WHERE identity=?", (normalize_identity(identity),))
        self.db.commit()

    def has(self, identity: str) -> bool:
        cur = self.db.execute("SELECT 1 FROM private_keys WHERE identity=?", (normalize_identity(identity),))
        return cur.fetchone() is not None

    def identities(self) -> List[str]:
        cur = self.db.execute("SELECT identity FROM private_keys ORDER BY identity")
        return [r[0] for r in cur.fetchall()]

    def close(self):
        self.db.close()
