# medkey_core/keystore/__init__.py

from .provider import LocalKeyStore
from .providers.memory_provider import InMemoryKeyStore
from .providers.sqlite_provider import SQLiteKeyStore
from medkey_core.constants import DEFAULT_DB_PATH
import os


def load_keystore_provider(config: dict | None = None) -> LocalKeyStore:
    """
    Factory resolver for selecting the local key store backend.

    For now:
        - sqlite (default)
        - memory
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("MEDKEY_KEYSTORE_PROVIDER", "sqlite")

    if provider == "memory":
        return InMemoryKeyStore()

    if provider == "sqlite":
        db_path = config.get("sqlite_path") or os.getenv("MEDKEY_DB_PATH", DEFAULT_DB_PATH)
        passphrase = config.get("passphrase") or os.getenv("MEDKEY_KEYSTORE_PASSPHRASE", "")
        return SQLiteKeyStore(db_path, passphrase=passphrase)

    raise ValueError(f"Unknown keystore provider: {provider}")


__all__ = [
    "LocalKeyStore",
    "InMemoryKeyStore",
    "SQLiteKeyStore",
    "load_keystore_provider",
]
