"""
medkey_core.config
------------------
Runtime settings, read from ``MEDKEY_*`` environment variables. A dict of
overrides (same field names) wins over the environment, which is how tests
and embedding applications configure a client without touching os.environ.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional
import os

from .constants import (
    DEFAULT_CONFIRM_ATTEMPTS, DEFAULT_CONFIRM_INTERVAL, DEFAULT_DB_PATH,
    DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_INTERVAL,
)
from .retry import RetryPolicy


@dataclass
class Settings:
    keystore_provider: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    keystore_passphrase: str = ""
    ledger_provider: str = "memory"
    rpc_url: str = "http://localhost:8545"
    contract_address: Optional[str] = None
    contract_abi_path: Optional[str] = None
    gateway_provider: str = "memory"
    gateway_upload_url: str = "https://uploads.pinata.cloud/v3/files"
    gateway_fetch_url: str = "http://localhost:8080/ipfs"
    gateway_token: Optional[str] = None
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    confirm_attempts: int = DEFAULT_CONFIRM_ATTEMPTS
    confirm_interval: float = DEFAULT_CONFIRM_INTERVAL
    log_level: str = "INFO"

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.retry_attempts, interval=self.retry_interval, backoff=2.0)

    @property
    def confirm_policy(self) -> RetryPolicy:
        # registry read-back uses a fixed interval
        return RetryPolicy(attempts=self.confirm_attempts, interval=self.confirm_interval)

    def keystore_config(self) -> Dict[str, Any]:
        return {
            "provider": self.keystore_provider,
            "sqlite_path": self.db_path,
            "passphrase": self.keystore_passphrase,
        }

    def ledger_config(self) -> Dict[str, Any]:
        return {
            "provider": self.ledger_provider,
            "rpc_url": self.rpc_url,
            "contract_address": self.contract_address,
            "abi_path": self.contract_abi_path,
        }

    def gateway_config(self) -> Dict[str, Any]:
        return {
            "provider": self.gateway_provider,
            "upload_url": self.gateway_upload_url,
            "fetch_url": self.gateway_fetch_url,
            "token": self.gateway_token,
        }


def _coerce(value: str, default: Any) -> Any:
    if isinstance(default, bool):
        return value.lower() in ("1", "true", "yes")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    overrides = overrides or {}
    unknown = set(overrides) - {f.name for f in fields(Settings)}
    if unknown:
        raise ValueError(f"Unknown settings: {sorted(unknown)}")

    values: Dict[str, Any] = {}
    for f in fields(Settings):
        if f.name in overrides:
            values[f.name] = overrides[f.name]
            continue
        env = os.getenv(f"MEDKEY_{f.name.upper()}")
        if env is not None and env != "":
            values[f.name] = _coerce(env, f.default)
    return Settings(**values)
