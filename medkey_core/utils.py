"""
medkey_core.utils
-----------------
Small helpers for encoding, timestamps, identity normalization and key
fingerprints. Anything that lands in a log line or on the ledger passes
through one of these so formats stay consistent across clients.
"""

from __future__ import annotations
import base64, json, time, uuid, hashlib
from typing import Any, Dict


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"))


def to_hex(b: bytes) -> str:
    # ledger byte fields are 0x-prefixed
    return "0x" + b.hex()


def from_hex(s: str) -> bytes:
    clean = s[2:] if s.startswith(("0x", "0X")) else s
    if len(clean) % 2 != 0:
        raise ValueError("Invalid hex string")
    return bytes.fromhex(clean)


def now_ts() -> str:
    # RFC3339 / ISO 8601 in UTC, second precision
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def new_id() -> str:
    return uuid.uuid4().hex


def new_tx_hash() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


def normalize_identity(identity: str) -> str:
    if not identity or not identity.strip():
        raise ValueError("identity must be a non-empty address")
    return identity.strip().lower()


def canonical_json(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint(public_material: str) -> str:
    """
    Stable fingerprint for PEM public material.

    Whitespace is ignored so a registry value that gained or lost trailing
    newlines still maps to the same fingerprint. Truncated to 32 hex chars,
    which is what logs and cache entries carry instead of the key itself.
    """
    compact = "".join(public_material.split())
    return sha256(compact.encode("utf-8"))[:32]


def same_material(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip() == b.strip()
