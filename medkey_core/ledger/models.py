# medkey_core/ledger/models.py
from __future__ import annotations
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, List, Optional

from medkey_core.utils import now_ts, to_hex


class GrantState(str, Enum):
    UNGRANTED = "ungranted"
    ACTIVE = "active"
    REVOKED = "revoked"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Confirmation:
    """Receipt of a ledger write that reached its confirmation point."""
    tx_hash: str
    block_number: int
    status: int = 1  # 1 = success, 0 = reverted

    @property
    def ok(self) -> bool:
        return self.status == 1


@dataclass
class AccessGrant:
    owner: str
    recipient: str
    document_id: str
    granted_at: str = field(default_factory=now_ts)
    revoked: bool = False
    revoked_at: Optional[str] = None

    @property
    def state(self) -> GrantState:
        return GrantState.REVOKED if self.revoked else GrantState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WrappedKey:
    owner: str
    recipient: str
    document_id: str
    ciphertext: bytes
    stored_at: str = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["ciphertext"] = to_hex(self.ciphertext)
        return d


@dataclass
class SharedRecord:
    """One row of a recipient's "shared with me" index."""
    owner: str
    document_id: str
    timestamp: str


@dataclass
class DocumentRecord:
    owner: str
    document_id: str
    content_address: str
    created_at: str = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AccessRequest:
    """
    A document submitted for review by several reviewers at once. Each
    reviewer holds their own wrapping of the bundle's content key; the first
    reviewer to approve or reject settles it for all of them.
    """
    request_id: int
    requester: str
    reviewers: List[str]
    content_address: str
    bundle_id: str
    purpose: str = ""
    created_at: str = field(default_factory=now_ts)
    status: RequestStatus = RequestStatus.PENDING
    processed_by: Optional[str] = None
    processed_at: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d
