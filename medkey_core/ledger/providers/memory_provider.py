from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Tuple
import threading

from medkey_core.errors import LedgerRejected, LedgerUnavailable
from medkey_core.ledger.base import Ledger
from medkey_core.ledger.models import (
    AccessGrant, AccessRequest, Confirmation, DocumentRecord, RequestStatus, SharedRecord,
)
from medkey_core.logger import get_logger
from medkey_core.utils import new_tx_hash, normalize_identity, now_ts

log = get_logger("medkey.ledger.memory")

Tuple3 = Tuple[str, str, str]


class InMemoryLedger(Ledger):
    """
    Offline stand-in for the access-control contract.

    Mirrors the contract's checks (owner-only writes, no duplicate active
    grants) and can simulate the two behaviours callers must tolerate:

    - ``propagation_lag``: number of ``get_public_key`` reads that still
      return the previous value after a confirmed registration
    - ``fail_next(n)``: the next ``n`` calls raise ``LedgerUnavailable``
    """

    name = "memory"

    def __init__(self, propagation_lag: int = 0):
        self.propagation_lag = propagation_lag
        self.identities: Dict[str, str] = {}       # identity -> role
        self.public_keys: Dict[str, str] = {}
        self._stale_reads: Dict[str, Tuple[Optional[str], int]] = {}
        self.documents: Dict[Tuple[str, str], DocumentRecord] = {}
        self.grants: Dict[Tuple3, AccessGrant] = {}
        self.wrapped_keys: Dict[Tuple3, bytes] = {}
        self.shared_index: Dict[str, Dict[Tuple[str, str], str]] = {}
        self.requests: Dict[int, AccessRequest] = {}
        self.request_keys: Dict[Tuple[int, str], bytes] = {}
        self._next_request_id = 1
        self.block_number = 0
        self.calls: List[str] = []
        self._failures = 0
        self._fail_methods: Optional[set] = None
        self._lock = threading.Lock()

    # --- simulation controls ---
    def fail_next(self, n: int = 1, methods: Optional[List[str]] = None) -> None:
        self._failures = n
        self._fail_methods = set(methods) if methods else None

    def register_identity(self, identity: str, role: str = "patient") -> None:
        self.identities[normalize_identity(identity)] = role

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self._failures > 0 and (self._fail_methods is None or method in self._fail_methods):
            self._failures -= 1
            raise LedgerUnavailable(f"simulated outage in {method}")

    def _confirm(self) -> Confirmation:
        self.block_number += 1
        return Confirmation(tx_hash=new_tx_hash(), block_number=self.block_number, status=1)

    def _require_owner(self, sender: str, owner: str) -> None:
        if sender != owner:
            raise LedgerRejected(f"execution reverted: {sender} is not the record owner")

    # --- identities / public keys ---
    def is_registered(self, identity: str) -> bool:
        self._enter("is_registered")
        return normalize_identity(identity) in self.identities

    def get_public_key(self, identity: str) -> Optional[str]:
        self._enter("get_public_key")
        ident = normalize_identity(identity)
        with self._lock:
            stale = self._stale_reads.get(ident)
            if stale is not None:
                previous, remaining = stale
                if remaining > 0:
                    self._stale_reads[ident] = (previous, remaining - 1)
                    return previous
                del self._stale_reads[ident]
        return self.public_keys.get(ident)

    def register_public_key(self, identity: str, material: str) -> Confirmation:
        self._enter("register_public_key")
        ident = normalize_identity(identity)
        with self._lock:
            if self.propagation_lag > 0:
                self._stale_reads[ident] = (self.public_keys.get(ident), self.propagation_lag)
            self.public_keys[ident] = material
            self.identities.setdefault(ident, "patient")
            conf = self._confirm()
        log.debug(f"[LEDGER] public key registered for {ident} block={conf.block_number}")
        return conf

    # --- documents ---
    def register_document(self, sender: str, owner: str, document_id: str, content_address: str,
                          owner_wrapped_key: bytes) -> Confirmation:
        self._enter("register_document")
        sender, owner = normalize_identity(sender), normalize_identity(owner)
        self._require_owner(sender, owner)
        if not owner_wrapped_key:
            raise LedgerRejected("execution reverted: owner key required")
        key = (owner, document_id)
        with self._lock:
            if key in self.documents:
                raise LedgerRejected(f"execution reverted: document {document_id} already exists")
            self.documents[key] = DocumentRecord(owner, document_id, content_address)
            self.wrapped_keys[(owner, owner, document_id)] = bytes(owner_wrapped_key)
            return self._confirm()

    def get_document(self, owner: str, document_id: str) -> Optional[DocumentRecord]:
        self._enter("get_document")
        return self.documents.get((normalize_identity(owner), document_id))

    # --- access control ---
    def grant_access(self, sender: str, owner: str, recipient: str, document_id: str) -> Confirmation:
        self._enter("grant_access")
        sender, owner, recipient = map(normalize_identity, (sender, owner, recipient))
        self._require_owner(sender, owner)
        key = (owner, recipient, document_id)
        with self._lock:
            existing = self.grants.get(key)
            if existing is not None and not existing.revoked:
                raise LedgerRejected("execution reverted: access already granted")
            grant = AccessGrant(owner, recipient, document_id)
            self.grants[key] = grant
            self.shared_index.setdefault(recipient, {})[(owner, document_id)] = grant.granted_at
            # a fresh grant never inherits a wrapping from an earlier one
            self.wrapped_keys.pop(key, None)
        return self._confirm()

    def revoke_access(self, sender: str, owner: str, recipient: str, document_id: str) -> Confirmation:
        self._enter("revoke_access")
        sender, owner, recipient = map(normalize_identity, (sender, owner, recipient))
        self._require_owner(sender, owner)
        key = (owner, recipient, document_id)
        with self._lock:
            grant = self.grants.get(key)
            if grant is not None and not grant.revoked:
                grant.revoked = True
                grant.revoked_at = now_ts()
                self.shared_index.get(recipient, {}).pop((owner, document_id), None)
                self.wrapped_keys.pop(key, None)
        return self._confirm()

    def get_grant(self, owner: str, recipient: str, document_id: str) -> Optional[AccessGrant]:
        self._enter("get_grant")
        return self.grants.get((normalize_identity(owner), normalize_identity(recipient), document_id))

    def get_shared_records(self, recipient: str) -> List[SharedRecord]:
        self._enter("get_shared_records")
        rows = self.shared_index.get(normalize_identity(recipient), {})
        return [SharedRecord(owner, doc, ts) for (owner, doc), ts in sorted(rows.items())]

    # --- wrapped keys ---
    def store_wrapped_key(self, sender: str, owner: str, recipient: str, document_id: str,
                          ciphertext: bytes) -> Confirmation:
        self._enter("store_wrapped_key")
        sender, owner, recipient = map(normalize_identity, (sender, owner, recipient))
        self._require_owner(sender, owner)
        key = (owner, recipient, document_id)
        if owner == recipient:
            if (owner, document_id) not in self.documents:
                raise LedgerRejected("execution reverted: unknown document")
        else:
            grant = self.grants.get(key)
            if grant is None or grant.revoked:
                raise LedgerRejected("execution reverted: no active grant")
        self.wrapped_keys[key] = bytes(ciphertext)
        return self._confirm()

    def get_wrapped_key(self, owner: str, recipient: str, document_id: str) -> Optional[bytes]:
        self._enter("get_wrapped_key")
        return self.wrapped_keys.get((normalize_identity(owner), normalize_identity(recipient), document_id))

    # --- review requests ---
    def submit_request(self, sender: str, content_address: str, bundle_id: str, purpose: str,
                       reviewers: Sequence[str], wrapped_keys: Sequence[bytes]) -> Tuple[Confirmation, int]:
        self._enter("submit_request")
        requester = normalize_identity(sender)
        reviewers = [normalize_identity(r) for r in reviewers]
        if not reviewers:
            raise LedgerRejected("execution reverted: no reviewers")
        if len(reviewers) != len(wrapped_keys):
            raise LedgerRejected("execution reverted: reviewers and keys length mismatch")
        if requester in reviewers:
            raise LedgerRejected("execution reverted: requester cannot review")
        with self._lock:
            request_id = self._next_request_id
            self._next_request_id += 1
            self.requests[request_id] = AccessRequest(request_id, requester, reviewers, content_address,
                                                      bundle_id, purpose)
            for reviewer, ciphertext in zip(reviewers, wrapped_keys):
                self.request_keys[(request_id, reviewer)] = bytes(ciphertext)
            conf = self._confirm()
        log.debug(f"[LEDGER] request {request_id} submitted by {requester} for {len(reviewers)} reviewers")
        return conf, request_id

    def get_request(self, request_id: int) -> Optional[AccessRequest]:
        self._enter("get_request")
        return self.requests.get(int(request_id))

    def get_request_key(self, request_id: int, reviewer: str) -> Optional[bytes]:
        self._enter("get_request_key")
        return self.request_keys.get((int(request_id), normalize_identity(reviewer)))

    def process_request(self, sender: str, request_id: int, approve: bool) -> Confirmation:
        self._enter("process_request")
        sender = normalize_identity(sender)
        with self._lock:
            request = self.requests.get(int(request_id))
            if request is None:
                raise LedgerRejected("execution reverted: unknown request")
            if sender not in request.reviewers:
                raise LedgerRejected("execution reverted: not a reviewer")
            if not request.pending:
                raise LedgerRejected("execution reverted: request already processed")
            request.status = RequestStatus.APPROVED if approve else RequestStatus.REJECTED
            request.processed_by = sender
            request.processed_at = now_ts()
            return self._confirm()

    def get_pending_requests(self, reviewer: str) -> List[int]:
        self._enter("get_pending_requests")
        reviewer = normalize_identity(reviewer)
        return [rid for rid, req in sorted(self.requests.items()) if req.pending and reviewer in req.reviewers]

    def get_requests_by_requester(self, requester: str) -> List[int]:
        self._enter("get_requests_by_requester")
        requester = normalize_identity(requester)
        return [rid for rid, req in sorted(self.requests.items()) if req.requester == requester]
