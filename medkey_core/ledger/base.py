from __future__ import annotations
from typing import List, Optional, Sequence, Tuple

from medkey_core.ledger.models import AccessGrant, AccessRequest, Confirmation, DocumentRecord, SharedRecord


class Ledger:
    """
    Boundary contract for the external ledger.

    The ledger is treated as an opaque key-value and access-list oracle:
    reads are eventually consistent, writes return only once they reach
    the provider's confirmation point. Every write names its ``sender``;
    the ledger enforces ownership on its side as well.

    Providers raise ``LedgerUnavailable`` for transport-level failures
    (retryable) and ``LedgerRejected`` when a write is reverted.
    """
    name: str = "base"

    # --- identities / public keys ---
    def is_registered(self, identity: str) -> bool:
        raise NotImplementedError

    def get_public_key(self, identity: str) -> Optional[str]:
        raise NotImplementedError

    def register_public_key(self, identity: str, material: str) -> Confirmation:
        raise NotImplementedError

    # --- documents ---
    def register_document(self, sender: str, owner: str, document_id: str, content_address: str,
                          owner_wrapped_key: bytes) -> Confirmation:
        """Record the document together with the owner's own wrapped key, in one write."""
        raise NotImplementedError

    def get_document(self, owner: str, document_id: str) -> Optional[DocumentRecord]:
        raise NotImplementedError

    # --- access control ---
    def grant_access(self, sender: str, owner: str, recipient: str, document_id: str) -> Confirmation:
        raise NotImplementedError

    def revoke_access(self, sender: str, owner: str, recipient: str, document_id: str) -> Confirmation:
        raise NotImplementedError

    def get_grant(self, owner: str, recipient: str, document_id: str) -> Optional[AccessGrant]:
        raise NotImplementedError

    def get_shared_records(self, recipient: str) -> List[SharedRecord]:
        raise NotImplementedError

    # --- wrapped keys ---
    def store_wrapped_key(self, sender: str, owner: str, recipient: str, document_id: str,
                          ciphertext: bytes) -> Confirmation:
        raise NotImplementedError

    def get_wrapped_key(self, owner: str, recipient: str, document_id: str) -> Optional[bytes]:
        raise NotImplementedError

    # --- review requests ---
    def submit_request(self, sender: str, content_address: str, bundle_id: str, purpose: str,
                       reviewers: Sequence[str], wrapped_keys: Sequence[bytes]) -> Tuple[Confirmation, int]:
        """One wrapped key per reviewer, same order. Returns the confirmation and the new request id."""
        raise NotImplementedError

    def get_request(self, request_id: int) -> Optional[AccessRequest]:
        raise NotImplementedError

    def get_request_key(self, request_id: int, reviewer: str) -> Optional[bytes]:
        raise NotImplementedError

    def process_request(self, sender: str, request_id: int, approve: bool) -> Confirmation:
        raise NotImplementedError

    def get_pending_requests(self, reviewer: str) -> List[int]:
        raise NotImplementedError

    def get_requests_by_requester(self, requester: str) -> List[int]:
        raise NotImplementedError

    def healthz(self) -> dict:
        return {"status": "ok", "ledger": self.name}

    def close(self) -> None:
        return
