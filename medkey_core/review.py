"""
medkey_core.review
------------------
AccessRequestProtocol: one document submitted to several reviewers at once.

The requester seals the document under a fresh content key, wraps that key
once per reviewer under each reviewer's registered public key, and stores
every wrapping in a single ledger write alongside the request. Any listed
reviewer can open the document with their own private key; the first one
to approve or reject settles the request:

    PENDING --approve()--> APPROVED
    PENDING --reject()---> REJECTED

- the requester never reviews their own request
- a processed request stays readable to its reviewers but cannot change
- opening a request distinguishes "not a reviewer" (AccessDenied) from
  "listed but no wrapping on the ledger" (KeyNotStored)
"""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Sequence
import threading
import time

from .codec import DecryptedDocument, call_gateway, open_bundle, seal_bundle
from .crypto import ContentKeyWrapper, PrivateKeyHandle, check_wrapped_length
from .errors import (
    AccessDenied, DocumentNotFound, InvalidRecipientKey, KeyNotStored, LedgerRejected, MedKeyError,
)
from .gateway import StorageGateway
from .ledger import AccessRequest, Ledger
from .logger import get_logger, log_event
from .registry import PublicKeyRegistryClient, call_ledger
from .retry import RetryPolicy
from .utils import new_id, normalize_identity

log = get_logger("medkey.review")


class AccessRequestProtocol:
    def __init__(
        self,
        ledger: Ledger,
        registry: PublicKeyRegistryClient,
        gateway: StorageGateway,
        wrapper: Optional[ContentKeyWrapper] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.registry = registry
        self.gateway = gateway
        self.wrapper = wrapper or ContentKeyWrapper()
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def _ledger(self, fn, label: str, cancel: Optional[threading.Event] = None, **context):
        try:
            return call_ledger(fn, self.policy, self.sleep, cancel=cancel, label=label, **context)
        except LedgerRejected as e:
            raise AccessDenied(f"ledger refused {label}: {e}", reason="ledger_rejected", **context) from e

    def get(self, request_id: int) -> AccessRequest:
        request = self._ledger(lambda: self.ledger.get_request(request_id), "get_request",
                               request_id=request_id)
        if request is None:
            raise DocumentNotFound("no such review request", request_id=request_id)
        return request

    def _require_reviewer(self, request: AccessRequest, caller: str) -> None:
        if caller not in request.reviewers:
            raise AccessDenied("caller is not a reviewer of this request", reason="not_reviewer",
                               request_id=request.request_id, caller=caller)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, handle: PrivateKeyHandle, file_bytes: bytes, reviewers: Sequence[str],
               metadata: Optional[Dict[str, Any]] = None, purpose: str = "",
               cancel: Optional[threading.Event] = None) -> AccessRequest:
        requester = normalize_identity(handle.identity)
        reviewers = list(dict.fromkeys(normalize_identity(r) for r in reviewers))
        if not reviewers:
            raise AccessDenied("a review request needs at least one reviewer", reason="no_reviewers",
                               requester=requester)
        if requester in reviewers:
            raise AccessDenied("requesters cannot review their own request", reason="self_review",
                               requester=requester)

        materials = []
        for reviewer in reviewers:
            material = self.registry.get_public_key(reviewer)
            if material is None:
                raise InvalidRecipientKey("reviewer has no registered public key",
                                          requester=requester, reviewer=reviewer)
            materials.append(material)

        bundle_id = new_id()
        content_key = self.wrapper.generate_content_key()
        wrapped = []
        for reviewer, material in zip(reviewers, materials):
            try:
                ciphertext = self.wrapper.wrap(content_key, material)
                check_wrapped_length(ciphertext)
            except MedKeyError as e:
                e.context.update(requester=requester, reviewer=reviewer)
                raise
            wrapped.append(ciphertext)

        ctx = dict(requester=requester, bundle_id=bundle_id)
        blob = seal_bundle(content_key, bundle_id, file_bytes,
                           dict(metadata or {}, requester=requester, purpose=purpose))
        address = call_gateway(lambda: self.gateway.upload(blob), self.policy, self.sleep,
                               cancel=cancel, label="upload", **ctx)

        conf, request_id = self._ledger(
            lambda: self.ledger.submit_request(requester, address, bundle_id, purpose, reviewers, wrapped),
            "submit_request", cancel=cancel, **ctx,
        )
        log_event(log, "request_submitted", request_id=request_id, reviewers=len(reviewers),
                  tx_hash=conf.tx_hash, **ctx)
        request = self._ledger(lambda: self.ledger.get_request(request_id), "get_request",
                               request_id=request_id)
        return request if request is not None else AccessRequest(
            request_id, requester, reviewers, address, bundle_id, purpose)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def resolve_key(self, request_id: int, handle: PrivateKeyHandle) -> bytes:
        caller = normalize_identity(handle.identity)
        request = self.get(request_id)
        self._require_reviewer(request, caller)
        ctx = dict(request_id=request.request_id, reviewer=caller)

        ciphertext = self._ledger(lambda: self.ledger.get_request_key(request.request_id, caller),
                                  "get_request_key", **ctx)
        if not ciphertext:
            raise KeyNotStored("reviewer is listed but no wrapped key is stored", **ctx)
        try:
            return self.wrapper.unwrap(ciphertext, handle)
        except MedKeyError as e:
            e.context.update(ctx)
            raise

    def open(self, request_id: int, handle: PrivateKeyHandle) -> DecryptedDocument:
        content_key = self.resolve_key(request_id, handle)
        request = self.get(request_id)
        blob = call_gateway(lambda: self.gateway.fetch(request.content_address), self.policy, self.sleep,
                            label="fetch", request_id=request.request_id)
        file_bytes, metadata = open_bundle(content_key, request.bundle_id, blob)
        log_event(log, "request_opened", request_id=request.request_id,
                  reviewer=normalize_identity(handle.identity))
        return DecryptedDocument(request.bundle_id, request.requester, request.content_address,
                                 file_bytes, metadata)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def _process(self, request_id: int, caller: str, approve: bool,
                 cancel: Optional[threading.Event] = None) -> AccessRequest:
        caller = normalize_identity(caller)
        request = self.get(request_id)
        self._require_reviewer(request, caller)
        if not request.pending:
            raise AccessDenied(f"request was already {request.status.value}", reason="already_processed",
                               request_id=request.request_id, processed_by=request.processed_by)

        label = "approve_request" if approve else "reject_request"
        conf = self._ledger(lambda: self.ledger.process_request(caller, request.request_id, approve),
                            label, cancel=cancel, request_id=request.request_id, reviewer=caller)
        log_event(log, "request_approved" if approve else "request_rejected",
                  request_id=request.request_id, reviewer=caller, tx_hash=conf.tx_hash)
        return self.get(request.request_id)

    def approve(self, request_id: int, caller: str, cancel: Optional[threading.Event] = None) -> AccessRequest:
        return self._process(request_id, caller, True, cancel=cancel)

    def reject(self, request_id: int, caller: str, cancel: Optional[threading.Event] = None) -> AccessRequest:
        return self._process(request_id, caller, False, cancel=cancel)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    def pending_for(self, reviewer: str) -> List[AccessRequest]:
        reviewer = normalize_identity(reviewer)
        ids = self._ledger(lambda: self.ledger.get_pending_requests(reviewer), "get_pending_requests",
                           reviewer=reviewer)
        return [self.get(i) for i in ids]

    def submitted_by(self, requester: str) -> List[AccessRequest]:
        requester = normalize_identity(requester)
        ids = self._ledger(lambda: self.ledger.get_requests_by_requester(requester),
                           "get_requests_by_requester", requester=requester)
        return [self.get(i) for i in ids]
