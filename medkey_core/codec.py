"""
medkey_core.codec
-----------------
DocumentCodec: sealing and opening encrypted document bundles.

A bundle is one JSON blob in the storage collaborator:

    {"v": 1, "document_id": "...",
     "file":     {"nonce": b64, "ciphertext": b64},
     "metadata": {"nonce": b64, "ciphertext": b64}}

Both parts are AES-256-GCM under the document's content key, with the
document id and part name as associated data, so a part copied into
another bundle fails authentication. Any failure at this layer is
ContentDecryptFailed, which tells "right key, bad payload" apart from the
asymmetric layer's UnwrapFailed ("wrong key delivered").
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
import json
import threading
import time

from .constants import BUNDLE_VERSION
from .crypto import ContentKeyWrapper, PrivateKeyHandle, aead_decrypt, aead_encrypt, check_wrapped_length
from .errors import (
    AccessDenied, CollaboratorUnavailable, ContentDecryptFailed, DocumentNotFound,
    GatewayUnavailable, LedgerRejected,
)
from .gateway import StorageGateway
from .grants import AccessGrantProtocol
from .ledger import DocumentRecord, Ledger
from .logger import get_logger, log_event
from .registry import call_ledger
from .retry import RetryExhausted, RetryPolicy, retry_call
from .utils import b64d, b64e, canonical_json, normalize_identity

log = get_logger("medkey.codec")


@dataclass
class DecryptedDocument:
    document_id: str
    owner: str
    content_address: str
    file: bytes
    metadata: Dict[str, Any] = field(default_factory=dict)


def call_gateway(fn, policy: RetryPolicy, sleep, cancel=None, label="gateway", **context):
    """Run one storage call under the retry policy; exhaustion becomes CollaboratorUnavailable."""
    try:
        return retry_call(fn, policy, retry_on=(GatewayUnavailable,), sleep=sleep, cancel=cancel, label=label)
    except RetryExhausted as e:
        raise CollaboratorUnavailable(f"storage gateway unreachable during {label}: {e.last_error}",
                                      operation=label, **context) from e


def _aad(document_id: str, part: str) -> bytes:
    return canonical_json({"document_id": document_id, "part": part, "v": BUNDLE_VERSION})


def seal_bundle(content_key: bytes, document_id: str, file_bytes: bytes, metadata: Dict[str, Any]) -> bytes:
    parts = {}
    for part, plaintext in (("file", file_bytes), ("metadata", canonical_json(metadata))):
        nonce, ct = aead_encrypt(content_key, plaintext, aad=_aad(document_id, part))
        parts[part] = {"nonce": b64e(nonce), "ciphertext": b64e(ct)}
    return canonical_json({"v": BUNDLE_VERSION, "document_id": document_id, **parts})


def open_bundle(content_key: bytes, document_id: str, blob: bytes):
    try:
        bundle = json.loads(blob.decode("utf-8"))
        if bundle.get("v") != BUNDLE_VERSION:
            raise ValueError(f"unsupported bundle version {bundle.get('v')!r}")
        if bundle.get("document_id") != document_id:
            raise ValueError("bundle belongs to another document")
        sealed = {part: (b64d(bundle[part]["nonce"]), b64d(bundle[part]["ciphertext"]))
                  for part in ("file", "metadata")}
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise ContentDecryptFailed(f"malformed document bundle: {e}", document_id=document_id) from e

    try:
        file_bytes = aead_decrypt(content_key, *sealed["file"], aad=_aad(document_id, "file"))
        meta_bytes = aead_decrypt(content_key, *sealed["metadata"], aad=_aad(document_id, "metadata"))
    except ContentDecryptFailed as e:
        e.context["document_id"] = document_id
        raise
    try:
        metadata = json.loads(meta_bytes.decode("utf-8"))
    except ValueError as e:
        raise ContentDecryptFailed("metadata is not valid JSON", document_id=document_id) from e
    return file_bytes, metadata


class DocumentCodec:
    def __init__(
        self,
        grants: AccessGrantProtocol,
        ledger: Ledger,
        gateway: StorageGateway,
        wrapper: Optional[ContentKeyWrapper] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.grants = grants
        self.ledger = ledger
        self.gateway = gateway
        self.wrapper = wrapper or ContentKeyWrapper()
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def _gateway(self, fn, label: str, cancel: Optional[threading.Event] = None, **context):
        return call_gateway(fn, self.policy, self.sleep, cancel=cancel, label=label, **context)

    def _document(self, owner: str, document_id: str) -> Optional[DocumentRecord]:
        return call_ledger(lambda: self.ledger.get_document(owner, document_id), self.policy, self.sleep,
                           label="get_document", owner=owner, document_id=document_id)

    def decrypt(self, document_id: str, owner: str, handle: PrivateKeyHandle) -> DecryptedDocument:
        owner = normalize_identity(owner)
        caller = normalize_identity(handle.identity)

        content_key = self.grants.resolve_key(owner, caller, document_id, handle)

        record = self._document(owner, document_id)
        if record is None:
            raise DocumentNotFound("document is not registered", owner=owner, document_id=document_id)

        blob = self._gateway(lambda: self.gateway.fetch(record.content_address), "fetch",
                             owner=owner, document_id=document_id)
        file_bytes, metadata = open_bundle(content_key, document_id, blob)
        log_event(log, "document_decrypted", owner=owner, recipient=caller, document_id=document_id)
        return DecryptedDocument(document_id, owner, record.content_address, file_bytes, metadata)

    def encrypt_and_upload(self, handle: PrivateKeyHandle, document_id: str, file_bytes: bytes,
                           metadata: Optional[Dict[str, Any]] = None,
                           cancel: Optional[threading.Event] = None) -> DocumentRecord:
        """
        Seal a new document for its owner. The owner's wrapped copy of the
        fresh content key is registered in the same ledger write as the
        document, so a registered document always has a resolvable key.
        """
        owner = normalize_identity(handle.identity)
        ctx = dict(owner=owner, document_id=document_id)
        if self._document(owner, document_id) is not None:
            raise AccessDenied("document id already in use", reason="document_exists", **ctx)

        content_key = self.wrapper.generate_content_key()
        wrapped = self.wrapper.wrap(content_key, handle.public_material)
        check_wrapped_length(wrapped)
        blob = seal_bundle(content_key, document_id, file_bytes, dict(metadata or {}, owner=owner))
        address = self._gateway(lambda: self.gateway.upload(blob), "upload", cancel=cancel, **ctx)

        try:
            call_ledger(lambda: self.ledger.register_document(owner, owner, document_id, address, wrapped),
                        self.policy, self.sleep, cancel=cancel, label="register_document", **ctx)
        except LedgerRejected as e:
            raise AccessDenied(f"ledger refused register_document: {e}", reason="ledger_rejected", **ctx) from e

        log_event(log, "document_uploaded", content_address=address, **ctx)
        return DocumentRecord(owner, document_id, address)
