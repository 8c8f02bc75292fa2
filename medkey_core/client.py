from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from .codec import DecryptedDocument, DocumentCodec
from .config import Settings, load_settings
from .crypto import ContentKeyWrapper, PrivateKeyHandle
from .errors import KeyDivergence
from .gateway import StorageGateway, load_gateway_provider
from .grants import AccessGrantProtocol
from .keypair import KeyPairManager
from .keystore import LocalKeyStore, load_keystore_provider
from .ledger import AccessGrant, AccessRequest, DocumentRecord, Ledger, SharedRecord, load_ledger_provider
from .logger import get_logger
from .registry import PublicKeyRegistryClient
from .review import AccessRequestProtocol
from .retry import RetryPolicy
from .utils import fingerprint, normalize_identity
from .verifier import KeyConsistencyVerifier, VerificationResult

log = get_logger("medkey.client")


class MedKeyClient:
    """
    One user's view of the protocol.

    ``open_session`` must succeed before document operations: it runs the
    consistency check and hands back the verified private key handle. An
    identity counts as having something to lose on divergence when records
    are currently shared with it or review requests await its decision.
    """

    def __init__(
        self,
        keystore: LocalKeyStore,
        ledger: Ledger,
        gateway: StorageGateway,
        retry_policy: Optional[RetryPolicy] = None,
        confirm_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.keystore = keystore
        self.ledger = ledger
        self.gateway = gateway
        self.wrapper = ContentKeyWrapper()
        self.registry = PublicKeyRegistryClient(ledger, policy=retry_policy, sleep=sleep)
        self.keypairs = KeyPairManager(keystore, self.registry, confirm_policy=confirm_policy, sleep=sleep)
        self.grants = AccessGrantProtocol(ledger, self.registry, wrapper=self.wrapper,
                                          policy=retry_policy, sleep=sleep)
        self.requests = AccessRequestProtocol(ledger, self.registry, gateway, wrapper=self.wrapper,
                                              policy=retry_policy, sleep=sleep)
        self.verifier = KeyConsistencyVerifier(keystore, self.registry, self.keypairs,
                                               pending_state=self._has_pending_state)
        self.codec = DocumentCodec(self.grants, ledger, gateway, wrapper=self.wrapper,
                                   policy=retry_policy, sleep=sleep)
        self.last_verification: Optional[VerificationResult] = None

    def _has_pending_state(self, identity: str) -> bool:
        return bool(self.grants.shared_with(identity)) or bool(self.requests.pending_for(identity))

    def open_session(self, identity: str,
                     decide: Optional[Callable[[KeyDivergence], bool]] = None) -> PrivateKeyHandle:
        result = self.verifier.verify(identity, decide=decide)
        self.last_verification = result
        if result.notice:
            log.warning(f"[SESSION] {result.identity}: {result.notice}")
        handle = self.keystore.get(result.identity)
        if handle is None:
            raise KeyDivergence("no local private key after verification", identity=result.identity)
        return handle

    def _checked(self, handle: PrivateKeyHandle) -> PrivateKeyHandle:
        # cache hit after open_session, so this is cheap
        result = self.verifier.verify(handle.identity)
        if result.regenerated:
            self.last_verification = result
            log.warning(f"[SESSION] {result.identity}: {result.notice}")
            return self.keystore.get(result.identity)
        if handle.fingerprint != fingerprint(result.public_material):
            # a handle from before a regeneration must not wrap anything new
            raise KeyDivergence("private key handle was superseded; open a new session",
                                identity=result.identity, reason="stale_handle",
                                handle_fpr=handle.fingerprint,
                                registered_fpr=fingerprint(result.public_material))
        return handle

    def upload(self, handle: PrivateKeyHandle, document_id: str, file_bytes: bytes,
               metadata: Optional[Dict[str, Any]] = None) -> DocumentRecord:
        return self.codec.encrypt_and_upload(self._checked(handle), document_id, file_bytes, metadata)

    def share(self, handle: PrivateKeyHandle, recipient: str, document_id: str) -> AccessGrant:
        return self.grants.share(self._checked(handle), recipient, document_id)

    def revoke(self, handle: PrivateKeyHandle, recipient: str, document_id: str) -> bool:
        owner = normalize_identity(handle.identity)
        return self.grants.revoke(owner, recipient, document_id, caller=owner)

    def read(self, handle: PrivateKeyHandle, owner: str, document_id: str) -> DecryptedDocument:
        return self.codec.decrypt(document_id, owner, self._checked(handle))

    def shared_with(self, identity: str) -> List[SharedRecord]:
        return self.grants.shared_with(identity)

    # --- review requests ---
    def submit_request(self, handle: PrivateKeyHandle, file_bytes: bytes, reviewers: List[str],
                       metadata: Optional[Dict[str, Any]] = None, purpose: str = "") -> AccessRequest:
        return self.requests.submit(self._checked(handle), file_bytes, reviewers, metadata, purpose)

    def open_request(self, handle: PrivateKeyHandle, request_id: int) -> DecryptedDocument:
        return self.requests.open(request_id, self._checked(handle))

    def approve_request(self, handle: PrivateKeyHandle, request_id: int) -> AccessRequest:
        return self.requests.approve(request_id, self._checked(handle).identity)

    def reject_request(self, handle: PrivateKeyHandle, request_id: int) -> AccessRequest:
        return self.requests.reject(request_id, self._checked(handle).identity)

    def pending_requests(self, reviewer: str) -> List[AccessRequest]:
        return self.requests.pending_for(reviewer)

    def submitted_requests(self, requester: str) -> List[AccessRequest]:
        return self.requests.submitted_by(requester)

    def healthz(self) -> dict:
        return {"ledger": self.ledger.healthz(), "gateway": self.gateway.healthz()}

    def close(self) -> None:
        self.keystore.close()
        self.ledger.close()


def build_client(settings: Optional[Settings] = None, **overrides) -> MedKeyClient:
    """Wire a client from settings (environment by default)."""
    settings = settings or load_settings(overrides or None)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("medkey"):
            logging.getLogger(name).setLevel(settings.log_level.upper())
    return MedKeyClient(
        keystore=load_keystore_provider(settings.keystore_config()),
        ledger=load_ledger_provider(settings.ledger_config()),
        gateway=load_gateway_provider(settings.gateway_config()),
        retry_policy=settings.retry_policy,
        confirm_policy=settings.confirm_policy,
    )
