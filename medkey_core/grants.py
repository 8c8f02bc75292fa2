"""
medkey_core.grants
------------------
AccessGrantProtocol: who may resolve which document's content key.

Per (owner, recipient, document_id) tuple:

    UNGRANTED --grant()--> ACTIVE --revoke()--> REVOKED --grant()--> ACTIVE

- only the owner grants, revokes and stores wrapped keys
- a duplicate grant while ACTIVE raises AlreadyGranted
- revoking a tuple that is not ACTIVE is a no-op
- the owner's own tuple (owner == recipient) is ACTIVE once the owner has
  registered the document; it never appears in any shared index
- resolve_key distinguishes "not shared" (AccessDenied) from "shared but
  the wrapped key has not been delivered yet" (KeyNotStored)

The grant records, wrapped keys and the recipient's "shared with me" index
live on the ledger; this class enforces the state machine in front of it
and routes every ledger call through the shared retry policy.
"""

from __future__ import annotations
from typing import Callable, List, Optional
import threading
import time

from .crypto import ContentKeyWrapper, PrivateKeyHandle, check_wrapped_length
from .errors import (
    AccessDenied, AlreadyGranted, InvalidRecipientKey, KeyNotStored, LedgerRejected, MedKeyError,
)
from .ledger import AccessGrant, GrantState, Ledger, SharedRecord, WrappedKey
from .logger import get_logger, log_event
from .registry import PublicKeyRegistryClient, call_ledger
from .retry import RetryPolicy
from .utils import normalize_identity

log = get_logger("medkey.grants")


class AccessGrantProtocol:
    def __init__(
        self,
        ledger: Ledger,
        registry: PublicKeyRegistryClient,
        wrapper: Optional[ContentKeyWrapper] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.registry = registry
        self.wrapper = wrapper or ContentKeyWrapper()
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def _ledger(self, fn, label: str, cancel: Optional[threading.Event] = None, **context):
        try:
            return call_ledger(fn, self.policy, self.sleep, cancel=cancel, label=label, **context)
        except LedgerRejected as e:
            # our own checks passed, so the ledger's view differs from ours
            raise AccessDenied(f"ledger refused {label}: {e}", reason="ledger_rejected", **context) from e

    @staticmethod
    def _require_owner(caller: str, ctx: dict) -> None:
        if caller != ctx["owner"]:
            raise AccessDenied("only the document owner may change its access", reason="not_owner",
                               caller=caller, **ctx)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def state(self, owner: str, recipient: str, document_id: str) -> GrantState:
        owner, recipient = normalize_identity(owner), normalize_identity(recipient)
        ctx = dict(owner=owner, recipient=recipient, document_id=document_id)
        if owner == recipient:
            doc = self._ledger(lambda: self.ledger.get_document(owner, document_id), "get_document", **ctx)
            return GrantState.ACTIVE if doc is not None else GrantState.UNGRANTED
        grant = self._ledger(lambda: self.ledger.get_grant(owner, recipient, document_id), "get_grant", **ctx)
        if grant is None:
            return GrantState.UNGRANTED
        return grant.state

    def get_grant(self, owner: str, recipient: str, document_id: str) -> Optional[AccessGrant]:
        owner, recipient = normalize_identity(owner), normalize_identity(recipient)
        return self._ledger(lambda: self.ledger.get_grant(owner, recipient, document_id), "get_grant",
                            owner=owner, recipient=recipient, document_id=document_id)

    def shared_with(self, recipient: str) -> List[SharedRecord]:
        recipient = normalize_identity(recipient)
        return self._ledger(lambda: self.ledger.get_shared_records(recipient), "get_shared_records",
                            recipient=recipient)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def grant(self, owner: str, recipient: str, document_id: str, caller: str,
              cancel: Optional[threading.Event] = None) -> AccessGrant:
        owner, recipient, caller = map(normalize_identity, (owner, recipient, caller))
        ctx = dict(owner=owner, recipient=recipient, document_id=document_id)
        self._require_owner(caller, ctx)
        if recipient == owner:
            raise AccessDenied("owners already hold access to their own documents",
                               reason="self_grant", **ctx)
        if not self.registry.is_registered(recipient):
            raise AccessDenied("recipient is not a registered identity", reason="unknown_recipient", **ctx)
        if self.state(owner, recipient, document_id) is GrantState.ACTIVE:
            raise AlreadyGranted("access is already granted", **ctx)

        conf = self._ledger(lambda: self.ledger.grant_access(caller, owner, recipient, document_id),
                            "grant_access", cancel=cancel, **ctx)
        log_event(log, "access_granted", tx_hash=conf.tx_hash, **ctx)
        grant = self.get_grant(owner, recipient, document_id)
        return grant if grant is not None else AccessGrant(owner, recipient, document_id)

    def revoke(self, owner: str, recipient: str, document_id: str, caller: str,
               cancel: Optional[threading.Event] = None) -> bool:
        """Returns True if a grant was revoked, False for the no-op case."""
        owner, recipient, caller = map(normalize_identity, (owner, recipient, caller))
        ctx = dict(owner=owner, recipient=recipient, document_id=document_id)
        self._require_owner(caller, ctx)
        if recipient == owner or self.state(owner, recipient, document_id) is not GrantState.ACTIVE:
            log_event(log, "revoke_noop", **ctx)
            return False

        conf = self._ledger(lambda: self.ledger.revoke_access(caller, owner, recipient, document_id),
                            "revoke_access", cancel=cancel, **ctx)
        log_event(log, "access_revoked", tx_hash=conf.tx_hash, **ctx)
        return True

    def store_wrapped_key(self, owner: str, recipient: str, document_id: str, ciphertext: bytes,
                          caller: str, cancel: Optional[threading.Event] = None) -> WrappedKey:
        owner, recipient, caller = map(normalize_identity, (owner, recipient, caller))
        ctx = dict(owner=owner, recipient=recipient, document_id=document_id)
        self._require_owner(caller, ctx)
        check_wrapped_length(ciphertext)
        if self.state(owner, recipient, document_id) is not GrantState.ACTIVE:
            raise AccessDenied("wrapped keys can only be stored for an active grant",
                               reason="not_active", **ctx)

        conf = self._ledger(
            lambda: self.ledger.store_wrapped_key(caller, owner, recipient, document_id, ciphertext),
            "store_wrapped_key", cancel=cancel, **ctx,
        )
        log_event(log, "wrapped_key_stored", tx_hash=conf.tx_hash, **ctx)
        return WrappedKey(owner, recipient, document_id, bytes(ciphertext))

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def resolve_key(self, owner: str, recipient: str, document_id: str, handle: PrivateKeyHandle) -> bytes:
        owner, recipient = normalize_identity(owner), normalize_identity(recipient)
        ctx = dict(owner=owner, recipient=recipient, document_id=document_id)
        if normalize_identity(handle.identity) != recipient:
            raise AccessDenied("private key handle belongs to another identity",
                               reason="handle_mismatch", **ctx)
        if self.state(owner, recipient, document_id) is not GrantState.ACTIVE:
            raise AccessDenied("document is not shared with this recipient", reason="not_active", **ctx)

        ciphertext = self._ledger(lambda: self.ledger.get_wrapped_key(owner, recipient, document_id),
                                  "get_wrapped_key", **ctx)
        if not ciphertext:
            raise KeyNotStored("access is granted but the wrapped key has not been delivered", **ctx)

        try:
            return self.wrapper.unwrap(ciphertext, handle)
        except MedKeyError as e:
            # crypto failures are terminal; tag them with the tuple
            e.context.update(ctx)
            raise

    def share(self, owner_handle: PrivateKeyHandle, recipient: str, document_id: str,
              cancel: Optional[threading.Event] = None) -> AccessGrant:
        """
        Full share flow: recover the owner's content key, wrap it for the
        recipient's registered public key, grant, then deliver the wrapping.
        Re-sharing an already active tuple re-delivers the wrapped key.
        """
        owner = normalize_identity(owner_handle.identity)
        recipient = normalize_identity(recipient)
        ctx = dict(owner=owner, recipient=recipient, document_id=document_id)

        content_key = self.resolve_key(owner, owner, document_id, owner_handle)
        material = self.registry.get_public_key(recipient)
        if material is None:
            raise InvalidRecipientKey("recipient has no registered public key", **ctx)
        ciphertext = self.wrapper.wrap(content_key, material)
        check_wrapped_length(ciphertext)

        if self.state(owner, recipient, document_id) is GrantState.ACTIVE:
            grant = self.get_grant(owner, recipient, document_id)
        else:
            grant = self.grant(owner, recipient, document_id, caller=owner, cancel=cancel)
        self.store_wrapped_key(owner, recipient, document_id, ciphertext, caller=owner, cancel=cancel)
        return grant
