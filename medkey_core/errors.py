"""
medkey_core.errors
------------------
Error taxonomy for the key-exchange protocol.

Every protocol error carries a ``kind`` and the identifiers of the tuple it
concerns, so callers can decide whether to retry the outer user action
(re-request sharing, reconnect) rather than the cryptographic step.

Adapter-level failures (``CollaboratorError`` and subclasses) are raised by
ledger and gateway providers; the protocol layer retries them with bounded
backoff and reports exhaustion as a single ``CollaboratorUnavailable``.
"""

from __future__ import annotations
from typing import Any, Dict, Optional


class MedKeyError(Exception):
    kind: str = "MedKeyError"

    def __init__(self, message: str = "", **context: Any):
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(message or self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self), **self.context}


class InvalidRecipientKey(MedKeyError):
    kind = "InvalidRecipientKey"


class MalformedCiphertext(MedKeyError):
    kind = "MalformedCiphertext"


class UnwrapFailed(MedKeyError):
    kind = "UnwrapFailed"


class ContentDecryptFailed(MedKeyError):
    kind = "ContentDecryptFailed"


class AccessDenied(MedKeyError):
    kind = "AccessDenied"


class KeyNotStored(MedKeyError):
    kind = "KeyNotStored"


class AlreadyGranted(MedKeyError):
    kind = "AlreadyGranted"


class RegistrationNotConfirmed(MedKeyError):
    kind = "RegistrationNotConfirmed"


class KeyDivergence(MedKeyError):
    """
    Local private key and registered public key do not form a pair.

    Recovery means regenerating, which makes every key previously wrapped
    for this identity unreadable, so this is the one error that asks the
    caller for a decision instead of being handled automatically.
    """
    kind = "KeyDivergence"


class DocumentNotFound(MedKeyError):
    kind = "DocumentNotFound"


class CollaboratorUnavailable(MedKeyError):
    kind = "CollaboratorUnavailable"


# --------- adapter-level (retryable) ----------

class CollaboratorError(Exception):
    pass


class LedgerUnavailable(CollaboratorError):
    pass


class GatewayUnavailable(CollaboratorError):
    pass


class LedgerRejected(Exception):
    """The ledger executed and refused a write (revert). Not retryable."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)
