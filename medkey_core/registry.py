from __future__ import annotations
from typing import Callable, Optional
import threading
import time

from .errors import CollaboratorUnavailable, LedgerRejected, LedgerUnavailable, RegistrationNotConfirmed
from .ledger import Confirmation, Ledger
from .logger import get_logger, log_event
from .retry import RetryExhausted, RetryPolicy, retry_call
from .utils import fingerprint, normalize_identity

log = get_logger("medkey.registry")


def call_ledger(fn, policy: RetryPolicy, sleep, cancel=None, label="ledger", **context):
    """Run one ledger call under the retry policy; exhaustion becomes CollaboratorUnavailable."""
    try:
        return retry_call(fn, policy, retry_on=(LedgerUnavailable,), sleep=sleep, cancel=cancel, label=label)
    except RetryExhausted as e:
        raise CollaboratorUnavailable(f"ledger unreachable during {label}: {e.last_error}",
                                      operation=label, **context) from e


class PublicKeyRegistryClient:
    """
    Boundary adapter for the public-key half of the ledger.

    No cryptography and no caching: every read goes to the ledger, so
    staleness handling stays with the caller (see KeyConsistencyVerifier).
    """

    def __init__(self, ledger: Ledger, policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.ledger = ledger
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def get_public_key(self, identity: str) -> Optional[str]:
        ident = normalize_identity(identity)
        material = call_ledger(lambda: self.ledger.get_public_key(ident), self.policy, self.sleep,
                               label="get_public_key", identity=ident)
        if not material or material.strip() in ("", "0x"):
            return None
        return material.strip()

    def is_registered(self, identity: str) -> bool:
        ident = normalize_identity(identity)
        return call_ledger(lambda: self.ledger.is_registered(ident), self.policy, self.sleep,
                           label="is_registered", identity=ident)

    def register_public_key(self, identity: str, material: str,
                            cancel: Optional[threading.Event] = None) -> Confirmation:
        ident = normalize_identity(identity)
        try:
            conf = call_ledger(lambda: self.ledger.register_public_key(ident, material), self.policy,
                               self.sleep, cancel=cancel, label="register_public_key", identity=ident)
        except LedgerRejected as e:
            raise RegistrationNotConfirmed(f"registration reverted: {e}", identity=ident,
                                           tx_hash=e.tx_hash) from e
        if not conf.ok:
            raise RegistrationNotConfirmed("registration transaction failed", identity=ident,
                                           tx_hash=conf.tx_hash)
        log_event(log, "public_key_registered", identity=ident, fpr=fingerprint(material),
                  tx_hash=conf.tx_hash, block=conf.block_number)
        return conf
