from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging
import threading

from .constants import DIVERGENCE_NOTICE
from .crypto import round_trip_probe
from .errors import KeyDivergence
from .keypair import KeyPairManager
from .keystore import LocalKeyStore
from .logger import get_logger, log_event
from .registry import PublicKeyRegistryClient
from .utils import fingerprint, normalize_identity

log = get_logger("medkey.verifier")

Decider = Callable[[KeyDivergence], bool]


@dataclass
class VerificationResult:
    identity: str
    status: str  # cached | verified | provisioned | regenerated
    public_material: str
    notice: Optional[str] = None

    @property
    def regenerated(self) -> bool:
        return self.status == "regenerated"


class KeyConsistencyVerifier:
    """
    Checks that the local private key and the registered public key form a
    pair before anything relies on them.

    Staleness policy: the registry is always read live. A successful probe
    is remembered for the session keyed on the registry fingerprint, so the
    probe is skipped only while the registry still shows that exact key.
    Any regeneration clears the entry; a new process starts empty.

    On divergence the verifier regenerates automatically only when
    ``pending_state(identity)`` reports nothing that would be lost.
    Otherwise ``decide(error)`` is asked; without a decider, or on a
    False answer, KeyDivergence is raised.
    """

    def __init__(
        self,
        keystore: LocalKeyStore,
        registry: PublicKeyRegistryClient,
        keypairs: KeyPairManager,
        pending_state: Optional[Callable[[str], bool]] = None,
    ):
        self.keystore = keystore
        self.registry = registry
        self.keypairs = keypairs
        self.pending_state = pending_state
        self._verified: Dict[str, str] = {}
        self._lock = threading.Lock()
        keypairs.add_listener(self.invalidate)

    def invalidate(self, identity: Optional[str] = None) -> None:
        with self._lock:
            if identity is None:
                self._verified.clear()
            else:
                self._verified.pop(normalize_identity(identity), None)

    def is_cached(self, identity: str) -> bool:
        with self._lock:
            return normalize_identity(identity) in self._verified

    def _remember(self, identity: str, material: str) -> None:
        with self._lock:
            self._verified[identity] = fingerprint(material)

    def verify(self, identity: str, decide: Optional[Decider] = None) -> VerificationResult:
        ident = normalize_identity(identity)
        registered = self.registry.get_public_key(ident)
        handle = self.keystore.get(ident)

        if registered is None:
            # first-time provisioning (or a local key that never got registered)
            material = self.keypairs.generate_and_register(ident)
            self._remember(ident, material)
            log_event(log, "key_provisioned", identity=ident, had_local=handle is not None)
            return VerificationResult(ident, "provisioned", material)

        reg_fpr = fingerprint(registered)
        with self._lock:
            cached = self._verified.get(ident)
        if cached == reg_fpr and handle is not None:
            return VerificationResult(ident, "cached", registered)

        if handle is not None and round_trip_probe(registered, handle):
            self._remember(ident, registered)
            log_event(log, "key_verified", identity=ident, fpr=reg_fpr)
            return VerificationResult(ident, "verified", registered)

        self.invalidate(ident)
        divergence = KeyDivergence(
            "local private key does not match the registered public key",
            identity=ident,
            registered_fpr=reg_fpr,
            local_fpr=handle.fingerprint if handle is not None else None,
        )
        log_event(log, "key_divergence", level=logging.WARNING, identity=ident, registered_fpr=reg_fpr,
                  local_fpr=handle.fingerprint if handle is not None else None)

        pending = bool(self.pending_state(ident)) if self.pending_state else False
        if pending:
            accepted = bool(decide(divergence)) if decide is not None else False
            log_event(log, "divergence_decision", identity=ident,
                      decision="regenerate" if accepted else "abort")
            if not accepted:
                raise divergence

        material = self.keypairs.generate_and_register(ident)
        self._remember(ident, material)
        log_event(log, "key_regenerated", identity=ident, fpr=fingerprint(material), pending=pending)
        return VerificationResult(ident, "regenerated", material, notice=DIVERGENCE_NOTICE)
