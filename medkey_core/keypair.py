"""
medkey_core.keypair
-------------------
KeyPairManager: the only code path that creates a key pair.

generate_and_register() always supersedes. The sequence is:

1. drop the identity's current handle and any legacy-generation entries
2. generate a fresh RSA pair, private half sealed in a PrivateKeyHandle
3. persist the handle in the LocalKeyStore
4. register the public half on the ledger and wait for confirmation
5. re-read the registry until it returns what was submitted
   (bounded attempts, fixed interval) or raise RegistrationNotConfirmed
6. prove the new pair with a wrap/unwrap probe

Superseding is destructive by nature: anything wrapped for the previous
public key can no longer be unwrapped.
"""

from __future__ import annotations
from typing import Callable, List, Optional, Sequence
import threading
import time

from .constants import DEFAULT_CONFIRM_ATTEMPTS, DEFAULT_CONFIRM_INTERVAL, LEGACY_KEY_PREFIXES
from .crypto import generate_keypair, round_trip_probe
from .errors import RegistrationNotConfirmed
from .keystore import LocalKeyStore
from .logger import get_logger, log_event
from .registry import PublicKeyRegistryClient
from .retry import RetryPolicy, poll_until
from .utils import fingerprint, normalize_identity, same_material

log = get_logger("medkey.keypair")


class KeyPairManager:
    def __init__(
        self,
        keystore: LocalKeyStore,
        registry: PublicKeyRegistryClient,
        confirm_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        legacy_prefixes: Sequence[str] = LEGACY_KEY_PREFIXES,
    ):
        self.keystore = keystore
        self.registry = registry
        self.confirm_policy = confirm_policy or RetryPolicy(
            attempts=DEFAULT_CONFIRM_ATTEMPTS, interval=DEFAULT_CONFIRM_INTERVAL
        )
        self.sleep = sleep
        self.legacy_prefixes = tuple(legacy_prefixes)
        self._listeners: List[Callable[[str], None]] = []

    def add_listener(self, fn: Callable[[str], None]) -> None:
        """``fn(identity)`` runs after every successful regeneration."""
        self._listeners.append(fn)

    def legacy_aliases(self, identity: str) -> List[str]:
        return [f"{prefix}:{identity}" for prefix in self.legacy_prefixes]

    def _discard_previous(self, identity: str) -> None:
        if self.keystore.has(identity):
            old = self.keystore.get(identity)
            log_event(log, "key_superseded", identity=identity,
                      old_fpr=old.fingerprint if old is not None else None)
            self.keystore.delete(identity)
        for alias in self.legacy_aliases(identity):
            if self.keystore.has(alias):
                log.info(f"[KEYPAIR] purging legacy key entry {alias}")
                self.keystore.delete(alias)

    def generate_and_register(self, identity: str, cancel: Optional[threading.Event] = None) -> str:
        ident = normalize_identity(identity)
        self._discard_previous(ident)

        handle = generate_keypair(ident)
        material = handle.public_material
        self.keystore.put(ident, handle)
        log_event(log, "key_generated", identity=ident, fpr=handle.fingerprint)

        self.registry.register_public_key(ident, material, cancel=cancel)

        converged, seen = poll_until(
            lambda: self.registry.get_public_key(ident),
            lambda current: same_material(current, material),
            self.confirm_policy,
            sleep=self.sleep,
            cancel=cancel,
            label=f"registry read-back for {ident}",
        )
        if not converged:
            raise RegistrationNotConfirmed(
                "registry did not return the submitted key within the allowed attempts",
                identity=ident,
                expected_fpr=handle.fingerprint,
                seen_fpr=fingerprint(seen) if seen else None,
            )

        if not round_trip_probe(seen, handle):
            # read-back matched, so this means a broken pair
            raise RegistrationNotConfirmed("new key pair failed round-trip validation", identity=ident)

        for fn in self._listeners:
            fn(ident)
        log_event(log, "key_registered", identity=ident, fpr=handle.fingerprint)
        return seen
