import threading

import pytest

from medkey_core.crypto import ContentKeyWrapper, generate_keypair
from medkey_core.errors import (
    CollaboratorUnavailable, LedgerRejected, RegistrationNotConfirmed, UnwrapFailed,
)
from medkey_core.keypair import KeyPairManager
from medkey_core.keystore import InMemoryKeyStore
from medkey_core.ledger import Confirmation, InMemoryLedger
from medkey_core.registry import PublicKeyRegistryClient
from medkey_core.retry import RetryCancelled

from conftest import ALICE


@pytest.fixture
def registry(ledger, clock, retry_policy):
    return PublicKeyRegistryClient(ledger, policy=retry_policy, sleep=clock)


def _manager(ledger, clock, retry_policy, confirm_policy, keystore=None):
    registry = PublicKeyRegistryClient(ledger, policy=retry_policy, sleep=clock)
    return KeyPairManager(keystore or InMemoryKeyStore(), registry, confirm_policy=confirm_policy, sleep=clock)


# --- PublicKeyRegistryClient ---

def test_unregistered_identity_has_no_key(registry):
    assert registry.get_public_key(ALICE) is None
    assert not registry.is_registered(ALICE)


def test_zero_value_reads_as_absent(registry, ledger):
    ledger.public_keys[ALICE.lower()] = "0x"
    assert registry.get_public_key(ALICE) is None


def test_register_then_read(registry):
    material = generate_keypair(ALICE).public_material
    conf = registry.register_public_key(ALICE, material)
    assert conf.ok
    assert registry.get_public_key(ALICE.upper()) == material.strip()
    assert registry.is_registered(ALICE)


def test_transient_failures_are_retried(registry, ledger, clock):
    ledger.fail_next(2)
    assert registry.get_public_key(ALICE) is None
    assert clock.sleeps == [0.5, 1.0]


def test_exhausted_retries_surface_as_unavailable(registry, ledger):
    ledger.fail_next(3)
    with pytest.raises(CollaboratorUnavailable) as exc:
        registry.get_public_key(ALICE)
    assert exc.value.context["operation"] == "get_public_key"
    assert exc.value.context["identity"] == ALICE.lower()


def test_reverted_registration(registry, ledger, monkeypatch):
    def revert(identity, material):
        raise LedgerRejected("execution reverted", tx_hash="0xdead")

    monkeypatch.setattr(ledger, "register_public_key", revert)
    with pytest.raises(RegistrationNotConfirmed) as exc:
        registry.register_public_key(ALICE, "pem")
    assert exc.value.context["tx_hash"] == "0xdead"


def test_failed_receipt(registry, ledger, monkeypatch):
    monkeypatch.setattr(ledger, "register_public_key",
                        lambda identity, material: Confirmation("0xbeef", 7, status=0))
    with pytest.raises(RegistrationNotConfirmed):
        registry.register_public_key(ALICE, "pem")


# --- KeyPairManager ---

def test_generate_and_register(ledger, clock, retry_policy, confirm_policy):
    mgr = _manager(ledger, clock, retry_policy, confirm_policy)
    seen = []
    mgr.add_listener(seen.append)

    material = mgr.generate_and_register(ALICE)
    handle = mgr.keystore.get(ALICE)
    assert handle.public_material == material
    assert ledger.public_keys[ALICE.lower()] == material
    assert seen == [ALICE.lower()]
    assert clock.sleeps == []


def test_read_back_tolerates_propagation_lag(clock, retry_policy, confirm_policy):
    ledger = InMemoryLedger(propagation_lag=2)
    mgr = _manager(ledger, clock, retry_policy, confirm_policy)
    material = mgr.generate_and_register(ALICE)
    assert material == mgr.keystore.get(ALICE).public_material
    assert clock.sleeps == [3.0, 3.0]


def test_read_back_past_attempt_limit_is_not_confirmed(clock, retry_policy, confirm_policy):
    ledger = InMemoryLedger(propagation_lag=10)
    mgr = _manager(ledger, clock, retry_policy, confirm_policy)
    with pytest.raises(RegistrationNotConfirmed):
        mgr.generate_and_register(ALICE)
    assert clock.sleeps == [3.0, 3.0, 3.0]


def test_read_back_can_be_cancelled(clock, retry_policy, confirm_policy):
    ledger = InMemoryLedger(propagation_lag=2)
    mgr = _manager(ledger, clock, retry_policy, confirm_policy)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RetryCancelled):
        mgr.generate_and_register(ALICE, cancel=cancel)
    assert clock.sleeps == []


def test_regeneration_purges_legacy_entries(ledger, clock, retry_policy, confirm_policy):
    keystore = InMemoryKeyStore()
    old = generate_keypair(ALICE)
    keystore.put(f"patient:{ALICE}", old)
    keystore.put(f"provider:{ALICE}", old)

    mgr = _manager(ledger, clock, retry_policy, confirm_policy, keystore=keystore)
    mgr.generate_and_register(ALICE)
    assert keystore.identities() == [ALICE.lower()]


def test_regeneration_supersedes_previous_key(ledger, clock, retry_policy, confirm_policy):
    mgr = _manager(ledger, clock, retry_policy, confirm_policy)
    first = mgr.generate_and_register(ALICE)
    old_handle = mgr.keystore.get(ALICE)

    wrapper = ContentKeyWrapper()
    wrapped = wrapper.wrap(wrapper.generate_content_key(), first)

    second = mgr.generate_and_register(ALICE)
    assert second != first
    assert ledger.public_keys[ALICE.lower()] == second
    with pytest.raises(UnwrapFailed):
        wrapper.unwrap(wrapped, mgr.keystore.get(ALICE))
    # the dropped handle still works for what it wrapped, it just is not stored anymore
    assert wrapper.unwrap(wrapped, old_handle)
