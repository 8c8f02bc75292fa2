import logging

import pytest

from medkey_core import build_client, load_settings
from medkey_core.gateway import HTTPGateway, InMemoryGateway, load_gateway_provider
from medkey_core.keystore import InMemoryKeyStore
from medkey_core.ledger import InMemoryLedger, load_ledger_provider
from medkey_core.logger import get_logger, log_event

from conftest import ALICE

# CMD Line Usage: pytest -v -s --log-cli-level=DEBUG tests/test_config.py


def test_settings_defaults(monkeypatch):
    for name in ("MEDKEY_KEYSTORE_PROVIDER", "MEDKEY_RETRY_ATTEMPTS", "MEDKEY_LEDGER_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    s = load_settings()
    assert s.keystore_provider == "sqlite"
    assert s.ledger_provider == "memory"
    assert s.retry_policy.attempts == 3
    assert s.confirm_policy.interval == 3.0


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("MEDKEY_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("MEDKEY_RETRY_INTERVAL", "0.25")
    monkeypatch.setenv("MEDKEY_GATEWAY_TOKEN", "jwt")
    s = load_settings()
    assert s.retry_attempts == 5
    assert s.retry_interval == 0.25
    assert s.gateway_token == "jwt"
    assert list(s.retry_policy.delays()) == [0.25, 0.5, 1.0, 2.0]


def test_overrides_win_over_environment(monkeypatch):
    monkeypatch.setenv("MEDKEY_KEYSTORE_PROVIDER", "sqlite")
    s = load_settings({"keystore_provider": "memory"})
    assert s.keystore_provider == "memory"
    assert s.keystore_config()["provider"] == "memory"

    with pytest.raises(ValueError):
        load_settings({"no_such_setting": 1})


def test_provider_factories(monkeypatch):
    monkeypatch.delenv("MEDKEY_LEDGER_PROVIDER", raising=False)
    monkeypatch.delenv("MEDKEY_GATEWAY_PROVIDER", raising=False)
    assert isinstance(load_ledger_provider(), InMemoryLedger)
    assert isinstance(load_gateway_provider(), InMemoryGateway)

    monkeypatch.setenv("MEDKEY_GATEWAY_PROVIDER", "http")
    assert isinstance(load_gateway_provider(), HTTPGateway)

    with pytest.raises(ValueError):
        load_ledger_provider({"provider": "web3"})
    with pytest.raises(ValueError):
        load_ledger_provider({"provider": "postgres"})


def test_build_client_end_to_end(monkeypatch):
    monkeypatch.delenv("MEDKEY_LEDGER_PROVIDER", raising=False)
    monkeypatch.delenv("MEDKEY_GATEWAY_PROVIDER", raising=False)
    client = build_client(keystore_provider="memory")
    assert isinstance(client.keystore, InMemoryKeyStore)

    handle = client.open_session(ALICE)
    client.upload(handle, "D1", b"vaccination record")
    assert client.read(handle, ALICE, "D1").file == b"vaccination record"
    assert client.healthz() == {
        "ledger": {"status": "ok", "ledger": "memory"},
        "gateway": {"status": "ok", "gateway": "memory"},
    }
    client.close()


def test_log_event_is_structured(caplog):
    log = get_logger("medkey.test")
    with caplog.at_level(logging.INFO):
        log_event(log, "access_granted", owner="0xa", recipient="0xb", tx_hash=None)
    assert '"event":"access_granted"' in caplog.text
    assert '"owner":"0xa"' in caplog.text
    assert "tx_hash" not in caplog.text


def test_key_material_stays_out_of_logs(new_client, caplog):
    client = new_client()
    with caplog.at_level(logging.DEBUG):
        handle = client.open_session(ALICE)
        client.upload(handle, "D1", b"vaccination record")
    assert "key_provisioned" in caplog.text
    assert "BEGIN" not in caplog.text
    assert handle.fingerprint in caplog.text
