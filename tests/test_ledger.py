from types import SimpleNamespace

import pytest
import requests
from web3.exceptions import ContractLogicError

from medkey_core.codec import call_gateway
from medkey_core.errors import (
    CollaboratorUnavailable, DocumentNotFound, GatewayUnavailable, LedgerRejected, LedgerUnavailable,
)
from medkey_core.gateway import HTTPGateway
from medkey_core.ledger import InMemoryLedger, RequestStatus
from medkey_core.ledger.providers.web3_provider import Web3Ledger
from medkey_core.retry import RetryPolicy

OWNER = "0x" + "a" * 40
OTHER = "0x" + "b" * 40


# --- InMemoryLedger mirrors the contract's own checks ---

def test_memory_ledger_enforces_ownership():
    ledger = InMemoryLedger()
    ledger.register_document(OWNER, OWNER, "D1", "sha256-x", b"\x01" * 256)
    assert ledger.get_wrapped_key(OWNER, OWNER, "D1") == b"\x01" * 256
    with pytest.raises(LedgerRejected):
        ledger.register_document(OWNER, OWNER, "D1", "sha256-y", b"\x02" * 256)
    assert ledger.get_wrapped_key(OWNER, OWNER, "D1") == b"\x01" * 256
    with pytest.raises(LedgerRejected):
        ledger.register_document(OWNER, OWNER, "D2", "sha256-z", b"")
    assert ledger.get_document(OWNER, "D2") is None
    with pytest.raises(LedgerRejected):
        ledger.grant_access(OTHER, OWNER, OTHER, "D1")
    with pytest.raises(LedgerRejected):
        ledger.store_wrapped_key(OWNER, OWNER, OTHER, "D1", b"\x00" * 256)

    ledger.grant_access(OWNER, OWNER, OTHER, "D1")
    with pytest.raises(LedgerRejected):
        ledger.grant_access(OWNER, OWNER, OTHER, "D1")
    ledger.store_wrapped_key(OWNER, OWNER, OTHER, "D1", b"\x00" * 256)
    assert ledger.get_wrapped_key(OWNER, OTHER, "D1") == b"\x00" * 256

    ledger.revoke_access(OWNER, OWNER, OTHER, "D1")
    assert ledger.get_wrapped_key(OWNER, OTHER, "D1") is None
    assert ledger.get_shared_records(OTHER) == []


def test_memory_ledger_request_checks():
    ledger = InMemoryLedger()
    with pytest.raises(LedgerRejected):
        ledger.submit_request(OWNER, "bafy", "b1", "", [OWNER], [b"k" * 256])
    with pytest.raises(LedgerRejected):
        ledger.submit_request(OWNER, "bafy", "b1", "", [OTHER], [])

    conf, rid = ledger.submit_request(OWNER, "bafy", "b1", "", [OTHER], [b"k" * 256])
    assert conf.ok and rid == 1
    with pytest.raises(LedgerRejected):
        ledger.process_request(OWNER, rid, True)
    ledger.process_request(OTHER, rid, False)
    with pytest.raises(LedgerRejected):
        ledger.process_request(OTHER, rid, True)
    assert ledger.get_pending_requests(OTHER) == []
    assert ledger.get_requests_by_requester(OWNER) == [rid]


def test_memory_ledger_propagation_lag():
    ledger = InMemoryLedger(propagation_lag=1)
    ledger.register_public_key(OWNER, "pem-1")
    assert ledger.get_public_key(OWNER) is None
    assert ledger.get_public_key(OWNER) == "pem-1"


def test_memory_ledger_simulated_outage():
    ledger = InMemoryLedger()
    ledger.fail_next(1, methods=["get_grant"])
    assert ledger.is_registered(OWNER) is False
    with pytest.raises(LedgerUnavailable):
        ledger.get_grant(OWNER, OTHER, "D1")
    assert ledger.get_grant(OWNER, OTHER, "D1") is None


# --- Web3Ledger error mapping, against a stubbed contract ---

def _stub(**results):
    def function(name):
        def build(*args):
            def call():
                value = results[name]
                if isinstance(value, Exception):
                    raise value
                return value
            return SimpleNamespace(call=call)
        return build

    return SimpleNamespace(functions=SimpleNamespace(**{n: function(n) for n in results}))


@pytest.fixture
def web3_ledger():
    return Web3Ledger("http://localhost:8545", "0x" + "c" * 40, abi=[])


def test_web3_reads(web3_ledger):
    web3_ledger.contract = _stub(
        getPublicKey="",
        userExists=True,
        getAccess=(True, False, 1700000000),
        getSharedRecords=([OWNER], ["D1"], [1700000000]),
        getEncryptedKey=b"",
    )
    assert web3_ledger.get_public_key(OTHER) is None
    assert web3_ledger.is_registered(OTHER) is True
    grant = web3_ledger.get_grant(OWNER, OTHER, "D1")
    assert grant.granted_at == "2023-11-14T22:13:20Z"
    assert not grant.revoked
    assert [(r.owner, r.document_id) for r in web3_ledger.get_shared_records(OTHER)] == [(OWNER, "D1")]
    assert web3_ledger.get_wrapped_key(OWNER, OTHER, "D1") is None

    web3_ledger.contract = _stub(getEncryptedKey="0x" + "ab" * 256)
    assert web3_ledger.get_wrapped_key(OWNER, OTHER, "D1") == b"\xab" * 256


def test_web3_request_reads(web3_ledger):
    zero = "0x" + "0" * 40
    web3_ledger.contract = _stub(
        getRequest=(OWNER, [OTHER], "bafyreq", "b1", "role upgrade", 1700000000, 2, OTHER, 1700000000),
        getPendingRequestsByReviewer=[3, 5],
        getEncryptedKeyForReviewer=b"\xcd" * 256,
    )
    req = web3_ledger.get_request(3)
    assert req.requester == OWNER and req.reviewers == [OTHER]
    assert req.status is RequestStatus.REJECTED
    assert req.processed_by == OTHER
    assert req.processed_at == "2023-11-14T22:13:20Z"
    assert web3_ledger.get_pending_requests(OTHER) == [3, 5]
    assert web3_ledger.get_request_key(3, OTHER) == b"\xcd" * 256

    web3_ledger.contract = _stub(getRequest=(zero, [], "", "", "", 0, 0, zero, 0))
    assert web3_ledger.get_request(9) is None


def test_web3_errors_are_classified(web3_ledger):
    web3_ledger.contract = _stub(
        getPublicKey=requests.exceptions.ConnectionError("refused"),
        getEncryptedKey=ContractLogicError("execution reverted: no access"),
    )
    with pytest.raises(LedgerUnavailable):
        web3_ledger.get_public_key(OWNER)
    with pytest.raises(LedgerRejected):
        web3_ledger.get_wrapped_key(OWNER, OTHER, "D1")


# --- HTTPGateway ---

class FakeResponse:
    def __init__(self, status_code=200, body=None, content=b""):
        self.status_code = status_code
        self.reason = "reason"
        self._body = body or {}
        self.content = content

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code}")


def test_http_gateway_upload_and_fetch(monkeypatch):
    seen = {}

    def fake_post(url, files=None, headers=None, timeout=None):
        seen["url"], seen["headers"] = url, headers
        return FakeResponse(body={"data": {"cid": "bafy123"}})

    def fake_get(url, headers=None, timeout=None):
        seen["get"] = url
        return FakeResponse(content=b"bundle")

    monkeypatch.setattr(requests, "post", fake_post)
    monkeypatch.setattr(requests, "get", fake_get)

    gw = HTTPGateway("https://pin.example/v3/files", "https://gw.example/ipfs/", token="jwt")
    assert gw.upload(b"bundle") == "bafy123"
    assert seen["headers"]["Authorization"] == "Bearer jwt"
    assert gw.fetch("bafy123") == b"bundle"
    assert seen["get"] == "https://gw.example/ipfs/bafy123"


def test_http_gateway_errors(monkeypatch):
    gw = HTTPGateway("https://pin.example/v3/files", "https://gw.example/ipfs")

    monkeypatch.setattr(requests, "get", lambda url, headers=None, timeout=None: FakeResponse(404))
    with pytest.raises(DocumentNotFound):
        gw.fetch("bafy404")

    monkeypatch.setattr(requests, "get", lambda url, headers=None, timeout=None: FakeResponse(503))
    with pytest.raises(GatewayUnavailable):
        gw.fetch("bafy503")

    def refused(*a, **kw):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", refused)
    with pytest.raises(GatewayUnavailable):
        gw.upload(b"bundle")


@pytest.mark.parametrize("status, reason", [(401, "unauthorized"), (403, "unauthorized"), (400, "http_error"),
                                            (413, "http_error")])
def test_http_gateway_terminal_statuses(monkeypatch, status, reason):
    gw = HTTPGateway("https://pin.example/v3/files", "https://gw.example/ipfs")
    monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(status))
    monkeypatch.setattr(requests, "get", lambda *a, **kw: FakeResponse(status))

    with pytest.raises(CollaboratorUnavailable) as exc:
        gw.upload(b"bundle")
    assert exc.value.context == {"operation": "upload", "reason": reason, "status": status}

    with pytest.raises(CollaboratorUnavailable) as exc:
        gw.fetch("bafy123")
    assert exc.value.context["reason"] == reason
    assert exc.value.context["content_address"] == "bafy123"


@pytest.mark.parametrize("body", [ValueError("Expecting value"), {"data": {}}, ["not", "an", "object"]])
def test_http_gateway_unusable_upload_response(monkeypatch, body):
    gw = HTTPGateway("https://pin.example/v3/files", "https://gw.example/ipfs")
    monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(body=body))

    with pytest.raises(CollaboratorUnavailable) as exc:
        gw.upload(b"bundle")
    assert exc.value.context["reason"] == "bad_response"


def test_terminal_gateway_errors_are_not_retried(clock):
    calls = []

    def refuse():
        calls.append(1)
        raise CollaboratorUnavailable("storage gateway refused credentials", reason="unauthorized")

    with pytest.raises(CollaboratorUnavailable):
        call_gateway(refuse, RetryPolicy(attempts=3, interval=0.5), clock, label="upload")
    assert calls == [1]
    assert clock.sleeps == []
