import json
import os

import pytest

from medkey_core.codec import open_bundle, seal_bundle
from medkey_core.errors import (
    AccessDenied, CollaboratorUnavailable, ContentDecryptFailed, DocumentNotFound,
)
from medkey_core.utils import b64d, b64e

from conftest import ALICE, BOB


@pytest.fixture
def alice(new_client):
    client = new_client()
    return client, client.open_session(ALICE)


def test_bundle_roundtrip():
    key = os.urandom(32)
    blob = seal_bundle(key, "D1", b"\x00\x01scan", {"mime": "application/dicom"})
    assert b"scan" not in blob
    assert json.loads(blob)["v"] == 1
    assert open_bundle(key, "D1", blob) == (b"\x00\x01scan", {"mime": "application/dicom"})


@pytest.mark.parametrize("mutate", [
    lambda b: b"not json at all",
    lambda b: json.dumps(dict(json.loads(b), v=2)).encode(),
    lambda b: json.dumps({k: v for k, v in json.loads(b).items() if k != "metadata"}).encode(),
])
def test_malformed_bundles(mutate):
    key = os.urandom(32)
    blob = seal_bundle(key, "D1", b"scan", {})
    with pytest.raises(ContentDecryptFailed):
        open_bundle(key, "D1", mutate(blob))


def test_bundle_is_bound_to_its_document():
    key = os.urandom(32)
    blob = seal_bundle(key, "D1", b"scan", {})
    with pytest.raises(ContentDecryptFailed):
        open_bundle(key, "D2", blob)

    # relabelling the bundle does not help: the parts authenticate the id
    relabelled = json.dumps(dict(json.loads(blob), document_id="D2")).encode()
    with pytest.raises(ContentDecryptFailed):
        open_bundle(key, "D2", relabelled)


def test_upload_and_owner_read(alice, ledger, gateway):
    client, handle = alice
    record = client.upload(handle, "D1", b"MRI report", {"modality": "MRI"})

    assert ledger.documents[(ALICE.lower(), "D1")].content_address == record.content_address
    assert b"MRI report" not in gateway.blobs[record.content_address]

    doc = client.read(handle, ALICE, "D1")
    assert doc.file == b"MRI report"
    assert doc.metadata == {"modality": "MRI", "owner": ALICE.lower()}
    assert doc.content_address == record.content_address


def test_recipient_read_after_share(alice, new_client):
    client, handle = alice
    client.upload(handle, "D1", b"MRI report", {"modality": "MRI"})

    bob = new_client()
    b = bob.open_session(BOB)
    with pytest.raises(AccessDenied):
        bob.read(b, ALICE, "D1")

    client.share(handle, BOB, "D1")
    doc = bob.read(b, ALICE, "D1")
    assert doc.file == b"MRI report"
    assert doc.owner == ALICE.lower()


def test_tampered_bundle_is_content_failure(alice, gateway):
    client, handle = alice
    record = client.upload(handle, "D1", b"MRI report")

    bundle = json.loads(gateway.blobs[record.content_address])
    ct = bytearray(b64d(bundle["file"]["ciphertext"]))
    ct[0] ^= 0xFF
    bundle["file"]["ciphertext"] = b64e(bytes(ct))
    gateway.blobs[record.content_address] = json.dumps(bundle).encode()

    with pytest.raises(ContentDecryptFailed) as exc:
        client.read(handle, ALICE, "D1")
    assert exc.value.context["document_id"] == "D1"


def test_missing_blob(alice, gateway):
    client, handle = alice
    client.upload(handle, "D1", b"MRI report")
    gateway.blobs.clear()
    with pytest.raises(DocumentNotFound):
        client.read(handle, ALICE, "D1")


def test_unknown_document_is_not_readable(alice):
    client, handle = alice
    with pytest.raises(AccessDenied):
        client.read(handle, ALICE, "never-uploaded")


def test_document_ids_are_not_reused(alice):
    client, handle = alice
    client.upload(handle, "D1", b"v1")
    with pytest.raises(AccessDenied) as exc:
        client.upload(handle, "D1", b"v2")
    assert exc.value.context["reason"] == "document_exists"
    assert client.read(handle, ALICE, "D1").file == b"v1"


def test_gateway_outages(alice, gateway, clock):
    client, handle = alice
    gateway.fail_next(2)
    client.upload(handle, "D1", b"MRI report")
    assert clock.sleeps[-2:] == [0.5, 1.0]

    gateway.fail_next(3)
    with pytest.raises(CollaboratorUnavailable) as exc:
        client.read(handle, ALICE, "D1")
    assert exc.value.context["operation"] == "fetch"


def test_failed_registration_leaves_no_keyless_document(alice, ledger):
    client, handle = alice
    ledger.fail_next(3, methods=["register_document"])
    with pytest.raises(CollaboratorUnavailable) as exc:
        client.upload(handle, "D1", b"biopsy")
    assert exc.value.context["operation"] == "register_document"
    assert ledger.get_document(ALICE, "D1") is None
    assert ledger.get_wrapped_key(ALICE, ALICE, "D1") is None

    # the id is still free, and once registered the owner key is there too
    client.upload(handle, "D1", b"biopsy")
    assert ledger.get_wrapped_key(ALICE, ALICE, "D1") is not None
    assert client.read(handle, ALICE, "D1").file == b"biopsy"
    assert "store_wrapped_key" not in ledger.calls
