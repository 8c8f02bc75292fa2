"""
medkey_core.crypto
------------------
Cryptographic primitives for the medkey protocol:

- RSA-2048 key pairs whose private half lives only inside a
  ``PrivateKeyHandle`` capability
- RSA-OAEP (SHA-256) wrapping of per-document content keys
- AES-256-GCM for document file and metadata bytes

Public keys travel as PEM ``SubjectPublicKeyInfo`` text, the same format
browser clients export, so material registered by one client imports in
any other.
"""

from __future__ import annotations
from typing import Optional, Tuple
import os

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    CONTENT_KEY_LENGTH, NONCE_LENGTH, PROBE_LENGTH,
    RSA_KEY_SIZE, RSA_PUBLIC_EXPONENT, WRAPPED_KEY_LENGTH,
)
from .errors import (
    ContentDecryptFailed, InvalidRecipientKey, MalformedCiphertext, UnwrapFailed,
)
from .utils import fingerprint, now_ts


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


# --------- private key capability ----------

class PrivateKeyHandle:
    """
    Opaque, non-extractable reference to one identity's private key.

    The handle can decrypt and report its public half; it has no accessor
    for private bytes and refuses pickling, so it cannot be serialized,
    logged or sent anywhere by accident. Copies share the same capability.
    """

    __slots__ = ("identity", "created_at", "_key", "_public_material")

    def __init__(self, identity: str, key: rsa.RSAPrivateKey, created_at: Optional[str] = None):
        self.identity = identity
        self.created_at = created_at or now_ts()
        self._key = key
        self._public_material = key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    @property
    def public_material(self) -> str:
        return self._public_material

    @property
    def fingerprint(self) -> str:
        return fingerprint(self._public_material)

    @property
    def key_size(self) -> int:
        return self._key.key_size

    def decrypt(self, ciphertext: bytes) -> bytes:
        return self._key.decrypt(ciphertext, _oaep())

    def __repr__(self) -> str:
        return f"PrivateKeyHandle(identity={self.identity!r}, fingerprint={self.fingerprint!r})"

    def __reduce_ex__(self, protocol):
        raise TypeError("PrivateKeyHandle cannot be serialized")

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


def generate_keypair(identity: str) -> PrivateKeyHandle:
    sk = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE)
    # wrapped immediately; the raw object never leaves this module
    return PrivateKeyHandle(identity, sk)


def seal_handle(handle: PrivateKeyHandle, passphrase: bytes) -> bytes:
    """
    Password-protected PKCS#8 for durable key stores.

    Only key store providers call this; the output is ciphertext under the
    store passphrase, never raw key bytes.
    """
    if not passphrase:
        raise ValueError("a keystore passphrase is required to persist private keys")
    return handle._key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase),
    )


def open_handle(identity: str, sealed: bytes, passphrase: bytes, created_at: Optional[str] = None) -> PrivateKeyHandle:
    sk = serialization.load_pem_private_key(sealed, password=passphrase)
    if not isinstance(sk, rsa.RSAPrivateKey):
        raise ValueError("stored key is not an RSA private key")
    return PrivateKeyHandle(identity, sk, created_at=created_at)


# --------- public material ----------

def load_public_material(material: str) -> rsa.RSAPublicKey:
    if not material or not material.strip():
        raise InvalidRecipientKey("public material is empty")
    try:
        pk = serialization.load_pem_public_key(material.strip().encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise InvalidRecipientKey(f"public material does not parse: {e}") from e
    if not isinstance(pk, rsa.RSAPublicKey):
        raise InvalidRecipientKey("public material is not an RSA key")
    if pk.key_size != RSA_KEY_SIZE:
        # wrapped keys are fixed at one 2048-bit modulus
        raise InvalidRecipientKey(f"RSA key must be {RSA_KEY_SIZE} bits, got {pk.key_size}")
    return pk


# --------- content key wrapping ----------

def generate_content_key() -> bytes:
    return os.urandom(CONTENT_KEY_LENGTH)


def wrap(content_key: bytes, recipient_public_material: str) -> bytes:
    pk = load_public_material(recipient_public_material)
    # OAEP is randomized: wrapping one key for N recipients yields N unrelated ciphertexts
    return pk.encrypt(content_key, _oaep())


def unwrap(ciphertext: bytes, handle: PrivateKeyHandle) -> bytes:
    expected = handle.key_size // 8
    if len(ciphertext) != expected:
        raise MalformedCiphertext(
            f"wrapped key is {len(ciphertext)} bytes, expected {expected}",
            identity=handle.identity,
        )
    try:
        return handle.decrypt(ciphertext)
    except ValueError as e:
        raise UnwrapFailed("wrapped key does not decrypt with this private key",
                           identity=handle.identity) from e


def check_wrapped_length(ciphertext: bytes) -> None:
    if len(ciphertext) != WRAPPED_KEY_LENGTH:
        raise MalformedCiphertext(
            f"wrapped key is {len(ciphertext)} bytes, expected {WRAPPED_KEY_LENGTH}"
        )


def round_trip_probe(public_material: str, handle: PrivateKeyHandle) -> bool:
    """True iff ``handle`` decrypts what ``public_material`` encrypts."""
    probe = os.urandom(PROBE_LENGTH)
    try:
        return unwrap(wrap(probe, public_material), handle) == probe
    except (InvalidRecipientKey, UnwrapFailed, MalformedCiphertext):
        # unusable registry material counts as a mismatch
        return False


class ContentKeyWrapper:
    """Injectable facade over the module-level wrap/unwrap functions."""

    def generate_content_key(self) -> bytes:
        return generate_content_key()

    def wrap(self, content_key: bytes, recipient_public_material: str) -> bytes:
        return wrap(content_key, recipient_public_material)

    def unwrap(self, ciphertext: bytes, handle: PrivateKeyHandle) -> bytes:
        return unwrap(ciphertext, handle)


# --------- AES-GCM ----------

def aead_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    aes = AESGCM(key)
    nonce = os.urandom(NONCE_LENGTH)
    ct = aes.encrypt(nonce, plaintext, aad)
    return nonce, ct


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    try:
        aes = AESGCM(key)
        return aes.decrypt(nonce, ciphertext, aad)
    except (InvalidTag, ValueError) as e:
        raise ContentDecryptFailed("content does not decrypt with the resolved key") from e
