"""
MedKey Core Package
===================
Multi-party key exchange for encrypted medical documents.

Provides:
- RSA-OAEP key pairs held as non-extractable handles, with a durable
  local key store (SQLite default)
- Public-key registry client and access-grant protocol over a ledger
  (in-memory or web3 contract)
- AES-GCM document bundles on a content-addressed gateway (in-memory or
  IPFS over HTTP)
- A consistency check between the local private key and the registered
  public key
"""

from .client import MedKeyClient, build_client
from .config import Settings, load_settings

__all__ = ["MedKeyClient", "build_client", "Settings", "load_settings"]
