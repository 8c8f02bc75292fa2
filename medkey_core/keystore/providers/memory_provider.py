from typing import Optional
from medkey_core.crypto import PrivateKeyHandle
from medkey_core.keystore.provider import LocalKeyStore
from medkey_core.utils import normalize_identity


class InMemoryKeyStore(LocalKeyStore):
    def __init__(self):
        self.keys = {}

    def put(self, identity: str, handle: PrivateKeyHandle):
        self.keys[normalize_identity(identity)] = handle

    def get(self, identity: str) -> Optional[PrivateKeyHandle]:
        return self.keys.get(normalize_identity(identity))

    def delete(self, identity: str):
        self.keys.pop(normalize_identity(identity), None)

    def has(self, identity: str) -> bool:
        return normalize_identity(identity) in self.keys

    def identities(self):
        return sorted(self.keys)

    def close(self):
        return
