# medkey_core/keystore/provider.py
from __future__ import annotations
from typing import List, Optional
from medkey_core.crypto import PrivateKeyHandle


class LocalKeyStore:
    """
    Identity-scoped custody of private key handles.

    Providers never hand out key bytes; ``get`` returns the handle or None
    so call sites can branch on presence without catching exceptions.
    """

    def put(self, identity: str, handle: PrivateKeyHandle) -> None: ...
    def get(self, identity: str) -> Optional[PrivateKeyHandle]: ...
    def delete(self, identity: str) -> None: ...
    def has(self, identity: str) -> bool: ...
    def identities(self) -> List[str]: ...
    def close(self) -> None: ...
