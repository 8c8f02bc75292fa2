from typing import Dict
from medkey_core.errors import DocumentNotFound, GatewayUnavailable
from medkey_core.gateway.base import StorageGateway
from medkey_core.utils import sha256


class InMemoryGateway(StorageGateway):
    name = "memory"

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self._failures = 0

    def fail_next(self, n: int = 1):
        self._failures = n

    def _check(self):
        if self._failures > 0:
            self._failures -= 1
            raise GatewayUnavailable("simulated gateway outage")

    def upload(self, data: bytes) -> str:
        self._check()
        address = "sha256-" + sha256(data)
        # same bytes, same address; an address is never rebound
        self.blobs.setdefault(address, bytes(data))
        return address

    def fetch(self, content_address: str) -> bytes:
        self._check()
        data = self.blobs.get(content_address)
        if data is None:
            raise DocumentNotFound("unknown content address", content_address=content_address)
        return data
