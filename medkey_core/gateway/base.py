from __future__ import annotations


class StorageGateway:
    """
    Content-addressed, append-only blob store.

    ``upload`` returns an address that always fetches the same bytes; the
    protocol never mutates a blob after upload. Transport failures raise
    ``GatewayUnavailable``.
    """
    name: str = "base"

    def upload(self, data: bytes) -> str:
        raise NotImplementedError

    def fetch(self, content_address: str) -> bytes:
        raise NotImplementedError

    def healthz(self) -> dict:
        return {"status": "ok", "gateway": self.name}
