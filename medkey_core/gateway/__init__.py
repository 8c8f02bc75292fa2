# medkey_core/gateway/__init__.py

from .base import StorageGateway
from .providers.memory_provider import InMemoryGateway
from .providers.http_provider import HTTPGateway
import os


def load_gateway_provider(config: dict | None = None) -> StorageGateway:
    """
    Factory resolver for the content-addressed storage collaborator.

    - memory (default)
    - http: IPFS pinning service + read gateway
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("MEDKEY_GATEWAY_PROVIDER", "memory")

    if provider == "memory":
        return InMemoryGateway()

    if provider == "http":
        return HTTPGateway(
            upload_url=config.get("upload_url") or os.getenv("MEDKEY_GATEWAY_UPLOAD_URL", "https://uploads.pinata.cloud/v3/files"),
            fetch_url=config.get("fetch_url") or os.getenv("MEDKEY_GATEWAY_FETCH_URL", "http://localhost:8080/ipfs"),
            token=config.get("token") or os.getenv("MEDKEY_GATEWAY_TOKEN"),
        )

    raise ValueError(f"Unknown gateway provider: {provider}")


__all__ = [
    "StorageGateway",
    "InMemoryGateway",
    "HTTPGateway",
    "load_gateway_provider",
]
