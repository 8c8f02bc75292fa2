# medkey_core/gateway/providers/http_provider.py
import requests
from medkey_core.errors import CollaboratorUnavailable, DocumentNotFound, GatewayUnavailable
from medkey_core.gateway.base import StorageGateway
from medkey_core.logger import get_logger
from medkey_core.utils import new_id

log = get_logger("medkey.gateway.http")


class HTTPGateway(StorageGateway):
    """
    IPFS pinning service + read gateway over HTTP.

    - upload: multipart POST to the pinning endpoint; the CID is read from
      ``data.cid`` (Pinata v3) or ``IpfsHash`` / ``cid`` (older APIs).
    - fetch: GET ``{fetch_url}/{cid}``.
    Supports a Bearer token for both directions.

    5xx, 429 and transport errors are retryable (GatewayUnavailable); any
    other non-2xx status or an unreadable upload response is terminal
    (CollaboratorUnavailable).
    """

    name = "http"

    def __init__(self, upload_url: str, fetch_url: str, token: str | None = None, timeout: float = 30):
        self.upload_url = upload_url
        self.fetch_url = fetch_url.rstrip("/")
        self.timeout = timeout
        self._token = token

    def set_token(self, token: str):
        self._token = token

    def _headers(self) -> dict:
        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    @staticmethod
    def _check(res, operation: str, **context) -> None:
        if res.status_code >= 500 or res.status_code == 429:
            raise GatewayUnavailable(f"{operation} failed: {res.status_code} {res.reason}")
        if res.status_code in (401, 403):
            raise CollaboratorUnavailable(f"storage gateway refused credentials during {operation}",
                                          operation=operation, reason="unauthorized",
                                          status=res.status_code, **context)
        if res.status_code >= 400:
            raise CollaboratorUnavailable(f"{operation} failed: {res.status_code} {res.reason}",
                                          operation=operation, reason="http_error",
                                          status=res.status_code, **context)

    def upload(self, data: bytes) -> str:
        files = {"file": (f"medkey-bundle-{new_id()}.json", data, "application/json")}
        log.debug(f"[HTTP UPLOAD] → {self.upload_url} | bytes={len(data)}")
        try:
            res = requests.post(self.upload_url, files=files, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise GatewayUnavailable(f"upload failed: {e}") from e

        self._check(res, "upload")

        try:
            body = res.json()
            cid = (body.get("data") or {}).get("cid") or body.get("IpfsHash") or body.get("cid")
        except (ValueError, AttributeError) as e:
            raise CollaboratorUnavailable(f"pinning service response is not usable JSON: {e}",
                                          operation="upload", reason="bad_response") from e
        if not cid:
            raise CollaboratorUnavailable(f"pinning service returned no CID: {body}",
                                          operation="upload", reason="bad_response")
        log.info(f"[HTTP UPLOAD] {res.status_code} cid={cid}")
        return cid

    def fetch(self, content_address: str) -> bytes:
        url = f"{self.fetch_url}/{content_address}"
        log.debug(f"[HTTP FETCH] → {url}")
        try:
            res = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise GatewayUnavailable(f"fetch failed: {e}") from e

        if res.status_code == 404:
            raise DocumentNotFound("content address not found", content_address=content_address)
        self._check(res, "fetch", content_address=content_address)
        return res.content
