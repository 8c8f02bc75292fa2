# medkey_core/ledger/providers/web3_provider.py
from __future__ import annotations
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
import json

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from medkey_core.errors import LedgerRejected, LedgerUnavailable
from medkey_core.ledger.base import Ledger
from medkey_core.ledger.models import (
    AccessGrant, AccessRequest, Confirmation, DocumentRecord, RequestStatus, SharedRecord,
)
from medkey_core.logger import get_logger
from medkey_core.utils import from_hex, normalize_identity

log = get_logger("medkey.ledger.web3")

_TRANSIENT = (requests.exceptions.RequestException, TimeExhausted, ConnectionError, TimeoutError)

# contract enum order
_STATUS = (RequestStatus.PENDING, RequestStatus.APPROVED, RequestStatus.REJECTED)


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Web3Ledger(Ledger):
    """
    Ledger adapter over the records access-control contract.

    Expected contract surface:
      userExists(address) -> bool
      getPublicKey(address) -> string
      registerPublicKey(string)
      registerRecord(address owner, string recordId, string cid, bytes ownerKey)
      getMedicalRecord(address owner, string recordId) -> (string cid, uint256 timestamp)
      grantAccess(address owner, address recipient, string recordId)
      revokeAccess(address owner, address recipient, string recordId)
      getAccess(address owner, address recipient, string recordId) -> (bool exists, bool revoked, uint256 grantedAt)
      getSharedRecords(address recipient) -> (address[] owners, string[] recordIds, uint256[] timestamps)
      storeEncryptedKey(address owner, address recipient, string recordId, bytes key)
      getEncryptedKey(address owner, address recipient, string recordId) -> bytes
      submitRequest(string cid, string bundleId, string purpose, address[] reviewers, bytes[] keys)
        emits RequestSubmitted(uint256 requestId, address requester)
      getRequest(uint256 id) -> (address requester, address[] reviewers, string cid, string bundleId,
                                 string purpose, uint256 createdAt, uint8 status, address processedBy,
                                 uint256 processedAt)
      getEncryptedKeyForReviewer(uint256 id, address reviewer) -> bytes
      approveRequest(uint256 id) / rejectRequest(uint256 id)
      getPendingRequestsByReviewer(address reviewer) -> uint256[]
      getRequestsByRequester(address requester) -> uint256[]

    Writes are signed locally when a key for the sender is in ``signers``,
    otherwise sent from the node's unlocked account. Each write returns
    only after its receipt arrives (the confirmation point).
    """

    name = "web3"

    def __init__(self, rpc_url: str, contract_address: str, abi: list | str,
                 signers: Optional[Dict[str, str]] = None, receipt_timeout: int = 180):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        if isinstance(abi, str):
            with open(abi, "r", encoding="utf-8") as f:
                abi = json.load(f)
            # hardhat artifacts wrap the ABI
            if isinstance(abi, dict):
                abi = abi["abi"]
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi)
        self.signers = {normalize_identity(k): v for k, v in (signers or {}).items()}
        self.receipt_timeout = receipt_timeout
        log.info(f"[WEB3] contract bound at {contract_address} via {rpc_url}")

    @staticmethod
    def _addr(identity: str) -> str:
        return Web3.to_checksum_address(normalize_identity(identity))

    def _call(self, fn_name: str, *args):
        try:
            return getattr(self.contract.functions, fn_name)(*args).call()
        except ContractLogicError as e:
            raise LedgerRejected(f"{fn_name} reverted: {e}") from e
        except _TRANSIENT as e:
            raise LedgerUnavailable(f"{fn_name} failed: {e}") from e

    def _send(self, sender: str, fn_name: str, *args):
        function_call = getattr(self.contract.functions, fn_name)(*args)
        sender_addr = self._addr(sender)
        try:
            key = self.signers.get(normalize_identity(sender))
            if key:
                tx_params = {
                    "from": sender_addr,
                    "nonce": self.w3.eth.get_transaction_count(sender_addr),
                    "gasPrice": self.w3.eth.gas_price,
                }
                # Add a 20% buffer to the estimate
                tx_params["gas"] = int(function_call.estimate_gas({"from": sender_addr}) * 1.2)
                transaction = function_call.build_transaction(tx_params)
                signed_tx = self.w3.eth.account.sign_transaction(transaction, key)
                tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            else:
                tx_hash = function_call.transact({"from": sender_addr})

            log.debug(f"[WEB3] {fn_name} sent tx={self.w3.to_hex(tx_hash)}, waiting for receipt")
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except ContractLogicError as e:
            raise LedgerRejected(f"{fn_name} reverted: {e}") from e
        except _TRANSIENT as e:
            raise LedgerUnavailable(f"{fn_name} failed: {e}") from e

        tx_hex = self.w3.to_hex(tx_hash)
        if receipt.status == 0:
            raise LedgerRejected(f"{fn_name} reverted", tx_hash=tx_hex)
        log.info(f"[WEB3] {fn_name} confirmed block={receipt.blockNumber} gas={receipt.gasUsed}")
        return tx_hex, receipt

    def _transact(self, sender: str, fn_name: str, *args) -> Confirmation:
        tx_hex, receipt = self._send(sender, fn_name, *args)
        return Confirmation(tx_hash=tx_hex, block_number=receipt.blockNumber, status=receipt.status)

    # --- identities / public keys ---
    def is_registered(self, identity: str) -> bool:
        return bool(self._call("userExists", self._addr(identity)))

    def get_public_key(self, identity: str) -> Optional[str]:
        material = self._call("getPublicKey", self._addr(identity))
        if not material or material == "0x":
            return None
        return material

    def register_public_key(self, identity: str, material: str) -> Confirmation:
        return self._transact(identity, "registerPublicKey", material)

    # --- documents ---
    def register_document(self, sender: str, owner: str, document_id: str, content_address: str,
                          owner_wrapped_key: bytes) -> Confirmation:
        return self._transact(sender, "registerRecord", self._addr(owner), document_id, content_address,
                              bytes(owner_wrapped_key))

    def get_document(self, owner: str, document_id: str) -> Optional[DocumentRecord]:
        cid, ts = self._call("getMedicalRecord", self._addr(owner), document_id)
        if not cid:
            return None
        return DocumentRecord(normalize_identity(owner), document_id, cid, created_at=_iso(ts))

    # --- access control ---
    def grant_access(self, sender: str, owner: str, recipient: str, document_id: str) -> Confirmation:
        return self._transact(sender, "grantAccess", self._addr(owner), self._addr(recipient), document_id)

    def revoke_access(self, sender: str, owner: str, recipient: str, document_id: str) -> Confirmation:
        return self._transact(sender, "revokeAccess", self._addr(owner), self._addr(recipient), document_id)

    def get_grant(self, owner: str, recipient: str, document_id: str) -> Optional[AccessGrant]:
        exists, revoked, granted_at = self._call(
            "getAccess", self._addr(owner), self._addr(recipient), document_id
        )
        if not exists:
            return None
        return AccessGrant(
            owner=normalize_identity(owner),
            recipient=normalize_identity(recipient),
            document_id=document_id,
            granted_at=_iso(granted_at),
            revoked=bool(revoked),
        )

    def get_shared_records(self, recipient: str) -> List[SharedRecord]:
        owners, record_ids, timestamps = self._call("getSharedRecords", self._addr(recipient))
        return [
            SharedRecord(normalize_identity(o), rid, _iso(ts))
            for o, rid, ts in zip(owners, record_ids, timestamps)
        ]

    # --- wrapped keys ---
    def store_wrapped_key(self, sender: str, owner: str, recipient: str, document_id: str,
                          ciphertext: bytes) -> Confirmation:
        return self._transact(
            sender, "storeEncryptedKey", self._addr(owner), self._addr(recipient), document_id, bytes(ciphertext)
        )

    def get_wrapped_key(self, owner: str, recipient: str, document_id: str) -> Optional[bytes]:
        raw = self._call("getEncryptedKey", self._addr(owner), self._addr(recipient), document_id)
        if isinstance(raw, str):
            # some deployments store the key as a hex string
            raw = from_hex(raw) if raw not in ("", "0x") else b""
        return bytes(raw) if raw else None

    # --- review requests ---
    def submit_request(self, sender: str, content_address: str, bundle_id: str, purpose: str,
                       reviewers: Sequence[str], wrapped_keys: Sequence[bytes]) -> Tuple[Confirmation, int]:
        tx_hex, receipt = self._send(sender, "submitRequest", content_address, bundle_id, purpose,
                                     [self._addr(r) for r in reviewers], [bytes(k) for k in wrapped_keys])
        events = self.contract.events.RequestSubmitted().process_receipt(receipt)
        if not events:
            raise LedgerRejected("submitRequest emitted no RequestSubmitted event", tx_hash=tx_hex)
        request_id = int(events[0]["args"]["requestId"])
        return Confirmation(tx_hash=tx_hex, block_number=receipt.blockNumber, status=receipt.status), request_id

    def get_request(self, request_id: int) -> Optional[AccessRequest]:
        (requester, reviewers, cid, bundle_id, purpose, created_at,
         status, processed_by, processed_at) = self._call("getRequest", int(request_id))
        if int(requester, 16) == 0:
            return None
        processed = int(processed_by, 16) != 0
        return AccessRequest(
            request_id=int(request_id),
            requester=normalize_identity(requester),
            reviewers=[normalize_identity(r) for r in reviewers],
            content_address=cid,
            bundle_id=bundle_id,
            purpose=purpose,
            created_at=_iso(created_at),
            status=_STATUS[int(status)],
            processed_by=normalize_identity(processed_by) if processed else None,
            processed_at=_iso(processed_at) if processed else None,
        )

    def get_request_key(self, request_id: int, reviewer: str) -> Optional[bytes]:
        raw = self._call("getEncryptedKeyForReviewer", int(request_id), self._addr(reviewer))
        if isinstance(raw, str):
            raw = from_hex(raw) if raw not in ("", "0x") else b""
        return bytes(raw) if raw else None

    def process_request(self, sender: str, request_id: int, approve: bool) -> Confirmation:
        return self._transact(sender, "approveRequest" if approve else "rejectRequest", int(request_id))

    def get_pending_requests(self, reviewer: str) -> List[int]:
        return [int(i) for i in self._call("getPendingRequestsByReviewer", self._addr(reviewer))]

    def get_requests_by_requester(self, requester: str) -> List[int]:
        return [int(i) for i in self._call("getRequestsByRequester", self._addr(requester))]

    def healthz(self) -> dict:
        return {"status": "ok" if self.w3.is_connected() else "down", "ledger": self.name}
