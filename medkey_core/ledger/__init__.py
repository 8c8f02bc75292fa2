# medkey_core/ledger/__init__.py

from .base import Ledger
from .models import (
    AccessGrant, AccessRequest, Confirmation, DocumentRecord, GrantState, RequestStatus, SharedRecord, WrappedKey,
)
from .providers.memory_provider import InMemoryLedger
import os


def load_ledger_provider(config: dict | None = None) -> Ledger:
    """
    Factory resolver for the ledger backend.

    - memory (default): offline fake, for tests and local sessions
    - web3: the deployed access-control contract
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("MEDKEY_LEDGER_PROVIDER", "memory")

    if provider == "memory":
        return InMemoryLedger(propagation_lag=int(config.get("propagation_lag", 0)))

    if provider == "web3":
        from .providers.web3_provider import Web3Ledger

        rpc_url = config.get("rpc_url") or os.getenv("MEDKEY_RPC_URL", "http://localhost:8545")
        contract_address = config.get("contract_address") or os.getenv("MEDKEY_CONTRACT_ADDRESS")
        abi_path = config.get("abi_path") or os.getenv("MEDKEY_CONTRACT_ABI_PATH")
        if not contract_address or not abi_path:
            raise ValueError("web3 ledger needs MEDKEY_CONTRACT_ADDRESS and MEDKEY_CONTRACT_ABI_PATH")
        return Web3Ledger(rpc_url, contract_address, abi_path, signers=config.get("signers"))

    raise ValueError(f"Unknown ledger provider: {provider}")


__all__ = [
    "Ledger",
    "InMemoryLedger",
    "AccessGrant",
    "AccessRequest",
    "Confirmation",
    "DocumentRecord",
    "GrantState",
    "RequestStatus",
    "SharedRecord",
    "WrappedKey",
    "load_ledger_provider",
]
