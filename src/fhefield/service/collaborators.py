"""
External collaborators of the field encryption service.

The service depends only on these protocols. In-memory implementations are
provided for development and tests; production deployments plug in a user
repository, a ledger client and a circuit database.
"""

import hashlib
import logging
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .schemas import StoredCircuit

logger = logging.getLogger(__name__)


@runtime_checkable
class UserDirectory(Protocol):
    """Maps a logical user to a cryptographic identity (e.g. wallet address)."""

    async def resolve_identity(self, user_id: str) -> Optional[str]: ...


@runtime_checkable
class LedgerClient(Protocol):
    """
    Anchors an encrypted field on a distributed ledger.

    Implementations raise LedgerAnchorError on failure.
    """

    async def anchor(
        self,
        identity: str,
        field_name: str,
        serialized_ciphertext: str,
        serialized_metadata: str,
    ) -> str: ...


@runtime_checkable
class CircuitStore(Protocol):
    """Persists circuit definitions and their plans by identifier."""

    async def save(self, record: StoredCircuit) -> None: ...

    async def load(self, circuit_id: str) -> Optional[StoredCircuit]: ...


class InMemoryUserDirectory:
    def __init__(self, identities: Optional[Dict[str, str]] = None):
        self._identities: Dict[str, str] = dict(identities or {})

    def register(self, user_id: str, identity: str) -> None:
        self._identities[user_id] = identity

    async def resolve_identity(self, user_id: str) -> Optional[str]:
        return self._identities.get(user_id)


class InMemoryLedgerClient:
    """Records anchors and returns a content-derived transaction reference."""

    def __init__(self):
        self.anchors: List[Tuple[str, str, str, str]] = []

    async def anchor(
        self,
        identity: str,
        field_name: str,
        serialized_ciphertext: str,
        serialized_metadata: str,
    ) -> str:
        self.anchors.append((identity, field_name, serialized_ciphertext, serialized_metadata))
        digest = hashlib.sha256(
            f"{identity}|{field_name}|{serialized_ciphertext}|{serialized_metadata}".encode()
        ).hexdigest()
        reference = f"0x{digest}"
        logger.debug(f"Anchored {field_name} for {identity}: {reference[:18]}")
        return reference


class InMemoryCircuitStore:
    def __init__(self):
        self._records: Dict[str, StoredCircuit] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def save(self, record: StoredCircuit) -> None:
        self._records[record.circuit_id] = record

    async def load(self, circuit_id: str) -> Optional[StoredCircuit]:
        return self._records.get(circuit_id)


__all__ = [
    "UserDirectory",
    "LedgerClient",
    "CircuitStore",
    "InMemoryUserDirectory",
    "InMemoryLedgerClient",
    "InMemoryCircuitStore",
]
