"""
Field encryption service: user/key resolution, batching, circuits and
ledger anchoring around the homomorphic engine.
"""

from .collaborators import (
    CircuitStore,
    InMemoryCircuitStore,
    InMemoryLedgerClient,
    InMemoryUserDirectory,
    LedgerClient,
    UserDirectory,
)
from .orchestrator import FieldEncryptionService, ServiceMetrics
from .schemas import (
    BatchDecryption,
    BatchDecryptionResult,
    BatchEncryption,
    CiphertextMetadata,
    ComputationResult,
    DecryptionParams,
    EncryptedField,
    EncryptionParams,
    HomomorphicOperation,
    PackedEncryptedFields,
)
from .values import convert_from_plaintext, prepare_value

__all__ = [
    "FieldEncryptionService",
    "ServiceMetrics",
    "UserDirectory",
    "LedgerClient",
    "CircuitStore",
    "InMemoryUserDirectory",
    "InMemoryLedgerClient",
    "InMemoryCircuitStore",
    "EncryptionParams",
    "EncryptedField",
    "DecryptionParams",
    "CiphertextMetadata",
    "HomomorphicOperation",
    "ComputationResult",
    "BatchEncryption",
    "BatchDecryption",
    "BatchDecryptionResult",
    "PackedEncryptedFields",
    "prepare_value",
    "convert_from_plaintext",
]
