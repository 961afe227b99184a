"""
Request and response models for the field encryption service.

Every model is validated at the service boundary; scheme tags are parsed
into ``FheScheme`` here so the engine only ever sees the closed enum.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..he.constants import VERSION
from ..he.params import FheScheme, SecurityLevel, parse_scheme


def _scheme(value: Any) -> Optional[FheScheme]:
    return None if value is None else parse_scheme(value)


class CiphertextMetadata(BaseModel):
    scheme: FheScheme
    security_level: SecurityLevel
    noise_level: float
    bootstrappable: bool = False
    timestamp: int = Field(description="Milliseconds since the Unix epoch")
    version: str = VERSION
    depth: Optional[int] = None
    size: Optional[int] = None
    encoding: Literal["serialized", "compressed"] = "serialized"

    coerce_scheme = field_validator("scheme", mode="before")(_scheme)


class EncryptionParams(BaseModel):
    field_name: str
    value: Any
    data_type: str
    scheme: Optional[FheScheme] = Field(default=None, description="Defaults to FHE_DEFAULT_SCHEME")
    security_level: Optional[SecurityLevel] = None
    allow_bootstrapping: bool = False
    store_on_chain: bool = False

    coerce_scheme = field_validator("scheme", mode="before")(_scheme)


class EncryptedField(BaseModel):
    field_name: str
    encrypted_value: str
    metadata: CiphertextMetadata
    public_key_hash: str
    transaction_reference: Optional[str] = None
    anchor_error: Optional[str] = None


class DecryptionParams(BaseModel):
    field_name: str
    encrypted_value: str
    metadata: CiphertextMetadata
    original_data_type: str
    verify: bool = False


class HomomorphicOperation(BaseModel):
    type: str
    inputs: List[str]
    scheme: Optional[FheScheme] = Field(default=None, description="Defaults to FHE_DEFAULT_SCHEME")
    auto_bootstrap: bool = False
    rotation_amount: int = 1

    coerce_scheme = field_validator("scheme", mode="before")(_scheme)


class ComputationResult(BaseModel):
    result: str
    operation_type: str
    computation_time_ms: float
    noise_level: float
    bootstrapped: bool


class BatchEncryption(BaseModel):
    fields: List[EncryptionParams]
    common_scheme: Optional[FheScheme] = Field(default=None, description="Defaults to FHE_DEFAULT_SCHEME")
    packed_encryption: bool = False
    compression_enabled: bool = False

    coerce_scheme = field_validator("common_scheme", mode="before")(_scheme)


class BatchDecryption(BaseModel):
    fields: List[DecryptionParams]
    parallel_processing: bool = True
    error_handling: Literal["skip", "fail"] = "fail"


class FieldDecryptionFailure(BaseModel):
    field_name: str
    code: str
    message: str


class BatchDecryptionResult(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    failures: List[FieldDecryptionFailure] = Field(default_factory=list)


class PackedEncryptedFields(BaseModel):
    """Several fields SIMD-packed into one ciphertext."""

    field_names: List[str]
    data_types: List[str]
    encrypted_value: str
    metadata: CiphertextMetadata
    public_key_hash: str


class StoredCircuit(BaseModel):
    circuit_id: str
    owner: str
    circuit: Dict[str, Any]
    plan: Dict[str, Any]
    created_at: datetime


__all__ = [
    "CiphertextMetadata",
    "EncryptionParams",
    "EncryptedField",
    "DecryptionParams",
    "HomomorphicOperation",
    "ComputationResult",
    "BatchEncryption",
    "BatchDecryption",
    "FieldDecryptionFailure",
    "BatchDecryptionResult",
    "PackedEncryptedFields",
    "StoredCircuit",
]
