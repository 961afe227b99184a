"""
Homomorphic ciphertext engine.

IMPORTANT: this package models the behavior of a homomorphic encryption
scheme (noise growth, multiplicative depth, ciphertext size, wire formats).
It does not implement lattice cryptography and is NOT a secure cipher.

Architecture:
    1. params  - immutable per-scheme parameter records
    2. codec   - encode/decode, serialization, packing, compression
    3. noise   - pure noise-budget estimates
    4. engine  - ciphertext algebra with auto-bootstrap policy
    5. keys    - key custody and single-flight key caches
    6. circuit - gate-graph compiler and executor
"""

from .circuit import Circuit, CircuitCompiler, CircuitExecutor, ExecutionPlan, Gate, PlannedOperation
from .codec import compress, decode, decompress, deserialize, encode, pack, serialize, unpack
from .core import BootstrappingKey, Ciphertext, KeyPair, derive_keystream_seed
from .engine import Evaluation, HomomorphicEngine, generate_key_switching_key
from .keys import InMemoryKeyCustodian, KeyCustodian, KeyStore, KeyWrapper, StoredKeyRecord
from .noise import NoiseEstimate, estimate, is_exhausted, noise_estimate
from .params import (
    BootstrapParameters,
    FheScheme,
    GrowthFactors,
    SchemeParameters,
    SecurityLevel,
    parameters_for,
    parse_scheme,
)
from .pool import ComputePool

__all__ = [
    # Parameters
    "FheScheme",
    "SecurityLevel",
    "GrowthFactors",
    "SchemeParameters",
    "BootstrapParameters",
    "parameters_for",
    "parse_scheme",
    # Values
    "Ciphertext",
    "KeyPair",
    "BootstrappingKey",
    "derive_keystream_seed",
    # Codec
    "encode",
    "decode",
    "serialize",
    "deserialize",
    "pack",
    "unpack",
    "compress",
    "decompress",
    # Noise
    "estimate",
    "is_exhausted",
    "NoiseEstimate",
    "noise_estimate",
    # Engine
    "HomomorphicEngine",
    "Evaluation",
    "generate_key_switching_key",
    # Keys
    "KeyWrapper",
    "KeyCustodian",
    "InMemoryKeyCustodian",
    "StoredKeyRecord",
    "KeyStore",
    # Circuits
    "Gate",
    "Circuit",
    "PlannedOperation",
    "ExecutionPlan",
    "CircuitCompiler",
    "CircuitExecutor",
    # Scheduling
    "ComputePool",
]
