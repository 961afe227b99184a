"""
Ciphertext and key value types.

A Ciphertext carries payload bytes plus the accounting metadata every
engine operation updates: noise level, multiplicative depth and component
count ("size"). Values are frozen; every operation returns a new one, so an
input may be reused safely by concurrent operations.

IMPORTANT: this is a behavioral model of a homomorphic ciphertext. The
payload transforms reproduce the accounting contract (growth factors, depth,
size, serialization shape), not a lattice construction.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict

from .constants import BASE_NOISE, FRESH_CIPHERTEXT_SIZE, MAX_CIPHERTEXT_SIZE, MAX_NOISE_LEVEL
from .params import FheScheme


@dataclass(frozen=True)
class Ciphertext:
    """
    Encrypted value with noise/depth/size accounting.

    Invariants (checked on construction):
        noise_level >= BASE_NOISE
        multiplicative_depth >= 0
        component_count >= 2
    """

    payload: bytes
    noise_level: float
    multiplicative_depth: int = 0
    component_count: int = FRESH_CIPHERTEXT_SIZE
    bootstrapped: bool = False
    relinearized: bool = False

    def __post_init__(self):
        if not isinstance(self.payload, bytes):
            object.__setattr__(self, "payload", bytes(self.payload))
        # Float slack so floored wire values (noise*1000) still validate
        if self.noise_level < BASE_NOISE - 1e-9:
            raise ValueError(f"noise_level {self.noise_level} below base noise {BASE_NOISE}")
        if self.multiplicative_depth < 0:
            raise ValueError("multiplicative_depth must be non-negative")
        if self.component_count < FRESH_CIPHERTEXT_SIZE:
            raise ValueError(f"component_count must be >= {FRESH_CIPHERTEXT_SIZE}")

    @property
    def size(self) -> int:
        """Ciphertext size (component count)."""
        return self.component_count

    @property
    def exhausted(self) -> bool:
        """True once noise exceeds MAX_NOISE_LEVEL."""
        return self.noise_level > MAX_NOISE_LEVEL

    @property
    def needs_relinearization(self) -> bool:
        return self.component_count > MAX_CIPHERTEXT_SIZE

    def evolve(self, **changes: Any) -> "Ciphertext":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def describe(self) -> Dict[str, Any]:
        """Accounting summary, safe to log (no payload bytes)."""
        return {
            "payload_bytes": len(self.payload),
            "noise_level": round(self.noise_level, 4),
            "depth": self.multiplicative_depth,
            "size": self.component_count,
            "bootstrapped": self.bootstrapped,
        }


@dataclass(frozen=True)
class KeyPair:
    """
    Key material for one identity and scheme.

    The authoritative copy is owned by the key custodian. Engine code
    borrows a KeyPair for the duration of one call.
    """

    public_key: bytes
    private_key: bytes = field(repr=False)
    evaluation_key: bytes = field(repr=False)
    scheme: FheScheme
    generated_at: datetime = field(default_factory=datetime.utcnow)

    def public_key_hash(self) -> str:
        return f"sha256:{hashlib.sha256(self.public_key).hexdigest()}"

    def evaluation_key_digest(self) -> str:
        return hashlib.sha256(self.evaluation_key).hexdigest()

    def get_fingerprint(self) -> str:
        """Short public key fingerprint for logs."""
        return f"sha256:{hashlib.sha256(self.public_key).hexdigest()[:16]}"


@dataclass(frozen=True)
class BootstrappingKey:
    """Key material enabling noise refresh without the private key."""

    key: bytes = field(repr=False)
    scheme: FheScheme
    refreshing_key: bytes = field(repr=False)
    key_switching_key: bytes = field(repr=False)
    evaluation_key_digest: str = ""

    def get_fingerprint(self) -> str:
        return f"sha256:{hashlib.sha256(self.key).hexdigest()[:16]}"


def derive_keystream_seed(public_key: bytes) -> bytes:
    """
    Seed for the encode/decode noise keystream.

    Derived from the public key so encryption (public key) and decryption
    (full key pair) regenerate an identical keystream.
    """
    return hashlib.sha256(b"keystream:" + public_key).digest()


__all__ = [
    "Ciphertext",
    "KeyPair",
    "BootstrappingKey",
    "derive_keystream_seed",
]
