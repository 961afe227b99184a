"""
Scheme parameter registry.

One immutable parameter record per supported scheme, selected once at
process start. ``parameters_for`` is total over ``FheScheme``: the enum is
closed, and string tags are converted at input boundaries by
``parse_scheme``.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from ..errors import InitializationFailedError, InvalidSchemeError
from .constants import (
    BASE_NOISE,
    NOISE_GROWTH_ADD,
    NOISE_GROWTH_BOOTSTRAP,
    NOISE_GROWTH_MULTIPLY,
    NOISE_GROWTH_NEGATE,
    NOISE_GROWTH_ROTATE,
)


class FheScheme(str, Enum):
    """Supported homomorphic encryption schemes."""

    TFHE = "tfhe"
    CKKS = "ckks"
    BGV = "bgv"
    BFV = "bfv"


class SecurityLevel(IntEnum):
    """Security level in bits."""

    LOW = 128
    MEDIUM = 192
    HIGH = 256


@dataclass(frozen=True)
class GrowthFactors:
    """Per-operation noise growth factors."""

    add: float = NOISE_GROWTH_ADD
    multiply: float = NOISE_GROWTH_MULTIPLY
    rotate: float = NOISE_GROWTH_ROTATE
    negate: float = NOISE_GROWTH_NEGATE
    bootstrap: float = NOISE_GROWTH_BOOTSTRAP


@dataclass(frozen=True)
class SchemeParameters:
    """
    Immutable parameter record for one scheme.

    ``plaintext_modulus`` is zero for the real-valued scheme (CKKS).
    ``extra`` carries scheme-specific sizing (TFHE gadget parameters, CKKS
    scale, the BFV coefficient modulus chain) as a read-only mapping.
    """

    scheme: FheScheme
    ring_dimension: int
    modulus_bits: int
    plaintext_modulus: int
    noise_std_dev: float
    security_level: SecurityLevel
    simd_slots: int
    growth_factors: GrowthFactors = field(default_factory=GrowthFactors)
    extra: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme.value,
            "ring_dimension": self.ring_dimension,
            "modulus_bits": self.modulus_bits,
            "plaintext_modulus": self.plaintext_modulus,
            "noise_std_dev": self.noise_std_dev,
            "security_level": int(self.security_level),
            "simd_slots": self.simd_slots,
            "growth_factors": asdict(self.growth_factors),
            "extra": dict(self.extra),
        }

    def get_hash(self) -> str:
        """Compute deterministic hash of parameters."""
        canonical = json.dumps(self.to_dict(), sort_keys=True).encode()
        return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class BootstrapParameters:
    """Bootstrapping sizing for schemes that define it."""

    base_log: Optional[int] = None
    level_count: Optional[int] = None
    key_size: int = 64
    refreshing_key_size: int = 32
    level_budget: Optional[int] = None
    scaling_factor: Optional[float] = None
    precision_bits: Optional[int] = None


_REGISTRY: Mapping[FheScheme, SchemeParameters] = MappingProxyType(
    {
        FheScheme.TFHE: SchemeParameters(
            scheme=FheScheme.TFHE,
            ring_dimension=1024,
            modulus_bits=32,
            plaintext_modulus=65537,
            noise_std_dev=BASE_NOISE,
            security_level=SecurityLevel.MEDIUM,
            simd_slots=1,
            extra=MappingProxyType({"n": 630, "k": 1, "base_log": 7, "level_count": 3}),
        ),
        FheScheme.CKKS: SchemeParameters(
            scheme=FheScheme.CKKS,
            ring_dimension=2**15,
            modulus_bits=60,
            plaintext_modulus=0,
            noise_std_dev=BASE_NOISE,
            security_level=SecurityLevel.HIGH,
            simd_slots=8192,
            extra=MappingProxyType({"log_qp": 438, "scale": 2.0**40, "h": 192}),
        ),
        FheScheme.BGV: SchemeParameters(
            scheme=FheScheme.BGV,
            ring_dimension=2**14,
            modulus_bits=50,
            plaintext_modulus=65537,
            noise_std_dev=BASE_NOISE,
            security_level=SecurityLevel.MEDIUM,
            simd_slots=4096,
            extra=MappingProxyType({"log_q": 438}),
        ),
        FheScheme.BFV: SchemeParameters(
            scheme=FheScheme.BFV,
            ring_dimension=4096,
            modulus_bits=40,
            plaintext_modulus=786433,
            noise_std_dev=BASE_NOISE,
            security_level=SecurityLevel.MEDIUM,
            simd_slots=4096,
            extra=MappingProxyType(
                {"coeff_modulus": (0xFFFFEE001, 0xFFFFC4001, 0x1FFFFE0001)}
            ),
        ),
    }
)

_BOOTSTRAP_REGISTRY: Mapping[FheScheme, BootstrapParameters] = MappingProxyType(
    {
        FheScheme.TFHE: BootstrapParameters(base_log=25, level_count=2, key_size=64, refreshing_key_size=32),
        FheScheme.CKKS: BootstrapParameters(level_budget=3, scaling_factor=2.0**40, precision_bits=25),
    }
)


def parameters_for(scheme: FheScheme) -> SchemeParameters:
    """Return the fixed parameter record for ``scheme``."""
    return _REGISTRY[scheme]


def bootstrap_parameters_for(scheme: FheScheme) -> BootstrapParameters:
    """Bootstrapping sizing for ``scheme``; defaults where the scheme defines none."""
    return _BOOTSTRAP_REGISTRY.get(scheme, BootstrapParameters())


def parse_scheme(tag: Any) -> FheScheme:
    """Convert an external scheme tag into ``FheScheme``."""
    if isinstance(tag, FheScheme):
        return tag
    try:
        return FheScheme(str(tag).lower())
    except ValueError:
        raise InvalidSchemeError(str(tag)) from None


def validate_parameters(params: SchemeParameters) -> None:
    """
    Sanity-check a parameter record at bring-up.

    Raises:
        InitializationFailedError: if the record is internally inconsistent
    """
    scheme = params.scheme.value
    n = params.ring_dimension
    if n <= 0 or n & (n - 1):
        raise InitializationFailedError(f"ring dimension {n} is not a power of two", scheme=scheme)
    if params.modulus_bits <= 0:
        raise InitializationFailedError("modulus bit-width must be positive", scheme=scheme)
    if params.plaintext_modulus < 0:
        raise InitializationFailedError("plaintext modulus must be non-negative", scheme=scheme)
    if params.noise_std_dev < BASE_NOISE:
        raise InitializationFailedError(
            f"noise standard deviation below base noise {BASE_NOISE}", scheme=scheme
        )
    if not 1 <= params.simd_slots <= n:
        raise InitializationFailedError(f"SIMD slot count {params.simd_slots} outside [1, {n}]", scheme=scheme)
    growth = params.growth_factors
    if min(growth.add, growth.multiply, growth.rotate, growth.negate) <= 0:
        raise InitializationFailedError("growth factors must be positive", scheme=scheme)


__all__ = [
    "FheScheme",
    "SecurityLevel",
    "GrowthFactors",
    "SchemeParameters",
    "BootstrapParameters",
    "parameters_for",
    "bootstrap_parameters_for",
    "parse_scheme",
    "validate_parameters",
]
