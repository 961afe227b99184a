"""
Ciphertext codec and wire formats.

Encoding:
    payload = (plaintext XOR keystream) || SHA-256(plaintext || keystream)

where the 32-unit keystream is sampled from a Gaussian (Box-Muller over two
uniform draws) with the ciphertext's noise standard deviation, driven by a
deterministic seed. Decoding regenerates the identical keystream from the
same seed and the ciphertext's noise level.

Wire formats (bit-exact):
    serialized  = base64(UTF-8 JSON {data, noise, depth, size, bootstrapped})
    compressed  = UTF-8 bytes of base64(UTF-8 JSON {d, n, p, s})
    packed      = ([4-byte big-endian length][raw bytes])*

The compressed format is a field reduction, not a general-purpose
compressor: it drops the bootstrapped flag and keeps noise to 1/1000.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import struct
from typing import Any, Dict, List, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import DecryptionFailedError, InvalidCiphertextFormatError
from .constants import (
    BASE_NOISE,
    COMPRESSED_NOISE_SCALE,
    FRESH_CIPHERTEXT_SIZE,
    KEYSTREAM_LENGTH,
    LENGTH_PREFIX_SIZE,
    TAG_SIZE,
)
from .core import Ciphertext

logger = logging.getLogger(__name__)

_LENGTH_PREFIX = struct.Struct(">I")


# =============================================================================
# Keystream
# =============================================================================


def generate_keystream(std_dev: float, seed: bytes, length: int = KEYSTREAM_LENGTH) -> np.ndarray:
    """
    Deterministic Gaussian noise keystream.

    Each unit is ``abs(floor(z * std_dev)) mod 256`` where ``z`` is a
    standard normal draw from the Box-Muller transform.

    Args:
        std_dev: Noise standard deviation
        seed: Keystream seed (see ``derive_keystream_seed``)
        length: Number of keystream bytes

    Returns:
        uint8 array of ``length`` bytes
    """
    rng = np.random.default_rng(int.from_bytes(hashlib.sha256(seed).digest(), "big"))
    u1 = 1.0 - rng.random(length)  # (0, 1], keeps log() finite
    u2 = rng.random(length)
    z0 = np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)
    return (np.abs(np.floor(z0 * std_dev)).astype(np.int64) % 256).astype(np.uint8)


def _xor_cyclic(data: np.ndarray, keystream: np.ndarray) -> np.ndarray:
    if data.size == 0:
        return data.astype(np.uint8)
    repeats = -(-data.size // keystream.size)
    return np.bitwise_xor(data, np.tile(keystream, repeats)[: data.size])


def _auth_tag(plaintext: bytes, keystream: np.ndarray) -> bytes:
    return hashlib.sha256(plaintext + keystream.tobytes()).digest()


# =============================================================================
# Encode / decode
# =============================================================================


def encode(plaintext: bytes, noise_std_dev: float, seed: bytes) -> Ciphertext:
    """
    Encode plaintext bytes into a fresh ciphertext.

    The result has ``noise_level == noise_std_dev``, depth 0 and two
    components; its payload is ``len(plaintext) + 32`` bytes.
    """
    if noise_std_dev < BASE_NOISE:
        raise ValueError(f"noise_std_dev must be >= {BASE_NOISE}")
    plaintext = bytes(plaintext)
    keystream = generate_keystream(noise_std_dev, seed)
    body = _xor_cyclic(np.frombuffer(plaintext, dtype=np.uint8), keystream)
    return Ciphertext(
        payload=body.tobytes() + _auth_tag(plaintext, keystream),
        noise_level=noise_std_dev,
        multiplicative_depth=0,
        component_count=FRESH_CIPHERTEXT_SIZE,
    )


def decode(ciphertext: Ciphertext, seed: bytes, verify: bool = False) -> bytes:
    """
    Recover plaintext from a ciphertext.

    The keystream is regenerated with ``ciphertext.noise_level`` as the
    standard deviation, so only ciphertexts whose noise still equals the
    encoding deviation decode to the original plaintext.

    Args:
        ciphertext: Ciphertext to decode
        seed: Same seed used at encode time
        verify: Check the trailing authentication tag

    Raises:
        InvalidCiphertextFormatError: payload shorter than the tag
        DecryptionFailedError: ``verify`` and the tag does not match
    """
    if len(ciphertext.payload) < TAG_SIZE:
        raise InvalidCiphertextFormatError(
            f"payload of {len(ciphertext.payload)} bytes is shorter than the {TAG_SIZE}-byte tag"
        )
    keystream = generate_keystream(ciphertext.noise_level, seed)
    body = np.frombuffer(ciphertext.payload[:-TAG_SIZE], dtype=np.uint8)
    plaintext = _xor_cyclic(body, keystream).tobytes()

    if verify:
        expected = _auth_tag(plaintext, keystream)
        if not hmac.compare_digest(expected, ciphertext.payload[-TAG_SIZE:]):
            raise DecryptionFailedError()
    return plaintext


# =============================================================================
# Serialized transport record
# =============================================================================


def _decode_hex(value: str) -> bytes:
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


class CiphertextRecord(BaseModel):
    """Schema of the serialized ciphertext record."""

    model_config = ConfigDict(extra="ignore")

    data: str
    noise: float = Field(ge=BASE_NOISE - 1e-9)
    depth: int = Field(ge=0)
    size: int = Field(ge=FRESH_CIPHERTEXT_SIZE)
    bootstrapped: bool = False

    @field_validator("data")
    @classmethod
    def _check_hex(cls, value: str) -> str:
        _decode_hex(value)
        return value

    def to_ciphertext(self) -> Ciphertext:
        return Ciphertext(
            payload=_decode_hex(self.data),
            noise_level=self.noise,
            multiplicative_depth=self.depth,
            component_count=self.size,
            bootstrapped=self.bootstrapped,
        )


class CompressedRecord(BaseModel):
    """Schema of the field-reduced ciphertext record."""

    model_config = ConfigDict(extra="ignore")

    d: str
    n: int = Field(ge=0)
    p: int = Field(ge=0)
    s: int = Field(ge=FRESH_CIPHERTEXT_SIZE)

    @field_validator("d")
    @classmethod
    def _check_hex(cls, value: str) -> str:
        _decode_hex(value)
        return value

    def to_ciphertext(self) -> Ciphertext:
        return Ciphertext(
            payload=_decode_hex(self.d),
            noise_level=self.n / COMPRESSED_NOISE_SCALE,
            multiplicative_depth=self.p,
            component_count=self.s,
        )


def _hexlify(data: bytes) -> str:
    return "0x" + data.hex()


def _json_number(value: float) -> Any:
    """Integral floats are written without a fraction, as JSON.stringify does."""
    if math.isfinite(value) and float(value).is_integer():
        return int(value)
    return value


def _envelope(record: Dict[str, Any]) -> str:
    text = json.dumps(record, separators=(",", ":"))
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _open_envelope(encoded: Any, wire_format: str) -> Dict[str, Any]:
    if isinstance(encoded, (bytes, bytearray)):
        try:
            encoded = bytes(encoded).decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidCiphertextFormatError("envelope is not UTF-8", wire_format) from None
    if not isinstance(encoded, str):
        raise InvalidCiphertextFormatError(f"expected str, got {type(encoded).__name__}", wire_format)
    try:
        text = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        obj = json.loads(text)
    except (binascii.Error, ValueError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise InvalidCiphertextFormatError(f"{type(e).__name__}: not base64(JSON)", wire_format) from None
    if not isinstance(obj, dict):
        raise InvalidCiphertextFormatError("record is not a JSON object", wire_format)
    return obj


def serialize(ciphertext: Ciphertext) -> str:
    """Serialize to base64(JSON {data, noise, depth, size, bootstrapped})."""
    return _envelope(
        {
            "data": _hexlify(ciphertext.payload),
            "noise": _json_number(ciphertext.noise_level),
            "depth": ciphertext.multiplicative_depth,
            "size": ciphertext.component_count,
            "bootstrapped": ciphertext.bootstrapped,
        }
    )


def deserialize(serialized: str) -> Ciphertext:
    """
    Inverse of ``serialize``.

    Raises:
        InvalidCiphertextFormatError: non-base64, non-JSON, or missing/invalid fields
    """
    obj = _open_envelope(serialized, "serialized")
    try:
        record = CiphertextRecord.model_validate(obj)
        return record.to_ciphertext()
    except (ValidationError, ValueError) as e:
        raise InvalidCiphertextFormatError(_summarize(e), "serialized") from None


def compress(ciphertext: Ciphertext) -> bytes:
    """Field-reduced wire form: {d, n=floor(noise*1000), p, s}."""
    return _envelope(
        {
            "d": _hexlify(ciphertext.payload),
            "n": math.floor(ciphertext.noise_level * COMPRESSED_NOISE_SCALE),
            "p": ciphertext.multiplicative_depth,
            "s": ciphertext.component_count,
        }
    ).encode("utf-8")


def decompress(compressed: bytes) -> Ciphertext:
    """
    Inverse of ``compress``. The bootstrapped flag is not carried and
    decodes as False.
    """
    obj = _open_envelope(compressed, "compressed")
    try:
        return CompressedRecord.model_validate(obj).to_ciphertext()
    except (ValidationError, ValueError) as e:
        raise InvalidCiphertextFormatError(_summarize(e), "compressed") from None


def _summarize(error: Exception) -> str:
    if isinstance(error, ValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in error.errors()})
        return f"invalid or missing fields: {', '.join(fields)}"
    return str(error)


# =============================================================================
# SIMD-style packing
# =============================================================================


def pack(values: Sequence[bytes]) -> bytes:
    """Concatenate length-prefixed buffers: [4-byte BE length][bytes]..."""
    parts: List[bytes] = []
    for value in values:
        value = bytes(value)
        if len(value) > 0xFFFFFFFF:
            raise ValueError("value too large for a 4-byte length prefix")
        parts.append(_LENGTH_PREFIX.pack(len(value)))
        parts.append(value)
    return b"".join(parts)


def unpack(packed: bytes) -> List[bytes]:
    """
    Inverse of ``pack``.

    Raises:
        InvalidCiphertextFormatError: truncated length prefix, or a prefix
            declaring more bytes than remain
    """
    packed = bytes(packed)
    values: List[bytes] = []
    offset = 0
    total = len(packed)

    while offset < total:
        if total - offset < LENGTH_PREFIX_SIZE:
            raise InvalidCiphertextFormatError(
                f"truncated length prefix at offset {offset}", "packed"
            )
        (length,) = _LENGTH_PREFIX.unpack_from(packed, offset)
        offset += LENGTH_PREFIX_SIZE
        if length > total - offset:
            raise InvalidCiphertextFormatError(
                f"record declares {length} bytes but only {total - offset} remain", "packed"
            )
        values.append(packed[offset : offset + length])
        offset += length

    return values


__all__ = [
    "CiphertextRecord",
    "CompressedRecord",
    "generate_keystream",
    "encode",
    "decode",
    "serialize",
    "deserialize",
    "compress",
    "decompress",
    "pack",
    "unpack",
]
