"""
Conversion between field values and plaintext bytes.

    number   IEEE-754 float64, little-endian
    string   UTF-8
    boolean  one byte, 1 or 0
    bigint   non-negative integer, big-endian minimal bytes (zero is one byte)
    other    compact JSON, UTF-8
"""

import json
import struct
from typing import Any

from ..errors import DecryptionFailedError

_FLOAT64 = struct.Struct("<d")


def prepare_value(value: Any, data_type: str) -> bytes:
    """Encode a field value as plaintext bytes."""
    if data_type == "number":
        return _FLOAT64.pack(float(value))
    if data_type == "string":
        return str(value).encode("utf-8")
    if data_type == "boolean":
        return b"\x01" if value else b"\x00"
    if data_type == "bigint":
        number = int(value)
        if number < 0:
            raise ValueError("bigint values must be non-negative")
        return number.to_bytes(max(1, (number.bit_length() + 7) // 8), "big")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def convert_from_plaintext(plaintext: bytes, data_type: str) -> Any:
    """
    Decode plaintext bytes back into a field value.

    Raises:
        DecryptionFailedError: the bytes are not a valid ``data_type`` value,
            which is what decryption under the wrong key produces
    """
    try:
        if data_type == "number":
            return _FLOAT64.unpack(plaintext[: _FLOAT64.size])[0]
        if data_type == "string":
            return plaintext.decode("utf-8")
        if data_type == "boolean":
            return len(plaintext) > 0 and plaintext[0] == 1
        if data_type == "bigint":
            return int.from_bytes(plaintext, "big")
        return json.loads(plaintext.decode("utf-8"))
    except (struct.error, ValueError) as e:
        raise DecryptionFailedError(f"plaintext is not a valid {data_type} value ({type(e).__name__})") from None


__all__ = ["prepare_value", "convert_from_plaintext"]
