"""
FHE Field Encryption Error Taxonomy.

This module provides a centralized error hierarchy for all fhefield components.
All errors include:
- Machine-readable error codes
- Structured details (never sensitive data)
- Request ID correlation for tracing

Error Code Naming Convention:
- FHE_<CATEGORY>[_<SPECIFIC>]
- Caller errors (bad ciphertexts, bad circuits, bad arity) are never retried
- KeyNotFound and NoiseOverflow are recoverable by the caller

Security:
- NEVER include key bytes, plaintext, or full ciphertexts in error messages
- Use identifiers and sizes, not actual data
"""

from typing import Any, Dict, List, Optional


class FheFieldError(Exception):
    """Base exception for all fhefield errors.

    All fhefield errors include:
    - code: Machine-readable error code (e.g., FHE_NOISE_OVERFLOW)
    - message: Human-readable description
    - details: Structured metadata (NEVER include sensitive data)
    - request_id: Optional correlation ID for distributed tracing
    """

    def __init__(
        self,
        message: str,
        code: str = "FHE_INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.request_id:
            parts.append(f"(request_id: {self.request_id})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "request_id": self.request_id,
        }


# =============================================================================
# System bring-up
# =============================================================================


class InitializationFailedError(FheFieldError):
    """Raised when scheme parameters or the engine cannot be brought up."""

    def __init__(
        self,
        reason: str,
        scheme: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Failed to initialize FHE system: {reason}",
            code="FHE_INIT_FAILED",
            details={"scheme": scheme} if scheme else {},
            request_id=request_id,
        )


class InvalidSchemeError(FheFieldError):
    """Raised when an unknown scheme tag crosses an input boundary."""

    def __init__(self, scheme: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Invalid FHE scheme specified: {scheme!r}",
            code="FHE_INVALID_SCHEME",
            details={"scheme": scheme},
            request_id=request_id,
        )


# =============================================================================
# Ciphertext format errors
# =============================================================================


class InvalidCiphertextFormatError(FheFieldError):
    """Raised when a serialized, compressed or packed buffer is malformed."""

    def __init__(
        self,
        reason: str,
        wire_format: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Invalid ciphertext format: {reason}",
            code="FHE_INVALID_CIPHERTEXT",
            details={"format": wire_format} if wire_format else {},
            request_id=request_id,
        )


class DecryptionFailedError(FheFieldError):
    """Raised when decoding fails its authentication tag check."""

    def __init__(self, reason: str = "Authentication tag mismatch", request_id: Optional[str] = None):
        super().__init__(
            message=f"Decryption operation failed: {reason}",
            code="FHE_DECRYPT_FAILED",
            request_id=request_id,
        )


# =============================================================================
# Key errors
# =============================================================================


class KeyNotFoundError(FheFieldError):
    """Raised when no key material exists for an identity/scheme."""

    def __init__(
        self,
        identity: str,
        scheme: Optional[str] = None,
        key_type: str = "key_pair",
        request_id: Optional[str] = None,
    ):
        details = {"identity": identity, "key_type": key_type}
        if scheme:
            details["scheme"] = scheme
        super().__init__(
            message=f"FHE keys not found for {identity}",
            code="FHE_KEY_NOT_FOUND",
            details=details,
            request_id=request_id,
        )


class KeyGenerationError(FheFieldError):
    """Raised when key generation (or custody of a fresh key) fails."""

    def __init__(self, reason: str, scheme: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(
            message=f"Failed to generate FHE keys: {reason}",
            code="FHE_KEYGEN_FAILED",
            details={"scheme": scheme} if scheme else {},
            request_id=request_id,
        )


class CustodianError(FheFieldError):
    """Raised when the key custodian cannot store or retrieve key material."""

    def __init__(self, reason: str, operation: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Key custodian {operation} failed: {reason}",
            code="FHE_CUSTODIAN_FAILED",
            details={"operation": operation},
            request_id=request_id,
        )


# =============================================================================
# Evaluation errors
# =============================================================================


class UnsupportedOperationError(FheFieldError):
    """Raised for unknown gate/operation tags and unimplemented capabilities."""

    def __init__(self, operation: str, reason: Optional[str] = None, request_id: Optional[str] = None):
        message = f"Unsupported operation: {operation}"
        if reason:
            message += f" ({reason})"
        super().__init__(
            message=message,
            code="FHE_UNSUPPORTED_OPERATION",
            details={"operation": operation},
            request_id=request_id,
        )


class ArityError(FheFieldError):
    """Raised when an operation receives the wrong number of inputs."""

    def __init__(
        self,
        operation: str,
        expected: str,
        received: int,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"{operation} requires {expected} inputs, got {received}",
            code="FHE_ARITY",
            details={"operation": operation, "expected": expected, "received": received},
            request_id=request_id,
        )


class NoiseOverflowError(FheFieldError):
    """Raised when noise exceeds the maximum and auto-bootstrap was not requested."""

    def __init__(
        self,
        noise_level: float,
        max_noise: float,
        operation: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        details: Dict[str, Any] = {"noise_level": noise_level, "max_noise": max_noise}
        if operation:
            details["operation"] = operation
        super().__init__(
            message=f"Noise level exceeded maximum threshold ({noise_level:.2f} > {max_noise})",
            code="FHE_NOISE_OVERFLOW",
            details=details,
            request_id=request_id,
        )


# =============================================================================
# Circuit errors
# =============================================================================


class CircuitTooDeepError(FheFieldError):
    """Raised when estimated or realized multiplicative depth exceeds the maximum."""

    def __init__(
        self,
        depth: int,
        max_depth: int,
        circuit_name: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        details: Dict[str, Any] = {"depth": depth, "max_depth": max_depth}
        if circuit_name:
            details["circuit"] = circuit_name
        super().__init__(
            message=f"Circuit depth exceeds maximum ({depth} > {max_depth})",
            code="FHE_CIRCUIT_TOO_DEEP",
            details=details,
            request_id=request_id,
        )


class CircuitDependencyError(FheFieldError):
    """Raised when a gate references an unbound wire, or wiring is cyclic."""

    def __init__(
        self,
        reason: str,
        wires: Optional[List[str]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Circuit dependency error: {reason}",
            code="FHE_CIRCUIT_DEPENDENCY",
            details={"wires": sorted(wires)} if wires else {},
            request_id=request_id,
        )


class CircuitNotFoundError(FheFieldError):
    """Raised when a circuit identifier is not known to the circuit store."""

    def __init__(self, circuit_id: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Circuit not found: {circuit_id}",
            code="FHE_CIRCUIT_NOT_FOUND",
            details={"circuit_id": circuit_id},
            request_id=request_id,
        )


# =============================================================================
# Orchestration errors
# =============================================================================


class BatchSizeExceededError(FheFieldError):
    """Raised when a batch exceeds the configured maximum size."""

    def __init__(self, size: int, max_size: int, request_id: Optional[str] = None):
        super().__init__(
            message=f"Batch size exceeds maximum limit ({size} > {max_size})",
            code="FHE_BATCH_SIZE_EXCEEDED",
            details={"size": size, "max_size": max_size},
            request_id=request_id,
        )


class UserNotFoundError(FheFieldError):
    """Raised when the user directory cannot resolve a cryptographic identity."""

    def __init__(self, user_id: str, request_id: Optional[str] = None):
        super().__init__(
            message="User wallet not found",
            code="FHE_USER_NOT_FOUND",
            details={"user_id": user_id},
            request_id=request_id,
        )


class LedgerAnchorError(FheFieldError):
    """Raised by ledger clients when anchoring an encrypted field fails."""

    def __init__(self, reason: str, field_name: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(
            message=f"Ledger anchoring failed: {reason}",
            code="FHE_LEDGER_ANCHOR_FAILED",
            details={"field_name": field_name} if field_name else {},
            request_id=request_id,
        )


# =============================================================================
# Error Code Registry (for documentation and validation)
# =============================================================================

ERROR_CODES = {
    "FHE_INIT_FAILED": "Failed to initialize FHE system",
    "FHE_INVALID_SCHEME": "Invalid FHE scheme specified",
    "FHE_INVALID_CIPHERTEXT": "Invalid ciphertext format",
    "FHE_DECRYPT_FAILED": "Decryption operation failed",
    "FHE_KEY_NOT_FOUND": "FHE keys not found for user",
    "FHE_KEYGEN_FAILED": "Failed to generate FHE keys",
    "FHE_CUSTODIAN_FAILED": "Key custodian operation failed",
    "FHE_UNSUPPORTED_OPERATION": "Unsupported homomorphic operation",
    "FHE_ARITY": "Wrong number of operation inputs",
    "FHE_NOISE_OVERFLOW": "Noise level exceeded maximum threshold",
    "FHE_CIRCUIT_TOO_DEEP": "Circuit depth exceeds maximum",
    "FHE_CIRCUIT_DEPENDENCY": "Circuit wiring references an unbound wire",
    "FHE_CIRCUIT_NOT_FOUND": "Circuit not found",
    "FHE_BATCH_SIZE_EXCEEDED": "Batch size exceeds maximum limit",
    "FHE_USER_NOT_FOUND": "User wallet not found",
    "FHE_LEDGER_ANCHOR_FAILED": "Ledger anchoring failed",
    "FHE_INTERNAL_ERROR": "Internal error",
}

# Errors caused by the caller's input. Reported immediately, never retried.
CALLER_ERRORS = (
    InvalidSchemeError,
    InvalidCiphertextFormatError,
    UnsupportedOperationError,
    ArityError,
    CircuitDependencyError,
    CircuitTooDeepError,
    BatchSizeExceededError,
)


def validate_error_code(code: str) -> bool:
    """Validate that an error code is registered."""
    return code in ERROR_CODES


__all__ = [
    "FheFieldError",
    "InitializationFailedError",
    "InvalidSchemeError",
    "InvalidCiphertextFormatError",
    "DecryptionFailedError",
    "KeyNotFoundError",
    "KeyGenerationError",
    "CustodianError",
    "UnsupportedOperationError",
    "ArityError",
    "NoiseOverflowError",
    "CircuitTooDeepError",
    "CircuitDependencyError",
    "CircuitNotFoundError",
    "BatchSizeExceededError",
    "UserNotFoundError",
    "LedgerAnchorError",
    "CALLER_ERRORS",
    "ERROR_CODES",
    "validate_error_code",
]
