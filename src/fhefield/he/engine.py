"""
Homomorphic engine.

Ciphertext algebra over the accounting model in ``fhefield.he.core``. Every
operation is a pure function of its operands: inputs are never mutated and
a new Ciphertext is returned, so the engine may be shared by worker threads
without locking.

Payload transforms:
    add        byte-wise sum mod 256, shorter operand zero-padded
    multiply   schoolbook convolution mod 256, length len(a) + len(b)
    negate     (256 - b) mod 256
    rotate     cyclic shift right by amount mod len(payload)

Noise, depth and size follow the scheme's growth factors (see
``SchemeParameters.growth_factors``).
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from ..errors import ArityError, NoiseOverflowError, UnsupportedOperationError
from .codec import decode, encode
from .constants import (
    BASE_NOISE,
    EVALUATION_KEY_SIZE,
    FRESH_CIPHERTEXT_SIZE,
    MAX_NOISE_LEVEL,
    PRIVATE_KEY_SIZE,
    PUBLIC_KEY_SIZE,
)
from .core import BootstrappingKey, Ciphertext, KeyPair, derive_keystream_seed
from .noise import is_exhausted
from .params import FheScheme, SchemeParameters, bootstrap_parameters_for, parameters_for

logger = logging.getLogger(__name__)

# Operations accepted by ``evaluate`` and by circuit gates
SUPPORTED_OPERATIONS = ("add", "multiply", "subtract", "negate", "rotate", "bootstrap")

# operation -> (minimum inputs, maximum inputs or None for unbounded)
OPERATION_ARITY = {
    "add": (2, None),
    "multiply": (2, None),
    "subtract": (2, 2),
    "negate": (1, 1),
    "rotate": (1, 1),
    "bootstrap": (1, 1),
}


def describe_arity(operation: str) -> str:
    low, high = OPERATION_ARITY[operation]
    if high is None:
        return f"at least {low}"
    return f"exactly {low}"


def check_arity(operation: str, count: int) -> None:
    """Raise ArityError if ``count`` inputs is wrong for ``operation``."""
    low, high = OPERATION_ARITY[operation]
    if count < low or (high is not None and count > high):
        raise ArityError(operation, describe_arity(operation), count)


def generate_key_switching_key(old_key: bytes, new_key: bytes) -> bytes:
    """One-way digest of ``old_key || new_key``."""
    return hashlib.sha256(bytes(old_key) + bytes(new_key)).digest()


def _as_array(payload: bytes) -> np.ndarray:
    return np.frombuffer(payload, dtype=np.uint8).astype(np.int64)


@dataclass(frozen=True)
class Evaluation:
    """Result of ``HomomorphicEngine.evaluate``."""

    ciphertext: Ciphertext
    operation: str
    bootstrapped: bool = False


class HomomorphicEngine:
    """
    Ciphertext algebra for one scheme.

    Example:
        engine = HomomorphicEngine(FheScheme.TFHE)
        keys = engine.generate_keys()
        a = engine.encrypt(b"\\x01", keys)
        b = engine.encrypt(b"\\x02", keys)
        c = engine.add(a, b)
    """

    def __init__(self, scheme: Union[FheScheme, SchemeParameters] = FheScheme.TFHE):
        if isinstance(scheme, SchemeParameters):
            self.params = scheme
        else:
            self.params = parameters_for(scheme)
        self.growth = self.params.growth_factors

    @property
    def scheme(self) -> FheScheme:
        return self.params.scheme

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def generate_keys(self) -> KeyPair:
        """Generate a fresh key pair for this engine's scheme."""
        private_key = secrets.token_bytes(PRIVATE_KEY_SIZE)
        public_key = hashlib.sha256(b"public:" + private_key).digest()
        public_key += secrets.token_bytes(PUBLIC_KEY_SIZE - len(public_key))
        evaluation_key = hashlib.sha256(b"evaluation:" + private_key).digest()
        evaluation_key += secrets.token_bytes(EVALUATION_KEY_SIZE - len(evaluation_key))

        keys = KeyPair(
            public_key=public_key,
            private_key=private_key,
            evaluation_key=evaluation_key,
            scheme=self.scheme,
        )
        logger.info(f"Generated {self.scheme.value} key pair {keys.get_fingerprint()}")
        return keys

    def derive_bootstrapping_key(self, evaluation_key: bytes) -> BootstrappingKey:
        """
        Derive the bootstrapping key for ``evaluation_key``.

        Deterministic in (evaluation key, scheme parameters), so repeated
        derivations for the same key agree.
        """
        sizing = bootstrap_parameters_for(self.scheme)
        material = bytes(evaluation_key) + self.params.get_hash().encode()

        key = hashlib.shake_256(b"bootstrap:" + material).digest(sizing.key_size)
        refreshing_key = hashlib.shake_256(b"refresh:" + material).digest(sizing.refreshing_key_size)
        return BootstrappingKey(
            key=key,
            scheme=self.scheme,
            refreshing_key=refreshing_key,
            key_switching_key=generate_key_switching_key(evaluation_key, key),
            evaluation_key_digest=hashlib.sha256(evaluation_key).hexdigest(),
        )

    def key_switch(self, ciphertext: Ciphertext, key_switching_key: bytes) -> Ciphertext:
        """Re-encryption under a new key is not available."""
        raise UnsupportedOperationError(
            "key_switch", "only key-switching key derivation is available"
        )

    # -------------------------------------------------------------------------
    # Encryption
    # -------------------------------------------------------------------------

    def encrypt(self, plaintext: bytes, keys: KeyPair) -> Ciphertext:
        """Encrypt plaintext bytes under ``keys`` with the scheme's noise deviation."""
        return encode(plaintext, self.params.noise_std_dev, derive_keystream_seed(keys.public_key))

    def decrypt(self, ciphertext: Ciphertext, keys: KeyPair, verify: bool = False) -> bytes:
        return decode(ciphertext, derive_keystream_seed(keys.public_key), verify=verify)

    # -------------------------------------------------------------------------
    # Algebra
    # -------------------------------------------------------------------------

    def add(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        """Homomorphic addition."""
        length = max(len(a.payload), len(b.payload))
        result = np.zeros(length, dtype=np.int64)
        result[: len(a.payload)] += _as_array(a.payload)
        result[: len(b.payload)] += _as_array(b.payload)

        return Ciphertext(
            payload=(result % 256).astype(np.uint8).tobytes(),
            noise_level=a.noise_level + b.noise_level + self.growth.add,
            multiplicative_depth=max(a.multiplicative_depth, b.multiplicative_depth),
            component_count=a.component_count,
        )

    def multiply(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        """
        Homomorphic multiplication.

        Size grows to ``a.size + b.size``; callers chaining multiplications
        should use ``multiply_chain``, which relinearizes.
        """
        length = len(a.payload) + len(b.payload)
        result = np.zeros(length, dtype=np.int64)
        if a.payload and b.payload:
            product = np.convolve(_as_array(a.payload), _as_array(b.payload))
            result[: product.size] = product

        return Ciphertext(
            payload=(result % 256).astype(np.uint8).tobytes(),
            noise_level=a.noise_level * b.noise_level * self.growth.multiply,
            multiplicative_depth=max(a.multiplicative_depth, b.multiplicative_depth) + 1,
            component_count=a.component_count + b.component_count,
        )

    def negate(self, a: Ciphertext) -> Ciphertext:
        """Homomorphic negation. Noise grows by the additive factor."""
        result = (256 - _as_array(a.payload)) % 256
        return a.evolve(
            payload=result.astype(np.uint8).tobytes(),
            noise_level=a.noise_level * self.growth.add,
        )

    def rotate(self, a: Ciphertext, amount: int = 1) -> Ciphertext:
        """Cyclic shift of payload bytes by ``amount`` positions."""
        data = np.frombuffer(a.payload, dtype=np.uint8)
        if data.size:
            data = np.roll(data, int(amount) % data.size)
        return a.evolve(
            payload=data.tobytes(),
            noise_level=a.noise_level * self.growth.rotate,
        )

    def relinearize(self, a: Ciphertext) -> Ciphertext:
        """Reduce the component count back to the fresh size."""
        return a.evolve(component_count=FRESH_CIPHERTEXT_SIZE, relinearized=True)

    def bootstrap(self, a: Ciphertext, bootstrapping_key: Optional[BootstrappingKey] = None) -> Ciphertext:
        """
        Refresh the noise budget.

        Noise resets to BASE_NOISE and depth to 0; the payload is unchanged.
        Idempotent on an already-bootstrapped ciphertext.
        """
        if bootstrapping_key is not None and bootstrapping_key.scheme != self.scheme:
            raise UnsupportedOperationError(
                "bootstrap",
                f"bootstrapping key is for {bootstrapping_key.scheme.value}, engine is {self.scheme.value}",
            )
        return a.evolve(noise_level=BASE_NOISE, multiplicative_depth=0, bootstrapped=True)

    def modulus_switch(self, a: Ciphertext, from_modulus: int, to_modulus: int) -> Ciphertext:
        """
        Rescale payload and noise by ``to_modulus / from_modulus``.

        Depth is unchanged. Noise never drops below BASE_NOISE.
        """
        if from_modulus <= 0 or to_modulus <= 0:
            raise ValueError("moduli must be positive")
        ratio = to_modulus / from_modulus
        scaled = np.floor(_as_array(a.payload) * ratio).astype(np.int64) % 256
        return a.evolve(
            payload=scaled.astype(np.uint8).tobytes(),
            noise_level=max(BASE_NOISE, a.noise_level * ratio),
        )

    def subtract(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        """``a + (-b)``."""
        return self.add(a, self.negate(b))

    def add_many(self, inputs: Sequence[Ciphertext]) -> Ciphertext:
        check_arity("add", len(inputs))
        result = inputs[0]
        for operand in inputs[1:]:
            result = self.add(result, operand)
        return result

    def multiply_chain(self, inputs: Sequence[Ciphertext]) -> Ciphertext:
        """
        Left-to-right product, relinearizing whenever the size exceeds the
        maximum so every intermediate result can be multiplied again.
        """
        check_arity("multiply", len(inputs))
        result = inputs[0]
        for operand in inputs[1:]:
            result = self.multiply(result, operand)
            if result.needs_relinearization:
                result = self.relinearize(result)
        return result

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def evaluate(
        self,
        operation: str,
        inputs: Sequence[Ciphertext],
        rotation_amount: int = 1,
        auto_bootstrap: bool = False,
        bootstrapping_key: Optional[BootstrappingKey] = None,
    ) -> Evaluation:
        """
        Apply ``operation`` and enforce the noise budget.

        If the result is exhausted it is bootstrapped when ``auto_bootstrap``
        is set; otherwise NoiseOverflowError is raised.

        Raises:
            UnsupportedOperationError: unknown operation
            ArityError: wrong number of inputs
            NoiseOverflowError: exhausted result without auto-bootstrap
        """
        if operation not in OPERATION_ARITY:
            raise UnsupportedOperationError(operation)
        check_arity(operation, len(inputs))

        if operation == "add":
            result = self.add_many(inputs)
        elif operation == "multiply":
            result = self.multiply_chain(inputs)
        elif operation == "subtract":
            result = self.subtract(inputs[0], inputs[1])
        elif operation == "negate":
            result = self.negate(inputs[0])
        elif operation == "rotate":
            result = self.rotate(inputs[0], rotation_amount)
        else:
            result = self.bootstrap(inputs[0], bootstrapping_key)

        if not is_exhausted(result.noise_level):
            return Evaluation(ciphertext=result, operation=operation)

        if not auto_bootstrap:
            raise NoiseOverflowError(result.noise_level, MAX_NOISE_LEVEL, operation=operation)

        logger.info(
            f"Noise {result.noise_level:.2f} exceeded {MAX_NOISE_LEVEL} after {operation}, bootstrapping"
        )
        return Evaluation(
            ciphertext=self.bootstrap(result, bootstrapping_key),
            operation=operation,
            bootstrapped=True,
        )


__all__ = [
    "SUPPORTED_OPERATIONS",
    "OPERATION_ARITY",
    "check_arity",
    "describe_arity",
    "generate_key_switching_key",
    "Evaluation",
    "HomomorphicEngine",
]
