"""
Key custody and caching.

Key Flow:
    1. KeyStore.get_or_generate_keys(identity, scheme) checks the key cache
    2. On a miss it asks the KeyCustodian for a stored record
    3. On a miss there too, the engine generates a KeyPair; the private and
       evaluation keys are wrapped with AES-GCM before being handed to the
       custodian, and the pair is cached

The custodian never sees unwrapped private or evaluation key bytes.
Bootstrapping keys are derived from the evaluation key and cached by
(evaluation key digest, scheme).
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CustodianError, FheFieldError, KeyGenerationError, KeyNotFoundError
from ..hardening.recovery import BackoffStrategy, RetryConfig, RetryPolicy
from .cache import SingleFlightCache
from .core import BootstrappingKey, KeyPair
from .engine import HomomorphicEngine
from .params import FheScheme
from .pool import ComputePool

logger = logging.getLogger(__name__)


class KeyWrapper:
    """AES-GCM wrapping of secret key material under a 32-byte master key."""

    NONCE_SIZE = 12  # AES-GCM nonce

    def __init__(self, master_key: Optional[bytes] = None):
        if master_key is None:
            self._master_key = AESGCM.generate_key(bit_length=256)
            logger.warning("Generated ephemeral master key - set FHE_MASTER_KEY_HEX in production")
        else:
            if len(master_key) != 32:
                raise ValueError("Master key must be 32 bytes")
            self._master_key = master_key

    def wrap(self, key: bytes, associated_data: Optional[bytes] = None) -> bytes:
        """Encrypt ``key``; output is nonce || ciphertext || tag."""
        nonce = secrets.token_bytes(self.NONCE_SIZE)
        return nonce + AESGCM(self._master_key).encrypt(nonce, key, associated_data)

    def unwrap(self, wrapped: bytes, associated_data: Optional[bytes] = None) -> bytes:
        nonce = wrapped[: self.NONCE_SIZE]
        ciphertext = wrapped[self.NONCE_SIZE :]
        return AESGCM(self._master_key).decrypt(nonce, ciphertext, associated_data)


@dataclass(frozen=True)
class StoredKeyRecord:
    """What the custodian holds for one (identity, scheme)."""

    identity: str
    scheme: FheScheme
    public_key: bytes
    encrypted_private_key: bytes
    encrypted_evaluation_key: bytes
    generated_at: datetime


@runtime_checkable
class KeyCustodian(Protocol):
    """
    Durable store of wrapped key material.

    Implementations raise CustodianError for I/O failures; those are retried
    with backoff by the KeyStore.
    """

    async def store_keys(
        self,
        identity: str,
        public_key: bytes,
        encrypted_private_key: bytes,
        encrypted_evaluation_key: bytes,
        scheme: FheScheme,
        generated_at: datetime,
    ) -> None: ...

    async def retrieve_keys(self, identity: str, scheme: FheScheme) -> Optional[StoredKeyRecord]: ...


class InMemoryKeyCustodian:
    """Process-local custodian for development and tests."""

    def __init__(self):
        self._records: Dict[Tuple[str, FheScheme], StoredKeyRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def store_keys(
        self,
        identity: str,
        public_key: bytes,
        encrypted_private_key: bytes,
        encrypted_evaluation_key: bytes,
        scheme: FheScheme,
        generated_at: datetime,
    ) -> None:
        self._records[(identity, scheme)] = StoredKeyRecord(
            identity=identity,
            scheme=scheme,
            public_key=public_key,
            encrypted_private_key=encrypted_private_key,
            encrypted_evaluation_key=encrypted_evaluation_key,
            generated_at=generated_at,
        )

    async def retrieve_keys(self, identity: str, scheme: FheScheme) -> Optional[StoredKeyRecord]:
        return self._records.get((identity, scheme))


def _associated_data(identity: str, scheme: FheScheme, key_type: str) -> bytes:
    # Binds wrapped material to its owner so records cannot be swapped
    return f"{identity}|{scheme.value}|{key_type}".encode()


class KeyStore:
    """
    Owner of the key and bootstrapping-key caches.

    Both caches are single-flight: concurrent requests for one cache key
    trigger one custodian lookup or generation. Entries expire after their
    TTL and are reloaded on the next request.
    """

    def __init__(
        self,
        custodian: KeyCustodian,
        wrapper: Optional[KeyWrapper] = None,
        engine_for: Optional[Callable[[FheScheme], HomomorphicEngine]] = None,
        pool: Optional[ComputePool] = None,
        key_ttl_seconds: float = 3600.0,
        bootstrap_key_ttl_seconds: float = 7200.0,
        custodian_max_retries: int = 2,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._custodian = custodian
        self._wrapper = wrapper if wrapper is not None else KeyWrapper()
        self._engines: Dict[FheScheme, HomomorphicEngine] = {}
        self._engine_for = engine_for or self._default_engine
        self._pool = pool

        cache_kwargs = {"clock": clock} if clock is not None else {}
        self.key_cache: SingleFlightCache[Tuple[str, FheScheme], KeyPair] = SingleFlightCache(
            key_ttl_seconds, name="key-cache", **cache_kwargs
        )
        self.bootstrap_key_cache: SingleFlightCache[Tuple[str, FheScheme], BootstrappingKey] = SingleFlightCache(
            bootstrap_key_ttl_seconds, name="bootstrap-key-cache", **cache_kwargs
        )
        self._retry = RetryPolicy(
            RetryConfig(
                max_retries=custodian_max_retries,
                base_delay_seconds=0.05,
                max_delay_seconds=2.0,
                backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER,
                retryable_exceptions=(CustodianError,),
            )
        )

    def _default_engine(self, scheme: FheScheme) -> HomomorphicEngine:
        engine = self._engines.get(scheme)
        if engine is None:
            engine = self._engines[scheme] = HomomorphicEngine(scheme)
        return engine

    async def _run(self, fn, *args):
        if self._pool is not None:
            return await self._pool.run(fn, *args)
        return fn(*args)

    # -------------------------------------------------------------------------
    # Key pairs
    # -------------------------------------------------------------------------

    async def get_or_generate_keys(self, identity: str, scheme: FheScheme) -> KeyPair:
        """Cached key pair for (identity, scheme), generated and stored on first use."""

        async def load() -> KeyPair:
            keys = await self._load_from_custodian(identity, scheme)
            if keys is not None:
                return keys
            return await self._generate_and_store(identity, scheme)

        return await self.key_cache.get_or_load((identity, scheme), load)

    async def retrieve_keys(self, identity: str, scheme: FheScheme) -> KeyPair:
        """
        Cached or stored key pair; never generates.

        Raises:
            KeyNotFoundError: no key material exists for (identity, scheme)
        """

        async def load() -> KeyPair:
            keys = await self._load_from_custodian(identity, scheme)
            if keys is None:
                raise KeyNotFoundError(identity, scheme=scheme.value)
            return keys

        # Separate flight: a concurrent get_or_generate_keys must not receive
        # this lookup's KeyNotFoundError
        return await self.key_cache.get_or_load((identity, scheme), load, flight="retrieve")

    async def _load_from_custodian(self, identity: str, scheme: FheScheme) -> Optional[KeyPair]:
        record = await self._retry.execute_async(self._custodian.retrieve_keys, identity, scheme)
        if record is None:
            return None
        try:
            private_key = self._wrapper.unwrap(
                record.encrypted_private_key, _associated_data(identity, scheme, "private")
            )
            evaluation_key = self._wrapper.unwrap(
                record.encrypted_evaluation_key, _associated_data(identity, scheme, "evaluation")
            )
        except InvalidTag:
            raise CustodianError("stored key material failed authentication", "retrieve") from None

        keys = KeyPair(
            public_key=record.public_key,
            private_key=private_key,
            evaluation_key=evaluation_key,
            scheme=scheme,
            generated_at=record.generated_at,
        )
        logger.debug(f"Loaded {scheme.value} keys {keys.get_fingerprint()} for {identity}")
        return keys

    async def _generate_and_store(self, identity: str, scheme: FheScheme) -> KeyPair:
        engine = self._engine_for(scheme)
        try:
            keys = await self._run(engine.generate_keys)
        except FheFieldError:
            raise
        except Exception as e:
            raise KeyGenerationError(str(e), scheme=scheme.value) from e

        try:
            await self._retry.execute_async(
                self._custodian.store_keys,
                identity,
                keys.public_key,
                self._wrapper.wrap(keys.private_key, _associated_data(identity, scheme, "private")),
                self._wrapper.wrap(keys.evaluation_key, _associated_data(identity, scheme, "evaluation")),
                scheme,
                keys.generated_at,
            )
        except CustodianError as e:
            raise KeyGenerationError(f"could not persist new keys: {e.message}", scheme=scheme.value) from e

        logger.info(f"Generated and stored {scheme.value} keys {keys.get_fingerprint()} for {identity}")
        return keys

    # -------------------------------------------------------------------------
    # Bootstrapping keys
    # -------------------------------------------------------------------------

    async def get_bootstrapping_key(self, evaluation_key: bytes, scheme: FheScheme) -> BootstrappingKey:
        """Cached bootstrapping key for (evaluation key digest, scheme)."""
        digest = hashlib.sha256(evaluation_key).hexdigest()
        engine = self._engine_for(scheme)

        async def load() -> BootstrappingKey:
            key = await self._run(engine.derive_bootstrapping_key, evaluation_key)
            logger.debug(f"Derived {scheme.value} bootstrapping key {key.get_fingerprint()}")
            return key

        return await self.bootstrap_key_cache.get_or_load((digest, scheme), load)

    def stats(self) -> Dict[str, int]:
        return {
            "key_cache_hits": self.key_cache.hits,
            "key_cache_misses": self.key_cache.misses,
            "bootstrap_key_cache_hits": self.bootstrap_key_cache.hits,
            "bootstrap_key_cache_misses": self.bootstrap_key_cache.misses,
        }

    async def close(self) -> None:
        await self.key_cache.close()
        await self.bootstrap_key_cache.close()


__all__ = [
    "KeyWrapper",
    "StoredKeyRecord",
    "KeyCustodian",
    "InMemoryKeyCustodian",
    "KeyStore",
]
