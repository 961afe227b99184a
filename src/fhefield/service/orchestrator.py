"""
Field encryption service.

Resolves users to cryptographic identities, obtains their key material from
the KeyStore and drives the homomorphic engine and circuit executor. All
engine work is submitted to the compute pool; the coroutines here only
coordinate.

Typical use:
    service = FieldEncryptionService(user_directory=users, ledger=ledger)
    await service.initialize()

    field = await service.encrypt_field("user-1", {"field_name": "salary", "value": 5000, "data_type": "number"})
    value = await service.decrypt_field("user-1", {
        "field_name": "salary",
        "encrypted_value": field.encrypted_value,
        "metadata": field.metadata,
        "original_data_type": "number",
    })
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from ..errors import (
    BatchSizeExceededError,
    CircuitNotFoundError,
    FheFieldError,
    InitializationFailedError,
    InvalidCiphertextFormatError,
    LedgerAnchorError,
    UserNotFoundError,
)
from ..hardening.recovery import BackoffStrategy, RetryConfig, RetryPolicy
from ..he.circuit import Circuit, CircuitCompiler, CircuitExecutor
from ..he.codec import compress, decompress, deserialize, pack, serialize, unpack
from ..he.core import Ciphertext, KeyPair
from ..he.engine import HomomorphicEngine
from ..he.keys import InMemoryKeyCustodian, KeyCustodian, KeyStore, KeyWrapper
from ..he.noise import NoiseEstimate, noise_estimate
from ..he.params import FheScheme, SecurityLevel, parameters_for, parse_scheme, validate_parameters
from ..he.pool import ComputePool
from ..logging import LogContext
from ..utils.config import FheFieldSettings, settings as default_settings
from .collaborators import (
    CircuitStore,
    InMemoryCircuitStore,
    InMemoryUserDirectory,
    LedgerClient,
    UserDirectory,
)
from .schemas import (
    BatchDecryption,
    BatchDecryptionResult,
    BatchEncryption,
    CiphertextMetadata,
    ComputationResult,
    DecryptionParams,
    EncryptedField,
    EncryptionParams,
    FieldDecryptionFailure,
    HomomorphicOperation,
    PackedEncryptedFields,
    StoredCircuit,
)
from .values import convert_from_plaintext, prepare_value

logger = logging.getLogger(__name__)


@dataclass
class ServiceMetrics:
    encryptions: int = 0
    decryptions: int = 0
    homomorphic_operations: int = 0
    bootstraps: int = 0
    circuits_created: int = 0
    circuits_executed: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class FieldEncryptionService:
    """
    Orchestrates field encryption, homomorphic computation and circuits.

    Collaborators default to in-memory implementations.
    """

    def __init__(
        self,
        custodian: Optional[KeyCustodian] = None,
        user_directory: Optional[UserDirectory] = None,
        ledger: Optional[LedgerClient] = None,
        circuit_store: Optional[CircuitStore] = None,
        config: Optional[FheFieldSettings] = None,
        wrapper: Optional[KeyWrapper] = None,
    ):
        self.config = config if config is not None else default_settings
        self.custodian = custodian if custodian is not None else InMemoryKeyCustodian()
        self.users = user_directory if user_directory is not None else InMemoryUserDirectory()
        self.ledger = ledger
        self.circuits = circuit_store if circuit_store is not None else InMemoryCircuitStore()
        self._wrapper = wrapper

        self.metrics = ServiceMetrics()
        self.engines: Dict[FheScheme, HomomorphicEngine] = {}
        self.pool: Optional[ComputePool] = None
        self.keys: Optional[KeyStore] = None
        self.compiler = CircuitCompiler(max_depth=self.config.MAX_CIRCUIT_DEPTH)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Bring up engines, worker pool and key store.

        Initialization failures are retried with exponential backoff and
        re-raised once retries are exhausted.
        """
        async with self._init_lock:
            if self._initialized:
                return
            policy = RetryPolicy(
                RetryConfig(
                    max_retries=self.config.INIT_MAX_RETRIES,
                    base_delay_seconds=self.config.INIT_RETRY_BASE_DELAY_SECONDS,
                    backoff_strategy=BackoffStrategy.EXPONENTIAL,
                    retryable_exceptions=(InitializationFailedError,),
                )
            )
            await policy.execute_async(self._bring_up)
            self._initialized = True
            logger.info(f"FHE system initialized ({', '.join(s.value for s in self.engines)})")

    async def _bring_up(self) -> None:
        logger.info("Initializing FHE system")
        engines = {}
        for scheme in FheScheme:
            params = parameters_for(scheme)
            validate_parameters(params)
            engines[scheme] = HomomorphicEngine(params)
        self.engines = engines

        if self.pool is None:
            self.pool = ComputePool(max_workers=self.config.WORKER_POOL_SIZE)
        if self.keys is None:
            self.keys = KeyStore(
                custodian=self.custodian,
                wrapper=self._wrapper if self._wrapper is not None else KeyWrapper(self.config.master_key()),
                engine_for=self.engine_for,
                pool=self.pool,
                key_ttl_seconds=self.config.KEY_CACHE_TTL_SECONDS,
                bootstrap_key_ttl_seconds=self.config.BOOTSTRAP_KEY_CACHE_TTL_SECONDS,
                custodian_max_retries=self.config.CUSTODIAN_MAX_RETRIES,
            )

    async def close(self) -> None:
        """Cancel in-flight key loads and shut the worker pool down."""
        if self.keys is not None:
            await self.keys.close()
            self.keys = None
        if self.pool is not None:
            self.pool.close()
            self.pool = None
        self._initialized = False
        logger.info("FHE system shut down")

    async def _ensure_ready(self) -> None:
        if not self._initialized:
            await self.initialize()

    def engine_for(self, scheme: FheScheme) -> HomomorphicEngine:
        engine = self.engines.get(scheme)
        if engine is None:
            raise InitializationFailedError("engine not initialized", scheme=scheme.value)
        return engine

    async def _resolve_identity(self, user_id: str) -> str:
        identity = await self.users.resolve_identity(user_id)
        if not identity:
            raise UserNotFoundError(user_id)
        return identity

    def _resolve_scheme(self, scheme: Optional[Union[FheScheme, str]]) -> FheScheme:
        """Requested scheme, or FHE_DEFAULT_SCHEME when the request names none."""
        if scheme is None:
            return parse_scheme(self.config.DEFAULT_SCHEME)
        return parse_scheme(scheme)

    def _check_batch_size(self, size: int) -> None:
        if size > self.config.MAX_BATCH_SIZE:
            raise BatchSizeExceededError(size, self.config.MAX_BATCH_SIZE)

    # -------------------------------------------------------------------------
    # Wire helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_wire(ciphertext: Ciphertext, compressed: bool) -> str:
        if compressed:
            return compress(ciphertext).decode("ascii")
        return serialize(ciphertext)

    @staticmethod
    def _from_wire(value: str, encoding: str) -> Ciphertext:
        if encoding == "compressed":
            return decompress(value)
        return deserialize(value)

    def _metadata(
        self,
        ciphertext: Ciphertext,
        scheme: FheScheme,
        security_level: Optional[SecurityLevel],
        bootstrappable: bool,
        compressed: bool,
    ) -> CiphertextMetadata:
        return CiphertextMetadata(
            scheme=scheme,
            security_level=security_level or SecurityLevel(self.config.DEFAULT_SECURITY_LEVEL),
            noise_level=ciphertext.noise_level,
            bootstrappable=bootstrappable,
            timestamp=_now_ms(),
            depth=ciphertext.multiplicative_depth,
            size=ciphertext.component_count,
            encoding="compressed" if compressed else "serialized",
        )

    async def _anchor(
        self, identity: str, field_name: str, wire: str, metadata: CiphertextMetadata
    ) -> Tuple[Optional[str], Optional[str]]:
        if self.ledger is None:
            logger.warning(f"On-ledger storage requested for {field_name} but no ledger client is configured")
            return None, "no ledger client configured"
        try:
            reference = await self.ledger.anchor(identity, field_name, wire, metadata.model_dump_json())
        except LedgerAnchorError as e:
            logger.error(f"Failed to anchor {field_name} for {identity}: {e.message}")
            return None, e.message
        logger.info(f"Encrypted field {field_name} anchored: {reference}")
        return reference, None

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    async def encrypt_field(self, user_id: str, params: Union[EncryptionParams, Dict[str, Any]]) -> EncryptedField:
        """Encrypt one field value under the user's key pair for ``params.scheme``."""
        params = EncryptionParams.model_validate(params)
        await self._ensure_ready()
        with LogContext(user_id=user_id, operation="encrypt_field"):
            logger.info(f"Encrypting field {params.field_name} for user {user_id}")
            identity = await self._resolve_identity(user_id)
            return await self._encrypt(identity, params, self._resolve_scheme(params.scheme), compressed=False)

    async def _encrypt(
        self, identity: str, params: EncryptionParams, scheme: FheScheme, compressed: bool
    ) -> EncryptedField:
        keys = await self.keys.get_or_generate_keys(identity, scheme)
        plaintext = prepare_value(params.value, params.data_type)
        ciphertext = await self.pool.run(self.engine_for(scheme).encrypt, plaintext, keys)

        wire = self._to_wire(ciphertext, compressed)
        metadata = self._metadata(
            ciphertext, scheme, params.security_level, params.allow_bootstrapping, compressed
        )
        reference, anchor_error = None, None
        if params.store_on_chain:
            reference, anchor_error = await self._anchor(identity, params.field_name, wire, metadata)

        self.metrics.encryptions += 1
        return EncryptedField(
            field_name=params.field_name,
            encrypted_value=wire,
            metadata=metadata,
            public_key_hash=keys.public_key_hash(),
            transaction_reference=reference,
            anchor_error=anchor_error,
        )

    async def decrypt_field(self, user_id: str, params: Union[DecryptionParams, Dict[str, Any]]) -> Any:
        """
        Decrypt one field and convert it back to its original type.

        Raises:
            UserNotFoundError: unknown user
            KeyNotFoundError: the user has no keys for the metadata's scheme
            InvalidCiphertextFormatError: malformed ciphertext
        """
        params = DecryptionParams.model_validate(params)
        await self._ensure_ready()
        with LogContext(user_id=user_id, operation="decrypt_field"):
            logger.info(f"Decrypting field {params.field_name} for user {user_id}")
            identity = await self._resolve_identity(user_id)
            return await self._decrypt(identity, params)

    async def _decrypt(self, identity: str, params: DecryptionParams) -> Any:
        scheme = params.metadata.scheme
        keys = await self.keys.retrieve_keys(identity, scheme)
        ciphertext = self._from_wire(params.encrypted_value, params.metadata.encoding)
        plaintext = await self.pool.run(self.engine_for(scheme).decrypt, ciphertext, keys, params.verify)
        self.metrics.decryptions += 1
        return convert_from_plaintext(plaintext, params.original_data_type)

    # -------------------------------------------------------------------------
    # Homomorphic operations
    # -------------------------------------------------------------------------

    async def perform_homomorphic_operation(
        self, user_id: str, operation: Union[HomomorphicOperation, Dict[str, Any]]
    ) -> ComputationResult:
        """
        Apply one operation to serialized ciphertexts.

        With ``auto_bootstrap`` an exhausted result is refreshed before it is
        returned; without it NoiseOverflowError is raised.
        """
        operation = HomomorphicOperation.model_validate(operation)
        await self._ensure_ready()
        with LogContext(user_id=user_id, operation=operation.type):
            logger.info(f"Performing {operation.type} operation for user {user_id}")
            identity = await self._resolve_identity(user_id)
            scheme = self._resolve_scheme(operation.scheme)
            engine = self.engine_for(scheme)

            inputs = [deserialize(value) for value in operation.inputs]
            keys = await self.keys.get_or_generate_keys(identity, scheme)
            bootstrapping_key = None
            if operation.type == "bootstrap" or operation.auto_bootstrap:
                bootstrapping_key = await self.keys.get_bootstrapping_key(keys.evaluation_key, scheme)

            started = time.perf_counter()
            evaluation = await self.pool.run(
                engine.evaluate,
                operation.type,
                inputs,
                rotation_amount=operation.rotation_amount,
                auto_bootstrap=operation.auto_bootstrap,
                bootstrapping_key=bootstrapping_key,
            )
            elapsed_ms = (time.perf_counter() - started) * 1000.0

            self.metrics.homomorphic_operations += 1
            if evaluation.bootstrapped or operation.type == "bootstrap":
                self.metrics.bootstraps += 1

            result = evaluation.ciphertext
            return ComputationResult(
                result=serialize(result),
                operation_type=operation.type,
                computation_time_ms=elapsed_ms,
                noise_level=result.noise_level,
                bootstrapped=evaluation.bootstrapped,
            )

    def get_noise_estimate(self, serialized_ciphertext: str) -> NoiseEstimate:
        """Noise budget report for a serialized ciphertext."""
        return noise_estimate(deserialize(serialized_ciphertext))

    # -------------------------------------------------------------------------
    # Circuits
    # -------------------------------------------------------------------------

    async def create_circuit(self, user_id: str, circuit: Union[Circuit, Dict[str, Any]]) -> str:
        """Validate and persist a circuit. Returns its identifier."""
        circuit = Circuit.model_validate(circuit)
        with LogContext(user_id=user_id, operation="create_circuit"):
            logger.info(f"Creating FHE circuit {circuit.name} for user {user_id}")
            identity = await self._resolve_identity(user_id)
            plan = self.compiler.compile(circuit)

            seed = f"{identity}-{circuit.name}-{time.time_ns()}"
            circuit_id = "0x" + hashlib.sha256(seed.encode()).hexdigest()
            await self.circuits.save(
                StoredCircuit(
                    circuit_id=circuit_id,
                    owner=identity,
                    circuit=circuit.model_dump(),
                    plan=plan.to_dict(),
                    created_at=datetime.utcnow(),
                )
            )
            self.metrics.circuits_created += 1
            logger.info(f"Stored circuit {circuit_id}: {circuit.name} (depth {plan.depth})")
            return circuit_id

    async def execute_circuit(
        self,
        user_id: str,
        circuit_id: str,
        encrypted_inputs: Dict[str, str],
        scheme: Optional[Union[FheScheme, str]] = None,
    ) -> Dict[str, str]:
        """
        Execute a stored circuit over serialized inputs.

        Raises:
            CircuitNotFoundError: unknown id, or the circuit belongs to another identity
            CircuitDependencyError: inputs do not match the circuit's declared inputs
        """
        scheme = self._resolve_scheme(scheme)
        await self._ensure_ready()
        with LogContext(user_id=user_id, operation="execute_circuit", circuit_id=circuit_id):
            logger.info(f"Executing circuit {circuit_id} for user {user_id}")
            identity = await self._resolve_identity(user_id)

            record = await self.circuits.load(circuit_id)
            if record is None or record.owner != identity:
                raise CircuitNotFoundError(circuit_id)
            circuit = Circuit.model_validate(record.circuit)

            inputs = {name: deserialize(value) for name, value in encrypted_inputs.items()}
            keys = await self.keys.get_or_generate_keys(identity, scheme)
            bootstrapping_key = await self.keys.get_bootstrapping_key(keys.evaluation_key, scheme)

            executor = CircuitExecutor(self.engine_for(scheme), max_depth=self.config.MAX_CIRCUIT_DEPTH)
            outputs = await self.pool.run(executor.execute, circuit, inputs, bootstrapping_key)

            self.metrics.circuits_executed += 1
            return {name: serialize(ciphertext) for name, ciphertext in outputs.items()}

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def batch_encrypt(
        self, user_id: str, batch: Union[BatchEncryption, Dict[str, Any]]
    ) -> Union[List[EncryptedField], PackedEncryptedFields]:
        """
        Encrypt up to MAX_BATCH_SIZE fields under ``common_scheme``.

        With ``packed_encryption`` all values are length-prefix packed into a
        single ciphertext, limited by the scheme's SIMD slot count.
        """
        batch = BatchEncryption.model_validate(batch)
        self._check_batch_size(len(batch.fields))
        await self._ensure_ready()

        with LogContext(user_id=user_id, operation="batch_encrypt"):
            logger.info(f"Batch encrypting {len(batch.fields)} fields for user {user_id}")
            identity = await self._resolve_identity(user_id)
            scheme = self._resolve_scheme(batch.common_scheme)

            if batch.packed_encryption:
                return await self._encrypt_packed(identity, batch, scheme)

            calls = [
                self._encrypt(identity, field_params, scheme, compressed=batch.compression_enabled)
                for field_params in batch.fields
            ]
            return list(await asyncio.wait_for(asyncio.gather(*calls), self.config.BATCH_TIMEOUT_SECONDS))

    async def _encrypt_packed(
        self, identity: str, batch: BatchEncryption, scheme: FheScheme
    ) -> PackedEncryptedFields:
        slots = parameters_for(scheme).simd_slots
        if len(batch.fields) > slots:
            raise BatchSizeExceededError(len(batch.fields), slots)

        keys: KeyPair = await self.keys.get_or_generate_keys(identity, scheme)
        packed = pack([prepare_value(f.value, f.data_type) for f in batch.fields])
        ciphertext = await self.pool.run(self.engine_for(scheme).encrypt, packed, keys)

        self.metrics.encryptions += 1
        return PackedEncryptedFields(
            field_names=[f.field_name for f in batch.fields],
            data_types=[f.data_type for f in batch.fields],
            encrypted_value=self._to_wire(ciphertext, batch.compression_enabled),
            metadata=self._metadata(
                ciphertext,
                scheme,
                None,
                any(f.allow_bootstrapping for f in batch.fields),
                batch.compression_enabled,
            ),
            public_key_hash=keys.public_key_hash(),
        )

    async def decrypt_packed(
        self, user_id: str, packed: Union[PackedEncryptedFields, Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Decrypt a packed ciphertext back into ``{field_name: value}``."""
        packed = PackedEncryptedFields.model_validate(packed)
        await self._ensure_ready()
        with LogContext(user_id=user_id, operation="decrypt_packed"):
            identity = await self._resolve_identity(user_id)
            scheme = packed.metadata.scheme
            keys = await self.keys.retrieve_keys(identity, scheme)
            ciphertext = self._from_wire(packed.encrypted_value, packed.metadata.encoding)
            plaintext = await self.pool.run(self.engine_for(scheme).decrypt, ciphertext, keys)

            values = unpack(plaintext)
            if len(values) != len(packed.field_names):
                raise InvalidCiphertextFormatError(
                    f"packed ciphertext holds {len(values)} values, expected {len(packed.field_names)}",
                    "packed",
                )
            self.metrics.decryptions += 1
            return {
                name: convert_from_plaintext(value, data_type)
                for name, data_type, value in zip(packed.field_names, packed.data_types, values)
            }

    async def batch_decrypt(
        self, user_id: str, batch: Union[BatchDecryption, Dict[str, Any]]
    ) -> BatchDecryptionResult:
        """
        Decrypt up to MAX_BATCH_SIZE fields.

        ``error_handling="fail"`` raises the first failure in input order;
        ``"skip"`` records failures and returns the fields that succeeded.
        """
        batch = BatchDecryption.model_validate(batch)
        self._check_batch_size(len(batch.fields))
        await self._ensure_ready()

        with LogContext(user_id=user_id, operation="batch_decrypt"):
            logger.info(f"Batch decrypting {len(batch.fields)} fields for user {user_id}")
            identity = await self._resolve_identity(user_id)

            if batch.parallel_processing:
                gathered = asyncio.gather(
                    *(self._decrypt(identity, f) for f in batch.fields), return_exceptions=True
                )
                outcomes = await asyncio.wait_for(gathered, self.config.BATCH_TIMEOUT_SECONDS)
            else:
                outcomes = []
                for field_params in batch.fields:
                    try:
                        outcomes.append(await self._decrypt(identity, field_params))
                    except FheFieldError as e:
                        outcomes.append(e)

            result = BatchDecryptionResult()
            for field_params, outcome in zip(batch.fields, outcomes):
                if isinstance(outcome, FheFieldError):
                    if batch.error_handling == "fail":
                        raise outcome
                    logger.warning(f"Skipping field {field_params.field_name}: {outcome.code}")
                    result.failures.append(
                        FieldDecryptionFailure(
                            field_name=field_params.field_name, code=outcome.code, message=outcome.message
                        )
                    )
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result.values[field_params.field_name] = outcome
            return result

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = asdict(self.metrics)
        if self.keys is not None:
            metrics.update(self.keys.stats())
        metrics["worker_pool_size"] = self.pool.max_workers if self.pool is not None else 0
        metrics["initialized"] = self._initialized
        return metrics


__all__ = ["ServiceMetrics", "FieldEncryptionService"]
