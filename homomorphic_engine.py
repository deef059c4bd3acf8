"""
Homomorphic Encryption Engine

Public entry point composing the randomness service, the scheme engines, the
key manager, the operation dispatcher, the zero-knowledge proof subsystem and
the lifecycle notifier.

Usage:
    with create_homomorphic_engine({"keySizeBits": 1024}) as engine:
        a = engine.encrypt(7)
        b = engine.encrypt(5)
        total = engine.decrypt(engine.combine("add", a, b))  # 12
"""

import asyncio
import functools
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple, Union

from he_config import EngineConfig
from he_dispatcher import HomomorphicOperationDispatcher
from he_errors import FeatureDisabledError, OperationTimeoutError
from he_key_manager import HEKeyManager, KeyRotationScheduler
from he_logging import get_logger
from homomorphic_encryption import create_scheme_engines
from lifecycle_events import LifecycleNotifier
from secure_randomness import RandomnessToken, SecureRandomnessService
from zero_knowledge_proofs import PedersenParameters, ProofRecord, ZeroKnowledgeProofSystem

engine_logger = get_logger("homomorphic_engine")


class HomomorphicEncryptionEngine:
    """
    Homomorphic encryption service: key management, encryption, computation
    on ciphertexts, zero-knowledge proofs and lifecycle notifications.
    """

    def __init__(self, config: Union[EngineConfig, Mapping[str, Any], None] = None,
                 listeners: Optional[Iterable[Callable]] = None,
                 zk_parameters: Optional[PedersenParameters] = None):
        """
        Initialize the engine.

        Args:
            config: EngineConfig, or a mapping of options, or None for defaults
            listeners: Lifecycle listeners to subscribe before any key is generated
            zk_parameters: Pedersen parameters to use instead of generating them
        """
        if isinstance(config, EngineConfig):
            config.validate()
        else:
            config = EngineConfig.from_dict(config)
        self.config = config

        self.notifier = LifecycleNotifier()
        for listener in listeners or ():
            self.notifier.subscribe(listener)

        self.randomness = SecureRandomnessService(
            required=config.secure_randomness_required,
            audit_size=config.randomness_audit_size
        )
        self.engines = create_scheme_engines(
            self.randomness,
            subgroup_bits=config.elgamal_subgroup_bits,
            primality_rounds=config.primality_rounds
        )
        self.key_manager = HEKeyManager(
            self.engines, self.randomness, self.notifier, default_key_bits=config.key_size_bits)
        self.dispatcher = HomomorphicOperationDispatcher(
            self.key_manager, self.engines, self.notifier,
            default_scheme=config.scheme, batch_size=config.batch_size)

        self._zk_parameters = zk_parameters
        self._zk: Optional[ZeroKnowledgeProofSystem] = None
        self._zk_lock = threading.Lock()

        self._gate = threading.BoundedSemaphore(config.max_concurrent_operations)
        self._metrics_lock = threading.Lock()
        self._metrics = {
            'total_encryptions': 0,
            'total_decryptions': 0,
            'total_operations': 0,
            'average_operation_time': 0.0,
            'zero_knowledge_proofs': 0,
            'secure_randomness_generated': 0,
            'operation_timeouts': 0,
        }
        self._started = time.monotonic()
        self._closed = False

        if config.generate_initial_key:
            self.key_manager.generate_key_pair(config.scheme, config.key_size_bits)

        self._scheduler: Optional[KeyRotationScheduler] = None
        if config.key_rotation_enabled:
            self._scheduler = KeyRotationScheduler(self.key_manager, config.key_rotation_interval)
            self._scheduler.start()

        engine_logger.info(
            f"Homomorphic encryption engine initialized (scheme={config.scheme}, "
            f"key_size={config.key_size_bits}, max_concurrent={config.max_concurrent_operations})")

    # ------------------------------------------------------------------
    # Admission and metrics

    @contextmanager
    def _admitted(self, operation: str) -> Iterator[float]:
        """
        Hold one concurrency slot for the duration of an operation.

        Yields:
            The monotonic deadline the operation must commit by
        """
        timeout = self.config.operation_timeout
        deadline = time.monotonic() + timeout
        if not self._gate.acquire(timeout=timeout):
            self._timed_out(operation, OperationTimeoutError(
                f"{operation} waited more than {self.config.operation_timeout_ms}ms for a slot"))
        try:
            yield deadline
        except OperationTimeoutError as e:
            self._timed_out(operation, e)
        finally:
            self._gate.release()

    def _timed_out(self, operation: str, error: OperationTimeoutError) -> None:
        with self._metrics_lock:
            self._metrics['operation_timeouts'] += 1
        engine_logger.error(f"Operation timeout: {error}")
        self.notifier.publish('operation_timeout', {'operation': operation}, error)
        raise error

    def _count(self, name: str) -> None:
        with self._metrics_lock:
            self._metrics[name] += 1

    def _record_operation_time(self, processing_ms: float) -> None:
        with self._metrics_lock:
            self._metrics['total_operations'] += 1
            count = self._metrics['total_operations']
            total = self._metrics['average_operation_time'] * (count - 1) + processing_ms
            self._metrics['average_operation_time'] = total / count

    # ------------------------------------------------------------------
    # Keys

    def generate_key_pair(self, scheme=None, key_size_bits: Optional[int] = None) -> str:
        """
        Generate a key pair; it becomes the scheme's default if there is none.

        Returns:
            The new key id
        """
        key_pair = self.key_manager.generate_key_pair(
            scheme if scheme is not None else self.config.scheme,
            key_size_bits or self.config.key_size_bits
        )
        return key_pair.key_id

    def rotate_keys(self) -> Dict[str, str]:
        """Rotate every scheme's default key. Safe to call concurrently."""
        return self.key_manager.rotate_keys()

    # ------------------------------------------------------------------
    # Data operations

    def encrypt(self, plaintext: Any, key_id: Optional[str] = None, scheme=None) -> str:
        """
        Encrypt a plaintext (int, decimal string or bytes).

        Returns:
            The ciphertext id
        """
        with self._admitted("encrypt") as deadline:
            ciphertext = self.dispatcher.encrypt(plaintext, key_id=key_id, scheme=scheme, deadline=deadline)
        self._count('total_encryptions')
        return ciphertext.ciphertext_id

    def decrypt(self, ciphertext_id: str, key_id: Optional[str] = None) -> int:
        with self._admitted("decrypt") as deadline:
            plaintext = self.dispatcher.decrypt(ciphertext_id, key_id=key_id, deadline=deadline)
        self._count('total_decryptions')
        return plaintext

    def combine(self, operation, ciphertext_id_a: str, operand_b) -> str:
        """
        Apply add / scalar_multiply / multiply to stored ciphertexts.

        Args:
            operation: Operation name
            ciphertext_id_a: First operand
            operand_b: Second ciphertext id, or an integer for scalar_multiply

        Returns:
            The result ciphertext id
        """
        start_time = time.monotonic()
        with self._admitted(str(operation)) as deadline:
            result = self.dispatcher.combine(operation, ciphertext_id_a, operand_b, deadline=deadline)
        self._record_operation_time((time.monotonic() - start_time) * 1000.0)
        return result.ciphertext_id

    def aggregate(self, operation, ciphertext_ids: Sequence[str],
                  weights: Optional[Sequence[int]] = None) -> str:
        """Sum (add) or multiply many ciphertexts into one; returns its id."""
        start_time = time.monotonic()
        with self._admitted(f"aggregate {operation}") as deadline:
            result = self.dispatcher.aggregate(operation, ciphertext_ids, weights=weights, deadline=deadline)
        self._record_operation_time((time.monotonic() - start_time) * 1000.0)
        return result.ciphertext_id

    def get_ciphertext(self, ciphertext_id: str):
        return self.dispatcher.get_ciphertext(ciphertext_id)

    def discard_ciphertext(self, ciphertext_id: str) -> None:
        self.dispatcher.discard_ciphertext(ciphertext_id)

    # ------------------------------------------------------------------
    # Zero-knowledge proofs

    def _zk_system(self, event_type: str = 'proof_generated') -> ZeroKnowledgeProofSystem:
        if not self.config.zero_knowledge_proofs_enabled:
            error = FeatureDisabledError("Zero-knowledge proofs are disabled")
            engine_logger.warning(str(error))
            self.notifier.publish(event_type, {}, error)
            raise error
        with self._zk_lock:
            if self._zk is None:
                parameters = self._zk_parameters or PedersenParameters.generate(
                    self.config.zk_modulus_bits, self.config.zk_subgroup_bits,
                    self.randomness, self.config.primality_rounds)
                self._zk = ZeroKnowledgeProofSystem(parameters, self.randomness, self.notifier)
            return self._zk

    def commit(self, value: int, blinding: Optional[int] = None) -> Tuple[int, int]:
        """Pedersen commitment to value; returns (commitment, blinding)."""
        return self._zk_system().commit(value, blinding)

    def prove_statement(self, statement: Mapping, witness: Mapping, proof_type) -> str:
        """
        Generate a zero-knowledge proof.

        Args:
            statement: Public claim
            witness: Secret values satisfying the claim
            proof_type: "range", "equality" or "membership"

        Returns:
            The proof id
        """
        system = self._zk_system()
        with self._admitted(f"prove {proof_type}"):
            record = system.generate_proof(statement, witness, proof_type)
        self._count('zero_knowledge_proofs')
        return record.proof_id

    def verify_proof(self, proof_id: str) -> bool:
        system = self._zk_system('proof_verified')
        with self._admitted("verify proof"):
            return system.verify_proof(proof_id)

    def get_proof(self, proof_id: str) -> ProofRecord:
        return self._zk_system('proof_verified').get_proof(proof_id)

    # ------------------------------------------------------------------
    # Randomness, observers, metrics

    def generate_secure_randomness(self, size: int = 32) -> RandomnessToken:
        token = self.randomness.generate_random_bytes(size)
        self._count('secure_randomness_generated')
        self.notifier.publish('randomness_generated', {'token_id': token.token_id, 'size': token.size})
        return token

    def subscribe(self, listener: Callable) -> Callable[[], None]:
        """Register a lifecycle listener; returns an unsubscribe callable."""
        return self.notifier.subscribe(listener)

    def get_metrics(self) -> Dict[str, Any]:
        """Get engine metrics."""
        with self._metrics_lock:
            metrics = dict(self._metrics)

        last_rotation: Optional[datetime] = self.key_manager.last_rotation
        with self._zk_lock:
            proof_count = self._zk.proof_count if self._zk is not None else 0

        metrics.update({
            'key_rotations': self.key_manager.rotation_count,
            'last_key_rotation': last_rotation.isoformat() if last_rotation else None,
            'uptime_seconds': time.monotonic() - self._started,
            'key_count': self.key_manager.key_count,
            'ciphertext_count': self.dispatcher.ciphertext_count,
            'operation_count': self.dispatcher.operation_count,
            'zero_knowledge_proof_count': proof_count,
            'randomness_bytes_generated': self.randomness.bytes_generated,
        })
        return metrics

    # ------------------------------------------------------------------
    # Shutdown

    def close(self) -> None:
        """Stop the rotation scheduler and the notifier, and forget all keys."""
        if self._closed:
            return
        self._closed = True

        if self._scheduler is not None:
            self._scheduler.stop()
        self.notifier.flush(timeout=5.0)
        self.notifier.close()
        self.key_manager.close()

        engine_logger.info("Homomorphic encryption engine closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncHomomorphicEngine:
    """
    asyncio wrapper running engine calls in the event loop's default executor.
    """

    def __init__(self, engine: HomomorphicEncryptionEngine):
        self.engine = engine

    async def _run(self, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def generate_key_pair(self, scheme=None, key_size_bits: Optional[int] = None) -> str:
        return await self._run(self.engine.generate_key_pair, scheme, key_size_bits)

    async def encrypt(self, plaintext: Any, key_id: Optional[str] = None, scheme=None) -> str:
        return await self._run(self.engine.encrypt, plaintext, key_id=key_id, scheme=scheme)

    async def decrypt(self, ciphertext_id: str, key_id: Optional[str] = None) -> int:
        return await self._run(self.engine.decrypt, ciphertext_id, key_id=key_id)

    async def combine(self, operation, ciphertext_id_a: str, operand_b) -> str:
        return await self._run(self.engine.combine, operation, ciphertext_id_a, operand_b)

    async def aggregate(self, operation, ciphertext_ids: Sequence[str],
                        weights: Optional[Sequence[int]] = None) -> str:
        return await self._run(self.engine.aggregate, operation, ciphertext_ids, weights=weights)

    async def prove_statement(self, statement: Mapping, witness: Mapping, proof_type) -> str:
        return await self._run(self.engine.prove_statement, statement, witness, proof_type)

    async def verify_proof(self, proof_id: str) -> bool:
        return await self._run(self.engine.verify_proof, proof_id)

    async def rotate_keys(self) -> Dict[str, str]:
        return await self._run(self.engine.rotate_keys)

    async def generate_secure_randomness(self, size: int = 32) -> RandomnessToken:
        return await self._run(self.engine.generate_secure_randomness, size)


def create_homomorphic_engine(config: Union[EngineConfig, Mapping[str, Any], None] = None,
                              listeners: Optional[Iterable[Callable]] = None) -> HomomorphicEncryptionEngine:
    """
    Create a homomorphic encryption engine.

    Args:
        config: EngineConfig or a mapping of options (snake_case or camelCase)

    Returns:
        Configured HomomorphicEncryptionEngine instance
    """
    return HomomorphicEncryptionEngine(config, listeners)
