"""
Homomorphic Operation Dispatcher

Routes encrypt / decrypt / add / scalar_multiply / multiply requests to the
engine matching the scheme recorded on the key or ciphertext, stores the
resulting ciphertext and operation records, and reports every outcome to the
lifecycle notifier.

Cross-scheme operations are rejected outright with SchemeMismatchError.
Nothing is stored unless the whole request succeeds before its deadline.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from he_errors import (
    HomomorphicError,
    InvalidParameterError,
    KeyMismatchError,
    NotFoundError,
    OperationTimeoutError,
    SchemeMismatchError,
    UnsupportedOperationError,
)
from he_logging import get_logger
from homomorphic_encryption import HECiphertext, HEScheme, engine_for

dispatch_logger = get_logger("he_dispatcher")


class OperationKind(Enum):
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    ADD = "add"
    SCALAR_MULTIPLY = "scalar_multiply"
    MULTIPLY = "multiply"

    @classmethod
    def parse(cls, value) -> "OperationKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnsupportedOperationError(f"Unsupported homomorphic operation: {value}") from None


# Homomorphic operations each scheme supports
SUPPORTED_OPERATIONS = {
    HEScheme.PAILLIER: (OperationKind.ADD, OperationKind.SCALAR_MULTIPLY),
    HEScheme.ELGAMAL: (OperationKind.MULTIPLY,),
}


@dataclass(frozen=True)
class OperationRecord:
    """Append-only audit entry for one homomorphic transformation."""
    operation_id: str
    kind: OperationKind
    operand_ids: Tuple[str, ...]
    scalar: Optional[int]
    result_id: str
    scheme: HEScheme
    key_id: str
    started_at: datetime
    completed_at: datetime
    processing_ms: float


def encode_plaintext(data: Any) -> int:
    """
    Convert a caller-supplied plaintext to the integer the schemes encrypt.

    Integers are used as-is, decimal strings are parsed and bytes are read
    big-endian.
    """
    if isinstance(data, bool):
        raise InvalidParameterError("Boolean plaintexts are not supported")
    if isinstance(data, int):
        return data
    if isinstance(data, str):
        try:
            return int(data.strip(), 10)
        except ValueError:
            raise InvalidParameterError("String plaintexts must be decimal integers") from None
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(bytes(data), 'big')
    raise InvalidParameterError(f"Unsupported plaintext type: {type(data).__name__}")


def _check_deadline(deadline: Optional[float], what: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise OperationTimeoutError(f"{what} exceeded its operation timeout")


class HomomorphicOperationDispatcher:
    """
    Validates and routes homomorphic requests, and owns the ciphertext and
    operation records.
    """

    def __init__(self, key_manager, engines, notifier=None, default_scheme="paillier",
                 batch_size: int = 100):
        """
        Initialize the dispatcher.

        Args:
            key_manager: HEKeyManager resolving key ids and default keys
            engines: Mapping of HEScheme to scheme engine
            notifier: Optional LifecycleNotifier
            default_scheme: Scheme used for encrypt() when neither key nor scheme is given
            batch_size: Maximum number of operands accepted by aggregate()
        """
        self.key_manager = key_manager
        self.engines = engines
        self.notifier = notifier
        self.default_scheme = HEScheme.parse(default_scheme)
        self.batch_size = batch_size

        self._ciphertexts: Dict[str, HECiphertext] = {}
        self._operations: Dict[str, OperationRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Records

    def get_ciphertext(self, ciphertext_id: str) -> HECiphertext:
        with self._lock:
            ciphertext = self._ciphertexts.get(ciphertext_id)
        if ciphertext is None:
            raise NotFoundError(f"Ciphertext {ciphertext_id} not found")
        return ciphertext

    def _is_stored(self, ciphertext_id: str) -> bool:
        with self._lock:
            return ciphertext_id in self._ciphertexts

    def discard_ciphertext(self, ciphertext_id: str) -> None:
        """Drop a ciphertext record; operation records referring to it remain."""
        with self._lock:
            ciphertext = self._ciphertexts.pop(ciphertext_id, None)
        if ciphertext is None:
            raise NotFoundError(f"Ciphertext {ciphertext_id} not found")
        self._publish('ciphertext_discarded', {'ciphertext_id': ciphertext_id})

    def get_operation(self, operation_id: str) -> OperationRecord:
        with self._lock:
            record = self._operations.get(operation_id)
        if record is None:
            raise NotFoundError(f"Operation {operation_id} not found")
        return record

    def list_operations(self) -> List[OperationRecord]:
        with self._lock:
            return sorted(self._operations.values(), key=lambda r: r.started_at)

    @property
    def ciphertext_count(self) -> int:
        with self._lock:
            return len(self._ciphertexts)

    @property
    def operation_count(self) -> int:
        with self._lock:
            return len(self._operations)

    def _store(self, ciphertext: HECiphertext, record: Optional[OperationRecord] = None) -> None:
        with self._lock:
            self._ciphertexts[ciphertext.ciphertext_id] = ciphertext
            if record is not None:
                self._operations[record.operation_id] = record

    def _publish(self, event_type: str, details: Dict, error: Optional[BaseException] = None) -> None:
        if self.notifier is not None:
            self.notifier.publish(event_type, details, error)

    # ------------------------------------------------------------------
    # Encrypt / decrypt

    def encrypt(self, plaintext: Any, key_id: Optional[str] = None, scheme=None,
                deadline: Optional[float] = None) -> HECiphertext:
        """
        Encrypt a plaintext under a key id, or under the default key of
        ``scheme`` (or of the default scheme).

        Returns:
            The stored ciphertext record
        """
        start_time = time.monotonic()
        try:
            if key_id is not None:
                key_pair = self.key_manager.get_key(key_id)
                if scheme is not None and HEScheme.parse(scheme) is not key_pair.scheme:
                    raise SchemeMismatchError(
                        f"Key {key_id} is a {key_pair.scheme.value} key, not {HEScheme.parse(scheme).value}")
            else:
                key_pair = self.key_manager.get_default_key(scheme if scheme is not None else self.default_scheme)

            m = encode_plaintext(plaintext)
            engine = engine_for(self.engines, key_pair.scheme)
            ciphertext = engine.encrypt(m, key_pair.public_key)

            _check_deadline(deadline, "Encryption")
            self._store(ciphertext)
        except HomomorphicError as e:
            dispatch_logger.error(f"Data encryption failed: {e}")
            self._publish('data_encrypted', {'key_id': key_id}, e)
            raise

        processing_ms = (time.monotonic() - start_time) * 1000.0
        dispatch_logger.info(
            f"Data encrypted: {ciphertext.ciphertext_id} scheme={ciphertext.scheme.value} "
            f"plaintext_bits={ciphertext.plaintext_bits} encrypted_size={ciphertext.encrypted_size}")
        self._publish('data_encrypted', {
            'ciphertext_id': ciphertext.ciphertext_id,
            'scheme': ciphertext.scheme.value,
            'key_id': ciphertext.key_id,
            'plaintext_bits': ciphertext.plaintext_bits,
            'encrypted_size': ciphertext.encrypted_size,
            'processing_ms': processing_ms,
        })
        return ciphertext

    def decrypt(self, ciphertext_id: str, key_id: Optional[str] = None,
                deadline: Optional[float] = None) -> int:
        """
        Decrypt a stored ciphertext.

        Args:
            ciphertext_id: Ciphertext record id
            key_id: Optional key id; must match the key the ciphertext was encrypted under

        Raises:
            KeyMismatchError: if key_id is given and differs from the ciphertext's key
        """
        start_time = time.monotonic()
        try:
            ciphertext = self.get_ciphertext(ciphertext_id)
            if key_id is not None and key_id != ciphertext.key_id:
                self.key_manager.get_key(key_id)
                raise KeyMismatchError(
                    f"Ciphertext {ciphertext_id} was encrypted under {ciphertext.key_id}, not {key_id}")

            key_pair = self.key_manager.get_key(ciphertext.key_id)
            if key_pair.scheme is not ciphertext.scheme:
                raise SchemeMismatchError(f"Ciphertext {ciphertext_id} scheme does not match its key")

            engine = engine_for(self.engines, key_pair.scheme)
            with self.key_manager.private_key(key_pair.key_id) as private_key:
                plaintext = engine.decrypt(ciphertext, private_key)

            _check_deadline(deadline, "Decryption")
        except HomomorphicError as e:
            dispatch_logger.error(f"Data decryption failed for {ciphertext_id}: {e}")
            self._publish('data_decrypted', {'ciphertext_id': ciphertext_id}, e)
            raise

        processing_ms = (time.monotonic() - start_time) * 1000.0
        dispatch_logger.info(f"Data decrypted: {ciphertext_id} scheme={ciphertext.scheme.value}")
        self._publish('data_decrypted', {
            'ciphertext_id': ciphertext_id,
            'scheme': ciphertext.scheme.value,
            'key_id': ciphertext.key_id,
            'processing_ms': processing_ms,
        })
        return plaintext

    # ------------------------------------------------------------------
    # Homomorphic operations

    def _resolve_operands(self, kind: OperationKind, ciphertext_ids: Sequence[str]):
        """Load operands, enforce same scheme and same key, return (operands, key_pair)."""
        operands = [self.get_ciphertext(cid) for cid in ciphertext_ids]
        first = operands[0]

        for other in operands[1:]:
            if other.scheme is not first.scheme:
                raise SchemeMismatchError(
                    f"Cannot combine {first.scheme.value} and {other.scheme.value} ciphertexts")
            if other.key_id != first.key_id:
                raise SchemeMismatchError(
                    f"Cannot combine ciphertexts encrypted under different keys "
                    f"({first.key_id}, {other.key_id})")

        key_pair = self.key_manager.get_key(first.key_id)
        if key_pair.scheme is not first.scheme:
            raise SchemeMismatchError(f"Ciphertext {first.ciphertext_id} scheme does not match its key")

        if kind not in SUPPORTED_OPERATIONS[first.scheme]:
            raise UnsupportedOperationError(
                f"{kind.value} is not supported by the {first.scheme.value} scheme")

        return operands, key_pair

    def _apply(self, kind: OperationKind, engine, left: HECiphertext, right, public_key) -> HECiphertext:
        if kind is OperationKind.ADD:
            return engine.add_encrypted(left, right, public_key)
        if kind is OperationKind.SCALAR_MULTIPLY:
            return engine.multiply_by_constant(left, right, public_key)
        return engine.multiply_encrypted(left, right, public_key)

    def combine(self, operation, ciphertext_id_a: str, operand_b,
                deadline: Optional[float] = None) -> HECiphertext:
        """
        Apply a homomorphic operation and store the result as a new ciphertext.

        Args:
            operation: "add", "scalar_multiply" or "multiply" (or OperationKind)
            ciphertext_id_a: First operand
            operand_b: Second ciphertext id, or an int scalar for scalar_multiply

        Returns:
            The new ciphertext record
        """
        started_at = datetime.now()
        start_time = time.monotonic()
        kind = None
        try:
            kind = OperationKind.parse(operation)
            if kind in (OperationKind.ENCRYPT, OperationKind.DECRYPT):
                raise UnsupportedOperationError(f"{kind.value} is not a homomorphic combination")

            if kind is OperationKind.SCALAR_MULTIPLY:
                if isinstance(operand_b, str) and self._is_stored(operand_b):
                    # a ciphertext id still has to agree in scheme and key
                    self._resolve_operands(kind, [ciphertext_id_a, operand_b])
                if isinstance(operand_b, bool) or not isinstance(operand_b, int):
                    raise InvalidParameterError("scalar_multiply requires an integer scalar")
                operands, key_pair = self._resolve_operands(kind, [ciphertext_id_a])
                scalar = operand_b
                right = scalar
            else:
                if not isinstance(operand_b, str):
                    raise InvalidParameterError(f"{kind.value} requires a second ciphertext id")
                operands, key_pair = self._resolve_operands(kind, [ciphertext_id_a, operand_b])
                scalar = None
                right = operands[1]

            engine = engine_for(self.engines, key_pair.scheme)
            result = self._apply(kind, engine, operands[0], right, key_pair.public_key)

            completed_at = datetime.now()
            record = OperationRecord(
                operation_id=str(uuid.uuid4()),
                kind=kind,
                operand_ids=tuple(op.ciphertext_id for op in operands),
                scalar=scalar,
                result_id=result.ciphertext_id,
                scheme=key_pair.scheme,
                key_id=key_pair.key_id,
                started_at=started_at,
                completed_at=completed_at,
                processing_ms=(time.monotonic() - start_time) * 1000.0
            )

            _check_deadline(deadline, "Homomorphic operation")
            self._store(result, record)
        except HomomorphicError as e:
            dispatch_logger.error(f"Homomorphic operation {operation} failed: {e}")
            self._publish('operation_performed', {
                'operation': kind.value if kind else str(operation),
                'operand_ids': [ciphertext_id_a] + ([operand_b] if isinstance(operand_b, str) else []),
            }, e)
            raise

        dispatch_logger.info(
            f"Homomorphic operation performed: {record.operation_id} {kind.value} "
            f"scheme={record.scheme.value} processing_ms={record.processing_ms:.2f}")
        self._publish('operation_performed', {
            'operation_id': record.operation_id,
            'operation': kind.value,
            'operand_ids': list(record.operand_ids),
            'result_id': record.result_id,
            'scheme': record.scheme.value,
            'processing_ms': record.processing_ms,
        })
        return result

    def aggregate(self, operation, ciphertext_ids: Sequence[str],
                  weights: Optional[Sequence[int]] = None,
                  deadline: Optional[float] = None) -> HECiphertext:
        """
        Fold many ciphertexts into one: a (weighted) sum for Paillier, a
        product for ElGamal. Intermediate results are not stored.

        Args:
            operation: "add" or "multiply"
            ciphertext_ids: Operands, all under the same key
            weights: Optional per-operand scalars for a weighted sum ("add" only)

        Returns:
            The new ciphertext record
        """
        started_at = datetime.now()
        start_time = time.monotonic()
        kind = None
        try:
            kind = OperationKind.parse(operation)
            if kind not in (OperationKind.ADD, OperationKind.MULTIPLY):
                raise UnsupportedOperationError(f"Cannot aggregate with {kind.value}")
            if not ciphertext_ids:
                raise InvalidParameterError("aggregate requires at least one ciphertext")
            if len(ciphertext_ids) > self.batch_size:
                raise InvalidParameterError(
                    f"aggregate accepts at most {self.batch_size} ciphertexts, got {len(ciphertext_ids)}")
            if weights is not None:
                if kind is not OperationKind.ADD:
                    raise UnsupportedOperationError("Weights are only supported for add")
                if len(weights) != len(ciphertext_ids):
                    raise InvalidParameterError("weights must match ciphertext_ids in length")
                if any(isinstance(w, bool) or not isinstance(w, int) for w in weights):
                    raise InvalidParameterError("weights must be integers")

            operands, key_pair = self._resolve_operands(kind, ciphertext_ids)
            engine = engine_for(self.engines, key_pair.scheme)
            public_key = key_pair.public_key

            terms = operands
            if weights is not None:
                terms = [engine.multiply_by_constant(ct, w, public_key) for ct, w in zip(operands, weights)]

            result = terms[0]
            for term in terms[1:]:
                result = self._apply(kind, engine, result, term, public_key)
            if len(terms) == 1:
                result = engine.rerandomize(result, public_key)

            # Provenance of the aggregate points at the stored operands
            result = HECiphertext(
                ciphertext_id=result.ciphertext_id,
                scheme=result.scheme,
                key_id=result.key_id,
                parameters=result.parameters,
                ciphertext_data=result.ciphertext_data,
                plaintext_bits=result.plaintext_bits,
                created_at=result.created_at,
                operation_count=max(op.operation_count for op in operands) + 1,
                provenance=tuple(op.ciphertext_id for op in operands)
            )

            record = OperationRecord(
                operation_id=str(uuid.uuid4()),
                kind=kind,
                operand_ids=result.provenance,
                scalar=None,
                result_id=result.ciphertext_id,
                scheme=key_pair.scheme,
                key_id=key_pair.key_id,
                started_at=started_at,
                completed_at=datetime.now(),
                processing_ms=(time.monotonic() - start_time) * 1000.0
            )

            _check_deadline(deadline, "Aggregate operation")
            self._store(result, record)
        except HomomorphicError as e:
            dispatch_logger.error(f"Aggregate {operation} over {len(ciphertext_ids or ())} ciphertexts failed: {e}")
            self._publish('operation_performed', {
                'operation': kind.value if kind else str(operation),
                'operand_ids': list(ciphertext_ids or ()),
            }, e)
            raise

        dispatch_logger.info(
            f"Aggregated {len(ciphertext_ids)} ciphertexts with {kind.value} into {result.ciphertext_id}")
        self._publish('operation_performed', {
            'operation_id': record.operation_id,
            'operation': kind.value,
            'operand_ids': list(record.operand_ids),
            'result_id': record.result_id,
            'scheme': record.scheme.value,
            'weighted': weights is not None,
            'processing_ms': record.processing_ms,
        })
        return result
