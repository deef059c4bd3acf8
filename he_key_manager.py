"""
Homomorphic Key Manager

Owns every Paillier and ElGamal key pair the engine uses:
- generation through the scheme engines
- per-scheme default key selection
- rotation with swap-on-complete semantics (superseded keys stay usable
  for decryption under their original id)
- sealing of private parameters at rest with ChaCha20-Poly1305

Private parameters are only unsealed inside ``private_key()`` for the
duration of a single call and are never logged.
"""

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from he_errors import HomomorphicError, KeyMismatchError, NoDefaultKeyError, NotFoundError, error_kind
from he_logging import get_logger
from homomorphic_encryption import HEPrivateKey, HEPublicKey, HEScheme, engine_for

log = get_logger("he_key_manager")

SEAL_NONCE_SIZE = 12
SEAL_KEY_INFO = b'he-key-manager-private-parameter-seal'


@dataclass(frozen=True)
class KeyPair:
    """
    A stored key pair. The private half is only present in sealed form and
    can be opened by the owning HEKeyManager alone.
    """
    key_id: str
    scheme: HEScheme
    key_bits: int
    public_key: HEPublicKey
    sealed_private: bytes = field(repr=False)
    created_at: datetime
    rotated_from: Optional[str] = None

    def describe(self) -> Dict:
        """Public description safe to log or return to callers."""
        return {
            'key_id': self.key_id,
            'scheme': self.scheme.value,
            'key_bits': self.key_bits,
            'created_at': self.created_at.isoformat(),
            'rotated_from': self.rotated_from,
        }


class HEKeyManager:
    """
    Generates, stores, selects and rotates homomorphic key pairs.
    """

    def __init__(self, engines: Mapping, randomness, notifier=None, default_key_bits: int = 2048):
        """
        Initialize the key manager.

        Args:
            engines: Mapping of HEScheme to scheme engine (used for key generation)
            randomness: SecureRandomnessService
            notifier: Optional LifecycleNotifier for key events
            default_key_bits: Key size used when a call does not give one
        """
        self._engines = engines
        self._randomness = randomness
        self._notifier = notifier
        self.default_key_bits = default_key_bits

        self._keys: Dict[str, KeyPair] = {}
        self._defaults: Dict[HEScheme, str] = {}
        self._lock = threading.RLock()
        self._rotation_locks = {scheme: threading.Lock() for scheme in HEScheme}
        self._rotation_count = 0
        self._last_rotation: Optional[datetime] = None

        master_key = self._randomness.generate_random_bytes(32).payload
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=SEAL_KEY_INFO,
        )
        self._sealer = ChaCha20Poly1305(hkdf.derive(master_key))

        log.info("Homomorphic key manager initialized")

    # ------------------------------------------------------------------
    # Sealing

    def _seal(self, private_key: HEPrivateKey) -> bytes:
        if self._sealer is None:
            raise NotFoundError("Key manager has been closed")
        nonce = self._randomness.generate_random_bytes(SEAL_NONCE_SIZE).payload
        data = json.dumps({name: str(value) for name, value in private_key.parameters.items()}).encode()
        return nonce + self._sealer.encrypt(nonce, data, private_key.key_id.encode())

    def _unseal(self, key_pair: KeyPair) -> HEPrivateKey:
        if self._sealer is None:
            raise NotFoundError("Key manager has been closed")
        nonce = key_pair.sealed_private[:SEAL_NONCE_SIZE]
        ciphertext = key_pair.sealed_private[SEAL_NONCE_SIZE:]
        try:
            data = self._sealer.decrypt(nonce, ciphertext, key_pair.key_id.encode())
        except InvalidTag as e:
            log.error(f"Sealed private parameters for {key_pair.key_id} failed authentication")
            raise KeyMismatchError(f"Private parameters of {key_pair.key_id} cannot be opened") from e

        parameters = {name: int(value) for name, value in json.loads(data).items()}
        return HEPrivateKey(
            key_id=key_pair.key_id,
            scheme=key_pair.scheme,
            parameters=parameters,
            created_at=key_pair.created_at
        )

    # ------------------------------------------------------------------
    # Generation and lookup

    def _build_key_pair(self, scheme: HEScheme, key_bits: int, rotated_from: Optional[str] = None) -> KeyPair:
        engine = engine_for(self._engines, scheme)
        key_id = f"{scheme.value}-{uuid.uuid4().hex[:16]}"
        public_key, private_key = engine.generate_keypair(key_id, key_bits)
        return KeyPair(
            key_id=key_id,
            scheme=scheme,
            key_bits=key_bits,
            public_key=public_key,
            sealed_private=self._seal(private_key),
            created_at=public_key.created_at,
            rotated_from=rotated_from
        )

    def generate_key_pair(self, scheme, key_bits: Optional[int] = None,
                          make_default: Optional[bool] = None) -> KeyPair:
        """
        Generate and store a new key pair.

        Args:
            scheme: HEScheme or scheme name
            key_bits: Key size in bits (defaults to default_key_bits)
            make_default: Make this the scheme's default key. None makes it the
                          default only if the scheme has none yet.

        Returns:
            The stored KeyPair

        Raises:
            UnsupportedSchemeError: for unknown scheme tags
        """
        bits = key_bits or self.default_key_bits

        try:
            parsed = HEScheme.parse(scheme)
            key_pair = self._build_key_pair(parsed, bits)
        except HomomorphicError as e:
            scheme_name = str(getattr(scheme, 'value', scheme))
            log.error(f"Key generation failed for {scheme_name}: {e}")
            self._publish('key_generated', {'scheme': scheme_name, 'key_bits': bits}, e)
            raise

        with self._lock:
            self._keys[key_pair.key_id] = key_pair
            if make_default or (make_default is None and parsed not in self._defaults):
                self._defaults[parsed] = key_pair.key_id

        log.info(f"Stored {bits}-bit {parsed.value} key pair {key_pair.key_id}")
        self._publish('key_generated', key_pair.describe())
        return key_pair

    def get_key(self, key_id: str) -> KeyPair:
        """Return the key pair with this id, or raise NotFoundError."""
        with self._lock:
            key_pair = self._keys.get(key_id)
        if key_pair is None:
            raise NotFoundError(f"Key {key_id} not found")
        return key_pair

    def public_key(self, key_id: str) -> HEPublicKey:
        return self.get_key(key_id).public_key

    def get_default_key(self, scheme) -> KeyPair:
        """Return the current default key pair of a scheme."""
        parsed = HEScheme.parse(scheme)
        with self._lock:
            key_id = self._defaults.get(parsed)
            key_pair = self._keys.get(key_id) if key_id else None
        if key_pair is None:
            raise NoDefaultKeyError(f"No default {parsed.value} key configured")
        return key_pair

    def set_default_key(self, key_id: str) -> KeyPair:
        """Make an existing key the default of its scheme."""
        with self._lock:
            key_pair = self.get_key(key_id)
            self._defaults[key_pair.scheme] = key_id
        log.info(f"Default {key_pair.scheme.value} key set to {key_id}")
        return key_pair

    def list_keys(self, scheme=None) -> List[KeyPair]:
        parsed = HEScheme.parse(scheme) if scheme is not None else None
        with self._lock:
            return [kp for kp in self._keys.values() if parsed is None or kp.scheme is parsed]

    def default_key_ids(self) -> Dict[str, str]:
        with self._lock:
            return {scheme.value: key_id for scheme, key_id in self._defaults.items()}

    @property
    def key_count(self) -> int:
        with self._lock:
            return len(self._keys)

    @contextmanager
    def private_key(self, key_id: str) -> Iterator[HEPrivateKey]:
        """
        Open the private parameters of a key for one call.

        Usage:
            with key_manager.private_key(key_id) as sk:
                plaintext = engine.decrypt(ciphertext, sk)
        """
        private_key = self._unseal(self.get_key(key_id))
        try:
            yield private_key
        finally:
            del private_key

    # ------------------------------------------------------------------
    # Rotation

    def rotate_keys(self) -> Dict[str, str]:
        """
        Replace the default key of every scheme that has one.

        The replacement is fully generated before it is swapped in, and the
        superseded pair is retained so existing ciphertexts stay decryptable.
        A scheme already being rotated by another thread is skipped.

        Returns:
            Mapping of scheme name to the new default key id
        """
        with self._lock:
            targets = [(scheme, self._keys[key_id]) for scheme, key_id in self._defaults.items()]

        rotated: Dict[str, str] = {}
        for scheme, current in targets:
            rotation_lock = self._rotation_locks[scheme]
            if not rotation_lock.acquire(blocking=False):
                log.info(f"Rotation of {scheme.value} keys already in progress, skipping")
                continue
            try:
                replacement = self._build_key_pair(scheme, current.key_bits, rotated_from=current.key_id)
                with self._lock:
                    self._keys[replacement.key_id] = replacement
                    self._defaults[scheme] = replacement.key_id
                rotated[scheme.value] = replacement.key_id
                log.info(f"Rotated {scheme.value} default key {current.key_id} -> {replacement.key_id}")
            except HomomorphicError as e:
                log.error(f"Key rotation failed for {scheme.value}: {e}")
                self._publish('keys_rotated', {'scheme': scheme.value, 'key_id': current.key_id}, e)
                if not e.recoverable:
                    raise
            finally:
                rotation_lock.release()

        if rotated:
            with self._lock:
                self._rotation_count += 1
                self._last_rotation = datetime.now()
                key_count = len(self._keys)
            self._publish('keys_rotated', {'rotated': dict(rotated), 'key_count': key_count})

        return rotated

    @property
    def rotation_count(self) -> int:
        with self._lock:
            return self._rotation_count

    @property
    def last_rotation(self) -> Optional[datetime]:
        with self._lock:
            return self._last_rotation

    # ------------------------------------------------------------------

    def _publish(self, event_type: str, details: Dict, error: Optional[BaseException] = None) -> None:
        if self._notifier is not None:
            self._notifier.publish(event_type, details, error)

    def close(self) -> None:
        """Forget every key pair and the sealing key."""
        with self._lock:
            self._keys.clear()
            self._defaults.clear()
            self._sealer = None
        log.info("Homomorphic key manager closed")


class KeyRotationScheduler:
    """
    Background thread calling ``rotate_keys()`` on a fixed interval.
    """

    def __init__(self, key_manager: HEKeyManager, interval_seconds: float):
        self.key_manager = key_manager
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="he-key-rotation", daemon=True)
        self._thread.start()
        log.info(f"Key rotation scheduled every {self.interval_seconds:.1f}s")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.key_manager.rotate_keys()
            except Exception as e:
                log.error(f"Scheduled key rotation failed ({error_kind(e)}): {e}")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
