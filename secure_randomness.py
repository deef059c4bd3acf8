"""
Secure Randomness Service

Single source of every blinding factor, ephemeral secret, prime candidate and
proof nonce used by the engine. Bytes come from the operating system CSPRNG
through the ``secrets`` module; if that source fails the error propagates as
SecureRandomnessUnavailableError and no weaker generator is ever substituted.

The integer helpers mirror the ``secrets`` API (``randbits``, ``randbelow``)
so this service can be handed to the modular arithmetic core directly.
"""

import math
import secrets
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List

from he_errors import InvalidParameterError, SecureRandomnessUnavailableError
from he_logging import get_logger

rng_logger = get_logger("secure_randomness")

SELF_TEST_BYTES = 64


@dataclass(frozen=True)
class RandomnessToken:
    """One draw from the secure source; consumed once by its requester."""
    token_id: str
    size: int
    payload: bytes = field(repr=False)
    created_at: datetime

    def as_int(self) -> int:
        return int.from_bytes(self.payload, 'big')


class SecureRandomnessService:
    """
    Cryptographically secure randomness backed by the OS.

    Only token metadata (id, size, time) is retained, in a bounded audit trail.
    """

    def __init__(self, required: bool = True, audit_size: int = 256):
        """
        Initialize the randomness service.

        Args:
            required: Run a start-up self-test of the OS source and fail hard
                      if it is unusable
            audit_size: Number of recent token records kept for audit
        """
        self.required = required
        self._lock = threading.Lock()
        self._tokens_generated = 0
        self._bytes_generated = 0
        self._audit = deque(maxlen=audit_size)

        if required:
            self._self_test()

        rng_logger.info(f"Secure randomness service initialized (required={required})")

    def _self_test(self) -> None:
        """Check the OS source answers and does not return a constant."""
        try:
            first = secrets.token_bytes(SELF_TEST_BYTES)
            second = secrets.token_bytes(SELF_TEST_BYTES)
        except (OSError, NotImplementedError) as e:
            rng_logger.critical(f"OS randomness source unavailable: {e}")
            raise SecureRandomnessUnavailableError(f"OS randomness source unavailable: {e}") from e

        if first == second or len(set(first)) == 1:
            rng_logger.critical("OS randomness source failed self-test")
            raise SecureRandomnessUnavailableError("OS randomness source failed self-test")

    def generate_random_bytes(self, size: int = 32) -> RandomnessToken:
        """
        Draw ``size`` bytes from the OS CSPRNG.

        Raises:
            InvalidParameterError: if size < 1
            SecureRandomnessUnavailableError: if the OS source fails
        """
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise InvalidParameterError(f"Randomness size must be a positive integer, got {size!r}")

        try:
            payload = secrets.token_bytes(size)
        except (OSError, NotImplementedError) as e:
            rng_logger.critical(f"Secure randomness generation failed: {e}")
            raise SecureRandomnessUnavailableError(f"Secure randomness generation failed: {e}") from e

        token = RandomnessToken(
            token_id=str(uuid.uuid4()),
            size=size,
            payload=payload,
            created_at=datetime.now()
        )

        with self._lock:
            self._tokens_generated += 1
            self._bytes_generated += size
            self._audit.append({
                'token_id': token.token_id,
                'size': size,
                'created_at': token.created_at
            })

        return token

    def randbits(self, k: int) -> int:
        """Return a uniformly random non-negative integer with k random bits."""
        if k < 1:
            raise InvalidParameterError("Bit count must be positive")
        token = self.generate_random_bytes((k + 7) // 8)
        return token.as_int() >> (token.size * 8 - k)

    def randbelow(self, n: int) -> int:
        """Return a uniformly random integer in [0, n) by rejection sampling."""
        if n < 1:
            raise InvalidParameterError("Upper bound must be positive")
        if n == 1:
            return 0
        k = (n - 1).bit_length()
        while True:
            value = self.randbits(k)
            if value < n:
                return value

    def randrange(self, low: int, high: int) -> int:
        """Return a uniformly random integer in [low, high)."""
        if high <= low:
            raise InvalidParameterError(f"Empty range [{low}, {high})")
        return low + self.randbelow(high - low)

    def random_coprime(self, n: int) -> int:
        """Return a uniformly random element of Z_n* (1 <= r < n, gcd(r, n) == 1)."""
        if n < 2:
            raise InvalidParameterError("Modulus must be at least 2")
        while True:
            r = self.randrange(1, n)
            if math.gcd(r, n) == 1:
                return r

    @property
    def tokens_generated(self) -> int:
        with self._lock:
            return self._tokens_generated

    @property
    def bytes_generated(self) -> int:
        with self._lock:
            return self._bytes_generated

    def recent_tokens(self) -> List[Dict]:
        """Audit trail of recent draws; payloads are never retained."""
        with self._lock:
            return list(self._audit)
