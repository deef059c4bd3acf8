"""
Homomorphic Encryption Schemes

This module implements the partially homomorphic public-key cryptosystems the
engine computes with:

1. Paillier - additively homomorphic. Supports addition of encrypted values
   and multiplication by plaintext constants.
2. ElGamal - multiplicatively homomorphic. Supports multiplication of
   encrypted values.

Engines are stateless with respect to keys: every call receives the key it
operates under, and every homomorphic operation returns a new ciphertext.
Blinding factors and ephemeral secrets come from the SecureRandomnessService.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from he_errors import (
    InvalidParameterError,
    KeyMismatchError,
    PlaintextOutOfRangeError,
    SchemeMismatchError,
    UnsupportedSchemeError,
)
from he_logging import get_logger
from modular_arithmetic import DEFAULT_PRIMALITY_ROUNDS, ModularArithmetic

he_logger = get_logger("homomorphic_encryption")


class HEScheme(Enum):
    """Supported homomorphic schemes."""
    PAILLIER = "paillier"
    ELGAMAL = "elgamal"

    @classmethod
    def parse(cls, value) -> "HEScheme":
        """Accept an HEScheme or its name; raise UnsupportedSchemeError otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnsupportedSchemeError(f"Unsupported encryption scheme: {value}") from None


def _frozen(parameters: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(parameters))


@dataclass(frozen=True)
class HEPublicKey:
    """Container for homomorphic encryption public key."""
    key_id: str
    scheme: HEScheme
    parameters: Mapping[str, int]
    created_at: datetime

    def __post_init__(self):
        object.__setattr__(self, 'parameters', _frozen(self.parameters))


@dataclass(frozen=True)
class HEPrivateKey:
    """Container for homomorphic encryption private key. Never logged."""
    key_id: str
    scheme: HEScheme
    parameters: Mapping[str, int] = field(repr=False)
    created_at: datetime

    def __post_init__(self):
        object.__setattr__(self, 'parameters', _frozen(self.parameters))


@dataclass(frozen=True)
class HECiphertext:
    """Immutable ciphertext record."""
    ciphertext_id: str
    scheme: HEScheme
    key_id: str
    parameters: Mapping[str, int]
    ciphertext_data: bytes = field(repr=False)
    plaintext_bits: int
    created_at: datetime
    operation_count: int = 0
    provenance: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'parameters', _frozen(self.parameters))
        object.__setattr__(self, 'provenance', tuple(self.provenance))

    @property
    def encrypted_size(self) -> int:
        return len(self.ciphertext_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view with big integers as decimal strings."""
        return {
            'ciphertext_id': self.ciphertext_id,
            'scheme': self.scheme.value,
            'key_id': self.key_id,
            'components': {name: str(value) for name, value in self.parameters.items()},
            'plaintext_bits': self.plaintext_bits,
            'created_at': self.created_at.isoformat(),
            'operation_count': self.operation_count,
            'provenance': list(self.provenance),
        }


def _make_ciphertext(scheme: HEScheme, key_id: str, components: Dict[str, int],
                     plaintext_bits: int, operation_count: int = 0,
                     provenance: Tuple[str, ...] = ()) -> HECiphertext:
    ct_data = {name: str(value) for name, value in components.items()}
    return HECiphertext(
        ciphertext_id=str(uuid.uuid4()),
        scheme=scheme,
        key_id=key_id,
        parameters=components,
        ciphertext_data=json.dumps(ct_data).encode(),
        plaintext_bits=plaintext_bits,
        created_at=datetime.now(),
        operation_count=operation_count,
        provenance=provenance
    )


class _SchemeEngine:
    """Key and scheme checks shared by both engines."""
    scheme: HEScheme

    def _check_public_key(self, public_key: HEPublicKey) -> None:
        if public_key.scheme is not self.scheme:
            raise SchemeMismatchError(
                f"{self.scheme.value} engine cannot use a {public_key.scheme.value} key")

    def _check_ciphertext(self, ciphertext: HECiphertext, key_id: str) -> None:
        if ciphertext.scheme is not self.scheme:
            raise SchemeMismatchError(
                f"{self.scheme.value} engine cannot process a {ciphertext.scheme.value} ciphertext")
        if ciphertext.key_id != key_id:
            raise KeyMismatchError(
                f"Ciphertext {ciphertext.ciphertext_id} was encrypted under key "
                f"{ciphertext.key_id}, not {key_id}")

    def _check_operands(self, ct1: HECiphertext, ct2: HECiphertext, public_key: HEPublicKey) -> None:
        if ct1.scheme is not self.scheme or ct2.scheme is not self.scheme:
            raise SchemeMismatchError("Ciphertext scheme mismatch")
        if ct1.key_id != ct2.key_id:
            raise SchemeMismatchError("Operands were encrypted under different keys")
        if ct1.key_id != public_key.key_id:
            raise KeyMismatchError(f"Operands were not encrypted under key {public_key.key_id}")


class PaillierHomomorphic(_SchemeEngine):
    """
    Paillier cryptosystem implementation - additively homomorphic.
    Supports addition of encrypted values and multiplication by plaintext constants.
    """
    scheme = HEScheme.PAILLIER

    def __init__(self, rng, primality_rounds: int = DEFAULT_PRIMALITY_ROUNDS):
        """
        Initialize Paillier homomorphic encryption.

        Args:
            rng: SecureRandomnessService supplying primes and blinding factors
            primality_rounds: Miller-Rabin rounds for prime generation
        """
        self.rng = rng
        self.primality_rounds = primality_rounds

        he_logger.info("Paillier engine initialized")

    def generate_keypair(self, key_id: str, key_bits: int) -> Tuple[HEPublicKey, HEPrivateKey]:
        """
        Generate Paillier public/private key pair.

        Args:
            key_id: Identifier recorded on both keys
            key_bits: Modulus size in bits

        Returns:
            Tuple of (public_key, private_key)
        """
        if key_bits < 128 or key_bits % 2:
            raise InvalidParameterError("Paillier key size must be an even number of at least 128 bits")

        # Generate two large primes of equal bit length
        half = key_bits // 2
        p = ModularArithmetic.generate_prime(half, self.rng, self.primality_rounds)
        q = ModularArithmetic.generate_prime(half, self.rng, self.primality_rounds)

        # Ensure p != q and gcd(pq, (p-1)(q-1)) == 1
        while p == q or ModularArithmetic.gcd(p * q, (p - 1) * (q - 1)) != 1:
            q = ModularArithmetic.generate_prime(half, self.rng, self.primality_rounds)

        n = p * q
        n_squared = n * n
        lambda_n = ModularArithmetic.lcm(p - 1, q - 1)

        # Choose g = n + 1 (a common choice that works)
        g = n + 1

        # mu = (L(g^lambda mod n^2))^(-1) mod n where L(x) = (x - 1) / n
        g_lambda = pow(g, lambda_n, n_squared)
        l_value = (g_lambda - 1) // n
        mu = ModularArithmetic.mod_inverse(l_value, n)

        created_at = datetime.now()
        public_key = HEPublicKey(
            key_id=key_id,
            scheme=self.scheme,
            parameters={'n': n, 'g': g, 'n_squared': n_squared},
            created_at=created_at
        )
        private_key = HEPrivateKey(
            key_id=key_id,
            scheme=self.scheme,
            parameters={'lambda': lambda_n, 'mu': mu, 'p': p, 'q': q, 'n': n, 'n_squared': n_squared},
            created_at=created_at
        )

        he_logger.info(f"Generated {key_bits}-bit Paillier keypair {key_id}")
        return public_key, private_key

    def encrypt(self, plaintext: int, public_key: HEPublicKey) -> HECiphertext:
        """
        Encrypt a plaintext integer using Paillier encryption.

        Args:
            plaintext: Integer in [0, n)
            public_key: Public key for encryption

        Returns:
            HECiphertext object
        """
        self._check_public_key(public_key)
        n = public_key.parameters['n']
        g = public_key.parameters['g']
        n_squared = public_key.parameters['n_squared']

        if plaintext < 0 or plaintext >= n:
            raise PlaintextOutOfRangeError(f"Plaintext must be in [0, n) for a {n.bit_length()}-bit modulus")

        # Random blinding factor r in Z_n*
        r = self.rng.random_coprime(n)

        # c = g^m * r^n mod n^2
        c = (pow(g, plaintext, n_squared) * pow(r, n, n_squared)) % n_squared

        he_logger.debug(f"Encrypted {plaintext.bit_length()}-bit plaintext under {public_key.key_id}")
        return _make_ciphertext(self.scheme, public_key.key_id, {'c': c}, plaintext.bit_length())

    def decrypt(self, ciphertext: HECiphertext, private_key: HEPrivateKey) -> int:
        """
        Decrypt a Paillier ciphertext.

        Args:
            ciphertext: Ciphertext to decrypt
            private_key: Private key for decryption

        Returns:
            Decrypted plaintext integer
        """
        self._check_ciphertext(ciphertext, private_key.key_id)

        c = ciphertext.parameters['c']
        n = private_key.parameters['n']
        n_squared = private_key.parameters['n_squared']
        lambda_n = private_key.parameters['lambda']
        mu = private_key.parameters['mu']

        # m = L(c^lambda mod n^2) * mu mod n
        c_lambda = pow(c, lambda_n, n_squared)
        l_value = (c_lambda - 1) // n
        return (l_value * mu) % n

    def add_encrypted(self, ct1: HECiphertext, ct2: HECiphertext, public_key: HEPublicKey) -> HECiphertext:
        """
        Homomorphically add two encrypted values.

        Returns:
            Ciphertext encrypting (m1 + m2) mod n
        """
        self._check_operands(ct1, ct2, public_key)
        n_squared = public_key.parameters['n_squared']

        result_c = (ct1.parameters['c'] * ct2.parameters['c']) % n_squared

        he_logger.debug("Performed homomorphic addition")
        return _make_ciphertext(
            self.scheme, public_key.key_id, {'c': result_c},
            min(max(ct1.plaintext_bits, ct2.plaintext_bits) + 1, public_key.parameters['n'].bit_length()),
            operation_count=max(ct1.operation_count, ct2.operation_count) + 1,
            provenance=(ct1.ciphertext_id, ct2.ciphertext_id)
        )

    def multiply_by_constant(self, ciphertext: HECiphertext, constant: int, public_key: HEPublicKey) -> HECiphertext:
        """
        Homomorphically multiply encrypted value by plaintext constant.

        Returns:
            Ciphertext encrypting (constant * m) mod n
        """
        self._check_public_key(public_key)
        self._check_ciphertext(ciphertext, public_key.key_id)
        n = public_key.parameters['n']
        n_squared = public_key.parameters['n_squared']

        result_c = pow(ciphertext.parameters['c'], constant % n, n_squared)

        he_logger.debug("Performed homomorphic multiplication by a constant")
        return _make_ciphertext(
            self.scheme, public_key.key_id, {'c': result_c},
            min(ciphertext.plaintext_bits + abs(constant).bit_length(), n.bit_length()),
            operation_count=ciphertext.operation_count + 1,
            provenance=(ciphertext.ciphertext_id,)
        )

    def rerandomize(self, ciphertext: HECiphertext, public_key: HEPublicKey) -> HECiphertext:
        """Return an unlinkable ciphertext of the same plaintext."""
        self._check_public_key(public_key)
        self._check_ciphertext(ciphertext, public_key.key_id)
        n = public_key.parameters['n']
        n_squared = public_key.parameters['n_squared']

        r = self.rng.random_coprime(n)
        result_c = (ciphertext.parameters['c'] * pow(r, n, n_squared)) % n_squared
        return _make_ciphertext(
            self.scheme, public_key.key_id, {'c': result_c}, ciphertext.plaintext_bits,
            operation_count=ciphertext.operation_count,
            provenance=(ciphertext.ciphertext_id,)
        )


class ElGamalHomomorphic(_SchemeEngine):
    """
    ElGamal cryptosystem over a Schnorr group - multiplicatively homomorphic.
    Supports multiplication of encrypted values.
    """
    scheme = HEScheme.ELGAMAL

    def __init__(self, rng, subgroup_bits: int = 256,
                 primality_rounds: int = DEFAULT_PRIMALITY_ROUNDS):
        """
        Initialize ElGamal homomorphic encryption.

        Args:
            rng: SecureRandomnessService supplying group parameters and ephemeral secrets
            subgroup_bits: Bit length of the prime order q of the generator
            primality_rounds: Miller-Rabin rounds for prime generation
        """
        self.rng = rng
        self.subgroup_bits = subgroup_bits
        self.primality_rounds = primality_rounds

        he_logger.info(f"ElGamal engine initialized with {subgroup_bits}-bit subgroup")

    def generate_keypair(self, key_id: str, key_bits: int) -> Tuple[HEPublicKey, HEPrivateKey]:
        """
        Generate ElGamal public/private key pair.

        Args:
            key_id: Identifier recorded on both keys
            key_bits: Size of the prime modulus p in bits

        Returns:
            Tuple of (public_key, private_key)
        """
        q_bits = min(self.subgroup_bits, key_bits // 2)
        p, q, g = ModularArithmetic.generate_schnorr_group(key_bits, q_bits, self.rng, self.primality_rounds)

        # Secret x in [1, q-1], public y = g^x mod p
        x = self.rng.randrange(1, q)
        y = pow(g, x, p)

        created_at = datetime.now()
        public_key = HEPublicKey(
            key_id=key_id,
            scheme=self.scheme,
            parameters={'p': p, 'q': q, 'g': g, 'y': y},
            created_at=created_at
        )
        private_key = HEPrivateKey(
            key_id=key_id,
            scheme=self.scheme,
            parameters={'x': x, 'p': p},
            created_at=created_at
        )

        he_logger.info(f"Generated {key_bits}-bit ElGamal keypair {key_id}")
        return public_key, private_key

    def encrypt(self, plaintext: int, public_key: HEPublicKey) -> HECiphertext:
        """
        Encrypt a plaintext integer in [1, p) using ElGamal encryption.

        Returns:
            HECiphertext with components c1 = g^k, c2 = m * y^k (mod p)
        """
        self._check_public_key(public_key)
        p = public_key.parameters['p']
        q = public_key.parameters['q']
        g = public_key.parameters['g']
        y = public_key.parameters['y']

        if plaintext < 1 or plaintext >= p:
            raise PlaintextOutOfRangeError(f"Plaintext must be in [1, p) for a {p.bit_length()}-bit modulus")

        # Ephemeral secret k in [1, q-1]
        k = self.rng.randrange(1, q)

        c1 = pow(g, k, p)
        c2 = (plaintext * pow(y, k, p)) % p

        he_logger.debug(f"Encrypted {plaintext.bit_length()}-bit plaintext under {public_key.key_id}")
        return _make_ciphertext(self.scheme, public_key.key_id, {'c1': c1, 'c2': c2}, plaintext.bit_length())

    def decrypt(self, ciphertext: HECiphertext, private_key: HEPrivateKey) -> int:
        """
        Decrypt an ElGamal ciphertext: m = c2 * c1^(-x) mod p.
        """
        self._check_ciphertext(ciphertext, private_key.key_id)

        p = private_key.parameters['p']
        x = private_key.parameters['x']
        c1 = ciphertext.parameters['c1']
        c2 = ciphertext.parameters['c2']

        c1_inv = ModularArithmetic.mod_inverse(c1, p)
        return (c2 * pow(c1_inv, x, p)) % p

    def multiply_encrypted(self, ct1: HECiphertext, ct2: HECiphertext, public_key: HEPublicKey) -> HECiphertext:
        """
        Homomorphically multiply two encrypted values.

        Returns:
            Ciphertext encrypting (m1 * m2) mod p
        """
        self._check_operands(ct1, ct2, public_key)
        p = public_key.parameters['p']

        components = {
            'c1': (ct1.parameters['c1'] * ct2.parameters['c1']) % p,
            'c2': (ct1.parameters['c2'] * ct2.parameters['c2']) % p,
        }

        he_logger.debug("Performed homomorphic multiplication")
        return _make_ciphertext(
            self.scheme, public_key.key_id, components,
            min(ct1.plaintext_bits + ct2.plaintext_bits, p.bit_length()),
            operation_count=max(ct1.operation_count, ct2.operation_count) + 1,
            provenance=(ct1.ciphertext_id, ct2.ciphertext_id)
        )

    def rerandomize(self, ciphertext: HECiphertext, public_key: HEPublicKey) -> HECiphertext:
        """Return an unlinkable ciphertext of the same plaintext."""
        self._check_public_key(public_key)
        self._check_ciphertext(ciphertext, public_key.key_id)
        p = public_key.parameters['p']
        q = public_key.parameters['q']
        g = public_key.parameters['g']
        y = public_key.parameters['y']

        k = self.rng.randrange(1, q)
        components = {
            'c1': (ciphertext.parameters['c1'] * pow(g, k, p)) % p,
            'c2': (ciphertext.parameters['c2'] * pow(y, k, p)) % p,
        }
        return _make_ciphertext(
            self.scheme, public_key.key_id, components, ciphertext.plaintext_bits,
            operation_count=ciphertext.operation_count,
            provenance=(ciphertext.ciphertext_id,)
        )


def create_scheme_engines(rng, subgroup_bits: int = 256,
                          primality_rounds: int = DEFAULT_PRIMALITY_ROUNDS) -> Dict[HEScheme, _SchemeEngine]:
    """
    Create one engine per supported scheme, sharing a randomness service.

    Args:
        rng: SecureRandomnessService
        subgroup_bits: ElGamal subgroup order size
        primality_rounds: Miller-Rabin rounds for key generation

    Returns:
        Mapping of HEScheme to engine instance
    """
    return {
        HEScheme.PAILLIER: PaillierHomomorphic(rng, primality_rounds),
        HEScheme.ELGAMAL: ElGamalHomomorphic(rng, subgroup_bits, primality_rounds),
    }


def engine_for(engines: Mapping[HEScheme, Any], scheme) -> Any:
    """Look up the engine for a scheme tag, raising UnsupportedSchemeError."""
    parsed = HEScheme.parse(scheme)
    engine: Optional[Any] = engines.get(parsed)
    if engine is None:
        raise UnsupportedSchemeError(f"No engine registered for scheme {parsed.value}")
    return engine
