"""
Big-integer and modular arithmetic core.

Provides the number theory the scheme engines and the proof subsystem are
built on: modular exponentiation and inversion, gcd/lcm, Miller-Rabin
primality testing, prime and Schnorr-group generation.

Randomness is drawn from an object exposing ``randbits``/``randbelow`` (the
SecureRandomnessService, or the ``secrets`` module when none is given).
"""

import hashlib
import math
import secrets
from typing import List, Tuple

from he_errors import InvalidParameterError, NoInverseExistsError
from he_logging import get_logger

ma_logger = get_logger("modular_arithmetic")

DEFAULT_PRIMALITY_ROUNDS = 40


def _small_primes(limit: int) -> List[int]:
    """Sieve of Eratosthenes, used only to pre-filter prime candidates."""
    sieve = bytearray([1]) * (limit + 1)
    sieve[0:2] = b'\x00\x00'
    for i in range(2, int(limit ** 0.5) + 1):
        if sieve[i]:
            sieve[i * i::i] = bytearray(len(sieve[i * i::i]))
    return [i for i, flag in enumerate(sieve) if flag]


SMALL_PRIMES = _small_primes(2000)


class ModularArithmetic:
    """
    Modular arithmetic operations for cryptographic computations.
    All methods are static; the class is a namespace.
    """

    @staticmethod
    def mod_exp(base: int, exponent: int, modulus: int) -> int:
        """
        Modular exponentiation.

        Args:
            base: Base value
            exponent: Non-negative exponent
            modulus: Positive modulus

        Returns:
            (base^exponent) mod modulus
        """
        if modulus <= 0:
            raise InvalidParameterError("Modulus must be positive")
        if exponent < 0:
            raise InvalidParameterError("Exponent must be non-negative; use mod_inverse first")
        if modulus == 1:
            return 0
        return pow(base, exponent, modulus)

    @staticmethod
    def extended_gcd(a: int, b: int) -> Tuple[int, int, int]:
        """
        Extended Euclidean algorithm.

        Returns:
            Tuple (g, x, y) with a*x + b*y == g == gcd(a, b)
        """
        old_r, r = a, b
        old_x, x = 1, 0
        old_y, y = 0, 1

        while r != 0:
            quotient = old_r // r
            old_r, r = r, old_r - quotient * r
            old_x, x = x, old_x - quotient * x
            old_y, y = y, old_y - quotient * y

        if old_r < 0:
            old_r, old_x, old_y = -old_r, -old_x, -old_y
        return old_r, old_x, old_y

    @staticmethod
    def mod_inverse(a: int, m: int) -> int:
        """
        Compute modular multiplicative inverse.

        Raises:
            NoInverseExistsError: if gcd(a, m) != 1
        """
        if m <= 0:
            raise InvalidParameterError("Modulus must be positive")
        g, x, _ = ModularArithmetic.extended_gcd(a % m, m)
        if g != 1:
            raise NoInverseExistsError("Modular inverse does not exist")
        return x % m

    @staticmethod
    def gcd(a: int, b: int) -> int:
        return math.gcd(a, b)

    @staticmethod
    def lcm(a: int, b: int) -> int:
        if a == 0 or b == 0:
            return 0
        return abs(a * b) // math.gcd(a, b)

    @staticmethod
    def is_probable_prime(n: int, rounds: int = DEFAULT_PRIMALITY_ROUNDS, rng=None) -> bool:
        """
        Miller-Rabin primality test with a small-prime pre-filter.

        Args:
            n: Candidate
            rounds: Number of Miller-Rabin rounds (error <= 4^-rounds)
            rng: Source of random witnesses

        Returns:
            True if n is prime with overwhelming probability
        """
        if n < 2:
            return False
        for p in SMALL_PRIMES:
            if n == p:
                return True
            if n % p == 0:
                return False

        source = rng or secrets

        # Write n-1 as d * 2^r
        r = 0
        d = n - 1
        while d % 2 == 0:
            r += 1
            d //= 2

        for _ in range(rounds):
            a = source.randbelow(n - 3) + 2
            x = pow(a, d, n)

            if x == 1 or x == n - 1:
                continue

            for _ in range(r - 1):
                x = pow(x, 2, n)
                if x == n - 1:
                    break
            else:
                return False

        return True

    @staticmethod
    def generate_prime(bits: int, rng=None, rounds: int = DEFAULT_PRIMALITY_ROUNDS) -> int:
        """
        Generate a random prime of exactly ``bits`` bits.

        The two most significant bits are set so the product of two such
        primes has exactly 2*bits bits.
        """
        if bits < 3:
            raise InvalidParameterError("Prime size must be at least 3 bits")

        source = rng or secrets
        attempts = 0
        while True:
            attempts += 1
            candidate = source.randbits(bits)
            candidate |= (1 << (bits - 1)) | (1 << (bits - 2))  # Set two MSBs
            candidate |= 1  # Set LSB to make odd

            if ModularArithmetic.is_probable_prime(candidate, rounds, source):
                ma_logger.debug(f"Generated {bits}-bit prime after {attempts} candidates")
                return candidate

    @staticmethod
    def generate_schnorr_group(p_bits: int, q_bits: int, rng=None,
                               rounds: int = DEFAULT_PRIMALITY_ROUNDS) -> Tuple[int, int, int]:
        """
        Generate a Schnorr group: primes p, q with q | p - 1 and a generator g
        of the order-q subgroup of Z_p*.

        Args:
            p_bits: Bit length of the modulus p
            q_bits: Bit length of the subgroup order q

        Returns:
            Tuple (p, q, g)
        """
        if q_bits < 16 or q_bits >= p_bits:
            raise InvalidParameterError(f"Invalid Schnorr group sizes: p={p_bits} bits, q={q_bits} bits")

        source = rng or secrets
        q = ModularArithmetic.generate_prime(q_bits, source, rounds)

        # p = X - (X mod 2q) + 1 keeps p = 1 (mod 2q) for random X of p_bits bits
        while True:
            x = source.randbits(p_bits) | (1 << (p_bits - 1))
            p = x - (x % (2 * q)) + 1
            if p.bit_length() != p_bits:
                continue
            if ModularArithmetic.is_probable_prime(p, rounds, source):
                break

        cofactor = (p - 1) // q
        while True:
            h = source.randbelow(p - 3) + 2
            g = pow(h, cofactor, p)
            if g != 1:
                break

        ma_logger.debug(f"Generated Schnorr group: |p|={p_bits}, |q|={q_bits}")
        return p, q, g

    @staticmethod
    def hash_to_subgroup(p: int, q: int, seed: bytes) -> int:
        """
        Derive an element of the order-q subgroup from a public seed, so no
        one knows its discrete log with respect to any other generator.
        """
        cofactor = (p - 1) // q
        byte_len = (p.bit_length() + 7) // 8 + 16
        counter = 0
        while True:
            stream = b''
            block = 0
            while len(stream) < byte_len:
                hasher = hashlib.sha3_256()
                hasher.update(seed)
                hasher.update(counter.to_bytes(4, 'big'))
                hasher.update(block.to_bytes(4, 'big'))
                stream += hasher.digest()
                block += 1
            candidate = int.from_bytes(stream[:byte_len], 'big') % p
            element = pow(candidate, cofactor, p)
            if element not in (0, 1):
                return element
            counter += 1

    @staticmethod
    def in_subgroup(element: int, p: int, q: int) -> bool:
        """True if element lies in the order-q subgroup of Z_p*."""
        return 0 < element < p and pow(element, q, p) == 1


def int_to_bytes(value: int) -> bytes:
    """Minimal big-endian encoding (zero encodes as a single byte)."""
    if value < 0:
        raise InvalidParameterError("Cannot encode a negative integer")
    return value.to_bytes(max(1, (value.bit_length() + 7) // 8), 'big')


def bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, 'big')
