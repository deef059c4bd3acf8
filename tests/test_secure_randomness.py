#!/usr/bin/env python3
"""
Tests for the secure randomness service.
"""

import math
import os
import sys
import unittest
from unittest.mock import patch

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from he_errors import InvalidParameterError, SecureRandomnessUnavailableError
from secure_randomness import SecureRandomnessService


class TestSecureRandomness(unittest.TestCase):

    def setUp(self):
        self.rng = SecureRandomnessService(required=True, audit_size=4)

    def test_generate_random_bytes(self):
        token = self.rng.generate_random_bytes(32)
        other = self.rng.generate_random_bytes(32)

        self.assertEqual(token.size, 32)
        self.assertEqual(len(token.payload), 32)
        self.assertNotEqual(token.payload, other.payload)
        self.assertNotEqual(token.token_id, other.token_id)
        self.assertEqual(self.rng.tokens_generated, 2)
        self.assertEqual(self.rng.bytes_generated, 64)

    def test_payload_not_in_repr(self):
        token = self.rng.generate_random_bytes(16)
        self.assertNotIn(repr(token.payload), repr(token))

    def test_invalid_sizes(self):
        for size in (0, -5, True, 1.5):
            with self.assertRaises(InvalidParameterError):
                self.rng.generate_random_bytes(size)

    def test_audit_trail_is_bounded_and_has_no_payloads(self):
        for _ in range(6):
            self.rng.generate_random_bytes(8)

        audit = self.rng.recent_tokens()
        self.assertEqual(len(audit), 4)
        for entry in audit:
            self.assertEqual(set(entry), {'token_id', 'size', 'created_at'})

    def test_integer_helpers(self):
        for _ in range(50):
            self.assertLess(self.rng.randbits(10), 1 << 10)
            self.assertTrue(0 <= self.rng.randbelow(7) < 7)
            self.assertTrue(5 <= self.rng.randrange(5, 9) < 9)

        self.assertEqual(self.rng.randbelow(1), 0)
        r = self.rng.random_coprime(3 * 5 * 7 * 11)
        self.assertEqual(math.gcd(r, 3 * 5 * 7 * 11), 1)

    def test_integer_helper_validation(self):
        with self.assertRaises(InvalidParameterError):
            self.rng.randbits(0)
        with self.assertRaises(InvalidParameterError):
            self.rng.randbelow(0)
        with self.assertRaises(InvalidParameterError):
            self.rng.randrange(5, 5)
        with self.assertRaises(InvalidParameterError):
            self.rng.random_coprime(1)

    def test_os_failure_is_never_masked(self):
        with patch('secure_randomness.secrets.token_bytes', side_effect=OSError("no entropy")):
            with self.assertRaises(SecureRandomnessUnavailableError) as ctx:
                self.rng.generate_random_bytes(16)
        self.assertFalse(ctx.exception.recoverable)

    def test_self_test_failure(self):
        with patch('secure_randomness.secrets.token_bytes', side_effect=NotImplementedError):
            with self.assertRaises(SecureRandomnessUnavailableError):
                SecureRandomnessService(required=True)

        with patch('secure_randomness.secrets.token_bytes', return_value=b'\x00' * 64):
            with self.assertRaises(SecureRandomnessUnavailableError):
                SecureRandomnessService(required=True)

    def test_self_test_skipped_when_not_required(self):
        with patch('secure_randomness.secrets.token_bytes', return_value=b'\x00' * 64):
            service = SecureRandomnessService(required=False)
        self.assertFalse(service.required)


if __name__ == '__main__':
    unittest.main()
