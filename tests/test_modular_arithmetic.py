#!/usr/bin/env python3
"""
Tests for the big-integer and modular arithmetic core.
"""

import os
import sys
import unittest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from he_errors import InvalidParameterError, NoInverseExistsError
from modular_arithmetic import ModularArithmetic, bytes_to_int, int_to_bytes


class TestModularArithmetic(unittest.TestCase):

    def test_mod_exp(self):
        self.assertEqual(ModularArithmetic.mod_exp(4, 13, 497), 445)
        self.assertEqual(ModularArithmetic.mod_exp(5, 0, 7), 1)
        self.assertEqual(ModularArithmetic.mod_exp(5, 3, 1), 0)

    def test_mod_exp_rejects_negative_exponent(self):
        with self.assertRaises(InvalidParameterError):
            ModularArithmetic.mod_exp(3, -1, 7)
        with self.assertRaises(InvalidParameterError):
            ModularArithmetic.mod_exp(3, 2, 0)

    def test_extended_gcd(self):
        g, x, y = ModularArithmetic.extended_gcd(240, 46)
        self.assertEqual(g, 2)
        self.assertEqual(240 * x + 46 * y, g)

    def test_extended_gcd_large_inputs(self):
        a = (1 << 4095) + 12345
        b = (1 << 4000) + 977
        g, x, y = ModularArithmetic.extended_gcd(a, b)
        self.assertEqual(a * x + b * y, g)

    def test_mod_inverse(self):
        self.assertEqual(ModularArithmetic.mod_inverse(3, 11), 4)
        self.assertEqual((17 * ModularArithmetic.mod_inverse(17, 3120)) % 3120, 1)

    def test_mod_inverse_missing(self):
        with self.assertRaises(NoInverseExistsError):
            ModularArithmetic.mod_inverse(6, 9)
        # Also usable as a plain ValueError
        with self.assertRaises(ValueError):
            ModularArithmetic.mod_inverse(0, 9)

    def test_gcd_and_lcm(self):
        self.assertEqual(ModularArithmetic.gcd(12, 18), 6)
        self.assertEqual(ModularArithmetic.lcm(4, 6), 12)
        self.assertEqual(ModularArithmetic.lcm(0, 6), 0)

    def test_primality(self):
        for prime in (2, 3, 1999, 2003, 7919, (1 << 61) - 1, (1 << 127) - 1):
            self.assertTrue(ModularArithmetic.is_probable_prime(prime), prime)
        for composite in (0, 1, 4, 561, 2047, 1 << 61, (1 << 61) + 1, 2003 * 2011):
            self.assertFalse(ModularArithmetic.is_probable_prime(composite), composite)

    def test_generate_prime(self):
        prime = ModularArithmetic.generate_prime(64)
        self.assertEqual(prime.bit_length(), 64)
        self.assertTrue(ModularArithmetic.is_probable_prime(prime))
        # Two most significant bits set
        self.assertTrue(prime >> 62 == 0b11)

    def test_generate_prime_rejects_tiny_sizes(self):
        with self.assertRaises(InvalidParameterError):
            ModularArithmetic.generate_prime(2)

    def test_generate_schnorr_group(self):
        p, q, g = ModularArithmetic.generate_schnorr_group(256, 64, rounds=20)
        self.assertEqual(p.bit_length(), 256)
        self.assertEqual(q.bit_length(), 64)
        self.assertEqual((p - 1) % q, 0)
        self.assertNotEqual(g, 1)
        self.assertEqual(pow(g, q, p), 1)
        self.assertTrue(ModularArithmetic.in_subgroup(g, p, q))

    def test_schnorr_group_size_validation(self):
        with self.assertRaises(InvalidParameterError):
            ModularArithmetic.generate_schnorr_group(128, 128)
        with self.assertRaises(InvalidParameterError):
            ModularArithmetic.generate_schnorr_group(128, 8)

    def test_hash_to_subgroup(self):
        p, q, g = ModularArithmetic.generate_schnorr_group(256, 64, rounds=20)
        h1 = ModularArithmetic.hash_to_subgroup(p, q, b'seed')
        h2 = ModularArithmetic.hash_to_subgroup(p, q, b'seed')
        h3 = ModularArithmetic.hash_to_subgroup(p, q, b'other seed')

        self.assertEqual(h1, h2)
        self.assertNotEqual(h1, h3)
        self.assertTrue(ModularArithmetic.in_subgroup(h1, p, q))
        self.assertNotEqual(h1, 1)

    def test_in_subgroup_rejects_outsiders(self):
        p, q, g = ModularArithmetic.generate_schnorr_group(256, 64, rounds=20)
        self.assertFalse(ModularArithmetic.in_subgroup(0, p, q))
        self.assertFalse(ModularArithmetic.in_subgroup(p, p, q))
        # p - 1 has order 2
        self.assertFalse(ModularArithmetic.in_subgroup(p - 1, p, q))

    def test_integer_encoding(self):
        self.assertEqual(int_to_bytes(0), b'\x00')
        self.assertEqual(int_to_bytes(256), b'\x01\x00')
        self.assertEqual(bytes_to_int(b'\x01\x00'), 256)
        with self.assertRaises(InvalidParameterError):
            int_to_bytes(-1)


if __name__ == '__main__':
    unittest.main()
