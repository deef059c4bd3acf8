#!/usr/bin/env python3
"""
Tests for Pedersen commitments and range, equality and membership proofs.
"""

import copy
import dataclasses
import logging
import os
import sys
import unittest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from he_errors import InvalidParameterError, NotFoundError, UnsupportedProofTypeError, WitnessMismatchError
from lifecycle_events import LifecycleNotifier
from modular_arithmetic import ModularArithmetic
from secure_randomness import SecureRandomnessService
from zero_knowledge_proofs import PedersenParameters, ProofType, ZeroKnowledgeProofSystem

log = logging.getLogger("zero_knowledge_proofs_test")


def _integers(value):
    """Every integer found in a nested proof payload."""
    if isinstance(value, bool):
        return
    if isinstance(value, int):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _integers(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _integers(item)


class TestPedersenParameters(unittest.TestCase):

    def test_generate(self):
        rng = SecureRandomnessService()
        params = PedersenParameters.generate(256, 64, rng, rounds=20)
        params.validate()

        self.assertTrue(ModularArithmetic.in_subgroup(params.g, params.p, params.q))
        self.assertTrue(ModularArithmetic.in_subgroup(params.h, params.p, params.q))
        self.assertNotEqual(params.g, params.h)
        self.assertEqual(params.fingerprint, PedersenParameters(params.p, params.q, params.g, params.h).fingerprint)

    def test_invalid_parameters(self):
        rng = SecureRandomnessService()
        params = PedersenParameters.generate(256, 64, rng, rounds=20)
        with self.assertRaises(InvalidParameterError):
            dataclasses.replace(params, h=params.g).validate()
        with self.assertRaises(InvalidParameterError):
            dataclasses.replace(params, h=params.p - 1).validate()


class TestZeroKnowledgeProofs(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.rng = SecureRandomnessService()
        cls.params = PedersenParameters.generate(512, 160, cls.rng, rounds=20)

    def setUp(self):
        self.notifier = LifecycleNotifier()
        self.events = []
        self.notifier.subscribe(self.events.append)
        self.zk = ZeroKnowledgeProofSystem(self.params, self.rng, self.notifier)

    def tearDown(self):
        self.notifier.close()

    # Commitments

    def test_commitment(self):
        c1, r1 = self.zk.commit(15)
        c2, r2 = self.zk.commit(15)
        self.assertNotEqual(c1, c2)
        self.assertEqual(self.zk.commit(15, r1), (c1, r1))
        self.assertTrue(ModularArithmetic.in_subgroup(c1, self.params.p, self.params.q))
        with self.assertRaises(InvalidParameterError):
            self.zk.commit("15")

    # Range proofs

    def test_range_proof_verifies(self):
        record = self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": 15}, "range")

        self.assertIs(record.proof_type, ProofType.RANGE)
        self.assertIsNone(record.verified)
        self.assertTrue(self.zk.verify_proof(record.proof_id))
        self.assertTrue(record.verified)
        self.assertEqual(self.zk.proof_count, 1)

    def test_range_boundaries(self):
        for value in (10, 20):
            record = self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": value}, "range")
            self.assertTrue(self.zk.verify_proof(record.proof_id))

        record = self.zk.generate_proof({"lower": -5, "upper": -5}, {"value": -5}, ProofType.RANGE)
        self.assertTrue(self.zk.verify_proof(record.proof_id))

    def test_range_witness_outside_range(self):
        for value in (25, 9):
            with self.assertRaises(WitnessMismatchError):
                self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": value}, "range")
        self.assertEqual(self.zk.proof_count, 0)

        self.notifier.flush(timeout=5)
        failures = [e for e in self.events if not e.succeeded]
        self.assertEqual(len(failures), 2)
        self.assertEqual(failures[0].error_kind, 'witness_mismatch')

    def test_verification_is_idempotent(self):
        record = self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": 15}, "range")
        results = [self.zk.verify_proof(record.proof_id) for _ in range(3)]
        self.assertEqual(results, [True, True, True])

    def test_proof_does_not_contain_witness(self):
        record = self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": 15}, "range")

        self.assertEqual(record.statement, {"lower": 10, "upper": 20})
        self.assertNotIn(15, list(_integers(record.payload)))
        self.assertNotIn('value', record.payload)
        self.assertNotIn('blinding', record.payload)

    def test_range_with_supplied_commitment(self):
        commitment, blinding = self.zk.commit(15)
        statement = {"lower": 10, "upper": 20, "commitment": commitment}

        record = self.zk.generate_proof(statement, {"value": 15, "blinding": blinding}, "range")
        self.assertEqual(record.commitments, (commitment,))
        self.assertTrue(self.zk.verify_proof(record.proof_id))

        with self.assertRaises(WitnessMismatchError):
            self.zk.generate_proof(statement, {"value": 15, "blinding": blinding + 1}, "range")
        with self.assertRaises(WitnessMismatchError):
            self.zk.generate_proof(statement, {"value": 16, "blinding": blinding}, "range")
        with self.assertRaises(WitnessMismatchError):
            self.zk.generate_proof(statement, {"value": 15}, "range")

    def test_malformed_range_statements(self):
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"lower": 20, "upper": 10}, {"value": 15}, "range")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"lower": 0, "upper": 1 << 200}, {"value": 15}, "range")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"upper": 10}, {"value": 5}, "range")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"lower": 0, "upper": 10}, {}, "range")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"lower": 0, "upper": 10, "commitment": self.params.p - 1},
                                   {"value": 5, "blinding": 1}, "range")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof([10, 20], {"value": 15}, "range")

    def test_tampered_range_proof_fails(self):
        record = self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": 15}, "range")

        tampered = copy.deepcopy(record)
        branch = tampered.payload['lower_bits'][0]['branches'][0]
        branch[2] = (branch[2] + 1) % self.params.q
        self.assertFalse(self.zk.verify_record(tampered))

        moved = copy.deepcopy(record)
        moved.statement['lower'] = 11
        self.assertFalse(self.zk.verify_record(moved))

        other_commitment, _ = self.zk.commit(25)
        swapped = dataclasses.replace(record, commitments=(other_commitment,))
        self.assertFalse(self.zk.verify_record(swapped))

        truncated = copy.deepcopy(record)
        truncated.payload['upper_bits'].pop()
        self.assertFalse(self.zk.verify_record(truncated))

        broken = copy.deepcopy(record)
        del broken.payload['upper_bits']
        self.assertFalse(self.zk.verify_record(broken))

        self.assertTrue(self.zk.verify_record(record))

    def test_foreign_parameters_rejected(self):
        record = self.zk.generate_proof({"lower": 10, "upper": 20}, {"value": 15}, "range")
        foreign = dataclasses.replace(record, parameters_fingerprint="0" * 32)
        self.assertFalse(self.zk.verify_record(foreign))

    # Equality proofs

    def test_equality_proof(self):
        record = self.zk.generate_proof({}, {"values": [42, 42]}, "equality")
        self.assertEqual(len(record.commitments), 2)
        self.assertNotEqual(record.commitments[0], record.commitments[1])
        self.assertTrue(self.zk.verify_proof(record.proof_id))

    def test_equality_with_supplied_commitments(self):
        c1, r1 = self.zk.commit(42)
        c2, r2 = self.zk.commit(42)
        record = self.zk.generate_proof(
            {"commitments": [c1, c2]}, {"values": [42, 42], "blindings": [r1, r2]}, "equality")
        self.assertEqual(record.commitments, (c1, c2))
        self.assertTrue(self.zk.verify_proof(record.proof_id))

        c3, r3 = self.zk.commit(43)
        with self.assertRaises(WitnessMismatchError):
            self.zk.generate_proof(
                {"commitments": [c1, c3]}, {"values": [42, 42], "blindings": [r1, r3]}, "equality")

    def test_equality_rejects_unequal_values(self):
        with self.assertRaises(WitnessMismatchError):
            self.zk.generate_proof({}, {"values": [42, 43]}, "equality")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({}, {"values": [42]}, "equality")

    def test_equality_rejects_malformed_blindings(self):
        for blindings in (5, [1, 2, 3], [1, "r"]):
            with self.assertRaises(InvalidParameterError):
                self.zk.generate_proof({}, {"values": [1, 1], "blindings": blindings}, "equality")

        self.notifier.flush(timeout=5)
        self.assertEqual(len(self.events), 3)
        for event in self.events:
            self.assertEqual(event.event_type.value, 'proof_generated')
            self.assertEqual(event.error_kind, 'invalid_parameter')
        self.assertEqual(self.zk.proof_count, 0)

    def test_tampered_equality_proof_fails(self):
        record = self.zk.generate_proof({}, {"values": [42, 42]}, "equality")
        c_other, _ = self.zk.commit(43)
        swapped = dataclasses.replace(record, commitments=(record.commitments[0], c_other))
        self.assertFalse(self.zk.verify_record(swapped))

    # Membership proofs

    def test_membership_proof(self):
        record = self.zk.generate_proof({"members": [3, 5, 8]}, {"value": 5}, "membership")
        self.assertEqual(record.statement, {"members": [3, 5, 8]})
        self.assertTrue(self.zk.verify_proof(record.proof_id))

        record = self.zk.generate_proof({"members": [7]}, {"value": 7}, "membership")
        self.assertTrue(self.zk.verify_proof(record.proof_id))

    def test_membership_deduplicates(self):
        record = self.zk.generate_proof({"members": [3, 5, 5, 3]}, {"value": 3}, "membership")
        self.assertEqual(record.statement["members"], [3, 5])
        self.assertTrue(self.zk.verify_proof(record.proof_id))

    def test_membership_rejects_non_members(self):
        with self.assertRaises(WitnessMismatchError):
            self.zk.generate_proof({"members": [3, 5, 8]}, {"value": 4}, "membership")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"members": []}, {"value": 4}, "membership")
        with self.assertRaises(InvalidParameterError):
            self.zk.generate_proof({"members": "358"}, {"value": 3}, "membership")

    def test_membership_cannot_be_reused_for_another_set(self):
        record = self.zk.generate_proof({"members": [3, 5, 8]}, {"value": 5}, "membership")
        other = dataclasses.replace(record, statement={"members": [3, 6, 8]})
        self.assertFalse(self.zk.verify_record(other))

    # Lookup and errors

    def test_unknown_proof_type(self):
        with self.assertRaises(UnsupportedProofTypeError):
            self.zk.generate_proof({}, {}, "sum")

    def test_unknown_proof_id(self):
        with self.assertRaises(NotFoundError):
            self.zk.verify_proof("missing")
        with self.assertRaises(NotFoundError):
            self.zk.get_proof("missing")

    def test_unknown_proof_id_publishes_failure(self):
        with self.assertRaises(NotFoundError):
            self.zk.verify_proof("missing")
        self.notifier.flush(timeout=5)

        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.events[0].event_type.value, 'proof_verified')
        self.assertEqual(self.events[0].error_kind, 'not_found')
        self.assertEqual(self.events[0].details['proof_id'], "missing")

    def test_proof_events(self):
        record = self.zk.generate_proof({"lower": 0, "upper": 3}, {"value": 1}, "range")
        self.zk.verify_proof(record.proof_id)
        self.notifier.flush(timeout=5)

        types = [e.event_type.value for e in self.events]
        self.assertEqual(types, ['proof_generated', 'proof_verified'])
        self.assertTrue(self.events[1].details['valid'])

    def test_system_stats(self):
        self.zk.generate_proof({"members": [1, 2]}, {"value": 2}, "membership")
        stats = self.zk.get_system_stats()
        self.assertEqual(stats['proofs'], 1)
        self.assertEqual(stats['proofs_by_type'], {'membership': 1})
        self.assertEqual(stats['subgroup_bits'], 160)


if __name__ == '__main__':
    unittest.main()
