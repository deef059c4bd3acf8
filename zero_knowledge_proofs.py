"""
Zero-Knowledge Proof Subsystem

This module implements non-interactive zero-knowledge proofs over Pedersen
commitments, so a party can prove facts about a committed value without
revealing it.

Supported statements:
1. Range - the committed value lies in [lower, upper]
2. Equality - two commitments open to the same value
3. Membership - the committed value is one of a public set

Proofs are sigma protocols made non-interactive with the Fiat-Shamir
heuristic. Challenges are SHA3-256 over the group parameters, the public
statement, the commitments and the prover's first messages; no timestamps or
other non-deterministic input enter the transcript, so verification always
gives the same answer for the same record.

Witnesses are consumed while the proof is generated and never stored.
"""

import hashlib
import hmac
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from he_errors import (
    HomomorphicError,
    InvalidParameterError,
    NotFoundError,
    UnsupportedProofTypeError,
    WitnessMismatchError,
)
from he_logging import get_logger
from modular_arithmetic import DEFAULT_PRIMALITY_ROUNDS, ModularArithmetic, int_to_bytes

zk_logger = get_logger("zero_knowledge_proofs")

TRANSCRIPT_DOMAIN = b'he-engine-zk-transcript-v1'
GENERATOR_SEED = b'he-engine-pedersen-h'


class ProofType(Enum):
    RANGE = "range"
    EQUALITY = "equality"
    MEMBERSHIP = "membership"

    @classmethod
    def parse(cls, value) -> "ProofType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnsupportedProofTypeError(f"Unsupported proof type: {value}") from None


@dataclass(frozen=True)
class PedersenParameters:
    """
    Schnorr group (p, q, g) with a second generator h of unknown discrete log
    relative to g.
    """
    p: int
    q: int
    g: int
    h: int

    @classmethod
    def generate(cls, modulus_bits: int = 2048, subgroup_bits: int = 256, rng=None,
                 rounds: int = DEFAULT_PRIMALITY_ROUNDS) -> "PedersenParameters":
        """
        Generate fresh commitment parameters.

        h is hashed into the subgroup from a public seed bound to (p, q, g),
        so nobody knows log_g(h).
        """
        p, q, g = ModularArithmetic.generate_schnorr_group(modulus_bits, subgroup_bits, rng, rounds)
        seed = GENERATOR_SEED + int_to_bytes(p) + int_to_bytes(q) + int_to_bytes(g)
        h = ModularArithmetic.hash_to_subgroup(p, q, seed)
        zk_logger.debug(f"Generated Pedersen parameters: |p|={modulus_bits}, |q|={subgroup_bits}")
        return cls(p=p, q=q, g=g, h=h)

    def validate(self) -> None:
        if not ModularArithmetic.is_probable_prime(self.q) or (self.p - 1) % self.q:
            raise InvalidParameterError("Pedersen parameters do not describe a Schnorr group")
        for name, element in (('g', self.g), ('h', self.h)):
            if element == 1 or not ModularArithmetic.in_subgroup(element, self.p, self.q):
                raise InvalidParameterError(f"Generator {name} is not in the order-q subgroup")
        if self.g == self.h:
            raise InvalidParameterError("Generators g and h must differ")

    @property
    def fingerprint(self) -> str:
        hasher = hashlib.sha3_256()
        for value in (self.p, self.q, self.g, self.h):
            hasher.update(int_to_bytes(value))
        return hasher.hexdigest()[:32]


@dataclass
class ProofRecord:
    """Container for a generated proof. Holds only public data."""
    proof_id: str
    proof_type: ProofType
    statement: Dict[str, Any]
    commitments: Tuple[int, ...]
    payload: Dict[str, Any] = field(repr=False)
    parameters_fingerprint: str
    created_at: datetime
    verified: Optional[bool] = None


def _require_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameterError(f"{name} must be an integer")
    return value


def _require_mapping(value: Any, name: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise InvalidParameterError(f"{name} must be a mapping")
    return value


class ZeroKnowledgeProofSystem:
    """
    Generates and verifies range, equality and membership proofs over
    Pedersen commitments.
    """

    def __init__(self, parameters: PedersenParameters, randomness, notifier=None):
        """
        Initialize the proof system.

        Args:
            parameters: Pedersen commitment parameters
            randomness: SecureRandomnessService for blindings and proof nonces
            notifier: Optional LifecycleNotifier
        """
        parameters.validate()
        self.parameters = parameters
        self.randomness = randomness
        self.notifier = notifier

        self._proofs: Dict[str, ProofRecord] = {}
        self._lock = threading.Lock()
        self._verifications = 0

        zk_logger.info(
            f"Zero-knowledge proof system initialized with {parameters.p.bit_length()}-bit group "
            f"({parameters.fingerprint})")

    # ------------------------------------------------------------------
    # Group helpers

    def _random_exponent(self) -> int:
        return self.randomness.randbelow(self.parameters.q)

    def _g_pow(self, exponent: int) -> int:
        return pow(self.parameters.g, exponent % self.parameters.q, self.parameters.p)

    def _divide(self, a: int, b: int) -> int:
        """a / b inside the order-q subgroup."""
        p, q = self.parameters.p, self.parameters.q
        return (a * pow(b, q - 1, p)) % p

    def _check_commitment(self, commitment: Any, name: str = "commitment") -> int:
        commitment = _require_int(commitment, name)
        if not ModularArithmetic.in_subgroup(commitment, self.parameters.p, self.parameters.q):
            raise InvalidParameterError(f"{name} is not an element of the commitment group")
        return commitment

    def _challenge(self, proof_type: ProofType, label: str, *values: int) -> int:
        """
        Fiat-Shamir challenge over the group, the proof type, a label and
        the given public values.
        """
        hasher = hashlib.sha3_256()
        hasher.update(TRANSCRIPT_DOMAIN)

        def absorb(data: bytes) -> None:
            hasher.update(len(data).to_bytes(4, 'big'))
            hasher.update(data)

        params = self.parameters
        for value in (params.p, params.q, params.g, params.h):
            absorb(int_to_bytes(value))
        absorb(proof_type.value.encode())
        absorb(label.encode())
        for value in values:
            absorb(str(value).encode())

        return int.from_bytes(hasher.digest(), 'big') % params.q

    # ------------------------------------------------------------------
    # Commitments

    def commit(self, value: int, blinding: Optional[int] = None) -> Tuple[int, int]:
        """
        Create a Pedersen commitment C = g^value * h^blinding mod p.

        Args:
            value: Value to commit to
            blinding: Blinding factor (random when omitted)

        Returns:
            Tuple of (commitment, blinding)
        """
        value = _require_int(value, "value")
        if blinding is None:
            blinding = self._random_exponent()
        blinding = _require_int(blinding, "blinding") % self.parameters.q

        p = self.parameters.p
        commitment = (self._g_pow(value) * pow(self.parameters.h, blinding, p)) % p
        return commitment, blinding

    def _open(self, statement: Mapping, value: int, blinding: Optional[int],
              key: str = "commitment") -> Tuple[int, int]:
        """
        Use the statement's commitment if there is one (the blinding must
        open it), otherwise commit afresh.
        """
        if statement.get(key) is None:
            return self.commit(value, blinding)

        commitment = self._check_commitment(statement[key], key)
        if blinding is None:
            raise WitnessMismatchError("A blinding factor is required to open the supplied commitment")
        expected, blinding = self.commit(value, blinding)
        if not hmac.compare_digest(int_to_bytes(expected), int_to_bytes(commitment)):
            raise WitnessMismatchError("Witness does not open the supplied commitment")
        return commitment, blinding

    # ------------------------------------------------------------------
    # OR-proofs (Cramer-Damgard-Schoenmakers)

    def _prove_or(self, proof_type: ProofType, label: str, context: Sequence[int],
                  ys: Sequence[int], known_index: int, secret: int) -> List[List[int]]:
        """
        Prove that some Y_j equals h^x, knowing x for Y_{known_index}.
        Every other branch is simulated.
        """
        p, q, h = self.parameters.p, self.parameters.q, self.parameters.h

        branches: List[Optional[List[int]]] = [None] * len(ys)
        for j, y in enumerate(ys):
            if j == known_index:
                continue
            e = self._random_exponent()
            z = self._random_exponent()
            a = (pow(h, z, p) * pow(y, (q - e) % q, p)) % p
            branches[j] = [a, e, z]

        w = self._random_exponent()
        first_messages = [b[0] if b is not None else pow(h, w, p) for b in branches]

        c = self._challenge(proof_type, label, *context, *ys, *first_messages)
        e_known = (c - sum(b[1] for b in branches if b is not None)) % q
        z_known = (w + e_known * secret) % q
        branches[known_index] = [first_messages[known_index], e_known, z_known]
        return branches

    def _verify_or(self, proof_type: ProofType, label: str, context: Sequence[int],
                   ys: Sequence[int], branches: Sequence[Sequence[int]]) -> bool:
        p, q, h = self.parameters.p, self.parameters.q, self.parameters.h

        if len(branches) != len(ys):
            return False
        for branch in branches:
            if len(branch) != 3:
                return False
            a, e, z = (_require_int(v, "proof value") for v in branch)
            if not (0 < a < p and 0 <= e < q and 0 <= z < q):
                return False

        c = self._challenge(proof_type, label, *context, *ys, *(b[0] for b in branches))
        if sum(b[1] for b in branches) % q != c:
            return False

        for y, (a, e, z) in zip(ys, branches):
            if pow(h, z, p) != (a * pow(y, e, p)) % p:
                return False
        return True

    # ------------------------------------------------------------------
    # Range proofs

    def _range_bounds(self, statement: Mapping) -> Tuple[int, int, int]:
        if 'lower' not in statement or 'upper' not in statement:
            raise InvalidParameterError("Range statement requires 'lower' and 'upper'")
        lower = _require_int(statement['lower'], "lower")
        upper = _require_int(statement['upper'], "upper")
        if lower > upper:
            raise InvalidParameterError(f"Empty range: lower {lower} > upper {upper}")

        bits = max(1, (upper - lower).bit_length())
        # Both decompositions must fit without wrapping modulo q
        if (1 << (bits + 1)) >= self.parameters.q:
            raise InvalidParameterError("Range is too wide for the commitment group")
        return lower, upper, bits

    def _bit_commitments(self, proof_type: ProofType, side: str, context: Sequence[int],
                         difference: int, blinding: int, bits: int) -> List[Dict[str, Any]]:
        """
        Commit to each bit of ``difference`` so that the bit commitments
        weighted by 2^i multiply to g^difference * h^blinding.
        """
        p, q, g = self.parameters.p, self.parameters.q, self.parameters.g

        blindings = [self._random_exponent() for _ in range(bits - 1)]
        partial = sum(r << i for i, r in enumerate(blindings))
        top_weight_inv = ModularArithmetic.mod_inverse(1 << (bits - 1), q)
        blindings.append(((blinding - partial) * top_weight_inv) % q)

        proofs = []
        for i, r in enumerate(blindings):
            bit = (difference >> i) & 1
            b_commit, _ = self.commit(bit, r)
            ys = [b_commit, (b_commit * pow(g, q - 1, p)) % p]
            branches = self._prove_or(proof_type, f"{side}:{i}", context, ys, bit, r)
            proofs.append({'commitment': b_commit, 'branches': branches})
        return proofs

    def _prove_range(self, statement: Mapping, witness: Mapping):
        lower, upper, bits = self._range_bounds(statement)
        if 'value' not in witness:
            raise InvalidParameterError("Range witness requires 'value'")
        value = _require_int(witness['value'], "value")
        if not lower <= value <= upper:
            raise WitnessMismatchError("Witness value is outside the stated range")

        commitment, blinding = self._open(statement, value, witness.get('blinding'))
        q = self.parameters.q
        context = (lower, upper, commitment)

        payload = {
            'lower_bits': self._bit_commitments(ProofType.RANGE, "lo", context, value - lower, blinding, bits),
            'upper_bits': self._bit_commitments(ProofType.RANGE, "hi", context, upper - value, (-blinding) % q, bits),
        }
        return {'lower': lower, 'upper': upper}, (commitment,), payload

    def _verify_range(self, record: ProofRecord) -> bool:
        lower, upper, bits = self._range_bounds(record.statement)
        if len(record.commitments) != 1:
            return False
        commitment = self._check_commitment(record.commitments[0])
        p, q = self.parameters.p, self.parameters.q
        context = (lower, upper, commitment)

        targets = (
            ('lo', 'lower_bits', self._divide(commitment, self._g_pow(lower))),
            ('hi', 'upper_bits', self._divide(self._g_pow(upper), commitment)),
        )
        for side, key, target in targets:
            bit_proofs = record.payload[key]
            if len(bit_proofs) != bits:
                return False

            product = 1
            for i, bit_proof in enumerate(bit_proofs):
                b_commit = self._check_commitment(bit_proof['commitment'])
                product = (product * pow(b_commit, 1 << i, p)) % p
                ys = [b_commit, self._divide(b_commit, self.parameters.g)]
                if not self._verify_or(ProofType.RANGE, f"{side}:{i}", context, ys, bit_proof['branches']):
                    return False

            if product != target:
                return False
        return True

    # ------------------------------------------------------------------
    # Equality proofs

    def _prove_equality(self, statement: Mapping, witness: Mapping):
        values = witness.get('values')
        if not isinstance(values, Sequence) or len(values) != 2:
            raise InvalidParameterError("Equality witness requires 'values' with two entries")
        a, b = (_require_int(v, "value") for v in values)

        blindings = witness.get('blindings') or (None, None)
        if not isinstance(blindings, Sequence) or len(blindings) != 2:
            raise InvalidParameterError("Equality witness 'blindings' must have two entries")
        blindings = tuple(None if r is None else _require_int(r, "blinding") for r in blindings)

        supplied = statement.get('commitments')
        if supplied is not None and (not isinstance(supplied, Sequence) or len(supplied) != 2):
            raise InvalidParameterError("Equality statement 'commitments' must have two entries")

        if a != b:
            raise WitnessMismatchError("Committed values are not equal")

        supplied = supplied or (None, None)
        c1, r1 = self._open({'commitment': supplied[0]}, a, blindings[0])
        c2, r2 = self._open({'commitment': supplied[1]}, b, blindings[1])

        p, q, h = self.parameters.p, self.parameters.q, self.parameters.h
        difference = self._divide(c1, c2)
        w = self._random_exponent()
        first_message = pow(h, w, p)
        c = self._challenge(ProofType.EQUALITY, "eq", c1, c2, difference, first_message)
        response = (w + c * (r1 - r2)) % q

        payload = {'commitment': first_message, 'response': response}
        return {}, (c1, c2), payload

    def _verify_equality(self, record: ProofRecord) -> bool:
        if len(record.commitments) != 2:
            return False
        c1 = self._check_commitment(record.commitments[0])
        c2 = self._check_commitment(record.commitments[1])
        first_message = _require_int(record.payload['commitment'], "proof commitment")
        response = _require_int(record.payload['response'], "proof response")

        p, q, h = self.parameters.p, self.parameters.q, self.parameters.h
        if not (0 < first_message < p and 0 <= response < q):
            return False

        difference = self._divide(c1, c2)
        c = self._challenge(ProofType.EQUALITY, "eq", c1, c2, difference, first_message)
        return pow(h, response, p) == (first_message * pow(difference, c, p)) % p

    # ------------------------------------------------------------------
    # Membership proofs

    def _members(self, statement: Mapping) -> List[int]:
        members = statement.get('members')
        if isinstance(members, (str, bytes)) or not isinstance(members, (Sequence, set, frozenset)):
            raise InvalidParameterError("Membership statement requires a 'members' collection")
        unique: List[int] = []
        for member in members:
            member = _require_int(member, "member")
            if member not in unique:
                unique.append(member)
        if not unique:
            raise InvalidParameterError("Membership statement requires at least one member")
        return unique

    def _prove_membership(self, statement: Mapping, witness: Mapping):
        members = self._members(statement)
        if 'value' not in witness:
            raise InvalidParameterError("Membership witness requires 'value'")
        value = _require_int(witness['value'], "value")
        if value not in members:
            raise WitnessMismatchError("Witness value is not a member of the set")

        commitment, blinding = self._open(statement, value, witness.get('blinding'))
        ys = [self._divide(commitment, self._g_pow(s)) for s in members]
        branches = self._prove_or(ProofType.MEMBERSHIP, "member", (commitment,),
                                  ys, members.index(value), blinding)
        return {'members': members}, (commitment,), {'branches': branches}

    def _verify_membership(self, record: ProofRecord) -> bool:
        members = self._members(record.statement)
        if len(record.commitments) != 1:
            return False
        commitment = self._check_commitment(record.commitments[0])
        ys = [self._divide(commitment, self._g_pow(s)) for s in members]
        return self._verify_or(ProofType.MEMBERSHIP, "member", (commitment,), ys, record.payload['branches'])

    # ------------------------------------------------------------------
    # Public API

    def generate_proof(self, statement: Mapping, witness: Mapping, proof_type) -> ProofRecord:
        """
        Generate and store a proof that ``witness`` satisfies ``statement``.

        Args:
            statement: Public claim (see module docstring for the shapes)
            witness: Secret values; consumed and never stored
            proof_type: "range", "equality" or "membership"

        Returns:
            The stored ProofRecord

        Raises:
            WitnessMismatchError: if the witness does not satisfy the statement
            UnsupportedProofTypeError: for unknown proof types
            InvalidParameterError: for malformed statements or witnesses
        """
        try:
            kind = ProofType.parse(proof_type)
            _require_mapping(statement, "statement")
            _require_mapping(witness, "witness")

            provers = {
                ProofType.RANGE: self._prove_range,
                ProofType.EQUALITY: self._prove_equality,
                ProofType.MEMBERSHIP: self._prove_membership,
            }
            public_statement, commitments, payload = provers[kind](statement, witness)
        except HomomorphicError as e:
            zk_logger.error(f"Proof generation failed ({proof_type}): {e}")
            self._publish('proof_generated', {'proof_type': str(getattr(proof_type, 'value', proof_type))}, e)
            raise

        record = ProofRecord(
            proof_id=str(uuid.uuid4()),
            proof_type=kind,
            statement=public_statement,
            commitments=tuple(commitments),
            payload=payload,
            parameters_fingerprint=self.parameters.fingerprint,
            created_at=datetime.now()
        )
        with self._lock:
            self._proofs[record.proof_id] = record

        zk_logger.info(f"Created {kind.value} proof {record.proof_id}")
        self._publish('proof_generated', {
            'proof_id': record.proof_id,
            'proof_type': kind.value,
            'parameters_fingerprint': record.parameters_fingerprint,
        })
        return record

    def verify_record(self, record: ProofRecord) -> bool:
        """
        Verify a proof record against its stored statement and commitments.

        Returns:
            True if the proof is valid, False otherwise
        """
        if record.parameters_fingerprint != self.parameters.fingerprint:
            zk_logger.warning(f"Proof {record.proof_id} was made under different parameters")
            return False

        verifiers = {
            ProofType.RANGE: self._verify_range,
            ProofType.EQUALITY: self._verify_equality,
            ProofType.MEMBERSHIP: self._verify_membership,
        }
        try:
            is_valid = verifiers[record.proof_type](record)
        except (HomomorphicError, KeyError, TypeError, ValueError) as e:
            zk_logger.warning(f"Malformed proof {record.proof_id}: {e}")
            is_valid = False

        if is_valid:
            zk_logger.info(f"{record.proof_type.value} proof {record.proof_id} verification successful")
        else:
            zk_logger.warning(f"{record.proof_type.value} proof {record.proof_id} verification failed")
        return is_valid

    def verify_proof(self, proof_id: str) -> bool:
        """Verify a stored proof and record the outcome on it."""
        try:
            record = self.get_proof(proof_id)
        except NotFoundError as e:
            zk_logger.error(f"Cannot verify proof {proof_id}: {e}")
            self._publish('proof_verified', {'proof_id': proof_id}, e)
            raise
        is_valid = self.verify_record(record)

        with self._lock:
            record.verified = is_valid
            self._verifications += 1

        self._publish('proof_verified', {
            'proof_id': proof_id,
            'proof_type': record.proof_type.value,
            'valid': is_valid,
        })
        return is_valid

    def get_proof(self, proof_id: str) -> ProofRecord:
        with self._lock:
            record = self._proofs.get(proof_id)
        if record is None:
            raise NotFoundError(f"Proof {proof_id} not found")
        return record

    @property
    def proof_count(self) -> int:
        with self._lock:
            return len(self._proofs)

    def get_system_stats(self) -> Dict:
        with self._lock:
            by_type: Dict[str, int] = {}
            for record in self._proofs.values():
                by_type[record.proof_type.value] = by_type.get(record.proof_type.value, 0) + 1
            return {
                'proofs': len(self._proofs),
                'proofs_by_type': by_type,
                'verifications': self._verifications,
                'group_bits': self.parameters.p.bit_length(),
                'subgroup_bits': self.parameters.q.bit_length(),
                'parameters_fingerprint': self.parameters.fingerprint,
            }

    def _publish(self, event_type: str, details: Dict, error: Optional[BaseException] = None) -> None:
        if self.notifier is not None:
            self.notifier.publish(event_type, details, error)


def create_zero_knowledge_system(randomness, notifier=None, modulus_bits: int = 2048,
                                 subgroup_bits: int = 256,
                                 rounds: int = DEFAULT_PRIMALITY_ROUNDS) -> ZeroKnowledgeProofSystem:
    """
    Create a proof system with freshly generated commitment parameters.

    Returns:
        Configured ZeroKnowledgeProofSystem instance
    """
    parameters = PedersenParameters.generate(modulus_bits, subgroup_bits, randomness, rounds)
    return ZeroKnowledgeProofSystem(parameters, randomness, notifier)
