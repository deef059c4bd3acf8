"""
Configuration for the homomorphic encryption engine.

Options can be given directly, built from a dictionary (snake_case or the
camelCase names used by host services), or loaded from the
``"homomorphic_encryption"`` section of a JSON config file.
"""

import json
import os
from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Mapping, Optional

from he_errors import InvalidParameterError
from he_logging import get_logger

logger = get_logger("he_config")

CONFIG_FILE = "config.json"
CONFIG_SECTION = "homomorphic_encryption"

SUPPORTED_SCHEMES = ("paillier", "elgamal")

# camelCase option names accepted from host services
_OPTION_ALIASES = {
    "keySizeBits": "key_size_bits",
    "keySize": "key_size_bits",
    "maxConcurrentOperations": "max_concurrent_operations",
    "operationTimeoutMs": "operation_timeout_ms",
    "operationTimeout": "operation_timeout_ms",
    "zeroKnowledgeProofsEnabled": "zero_knowledge_proofs_enabled",
    "zeroKnowledgeProofs": "zero_knowledge_proofs_enabled",
    "secureRandomnessRequired": "secure_randomness_required",
    "secureRandomness": "secure_randomness_required",
    "keyRotationEnabled": "key_rotation_enabled",
    "keyRotation": "key_rotation_enabled",
    "keyRotationIntervalMs": "key_rotation_interval_ms",
    "keyRotationInterval": "key_rotation_interval_ms",
    "batchSize": "batch_size",
    "generateInitialKey": "generate_initial_key",
    "elgamalSubgroupBits": "elgamal_subgroup_bits",
    "zkModulusBits": "zk_modulus_bits",
    "zkSubgroupBits": "zk_subgroup_bits",
    "primalityRounds": "primality_rounds",
    "randomnessAuditSize": "randomness_audit_size",
}


@dataclass
class EngineConfig:
    """Recognized engine options and their defaults."""
    scheme: str = "paillier"
    key_size_bits: int = 2048
    max_concurrent_operations: int = 10
    operation_timeout_ms: int = 30000
    zero_knowledge_proofs_enabled: bool = True
    secure_randomness_required: bool = True
    key_rotation_enabled: bool = True
    key_rotation_interval_ms: int = 86400000  # 24 hours
    batch_size: int = 100
    generate_initial_key: bool = True
    elgamal_subgroup_bits: int = 256
    zk_modulus_bits: int = 2048
    zk_subgroup_bits: int = 256
    primality_rounds: int = 40
    randomness_audit_size: int = 256

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EngineConfig":
        """
        Build a config from a mapping, ignoring unknown options.

        Args:
            data: Options keyed by snake_case or camelCase name

        Returns:
            Validated EngineConfig
        """
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}

        for key, value in (data or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                logger.warning(f"Ignoring unknown configuration option: {key}")
                continue
            values[name] = value

        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise InvalidParameterError if any option is out of range."""
        self.scheme = str(self.scheme).lower()
        if self.scheme not in SUPPORTED_SCHEMES:
            raise InvalidParameterError(f"Unsupported default scheme: {self.scheme}")

        positive = (
            "key_size_bits", "max_concurrent_operations", "operation_timeout_ms",
            "key_rotation_interval_ms", "batch_size", "elgamal_subgroup_bits",
            "zk_modulus_bits", "zk_subgroup_bits", "primality_rounds",
            "randomness_audit_size",
        )
        for name in positive:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidParameterError(f"{name} must be a positive integer, got {value!r}")

        if self.key_size_bits < 128 or self.key_size_bits % 2:
            raise InvalidParameterError("key_size_bits must be an even number of at least 128 bits")
        if self.zk_subgroup_bits >= self.zk_modulus_bits:
            raise InvalidParameterError("zk_subgroup_bits must be smaller than zk_modulus_bits")

    @property
    def operation_timeout(self) -> float:
        """Operation timeout in seconds."""
        return self.operation_timeout_ms / 1000.0

    @property
    def key_rotation_interval(self) -> float:
        """Key rotation interval in seconds."""
        return self.key_rotation_interval_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: str = CONFIG_FILE) -> EngineConfig:
    """
    Load engine configuration from a JSON file.

    Args:
        path: Path of the JSON config file

    Returns:
        EngineConfig built from the file's homomorphic_encryption section,
        or the defaults if the file does not exist
    """
    if not os.path.exists(path):
        logger.warning(f"Configuration file {path} not found, using defaults")
        return EngineConfig()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading configuration from {path}: {e}")
        raise InvalidParameterError(f"Unreadable configuration file {path}: {e}") from e

    section = data.get(CONFIG_SECTION, {}) if isinstance(data, dict) else {}
    logger.info(f"Loaded configuration from {path}")
    return EngineConfig.from_dict(section)
