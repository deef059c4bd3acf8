"""
Error taxonomy for the homomorphic encryption engine.

Every error carries a short ``kind`` string so lifecycle observers can tag
failures without importing the exception classes.
"""

from typing import Optional


class HomomorphicError(Exception):
    """Base class for all engine errors."""
    kind = "homomorphic_error"
    recoverable = True

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.kind.replace("_", " "))


class UnsupportedSchemeError(HomomorphicError):
    kind = "unsupported_scheme"


class PlaintextOutOfRangeError(HomomorphicError):
    kind = "plaintext_out_of_range"


class KeyMismatchError(HomomorphicError):
    kind = "key_mismatch"


class SchemeMismatchError(HomomorphicError):
    kind = "scheme_mismatch"


class NotFoundError(HomomorphicError, LookupError):
    """Unknown key, ciphertext, operation or proof identifier."""
    kind = "not_found"


class NoDefaultKeyError(NotFoundError):
    kind = "no_default_configured"


class WitnessMismatchError(HomomorphicError):
    kind = "witness_mismatch"


class UnsupportedProofTypeError(HomomorphicError):
    kind = "unsupported_proof_type"


class NoInverseExistsError(HomomorphicError, ValueError):
    kind = "no_inverse_exists"


class OperationTimeoutError(HomomorphicError):
    kind = "operation_timeout"


class SecureRandomnessUnavailableError(HomomorphicError):
    """Fatal to the calling operation; never answered with a weaker source."""
    kind = "secure_randomness_unavailable"
    recoverable = False


class UnsupportedOperationError(HomomorphicError):
    kind = "unsupported_operation"


class FeatureDisabledError(HomomorphicError):
    kind = "feature_disabled"


class InvalidParameterError(HomomorphicError, ValueError):
    kind = "invalid_parameter"


def error_kind(error: BaseException) -> str:
    """Return the taxonomy kind of an exception, or its class name."""
    if isinstance(error, HomomorphicError):
        return error.kind
    return type(error).__name__
