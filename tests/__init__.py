"""
Homomorphic Encryption Engine Test Suite

unittest test cases for the engine components. Run with
``python -m unittest discover tests`` or ``pytest``.

Key and group sizes are kept small so the suite runs quickly.
"""

# Version of the test suite
__version__ = '1.0.0'

# Test categories available
TEST_CATEGORIES = [
    'modular_arithmetic',
    'secure_randomness',
    'homomorphic_encryption',
    'key_manager',
    'dispatcher',
    'zero_knowledge_proofs',
    'lifecycle_events',
    'config',
    'engine',
]
