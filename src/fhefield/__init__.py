"""
fhefield: homomorphic field encryption.

- Ciphertext model with noise, depth and size accounting
- Gate-graph circuits with automatic bootstrapping
- Field encryption service with key custody, batching and ledger anchoring
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
