"""
Fixed constants of the ciphertext accounting model.

These define observable semantics (growth factors, thresholds, wire sizes)
and are not configurable at runtime.
"""

VERSION = "1.0.0"

# Noise accounting
BASE_NOISE = 3.2
MAX_NOISE_LEVEL = 100.0

NOISE_GROWTH_ADD = 1.1
NOISE_GROWTH_MULTIPLY = 2.5
NOISE_GROWTH_ROTATE = 1.2
NOISE_GROWTH_NEGATE = 1.05
NOISE_GROWTH_BOOTSTRAP = 0.1

# Ciphertext sizing
FRESH_CIPHERTEXT_SIZE = 2
MAX_CIPHERTEXT_SIZE = 3
MAX_CIRCUIT_DEPTH = 20

# Codec
KEYSTREAM_LENGTH = 32
TAG_SIZE = 32
LENGTH_PREFIX_SIZE = 4
COMPRESSED_NOISE_SCALE = 1000

# Key material sizes (bytes)
PUBLIC_KEY_SIZE = 256
PRIVATE_KEY_SIZE = 256
EVALUATION_KEY_SIZE = 512
