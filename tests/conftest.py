"""
Pytest configuration and fixtures.

This file ensures proper path setup for imports.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from fhefield.he.engine import HomomorphicEngine  # noqa: E402
from fhefield.he.params import FheScheme  # noqa: E402


@pytest.fixture
def engine():
    """TFHE engine."""
    return HomomorphicEngine(FheScheme.TFHE)


@pytest.fixture
def keys(engine):
    """Fresh key pair for the TFHE engine."""
    return engine.generate_keys()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
