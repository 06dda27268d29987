# tests/conftest.py
import random

import pytest

from keyrouter.pool.pool import NodePool


class FakeClock:
    """Reloj simulado: los tests avanzan el tiempo a mano."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool(clock):
    """Pool con reloj simulado y rng fijo: selección reproducible."""
    p = NodePool(clock=clock, rng=random.Random(42))
    yield p
    p.close()
