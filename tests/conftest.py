"""
tests/conftest.py - shared fixtures and fakes for the garden test suite.
"""

import asyncio
from dataclasses import dataclass

import numpy as np
import pytest

from garden import Simulation, SimulationStore
from garden_lorenz import DriverState
from garden_music import Archetype, VoiceGraph


@dataclass
class Critter:
    """Bare creature stand-in for driving the VoiceGraph directly."""
    id: int
    archetype: Archetype
    frequency: float


class FixedDriver:
    """Driver pinned to one frequency."""

    def __init__(self, frequency: float) -> None:
        self.frequency = frequency
        self.steps = 0

    def step(self) -> float:
        self.steps += 1
        return self.frequency

    def state(self) -> DriverState:
        return DriverState(0.0, 0.0, 0.0, self.frequency)


class StubRng:
    """Generator stand-in returning the same draw every time."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self, size=None):
        if size is None:
            return self.value
        return np.full(size, self.value)

    def uniform(self, low, high):
        return low + (high - low) * self.value

    def integers(self, high):
        return int(self.value * high)


class ManualClock:
    """Millisecond wall clock that only moves when told to."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def init_graph(graph: VoiceGraph) -> VoiceGraph:
    asyncio.run(graph.init())
    return graph


@pytest.fixture
def graph():
    g = init_graph(VoiceGraph(rng=np.random.default_rng(0)))
    yield g
    g.dispose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sim(clock):
    """Ready simulation over an initialized graph, seeded."""
    g = init_graph(VoiceGraph(rng=np.random.default_rng(1)))
    s = Simulation(g, rng=np.random.default_rng(2), clock=clock)
    s.ready = True
    yield s
    g.dispose()


@pytest.fixture
def store():
    st = SimulationStore(seed=123)
    asyncio.run(st.init_audio())
    yield st
    st.dispose()
