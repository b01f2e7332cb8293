"""
Lorenz attractor driving the garden's resonance frequency.

The attractor is integrated with fixed-step explicit Euler. Its x coordinate
wanders chaotically between the two lobes, and is mapped into an audible band
to sweep the master resonant filter (and decide which creatures are awake).
"""

from __future__ import annotations

import math
from dataclasses import dataclass


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SIGMA: float = 10.0
RHO: float = 28.0
BETA: float = 8.0 / 3.0
DT: float = 0.005

# Audible band swept by the driver (Hz)
FREQ_MIN: float = 80.0
FREQ_MAX: float = 1200.0

# x roughly lives in [-20, 20] on the attractor
X_MIN: float = -20.0
X_MAX: float = 20.0

# Non-equilibrium starting point
INITIAL_POINT: tuple[float, float, float] = (1.0, 1.0, 1.0)

# Driver steps per simulation tick (smoother sweeps, same tick rate)
STEPS_PER_TICK: int = 3


@dataclass(frozen=True)
class DriverState:
    """Read-only view of the attractor."""
    x: float
    y: float
    z: float
    frequency: float


def map_to_band(x: float) -> float:
    """Map an x coordinate into [FREQ_MIN, FREQ_MAX], clamping outliers."""
    normalized = (x - X_MIN) / (X_MAX - X_MIN)
    if math.isnan(normalized):
        normalized = 0.0
    clamped = max(0.0, min(1.0, normalized))
    return FREQ_MIN + clamped * (FREQ_MAX - FREQ_MIN)


class LorenzDriver:
    """Deterministic chaotic oscillator. One output: the frequency."""

    def __init__(self, initial: tuple[float, float, float] = INITIAL_POINT) -> None:
        self._initial: tuple[float, float, float] = initial
        self.x: float = initial[0]
        self.y: float = initial[1]
        self.z: float = initial[2]
        self.frequency: float = FREQ_MIN

    def step(self) -> float:
        """Advance one Euler step and return the new frequency."""
        dx = SIGMA * (self.y - self.x)
        dy = self.x * (RHO - self.z) - self.y
        dz = self.x * self.y - BETA * self.z

        self.x += dx * DT
        self.y += dy * DT
        self.z += dz * DT

        self.frequency = map_to_band(self.x)
        return self.frequency

    def state(self) -> DriverState:
        return DriverState(x=self.x, y=self.y, z=self.z, frequency=self.frequency)

    def reset(self) -> None:
        """Return to the initial point."""
        self.x, self.y, self.z = self._initial
        self.frequency = FREQ_MIN
