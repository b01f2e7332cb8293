"""
Voice graph for the resonance garden.

Every creature owns one synth voice; every microphone zone owns one effect.
Voices feed a shared master chain whose band-pass filter is swept by the
Lorenz driver, with a small feedback tap for self-resonant colouring:

    voices -> master gain -> band-pass (Lorenz) -> compressor -> limiter
           -> master volume -> destination
    band-pass -> feedback gain -> master gain
    voice gain -> zone effect -> destination      (proximity sends)

The graph is a tiny block-based numpy node set. The host pulls audio with
VoiceGraph.render() and advances the graph clock separately (the store does
it once per tick), which runs the pulse timers and deferred voice teardown.
All graph errors caused by stale handles are swallowed here and never reach
the simulation.

Audio: 44100 Hz, mono, float32, 1024 frames/buffer.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import math
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Protocol

import numpy as np
from numpy.typing import NDArray
from scipy.signal import fftconvolve, lfilter

from garden_lorenz import FREQ_MIN, STEPS_PER_TICK, DriverState, LorenzDriver

try:
    import pyaudio
    _HAS_PYAUDIO = True
except ImportError:
    pyaudio = None  # type: ignore[assignment]
    _HAS_PYAUDIO = False


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SAMPLE_RATE: int = 44100
BUFFER_SIZE: int = 1024
TWO_PI: float = 2.0 * math.pi

# Timbre per evolution stage
OSCILLATOR_TYPES: tuple[str, ...] = ("sine", "triangle", "sawtooth", "square")

# Microphone effects, in cycling order
EFFECT_KINDS: tuple[str, ...] = (
    "Reverb", "Delay", "PitchShift", "Distortion", "Filter", "Chorus",
)

# Pulse timing (ms), re-drawn on every repetition
PULSE_INTERVAL_MIN: float = 400.0
PULSE_INTERVAL_MAX: float = 1000.0

# Probability per trigger call that a granular creature fires a grain
GRANULAR_DENSITY: float = 0.03

# One-shot note lengths (seconds)
ONE_SHOT_DURATION: float = 0.15
GRAIN_DURATION: float = 0.05

# Grace period before a removed voice is torn down (ms)
TEARDOWN_DELAY_MS: float = 500.0

# Proximity send: wet = min(1, proximity * SEND_SCALE + SEND_FLOOR)
SEND_SCALE: float = 0.3
SEND_FLOOR: float = 0.1

VOICE_GAIN: float = 0.3
MASTER_GAIN: float = 0.6
FEEDBACK_GAIN: float = 0.15
MASTER_VOLUME: float = 0.7


# ═══════════════════════════════════════════════════════════════════════
#  Errors
# ═══════════════════════════════════════════════════════════════════════

class GraphError(Exception):
    """Base class for audio graph errors."""


class DisposedNodeError(GraphError):
    """A node was used after dispose()."""


class AlreadyConnectedError(GraphError):
    """connect() called twice for the same pair of nodes."""


# ═══════════════════════════════════════════════════════════════════════
#  Archetypes
# ═══════════════════════════════════════════════════════════════════════

class Archetype(IntEnum):
    DRONE = 0
    PULSE = 1
    PLUCK = 2
    GRANULAR = 3


class TriggerPolicy(Enum):
    """How an active creature sounds."""
    SUSTAIN = "sustain"                    # held tone until released
    PULSE = "pulse"                        # repeating short notes until released
    ONE_SHOT_ON_EDGE = "one_shot_on_edge"  # one pluck per activation
    PROBABILISTIC = "probabilistic"        # sparse random grains


@dataclass(frozen=True)
class Envelope:
    """ADSR envelope shape (seconds; sustain is a level)."""
    attack: float
    decay: float
    sustain: float
    release: float

    def gated(self, t: NDArray[np.float64]) -> NDArray[np.float64]:
        """Envelope level while the gate is held, at times t since attack."""
        attack = max(0.001, self.attack)
        decay = max(0.001, self.decay)
        env = np.full(t.shape, self.sustain, dtype=np.float64)

        attack_mask = t < attack
        env[attack_mask] = t[attack_mask] / attack

        decay_mask = (t >= attack) & (t < attack + decay)
        decay_t = (t[decay_mask] - attack) / decay
        env[decay_mask] = 1.0 - (1.0 - self.sustain) * decay_t
        return env

    def level_at(self, t: float) -> float:
        return float(self.gated(np.array([t], dtype=np.float64))[0])


@dataclass(frozen=True)
class ArchetypeSpec:
    """Fixed configuration for one creature archetype."""
    name: str
    palette: tuple[float, ...]      # Hz
    envelope: Envelope
    policy: TriggerPolicy
    colors: tuple[str, str, str]    # visual class, one per stage band


ARCHETYPES: dict[Archetype, ArchetypeSpec] = {
    Archetype.DRONE: ArchetypeSpec(
        name="Drone",
        palette=(65.41, 82.41, 98.0, 116.54),        # C2, E2, G2, Bb2
        envelope=Envelope(0.8, 0.3, 0.7, 1.5),
        policy=TriggerPolicy.SUSTAIN,
        colors=("#4a9eff", "#2d7cd4", "#1a5fa8"),
    ),
    Archetype.PULSE: ArchetypeSpec(
        name="Pulse",
        palette=(220.0, 261.63, 329.63, 392.0),      # A3, C4, E4, G4
        envelope=Envelope(0.1, 0.2, 0.6, 0.3),
        policy=TriggerPolicy.PULSE,
        colors=("#ff6b6b", "#e04545", "#b82e2e"),
    ),
    Archetype.PLUCK: ArchetypeSpec(
        name="Pluck",
        palette=(293.66, 369.99, 440.0, 523.25),     # D4, F#4, A4, C5
        envelope=Envelope(0.01, 0.3, 0.0, 0.2),
        policy=TriggerPolicy.ONE_SHOT_ON_EDGE,
        colors=("#51cf66", "#37b24d", "#2b8a3e"),
    ),
    Archetype.GRANULAR: ArchetypeSpec(
        name="Granular",
        palette=(174.61, 207.65, 277.18, 349.23),    # F3, Ab3, Db4, F4
        envelope=Envelope(0.05, 0.05, 0.0, 0.05),
        policy=TriggerPolicy.PROBABILISTIC,
        colors=("#ffd43b", "#fab005", "#e67700"),
    ),
}


def next_effect_kind(kind: str) -> str:
    """The effect after `kind` in cyclic order."""
    idx = EFFECT_KINDS.index(kind)
    return EFFECT_KINDS[(idx + 1) % len(EFFECT_KINDS)]


# ═══════════════════════════════════════════════════════════════════════
#  Utility functions
# ═══════════════════════════════════════════════════════════════════════

def soft_clip(x: NDArray[np.float32]) -> NDArray[np.float32]:
    """Soft clipping (tanh-based) to prevent harsh digital distortion."""
    np.tanh(x, out=x)
    return x


def db_to_gain(db: float) -> float:
    return 10.0 ** (db / 20.0)


# ═══════════════════════════════════════════════════════════════════════
#  Oscillator primitives (vectorized numpy)
# ═══════════════════════════════════════════════════════════════════════

def _sine_wave(phase: NDArray[np.float64]) -> NDArray[np.float64]:
    return np.sin(phase)


def _triangle_wave(phase: NDArray[np.float64]) -> NDArray[np.float64]:
    p = np.mod(phase, TWO_PI) / TWO_PI
    return 2.0 * np.abs(2.0 * p - 1.0) - 1.0


def _polyblep(t: NDArray[np.float64]) -> NDArray[np.float64]:
    """PolyBLEP residual for antialiased discontinuities."""
    result = np.zeros_like(t)
    mask1 = (t >= 0) & (t < 1)
    mask2 = (t >= -1) & (t < 0)
    result[mask1] = 2.0 * t[mask1] - t[mask1] * t[mask1] - 1.0
    result[mask2] = t[mask2] * t[mask2] + 2.0 * t[mask2] + 1.0
    return result


def _sawtooth_wave(phase: NDArray[np.float64], freq_hz: float) -> NDArray[np.float64]:
    """Rising sawtooth with polyBLEP at the wrap."""
    p = np.mod(phase, TWO_PI) / TWO_PI
    raw = 2.0 * p - 1.0
    dt = freq_hz / SAMPLE_RATE
    if dt > 0:
        near_start = p < dt
        raw[near_start] -= _polyblep(p[near_start] / dt)
        near_end = p > 1.0 - dt
        raw[near_end] -= _polyblep((p[near_end] - 1.0) / dt)
    return raw


def _square_wave(phase: NDArray[np.float64], freq_hz: float) -> NDArray[np.float64]:
    """50% square with polyBLEP on both edges."""
    p = np.mod(phase, TWO_PI) / TWO_PI
    raw = np.where(p < 0.5, 1.0, -1.0)
    dt = freq_hz / SAMPLE_RATE
    if dt > 0:
        mask_rise = p < dt
        raw[mask_rise] += _polyblep(p[mask_rise] / dt)
        mask_rise_wrap = p > 1.0 - dt
        raw[mask_rise_wrap] += _polyblep((p[mask_rise_wrap] - 1.0) / dt)

        t2 = (p - 0.5) / dt
        mask_fall = np.abs(t2) < 1.0
        raw[mask_fall] -= _polyblep(t2[mask_fall])
    return raw


def _oscillate(kind: str, phase: NDArray[np.float64], freq_hz: float) -> NDArray[np.float64]:
    if kind == "triangle":
        return _triangle_wave(phase)
    if kind == "sawtooth":
        return _sawtooth_wave(phase, freq_hz)
    if kind == "square":
        return _square_wave(phase, freq_hz)
    return _sine_wave(phase)


# ═══════════════════════════════════════════════════════════════════════
#  Clock: cancellable timers driven by simulated time
# ═══════════════════════════════════════════════════════════════════════

class TimerHandle:
    """A scheduled callback. cancel() takes effect immediately."""

    __slots__ = ("when", "callback", "cancelled", "fired")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        self.cancelled = True


class Clock:
    """Millisecond timer queue. Time only moves when advance() is called."""

    def __init__(self) -> None:
        self.now: float = 0.0
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now + max(0.0, delay_ms), callback)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    def advance(self, ms: float) -> None:
        """Move time forward, firing due timers in order.

        Callbacks may schedule new timers; those fire too if they fall
        inside the window.
        """
        target = self.now + max(0.0, ms)
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.now = max(self.now, when)
            handle.fired = True
            handle.callback()
        self.now = target

    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.pending)

    def cancel_all(self) -> None:
        for _, _, handle in self._queue:
            handle.cancel()
        self._queue.clear()


# ═══════════════════════════════════════════════════════════════════════
#  Audio nodes
# ═══════════════════════════════════════════════════════════════════════

class AudioNode:
    """Base node: sums its inputs, processes one block, caches the result.

    Pulling a node that is already being rendered (a feedback loop) returns
    its previous block, so cycles cost one block of delay.
    """

    def __init__(self) -> None:
        self._inputs: list[AudioNode] = []
        self._outputs: list[AudioNode] = []
        self._disposed: bool = False
        self._busy: bool = False
        self._block: int = -1
        self._out: NDArray[np.float64] | None = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check(self) -> None:
        if self._disposed:
            raise DisposedNodeError(type(self).__name__)

    def connect(self, dest: AudioNode) -> AudioNode:
        self._check()
        dest._check()
        if any(d is dest for d in self._outputs):
            raise AlreadyConnectedError(
                f"{type(self).__name__} -> {type(dest).__name__}"
            )
        self._outputs.append(dest)
        dest._inputs.append(self)
        return dest

    def is_connected(self, dest: AudioNode) -> bool:
        return any(d is dest for d in self._outputs)

    def disconnect(self) -> None:
        """Drop every outgoing connection."""
        self._check()
        for dest in self._outputs:
            dest._inputs = [src for src in dest._inputs if src is not self]
        self._outputs.clear()

    def dispose(self) -> None:
        """Release the node. Safe to call more than once."""
        if self._disposed:
            return
        for dest in self._outputs:
            dest._inputs = [src for src in dest._inputs if src is not self]
        for src in self._inputs:
            src._outputs = [d for d in src._outputs if d is not self]
        self._outputs.clear()
        self._inputs.clear()
        self._out = None
        self._disposed = True

    def pull(self, block: int, n: int) -> NDArray[np.float64]:
        if self._block == block and self._out is not None:
            return self._out
        if self._busy or self._disposed:
            if self._out is not None and len(self._out) == n:
                return self._out
            return np.zeros(n, dtype=np.float64)

        self._busy = True
        try:
            x = np.zeros(n, dtype=np.float64)
            for src in list(self._inputs):
                x += src.pull(block, n)
            out = self.process(x, n)
        finally:
            self._busy = False
        self._out = out
        self._block = block
        return out

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        return x


class Destination(AudioNode):
    """Final summing bus."""


class Gain(AudioNode):

    def __init__(self, gain: float = 1.0) -> None:
        super().__init__()
        self._gain = gain

    @property
    def gain(self) -> float:
        return self._gain

    @gain.setter
    def gain(self, value: float) -> None:
        self._check()
        self._gain = float(value)

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        return x * self._gain


class BiquadFilter(AudioNode):
    """RBJ cookbook biquad (band-pass or low-pass) with persistent state."""

    def __init__(self, kind: str = "bandpass", frequency: float = 1000.0,
                 q: float = 1.0) -> None:
        super().__init__()
        if kind not in ("bandpass", "lowpass"):
            raise ValueError(f"unsupported filter type: {kind}")
        self.kind = kind
        self.q = q
        self._frequency = frequency
        self._zi: NDArray[np.float64] = np.zeros(2, dtype=np.float64)
        self._coeffs: tuple[NDArray[np.float64], NDArray[np.float64]] = self._design()

    @property
    def frequency(self) -> float:
        return self._frequency

    @frequency.setter
    def frequency(self, value: float) -> None:
        self._check()
        if value != self._frequency:
            self._frequency = float(value)
            self._coeffs = self._design()

    def _design(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        f = min(max(self._frequency, 10.0), SAMPLE_RATE * 0.49)
        w0 = TWO_PI * f / SAMPLE_RATE
        cos_w0 = math.cos(w0)
        alpha = math.sin(w0) / (2.0 * max(self.q, 1e-3))
        if self.kind == "bandpass":
            b = np.array([alpha, 0.0, -alpha])
        else:
            b = np.array([(1.0 - cos_w0) / 2.0, 1.0 - cos_w0, (1.0 - cos_w0) / 2.0])
        a = np.array([1.0 + alpha, -2.0 * cos_w0, 1.0 - alpha])
        return b / a[0], a / a[0]

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        b, a = self._coeffs
        out, self._zi = lfilter(b, a, x, zi=self._zi)
        return out


class Compressor(AudioNode):
    """Block-level RMS compressor with attack/release smoothing."""

    def __init__(self, threshold: float = -20.0, ratio: float = 6.0,
                 attack: float = 0.01, release: float = 0.1) -> None:
        super().__init__()
        self.threshold = threshold
        self.ratio = ratio
        self.attack = attack
        self.release = release
        self._gain_db: float = 0.0

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        if n == 0:
            return x
        rms = float(np.sqrt(np.mean(x * x)))
        level_db = 20.0 * math.log10(max(rms, 1e-9))
        over = level_db - self.threshold
        target_db = -over * (1.0 - 1.0 / self.ratio) if over > 0 else 0.0

        tc = self.attack if target_db < self._gain_db else self.release
        coeff = 1.0 - math.exp(-(n / SAMPLE_RATE) / max(tc, 1e-4))
        prev_db = self._gain_db
        self._gain_db = prev_db + (target_db - prev_db) * coeff

        # Ramp across the block to avoid zipper noise
        ramp = np.linspace(db_to_gain(prev_db), db_to_gain(self._gain_db), n)
        return x * ramp


class Limiter(AudioNode):
    """Soft ceiling at `threshold` dBFS."""

    def __init__(self, threshold: float = -3.0) -> None:
        super().__init__()
        self.threshold = threshold

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        ceiling = db_to_gain(self.threshold)
        return ceiling * np.tanh(x / ceiling)


class Effect(AudioNode):
    """Node with a dry/wet mix. Subclasses implement _effect()."""

    def __init__(self, wet: float = 1.0) -> None:
        super().__init__()
        self._wet = wet

    @property
    def wet(self) -> float:
        return self._wet

    @wet.setter
    def wet(self, value: float) -> None:
        self._check()
        self._wet = max(0.0, min(1.0, float(value)))

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        wet = self._wet
        return x * (1.0 - wet) + self._effect(x, n) * wet

    def _effect(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        raise NotImplementedError


class _History:
    """Rolling input history for fractional (modulated) delay reads."""

    def __init__(self, length: int) -> None:
        self._buf: NDArray[np.float64] = np.zeros(length, dtype=np.float64)

    def extend(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """Append a block; returns history + block for reading."""
        joined = np.concatenate((self._buf, x))
        self._buf = joined[-len(self._buf):]
        return joined


def _read_delayed(joined: NDArray[np.float64], n: int,
                  delays: NDArray[np.float64]) -> NDArray[np.float64]:
    """Sample i of the newest n samples, delayed by delays[i] (fractional)."""
    h = len(joined) - n
    positions = h + np.arange(n) - np.clip(delays, 0.0, h - 1)
    return np.interp(positions, np.arange(len(joined)), joined)


class Reverb(Effect):
    """Convolution reverb with a decaying-noise impulse response."""

    def __init__(self, decay: float = 3.0, wet: float = 0.5, seed: int = 7) -> None:
        super().__init__(wet)
        self.decay = decay
        n_ir = max(1, int(decay * SAMPLE_RATE))
        t = np.arange(n_ir) / SAMPLE_RATE
        noise = np.random.default_rng(seed).standard_normal(n_ir)
        ir = noise * np.exp(-6.9 * t / max(decay, 1e-3))  # -60 dB at `decay`
        self._ir: NDArray[np.float64] = ir / np.sqrt(np.sum(ir * ir))
        self._tail: NDArray[np.float64] = np.zeros(n_ir - 1, dtype=np.float64)

    def _effect(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        conv = fftconvolve(x, self._ir)
        conv[:len(self._tail)] += self._tail
        self._tail = conv[n:].copy()
        return conv[:n]


class FeedbackDelay(Effect):

    def __init__(self, delay_time: float = 0.25, feedback: float = 0.3,
                 wet: float = 0.4) -> None:
        super().__init__(wet)
        self.delay_time = delay_time
        self.feedback = feedback
        self._delay = max(1, int(delay_time * SAMPLE_RATE))
        # Ring of the last `_delay` line inputs; slot p was written _delay samples ago
        self._line: NDArray[np.float64] = np.zeros(self._delay, dtype=np.float64)
        self._pos: int = 0

    def _effect(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        out = np.empty(n, dtype=np.float64)
        done = 0
        while done < n:
            chunk = min(n - done, self._delay - self._pos)
            seg = slice(self._pos, self._pos + chunk)
            delayed = self._line[seg].copy()
            out[done:done + chunk] = delayed
            self._line[seg] = x[done:done + chunk] + self.feedback * delayed
            self._pos = (self._pos + chunk) % self._delay
            done += chunk
        return out


class PitchShift(Effect):
    """Two-tap delay-line pitch shifter with crossfaded windows."""

    def __init__(self, pitch: float = 7.0, wet: float = 0.4,
                 window: float = 0.1) -> None:
        super().__init__(wet)
        self.pitch = pitch
        self.window = window
        self._ratio = 2.0 ** (pitch / 12.0)
        self._window_samples = window * SAMPLE_RATE
        self._phase: float = 0.0
        self._history = _History(int(self._window_samples) + 2)

    def _effect(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        rate = (1.0 - self._ratio) / self.window  # phasor cycles per second
        phases_a = np.mod(self._phase + rate * np.arange(n) / SAMPLE_RATE, 1.0)
        phases_b = np.mod(phases_a + 0.5, 1.0)
        self._phase = float(np.mod(self._phase + rate * n / SAMPLE_RATE, 1.0))

        joined = self._history.extend(x)
        span = self._window_samples - 1.0
        tap_a = _read_delayed(joined, n, 1.0 + phases_a * span)
        tap_b = _read_delayed(joined, n, 1.0 + phases_b * span)
        return tap_a * np.sin(np.pi * phases_a) + tap_b * np.sin(np.pi * phases_b)


class Distortion(Effect):
    """Waveshaper using the classic (3 + k) x / (pi + k|x|) curve."""

    def __init__(self, distortion: float = 0.4, wet: float = 0.3) -> None:
        super().__init__(wet)
        self.distortion = distortion

    def _effect(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        k = self.distortion * 100.0
        deg = math.pi / 180.0
        return (3.0 + k) * x * 20.0 * deg / (math.pi + k * np.abs(x))


class Chorus(Effect):
    """LFO-modulated short delay."""

    def __init__(self, frequency: float = 2.0, delay_time: float = 3.5,
                 depth: float = 0.7, wet: float = 0.4) -> None:
        super().__init__(wet)
        self.frequency = frequency
        self.delay_time = delay_time  # ms
        self.depth = depth
        self._lfo_phase: float = 0.0
        max_delay = delay_time * (1.0 + 0.5 * depth) * SAMPLE_RATE / 1000.0
        self._history = _History(int(max_delay) + 2)

    def _effect(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        inc = TWO_PI * self.frequency / SAMPLE_RATE
        lfo_phases = self._lfo_phase + inc * np.arange(n)
        self._lfo_phase = float(np.mod(self._lfo_phase + inc * n, TWO_PI))
        base = self.delay_time * SAMPLE_RATE / 1000.0
        delays = base * (1.0 + 0.5 * self.depth * np.sin(lfo_phases))
        return _read_delayed(self._history.extend(x), n, delays)


class Synth(AudioNode):
    """Single oscillator through an ADSR envelope. Ignores inputs."""

    def __init__(self, envelope: Envelope, oscillator: str = "sine") -> None:
        super().__init__()
        self.envelope = envelope
        self._oscillator = oscillator
        self.frequency: float = 440.0
        self._phase: float = 0.0
        self._elapsed: float = 0.0            # seconds since attack
        self._release_at: float | None = None  # elapsed time the gate closes
        self._sounding: bool = False

    @property
    def oscillator_type(self) -> str:
        return self._oscillator

    @oscillator_type.setter
    def oscillator_type(self, kind: str) -> None:
        self._check()
        if kind not in OSCILLATOR_TYPES:
            raise ValueError(f"unknown oscillator type: {kind}")
        self._oscillator = kind

    @property
    def is_sounding(self) -> bool:
        return self._sounding

    @property
    def is_held(self) -> bool:
        return self._sounding and self._release_at is None

    def trigger_attack(self, freq: float) -> None:
        self._check()
        self.frequency = freq
        self._elapsed = 0.0
        self._release_at = None
        self._sounding = True

    def trigger_release(self) -> None:
        self._check()
        if self._sounding and self._release_at is None:
            self._release_at = self._elapsed

    def trigger_attack_release(self, freq: float, duration: float) -> None:
        self.trigger_attack(freq)
        self._release_at = max(0.0, duration)

    def process(self, x: NDArray[np.float64], n: int) -> NDArray[np.float64]:
        if not self._sounding:
            return np.zeros(n, dtype=np.float64)

        t = self._elapsed + np.arange(n, dtype=np.float64) / SAMPLE_RATE
        env = self.envelope.gated(t)
        if self._release_at is not None:
            rel_t = t - self._release_at
            start = self.envelope.level_at(self._release_at)
            released = start * np.maximum(
                0.0, 1.0 - rel_t / max(0.001, self.envelope.release)
            )
            env = np.where(rel_t >= 0.0, released, env)

        inc = TWO_PI * self.frequency / SAMPLE_RATE
        phases = self._phase + inc * np.arange(n, dtype=np.float64)
        self._phase = float(np.mod(self._phase + inc * n, TWO_PI))
        osc = _oscillate(self._oscillator, phases, self.frequency)

        self._elapsed += n / SAMPLE_RATE
        if (self._release_at is not None
                and self._elapsed - self._release_at > self.envelope.release):
            self._sounding = False

        return osc * env


EFFECT_FACTORIES: dict[str, Callable[[], AudioNode]] = {
    "Reverb": lambda: Reverb(decay=3.0, wet=0.5),
    "Delay": lambda: FeedbackDelay(delay_time=0.25, feedback=0.3, wet=0.4),
    "PitchShift": lambda: PitchShift(pitch=7.0, wet=0.4),
    "Distortion": lambda: Distortion(distortion=0.4, wet=0.3),
    "Filter": lambda: BiquadFilter("lowpass", frequency=800.0, q=8.0),
    "Chorus": lambda: Chorus(frequency=2.0, delay_time=3.5, depth=0.7, wet=0.4),
}


# ═══════════════════════════════════════════════════════════════════════
#  Host audio context and output
# ═══════════════════════════════════════════════════════════════════════

class AudioContext:
    """Host audio context.

    Like a browser context, it can refuse to start until the user has
    interacted with the page; call user_gesture() from the input layer.
    """

    def __init__(self, require_gesture: bool = False) -> None:
        self._gesture = asyncio.Event()
        if not require_gesture:
            self._gesture.set()
        self.state: str = "suspended"

    def user_gesture(self) -> None:
        self._gesture.set()

    async def resume(self) -> None:
        await self._gesture.wait()
        self.state = "running"


class AudioOutput:
    """Blocking PyAudio sink, written from the frame loop."""

    def __init__(self, sample_rate: int = SAMPLE_RATE,
                 buffer_size: int = BUFFER_SIZE) -> None:
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self._pa: pyaudio.PyAudio | None = None  # type: ignore[name-defined]
        self._stream: pyaudio.Stream | None = None  # type: ignore[name-defined]

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self) -> bool:
        """Open the output stream. Returns True on success, False on failure."""
        if not _HAS_PYAUDIO:
            return False

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=self.buffer_size,
            )
            return True
        except Exception:
            self._cleanup_audio()
            return False

    def write(self, samples: NDArray[np.float32]) -> None:
        if self._stream is None:
            return
        self._stream.write(samples.astype(np.float32).tobytes())

    def stop(self) -> None:
        self._cleanup_audio()

    def _cleanup_audio(self) -> None:
        """Safely tear down PyAudio resources."""
        try:
            if self._stream is not None:
                if self._stream.is_active():
                    self._stream.stop_stream()
                self._stream.close()
        except Exception:
            pass
        self._stream = None
        try:
            if self._pa is not None:
                self._pa.terminate()
        except Exception:
            pass
        self._pa = None


# ═══════════════════════════════════════════════════════════════════════
#  Voice graph
# ═══════════════════════════════════════════════════════════════════════

class CreatureLike(Protocol):
    id: int
    archetype: Archetype
    frequency: float


class Driver(Protocol):
    def step(self) -> float: ...
    def state(self) -> DriverState: ...


@dataclass
class VoiceRecord:
    """Live synthesis resources bound to one creature."""
    synth: Synth
    gain: Gain
    playing: bool = False
    pulse_timer: TimerHandle | None = None
    stage: int = 0


@dataclass
class EffectRecord:
    node: AudioNode
    kind: str


class VoiceGraph:
    """
    Owns the synthesis graph: one voice per creature, one effect per zone.

    Call init() once (it may wait for a user gesture), then drive it from
    the simulation. render(n) only pulls audio; whoever owns time calls
    clock.advance().
    """

    def __init__(
        self,
        context: AudioContext | None = None,
        driver: Driver | None = None,
        clock: Clock | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.context: AudioContext = context or AudioContext()
        self.driver: Driver = driver or LorenzDriver()
        self.clock: Clock = clock or Clock()
        self._rng: np.random.Generator = rng or np.random.default_rng()

        self._initialized: bool = False
        self._paused: bool = False
        self.current_frequency: float = FREQ_MIN
        self._volume: float = MASTER_VOLUME

        self._voices: dict[int, VoiceRecord] = {}
        self._effects: dict[int, EffectRecord] = {}
        # Removed voices waiting for their release tail to finish
        self._doomed: dict[int, tuple[VoiceRecord, TimerHandle]] = {}

        self._block: int = 0
        self._master_gain: Gain | None = None
        self._filter: BiquadFilter | None = None
        self._feedback: Gain | None = None
        self._compressor: Compressor | None = None
        self._limiter: Limiter | None = None
        self._master_volume: Gain | None = None
        self._destination: Destination | None = None

    # ── Lifecycle ──────────────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Build the master chain once. Waits for the context to run."""
        if self._initialized:
            return
        await self.context.resume()
        if self._initialized:
            return

        self._destination = Destination()
        self._master_gain = Gain(MASTER_GAIN)
        self._filter = BiquadFilter("bandpass", frequency=200.0, q=4.0)
        self._feedback = Gain(FEEDBACK_GAIN)
        self._compressor = Compressor(threshold=-20.0, ratio=6.0,
                                      attack=0.01, release=0.1)
        self._limiter = Limiter(-3.0)
        self._master_volume = Gain(self._volume)

        self._master_gain.connect(self._filter)
        self._filter.connect(self._compressor)
        self._compressor.connect(self._limiter)
        self._limiter.connect(self._master_volume)
        self._master_volume.connect(self._destination)

        # Feedback path
        self._filter.connect(self._feedback)
        self._feedback.connect(self._master_gain)

        self._initialized = True

    def dispose(self) -> None:
        """Tear down every voice, effect and chain node. Idempotent."""
        for creature_id in list(self._voices):
            self.remove_voice(creature_id)
        for creature_id in list(self._doomed):
            _, handle = self._doomed[creature_id]
            handle.cancel()
            self._teardown_voice(creature_id)
        self.clock.cancel_all()

        for record in self._effects.values():
            record.node.dispose()
        self._effects.clear()

        for node in (self._master_gain, self._filter, self._feedback,
                     self._compressor, self._limiter, self._master_volume,
                     self._destination):
            if node is not None:
                node.dispose()
        self._master_gain = None
        self._filter = None
        self._feedback = None
        self._compressor = None
        self._limiter = None
        self._master_volume = None
        self._destination = None

        self._paused = False
        self._initialized = False

    # ── Voices ─────────────────────────────────────────────────────────

    def create_voice(self, creature: CreatureLike) -> VoiceRecord | None:
        """Allocate a synth + gain for a creature, feeding the master gain."""
        if not self._initialized or self._master_gain is None:
            return None

        arch = ARCHETYPES[creature.archetype]
        synth = Synth(arch.envelope, oscillator=OSCILLATOR_TYPES[0])
        gain = Gain(VOICE_GAIN)
        synth.connect(gain)
        gain.connect(self._master_gain)

        voice = VoiceRecord(synth=synth, gain=gain)
        self._voices[creature.id] = voice
        return voice

    def voice(self, creature_id: int) -> VoiceRecord | None:
        return self._voices.get(creature_id)

    @property
    def voice_count(self) -> int:
        return len(self._voices)

    def remove_voice(self, creature_id: int) -> None:
        """Release a voice now, free its nodes after the release tail."""
        voice = self._voices.pop(creature_id, None)
        if voice is None:
            return

        self._cancel_pulse(voice)
        voice.playing = False
        with suppress(GraphError):
            voice.synth.trigger_release()

        handle = self.clock.call_later(
            TEARDOWN_DELAY_MS, lambda: self._teardown_voice(creature_id)
        )
        self._doomed[creature_id] = (voice, handle)

    def _teardown_voice(self, creature_id: int) -> None:
        entry = self._doomed.pop(creature_id, None)
        if entry is None:
            return
        voice, _ = entry
        for node in (voice.synth, voice.gain):
            with suppress(GraphError):
                node.disconnect()
            node.dispose()

    def pending_teardowns(self) -> int:
        return len(self._doomed)

    # ── Effects ────────────────────────────────────────────────────────

    def create_effect(self, zone_id: int, kind: str) -> AudioNode | None:
        if kind not in EFFECT_FACTORIES:
            raise ValueError(f"unknown effect kind: {kind}")
        if not self._initialized:
            return None
        try:
            node = self._make_effect(kind)
        except GraphError:
            return None

        old = self._effects.pop(zone_id, None)
        if old is not None:
            old.node.dispose()
        self._effects[zone_id] = EffectRecord(node=node, kind=kind)
        return node

    def cycle_effect(self, zone_id: int) -> str | None:
        """Replace a zone's effect with the next kind. Returns the new kind."""
        record = self._effects.get(zone_id)
        if record is None:
            return None

        new_kind = next_effect_kind(record.kind)
        try:
            node = self._make_effect(new_kind)
        except GraphError:
            return None
        record.node.dispose()
        self._effects[zone_id] = EffectRecord(node=node, kind=new_kind)
        return new_kind

    def effect(self, zone_id: int) -> EffectRecord | None:
        return self._effects.get(zone_id)

    def _make_effect(self, kind: str) -> AudioNode:
        if self._destination is None:
            raise GraphError("audio graph is not initialized")
        node = EFFECT_FACTORIES[kind]()
        node.connect(self._destination)
        return node

    def apply_proximity(self, creature_id: int, zone_id: int,
                        proximity: float) -> None:
        """Send a voice into a zone's effect, wetter the closer it is."""
        if proximity <= 0:
            return
        voice = self._voices.get(creature_id)
        record = self._effects.get(zone_id)
        if voice is None or record is None:
            return

        with suppress(GraphError):
            try:
                voice.gain.connect(record.node)
            except AlreadyConnectedError:
                pass
            if isinstance(record.node, Effect):
                record.node.wet = min(1.0, proximity * SEND_SCALE + SEND_FLOOR)

    # ── Triggering ─────────────────────────────────────────────────────

    def trigger(self, creature: CreatureLike, voice: VoiceRecord | None) -> None:
        """Sound an active creature according to its archetype's policy."""
        if voice is None or not self._initialized or self._paused:
            return

        policy = ARCHETYPES[creature.archetype].policy
        freq = creature.frequency
        with suppress(GraphError):
            if policy is TriggerPolicy.SUSTAIN:
                if not voice.playing:
                    voice.synth.trigger_attack(freq)
                    voice.playing = True
            elif policy is TriggerPolicy.PULSE:
                if not voice.playing:
                    voice.playing = True
                    self._start_pulse(freq, voice)
            elif policy is TriggerPolicy.ONE_SHOT_ON_EDGE:
                voice.synth.trigger_attack_release(freq, ONE_SHOT_DURATION)
            elif policy is TriggerPolicy.PROBABILISTIC:
                if self._rng.random() < GRANULAR_DENSITY:
                    voice.synth.trigger_attack_release(freq, GRAIN_DURATION)

    def _start_pulse(self, freq: float, voice: VoiceRecord) -> None:
        """Fire one short note and schedule the next, until playing stops."""
        if not voice.playing:
            voice.pulse_timer = None
            return

        interval = float(self._rng.uniform(PULSE_INTERVAL_MIN, PULSE_INTERVAL_MAX))
        with suppress(GraphError):
            voice.synth.trigger_attack_release(freq, ONE_SHOT_DURATION)
        voice.pulse_timer = self.clock.call_later(
            interval, lambda: self._start_pulse(freq, voice)
        )

    @staticmethod
    def _cancel_pulse(voice: VoiceRecord) -> None:
        if voice.pulse_timer is not None:
            voice.pulse_timer.cancel()
            voice.pulse_timer = None

    def pending_pulses(self) -> int:
        """Voices (live or awaiting teardown) with a pulse timer scheduled."""
        records = list(self._voices.values()) + [v for v, _ in self._doomed.values()]
        return sum(
            1 for v in records
            if v.pulse_timer is not None and v.pulse_timer.pending
        )

    def release(self, creature: CreatureLike, voice: VoiceRecord | None) -> None:
        """Silence a creature that fell out of resonance."""
        if voice is None:
            return

        policy = ARCHETYPES[creature.archetype].policy
        if voice.playing:
            if policy is TriggerPolicy.SUSTAIN:
                with suppress(GraphError):
                    voice.synth.trigger_release()
            self._cancel_pulse(voice)
        voice.playing = False

    def evolve(self, creature_id: int, stage: int) -> None:
        """Switch a voice's waveform to its evolution stage's timbre."""
        voice = self._voices.get(creature_id)
        if voice is None or stage == voice.stage:
            return

        kind = OSCILLATOR_TYPES[min(stage, len(OSCILLATOR_TYPES) - 1)]
        with suppress(GraphError):
            voice.synth.oscillator_type = kind
            voice.stage = stage

    # ── Master chain ───────────────────────────────────────────────────

    def update_filter_frequency(self) -> float:
        """Advance the driver and retune the resonant filter."""
        for _ in range(STEPS_PER_TICK):
            self.current_frequency = self.driver.step()

        if self._filter is not None:
            with suppress(GraphError):
                self._filter.frequency = self.current_frequency

        return self.current_frequency

    def driver_state(self) -> DriverState:
        return self.driver.state()

    @property
    def master_volume(self) -> float:
        return self._volume

    def set_master_volume(self, volume: float) -> None:
        self._volume = max(0.0, min(1.0, volume))
        if self._master_volume is not None:
            with suppress(GraphError):
                self._master_volume.gain = self._volume

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Stop every held or pulsing voice without destroying it."""
        self._paused = True
        for voice in self._voices.values():
            if voice.playing:
                with suppress(GraphError):
                    voice.synth.trigger_release()
                self._cancel_pulse(voice)
                voice.playing = False

    def resume(self) -> None:
        self._paused = False

    # ── Rendering ──────────────────────────────────────────────────────

    def render(self, n_samples: int) -> NDArray[np.float32]:
        """Pull one block of n_samples. The host advances the clock."""
        if not self._initialized or self._destination is None:
            return np.zeros(n_samples, dtype=np.float32)

        self._block += 1
        out = self._destination.pull(self._block, n_samples).astype(np.float32)
        return soft_clip(out)
