"""
  ~  R E S O N A N C E   G A R D E N  ~

  Creatures hum at fixed pitches. A Lorenz attractor sweeps a resonance
  frequency through the audible band, and whichever creatures it passes
  wake up: drones swell, pulses tick, plucks ring once, grains sparkle.
  Awake creatures drift toward the microphones scattered around the
  garden, which colour their sound with reverb, delay, shimmer and dirt.
  The longer a creature resonates, the richer its timbre grows.

This module holds the simulation (creatures, zones, the per-tick update)
and the store the presentation layer talks to. Audio lives in
garden_music; the chaotic driver in garden_lorenz.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Callable, ClassVar

import numpy as np
from numpy.typing import NDArray

from garden_lorenz import FREQ_MIN, DriverState
from garden_music import (
    ARCHETYPES,
    EFFECT_KINDS,
    Archetype,
    TriggerPolicy,
    VoiceGraph,
)


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

MAX_CREATURES: int = 25

# How close (Hz) the driver must be for a creature to resonate
RESONANCE_BANDWIDTH: float = 40.0

# (resonance exposure, time alive ms) needed for each evolution stage
EVOLUTION_STAGES: tuple[tuple[int, float], ...] = (
    (0, 0.0),           # sine
    (200, 5_000.0),     # triangle
    (600, 15_000.0),    # sawtooth
    (1200, 30_000.0),   # square
)
EXPOSURE_PER_TICK: int = 1

# ── Movement ────────────────────────────────────────────────────────────
BASE_SPEED: float = 0.3
BROWNIAN_STRENGTH: float = 0.15
HEADING_JITTER: float = 0.3       # total width of the per-tick heading nudge
DAMPING: float = 0.98
FORCE_SCALE: float = 0.001
ZONE_ATTRACTION: float = 0.02
ZONE_CAPTURE_RADIUS: float = 0.4
ZONE_MIN_DISTANCE: float = 0.01
REPULSION_RADIUS: float = 0.05
REPULSION_STRENGTH: float = 0.01
REPULSION_MIN_DISTANCE: float = 0.001
EDGE_PADDING: float = 0.03
EDGE_BOUNCE: float = 0.5

# ── Zones ("microphones") ───────────────────────────────────────────────
ZONE_COUNT: int = 5
ZONE_RING_RADIUS: float = 0.3
ZONE_INFLUENCE_RADIUS: float = 0.2
ZONE_ACTIVITY_WEIGHT: float = 0.3

# Callers should clamp frame deltas; the store clamps again to this
MAX_TICK_MS: float = 50.0


def is_resonant(creature_freq: float, driver_freq: float) -> bool:
    """True when the driver sits inside a creature's resonance band."""
    return abs(creature_freq - driver_freq) < RESONANCE_BANDWIDTH


def resolve_stage(exposure: float, time_alive: float, current: int = 0) -> int:
    """Highest stage whose thresholds are both met; never below `current`."""
    for stage in range(len(EVOLUTION_STAGES) - 1, -1, -1):
        need_exposure, need_time = EVOLUTION_STAGES[stage]
        if exposure >= need_exposure and time_alive >= need_time:
            return max(stage, current)
    return current


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


# ═══════════════════════════════════════════════════════════════════════
#  Entities
# ═══════════════════════════════════════════════════════════════════════

class ResonanceState(Enum):
    DORMANT = "dormant"
    ACTIVE = "active"


@dataclass
class Creature:
    """A live agent. Owned and mutated only by Simulation."""
    id: int
    archetype: Archetype
    frequency: float
    x: float
    y: float
    vx: float = 0.0
    vy: float = 0.0
    angle: float = 0.0
    size: float = 10.0
    spawn_time: float = 0.0         # ms, from the simulation clock
    time_alive: float = 0.0         # ms
    resonance_exposure: int = 0
    evolution_stage: int = 0
    state: ResonanceState = ResonanceState.DORMANT
    was_active: bool = False

    @property
    def is_active(self) -> bool:
        return self.state is ResonanceState.ACTIVE


@dataclass
class Zone:
    """A microphone: fixed position, one effect, derived activity."""
    id: int
    x: float
    y: float
    effect_kind: str
    activity: float = 0.0


def make_zones(count: int = ZONE_COUNT) -> list[Zone]:
    """Zones evenly spaced on a ring around the centre, first one on top."""
    zones: list[Zone] = []
    for i in range(count):
        angle = (i / count) * 2.0 * math.pi - math.pi / 2.0
        zones.append(Zone(
            id=i + 1,
            x=0.5 + math.cos(angle) * ZONE_RING_RADIUS,
            y=0.5 + math.sin(angle) * ZONE_RING_RADIUS,
            effect_kind=EFFECT_KINDS[i % len(EFFECT_KINDS)],
        ))
    return zones


# ═══════════════════════════════════════════════════════════════════════
#  Snapshots (read-only view for rendering / UI)
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CreatureView:
    id: int
    archetype: int
    archetype_name: str
    frequency: float
    x: float
    y: float
    vx: float
    vy: float
    angle: float
    size: float
    color: str
    time_alive: float
    resonance_exposure: int
    evolution_stage: int
    active: bool


@dataclass(frozen=True)
class ZoneView:
    id: int
    x: float
    y: float
    effect_kind: str
    activity: float


@dataclass(frozen=True)
class GardenSnapshot:
    """Immutable state published once per tick."""
    tick: int = 0
    creatures: tuple[CreatureView, ...] = ()
    zones: tuple[ZoneView, ...] = ()
    paused: bool = False
    audio_ready: bool = False
    driver: DriverState = field(
        default_factory=lambda: DriverState(1.0, 1.0, 1.0, FREQ_MIN)
    )
    frequency: float = FREQ_MIN

    @property
    def active_count(self) -> int:
        return sum(1 for c in self.creatures if c.active)


def _creature_view(c: Creature) -> CreatureView:
    arch = ARCHETYPES[c.archetype]
    color = arch.colors[min(c.evolution_stage, len(arch.colors) - 1)]
    return CreatureView(
        id=c.id,
        archetype=int(c.archetype),
        archetype_name=arch.name,
        frequency=c.frequency,
        x=c.x,
        y=c.y,
        vx=c.vx,
        vy=c.vy,
        angle=c.angle,
        size=c.size,
        color=color,
        time_alive=c.time_alive,
        resonance_exposure=c.resonance_exposure,
        evolution_stage=c.evolution_stage,
        active=c.is_active,
    )


# ═══════════════════════════════════════════════════════════════════════
#  Simulation
# ═══════════════════════════════════════════════════════════════════════

class Simulation:
    """
    Creatures, zones and the per-tick update.

    Every audible consequence goes through the VoiceGraph; the simulation
    never touches audio nodes itself. Forces for a tick are computed from a
    copy of all positions taken before anyone moves.
    """

    def __init__(
        self,
        graph: VoiceGraph,
        rng: np.random.Generator | None = None,
        clock: Callable[[], float] | None = None,
        zone_count: int = ZONE_COUNT,
    ) -> None:
        self.graph = graph
        self._rng: np.random.Generator = rng or np.random.default_rng()
        self._now: Callable[[], float] = clock or _monotonic_ms

        self.creatures: list[Creature] = []
        self.zones: list[Zone] = make_zones(zone_count)
        self.ready: bool = False
        self.paused: bool = False
        self.frequency: float = FREQ_MIN
        self.tick_count: int = 0
        self._next_id: int = 1

    # ── Population ──────────────────────────────────────────────────

    def spawn(self, x: float, y: float,
              archetype: Archetype | None = None) -> Creature | None:
        """Add a creature at normalized (x, y). None if rejected."""
        if not self.ready or self.paused:
            return None
        if len(self.creatures) >= MAX_CREATURES:
            return None

        rng = self._rng
        if archetype is None:
            archetype = Archetype(int(rng.integers(len(Archetype))))
        palette = ARCHETYPES[archetype].palette

        creature = Creature(
            id=self._next_id,
            archetype=archetype,
            frequency=float(palette[int(rng.integers(len(palette)))]),
            x=min(1.0, max(0.0, x)),
            y=min(1.0, max(0.0, y)),
            vx=(float(rng.random()) - 0.5) * BASE_SPEED * 0.01,
            vy=(float(rng.random()) - 0.5) * BASE_SPEED * 0.01,
            angle=float(rng.random()) * 2.0 * math.pi,
            size=8.0 + float(rng.random()) * 6.0,
            spawn_time=self._now(),
        )
        self._next_id += 1

        # Voice first, so a visible creature always has its audio state
        self.graph.create_voice(creature)
        self.creatures.append(creature)
        return creature

    def remove(self, creature_id: int) -> bool:
        for i, c in enumerate(self.creatures):
            if c.id == creature_id:
                self.graph.remove_voice(c.id)
                del self.creatures[i]
                return True
        return False

    def clear(self) -> int:
        """Remove every creature, releasing voices first."""
        removed = len(self.creatures)
        for c in self.creatures:
            self.graph.remove_voice(c.id)
        self.creatures = []
        return removed

    def zone(self, zone_id: int) -> Zone | None:
        for z in self.zones:
            if z.id == zone_id:
                return z
        return None

    # ── Tick ────────────────────────────────────────────────────────

    def tick(self, dt: float) -> str:
        """Advance one frame of dt milliseconds. Returns event string."""
        if self.paused or not self.ready:
            return ""

        freq = self.graph.update_filter_frequency()
        self.frequency = freq
        event = ""

        if self.creatures:
            now = self._now()
            for c in self.creatures:
                c.time_alive = now - c.spawn_time

            resonant = np.array(
                [is_resonant(c.frequency, freq) for c in self.creatures],
                dtype=bool,
            )
            self._move(resonant, dt)

            for c, on in zip(self.creatures, resonant):
                self._transition(c, bool(on))
                if c.is_active:
                    c.resonance_exposure += EXPOSURE_PER_TICK
                if self._evolve(c):
                    event = "evolve"
                self._route_proximity(c)

        self._update_zone_activity()
        self.tick_count += 1
        return event

    def _move(self, resonant: NDArray[np.bool_], dt: float) -> None:
        """Brownian-with-heading motion, zone pull, mutual repulsion, walls."""
        cs = self.creatures
        n = len(cs)
        pos = np.array([[c.x, c.y] for c in cs], dtype=np.float64)
        vel = np.array([[c.vx, c.vy] for c in cs], dtype=np.float64)
        angle = np.array([c.angle for c in cs], dtype=np.float64)

        angle += (self._rng.random(n) - 0.5) * HEADING_JITTER
        vel[:, 0] += np.cos(angle) * BROWNIAN_STRENGTH * FORCE_SCALE
        vel[:, 1] += np.sin(angle) * BROWNIAN_STRENGTH * FORCE_SCALE
        vel *= DAMPING

        # Active creatures drift toward nearby zones (constant pull)
        if self.zones and resonant.any():
            zpos = np.array([[z.x, z.y] for z in self.zones], dtype=np.float64)
            delta = zpos[None, :, :] - pos[:, None, :]
            dist = np.linalg.norm(delta, axis=2)
            near = ((dist > ZONE_MIN_DISTANCE) & (dist < ZONE_CAPTURE_RADIUS)
                    & resonant[:, None])
            unit = np.divide(delta, dist[..., None],
                             out=np.zeros_like(delta), where=dist[..., None] > 0)
            vel += (unit * near[..., None]).sum(axis=1) * ZONE_ATTRACTION * FORCE_SCALE

        # Short-range repulsion from the pre-tick positions of everyone else
        if n > 1:
            delta = pos[:, None, :] - pos[None, :, :]
            dist = np.linalg.norm(delta, axis=2)
            near = (dist > REPULSION_MIN_DISTANCE) & (dist < REPULSION_RADIUS)
            unit = np.divide(delta, dist[..., None],
                             out=np.zeros_like(delta), where=dist[..., None] > 0)
            vel += (unit * near[..., None]).sum(axis=1) * REPULSION_STRENGTH * FORCE_SCALE

        pos += vel * dt

        lo, hi = EDGE_PADDING, 1.0 - EDGE_PADDING
        below = pos < lo
        above = pos > hi
        vel = np.where(below, np.abs(vel) * EDGE_BOUNCE, vel)
        vel = np.where(above, -np.abs(vel) * EDGE_BOUNCE, vel)
        pos = np.clip(pos, lo, hi)

        for i, c in enumerate(cs):
            c.x, c.y = float(pos[i, 0]), float(pos[i, 1])
            c.vx, c.vy = float(vel[i, 0]), float(vel[i, 1])
            c.angle = float(angle[i])

    # ── Resonance state machine ─────────────────────────────────────

    def _transition(self, c: Creature, resonant: bool) -> None:
        c.was_active = c.is_active
        if resonant:
            if c.state is ResonanceState.DORMANT:
                c.state = ResonanceState.ACTIVE
                self._on_activate(c)
            else:
                self._on_sustain(c)
        elif c.state is ResonanceState.ACTIVE:
            c.state = ResonanceState.DORMANT
            self._on_deactivate(c)

    def _on_activate(self, c: Creature) -> None:
        self.graph.trigger(c, self.graph.voice(c.id))

    def _on_sustain(self, c: Creature) -> None:
        # Plucks ring once per activation
        if ARCHETYPES[c.archetype].policy is TriggerPolicy.ONE_SHOT_ON_EDGE:
            return
        self.graph.trigger(c, self.graph.voice(c.id))

    def _on_deactivate(self, c: Creature) -> None:
        self.graph.release(c, self.graph.voice(c.id))

    def _evolve(self, c: Creature) -> bool:
        stage = resolve_stage(c.resonance_exposure, c.time_alive, c.evolution_stage)
        if stage == c.evolution_stage:
            return False
        c.evolution_stage = stage
        self.graph.evolve(c.id, stage)
        return True

    # ── Zones ───────────────────────────────────────────────────────

    def _route_proximity(self, c: Creature) -> None:
        for z in self.zones:
            dist = math.hypot(z.x - c.x, z.y - c.y)
            if dist < ZONE_INFLUENCE_RADIUS:
                self.graph.apply_proximity(c.id, z.id, 1.0 - dist / ZONE_INFLUENCE_RADIUS)

    def _update_zone_activity(self) -> None:
        """Fresh every tick: weighted closeness of active creatures."""
        active = [c for c in self.creatures if c.is_active]
        for z in self.zones:
            level = 0.0
            for c in active:
                dist = math.hypot(z.x - c.x, z.y - c.y)
                if dist < ZONE_INFLUENCE_RADIUS:
                    level += (1.0 - dist / ZONE_INFLUENCE_RADIUS) * ZONE_ACTIVITY_WEIGHT
            z.activity = min(1.0, level)


# ═══════════════════════════════════════════════════════════════════════
#  Telemetry
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes engine telemetry to CSV for post-hoc tuning."""

    HEADER: ClassVar[str] = "tick,time_s,creatures,active,frequency,stages,event\n"

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(self, snap: GardenSnapshot, event: str = "") -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        stages = [0] * len(EVOLUTION_STAGES)
        for c in snap.creatures:
            stages[min(c.evolution_stage, len(stages) - 1)] += 1
        stage_str = "/".join(str(s) for s in stages)
        try:
            self._fh.write(
                f"{snap.tick},{t:.1f},{len(snap.creatures)},{snap.active_count},"
                f"{snap.frequency:.2f},{stage_str},{event}\n"
            )
            # Flush on events or periodically
            if event or snap.tick % 50 == 0:
                self._fh.flush()
        except OSError:
            pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


class SnapshotRecorder:
    """Appends one JSON object per published snapshot (JSONL)."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.count: int = 0
        self._fh: IO[str] | None = None

    def open(self) -> bool:
        try:
            self._fh = open(self.path, "w")
            self.count = 0
            return True
        except OSError:
            self._fh = None
            return False

    def record(self, snap: GardenSnapshot) -> None:
        if self._fh is None:
            return
        try:
            self._fh.write(json.dumps(asdict(snap)) + "\n")
            self.count += 1
        except OSError:
            pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Store
# ═══════════════════════════════════════════════════════════════════════

Listener = Callable[[GardenSnapshot], None]


class SimulationStore:
    """
    Authoritative state plus the commands the UI/input layer may issue.

    Owns the VoiceGraph and Simulation it is given (or builds them). Every
    command that changes state publishes a fresh immutable snapshot.

    tick() is the only source of time: it advances the graph Clock by dt, so
    pulse repeats and voice teardowns fire whether or not audio is rendered,
    and creature ages are measured in the same simulated milliseconds.
    """

    def __init__(
        self,
        graph: VoiceGraph | None = None,
        simulation: Simulation | None = None,
        seed: int | None = None,
        stats: StatsLogger | None = None,
        recorder: SnapshotRecorder | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        rng = np.random.default_rng(seed)
        self.graph: VoiceGraph = graph or VoiceGraph(rng=rng)
        # Creature ages follow simulated time unless a clock is injected
        self.simulation: Simulation = simulation or Simulation(
            self.graph, rng=rng, clock=clock or self._sim_time_ms,
        )
        self._stats = stats
        self._recorder = recorder
        self._listeners: list[Listener] = []
        self._snapshot: GardenSnapshot = self._build_snapshot()

    def _sim_time_ms(self) -> float:
        return self.graph.clock.now

    # ── Reads ───────────────────────────────────────────────────────

    @property
    def snapshot(self) -> GardenSnapshot:
        return self._snapshot

    @property
    def audio_ready(self) -> bool:
        return self.simulation.ready

    @property
    def paused(self) -> bool:
        return self.simulation.paused

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` with every published snapshot. Returns unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Commands ────────────────────────────────────────────────────

    async def init_audio(self) -> None:
        """Bring up the audio graph and the zone effects. Idempotent."""
        if self.simulation.ready:
            return
        await self.graph.init()
        for zone in self.simulation.zones:
            self.graph.create_effect(zone.id, zone.effect_kind)
        self.simulation.ready = True
        self._publish("audio")

    def spawn(self, x: float, y: float) -> int | None:
        """Spawn at normalized coordinates. Returns the new id or None."""
        creature = self.simulation.spawn(x, y)
        if creature is None:
            return None
        self._publish("spawn")
        return creature.id

    def remove_creature(self, creature_id: int) -> bool:
        removed = self.simulation.remove(creature_id)
        if removed:
            self._publish("remove")
        return removed

    def cycle_zone_effect(self, zone_id: int) -> str | None:
        zone = self.simulation.zone(zone_id)
        if zone is None:
            return None
        new_kind = self.graph.cycle_effect(zone_id)
        if new_kind is None:
            return None
        zone.effect_kind = new_kind
        self._publish("cycle")
        return new_kind

    def toggle_pause(self) -> None:
        if self.simulation.paused:
            self.graph.resume()
        else:
            self.graph.pause()
        self.simulation.paused = not self.simulation.paused
        self._publish("pause" if self.simulation.paused else "resume")

    def clear_all(self) -> None:
        self.simulation.clear()
        self._publish("clear")

    def set_master_volume(self, volume: float) -> None:
        self.graph.set_master_volume(volume)

    def tick(self, dt_ms: float) -> None:
        """Advance one frame. No-op while paused or before audio is ready."""
        if self.simulation.paused or not self.simulation.ready:
            return
        dt = max(0.0, min(MAX_TICK_MS, dt_ms))
        self.graph.clock.advance(dt)
        event = self.simulation.tick(dt)
        self._publish(event, ticked=True)

    def dispose(self) -> None:
        """Tear down audio and forget every creature. Safe to repeat."""
        self.graph.dispose()
        self.simulation.creatures = []
        self.simulation.ready = False
        self.simulation.paused = False
        self._publish("dispose")

    # ── Publishing ──────────────────────────────────────────────────

    def _build_snapshot(self) -> GardenSnapshot:
        sim = self.simulation
        return GardenSnapshot(
            tick=sim.tick_count,
            creatures=tuple(_creature_view(c) for c in sim.creatures),
            zones=tuple(
                ZoneView(id=z.id, x=z.x, y=z.y,
                         effect_kind=z.effect_kind, activity=z.activity)
                for z in sim.zones
            ),
            paused=sim.paused,
            audio_ready=sim.ready,
            driver=self.graph.driver_state(),
            frequency=sim.frequency,
        )

    def _publish(self, event: str = "", ticked: bool = False) -> None:
        snap = self._build_snapshot()
        self._snapshot = snap

        if self._stats is not None and (event or (ticked and snap.tick % 10 == 0)):
            self._stats.log(snap, event)
        if self._recorder is not None and ticked:
            self._recorder.record(snap)

        for listener in list(self._listeners):
            listener(snap)
