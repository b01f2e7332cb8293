#!/usr/bin/env python3
"""Offline diagnostic renderer for the resonance garden.

Runs the simulation headlessly with a seeded population, renders the audio
graph offline, and reports loudness/brightness figures alongside simulation
statistics. Recorded sessions (.jsonl from SnapshotRecorder) can be replayed
for a summary, and --live streams the run through the sound card.

Usage:
    python3 garden_diag.py                          # 600 ticks, 8 creatures
    python3 garden_diag.py --ticks 3000 --spawn 20  # longer, busier garden
    python3 garden_diag.py --seed 7 --no-wav        # report only
    python3 garden_diag.py --stats stats.csv --record run.jsonl
    python3 garden_diag.py --replay run.jsonl       # summarize a recording
    python3 garden_diag.py --live                   # play through PyAudio
"""
from __future__ import annotations

import argparse
import asyncio
import json
import math
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy.io import wavfile

from garden import (
    EVOLUTION_STAGES,
    MAX_CREATURES,
    CreatureView,
    GardenSnapshot,
    SimulationStore,
    SnapshotRecorder,
    StatsLogger,
    ZoneView,
)
from garden_lorenz import DriverState
from garden_music import SAMPLE_RATE, AudioOutput


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_TICKS: int = 600
DEFAULT_SPAWN: int = 8
DEFAULT_SEED: int = 42
DEFAULT_OUTPUT_DIR: str = "diag_output"
TICK_MS: float = 16.0

# Frequency band boundaries for spectral analysis (Hz)
BANDS: dict[str, tuple[float, float]] = {
    "low": (20.0, 200.0),
    "mid": (200.0, 1000.0),
    "high": (1000.0, 4000.0),
    "presence": (4000.0, 10000.0),
}


# ═══════════════════════════════════════════════════════════════════════
#  Offline Renderer
# ═══════════════════════════════════════════════════════════════════════

class OfflineRenderer:
    """Drives a SimulationStore tick by tick, rendering audio between ticks.

    Each tick renders exactly its share of samples; the fractional remainder
    is carried so long runs don't drift against the simulation clock.
    """

    def __init__(self, store: SimulationStore, tick_ms: float = TICK_MS) -> None:
        self.store = store
        self.tick_ms = tick_ms
        self._carry: float = 0.0

    def samples_for_tick(self) -> int:
        exact = self.tick_ms * SAMPLE_RATE / 1000.0 + self._carry
        n = int(exact)
        self._carry = exact - n
        return n

    def step(self) -> NDArray[np.float32]:
        self.store.tick(self.tick_ms)
        return self.store.graph.render(self.samples_for_tick())


@dataclass(frozen=True)
class HeadlessRun:
    """Everything a headless run produced."""
    audio: NDArray[np.float32]
    snapshots: list[GardenSnapshot]
    evolutions: int


def build_store(
    spawn: int,
    seed: int,
    stats: StatsLogger | None = None,
    recorder: SnapshotRecorder | None = None,
) -> SimulationStore:
    """Ready store with `spawn` creatures at seeded random positions."""
    store = SimulationStore(seed=seed, stats=stats, recorder=recorder)
    asyncio.run(store.init_audio())
    rng = np.random.default_rng(seed + 1)
    for _ in range(spawn):
        store.spawn(float(rng.random()), float(rng.random()))
    return store


def run_headless_simulation(
    ticks: int,
    spawn: int = DEFAULT_SPAWN,
    seed: int = DEFAULT_SEED,
    tick_ms: float = TICK_MS,
    stats_path: Path | None = None,
    record_path: Path | None = None,
    render: bool = True,
) -> HeadlessRun:
    """Run the garden for `ticks` frames, collecting snapshots and audio."""
    stats = StatsLogger(stats_path) if stats_path is not None else None
    recorder = SnapshotRecorder(record_path) if record_path is not None else None
    if stats is not None:
        stats.open()
    if recorder is not None and not recorder.open():
        print(f"  Warning: cannot record to {record_path}", file=sys.stderr)

    store = build_store(spawn, seed, stats=stats, recorder=recorder)
    renderer = OfflineRenderer(store, tick_ms)

    snapshots: list[GardenSnapshot] = []
    evolutions = 0
    store.subscribe(snapshots.append)

    bufs: list[NDArray[np.float32]] = []
    try:
        for _ in range(ticks):
            before = sum(c.evolution_stage for c in store.snapshot.creatures)
            if render:
                bufs.append(renderer.step())
            else:
                store.tick(tick_ms)
            after = sum(c.evolution_stage for c in store.snapshot.creatures)
            if after > before:
                evolutions += 1
    finally:
        store.dispose()
        if stats is not None:
            stats.close()
        if recorder is not None:
            recorder.close()

    # Only ticks publish audio-ready snapshots; drop setup/teardown ones
    ticked = [s for s in snapshots if s.audio_ready and s.tick > 0]
    audio = np.concatenate(bufs) if bufs else np.zeros(0, dtype=np.float32)
    return HeadlessRun(audio=audio, snapshots=ticked, evolutions=evolutions)


# ═══════════════════════════════════════════════════════════════════════
#  Audio Analysis
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AudioMetrics:
    """Analysis metrics for one rendered signal."""
    rms: float
    rms_db: float
    peak: float
    spectral_centroid_hz: float
    crest_factor: float
    band_energy: dict[str, float]  # band name → dB


class AudioAnalyzer:
    """Compute diagnostic metrics from rendered audio arrays."""

    def __init__(self, sample_rate: int = SAMPLE_RATE) -> None:
        self.sample_rate = sample_rate

    def analyze(self, signal: NDArray[np.float32]) -> AudioMetrics:
        rms = self._rms(signal)
        return AudioMetrics(
            rms=rms,
            rms_db=20.0 * math.log10(max(rms, 1e-10)),
            peak=float(np.max(np.abs(signal))) if len(signal) else 0.0,
            spectral_centroid_hz=self._spectral_centroid(signal),
            crest_factor=self._crest_factor(signal, rms),
            band_energy=self._band_energy(signal),
        )

    @staticmethod
    def _rms(signal: NDArray[np.float32]) -> float:
        """Root mean square of the signal."""
        if len(signal) == 0:
            return 0.0
        return float(np.sqrt(np.mean(signal.astype(np.float64) ** 2)))

    def _spectral_centroid(self, signal: NDArray[np.float32]) -> float:
        """Frequency-domain brightness: weighted mean of frequency bins."""
        if len(signal) < 2:
            return 0.0
        windowed = signal * np.hanning(len(signal)).astype(np.float32)
        fft_mag = np.abs(np.fft.rfft(windowed))
        freqs = np.fft.rfftfreq(len(signal), d=1.0 / self.sample_rate)
        total = float(np.sum(fft_mag))
        if total < 1e-10:
            return 0.0
        return float(np.sum(freqs * fft_mag) / total)

    @staticmethod
    def _crest_factor(signal: NDArray[np.float32], rms: float) -> float:
        """Peak / RMS."""
        if len(signal) == 0 or rms < 1e-10:
            return 0.0
        return float(np.max(np.abs(signal))) / rms

    def _band_energy(self, signal: NDArray[np.float32]) -> dict[str, float]:
        """Energy in frequency bands, reported in dB."""
        if len(signal) < 2:
            return {name: -100.0 for name in BANDS}

        fft_mag = np.abs(np.fft.rfft(signal.astype(np.float64)))
        freqs = np.fft.rfftfreq(len(signal), d=1.0 / self.sample_rate)

        result: dict[str, float] = {}
        for name, (lo, hi) in BANDS.items():
            mask = (freqs >= lo) & (freqs < hi)
            energy = float(np.sum(fft_mag[mask] ** 2))
            result[name] = 10.0 * math.log10(max(energy, 1e-10))
        return result


# ═══════════════════════════════════════════════════════════════════════
#  Simulation Summary
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RunSummary:
    ticks: int
    creatures: int
    active_ratio: float                 # mean fraction of creatures awake
    stage_counts: tuple[int, ...]       # final histogram of evolution stages
    freq_min: float
    freq_max: float
    freq_mean: float
    busiest_zone: int | None
    effects: tuple[str, ...]


def summarize_snapshots(snapshots: Sequence[GardenSnapshot]) -> RunSummary:
    """Reduce a run (live or replayed) to a handful of numbers."""
    if not snapshots:
        return RunSummary(0, 0, 0.0, (0,) * len(EVOLUTION_STAGES),
                          0.0, 0.0, 0.0, None, ())

    ratios = [s.active_count / len(s.creatures) for s in snapshots if s.creatures]
    freqs = np.array([s.frequency for s in snapshots], dtype=np.float64)

    last = snapshots[-1]
    stages = [0] * len(EVOLUTION_STAGES)
    for c in last.creatures:
        stages[min(c.evolution_stage, len(stages) - 1)] += 1

    zone_totals: dict[int, float] = {}
    for s in snapshots:
        for z in s.zones:
            zone_totals[z.id] = zone_totals.get(z.id, 0.0) + z.activity
    busiest = None
    if zone_totals and max(zone_totals.values()) > 0:
        busiest = max(zone_totals, key=lambda zid: zone_totals[zid])

    return RunSummary(
        ticks=len(snapshots),
        creatures=len(last.creatures),
        active_ratio=float(np.mean(ratios)) if ratios else 0.0,
        stage_counts=tuple(stages),
        freq_min=float(freqs.min()),
        freq_max=float(freqs.max()),
        freq_mean=float(freqs.mean()),
        busiest_zone=busiest,
        effects=tuple(z.effect_kind for z in last.zones),
    )


# ═══════════════════════════════════════════════════════════════════════
#  Report Formatting
# ═══════════════════════════════════════════════════════════════════════

def format_report(
    label: str,
    summary: RunSummary,
    metrics: AudioMetrics | None = None,
    evolutions: int | None = None,
) -> str:
    """Format analysis results into a structured text report."""
    lines: list[str] = []
    sep = "=" * 79

    lines.append(sep)
    lines.append("RESONANCE GARDEN DIAGNOSTIC REPORT")
    lines.append(f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    lines.append(f"Source: {label}")
    lines.append(sep)
    lines.append("")

    lines.append("SIMULATION")
    lines.append(f"  Ticks:          {summary.ticks}")
    lines.append(f"  Creatures:      {summary.creatures}")
    lines.append(f"  Active ratio:   {summary.active_ratio:.3f}")
    lines.append(f"  Driver freq:    {summary.freq_min:.1f} .. {summary.freq_max:.1f} Hz"
                 f"  (mean {summary.freq_mean:.1f})")
    stage_str = "/".join(str(n) for n in summary.stage_counts)
    lines.append(f"  Stages:         {stage_str}")
    if evolutions is not None:
        lines.append(f"  Evolve ticks:   {evolutions}")
    busiest = f"zone {summary.busiest_zone}" if summary.busiest_zone is not None else "--"
    lines.append(f"  Busiest zone:   {busiest}")
    lines.append(f"  Effects:        {', '.join(summary.effects) or '--'}")
    lines.append("")

    if metrics is not None:
        lines.append("AUDIO")
        lines.append("  RMS (dB)  Peak    Centroid   Crest")
        lines.append("  " + "-" * 40)
        lines.append(
            f"  {metrics.rms_db:7.1f}  {metrics.peak:5.3f}  {metrics.spectral_centroid_hz:6.0f} Hz"
            f"  {metrics.crest_factor:5.1f}"
        )
        lines.append("")
        lines.append("  Band Energy (dB):")
        lines.append("       Low      Mid     High  Presence")
        be = metrics.band_energy
        lines.append(
            f"  {be.get('low', -100):7.1f}  {be.get('mid', -100):7.1f}"
            f"  {be.get('high', -100):7.1f}  {be.get('presence', -100):8.1f}"
        )
        lines.append("")
        silent = " [!] silent render" if metrics.peak < 1e-6 else ""
        if silent:
            lines.append(silent)
            lines.append("")

    lines.append(sep)
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════
#  Replay from Recorded Snapshots
# ═══════════════════════════════════════════════════════════════════════

def snapshot_from_dict(d: dict[str, Any]) -> GardenSnapshot:
    """Rebuild a GardenSnapshot from its JSON form."""
    return GardenSnapshot(
        tick=d["tick"],
        creatures=tuple(CreatureView(**c) for c in d["creatures"]),
        zones=tuple(ZoneView(**z) for z in d["zones"]),
        paused=d["paused"],
        audio_ready=d["audio_ready"],
        driver=DriverState(**d["driver"]),
        frequency=d["frequency"],
    )


def load_recorded_snapshots(path: Path) -> list[GardenSnapshot]:
    """Load snapshots from a .jsonl file written by SnapshotRecorder."""
    snapshots: list[GardenSnapshot] = []
    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                snapshots.append(snapshot_from_dict(json.loads(line)))
            except (json.JSONDecodeError, TypeError, KeyError) as e:
                print(f"  Warning: skipping line {line_num}: {e}", file=sys.stderr)
    return snapshots


# ═══════════════════════════════════════════════════════════════════════
#  WAV Output
# ═══════════════════════════════════════════════════════════════════════

def write_wav(output_dir: Path, name: str, audio: NDArray[np.float32]) -> Path | None:
    """Write a peak-normalized float WAV. Returns the path, or None on failure."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"{name}.wav"

    # Normalize to prevent clipping
    peak = float(np.max(np.abs(audio))) if len(audio) else 0.0
    if peak > 1e-8:
        normalized = (audio / peak * 0.95).astype(np.float32)
    else:
        normalized = audio.astype(np.float32)

    try:
        wavfile.write(str(path), SAMPLE_RATE, normalized)
    except (OSError, ValueError) as e:
        print(f"  [error] Failed to write {path}: {e}", file=sys.stderr)
        return None
    return path


# ═══════════════════════════════════════════════════════════════════════
#  Live Playback
# ═══════════════════════════════════════════════════════════════════════

def play_live(ticks: int, spawn: int, seed: int, tick_ms: float = TICK_MS) -> bool:
    """Stream a run through PyAudio. Blocking writes pace the loop."""
    output = AudioOutput()
    if not output.start():
        print("Error: audio output unavailable (install the 'audio' extra)",
              file=sys.stderr)
        return False

    store = build_store(spawn, seed)
    renderer = OfflineRenderer(store, tick_ms)
    try:
        for tick in range(ticks):
            output.write(renderer.step())
            if (tick + 1) % 60 == 0:
                snap = store.snapshot
                print(f"\r  tick {tick + 1}/{ticks}  "
                      f"freq {snap.frequency:7.1f} Hz  "
                      f"active {snap.active_count}/{len(snap.creatures)}",
                      end="", flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        print()
        store.dispose()
        output.stop()
    return True


# ═══════════════════════════════════════════════════════════════════════
#  Main
# ═══════════════════════════════════════════════════════════════════════

def main(argv: list[str] | None = None) -> None:
    """Run the diagnostic pipeline."""
    parser = argparse.ArgumentParser(
        description="Resonance garden diagnostic renderer and analyzer",
    )
    parser.add_argument(
        "--ticks", type=int, default=DEFAULT_TICKS,
        help=f"Simulation ticks to run (default: {DEFAULT_TICKS})",
    )
    parser.add_argument(
        "--spawn", type=int, default=DEFAULT_SPAWN,
        help=f"Creatures to spawn, at most {MAX_CREATURES} (default: {DEFAULT_SPAWN})",
    )
    parser.add_argument(
        "--seed", type=int, default=DEFAULT_SEED,
        help=f"Random seed (default: {DEFAULT_SEED})",
    )
    parser.add_argument(
        "--output-dir", type=Path, default=Path(DEFAULT_OUTPUT_DIR),
        help=f"Directory for WAV output (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--no-wav", action="store_true",
        help="Skip WAV output, only print report",
    )
    parser.add_argument(
        "--stats", type=Path, default=None, metavar="FILE",
        help="Write CSV telemetry to FILE",
    )
    parser.add_argument(
        "--record", type=Path, default=None, metavar="FILE",
        help="Record every snapshot to a .jsonl file",
    )
    parser.add_argument(
        "--replay", type=Path, default=None, metavar="FILE",
        help="Summarize a recorded .jsonl session instead of simulating",
    )
    parser.add_argument(
        "--live", action="store_true",
        help="Play the run through the sound card (needs PyAudio)",
    )
    args = parser.parse_args(argv)

    if args.ticks <= 0:
        print("Error: --ticks must be positive", file=sys.stderr)
        sys.exit(1)
    if not 0 <= args.spawn <= MAX_CREATURES:
        print(f"Error: --spawn must be between 0 and {MAX_CREATURES}", file=sys.stderr)
        sys.exit(1)

    # ── Replay recorded snapshots ────────────────────────────────
    if args.replay is not None:
        if not args.replay.exists():
            print(f"Error: file not found: {args.replay}", file=sys.stderr)
            sys.exit(1)
        print(f"Loading snapshots from {args.replay}...", end="", flush=True)
        snapshots = load_recorded_snapshots(args.replay)
        print(f" {len(snapshots)} snapshots")
        print(format_report(str(args.replay), summarize_snapshots(snapshots)))
        return

    # ── Live playback ────────────────────────────────────────────
    if args.live:
        print(f"Playing {args.ticks} ticks live (Ctrl-C to stop)...")
        if not play_live(args.ticks, args.spawn, args.seed):
            sys.exit(1)
        return

    # ── Headless simulation ──────────────────────────────────────
    duration = args.ticks * TICK_MS / 1000.0
    print(f"Running headless simulation: {args.ticks} ticks ({duration:.1f}s), "
          f"{args.spawn} creatures, seed {args.seed}...", end="", flush=True)
    run = run_headless_simulation(
        args.ticks, spawn=args.spawn, seed=args.seed,
        stats_path=args.stats, record_path=args.record,
    )
    print(" analyzing...", end="", flush=True)
    metrics = AudioAnalyzer().analyze(run.audio)

    if not args.no_wav:
        written = write_wav(args.output_dir, f"garden_seed{args.seed}", run.audio)
        print(f" wrote {written}." if written else " WAV failed.", flush=True)
    else:
        print(" done.", flush=True)

    print(format_report(
        f"headless seed={args.seed}",
        summarize_snapshots(run.snapshots),
        metrics,
        evolutions=run.evolutions,
    ))


if __name__ == "__main__":
    main()
