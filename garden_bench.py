#!/usr/bin/env python3
"""
Profiling harness for the resonance garden.

Runs the simulation tick + offline audio render headlessly under cProfile,
then prints a ranked breakdown of where time is spent.

Usage:
  python3 garden_bench.py                  # 500 frames, summary
  python3 garden_bench.py -n 1000          # 1000 frames
  python3 garden_bench.py --line-timing    # per-frame component timing
  python3 garden_bench.py --dump prof.out  # dump cProfile binary for snakeviz etc.
"""

from __future__ import annotations

import argparse
import asyncio
import cProfile
import pstats
import time
from io import StringIO

import numpy as np

from garden import MAX_CREATURES, SimulationStore
from garden_music import SAMPLE_RATE

FRAME_MS: float = 1000.0 / 60.0


def build_store(creatures: int, seed: int) -> SimulationStore:
    """A ready store populated with `creatures` creatures at random spots."""
    store = SimulationStore(seed=seed)
    asyncio.run(store.init_audio())
    rng = np.random.default_rng(seed + 1)
    for _ in range(min(creatures, MAX_CREATURES)):
        store.spawn(float(rng.random()), float(rng.random()))
    return store


class FrameRunner:
    """One display frame: tick, then render the frame's worth of audio."""

    def __init__(self, store: SimulationStore, frame_ms: float = FRAME_MS) -> None:
        self.store = store
        self.frame_ms = frame_ms
        self._carry: float = 0.0

    def samples_for_frame(self) -> int:
        exact = self.frame_ms * SAMPLE_RATE / 1000.0 + self._carry
        n = int(exact)
        self._carry = exact - n
        return n

    def tick(self) -> None:
        self.store.tick(self.frame_ms)

    def render(self) -> None:
        self.store.graph.render(self.samples_for_frame())

    def frame(self) -> None:
        self.tick()
        self.render()


def run_benchmark(
    n_frames: int,
    creatures: int = MAX_CREATURES,
    seed: int = 42,
    line_timing: bool = False,
    dump_path: str | None = None,
) -> None:
    """Run the benchmark for n_frames and report results."""

    store = build_store(creatures, seed)
    runner = FrameRunner(store)

    print(f"Creatures: {len(store.snapshot.creatures)}  "
          f"Zones: {len(store.snapshot.zones)}  "
          f"Frames: {n_frames}")
    print(f"Frame: {FRAME_MS:.2f}ms  Sample rate: {SAMPLE_RATE} Hz")
    print()

    # ── Per-frame component timing ─────────────────────────────────
    if line_timing:
        tick_times: list[float] = []
        render_times: list[float] = []
        total_times: list[float] = []

        for frame in range(n_frames):
            frame_t0 = time.perf_counter()

            t0 = time.perf_counter()
            runner.tick()
            tick_times.append(time.perf_counter() - t0)

            t0 = time.perf_counter()
            runner.render()
            render_times.append(time.perf_counter() - t0)

            total_times.append(time.perf_counter() - frame_t0)

            if (frame + 1) % 100 == 0:
                avg_ms = sum(total_times[-100:]) / 100 * 1000
                print(f"  frame {frame + 1}/{n_frames}  "
                      f"avg {avg_ms:.2f}ms/frame  "
                      f"active {store.snapshot.active_count}")

        print()
        print("=== Per-Frame Component Breakdown (ms) ===")
        print(f"{'Component':<25} {'Mean':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Max':>8}")
        print("-" * 73)

        def stats_line(name: str, data: list[float]) -> str:
            arr = np.array(data) * 1000  # to ms
            return (f"{name:<25} {arr.mean():8.2f} {np.median(arr):8.2f} "
                    f"{np.percentile(arr, 95):8.2f} {np.percentile(arr, 99):8.2f} "
                    f"{arr.max():8.2f}")

        print(stats_line("store.tick()", tick_times))
        print(stats_line("graph.render()", render_times))
        print(stats_line("TOTAL (tick+render)", total_times))

        total_arr = np.array(total_times) * 1000
        over_budget = (total_arr > FRAME_MS).sum()
        print(f"\n60fps budget: {FRAME_MS:.1f}ms/frame")
        print(f"Frames over budget: {over_budget}/{n_frames} "
              f"({100 * over_budget / n_frames:.1f}%)")
        print(f"Headroom (mean): {FRAME_MS - total_arr.mean():.1f}ms")
        store.dispose()
        return

    # ── cProfile run ───────────────────────────────────────────────
    def profiled_run() -> None:
        for _ in range(n_frames):
            runner.frame()

    profiler = cProfile.Profile()
    wall_t0 = time.perf_counter()
    profiler.runctx("profiled_run()", globals(), locals())
    wall_dt = time.perf_counter() - wall_t0
    store.dispose()

    print(f"Wall time: {wall_dt:.2f}s  ({wall_dt / n_frames * 1000:.2f}ms/frame)")
    print(f"Effective FPS: {n_frames / wall_dt:.1f}")
    print()

    if dump_path:
        profiler.dump_stats(dump_path)
        print(f"Profile data saved to: {dump_path}")
        print(f"  View with: python3 -m pstats {dump_path}")
        print()

    buf = StringIO()
    ps = pstats.Stats(profiler, stream=buf)
    ps.sort_stats("cumulative")
    ps.print_stats(40)
    print(buf.getvalue())

    buf2 = StringIO()
    ps2 = pstats.Stats(profiler, stream=buf2)
    ps2.sort_stats("tottime")
    ps2.print_stats(30)
    print("\n=== By Self-Time (tottime) ===")
    print(buf2.getvalue())


def main() -> None:
    parser = argparse.ArgumentParser(description="Profile the resonance garden")
    parser.add_argument("-n", "--frames", type=int, default=500,
                        help="Number of frames to simulate (default: 500)")
    parser.add_argument("-c", "--creatures", type=int, default=MAX_CREATURES,
                        help=f"Creatures to spawn (default: {MAX_CREATURES})")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed (default: 42)")
    parser.add_argument("--line-timing", action="store_true",
                        help="Per-frame component timing instead of cProfile")
    parser.add_argument("--dump", type=str, default=None,
                        help="Dump cProfile binary to this path")
    args = parser.parse_args()

    run_benchmark(
        n_frames=args.frames,
        creatures=args.creatures,
        seed=args.seed,
        line_timing=args.line_timing,
        dump_path=args.dump,
    )


if __name__ == "__main__":
    main()
