"""
tests/test_voice_graph.py - Tests for the VoiceGraph and its node set.
"""

import asyncio

import numpy as np
import pytest

from conftest import Critter, FixedDriver, StubRng, init_graph
from garden_lorenz import FREQ_MIN
from garden_music import (
    ARCHETYPES,
    EFFECT_KINDS,
    ONE_SHOT_DURATION,
    SAMPLE_RATE,
    TEARDOWN_DELAY_MS,
    AlreadyConnectedError,
    Archetype,
    AudioContext,
    Clock,
    DisposedNodeError,
    Effect,
    Gain,
    GraphError,
    Synth,
    VoiceGraph,
    next_effect_kind,
)


DRONE = Critter(1, Archetype.DRONE, 65.41)
PULSE = Critter(2, Archetype.PULSE, 220.0)
PLUCK = Critter(3, Archetype.PLUCK, 440.0)
GRAIN = Critter(4, Archetype.GRANULAR, 174.61)


class TestClock:
    """Tests for the timer queue."""

    def test_fires_in_order(self):
        clock = Clock()
        fired = []
        clock.call_later(30, lambda: fired.append("b"))
        clock.call_later(10, lambda: fired.append("a"))
        clock.advance(25)
        assert fired == ["a"]
        clock.advance(10)
        assert fired == ["a", "b"]
        assert clock.now == pytest.approx(35.0)

    def test_cancel_is_immediate(self):
        clock = Clock()
        fired = []
        handle = clock.call_later(5, lambda: fired.append(1))
        handle.cancel()
        assert not handle.pending
        clock.advance(100)
        assert fired == []
        assert clock.pending() == 0

    def test_rescheduling_callback_fires_within_window(self):
        clock = Clock()
        fired = []

        def tick():
            fired.append(clock.now)
            if len(fired) < 3:
                clock.call_later(10, tick)

        clock.call_later(10, tick)
        clock.advance(100)
        assert fired == [10.0, 20.0, 30.0]


class TestNodes:
    """Tests for node connect/dispose semantics."""

    def test_duplicate_connect_raises(self):
        a, b = Gain(), Gain()
        a.connect(b)
        with pytest.raises(AlreadyConnectedError):
            a.connect(b)

    def test_disposed_node_raises(self):
        a, b = Gain(), Gain()
        b.dispose()
        with pytest.raises(DisposedNodeError):
            a.connect(b)
        with pytest.raises(DisposedNodeError):
            b.gain = 0.5

    def test_dispose_is_idempotent_and_unlinks(self):
        a, b = Gain(), Gain()
        a.connect(b)
        b.dispose()
        b.dispose()
        assert not a.is_connected(b)

    def test_feedback_cycle_renders(self):
        a, b = Gain(0.5), Gain(0.5)
        a.connect(b)
        b.connect(a)
        out = b.pull(1, 64)
        assert out.shape == (64,)

    def test_synth_release_tail_ends(self):
        synth = Synth(ARCHETYPES[Archetype.PLUCK].envelope)
        synth.trigger_attack_release(440.0, ONE_SHOT_DURATION)
        assert synth.is_sounding and not synth.is_held
        out = synth.pull(1, SAMPLE_RATE // 10)
        assert np.max(np.abs(out)) > 0.1
        synth.pull(2, SAMPLE_RATE)
        assert not synth.is_sounding

    def test_synth_rejects_unknown_oscillator(self):
        synth = Synth(ARCHETYPES[Archetype.DRONE].envelope)
        with pytest.raises(ValueError):
            synth.oscillator_type = "noise"


class TestLifecycle:
    """Tests for init/dispose and the uninitialized no-op contract."""

    def test_uninitialized_graph_is_silent_noop(self):
        g = VoiceGraph()
        assert g.create_voice(DRONE) is None
        g.trigger(DRONE, g.voice(DRONE.id))
        g.release(DRONE, g.voice(DRONE.id))
        g.remove_voice(DRONE.id)
        g.evolve(DRONE.id, 2)
        g.apply_proximity(DRONE.id, 1, 1.0)
        assert g.create_effect(1, "Reverb") is None
        assert g.cycle_effect(1) is None
        out = g.render(256)
        assert out.dtype == np.float32
        assert not out.any()

    def test_filter_update_advances_driver_without_init(self):
        g = VoiceGraph()
        before = g.driver_state()
        g.update_filter_frequency()
        assert g.driver_state() != before

    def test_init_is_idempotent(self):
        g = VoiceGraph()
        init_graph(g)
        init_graph(g)
        assert g.initialized
        assert g.context.state == "running"
        g.dispose()

    def test_init_waits_for_user_gesture(self):
        ctx = AudioContext(require_gesture=True)
        g = VoiceGraph(context=ctx)

        async def scenario():
            task = asyncio.create_task(g.init())
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert not g.initialized
            ctx.user_gesture()
            await task

        asyncio.run(scenario())
        assert g.initialized
        g.dispose()

    def test_dispose_is_complete_and_idempotent(self, graph):
        graph.create_effect(1, "Reverb")
        graph.create_voice(PULSE)
        graph.trigger(PULSE, graph.voice(PULSE.id))
        graph.create_voice(DRONE)
        graph.remove_voice(DRONE.id)
        assert graph.pending_pulses() == 1
        assert graph.pending_teardowns() == 1

        graph.dispose()
        assert not graph.initialized
        assert graph.voice_count == 0
        assert graph.pending_pulses() == 0
        assert graph.pending_teardowns() == 0
        assert graph.clock.pending() == 0
        assert graph.effect(1) is None
        graph.dispose()

    def test_master_volume_clamped(self, graph):
        graph.set_master_volume(3.0)
        assert graph.master_volume == 1.0
        graph.set_master_volume(-1.0)
        assert graph.master_volume == 0.0


class TestVoices:
    """Tests for voice allocation, triggering and release."""

    def test_create_and_remove_voice(self, graph):
        voice = graph.create_voice(DRONE)
        assert voice is not None
        assert graph.voice(DRONE.id) is voice
        assert voice.synth.oscillator_type == "sine"

        graph.remove_voice(DRONE.id)
        assert graph.voice(DRONE.id) is None
        assert graph.pending_teardowns() == 1
        assert not voice.synth.disposed

        graph.clock.advance(TEARDOWN_DELAY_MS + 1)
        assert graph.pending_teardowns() == 0
        assert voice.synth.disposed and voice.gain.disposed

    def test_remove_unknown_voice_is_noop(self, graph):
        graph.remove_voice(999)
        assert graph.pending_teardowns() == 0

    def test_drone_sustains_until_release(self, graph):
        voice = graph.create_voice(DRONE)
        graph.trigger(DRONE, voice)
        assert voice.playing and voice.synth.is_held
        graph.trigger(DRONE, voice)
        assert voice.synth.is_held

        graph.release(DRONE, voice)
        assert not voice.playing
        assert not voice.synth.is_held

    def test_pulse_reschedules_until_released(self, graph):
        voice = graph.create_voice(PULSE)
        graph.trigger(PULSE, voice)
        assert voice.playing
        assert graph.pending_pulses() == 1

        first = voice.pulse_timer
        graph.clock.advance(1001)
        assert voice.pulse_timer is not first
        assert graph.pending_pulses() == 1

        graph.release(PULSE, voice)
        assert not voice.playing
        assert graph.pending_pulses() == 0
        assert graph.clock.pending() == 0

    def test_pulse_not_doubled_by_retrigger(self, graph):
        voice = graph.create_voice(PULSE)
        graph.trigger(PULSE, voice)
        graph.trigger(PULSE, voice)
        assert graph.clock.pending() == 1

    def test_remove_cancels_pulse_synchronously(self, graph):
        voice = graph.create_voice(PULSE)
        graph.trigger(PULSE, voice)
        graph.remove_voice(PULSE.id)
        assert graph.pending_pulses() == 0
        assert voice.pulse_timer is None
        # Teardown still runs cleanly afterwards
        graph.clock.advance(2000)
        assert voice.synth.disposed

    def test_pluck_is_one_shot(self, graph):
        voice = graph.create_voice(PLUCK)
        graph.trigger(PLUCK, voice)
        assert voice.synth.is_sounding
        assert not voice.synth.is_held
        assert graph.clock.pending() == 0

    def test_granular_fires_below_density(self):
        g = init_graph(VoiceGraph(rng=StubRng(0.0)))
        voice = g.create_voice(GRAIN)
        g.trigger(GRAIN, voice)
        assert voice.synth.is_sounding
        g.dispose()

    def test_granular_silent_above_density(self):
        g = init_graph(VoiceGraph(rng=StubRng(0.99)))
        voice = g.create_voice(GRAIN)
        g.trigger(GRAIN, voice)
        assert not voice.synth.is_sounding
        g.dispose()

    def test_stale_voice_handle_swallowed(self, graph):
        voice = graph.create_voice(DRONE)
        voice.synth.dispose()
        voice.gain.dispose()
        graph.trigger(DRONE, voice)
        graph.evolve(DRONE.id, 3)
        graph.release(DRONE, voice)
        graph.apply_proximity(DRONE.id, 1, 1.0)
        graph.remove_voice(DRONE.id)
        graph.clock.advance(TEARDOWN_DELAY_MS + 1)
        assert graph.pending_teardowns() == 0

    def test_evolve_changes_waveform(self, graph):
        voice = graph.create_voice(DRONE)
        graph.evolve(DRONE.id, 2)
        assert voice.synth.oscillator_type == "sawtooth"
        assert voice.stage == 2
        graph.evolve(DRONE.id, 3)
        assert voice.synth.oscillator_type == "square"

    def test_pause_silences_and_blocks_triggers(self, graph):
        drone = graph.create_voice(DRONE)
        pulse = graph.create_voice(PULSE)
        graph.trigger(DRONE, drone)
        graph.trigger(PULSE, pulse)

        graph.pause()
        assert graph.paused
        assert not drone.playing and not pulse.playing
        assert graph.pending_pulses() == 0
        graph.trigger(DRONE, drone)
        assert not drone.playing

        graph.resume()
        graph.trigger(DRONE, drone)
        assert drone.playing


class TestEffects:
    """Tests for zone effects, cycling and proximity sends."""

    def test_unknown_kind_rejected(self, graph):
        with pytest.raises(ValueError):
            graph.create_effect(1, "Flanger")

    @pytest.mark.parametrize("kind", EFFECT_KINDS)
    def test_cycle_full_circle_returns_to_start(self, graph, kind):
        graph.create_effect(7, kind)
        for _ in range(len(EFFECT_KINDS)):
            graph.cycle_effect(7)
        assert graph.effect(7).kind == kind

    @pytest.mark.parametrize("kind", EFFECT_KINDS)
    def test_cycle_once_changes_kind(self, graph, kind):
        graph.create_effect(7, kind)
        new_kind = graph.cycle_effect(7)
        assert new_kind != kind
        assert new_kind == next_effect_kind(kind)
        assert graph.effect(7).kind == new_kind

    def test_cycle_disposes_old_node(self, graph):
        old = graph.create_effect(1, "Delay")
        graph.cycle_effect(1)
        assert old.disposed
        assert not graph.effect(1).node.disposed

    def test_cycle_unknown_zone(self, graph):
        assert graph.cycle_effect(42) is None

    def test_effect_needs_built_graph(self):
        with pytest.raises(GraphError):
            VoiceGraph()._make_effect("Reverb")

    def test_failed_cycle_keeps_current_effect(self, graph):
        """Without a destination the swap is refused, old node untouched."""
        old = graph.create_effect(1, "Reverb")
        graph._destination = None
        assert graph.cycle_effect(1) is None
        assert graph.create_effect(1, "Delay") is None
        assert graph.effect(1).node is old
        assert not old.disposed

    def test_proximity_connects_and_sets_wet(self, graph):
        node = graph.create_effect(1, "Reverb")
        voice = graph.create_voice(DRONE)
        graph.apply_proximity(DRONE.id, 1, 1.0)
        assert voice.gain.is_connected(node)
        assert isinstance(node, Effect)
        assert node.wet == pytest.approx(0.4)

        # Second send is tolerated
        graph.apply_proximity(DRONE.id, 1, 0.5)
        assert node.wet == pytest.approx(0.25)

    def test_proximity_to_filter_has_no_wet(self, graph):
        node = graph.create_effect(1, "Filter")
        voice = graph.create_voice(DRONE)
        graph.apply_proximity(DRONE.id, 1, 1.0)
        assert voice.gain.is_connected(node)
        assert not hasattr(node, "wet")

    def test_proximity_follows_cycled_effect(self, graph):
        graph.create_effect(1, "Reverb")
        voice = graph.create_voice(DRONE)
        graph.apply_proximity(DRONE.id, 1, 1.0)
        graph.cycle_effect(1)
        graph.apply_proximity(DRONE.id, 1, 1.0)
        assert voice.gain.is_connected(graph.effect(1).node)


class TestRendering:
    """Tests for rendering and the master chain."""

    def test_filter_tracks_driver(self):
        g = init_graph(VoiceGraph(driver=FixedDriver(500.0)))
        assert g.update_filter_frequency() == 500.0
        assert g.current_frequency == 500.0
        assert g.driver.steps == 3
        g.dispose()

    def test_render_produces_bounded_sound(self, graph):
        for kind_zone, kind in enumerate(EFFECT_KINDS, start=1):
            graph.create_effect(kind_zone, kind)
        voice = graph.create_voice(PLUCK)
        graph.apply_proximity(PLUCK.id, 1, 1.0)
        graph.trigger(PLUCK, voice)

        blocks = [graph.render(1024) for _ in range(8)]
        out = np.concatenate(blocks)
        assert out.dtype == np.float32
        assert np.all(np.isfinite(out))
        assert np.max(np.abs(out)) <= 1.0
        assert np.max(np.abs(out)) > 0.0

    def test_render_leaves_clock_alone(self, graph):
        graph.create_voice(DRONE)
        graph.remove_voice(DRONE.id)
        graph.render(SAMPLE_RATE)
        assert graph.clock.now == 0.0
        assert graph.pending_teardowns() == 1

    def test_driver_state_exposed(self, graph):
        assert graph.driver_state().frequency == FREQ_MIN
