"""
Deck-level tests.

Covers:
  DeckAnalyzer — publishing, listeners, config staging, stale batch results
  DeckPair     — silence-driven cross-deck commands
  OutputStage  — master volume / balance gains
"""

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor

import numpy as np
import pytest

from deckscope.config import AnalyzerConfig
from deckscope.core.analyzer import TrackAnalyzer
from deckscope.core.deck import (
    DeckAnalyzer,
    DeckCommand,
    DeckPair,
    DeckSnapshot,
    OutputStage,
    SilencePolicy,
)
from deckscope.core.decoder import SampleBlock, TrackDecoder
from deckscope.core.ramp import FadeRamp

from conftest import BLOCK, TEST_SR


class ManualExecutor(Executor):
    """Executor that runs submitted jobs only when told to."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        fut = Future()
        self.jobs.append((fut, fn, args, kwargs))
        return fut

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for fut, fn, args, kwargs in jobs:
            fut.set_result(fn(*args, **kwargs))


@pytest.fixture
def click_blocks(click_signal):
    y, sr, _ = click_signal
    return TrackDecoder.from_array(y, sr, block_size=BLOCK).full_decode()


# ---------------------------------------------------------------------------
# DeckAnalyzer
# ---------------------------------------------------------------------------

class TestDeckAnalyzer:
    def test_initial_state(self):
        deck = DeckAnalyzer("A")
        assert deck.current_bpm() is None
        assert deck.current_key() == ("8B", "C major")
        assert deck.levels() == (0.0, 0.0)
        assert not deck.on_beat()
        assert not deck.is_silent()

    def test_analyze_now_publishes(self, click_blocks, click_signal):
        _, _, bpm = click_signal
        deck = DeckAnalyzer("A")
        deck.load_track("clicks")
        deck.analyze_now(click_blocks)
        assert deck.current_bpm() == pytest.approx(bpm, abs=2.0)
        snap = deck.snapshot()
        assert snap.analysis_ready
        assert snap.track_id == "clicks"

    def test_load_track_bumps_generation_and_clears(self, click_blocks):
        deck = DeckAnalyzer("A")
        g1 = deck.load_track("one")
        deck.analyze_now(click_blocks)
        g2 = deck.load_track("two")
        assert g2 == g1 + 1
        assert deck.current_bpm() is None
        assert deck.analysis is None
        assert deck.snapshot() == DeckSnapshot(generation=g2, track_id="two")

    def test_stale_result_discarded(self, click_blocks):
        deck = DeckAnalyzer("A")
        executor = ManualExecutor()
        deck.load_track("one")
        deck.submit_analysis(click_blocks, executor)
        deck.load_track("two")
        executor.run_all()
        assert deck.current_bpm() is None
        assert deck.analysis is None

    def test_current_result_applied(self, click_blocks):
        deck = DeckAnalyzer("A")
        executor = ManualExecutor()
        deck.load_track("one")
        deck.submit_analysis(click_blocks, executor)
        executor.run_all()
        assert deck.current_bpm() is not None

    def test_apply_analysis_checks_generation(self, click_blocks):
        deck = DeckAnalyzer("A")
        gen = deck.load_track("one")
        analysis = TrackAnalyzer().analyze(click_blocks)
        assert not deck.apply_analysis(analysis, gen - 1)
        assert deck.apply_analysis(analysis, gen)

    def test_thread_pool_analysis(self, click_blocks):
        deck = DeckAnalyzer("A")
        deck.load_track("one")
        with ThreadPoolExecutor(max_workers=1) as pool:
            fut = deck.submit_analysis(click_blocks, pool)
        assert fut.done()
        assert deck.current_bpm() is not None

    def test_failed_analysis_logged_not_raised(self, caplog):
        deck = DeckAnalyzer("A")
        deck.load_track("bad")
        executor = ManualExecutor()
        deck.submit_analysis([], executor)
        fut, _, _, _ = executor.jobs.pop()
        fut.set_exception(RuntimeError("decoder went away"))
        assert "batch analysis failed" in caplog.text
        assert deck.analysis is None

    def test_process_publishes_snapshot(self, click_blocks):
        deck = DeckAnalyzer("A")
        deck.load_track("clicks")
        for block in click_blocks[:50]:
            snap = deck.process(block)
        assert snap is deck.snapshot()
        assert snap.time_sec == pytest.approx(49 * BLOCK / TEST_SR)
        assert snap.left_level > 0.0

    def test_load_track_waits_for_block_in_flight(self):
        deck = DeckAnalyzer("A")
        deck.load_track("one")
        entered = threading.Event()
        release = threading.Event()
        detector_process = deck._detector.process

        def slow_process(block, **kwargs):
            entered.set()
            release.wait(5)
            return detector_process(block, **kwargs)

        deck._detector.process = slow_process
        loud = np.full((2, BLOCK), 0.5, dtype=np.float32)
        worker = threading.Thread(target=deck.process, args=(loud,), kwargs={"sample_rate": TEST_SR})
        worker.start()
        assert entered.wait(5)

        loader = threading.Thread(target=deck.load_track, args=("two",))
        loader.start()
        loader.join(0.2)
        assert loader.is_alive()

        release.set()
        worker.join(5)
        loader.join(5)
        assert not loader.is_alive()

        # The old track's block must not survive into the new generation
        snap = deck.snapshot()
        assert snap.generation == 2
        assert snap.track_id == "two"
        assert deck.levels() == (0.0, 0.0)
        assert len(deck._detector._energy.history) == 0
        assert deck._detector.clock == 0.0

    def test_process_accepts_raw_arrays(self):
        deck = DeckAnalyzer("A")
        snap = deck.process(np.full((BLOCK, 2), 0.2, dtype=np.float32), sample_rate=TEST_SR)
        assert snap.left_level > 0.0
        assert snap.right_level > 0.0

    def test_beat_listener(self, burst_blocks):
        deck = DeckAnalyzer("A")
        deck.load_track("bursts")
        heard = []
        deck.add_beat_listener(lambda name, t: heard.append((name, t)))
        for block in burst_blocks:
            deck.process(block)
        assert len(heard) == len(deck.onset_times) > 0
        assert all(name == "A" for name, _ in heard)

    def test_listener_may_load_next_track(self, burst_blocks):
        deck = DeckAnalyzer("A")
        deck.load_track("first")
        deck.add_beat_listener(lambda name, t: deck.load_track("next"))
        for block in burst_blocks:
            deck.process(block)
        assert deck.snapshot().track_id == "next"
        assert deck.generation > 2

    def test_failing_listener_does_not_break_processing(self, burst_blocks):
        deck = DeckAnalyzer("A")

        def boom(name, t):
            raise RuntimeError("listener failure")

        deck.add_beat_listener(boom)
        for block in burst_blocks:
            deck.process(block)
        assert len(deck.onset_times) > 0

    def test_update_config_clamped_and_staged(self):
        deck = DeckAnalyzer("A")
        staged = deck.update_config(energy_weight=5.0, beat_pulse_duration=0.2)
        assert staged.energy_weight == 1.0
        assert deck.config.beat_pulse_duration == 0.2
        deck.process(np.zeros(BLOCK, dtype=np.float32), sample_rate=TEST_SR)
        assert deck.config is staged

    def test_identical_decks_agree(self, click_blocks):
        a, b = DeckAnalyzer("A"), DeckAnalyzer("B")
        for deck in (a, b):
            deck.load_track("same")
            deck.analyze_now(click_blocks)
            for block in click_blocks:
                deck.process(block)
        assert a.onset_times == b.onset_times
        assert a.current_bpm() == b.current_bpm()
        assert a.current_key() == b.current_key()

    def test_decks_are_isolated(self, burst_blocks, silent_block):
        a, b = DeckAnalyzer("A"), DeckAnalyzer("B")
        for block in burst_blocks:
            a.process(block)
            b.process(silent_block)
        assert len(a.onset_times) > 0
        assert b.onset_times == []
        assert b.levels() == (0.0, 0.0)


# ---------------------------------------------------------------------------
# DeckPair
# ---------------------------------------------------------------------------

class TestDeckPair:
    @pytest.fixture
    def short_silence(self):
        return AnalyzerConfig(silence_duration=0.1)

    def test_silence_stops_deck(self, short_silence, silent_block):
        commands = []
        with DeckPair(short_silence, command_handler=commands.append) as pair:
            for _ in range(20):
                pair["A"].process(silent_block)
        assert commands == [DeckCommand.STOP_A]

    def test_silence_fallback_to_other_deck(self, short_silence, silent_block):
        commands = []
        with DeckPair(short_silence, command_handler=commands.append) as pair:
            pair.policies["B"] = SilencePolicy(fallback_to_other_deck=True)
            for _ in range(20):
                pair["B"].process(silent_block)
        assert commands == [DeckCommand.STOP_B_AND_PLAY_NEXT_ON_A]

    def test_silence_without_auto_stop(self, short_silence, silent_block):
        commands = []
        with DeckPair(short_silence, command_handler=commands.append) as pair:
            pair.policies["A"] = SilencePolicy(auto_stop=False)
            for _ in range(20):
                pair["A"].process(silent_block)
        assert commands == []

    def test_inactive_deck_never_goes_silent(self, short_silence, silent_block):
        commands = []
        with DeckPair(short_silence, command_handler=commands.append) as pair:
            for _ in range(20):
                pair["A"].process(silent_block, active=False)
        assert commands == []

    def test_load_track_runs_analysis(self, click_blocks):
        with DeckPair() as pair:
            fut = pair.load_track("B", "clicks", click_blocks)
            fut.result()
        assert pair["B"].current_bpm() is not None
        assert pair["A"].current_bpm() is None

    def test_other(self):
        with DeckPair() as pair:
            assert pair.other("A") == "B"
            assert pair.other("B") == "A"


# ---------------------------------------------------------------------------
# OutputStage
# ---------------------------------------------------------------------------

class TestOutputStage:
    def test_default_gains(self):
        assert OutputStage().channel_gains == (1.0, 1.0)

    def test_balance_right(self):
        out = OutputStage()
        out.master_volume = 0.5
        out.stereo_balance = 1.0
        assert out.channel_gains == (0.0, 0.5)

    def test_balance_left(self):
        out = OutputStage()
        out.stereo_balance = -0.5
        assert out.channel_gains == (1.0, 0.5)

    def test_values_clamped(self):
        out = OutputStage()
        out.master_volume = 3.0
        out.stereo_balance = -7.0
        assert out.master_volume == 1.0
        assert out.stereo_balance == -1.0

    def test_fade_out_ramp_drives_master_volume(self):
        out = OutputStage()
        ramp = FadeRamp.fade_out(start_time=5.0, duration=2.0, current=1.0)
        assert out.apply_ramp(ramp, 6.0) == pytest.approx(0.5)
        assert out.channel_gains == pytest.approx((0.5, 0.5))
        out.apply_ramp(ramp, 8.0)
        assert out.master_volume == 0.0
        assert out.channel_gains == (0.0, 0.0)

    def test_process_applies_gains_and_meters(self):
        out = OutputStage()
        out.stereo_balance = 1.0
        block = SampleBlock(np.full((1, BLOCK), 0.2, dtype=np.float32), TEST_SR)
        result = out.process(block)
        assert result.n_channels == 2
        assert np.all(result.samples[0] == 0.0)
        np.testing.assert_allclose(result.samples[1], 0.2, rtol=1e-6)
        left, right = out.levels()
        assert left == 0.0
        assert right > 0.0
