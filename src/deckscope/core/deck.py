"""
Per-deck analysis state, publishing and the two-deck coordinator.

Each :class:`DeckAnalyzer` owns a private beat detector, level monitor and
batch-analysis result.  The analysis thread mutates that state block by
block; readers on any other thread only ever see the last published
:class:`DeckSnapshot`, an immutable value swapped in under a lock.

Batch analysis runs on an executor and is tagged with the deck's track
generation; a result that comes back after the track was replaced is
discarded.  Loading a track waits for the block in flight, so detector and
level state never mix two tracks.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from deckscope.config import AnalyzerConfig, clamp_config
from deckscope.core.analyzer import KeyEstimate, TrackAnalysis, TrackAnalyzer
from deckscope.core.decoder import SampleBlock
from deckscope.core.levels import LevelMonitor
from deckscope.core.ramp import FadeRamp
from deckscope.core.stream import BeatDetector

logger = logging.getLogger(__name__)

BeatListener = Callable[[str, float], None]
SilenceListener = Callable[[str, float], None]


@dataclass(frozen=True)
class DeckSnapshot:
    """Externally observable state of one deck."""

    generation: int = 0
    track_id: Optional[str] = None
    bpm: Optional[float] = None
    key: KeyEstimate = KeyEstimate()
    analysis_ready: bool = False
    beat_pulse: bool = False
    last_beat_time: Optional[float] = None
    left_level: float = 0.0
    right_level: float = 0.0
    is_silent: bool = False
    silence_elapsed: float = 0.0
    time_sec: float = 0.0


class DeckAnalyzer:
    """
    Analysis engine for a single playback deck.

    Usage::

        deck = DeckAnalyzer("A")
        generation = deck.load_track("track-42")
        deck.submit_analysis(decoder.full_decode(), executor)
        for block in tap:
            deck.process(block, active=transport.is_playing)
        deck.current_bpm(), deck.current_key(), deck.levels()
    """

    def __init__(self, name: str = "A", config: Optional[AnalyzerConfig] = None):
        self.name = name
        self._config = config or AnalyzerConfig()
        self._pending_config: Optional[AnalyzerConfig] = None
        # Lock order: _process_lock, then _lock.  _process_lock guards the
        # detector and level monitor; _lock guards published state.
        self._process_lock = threading.Lock()
        self._lock = threading.Lock()

        self._detector = BeatDetector(self._config)
        self._levels = LevelMonitor(self._config)

        self._generation = 0
        self._track_id: Optional[str] = None
        self._analysis: Optional[TrackAnalysis] = None
        self._snapshot = DeckSnapshot()

        self._beat_listeners: List[BeatListener] = []
        self._silence_listeners: List[SilenceListener] = []

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> AnalyzerConfig:
        with self._lock:
            return self._pending_config or self._config

    def update_config(self, **changes: Any) -> AnalyzerConfig:
        """
        Clamp and stage new tunables; they apply from the next block.

        Returns:
            The staged configuration.
        """
        with self._lock:
            base = self._pending_config or self._config
            staged = clamp_config(base, **changes)
            self._pending_config = staged
        return staged

    def add_beat_listener(self, callback: BeatListener) -> None:
        """Register ``callback(deck_name, onset_time)``, called once per onset."""
        self._beat_listeners.append(callback)

    def add_silence_listener(self, callback: SilenceListener) -> None:
        """Register ``callback(deck_name, elapsed)``, called when silence becomes sustained."""
        self._silence_listeners.append(callback)

    # ------------------------------------------------------------------
    # Track lifecycle
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def load_track(self, track_id: Optional[str] = None) -> int:
        """
        Discard all state for the previous track and start a new generation.

        Returns:
            The new generation number.
        """
        # Waits for any block still in flight so it cannot leak into the new track
        with self._process_lock, self._lock:
            self._generation += 1
            self._track_id = track_id
            self._analysis = None
            self._detector.reset()
            self._levels.reset()
            self._snapshot = DeckSnapshot(generation=self._generation, track_id=track_id)
            generation = self._generation
        logger.info("Deck %s: loaded track %s (generation %d)", self.name, track_id, generation)
        return generation

    def apply_analysis(self, analysis: TrackAnalysis, generation: int) -> bool:
        """
        Publish a batch result if it still belongs to the loaded track.

        Returns:
            False when the result was stale and discarded.
        """
        with self._lock:
            if generation != self._generation:
                logger.info(
                    "Deck %s: discarding stale analysis (generation %d, current %d)",
                    self.name, generation, self._generation,
                )
                return False
            self._analysis = analysis
            self._snapshot = replace(
                self._snapshot,
                bpm=analysis.bpm,
                key=analysis.key,
                analysis_ready=True,
            )
        return True

    def analyze_now(self, blocks: Iterable[SampleBlock]) -> TrackAnalysis:
        """Run batch analysis on the calling thread and publish it."""
        generation = self.generation
        analysis = TrackAnalyzer(self.config).analyze(blocks)
        self.apply_analysis(analysis, generation)
        return analysis

    def submit_analysis(self, blocks: Iterable[SampleBlock], executor: Executor) -> Future:
        """
        Run batch analysis on *executor*.

        The result is applied on completion only if no other track has been
        loaded in the meantime.
        """
        generation = self.generation
        analyzer = TrackAnalyzer(self.config)
        block_list = list(blocks)
        future = executor.submit(analyzer.analyze, block_list)

        def _done(fut: Future) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error("Deck %s: batch analysis failed: %s", self.name, exc)
                return
            self.apply_analysis(fut.result(), generation)

        future.add_done_callback(_done)
        return future

    # ------------------------------------------------------------------
    # Continuous regime
    # ------------------------------------------------------------------

    def process(
        self,
        block: Any,
        active: bool = True,
        timestamp: Optional[float] = None,
        sample_rate: Optional[int] = None,
    ) -> DeckSnapshot:
        """
        Analyze one block from the deck's playback tap and publish the result.

        Args:
            block: SampleBlock, or raw array data together with *sample_rate*.
            active: Playback-active flag for this deck.
            timestamp: Optional stream time of the block start (seconds).
            sample_rate: Needed only when *block* is raw array data.

        Returns:
            The newly published DeckSnapshot.
        """
        if not isinstance(block, SampleBlock):
            block = SampleBlock.from_array(block, sample_rate or self._detector.sample_rate)

        with self._process_lock:
            with self._lock:
                if self._pending_config is not None:
                    self._config = self._pending_config
                    self._pending_config = None
                    self._detector.set_config(self._config)
                    self._levels.set_config(self._config)
                analysis = self._analysis

            self._detector.estimated_bpm = analysis.bpm if analysis is not None else None
            beat = self._detector.process(block, active=active, timestamp=timestamp)
            reading = self._levels.process(block, active=active)

            with self._lock:
                # A batch result may have landed while the block was analyzed
                analysis = self._analysis
                snapshot = DeckSnapshot(
                    generation=self._generation,
                    track_id=self._track_id,
                    bpm=analysis.bpm if analysis is not None else None,
                    key=analysis.key if analysis is not None else KeyEstimate(),
                    analysis_ready=analysis is not None,
                    beat_pulse=beat.pulse,
                    last_beat_time=self._detector.last_beat_time,
                    left_level=reading.left,
                    right_level=reading.right,
                    is_silent=reading.is_silent,
                    silence_elapsed=reading.silence_elapsed,
                    time_sec=beat.time_sec,
                )
                self._snapshot = snapshot

        # Listeners run outside the locks; they may load a new track
        if beat.is_onset:
            self._notify(self._beat_listeners, beat.time_sec)
        if reading.silence_started:
            self._notify(self._silence_listeners, reading.silence_elapsed)
        return snapshot

    def _notify(self, listeners: List[Callable[[str, float], None]], value: float) -> None:
        for callback in list(listeners):
            try:
                callback(self.name, value)
            except Exception:
                logger.exception("Deck %s: listener %r failed", self.name, callback)

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------

    def snapshot(self) -> DeckSnapshot:
        with self._lock:
            return self._snapshot

    def current_bpm(self) -> Optional[float]:
        return self.snapshot().bpm

    def current_key(self) -> Tuple[str, str]:
        """``(camelot_code, standard_name)``, e.g. ``("8B", "C major")``."""
        key = self.snapshot().key
        return key.camelot, key.standard_name

    def on_beat(self) -> bool:
        """Onset pulse level; True for a short time after each onset."""
        return self.snapshot().beat_pulse

    def levels(self) -> Tuple[float, float]:
        snap = self.snapshot()
        return snap.left_level, snap.right_level

    def is_silent(self) -> bool:
        return self.snapshot().is_silent

    def silence_elapsed(self) -> float:
        return self.snapshot().silence_elapsed

    @property
    def analysis(self) -> Optional[TrackAnalysis]:
        with self._lock:
            return self._analysis

    @property
    def onset_times(self) -> List[float]:
        return list(self._detector.onset_times)


# ---------------------------------------------------------------------------
# Two-deck coordination
# ---------------------------------------------------------------------------

class DeckCommand(str, Enum):
    """Cross-deck commands emitted to the playback layer."""

    STOP_A_AND_PLAY_NEXT_ON_B = "stop_a_and_play_next_on_b"
    STOP_B_AND_PLAY_NEXT_ON_A = "stop_b_and_play_next_on_a"
    STOP_A = "stop_a"
    STOP_B = "stop_b"
    PAUSE_A = "pause_a"
    PAUSE_B = "pause_b"
    RESUME_A = "resume_a"
    RESUME_B = "resume_b"


@dataclass
class SilencePolicy:
    """What to ask the transport for when a deck falls silent."""

    auto_stop: bool = True
    fallback_to_other_deck: bool = False


class DeckPair:
    """
    Owns both decks and mediates commands between them.

    The pair never touches playback itself: it turns analysis events
    (sustained silence) into :class:`DeckCommand` values delivered to the
    registered command handler.
    """

    DECK_NAMES = ("A", "B")

    def __init__(
        self,
        config: Optional[AnalyzerConfig] = None,
        command_handler: Optional[Callable[[DeckCommand], None]] = None,
        executor: Optional[Executor] = None,
    ):
        config = config or AnalyzerConfig()
        self.decks: Dict[str, DeckAnalyzer] = {
            name: DeckAnalyzer(name, config) for name in self.DECK_NAMES
        }
        self.policies: Dict[str, SilencePolicy] = {
            name: SilencePolicy() for name in self.DECK_NAMES
        }
        self.command_handler = command_handler
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=len(self.DECK_NAMES), thread_name_prefix="deck-analysis"
        )
        for deck in self.decks.values():
            deck.add_silence_listener(self._on_silence)

    def __getitem__(self, name: str) -> DeckAnalyzer:
        return self.decks[name]

    def __enter__(self) -> "DeckPair":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    def other(self, name: str) -> str:
        return "B" if name == "A" else "A"

    def load_track(
        self,
        name: str,
        track_id: Optional[str],
        blocks: Optional[Iterable[SampleBlock]] = None,
    ) -> Optional[Future]:
        """Reset deck *name* for a new track and start its batch analysis."""
        deck = self.decks[name]
        deck.load_track(track_id)
        if blocks is None:
            return None
        return deck.submit_analysis(blocks, self.executor)

    def send(self, command: DeckCommand) -> None:
        """Deliver *command* to the playback layer."""
        logger.info("Deck command: %s", command.value)
        if self.command_handler is not None:
            self.command_handler(command)

    def _on_silence(self, name: str, elapsed: float) -> None:
        policy = self.policies[name]
        if policy.fallback_to_other_deck:
            command = (
                DeckCommand.STOP_A_AND_PLAY_NEXT_ON_B
                if name == "A"
                else DeckCommand.STOP_B_AND_PLAY_NEXT_ON_A
            )
        elif policy.auto_stop:
            command = DeckCommand.STOP_A if name == "A" else DeckCommand.STOP_B
        else:
            return
        self.send(command)


# ---------------------------------------------------------------------------
# Master output
# ---------------------------------------------------------------------------

class OutputStage:
    """
    Master output stage shared by both decks.

    Passed explicitly to whatever needs it.  Setting ``master_volume`` or
    ``stereo_balance`` recomputes :attr:`channel_gains` immediately.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self._master_volume = 1.0
        self._stereo_balance = 0.0
        self.channel_gains = (1.0, 1.0)
        self.meter = LevelMonitor(config)

    @property
    def master_volume(self) -> float:
        return self._master_volume

    @master_volume.setter
    def master_volume(self, value: float) -> None:
        self._master_volume = float(np.clip(value, 0.0, 1.0))
        self._update_gains()

    @property
    def stereo_balance(self) -> float:
        return self._stereo_balance

    @stereo_balance.setter
    def stereo_balance(self, value: float) -> None:
        """-1 (left) … 0 (center) … 1 (right)."""
        self._stereo_balance = float(np.clip(value, -1.0, 1.0))
        self._update_gains()

    def _update_gains(self) -> None:
        b = self._stereo_balance
        self.channel_gains = (
            self._master_volume * min(1.0, 1.0 - b),
            self._master_volume * min(1.0, 1.0 + b),
        )

    def process(self, block: SampleBlock, active: bool = True) -> SampleBlock:
        """Apply master gains to a mixed stereo block and meter the result."""
        samples = block.samples
        if block.n_channels == 1:
            samples = np.vstack([samples, samples])
        gains = np.asarray(self.channel_gains, dtype=np.float32)[: samples.shape[0], np.newaxis]
        out = SampleBlock(samples=samples * gains, sample_rate=block.sample_rate)
        self.meter.process(out, active=active)
        return out

    def apply_ramp(self, ramp: FadeRamp, now: float) -> float:
        """Set the master volume to *ramp*'s value at *now* and return it."""
        self.master_volume = ramp.volume_at(now)
        return self._master_volume

    def levels(self) -> Tuple[float, float]:
        return self.meter.levels
