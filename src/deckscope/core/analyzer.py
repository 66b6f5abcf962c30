"""
Offline (batch) track analysis.

Scans the full block sequence of a decoded track once and derives:

* a tempo estimate from peak intervals of the smoothed energy envelope;
* a musical key from the accumulated chromagram (Krumhansl-Schmuckler
  profiles), reported in standard and Camelot-wheel notation.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

import numpy as np
from scipy import signal as scipy_signal

from deckscope.config import AnalyzerConfig
from deckscope.core.decoder import SampleBlock
from deckscope.core.features import PITCH_CLASS_NAMES, ChromagramBuilder, block_energy

logger = logging.getLogger(__name__)


# Camelot number per pitch class; major keys take "B", minor keys "A".
# Relative major/minor pairs share a number (C major 8B / A minor 8A).
CAMELOT_MAJOR = [8, 3, 10, 5, 12, 7, 2, 9, 4, 11, 6, 1]
CAMELOT_MINOR = [5, 12, 7, 2, 9, 4, 11, 6, 1, 8, 3, 10]


@dataclass
class TempoEstimate:
    """Tempo result; ``bpm`` is None when no reliable periodicity was found."""

    bpm: Optional[float] = None
    n_intervals: int = 0
    peak_indices: np.ndarray = field(default_factory=lambda: np.array([], dtype=int))

    @property
    def is_valid(self) -> bool:
        return self.bpm is not None


@dataclass(frozen=True)
class KeyEstimate:
    """Musical key detection result."""

    root_index: int = 0         # 0–11  (C, C# … B)
    mode: str = "major"         # "major" | "minor"
    confidence: float = 0.0     # [0,1]

    @property
    def root_name(self) -> str:
        return PITCH_CLASS_NAMES[self.root_index % 12]

    @property
    def standard_name(self) -> str:
        """E.g. ``"C major"`` or ``"F# minor"``."""
        return f"{self.root_name} {self.mode}"

    @property
    def camelot_number(self) -> int:
        table = CAMELOT_MAJOR if self.mode == "major" else CAMELOT_MINOR
        return table[self.root_index % 12]

    @property
    def camelot(self) -> str:
        """Camelot code, e.g. ``"8B"`` for C major."""
        letter = "B" if self.mode == "major" else "A"
        return f"{self.camelot_number}{letter}"

    def compatible_camelot(self) -> List[str]:
        """
        Harmonically compatible Camelot codes: the key itself, its
        neighbours one step around the wheel, and the relative key.
        """
        number = self.camelot_number
        letter = self.camelot[-1]
        other = "A" if letter == "B" else "B"
        prev_n = 12 if number == 1 else number - 1
        next_n = 1 if number == 12 else number + 1
        return [
            f"{number}{letter}",
            f"{prev_n}{letter}",
            f"{next_n}{letter}",
            f"{number}{other}",
        ]


@dataclass
class TrackAnalysis:
    """Complete batch analysis of one track."""

    tempo: TempoEstimate
    key: KeyEstimate
    chromagram: np.ndarray      # (12,), sums to 1 or all zeros
    energies: np.ndarray        # per-block energy
    block_size: int
    sample_rate: int
    duration: float

    @property
    def bpm(self) -> Optional[float]:
        return self.tempo.bpm


class TrackAnalyzer:
    """
    Batch tempo and key analyzer.

    Safe to run on a worker thread: it holds only its configuration and
    keeps all per-track state local to :meth:`analyze`.
    """

    # Krumhansl-Schmuckler key profiles (major / natural minor)
    MAJOR_PROFILE = np.array(
        [6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88]
    )
    MINOR_PROFILE = np.array(
        [6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17]
    )

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self.config = config or AnalyzerConfig()

    # ------------------------------------------------------------------
    # Tempo
    # ------------------------------------------------------------------

    @staticmethod
    def smooth(values: np.ndarray, half_width: int) -> np.ndarray:
        """Centered moving average; windows are truncated at the edges."""
        if half_width <= 0 or len(values) == 0:
            return values.astype(float)
        kernel = np.ones(2 * half_width + 1)
        sums = np.convolve(values, kernel, mode="same")
        counts = np.convolve(np.ones(len(values)), kernel, mode="same")
        return sums / counts

    def estimate_tempo(
        self,
        energies: Sequence[float],
        block_size: int,
        sample_rate: int,
    ) -> TempoEstimate:
        """
        Estimate BPM from a per-block energy sequence.

        Local maxima of the smoothed envelope above a fraction of its
        maximum are taken as beats.  Intervals between consecutive beats
        outside ``[min_interval, max_interval]`` are dropped; at least three
        must remain and the resulting BPM must lie in ``[min_bpm, max_bpm]``.

        Args:
            energies: Energy value per block, in playback order.
            block_size: Frames per block.
            sample_rate: Sample rate in Hz.

        Returns:
            TempoEstimate; ``bpm`` is None when the criteria are not met.
        """
        cfg = self.config
        values = np.nan_to_num(np.asarray(energies, dtype=float))
        if len(values) < 3 or block_size <= 0 or sample_rate <= 0:
            return TempoEstimate()

        smoothed = self.smooth(values, cfg.tempo_smoothing_half_width)
        peak_max = float(np.max(smoothed))
        if peak_max <= 0.0:
            return TempoEstimate()

        threshold = peak_max * cfg.tempo_detection_threshold
        peaks, _ = scipy_signal.find_peaks(smoothed, height=threshold)
        peaks = peaks[smoothed[peaks] > threshold]
        if len(peaks) < 2:
            return TempoEstimate(peak_indices=peaks)

        intervals = np.diff(peaks) * block_size / sample_rate
        valid = intervals[(intervals >= cfg.min_interval) & (intervals <= cfg.max_interval)]
        if len(valid) < 3:
            return TempoEstimate(n_intervals=len(valid), peak_indices=peaks)

        mean_interval = float(np.mean(valid))
        if mean_interval <= 0.0:
            return TempoEstimate(n_intervals=len(valid), peak_indices=peaks)

        bpm = 60.0 / mean_interval
        if not cfg.min_bpm <= bpm <= cfg.max_bpm:
            return TempoEstimate(n_intervals=len(valid), peak_indices=peaks)

        return TempoEstimate(bpm=bpm, n_intervals=len(valid), peak_indices=peaks)

    # ------------------------------------------------------------------
    # Key detection (Krumhansl-Schmuckler)
    # ------------------------------------------------------------------

    def detect_key(self, chromagram: np.ndarray) -> KeyEstimate:
        """
        Detect the musical key from a normalized chromagram.

        Takes the dot product of the chromagram with all 24 rotated
        major/minor profiles and returns the best match.  Confidence is the
        lead of the best match over the runner-up, relative to the spread
        of all 24 scores: a single clear key scores high, an ambiguous or
        flat chromagram scores near 0.  An all-zero chromagram has no tonal
        content and yields C major with zero confidence.

        Args:
            chromagram: Track chroma, shape (12,), summing to 1.

        Returns:
            KeyEstimate with root, mode and confidence.
        """
        chroma = np.nan_to_num(np.asarray(chromagram, dtype=float))
        if chroma.shape != (12,) or float(np.sum(np.abs(chroma))) <= 0.0:
            return KeyEstimate(root_index=0, mode="major", confidence=0.0)

        # Rows 0-11: major keys rooted at C..B, rows 12-23: minor keys
        profiles = np.vstack(
            [np.roll(self.MAJOR_PROFILE, i) for i in range(12)]
            + [np.roll(self.MINOR_PROFILE, i) for i in range(12)]
        )
        scores = profiles @ chroma

        best = int(np.argmax(scores))
        runner_up = float(np.partition(scores, -2)[-2])
        spread = float(scores.max() - scores.min())
        if spread > 0.0:
            confidence = float(np.clip((scores[best] - runner_up) / spread, 0.0, 1.0))
        else:
            confidence = 0.0

        return KeyEstimate(
            root_index=best % 12,
            mode="major" if best < 12 else "minor",
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # Main analysis entry point
    # ------------------------------------------------------------------

    def analyze(self, blocks: Iterable[SampleBlock]) -> TrackAnalysis:
        """
        Analyze a full track given as a sequence of blocks.

        Args:
            blocks: Every block of the decoded track, in order.

        Returns:
            TrackAnalysis with tempo, key, chromagram and energies.
        """
        chroma = ChromagramBuilder()
        energies: List[float] = []
        sample_rate = 0
        block_size = 0
        n_frames = 0

        for block in blocks:
            if not sample_rate and block.sample_rate > 0:
                sample_rate = block.sample_rate
            block_size = max(block_size, block.n_frames)
            n_frames += block.n_frames
            energies.append(block_energy(block))
            chroma.add(block)

        energy_arr = np.asarray(energies, dtype=float)
        tempo = self.estimate_tempo(energy_arr, block_size, sample_rate)
        chromagram = chroma.normalized()
        key = self.detect_key(chromagram)
        duration = n_frames / sample_rate if sample_rate else 0.0

        logger.info(
            "Track analysis: %d blocks, %.2fs, bpm=%s, key=%s (%s)",
            len(energies), duration,
            f"{tempo.bpm:.1f}" if tempo.bpm is not None else "none",
            key.standard_name, key.camelot,
        )

        return TrackAnalysis(
            tempo=tempo,
            key=key,
            chromagram=chromagram,
            energies=energy_arr,
            block_size=block_size,
            sample_rate=sample_rate,
            duration=duration,
        )
