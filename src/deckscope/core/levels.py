"""
Stereo VU levels and silence tracking.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from deckscope.config import AnalyzerConfig
from deckscope.core.decoder import SampleBlock
from deckscope.core.features import blend_level

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelReading:
    """Levels and silence state after one block."""

    left: float = 0.0
    right: float = 0.0
    is_silent: bool = False
    silence_elapsed: float = 0.0
    silence_started: bool = False   # True only on the block silence became sustained


class LevelMonitor:
    """
    Smoothed per-channel VU levels plus a debounced silence detector.

    Levels are the RMS/peak blend of each channel, exponentially smoothed,
    scaled by the configured sensitivity and clamped to [0, 1].  Mono input
    feeds both channels.  While playback is inactive the levels decay
    towards zero instead of holding.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self.config = config or AnalyzerConfig()
        self._smoothed = np.zeros(2)
        self.silence_elapsed = 0.0
        self.is_silent = False

    def reset(self) -> None:
        self._smoothed = np.zeros(2)
        self.silence_elapsed = 0.0
        self.is_silent = False

    def set_config(self, config: AnalyzerConfig) -> None:
        self.config = config

    @property
    def levels(self) -> tuple:
        """Published ``(left, right)`` levels in [0, 1]."""
        scaled = np.nan_to_num(self._smoothed * self.config.level_sensitivity)
        left, right = np.clip(scaled, 0.0, 1.0)
        return float(left), float(right)

    def _reading(self, started: bool = False) -> LevelReading:
        left, right = self.levels
        return LevelReading(
            left=left,
            right=right,
            is_silent=self.is_silent,
            silence_elapsed=self.silence_elapsed,
            silence_started=started,
        )

    def process(self, block: SampleBlock, active: bool = True) -> LevelReading:
        """
        Update levels and silence state from one block.

        Args:
            block: The block being played (or the master output block).
            active: Playback-active flag.

        Returns:
            LevelReading snapshot.
        """
        cfg = self.config

        if not active:
            self._smoothed *= cfg.inactive_decay
            self.silence_elapsed = 0.0
            self.is_silent = False
            return self._reading()

        if block.n_channels == 0 or block.n_frames == 0:
            raw = np.zeros(2)
        else:
            left = block.samples[0]
            right = block.samples[1] if block.n_channels > 1 else block.samples[0]
            raw = np.array([blend_level(left), blend_level(right)])

        alpha = cfg.level_smoothing
        self._smoothed = self._smoothed * alpha + raw * (1.0 - alpha)

        if not cfg.silence_detection_enabled:
            self.silence_elapsed = 0.0
            self.is_silent = False
            return self._reading()

        started = False
        if blend_level(block.mono()) < cfg.silence_threshold:
            self.silence_elapsed += block.duration
            if not self.is_silent and self.silence_elapsed >= cfg.silence_duration:
                self.is_silent = True
                started = True
                logger.info("Sustained silence after %.2fs", self.silence_elapsed)
        else:
            self.silence_elapsed = 0.0
            self.is_silent = False

        return self._reading(started)
