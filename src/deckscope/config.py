"""
Analyzer configuration.

All tunables read by the analysis engine live in :class:`AnalyzerConfig`.
The engine never mutates a config; the control surface builds a new one
(usually through :func:`clamp_config`) and hands it to the deck.
"""

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict

import numpy as np


@dataclass
class AnalyzerConfig:
    """Tunables shared by the real-time and batch analysis regimes."""

    # Block layout
    block_size: int = 1024
    n_bands: int = 32

    # Real-time beat detector
    history_size: int = 43           # ~1 s at 1024-sample blocks / 44.1 kHz
    threshold_window: int = 15
    feature_smoothing: float = 0.9
    use_spectral_flux: bool = True
    use_hfc: bool = True
    energy_weight: float = 1.0
    flux_weight: float = 0.5
    hfc_weight: float = 0.5
    std_dev_multiplier: float = 1.5
    min_threshold_multiplier: float = 1.2
    min_relative_increase: float = 0.1
    default_min_beat_interval: float = 0.3   # seconds
    beat_pulse_duration: float = 0.12        # seconds

    # Offline tempo estimator
    tempo_smoothing_half_width: int = 1
    tempo_detection_threshold: float = 0.6
    min_interval: float = 0.3
    max_interval: float = 2.0
    min_bpm: float = 60.0
    max_bpm: float = 200.0

    # Level & silence monitor
    level_smoothing: float = 0.7
    level_sensitivity: float = 2.0
    inactive_decay: float = 0.8
    silence_detection_enabled: bool = True
    silence_threshold: float = 0.01
    silence_duration: float = 3.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyzerConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# Documented (low, high) range per numeric field.
CONFIG_RANGES: Dict[str, tuple] = {
    "block_size": (64, 16384),
    "n_bands": (2, 256),
    "history_size": (8, 1000),
    "threshold_window": (3, 1000),
    "feature_smoothing": (0.0, 0.999),
    "energy_weight": (0.0, 1.0),
    "flux_weight": (0.0, 1.0),
    "hfc_weight": (0.0, 1.0),
    "std_dev_multiplier": (0.0, 5.0),
    "min_threshold_multiplier": (0.0, 5.0),
    "min_relative_increase": (0.0, 5.0),
    "default_min_beat_interval": (0.05, 2.0),
    "beat_pulse_duration": (0.01, 1.0),
    "tempo_smoothing_half_width": (0, 50),
    "tempo_detection_threshold": (0.0, 1.0),
    "min_interval": (1e-3, 10.0),
    "max_interval": (1e-3, 10.0),
    "min_bpm": (20.0, 400.0),
    "max_bpm": (20.0, 400.0),
    "level_smoothing": (0.0, 0.999),
    "level_sensitivity": (0.1, 10.0),
    "inactive_decay": (0.0, 1.0),
    "silence_threshold": (0.0, 1.0),
    "silence_duration": (0.1, 60.0),
}


def clamp_config(config: AnalyzerConfig, **changes: Any) -> AnalyzerConfig:
    """
    Return a copy of *config* with *changes* applied and every numeric
    field clamped to its documented range.

    Args:
        config: Source configuration (left untouched).
        **changes: Field overrides, e.g. ``energy_weight=0.8``.

    Returns:
        A new, range-checked AnalyzerConfig.
    """
    cfg = replace(config, **changes)
    clamped: Dict[str, Any] = {}
    for name, (low, high) in CONFIG_RANGES.items():
        value = getattr(cfg, name)
        if isinstance(low, int) and isinstance(high, int):
            clamped[name] = int(np.clip(int(round(value)), low, high))
        else:
            clamped[name] = float(np.clip(float(value), low, high))

    clamped["threshold_window"] = min(clamped["threshold_window"], clamped["history_size"])
    if clamped["max_interval"] < clamped["min_interval"]:
        clamped["max_interval"] = clamped["min_interval"]
    if clamped["max_bpm"] < clamped["min_bpm"]:
        clamped["max_bpm"] = clamped["min_bpm"]

    return replace(cfg, **clamped)
