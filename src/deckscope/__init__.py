"""Audio analysis engine for dual-deck playback: tempo, key, beats and levels."""

from deckscope.config import AnalyzerConfig, clamp_config
from deckscope.core.analyzer import KeyEstimate, TempoEstimate, TrackAnalysis, TrackAnalyzer
from deckscope.core.deck import DeckAnalyzer, DeckCommand, DeckPair, OutputStage
from deckscope.core.decoder import SampleBlock, TrackDecoder
from deckscope.core.levels import LevelMonitor
from deckscope.core.ramp import FadeRamp, fade_volume
from deckscope.core.stream import BeatDetector
from deckscope.io.exporter import ReportExporter

__version__ = "0.1.0"
__all__ = [
    "AnalyzerConfig",
    "clamp_config",
    "SampleBlock",
    "TrackDecoder",
    "TrackAnalyzer",
    "TrackAnalysis",
    "TempoEstimate",
    "KeyEstimate",
    "BeatDetector",
    "LevelMonitor",
    "DeckAnalyzer",
    "DeckPair",
    "DeckCommand",
    "OutputStage",
    "FadeRamp",
    "fade_volume",
    "ReportExporter",
]
