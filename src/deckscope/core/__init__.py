"""Core audio analysis modules."""

from deckscope.core.analyzer import TrackAnalyzer
from deckscope.core.deck import DeckAnalyzer, DeckPair
from deckscope.core.levels import LevelMonitor
from deckscope.core.ramp import FadeRamp, fade_volume
from deckscope.core.stream import BeatDetector

__all__ = [
    "TrackAnalyzer",
    "BeatDetector",
    "LevelMonitor",
    "DeckAnalyzer",
    "DeckPair",
    "FadeRamp",
    "fade_volume",
]
