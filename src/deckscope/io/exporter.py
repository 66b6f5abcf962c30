"""
Analysis report serialization.

Exports a track analysis (tempo, key, chromagram) and, optionally, the
onsets and final levels of a real-time scan to a JSON report.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import numpy as np

from deckscope.core.analyzer import TrackAnalysis
from deckscope.core.deck import DeckSnapshot
from deckscope.core.features import PITCH_CLASS_NAMES


@dataclass
class ReportMetadata:
    """Metadata header for the analysis report."""

    duration: float
    sample_rate: int
    block_size: int
    n_blocks: int
    schema_version: str = "1.0"


class ReportExporter:
    """
    Exports track analysis results to a JSON-friendly report.
    """

    def __init__(self, precision: int = 4):
        """
        Initialize the exporter.

        Args:
            precision: Decimal places for floating point values.
        """
        self.precision = precision

    def _round(self, value: float) -> Optional[float]:
        """Round to configured precision; non-finite values become None."""
        f = float(value)
        if np.isnan(f) or np.isinf(f):
            return None
        return round(f, self.precision)

    def build_report(
        self,
        analysis: TrackAnalysis,
        onsets: Optional[Sequence[float]] = None,
        snapshot: Optional[DeckSnapshot] = None,
    ) -> dict[str, Any]:
        """
        Build the complete report dictionary.

        Args:
            analysis: Batch analysis of the track.
            onsets: Onset times in seconds from a real-time scan.
            snapshot: Final deck state of a real-time scan.

        Returns:
            Report dictionary ready for serialization.
        """
        metadata = ReportMetadata(
            duration=self._round(analysis.duration),
            sample_rate=analysis.sample_rate,
            block_size=analysis.block_size,
            n_blocks=len(analysis.energies),
        )

        tempo = analysis.tempo
        key = analysis.key

        report: dict[str, Any] = {
            "metadata": {
                "duration": metadata.duration,
                "sample_rate": metadata.sample_rate,
                "block_size": metadata.block_size,
                "n_blocks": metadata.n_blocks,
                "schema_version": metadata.schema_version,
            },
            "tempo": {
                "bpm": self._round(tempo.bpm) if tempo.bpm is not None else None,
                "n_intervals": tempo.n_intervals,
                "n_peaks": int(len(tempo.peak_indices)),
            },
            "key": {
                "root": key.root_name,
                "root_index": key.root_index,
                "mode": key.mode,
                "name": key.standard_name,
                "camelot": key.camelot,
                "confidence": self._round(key.confidence),
                "compatible": key.compatible_camelot(),
            },
            "chromagram": {
                PITCH_CLASS_NAMES[i]: self._round(analysis.chromagram[i])
                for i in range(12)
            },
        }

        if onsets is not None:
            report["onsets"] = [self._round(t) for t in onsets]

        if snapshot is not None:
            report["levels"] = {
                "left": self._round(snapshot.left_level),
                "right": self._round(snapshot.right_level),
                "is_silent": snapshot.is_silent,
                "silence_elapsed": self._round(snapshot.silence_elapsed),
            }

        return report

    def export_json(
        self,
        analysis: TrackAnalysis,
        output_path: Union[str, Path],
        onsets: Optional[Sequence[float]] = None,
        snapshot: Optional[DeckSnapshot] = None,
        indent: int = 2,
    ) -> Path:
        """
        Export the report to a JSON file.

        Returns:
            Path to written file.
        """
        report = self.build_report(analysis, onsets=onsets, snapshot=snapshot)
        output_path = Path(output_path)

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=indent)

        return output_path
