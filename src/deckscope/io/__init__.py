"""Report serialization."""

from deckscope.io.exporter import ReportExporter

__all__ = ["ReportExporter"]
