"""
Command line entry point.

Usage:
    deckscope analyze TRACK [--config cfg.json] [--json report.json]
    deckscope scan TRACK [--config cfg.json] [--json report.json]

``analyze`` runs the one-shot tempo/key analysis; ``scan`` additionally
replays the track block by block through a deck, as a playback tap would,
and reports the detected onsets and final levels.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from deckscope.config import AnalyzerConfig, clamp_config
from deckscope.core.deck import DeckAnalyzer
from deckscope.core.decoder import TrackDecoder
from deckscope.io.exporter import ReportExporter


def load_config(path: Optional[Path]) -> AnalyzerConfig:
    """Read a JSON config file (or defaults) and clamp it to valid ranges."""
    if path is None:
        return AnalyzerConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return clamp_config(AnalyzerConfig.from_dict(data))


def _print_summary(analysis) -> None:
    bpm = analysis.bpm
    print(f"Duration: {analysis.duration:.2f}s")
    print(f"BPM:      {bpm:.1f}" if bpm is not None else "BPM:      --")
    print(f"Key:      {analysis.key.standard_name} ({analysis.key.camelot})")
    print(f"Compatible: {', '.join(analysis.key.compatible_camelot())}")


def cmd_analyze(args: argparse.Namespace, config: AnalyzerConfig) -> int:
    decoder = TrackDecoder.from_file(args.audio, block_size=config.block_size)
    deck = DeckAnalyzer("A", config)
    deck.load_track(args.audio.name)
    analysis = deck.analyze_now(decoder.full_decode())
    _print_summary(analysis)

    if args.json:
        path = ReportExporter().export_json(analysis, args.json)
        print(f"Report written to {path}")
    return 0


def cmd_scan(args: argparse.Namespace, config: AnalyzerConfig) -> int:
    decoder = TrackDecoder.from_file(args.audio, block_size=config.block_size)
    deck = DeckAnalyzer("A", config)
    deck.load_track(args.audio.name)
    analysis = deck.analyze_now(decoder.full_decode())
    _print_summary(analysis)

    while True:
        block = decoder.read_block()
        if block is None:
            break
        deck.process(block, active=True)

    onsets = deck.onset_times
    snap = deck.snapshot()
    print(f"Onsets:   {len(onsets)}")
    for t in onsets[: args.max_onsets]:
        print(f"  {t:8.3f}s")
    if len(onsets) > args.max_onsets:
        print(f"  ... {len(onsets) - args.max_onsets} more")
    print(f"Levels:   L={snap.left_level:.2f} R={snap.right_level:.2f}")
    print(f"Silent:   {snap.is_silent} ({snap.silence_elapsed:.2f}s)")

    if args.json:
        path = ReportExporter().export_json(analysis, args.json, onsets=onsets, snapshot=snap)
        print(f"Report written to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckscope",
        description="Tempo, key and beat analysis for DJ decks",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("analyze", "One-shot BPM and key analysis"),
        ("scan", "Analysis plus a real-time beat/level replay"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("audio", type=Path, help="Path to audio file")
        p.add_argument("--config", type=Path, default=None, help="JSON file with analyzer tunables")
        p.add_argument("--json", type=Path, default=None, help="Write a JSON report to this path")
        if name == "scan":
            p.add_argument(
                "--max-onsets",
                type=int,
                default=32,
                help="Maximum onset times to print (default: 32)",
            )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.audio.exists():
        print(f"Error: Audio file not found: {args.audio}", file=sys.stderr)
        return 1

    config = load_config(args.config)
    if args.command == "analyze":
        return cmd_analyze(args, config)
    return cmd_scan(args, config)


if __name__ == "__main__":
    sys.exit(main())
