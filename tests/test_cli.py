"""Command line tests."""

import json

import pytest
import soundfile as sf

from deckscope.cli import build_parser, load_config, main


@pytest.fixture
def click_wav(tmp_path, click_signal):
    y, sr, bpm = click_signal
    path = tmp_path / "clicks.wav"
    sf.write(path, y, sr)
    return path, bpm


class TestParser:
    def test_scan_defaults(self):
        args = build_parser().parse_args(["scan", "track.wav"])
        assert args.command == "scan"
        assert args.max_onsets == 32
        assert args.config is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestLoadConfig:
    def test_defaults_without_file(self):
        assert load_config(None).block_size == 1024

    def test_file_is_clamped(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"energy_weight": 9.0, "silence_duration": 2.0}))
        cfg = load_config(path)
        assert cfg.energy_weight == 1.0
        assert cfg.silence_duration == 2.0


class TestMain:
    def test_missing_file(self, tmp_path, capsys):
        assert main(["analyze", str(tmp_path / "missing.wav")]) == 1
        assert "Audio file not found" in capsys.readouterr().err

    def test_analyze(self, click_wav, capsys):
        path, bpm = click_wav
        assert main(["analyze", str(path)]) == 0
        out = capsys.readouterr().out
        assert "BPM:" in out
        assert "Key:" in out

    def test_scan_writes_report(self, click_wav, tmp_path, capsys):
        path, bpm = click_wav
        report = tmp_path / "report.json"
        assert main(["scan", str(path), "--json", str(report), "--max-onsets", "4"]) == 0
        out = capsys.readouterr().out
        assert "Onsets:" in out

        data = json.loads(report.read_text())
        assert data["tempo"]["bpm"] == pytest.approx(bpm, abs=2.0)
        assert len(data["onsets"]) > 0
        assert "levels" in data
