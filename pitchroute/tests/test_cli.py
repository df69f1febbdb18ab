import json

import pytest
import soundfile as sf

from pitchroute.cli import iter_blocks, main
from pitchroute.tests.audio_utils import generate_sine_wave

SR = 22050


@pytest.fixture
def wav_path(tmp_path):
    path = tmp_path / "tone.wav"
    sf.write(str(path), generate_sine_wave(440.0, 1.0, SR, amplitude=0.5), SR)
    return path


def read_jsonl(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class TestIterBlocks:
    def test_full_blocks_then_remainder(self):
        sizes = [len(b) for _, b in iter_blocks(list(range(10)), 4)]
        assert sizes == [4, 4, 2]


class TestMain:
    def test_writes_one_line_per_block(self, wav_path, tmp_path):
        out = tmp_path / "results.jsonl"
        code = main([
            "--audio_path", str(wav_path),
            "--sample_rate", str(SR),
            "--frame_size", "1024",
            "--multi_pass_count", "2",
            "--output_jsonl", str(out),
        ])
        assert code == 0
        records = read_jsonl(out)
        # 22050 samples in blocks of 2048: ten full blocks and a remainder
        assert len(records) == 11
        assert [r["block"] for r in records] == list(range(11))
        first = records[0]
        assert first["start_sec"] == 0.0
        assert {"label", "detection_confidence", "fundamental_frequency", "quality", "metadata"} <= set(first)
        assert first["metadata"]["frame_size"] == 1024

    def test_max_blocks_and_overrides(self, wav_path, tmp_path):
        out = tmp_path / "results.jsonl"
        code = main([
            "--audio_path", str(wav_path),
            "--sample_rate", str(SR),
            "--frame_size", "1024",
            "--max_blocks", "3",
            "--set", "fusion.enable_snapping=false",
            "--set", "enable_quality_assessment=false",
            "--output_jsonl", str(out),
        ])
        assert code == 0
        records = read_jsonl(out)
        assert len(records) == 3
        assert all(r["quality"]["overall_quality"] == 0.8 for r in records)

    def test_stdout_and_log_dir(self, wav_path, tmp_path, capsys):
        log_dir = tmp_path / "logs"
        code = main([
            "--audio_path", str(wav_path),
            "--sample_rate", str(SR),
            "--frame_size", "1024",
            "--max_blocks", "2",
            "--log_dir", str(log_dir),
        ])
        assert code == 0
        lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        assert len(lines) == 2

        runs = list(log_dir.iterdir())
        assert len(runs) == 1
        events = read_jsonl(runs[0] / "logs.jsonl")
        assert any(e["stage"] == "cli" and e["event"] == "summary" for e in events)
        assert (runs[0] / "timing.json").exists()

    def test_missing_file(self, tmp_path):
        assert main(["--audio_path", str(tmp_path / "missing.wav")]) == 1

    def test_invalid_frame_size(self, wav_path):
        assert main(["--audio_path", str(wav_path), "--frame_size", "1000"]) == 2

    def test_unknown_override(self, wav_path):
        assert main(["--audio_path", str(wav_path), "--set", "fusion.bogus=1"]) == 2
