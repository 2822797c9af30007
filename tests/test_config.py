from __future__ import annotations

import json

from render_watch.config import DEFAULT_EXTENSIONS, STRATEGY_FIRST, STRATEGY_LAST, Config
from render_watch.detector import FrameDetector


def test_defaults_when_file_missing(tmp_path):
    cfg = Config(tmp_path / "config.json", persist=False)

    assert cfg.default_total_frames == 120
    assert cfg.file_extensions == DEFAULT_EXTENSIONS
    assert cfg.frame_number_strategy == STRATEGY_FIRST
    assert cfg.reconcile_interval == 5.0
    assert cfg.port == 3000
    assert cfg.watch_directory.endswith("render_output")
    assert not (tmp_path / "config.json").exists()


def test_persisting_config_writes_defaults(tmp_path):
    path = tmp_path / "sub" / "config.json"
    Config(path)
    assert json.loads(path.read_text())["default_total_frames"] == 120


def test_stored_values_override_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"default_total_frames": 240, "port": 8080}))

    cfg = Config(path)

    assert cfg.default_total_frames == 240
    assert cfg.port == 8080
    assert cfg.stable_time == 2.0


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    assert Config(path).default_total_frames == 120


def test_setters_clamp_and_normalise(tmp_path):
    cfg = Config(tmp_path / "config.json", persist=False)

    cfg.default_total_frames = 0
    cfg.reconcile_interval = 0
    cfg.file_extensions = [".PNG", " exr ", ""]
    cfg.frame_number_strategy = "LAST"

    assert cfg.default_total_frames == 1
    assert cfg.reconcile_interval == 0.5
    assert cfg.file_extensions == ["png", "exr"]
    assert cfg.frame_number_strategy == STRATEGY_LAST

    cfg.frame_number_strategy = "bogus"
    assert cfg.frame_number_strategy == STRATEGY_FIRST


def test_port_env_var_wins(tmp_path, monkeypatch):
    monkeypatch.setenv("PORT", "4321")
    assert Config(tmp_path / "config.json", persist=False).port == 4321


def test_unknown_stored_strategy_reads_as_first(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"frame_number_strategy": "middle"}))

    cfg = Config(path, persist=False)

    assert cfg.frame_number_strategy == STRATEGY_FIRST
    # The detector built from it must still start and use the first digit run.
    detector = FrameDetector(strategy=cfg.frame_number_strategy)
    assert detector.frame_number("shot10_v2_0100.jpg") == 10
