from __future__ import annotations

import os
from pathlib import Path

import pytest

from render_watch.config import Config
from render_watch.state import ProgressSnapshot, ProgressStore

BASE_TIME = 1_700_000_000.0


@pytest.fixture(autouse=True)
def _mtime_is_creation_time(monkeypatch):
    # os.utime cannot set st_birthtime, so tests order frames by mtime
    # on every platform.
    monkeypatch.setattr(
        "render_watch.detector.creation_time", lambda st: float(st.st_mtime)
    )
    monkeypatch.delenv("PORT", raising=False)


def make_frame(directory: Path, name: str, created: float, size: int = 16) -> Path:
    """Write a fake frame file and pin its timestamp."""
    path = directory / name
    path.write_bytes(b"\0" * size)
    os.utime(path, (created, created))
    return path


@pytest.fixture()
def frames_dir(tmp_path: Path) -> Path:
    d = tmp_path / "frames"
    d.mkdir()
    return d


@pytest.fixture()
def config(tmp_path: Path, frames_dir: Path) -> Config:
    cfg = Config(tmp_path / "config.json", persist=False)
    cfg.watch_directory = str(frames_dir)
    cfg.default_total_frames = 100
    cfg.reconcile_interval = 60
    return cfg


class Recorder:
    """Listener that keeps every snapshot it is given."""

    def __init__(self) -> None:
        self.snapshots: list[ProgressSnapshot] = []

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        self.snapshots.append(snapshot)

    @property
    def last(self) -> ProgressSnapshot:
        return self.snapshots[-1]


@pytest.fixture()
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture()
def store(config: Config, frames_dir: Path, recorder: Recorder) -> ProgressStore:
    s = ProgressStore(config, clock=lambda: BASE_TIME + 1000, use_watcher=False)
    s.add_listener(recorder)
    s.switch_watch_target(frames_dir)
    yield s
    s.stop()
