"""
Test Configuration
==================

Pytest fixtures shared by the codec tests.
"""

import io
import shutil
import subprocess

import numpy as np
import pytest

from file_to_video.frame_io import MemoryFrameSource
from file_to_video.geometry import FrameGeometry


@pytest.fixture
def tiny_geom():
    """16x2 frames: B = 4 bytes, and exactly the 32 pixels the header needs."""
    return FrameGeometry(16, 2)


@pytest.fixture
def small_geom():
    """64x16 frames: B = 128 bytes."""
    return FrameGeometry(64, 16)


@pytest.fixture
def random_payload():
    """Deterministic pseudo-random payload factory."""
    rng = np.random.default_rng(20240611)

    def make(size: int) -> bytes:
        return rng.bytes(size)

    return make


def _ffmpeg_has_encoder(name: str) -> bool:
    if shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None:
        return False
    try:
        proc = subprocess.run(["ffmpeg", "-hide_banner", "-encoders"], capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.SubprocessError):
        return False
    return name in proc.stdout


requires_ffmpeg = pytest.mark.skipif(
    not _ffmpeg_has_encoder("libx264rgb"),
    reason="ffmpeg/ffprobe with libx264rgb not available",
)


def stub_video_source(frames):
    """A drop-in for FFmpegFrameSource that serves `frames` for any video path."""

    class StubVideoSource(MemoryFrameSource):
        def __init__(self, video_path, config, size=None):
            super().__init__(frames)
            self.video_path = video_path
            self.height, self.width = frames[0].shape[:2]
            self.closed = False

        def close(self):
            self.closed = True

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            self.close()

    return StubVideoSource


class FakeProcess:
    """Popen stand-in whose stdout replays `data` and which exits with `returncode`."""

    def __init__(self, data: bytes, returncode: int):
        self.stdout = io.BytesIO(data)
        self.returncode = returncode

    def wait(self, timeout=None):
        return self.returncode

    def poll(self):
        return self.returncode

    def terminate(self):
        pass
