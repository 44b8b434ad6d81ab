"""
Frame Adapter Tests
===================

In-memory, PNG image sequence and ffmpeg-backed sinks and sources.
"""

import numpy as np
import pytest
from conftest import FakeProcess, requires_ffmpeg, stub_video_source

from file_to_video import frame_io, pipeline
from file_to_video.decoder import decode, decode_bytes
from file_to_video.encoder import encode, iter_frames
from file_to_video.errors import SourceFailure, TruncatedStream
from file_to_video.frame_io import (
    FFmpegFrameSink,
    FFmpegFrameSource,
    ImageSequenceFrameSink,
    ImageSequenceFrameSource,
    MemoryFrameSink,
    MemoryFrameSource,
    build_ffmpeg_encode_command,
    iter_source,
)
from file_to_video.geometry import FrameGeometry
from file_to_video.pipeline import (
    PayloadTransform,
    decode_file,
    decode_video_bytes,
    encode_file,
    encode_to_video_bytes,
)


class XorTransform(PayloadTransform):
    def __init__(self, key: int):
        self.key = key

    def forward(self, data):
        return bytes(b ^ self.key for b in data)

    def inverse(self, data):
        return self.forward(data)


class TestMemoryAdapters:

    def test_memory_sink_rejects_push_after_finish(self):
        sink = MemoryFrameSink()
        sink.finish()
        with pytest.raises(RuntimeError):
            sink.push(np.zeros((2, 16, 3), dtype=np.uint8))

    def test_memory_source_yields_in_order_then_none(self):
        frames = [np.full((2, 16, 3), i, dtype=np.uint8) for i in range(3)]
        source = MemoryFrameSource(frames)
        assert [int(f[0, 0, 0]) for f in source] == [0, 1, 2]
        assert source.next_frame() is None

    def test_iter_source_accepts_plain_iterables(self):
        assert list(iter_source([1, 2])) == [1, 2]

    def test_identity_transform(self):
        transform = PayloadTransform()
        assert transform.inverse(transform.forward(b"abc")) == b"abc"


class TestImageSequence:

    def test_png_roundtrip(self, tmp_path, small_geom, random_payload):
        payload = random_payload(777)
        sink = ImageSequenceFrameSink(tmp_path / "frames")
        frames = encode(payload, small_geom, sink)
        assert sink.finished
        assert len(sink.paths) == frames == 8
        source = ImageSequenceFrameSource(tmp_path / "frames")
        assert decode_bytes(source) == payload

    def test_png_frames_are_exact(self, tmp_path, tiny_geom):
        sink = ImageSequenceFrameSink(tmp_path)
        encode(b"\xa5", tiny_geom, sink)
        frame = ImageSequenceFrameSource(tmp_path).next_frame()
        assert frame.shape == (2, 16, 3)
        assert frame[0, 0].tolist() == [255, 255, 255]
        assert frame[0, 1].tolist() == [0, 0, 0]

    def test_empty_directory_is_empty_stream(self, tmp_path):
        assert ImageSequenceFrameSource(tmp_path).next_frame() is None


class TestFFmpegCommand:

    def test_lossless_keyframe_only_defaults(self, tmp_path):
        command = build_ffmpeg_encode_command(tmp_path / "out.mp4", FrameGeometry(1920, 1072), {})
        joined = " ".join(command)
        assert "-s 1920x1072" in joined
        assert "-pix_fmt rgb24 -r 24 -i -" in joined
        assert "-c:v libx264rgb" in joined
        assert "-qp 0" in joined
        assert "-g 1" in joined
        assert "+faststart" in joined
        assert command[-1].endswith("out.mp4")

    def test_non_x264_codec_skips_x264_options(self, tmp_path):
        command = build_ffmpeg_encode_command(tmp_path / "out.mkv", FrameGeometry(64, 16), {"VIDEO_CODEC": "ffv1", "VIDEO_FPS": 30})
        assert "-qp" not in command
        assert "-movflags" not in command
        assert command[command.index("-r") + 1] == "30"

    def test_sink_rejects_wrong_shape(self, tmp_path):
        sink = FFmpegFrameSink(tmp_path / "out.mkv", FrameGeometry(64, 16), {})
        with pytest.raises(ValueError):
            sink.push(np.zeros((2, 16, 3), dtype=np.uint8))
        assert sink.ffmpeg_process is None


class TestFFmpegSourceExit:
    """ffmpeg's exit status decides between clean exhaustion and a source failure."""

    def _source(self, monkeypatch, frames, returncode):
        data = b"".join(np.ascontiguousarray(f).tobytes() for f in frames)
        monkeypatch.setattr(frame_io.subprocess, "Popen", lambda *args, **kwargs: FakeProcess(data, returncode))
        height, width = frames[0].shape[:2]
        return FFmpegFrameSource("clip.mp4", {}, size=(width, height))

    def test_clean_exit_ends_the_stream(self, monkeypatch, tiny_geom):
        frames = list(iter_frames(b"abc", tiny_geom))
        source = self._source(monkeypatch, frames, 0)
        assert decode_bytes(source) == b"abc"

    def test_clean_exit_with_missing_frames_is_truncation(self, monkeypatch, tiny_geom):
        frames = list(iter_frames(b"abcdef", tiny_geom))
        source = self._source(monkeypatch, frames[:2], 0)
        with pytest.raises(TruncatedStream):
            decode(source, bytearray())

    def test_failed_exit_after_some_frames_is_source_failure(self, monkeypatch, tiny_geom):
        frames = list(iter_frames(b"abcdef", tiny_geom))
        source = self._source(monkeypatch, frames[:2], 1)
        with pytest.raises(SourceFailure) as excinfo:
            decode(source, bytearray())
        assert isinstance(excinfo.value.inner, RuntimeError)
        assert source.frames_read == 2

    def test_failed_exit_before_any_frame(self, monkeypatch):
        monkeypatch.setattr(frame_io.subprocess, "Popen", lambda *args, **kwargs: FakeProcess(b"", 1))
        source = FFmpegFrameSource("clip.mp4", {}, size=(16, 2))
        with pytest.raises(RuntimeError):
            source.next_frame()
        assert source.frames_read == 0


class TestDecodeFileOutput:
    """decode_file only replaces the output file once decoding succeeds."""

    def test_missing_video_keeps_existing_output(self, tmp_path):
        existing = tmp_path / "precious.bin"
        existing.write_bytes(b"keep me")
        with pytest.raises((RuntimeError, OSError)):
            pipeline.decode_file(tmp_path / "does_not_exist.mp4", existing, {})
        assert existing.read_bytes() == b"keep me"
        assert [p.name for p in tmp_path.iterdir()] == ["precious.bin"]

    def test_truncated_video_keeps_existing_output(self, monkeypatch, tmp_path, tiny_geom):
        frames = list(iter_frames(b"abcdefghij", tiny_geom))
        monkeypatch.setattr(pipeline, "FFmpegFrameSource", stub_video_source(frames[:2]))
        existing = tmp_path / "out.bin"
        existing.write_bytes(b"old contents")
        with pytest.raises(TruncatedStream):
            pipeline.decode_file(tmp_path / "clip.mp4", existing, {})
        assert existing.read_bytes() == b"old contents"
        assert [p.name for p in tmp_path.iterdir()] == ["out.bin"]

    def test_failing_transform_keeps_existing_output(self, monkeypatch, tmp_path, tiny_geom):
        class BrokenTransform(PayloadTransform):
            def inverse(self, data):
                raise ValueError("bad key")

        monkeypatch.setattr(pipeline, "FFmpegFrameSource", stub_video_source(list(iter_frames(b"abc", tiny_geom))))
        existing = tmp_path / "out.bin"
        existing.write_bytes(b"old contents")
        with pytest.raises(ValueError):
            pipeline.decode_file(tmp_path / "clip.mp4", existing, {}, transform=BrokenTransform())
        assert existing.read_bytes() == b"old contents"

    def test_success_replaces_existing_output(self, monkeypatch, tmp_path, tiny_geom):
        monkeypatch.setattr(pipeline, "FFmpegFrameSource", stub_video_source(list(iter_frames(b"fresh bytes", tiny_geom))))
        existing = tmp_path / "out.bin"
        existing.write_bytes(b"old contents")
        assert pipeline.decode_file(tmp_path / "clip.mp4", existing, {}) == 11
        assert existing.read_bytes() == b"fresh bytes"
        assert [p.name for p in tmp_path.iterdir()] == ["out.bin"]

    def test_success_with_transform(self, monkeypatch, tmp_path, tiny_geom):
        transform = XorTransform(0x21)
        frames = list(iter_frames(transform.forward(b"secret"), tiny_geom))
        monkeypatch.setattr(pipeline, "FFmpegFrameSource", stub_video_source(frames))
        output = tmp_path / "new.bin"
        assert pipeline.decode_file(tmp_path / "clip.mp4", output, {}, transform=transform) == 6
        assert output.read_bytes() == b"secret"


@requires_ffmpeg
class TestFFmpegRoundTrip:

    def test_video_bytes_roundtrip(self, small_geom, random_payload):
        payload = random_payload(1000)
        video = encode_to_video_bytes(payload, {}, geom=small_geom, suffix=".mkv")
        assert len(video) > 0
        assert decode_video_bytes(video, {}, suffix=".mkv") == payload

    def test_file_roundtrip_with_transform(self, tmp_path, random_payload):
        config = {"VIDEO_WIDTH": 64, "VIDEO_HEIGHT": 32}
        original = tmp_path / "input.bin"
        original.write_bytes(random_payload(2000))
        video = tmp_path / "input.mp4"
        frames = encode_file(original, video, config, transform=XorTransform(0x5C))
        assert frames == 1 + -(-2000 // 256)
        restored = tmp_path / "restored.bin"
        assert decode_file(video, restored, config, transform=XorTransform(0x5C)) == 2000
        assert restored.read_bytes() == original.read_bytes()

    def test_source_reports_size_and_frame_count(self, tmp_path, tiny_geom):
        video = tmp_path / "tiny.mkv"
        with FFmpegFrameSink(video, FrameGeometry(32, 8), {}) as sink:
            encode(b"hello world", FrameGeometry(32, 8), sink)
        with FFmpegFrameSource(video, {}) as source:
            assert (source.width, source.height) == (32, 8)
            frames = list(source)
        assert len(frames) == 2
        assert decode_bytes(frames) == b"hello world"
