# frame_io.py
"""
Frame sinks and sources.

The codec only needs `push(frame)` / `finish()` on the way out and a
sequence of frames on the way in. A frame is an (H, W, 3) uint8 RGB array in
row-major order. The ffmpeg adapters move frames through `rgb24` raw video
pipes; the image-sequence adapters store one lossless PNG per frame.
"""

import json
import logging
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import numpy as np
from PIL import Image

from .geometry import PIXEL_CHANNELS, FrameGeometry, as_frame_tensor


class FrameSink(Protocol):
    def push(self, frame: np.ndarray) -> None:
        """Accept the next frame of the stream."""

    def finish(self) -> None:
        """Signal end of stream."""


class FrameSource(Protocol):
    def next_frame(self) -> Optional[np.ndarray]:
        """Return the next frame in presentation order, or None when exhausted."""


class ByteSink(Protocol):
    def write(self, data: bytes) -> Any:
        """Append bytes."""


def iter_source(source: Any) -> Iterator[Any]:
    """Iterate any frame source: an object with next_frame(), or any iterable of frames."""
    next_frame = getattr(source, "next_frame", None)
    if callable(next_frame):
        def generate():
            while True:
                frame = next_frame()
                if frame is None:
                    return
                yield frame
        return generate()
    return iter(source)


def _to_numpy_frame(frame: Any) -> np.ndarray:
    return np.ascontiguousarray(as_frame_tensor(frame).cpu().numpy().astype(np.uint8, copy=False))


# --- In-memory adapters ---

class MemoryFrameSink:
    def __init__(self):
        self.frames: List[np.ndarray] = []
        self.finished = False

    def push(self, frame: np.ndarray) -> None:
        if self.finished:
            raise RuntimeError("push() after finish()")
        self.frames.append(frame)

    def finish(self) -> None:
        self.finished = True

    def __len__(self):
        return len(self.frames)


class MemoryFrameSource:
    def __init__(self, frames: Iterable[Any]):
        self._frames = list(frames)
        self.frames_read = 0

    def next_frame(self) -> Optional[Any]:
        if self.frames_read >= len(self._frames):
            return None
        frame = self._frames[self.frames_read]
        self.frames_read += 1
        return frame

    def __iter__(self):
        return iter_source(self)


class ProgressFrameSink:
    """Forwards to `inner` and reports every pushed frame to `callback`."""

    def __init__(self, inner: FrameSink, callback: Callable[[int], None]):
        self.inner = inner
        self.callback = callback
        self.frames_pushed = 0

    def push(self, frame: np.ndarray) -> None:
        self.inner.push(frame)
        self.frames_pushed += 1
        self.callback(1)

    def finish(self) -> None:
        self.inner.finish()


# --- Image sequence adapters (Pillow) ---

class ImageSequenceFrameSink:
    def __init__(self, directory: Path, prefix: str = "frame_"):
        self.directory = Path(directory)
        self.prefix = prefix
        self.paths: List[Path] = []
        self.finished = False

    def push(self, frame: np.ndarray) -> None:
        if not self.paths:
            self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{self.prefix}{len(self.paths):06d}.png"
        Image.fromarray(_to_numpy_frame(frame)).save(path, format="PNG")
        self.paths.append(path)

    def finish(self) -> None:
        self.finished = True
        logging.info(f"Wrote {len(self.paths)} PNG frame(s) to '{self.directory}'")


class ImageSequenceFrameSource:
    def __init__(self, directory: Path, prefix: str = "frame_"):
        self.directory = Path(directory)
        self.paths = sorted(self.directory.glob(f"{prefix}*.png"))
        self.frames_read = 0

    def next_frame(self) -> Optional[np.ndarray]:
        if self.frames_read >= len(self.paths):
            return None
        path = self.paths[self.frames_read]
        self.frames_read += 1
        with Image.open(path) as img:
            return np.array(img.convert("RGB"))

    def __iter__(self):
        return iter_source(self)


# --- FFmpeg adapters ---

def build_ffmpeg_encode_command(output_path: Path, geom: FrameGeometry, config: Dict) -> List[str]:
    fps = config.get("VIDEO_FPS", 24)
    keyint = config.get("KEYINT_MAX", 1)
    codec = config.get("VIDEO_CODEC", "libx264rgb")
    command = [
        config.get("FFMPEG_PATH", "ffmpeg"), '-hide_banner', '-loglevel', 'error', '-y',
        '-f', 'rawvideo', '-vcodec', 'rawvideo',
        '-s', f'{geom.width}x{geom.height}', '-pix_fmt', 'rgb24', '-r', str(fps), '-i', '-',
        '-c:v', codec,
    ]
    if codec.startswith("libx264"):
        command += ['-preset', str(config.get("X264_PRESET", "ultrafast")), '-qp', str(config.get("X264_QP", 0))]
    command += [
        '-g', str(keyint),
        '-keyint_min', str(keyint),
        '-sc_threshold', '0',
        '-pix_fmt', config.get("OUTPUT_PIX_FMT", "rgb24"),
    ]
    if Path(output_path).suffix.lower() in ('.mp4', '.mov'):
        command += ['-movflags', '+faststart']
    return command + [str(output_path)]


class FFmpegFrameSink:
    """Pipes rgb24 frames into an ffmpeg process writing `output_path`.

    The process is started on the first push. finish() closes stdin and waits;
    a non-zero exit is raised as RuntimeError with ffmpeg's stderr.
    """

    def __init__(self, output_path: Path, geom: FrameGeometry, config: Dict, timeout: float = 300):
        self.output_path = Path(output_path)
        self.geom = geom
        self.config = config
        self.timeout = timeout
        self.command = build_ffmpeg_encode_command(self.output_path, geom, config)
        self.ffmpeg_process: Optional[subprocess.Popen] = None
        self._stderr = None
        self.frames_written = 0
        self.finished = False

    def _start(self):
        logging.info(f"Starting FFmpeg: {shlex.join(self.command)}")
        self._stderr = tempfile.TemporaryFile()
        self.ffmpeg_process = subprocess.Popen(self.command, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=self._stderr)

    def _read_stderr(self) -> str:
        if self._stderr is None:
            return ""
        self._stderr.seek(0)
        return self._stderr.read().decode('utf-8', 'ignore').strip()

    def push(self, frame: np.ndarray) -> None:
        if self.finished:
            raise RuntimeError("push() after finish()")
        frame_np = _to_numpy_frame(frame)
        if frame_np.shape != self.geom.shape:
            raise ValueError(f"Frame shape {frame_np.shape} does not match sink geometry {self.geom.shape}.")
        if self.ffmpeg_process is None:
            self._start()
        try:
            self.ffmpeg_process.stdin.write(frame_np.tobytes())
        except (BrokenPipeError, OSError) as e:
            self.ffmpeg_process.wait()
            stderr_text = self._read_stderr()
            self.close()
            raise RuntimeError(f"FFmpeg stdin closed after {self.frames_written} frame(s): {stderr_text or e}") from e
        self.frames_written += 1

    def finish(self) -> None:
        if self.finished:
            return
        if self.ffmpeg_process is None:
            # an encoded stream always has a header frame; nothing pushed means nothing to mux
            raise RuntimeError("finish() called before any frame was pushed.")
        self.finished = True
        process = self.ffmpeg_process
        try:
            process.stdin.close()
        except (BrokenPipeError, OSError):
            pass
        try:
            process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logging.warning("FFmpeg did not exit in time, terminating...")
            process.kill()
            process.wait()
            raise RuntimeError(f"FFmpeg timed out finalising '{self.output_path}'") from None
        stderr_text = self._read_stderr()
        self._stderr.close()
        if process.returncode != 0:
            raise RuntimeError(f"FFmpeg exited with code {process.returncode}: {stderr_text}")
        logging.info(f"FFmpeg finalised '{self.output_path}' with {self.frames_written} frame(s).")

    def close(self) -> None:
        """Abort without finalising the container."""
        if self.ffmpeg_process and self.ffmpeg_process.poll() is None:
            try:
                self.ffmpeg_process.stdin.close()
            except (BrokenPipeError, OSError):
                pass
            self.ffmpeg_process.terminate()
            self.ffmpeg_process.wait()
        if self._stderr is not None and not self._stderr.closed:
            self._stderr.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.close()


def probe_video_size(video_path: Path, config: Dict) -> Tuple[int, int]:
    """(width, height) of the first video stream, via ffprobe."""
    command = [
        config.get("FFPROBE_PATH", "ffprobe"), '-v', 'error', '-select_streams', 'v:0',
        '-show_entries', 'stream=width,height', '-of', 'json', str(video_path),
    ]
    logging.debug(f"Running command: {shlex.join(command)}")
    proc = subprocess.run(command, capture_output=True, text=True, check=False)
    if proc.returncode != 0:
        raise RuntimeError(f"ffprobe failed on '{video_path}': {proc.stderr.strip()}")
    streams = json.loads(proc.stdout or "{}").get("streams") or []
    if not streams:
        raise RuntimeError(f"No video stream found in '{video_path}'")
    return int(streams[0]["width"]), int(streams[0]["height"])


class FFmpegFrameSource:
    """Reads rgb24 frames of `video_path` from an ffmpeg stdout pipe, in presentation order."""

    def __init__(self, video_path: Path, config: Dict, size: Optional[Tuple[int, int]] = None):
        self.video_path = Path(video_path)
        self.config = config
        self.width, self.height = size if size is not None else probe_video_size(self.video_path, config)
        self.frame_bytes = self.width * self.height * PIXEL_CHANNELS
        self.process: Optional[subprocess.Popen] = None
        self.frames_read = 0
        self._exhausted = False

    def _start(self):
        command = [
            self.config.get("FFMPEG_PATH", "ffmpeg"), '-hide_banner', '-loglevel', 'error',
            '-i', str(self.video_path),
            '-map', '0:v:0',
            '-pix_fmt', 'rgb24',
            '-vsync', '0',
            '-f', 'rawvideo',
            '-'
        ]
        logging.info(f"Opening read pipe: {shlex.join(command)}")
        # stderr=DEVNULL so a full stderr buffer cannot stall the pipe
        self.process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, bufsize=10**7)

    def next_frame(self) -> Optional[np.ndarray]:
        if self._exhausted:
            return None
        if self.process is None:
            self._start()
        raw = self.process.stdout.read(self.frame_bytes)
        if len(raw) < self.frame_bytes:
            self._exhausted = True
            if raw:
                logging.warning(f"Dropping partial trailing frame ({len(raw)} of {self.frame_bytes} bytes).")
            returncode = self.process.wait()
            if returncode != 0:
                raise RuntimeError(
                    f"FFmpeg failed reading '{self.video_path}' after {self.frames_read} frame(s) (exit code {returncode})."
                )
            return None
        self.frames_read += 1
        return np.frombuffer(raw, dtype=np.uint8).copy().reshape(self.height, self.width, PIXEL_CHANNELS)

    def __iter__(self):
        return iter_source(self)

    def close(self) -> None:
        if self.process:
            if self.process.poll() is None:
                self.process.terminate()
                self.process.wait()
            self.process.stdout.close()
        self._exhausted = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
