# pipeline.py
"""File- and container-level wrappers around the codec.

encode_file/decode_file move a payload between a file on disk and a video
container through ffmpeg. encode_to_video_bytes/decode_video_bytes do the same
with the container held in memory, going through a temporary file.
"""

import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import torch

from .config import geometry_from_config
from .decoder import decode
from .encoder import FRAME_BATCH_SIZE, encode
from .frame_io import FFmpegFrameSink, FFmpegFrameSource, FrameSink, ProgressFrameSink
from .geometry import FrameGeometry


class PayloadTransform:
    """Hook applied to the payload before encoding and after decoding.

    The default is the identity. Subclasses (e.g. an AEAD keyed by a user
    secret) override both directions; the codec never sees the difference.
    """

    def forward(self, data: bytes) -> bytes:
        return data

    def inverse(self, data: bytes) -> bytes:
        return data


def _geometry(config: Dict[str, Any], geom: Optional[FrameGeometry]) -> FrameGeometry:
    return geom if geom is not None else geometry_from_config(config)


def encode_payload_to_video(
    payload: bytes,
    output_path: Path,
    config: Dict[str, Any],
    geom: Optional[FrameGeometry] = None,
    device: Optional[torch.device] = None,
    progress=None,
) -> int:
    geom = _geometry(config, geom)
    ffmpeg_sink = FFmpegFrameSink(output_path, geom, config)
    sink: FrameSink = ProgressFrameSink(ffmpeg_sink, progress) if progress else ffmpeg_sink
    with ffmpeg_sink:
        return encode(payload, geom, sink, device=device, batch_frames=config.get("FRAME_BATCH_SIZE", FRAME_BATCH_SIZE))


def encode_file(
    input_path: Path,
    output_path: Path,
    config: Dict[str, Any],
    transform: Optional[PayloadTransform] = None,
    geom: Optional[FrameGeometry] = None,
    device: Optional[torch.device] = None,
    progress=None,
) -> int:
    """Encode the contents of `input_path` into the video `output_path`. Returns the frame count."""
    input_path = Path(input_path)
    payload = input_path.read_bytes()
    if transform is not None:
        payload = transform.forward(payload)
    logging.info(f"Read {len(payload)} bytes from '{input_path}'")
    return encode_payload_to_video(payload, output_path, config, geom, device, progress)


def decode_file(
    video_path: Path,
    output_path: Path,
    config: Dict[str, Any],
    transform: Optional[PayloadTransform] = None,
) -> int:
    """Decode the video `video_path` into `output_path`. Returns the payload size.

    Bytes go to a temporary file beside `output_path`, which only replaces
    `output_path` once decoding succeeds. On failure an existing file at
    `output_path` is left untouched.
    """
    output_path = Path(output_path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.name}.", suffix=".part", dir=output_path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, 'wb') as f, FFmpegFrameSource(video_path, config) as source:
            if transform is None:
                total = decode(source, f)
            else:
                buffer = io.BytesIO()
                decode(source, buffer)
                data = transform.inverse(buffer.getvalue())
                f.write(data)
                total = len(data)
        os.replace(tmp_path, output_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        logging.info(f"Discarded incomplete output for '{output_path}'")
        raise
    logging.info(f"Wrote {total} bytes to '{output_path}'")
    return total


def encode_to_video_bytes(
    payload: bytes,
    config: Dict[str, Any],
    geom: Optional[FrameGeometry] = None,
    suffix: str = ".mp4",
) -> bytes:
    """Encode into a temporary container and return the container's bytes."""
    fd, tmp_name = tempfile.mkstemp(prefix="video_", suffix=suffix)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        encode_payload_to_video(payload, tmp_path, config, geom)
        return tmp_path.read_bytes()
    finally:
        tmp_path.unlink(missing_ok=True)


def decode_video_bytes(data: bytes, config: Dict[str, Any], suffix: str = ".mp4") -> bytes:
    """Decode a container held in memory."""
    fd, tmp_name = tempfile.mkstemp(prefix="video_", suffix=suffix)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        buffer = io.BytesIO()
        with FFmpegFrameSource(tmp_path, config) as source:
            decode(source, buffer)
        return buffer.getvalue()
    finally:
        tmp_path.unlink(missing_ok=True)
