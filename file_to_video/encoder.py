# encoder.py

import logging
from typing import Iterator, Optional, Tuple, Union

import numpy as np
import torch

from .errors import PayloadTooLarge, SinkFailure
from .frame_io import FrameSink
from .geometry import (
    HEADER_BITS,
    MAX_PAYLOAD_BYTES,
    WHITE,
    FrameGeometry,
    bit_chunks_to_frame_batch,
    bytes_to_bit_tensor,
    header_bit_position,
    payload_frame_count,
)

# Payload frames are rendered this many at a time; the sink still sees one frame per push.
FRAME_BATCH_SIZE = 16

BytesLike = Union[bytes, bytearray, memoryview]


def _validate(payload: BytesLike, geom) -> Tuple[bytes, FrameGeometry]:
    geom = FrameGeometry.coerce(geom)
    if len(payload) > MAX_PAYLOAD_BYTES:
        raise PayloadTooLarge(len(payload), MAX_PAYLOAD_BYTES)
    data = payload if isinstance(payload, bytes) else bytes(payload)
    return data, geom


def build_header_frame(num_bytes: int, geom: FrameGeometry, device: Optional[torch.device] = None) -> torch.Tensor:
    """Metadata frame: num_bytes as 32 pixels, least significant bit first."""
    if not 0 <= num_bytes <= MAX_PAYLOAD_BYTES:
        raise PayloadTooLarge(num_bytes, MAX_PAYLOAD_BYTES)
    frame_tensor = torch.zeros(geom.shape, dtype=torch.uint8, device=device)
    white = torch.tensor(WHITE, dtype=torch.uint8, device=device)
    for bit in range(HEADER_BITS):
        if (num_bytes >> bit) & 1:
            x, y = header_bit_position(bit, geom)
            frame_tensor[y, x] = white
    return frame_tensor


def build_payload_frames(chunk: bytes, geom: FrameGeometry, device: Optional[torch.device] = None) -> torch.Tensor:
    """Render up to k*B payload bytes into k frames, (k, H, W, 3).

    Pixels past the end of the chunk in the last frame stay black.
    """
    num_frames = payload_frame_count(len(chunk), geom)
    if num_frames == 0:
        return torch.empty(0, *geom.shape, dtype=torch.uint8, device=device)
    bits = bytes_to_bit_tensor(chunk, device)
    needed = num_frames * geom.pixels
    if bits.numel() < needed:
        bits = torch.nn.functional.pad(bits, (0, needed - bits.numel()))
    frame_bit_chunks = bits.view(num_frames, geom.pixels)
    return bit_chunks_to_frame_batch(frame_bit_chunks, geom)


def _generate_frames(data: bytes, geom: FrameGeometry, device: Optional[torch.device], batch_frames: int) -> Iterator[np.ndarray]:
    yield build_header_frame(len(data), geom, device).cpu().numpy()
    bytes_per_batch = batch_frames * geom.bytes_per_frame
    for start in range(0, len(data), bytes_per_batch):
        frames_tensor = build_payload_frames(data[start:start + bytes_per_batch], geom, device)
        np_batch = frames_tensor.contiguous().cpu().numpy()
        for frame_np in np_batch:
            yield frame_np


def iter_frames(
    payload: BytesLike,
    geom,
    device: Optional[torch.device] = None,
    batch_frames: int = FRAME_BATCH_SIZE,
) -> Iterator[np.ndarray]:
    """Every frame of the encoded stream in order: header, then payload frames.

    Validation happens on the call, not on first iteration.
    """
    data, geom = _validate(payload, geom)
    return _generate_frames(data, geom, device, max(1, int(batch_frames)))


def encode(
    payload: BytesLike,
    geom,
    sink: FrameSink,
    device: Optional[torch.device] = None,
    batch_frames: int = FRAME_BATCH_SIZE,
) -> int:
    """Encode `payload` as 1 + ceil(N/B) frames pushed to `sink`, then finish the sink.

    Returns the number of frames pushed. Raises GeometryInvalid or
    PayloadTooLarge before any frame is emitted; sink errors are re-raised as
    SinkFailure and abort the stream without cleanup.
    """
    data, geom = _validate(payload, geom)
    total_frames = 1 + payload_frame_count(len(data), geom)
    logging.info(
        f"Encoding {len(data)} bytes into {total_frames} frame(s) of {geom.width}x{geom.height} "
        f"({geom.bytes_per_frame} bytes per payload frame)."
    )

    frames_pushed = 0
    for frame_np in _generate_frames(data, geom, device, max(1, int(batch_frames))):
        try:
            sink.push(frame_np)
        except SinkFailure:
            raise
        except Exception as e:
            raise SinkFailure(e, f"Frame sink rejected frame {frames_pushed}: {e}") from e
        frames_pushed += 1
        logging.debug(f"Pushed frame {frames_pushed}/{total_frames}")

    try:
        sink.finish()
    except SinkFailure:
        raise
    except Exception as e:
        raise SinkFailure(e, f"Frame sink failed to finish: {e}") from e

    logging.info(f"Encoded stream complete: {frames_pushed} frame(s) written.")
    return frames_pushed
