# geometry.py
"""
Frame geometry and frame layout.

Every mapping between payload bits and pixel positions lives here. The encoder
and decoder only ever go through these functions, so the on-screen format is
defined in exactly one place:

  - Header frame: the 32-bit payload length N, LSB first, bit i at raster
    index i (row 0, columns 0..31 whenever W >= 32).
  - Payload frame: B = W*H/8 bytes in row-major order, each byte an 8-pixel
    run with bit 7 (MSB) in the leftmost column.
  - White (255,255,255) is 1, black (0,0,0) is 0. On read, a pixel is 1 iff
    every channel is strictly greater than THRESHOLD.
"""

import math
import operator
from typing import Any, Optional, Tuple

import numpy as np
import torch

from .errors import GeometryInvalid, GeometryMismatch

# --- Frame Format Constants ---
HEADER_BITS = 32
MAX_PAYLOAD_BYTES = (1 << HEADER_BITS) - 1
THRESHOLD = 128
PIXEL_CHANNELS = 3
BITS_PER_BYTE = 8
WHITE = (255, 255, 255)
BLACK = (0, 0, 0)

# Index 0 -> bit 0 (black), index 1 -> bit 1 (white)
BINARY_PALETTE_TENSOR = torch.tensor([BLACK, WHITE], dtype=torch.uint8)


class FrameGeometry:
    """Width/height of a frame plus the derived byte capacity.

    Width must be a multiple of 8 so that byte runs never straddle rows, and
    the frame must hold at least the 32 header pixels.
    """

    __slots__ = ("width", "height")

    def __init__(self, width: int, height: int):
        if isinstance(width, bool) or isinstance(height, bool):
            raise GeometryInvalid(f"Frame dimensions must be integers, got {width!r}x{height!r}.")
        try:
            width, height = operator.index(width), operator.index(height)
        except TypeError:
            raise GeometryInvalid(f"Frame dimensions must be integers, got {width!r}x{height!r}.") from None
        if width <= 0 or height <= 0:
            raise GeometryInvalid(f"Frame dimensions must be positive, got {width}x{height}.")
        if width % BITS_PER_BYTE != 0:
            raise GeometryInvalid(f"Frame width {width} is not a multiple of {BITS_PER_BYTE}.")
        if width * height < HEADER_BITS:
            raise GeometryInvalid(f"Frame {width}x{height} has fewer than {HEADER_BITS} pixels; the header would not fit.")
        self.width = width
        self.height = height

    @classmethod
    def coerce(cls, value: Any) -> "FrameGeometry":
        if isinstance(value, FrameGeometry):
            return value
        try:
            width, height = value
        except (TypeError, ValueError):
            raise GeometryInvalid(f"Expected a FrameGeometry or a (width, height) pair, got {value!r}.") from None
        return cls(width, height)

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @property
    def bytes_per_row(self) -> int:
        return self.width // BITS_PER_BYTE

    @property
    def bytes_per_frame(self) -> int:
        return self.pixels // BITS_PER_BYTE

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Array shape of one frame: (H, W, 3)."""
        return (self.height, self.width, PIXEL_CHANNELS)

    def __eq__(self, other):
        if not isinstance(other, FrameGeometry):
            return NotImplemented
        return (self.width, self.height) == (other.width, other.height)

    def __hash__(self):
        return hash((self.width, self.height))

    def __repr__(self):
        return f"FrameGeometry(width={self.width}, height={self.height})"


# --- Layout Index Functions ---

def raster_position(index: int, width: int) -> Tuple[int, int]:
    """Raster pixel index -> (x, y)."""
    return index % width, index // width


def header_bit_position(bit: int, geom: FrameGeometry) -> Tuple[int, int]:
    """(x, y) of header bit `bit` (0 = least significant)."""
    if not 0 <= bit < HEADER_BITS:
        raise IndexError(f"Header bit {bit} out of range [0, {HEADER_BITS}).")
    return raster_position(bit, geom.width)


def payload_bit_position(byte_index: int, bit: int, geom: FrameGeometry) -> Tuple[int, int, int]:
    """(frame_index, x, y) of bit `bit` (7 = MSB) of payload byte `byte_index`.

    frame_index counts from 1; frame 0 is always the header.
    """
    if byte_index < 0:
        raise IndexError(f"Negative payload byte index {byte_index}.")
    if not 0 <= bit < BITS_PER_BYTE:
        raise IndexError(f"Bit {bit} out of range [0, {BITS_PER_BYTE}).")
    frame_index, in_frame = divmod(byte_index, geom.bytes_per_frame)
    y, column = divmod(in_frame, geom.bytes_per_row)
    x = column * BITS_PER_BYTE + (BITS_PER_BYTE - 1 - bit)
    return frame_index + 1, x, y


def pixel_payload_bit(x: int, y: int, geom: FrameGeometry) -> Tuple[int, int]:
    """Inverse of payload_bit_position within one frame: (x, y) -> (byte index in frame, bit)."""
    if not (0 <= x < geom.width and 0 <= y < geom.height):
        raise IndexError(f"Pixel ({x}, {y}) outside {geom.width}x{geom.height} frame.")
    column, offset = divmod(x, BITS_PER_BYTE)
    return y * geom.bytes_per_row + column, BITS_PER_BYTE - 1 - offset


def payload_frame_count(num_bytes: int, geom: FrameGeometry) -> int:
    return math.ceil(num_bytes / geom.bytes_per_frame)


def frame_count(num_bytes: int, geom: FrameGeometry) -> int:
    """Total frames in a stream carrying `num_bytes`: header plus payload frames."""
    return 1 + payload_frame_count(num_bytes, geom)


def payload_slice(frame_index: int, num_bytes: int, geom: FrameGeometry) -> Tuple[int, int]:
    """[start, end) payload byte range carried by payload frame `frame_index` (>= 1)."""
    if frame_index < 1:
        raise IndexError("Frame 0 is the header and carries no payload bytes.")
    start = (frame_index - 1) * geom.bytes_per_frame
    return min(start, num_bytes), min(start + geom.bytes_per_frame, num_bytes)


# --- Pixel Classification ---

def is_white(pixel) -> bool:
    r, g, b = (int(c) for c in pixel[:PIXEL_CHANNELS])
    return r > THRESHOLD and g > THRESHOLD and b > THRESHOLD


def as_frame_tensor(frame: Any) -> torch.Tensor:
    """Normalise a frame (numpy array, torch tensor, PIL image, nested lists) to an (H, W, C) tensor.

    Grayscale (H, W) frames are widened to three identical channels; extra
    channels beyond RGB (alpha) are dropped.
    """
    if isinstance(frame, torch.Tensor):
        tensor = frame.detach()
    else:
        tensor = torch.from_numpy(np.ascontiguousarray(np.asarray(frame)))
    if tensor.dim() == 2:
        tensor = tensor.unsqueeze(-1).expand(-1, -1, PIXEL_CHANNELS)
    if tensor.dim() != 3 or tensor.shape[2] < PIXEL_CHANNELS:
        raise GeometryMismatch(f"Frame must be an (H, W, 3) RGB grid, got shape {tuple(tensor.shape)}.")
    return tensor[:, :, :PIXEL_CHANNELS]


def classify(frame: Any) -> torch.Tensor:
    """Binary (H, W) uint8 tensor: 1 where every channel exceeds THRESHOLD."""
    tensor = as_frame_tensor(frame)
    return (tensor > THRESHOLD).all(dim=-1).to(torch.uint8)


def geometry_of(frame: Any) -> FrameGeometry:
    """Rediscover the geometry of a payload frame from its pixel grid."""
    tensor = as_frame_tensor(frame)
    height, width = int(tensor.shape[0]), int(tensor.shape[1])
    if width == 0 or width % BITS_PER_BYTE != 0:
        raise GeometryMismatch(f"Payload frame width {width} is not a multiple of {BITS_PER_BYTE}.")
    try:
        return FrameGeometry(width, height)
    except GeometryInvalid as e:
        raise GeometryMismatch(str(e)) from None


# --- Bit Packing ---

def bytes_to_bit_tensor(data_bytes: bytes, device: Optional[torch.device] = None) -> torch.Tensor:
    """Unpack bytes to a flat uint8 bit tensor, MSB first within each byte."""
    np_bytes = np.frombuffer(data_bytes, dtype=np.uint8)
    np_bits = np.unpackbits(np_bytes)
    bits = torch.from_numpy(np_bits)
    return bits.to(device) if device is not None else bits


def bits_to_bytes(bits: torch.Tensor) -> bytes:
    """Pack a flat bit tensor (MSB first per byte) into bytes. Length must be a multiple of 8."""
    bits_np = bits.cpu().numpy().astype(np.uint8)
    if bits_np.size % BITS_PER_BYTE != 0:
        raise ValueError(f"Bit count {bits_np.size} is not a multiple of {BITS_PER_BYTE}.")
    return np.packbits(bits_np).tobytes()


def bit_chunks_to_frame_batch(frame_bit_chunks: torch.Tensor, geom: FrameGeometry) -> torch.Tensor:
    """(num_frames, bits) -> (num_frames, H, W, 3) black/white pixels.

    Rows shorter than W*H are padded with zeros (black); raster pixel order is
    exactly bit order because W is a multiple of 8.
    """
    device = frame_bit_chunks.device
    if frame_bit_chunks.numel() == 0:
        return torch.empty(0, *geom.shape, dtype=torch.uint8, device=device)
    num_frames = frame_bit_chunks.shape[0]
    current_bits = frame_bit_chunks.shape[1]
    if current_bits < geom.pixels:
        frame_bit_chunks = torch.nn.functional.pad(frame_bit_chunks, (0, geom.pixels - current_bits))
    elif current_bits > geom.pixels:
        raise ValueError(f"{current_bits} bits do not fit in a {geom.width}x{geom.height} frame.")
    palette = BINARY_PALETTE_TENSOR.to(device)
    pixel_data = palette[frame_bit_chunks.long()]
    return pixel_data.view(num_frames, *geom.shape).to(torch.uint8)


def frame_to_bytes(frame: Any) -> bytes:
    """Classify every pixel and pack the raster scan into W*H/8 bytes."""
    bits = classify(frame).reshape(-1)
    return bits_to_bytes(bits)
