"""
Round-trip Tests
================

decode(encode(P)) == P across payload sizes, geometries and mild recolouring.
"""

import numpy as np
import pytest

from file_to_video import FrameGeometry, MemoryFrameSink, MemoryFrameSource, decode_bytes, encode, frame_count


def roundtrip(payload, geom, transform=None):
    sink = MemoryFrameSink()
    encode(payload, geom, sink)
    frames = sink.frames if transform is None else [transform(f) for f in sink.frames]
    return decode_bytes(MemoryFrameSource(frames)), len(sink.frames)


def size_cases(geom):
    b = geom.bytes_per_frame
    return [0, 1, b - 1, b, b + 1, 10 * b + 7, 1 << 16]


@pytest.mark.parametrize("width,height", [(16, 2), (64, 16), (40, 3)])
def test_roundtrip_sizes(width, height, random_payload):
    geom = FrameGeometry(width, height)
    for size in size_cases(geom):
        payload = random_payload(size)
        recovered, frames = roundtrip(payload, geom)
        assert recovered == payload, f"size {size} on {width}x{height}"
        assert frames == frame_count(size, geom)


def test_roundtrip_full_hd_frame(random_payload):
    geom = FrameGeometry(1920, 1072)
    payload = random_payload(geom.bytes_per_frame + 123)
    recovered, frames = roundtrip(payload, geom)
    assert frames == 3
    assert recovered == payload


@pytest.mark.parametrize("payload", [b"\x00" * 37, b"\xff" * 37, bytes(range(256))])
def test_roundtrip_uniform_and_sequential_bytes(tiny_geom, payload):
    assert roundtrip(payload, tiny_geom)[0] == payload


def test_threshold_tolerance(small_geom, random_payload):
    """White shifted to (200,180,210) and black to (50,50,50) still decodes."""
    def recolour(frame):
        white = (frame == 255).all(axis=-1, keepdims=True)
        return np.where(white, np.array([200, 180, 210], dtype=np.uint8), np.array([50, 50, 50], dtype=np.uint8))

    payload = random_payload(1000)
    assert roundtrip(payload, small_geom, recolour)[0] == payload


def test_pixels_past_payload_end_are_ignored(tiny_geom):
    sink = MemoryFrameSink()
    encode(b"\x5a", tiny_geom, sink)
    header, payload_frame = (f.copy() for f in sink.frames)
    payload_frame[0, 8:] = 255
    payload_frame[1] = 255
    assert decode_bytes([header, payload_frame]) == b"\x5a"
