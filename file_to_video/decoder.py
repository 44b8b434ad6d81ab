# decoder.py

import io
import logging
from typing import Any, Callable, Iterator, Optional

from .errors import EmptyStream, GeometryMismatch, SinkFailure, SourceFailure, TruncatedStream
from .frame_io import ByteSink, iter_source
from .geometry import (
    HEADER_BITS,
    FrameGeometry,
    as_frame_tensor,
    classify,
    frame_to_bytes,
    geometry_of,
    raster_position,
)


def read_header(frame: Any) -> int:
    """Payload length N from the metadata frame (bit i at raster index i, LSB first)."""
    tensor = as_frame_tensor(frame)
    height, width = int(tensor.shape[0]), int(tensor.shape[1])
    if width * height < HEADER_BITS:
        raise GeometryMismatch(f"Header frame {width}x{height} is too small to hold {HEADER_BITS} header pixels.")
    grid = classify(tensor)
    num_bytes = 0
    for bit in range(HEADER_BITS):
        x, y = raster_position(bit, width)
        if grid[y, x]:
            num_bytes |= 1 << bit
    return num_bytes


def _pull(frames: Iterator[Any], index: int) -> Optional[Any]:
    try:
        return next(frames)
    except StopIteration:
        return None
    except Exception as e:
        raise SourceFailure(e, f"Frame source failed while reading frame {index}: {e}") from e


def _byte_writer(sink: ByteSink) -> Callable[[bytes], Any]:
    write = getattr(sink, "write", None)
    if write is None:
        # bytearray and similar append-only buffers
        write = getattr(sink, "extend", None)
    if write is None:
        raise TypeError(f"Byte sink {type(sink).__name__} has neither write() nor extend().")
    return write


def decode(source: Any, sink: ByteSink) -> int:
    """Recover the payload from `source` and append it to `sink`. Returns N.

    The first frame is the header. Geometry is taken from the first payload
    frame. Bytes go to the sink one row at a time, the final row cut at the
    last payload byte; no frame beyond the last one needed is pulled.
    """
    frames = iter_source(source)
    write = _byte_writer(sink)

    header = _pull(frames, 0)
    if header is None:
        raise EmptyStream()
    total_bytes = read_header(header)
    logging.info(f"Decoded header: payload is {total_bytes} bytes.")

    remaining = total_bytes
    emitted = 0
    frames_read = 1
    geom: Optional[FrameGeometry] = None

    while remaining > 0:
        frame = _pull(frames, frames_read)
        if frame is None:
            raise TruncatedStream(total_bytes, emitted, frames_read)
        frames_read += 1

        frame_geom = geometry_of(frame)
        if geom is None:
            geom = frame_geom
            logging.info(
                f"Payload frame geometry {geom.width}x{geom.height} "
                f"({geom.bytes_per_frame} bytes per frame)."
            )
        elif frame_geom != geom:
            raise GeometryMismatch(
                f"Frame {frames_read - 1} is {frame_geom.width}x{frame_geom.height}, "
                f"expected {geom.width}x{geom.height}."
            )

        frame_bytes = frame_to_bytes(frame)
        take = min(remaining, geom.bytes_per_frame)
        row_len = geom.bytes_per_row
        for offset in range(0, take, row_len):
            row = frame_bytes[offset:min(offset + row_len, take)]
            try:
                write(row)
            except Exception as e:
                raise SinkFailure(e, f"Byte sink failed after {emitted + offset} bytes: {e}") from e
        emitted += take
        remaining -= take
        logging.debug(f"Frame {frames_read - 1}: {take} bytes recovered, {remaining} remaining.")

    logging.info(f"Decoding complete: {emitted} bytes from {frames_read} frame(s).")
    return total_bytes


def decode_bytes(source: Any) -> bytes:
    """decode() into memory."""
    buffer = io.BytesIO()
    decode(source, buffer)
    return buffer.getvalue()


def probe_header(source: Any) -> int:
    """Read only the header frame of `source` and return the declared payload length."""
    header = _pull(iter_source(source), 0)
    if header is None:
        raise EmptyStream()
    return read_header(header)
