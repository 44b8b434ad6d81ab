"""Store arbitrary bytes as monochrome video frames and recover them exactly."""

from .decoder import decode, decode_bytes, probe_header, read_header
from .encoder import build_header_frame, build_payload_frames, encode, iter_frames
from .errors import (
    AdapterError,
    CodecError,
    DecodeError,
    EmptyStream,
    EncodeError,
    GeometryInvalid,
    GeometryMismatch,
    PayloadTooLarge,
    SinkFailure,
    SourceFailure,
    TruncatedStream,
)
from .frame_io import (
    FFmpegFrameSink,
    FFmpegFrameSource,
    ImageSequenceFrameSink,
    ImageSequenceFrameSource,
    MemoryFrameSink,
    MemoryFrameSource,
    ProgressFrameSink,
)
from .geometry import MAX_PAYLOAD_BYTES, THRESHOLD, FrameGeometry, frame_count

__version__ = "1.0.0"
