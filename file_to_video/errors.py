# errors.py


class CodecError(Exception):
    """Base class for every error raised by the codec."""


class EncodeError(CodecError):
    pass


class DecodeError(CodecError):
    pass


class AdapterError(CodecError):
    """A frame or byte adapter failed. The original exception is kept in `inner`."""

    def __init__(self, inner: BaseException, message: str = ""):
        self.inner = inner
        super().__init__(message or f"{type(inner).__name__}: {inner}")


# --- Input validation (raised before any frame is emitted) ---

class GeometryInvalid(EncodeError, ValueError):
    pass


class PayloadTooLarge(EncodeError, ValueError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload of {size} bytes exceeds the 32-bit header limit of {limit} bytes.")


# --- Stream shape ---

class EmptyStream(DecodeError):
    def __init__(self, message: str = "Frame source yielded no frames (missing header frame)."):
        super().__init__(message)


class TruncatedStream(DecodeError):
    def __init__(self, expected: int, received: int, frames_read: int):
        self.expected = expected
        self.received = received
        self.frames_read = frames_read
        super().__init__(
            f"Frame source exhausted after {frames_read} frame(s): "
            f"recovered {received} of {expected} bytes."
        )


class GeometryMismatch(DecodeError):
    pass


# --- Adapters ---

class SinkFailure(AdapterError):
    pass


class SourceFailure(AdapterError):
    pass
