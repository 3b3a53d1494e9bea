"""Exception taxonomy for the texture pipeline."""

from typing import Optional


class TranscodeError(RuntimeError):
    """Base class for pipeline failures that are reported, not crashed on."""


class DecodeError(TranscodeError):
    """Raised when a container or image payload cannot be decoded.

    ``source`` identifies the offending input, e.g. ``"robot.glb"`` or
    ``"robot.glb:image[3] (wood.jpg)"``.
    """

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class EncodeError(TranscodeError):
    """Raised when the codec rejects a raster (e.g. zero dimensions)."""


class SerializationError(TranscodeError):
    """Raised when the final container cannot be assembled."""


class PipelineCancelledError(TranscodeError):
    """Raised when a user-requested cancellation is observed."""
