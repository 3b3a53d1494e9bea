"""Core utilities -- re-exports all public symbols for convenience."""

from .errors import (
    TranscodeError,
    DecodeError,
    EncodeError,
    SerializationError,
    PipelineCancelledError,
)
from .records import (
    ImageDefinition,
    TextureHandle,
    ImageState,
    TranscodeResult,
    DocumentReport,
    BatchReport,
)
from .io import (
    MIME_JPEG,
    MIME_PNG,
    ensure_rgba,
    decode_image,
    encode_jpeg,
    encode_indexed_png,
    encode_image,
    target_mime_for,
)
from .naming import output_name_for, output_name_for_handle, dedupe_name, common_prefix
from .document import Document, decode_document
from .logging import setup_logging

__all__ = [
    "TranscodeError", "DecodeError", "EncodeError", "SerializationError",
    "PipelineCancelledError",
    "ImageDefinition", "TextureHandle", "ImageState", "TranscodeResult",
    "DocumentReport", "BatchReport",
    "MIME_JPEG", "MIME_PNG", "ensure_rgba", "decode_image",
    "encode_jpeg", "encode_indexed_png", "encode_image", "target_mime_for",
    "output_name_for", "output_name_for_handle", "dedupe_name", "common_prefix",
    "Document", "decode_document",
    "setup_logging",
]
