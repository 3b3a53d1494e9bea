"""Image buffer codec -- decode payload bytes to RGBA rasters and re-encode them.

A raster is a ``uint8`` numpy array of shape ``(H, W, 4)`` (straight RGBA).
"""

import io
import logging
import math
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError, features

from .errors import DecodeError, EncodeError

# Disable Pillow's global decompression bomb check; decode_image() validates
# the header against max_pixels per call instead, so parallel decodes don't
# need to share a global setting.
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger("texture_pipeline.codec")

MIME_JPEG = "image/jpeg"
MIME_PNG = "image/png"

# Pillow format names that a declared mime is expected to decode as.
_FORMATS_BY_MIME = {
    MIME_JPEG: {"JPEG", "MPO"},
    MIME_PNG: {"PNG"},
    "image/webp": {"WEBP"},
}

_HAS_LIBIMAGEQUANT = bool(features.check_feature("libimagequant"))


def ensure_rgba(arr: np.ndarray) -> np.ndarray:
    """Ensure array is (H, W, 4) uint8."""
    if arr.ndim == 2:
        arr = np.stack([arr] * 3, axis=-1)
    if arr.shape[-1] == 1:
        arr = np.concatenate([arr] * 3, axis=-1)
    if arr.shape[-1] == 3:
        alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
        arr = np.concatenate([arr.astype(np.uint8, copy=False), alpha], axis=-1)
    return np.ascontiguousarray(arr, dtype=np.uint8)


def check_raster(raster: np.ndarray) -> None:
    """Reject rasters the encoders cannot handle."""
    if not isinstance(raster, np.ndarray):
        raise EncodeError(f"Raster must be a numpy array, got {type(raster).__name__}")
    if raster.ndim != 3 or raster.shape[-1] != 4:
        raise EncodeError(f"Raster must be HxWx4 RGBA, got shape {raster.shape}")
    if raster.shape[0] == 0 or raster.shape[1] == 0:
        raise EncodeError(
            f"Cannot encode zero-dimension raster ({raster.shape[1]}x{raster.shape[0]})"
        )
    if raster.dtype != np.uint8:
        raise EncodeError(f"Raster must be uint8, got {raster.dtype}")


def decode_image(data: bytes, mime: Optional[str] = None,
                 source: Optional[str] = None, max_pixels: int = 0) -> np.ndarray:
    """Decode encoded image bytes into an RGBA raster.

    ``mime`` is the declared type; a mismatch with the sniffed format is
    logged but not fatal. Corrupt or unsupported payloads raise
    :class:`DecodeError` carrying ``source``.
    """
    if not data:
        raise DecodeError("empty image payload", source=source)
    try:
        with Image.open(io.BytesIO(data)) as img:
            if max_pixels > 0 and img.width * img.height > max_pixels:
                raise DecodeError(
                    f"image too large: {img.width}x{img.height} = "
                    f"{img.width * img.height:,} pixels (max {max_pixels:,})",
                    source=source,
                )
            expected = _FORMATS_BY_MIME.get(mime or "")
            if expected is not None and img.format not in expected:
                logger.warning(
                    "%s declares %s but payload decodes as %s",
                    source or "image", mime, img.format,
                )
            img.load()

            # 16-bit grayscale PNGs: Pillow's RGBA conversion clips instead
            # of scaling, so drop to 8 bits explicitly.
            if img.mode in ("I;16", "I;16B", "I;16L", "I;16N"):
                logger.debug("Reducing 16-bit mode %s to 8-bit for %s", img.mode, source)
                arr = (np.asarray(img, dtype=np.uint16) >> 8).astype(np.uint8)
                return ensure_rgba(arr)
            if img.mode == "I":
                arr = np.asarray(img, dtype=np.int64)
                peak = 65535 if arr.max(initial=0) > 255 else 255
                arr = np.clip(arr * 255 // peak, 0, 255).astype(np.uint8)
                return ensure_rgba(arr)

            if img.mode != "RGBA":
                with img.convert("RGBA") as converted:
                    arr = np.asarray(converted, dtype=np.uint8)
            else:
                arr = np.asarray(img, dtype=np.uint8)
            return np.array(arr, dtype=np.uint8, copy=True)
    except DecodeError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as exc:
        logger.debug("Decode failure for %s: %s", source, exc)
        raise DecodeError(f"cannot decode {mime or 'image'} payload: {exc}",
                          source=source) from exc


def jpeg_quality(quality: float) -> int:
    """Map a [0, 1] quality to Pillow's 1..100 scale (monotonic)."""
    q = int(math.floor(float(quality) * 100 + 0.5))
    return max(1, min(100, q))


def encode_jpeg(raster: np.ndarray, quality: float) -> bytes:
    """Encode a raster as baseline JPEG. Alpha is dropped."""
    check_raster(raster)
    if not (0.0 <= quality <= 1.0):
        raise EncodeError(f"JPEG quality must be in [0, 1], got {quality}")
    rgb = np.ascontiguousarray(raster[:, :, :3])
    out = io.BytesIO()
    try:
        with Image.fromarray(rgb) as img:
            img.save(out, format="JPEG", quality=jpeg_quality(quality), optimize=True)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"JPEG encode failed: {exc}") from exc
    return out.getvalue()


def quantize_raster(raster: np.ndarray, colors: int) -> Image.Image:
    """Reduce a raster to a ``P`` image with at most ``colors`` entries.

    Opaque rasters use median cut on RGB. Rasters with varying alpha are
    quantized in RGBA space so every palette entry carries its own alpha.
    """
    check_raster(raster)
    if not (2 <= colors <= 256):
        raise EncodeError(f"Palette size must be in [2, 256], got {colors}")

    with Image.fromarray(raster) as rgba:
        if _HAS_LIBIMAGEQUANT:
            return rgba.quantize(colors=colors, method=Image.Quantize.LIBIMAGEQUANT)
        if bool(np.all(raster[:, :, 3] == 255)):
            with rgba.convert("RGB") as rgb:
                return rgb.quantize(colors=colors, method=Image.Quantize.MEDIANCUT)
        return rgba.quantize(colors=colors, method=Image.Quantize.FASTOCTREE)


def encode_indexed_png(raster: np.ndarray, colors: int) -> bytes:
    """Encode a raster as palette PNG (lossy: at most ``colors`` entries)."""
    out = io.BytesIO()
    try:
        with quantize_raster(raster, colors) as indexed:
            indexed.save(out, format="PNG", optimize=True)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"Palette PNG encode failed: {exc}") from exc
    return out.getvalue()


def target_mime_for(declared_mime: Optional[str]) -> str:
    """Output encoding follows the declared mime: JPEG stays JPEG, rest -> PNG."""
    if (declared_mime or "").lower() == MIME_JPEG:
        return MIME_JPEG
    return MIME_PNG


def encode_image(raster: np.ndarray, target_mime: str, options) -> bytes:
    """Encode per target mime using the matching TranscodeOptions parameter."""
    if target_mime == MIME_JPEG:
        return encode_jpeg(raster, options.lossy_quality)
    if target_mime == MIME_PNG:
        return encode_indexed_png(raster, options.palette_size)
    raise EncodeError(f"Unsupported target mime: {target_mime}")
