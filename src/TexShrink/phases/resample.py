"""Scale rasters by an arbitrary factor with a Lanczos-class filter.

Color channels are premultiplied by alpha before filtering so transparent
texels don't bleed their (invisible) color into visible neighbours.
"""

import logging
import math
from typing import Tuple

import cv2
import numpy as np

from ..core.errors import EncodeError

logger = logging.getLogger("texture_pipeline.resample")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def target_size(width: int, height: int, scale_factor: float) -> Tuple[int, int]:
    """Per-axis ``max(1, round(dim * factor))``."""
    return (
        max(1, round_half_up(width * scale_factor)),
        max(1, round_half_up(height * scale_factor)),
    )


def resample(raster: np.ndarray, scale_factor: float) -> np.ndarray:
    """Return ``raster`` scaled by ``scale_factor`` (identity at 1)."""
    if not (0.0 < scale_factor <= 1.0):
        raise ValueError(f"scale_factor must be in (0, 1], got {scale_factor}")
    if scale_factor == 1:
        return raster
    if raster.ndim != 3 or raster.shape[0] == 0 or raster.shape[1] == 0:
        raise EncodeError(f"Cannot resample degenerate raster of shape {raster.shape}")

    src_h, src_w = raster.shape[:2]
    target_w, target_h = target_size(src_w, src_h, scale_factor)
    if (target_w, target_h) == (src_w, src_h):
        return raster.copy()

    src = raster.astype(np.float32) / 255.0
    alpha = src[:, :, 3:4]
    src[:, :, :3] *= alpha

    # Progressive downsample to avoid aliasing on large jumps
    curr_h, curr_w = src_h, src_w
    while curr_w > target_w * 2 or curr_h > target_h * 2:
        next_w = max(curr_w // 2, target_w)
        next_h = max(curr_h // 2, target_h)
        src = cv2.resize(src, (next_w, next_h), interpolation=cv2.INTER_AREA)
        curr_w, curr_h = next_w, next_h

    resized = cv2.resize(src, (target_w, target_h), interpolation=cv2.INTER_LANCZOS4)
    if resized.ndim == 2:
        resized = resized[:, :, np.newaxis]
    resized = np.clip(resized, 0.0, 1.0)

    out_alpha = resized[:, :, 3:4]
    rgb = np.divide(
        resized[:, :, :3], out_alpha,
        out=np.zeros_like(resized[:, :, :3]),
        where=out_alpha > 1e-6,
    )
    out = np.concatenate([np.clip(rgb, 0.0, 1.0), out_alpha], axis=2)
    logger.debug("Resampled %dx%d -> %dx%d", src_w, src_h, target_w, target_h)
    return np.round(out * 255.0).astype(np.uint8)
