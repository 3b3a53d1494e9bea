"""Output file naming for transcoded images."""

import re
from typing import Iterable, Optional

from .io import MIME_JPEG
from .records import ImageDefinition, TextureHandle


def base_name_for(image_def: ImageDefinition) -> str:
    """Prefer the explicit name, then the URI's last segment, then ``image_<i>``."""
    if image_def.name:
        return _safe(image_def.name)
    if image_def.uri and not image_def.is_data_uri:
        segment = re.split(r"[\\/]", image_def.uri)[-1]
        safe = _safe(segment, "")
        if safe:
            return safe
    return f"image_{image_def.index}"


def with_target_extension(base_name: str, target_mime: str) -> str:
    """Force the extension to match the target encoding.

    JPEG targets get ``.jpg`` unless the name already used ``.jpeg``; every
    other target gets ``.png``. A missing extension is appended; a wrong one
    replaces the last suffix.
    """
    ext = base_name.rsplit(".", 1)[-1].lower() if "." in base_name else None
    need_jpeg = target_mime == MIME_JPEG
    want_ext = ("jpeg" if ext == "jpeg" else "jpg") if need_jpeg else "png"
    if ext is None:
        return f"{base_name}.{want_ext}"
    is_jpeg = ext in ("jpg", "jpeg")
    if (need_jpeg and not is_jpeg) or (not need_jpeg and ext != "png"):
        return f"{base_name.rsplit('.', 1)[0]}.{want_ext}"
    return base_name


def output_name_for(image_def: ImageDefinition, target_mime: str) -> str:
    return with_target_extension(base_name_for(image_def), target_mime)


def output_name_for_handle(handle: TextureHandle, target_mime: str) -> str:
    """Name for an uncorrelated handle (standalone export only)."""
    return with_target_extension(_safe(handle.describe()), target_mime)


def _safe(name: str, fallback: str = "texture") -> str:
    # Names end up as file and ZIP entry names: no separators, no leading dots.
    return re.sub(r"[\\/:*?\"<>|]+", "_", name).strip().lstrip(".") or fallback


def dedupe_name(name: str, taken: Iterable[str]) -> str:
    """Return ``name`` or ``stem_<k>.ext`` so it doesn't collide with ``taken``."""
    taken = set(taken)
    if name not in taken:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    k = 1
    while True:
        candidate = f"{stem}_{k}.{ext}" if ext else f"{stem}_{k}"
        if candidate not in taken:
            return candidate
        k += 1


def common_prefix(names: Iterable[str], fallback: Optional[str] = None) -> str:
    """Longest common prefix of ``names`` with trailing ``-_.`` stripped."""
    names = list(names)
    if not names:
        return fallback or ""
    prefix = names[0]
    for name in names[1:]:
        while prefix and not name.startswith(prefix):
            prefix = prefix[:-1]
        if not prefix:
            break
    prefix = re.sub(r"[-_.]+$", "", prefix)
    return prefix or (fallback or "")
