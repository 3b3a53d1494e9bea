"""Write pipeline outputs to disk: containers, texture folders and ZIP bundles."""

import io
import logging
import os
import re
import threading
import zipfile
from typing import Dict, Mapping, Tuple

from .core.naming import common_prefix
from .core.records import BatchReport

logger = logging.getLogger("texture_pipeline.bundle")

TextureSets = Dict[str, Dict[str, bytes]]


def input_name_for(path: str) -> str:
    """``/models/robot.GLB`` -> ``robot``."""
    return re.sub(r"\.glb$", "", os.path.basename(path), flags=re.IGNORECASE)


def output_file_name(name: str, suffix: str = "") -> str:
    return f"{name}{suffix}.glb"


def texture_sets(batch: BatchReport) -> TextureSets:
    """Per input, the successfully encoded textures keyed by file name."""
    return {name: rep.textures() for name, rep in batch.items()}


def write_bytes(path: str, data: bytes) -> None:
    """Write ``data`` atomically (temp file + rename)."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def zip_bytes(entries: Mapping[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for arcname, data in entries.items():
            archive.writestr(arcname, data)
    return buf.getvalue()


def bundle_outputs(outputs: Mapping[str, bytes], suffix: str = "",
                   fallback: str = "models") -> Tuple[str, bytes]:
    """ZIP several containers as ``<common prefix>.glbs.zip``."""
    entries = {output_file_name(name, suffix): data for name, data in outputs.items()}
    zip_name = f"{common_prefix(outputs, fallback)}.glbs.zip"
    logger.info("Bundling %d container(s) into %s", len(entries), zip_name)
    return zip_name, zip_bytes(entries)


def bundle_textures(sets: Mapping[str, Mapping[str, bytes]],
                    fallback: str = "models") -> Tuple[str, bytes]:
    """ZIP texture sets with one folder per input.

    A single input is named after itself, several after their common prefix.
    """
    entries = {}
    for name, textures in sets.items():
        for file_name, data in textures.items():
            entries[f"{name}/{file_name}"] = data
    if len(sets) == 1:
        stem = next(iter(sets))
    else:
        stem = common_prefix(sets, fallback)
    zip_name = f"{stem}.textures.zip"
    logger.info("Bundling %d texture(s) from %d container(s) into %s",
                len(entries), len(sets), zip_name)
    return zip_name, zip_bytes(entries)


def write_texture_dirs(sets: Mapping[str, Mapping[str, bytes]], out_dir: str) -> int:
    """Write ``out_dir/<input>/<texture>`` files; returns the count written."""
    written = 0
    for name, textures in sets.items():
        for file_name, data in textures.items():
            write_bytes(os.path.join(out_dir, name, file_name), data)
            written += 1
    logger.info("Wrote %d texture(s) under %s", written, out_dir)
    return written
