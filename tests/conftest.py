"""Shared test fixtures: raster factories and a byte-level GLB builder."""

import base64
import io
import json
import struct

import numpy as np
import pytest
from PIL import Image

from TexShrink.config import PipelineConfig


def gradient_raster(width: int, height: int, alpha: bool = False) -> np.ndarray:
    """RGBA uint8 gradient; ``alpha`` adds a horizontal alpha ramp."""
    ys, xs = np.mgrid[0:height, 0:width]
    r = (xs * 255 // max(width - 1, 1)).astype(np.uint8)
    g = (ys * 255 // max(height - 1, 1)).astype(np.uint8)
    b = ((xs + ys) * 255 // max(width + height - 2, 1)).astype(np.uint8)
    a = r.copy() if alpha else np.full_like(r, 255)
    return np.stack([r, g, b, a], axis=-1)


def solid_raster(width: int, height: int, color=(200, 50, 50, 255)) -> np.ndarray:
    arr = np.zeros((height, width, 4), dtype=np.uint8)
    arr[:, :] = color
    return arr


def encode_png(raster: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(raster).save(buf, format="PNG")
    return buf.getvalue()


def encode_jpeg(raster: np.ndarray, quality: int = 90) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(raster[:, :, :3])).save(
        buf, format="JPEG", quality=quality
    )
    return buf.getvalue()


def png_bytes(width: int = 16, height: int = 16, alpha: bool = False) -> bytes:
    return encode_png(gradient_raster(width, height, alpha=alpha))


def jpeg_bytes(width: int = 16, height: int = 16) -> bytes:
    return encode_jpeg(gradient_raster(width, height))


def image_size(data: bytes):
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def image_format(data: bytes) -> str:
    with Image.open(io.BytesIO(data)) as img:
        return img.format


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * ((4 - len(data) % 4) % 4)


class GlbBuilder:
    """Assemble a minimal glTF 2.0 binary container by hand.

    Every image payload gets its own buffer view unless ``uri`` is given.
    Meshes carry one POSITION accessor per primitive so non-image buffer
    views are present too.
    """

    def __init__(self):
        self.doc = {"asset": {"version": "2.0"}}
        self.bin = bytearray()

    def _append(self, key: str, item: dict) -> int:
        self.doc.setdefault(key, []).append(item)
        return len(self.doc[key]) - 1

    def add_view(self, data: bytes) -> int:
        self.bin.extend(b"\x00" * ((4 - len(self.bin) % 4) % 4))
        view = {"buffer": 0, "byteOffset": len(self.bin), "byteLength": len(data)}
        self.bin.extend(data)
        return self._append("bufferViews", view)

    def add_image(self, payload: bytes = None, mime: str = "image/png",
                  name: str = None, uri: str = None, buffer_view: int = None) -> int:
        image = {}
        if uri is not None:
            image["uri"] = uri
        else:
            image["bufferView"] = (
                buffer_view if buffer_view is not None else self.add_view(payload)
            )
        if mime:
            image["mimeType"] = mime
        if name:
            image["name"] = name
        return self._append("images", image)

    def add_data_uri_image(self, payload: bytes, mime: str = "image/png",
                           name: str = None) -> int:
        uri = f"data:{mime};base64," + base64.b64encode(payload).decode("ascii")
        image = {"uri": uri}
        if name:
            image["name"] = name
        return self._append("images", image)

    def add_texture(self, source: int = None, name: str = None,
                    extensions: dict = None) -> int:
        texture = {}
        if source is not None:
            texture["source"] = source
        if name:
            texture["name"] = name
        if extensions:
            texture["extensions"] = extensions
        return self._append("textures", texture)

    def add_material(self, base_color: int = None, normal: int = None,
                     emissive: int = None, extensions: dict = None, **extra) -> int:
        material = dict(extra)
        if base_color is not None:
            material["pbrMetallicRoughness"] = {"baseColorTexture": {"index": base_color}}
        if normal is not None:
            material["normalTexture"] = {"index": normal}
        if emissive is not None:
            material["emissiveTexture"] = {"index": emissive}
        if extensions:
            material["extensions"] = extensions
        return self._append("materials", material)

    def add_mesh(self, *materials: int) -> int:
        primitives = []
        for material in materials:
            view = self.add_view(struct.pack("<3f", 0.0, 0.0, 0.0))
            accessor = self._append("accessors", {
                "bufferView": view,
                "componentType": 5126,
                "count": 1,
                "type": "VEC3",
                "min": [0.0, 0.0, 0.0],
                "max": [0.0, 0.0, 0.0],
            })
            primitives.append({"attributes": {"POSITION": accessor}, "material": material})
        return self._append("meshes", {"primitives": primitives})

    def add_node(self, mesh: int = None, children=None) -> int:
        node = {}
        if mesh is not None:
            node["mesh"] = mesh
        if children:
            node["children"] = list(children)
        return self._append("nodes", node)

    def add_scene(self, *nodes: int, default: bool = True) -> int:
        index = self._append("scenes", {"nodes": list(nodes)})
        if default:
            self.doc["scene"] = index
        return index

    def textured_model(self, *materials: int) -> None:
        """Hang every material on its own mesh under one default scene."""
        nodes = [self.add_node(mesh=self.add_mesh(m)) for m in materials]
        self.add_scene(*nodes)

    def build(self) -> bytes:
        doc = dict(self.doc)
        bin_chunk = _pad(bytes(self.bin), b"\x00")
        if bin_chunk:
            doc["buffers"] = [{"byteLength": len(bin_chunk)}]
        json_chunk = _pad(json.dumps(doc, separators=(",", ":")).encode("utf-8"), b" ")
        total = 12 + 8 + len(json_chunk) + (8 + len(bin_chunk) if bin_chunk else 0)
        out = bytearray(struct.pack("<4sII", b"glTF", 2, total))
        out += struct.pack("<II", len(json_chunk), 0x4E4F534A) + json_chunk
        if bin_chunk:
            out += struct.pack("<II", len(bin_chunk), 0x004E4942) + bin_chunk
        return bytes(out)


def read_glb(data: bytes):
    """Split GLB bytes into (json dict, bin bytes) without pygltflib."""
    magic, version, length = struct.unpack_from("<4sII", data, 0)
    assert magic == b"glTF" and version == 2 and length == len(data)
    offset = 12
    doc, blob = None, b""
    while offset < length:
        chunk_len, chunk_type = struct.unpack_from("<II", data, offset)
        chunk = data[offset + 8: offset + 8 + chunk_len]
        if chunk_type == 0x4E4F534A:
            doc = json.loads(chunk.decode("utf-8"))
        elif chunk_type == 0x004E4942:
            blob = chunk
        offset += 8 + chunk_len
    return doc, blob


def image_payload_from_glb(data: bytes, image_index: int) -> bytes:
    doc, blob = read_glb(data)
    view = doc["bufferViews"][doc["images"][image_index]["bufferView"]]
    start = view.get("byteOffset", 0)
    return blob[start:start + view["byteLength"]]


def simple_glb(*payloads, mimes=None, names=None) -> bytes:
    """One material per payload, each on the base color slot."""
    builder = GlbBuilder()
    materials = []
    for i, payload in enumerate(payloads):
        mime = mimes[i] if mimes else "image/png"
        name = names[i] if names else None
        image = builder.add_image(payload, mime=mime, name=name)
        materials.append(builder.add_material(base_color=builder.add_texture(image)))
    builder.textured_model(*materials)
    return builder.build()


def quiet_config(**overrides) -> PipelineConfig:
    config = PipelineConfig(show_progress=False, **overrides)
    return config


@pytest.fixture
def config():
    """PipelineConfig with progress bars disabled."""
    return quiet_config()
