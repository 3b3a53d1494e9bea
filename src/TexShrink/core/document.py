"""Asset document adapter over ``pygltflib``.

Decodes GLB bytes into a :class:`Document` that exposes a normalized view of
the scene graph and material slots, the raw image-definition table, and the
decode-time handle -> image-index association table. Substituted image
payloads are written back into the BIN chunk on :meth:`Document.serialize`.
"""

import base64
import copy
import dataclasses
import io
import logging
import struct
import threading
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote_to_bytes

from pygltflib import GLTF2, Buffer, BufferView

from .errors import DecodeError, SerializationError
from .records import ImageDefinition, TextureHandle

logger = logging.getLogger("texture_pipeline.document")

GLB_MAGIC = b"glTF"
_GLB_HEADER = struct.Struct("<4sII")

# Texture extensions that carry their own ``source`` image index.
_SOURCE_EXTENSIONS = (
    "EXT_texture_webp",
    "EXT_texture_avif",
    "KHR_texture_basisu",
    "MSFT_texture_dds",
)


def _lookup(obj, path: Sequence[str]):
    """Follow a declared attribute/key path through pygltflib objects and dicts."""
    for segment in path:
        if obj is None:
            return None
        if isinstance(obj, dict):
            obj = obj.get(segment)
        else:
            obj = getattr(obj, segment, None)
    return obj


def _texture_info_index(info) -> Optional[int]:
    index = _lookup(info, ("index",))
    return index if isinstance(index, int) and not isinstance(index, bool) else None


def _parse_data_uri(uri: str) -> Tuple[Optional[str], bytes]:
    """Return (media type, payload) of a ``data:`` URI."""
    header, _, body = uri.partition(",")
    meta = header[len("data:"):].split(";")
    media_type = meta[0] or None
    if "base64" in meta[1:]:
        return media_type, base64.b64decode(body, validate=False)
    return media_type, unquote_to_bytes(body)


def _pad4(data: bytearray) -> None:
    data.extend(b"\x00" * ((4 - len(data) % 4) % 4))


def check_glb_header(data: bytes, source: Optional[str] = None) -> None:
    """Validate the 12-byte GLB header before handing bytes to pygltflib."""
    if len(data) < _GLB_HEADER.size:
        raise DecodeError(f"too short for a GLB header ({len(data)} bytes)", source=source)
    magic, version, length = _GLB_HEADER.unpack_from(data, 0)
    if magic != GLB_MAGIC:
        raise DecodeError(f"bad GLB magic {magic!r}", source=source)
    if version != 2:
        raise DecodeError(f"unsupported GLB version {version}", source=source)
    if length > len(data):
        raise DecodeError(
            f"truncated GLB: header declares {length} bytes, got {len(data)}",
            source=source,
        )


def decode_document(data: bytes, name: str = "model") -> "Document":
    """Decode GLB bytes into a :class:`Document`."""
    check_glb_header(data, source=name)
    try:
        gltf = GLTF2.load_binary_from_file_object(io.BytesIO(data))
    except Exception as exc:
        raise DecodeError(f"container parse failed: {exc}", source=name) from exc
    if gltf is None:
        raise DecodeError("container has no JSON chunk", source=name)
    try:
        return Document(gltf, name=name)
    except (TypeError, ValueError, IndexError, AttributeError) as exc:
        raise DecodeError(f"malformed container: {exc}", source=name) from exc


class Document:
    """Decoded in-memory view of one container."""

    def __init__(self, gltf: GLTF2, name: str = "model"):
        self.name = name
        self.gltf = gltf
        self._blob = bytes(gltf.binary_blob() or b"")
        self._lock = threading.Lock()
        self._replacements: Dict[int, Tuple[bytes, str]] = {}
        self._runtime_slots: Dict[Tuple[int, Tuple[str, ...]], TextureHandle] = {}

        self._images: List[ImageDefinition] = [
            self._image_definition(i, img) for i, img in enumerate(gltf.images or [])
        ]
        self._texture_handles: Dict[int, TextureHandle] = {}
        association: Dict[TextureHandle, int] = {}
        self._next_key = 0
        by_source: Dict[int, TextureHandle] = {}
        for t_idx, tex in enumerate(gltf.textures or []):
            source = self._texture_source(tex)
            if source is not None and source in by_source:
                handle = by_source[source]
                handle.texture_indices = handle.texture_indices + (t_idx,)
            else:
                handle = self._new_handle_for_texture(t_idx, tex, source)
                if source is not None:
                    by_source[source] = handle
                    association[handle] = source
            self._texture_handles[t_idx] = handle
        # Built once here; read-only afterwards.
        self.association: Mapping[TextureHandle, int] = MappingProxyType(association)

    # ------------------------------------------
    # Decode helpers
    # ------------------------------------------

    @staticmethod
    def _image_definition(index: int, img) -> ImageDefinition:
        mime = getattr(img, "mimeType", None)
        uri = getattr(img, "uri", None)
        if not mime and uri and uri.startswith("data:"):
            mime = uri[len("data:"):].split(",", 1)[0].split(";", 1)[0] or None
        return ImageDefinition(
            index=index,
            mime_type=mime,
            uri=uri,
            name=getattr(img, "name", None) or None,
            buffer_view=getattr(img, "bufferView", None),
        )

    @staticmethod
    def _texture_source(tex) -> Optional[int]:
        source = getattr(tex, "source", None)
        if isinstance(source, int):
            return source
        for ext_name in _SOURCE_EXTENSIONS:
            ext_source = _lookup(tex, ("extensions", ext_name, "source"))
            if isinstance(ext_source, int):
                return ext_source
        return None

    def _new_handle_for_texture(self, t_idx: int, tex, source: Optional[int]) -> TextureHandle:
        image_def = self.image_definition(source) if source is not None else None
        payload = None
        if image_def is not None:
            payload = self._read_original_payload(image_def)
        name = getattr(tex, "name", None) or (image_def.name if image_def else None)
        handle = TextureHandle(
            key=self._next_key,
            name=name,
            payload=payload,
            mime_type=image_def.mime_type if image_def else None,
            texture_indices=(t_idx,),
        )
        self._next_key += 1
        return handle

    def _read_original_payload(self, image_def: ImageDefinition) -> Optional[bytes]:
        try:
            if image_def.buffer_view is not None:
                return self._read_buffer_view(image_def.buffer_view)
            if image_def.is_data_uri:
                return _parse_data_uri(image_def.uri)[1]
        except (IndexError, ValueError) as exc:
            logger.warning("[%s] Unreadable payload for %s: %s",
                           self.name, image_def.describe(), exc)
            return None
        logger.debug("[%s] %s is not embedded (uri=%s)",
                     self.name, image_def.describe(), image_def.uri)
        return None

    def _read_buffer_view(self, bv_index: int) -> bytes:
        views = self.gltf.bufferViews or []
        if not (0 <= bv_index < len(views)):
            raise IndexError(f"bufferView {bv_index} out of range")
        bv = views[bv_index]
        buffers = self.gltf.buffers or []
        if not isinstance(bv.buffer, int) or not (0 <= bv.buffer < len(buffers)):
            raise IndexError(f"buffer {bv.buffer} out of range")
        buffer = buffers[bv.buffer]
        if buffer.uri is None:
            source = self._blob
        elif buffer.uri.startswith("data:"):
            source = _parse_data_uri(buffer.uri)[1]
        else:
            raise ValueError(f"buffer {bv.buffer} is external ({buffer.uri})")
        start = bv.byteOffset or 0
        end = start + (bv.byteLength or 0)
        if end > len(source):
            raise ValueError(f"bufferView {bv_index} exceeds buffer length")
        return bytes(source[start:end])

    # ------------------------------------------
    # Normalized graph view
    # ------------------------------------------

    @property
    def images(self) -> Tuple[ImageDefinition, ...]:
        return tuple(self._images)

    def image_definition(self, index: Optional[int]) -> Optional[ImageDefinition]:
        if index is None or not (0 <= index < len(self._images)):
            return None
        return self._images[index]

    @property
    def handles(self) -> Tuple[TextureHandle, ...]:
        seen = {}
        for handle in self._texture_handles.values():
            seen.setdefault(id(handle), handle)
        for handle in self._runtime_slots.values():
            seen.setdefault(id(handle), handle)
        return tuple(seen.values())

    def has_scenes(self) -> bool:
        return bool(self.gltf.scenes)

    def scene_root_nodes(self) -> List[int]:
        """Root nodes of the default scene, or of every scene without one."""
        scenes = self.gltf.scenes or []
        default = self.gltf.scene
        if isinstance(default, int) and 0 <= default < len(scenes):
            return list(scenes[default].nodes or [])
        roots: List[int] = []
        for scene in scenes:
            for node in scene.nodes or []:
                if node not in roots:
                    roots.append(node)
        return roots

    def node_children(self, node_index: int) -> List[int]:
        nodes = self.gltf.nodes or []
        if not (0 <= node_index < len(nodes)):
            return []
        return list(nodes[node_index].children or [])

    def node_mesh(self, node_index: int) -> Optional[int]:
        nodes = self.gltf.nodes or []
        if not (0 <= node_index < len(nodes)):
            return None
        return nodes[node_index].mesh

    def mesh_count(self) -> int:
        return len(self.gltf.meshes or [])

    def mesh_materials(self, mesh_index: int) -> List[int]:
        meshes = self.gltf.meshes or []
        if not (0 <= mesh_index < len(meshes)):
            return []
        return [
            p.material for p in (meshes[mesh_index].primitives or [])
            if isinstance(p.material, int)
        ]

    def material_slot_handle(self, material_index: int,
                             path: Sequence[str]) -> Optional[TextureHandle]:
        """Return the handle bound to ``path`` on a material, if any."""
        path = tuple(path)
        runtime = self._runtime_slots.get((material_index, path))
        if runtime is not None:
            return runtime
        materials = self.gltf.materials or []
        if not (0 <= material_index < len(materials)):
            return None
        tex_index = _texture_info_index(_lookup(materials[material_index], path))
        if tex_index is None:
            return None
        return self._texture_handles.get(tex_index)

    def attach_texture(self, material_index: int, path: Sequence[str],
                       payload: bytes, mime_type: Optional[str] = None,
                       name: Optional[str] = None) -> TextureHandle:
        """Bind a runtime-only texture to a material slot.

        The handle has no association entry, so it is never written back
        into the container; it only shows up in standalone exports.
        """
        handle = TextureHandle(
            key=self._next_key, name=name, payload=payload, mime_type=mime_type,
        )
        self._next_key += 1
        self._runtime_slots[(material_index, tuple(path))] = handle
        return handle

    # ------------------------------------------
    # Substitution and serialization
    # ------------------------------------------

    def image_payload(self, index: int) -> Optional[bytes]:
        """Current payload of an image (substituted bytes win)."""
        with self._lock:
            if index in self._replacements:
                return self._replacements[index][0]
        image_def = self.image_definition(index)
        return self._read_original_payload(image_def) if image_def else None

    @property
    def substituted_indices(self) -> Tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._replacements))

    def substitute(self, index: int, payload: bytes, mime_type: str) -> None:
        """Replace one image's payload and mime annotation. Thread-safe."""
        if self.image_definition(index) is None:
            raise IndexError(f"[{self.name}] no image definition at index {index}")
        with self._lock:
            self._replacements[index] = (bytes(payload), mime_type)
            self._images[index] = dataclasses.replace(
                self._images[index], mime_type=mime_type
            )

    def serialize(self) -> bytes:
        """Return GLB bytes with every substituted payload embedded inline."""
        with self._lock:
            replacements = dict(self._replacements)
        try:
            gltf = copy.deepcopy(self.gltf)
            if replacements:
                self._apply_replacements(gltf, replacements)
            return b"".join(gltf.save_to_bytes())
        except SerializationError:
            raise
        except Exception as exc:
            raise SerializationError(f"[{self.name}] GLB assembly failed: {exc}") from exc

    def _view_refcounts(self, gltf: GLTF2) -> Dict[int, int]:
        counts: Dict[int, int] = {}

        def _bump(index):
            if isinstance(index, int):
                counts[index] = counts.get(index, 0) + 1

        for img in gltf.images or []:
            _bump(img.bufferView)
        for acc in gltf.accessors or []:
            _bump(acc.bufferView)
            _bump(_lookup(acc, ("sparse", "indices", "bufferView")))
            _bump(_lookup(acc, ("sparse", "values", "bufferView")))
        return counts

    def _apply_replacements(self, gltf: GLTF2,
                            replacements: Dict[int, Tuple[bytes, str]]) -> None:
        if not gltf.buffers:
            gltf.buffers = [Buffer(byteLength=0)]
        elif gltf.buffers[0].uri is not None:
            raise SerializationError(
                f"[{self.name}] buffer 0 is not stored in the GLB BIN chunk"
            )
        if gltf.bufferViews is None:
            gltf.bufferViews = []
        views = gltf.bufferViews
        refcounts = self._view_refcounts(gltf)
        original_count = len(views)

        new_payloads: Dict[int, bytes] = {}
        for index in sorted(replacements):
            payload, mime = replacements[index]
            img = gltf.images[index]
            bv_index = img.bufferView
            exclusive = (
                isinstance(bv_index, int)
                and 0 <= bv_index < original_count
                and refcounts.get(bv_index, 0) == 1
                and views[bv_index].buffer == 0
            )
            if not exclusive:
                views.append(BufferView(buffer=0, byteOffset=0, byteLength=len(payload)))
                bv_index = len(views) - 1
                img.bufferView = bv_index
                img.uri = None
            new_payloads[bv_index] = payload
            img.mimeType = mime

        order = sorted(
            (i for i, bv in enumerate(views) if bv.buffer == 0),
            key=lambda i: (i >= original_count, views[i].byteOffset or 0, i),
        )
        blob = bytearray()
        for i in order:
            bv = views[i]
            if i in new_payloads:
                data = new_payloads[i]
            else:
                start = bv.byteOffset or 0
                end = start + (bv.byteLength or 0)
                if end > len(self._blob):
                    raise SerializationError(
                        f"[{self.name}] bufferView {i} exceeds the BIN chunk"
                    )
                data = self._blob[start:end]
            _pad4(blob)
            bv.byteOffset = len(blob)
            bv.byteLength = len(data)
            blob.extend(data)
        _pad4(blob)
        gltf.buffers[0].byteLength = len(blob)
        gltf.set_binary_blob(bytes(blob))
        logger.debug(
            "[%s] Rebuilt BIN chunk: %d -> %d bytes (%d image(s) replaced)",
            self.name, len(self._blob), len(blob), len(replacements),
        )
