"""Find the textures a scene actually renders and map them back to image records.

The walk covers scene nodes -> meshes -> primitive materials -> the declared
texture slot roles below. Handles are deduplicated by identity, so a texture
shared by several slots or materials is returned once.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.document import Document
from ..core.records import ImageDefinition, TextureHandle

logger = logging.getLogger("texture_pipeline.resolve")

# role -> attribute/key path on a glTF material
TEXTURE_SLOTS: Mapping[str, Tuple[str, ...]] = {
    "base_color": ("pbrMetallicRoughness", "baseColorTexture"),
    "metallic_roughness": ("pbrMetallicRoughness", "metallicRoughnessTexture"),
    "normal": ("normalTexture",),
    "occlusion": ("occlusionTexture",),
    "emissive": ("emissiveTexture",),
    "specular": ("extensions", "KHR_materials_specular", "specularTexture"),
    "specular_color": ("extensions", "KHR_materials_specular", "specularColorTexture"),
    "diffuse": ("extensions", "KHR_materials_pbrSpecularGlossiness", "diffuseTexture"),
    "specular_glossiness": (
        "extensions", "KHR_materials_pbrSpecularGlossiness", "specularGlossinessTexture",
    ),
    "clearcoat": ("extensions", "KHR_materials_clearcoat", "clearcoatTexture"),
    "clearcoat_roughness": (
        "extensions", "KHR_materials_clearcoat", "clearcoatRoughnessTexture",
    ),
    "clearcoat_normal": ("extensions", "KHR_materials_clearcoat", "clearcoatNormalTexture"),
    "transmission": ("extensions", "KHR_materials_transmission", "transmissionTexture"),
    "thickness": ("extensions", "KHR_materials_volume", "thicknessTexture"),
    "sheen_color": ("extensions", "KHR_materials_sheen", "sheenColorTexture"),
    "sheen_roughness": ("extensions", "KHR_materials_sheen", "sheenRoughnessTexture"),
    "iridescence": ("extensions", "KHR_materials_iridescence", "iridescenceTexture"),
    "iridescence_thickness": (
        "extensions", "KHR_materials_iridescence", "iridescenceThicknessTexture",
    ),
    "anisotropy": ("extensions", "KHR_materials_anisotropy", "anisotropyTexture"),
}


def slot_table(extra_slots: Iterable[str] = ()) -> Dict[str, Tuple[str, ...]]:
    """Built-in slots plus dotted ``extra_slots`` paths (role = the path)."""
    table = dict(TEXTURE_SLOTS)
    for dotted in extra_slots:
        path = tuple(p for p in dotted.split(".") if p)
        if not path:
            raise ValueError(f"Empty texture slot path: {dotted!r}")
        table.setdefault(dotted, path)
    return table


def reachable_materials(document: Document) -> List[int]:
    """Material indices used by meshes reachable from the scene roots.

    Without any scenes every mesh counts as reachable.
    """
    if document.has_scenes():
        mesh_indices: List[int] = []
        visited = set()
        stack = list(reversed(document.scene_root_nodes()))
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            mesh = document.node_mesh(node)
            if mesh is not None and mesh not in mesh_indices:
                mesh_indices.append(mesh)
            stack.extend(reversed(document.node_children(node)))
    else:
        mesh_indices = list(range(document.mesh_count()))

    materials: List[int] = []
    for mesh in mesh_indices:
        for material in document.mesh_materials(mesh):
            if material not in materials:
                materials.append(material)
    return materials


def collect_texture_handles(
    document: Document,
    slots: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[TextureHandle]:
    """Return distinct handles bound to any known slot of a reachable material."""
    slots = TEXTURE_SLOTS if slots is None else slots
    handles: List[TextureHandle] = []
    seen = set()
    for material in reachable_materials(document):
        for role, path in slots.items():
            handle = document.material_slot_handle(material, path)
            if handle is None or id(handle) in seen:
                continue
            seen.add(id(handle))
            handles.append(handle)
            logger.debug(
                "[%s] material[%d].%s -> %s",
                document.name, material, role, handle.describe(),
            )
    return handles


def correlate(document: Document, handle: TextureHandle) -> Optional[ImageDefinition]:
    """Map a handle to its image definition, or None on a correlation miss."""
    index = document.association.get(handle)
    if index is None:
        logger.debug("[%s] No association for %s", document.name, handle.describe())
        return None
    image_def = document.image_definition(index)
    if image_def is None:
        logger.debug(
            "[%s] %s points at missing image[%d]",
            document.name, handle.describe(), index,
        )
    return image_def
