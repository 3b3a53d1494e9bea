"""Tests for the asset document adapter."""

import struct
import unittest
from unittest import mock

from TexShrink.core.document import decode_document
from TexShrink.core.errors import DecodeError

from conftest import (
    GlbBuilder,
    image_payload_from_glb,
    jpeg_bytes,
    png_bytes,
    read_glb,
    simple_glb,
)


class TestHeader(unittest.TestCase):
    def test_bad_magic(self):
        data = bytearray(simple_glb(png_bytes()))
        data[0:4] = b"gltf"
        with self.assertRaises(DecodeError) as ctx:
            decode_document(bytes(data), "broken")
        self.assertEqual(ctx.exception.source, "broken")

    def test_wrong_version(self):
        data = bytearray(simple_glb(png_bytes()))
        data[4:8] = struct.pack("<I", 1)
        with self.assertRaises(DecodeError):
            decode_document(bytes(data))

    def test_truncated(self):
        data = simple_glb(png_bytes())
        with self.assertRaises(DecodeError):
            decode_document(data[:-16])

    def test_too_short(self):
        with self.assertRaises(DecodeError):
            decode_document(b"glTF")


class TestDecode(unittest.TestCase):
    def test_image_table(self):
        data = simple_glb(png_bytes(), jpeg_bytes(), mimes=["image/png", "image/jpeg"],
                          names=["albedo", None])
        doc = decode_document(data, "model")
        self.assertEqual(len(doc.images), 2)
        self.assertEqual(doc.images[0].name, "albedo")
        self.assertEqual(doc.images[1].mime_type, "image/jpeg")
        self.assertIsNone(doc.image_definition(2))

    def test_textures_sharing_a_source_share_a_handle(self):
        b = GlbBuilder()
        image = b.add_image(png_bytes())
        t0 = b.add_texture(image)
        t1 = b.add_texture(image)
        m0 = b.add_material(base_color=t0)
        m1 = b.add_material(emissive=t1)
        b.textured_model(m0, m1)
        doc = decode_document(b.build())

        h0 = doc.material_slot_handle(m0, ("pbrMetallicRoughness", "baseColorTexture"))
        h1 = doc.material_slot_handle(m1, ("emissiveTexture",))
        self.assertIs(h0, h1)
        self.assertEqual(h0.texture_indices, (0, 1))
        self.assertEqual(len(doc.handles), 1)
        self.assertEqual(doc.association[h0], image)
        self.assertEqual(h0.payload, png_bytes())

    def test_association_is_read_only(self):
        doc = decode_document(simple_glb(png_bytes()))
        handle = doc.handles[0]
        with self.assertRaises(TypeError):
            doc.association[handle] = 5

    def test_extension_source(self):
        b = GlbBuilder()
        image = b.add_image(png_bytes())
        tex = b.add_texture(extensions={"EXT_texture_webp": {"source": image}})
        b.textured_model(b.add_material(base_color=tex))
        doc = decode_document(b.build())
        self.assertEqual(doc.association[doc.handles[0]], image)

    def test_data_uri_image(self):
        b = GlbBuilder()
        payload = png_bytes(4, 4)
        image = b.add_data_uri_image(payload, mime="image/png")
        b.textured_model(b.add_material(base_color=b.add_texture(image)))
        doc = decode_document(b.build())
        self.assertEqual(doc.images[0].mime_type, "image/png")
        self.assertTrue(doc.images[0].is_data_uri)
        self.assertEqual(doc.handles[0].payload, payload)

    def test_external_uri_has_no_payload(self):
        b = GlbBuilder()
        image = b.add_image(uri="textures/wood.jpg", mime="image/jpeg")
        b.textured_model(b.add_material(base_color=b.add_texture(image)))
        doc = decode_document(b.build())
        self.assertIsNone(doc.handles[0].payload)
        self.assertIn(doc.handles[0], doc.association)

    def test_buffer_view_without_buffer_has_no_payload(self):
        b = GlbBuilder()
        image = b.add_image(png_bytes())
        b.textured_model(b.add_material(base_color=b.add_texture(image)))
        del b.doc["bufferViews"][b.doc["images"][image]["bufferView"]]["buffer"]
        doc = decode_document(b.build())
        self.assertIsNone(doc.handles[0].payload)

    def test_structural_fault_becomes_decode_error(self):
        with mock.patch("TexShrink.core.document.Document.__init__",
                        side_effect=TypeError("bad field")):
            with self.assertRaises(DecodeError) as ctx:
                decode_document(simple_glb(png_bytes()), name="broken")
        self.assertEqual(ctx.exception.source, "broken")

    def test_attached_texture_has_no_association(self):
        doc = decode_document(simple_glb(png_bytes()))
        handle = doc.attach_texture(0, ("occlusionTexture",), png_bytes(), "image/png",
                                    name="ao")
        self.assertIs(doc.material_slot_handle(0, ("occlusionTexture",)), handle)
        self.assertNotIn(handle, doc.association)
        self.assertIn(handle, doc.handles)


class TestSubstituteAndSerialize(unittest.TestCase):
    def test_untouched_document_round_trips(self):
        data = simple_glb(png_bytes())
        out = decode_document(data).serialize()
        self.assertEqual(image_payload_from_glb(out, 0), png_bytes())

    def test_substitution_is_embedded(self):
        data = simple_glb(png_bytes(32, 32), jpeg_bytes(),
                          mimes=["image/png", "image/jpeg"])
        doc = decode_document(data)
        replacement = png_bytes(8, 8)
        doc.substitute(1, replacement, "image/png")
        self.assertEqual(doc.images[1].mime_type, "image/png")
        self.assertEqual(doc.image_payload(1), replacement)
        self.assertEqual(doc.substituted_indices, (1,))

        out = doc.serialize()
        self.assertEqual(image_payload_from_glb(out, 1), replacement)
        self.assertEqual(image_payload_from_glb(out, 0), png_bytes(32, 32))
        gltf, blob = read_glb(out)
        self.assertEqual(gltf["images"][1]["mimeType"], "image/png")
        self.assertEqual(gltf["buffers"][0]["byteLength"], len(blob))
        for view in gltf["bufferViews"]:
            self.assertEqual(view.get("byteOffset", 0) % 4, 0)

    def test_geometry_views_preserved(self):
        data = simple_glb(png_bytes(32, 32))
        before, before_blob = read_glb(data)
        doc = decode_document(data)
        doc.substitute(0, png_bytes(2, 2), "image/png")
        after, after_blob = read_glb(doc.serialize())
        accessor_view = before["accessors"][0]["bufferView"]
        self.assertEqual(after["accessors"][0]["bufferView"], accessor_view)
        old = before["bufferViews"][accessor_view]
        new = after["bufferViews"][accessor_view]
        self.assertEqual(
            after_blob[new.get("byteOffset", 0):][:new["byteLength"]],
            before_blob[old.get("byteOffset", 0):][:old["byteLength"]],
        )
        self.assertEqual(len(after["images"]), len(before["images"]))

    def test_shared_buffer_view_gets_new_view(self):
        b = GlbBuilder()
        original = png_bytes()
        first = b.add_image(original)
        view = b.doc["images"][first]["bufferView"]
        second = b.add_image(buffer_view=view)
        b.textured_model(b.add_material(base_color=b.add_texture(first),
                                        emissive=b.add_texture(second)))
        doc = decode_document(b.build())
        replacement = png_bytes(3, 3)
        doc.substitute(first, replacement, "image/png")
        out = doc.serialize()
        gltf, _ = read_glb(out)
        self.assertNotEqual(gltf["images"][0]["bufferView"], gltf["images"][1]["bufferView"])
        self.assertEqual(image_payload_from_glb(out, 0), replacement)
        self.assertEqual(image_payload_from_glb(out, 1), original)

    def test_data_uri_moves_into_bin_chunk(self):
        b = GlbBuilder()
        image = b.add_data_uri_image(png_bytes(4, 4))
        b.textured_model(b.add_material(base_color=b.add_texture(image)))
        doc = decode_document(b.build())
        replacement = png_bytes(2, 2)
        doc.substitute(image, replacement, "image/png")
        out = doc.serialize()
        gltf, _ = read_glb(out)
        self.assertNotIn("uri", gltf["images"][0])
        self.assertEqual(gltf["images"][0]["mimeType"], "image/png")
        self.assertEqual(image_payload_from_glb(out, 0), replacement)

    def test_substitute_unknown_index(self):
        doc = decode_document(simple_glb(png_bytes()))
        with self.assertRaises(IndexError):
            doc.substitute(9, b"x", "image/png")

    def test_serialized_output_decodes_again(self):
        doc = decode_document(simple_glb(png_bytes(), jpeg_bytes(),
                                         mimes=["image/png", "image/jpeg"]))
        doc.substitute(0, png_bytes(4, 4), "image/png")
        again = decode_document(doc.serialize(), "again")
        self.assertEqual(len(again.images), 2)
        self.assertEqual(len(again.handles), 2)


if __name__ == "__main__":
    unittest.main()
