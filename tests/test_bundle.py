"""Tests for output bundling."""

import io
import os
import tempfile
import unittest
import zipfile

from TexShrink.bundle import (
    bundle_outputs,
    bundle_textures,
    input_name_for,
    output_file_name,
    texture_sets,
    write_bytes,
    write_texture_dirs,
)
from TexShrink.core.records import (
    BatchReport,
    DocumentReport,
    ImageState,
    TranscodeResult,
)


def _names(data):
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return sorted(archive.namelist())


class TestNames(unittest.TestCase):
    def test_input_name_strips_glb(self):
        self.assertEqual(input_name_for("/models/robot.GLB"), "robot")
        self.assertEqual(input_name_for("robot.v2.glb"), "robot.v2")

    def test_output_file_name(self):
        self.assertEqual(output_file_name("robot", "_optimized"), "robot_optimized.glb")


class TestZip(unittest.TestCase):
    def test_containers_named_after_common_prefix(self):
        name, data = bundle_outputs({"chair_red": b"a", "chair_blue": b"b"})
        self.assertEqual(name, "chair.glbs.zip")
        self.assertEqual(_names(data), ["chair_blue.glb", "chair_red.glb"])

    def test_containers_fallback_name(self):
        name, _ = bundle_outputs({"apple": b"a", "pear": b"b"}, fallback="models")
        self.assertEqual(name, "models.glbs.zip")

    def test_textures_one_folder_per_input(self):
        sets = {"robot": {"albedo.png": b"1", "normal.png": b"2"}, "rover": {"x.jpg": b"3"}}
        name, data = bundle_textures(sets)
        self.assertEqual(name, "ro.textures.zip")
        self.assertEqual(_names(data),
                         ["robot/albedo.png", "robot/normal.png", "rover/x.jpg"])

    def test_single_texture_set_named_after_input(self):
        name, _ = bundle_textures({"robot": {"a.png": b"1"}})
        self.assertEqual(name, "robot.textures.zip")


class TestWrite(unittest.TestCase):
    def test_texture_sets_only_successful(self):
        ok = TranscodeResult("a.png", "image/png", b"data", ImageState.SUBSTITUTED)
        bad = TranscodeResult("b.png", "image/png", state=ImageState.FAILED)
        batch = BatchReport([("robot", DocumentReport("robot", results=[ok, bad]))])
        self.assertEqual(texture_sets(batch), {"robot": {"a.png": b"data"}})

    def test_write_texture_dirs(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            count = write_texture_dirs({"robot": {"a.png": b"1"}, "rover": {"b.jpg": b"2"}},
                                       tmpdir)
            self.assertEqual(count, 2)
            with open(os.path.join(tmpdir, "rover", "b.jpg"), "rb") as f:
                self.assertEqual(f.read(), b"2")

    def test_write_bytes_leaves_no_temp_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "out", "model.glb")
            write_bytes(path, b"glTF")
            self.assertEqual(os.listdir(os.path.dirname(path)), ["model.glb"])


if __name__ == "__main__":
    unittest.main()
