"""Tests for GLB assembly."""

import json
import struct
import warnings

import numpy as np
import pygltflib
import pytest

from conftest import TRIANGLE, TRIANGLE_UVS, make_png
from geotiler.errors import ExportError, ValidationError
from geotiler.exporter import (
    GLB_MAGIC,
    build_glb,
    compute_tangents,
    ensure_colors,
    ensure_normals,
    ensure_uvs,
    export_glb,
    flat_normals,
    position_bounds,
)
from geotiler.scene import EmbeddedTexture, FileTexture, Material, MeshPart, Scene
from geotiler.textures import ExternalTextures, TextureCache
from geotiler.warning_policy import GeotilerWarning, WarningPolicy


def _export(scene, tmp_path, **kwargs) -> pygltflib.GLTF2:
    out = tmp_path / "out.glb"
    export_glb(scene, out, **kwargs)
    return pygltflib.GLTF2().load(str(out))


def _chunks(glb: bytes):
    json_len, json_type = struct.unpack_from("<II", glb, 12)
    bin_offset = 20 + json_len
    bin_len, bin_type = struct.unpack_from("<II", glb, bin_offset)
    return (json_len, json_type), (bin_len, bin_type)


class TestContainer:
    def test_header_and_length(self, triangle_scene):
        glb = build_glb(triangle_scene)
        magic, version, total = struct.unpack_from("<III", glb, 0)
        assert magic == GLB_MAGIC
        assert version == 2
        assert total == len(glb)

        (json_len, json_type), (bin_len, bin_type) = _chunks(glb)
        assert json_type == 0x4E4F534A
        assert bin_type == 0x004E4942
        assert total == 12 + 8 + json_len + 8 + bin_len
        assert json_len % 4 == 0
        assert bin_len % 4 == 0

    def test_json_chunk_space_padded(self, triangle_scene):
        glb = build_glb(triangle_scene)
        (json_len, _), _ = _chunks(glb)
        text = glb[20 : 20 + json_len].decode("utf-8")
        doc = json.loads(text)
        assert doc["asset"]["version"] == "2.0"
        assert text.rstrip(" ").endswith("}")

    def test_deterministic(self, triangle_scene):
        assert build_glb(triangle_scene) == build_glb(triangle_scene)


class TestDocument:
    def test_reload(self, triangle_scene, tmp_path):
        gltf = _export(triangle_scene, tmp_path)
        assert len(gltf.meshes) == 1
        prim = gltf.meshes[0].primitives[0]
        assert prim.mode == pygltflib.TRIANGLES
        for attr in ("POSITION", "NORMAL", "TEXCOORD_0", "COLOR_0", "TANGENT"):
            assert getattr(prim.attributes, attr) is not None
        assert gltf.accessors[prim.attributes.POSITION].count == 3

    def test_position_bounds_on_accessor(self, triangle_scene, tmp_path):
        gltf = _export(triangle_scene, tmp_path)
        acc = gltf.accessors[gltf.meshes[0].primitives[0].attributes.POSITION]
        assert acc.min == pytest.approx([1.0, 0.0, 1.0])
        assert acc.max == pytest.approx([3.0, 0.0, 3.0])

    def test_default_material_when_none(self, tmp_path):
        gltf = _export(Scene(parts=[MeshPart(positions=TRIANGLE)]), tmp_path)
        assert len(gltf.materials) == 1
        assert gltf.meshes[0].primitives[0].material == 0

    def test_out_of_range_material_clamped(self, tmp_path):
        scene = Scene(
            materials=[Material(name="a")],
            parts=[MeshPart(material_index=9, positions=TRIANGLE)],
        )
        with pytest.warns(GeotilerWarning, match="W02"):
            gltf = _export(scene, tmp_path)
        assert gltf.meshes[0].primitives[0].material == 0

    def test_out_of_range_material_as_error(self, tmp_path):
        scene = Scene(
            materials=[Material(name="a")],
            parts=[MeshPart(material_index=9, positions=TRIANGLE)],
        )
        policy = WarningPolicy(warn_as_error=frozenset({"W02"}))
        with pytest.raises(ValidationError, match="W02"):
            export_glb(scene, tmp_path / "out.glb", warning_policy=policy)
        assert not (tmp_path / "out.glb").exists()

    def test_mismatched_attributes_warn(self, tmp_path):
        scene = Scene(
            parts=[MeshPart(name="p", positions=TRIANGLE, normals=[0.0, 1.0], colors=[1.0])]
        )
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            gltf = _export(scene, tmp_path)
        messages = [str(x.message) for x in w if isinstance(x.message, GeotilerWarning)]
        assert len(messages) == 2
        assert all(m.startswith("[W03]") for m in messages)
        assert "normals" in messages[0]
        assert "colors" in messages[1]
        assert gltf.accessors[gltf.meshes[0].primitives[0].attributes.NORMAL].count == 3

    def test_consistent_scene_emits_no_warnings(self, triangle_scene):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            build_glb(triangle_scene)

    def test_no_primitives(self, tmp_path):
        with pytest.raises(ExportError, match="No primitives"):
            export_glb(Scene(parts=[MeshPart()]), tmp_path / "empty.glb")

    def test_unwritable_path_wrapped(self, triangle_scene, tmp_path):
        with pytest.raises(ExportError):
            export_glb(triangle_scene, tmp_path / "missing" / "dir" / "out.glb")


class TestMaterials:
    def test_pbr_factors(self, tmp_path):
        scene = Scene(
            materials=[
                Material(
                    name="m",
                    base_color=(0.5, 0.25, 1.0, 1.0),
                    metallic=0.3,
                    roughness=0.7,
                    emissive=(1.0, 0.5, 0.0),
                )
            ],
            parts=[MeshPart(positions=TRIANGLE)],
        )
        mat = _export(scene, tmp_path).materials[0]
        assert mat.name == "m"
        assert mat.pbrMetallicRoughness.baseColorFactor == pytest.approx([0.5, 0.25, 1.0, 1.0])
        assert mat.pbrMetallicRoughness.metallicFactor == pytest.approx(0.3)
        assert mat.pbrMetallicRoughness.roughnessFactor == pytest.approx(0.7)
        assert mat.emissiveFactor == pytest.approx([1.0, 0.5, 0.0])
        assert mat.alphaMode == pygltflib.OPAQUE
        assert not mat.doubleSided

    def test_translucent_base_color_blends(self, tmp_path):
        scene = Scene(
            materials=[Material(base_color=(1.0, 1.0, 1.0, 0.5))],
            parts=[MeshPart(positions=TRIANGLE)],
        )
        assert _export(scene, tmp_path).materials[0].alphaMode == pygltflib.BLEND

    def test_alpha_texture_blends_and_double_sided(self, tmp_path, png_rgba_bytes):
        scene = Scene(
            materials=[Material(base_color_texture=EmbeddedTexture(png_rgba_bytes, "a.png"))],
            parts=[MeshPart(positions=TRIANGLE, uvs=TRIANGLE_UVS)],
        )
        mat = _export(scene, tmp_path).materials[0]
        assert mat.alphaMode == pygltflib.BLEND
        assert mat.doubleSided
        assert mat.pbrMetallicRoughness.baseColorTexture.index == 0

    def test_normal_and_emissive_textures(self, tmp_path, png_bytes):
        other = make_png((0, 0, 255))
        scene = Scene(
            materials=[
                Material(
                    normal_texture=EmbeddedTexture(png_bytes, "n.png"),
                    emissive_texture=EmbeddedTexture(other, "e.png"),
                )
            ],
            parts=[MeshPart(positions=TRIANGLE)],
        )
        gltf = _export(scene, tmp_path)
        mat = gltf.materials[0]
        assert mat.normalTexture.index == 0
        assert mat.emissiveTexture.index == 1
        assert len(gltf.images) == 2


class TestTextureDedup:
    def test_same_content_one_image(self, tmp_path, png_bytes):
        scene = Scene(
            materials=[
                Material(name="a", base_color_texture=EmbeddedTexture(png_bytes, "a.png")),
                Material(name="b", base_color_texture=EmbeddedTexture(png_bytes, "b.png")),
            ],
            parts=[
                MeshPart(material_index=0, positions=TRIANGLE),
                MeshPart(material_index=1, positions=TRIANGLE),
            ],
        )
        gltf = _export(scene, tmp_path)
        assert len(gltf.images) == 1
        assert len(gltf.textures) == 1
        assert len(gltf.samplers) == 1
        assert gltf.images[0].mimeType == "image/png"
        assert gltf.images[0].bufferView is not None

    def test_external_mode_writes_one_file(self, tmp_path, png_bytes):
        textures_dir = tmp_path / "textures"
        textures_dir.mkdir()
        mode = ExternalTextures(TextureCache(textures_dir))
        scene = Scene(
            materials=[
                Material(base_color_texture=EmbeddedTexture(png_bytes, "a.png")),
                Material(base_color_texture=FileTexture(tmp_path / "b.png")),
            ],
            parts=[MeshPart(positions=TRIANGLE)],
        )
        (tmp_path / "b.png").write_bytes(png_bytes)
        gltf = _export(scene, tmp_path, texture_mode=mode)
        assert len(gltf.images) == 1
        assert gltf.images[0].uri.startswith("../textures/tex_")
        assert gltf.images[0].bufferView is None
        assert len(list(textures_dir.iterdir())) == 1


class TestTextureWarnings:
    def test_undecodable_texture_skipped(self, tmp_path):
        scene = Scene(
            materials=[Material(base_color_texture=EmbeddedTexture(b"not an image", "x.png"))],
            parts=[MeshPart(positions=TRIANGLE)],
        )
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            gltf = _export(scene, tmp_path)
        assert any(isinstance(x.message, GeotilerWarning) and x.message.code == "W01" for x in w)
        assert not gltf.images
        assert gltf.materials[0].pbrMetallicRoughness.baseColorTexture is None

    def test_missing_file_as_error(self, tmp_path):
        scene = Scene(
            materials=[Material(base_color_texture=FileTexture(tmp_path / "gone.png"))],
            parts=[MeshPart(positions=TRIANGLE)],
        )
        policy = WarningPolicy(warn_as_error=frozenset({"W01"}))
        with pytest.raises(ValidationError, match="W01"):
            export_glb(scene, tmp_path / "out.glb", warning_policy=policy)


class TestAttributes:
    def test_ensure_helpers_fill_defaults(self):
        positions = np.array(TRIANGLE, dtype=np.float32)
        assert ensure_uvs(3, np.zeros(0)).tolist() == [[0.0, 0.0]] * 3
        assert ensure_colors(3, np.zeros(5)).tolist() == [[1.0, 1.0, 1.0, 1.0]] * 3
        normals = ensure_normals(positions, np.zeros(0))
        assert normals.shape == (3, 3)

    def test_flat_normals(self):
        normals = flat_normals(np.array([0, 0, 0, 0, 0, 1, 1, 0, 0], dtype=np.float32))
        np.testing.assert_allclose(normals, [[0.0, 1.0, 0.0]] * 3, atol=1e-6)

    def test_flat_normals_degenerate(self):
        normals = flat_normals(np.zeros(9, dtype=np.float32))
        np.testing.assert_allclose(normals, [[0.0, 1.0, 0.0]] * 3)

    def test_position_bounds_skip_non_finite(self):
        pos = np.array([[1, 2, 3], [np.nan, 0, 0], [-1, 5, 0]], dtype=np.float32)
        lo, hi = position_bounds(pos)
        assert lo == [-1.0, 2.0, 0.0]
        assert hi == [1.0, 5.0, 3.0]

    def test_position_bounds_all_non_finite(self):
        lo, hi = position_bounds(np.array([[np.inf, 0, 0]], dtype=np.float32))
        assert lo == hi == [0.0, 0.0, 0.0]


class TestTangents:
    POSITIONS = np.array([0, 0, 0, 1, 0, 0, 0, 1, 0], dtype=np.float32)
    NORMALS = np.array([0, 0, 1] * 3, dtype=np.float32)

    def test_right_handed(self):
        uvs = np.array([0, 0, 1, 0, 0, 1], dtype=np.float32)
        tangents = compute_tangents(self.POSITIONS, uvs, self.NORMALS)
        np.testing.assert_allclose(tangents[:, :3], [[1.0, 0.0, 0.0]] * 3, atol=1e-6)
        assert tangents[:, 3].tolist() == [1.0, 1.0, 1.0]

    def test_mirrored(self):
        uvs = np.array([0, 0, -1, 0, 0, 1], dtype=np.float32)
        tangents = compute_tangents(self.POSITIONS, uvs, self.NORMALS)
        assert tangents[:, 3].tolist() == [-1.0, -1.0, -1.0]

    def test_degenerate_uvs_fallback(self):
        tangents = compute_tangents(self.POSITIONS, np.zeros(6, dtype=np.float32), self.NORMALS)
        np.testing.assert_allclose(tangents[:, :3], [[1.0, 0.0, 0.0]] * 3)
        assert tangents[:, 3].tolist() == [1.0, 1.0, 1.0]
