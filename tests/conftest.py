"""Shared fixtures for geotiler tests."""

from __future__ import annotations

import base64
import io
from pathlib import Path

import pytest
import yaml
from PIL import Image

from geotiler.scene import EmbeddedTexture, Material, MeshPart, Scene

# One triangle well inside leaf cell (0, 0) at the default 12.5 m leaf size
TRIANGLE = [1.0, 0.0, 1.0, 3.0, 0.0, 1.0, 1.0, 0.0, 3.0]
TRIANGLE_NORMALS = [0.0, 1.0, 0.0] * 3
TRIANGLE_UVS = [0.0, 0.0, 1.0, 0.0, 0.0, 1.0]

# Spans x = 10..15, crossing the boundary between cells (0, 0) and (1, 0)
STRADDLING = [10.0, 0.0, 1.0, 15.0, 0.0, 1.0, 10.0, 0.0, 4.0]


def make_png(color=(200, 40, 40), mode: str = "RGB", size=(2, 2)) -> bytes:
    out = io.BytesIO()
    Image.new(mode, size, color).save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def png_rgba_bytes() -> bytes:
    return make_png((10, 20, 30, 128), mode="RGBA")


@pytest.fixture
def triangle_scene() -> Scene:
    return Scene(
        materials=[Material(name="plain")],
        parts=[
            MeshPart(
                name="tri",
                material_index=0,
                positions=TRIANGLE,
                normals=TRIANGLE_NORMALS,
                uvs=TRIANGLE_UVS,
            )
        ],
    )


@pytest.fixture
def textured_two_tile_scene(png_bytes) -> Scene:
    """Two triangles in different cells sharing one textured material."""
    texture = EmbeddedTexture(data=png_bytes, name="brick.png")
    far = [v + 50.0 if i % 3 == 0 else v for i, v in enumerate(TRIANGLE)]
    return Scene(
        materials=[Material(name="brick", base_color_texture=texture)],
        parts=[
            MeshPart(name="near", positions=TRIANGLE, uvs=TRIANGLE_UVS),
            MeshPart(name="far", positions=far, uvs=TRIANGLE_UVS),
        ],
    )


@pytest.fixture
def scene_doc(png_bytes) -> dict:
    return {
        "version": "1",
        "materials": [
            {
                "name": "brick",
                "base_color": [1.0, 1.0, 1.0, 1.0],
                "roughness": 0.8,
                "base_color_texture": {
                    "data": base64.b64encode(png_bytes).decode("ascii"),
                    "name": "brick.png",
                },
            }
        ],
        "parts": [
            {
                "name": "wall",
                "material": 0,
                "positions": TRIANGLE,
                "normals": TRIANGLE_NORMALS,
                "uvs": TRIANGLE_UVS,
            }
        ],
    }


@pytest.fixture
def write_yaml(tmp_path):
    """Dump a mapping to ``tmp_path/<name>`` and return the path."""

    def _write(data: dict, name: str = "scene.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def scene_file(write_yaml, scene_doc) -> Path:
    return write_yaml(scene_doc)
