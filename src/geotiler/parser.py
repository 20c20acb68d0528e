"""YAML loading of scene documents and option files."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from geotiler.errors import ParseError
from geotiler.models import MaterialSpec, SceneDocument, TextureSpec, TilesetOptions
from geotiler.scene import EmbeddedTexture, FileTexture, Material, MeshPart, Scene, TextureSource


def _make_yaml() -> YAML:
    """Create a ruamel.yaml safe loader that errors on duplicate keys."""
    yml = YAML(typ="safe")
    yml.allow_duplicate_keys = False
    return yml


def _read_source_text(source: str | Path) -> str:
    if isinstance(source, Path):
        try:
            return source.read_text(encoding="utf-8")
        except OSError as e:
            raise ParseError(f"Cannot read file: {e}") from e
    return source


def load_mapping(source: str | Path) -> dict:
    """Load a YAML (or JSON) document whose top level must be a mapping."""
    text = _read_source_text(source)
    try:
        data = _make_yaml().load(text)
    except YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("Top-level YAML value must be a mapping")
    return data


def parse_scene_document(source: str | Path) -> SceneDocument:
    """Parse and validate a scene document without building the runtime scene."""
    data = load_mapping(source)
    if "version" not in data:
        raise ParseError("Missing required field: version")
    try:
        return SceneDocument.model_validate(data)
    except PydanticValidationError as e:
        raise ParseError(f"Scene validation failed:\n{e}") from e


def _texture(spec: TextureSpec | None, base_dir: Path) -> TextureSource | None:
    if spec is None:
        return None
    if spec.path is not None:
        path = Path(spec.path)
        return FileTexture(path if path.is_absolute() else base_dir / path)
    return EmbeddedTexture(data=spec.decoded(), name=spec.name)


def _material(spec: MaterialSpec, base_dir: Path) -> Material:
    return Material(
        name=spec.name,
        base_color=spec.base_color,
        emissive=spec.emissive,
        metallic=spec.metallic,
        roughness=spec.roughness,
        double_sided=spec.double_sided,
        base_color_texture=_texture(spec.base_color_texture, base_dir),
        normal_texture=_texture(spec.normal_texture, base_dir),
        emissive_texture=_texture(spec.emissive_texture, base_dir),
    )


def build_scene(document: SceneDocument, base_dir: Path | None = None) -> Scene:
    """Convert a validated document into the in-memory ``Scene``."""
    base_dir = base_dir or Path.cwd()
    return Scene(
        materials=[_material(m, base_dir) for m in document.materials],
        parts=[
            MeshPart(
                name=p.name,
                material_index=p.material,
                positions=np.array(p.positions, dtype=np.float32),
                normals=np.array(p.normals, dtype=np.float32),
                uvs=np.array(p.uvs, dtype=np.float32),
                colors=np.array(p.colors, dtype=np.float32),
            )
            for p in document.parts
        ],
    )


def load_scene(source: str | Path) -> Scene:
    """Load a scene from a file path or raw YAML text.

    Relative texture paths resolve against the document's directory (or the
    working directory for raw text).
    """
    document = parse_scene_document(source)
    base_dir = source.parent if isinstance(source, Path) else None
    return build_scene(document, base_dir)


def load_options(source: str | Path | None = None, **overrides: object) -> TilesetOptions:
    """Load ``TilesetOptions`` from YAML, with non-None ``overrides`` applied on top.

    Without a ``source`` the overrides are applied to the defaults.
    """
    data = load_mapping(source) if source is not None else {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return TilesetOptions.model_validate(data)
    except PydanticValidationError as e:
        raise ParseError(f"Invalid tileset options:\n{e}") from e
