"""In-memory scene representation consumed by the tiler and the GLB writer."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from geotiler.warning_policy import WarningPolicy, emit_warning


@dataclass(frozen=True)
class EmbeddedTexture:
    """Encoded image bytes carried inside the source asset."""

    data: bytes
    name: str | None = None


@dataclass(frozen=True)
class FileTexture:
    """Image referenced by a path on disk."""

    path: Path


TextureSource = EmbeddedTexture | FileTexture


@dataclass
class Material:
    name: str | None = None
    base_color: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    emissive: tuple[float, float, float] = (0.0, 0.0, 0.0)
    metallic: float = 0.0
    roughness: float = 1.0
    double_sided: bool = False
    base_color_texture: TextureSource | None = None
    normal_texture: TextureSource | None = None
    emissive_texture: TextureSource | None = None

    @property
    def has_texture(self) -> bool:
        return any(
            t is not None
            for t in (self.base_color_texture, self.normal_texture, self.emissive_texture)
        )


def _empty() -> np.ndarray:
    return np.zeros(0, dtype=np.float32)


@dataclass
class MeshPart:
    """Flat triangle soup: every three consecutive vertices form one triangle.

    All buffers are flat float32 arrays. ``normals``, ``uvs`` and ``colors`` may be
    empty; consumers decide what to do when their length does not match ``positions``.
    """

    name: str | None = None
    material_index: int = 0
    positions: np.ndarray = field(default_factory=_empty)  # (3N,)
    normals: np.ndarray = field(default_factory=_empty)  # (3N,) or empty
    uvs: np.ndarray = field(default_factory=_empty)  # (2N,) or empty
    colors: np.ndarray = field(default_factory=_empty)  # (4N,) or empty

    def __post_init__(self) -> None:
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(-1)
        self.normals = np.asarray(self.normals, dtype=np.float32).reshape(-1)
        self.uvs = np.asarray(self.uvs, dtype=np.float32).reshape(-1)
        self.colors = np.asarray(self.colors, dtype=np.float32).reshape(-1)

    @property
    def vertex_count(self) -> int:
        return len(self.positions) // 3

    @property
    def triangle_count(self) -> int:
        return len(self.positions) // 9

    @property
    def has_normals(self) -> bool:
        return len(self.normals) > 0 and len(self.normals) == len(self.positions)

    @property
    def has_uvs(self) -> bool:
        return len(self.uvs) * 3 == len(self.positions) * 2

    @property
    def has_colors(self) -> bool:
        return len(self.colors) * 3 == len(self.positions) * 4


def resolve_material_index(
    part: MeshPart,
    material_count: int,
    *,
    warning_policy: WarningPolicy | None = None,
) -> int:
    """Clamp an out-of-range material index to 0, with a W02 warning."""
    index = part.material_index
    if material_count == 0:
        return 0
    if 0 <= index < material_count:
        return index
    emit_warning(
        "W02",
        f"Part {part.name or '<unnamed>'!r} references material {index} "
        f"but the scene has {material_count}; using material 0",
        policy=warning_policy,
    )
    return 0


def check_attribute_lengths(part: MeshPart, warning_policy: WarningPolicy | None = None) -> None:
    """Emit W03 for every optional attribute whose length does not fit ``positions``."""
    label = part.name or "<unnamed>"
    for attr, ok in (
        ("normals", part.has_normals),
        ("uvs", part.has_uvs),
        ("colors", part.has_colors),
    ):
        if not ok and len(getattr(part, attr)) > 0:
            emit_warning(
                "W03",
                f"Part {label!r}: {attr} has {len(getattr(part, attr))} values "
                f"for {part.vertex_count} vertices; ignoring it",
                policy=warning_policy,
            )


@dataclass
class Scene:
    materials: list[Material] = field(default_factory=list)
    parts: list[MeshPart] = field(default_factory=list)

    @property
    def triangle_count(self) -> int:
        return sum(p.triangle_count for p in self.parts)


def flip_v(scene: Scene) -> None:
    """Flip the V texture coordinate of every part in place (``v -> 1 - v``)."""
    for part in scene.parts:
        if len(part.uvs) >= 2:
            uv = part.uvs[: len(part.uvs) // 2 * 2].reshape(-1, 2)
            uv[:, 1] = 1.0 - uv[:, 1]
