"""Uniform-grid partitioning of a triangle soup into clipped tile buckets."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from geotiler.clipping import Cell, Vertex, clip_triangle, fan_triangles, is_degenerate
from geotiler.errors import TilingError
from geotiler.geo import GeoAnchor
from geotiler.scene import (
    Material,
    MeshPart,
    Scene,
    check_attribute_lengths,
    resolve_material_index,
)
from geotiler.warning_policy import WarningPolicy

TileKey = tuple[int, int]  # (tile_x, tile_z)
BuilderKey = tuple[int, bool, bool, bool]  # (material, normals, uvs, colors)


def compute_max_level(tile_size: float, min_tile_size: float) -> int:
    """Number of halvings of ``tile_size`` until it is no larger than ``min_tile_size``."""
    level = 0
    size = tile_size
    while size > min_tile_size:
        size *= 0.5
        level += 1
    return level


@dataclass
class PartBuilder:
    """Growing vertex buffers inside one bucket for one material and attribute set.

    Sources that differ in which optional attributes they carry go to separate
    builders, so an attribute is never padded or dropped by merging.
    """

    name: str | None
    material_index: int
    has_normals: bool = False
    has_uvs: bool = False
    has_colors: bool = False
    positions: list[float] = field(default_factory=list)
    normals: list[float] = field(default_factory=list)
    uvs: list[float] = field(default_factory=list)
    colors: list[float] = field(default_factory=list)

    def add_triangle(self, tri: tuple[Vertex, Vertex, Vertex]) -> None:
        for v in tri:
            self.positions.extend(v.pos_local)
            if self.has_normals:
                self.normals.extend(v.normal)
            if self.has_uvs:
                self.uvs.extend(v.uv)
            if self.has_colors:
                self.colors.extend(v.color)

    def to_mesh_part(self, material_index: int) -> MeshPart:
        return MeshPart(
            name=self.name,
            material_index=material_index,
            positions=np.array(self.positions, dtype=np.float32),
            normals=np.array(self.normals, dtype=np.float32),
            uvs=np.array(self.uvs, dtype=np.float32),
            colors=np.array(self.colors, dtype=np.float32),
        )


@dataclass
class TileBucket:
    parts: dict[BuilderKey, PartBuilder] = field(default_factory=dict)
    min_local: np.ndarray = field(default_factory=lambda: np.full(3, np.inf))
    max_local: np.ndarray = field(default_factory=lambda: np.full(3, -np.inf))

    @property
    def triangle_count(self) -> int:
        return sum(len(p.positions) // 9 for p in self.parts.values())


@dataclass
class PartitionResult:
    buckets: dict[TileKey, TileBucket]
    global_min: np.ndarray
    global_max: np.ndarray
    max_level: int
    leaf_size: float

    def tile_index_bounds(self) -> tuple[int, int, int, int]:
        """(min_x, max_x, min_z, max_z) over occupied tile keys."""
        xs = [key[0] for key in self.buckets]
        zs = [key[1] for key in self.buckets]
        return min(xs), max(xs), min(zs), max(zs)


def partition_scene(
    scene: Scene,
    geo: GeoAnchor,
    *,
    tile_size: float,
    min_tile_size: float,
    max_level: int | None = None,
    warning_policy: WarningPolicy | None = None,
) -> PartitionResult:
    """Clip every triangle of ``scene`` into the leaf grid.

    Cells are indexed on the (east, north) plane of the heading/scale-adjusted frame;
    buckets accumulate the untouched local-space geometry.
    """
    if max_level is None:
        max_level = compute_max_level(tile_size, min_tile_size)
    leaf_size = tile_size / 2.0**max_level

    buckets: dict[TileKey, TileBucket] = {}
    global_min = np.full(3, np.inf)
    global_max = np.full(3, -np.inf)

    for part in scene.parts:
        if len(part.positions) < 9:
            continue
        check_attribute_lengths(part, warning_policy)
        material_index = resolve_material_index(
            part, len(scene.materials), warning_policy=warning_policy
        )
        _partition_part(
            part,
            material_index,
            geo,
            leaf_size,
            buckets,
            global_min,
            global_max,
        )

    if not buckets:
        raise TilingError("No triangles were assigned to tiles")

    return PartitionResult(
        buckets=buckets,
        global_min=global_min,
        global_max=global_max,
        max_level=max_level,
        leaf_size=leaf_size,
    )


def _partition_part(
    part: MeshPart,
    material_index: int,
    geo: GeoAnchor,
    leaf_size: float,
    buckets: dict[TileKey, TileBucket],
    global_min: np.ndarray,
    global_max: np.ndarray,
) -> None:
    has_normals = part.has_normals
    has_uvs = part.has_uvs
    has_colors = part.has_colors
    builder_key = (material_index, has_normals, has_uvs, has_colors)

    tri_count = part.triangle_count
    local = part.positions[: tri_count * 9].astype(np.float64).reshape(-1, 3)
    enu = geo.transform_points(local)

    # Candidate cell ranges for every triangle at once
    enu_tris = enu.reshape(-1, 3, 3)
    x_lo = np.floor(enu_tris[:, :, 0].min(axis=1) / leaf_size).astype(np.int64)
    x_hi = np.floor(enu_tris[:, :, 0].max(axis=1) / leaf_size).astype(np.int64)
    z_lo = np.floor(enu_tris[:, :, 2].min(axis=1) / leaf_size).astype(np.int64)
    z_hi = np.floor(enu_tris[:, :, 2].max(axis=1) / leaf_size).astype(np.int64)

    normals = part.normals[: tri_count * 9].reshape(-1, 3) if has_normals else None
    uvs = part.uvs[: tri_count * 6].reshape(-1, 2) if has_uvs else None
    colors = part.colors[: tri_count * 12].reshape(-1, 4) if has_colors else None

    for tri in range(tri_count):
        tri_vertices = tuple(
            Vertex(
                pos_local=tuple(local[i].tolist()),
                pos_enu=tuple(enu[i].tolist()),
                normal=tuple(normals[i].tolist()) if normals is not None else (0.0, 0.0, 0.0),
                uv=tuple(uvs[i].tolist()) if uvs is not None else (0.0, 0.0),
                color=tuple(colors[i].tolist()) if colors is not None else (0.0, 0.0, 0.0, 0.0),
            )
            for i in range(tri * 3, tri * 3 + 3)
        )

        for tile_x in range(int(x_lo[tri]), int(x_hi[tri]) + 1):
            for tile_z in range(int(z_lo[tri]), int(z_hi[tri]) + 1):
                polygon = clip_triangle(
                    tri_vertices,
                    Cell.from_index(tile_x, tile_z, leaf_size),
                    normalize_normals=has_normals,
                )
                if len(polygon) < 3:
                    continue

                for a, b, c in fan_triangles(polygon):
                    if is_degenerate(a, b, c):
                        continue

                    bucket = buckets.get((tile_x, tile_z))
                    if bucket is None:
                        bucket = buckets[(tile_x, tile_z)] = TileBucket()

                    pts = np.array([a.pos_local, b.pos_local, c.pos_local])
                    tri_min = pts.min(axis=0)
                    tri_max = pts.max(axis=0)
                    np.minimum(bucket.min_local, tri_min, out=bucket.min_local)
                    np.maximum(bucket.max_local, tri_max, out=bucket.max_local)
                    np.minimum(global_min, tri_min, out=global_min)
                    np.maximum(global_max, tri_max, out=global_max)

                    builder = bucket.parts.get(builder_key)
                    if builder is None:
                        builder = bucket.parts[builder_key] = PartBuilder(
                            name=part.name,
                            material_index=material_index,
                            has_normals=has_normals,
                            has_uvs=has_uvs,
                            has_colors=has_colors,
                        )
                    builder.add_triangle((a, b, c))


def build_tile_scene(bucket: TileBucket, materials: list[Material]) -> Scene:
    """Scene fragment for one bucket, with materials remapped to a dense local list.

    Used materials keep their relative order; unused ones are dropped. Builders that
    share a material become separate parts pointing at the same local material.
    """
    keys = sorted(bucket.parts)
    remap: dict[int, int] = {}
    tile_materials: list[Material] = []
    for old_index in sorted({key[0] for key in keys}):
        if old_index < len(materials):
            remap[old_index] = len(tile_materials)
            tile_materials.append(materials[old_index])

    parts = [bucket.parts[key].to_mesh_part(remap.get(key[0], 0)) for key in keys]
    return Scene(materials=tile_materials, parts=parts)
