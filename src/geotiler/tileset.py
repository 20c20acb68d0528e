"""Two-level tile tree construction and ``tileset.json`` serialization."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from geotiler.partition import PartitionResult

TILESET_VERSION = "1.1"
GENERATOR = "geotiler"
REFINE = "REPLACE"

FORCE_REFINE_FACTOR = 1_000_000.0
ROOT_PAD_RATIO = 0.005  # of leaf size
LEAF_PAD_RATIO = 0.01  # of tile size
VERTICAL_PAD_RATIO = 0.02  # of the global height range

Box = list[float]  # center (3) + x half-axis (3) + y half-axis (3) + z half-axis (3)


def tile_filename(level: int, x: int, z: int) -> str:
    return f"L{level}_X{x}_Z{z}.glb"


def tile_uri(level: int, x: int, z: int) -> str:
    return f"tiles/{tile_filename(level, x, z)}"


@dataclass(frozen=True)
class TileNode:
    level: int
    x: int
    z: int
    min_local: tuple[float, float, float]
    max_local: tuple[float, float, float]
    has_content: bool
    children: tuple[TileNode, ...] = ()


@dataclass(frozen=True)
class TilesetRoot:
    """Synthetic root: georeferencing transform plus the grid-extent box."""

    transform: list[float]
    box: Box
    children: tuple[TileNode, ...]


def force_refine_error(tile_size: float) -> float:
    """Geometric error that no renderer can satisfy without descending."""
    return tile_size * 0.5 * FORCE_REFINE_FACTOR


def leaf_geometric_error(tile_size: float, level: int) -> float:
    return tile_size * 0.5 / 2.0**level


def bounds_to_box(min_xyz, max_xyz) -> Box:
    """Axis-aligned bounds to the center + half-axes box form."""
    lo = np.asarray(min_xyz, dtype=np.float64)
    hi = np.asarray(max_xyz, dtype=np.float64)
    center = 0.5 * (lo + hi)
    half = 0.5 * (hi - lo)
    axes = np.diag(half)
    return [*center.tolist(), *axes.flatten().tolist()]


def _y_up_to_z_up(v) -> list[float]:
    return [float(v[0]), float(-v[2]), float(v[1])]


def rotate_box_y_up_to_z_up(box: Box) -> Box:
    """Remap every box vector with ``(x, y, z) -> (x, -z, y)``."""
    out: Box = []
    for i in range(0, 12, 3):
        out.extend(_y_up_to_z_up(box[i : i + 3]))
    return out


def grid_extent_box(
    result: PartitionResult,
    *,
    heading: float,
    scale: float,
) -> Box:
    """Root box covering every occupied cell, in the local (Y-up) frame.

    The grid lives in the heading/scale-adjusted frame, so the extent is mapped back
    through the inverse rotation and scale; the root transform re-applies them.
    """
    min_x, max_x, min_z, max_z = result.tile_index_bounds()
    leaf = result.leaf_size
    pad_enu = leaf * ROOT_PAD_RATIO

    min_x_enu, max_x_enu = min_x * leaf, (max_x + 1) * leaf
    min_z_enu, max_z_enu = min_z * leaf, (max_z + 1) * leaf
    center_x_enu = 0.5 * (min_x_enu + max_x_enu)
    center_z_enu = 0.5 * (min_z_enu + max_z_enu)
    half_x = 0.5 * (max_x_enu - min_x_enu) + pad_enu
    half_z = 0.5 * (max_z_enu - min_z_enu) + pad_enu

    sin_h, cos_h = math.sin(heading), math.cos(heading)
    inv_scale = 0.0 if abs(scale) < 1e-12 else 1.0 / scale

    center_x = (center_x_enu * cos_h + center_z_enu * sin_h) * inv_scale
    center_z = (-center_x_enu * sin_h + center_z_enu * cos_h) * inv_scale

    min_y, max_y = sorted((float(result.global_min[1]), float(result.global_max[1])))
    pad_y = max((max_y - min_y) * VERTICAL_PAD_RATIO, pad_enu * abs(inv_scale))
    min_y -= pad_y
    max_y += pad_y

    center = [center_x, 0.5 * (min_y + max_y), center_z]
    axis_x = [half_x * cos_h * inv_scale, 0.0, -half_x * sin_h * inv_scale]
    axis_y = [0.0, 0.5 * (max_y - min_y), 0.0]
    axis_z = [half_z * sin_h * inv_scale, 0.0, half_z * cos_h * inv_scale]
    return center + axis_x + axis_y + axis_z


def build_tile_tree(
    result: PartitionResult,
    *,
    transform: list[float],
    heading: float,
    scale: float,
) -> TilesetRoot:
    """Root plus one content leaf per bucket, leaves sorted by ``(z, x)``."""
    leaves = sorted(
        (
            TileNode(
                level=result.max_level,
                x=x,
                z=z,
                min_local=tuple(float(v) for v in bucket.min_local),
                max_local=tuple(float(v) for v in bucket.max_local),
                has_content=True,
            )
            for (x, z), bucket in result.buckets.items()
        ),
        key=lambda node: (node.z, node.x),
    )
    box = rotate_box_y_up_to_z_up(grid_extent_box(result, heading=heading, scale=scale))
    return TilesetRoot(transform=list(transform), box=box, children=tuple(leaves))


def tile_node_to_json(node: TileNode, tile_size: float) -> dict:
    """Serialize one node (and its subtree) to a 3D Tiles tile object."""
    if node.has_content:
        geometric_error = leaf_geometric_error(tile_size, node.level)
    else:
        geometric_error = force_refine_error(tile_size)

    pad = tile_size * LEAF_PAD_RATIO
    lo = np.asarray(node.min_local, dtype=np.float64) - pad
    hi = np.asarray(node.max_local, dtype=np.float64) + pad

    tile: dict = {
        "boundingVolume": {"box": rotate_box_y_up_to_z_up(bounds_to_box(lo, hi))},
        "geometricError": geometric_error,
        "refine": REFINE,
    }
    if node.has_content:
        tile["content"] = {"uri": tile_uri(node.level, node.x, node.z)}
    if node.children:
        tile["children"] = [tile_node_to_json(child, tile_size) for child in node.children]
    return tile


def tileset_to_json(root: TilesetRoot, tile_size: float) -> dict:
    """Serialize a finished tile tree to the ``tileset.json`` document."""
    root_error = force_refine_error(tile_size)
    return {
        "asset": {"version": TILESET_VERSION, "generator": GENERATOR},
        "geometricError": root_error,
        "root": {
            "transform": root.transform,
            "boundingVolume": {"box": root.box},
            "geometricError": root_error,
            "refine": REFINE,
            "children": [tile_node_to_json(child, tile_size) for child in root.children],
        },
    }
