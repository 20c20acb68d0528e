"""Sutherland-Hodgman clipping of triangles against axis-aligned grid cells."""

from __future__ import annotations

import math
from dataclasses import dataclass

Vec2 = tuple[float, float]
Vec3 = tuple[float, float, float]
Vec4 = tuple[float, float, float, float]

INSIDE_EPSILON = 1e-9
PARALLEL_EPSILON = 1e-12
DEGENERATE_AREA_SQ = 1e-20

_EAST_AXIS = 0
_NORTH_AXIS = 2


@dataclass(frozen=True)
class Vertex:
    """A clip-space vertex.

    ``pos_local`` is what ends up in the tile, ``pos_enu`` is only used to test
    against cell boundaries. Both are interpolated with the same parameter.
    """

    pos_local: Vec3
    pos_enu: Vec3
    normal: Vec3 = (0.0, 0.0, 0.0)
    uv: Vec2 = (0.0, 0.0)
    color: Vec4 = (0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True)
class Cell:
    """Half-open grid cell ``[x0, x1) x [z0, z1)`` on the ENU ground plane."""

    x0: float
    x1: float
    z0: float
    z1: float

    @classmethod
    def from_index(cls, tile_x: int, tile_z: int, size: float) -> Cell:
        x0 = tile_x * size
        z0 = tile_z * size
        return cls(x0, x0 + size, z0, z0 + size)


def clip_triangle(
    vertices: tuple[Vertex, Vertex, Vertex] | list[Vertex],
    cell: Cell,
    *,
    normalize_normals: bool = False,
) -> list[Vertex]:
    """Clip a triangle (or any convex polygon) to ``cell``.

    Returns the clipped polygon; an empty list when nothing is left. A polygon that
    is already inside the cell comes back as the same vertex objects in the same order.
    """
    poly = list(vertices)
    for axis, value, keep_greater in (
        (_EAST_AXIS, cell.x0, True),
        (_EAST_AXIS, cell.x1, False),
        (_NORTH_AXIS, cell.z0, True),
        (_NORTH_AXIS, cell.z1, False),
    ):
        poly = clip_polygon(poly, axis, value, keep_greater, normalize_normals=normalize_normals)
        if not poly:
            break
    return poly


def clip_polygon(
    vertices: list[Vertex],
    axis: int,
    value: float,
    keep_greater: bool,
    *,
    normalize_normals: bool = False,
) -> list[Vertex]:
    """One Sutherland-Hodgman pass against the plane ``pos_enu[axis] = value``."""
    if not vertices:
        return []

    output: list[Vertex] = []
    prev = vertices[-1]
    prev_inside = _inside(prev, axis, value, keep_greater)
    for curr in vertices:
        curr_inside = _inside(curr, axis, value, keep_greater)
        if curr_inside:
            if not prev_inside:
                output.append(_intersect(prev, curr, axis, value, normalize_normals))
            output.append(curr)
        elif prev_inside:
            output.append(_intersect(prev, curr, axis, value, normalize_normals))
        prev = curr
        prev_inside = curr_inside
    return output


def fan_triangles(polygon: list[Vertex]) -> list[tuple[Vertex, Vertex, Vertex]]:
    """Fan-triangulate a convex polygon from its first vertex (N - 2 triangles)."""
    if len(polygon) < 3:
        return []
    first = polygon[0]
    return [(first, polygon[i], polygon[i + 1]) for i in range(1, len(polygon) - 1)]


def is_degenerate(a: Vertex, b: Vertex, c: Vertex) -> bool:
    """True when the ENU-frame triangle has (numerically) zero area."""
    ab = [b.pos_enu[i] - a.pos_enu[i] for i in range(3)]
    ac = [c.pos_enu[i] - a.pos_enu[i] for i in range(3)]
    cx = ab[1] * ac[2] - ab[2] * ac[1]
    cy = ab[2] * ac[0] - ab[0] * ac[2]
    cz = ab[0] * ac[1] - ab[1] * ac[0]
    return cx * cx + cy * cy + cz * cz < DEGENERATE_AREA_SQ


def _inside(vertex: Vertex, axis: int, value: float, keep_greater: bool) -> bool:
    if keep_greater:
        return vertex.pos_enu[axis] >= value - INSIDE_EPSILON
    return vertex.pos_enu[axis] <= value + INSIDE_EPSILON


def _intersect(a: Vertex, b: Vertex, axis: int, value: float, normalize_normals: bool) -> Vertex:
    denom = b.pos_enu[axis] - a.pos_enu[axis]
    t = 0.0 if abs(denom) < PARALLEL_EPSILON else (value - a.pos_enu[axis]) / denom
    t = min(max(t, 0.0), 1.0)
    return interpolate(a, b, t, normalize_normals=normalize_normals)


def interpolate(a: Vertex, b: Vertex, t: float, *, normalize_normals: bool = False) -> Vertex:
    """Blend every attribute of ``a`` and ``b`` at the same parameter ``t``."""
    normal = _lerp(a.normal, b.normal, t)
    if normalize_normals:
        normal = _normalize(normal)
    return Vertex(
        pos_local=_lerp(a.pos_local, b.pos_local, t),
        pos_enu=_lerp(a.pos_enu, b.pos_enu, t),
        normal=normal,
        uv=_lerp(a.uv, b.uv, t),
        color=_lerp(a.color, b.color, t),
    )


def _lerp(a: tuple, b: tuple, t: float) -> tuple:
    return tuple(x + (y - x) * t for x, y in zip(a, b))


def _normalize(v: Vec3) -> Vec3:
    length_sq = v[0] * v[0] + v[1] * v[1] + v[2] * v[2]
    if length_sq <= 0.0:
        return v
    inv = 1.0 / math.sqrt(length_sq)
    return (v[0] * inv, v[1] * inv, v[2] * inv)
