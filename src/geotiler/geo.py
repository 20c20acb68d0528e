"""WGS84 anchoring of the local model frame.

The local frame is Y-up and right-handed: +X east, +Y up, -Z north at zero
heading. Tiling works in a heading/scale-adjusted copy of that frame
(``transform_local``), while the geometry written to tiles stays untouched and is
placed on the globe by the single matrix returned from ``transform_matrix``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

WGS84_A = 6_378_137.0
WGS84_F = 1.0 / 298.257_223_563
WGS84_E2 = WGS84_F * (2.0 - WGS84_F)


def geodetic_to_ecef(lat_rad: float, lon_rad: float, height: float) -> np.ndarray:
    """Convert geodetic coordinates (radians, metres) to an ECEF point."""
    sin_lat, cos_lat = math.sin(lat_rad), math.cos(lat_rad)
    sin_lon, cos_lon = math.sin(lon_rad), math.cos(lon_rad)

    n = WGS84_A / math.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)

    return np.array(
        [
            (n + height) * cos_lat * cos_lon,
            (n + height) * cos_lat * sin_lon,
            (n * (1.0 - WGS84_E2) + height) * sin_lat,
        ],
        dtype=np.float64,
    )


def enu_to_ecef_basis(lat_rad: float, lon_rad: float) -> np.ndarray:
    """3x3 rotation whose columns are the East, Up and North axes in ECEF.

    Columns are ordered East/Up/North to line up with the Y-up modelling convention.
    """
    sin_lat, cos_lat = math.sin(lat_rad), math.cos(lat_rad)
    sin_lon, cos_lon = math.sin(lon_rad), math.cos(lon_rad)
    return np.array(
        [
            [-sin_lon, cos_lat * cos_lon, -sin_lat * cos_lon],
            [cos_lon, cos_lat * sin_lon, -sin_lat * sin_lon],
            [0.0, sin_lat, cos_lat],
        ],
        dtype=np.float64,
    )


@dataclass(frozen=True)
class GeoAnchor:
    """Geodetic origin plus heading and uniform scale for one export."""

    heading: float  # radians
    scale: float
    origin_ecef: np.ndarray  # (3,)
    basis: np.ndarray  # (3, 3) ENU -> ECEF

    @classmethod
    def from_degrees(
        cls,
        lat: float,
        lon: float,
        height: float,
        heading: float = 0.0,
        scale: float = 1.0,
    ) -> GeoAnchor:
        lat_rad = math.radians(lat)
        lon_rad = math.radians(lon)
        return cls(
            heading=math.radians(heading),
            scale=scale,
            origin_ecef=geodetic_to_ecef(lat_rad, lon_rad, height),
            basis=enu_to_ecef_basis(lat_rad, lon_rad),
        )

    def transform_local(self, p: tuple[float, float, float]) -> tuple[float, float, float]:
        """Scale, then rotate about +Y by the heading. Decision frame only."""
        x = p[0] * self.scale
        y = p[1] * self.scale
        z = p[2] * self.scale
        sin_h, cos_h = math.sin(self.heading), math.cos(self.heading)
        return (x * cos_h - z * sin_h, y, x * sin_h + z * cos_h)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Vectorised ``transform_local`` for an (N, 3) array."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3) * self.scale
        sin_h, cos_h = math.sin(self.heading), math.cos(self.heading)
        out = np.empty_like(pts)
        out[:, 0] = pts[:, 0] * cos_h - pts[:, 2] * sin_h
        out[:, 1] = pts[:, 1]
        out[:, 2] = pts[:, 0] * sin_h + pts[:, 2] * cos_h
        return out

    def rotation_scale(self) -> np.ndarray:
        """Upper-left 3x3 of ``transform_matrix`` in row-major form.

        The matrix acts on tile-frame coordinates, i.e. local points after the Z-up
        remap ``(x, y, z) -> (x, -z, y)`` that 3D Tiles clients apply to glTF content.
        The heading term undoes that remap and applies the same rotation as
        ``transform_local``, yielding ``(x', y', -z')`` along the East/Up/North columns.
        """
        sin_h, cos_h = math.sin(self.heading), math.cos(self.heading)
        heading = np.array(
            [
                [cos_h, sin_h, 0.0],
                [0.0, 0.0, 1.0],
                [-sin_h, cos_h, 0.0],
            ],
            dtype=np.float64,
        )
        return (self.basis @ heading) * self.scale

    def transform_matrix(self) -> list[float]:
        """Column-major 4x4 local -> ECEF matrix, translation in elements 12..14."""
        m = np.eye(4, dtype=np.float64)
        m[:3, :3] = self.rotation_scale()
        m[:3, 3] = self.origin_ecef
        return [float(v) for v in m.T.flatten()]
