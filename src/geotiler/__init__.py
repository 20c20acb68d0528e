"""Geo-referenced 3D Tiles and GLB export for triangle-soup scenes."""

__version__ = "0.3.0"
