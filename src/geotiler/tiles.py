"""Tileset export: partition a scene, write one GLB per cell, then ``tileset.json``."""

from __future__ import annotations

import json
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from geotiler.errors import ExportError, GeotilerError, ValidationError
from geotiler.exporter import export_glb
from geotiler.geo import GeoAnchor
from geotiler.models import TilesetOptions
from geotiler.partition import PartitionResult, TileKey, build_tile_scene, partition_scene
from geotiler.scene import Scene
from geotiler.textures import EmbedTextures, ExternalTextures, TextureCache, TextureMode
from geotiler.tileset import build_tile_tree, tile_filename, tileset_to_json
from geotiler.warning_policy import WarningPolicy

TILES_DIR = "tiles"
TEXTURES_DIR = "textures"
TILESET_FILENAME = "tileset.json"


@dataclass(frozen=True)
class ExportSummary:
    tile_count: int
    max_level: int
    leaf_size: float
    tileset_path: Path
    tile_paths: tuple[Path, ...] = ()


def validate_export(scene: Scene, options: TilesetOptions) -> None:
    """Reject inputs that cannot produce a tileset."""
    if not scene.parts or scene.triangle_count == 0:
        raise ValidationError("Scene contains no triangles")
    if not options.tile_size > 0:
        raise ValidationError(f"tile_size must be positive, got {options.tile_size}")
    if not options.min_tile_size > 0:
        raise ValidationError(f"min_tile_size must be positive, got {options.min_tile_size}")


def _make_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExportError(f"Cannot create directory {path}: {e}") from e


def _write_tile(
    key: TileKey,
    result: PartitionResult,
    scene: Scene,
    tiles_dir: Path,
    texture_mode: TextureMode,
    warning_policy: WarningPolicy | None,
) -> Path:
    x, z = key
    path = tiles_dir / tile_filename(result.max_level, x, z)
    tile_scene = build_tile_scene(result.buckets[key], scene.materials)
    export_glb(tile_scene, path, texture_mode=texture_mode, warning_policy=warning_policy)
    return path


def write_tiles(
    result: PartitionResult,
    scene: Scene,
    tiles_dir: Path,
    texture_mode: TextureMode,
    *,
    workers: int = 1,
    warning_policy: WarningPolicy | None = None,
) -> list[Path]:
    """Serialize every bucket; any failing tile aborts with ``ExportError``.

    Returns the written paths in (z, x) tile order regardless of ``workers``.
    """
    keys = sorted(result.buckets, key=lambda k: (k[1], k[0]))

    def run(key: TileKey) -> Path:
        try:
            return _write_tile(key, result, scene, tiles_dir, texture_mode, warning_policy)
        except GeotilerError as e:
            raise ExportError(f"Tile {tile_filename(result.max_level, *key)}: {e}") from e

    if workers <= 1:
        return [run(key) for key in keys]

    paths: dict[TileKey, Path] = {}
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {pool.submit(run, key): key for key in keys}
        for future in as_completed(futures):
            try:
                paths[futures[future]] = future.result()
            except ExportError:
                for pending in futures:
                    pending.cancel()
                raise
    return [paths[key] for key in keys]


def export_tileset(
    scene: Scene,
    output_dir: Path,
    options: TilesetOptions | None = None,
    *,
    warning_policy: WarningPolicy | None = None,
) -> ExportSummary:
    """Write ``tileset.json``, ``tiles/`` and (external mode) ``textures/`` under ``output_dir``."""
    options = options or TilesetOptions()
    validate_export(scene, options)

    geo = GeoAnchor.from_degrees(
        options.origin_lat,
        options.origin_lon,
        options.origin_height,
        heading=options.heading,
        scale=options.scale,
    )
    result = partition_scene(
        scene,
        geo,
        tile_size=options.tile_size,
        min_tile_size=options.min_tile_size,
        max_level=options.max_level,
        warning_policy=warning_policy,
    )

    tiles_dir = output_dir / TILES_DIR
    _make_dir(tiles_dir)
    texture_mode: TextureMode
    if options.embed_textures:
        texture_mode = EmbedTextures()
    else:
        textures_dir = output_dir / TEXTURES_DIR
        _make_dir(textures_dir)
        texture_mode = ExternalTextures(TextureCache(textures_dir))

    tile_paths = write_tiles(
        result,
        scene,
        tiles_dir,
        texture_mode,
        workers=options.workers,
        warning_policy=warning_policy,
    )

    root = build_tile_tree(
        result,
        transform=geo.transform_matrix(),
        heading=math.radians(options.heading),
        scale=options.scale,
    )
    tileset_path = output_dir / TILESET_FILENAME
    try:
        tileset_path.write_text(
            json.dumps(tileset_to_json(root, options.tile_size), indent=2),
            encoding="utf-8",
        )
    except OSError as e:
        raise ExportError(f"Cannot write {tileset_path}: {e}") from e

    return ExportSummary(
        tile_count=len(result.buckets),
        max_level=result.max_level,
        leaf_size=result.leaf_size,
        tileset_path=tileset_path,
        tile_paths=tuple(tile_paths),
    )
