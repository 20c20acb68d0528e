"""Click CLI entry point for geotiler."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from geotiler import __version__
from geotiler.errors import GeotilerError
from geotiler.exporter import export_glb
from geotiler.manifest import build_manifest
from geotiler.parser import load_options, load_scene
from geotiler.scene import flip_v as flip_uvs
from geotiler.tiles import export_tileset
from geotiler.warning_policy import WarningPolicy, parse_code_list


def _build_warning_policy(
    warn_as_error: str | None, suppress_warning: str | None
) -> WarningPolicy | None:
    """Turn the comma-separated CLI code lists into a WarningPolicy (None when both unset)."""
    if not warn_as_error and not suppress_warning:
        return None
    try:
        return WarningPolicy(
            warn_as_error=parse_code_list(warn_as_error or ""),
            suppress=parse_code_list(suppress_warning or ""),
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _write_manifest(manifest: dict, destination: Path) -> None:
    try:
        destination.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    except OSError as e:
        raise click.ClickException(f"Cannot write manifest to {destination}: {e}") from e


def warning_options(f):
    """Shared ``--warn-as-error`` / ``--suppress-warning`` options."""
    f = click.option(
        "--suppress-warning",
        "suppress_warning",
        type=str,
        default=None,
        help="Comma-separated W-codes to suppress (e.g. W01).",
    )(f)
    f = click.option(
        "--warn-as-error",
        "warn_as_error",
        type=str,
        default=None,
        help="Comma-separated W-codes to treat as errors (e.g. W01,W02).",
    )(f)
    return f


@click.group()
@click.version_option(version=__version__, prog_name="geotiler")
def main() -> None:
    """geotiler: georeferenced 3D Tiles from triangle-mesh scenes."""


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--origin-lat", type=float, default=None, help="Origin latitude in degrees.")
@click.option("--origin-lon", type=float, default=None, help="Origin longitude in degrees.")
@click.option(
    "--origin-height", type=float, default=None, help="Origin ellipsoidal height in metres."
)
@click.option("--heading", type=float, default=None, help="Rotation about +Y in degrees.")
@click.option("--scale", type=float, default=None, help="Uniform scale applied to the scene.")
@click.option("--tile-size", type=float, default=None, help="Root tile edge length.")
@click.option(
    "--min-tile-size",
    type=float,
    default=None,
    help="Leaf edge length threshold used to derive the subdivision depth.",
)
@click.option(
    "--max-level", type=click.IntRange(min=0), default=None, help="Override the subdivision depth."
)
@click.option(
    "--embed-textures",
    is_flag=True,
    default=False,
    help="Embed textures in every tile instead of writing a shared textures/ directory.",
)
@click.option("--flip-v", is_flag=True, default=False, help="Replace every v with 1 - v.")
@click.option(
    "--workers", type=click.IntRange(min=1), default=None, help="Tile writer threads."
)
@click.option(
    "--config",
    "config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file of tileset options; explicit flags override it.",
)
@click.option(
    "--emit-manifest",
    "emit_manifest",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write a JSON build manifest to this path after a successful export.",
)
@warning_options
def tiles(
    input_file: Path,
    output_dir: Path,
    origin_lat: float | None,
    origin_lon: float | None,
    origin_height: float | None,
    heading: float | None,
    scale: float | None,
    tile_size: float | None,
    min_tile_size: float | None,
    max_level: int | None,
    embed_textures: bool,
    flip_v: bool,
    workers: int | None,
    config: Path | None,
    emit_manifest: Path | None,
    warn_as_error: str | None,
    suppress_warning: str | None,
) -> None:
    """Export INPUT_FILE as a 3D Tiles tileset under OUTPUT_DIR."""
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)
    try:
        options = load_options(
            config,
            origin_lat=origin_lat,
            origin_lon=origin_lon,
            origin_height=origin_height,
            heading=heading,
            scale=scale,
            tile_size=tile_size,
            min_tile_size=min_tile_size,
            max_level=max_level,
            embed_textures=embed_textures or None,
            workers=workers,
        )
        scene = load_scene(input_file)
        if flip_v:
            flip_uvs(scene)
        summary = export_tileset(scene, output_dir, options, warning_policy=warning_policy)
        if emit_manifest is not None:
            manifest = build_manifest(
                input_path=input_file,
                summary=summary,
                command_args=sys.argv[1:],
            )
            _write_manifest(manifest, emit_manifest)
    except GeotilerError as e:
        raise click.ClickException(str(e)) from e

    click.echo(
        f"Exported: {summary.tileset_path} "
        f"({summary.tile_count} tiles, level {summary.max_level}, leaf {summary.leaf_size:g})"
    )


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--flip-v", is_flag=True, default=False, help="Replace every v with 1 - v.")
@warning_options
def glb(
    input_file: Path,
    output: Path,
    flip_v: bool,
    warn_as_error: str | None,
    suppress_warning: str | None,
) -> None:
    """Export INPUT_FILE as a single untiled GLB with embedded textures."""
    warning_policy = _build_warning_policy(warn_as_error, suppress_warning)
    try:
        scene = load_scene(input_file)
        if flip_v:
            flip_uvs(scene)
        export_glb(scene, output, warning_policy=warning_policy)
    except GeotilerError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Exported: {output}")
