"""Build manifest describing one tileset export."""

from __future__ import annotations

import hashlib
import sys
from datetime import datetime, timezone
from pathlib import Path

from geotiler import __version__
from geotiler.tiles import TILES_DIR, ExportSummary

MANIFEST_VERSION = 1
_READ_CHUNK = 1 << 16


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _tile_entries(tile_paths: tuple[Path, ...]) -> list[dict]:
    return [
        {"path": f"{TILES_DIR}/{p.name}", "sha256": file_sha256(p)}
        for p in sorted(tile_paths, key=lambda p: p.name)
    ]


def build_manifest(
    *,
    input_path: Path,
    summary: ExportSummary,
    command_args: list[str] | None = None,
) -> dict:
    """Describe a finished export: tool, inputs, and a hash of every file it wrote.

    Call after ``export_tileset`` has returned.
    """
    manifest: dict = {
        "manifest_version": MANIFEST_VERSION,
        "tool": {
            "name": "geotiler",
            "version": __version__,
            "python": sys.version.split()[0],
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "input": {"path": str(input_path), "sha256": file_sha256(input_path)},
        "tileset": {
            "path": str(summary.tileset_path),
            "sha256": file_sha256(summary.tileset_path),
        },
        "tile_count": summary.tile_count,
        "max_level": summary.max_level,
        "leaf_size": summary.leaf_size,
        "tiles": _tile_entries(summary.tile_paths),
    }
    if command_args is not None:
        manifest["command_args"] = command_args
    return manifest
