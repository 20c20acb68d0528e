"""Texture encoding and per-export texture storage strategies."""

from __future__ import annotations

import hashlib
import io
import threading
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from geotiler.errors import ExportError
from geotiler.scene import EmbeddedTexture, FileTexture, TextureSource
from geotiler.warning_policy import WarningPolicy, emit_warning

PNG_MIME = "image/png"
JPEG_MIME = "image/jpeg"

_PASSTHROUGH_FORMATS = {"PNG": PNG_MIME, "JPEG": JPEG_MIME}
_ALPHA_MODES = frozenset({"RGBA", "LA", "PA", "RGBa", "La"})


@dataclass(frozen=True)
class ImageData:
    """Encoded image ready to be stored in a GLB or next to it."""

    data: bytes
    mime_type: str
    has_alpha: bool

    @property
    def extension(self) -> str:
        return "png" if self.mime_type == PNG_MIME else "jpg"

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


def _image_has_alpha(image: Image.Image) -> bool:
    if image.mode in _ALPHA_MODES:
        return True
    return "transparency" in image.info


def _reencode(image: Image.Image) -> ImageData:
    """PNG when the image carries alpha, JPEG otherwise."""
    has_alpha = _image_has_alpha(image)
    out = io.BytesIO()
    if has_alpha:
        image.convert("RGBA").save(out, format="PNG")
        return ImageData(out.getvalue(), PNG_MIME, True)
    image.convert("RGB").save(out, format="JPEG", quality=90)
    return ImageData(out.getvalue(), JPEG_MIME, False)


def _format_hint(name: str | None) -> list[str] | None:
    """Pillow format list guessed from a filename extension, if any."""
    if not name:
        return None
    suffix = Path(name).suffix.lower()
    fmt = Image.registered_extensions().get(suffix)
    return [fmt] if fmt else None


def _encode_bytes(data: bytes, name_hint: str | None) -> ImageData:
    try:
        image = Image.open(io.BytesIO(data))
    except UnidentifiedImageError:
        formats = _format_hint(name_hint)
        if formats is None:
            raise
        # Formats such as TGA have no magic number and need the hint
        image = Image.open(io.BytesIO(data), formats=formats)

    with image:
        mime = _PASSTHROUGH_FORMATS.get(image.format or "")
        if mime == JPEG_MIME:
            return ImageData(bytes(data), JPEG_MIME, False)
        if mime == PNG_MIME:
            image.load()
            return ImageData(bytes(data), PNG_MIME, _image_has_alpha(image))
        image.load()
        return _reencode(image)


def encode_texture(
    source: TextureSource,
    *,
    warning_policy: WarningPolicy | None = None,
) -> ImageData | None:
    """Turn a texture reference into PNG/JPEG bytes.

    PNG and JPEG inputs are passed through byte for byte; anything else Pillow can
    read is re-encoded. Unreadable textures produce a W01 warning and ``None``.
    """
    try:
        if isinstance(source, FileTexture):
            data = Path(source.path).read_bytes()
            return _encode_bytes(data, Path(source.path).name)
        if isinstance(source, EmbeddedTexture):
            return _encode_bytes(source.data, source.name)
    except (OSError, UnidentifiedImageError, ValueError) as e:
        emit_warning("W01", f"Texture {_describe(source)} skipped: {e}", policy=warning_policy)
        return None
    raise TypeError(f"Unsupported texture source: {type(source).__name__}")


def _describe(source: TextureSource) -> str:
    if isinstance(source, FileTexture):
        return str(source.path)
    return repr(source.name) if source.name else "<embedded>"


@dataclass(frozen=True)
class EmbeddedImage:
    image: ImageData


@dataclass(frozen=True)
class ExternalImage:
    uri: str
    mime_type: str
    has_alpha: bool


ImageEntry = EmbeddedImage | ExternalImage


@dataclass
class TextureCache:
    """Export-wide texture files shared by every tile.

    Maps content hash -> filename; a file is written the first time its hash is
    seen and never rewritten. Safe to share between worker threads.
    """

    directory: Path
    uri_prefix: str = "../textures"
    files: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def store(self, image: ImageData) -> str:
        """Ensure ``image`` exists in the cache directory and return its URI."""
        digest = image.digest
        with self._lock:
            filename = self.files.get(digest)
            if filename is None:
                filename = f"tex_{digest[:16]}.{image.extension}"
                self.files[digest] = filename
            path = self.directory / filename
            if not path.exists():
                try:
                    path.write_bytes(image.data)
                except OSError as e:
                    raise ExportError(f"Cannot write texture {path}: {e}") from e

        prefix = self.uri_prefix.rstrip("/")
        return f"{prefix}/{filename}" if prefix else filename


class EmbedTextures:
    """Store each image inside the GLB binary chunk."""

    def image_entry(self, image: ImageData) -> ImageEntry:
        return EmbeddedImage(image)


class ExternalTextures:
    """Store each image once in a shared directory and reference it by URI."""

    def __init__(self, cache: TextureCache) -> None:
        self.cache = cache

    def image_entry(self, image: ImageData) -> ImageEntry:
        return ExternalImage(
            uri=self.cache.store(image),
            mime_type=image.mime_type,
            has_alpha=image.has_alpha,
        )


TextureMode = EmbedTextures | ExternalTextures
