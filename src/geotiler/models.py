"""Pydantic v2 schema models for scene documents and export options."""

from __future__ import annotations

import base64
import binascii

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SUPPORTED_VERSIONS: frozenset[str] = frozenset({"1"})


class TextureSpec(BaseModel):
    """Either ``path`` (relative to the document) or base64 ``data`` plus a ``name`` hint."""

    model_config = ConfigDict(extra="forbid")

    path: str | None = None
    data: str | None = None
    name: str | None = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> TextureSpec:
        if (self.path is None) == (self.data is None):
            raise ValueError("texture must set exactly one of 'path' or 'data'")
        return self

    @field_validator("data")
    @classmethod
    def _valid_base64(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                base64.b64decode(v, validate=True)
            except binascii.Error as e:
                raise ValueError(f"texture data is not valid base64: {e}") from e
        return v

    def decoded(self) -> bytes:
        return base64.b64decode(self.data or "")


class MaterialSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    base_color: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    emissive: tuple[float, float, float] = (0.0, 0.0, 0.0)
    metallic: float = 0.0
    roughness: float = 1.0
    double_sided: bool = False
    base_color_texture: TextureSpec | None = None
    normal_texture: TextureSpec | None = None
    emissive_texture: TextureSpec | None = None


class PartSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    material: int = 0
    positions: list[float]
    normals: list[float] = Field(default_factory=list)
    uvs: list[float] = Field(default_factory=list)
    colors: list[float] = Field(default_factory=list)

    @field_validator("positions")
    @classmethod
    def _whole_triangles(cls, v: list[float]) -> list[float]:
        if len(v) % 9 != 0:
            raise ValueError(
                f"positions must hold whole triangles (multiple of 9 floats), got {len(v)}"
            )
        return v


class SceneDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str
    materials: list[MaterialSpec] = Field(default_factory=list)
    parts: list[PartSpec] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, v: object) -> str:
        version = str(v)
        if version not in SUPPORTED_VERSIONS:
            raise ValueError(
                f"Unsupported scene version {version!r} (supported: {sorted(SUPPORTED_VERSIONS)})"
            )
        return version


class TilesetOptions(BaseModel):
    """Parameters of one tileset export."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    origin_lat: float = 39.918058
    origin_lon: float = 116.397026
    origin_height: float = 50.0
    heading: float = 0.0  # degrees about +Y
    scale: float = 1.0
    tile_size: float = 100.0
    min_tile_size: float = 12.5
    max_level: int | None = Field(default=None, ge=0)
    embed_textures: bool = False
    workers: int = Field(default=1, ge=1)
