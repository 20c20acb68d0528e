"""glTF/GLB assembly via pygltflib."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pygltflib

from geotiler import __version__
from geotiler.errors import ExportError, GeotilerError
from geotiler.scene import (
    Material,
    MeshPart,
    Scene,
    TextureSource,
    check_attribute_lengths,
    resolve_material_index,
)
from geotiler.textures import (
    EmbeddedImage,
    EmbedTextures,
    ImageEntry,
    TextureMode,
    encode_texture,
)
from geotiler.warning_policy import WarningPolicy

GLB_MAGIC = 0x46546C67  # b"glTF"
GLB_VERSION = 2
CHUNK_TYPE_JSON = 0x4E4F534A  # b"JSON"
CHUNK_TYPE_BIN = 0x004E4942  # b"BIN\0"

GENERATOR = f"geotiler {__version__}"

_F32_EPS = float(np.finfo(np.float32).eps)


def export_glb(
    scene: Scene,
    output_path: Path,
    *,
    texture_mode: TextureMode | None = None,
    warning_policy: WarningPolicy | None = None,
) -> None:
    """Write ``scene`` as one GLB file.

    Pipeline: fill missing attributes -> tangents -> buffers -> materials/textures
    -> GLB container.
    """
    try:
        glb = build_glb(scene, texture_mode=texture_mode, warning_policy=warning_policy)
        output_path.write_bytes(glb)
    except Exception as e:
        if isinstance(e, GeotilerError):
            raise
        raise ExportError(f"Failed to export GLB {output_path}: {e}") from e


def build_glb(
    scene: Scene,
    *,
    texture_mode: TextureMode | None = None,
    warning_policy: WarningPolicy | None = None,
) -> bytes:
    """Build the complete GLB byte string for ``scene``."""
    if texture_mode is None:
        texture_mode = EmbedTextures()
    gltf, blob = _build_gltf(scene, texture_mode, warning_policy)
    return _pack_glb(gltf, blob)


# ---------------------------------------------------------------------------
# Vertex attributes
# ---------------------------------------------------------------------------


def ensure_normals(positions: np.ndarray, normals: np.ndarray) -> np.ndarray:
    """Return (N, 3) normals, generating flat face normals when they don't fit."""
    if len(normals) > 0 and len(normals) == len(positions):
        return np.asarray(normals, dtype=np.float32).reshape(-1, 3)
    return flat_normals(positions)


def ensure_uvs(vertex_count: int, uvs: np.ndarray) -> np.ndarray:
    if len(uvs) == vertex_count * 2:
        return np.asarray(uvs, dtype=np.float32).reshape(-1, 2)
    return np.zeros((vertex_count, 2), dtype=np.float32)


def ensure_colors(vertex_count: int, colors: np.ndarray) -> np.ndarray:
    if len(colors) == vertex_count * 4:
        return np.asarray(colors, dtype=np.float32).reshape(-1, 4)
    return np.ones((vertex_count, 4), dtype=np.float32)


def flat_normals(positions: np.ndarray) -> np.ndarray:
    """Per-triangle face normals, ``(0, 1, 0)`` for zero-area triangles."""
    pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    tri_count = len(pos) // 3
    normals = np.tile(np.array([0.0, 1.0, 0.0], dtype=np.float32), (len(pos), 1))
    if tri_count == 0:
        return normals

    tris = pos[: tri_count * 3].reshape(-1, 3, 3)
    face = np.cross(tris[:, 1] - tris[:, 0], tris[:, 2] - tris[:, 0])
    length = np.linalg.norm(face, axis=1)
    ok = length > _F32_EPS
    face[ok] /= length[ok, None]
    face[~ok] = (0.0, 1.0, 0.0)
    normals[: tri_count * 3] = np.repeat(face, 3, axis=0)
    return normals


def compute_tangents(positions: np.ndarray, uvs: np.ndarray, normals: np.ndarray) -> np.ndarray:
    """Per-vertex (N, 4) tangents from each triangle's UV gradient.

    The tangent is orthonormalised against the vertex normal and ``w`` carries the
    bitangent handedness (+1 or -1).
    """
    pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    uv = np.asarray(uvs, dtype=np.float32).reshape(-1, 2)
    nrm = np.asarray(normals, dtype=np.float32).reshape(-1, 3)
    n_verts = len(pos)
    tangents = np.zeros((n_verts, 4), dtype=np.float32)
    tri_count = n_verts // 3
    if tri_count == 0:
        return tangents

    p = pos[: tri_count * 3].reshape(-1, 3, 3)
    t = uv[: tri_count * 3].reshape(-1, 3, 2)
    edge1 = p[:, 1] - p[:, 0]
    edge2 = p[:, 2] - p[:, 0]
    d_uv1 = t[:, 1] - t[:, 0]
    d_uv2 = t[:, 2] - t[:, 0]

    denom = d_uv1[:, 0] * d_uv2[:, 1] - d_uv1[:, 1] * d_uv2[:, 0]
    ok = np.abs(denom) > _F32_EPS
    r = np.zeros_like(denom)
    r[ok] = 1.0 / denom[ok]

    tangent = (edge1 * d_uv2[:, 1:2] - edge2 * d_uv1[:, 1:2]) * r[:, None]
    bitangent = (edge2 * d_uv1[:, 0:1] - edge1 * d_uv2[:, 0:1]) * r[:, None]
    tangent[~ok] = (1.0, 0.0, 0.0)
    bitangent[~ok] = (0.0, 1.0, 0.0)

    tri_tangent = np.repeat(tangent, 3, axis=0)
    tri_bitangent = np.repeat(bitangent, 3, axis=0)
    n = nrm[: tri_count * 3]

    # Gram-Schmidt against each vertex normal
    ortho = tri_tangent - n * np.sum(n * tri_tangent, axis=1, keepdims=True)
    length = np.linalg.norm(ortho, axis=1)
    good = length > _F32_EPS
    ortho[good] /= length[good, None]
    ortho[~good] = (1.0, 0.0, 0.0)

    handedness = np.where(np.sum(np.cross(n, ortho) * tri_bitangent, axis=1) < 0.0, -1.0, 1.0)

    tangents[: tri_count * 3, :3] = ortho
    tangents[: tri_count * 3, 3] = handedness
    return tangents


def position_bounds(positions: np.ndarray) -> tuple[list[float], list[float]]:
    """Per-axis min/max over finite vertices; zeros when there are none."""
    pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    finite = pos[np.all(np.isfinite(pos), axis=1)]
    if len(finite) == 0:
        return [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]
    return finite.min(axis=0).tolist(), finite.max(axis=0).tolist()


# ---------------------------------------------------------------------------
# Buffer assembly
# ---------------------------------------------------------------------------


def _align4(blob_data: bytearray) -> None:
    blob_data.extend(b"\x00" * ((4 - len(blob_data) % 4) % 4))


def _write_buffer_view(
    gltf: pygltflib.GLTF2,
    blob_data: bytearray,
    data_bytes: bytes,
    target: int | None = None,
) -> int:
    """Append an aligned region to the shared buffer, returning the buffer view index."""
    _align4(blob_data)
    offset = len(blob_data)
    blob_data.extend(data_bytes)
    _align4(blob_data)

    bv = pygltflib.BufferView(buffer=0, byteOffset=offset, byteLength=len(data_bytes))
    if target is not None:
        bv.target = target
    gltf.bufferViews.append(bv)
    return len(gltf.bufferViews) - 1


def _write_accessor(
    gltf: pygltflib.GLTF2,
    blob_data: bytearray,
    data_array: np.ndarray,
    accessor_type: str,
    *,
    bounds: tuple[list[float], list[float]] | None = None,
) -> int:
    """Write a float32 vertex attribute, returning the accessor index."""
    array = np.ascontiguousarray(data_array, dtype="<f4")
    bv_idx = _write_buffer_view(gltf, blob_data, array.tobytes(), pygltflib.ARRAY_BUFFER)

    acc_kwargs: dict = {
        "bufferView": bv_idx,
        "byteOffset": 0,
        "componentType": pygltflib.FLOAT,
        "count": len(array),
        "type": accessor_type,
    }
    if bounds is not None:
        acc_kwargs["min"], acc_kwargs["max"] = bounds

    gltf.accessors.append(pygltflib.Accessor(**acc_kwargs))
    return len(gltf.accessors) - 1


def _build_primitive(
    gltf: pygltflib.GLTF2,
    blob_data: bytearray,
    part: MeshPart,
    material_count: int,
    warning_policy: WarningPolicy | None,
) -> pygltflib.Primitive:
    check_attribute_lengths(part, warning_policy)
    material = resolve_material_index(part, material_count, warning_policy=warning_policy)

    positions = part.positions[: part.vertex_count * 3].reshape(-1, 3)
    n_verts = len(positions)
    normals = ensure_normals(positions.reshape(-1), part.normals)
    uvs = ensure_uvs(n_verts, part.uvs)
    colors = ensure_colors(n_verts, part.colors)
    tangents = compute_tangents(positions, uvs, normals)

    attributes = pygltflib.Attributes(
        POSITION=_write_accessor(
            gltf, blob_data, positions, pygltflib.VEC3, bounds=position_bounds(positions)
        ),
        NORMAL=_write_accessor(gltf, blob_data, normals, pygltflib.VEC3),
        TEXCOORD_0=_write_accessor(gltf, blob_data, uvs, pygltflib.VEC2),
        COLOR_0=_write_accessor(gltf, blob_data, colors, pygltflib.VEC4),
        TANGENT=_write_accessor(gltf, blob_data, tangents, pygltflib.VEC4),
    )
    return pygltflib.Primitive(attributes=attributes, material=material, mode=pygltflib.TRIANGLES)


# ---------------------------------------------------------------------------
# Materials and textures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _TextureRef:
    index: int
    has_alpha: bool


class _TextureRegistry:
    """Deduplicates images by content hash and textures by image, for one GLB."""

    def __init__(
        self,
        gltf: pygltflib.GLTF2,
        texture_mode: TextureMode,
        warning_policy: WarningPolicy | None,
    ) -> None:
        self.gltf = gltf
        self.texture_mode = texture_mode
        self.warning_policy = warning_policy
        self.entries: list[ImageEntry] = []
        self.image_alpha: list[bool] = []
        self.image_by_hash: dict[str, int] = {}
        self.texture_by_image: dict[int, int] = {}
        self.sampler = 0
        gltf.samplers.append(
            pygltflib.Sampler(
                magFilter=pygltflib.LINEAR,
                minFilter=pygltflib.LINEAR,
                wrapS=pygltflib.REPEAT,
                wrapT=pygltflib.REPEAT,
            )
        )

    def resolve(self, source: TextureSource | None) -> _TextureRef | None:
        if source is None:
            return None
        image = encode_texture(source, warning_policy=self.warning_policy)
        if image is None:
            return None

        digest = image.digest
        image_idx = self.image_by_hash.get(digest)
        if image_idx is None:
            image_idx = len(self.entries)
            self.entries.append(self.texture_mode.image_entry(image))
            self.image_alpha.append(image.has_alpha)
            self.image_by_hash[digest] = image_idx

        tex_idx = self.texture_by_image.get(image_idx)
        if tex_idx is None:
            tex_idx = len(self.gltf.textures)
            self.gltf.textures.append(pygltflib.Texture(sampler=self.sampler, source=image_idx))
            self.texture_by_image[image_idx] = tex_idx
        return _TextureRef(tex_idx, self.image_alpha[image_idx])

    def write_images(self, blob_data: bytearray) -> None:
        for entry in self.entries:
            if isinstance(entry, EmbeddedImage):
                bv_idx = _write_buffer_view(self.gltf, blob_data, entry.image.data)
                self.gltf.images.append(
                    pygltflib.Image(bufferView=bv_idx, mimeType=entry.image.mime_type)
                )
            else:
                self.gltf.images.append(pygltflib.Image(uri=entry.uri, mimeType=entry.mime_type))


def _build_material(material: Material, registry: _TextureRegistry) -> pygltflib.Material:
    base_color_tex = registry.resolve(material.base_color_texture)
    normal_tex = registry.resolve(material.normal_texture)
    emissive_tex = registry.resolve(material.emissive_texture)

    base_color = [float(c) for c in material.base_color]
    pbr = pygltflib.PbrMetallicRoughness(
        baseColorFactor=base_color,
        metallicFactor=float(material.metallic),
        roughnessFactor=float(material.roughness),
    )
    if base_color_tex is not None:
        pbr.baseColorTexture = pygltflib.TextureInfo(index=base_color_tex.index)

    textured = any(t is not None for t in (base_color_tex, normal_tex, emissive_tex))
    translucent = base_color[3] < 0.999 or (
        base_color_tex is not None and base_color_tex.has_alpha
    )
    emissive = [float(c) for c in material.emissive]

    gltf_material = pygltflib.Material(
        name=material.name,
        pbrMetallicRoughness=pbr,
        doubleSided=True if textured else bool(material.double_sided),
        alphaMode=pygltflib.BLEND if translucent else pygltflib.OPAQUE,
        alphaCutoff=None,
        emissiveFactor=emissive if any(c != 0.0 for c in emissive) else None,
    )
    if normal_tex is not None:
        gltf_material.normalTexture = pygltflib.NormalMaterialTexture(index=normal_tex.index)
    if emissive_tex is not None:
        gltf_material.emissiveTexture = pygltflib.TextureInfo(index=emissive_tex.index)
    return gltf_material


def _default_material() -> pygltflib.Material:
    return pygltflib.Material(
        pbrMetallicRoughness=pygltflib.PbrMetallicRoughness(
            baseColorFactor=[1.0, 1.0, 1.0, 1.0],
            metallicFactor=0.0,
            roughnessFactor=1.0,
        ),
        alphaCutoff=None,
        emissiveFactor=None,
    )


# ---------------------------------------------------------------------------
# Document and container
# ---------------------------------------------------------------------------


def _build_gltf(
    scene: Scene,
    texture_mode: TextureMode,
    warning_policy: WarningPolicy | None,
) -> tuple[pygltflib.GLTF2, bytes]:
    gltf = pygltflib.GLTF2(
        asset=pygltflib.Asset(version="2.0", generator=GENERATOR),
        scene=0,
        scenes=[pygltflib.Scene(nodes=[0])],
        nodes=[pygltflib.Node(mesh=0)],
        meshes=[],
        accessors=[],
        bufferViews=[],
        buffers=[],
        materials=[],
        textures=[],
        images=[],
        samplers=[],
    )
    blob_data = bytearray()

    primitives = [
        _build_primitive(gltf, blob_data, part, len(scene.materials), warning_policy)
        for part in scene.parts
        if part.vertex_count > 0
    ]
    if not primitives:
        raise ExportError("No primitives generated")
    gltf.meshes.append(pygltflib.Mesh(primitives=primitives))

    registry = _TextureRegistry(gltf, texture_mode, warning_policy)
    gltf.materials = [_build_material(m, registry) for m in scene.materials]
    if not gltf.materials:
        gltf.materials.append(_default_material())
    registry.write_images(blob_data)

    _align4(blob_data)
    gltf.buffers = [pygltflib.Buffer(byteLength=len(blob_data))]
    return gltf, bytes(blob_data)


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * ((4 - len(data) % 4) % 4)


def _json_chunk(gltf: pygltflib.GLTF2, blob: bytes) -> bytes:
    """Serialize the document through pygltflib and return its JSON chunk payload."""
    gltf.set_binary_blob(blob)
    glb_bytes = b"".join(gltf.save_to_bytes())

    json_chunk_length, json_chunk_type = struct.unpack_from("<II", glb_bytes, 12)
    if json_chunk_type != CHUNK_TYPE_JSON:
        raise ExportError("pygltflib produced a GLB without a leading JSON chunk")
    return glb_bytes[20 : 20 + json_chunk_length].rstrip(b"\x20")


def _pack_glb(gltf: pygltflib.GLTF2, blob: bytes) -> bytes:
    """Frame the document and binary blob as a GLB 2.0 container."""
    json_bytes = _pad(_json_chunk(gltf, blob), b"\x20")
    bin_bytes = _pad(blob, b"\x00")
    total_length = 12 + 8 + len(json_bytes) + 8 + len(bin_bytes)

    out = bytearray()
    out += struct.pack("<III", GLB_MAGIC, GLB_VERSION, total_length)
    out += struct.pack("<II", len(json_bytes), CHUNK_TYPE_JSON)
    out += json_bytes
    out += struct.pack("<II", len(bin_bytes), CHUNK_TYPE_BIN)
    out += bin_bytes
    return bytes(out)
