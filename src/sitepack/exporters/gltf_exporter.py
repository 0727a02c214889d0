"""
glTF/GLB Export Module

Exports the extruded buildings and the terrain surface to glTF binary format
for web and desktop viewers.

The binary layout is written by hand in two passes: every mesh first gets
its own buffer with mesh-local buffer views, then build() concatenates those
buffers into the single BIN chunk and rewrites each view against it.
"""

import logging
from typing import Dict, Any, List, Optional, Tuple
import json
import struct
import numpy as np

from ..common.config import ExportManifest
from ..common.coords import LocalProjection
from ..common.errors import FormatInvariantViolation, InputInvalid
from ..common.io import ElevationGrid, FeatureOutcome, VectorFeature
from ..common.mesh_ops import Mesh, compute_mesh_stats, extrude_buildings, terrain_mesh
from ..contours import ContourLine

logger = logging.getLogger(__name__)

GLB_MAGIC = b'glTF'
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

COMPONENT_FLOAT = 5126
COMPONENT_UNSIGNED_INT = 5125
ARRAY_BUFFER = 34962
ELEMENT_ARRAY_BUFFER = 34963
MODE_TRIANGLES = 4

MATERIALS: Dict[str, Dict[str, Any]] = {
    "building": {
        "name": "Building",
        "pbrMetallicRoughness": {
            "baseColorFactor": [0.78, 0.78, 0.8, 1.0],
            "metallicFactor": 0.0,
            "roughnessFactor": 0.9,
        },
    },
    "terrain": {
        "name": "Terrain",
        "pbrMetallicRoughness": {
            "baseColorFactor": [1.0, 1.0, 1.0, 1.0],
            "metallicFactor": 0.0,
            "roughnessFactor": 1.0,
        },
        "doubleSided": True,
    },
}


def to_y_up(vertices: np.ndarray) -> np.ndarray:
    """Z-up local (x, y, z) to glTF Y-up (x, z, -y)."""
    vertices = np.asarray(vertices, dtype=np.float64)
    return np.column_stack([vertices[:, 0], vertices[:, 2], -vertices[:, 1]])


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * (-len(data) % 4)


class GLBBuilder:
    """
    Accumulates meshes and serializes one GLB document.

    Buffer views are created with `buffer` set to the index of the mesh's own
    part and `byteOffset` relative to that part. build() resolves both.
    """

    def __init__(self, scene_name: str = "site", extras: Optional[Dict[str, Any]] = None):
        self.scene_name = scene_name
        self.extras = extras
        self.meshes: List[Dict[str, Any]] = []
        self.nodes: List[Dict[str, Any]] = []
        self.accessors: List[Dict[str, Any]] = []
        self.buffer_views: List[Dict[str, Any]] = []
        self.materials: List[Dict[str, Any]] = []
        self._material_index: Dict[str, int] = {}
        self._parts: List[bytes] = []

    def _material(self, key: str) -> int:
        if key not in self._material_index:
            self._material_index[key] = len(self.materials)
            self.materials.append(MATERIALS[key])
        return self._material_index[key]

    def add_mesh(self, mesh: Mesh, name: str, material: str = "building") -> int:
        """
        Add a Z-up mesh as one glTF mesh and node.

        Args:
            mesh: Mesh in local meters
            name: Mesh/node name
            material: Key into MATERIALS

        Returns:
            Node index

        Raises:
            InputInvalid: if the mesh violates its buffer invariants
        """
        mesh.validate()
        if mesh.n_faces == 0:
            raise InputInvalid(f"mesh {name} has no triangles")

        part_index = len(self._parts)
        part = bytearray()

        def add_view(data: bytes, target: int) -> int:
            offset = len(part)
            part.extend(_pad(data, b'\x00'))
            self.buffer_views.append({
                "buffer": part_index,
                "byteOffset": offset,
                "byteLength": len(data),
                "target": target,
            })
            return len(self.buffer_views) - 1

        positions = to_y_up(mesh.vertices).astype('<f4')
        indices = mesh.indices.astype('<u4')

        attributes = {}
        view = add_view(positions.tobytes(), ARRAY_BUFFER)
        attributes["POSITION"] = len(self.accessors)
        self.accessors.append({
            "bufferView": view,
            "componentType": COMPONENT_FLOAT,
            "count": len(positions),
            "type": "VEC3",
            "min": [float(v) for v in positions.min(axis=0)],
            "max": [float(v) for v in positions.max(axis=0)],
        })

        if mesh.vertex_colors is not None:
            colors = np.asarray(mesh.vertex_colors).astype('<f4')
            view = add_view(colors.tobytes(), ARRAY_BUFFER)
            attributes["COLOR_0"] = len(self.accessors)
            self.accessors.append({
                "bufferView": view,
                "componentType": COMPONENT_FLOAT,
                "count": len(colors),
                "type": "VEC3",
            })

        view = add_view(indices.tobytes(), ELEMENT_ARRAY_BUFFER)
        index_accessor = len(self.accessors)
        self.accessors.append({
            "bufferView": view,
            "componentType": COMPONENT_UNSIGNED_INT,
            "count": len(indices),
            "type": "SCALAR",
        })

        self._parts.append(bytes(part))
        self.meshes.append({
            "name": name,
            "primitives": [{
                "attributes": attributes,
                "indices": index_accessor,
                "material": self._material(material),
                "mode": MODE_TRIANGLES,
            }],
        })
        self.nodes.append({"name": name, "mesh": len(self.meshes) - 1})
        return len(self.nodes) - 1

    def _resolve_views(self) -> Tuple[bytes, List[Dict[str, Any]]]:
        """Concatenate mesh parts and rewrite every view against the blob."""
        starts = np.concatenate([[0], np.cumsum([len(p) for p in self._parts])]).astype(int)
        blob = b"".join(self._parts)
        views = [
            dict(view, buffer=0, byteOffset=int(starts[view["buffer"]]) + view["byteOffset"])
            for view in self.buffer_views
        ]
        self._check_layout(blob, views)
        return blob, views

    def _check_layout(self, blob: bytes, views: List[Dict[str, Any]]) -> None:
        expected = sum(len(p) for p in self._parts)
        if len(blob) != expected:
            raise FormatInvariantViolation(f"BIN length {len(blob)} != sum of parts {expected}")
        for k, view in enumerate(views):
            if view["byteOffset"] % 4 != 0:
                raise FormatInvariantViolation(f"bufferView {k} offset {view['byteOffset']} not 4-aligned")
            if view["byteOffset"] + view["byteLength"] > len(blob):
                raise FormatInvariantViolation(f"bufferView {k} extends past BIN chunk")

    def to_json(self, blob: bytes, views: List[Dict[str, Any]]) -> Dict[str, Any]:
        asset: Dict[str, Any] = {"version": "2.0", "generator": "sitepack"}
        if self.extras:
            asset["extras"] = self.extras

        scene: Dict[str, Any] = {"name": self.scene_name}
        if self.nodes:
            scene["nodes"] = list(range(len(self.nodes)))

        gltf: Dict[str, Any] = {"asset": asset, "scene": 0, "scenes": [scene]}
        # glTF arrays must be non-empty when present
        for key, value in (
            ("nodes", self.nodes),
            ("meshes", self.meshes),
            ("materials", self.materials),
            ("accessors", self.accessors),
            ("bufferViews", views),
        ):
            if value:
                gltf[key] = value
        if blob:
            gltf["buffers"] = [{"byteLength": len(blob)}]
        return gltf

    def build(self) -> bytes:
        """
        Serialize to GLB.

        Raises:
            FormatInvariantViolation: if the buffer layout is inconsistent
        """
        blob, views = self._resolve_views()
        gltf = self.to_json(blob, views)

        json_data = _pad(json.dumps(gltf, separators=(',', ':')).encode('utf-8'), b' ')
        bin_data = _pad(blob, b'\x00')

        chunks = struct.pack('<II', len(json_data), CHUNK_JSON) + json_data
        if bin_data:
            chunks += struct.pack('<II', len(bin_data), CHUNK_BIN) + bin_data

        total_length = 12 + len(chunks)
        glb = GLB_MAGIC + struct.pack('<II', GLB_VERSION, total_length) + chunks
        if len(glb) != total_length:
            raise FormatInvariantViolation(f"GLB length {len(glb)} != header {total_length}")
        return glb


def build_scene(
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature],
    contours: List[ContourLine],
    elevation: Optional[ElevationGrid] = None
) -> Tuple[bytes, List[FeatureOutcome]]:
    """
    Build the 3D scene: one mesh per building plus the terrain surface.

    Roads, land use and contours are not part of the scene; the parameters
    are accepted so every encoder shares one signature.

    Returns:
        Tuple of (GLB bytes, per-building outcomes)
    """
    projection = LocalProjection.for_manifest(manifest)
    meshes, outcomes = extrude_buildings(buildings, projection, manifest.default_building_height)

    terrain = terrain_mesh(elevation, projection) if elevation is not None else None

    watertight = sum(compute_mesh_stats(mesh)["is_watertight"] for _, mesh in meshes)
    extras = {
        "site_name": manifest.site_name,
        "center": {"lat": manifest.center_lat, "lng": manifest.center_lng},
        "radius_m": manifest.radius_m,
        "units": "meters",
        "up_axis": "Y",
        "buildings": {"count": len(meshes), "watertight": int(watertight)},
        "terrain": compute_mesh_stats(terrain) if terrain is not None else None,
    }

    builder = GLBBuilder(scene_name=manifest.site_name, extras=extras)
    for feature_id, mesh in meshes:
        builder.add_mesh(mesh, f"building_{feature_id}", material="building")
    if terrain is not None:
        builder.add_mesh(terrain, "terrain", material="terrain")

    glb = builder.build()
    logger.info(
        f"GLB: {len(builder.meshes)} meshes ({len(meshes)} buildings, "
        f"terrain={'yes' if terrain is not None else 'no'}), {len(glb)} bytes"
    )
    return glb, outcomes
