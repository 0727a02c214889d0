"""
COLLADA Export Module

Writes the buildings and terrain as a COLLADA 1.4.1 document for
polygon-modeling tools (SketchUp, Blender, Rhino).

Geometry stays Z-up in local meters; the document declares both.
"""

import logging
from typing import Dict, Any, List, Optional, Tuple
from xml.sax.saxutils import escape

import numpy as np

from ..common.config import ExportManifest
from ..common.coords import LocalProjection
from ..common.io import ElevationGrid, FeatureOutcome, VectorFeature
from ..common.mesh_ops import Mesh, extrude_buildings, terrain_mesh
from ..contours import ContourLine

logger = logging.getLogger(__name__)

COLLADA_NS = "http://www.collada.org/2005/11/COLLADASchema"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}

# material key → (display name, diffuse RGBA)
MATERIALS: Dict[str, Tuple[str, Tuple[float, float, float, float]]] = {
    "building": ("Building", (0.78, 0.78, 0.8, 1.0)),
    "terrain": ("Terrain", (0.55, 0.62, 0.42, 1.0)),
}


def xml_escape(text: Any) -> str:
    """Escape & < > " ' for element text and attribute values."""
    return escape(str(text), _XML_ENTITIES)


class ColladaBuilder:
    """Collects named meshes and renders one COLLADA document."""

    def __init__(self, model_name: str, timestamp: str, precision: int = 3):
        self.model_name = model_name
        self.timestamp = timestamp
        self.precision = precision
        self._geometries: List[Dict[str, Any]] = []

    def add_mesh(self, mesh: Mesh, name: str, material: str = "building") -> str:
        """
        Add a mesh as one geometry and one scene node.

        Returns:
            The geometry id
        """
        mesh.validate()
        geometry_id = f"{material}-{len(self._geometries)}"
        self._geometries.append({
            "id": geometry_id,
            "name": name,
            "mesh": mesh,
            "material": material,
        })
        return geometry_id

    def _floats(self, values: np.ndarray) -> str:
        return " ".join(f"{v:.{self.precision}f}" for v in np.asarray(values).ravel())

    def _asset(self) -> List[str]:
        ts = xml_escape(self.timestamp)
        return [
            "  <asset>",
            "    <contributor>",
            "      <authoring_tool>sitepack</authoring_tool>",
            f"      <comments>{xml_escape(self.model_name)}</comments>",
            "    </contributor>",
            f"    <created>{ts}</created>",
            f"    <modified>{ts}</modified>",
            '    <unit name="meter" meter="1"/>',
            "    <up_axis>Z_UP</up_axis>",
            "  </asset>",
        ]

    def _effects(self) -> List[str]:
        lines = ["  <library_effects>"]
        for key, (_, rgba) in MATERIALS.items():
            color = " ".join(f"{c:g}" for c in rgba)
            lines += [
                f'    <effect id="{key}-effect">',
                "      <profile_COMMON>",
                '        <technique sid="common">',
                "          <lambert>",
                f"            <diffuse><color>{color}</color></diffuse>",
                "          </lambert>",
                "        </technique>",
                "      </profile_COMMON>",
                "    </effect>",
            ]
        lines.append("  </library_effects>")
        return lines

    def _materials(self) -> List[str]:
        lines = ["  <library_materials>"]
        for key, (name, _) in MATERIALS.items():
            lines += [
                f'    <material id="{key}-material" name="{xml_escape(name)}">',
                f'      <instance_effect url="#{key}-effect"/>',
                "    </material>",
            ]
        lines.append("  </library_materials>")
        return lines

    def _geometry(self, geom: Dict[str, Any]) -> List[str]:
        gid = geom["id"]
        mesh: Mesh = geom["mesh"]
        n = mesh.n_vertices
        lines = [
            f'    <geometry id="{gid}-mesh" name="{xml_escape(geom["name"])}">',
            "      <mesh>",
            f'        <source id="{gid}-positions">',
            f'          <float_array id="{gid}-positions-array" count="{3 * n}">{self._floats(mesh.vertices)}</float_array>',
            "          <technique_common>",
            f'            <accessor source="#{gid}-positions-array" count="{n}" stride="3">',
            '              <param name="X" type="float"/>',
            '              <param name="Y" type="float"/>',
            '              <param name="Z" type="float"/>',
            "            </accessor>",
            "          </technique_common>",
            "        </source>",
        ]
        if mesh.vertex_colors is not None:
            lines += [
                f'        <source id="{gid}-colors">',
                f'          <float_array id="{gid}-colors-array" count="{3 * n}">{self._floats(mesh.vertex_colors)}</float_array>',
                "          <technique_common>",
                f'            <accessor source="#{gid}-colors-array" count="{n}" stride="3">',
                '              <param name="R" type="float"/>',
                '              <param name="G" type="float"/>',
                '              <param name="B" type="float"/>',
                "            </accessor>",
                "          </technique_common>",
                "        </source>",
            ]
        lines += [
            f'        <vertices id="{gid}-vertices">',
            f'          <input semantic="POSITION" source="#{gid}-positions"/>',
            "        </vertices>",
            f'        <triangles material="{geom["material"]}" count="{mesh.n_faces}">',
            f'          <input semantic="VERTEX" source="#{gid}-vertices" offset="0"/>',
        ]
        if mesh.vertex_colors is not None:
            lines.append(f'          <input semantic="COLOR" source="#{gid}-colors" offset="0"/>')
        lines += [
            f"          <p>{' '.join(str(int(i)) for i in mesh.indices)}</p>",
            "        </triangles>",
            "      </mesh>",
            "    </geometry>",
        ]
        return lines

    def _visual_scene(self) -> List[str]:
        lines = [
            "  <library_visual_scenes>",
            f'    <visual_scene id="Scene" name="{xml_escape(self.model_name)}">',
        ]
        for geom in self._geometries:
            gid, material = geom["id"], geom["material"]
            lines += [
                f'      <node id="{gid}-node" name="{xml_escape(geom["name"])}" type="NODE">',
                f'        <instance_geometry url="#{gid}-mesh">',
                "          <bind_material>",
                "            <technique_common>",
                f'              <instance_material symbol="{material}" target="#{material}-material"/>',
                "            </technique_common>",
                "          </bind_material>",
                "        </instance_geometry>",
                "      </node>",
            ]
        if not self._geometries:
            # A visual_scene needs at least one node
            lines.append('      <node id="empty-node" name="Empty" type="NODE"/>')
        lines += ["    </visual_scene>", "  </library_visual_scenes>"]
        return lines

    def build(self) -> str:
        lines = [
            '<?xml version="1.0" encoding="utf-8"?>',
            f'<COLLADA xmlns="{COLLADA_NS}" version="1.4.1">',
        ]
        lines += self._asset()
        lines += self._effects()
        lines += self._materials()
        if self._geometries:
            lines.append("  <library_geometries>")
            for geom in self._geometries:
                lines += self._geometry(geom)
            lines.append("  </library_geometries>")
        lines += self._visual_scene()
        lines += [
            "  <scene>",
            '    <instance_visual_scene url="#Scene"/>',
            "  </scene>",
            "</COLLADA>",
            "",
        ]
        return "\n".join(lines)


def build_exchange_document(
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature],
    contours: List[ContourLine],
    elevation: Optional[ElevationGrid] = None
) -> Tuple[bytes, List[FeatureOutcome]]:
    """
    Build the COLLADA model: extruded buildings plus the terrain mesh.

    Returns:
        Tuple of (UTF-8 XML bytes, per-building outcomes)
    """
    projection = LocalProjection.for_manifest(manifest)
    meshes, outcomes = extrude_buildings(buildings, projection, manifest.default_building_height)

    builder = ColladaBuilder(manifest.site_name, manifest.timestamp(), precision=manifest.precision)
    for feature_id, mesh in meshes:
        builder.add_mesh(mesh, f"Building {feature_id}", material="building")

    terrain = terrain_mesh(elevation, projection) if elevation is not None else None
    if terrain is not None:
        builder.add_mesh(terrain, "Terrain", material="terrain")

    document = builder.build().encode("utf-8")
    logger.info(
        f"COLLADA: {len(meshes)} buildings, terrain={'yes' if terrain is not None else 'no'}, "
        f"{len(document)} bytes"
    )
    return document, outcomes
