"""
DXF Export Module

Writes the site drawing as an ASCII DXF using the R12 entity set, so any CAD
package can open it without a translation step.

Coordinates are local meters around the site center, scaled to the unit the
manifest declares. Z carries building heights and contour elevations.
"""

import logging
from typing import Dict, Any, List, Optional, Tuple

import numpy as np

from ..common.config import ExportManifest, LinearUnit
from ..common.coords import LocalProjection
from ..common.errors import InputInvalid
from ..common.io import (
    FeatureOutcome, PolygonFeature, LineStringFeature, VectorFeature,
    building_height, distinct_ring,
)
from ..contours import ContourLine, simplify_contours

logger = logging.getLogger(__name__)

# Layer name → ACI color
LAYERS: Dict[str, int] = {
    "BUILDINGS": 1,   # red
    "ROADS": 3,       # green
    "LANDUSE": 4,     # cyan
    "CONTOURS": 8,    # grey
    "BOUNDARY": 7,    # white/black
    "TEXT": 7,
}

# Every 5th contour interval is an index contour and gets a label
INDEX_CONTOUR_EVERY = 5

POLYLINE_CLOSED = 1
POLYLINE_3D = 8
VERTEX_3D = 32


class DXFBuilder:
    """
    Collects layers and entities and renders one DXF document.

    Points passed in are local meters; they are scaled to `units` on the way
    in, and the drawing extents are tracked in output units.
    """

    def __init__(self, units: LinearUnit = LinearUnit.METERS, precision: int = 3):
        self.units = units
        self.precision = precision
        self.layers: Dict[str, int] = {"0": 7}
        self.comments: List[str] = []
        self._entities: List[str] = []
        self._ext_min = np.full(3, np.inf)
        self._ext_max = np.full(3, -np.inf)

    @property
    def n_entities(self) -> int:
        return len(self._entities)

    def add_layer(self, name: str, color: int) -> None:
        self.layers[name] = color

    def add_comment(self, text: str) -> None:
        self.comments.append(_clean_text(text))

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _num(self, value: float) -> str:
        return f"{value:.{self.precision}f}"

    def _point(self, point, z: Optional[float] = None) -> np.ndarray:
        """Scale one local-meter point (x, y[, z]) to output units."""
        p = np.zeros(3)
        point = np.asarray(point, dtype=np.float64)
        p[:len(point)] = point[:3]
        if z is not None:
            p[2] = z
        if not np.all(np.isfinite(p)):
            raise InputInvalid("non-finite coordinate")
        p *= self.units.per_meter
        self._ext_min = np.minimum(self._ext_min, p)
        self._ext_max = np.maximum(self._ext_max, p)
        return p

    def _coords(self, p: np.ndarray, base: int = 10) -> str:
        return "".join(
            _group(base + 10 * k, self._num(p[k])) for k in range(3)
        )

    def add_line(self, layer: str, start, end) -> None:
        a, b = self._point(start), self._point(end)
        self._entities.append(
            _group(0, "LINE") + _group(8, layer) + self._coords(a, 10) + self._coords(b, 11)
        )

    def add_polyline(self, layer: str, points, closed: bool = False, z: Optional[float] = None) -> None:
        """
        Add a 3D polyline.

        Args:
            layer: Layer name
            points: (k, 2) or (k, 3) points in local meters
            closed: Close the polyline; the closing vertex is implied and
                only x/y of the points are used
            z: Elevation applied to every vertex (overrides point z)

        Raises:
            InputInvalid: closed with fewer than 3 distinct vertices, open with
                fewer than 2 points, or non-finite coordinates
        """
        points = np.asarray(points, dtype=np.float64)
        if closed:
            ring = distinct_ring(points[:, :2])
            if len(ring) < 3:
                raise InputInvalid(f"closed polyline has {len(ring)} distinct vertices, need 3")
            points = ring
        elif len(points) < 2:
            raise InputInvalid(f"polyline has {len(points)} points, need 2")

        scaled = [self._point(p, z) for p in points]
        flags = POLYLINE_3D | (POLYLINE_CLOSED if closed else 0)
        parts = [
            _group(0, "POLYLINE"), _group(8, layer), _group(66, 1),
            self._coords(np.zeros(3)), _group(70, flags),
        ]
        for p in scaled:
            parts.append(_group(0, "VERTEX") + _group(8, layer) + self._coords(p) + _group(70, VERTEX_3D))
        parts.append(_group(0, "SEQEND") + _group(8, layer))
        self._entities.append("".join(parts))

    def add_text(self, layer: str, position, height: float, text: str) -> None:
        p = self._point(position)
        self._entities.append(
            _group(0, "TEXT") + _group(8, layer) + self._coords(p)
            + _group(40, self._num(height * self.units.per_meter))
            + _group(1, _clean_text(text))
        )

    def add_circle(self, layer: str, center, radius: float) -> None:
        if not (np.isfinite(radius) and radius > 0):
            raise InputInvalid(f"circle radius must be positive, got {radius}")
        c = np.asarray(center, dtype=np.float64)
        # Track the circle's extents, not only its center
        self._point(c[:2] - radius)
        self._point(c[:2] + radius)
        p = self._point(c)
        self._entities.append(
            _group(0, "CIRCLE") + _group(8, layer) + self._coords(p)
            + _group(40, self._num(radius * self.units.per_meter))
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _header(self) -> str:
        if np.all(np.isfinite(self._ext_min)):
            ext_min, ext_max = self._ext_min, self._ext_max
        else:
            ext_min = ext_max = np.zeros(3)
        return (
            _section("HEADER")
            + _group(9, "$ACADVER") + _group(1, "AC1009")
            + _group(9, "$DWGCODEPAGE") + _group(3, "ANSI_1252")
            + _group(9, "$INSUNITS") + _group(70, self.units.insunits)
            + _group(9, "$MEASUREMENT") + _group(70, 1 if self.units.is_metric else 0)
            + _group(9, "$LUNITS") + _group(70, 2)
            + _group(9, "$LUPREC") + _group(70, self.precision)
            + _group(9, "$EXTMIN") + self._coords(ext_min)
            + _group(9, "$EXTMAX") + self._coords(ext_max)
            + _group(0, "ENDSEC")
        )

    def _tables(self) -> str:
        ltype = (
            _group(0, "TABLE") + _group(2, "LTYPE") + _group(70, 1)
            + _group(0, "LTYPE") + _group(2, "CONTINUOUS") + _group(70, 0)
            + _group(3, "Solid line") + _group(72, 65) + _group(73, 0) + _group(40, "0.0")
            + _group(0, "ENDTAB")
        )
        layer = _group(0, "TABLE") + _group(2, "LAYER") + _group(70, len(self.layers))
        for name, color in self.layers.items():
            layer += (
                _group(0, "LAYER") + _group(2, name) + _group(70, 0)
                + _group(62, color) + _group(6, "CONTINUOUS")
            )
        layer += _group(0, "ENDTAB")
        return _section("TABLES") + ltype + layer + _group(0, "ENDSEC")

    def render(self) -> str:
        parts = [_group(999, c) for c in self.comments]
        parts.append(self._header())
        parts.append(self._tables())
        parts.append(_section("BLOCKS") + _group(0, "ENDSEC"))
        parts.append(_section("ENTITIES"))
        parts.extend(self._entities)
        parts.append(_group(0, "ENDSEC"))
        parts.append(_group(0, "EOF"))
        return "".join(parts)

    def to_bytes(self) -> bytes:
        return self.render().encode("cp1252", errors="replace")


def _group(code: int, value: Any) -> str:
    return f"{code:>3}\n{value}\n"


def _section(name: str) -> str:
    return _group(0, "SECTION") + _group(2, name)


def _clean_text(text: str) -> str:
    return " ".join(str(text).split())


def _is_index_contour(elevation: float, interval: float) -> bool:
    return round(elevation / interval) % INDEX_CONTOUR_EVERY == 0


def build_cad_document(
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature],
    contours: List[ContourLine],
    elevation=None
) -> Tuple[bytes, List[FeatureOutcome]]:
    """
    Build the layered site drawing.

    Args:
        manifest: Export manifest (units, precision, contour settings)
        buildings: Building footprints
        roads: Road centerlines
        landuse: Land-use polygons
        contours: Contour lines in geographic degrees
        elevation: Unused; accepted so every encoder shares one signature

    Returns:
        Tuple of (DXF bytes, per-feature outcomes)
    """
    projection = LocalProjection.for_manifest(manifest)
    builder = DXFBuilder(units=manifest.units, precision=manifest.precision)
    for name, color in LAYERS.items():
        builder.add_layer(name, color)

    builder.add_comment(f"Site: {manifest.site_name}")
    builder.add_comment(f"Center: {manifest.center_lat:.6f}, {manifest.center_lng:.6f}")
    builder.add_comment(f"Radius: {manifest.radius_m:g} m")
    builder.add_comment(f"Units: {manifest.units.value}")
    builder.add_comment("Local equirectangular projection around the site center")

    outcomes: List[FeatureOutcome] = []

    def add_feature(feature: VectorFeature, layer: str, expected: type, draw) -> None:
        try:
            if not isinstance(feature, expected):
                raise InputInvalid(f"expected {expected.kind}, got {feature.kind}")
            draw(projection.project_points(feature.coords))
        except InputInvalid as e:
            logger.warning(f"DXF: skipping {layer} feature {feature.feature_id}: {e}")
            outcomes.append(FeatureOutcome.skipped(feature.feature_id, str(e)))
            return
        outcomes.append(FeatureOutcome.ok(feature.feature_id))

    for feature in buildings:
        height = building_height(feature, manifest.default_building_height)

        def draw_building(points, height=height):
            ring = distinct_ring(points)
            if len(ring) < 3:
                raise InputInvalid(f"footprint has {len(ring)} distinct vertices, need 3")
            builder.add_polyline("BUILDINGS", ring, closed=True, z=0.0)
            builder.add_polyline("BUILDINGS", ring, closed=True, z=height)
            for x, y in ring:
                builder.add_line("BUILDINGS", (x, y, 0.0), (x, y, height))

        add_feature(feature, "BUILDINGS", PolygonFeature, draw_building)

    for feature in roads:
        add_feature(
            feature, "ROADS", LineStringFeature,
            lambda points: builder.add_polyline("ROADS", points, closed=False, z=0.0),
        )

    for feature in landuse:
        add_feature(
            feature, "LANDUSE", PolygonFeature,
            lambda points: builder.add_polyline("LANDUSE", points, closed=True, z=0.0),
        )

    n_labels = 0
    for contour in simplify_contours(contours, projection, manifest.contour_simplify_tolerance):
        is_index = _is_index_contour(contour.elevation, manifest.contour_interval)
        for polyline in contour.polylines:
            if len(polyline) < 2:
                continue
            builder.add_polyline("CONTOURS", polyline, closed=False, z=contour.elevation)
            if is_index:
                mid = polyline[len(polyline) // 2]
                builder.add_text("TEXT", (mid[0], mid[1], contour.elevation), 1.5, f"{contour.elevation:g}")
                n_labels += 1

    builder.add_circle("BOUNDARY", (0.0, 0.0, 0.0), manifest.radius_m)
    label_height = max(manifest.radius_m / 50.0, 1.0)
    builder.add_text(
        "TEXT", (-manifest.radius_m, manifest.radius_m + label_height, 0.0),
        label_height, manifest.site_name,
    )

    skipped = sum(not o.is_ok for o in outcomes)
    logger.info(
        f"DXF: {builder.n_entities} entities, {n_labels} contour labels, "
        f"{skipped} features skipped, units {manifest.units.value}"
    )
    return builder.to_bytes(), outcomes
