"""
PDF Plan Export Module

Renders a single-page A3 landscape site plan: title block, clipped map of
land use, contours, roads and buildings, the site boundary, north arrow,
scale bar, legend and footer.

The file is written in two passes. PDFDocument first collects every object
body, then to_bytes() serializes them and builds the xref table from the
offsets of the bytes actually emitted.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple

import numpy as np

from ..common.config import ExportManifest
from ..common.coords import LocalProjection
from ..common.errors import FormatInvariantViolation, InputInvalid
from ..common.io import (
    FeatureOutcome, PolygonFeature, LineStringFeature, VectorFeature, distinct_ring,
)
from ..contours import ContourLine, simplify_contours

logger = logging.getLogger(__name__)

# A3 landscape in points
PAGE_WIDTH = 1191
PAGE_HEIGHT = 842
MARGIN = 50
HEADER_HEIGHT = 80
FOOTER_HEIGHT = 30
SIDEBAR_WIDTH = 200
SIDEBAR_GAP = 20

METERS_PER_POINT_ON_PAPER = 0.0254 / 72
SCALE_BAR_NOMINAL_PT = 100.0

# Bezier handle length for a quarter circle
KAPPA = 0.5522847498

# Layer styles: (fill RGB, stroke RGB, line width)
STYLES: Dict[str, Tuple[Optional[Tuple[float, ...]], Optional[Tuple[float, ...]], float]] = {
    "landuse": ((0.85, 0.93, 0.80), None, 0.0),
    "contours": (None, (0.65, 0.50, 0.35), 0.4),
    "roads": (None, (0.45, 0.45, 0.45), 1.5),
    "buildings": ((0.80, 0.80, 0.82), (0.25, 0.25, 0.25), 0.6),
    "boundary": (None, (0.85, 0.15, 0.15), 1.2),
}

LEGEND_LABELS = {
    "buildings": "Buildings",
    "roads": "Roads",
    "landuse": "Land use",
    "contours": "Contours",
    "boundary": "Site boundary",
}


def pdf_string(text: Any) -> str:
    """Escape text for a PDF literal string."""
    return str(text).replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def nice_distance(meters: float) -> float:
    """Round a distance down to 1, 2 or 5 x 10^k."""
    if meters <= 0:
        return 0.0
    exponent = math.floor(math.log10(meters))
    base = meters / 10 ** exponent
    for step in (5, 2, 1):
        if base >= step:
            return step * 10 ** exponent
    return 10 ** exponent


def format_distance(meters: float) -> str:
    if meters >= 1000:
        return f"{meters / 1000:g} km"
    return f"{meters:g} m"


def pdf_date(timestamp: str) -> Optional[str]:
    """ISO-8601 timestamp to a PDF date string, or None if unparseable."""
    ts = timestamp.strip()
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.utcoffset() is None:
        return "D:" + dt.strftime("%Y%m%d%H%M%S")
    return "D:" + dt.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S") + "Z"


class PDFDocument:
    """Collects numbered PDF objects and serializes them with an xref table."""

    def __init__(self):
        self._objects: List[Optional[bytes]] = []

    def reserve(self) -> int:
        """Reserve an object number to be filled in later with set()."""
        self._objects.append(None)
        return len(self._objects)

    def set(self, number: int, body) -> None:
        self._objects[number - 1] = body.encode("latin-1") if isinstance(body, str) else body

    def add(self, body) -> int:
        number = self.reserve()
        self.set(number, body)
        return number

    def add_stream(self, data: bytes) -> int:
        return self.add(f"<< /Length {len(data)} >>\nstream\n".encode("latin-1") + data + b"\nendstream")

    def to_bytes(self, root: int, info: Optional[int] = None) -> bytes:
        """
        Serialize the document.

        Raises:
            FormatInvariantViolation: if an object was reserved but never set,
                or a recorded offset does not point at its object header
        """
        out = bytearray(b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n")
        offsets = []
        for number, body in enumerate(self._objects, start=1):
            if body is None:
                raise FormatInvariantViolation(f"PDF object {number} reserved but never written")
            offsets.append(len(out))
            out += f"{number} 0 obj\n".encode("latin-1") + body + b"\nendobj\n"

        for number, offset in enumerate(offsets, start=1):
            if not out.startswith(f"{number} 0 obj".encode("latin-1"), offset):
                raise FormatInvariantViolation(f"xref offset {offset} does not point at object {number}")

        xref_offset = len(out)
        size = len(self._objects) + 1
        out += f"xref\n0 {size}\n".encode("latin-1")
        out += b"0000000000 65535 f \n"
        for offset in offsets:
            out += f"{offset:010d} 00000 n \n".encode("latin-1")

        trailer = f"<< /Size {size} /Root {root} 0 R"
        if info is not None:
            trailer += f" /Info {info} 0 R"
        trailer += " >>"
        out += f"trailer\n{trailer}\nstartxref\n{xref_offset}\n%%EOF\n".encode("latin-1")
        return bytes(out)


class _Canvas:
    """Content stream operators for one page."""

    def __init__(self):
        self.ops: List[str] = []

    def op(self, line: str) -> None:
        self.ops.append(line)

    def save(self) -> None:
        self.op("q")

    def restore(self) -> None:
        self.op("Q")

    def fill_color(self, rgb) -> None:
        self.op(f"{rgb[0]:.3f} {rgb[1]:.3f} {rgb[2]:.3f} rg")

    def stroke_color(self, rgb) -> None:
        self.op(f"{rgb[0]:.3f} {rgb[1]:.3f} {rgb[2]:.3f} RG")

    def line_width(self, width: float) -> None:
        self.op(f"{width:.2f} w")

    def dash(self, on: float = 0, off: float = 0) -> None:
        self.op(f"[{on:g} {off:g}] 0 d" if on else "[] 0 d")

    def path(self, points: np.ndarray, close: bool = False) -> None:
        x, y = points[0]
        parts = [f"{x:.2f} {y:.2f} m"]
        parts.extend(f"{x:.2f} {y:.2f} l" for x, y in points[1:])
        if close:
            parts.append("h")
        self.op(" ".join(parts))

    def rect(self, x: float, y: float, w: float, h: float) -> None:
        self.op(f"{x:.2f} {y:.2f} {w:.2f} {h:.2f} re")

    def circle(self, cx: float, cy: float, r: float) -> None:
        k = KAPPA * r
        self.op(
            f"{cx + r:.2f} {cy:.2f} m "
            f"{cx + r:.2f} {cy + k:.2f} {cx + k:.2f} {cy + r:.2f} {cx:.2f} {cy + r:.2f} c "
            f"{cx - k:.2f} {cy + r:.2f} {cx - r:.2f} {cy + k:.2f} {cx - r:.2f} {cy:.2f} c "
            f"{cx - r:.2f} {cy - k:.2f} {cx - k:.2f} {cy - r:.2f} {cx:.2f} {cy - r:.2f} c "
            f"{cx + k:.2f} {cy - r:.2f} {cx + r:.2f} {cy - k:.2f} {cx + r:.2f} {cy:.2f} c h"
        )

    def text(self, x: float, y: float, text: str, size: float = 10, bold: bool = False) -> None:
        font = "F2" if bold else "F1"
        self.op(f"BT /{font} {size:g} Tf {x:.2f} {y:.2f} Td ({pdf_string(text)}) Tj ET")

    def to_bytes(self) -> bytes:
        return "\n".join(self.ops).encode("cp1252", errors="replace")


class PlanLayout:
    """
    Page geometry and the local-meters → page-points mapping.

    The map uses one uniform scale, fitting the AOI diameter into the
    smaller side of the viewport, centered on the site.
    """

    def __init__(self, radius_m: float):
        self.map_x = MARGIN
        self.map_y = MARGIN + FOOTER_HEIGHT
        self.map_w = PAGE_WIDTH - 2 * MARGIN - SIDEBAR_WIDTH - SIDEBAR_GAP
        self.map_h = PAGE_HEIGHT - self.map_y - MARGIN - HEADER_HEIGHT
        self.sidebar_x = self.map_x + self.map_w + SIDEBAR_GAP

        self.radius_m = radius_m
        self.points_per_meter = min(self.map_w, self.map_h) / 2.0 / radius_m
        self.center_x = self.map_x + self.map_w / 2.0
        self.center_y = self.map_y + self.map_h / 2.0

    @property
    def meters_per_point(self) -> float:
        return 1.0 / self.points_per_meter

    @property
    def scale_denominator(self) -> int:
        return int(round(self.meters_per_point / METERS_PER_POINT_ON_PAPER))

    def to_page(self, points_m: np.ndarray) -> np.ndarray:
        points_m = np.asarray(points_m, dtype=np.float64)[:, :2]
        return np.column_stack([
            self.center_x + points_m[:, 0] * self.points_per_meter,
            self.center_y + points_m[:, 1] * self.points_per_meter,
        ])


def _draw_style(canvas: _Canvas, layer: str) -> str:
    """Set colors for a layer and return the painting operator."""
    fill, stroke, width = STYLES[layer]
    if fill is not None:
        canvas.fill_color(fill)
    if stroke is not None:
        canvas.stroke_color(stroke)
        canvas.line_width(width)
    if fill is not None and stroke is not None:
        return "B"
    return "f" if fill is not None else "S"


def _draw_north_arrow(canvas: _Canvas, x: float, y: float) -> None:
    canvas.fill_color((0, 0, 0))
    canvas.stroke_color((0, 0, 0))
    canvas.line_width(1)
    canvas.path(np.array([[x, y + 40], [x - 12, y], [x, y + 10]]), close=True)
    canvas.op("f")
    canvas.path(np.array([[x, y + 40], [x + 12, y], [x, y + 10]]), close=True)
    canvas.op("S")
    canvas.text(x - 4, y + 46, "N", size=14, bold=True)


def _draw_scale_bar(canvas: _Canvas, layout: PlanLayout, x: float, y: float) -> None:
    distance = nice_distance(SCALE_BAR_NOMINAL_PT * layout.meters_per_point)
    length = distance * layout.points_per_meter
    half = length / 2.0
    canvas.stroke_color((0, 0, 0))
    canvas.line_width(0.8)
    canvas.fill_color((0, 0, 0))
    canvas.rect(x, y, half, 6)
    canvas.op("B")
    canvas.fill_color((1, 1, 1))
    canvas.rect(x + half, y, half, 6)
    canvas.op("B")
    canvas.fill_color((0, 0, 0))
    canvas.text(x, y - 12, "0", size=8)
    canvas.text(x + length - 10, y - 12, format_distance(distance), size=8)
    canvas.text(x, y + 12, f"Scale 1:{layout.scale_denominator:,}", size=9)


def _draw_legend(canvas: _Canvas, present: List[str], x: float, y: float) -> None:
    canvas.fill_color((0, 0, 0))
    canvas.text(x, y, "Legend", size=12, bold=True)
    for k, layer in enumerate(present):
        row_y = y - 22 - k * 20
        canvas.save()
        paint = _draw_style(canvas, layer)
        if paint == "S":
            canvas.path(np.array([[x, row_y + 4], [x + 24, row_y + 4]]))
        else:
            canvas.rect(x, row_y, 24, 10)
        canvas.op(paint)
        canvas.restore()
        canvas.fill_color((0, 0, 0))
        canvas.text(x + 32, row_y + 1, LEGEND_LABELS[layer], size=10)


def build_plan_sheet(
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature],
    contours: List[ContourLine],
    elevation=None
) -> Tuple[bytes, List[FeatureOutcome]]:
    """
    Build the PDF site plan.

    Args:
        manifest: Export manifest (site, radius, sheet toggles, timestamp)
        buildings: Building footprints
        roads: Road centerlines
        landuse: Land-use polygons
        contours: Contour lines in geographic degrees
        elevation: Unused; accepted so every encoder shares one signature

    Returns:
        Tuple of (PDF bytes, per-feature outcomes)
    """
    projection = LocalProjection.for_manifest(manifest)
    layout = PlanLayout(manifest.radius_m)
    timestamp = manifest.timestamp()
    canvas = _Canvas()
    outcomes: List[FeatureOutcome] = []
    drawn: Dict[str, int] = {layer: 0 for layer in STYLES}

    # Title block
    title_y = PAGE_HEIGHT - MARGIN - 24
    canvas.fill_color((0, 0, 0))
    canvas.text(MARGIN, title_y, manifest.site_name, size=24, bold=True)
    canvas.text(
        MARGIN, title_y - 22,
        f"Location: {manifest.center_lat:.6f}, {manifest.center_lng:.6f}  |  "
        f"Radius: {manifest.radius_m:g} m  |  Scale 1:{layout.scale_denominator:,}",
        size=12,
    )

    # Map frame
    canvas.stroke_color((0.6, 0.6, 0.6))
    canvas.line_width(1)
    canvas.rect(layout.map_x, layout.map_y, layout.map_w, layout.map_h)
    canvas.op("S")

    # Map content, clipped to the frame
    canvas.save()
    canvas.rect(layout.map_x, layout.map_y, layout.map_w, layout.map_h)
    canvas.op("W n")

    def draw_features(features: List[VectorFeature], layer: str, expected: type, close: bool, paint: str) -> None:
        minimum = 3 if close else 2
        for feature in features:
            try:
                if not isinstance(feature, expected):
                    raise InputInvalid(f"expected {expected.kind}, got {feature.kind}")
                points = projection.project_points(feature.coords)
                if close:
                    points = distinct_ring(points)
                if len(points) < minimum:
                    raise InputInvalid(f"{len(points)} distinct points, need {minimum}")
                if not np.all(np.isfinite(points)):
                    raise InputInvalid("non-finite coordinate")
            except InputInvalid as e:
                logger.warning(f"PDF: skipping {layer} feature {feature.feature_id}: {e}")
                outcomes.append(FeatureOutcome.skipped(feature.feature_id, str(e)))
                continue
            canvas.path(layout.to_page(points), close=close)
            canvas.op(paint)
            drawn[layer] += 1
            outcomes.append(FeatureOutcome.ok(feature.feature_id))

    paint = _draw_style(canvas, "landuse")
    draw_features(landuse, "landuse", PolygonFeature, True, paint)

    paint = _draw_style(canvas, "contours")
    for contour in simplify_contours(contours, projection, manifest.contour_simplify_tolerance):
        for polyline in contour.polylines:
            if len(polyline) < 2:
                continue
            canvas.path(layout.to_page(polyline))
            canvas.op(paint)
            drawn["contours"] += 1

    paint = _draw_style(canvas, "roads")
    draw_features(roads, "roads", LineStringFeature, False, paint)

    paint = _draw_style(canvas, "buildings")
    draw_features(buildings, "buildings", PolygonFeature, True, paint)

    _draw_style(canvas, "boundary")
    canvas.dash(6, 3)
    canvas.circle(layout.center_x, layout.center_y, manifest.radius_m * layout.points_per_meter)
    canvas.op("S")
    canvas.dash()
    drawn["boundary"] += 1
    canvas.restore()

    # Sidebar
    sidebar_top = layout.map_y + layout.map_h
    y = sidebar_top - 60
    if manifest.include_north_arrow:
        _draw_north_arrow(canvas, layout.sidebar_x + 30, y)
        y -= 50
    if manifest.include_scale_bar:
        _draw_scale_bar(canvas, layout, layout.sidebar_x, y)
        y -= 60
    if manifest.include_legend:
        present = [layer for layer in LEGEND_LABELS if drawn[layer] > 0]
        _draw_legend(canvas, present, layout.sidebar_x, y)

    # Footer
    canvas.fill_color((0.3, 0.3, 0.3))
    canvas.text(
        MARGIN, MARGIN,
        f"Generated {timestamp[:10]}  |  Data: OpenStreetMap contributors (ODbL)  |  "
        f"Local projection, meters",
        size=8,
    )

    doc = PDFDocument()
    catalog = doc.reserve()
    pages = doc.reserve()
    page = doc.reserve()
    font_regular = doc.add("<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>")
    font_bold = doc.add("<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica-Bold /Encoding /WinAnsiEncoding >>")
    content = doc.add_stream(canvas.to_bytes())

    doc.set(catalog, f"<< /Type /Catalog /Pages {pages} 0 R >>")
    doc.set(pages, f"<< /Type /Pages /Kids [{page} 0 R] /Count 1 >>")
    doc.set(page, (
        f"<< /Type /Page /Parent {pages} 0 R /MediaBox [0 0 {PAGE_WIDTH} {PAGE_HEIGHT}] "
        f"/Contents {content} 0 R "
        f"/Resources << /Font << /F1 {font_regular} 0 R /F2 {font_bold} 0 R >> >> >>"
    ))

    info_entries = f"/Title ({pdf_string(manifest.site_name)}) /Producer (sitepack)"
    created = pdf_date(timestamp)
    if created:
        info_entries += f" /CreationDate ({created})"
    info = doc.add(f"<< {info_entries} >>".encode("cp1252", errors="replace"))

    pdf = doc.to_bytes(root=catalog, info=info)
    skipped = sum(not o.is_ok for o in outcomes)
    logger.info(
        f"PDF: scale 1:{layout.scale_denominator}, "
        f"{sum(drawn.values())} paths drawn, {skipped} features skipped, {len(pdf)} bytes"
    )
    return pdf, outcomes
