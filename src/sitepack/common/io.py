"""
Input data containers and ingestion.

Handles turning upstream GeoJSON features and elevation payloads into the
typed values every encoder consumes. All coordinates stay in geographic
degrees (lon, lat) here; projection happens downstream.

Features are validated once, at ingestion. Anything rejected is reported as
a skipped FeatureOutcome rather than raised.
"""

import logging
from typing import List, Optional, Dict, Any, Tuple, Union
from dataclasses import dataclass, field
import numpy as np

from shapely.geometry import shape
from shapely.errors import ShapelyError
from shapely.validation import explain_validity

from .config import METERS_PER_LEVEL
from .errors import InputInvalid

logger = logging.getLogger(__name__)


# ============== Feature outcomes ==============

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"


@dataclass(frozen=True)
class FeatureOutcome:
    """Per-feature result reported by ingestion and by every encoder."""
    feature_id: str
    status: str
    reason: Optional[str] = None

    @classmethod
    def ok(cls, feature_id: str) -> "FeatureOutcome":
        return cls(feature_id, STATUS_OK)

    @classmethod
    def skipped(cls, feature_id: str, reason: str) -> "FeatureOutcome":
        return cls(feature_id, STATUS_SKIPPED, reason)

    @property
    def is_ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        d = {"feature_id": self.feature_id, "status": self.status}
        if self.reason:
            d["reason"] = self.reason
        return d


# ============== Vector features ==============

def _as_coords(coords) -> np.ndarray:
    arr = np.asarray(coords, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] < 2:
        raise InputInvalid(f"Expected an (N, 2) coordinate list, got shape {arr.shape}")
    return arr[:, :2]


def distinct_ring(coords: np.ndarray) -> np.ndarray:
    """
    Reduce a ring to its distinct vertices.

    Drops the closing vertex (first == last) and consecutive duplicates.

    Args:
        coords: (N, 2) ring, closed or open

    Returns:
        (n, 2) array of distinct vertices, n may be < 3
    """
    coords = np.asarray(coords, dtype=np.float64).reshape(-1, 2)
    if len(coords) == 0:
        return coords
    keep = np.ones(len(coords), dtype=bool)
    keep[1:] = np.any(np.diff(coords, axis=0) != 0, axis=1)
    ring = coords[keep]
    while len(ring) > 1 and np.array_equal(ring[0], ring[-1]):
        ring = ring[:-1]
    return ring


@dataclass(frozen=True, eq=False)
class PolygonFeature:
    """Closed ring (first == last) with a flat property bag."""
    feature_id: str
    coords: np.ndarray  # (N, 2) lon/lat, closed
    properties: Dict[str, Any] = field(default_factory=dict)

    kind = "Polygon"

    def __post_init__(self):
        object.__setattr__(self, "coords", _as_coords(self.coords))

    @property
    def n_distinct(self) -> int:
        return len(distinct_ring(self.coords))

    def validate(self) -> None:
        if not np.all(np.isfinite(self.coords)):
            raise InputInvalid("non-finite coordinate")
        if self.n_distinct < 3:
            raise InputInvalid(f"ring has {self.n_distinct} distinct vertices, need 3")


@dataclass(frozen=True, eq=False)
class LineStringFeature:
    """Open polyline with a flat property bag."""
    feature_id: str
    coords: np.ndarray  # (N, 2) lon/lat
    properties: Dict[str, Any] = field(default_factory=dict)

    kind = "LineString"

    def __post_init__(self):
        object.__setattr__(self, "coords", _as_coords(self.coords))

    def validate(self) -> None:
        if not np.all(np.isfinite(self.coords)):
            raise InputInvalid("non-finite coordinate")
        if len(self.coords) < 2:
            raise InputInvalid(f"line has {len(self.coords)} points, need 2")


@dataclass(frozen=True, eq=False)
class PointFeature:
    """Single position with a flat property bag."""
    feature_id: str
    coords: np.ndarray  # (1, 2) lon/lat
    properties: Dict[str, Any] = field(default_factory=dict)

    kind = "Point"

    def __post_init__(self):
        object.__setattr__(self, "coords", _as_coords(self.coords))

    def validate(self) -> None:
        if len(self.coords) != 1 or not np.all(np.isfinite(self.coords)):
            raise InputInvalid("point needs exactly one finite coordinate")


VectorFeature = Union[PolygonFeature, LineStringFeature, PointFeature]


def building_height(feature: VectorFeature, default: float) -> float:
    """
    Resolve a building's height in meters.

    Uses the `height` property, then `building:levels` x 3 m, then `default`.
    Unparseable or non-positive values fall through to the next source.
    """
    props = feature.properties
    for key, scale in (("height", 1.0), ("building:levels", METERS_PER_LEVEL)):
        raw = props.get(key)
        if raw is None:
            continue
        try:
            value = float(str(raw).strip().rstrip("m").strip()) * scale
        except ValueError:
            continue
        if np.isfinite(value) and value > 0:
            return value
    return default


def _features_from_geometry(feature_id: str, geom, properties: Dict[str, Any]) -> List[VectorFeature]:
    if geom.geom_type == "Polygon":
        if not geom.is_valid:
            raise InputInvalid(f"invalid polygon: {explain_validity(geom)}")
        return [PolygonFeature(feature_id, np.asarray(geom.exterior.coords), properties)]
    if geom.geom_type == "LineString":
        return [LineStringFeature(feature_id, np.asarray(geom.coords), properties)]
    if geom.geom_type == "Point":
        return [PointFeature(feature_id, np.asarray(geom.coords), properties)]
    if geom.geom_type in ("MultiPolygon", "MultiLineString", "MultiPoint"):
        parts = []
        for k, part in enumerate(geom.geoms):
            parts.extend(_features_from_geometry(f"{feature_id}#{k}", part, properties))
        return parts
    raise InputInvalid(f"unsupported geometry type {geom.geom_type}")


def load_features(
    collection: Dict[str, Any],
    layer: str = "features"
) -> Tuple[List[VectorFeature], List[FeatureOutcome]]:
    """
    Parse a GeoJSON FeatureCollection into typed features.

    Multi-part geometries are split into one feature per part. Features with
    missing, malformed or degenerate geometry are skipped and reported.

    Args:
        collection: GeoJSON FeatureCollection dict
        layer: Layer name used to build fallback feature ids

    Returns:
        Tuple of (features, outcomes)
    """
    features: List[VectorFeature] = []
    outcomes: List[FeatureOutcome] = []

    for idx, raw in enumerate(collection.get("features") or []):
        props = dict(raw.get("properties") or {})
        feature_id = str(raw.get("id", props.get("id", f"{layer}/{idx}")))
        try:
            geometry = raw.get("geometry")
            if not geometry:
                raise InputInvalid("missing geometry")
            parsed = _features_from_geometry(feature_id, shape(geometry), props)
            for f in parsed:
                f.validate()
        except (InputInvalid, ShapelyError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping {layer} feature {feature_id}: {e}")
            outcomes.append(FeatureOutcome.skipped(feature_id, str(e)))
            continue
        features.extend(parsed)
        outcomes.extend(FeatureOutcome.ok(f.feature_id) for f in parsed)

    logger.info(f"Loaded {len(features)} {layer} features ({sum(not o.is_ok for o in outcomes)} skipped)")
    return features, outcomes


# ============== Elevation grid ==============

@dataclass(frozen=True, eq=False)
class ElevationGrid:
    """
    Rectangular grid of elevation samples over a geographic bounding box.

    values[j, i] sits at x = west + i * dx, y = south + j * dy, so row 0 is
    the southern edge. Missing samples are NaN.
    """
    values: np.ndarray  # (ny, nx)
    west: float
    east: float
    south: float
    north: float

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float64)
        if values.ndim != 2:
            values = np.empty((0, 0))
        object.__setattr__(self, "values", values)

    @property
    def ny(self) -> int:
        return self.values.shape[0]

    @property
    def nx(self) -> int:
        return self.values.shape[1]

    @property
    def dx(self) -> float:
        return (self.east - self.west) / (self.nx - 1)

    @property
    def dy(self) -> float:
        return (self.north - self.south) / (self.ny - 1)

    @property
    def is_degenerate(self) -> bool:
        bounds = np.array([self.west, self.east, self.south, self.north], dtype=np.float64)
        return (
            self.nx < 2 or self.ny < 2
            or not np.all(np.isfinite(bounds))
            or not self.east > self.west
            or not self.north > self.south
        )

    @property
    def finite_range(self) -> Optional[Tuple[float, float]]:
        """(min, max) over finite samples, or None if there are none."""
        finite = self.values[np.isfinite(self.values)]
        if finite.size == 0:
            return None
        return float(finite.min()), float(finite.max())

    @property
    def x_coords(self) -> np.ndarray:
        return np.linspace(self.west, self.east, self.nx)

    @property
    def y_coords(self) -> np.ndarray:
        return np.linspace(self.south, self.north, self.ny)

    def validate(self) -> None:
        if self.is_degenerate:
            raise InputInvalid(
                f"Degenerate elevation grid: {self.ny}x{self.nx}, "
                f"bounds W{self.west} E{self.east} S{self.south} N{self.north}"
            )


def load_elevation_grid(data: Dict[str, Any]) -> ElevationGrid:
    """
    Build an ElevationGrid from an upstream payload.

    Expected keys: `values` (row-major list of rows, south row first, null for
    missing samples) and `west`, `east`, `south`, `north`.

    Raises:
        InputInvalid: if keys are missing or the grid is degenerate
    """
    try:
        rows = [[np.nan if v is None else v for v in row] for row in data["values"]]
        grid = ElevationGrid(
            values=np.array(rows, dtype=np.float64),
            west=float(data["west"]),
            east=float(data["east"]),
            south=float(data["south"]),
            north=float(data["north"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InputInvalid(f"Malformed elevation payload: {e}") from e

    grid.validate()
    logger.info(f"Loaded elevation grid {grid.ny}x{grid.nx}, range {grid.finite_range}")
    return grid
