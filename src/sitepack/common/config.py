"""
Configuration and constants for site pack export.

Unit Model:
- Input features and grids: geographic degrees (lon, lat), EPSG:4326
- Geometry ops: local meters around the site center (equirectangular)
- CAD output: meters, feet or millimeters as declared in the manifest
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, FrozenSet, Iterable
import json
import math
from datetime import datetime, timezone
from pathlib import Path

from .errors import InputInvalid


METERS_PER_DEGREE = 111320.0

DEFAULT_CONTOUR_INTERVAL_M = 5.0
DEFAULT_SIMPLIFY_TOLERANCE_M = 0.5
DEFAULT_BUILDING_HEIGHT_M = 10.0
METERS_PER_LEVEL = 3.0


class ExportFormat(Enum):
    """Deliverable formats an export job can produce."""
    CAD = "cad"
    SCENE = "scene"
    EXCHANGE = "exchange"
    PLAN = "plan"


class LinearUnit(Enum):
    """
    Linear units declared in the CAD header.

    The value is the DXF $INSUNITS code paired with the scale from meters.
    """
    METERS = "meters"
    FEET = "feet"
    MILLIMETERS = "millimeters"

    @property
    def insunits(self) -> int:
        return {"meters": 6, "feet": 2, "millimeters": 4}[self.value]

    @property
    def per_meter(self) -> float:
        return {"meters": 1.0, "feet": 1.0 / 0.3048, "millimeters": 1000.0}[self.value]

    @property
    def is_metric(self) -> bool:
        return self is not LinearUnit.FEET


# Fixed archive paths per format
FORMAT_PATHS: Dict[ExportFormat, str] = {
    ExportFormat.CAD: "exports/layers.dxf",
    ExportFormat.SCENE: "exports/scene.glb",
    ExportFormat.EXCHANGE: "exports/site_model.dae",
    ExportFormat.PLAN: "exports/plan.pdf",
}
CONTOURS_PATH = "geojson/contours.geojson"


def _parse_formats(values: Iterable[Any]) -> FrozenSet[ExportFormat]:
    formats = set()
    for v in values:
        try:
            formats.add(v if isinstance(v, ExportFormat) else ExportFormat(str(v).lower()))
        except ValueError:
            raise InputInvalid(f"Unknown export format: {v!r}") from None
    return frozenset(formats)


@dataclass(frozen=True)
class ExportManifest:
    """
    Declared output set for one export job.

    Read-only input to every encoder. Everything an encoder needs beyond the
    features and the elevation grid comes from here.
    """

    site_name: str
    center_lat: float
    center_lng: float
    radius_m: float

    requested_formats: FrozenSet[ExportFormat] = field(
        default_factory=lambda: frozenset(ExportFormat)
    )
    units: LinearUnit = LinearUnit.METERS
    precision: int = 3

    # Contours
    contour_interval: float = DEFAULT_CONTOUR_INTERVAL_M
    contour_simplify_tolerance: float = DEFAULT_SIMPLIFY_TOLERANCE_M

    # Buildings without a usable height property
    default_building_height: float = DEFAULT_BUILDING_HEIGHT_M

    # Plan sheet furniture
    include_north_arrow: bool = True
    include_scale_bar: bool = True
    include_legend: bool = True

    # ISO-8601 timestamp stamped into README/metadata/COLLADA/PDF footer.
    # None means "now" at encode time.
    generated_at: Optional[str] = None

    def __post_init__(self):
        # Coerce loose inputs (strings, lists) into the typed fields
        object.__setattr__(self, "requested_formats", _parse_formats(self.requested_formats))
        if not isinstance(self.units, LinearUnit):
            try:
                object.__setattr__(self, "units", LinearUnit(str(self.units).lower()))
            except ValueError:
                raise InputInvalid(f"Unknown units: {self.units!r}") from None

        if not -90.0 <= self.center_lat <= 90.0:
            raise InputInvalid(f"center_lat out of range: {self.center_lat}")
        if not -180.0 <= self.center_lng <= 180.0:
            raise InputInvalid(f"center_lng out of range: {self.center_lng}")
        if not (math.isfinite(self.radius_m) and self.radius_m > 0):
            raise InputInvalid(f"radius_m must be positive, got {self.radius_m}")
        if not 0 <= self.precision <= 16:
            raise InputInvalid(f"precision must be within 0..16, got {self.precision}")
        if self.contour_interval <= 0:
            raise InputInvalid(f"contour_interval must be positive, got {self.contour_interval}")
        if self.default_building_height <= 0:
            raise InputInvalid("default_building_height must be positive")

    def wants(self, fmt: ExportFormat) -> bool:
        return fmt in self.requested_formats

    def timestamp(self) -> str:
        """The fixed generated_at value, or the current UTC time."""
        if self.generated_at:
            return self.generated_at
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_name": self.site_name,
            "center_lat": self.center_lat,
            "center_lng": self.center_lng,
            "radius_m": self.radius_m,
            "requested_formats": sorted(f.value for f in self.requested_formats),
            "units": self.units.value,
            "precision": self.precision,
            "contour_interval": self.contour_interval,
            "contour_simplify_tolerance": self.contour_simplify_tolerance,
            "default_building_height": self.default_building_height,
            "include_north_arrow": self.include_north_arrow,
            "include_scale_bar": self.include_scale_bar,
            "include_legend": self.include_legend,
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportManifest":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        missing = {"site_name", "center_lat", "center_lng", "radius_m"} - known.keys()
        if missing:
            raise InputInvalid(f"Manifest missing fields: {sorted(missing)}")
        return cls(**known)

    @classmethod
    def from_json(cls, path: Path) -> "ExportManifest":
        """Load manifest from JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        """Save manifest to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
