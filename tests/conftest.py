"""
Shared fixtures: a small site around a fixed center, features built from
local-meter coordinates, and synthetic elevation grids.
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sitepack.common.config import ExportManifest
from sitepack.common.coords import LocalProjection
from sitepack.common.io import ElevationGrid, PolygonFeature, LineStringFeature


CENTER_LAT = 40.0
CENTER_LNG = -75.0
GENERATED_AT = "2024-05-01T12:00:00Z"


@pytest.fixture
def manifest():
    """Manifest with a fixed timestamp so outputs are reproducible."""
    return ExportManifest(
        site_name="Test Site",
        center_lat=CENTER_LAT,
        center_lng=CENTER_LNG,
        radius_m=100.0,
        generated_at=GENERATED_AT,
    )


@pytest.fixture
def projection():
    return LocalProjection(CENTER_LNG, CENTER_LAT)


@pytest.fixture
def polygon_from_meters(projection):
    """Factory: PolygonFeature from a local-meter ring."""
    def make(feature_id, points_m, **properties):
        pts = np.asarray(points_m, dtype=np.float64)
        lon, lat = projection.to_geographic(pts[:, 0], pts[:, 1])
        return PolygonFeature(feature_id, np.column_stack([lon, lat]), properties)
    return make


@pytest.fixture
def line_from_meters(projection):
    """Factory: LineStringFeature from local-meter points."""
    def make(feature_id, points_m, **properties):
        pts = np.asarray(points_m, dtype=np.float64)
        lon, lat = projection.to_geographic(pts[:, 0], pts[:, 1])
        return LineStringFeature(feature_id, np.column_stack([lon, lat]), properties)
    return make


@pytest.fixture
def square_building(polygon_from_meters):
    """10 m x 10 m footprint, 8 m tall, closed ring."""
    return polygon_from_meters(
        "way/1",
        [[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]],
        height="8",
    )


@pytest.fixture
def two_vertex_building(polygon_from_meters):
    """Degenerate footprint: only two distinct vertices."""
    return polygon_from_meters("way/bad", [[20, 20], [30, 20], [20, 20]])


@pytest.fixture
def road(line_from_meters):
    return line_from_meters("way/10", [[-50, -20], [0, -20], [50, -25]], highway="residential")


@pytest.fixture
def park(polygon_from_meters):
    return polygon_from_meters(
        "way/20",
        [[-40, 20], [-20, 20], [-20, 40], [-40, 40], [-40, 20]],
        landuse="grass",
    )


def ramp_values(n: int = 21) -> np.ndarray:
    """values[j, i] = j: rising from 0 on the south row to n-1 on the north row."""
    return np.tile(np.arange(n, dtype=np.float64)[:, None], (1, n))


@pytest.fixture
def ramp_grid():
    """21x21 ramp 0..20 in unit cells."""
    return ElevationGrid(ramp_values(), west=0.0, east=20.0, south=0.0, north=20.0)


@pytest.fixture
def site_ramp_grid():
    """21x21 ramp 0..20 m covering the site in geographic degrees."""
    d = 0.0012
    return ElevationGrid(
        ramp_values(),
        west=CENTER_LNG - d, east=CENTER_LNG + d,
        south=CENTER_LAT - d, north=CENTER_LAT + d,
    )
