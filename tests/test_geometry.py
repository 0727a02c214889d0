"""
Tests for the common layer

Tests cover:
- ExportManifest parsing, validation and persistence
- GeoJSON feature and elevation ingestion
- Local projection
- Footprint extrusion and terrain meshing
"""

import json
import pytest
import numpy as np
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sitepack.common.config import ExportManifest, ExportFormat, LinearUnit
from sitepack.common.coords import LocalProjection, project_to_local
from sitepack.common.errors import InputInvalid
from sitepack.common.io import (
    ElevationGrid,
    FeatureOutcome,
    LineStringFeature,
    PolygonFeature,
    building_height,
    distinct_ring,
    load_elevation_grid,
    load_features,
)
from sitepack.common.mesh_ops import (
    Mesh,
    compute_mesh_stats,
    extrude_buildings,
    extrude_footprint,
    footprint_ring,
    terrain_mesh,
)


SQUARE = [[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]]


def polygon_geojson(coords, feature_id=None, **properties):
    feature = {
        "type": "Feature",
        "properties": properties,
        "geometry": {"type": "Polygon", "coordinates": [coords]},
    }
    if feature_id is not None:
        feature["id"] = feature_id
    return feature


# ============== ExportManifest Tests ==============

class TestExportManifest:
    """Test manifest parsing and validation."""

    def test_default_values(self, manifest):
        assert manifest.requested_formats == frozenset(ExportFormat)
        assert manifest.units is LinearUnit.METERS
        assert manifest.precision == 3
        assert manifest.contour_interval == 5.0
        assert manifest.contour_simplify_tolerance == 0.5
        assert manifest.default_building_height == 10.0
        assert manifest.include_north_arrow is True

    def test_from_dict_coerces_strings(self):
        m = ExportManifest.from_dict({
            "site_name": "Lot 7",
            "center_lat": 51.5,
            "center_lng": -0.12,
            "radius_m": 250,
            "requested_formats": ["cad", "PLAN"],
            "units": "feet",
            "unknown_key": "ignored",
        })
        assert m.requested_formats == {ExportFormat.CAD, ExportFormat.PLAN}
        assert m.units is LinearUnit.FEET
        assert m.wants(ExportFormat.CAD)
        assert not m.wants(ExportFormat.SCENE)

    def test_missing_fields(self):
        with pytest.raises(InputInvalid, match="radius_m"):
            ExportManifest.from_dict({"site_name": "x", "center_lat": 0, "center_lng": 0})

    @pytest.mark.parametrize("overrides", [
        {"center_lat": 91.0},
        {"center_lng": -181.0},
        {"radius_m": 0.0},
        {"radius_m": float("inf")},
        {"precision": 20},
        {"contour_interval": 0.0},
        {"requested_formats": ["dwg"]},
        {"units": "furlongs"},
    ])
    def test_invalid_values(self, overrides):
        base = {"site_name": "x", "center_lat": 0.0, "center_lng": 0.0, "radius_m": 100.0}
        with pytest.raises(InputInvalid):
            ExportManifest(**{**base, **overrides})

    def test_invalid_is_value_error(self):
        with pytest.raises(ValueError):
            ExportManifest(site_name="x", center_lat=100.0, center_lng=0.0, radius_m=1.0)

    def test_save_and_load(self, manifest, tmp_path):
        path = tmp_path / "nested" / "manifest.json"
        manifest.save(path)
        loaded = ExportManifest.from_json(path)
        assert loaded == manifest
        assert json.loads(path.read_text())["units"] == "meters"

    def test_fixed_timestamp(self, manifest):
        assert manifest.timestamp() == "2024-05-01T12:00:00Z"

    def test_timestamp_defaults_to_now(self):
        m = ExportManifest(site_name="x", center_lat=0.0, center_lng=0.0, radius_m=1.0)
        assert m.timestamp().endswith("Z")

    def test_unit_codes(self):
        assert LinearUnit.METERS.insunits == 6
        assert LinearUnit.FEET.insunits == 2
        assert LinearUnit.MILLIMETERS.insunits == 4
        assert LinearUnit.FEET.per_meter == pytest.approx(3.28084, rel=1e-5)
        assert LinearUnit.MILLIMETERS.per_meter == 1000.0


# ============== Feature Ingestion Tests ==============

class TestLoadFeatures:
    """Test GeoJSON ingestion."""

    def test_valid_polygon(self):
        features, outcomes = load_features({"features": [polygon_geojson(SQUARE, "way/1", height=8)]})
        assert len(features) == 1
        assert isinstance(features[0], PolygonFeature)
        assert features[0].feature_id == "way/1"
        assert features[0].properties["height"] == 8
        assert outcomes == [FeatureOutcome.ok("way/1")]

    def test_fallback_id(self):
        features, _ = load_features({"features": [polygon_geojson(SQUARE)]}, layer="buildings")
        assert features[0].feature_id == "buildings/0"

    def test_two_vertex_polygon_skipped(self):
        bad = polygon_geojson([[0, 0], [1, 0], [0, 0]], "bad")
        good = polygon_geojson(SQUARE, "good")
        features, outcomes = load_features({"features": [bad, good]})

        assert [f.feature_id for f in features] == ["good"]
        skipped = [o for o in outcomes if not o.is_ok]
        assert [o.feature_id for o in skipped] == ["bad"]
        assert skipped[0].reason

    def test_self_intersecting_polygon_skipped(self):
        bowtie = polygon_geojson([[0, 0], [10, 10], [10, 0], [0, 10], [0, 0]], "bowtie")
        features, outcomes = load_features({"features": [bowtie]})
        assert features == []
        assert outcomes[0].status == "skipped"

    def test_missing_geometry_skipped(self):
        features, outcomes = load_features({"features": [{"type": "Feature", "id": "x", "properties": {}}]})
        assert features == []
        assert outcomes[0].reason == "missing geometry"

    def test_multipolygon_split(self):
        multi = {
            "type": "Feature",
            "id": "rel/5",
            "properties": {},
            "geometry": {
                "type": "MultiPolygon",
                "coordinates": [[SQUARE], [[[20, 20], [30, 20], [30, 30], [20, 20]]]],
            },
        }
        features, _ = load_features({"features": [multi]})
        assert [f.feature_id for f in features] == ["rel/5#0", "rel/5#1"]

    def test_linestring(self):
        road = {
            "type": "Feature",
            "id": "way/9",
            "properties": {"highway": "primary"},
            "geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1], [2, 1]]},
        }
        features, _ = load_features({"features": [road]})
        assert isinstance(features[0], LineStringFeature)
        assert features[0].coords.shape == (3, 2)

    def test_empty_collection(self):
        assert load_features({"type": "FeatureCollection", "features": []}) == ([], [])

    def test_warning_logged(self, caplog):
        load_features({"features": [polygon_geojson([[0, 0], [1, 0], [0, 0]], "bad")]})
        assert any("bad" in r.getMessage() for r in caplog.records if r.levelname == "WARNING")


class TestBuildingHeight:
    """Test height resolution."""

    @pytest.mark.parametrize("properties, expected", [
        ({"height": "12"}, 12.0),
        ({"height": "7.5 m"}, 7.5),
        ({"building:levels": 4}, 12.0),
        ({"height": "tall", "building:levels": "2"}, 6.0),
        ({"height": -3}, 10.0),
        ({}, 10.0),
    ])
    def test_sources(self, properties, expected):
        feature = PolygonFeature("f", np.array(SQUARE, dtype=float), properties)
        assert building_height(feature, 10.0) == pytest.approx(expected)


class TestDistinctRing:
    """Test ring reduction."""

    def test_closing_vertex_removed(self):
        assert len(distinct_ring(np.array(SQUARE, dtype=float))) == 4

    def test_consecutive_duplicates_removed(self):
        ring = np.array([[0, 0], [0, 0], [1, 0], [1, 0], [1, 1], [0, 0]], dtype=float)
        np.testing.assert_array_equal(distinct_ring(ring), [[0, 0], [1, 0], [1, 1]])


# ============== Elevation Grid Tests ==============

class TestElevationGrid:
    """Test grid ingestion."""

    def test_load(self):
        grid = load_elevation_grid({
            "values": [[0, 1, 2], [1, None, 3]],
            "west": 0.0, "east": 2.0, "south": 0.0, "north": 1.0,
        })
        assert (grid.ny, grid.nx) == (2, 3)
        assert np.isnan(grid.values[1, 1])
        assert grid.finite_range == (0.0, 3.0)
        assert grid.dx == pytest.approx(1.0)
        assert grid.dy == pytest.approx(1.0)

    def test_missing_key(self):
        with pytest.raises(InputInvalid):
            load_elevation_grid({"values": [[0, 1], [1, 2]], "west": 0.0})

    def test_single_row_rejected(self):
        with pytest.raises(InputInvalid):
            load_elevation_grid({"values": [[0, 1, 2]], "west": 0, "east": 1, "south": 0, "north": 1})

    def test_ragged_rows_rejected(self):
        with pytest.raises(InputInvalid):
            load_elevation_grid({"values": [[0, 1], [1]], "west": 0, "east": 1, "south": 0, "north": 1})

    def test_coordinates(self, ramp_grid):
        np.testing.assert_allclose(ramp_grid.x_coords, np.arange(21))
        np.testing.assert_allclose(ramp_grid.y_coords, np.arange(21))


# ============== Projection Tests ==============

class TestLocalProjection:
    """Test the equirectangular site projection."""

    def test_equator(self):
        proj = LocalProjection(0.0, 0.0)
        local = proj.to_local(np.array([1.0]), np.array([1.0]))
        assert local.x_m[0] == pytest.approx(111320.0)
        assert local.y_m[0] == pytest.approx(111320.0)

    def test_longitude_shrinks_with_latitude(self):
        proj = LocalProjection(0.0, 60.0)
        local = proj.to_local(np.array([1.0]), np.array([60.0]))
        assert local.x_m[0] == pytest.approx(55660.0, rel=1e-9)
        assert local.y_m[0] == pytest.approx(0.0)

    def test_inverse(self, projection):
        lon, lat = projection.to_geographic(np.array([12.5]), np.array([-40.0]))
        back = projection.project_points(np.column_stack([lon, lat]))
        np.testing.assert_allclose(back, [[12.5, -40.0]], atol=1e-6)

    def test_project_to_local(self):
        x, y = project_to_local(np.array([0.0]), np.array([0.001]), 0.0, 0.0)
        assert x[0] == pytest.approx(0.0)
        assert y[0] == pytest.approx(111.32)

    def test_aoi_ring(self, projection):
        ring = projection.aoi_ring(100.0)
        assert ring.shape == (5, 2)
        np.testing.assert_array_equal(ring[0], ring[-1])
        local = projection.project_points(ring)
        np.testing.assert_allclose(np.abs(local), 100.0)


# ============== Extrusion Tests ==============

class TestExtrudeFootprint:
    """Test prism extrusion."""

    def test_square_counts(self):
        mesh = extrude_footprint(np.array(SQUARE, dtype=float), 8.0)
        assert mesh.n_vertices == 8
        assert mesh.n_faces == 12
        assert len(mesh.positions) == 24
        assert len(mesh.indices) == 36

    def test_z_values(self):
        mesh = extrude_footprint(np.array(SQUARE, dtype=float), 8.0)
        assert set(np.unique(mesh.vertices[:, 2])) == {0.0, 8.0}

    @pytest.mark.parametrize("n", [3, 5, 8])
    def test_triangle_formula(self, n):
        angles = np.linspace(0, 2 * np.pi, n, endpoint=False)
        ring = np.column_stack([np.cos(angles), np.sin(angles)]) * 10
        mesh = extrude_footprint(ring, 3.0)
        assert mesh.n_vertices == 2 * n
        assert mesh.n_faces == (n - 2) * 2 + 2 * n

    def test_watertight_outward(self):
        mesh = extrude_footprint(np.array(SQUARE, dtype=float), 8.0)
        stats = compute_mesh_stats(mesh)
        assert stats["is_watertight"]
        assert stats["volume"] == pytest.approx(800.0)

    def test_clockwise_ring_reoriented(self):
        clockwise = np.array(SQUARE[::-1], dtype=float)
        stats = compute_mesh_stats(extrude_footprint(clockwise, 8.0))
        assert stats["volume"] == pytest.approx(800.0)

    def test_two_vertex_rejected(self):
        with pytest.raises(InputInvalid):
            extrude_footprint(np.array([[0, 0], [1, 0], [0, 0]], dtype=float), 5.0)

    @pytest.mark.parametrize("height", [0.0, -1.0, float("nan")])
    def test_bad_height_rejected(self, height):
        with pytest.raises(InputInvalid):
            extrude_footprint(np.array(SQUARE, dtype=float), height)

    def test_footprint_ring_drops_duplicates(self):
        ring = footprint_ring(np.array([[0, 0], [10, 0], [10, 0], [10, 10], [0, 0]], dtype=float))
        assert len(ring) == 3

    def test_mesh_validate(self):
        mesh = Mesh(vertices=np.zeros((3, 3)), faces=np.array([[0, 1, 3]]))
        with pytest.raises(InputInvalid):
            mesh.validate()


class TestExtrudeBuildings:
    """Test batch extrusion of features."""

    def test_outcomes(self, projection, square_building, two_vertex_building):
        meshes, outcomes = extrude_buildings([square_building, two_vertex_building], projection, 10.0)

        assert [fid for fid, _ in meshes] == ["way/1"]
        assert meshes[0][1].vertices[:, 2].max() == pytest.approx(8.0)
        assert [o.status for o in outcomes] == ["ok", "skipped"]

    def test_non_polygon_skipped(self, projection, road):
        meshes, outcomes = extrude_buildings([road], projection, 10.0)
        assert meshes == []
        assert outcomes[0].status == "skipped"


# ============== Terrain Tests ==============

class TestTerrainMesh:
    """Test terrain triangulation."""

    def test_counts(self, projection):
        grid = ElevationGrid(np.arange(9, dtype=float).reshape(3, 3), -75.001, -74.999, 39.999, 40.001)
        mesh = terrain_mesh(grid, projection)
        assert mesh.n_vertices == 9
        assert mesh.n_faces == 8
        assert mesh.vertex_colors.shape == (9, 3)
        assert mesh.vertices[:, 2].min() == 0.0
        assert mesh.vertices[:, 2].max() == 8.0
        mesh.validate()

    def test_nan_cells_dropped(self, projection):
        values = np.arange(9, dtype=float).reshape(3, 3)
        values[0, 0] = np.nan
        grid = ElevationGrid(values, -75.001, -74.999, 39.999, 40.001)
        mesh = terrain_mesh(grid, projection)
        assert mesh.n_faces == 6
        assert np.all(np.isfinite(mesh.vertices))

    def test_degenerate(self, projection):
        grid = ElevationGrid(np.zeros((1, 3)), 0.0, 1.0, 0.0, 1.0)
        assert terrain_mesh(grid, projection) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
