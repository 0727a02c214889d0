"""
Tests for archive assembly and the export job

Tests cover:
- ZIP assembly, digest and determinism
- README, metadata and GeoJSON layer artifacts
- End-to-end export jobs, partial failures and integrity failures
"""

import dataclasses
import io
import json
import zipfile

import pytest
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sitepack import run_export, site_pack
from sitepack.common.config import ExportFormat, ExportManifest
from sitepack.common.errors import AssemblyIntegrityFailure
from sitepack.run_export import ENCODERS, STATUS_FAILED, run_export_job
from sitepack.site_pack import (
    AOI_PATH, METADATA_PATH, README_PATH,
    assemble_site_pack, build_geojson_layers, build_metadata, build_readme,
)

from conftest import GENERATED_AT


ARTIFACTS = [
    ("README.md", b"# Site\n"),
    ("metadata.json", b"{}"),
    ("geojson/aoi.geojson", b'{"type": "FeatureCollection", "features": []}'),
    ("exports/layers.dxf", b"  0\nEOF\n"),
    ("exports/plan.pdf", b"%PDF-1.7\n"),
]


def archive_names(package):
    with zipfile.ZipFile(io.BytesIO(package.archive_bytes)) as zf:
        return zf.namelist()


def read_entry(package, name):
    with zipfile.ZipFile(io.BytesIO(package.archive_bytes)) as zf:
        return zf.read(name)


# ============== Assembly Tests ==============

class TestAssembleSitePack:
    """Test ZIP assembly."""

    def test_entries_and_digest(self):
        package = assemble_site_pack(ARTIFACTS)

        assert package.entry_count == 5
        assert len(package.sha256_hex) == 64
        assert package.sha256_hex == package.sha256_hex.lower()
        int(package.sha256_hex, 16)
        assert package.size_bytes == len(package.archive_bytes)
        assert package.archive_bytes[:2] == b"PK"

    def test_contents_preserved(self):
        package = assemble_site_pack(ARTIFACTS)
        assert archive_names(package) == [path for path, _ in ARTIFACTS]
        assert read_entry(package, "exports/layers.dxf") == b"  0\nEOF\n"

    def test_deterministic(self):
        assert assemble_site_pack(ARTIFACTS).sha256_hex == assemble_site_pack(ARTIFACTS).sha256_hex

    def test_fixed_entry_dates(self):
        package = assemble_site_pack(ARTIFACTS)
        with zipfile.ZipFile(io.BytesIO(package.archive_bytes)) as zf:
            assert {info.date_time for info in zf.infolist()} == {(1980, 1, 1, 0, 0, 0)}
            assert {info.compress_type for info in zf.infolist()} == {zipfile.ZIP_DEFLATED}

    def test_duplicate_path(self):
        with pytest.raises(AssemblyIntegrityFailure, match="duplicate"):
            assemble_site_pack(ARTIFACTS + [("README.md", b"again")])

    @pytest.mark.parametrize("path", ["", "/etc/passwd", "../escape.txt", "a/../../b"])
    def test_unsafe_path(self, path):
        with pytest.raises(AssemblyIntegrityFailure):
            assemble_site_pack([(path, b"x")])

    def test_empty_archive(self):
        package = assemble_site_pack([])
        assert package.entry_count == 0
        assert package.archive_bytes[:2] == b"PK"

    def test_missing_zip_signature(self, monkeypatch):
        real_bytes_io = io.BytesIO

        class CorruptBytesIO(real_bytes_io):
            def getvalue(self):
                return b"XX" + super().getvalue()[2:]

        monkeypatch.setattr(site_pack.io, "BytesIO", CorruptBytesIO)
        with pytest.raises(AssemblyIntegrityFailure, match="signature"):
            assemble_site_pack([("a.txt", b"x")])

    def test_truncated_archive(self):
        archive = assemble_site_pack(ARTIFACTS).archive_bytes
        with pytest.raises(AssemblyIntegrityFailure, match="reopen"):
            site_pack._verify_archive(archive[:40], len(ARTIFACTS))


# ============== Artifact Tests ==============

class TestArtifacts:
    """Test README, metadata and GeoJSON layers."""

    def test_readme(self, manifest):
        path, data = build_readme(manifest, [README_PATH, "exports/plan.pdf", "extra/file.txt"])
        text = data.decode("utf-8")

        assert path == "README.md"
        assert text.startswith("# Site Pack: Test Site")
        assert "40.000000, -75.000000" in text
        assert "- `exports/plan.pdf` - Site plan" in text
        assert "- `extra/file.txt` - Additional data" in text
        assert GENERATED_AT in text
        assert "OpenStreetMap" in text

    def test_metadata(self, manifest):
        path, data = build_metadata(manifest, results=[{"format": "cad"}], contour_levels=[5.0, 10.0])
        metadata = json.loads(data)

        assert path == METADATA_PATH
        assert metadata["generated_at"] == GENERATED_AT
        assert metadata["center"] == {"lat": 40.0, "lng": -75.0}
        assert metadata["exports"]["cad"] == {"path": "exports/layers.dxf", "requested": True}
        assert metadata["contour_levels"] == [5.0, 10.0]
        assert metadata["results"] == [{"format": "cad"}]
        assert metadata["manifest"]["site_name"] == "Test Site"

    def test_geojson_layers(self, manifest, square_building, road):
        artifacts = dict(build_geojson_layers(manifest, [square_building], [road], []))

        assert set(artifacts) == {AOI_PATH, "geojson/buildings.geojson", "geojson/roads.geojson"}
        buildings = json.loads(artifacts["geojson/buildings.geojson"])
        feature = buildings["features"][0]
        assert feature["id"] == "way/1"
        assert feature["properties"] == {"height": "8"}
        assert feature["geometry"]["type"] == "Polygon"

    def test_aoi_ring(self, manifest):
        aoi = json.loads(dict(build_geojson_layers(manifest, [], [], []))[AOI_PATH])
        ring = aoi["features"][0]["geometry"]["coordinates"][0]
        assert len(ring) == 5
        assert ring[0] == ring[-1]
        assert aoi["features"][0]["properties"]["name"] == "Test Site"

    def test_degenerate_feature_left_out(self, manifest, square_building, two_vertex_building):
        artifacts = dict(build_geojson_layers(manifest, [square_building, two_vertex_building], [], []))
        buildings = json.loads(artifacts["geojson/buildings.geojson"])
        assert [f["id"] for f in buildings["features"]] == ["way/1"]


# ============== Export Job Tests ==============

@pytest.fixture
def layers(square_building, road, park):
    return [square_building], [road], [park]


class TestRunExportJob:
    """Test the full export job."""

    def test_all_formats(self, manifest, layers, site_ramp_grid):
        result = run_export_job(manifest, *layers, elevation=site_ramp_grid)

        assert result.failed_formats == []
        assert [r.format for r in result.results] == list(ExportFormat)
        names = archive_names(result.package)
        assert names[:2] == ["README.md", "metadata.json"]
        for path in (
            "geojson/aoi.geojson", "geojson/buildings.geojson", "geojson/roads.geojson",
            "geojson/landuse.geojson", "geojson/contours.geojson",
            "exports/layers.dxf", "exports/scene.glb", "exports/site_model.dae", "exports/plan.pdf",
        ):
            assert path in names
        assert result.package.entry_count == len(names) == 11

    def test_archive_entries_match_encoders(self, manifest, layers):
        result = run_export_job(manifest, *layers)
        for r in result.results:
            assert read_entry(result.package, r.path) == r.data
            assert r.size_bytes == len(r.data)

    def test_idempotent(self, manifest, layers, site_ramp_grid):
        first = run_export_job(manifest, *layers, elevation=site_ramp_grid)
        second = run_export_job(manifest, *layers, elevation=site_ramp_grid)
        assert first.package.sha256_hex == second.package.sha256_hex

    def test_contours_artifact(self, manifest, layers, site_ramp_grid):
        result = run_export_job(manifest, *layers, elevation=site_ramp_grid)
        contours = json.loads(read_entry(result.package, "geojson/contours.geojson"))
        assert [f["properties"]["elevation"] for f in contours["features"]] == [5.0, 10.0, 15.0]
        metadata = json.loads(read_entry(result.package, "metadata.json"))
        assert metadata["contour_levels"] == [5.0, 10.0, 15.0]

    def test_no_elevation_no_contours(self, manifest, layers):
        result = run_export_job(manifest, *layers)
        assert "geojson/contours.geojson" not in archive_names(result.package)
        assert result.contours == []

    def test_requested_subset(self, manifest, layers):
        subset = dataclasses.replace(manifest, requested_formats=frozenset({ExportFormat.CAD}))
        result = run_export_job(subset, *layers)

        assert [r.format for r in result.results] == [ExportFormat.CAD]
        names = archive_names(result.package)
        assert "exports/layers.dxf" in names
        assert "exports/scene.glb" not in names

    def test_partial_failure(self, manifest, layers):
        def broken(*args):
            raise RuntimeError("encoder exploded")

        encoders = {**ENCODERS, ExportFormat.SCENE: broken}
        result = run_export_job(manifest, *layers, encoders=encoders)

        assert result.failed_formats == [ExportFormat.SCENE]
        failed = result.result_for(ExportFormat.SCENE)
        assert failed.status == STATUS_FAILED
        assert "encoder exploded" in failed.error
        names = archive_names(result.package)
        assert "exports/scene.glb" not in names
        assert "exports/layers.dxf" in names
        assert "exports/plan.pdf" in names

        metadata = json.loads(read_entry(result.package, "metadata.json"))
        statuses = {r["format"]: r["status"] for r in metadata["results"]}
        assert statuses["scene"] == "failed"
        assert statuses["cad"] == "success"

    def test_skipped_feature_reported(self, manifest, square_building, two_vertex_building):
        result = run_export_job(manifest, [square_building, two_vertex_building], [], [])

        cad = result.result_for(ExportFormat.CAD)
        assert cad.ok
        assert [o.feature_id for o in cad.skipped_features] == ["way/bad"]
        metadata = json.loads(read_entry(result.package, "metadata.json"))
        cad_entry = next(r for r in metadata["results"] if r["format"] == "cad")
        assert cad_entry["skipped"][0]["feature_id"] == "way/bad"

    def test_timestamp_fixed_once(self, layers):
        manifest = ExportManifest(site_name="Now", center_lat=40.0, center_lng=-75.0, radius_m=50.0)
        result = run_export_job(manifest, *layers)

        metadata = json.loads(read_entry(result.package, "metadata.json"))
        readme = read_entry(result.package, "README.md").decode("utf-8")
        assert metadata["generated_at"] in readme

    def test_integrity_failure_propagates(self, manifest, layers, monkeypatch):
        def duplicate_readme(*args):
            return [("README.md", b"shadow")]

        monkeypatch.setattr(run_export, "build_geojson_layers", duplicate_readme)
        with pytest.raises(AssemblyIntegrityFailure):
            run_export_job(manifest, *layers)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
