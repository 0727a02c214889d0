"""
Site pack assembly.

Builds the non-geometry artifacts (README, metadata, GeoJSON layers) and
writes every artifact into the final ZIP archive with its SHA-256 digest.

The assembler knows nothing about geometry: it takes (path, bytes) pairs.
"""

import hashlib
import io
import json
import logging
import zipfile
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple

from shapely.errors import ShapelyError
from shapely.geometry import LineString, Point, Polygon, mapping

from .common.config import ExportManifest, FORMAT_PATHS, CONTOURS_PATH
from .common.coords import LocalProjection
from .common.errors import AssemblyIntegrityFailure
from .common.io import VectorFeature

logger = logging.getLogger(__name__)

OutputArtifact = Tuple[str, bytes]

# Fixed entry timestamp: identical inputs give byte-identical archives
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)

README_PATH = "README.md"
METADATA_PATH = "metadata.json"
AOI_PATH = "geojson/aoi.geojson"

FILE_DESCRIPTIONS = {
    README_PATH: "This file",
    METADATA_PATH: "Request parameters and export results",
    AOI_PATH: "Area of interest boundary",
    "geojson/buildings.geojson": "Building footprints",
    "geojson/roads.geojson": "Road network",
    "geojson/landuse.geojson": "Land use polygons",
    CONTOURS_PATH: "Elevation contours",
    "exports/layers.dxf": "CAD drawing (DXF)",
    "exports/scene.glb": "3D scene (glTF binary)",
    "exports/site_model.dae": "Polygon model (COLLADA)",
    "exports/plan.pdf": "Site plan with legend, scale bar and north arrow",
}


@dataclass(frozen=True)
class SitePackage:
    """The assembled archive and its digest."""
    archive_bytes: bytes
    sha256_hex: str
    entry_count: int
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha256": self.sha256_hex,
            "entry_count": self.entry_count,
            "size_bytes": self.size_bytes,
        }


def _json_bytes(data: Any) -> bytes:
    return json.dumps(data, indent=2).encode("utf-8")


def _verify_archive(archive: bytes, expected_entries: int) -> None:
    if archive[:2] != b"PK":
        raise AssemblyIntegrityFailure("archive does not start with the ZIP signature")
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            names = zf.namelist()
            bad = zf.testzip()
    except zipfile.BadZipFile as e:
        raise AssemblyIntegrityFailure(f"archive does not reopen: {e}") from e
    if bad is not None:
        raise AssemblyIntegrityFailure(f"CRC mismatch in {bad}")
    if len(names) != expected_entries:
        raise AssemblyIntegrityFailure(
            f"archive has {len(names)} entries, expected {expected_entries}"
        )


def assemble_site_pack(artifacts: List[OutputArtifact]) -> SitePackage:
    """
    Write artifacts into a deflated ZIP and digest it.

    Args:
        artifacts: (relative_path, bytes) pairs; paths must be unique

    Returns:
        SitePackage

    Raises:
        AssemblyIntegrityFailure: on duplicate or unsafe paths, or when the
            written archive fails its self-check
    """
    seen = set()
    for path, _ in artifacts:
        if path in seen:
            raise AssemblyIntegrityFailure(f"duplicate artifact path: {path}")
        if not path or path.startswith("/") or ".." in path.split("/"):
            raise AssemblyIntegrityFailure(f"unsafe artifact path: {path!r}")
        seen.add(path)

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, data in artifacts:
            info = zipfile.ZipInfo(path, date_time=ZIP_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, data)
    archive = buffer.getvalue()

    _verify_archive(archive, len(artifacts))

    package = SitePackage(
        archive_bytes=archive,
        sha256_hex=hashlib.sha256(archive).hexdigest(),
        entry_count=len(artifacts),
        size_bytes=len(archive),
    )
    logger.info(
        f"Assembled site pack: {package.entry_count} entries, "
        f"{package.size_bytes / 1024:.1f} KB, sha256 {package.sha256_hex[:12]}"
    )
    return package


def build_readme(manifest: ExportManifest, paths: List[str]) -> OutputArtifact:
    """
    README.md describing the site, sources and the files in the pack.

    Args:
        manifest: Export manifest
        paths: Every path that will be in the archive
    """
    file_lines = "\n".join(
        f"- `{path}` - {FILE_DESCRIPTIONS.get(path, 'Additional data')}" for path in paths
    )
    text = f"""# Site Pack: {manifest.site_name}

## Location
- **Name**: {manifest.site_name}
- **Center**: {manifest.center_lat:.6f}, {manifest.center_lng:.6f}
- **Radius**: {manifest.radius_m:g} m

## Coordinate Reference System
- **GeoJSON**: EPSG:4326 (WGS84)
- **CAD/3D exports**: local equirectangular projection around the center
- **DXF units**: {manifest.units.value}

## Data Sources
- **OpenStreetMap**: (c) OpenStreetMap contributors (ODbL)
- **Elevation**: gridded elevation samples for the area of interest

## Files Included
{file_lines}

## Generated
{manifest.timestamp()}

## Notes
This pack is for planning purposes. Verify geometry and attributes before
making design decisions. OpenStreetMap data quality varies by region.

## License
- OpenStreetMap data: Open Database License (ODbL)
- Generated files: same as source data
"""
    return README_PATH, text.encode("utf-8")


def build_metadata(
    manifest: ExportManifest,
    results: Optional[List[Dict[str, Any]]] = None,
    contour_levels: Optional[List[float]] = None
) -> OutputArtifact:
    """
    metadata.json with request parameters and per-format results.

    Args:
        manifest: Export manifest
        results: EncoderResult dicts
        contour_levels: Elevations of the generated contours
    """
    metadata = {
        "site_name": manifest.site_name,
        "center": {"lat": manifest.center_lat, "lng": manifest.center_lng},
        "radius_meters": manifest.radius_m,
        "crs": "EPSG:4326",
        "units": manifest.units.value,
        "generated_at": manifest.timestamp(),
        "manifest": manifest.to_dict(),
        "exports": {
            fmt.value: {"path": FORMAT_PATHS[fmt], "requested": manifest.wants(fmt)}
            for fmt in FORMAT_PATHS
        },
        "contour_levels": list(contour_levels or []),
        "results": list(results or []),
    }
    return METADATA_PATH, _json_bytes(metadata)


def _shapely_geometry(feature: VectorFeature):
    if feature.kind == "Point":
        return Point(feature.coords[0])
    if feature.kind == "Polygon":
        return Polygon(feature.coords)
    return LineString(feature.coords)


def _feature_collection(features: List[VectorFeature]) -> Dict[str, Any]:
    collection = []
    for f in features:
        try:
            geometry = mapping(_shapely_geometry(f))
        except (ShapelyError, ValueError) as e:
            logger.warning(f"GeoJSON: skipping feature {f.feature_id}: {e}")
            continue
        collection.append({
            "type": "Feature",
            "id": f.feature_id,
            "properties": f.properties,
            "geometry": geometry,
        })
    return {"type": "FeatureCollection", "features": collection}


def build_aoi(manifest: ExportManifest) -> Dict[str, Any]:
    """Square area-of-interest boundary as a GeoJSON FeatureCollection."""
    ring = LocalProjection.for_manifest(manifest).aoi_ring(manifest.radius_m)
    return {
        "type": "FeatureCollection",
        "features": [{
            "type": "Feature",
            "properties": {
                "name": manifest.site_name,
                "radius_m": manifest.radius_m,
                "center": [manifest.center_lng, manifest.center_lat],
            },
            "geometry": mapping(Polygon(ring)),
        }],
    }


def build_geojson_layers(
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature]
) -> List[OutputArtifact]:
    """AOI boundary plus one GeoJSON file per non-empty input layer."""
    artifacts = [(AOI_PATH, _json_bytes(build_aoi(manifest)))]
    for name, features in (("buildings", buildings), ("roads", roads), ("landuse", landuse)):
        if features:
            artifacts.append((f"geojson/{name}.geojson", _json_bytes(_feature_collection(features))))
    return artifacts
