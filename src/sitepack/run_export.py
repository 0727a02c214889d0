"""
Site Pack - Export Orchestrator

Runs one export job: contours once, every requested encoder over the same
immutable inputs in a thread pool, then assembly of the archive.

An encoder failure is recorded in its EncoderResult and does not stop its
siblings or the assembly. An archive that fails its self-check aborts the job.
"""

import dataclasses
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .common.config import CONTOURS_PATH, FORMAT_PATHS, ExportFormat, ExportManifest
from .common.io import ElevationGrid, FeatureOutcome, VectorFeature
from .contours import ContourLine, contours_to_geojson, generate_contours
from .exporters import build_cad_document, build_exchange_document, build_plan_sheet, build_scene
from .site_pack import (
    METADATA_PATH, README_PATH, OutputArtifact, SitePackage, assemble_site_pack,
    build_geojson_layers, build_metadata, build_readme,
)

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

Encoder = Callable[..., Tuple[bytes, List[FeatureOutcome]]]

ENCODERS: Dict[ExportFormat, Encoder] = {
    ExportFormat.CAD: build_cad_document,
    ExportFormat.SCENE: build_scene,
    ExportFormat.EXCHANGE: build_exchange_document,
    ExportFormat.PLAN: build_plan_sheet,
}

MAX_WORKERS = 4


@dataclass
class EncoderResult:
    """Outcome of one format encoder."""
    format: ExportFormat
    path: str
    status: str
    size_bytes: int = 0
    outcomes: List[FeatureOutcome] = field(default_factory=list)
    error: Optional[str] = None
    data: Optional[bytes] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def skipped_features(self) -> List[FeatureOutcome]:
        return [o for o in self.outcomes if not o.is_ok]

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "format": self.format.value,
            "path": self.path,
            "status": self.status,
            "size_bytes": self.size_bytes,
            "skipped": [o.to_dict() for o in self.skipped_features],
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class ExportJobResult:
    """Everything a job produced."""
    artifacts: List[OutputArtifact]
    results: List[EncoderResult]
    package: SitePackage
    contours: List[ContourLine]

    @property
    def failed_formats(self) -> List[ExportFormat]:
        return [r.format for r in self.results if not r.ok]

    def result_for(self, fmt: ExportFormat) -> Optional[EncoderResult]:
        for result in self.results:
            if result.format is fmt:
                return result
        return None


def run_encoder(
    fmt: ExportFormat,
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature],
    contours: List[ContourLine],
    elevation: Optional[ElevationGrid],
    encoders: Optional[Dict[ExportFormat, Encoder]] = None
) -> EncoderResult:
    """
    Run one encoder, catching any failure at its boundary.

    Returns:
        EncoderResult with the encoded bytes on success, the error otherwise
    """
    encoder = (encoders or ENCODERS)[fmt]
    path = FORMAT_PATHS[fmt]
    logger.info(f"--- Encoder {fmt.value} ---")
    try:
        data, outcomes = encoder(manifest, buildings, roads, landuse, contours, elevation)
    except Exception as e:
        logger.error(f"Encoder {fmt.value} failed: {type(e).__name__}: {e}")
        return EncoderResult(fmt, path, STATUS_FAILED, error=f"{type(e).__name__}: {e}")

    return EncoderResult(
        fmt, path, STATUS_SUCCESS,
        size_bytes=len(data),
        outcomes=list(outcomes),
        data=data,
    )


def run_export_job(
    manifest: ExportManifest,
    buildings: List[VectorFeature],
    roads: List[VectorFeature],
    landuse: List[VectorFeature],
    elevation: Optional[ElevationGrid] = None,
    encoders: Optional[Dict[ExportFormat, Encoder]] = None
) -> ExportJobResult:
    """
    Run a full export job.

    Args:
        manifest: Export manifest naming the formats to produce
        buildings: Building footprints
        roads: Road centerlines
        landuse: Land-use polygons
        elevation: Optional elevation grid
        encoders: Override of the format → encoder table

    Returns:
        ExportJobResult

    Raises:
        AssemblyIntegrityFailure: if the archive fails its self-check
    """
    # One timestamp for every artifact of the job
    if manifest.generated_at is None:
        manifest = dataclasses.replace(manifest, generated_at=manifest.timestamp())

    logger.info(f"{'=' * 60}")
    logger.info(f"Export job: {manifest.site_name}")
    logger.info(
        f"Formats: {sorted(f.value for f in manifest.requested_formats)}, "
        f"{len(buildings)} buildings, {len(roads)} roads, {len(landuse)} landuse, "
        f"elevation={'yes' if elevation is not None else 'no'}"
    )
    logger.info(f"{'=' * 60}")

    contours: List[ContourLine] = []
    if elevation is not None:
        contours = generate_contours(elevation, manifest.contour_interval)

    requested = [fmt for fmt in FORMAT_PATHS if manifest.wants(fmt)]
    if requested:
        with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(requested))) as pool:
            futures = [
                pool.submit(
                    run_encoder, fmt, manifest, buildings, roads, landuse,
                    contours, elevation, encoders,
                )
                for fmt in requested
            ]
            results = [f.result() for f in futures]
    else:
        results = []

    artifacts: List[OutputArtifact] = list(build_geojson_layers(manifest, buildings, roads, landuse))
    if elevation is not None:
        artifacts.append((CONTOURS_PATH, json.dumps(contours_to_geojson(contours), indent=2).encode("utf-8")))
    artifacts.extend((r.path, r.data) for r in results if r.ok)

    paths = [README_PATH, METADATA_PATH] + [path for path, _ in artifacts]
    readme = build_readme(manifest, paths)
    metadata = build_metadata(
        manifest,
        results=[r.to_dict() for r in results],
        contour_levels=[c.elevation for c in contours],
    )
    artifacts = [readme, metadata] + artifacts

    package = assemble_site_pack(artifacts)

    failed = [r.format.value for r in results if not r.ok]
    if failed:
        logger.warning(f"Export job finished with failed formats: {failed}")
    logger.info(
        f"Export job complete: {len(artifacts)} artifacts, "
        f"{sum(r.ok for r in results)}/{len(results)} encoders succeeded"
    )
    return ExportJobResult(artifacts=artifacts, results=results, package=package, contours=contours)
