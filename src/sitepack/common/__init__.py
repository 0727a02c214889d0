"""
Common modules shared by the contour engine and every encoder.

Unit Model:
- Raw features/grid: lon/lat degrees → local equirectangular meters → encoders
- Buildings and terrain share the z=0 base plane
"""

from .config import ExportManifest, ExportFormat, LinearUnit, FORMAT_PATHS, CONTOURS_PATH
from .errors import SitePackError, InputInvalid, FormatInvariantViolation, AssemblyIntegrityFailure
from .coords import LocalProjection, project_to_local
from .io import (
    PolygonFeature, LineStringFeature, PointFeature, VectorFeature,
    ElevationGrid, FeatureOutcome,
    load_features, load_elevation_grid, building_height,
)
from .mesh_ops import (
    Mesh, extrude_footprint, extrude_buildings, footprint_ring, terrain_mesh, compute_mesh_stats,
)

__all__ = [
    'ExportManifest', 'ExportFormat', 'LinearUnit', 'FORMAT_PATHS', 'CONTOURS_PATH',
    'SitePackError', 'InputInvalid', 'FormatInvariantViolation', 'AssemblyIntegrityFailure',
    'LocalProjection', 'project_to_local',
    'PolygonFeature', 'LineStringFeature', 'PointFeature', 'VectorFeature',
    'ElevationGrid', 'FeatureOutcome',
    'load_features', 'load_elevation_grid', 'building_height',
    'Mesh', 'extrude_footprint', 'extrude_buildings', 'footprint_ring', 'terrain_mesh', 'compute_mesh_stats',
]
