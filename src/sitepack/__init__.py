"""
SitePack - site survey export core

Turns building footprints, road centerlines, land-use polygons and an
elevation grid for one area of interest into CAD, 3D, exchange and plan-sheet
deliverables, packaged as a digested ZIP archive.

Modules:
- common: manifest, errors, ingestion, projection, mesh operations
- contours: marching squares contour engine
- exporters: DXF, GLB, COLLADA and PDF encoders
- site_pack: README/metadata/GeoJSON artifacts and archive assembly
- run_export: job orchestration
"""

__version__ = "0.1.0"

from .common import (
    ExportManifest, ExportFormat, LinearUnit,
    SitePackError, InputInvalid, FormatInvariantViolation, AssemblyIntegrityFailure,
    load_features, load_elevation_grid,
)
from .run_export import run_export_job, ExportJobResult, EncoderResult
from .site_pack import assemble_site_pack, SitePackage

__all__ = [
    'ExportManifest', 'ExportFormat', 'LinearUnit',
    'SitePackError', 'InputInvalid', 'FormatInvariantViolation', 'AssemblyIntegrityFailure',
    'load_features', 'load_elevation_grid',
    'run_export_job', 'ExportJobResult', 'EncoderResult',
    'assemble_site_pack', 'SitePackage',
]
