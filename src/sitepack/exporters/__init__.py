"""
Format encoders.

Every encoder has the same signature:

    encoder(manifest, buildings, roads, landuse, contours, elevation)
        -> (bytes, list[FeatureOutcome])
"""

from .dxf_exporter import DXFBuilder, build_cad_document
from .gltf_exporter import GLBBuilder, build_scene
from .collada_exporter import ColladaBuilder, build_exchange_document
from .pdf_exporter import PDFDocument, build_plan_sheet

__all__ = [
    'DXFBuilder', 'build_cad_document',
    'GLBBuilder', 'build_scene',
    'ColladaBuilder', 'build_exchange_document',
    'PDFDocument', 'build_plan_sheet',
]
