"""
Elevation contour engine: marching squares, segment merging and simplification.
"""

from .marching_squares import (
    ContourLine, generate_contours, marching_squares, merge_segments, contour_levels,
)
from .simplify import simplify_polyline, simplify_contours
from .geojson import contours_to_geojson

__all__ = [
    'ContourLine', 'generate_contours', 'marching_squares', 'merge_segments', 'contour_levels',
    'simplify_polyline', 'simplify_contours', 'contours_to_geojson',
]
