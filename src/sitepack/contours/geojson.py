"""
GeoJSON rendering of contour lines.
"""

from typing import Any, Dict, List

from shapely.geometry import MultiLineString, mapping

from .marching_squares import ContourLine


def contours_to_geojson(contours: List[ContourLine]) -> Dict[str, Any]:
    """
    One MultiLineString feature per contour level.

    Args:
        contours: ContourLine list in geographic degrees

    Returns:
        GeoJSON FeatureCollection dict
    """
    features = []
    for contour in contours:
        lines = [p.tolist() for p in contour.polylines if len(p) >= 2]
        if not lines:
            continue
        features.append({
            "type": "Feature",
            "properties": {
                "elevation": contour.elevation,
                "n_polylines": len(lines),
            },
            "geometry": mapping(MultiLineString(lines)),
        })
    return {"type": "FeatureCollection", "features": features}
