"""
Polyline simplification.
"""

from typing import List

import numpy as np

from .marching_squares import ContourLine


def _segment_distances(points: np.ndarray, start: np.ndarray, end: np.ndarray) -> np.ndarray:
    """Distance from each point to the segment start-end (clamped projection)."""
    chord = end - start
    length_sq = float(np.dot(chord, chord))
    if length_sq == 0.0:
        return np.linalg.norm(points - start, axis=1)
    t = np.clip((points - start) @ chord / length_sq, 0.0, 1.0)
    nearest = start + t[:, None] * chord
    return np.linalg.norm(points - nearest, axis=1)


def simplify_polyline(points: np.ndarray, tolerance: float) -> np.ndarray:
    """
    Douglas-Peucker simplification.

    Keeps the point farthest from the chord when it deviates more than
    `tolerance`, and recurses on both halves. Endpoints are always kept.

    Args:
        points: (N, 2) or (N, 3) polyline
        tolerance: Maximum allowed deviation, in the points' units

    Returns:
        Simplified polyline; input with fewer than 3 points is returned unchanged
    """
    points = np.asarray(points, dtype=np.float64)
    if len(points) < 3 or tolerance <= 0:
        return points

    keep = np.zeros(len(points), dtype=bool)
    keep[0] = keep[-1] = True

    stack = [(0, len(points) - 1)]
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        inner = points[first + 1:last]
        distances = _segment_distances(inner, points[first], points[last])
        idx = int(np.argmax(distances))
        if distances[idx] > tolerance:
            split = first + 1 + idx
            keep[split] = True
            stack.append((first, split))
            stack.append((split, last))

    return points[keep]


def simplify_contours(contours: List[ContourLine], projection, tolerance: float) -> List[ContourLine]:
    """
    Project contours to local meters and simplify each polyline.

    Args:
        contours: ContourLine list in geographic degrees
        projection: LocalProjection of the site
        tolerance: Douglas-Peucker tolerance in meters

    Returns:
        New ContourLine list in local meters
    """
    projected = []
    for contour in contours:
        polylines = tuple(
            simplify_polyline(projection.project_points(p), tolerance)
            for p in contour.polylines
        )
        projected.append(ContourLine(elevation=contour.elevation, polylines=polylines))
    return projected
