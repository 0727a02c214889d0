"""
Contour Extraction Module

Traces elevation isolines through an ElevationGrid with marching squares,
then stitches the per-cell segments into continuous polylines.

Work happens in grid-index space (column i, row j), where every cell is a
unit square. Polylines are mapped onto the grid's geographic bounds only
after merging, so the merge tolerance is in cell units.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from ..common.io import ElevationGrid

logger = logging.getLogger(__name__)

DEFAULT_MERGE_TOLERANCE = 1e-3

# Corner bits: bottom-left (i, j), bottom-right (i+1, j),
# top-right (i+1, j+1), top-left (i, j+1)
BL, BR, TR, TL = 1, 2, 4, 8

# Non-saddle cases: mask of corners >= threshold → edge pairs to connect
_CASE_EDGES = {
    1: (("left", "bottom"),),
    2: (("bottom", "right"),),
    3: (("left", "right"),),
    4: (("right", "top"),),
    6: (("bottom", "top"),),
    7: (("left", "top"),),
    8: (("left", "top"),),
    9: (("bottom", "top"),),
    11: (("right", "top"),),
    12: (("left", "right"),),
    13: (("bottom", "right"),),
    14: (("left", "bottom"),),
}

# Saddles: (center >= threshold, center < threshold)
_SADDLE_EDGES = {
    5: (
        (("bottom", "right"), ("left", "top")),
        (("left", "bottom"), ("right", "top")),
    ),
    10: (
        (("left", "bottom"), ("right", "top")),
        (("bottom", "right"), ("left", "top")),
    ),
}


@dataclass(frozen=True, eq=False)
class ContourLine:
    """Isoline polylines at one elevation, in the grid's coordinate units."""
    elevation: float
    polylines: Tuple[np.ndarray, ...]  # each (k, 2) of (x, y)

    @property
    def n_polylines(self) -> int:
        return len(self.polylines)

    @property
    def n_points(self) -> int:
        return sum(len(p) for p in self.polylines)


def _crossing(v0: float, v1: float, threshold: float) -> float:
    """Fraction along an edge from v0 to v1 where the threshold is crossed."""
    if v1 == v0:
        return 0.5
    t = (threshold - v0) / (v1 - v0)
    return min(1.0, max(0.0, t))


def _edge_point(edge: str, i: int, j: int, corners: Tuple[float, float, float, float], threshold: float):
    bl, br, tr, tl = corners
    if edge == "bottom":
        return (i + _crossing(bl, br, threshold), float(j))
    if edge == "right":
        return (float(i + 1), j + _crossing(br, tr, threshold))
    if edge == "top":
        return (i + _crossing(tl, tr, threshold), float(j + 1))
    return (float(i), j + _crossing(bl, tl, threshold))


def marching_squares(values: np.ndarray, threshold: float) -> np.ndarray:
    """
    Extract isoline segments for one threshold.

    Each 2x2 cell is classified by a 4-bit mask (one bit per corner
    >= threshold). Uniform cells and cells touching a non-finite sample are
    skipped. Saddles are resolved with the bilinear cell-center value.

    Args:
        values: (ny, nx) elevation samples
        threshold: Isoline value

    Returns:
        (n, 2, 2) array of segments in index space (x=column, y=row).
        Zero-length segments are dropped.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.ndim != 2 or values.shape[0] < 2 or values.shape[1] < 2:
        return np.empty((0, 2, 2))

    bl = values[:-1, :-1]
    br = values[:-1, 1:]
    tr = values[1:, 1:]
    tl = values[1:, :-1]

    finite = np.isfinite(bl) & np.isfinite(br) & np.isfinite(tr) & np.isfinite(tl)
    with np.errstate(invalid="ignore"):
        mask = (
            (bl >= threshold) * BL
            + (br >= threshold) * BR
            + (tr >= threshold) * TR
            + (tl >= threshold) * TL
        )
    active = finite & (mask != 0) & (mask != 15)

    segments = []
    for j, i in zip(*np.nonzero(active)):
        corners = (bl[j, i], br[j, i], tr[j, i], tl[j, i])
        case = int(mask[j, i])
        if case in _SADDLE_EDGES:
            center = sum(corners) / 4.0
            high, low = _SADDLE_EDGES[case]
            pairs = high if center >= threshold else low
        else:
            pairs = _CASE_EDGES[case]
        for a, b in pairs:
            p = _edge_point(a, i, j, corners, threshold)
            q = _edge_point(b, i, j, corners, threshold)
            if p != q:
                segments.append((p, q))

    if not segments:
        return np.empty((0, 2, 2))
    return np.asarray(segments, dtype=np.float64)


def merge_segments(segments: np.ndarray, tolerance: float = DEFAULT_MERGE_TOLERANCE) -> List[np.ndarray]:
    """
    Stitch two-point segments into continuous polylines.

    Segments live in an arena with a parallel `consumed` flag array and a
    KD-tree over their endpoints. Each unconsumed segment seeds a chain that
    grows at its tail, then at its head, by taking any unconsumed segment with
    an endpoint within `tolerance`. The arena is discarded afterwards.

    Args:
        segments: (n, 2, 2) segments
        tolerance: Endpoint matching distance

    Returns:
        List of (k, 2) polylines; closed loops repeat their first point
    """
    segments = np.asarray(segments, dtype=np.float64).reshape(-1, 2, 2)
    n = len(segments)
    if n == 0:
        return []

    endpoints = segments.reshape(-1, 2)
    tree = cKDTree(endpoints)
    consumed = np.zeros(n, dtype=bool)

    def take_neighbor(point: np.ndarray) -> Optional[np.ndarray]:
        for idx in sorted(tree.query_ball_point(point, tolerance)):
            seg = idx // 2
            if consumed[seg]:
                continue
            consumed[seg] = True
            # The segment's other endpoint continues the chain
            return endpoints[idx ^ 1]
        return None

    polylines = []
    for seed in range(n):
        if consumed[seed]:
            continue
        consumed[seed] = True
        chain = deque([segments[seed, 0], segments[seed, 1]])

        while True:
            nxt = take_neighbor(chain[-1])
            if nxt is None:
                break
            chain.append(nxt)
        while True:
            prev = take_neighbor(chain[0])
            if prev is None:
                break
            chain.appendleft(prev)

        polylines.append(np.array(chain))

    return polylines


def contour_levels(
    data_min: float,
    data_max: float,
    interval: float,
    min_elevation: Optional[float] = None,
    max_elevation: Optional[float] = None
) -> List[float]:
    """
    Multiples of `interval` in [ceil(min/interval)*interval, max].

    Levels at or above the data maximum are dropped: they can only touch the
    surface at its peak. Overrides are clamped to the data range, and a
    non-finite override is ignored.
    """
    for name, value in (("min_elevation", min_elevation), ("max_elevation", max_elevation)):
        if value is not None and not math.isfinite(value):
            logger.warning(f"Ignoring non-finite {name} {value}")
    lo = data_min
    if min_elevation is not None and math.isfinite(min_elevation):
        lo = max(min_elevation, data_min)
    hi = data_max
    if max_elevation is not None and math.isfinite(max_elevation):
        hi = min(max_elevation, data_max)
    if hi < lo:
        return []
    k_start = math.ceil(lo / interval)
    k_end = math.floor(hi / interval)
    levels = []
    for k in range(k_start, k_end + 1):
        level = k * interval
        if level < data_max:
            levels.append(float(level))
    return levels


def generate_contours(
    grid: ElevationGrid,
    interval: float,
    min_elevation: Optional[float] = None,
    max_elevation: Optional[float] = None,
    merge_tolerance: float = DEFAULT_MERGE_TOLERANCE
) -> List[ContourLine]:
    """
    Generate contour lines from an elevation grid.

    Never raises: a degenerate grid, a grid without finite samples or a
    non-positive interval yields an empty list.

    Args:
        grid: Elevation grid
        interval: Contour spacing in elevation units
        min_elevation: Optional lower bound (defaults to data minimum)
        max_elevation: Optional upper bound (defaults to data maximum)
        merge_tolerance: Endpoint matching distance in cell units

    Returns:
        ContourLine list ordered by elevation, one entry per level with lines
    """
    if grid.is_degenerate:
        logger.warning(f"Degenerate elevation grid ({grid.ny}x{grid.nx}), no contours")
        return []
    if not (math.isfinite(interval) and interval > 0):
        logger.warning(f"Invalid contour interval {interval}, no contours")
        return []
    value_range = grid.finite_range
    if value_range is None:
        logger.warning("Elevation grid has no finite samples, no contours")
        return []

    data_min, data_max = value_range
    levels = contour_levels(data_min, data_max, interval, min_elevation, max_elevation)
    logger.info(
        f"Generating contours: range {data_min:.1f}-{data_max:.1f}, "
        f"interval {interval}, grid {grid.ny}x{grid.nx}, {len(levels)} levels"
    )

    origin = np.array([grid.west, grid.south])
    step = np.array([grid.dx, grid.dy])

    contours = []
    for level in levels:
        segments = marching_squares(grid.values, level)
        polylines = merge_segments(segments, merge_tolerance)
        if not polylines:
            continue
        contours.append(ContourLine(
            elevation=level,
            polylines=tuple(origin + p * step for p in polylines),
        ))

    logger.info(
        f"Generated {len(contours)} contour levels with "
        f"{sum(c.n_polylines for c in contours)} polylines"
    )
    return contours
