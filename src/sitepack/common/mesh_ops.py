"""
Mesh operation utilities.

Triangle mesh container, building extrusion, terrain triangulation and
statistics. All geometry here is in local meters, Z-up.
"""

import numpy as np
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass
import logging

import trimesh
from shapely.geometry import LinearRing

from .errors import InputInvalid
from .io import ElevationGrid, FeatureOutcome, PolygonFeature, VectorFeature, building_height, distinct_ring
from .coords import LocalProjection

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Mesh:
    """A 3D triangular mesh."""
    vertices: np.ndarray  # (N, 3) array of vertex positions
    faces: np.ndarray     # (M, 3) array of triangle indices
    vertex_colors: Optional[np.ndarray] = None  # (N, 3) RGB in 0-1

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def n_faces(self) -> int:
        return len(self.faces)

    @property
    def positions(self) -> np.ndarray:
        """Flat x/y/z position buffer."""
        return np.asarray(self.vertices, dtype=np.float64).reshape(-1)

    @property
    def indices(self) -> np.ndarray:
        """Flat triangle corner index buffer."""
        return np.asarray(self.faces, dtype=np.int64).reshape(-1)

    def validate(self) -> None:
        """
        Check the buffer invariants.

        Raises:
            InputInvalid: on malformed buffers or out-of-range indices
        """
        vertices = np.asarray(self.vertices)
        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise InputInvalid(f"vertices must be (N, 3), got {vertices.shape}")
        if not np.all(np.isfinite(vertices)):
            raise InputInvalid("vertices contain non-finite values")
        indices = self.indices
        if len(indices) % 3 != 0:
            raise InputInvalid(f"index count {len(indices)} is not a multiple of 3")
        if len(indices) and (indices.min() < 0 or indices.max() >= len(vertices)):
            raise InputInvalid(f"index out of range for {len(vertices)} vertices")
        if self.vertex_colors is not None and np.asarray(self.vertex_colors).shape != vertices.shape:
            raise InputInvalid("vertex_colors must parallel vertices")

    def to_trimesh(self) -> "trimesh.Trimesh":
        # process=False keeps vertex order so indices stay meaningful
        return trimesh.Trimesh(
            vertices=np.asarray(self.vertices, dtype=np.float64),
            faces=np.asarray(self.faces, dtype=np.int64),
            process=False,
        )


def footprint_ring(coords: np.ndarray) -> np.ndarray:
    """
    Prepare a footprint for extrusion.

    Strips the closing vertex and consecutive duplicates, then orients the
    ring counter-clockwise so extruded faces point outward.

    Args:
        coords: (N, 2) ring in local meters, closed or open

    Returns:
        (n, 2) counter-clockwise ring of distinct vertices

    Raises:
        InputInvalid: if fewer than 3 distinct vertices remain
    """
    ring = distinct_ring(coords)
    if len(ring) < 3:
        raise InputInvalid(f"footprint has {len(ring)} distinct vertices, need at least 3")
    if not np.all(np.isfinite(ring)):
        raise InputInvalid("footprint has non-finite coordinates")
    if not LinearRing(ring).is_ccw:
        ring = ring[::-1].copy()
    return ring


def extrude_footprint(coords: np.ndarray, height: float) -> Mesh:
    """
    Lift a 2D footprint into a closed prism.

    Layout: n floor vertices at z=0, then n roof vertices at z=height.
    Floor and roof are fan-triangulated with opposite winding, and each
    edge gets two side triangles.

    Args:
        coords: (N, 2) footprint ring in local meters
        height: Prism height in meters

    Returns:
        Mesh with 2n vertices and (n-2)*2 + 2n faces

    Raises:
        InputInvalid: for degenerate rings or non-positive height
    """
    if not (np.isfinite(height) and height > 0):
        raise InputInvalid(f"extrusion height must be positive, got {height}")

    ring = footprint_ring(coords)
    n = len(ring)

    floor = np.column_stack([ring, np.zeros(n)])
    roof = np.column_stack([ring, np.full(n, float(height))])
    vertices = np.vstack([floor, roof])

    fan = np.arange(1, n - 1)
    floor_faces = np.column_stack([np.zeros(n - 2, dtype=np.int64), fan + 1, fan])
    roof_faces = np.column_stack([np.full(n - 2, n, dtype=np.int64), n + fan, n + fan + 1])

    i = np.arange(n)
    nxt = (i + 1) % n
    side_a = np.column_stack([i, nxt, n + nxt])
    side_b = np.column_stack([i, n + nxt, n + i])

    faces = np.vstack([floor_faces, roof_faces, side_a, side_b]).astype(np.int64)
    return Mesh(vertices=vertices, faces=faces)


def elevation_to_color(t: np.ndarray) -> np.ndarray:
    """
    Map normalized elevation (0-1) to RGB.

    Green for low ground, brown for mid slopes, near-white for peaks.
    """
    t = np.clip(np.asarray(t, dtype=np.float64), 0.0, 1.0)
    colors = np.empty(t.shape + (3,))
    low = t < 0.3
    mid = (t >= 0.3) & (t < 0.7)
    high = t >= 0.7
    colors[low] = np.column_stack([0.3 + t[low] * 0.2, 0.6 - t[low] * 0.2, np.full(low.sum(), 0.2)])
    colors[mid] = np.column_stack([0.5 + t[mid] * 0.2, 0.4 - t[mid] * 0.1, np.full(mid.sum(), 0.2)])
    colors[high] = np.column_stack([
        np.minimum(0.8 + t[high] * 0.2, 1.0),
        np.minimum(0.8 + t[high] * 0.2, 1.0),
        np.full(high.sum(), 0.9),
    ])
    return colors


def terrain_mesh(grid: ElevationGrid, projection: LocalProjection) -> Optional[Mesh]:
    """
    Triangulate an elevation grid into a colored terrain surface.

    One vertex per sample, two triangles per cell whose four corners are
    finite. Heights are relative to the grid minimum so terrain and building
    bases share z=0.

    Args:
        grid: Elevation grid in geographic degrees
        projection: Site projection to local meters

    Returns:
        Terrain Mesh, or None if the grid is degenerate or has no finite cell
    """
    if grid.is_degenerate:
        logger.warning("Degenerate elevation grid, no terrain mesh")
        return None
    value_range = grid.finite_range
    if value_range is None:
        logger.warning("Elevation grid has no finite samples, no terrain mesh")
        return None

    ny, nx = grid.ny, grid.nx
    lon, lat = np.meshgrid(grid.x_coords, grid.y_coords)
    local = projection.to_local(lon.ravel(), lat.ravel())

    values = grid.values.ravel()
    finite = np.isfinite(values)
    z_min, z_max = value_range
    z = np.where(finite, values - z_min, 0.0)

    # Cell corners: a=(i,j) b=(i+1,j) c=(i+1,j+1) d=(i,j+1)
    jj, ii = np.meshgrid(np.arange(ny - 1), np.arange(nx - 1), indexing="ij")
    a = (jj * nx + ii).ravel()
    b = a + 1
    c = a + nx + 1
    d = a + nx
    ok = finite[a] & finite[b] & finite[c] & finite[d]
    a, b, c, d = a[ok], b[ok], c[ok], d[ok]
    if len(a) == 0:
        logger.warning("Elevation grid has no fully finite cell, no terrain mesh")
        return None

    faces = np.vstack([
        np.column_stack([a, b, c]),
        np.column_stack([a, c, d]),
    ]).astype(np.int64)

    span = z_max - z_min
    t = z / span if span > 0 else np.zeros_like(z)

    mesh = Mesh(
        vertices=np.column_stack([local.x_m, local.y_m, z]),
        faces=faces,
        vertex_colors=elevation_to_color(t),
    )
    logger.info(f"Terrain mesh: {mesh.n_vertices} verts, {mesh.n_faces} tris")
    return mesh


def compute_mesh_stats(mesh: Mesh) -> Dict[str, Any]:
    """
    Compute mesh statistics.

    Args:
        mesh: Mesh to inspect

    Returns:
        Dictionary of mesh statistics
    """
    tm = mesh.to_trimesh()
    if len(tm.faces) == 0:
        return {"n_vertices": len(tm.vertices), "n_faces": 0, "is_watertight": False}

    bounds = tm.bounds
    watertight = bool(tm.is_watertight)
    return {
        "n_vertices": len(tm.vertices),
        "n_faces": len(tm.faces),
        "bounds": {
            "min": bounds[0].tolist(),
            "max": bounds[1].tolist()
        },
        "is_watertight": watertight,
        "volume": float(tm.volume) if watertight else None,
        "surface_area": float(tm.area),
    }


def extrude_buildings(
    buildings: List[VectorFeature],
    projection: LocalProjection,
    default_height: float
) -> Tuple[List[Tuple[str, Mesh]], List[FeatureOutcome]]:
    """
    Extrude every building footprint into a prism in local meters.

    Args:
        buildings: Building features in geographic degrees
        projection: Site projection
        default_height: Height for buildings without a usable height property

    Returns:
        Tuple of ([(feature_id, mesh)], outcomes). Buildings that cannot be
        extruded are reported as skipped.
    """
    meshes = []
    outcomes = []
    for feature in buildings:
        try:
            if not isinstance(feature, PolygonFeature):
                raise InputInvalid(f"expected a polygon, got {feature.kind}")
            footprint = projection.project_points(feature.coords)
            mesh = extrude_footprint(footprint, building_height(feature, default_height))
        except InputInvalid as e:
            logger.warning(f"Skipping building {feature.feature_id}: {e}")
            outcomes.append(FeatureOutcome.skipped(feature.feature_id, str(e)))
            continue
        meshes.append((feature.feature_id, mesh))
        outcomes.append(FeatureOutcome.ok(feature.feature_id))
    return meshes, outcomes
