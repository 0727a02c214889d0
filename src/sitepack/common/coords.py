"""
Coordinate transformation utilities.

Unit Flow:
Raw geographic (lon/lat, degrees) → local equirectangular plane → meters (x_m, y_m)

The projection is centered on the site and is only valid for site radii
under a few kilometers. It matches the approximation used by the upstream
feature fetch, so no datum transformation happens here.
"""

import numpy as np
from typing import Tuple
from dataclasses import dataclass
import logging

from .config import METERS_PER_DEGREE

logger = logging.getLogger(__name__)


@dataclass
class LocalCoordinates:
    """Projected coordinates in meters relative to the site center."""
    x_m: np.ndarray  # Easting offset in meters
    y_m: np.ndarray  # Northing offset in meters

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Return (x_min, x_max, y_min, y_max) in meters."""
        return (
            float(np.min(self.x_m)),
            float(np.max(self.x_m)),
            float(np.min(self.y_m)),
            float(np.max(self.y_m))
        )

    @property
    def points_m(self) -> np.ndarray:
        """Return Nx2 array of points in meters."""
        return np.column_stack([self.x_m, self.y_m])


class LocalProjection:
    """
    Equirectangular projection around a site center.

        x = (lon - lon0) * 111320 * cos(lat0)
        y = (lat - lat0) * 111320
    """

    def __init__(self, center_lon: float, center_lat: float):
        """
        Initialize projection.

        Args:
            center_lon: Longitude of the local origin (degrees)
            center_lat: Latitude of the local origin (degrees)
        """
        self.center_lon = float(center_lon)
        self.center_lat = float(center_lat)
        self.meters_per_deg_lon = METERS_PER_DEGREE * np.cos(np.radians(self.center_lat))
        self.meters_per_deg_lat = METERS_PER_DEGREE

    @classmethod
    def for_manifest(cls, manifest) -> "LocalProjection":
        """Create a projection centered on an ExportManifest's site."""
        return cls(manifest.center_lng, manifest.center_lat)

    def to_local(self, lon: np.ndarray, lat: np.ndarray) -> LocalCoordinates:
        """
        Transform longitude/latitude to local meters.

        Args:
            lon: Longitude array (degrees)
            lat: Latitude array (degrees)

        Returns:
            LocalCoordinates with x_m, y_m in meters
        """
        lon = np.asarray(lon, dtype=np.float64)
        lat = np.asarray(lat, dtype=np.float64)
        return LocalCoordinates(
            x_m=(lon - self.center_lon) * self.meters_per_deg_lon,
            y_m=(lat - self.center_lat) * self.meters_per_deg_lat,
        )

    def to_geographic(self, x_m: np.ndarray, y_m: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Inverse of to_local. Returns (lon, lat) arrays in degrees."""
        x_m = np.asarray(x_m, dtype=np.float64)
        y_m = np.asarray(y_m, dtype=np.float64)
        return (
            self.center_lon + x_m / self.meters_per_deg_lon,
            self.center_lat + y_m / self.meters_per_deg_lat,
        )

    def project_points(self, coords: np.ndarray) -> np.ndarray:
        """
        Project an (N, 2) array of (lon, lat) pairs.

        Returns:
            (N, 2) array of (x_m, y_m)
        """
        coords = np.asarray(coords, dtype=np.float64).reshape(-1, 2)
        return self.to_local(coords[:, 0], coords[:, 1]).points_m

    def aoi_ring(self, radius_m: float) -> np.ndarray:
        """
        Square area-of-interest ring around the center, in degrees.

        Returns:
            (5, 2) closed ring of (lon, lat)
        """
        d_lon = radius_m / self.meters_per_deg_lon
        d_lat = radius_m / self.meters_per_deg_lat
        lon0, lat0 = self.center_lon, self.center_lat
        return np.array([
            [lon0 - d_lon, lat0 - d_lat],
            [lon0 + d_lon, lat0 - d_lat],
            [lon0 + d_lon, lat0 + d_lat],
            [lon0 - d_lon, lat0 + d_lat],
            [lon0 - d_lon, lat0 - d_lat],
        ])


def project_to_local(
    lon: np.ndarray,
    lat: np.ndarray,
    center_lon: float,
    center_lat: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convenience function to project geographic coordinates to local meters.

    Args:
        lon: Longitude array
        lat: Latitude array
        center_lon: Origin longitude
        center_lat: Origin latitude

    Returns:
        Tuple of (x_meters, y_meters)
    """
    local = LocalProjection(center_lon, center_lat).to_local(lon, lat)
    return local.x_m, local.y_m
