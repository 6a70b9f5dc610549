"""
Spherical aperture filtering in a periodic box.

Region selections are cell-granular supersets of the query. These helpers
apply the exact geometric cut to positions after they have been read.

Example usage:
    selection = snap.select_sphere(centre, 0.5, ptypes='stars')
    coords = snap.read('stars', 'Coordinates', selection)
    inside = aperture_mask(coords, centre, 0.5, snap.header.box_size)
"""

from typing import Optional

import numpy as np
from scipy.spatial import cKDTree


def _wrap(values, box_size):
    wrapped = np.mod(values, box_size)
    # np.mod maps tiny negative values onto box_size itself
    return np.where(wrapped >= box_size, wrapped - box_size, wrapped)


def periodic_offsets(coords, centre, box_size: Optional[float] = None) -> np.ndarray:
    """Minimum-image separation vectors of coords (N, 3) from centre."""
    offsets = np.atleast_2d(np.asarray(coords, dtype=np.float64)) - np.asarray(centre, dtype=np.float64)
    if box_size is not None:
        offsets -= box_size * np.round(offsets / box_size)
    return offsets


def radial_distance(coords, centre, box_size: Optional[float] = None) -> np.ndarray:
    return np.sqrt(np.sum(periodic_offsets(coords, centre, box_size) ** 2, axis=1))


def aperture_mask(coords, centre, radius: float, box_size: Optional[float] = None) -> np.ndarray:
    """
    Boolean mask of positions within radius of centre (boundary inclusive).

    Args:
        coords: Positions (N, 3) in the same units as centre and radius
        centre: Aperture centre
        radius: Aperture radius
        box_size: Periodic box size, or None for an open domain

    Returns:
        Boolean array of length N
    """
    coords = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
    mask = np.zeros(len(coords), dtype=bool)
    if len(coords) == 0:
        return mask
    if radius < 0:
        raise ValueError(f"Aperture radius must be non-negative, got {radius}")

    centre = np.asarray(centre, dtype=np.float64)
    if box_size is None:
        tree = cKDTree(coords)
    else:
        tree = cKDTree(_wrap(coords, box_size), boxsize=box_size)
        centre = _wrap(centre, box_size)

    inside = tree.query_ball_point(centre, r=radius)
    mask[np.asarray(inside, dtype=np.int64)] = True
    return mask
