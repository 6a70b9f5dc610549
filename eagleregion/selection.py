"""
Region selection over a spatial hash index.

The selector turns an axis-aligned query box in native length units into an
immutable Selection: the hash keys of every overlapped grid cell plus the
record ranges those cells occupy, per shard and particle class. Selections
are plain values, so repeated or concurrent queries never share state.

Boxes crossing a periodic boundary are split into at most two segments per
axis. The cells of every segment combination are unioned and deduplicated
exactly, so no record is read twice.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from eagleregion.config import InvalidRegionError, RegionTooLargeError, resolve_particle_type
from eagleregion.hashindex import ReadRange, SpatialHashIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Selection:
    """
    Result of a region query.

    Attributes:
        keys: Sorted unique hash keys of the selected cells (read-only)
        ranges: Record ranges ordered by shard, particle type, then offset
        ptypes: Particle types the ranges were computed for
        box: Query box as ((xmin, ymin, zmin), (xmax, ymax, zmax)), if any
    """
    keys: np.ndarray
    ranges: Tuple[ReadRange, ...]
    ptypes: Tuple[int, ...]
    box: Optional[Tuple[Tuple[float, ...], Tuple[float, ...]]] = None

    def __eq__(self, other):
        if not isinstance(other, Selection):
            return NotImplemented
        return (np.array_equal(self.keys, other.keys) and self.ranges == other.ranges
                and self.ptypes == other.ptypes and self.box == other.box)

    def __len__(self):
        return len(self.ranges)

    def ranges_for(self, ptype) -> List[ReadRange]:
        itype = resolve_particle_type(ptype)
        return [r for r in self.ranges if r.ptype == itype]

    def count(self, ptype) -> int:
        """Number of records the selection reads for a class."""
        return sum(r.count for r in self.ranges_for(ptype))

    def shards(self) -> List[int]:
        return sorted({r.shard for r in self.ranges})

    def split(self, part: int, nparts: int) -> 'Selection':
        """
        Return one of nparts contiguous pieces of this selection.

        Records of each class are divided as evenly as possible; a range is
        cut in two where a piece boundary falls inside it. The pieces for
        part = 0 .. nparts-1 together read exactly the original records.
        """
        if nparts < 1 or not 0 <= part < nparts:
            raise ValueError(f"Invalid split: part {part} of {nparts}")

        pieces = []
        for itype in self.ptypes:
            ranges = self.ranges_for(itype)
            total = sum(r.count for r in ranges)
            lo = total * part // nparts
            hi = total * (part + 1) // nparts

            position = 0
            for r in ranges:
                begin, end = position, position + r.count
                position = end
                if end <= lo or begin >= hi:
                    continue
                start = r.start + max(lo - begin, 0)
                stop = r.stop - max(end - hi, 0)
                if stop > start:
                    pieces.append(ReadRange(r.shard, r.ptype, start, stop))

        return Selection(keys=self.keys, ranges=tuple(sorted(pieces)),
                         ptypes=self.ptypes, box=self.box)


class RegionSelector:
    """Computes Selections from query boxes against one hash index."""

    def __init__(self, index: SpatialHashIndex, periodic_size: Optional[float] = None):
        self.index = index
        self.periodic_size = index.box_size if periodic_size is None else float(periodic_size)

    def _corner(self, values, name):
        corner = np.asarray(values, dtype=np.float64)
        if corner.shape != (3,):
            raise InvalidRegionError(f"{name} must have 3 components, got shape {corner.shape}")
        if not np.all(np.isfinite(corner)):
            raise InvalidRegionError(f"{name} must be finite, got {corner}")
        return corner

    def _axis_segments(self, lo: float, hi: float, axis: int) -> List[Tuple[float, float]]:
        """Split one axis of the query into in-domain segments."""
        size = self.periodic_size

        if hi >= lo:
            width = hi - lo
            if width > size:
                raise RegionTooLargeError(f"Axis {axis}: width {width} exceeds periodic size {size}")
            start = lo % size
            if start >= size:
                start = 0.0
            stop = start + width
            if stop <= size:
                return [(start, stop)]
            return [(start, size), (0.0, stop - size)]

        # an inverted pair inside the domain reads as a box wrapping through size
        if 0.0 <= hi and lo <= size:
            segments = [(lo, size), (0.0, hi)]
            return [(a, b) for a, b in segments if b > a] or [(lo, lo)]
        raise InvalidRegionError(f"Axis {axis}: inverted bounds [{lo}, {hi}] outside the domain [0, {size}]")

    def select(self, min_xyz, max_xyz, ptypes: Optional[Iterable] = None) -> Selection:
        """
        Select every grid cell overlapping a box, with its record ranges.

        Args:
            min_xyz: Lower corner in native length units, may lie outside the domain
            max_xyz: Upper corner; a pair with max < min on an axis is read as a
                     box wrapping through the periodic boundary when both bounds
                     lie inside the domain
            ptypes: Particle classes to plan reads for (default: all indexed classes)

        Returns:
            Selection covering a cell-granular superset of the box

        Raises:
            InvalidRegionError: For malformed, non-finite or ambiguous bounds
            RegionTooLargeError: If the box is wider than the periodic domain
        """
        lower = self._corner(min_xyz, "min_xyz")
        upper = self._corner(max_xyz, "max_xyz")
        segments = [self._axis_segments(lower[i], upper[i], i) for i in range(3)]

        key_sets = []
        for sx in segments[0]:
            for sy in segments[1]:
                for sz in segments[2]:
                    key_sets.append(self.index.cells_for_box(
                        [sx[0], sy[0], sz[0]], [sx[1], sy[1], sz[1]], self.periodic_size))
        keys = np.unique(np.concatenate(key_sets))
        keys.setflags(write=False)

        itypes = self._resolve_types(ptypes)
        ranges = []
        for itype in itypes:
            ranges.extend(self.index.shard_ranges_for_keys(itype, keys))
        ranges.sort()

        logger.debug(f"Selected {keys.size} cells, {len(ranges)} ranges for box {lower} - {upper}")
        return Selection(keys=keys, ranges=tuple(ranges), ptypes=itypes,
                         box=(tuple(float(v) for v in lower), tuple(float(v) for v in upper)))

    def select_sphere(self, centre, radius: float, ptypes: Optional[Iterable] = None) -> Selection:
        """
        Select the bounding box of a sphere.

        Cells on the boundary are included in full, so the result extends
        beyond the sphere; apply aperture.aperture_mask after reading for an
        exact sphere.
        """
        centre = self._corner(centre, "centre")
        if not np.isfinite(radius) or radius < 0:
            raise InvalidRegionError(f"Radius must be finite and non-negative, got {radius}")
        return self.select(centre - radius, centre + radius, ptypes=ptypes)

    def select_all(self, ptypes: Optional[Iterable] = None) -> Selection:
        size = self.periodic_size
        return self.select([0.0, 0.0, 0.0], [size, size, size], ptypes=ptypes)

    def _resolve_types(self, ptypes) -> Tuple[int, ...]:
        if ptypes is None:
            return tuple(self.index.particle_types)
        if isinstance(ptypes, (str, int, np.integer)):
            ptypes = [ptypes]
        return tuple(sorted({resolve_particle_type(p) for p in ptypes}))
